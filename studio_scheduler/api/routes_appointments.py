import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.api.identity import Identity, require_identity, require_staff, resolve_client_ref
from studio_scheduler.dependencies import get_clock, get_db_session
from studio_scheduler.domain.appointments import schemas as appointment_schemas
from studio_scheduler.domain.appointments import service as appointment_service
from studio_scheduler.domain.appointments import slots as slot_service
from studio_scheduler.domain.bookable import AppointmentBookable
from studio_scheduler.domain.errors import NotFoundError, SlotUnavailableError
from studio_scheduler.shared.clock import FacilityClock

router = APIRouter()
logger = logging.getLogger(__name__)


async def free_slots_response(
    session: AsyncSession,
    staff_ref: str,
    target_date: date,
    duration_minutes: int,
    *,
    exclude_appointment_id: int | None = None,
) -> appointment_schemas.FreeSlotsResponse:
    slots = await slot_service.get_free_slots(
        session,
        staff_ref,
        target_date,
        duration_minutes,
        exclude_appointment_id=exclude_appointment_id,
    )
    return appointment_schemas.FreeSlotsResponse(
        staff_ref=staff_ref,
        date=target_date,
        duration_minutes=duration_minutes,
        slots=slots,
    )


@router.get("/v1/staff/{staff_ref}/free-slots", response_model=appointment_schemas.FreeSlotsResponse)
async def get_free_slots(
    staff_ref: str,
    target_date: date = Query(..., alias="date"),
    duration_minutes: int = Query(60),
    exclude_appointment_id: int | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_identity),
) -> appointment_schemas.FreeSlotsResponse:
    return await free_slots_response(
        session,
        staff_ref,
        target_date,
        duration_minutes,
        exclude_appointment_id=exclude_appointment_id,
    )


@router.get("/v1/staff/{staff_ref}/appointments", response_model=list[appointment_schemas.AppointmentResponse])
async def list_staff_appointments(
    staff_ref: str,
    target_date: date = Query(..., alias="date"),
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_staff),
) -> list[appointment_schemas.AppointmentResponse]:
    appointments = await appointment_service.list_staff_appointments(session, staff_ref, target_date)
    return [appointment_schemas.AppointmentResponse.model_validate(item) for item in appointments]


@router.post(
    "/v1/appointments",
    response_model=appointment_schemas.AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def request_appointment(
    payload: appointment_schemas.AppointmentRequest,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    identity: Identity = Depends(require_identity),
) -> appointment_schemas.AppointmentResponse:
    request = payload.model_copy(update={"client_ref": resolve_client_ref(identity, payload.client_ref)})
    appointment = await appointment_service.request_appointment(session, request, now=clock.now())
    return appointment_schemas.AppointmentResponse.model_validate(appointment)


@router.get("/v1/appointments/{appointment_id}", response_model=appointment_schemas.AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_identity),
) -> appointment_schemas.AppointmentResponse:
    appointment = await appointment_service.get_appointment(session, appointment_id)
    if not identity.is_staff and appointment.client_ref != identity.client_ref:
        raise NotFoundError(detail=f"Appointment {appointment_id} not found")
    return appointment_schemas.AppointmentResponse.model_validate(appointment)


@router.post("/v1/appointments/{appointment_id}/decision", response_model=appointment_schemas.AppointmentResponse)
async def decide_appointment(
    appointment_id: int,
    payload: appointment_schemas.AppointmentDecisionRequest,
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_staff),
) -> appointment_schemas.AppointmentResponse:
    appointment = await appointment_service.decide_appointment(
        session,
        appointment_id,
        accept=payload.accept,
        decided_by=identity.client_ref,
        notes=payload.notes,
    )
    return appointment_schemas.AppointmentResponse.model_validate(appointment)


@router.post("/v1/appointments/{appointment_id}/cancel", response_model=appointment_schemas.AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_identity),
) -> appointment_schemas.AppointmentResponse:
    appointment = await appointment_service.cancel_appointment(
        session,
        appointment_id,
        actor_ref=identity.client_ref,
        is_staff=identity.is_staff,
    )
    return appointment_schemas.AppointmentResponse.model_validate(appointment)


@router.post(
    "/v1/appointments/{appointment_id}/reschedule-proposal",
    response_model=appointment_schemas.AppointmentRescheduleProposalResponse,
    status_code=status.HTTP_201_CREATED,
)
async def propose_appointment_reschedule(
    appointment_id: int,
    payload: appointment_schemas.AppointmentRescheduleProposalRequest,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    _identity: Identity = Depends(require_staff),
) -> appointment_schemas.AppointmentRescheduleProposalResponse:
    proposal = await appointment_service.propose_appointment_reschedule(
        session,
        appointment_id,
        payload.proposed_date,
        payload.proposed_time,
        now=clock.now(),
    )
    return appointment_schemas.AppointmentRescheduleProposalResponse.model_validate(proposal)


@router.post("/v1/appointments/{appointment_id}/claim", response_model=appointment_schemas.AppointmentResponse)
async def claim_appointment(
    appointment_id: int,
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_identity),
) -> appointment_schemas.AppointmentResponse:
    """Book an open slot published by staff; it then waits for approval like any request."""
    bookable = AppointmentBookable(appointment_id)
    if not await bookable.book(session, identity.client_ref):
        raise SlotUnavailableError(detail="Appointment slot is no longer open")
    appointment = await appointment_service.get_appointment(session, appointment_id)
    return appointment_schemas.AppointmentResponse.model_validate(appointment)
