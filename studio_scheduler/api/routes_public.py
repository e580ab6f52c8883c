"""Unauthenticated endpoints for guests who only have an email and a token."""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.api.routes_appointments import free_slots_response
from studio_scheduler.dependencies import get_clock, get_db_session
from studio_scheduler.domain.appointments import schemas as appointment_schemas
from studio_scheduler.domain.appointments import service as appointment_service
from studio_scheduler.domain.guest_signups import schemas as guest_schemas
from studio_scheduler.domain.guest_signups import service as guest_service
from studio_scheduler.shared.clock import FacilityClock

router = APIRouter()


@router.get("/v1/public/staff/{staff_ref}/free-slots", response_model=appointment_schemas.FreeSlotsResponse)
async def get_public_free_slots(
    staff_ref: str,
    target_date: date = Query(..., alias="date"),
    duration_minutes: int = Query(60),
    session: AsyncSession = Depends(get_db_session),
) -> appointment_schemas.FreeSlotsResponse:
    return await free_slots_response(session, staff_ref, target_date, duration_minutes)


@router.post(
    "/v1/public/appointments",
    response_model=appointment_schemas.AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def request_public_appointment(
    payload: appointment_schemas.PublicAppointmentRequest,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
) -> appointment_schemas.AppointmentResponse:
    appointment = await appointment_service.request_appointment(session, payload, now=clock.now())
    return appointment_schemas.AppointmentResponse.model_validate(appointment)


@router.post(
    "/v1/public/sessions/{instance_id}/guest-signups",
    response_model=guest_schemas.GuestSignupResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_guest_signup(
    instance_id: int,
    payload: guest_schemas.GuestSignupRequest,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
) -> guest_schemas.GuestSignupResponse:
    signup = await guest_service.create_guest_signup(session, instance_id, payload, now=clock.now())
    return guest_schemas.GuestSignupResponse.model_validate(signup)


@router.post("/v1/public/reschedule/confirm", response_model=guest_schemas.GuestSignupResponse)
async def confirm_guest_reschedule(
    payload: guest_schemas.RescheduleConfirmRequest,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
) -> guest_schemas.GuestSignupResponse:
    signup = await guest_service.confirm_reschedule(session, payload.token, now=clock.now())
    return guest_schemas.GuestSignupResponse.model_validate(signup)


@router.post("/v1/public/appointment-reschedule/confirm", response_model=appointment_schemas.AppointmentResponse)
async def confirm_appointment_reschedule(
    payload: guest_schemas.RescheduleConfirmRequest,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
) -> appointment_schemas.AppointmentResponse:
    appointment = await appointment_service.confirm_appointment_reschedule(session, payload.token, now=clock.now())
    return appointment_schemas.AppointmentResponse.model_validate(appointment)
