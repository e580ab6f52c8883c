import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.api.identity import Identity, require_identity, require_staff, resolve_client_ref
from studio_scheduler.dependencies import get_clock, get_db_session
from studio_scheduler.domain.sessions import cascade as cascade_editor
from studio_scheduler.domain.sessions import schemas as session_schemas
from studio_scheduler.domain.sessions import service as session_service
from studio_scheduler.domain.waitlist import schemas as waitlist_schemas
from studio_scheduler.domain.waitlist import service as waitlist_service
from studio_scheduler.shared.clock import FacilityClock

router = APIRouter()
logger = logging.getLogger(__name__)


async def _instance_response(session: AsyncSession, instance_id: int) -> session_schemas.SessionInstanceResponse:
    instance = await session_service.get_instance(session, instance_id)
    count = await session_service.participant_count(session, instance_id)
    return session_service.to_response(instance, count)


@router.post(
    "/v1/sessions",
    response_model=session_schemas.SessionInstanceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_session(
    payload: session_schemas.SessionInstanceCreate,
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_staff),
) -> session_schemas.SessionInstanceResponse:
    instance = await session_service.create_instance(session, payload)
    return session_service.to_response(instance, 0)


@router.get("/v1/sessions", response_model=list[session_schemas.SessionInstanceResponse])
async def list_sessions(
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    instructor_ref: str | None = Query(None, max_length=64),
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_identity),
) -> list[session_schemas.SessionInstanceResponse]:
    rows = await session_service.list_instances(
        session, date_from=date_from, date_to=date_to, instructor_ref=instructor_ref
    )
    return [session_service.to_response(instance, count) for instance, count in rows]


@router.get("/v1/sessions/{instance_id}", response_model=session_schemas.SessionInstanceResponse)
async def get_session(
    instance_id: int,
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_identity),
) -> session_schemas.SessionInstanceResponse:
    return await _instance_response(session, instance_id)


@router.patch("/v1/sessions/{instance_id}", response_model=session_schemas.CascadeResponse)
async def update_session(
    instance_id: int,
    payload: session_schemas.SessionInstancePatch,
    cascade: bool = Query(False),
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    _identity: Identity = Depends(require_staff),
) -> session_schemas.CascadeResponse:
    outcome = await cascade_editor.update_instance(session, instance_id, payload, cascade=cascade, now=clock.now())
    return outcome.to_response()


@router.delete("/v1/sessions/{instance_id}", response_model=session_schemas.CascadeResponse)
async def delete_session(
    instance_id: int,
    cascade: bool = Query(False),
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    _identity: Identity = Depends(require_staff),
) -> session_schemas.CascadeResponse:
    outcome = await cascade_editor.delete_instance(session, instance_id, cascade=cascade, now=clock.now())
    return outcome.to_response()


@router.post(
    "/v1/sessions/{instance_id}/enrollment",
    response_model=session_schemas.BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def enroll(
    instance_id: int,
    payload: session_schemas.EnrollmentRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_identity),
) -> session_schemas.BookingResponse:
    client_ref = resolve_client_ref(identity, payload.client_ref if payload else None)
    result = await session_service.book(session, instance_id, client_ref)
    if not result.ok:
        raise result.to_error()
    return session_schemas.BookingResponse(
        outcome=result.outcome.value,
        instance_id=result.instance_id,
        client_ref=result.client_ref,
        enrollment=session_schemas.EnrollmentResponse.model_validate(result.enrollment),
    )


@router.delete("/v1/sessions/{instance_id}/enrollment", response_model=session_schemas.CancellationResponse)
async def cancel_enrollment(
    instance_id: int,
    cascade: bool = Query(False),
    reference_date: date | None = Query(None),
    client_ref: str | None = Query(None, max_length=64),
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    identity: Identity = Depends(require_identity),
) -> session_schemas.CancellationResponse:
    result = await session_service.cancel(
        session,
        instance_id,
        resolve_client_ref(identity, client_ref),
        cascade=cascade,
        reference_date=reference_date or clock.today(),
        now=clock.now(),
    )
    if not result.ok:
        raise result.to_error()
    return session_schemas.CancellationResponse(
        outcome=result.outcome.value,
        instance_id=result.instance_id,
        client_ref=result.client_ref,
        affected=result.affected,
        instance_ids=list(result.instance_ids),
        promoted=result.promoted,
    )


@router.get("/v1/sessions/{instance_id}/participants", response_model=list[session_schemas.EnrollmentResponse])
async def list_participants(
    instance_id: int,
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_staff),
) -> list[session_schemas.EnrollmentResponse]:
    enrollments = await session_service.list_participants(session, instance_id)
    return [session_schemas.EnrollmentResponse.model_validate(item) for item in enrollments]


def _waitlist_response(result: waitlist_service.WaitlistResult) -> waitlist_schemas.WaitlistJoinResponse:
    return waitlist_schemas.WaitlistJoinResponse(
        outcome=result.outcome.value,
        instance_id=result.instance_id,
        client_ref=result.client_ref,
        position=result.position,
        entry=waitlist_schemas.WaitlistEntryResponse.model_validate(result.entry) if result.entry else None,
    )


@router.post(
    "/v1/sessions/{instance_id}/waitlist",
    response_model=waitlist_schemas.WaitlistJoinResponse,
    status_code=status.HTTP_201_CREATED,
)
async def join_waitlist(
    instance_id: int,
    payload: waitlist_schemas.WaitlistJoinRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    identity: Identity = Depends(require_identity),
) -> waitlist_schemas.WaitlistJoinResponse:
    client_ref = resolve_client_ref(identity, payload.client_ref if payload else None)
    result = await waitlist_service.join_waitlist(session, instance_id, client_ref, now=clock.now())
    if not result.ok:
        raise result.to_error()
    return _waitlist_response(result)


@router.delete("/v1/sessions/{instance_id}/waitlist", response_model=waitlist_schemas.WaitlistJoinResponse)
async def leave_waitlist(
    instance_id: int,
    client_ref: str | None = Query(None, max_length=64),
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_identity),
) -> waitlist_schemas.WaitlistJoinResponse:
    result = await waitlist_service.leave_waitlist(session, instance_id, resolve_client_ref(identity, client_ref))
    if not result.ok:
        raise result.to_error()
    return _waitlist_response(result)


@router.get("/v1/sessions/{instance_id}/waitlist", response_model=list[waitlist_schemas.WaitlistEntryResponse])
async def list_waitlist(
    instance_id: int,
    include_closed: bool = Query(False),
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_staff),
) -> list[waitlist_schemas.WaitlistEntryResponse]:
    entries = await waitlist_service.list_waitlist(session, instance_id, include_closed=include_closed)
    return [waitlist_schemas.WaitlistEntryResponse.model_validate(entry) for entry in entries]


@router.post("/v1/waitlist/{entry_id}/expire", response_model=waitlist_schemas.WaitlistEntryResponse)
async def expire_waitlist_entry(
    entry_id: int,
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_staff),
) -> waitlist_schemas.WaitlistEntryResponse:
    entry = await waitlist_service.expire_waitlist_entry(session, entry_id)
    logger.info("waitlist_entry_expired_via_api", extra={"extra": {"entry_id": entry_id, "actor": identity.client_ref}})
    return waitlist_schemas.WaitlistEntryResponse.model_validate(entry)
