from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.api.identity import Identity, require_staff
from studio_scheduler.dependencies import get_clock, get_db_session
from studio_scheduler.domain.guest_signups import schemas as guest_schemas
from studio_scheduler.domain.guest_signups import service as guest_service
from studio_scheduler.shared.clock import FacilityClock

router = APIRouter()


@router.get("/v1/sessions/{instance_id}/guest-signups", response_model=list[guest_schemas.GuestSignupResponse])
async def list_guest_signups(
    instance_id: int,
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_staff),
) -> list[guest_schemas.GuestSignupResponse]:
    signups = await guest_service.list_guest_signups(session, instance_id)
    return [guest_schemas.GuestSignupResponse.model_validate(item) for item in signups]


@router.post("/v1/guest-signups/{signup_id}/approve", response_model=guest_schemas.GuestSignupResponse)
async def approve_guest_signup(
    signup_id: int,
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_staff),
) -> guest_schemas.GuestSignupResponse:
    signup = await guest_service.approve_guest_signup(session, signup_id, decided_by=identity.client_ref)
    return guest_schemas.GuestSignupResponse.model_validate(signup)


@router.post("/v1/guest-signups/{signup_id}/reject", response_model=guest_schemas.GuestSignupResponse)
async def reject_guest_signup(
    signup_id: int,
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_staff),
) -> guest_schemas.GuestSignupResponse:
    signup = await guest_service.reject_guest_signup(session, signup_id, decided_by=identity.client_ref)
    return guest_schemas.GuestSignupResponse.model_validate(signup)


@router.post(
    "/v1/guest-signups/{signup_id}/reschedule-proposal",
    response_model=guest_schemas.RescheduleProposalResponse,
    status_code=status.HTTP_201_CREATED,
)
async def propose_guest_reschedule(
    signup_id: int,
    payload: guest_schemas.RescheduleProposalRequest,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    _identity: Identity = Depends(require_staff),
) -> guest_schemas.RescheduleProposalResponse:
    proposal = await guest_service.propose_reschedule(
        session, signup_id, payload.proposed_instance_id, now=clock.now()
    )
    return guest_schemas.RescheduleProposalResponse.model_validate(proposal)
