from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.api.identity import Identity, require_identity, resolve_client_ref
from studio_scheduler.dependencies import get_clock, get_db_session
from studio_scheduler.domain.subscriptions import schemas as subscription_schemas
from studio_scheduler.domain.subscriptions import service as subscription_service
from studio_scheduler.shared.clock import FacilityClock

router = APIRouter()


@router.post(
    "/v1/series/{series_id}/subscription",
    response_model=subscription_schemas.SeriesSubscribeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def subscribe(
    series_id: int,
    payload: subscription_schemas.SeriesSubscriptionRequest,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    identity: Identity = Depends(require_identity),
) -> subscription_schemas.SeriesSubscribeResponse:
    client_ref = resolve_client_ref(identity, payload.client_ref)
    result = await subscription_service.subscribe(
        session,
        series_id,
        client_ref,
        payload.end_date,
        today=clock.today(),
        now=clock.now(),
    )
    return subscription_schemas.SeriesSubscribeResponse(
        subscription=subscription_schemas.SeriesSubscriptionResponse.model_validate(result.subscription),
        enrollments=[
            subscription_schemas.SubscriptionEnrollmentReport(
                instance_id=item.instance_id,
                session_date=item.session_date,
                outcome=item.outcome.value,
            )
            for item in result.enrollments
        ],
    )


@router.delete(
    "/v1/series/{series_id}/subscription",
    response_model=subscription_schemas.SeriesSubscriptionResponse,
)
async def unsubscribe(
    series_id: int,
    client_ref: str | None = Query(None, max_length=64),
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_identity),
) -> subscription_schemas.SeriesSubscriptionResponse:
    subscription = await subscription_service.unsubscribe(
        session, series_id, resolve_client_ref(identity, client_ref)
    )
    return subscription_schemas.SeriesSubscriptionResponse.model_validate(subscription)


@router.get("/v1/subscriptions", response_model=list[subscription_schemas.SeriesSubscriptionResponse])
async def list_subscriptions(
    client_ref: str | None = Query(None, max_length=64),
    active_only: bool = Query(False),
    session: AsyncSession = Depends(get_db_session),
    identity: Identity = Depends(require_identity),
) -> list[subscription_schemas.SeriesSubscriptionResponse]:
    subscriptions = await subscription_service.list_subscriptions(
        session, resolve_client_ref(identity, client_ref), active_only=active_only
    )
    return [subscription_schemas.SeriesSubscriptionResponse.model_validate(item) for item in subscriptions]
