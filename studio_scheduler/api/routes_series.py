import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.api.identity import Identity, require_identity, require_staff
from studio_scheduler.dependencies import get_clock, get_db_session
from studio_scheduler.domain.series import schemas as series_schemas
from studio_scheduler.domain.series import service as series_service
from studio_scheduler.domain.sessions import schemas as session_schemas
from studio_scheduler.domain.sessions import service as session_service
from studio_scheduler.shared.clock import FacilityClock

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/series",
    response_model=series_schemas.RecurringSeriesCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_series(
    payload: series_schemas.RecurringSeriesCreate,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    identity: Identity = Depends(require_staff),
) -> series_schemas.RecurringSeriesCreateResponse:
    series, report = await series_service.create_series(session, payload, today=clock.today(), now=clock.now())
    logger.info(
        "series_created_via_api",
        extra={"extra": {"series_id": series.series_id, "actor": identity.client_ref}},
    )
    return series_schemas.RecurringSeriesCreateResponse(
        series=series_schemas.RecurringSeriesResponse.model_validate(series),
        generated=report.to_response(),
    )


@router.get("/v1/series/{series_id}", response_model=series_schemas.RecurringSeriesResponse)
async def get_series(
    series_id: int,
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_identity),
) -> series_schemas.RecurringSeriesResponse:
    series = await series_service.get_series(session, series_id)
    return series_schemas.RecurringSeriesResponse.model_validate(series)


@router.patch("/v1/series/{series_id}", response_model=series_schemas.SeriesUpdateResponse)
async def update_series(
    series_id: int,
    payload: series_schemas.RecurringSeriesUpdate,
    cascade: bool = Query(False),
    reference_date: date | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    _identity: Identity = Depends(require_staff),
) -> series_schemas.SeriesUpdateResponse:
    report = await series_service.update_series(
        session,
        series_id,
        payload,
        cascade=cascade,
        reference_date=reference_date or clock.today(),
        now=clock.now(),
    )
    return report.to_response()


@router.delete("/v1/series/{series_id}", response_model=series_schemas.SeriesDeleteResponse)
async def delete_series(
    series_id: int,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    _identity: Identity = Depends(require_staff),
) -> series_schemas.SeriesDeleteResponse:
    report = await series_service.delete_series(session, series_id, now=clock.now())
    return report.to_response()


@router.post("/v1/series/{series_id}/generate", response_model=series_schemas.RecurringSeriesGenerateResponse)
async def generate_series_instances(
    series_id: int,
    payload: series_schemas.RecurringSeriesGenerateRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    clock: FacilityClock = Depends(get_clock),
    _identity: Identity = Depends(require_staff),
) -> series_schemas.RecurringSeriesGenerateResponse:
    request = payload or series_schemas.RecurringSeriesGenerateRequest()
    report = await series_service.generate_for_series(
        session,
        series_id,
        as_of=request.as_of or clock.today(),
        until=request.until,
        now=clock.now(),
    )
    return report.to_response()


@router.get("/v1/series/{series_id}/instances", response_model=list[session_schemas.SessionInstanceResponse])
async def list_series_instances(
    series_id: int,
    date_from: date | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    _identity: Identity = Depends(require_identity),
) -> list[session_schemas.SessionInstanceResponse]:
    rows = await series_service.list_series_instances(session, series_id, date_from=date_from)
    return [session_service.to_response(instance, count) for instance, count in rows]
