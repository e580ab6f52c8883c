import secrets

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.security.utils import get_authorization_scheme_param

from studio_scheduler.services import resolve_services

router = APIRouter()


def _bearer_token(request: Request) -> str | None:
    scheme, param = get_authorization_scheme_param(request.headers.get("Authorization"))
    if scheme.lower() != "bearer" or not param:
        return None
    return param


def _check_scrape_token(request: Request) -> None:
    app_settings = getattr(request.app.state, "app_settings", None)
    if app_settings is None or app_settings.app_env != "prod":
        return
    if not app_settings.metrics_token:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Metrics token misconfigured")
    provided = _bearer_token(request)
    if not provided or not secrets.compare_digest(provided, app_settings.metrics_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request) -> Response:
    services = resolve_services(request.app)
    metrics_client = services.metrics if services else getattr(request.app.state, "metrics", None)
    if metrics_client is None or not metrics_client.enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")
    _check_scrape_token(request)
    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
