from fastapi import Request

from studio_scheduler.infra.db import get_db_session
from studio_scheduler.shared.clock import FacilityClock

__all__ = ["get_clock", "get_db_session"]


def get_clock(request: Request) -> FacilityClock:
    clock = getattr(request.app.state, "clock", None)
    if clock is None:
        clock = FacilityClock()
        request.app.state.clock = clock
    return clock
