"""Single-use reschedule tokens shared by guest signups and appointments."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.appointments.db_models import AppointmentRescheduleProposal
from studio_scheduler.domain.errors import TokenAlreadyUsedError, TokenExpiredError, TokenNotFoundError
from studio_scheduler.domain.guest_signups.db_models import RescheduleProposal
from studio_scheduler.settings import settings

Proposal = TypeVar("Proposal", RescheduleProposal, AppointmentRescheduleProposal)


def issue_token() -> str:
    return secrets.token_hex(32)


def token_expiry(now: datetime) -> datetime:
    return now + timedelta(hours=settings.reschedule_token_ttl_hours)


async def consume_token(
    session: AsyncSession,
    model: type[Proposal],
    token: str,
    *,
    now: datetime,
) -> Proposal:
    """Mark a proposal used inside the caller's transaction.

    The ``used_at IS NULL`` guard makes the claim a compare-and-swap, so of
    several concurrent confirmations only one gets the row back. The caller
    rolls back to release the token when the follow-up move fails.
    """
    claimed = await session.execute(
        update(model)
        .where(model.token == token, model.used_at.is_(None), model.expires_at >= now)
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 1:
        proposal = await session.scalar(
            select(model).where(model.token == token).execution_options(populate_existing=True)
        )
        return proposal

    proposal = await session.scalar(
        select(model).where(model.token == token).execution_options(populate_existing=True)
    )
    if proposal is None:
        raise TokenNotFoundError(detail="Reschedule token not found")
    if proposal.used_at is not None:
        raise TokenAlreadyUsedError(detail="Reschedule token was already used")
    raise TokenExpiredError(detail="Reschedule token has expired")
