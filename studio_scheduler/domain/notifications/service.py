from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.outbox.service import KIND_NOTIFICATION, enqueue_outbox_event

logger = logging.getLogger(__name__)

TEMPLATE_ENROLLMENT_BOOKED = "enrollment_booked"
TEMPLATE_WAITLIST_PROMOTED = "waitlist_promoted"
TEMPLATE_INSTANCE_CANCELLED = "instance_cancelled"
TEMPLATE_INSTANCE_UPDATED = "instance_updated"
TEMPLATE_GUEST_SIGNUP_RECEIVED = "guest_signup_received"
TEMPLATE_GUEST_SIGNUP_APPROVED = "guest_signup_approved"
TEMPLATE_GUEST_SIGNUP_REJECTED = "guest_signup_rejected"
TEMPLATE_GUEST_RESCHEDULE_PROPOSED = "guest_reschedule_proposed"
TEMPLATE_GUEST_RESCHEDULE_CONFIRMED = "guest_reschedule_confirmed"
TEMPLATE_APPOINTMENT_REQUESTED = "appointment_requested"
TEMPLATE_APPOINTMENT_DECIDED = "appointment_decided"
TEMPLATE_APPOINTMENT_CANCELLED = "appointment_cancelled"
TEMPLATE_APPOINTMENT_RESCHEDULE_PROPOSED = "appointment_reschedule_proposed"
TEMPLATE_APPOINTMENT_RESCHEDULE_CONFIRMED = "appointment_reschedule_confirmed"


async def enqueue_notification(
    session: AsyncSession,
    *,
    recipient: str | None,
    template: str,
    payload: dict[str, Any],
    dedupe_key: str,
) -> bool:
    """Queue ``{recipient, template, payload}`` for delivery after the caller commits."""
    if not recipient:
        logger.info("notification_without_recipient", extra={"extra": {"template": template}})
        return False
    await enqueue_outbox_event(
        session,
        kind=KIND_NOTIFICATION,
        payload={"recipient": recipient, "template": template, "payload": payload},
        dedupe_key=f"{template}:{dedupe_key}",
    )
    return True
