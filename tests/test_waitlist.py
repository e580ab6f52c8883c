from datetime import date, datetime, time, timedelta

import anyio
import pytest
from sqlalchemy import select

from studio_scheduler.domain.errors import ConflictError, ValidationError
from studio_scheduler.domain.notifications import service as notifications
from studio_scheduler.domain.outbox.db_models import OutboxEvent
from studio_scheduler.domain.sessions import cascade as cascade_editor
from studio_scheduler.domain.sessions import service as enrollment_service
from studio_scheduler.domain.sessions import statuses as enrollment_statuses
from studio_scheduler.domain.sessions.db_models import Enrollment, SessionInstance
from studio_scheduler.domain.sessions.schemas import SessionInstancePatch
from studio_scheduler.domain.waitlist import service as waitlist_service
from studio_scheduler.domain.waitlist import statuses
from studio_scheduler.domain.waitlist.db_models import WaitlistEntry
from studio_scheduler.domain.waitlist.service import WaitlistOutcome

NOW = datetime(2025, 1, 6, 8, 0)


async def _seed_full_instance(session, *, capacity: int = 1) -> SessionInstance:
    instance = SessionInstance(
        name="Yoga Flow",
        instructor_ref="coach-2",
        session_date=date(2025, 1, 9),
        start_time=time(7, 30),
        duration_minutes=60,
        capacity=capacity,
    )
    session.add(instance)
    await session.commit()
    await session.refresh(instance)
    for idx in range(capacity):
        await enrollment_service.book(session, instance.instance_id, f"holder-{idx}")
    return instance


async def _queue(session, instance_id: int, *client_refs: str) -> dict[str, int]:
    entry_ids = {}
    for offset, client_ref in enumerate(client_refs):
        result = await waitlist_service.join_waitlist(
            session, instance_id, client_ref, now=NOW + timedelta(minutes=offset)
        )
        assert result.outcome == WaitlistOutcome.JOINED
        assert result.position == offset + 1
        entry_ids[client_ref] = result.entry.entry_id
    return entry_ids


def test_freed_seat_goes_to_oldest_entry(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            instance = await _seed_full_instance(session)
            entry_ids = await _queue(session, instance.instance_id, "client-a", "client-b", "client-c")

            result = await enrollment_service.cancel(
                session, instance.instance_id, "holder-0", reference_date=NOW.date(), now=NOW
            )
            assert result.promoted == 1

            enrollment = await session.scalar(
                select(Enrollment).where(
                    Enrollment.instance_id == instance.instance_id,
                    Enrollment.status == enrollment_statuses.ENROLLMENT_ACTIVE,
                )
            )
            assert enrollment.client_ref == "client-a"
            assert enrollment.source == enrollment_statuses.SOURCE_WAITLIST

            remaining = await waitlist_service.list_waitlist(session, instance.instance_id)
            assert [entry.client_ref for entry in remaining] == ["client-b", "client-c"]

            promoted_entry = await session.get(WaitlistEntry, entry_ids["client-a"])
            await session.refresh(promoted_entry)
            assert promoted_entry.status == statuses.BOOKED
            assert promoted_entry.notified_at == NOW

    anyio.run(_run)


def test_entry_that_left_is_skipped(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            instance = await _seed_full_instance(session)
            await _queue(session, instance.instance_id, "client-a", "client-b")

            left = await waitlist_service.leave_waitlist(session, instance.instance_id, "client-a")
            assert left.outcome == WaitlistOutcome.LEFT
            assert left.entry.status == statuses.CANCELLED_BY_USER

            await enrollment_service.cancel(
                session, instance.instance_id, "holder-0", reference_date=NOW.date(), now=NOW
            )
            assert await enrollment_service.is_enrolled(session, instance.instance_id, "client-b")
            assert not await enrollment_service.is_enrolled(session, instance.instance_id, "client-a")

            missing = await waitlist_service.leave_waitlist(session, instance.instance_id, "client-a")
            assert missing.outcome == WaitlistOutcome.NOT_ON_WAITLIST

    anyio.run(_run)


def test_join_refused_while_seats_remain(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            instance = SessionInstance(
                name="Open Gym",
                instructor_ref="coach-2",
                session_date=date(2025, 1, 9),
                start_time=time(12, 0),
                capacity=3,
            )
            session.add(instance)
            await session.commit()

            result = await waitlist_service.join_waitlist(session, instance.instance_id, "client-a", now=NOW)
            assert result.outcome == WaitlistOutcome.SEATS_AVAILABLE
            error = result.to_error()
            assert isinstance(error, ConflictError)
            assert error.status_code == 409
            assert await waitlist_service.list_waitlist(session, instance.instance_id) == []

    anyio.run(_run)


def test_duplicate_and_enrolled_joins(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            instance = await _seed_full_instance(session)
            await _queue(session, instance.instance_id, "client-a")

            duplicate = await waitlist_service.join_waitlist(session, instance.instance_id, "client-a", now=NOW)
            assert duplicate.outcome == WaitlistOutcome.DUPLICATE

            enrolled = await waitlist_service.join_waitlist(session, instance.instance_id, "holder-0", now=NOW)
            assert enrolled.outcome == WaitlistOutcome.ALREADY_ENROLLED

            assert len(await waitlist_service.list_waitlist(session, instance.instance_id)) == 1

    anyio.run(_run)


def test_expire_is_terminal(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            instance = await _seed_full_instance(session)
            entry_ids = await _queue(session, instance.instance_id, "client-a")

            expired = await waitlist_service.expire_waitlist_entry(session, entry_ids["client-a"])
            assert expired.status == statuses.EXPIRED

            with pytest.raises(ValidationError) as exc_info:
                await waitlist_service.expire_waitlist_entry(session, entry_ids["client-a"])
            assert exc_info.value.errors[0]["code"] == "waitlist_entry_not_active"

            history = await waitlist_service.list_waitlist(session, instance.instance_id, include_closed=True)
            assert [entry.status for entry in history] == [statuses.EXPIRED]

    anyio.run(_run)


def test_capacity_increase_promotes_waiting_clients(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            instance = await _seed_full_instance(session)
            await _queue(session, instance.instance_id, "client-a", "client-b", "client-c")

            await cascade_editor.update_instance(
                session, instance.instance_id, SessionInstancePatch(capacity=3), now=NOW
            )

            assert await enrollment_service.participant_count(session, instance.instance_id) == 3
            assert await enrollment_service.is_enrolled(session, instance.instance_id, "client-a")
            assert await enrollment_service.is_enrolled(session, instance.instance_id, "client-b")
            remaining = await waitlist_service.list_waitlist(session, instance.instance_id)
            assert [entry.client_ref for entry in remaining] == ["client-c"]

    anyio.run(_run)


def test_promotion_queues_notification(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            instance = await _seed_full_instance(session)
            entry_ids = await _queue(session, instance.instance_id, "client-a")

            await enrollment_service.cancel(
                session, instance.instance_id, "holder-0", reference_date=NOW.date(), now=NOW
            )

            event = await session.scalar(
                select(OutboxEvent).where(
                    OutboxEvent.dedupe_key
                    == f"{notifications.TEMPLATE_WAITLIST_PROMOTED}:entry:{entry_ids['client-a']}"
                )
            )
            assert event is not None
            assert event.status == "pending"
            assert event.payload_json["recipient"] == "client-a"
            assert event.payload_json["template"] == notifications.TEMPLATE_WAITLIST_PROMOTED
            assert event.payload_json["payload"]["instance_id"] == instance.instance_id

    anyio.run(_run)
