import asyncio
import re
from datetime import date, datetime, time, timedelta

import anyio
import pytest
from sqlalchemy import select

from studio_scheduler.domain.errors import (
    CapacityExceededError,
    ConflictError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenNotFoundError,
    ValidationError,
)
from studio_scheduler.domain.guest_signups import service as guest_service
from studio_scheduler.domain.guest_signups import statuses
from studio_scheduler.domain.guest_signups.db_models import RescheduleProposal
from studio_scheduler.domain.guest_signups.schemas import GuestSignupRequest
from studio_scheduler.domain.sessions import service as enrollment_service
from studio_scheduler.domain.sessions.db_models import SessionInstance
from tests.conftest import TEST_NOW

NOW = TEST_NOW


def _guest(email: str = "ana@example.com") -> GuestSignupRequest:
    return GuestSignupRequest(guest_name="Ana Guest", guest_email=email, guest_phone="+1 555 0100")


async def _seed_instance(session, *, session_date: date, start: time = time(18, 0), capacity: int = 2):
    instance = SessionInstance(
        name="Pilates Reformer",
        instructor_ref="coach-5",
        session_date=session_date,
        start_time=start,
        duration_minutes=50,
        capacity=capacity,
    )
    session.add(instance)
    await session.commit()
    await session.refresh(instance)
    return instance


async def _approved_guest_with_proposal(session):
    current = await _seed_instance(session, session_date=date(2025, 1, 10))
    target = await _seed_instance(session, session_date=date(2025, 1, 12), capacity=1)
    signup = await guest_service.create_guest_signup(session, current.instance_id, _guest(), now=NOW)
    await guest_service.approve_guest_signup(session, signup.signup_id, decided_by="staff-1")
    proposal = await guest_service.propose_reschedule(session, signup.signup_id, target.instance_id, now=NOW)
    return current, target, signup, proposal


def test_propose_releases_seat_and_issues_token(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            current, target, signup, proposal = await _approved_guest_with_proposal(session)

            assert re.fullmatch(r"[0-9a-f]{64}", proposal.token)
            assert proposal.expires_at == NOW + timedelta(hours=72)
            await session.refresh(signup)
            assert signup.status == statuses.RESCHEDULE_PROPOSED
            assert await enrollment_service.participant_count(session, current.instance_id) == 0
            assert await enrollment_service.participant_count(session, target.instance_id) == 0

    anyio.run(_run)


def test_confirm_moves_guest_once(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            current, target, signup, proposal = await _approved_guest_with_proposal(session)

            moved = await guest_service.confirm_reschedule(session, proposal.token, now=NOW)
            assert moved.instance_id == target.instance_id
            assert moved.status == statuses.APPROVED
            assert await enrollment_service.participant_count(session, target.instance_id) == 1

            with pytest.raises(TokenAlreadyUsedError):
                await guest_service.confirm_reschedule(session, proposal.token, now=NOW)

    anyio.run(_run)


def test_unknown_and_expired_tokens(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            _, _, _, proposal = await _approved_guest_with_proposal(session)

            with pytest.raises(TokenNotFoundError):
                await guest_service.confirm_reschedule(session, "0" * 64, now=NOW)

            with pytest.raises(TokenExpiredError):
                await guest_service.confirm_reschedule(session, proposal.token, now=NOW + timedelta(hours=73))

    anyio.run(_run)


def test_full_target_leaves_token_unused(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            current, target, signup, proposal = await _approved_guest_with_proposal(session)
            current_id, signup_id, proposal_id = current.instance_id, signup.signup_id, proposal.proposal_id
            await enrollment_service.book(session, target.instance_id, "client-a")

            # The failed move rolls back the token claim, expiring loaded objects.
            with pytest.raises(CapacityExceededError):
                await guest_service.confirm_reschedule(session, proposal.token, now=NOW)

        async with async_session_maker() as session:
            stored = await session.scalar(
                select(RescheduleProposal).where(RescheduleProposal.proposal_id == proposal_id)
            )
            assert stored.used_at is None
            unchanged = await guest_service.get_signup(session, signup_id)
            assert unchanged.instance_id == current_id
            assert unchanged.status == statuses.RESCHEDULE_PROPOSED

    anyio.run(_run)


def test_concurrent_confirmations_single_winner(file_session_maker):
    async def _confirm(token: str):
        async with file_session_maker() as session:
            return await guest_service.confirm_reschedule(session, token, now=NOW)

    async def _run():
        async with file_session_maker() as session:
            _, target, _, proposal = await _approved_guest_with_proposal(session)

        results = await asyncio.gather(*(_confirm(proposal.token) for _ in range(4)), return_exceptions=True)
        winners = [result for result in results if not isinstance(result, Exception)]
        losers = [result for result in results if isinstance(result, Exception)]
        assert len(winners) == 1
        assert all(isinstance(error, TokenAlreadyUsedError) for error in losers)

        async with file_session_maker() as session:
            assert await enrollment_service.participant_count(session, target.instance_id) == 1

    asyncio.run(_run())


def test_confirm_endpoint_is_single_use(client, async_session_maker):
    async def _seed():
        async with async_session_maker() as session:
            _, target, _, proposal = await _approved_guest_with_proposal(session)
            return target.instance_id, proposal.token

    target_id, token = anyio.run(_seed)

    first = client.post("/v1/public/reschedule/confirm", json={"token": token})
    assert first.status_code == 200
    assert first.json()["instance_id"] == target_id
    assert first.json()["status"] == statuses.APPROVED

    second = client.post("/v1/public/reschedule/confirm", json={"token": token})
    assert second.status_code == 409
    assert second.json()["type"].endswith("/token-already-used")


def test_signup_window_closes_before_start(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            soon = await _seed_instance(session, session_date=NOW.date(), start=time(8, 30))
            started = await _seed_instance(session, session_date=NOW.date(), start=time(7, 0))

            with pytest.raises(ValidationError) as closed:
                await guest_service.create_guest_signup(session, soon.instance_id, _guest(), now=NOW)
            assert closed.value.errors[0]["code"] == "signup_closed"

            with pytest.raises(ValidationError) as late:
                await guest_service.create_guest_signup(session, started.instance_id, _guest(), now=NOW)
            assert late.value.errors[0]["code"] == "session_started"

    anyio.run(_run)


def test_duplicate_email_and_full_session(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            instance = await _seed_instance(session, session_date=date(2025, 1, 10), capacity=1)
            first = await guest_service.create_guest_signup(session, instance.instance_id, _guest(), now=NOW)
            assert first.status == statuses.PENDING_APPROVAL

            with pytest.raises(ConflictError):
                await guest_service.create_guest_signup(
                    session, instance.instance_id, _guest("ANA@example.com"), now=NOW
                )

            await enrollment_service.book(session, instance.instance_id, "client-a")
            with pytest.raises(CapacityExceededError):
                await guest_service.create_guest_signup(
                    session, instance.instance_id, _guest("ben@example.com"), now=NOW
                )
            with pytest.raises(CapacityExceededError):
                await guest_service.approve_guest_signup(session, first.signup_id, decided_by="staff-1")

            rejected = await guest_service.reject_guest_signup(session, first.signup_id, decided_by="staff-1")
            assert rejected.status == statuses.REJECTED

    anyio.run(_run)
