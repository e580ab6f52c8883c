from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from studio_scheduler.domain.guest_signups import statuses
from studio_scheduler.infra.db import Base


class GuestSignup(Base):
    __tablename__ = "guest_signups"

    signup_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("session_instances.instance_id", ondelete="SET NULL"), nullable=True
    )
    guest_name: Mapped[str] = mapped_column(String(120), nullable=False)
    guest_email: Mapped[str] = mapped_column(String(255), nullable=False)
    guest_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=statuses.PENDING_APPROVAL)
    decided_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("guest_email", "instance_id", name="uq_guest_signups_email_instance"),
        Index("ix_guest_signups_instance_status", "instance_id", "status"),
    )


class RescheduleProposal(Base):
    __tablename__ = "reschedule_proposals"

    proposal_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signup_id: Mapped[int] = mapped_column(
        ForeignKey("guest_signups.signup_id", ondelete="CASCADE"), nullable=False
    )
    proposed_instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("session_instances.instance_id", ondelete="SET NULL"), nullable=True
    )
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_reschedule_proposals_signup", "signup_id"),
    )
