from __future__ import annotations

from datetime import date, datetime, time

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, func
from sqlalchemy.orm import Mapped, mapped_column

from studio_scheduler.domain.appointments import statuses
from studio_scheduler.infra.db import Base


class Appointment(Base):
    __tablename__ = "appointments"

    appointment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    staff_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    client_ref: Mapped[str | None] = mapped_column(String(64))
    guest_name: Mapped[str | None] = mapped_column(String(120))
    guest_email: Mapped[str | None] = mapped_column(String(255))
    guest_phone: Mapped[str | None] = mapped_column(String(32))
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default=statuses.OTHER)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=statuses.PENDING_APPROVAL)
    signal_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text)
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
        Index("ix_appointments_staff_date", "staff_ref", "appointment_date", "status"),
        Index("ix_appointments_client", "client_ref"),
    )


class AppointmentRescheduleProposal(Base):
    __tablename__ = "appointment_reschedule_proposals"

    proposal_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(
        ForeignKey("appointments.appointment_id", ondelete="CASCADE"), nullable=False
    )
    proposed_date: Mapped[date] = mapped_column(Date, nullable=False)
    proposed_time: Mapped[time] = mapped_column(Time, nullable=False)
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
