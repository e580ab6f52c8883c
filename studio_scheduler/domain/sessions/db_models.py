from __future__ import annotations

from datetime import date, datetime, time

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, func
from sqlalchemy.orm import Mapped, mapped_column

from studio_scheduler.domain.sessions import statuses
from studio_scheduler.infra.db import Base


class SessionInstance(Base):
    __tablename__ = "session_instances"

    instance_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(120))
    instructor_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    session_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    series_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_series.series_id", ondelete="SET NULL"), nullable=True
    )
    parent_series_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_series.series_id", ondelete="SET NULL"), nullable=True
    )
    is_generated_instance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    origin_date: Mapped[date | None] = mapped_column(Date)
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
        Index("ix_session_instances_parent_date", "parent_series_id", "session_date"),
        Index("ix_session_instances_date", "session_date", "start_time"),
        Index("uq_session_instances_origin", "parent_series_id", "origin_date", unique=True),
    )

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.session_date, self.start_time)


class Enrollment(Base):
    __tablename__ = "enrollments"

    enrollment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("session_instances.instance_id", ondelete="SET NULL"), nullable=True
    )
    client_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.ENROLLMENT_ACTIVE)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.SOURCE_DIRECT)
    session_date: Mapped[date] = mapped_column(Date, nullable=False)
    session_time: Mapped[time] = mapped_column(Time, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime)
    cancel_reason: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_enrollments_client_status", "client_ref", "status"),
        Index("ix_enrollments_instance_status", "instance_id", "status"),
        Index(
            "uq_enrollments_active_pair",
            "instance_id",
            "client_ref",
            unique=True,
            postgresql_where=sa.text("status = 'ACTIVE'"),
            sqlite_where=sa.text("status = 'ACTIVE'"),
        ),
    )
