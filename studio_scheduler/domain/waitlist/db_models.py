from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from studio_scheduler.domain.waitlist import statuses
from studio_scheduler.infra.db import Base


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("session_instances.instance_id", ondelete="SET NULL"), nullable=True
    )
    client_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=statuses.PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_waitlist_instance_status_created", "instance_id", "status", "created_at"),
        Index(
            "uq_waitlist_active_pair",
            "instance_id",
            "client_ref",
            unique=True,
            postgresql_where=sa.text("status IN ('PENDING', 'NOTIFIED')"),
            sqlite_where=sa.text("status IN ('PENDING', 'NOTIFIED')"),
        ),
    )
