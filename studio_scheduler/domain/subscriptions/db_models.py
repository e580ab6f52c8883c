from __future__ import annotations

from datetime import date, datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from studio_scheduler.infra.db import Base


class SeriesSubscription(Base):
    __tablename__ = "series_subscriptions"

    subscription_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    series_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_series.series_id", ondelete="SET NULL"), nullable=True
    )
    subscription_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    subscription_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_series_subscriptions_series_active", "series_id", "is_active"),
        Index("ix_series_subscriptions_client", "client_ref"),
        Index(
            "uq_series_subscriptions_active_pair",
            "client_ref",
            "series_id",
            unique=True,
            postgresql_where=sa.text("is_active"),
            sqlite_where=sa.text("is_active = 1"),
        ),
    )
