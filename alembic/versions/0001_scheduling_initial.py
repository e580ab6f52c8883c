"""scheduling initial

Revision ID: 0001_scheduling_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_scheduling_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "recurring_series",
        sa.Column("series_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(length=120), nullable=True),
        sa.Column("instructor_ref", sa.String(length=64), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("series_start_date", sa.Date(), nullable=False),
        sa.Column("series_end_date", sa.Date(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_recurring_series_instructor", "recurring_series", ["instructor_ref"])

    op.create_table(
        "series_exclusions",
        sa.Column("exclusion_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "series_id",
            sa.Integer(),
            sa.ForeignKey("recurring_series.series_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("excluded_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("series_id", "excluded_date", name="uq_series_exclusions_date"),
    )

    op.create_table(
        "session_instances",
        sa.Column("instance_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(length=120), nullable=True),
        sa.Column("instructor_ref", sa.String(length=64), nullable=False),
        sa.Column("session_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column(
            "series_id",
            sa.Integer(),
            sa.ForeignKey("recurring_series.series_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "parent_series_id",
            sa.Integer(),
            sa.ForeignKey("recurring_series.series_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_generated_instance", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("origin_date", sa.Date(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_session_instances_parent_date", "session_instances", ["parent_series_id", "session_date"])
    op.create_index("ix_session_instances_date", "session_instances", ["session_date", "start_time"])
    op.create_index(
        "uq_session_instances_origin",
        "session_instances",
        ["parent_series_id", "origin_date"],
        unique=True,
    )

    op.create_table(
        "enrollments",
        sa.Column("enrollment_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "instance_id",
            sa.Integer(),
            sa.ForeignKey("session_instances.instance_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("client_ref", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("session_date", sa.Date(), nullable=False),
        sa.Column("session_time", sa.Time(), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancel_reason", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_enrollments_client_status", "enrollments", ["client_ref", "status"])
    op.create_index("ix_enrollments_instance_status", "enrollments", ["instance_id", "status"])
    op.create_index(
        "uq_enrollments_active_pair",
        "enrollments",
        ["instance_id", "client_ref"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "waitlist_entries",
        sa.Column("entry_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "instance_id",
            sa.Integer(),
            sa.ForeignKey("session_instances.instance_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("client_ref", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("notified_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_waitlist_instance_status_created",
        "waitlist_entries",
        ["instance_id", "status", "created_at"],
    )
    op.create_index(
        "uq_waitlist_active_pair",
        "waitlist_entries",
        ["instance_id", "client_ref"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'NOTIFIED')"),
        sqlite_where=sa.text("status IN ('PENDING', 'NOTIFIED')"),
    )

    op.create_table(
        "series_subscriptions",
        sa.Column("subscription_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_ref", sa.String(length=64), nullable=False),
        sa.Column(
            "series_id",
            sa.Integer(),
            sa.ForeignKey("recurring_series.series_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("subscription_start_date", sa.Date(), nullable=False),
        sa.Column("subscription_end_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_series_subscriptions_series_active", "series_subscriptions", ["series_id", "is_active"])
    op.create_index("ix_series_subscriptions_client", "series_subscriptions", ["client_ref"])
    op.create_index(
        "uq_series_subscriptions_active_pair",
        "series_subscriptions",
        ["client_ref", "series_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )

    op.create_table(
        "guest_signups",
        sa.Column("signup_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "instance_id",
            sa.Integer(),
            sa.ForeignKey("session_instances.instance_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("guest_name", sa.String(length=120), nullable=False),
        sa.Column("guest_email", sa.String(length=255), nullable=False),
        sa.Column("guest_phone", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("decided_by", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("guest_email", "instance_id", name="uq_guest_signups_email_instance"),
    )
    op.create_index("ix_guest_signups_instance_status", "guest_signups", ["instance_id", "status"])

    op.create_table(
        "reschedule_proposals",
        sa.Column("proposal_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "signup_id",
            sa.Integer(),
            sa.ForeignKey("guest_signups.signup_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "proposed_instance_id",
            sa.Integer(),
            sa.ForeignKey("session_instances.instance_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_reschedule_proposals_signup", "reschedule_proposals", ["signup_id"])

    op.create_table(
        "appointments",
        sa.Column("appointment_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("staff_ref", sa.String(length=64), nullable=False),
        sa.Column("client_ref", sa.String(length=64), nullable=True),
        sa.Column("guest_name", sa.String(length=120), nullable=True),
        sa.Column("guest_email", sa.String(length=255), nullable=True),
        sa.Column("guest_phone", sa.String(length=32), nullable=True),
        sa.Column("appointment_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("signal_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_appointments_staff_date", "appointments", ["staff_ref", "appointment_date", "status"])
    op.create_index("ix_appointments_client", "appointments", ["client_ref"])

    op.create_table(
        "appointment_reschedule_proposals",
        sa.Column("proposal_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "appointment_id",
            sa.Integer(),
            sa.ForeignKey("appointments.appointment_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("proposed_date", sa.Date(), nullable=False),
        sa.Column("proposed_time", sa.Time(), nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "outbox_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_outbox_status_next_attempt", "outbox_events", ["status", "next_attempt_at"])
    op.create_index("ix_outbox_dedupe", "outbox_events", ["dedupe_key"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_outbox_dedupe", table_name="outbox_events")
    op.drop_index("ix_outbox_status_next_attempt", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_table("appointment_reschedule_proposals")
    op.drop_index("ix_appointments_client", table_name="appointments")
    op.drop_index("ix_appointments_staff_date", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("ix_reschedule_proposals_signup", table_name="reschedule_proposals")
    op.drop_table("reschedule_proposals")
    op.drop_index("ix_guest_signups_instance_status", table_name="guest_signups")
    op.drop_table("guest_signups")
    op.drop_index("uq_series_subscriptions_active_pair", table_name="series_subscriptions")
    op.drop_index("ix_series_subscriptions_client", table_name="series_subscriptions")
    op.drop_index("ix_series_subscriptions_series_active", table_name="series_subscriptions")
    op.drop_table("series_subscriptions")
    op.drop_index("uq_waitlist_active_pair", table_name="waitlist_entries")
    op.drop_index("ix_waitlist_instance_status_created", table_name="waitlist_entries")
    op.drop_table("waitlist_entries")
    op.drop_index("uq_enrollments_active_pair", table_name="enrollments")
    op.drop_index("ix_enrollments_instance_status", table_name="enrollments")
    op.drop_index("ix_enrollments_client_status", table_name="enrollments")
    op.drop_table("enrollments")
    op.drop_index("uq_session_instances_origin", table_name="session_instances")
    op.drop_index("ix_session_instances_date", table_name="session_instances")
    op.drop_index("ix_session_instances_parent_date", table_name="session_instances")
    op.drop_table("session_instances")
    op.drop_table("series_exclusions")
    op.drop_index("ix_recurring_series_instructor", table_name="recurring_series")
    op.drop_table("recurring_series")
