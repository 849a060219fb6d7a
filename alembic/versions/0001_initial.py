"""Initial episode scheduler schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_TIERS = ("TRIAL", "STARTER", "GROWTH", "ENTERPRISE")
_CADENCE_MODES = ("daily", "weekly", "custom")
_EPISODE_STATUSES = ("DRAFT", "GENERATING", "PUBLISHED", "FAILED", "CANCELLED")
_QUEUE_STATUSES = ("pending", "processing", "completed", "failed", "cancelled", "blocked")
_NOTE_STATUSES = ("pending", "acknowledged", "archived")


def _enum(values: tuple[str, ...], name: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade() -> None:
    """Create organizations, projects, episodes, the queue and cost tables."""
    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("subscription_tier", _enum(_TIERS, "subscription_tier"), nullable=False),
        sa.Column("daily_cost_limit", sa.Numeric(10, 2), nullable=True),
        sa.Column("episode_cost_limit", sa.Numeric(10, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "projects",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("brief", sa.JSON(), nullable=False),
        sa.Column("memories", sa.JSON(), nullable=False),
        sa.Column("timezone", sa.String(length=100), nullable=False),
        sa.Column("cadence_mode", _enum(_CADENCE_MODES, "cadence_mode"), nullable=False),
        sa.Column("cadence_days", sa.JSON(), nullable=False),
        sa.Column("delivery_hour", sa.Integer(), nullable=False),
        sa.Column("is_paused", sa.Boolean(), nullable=False),
        sa.Column("next_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "episodes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("idempotency_key", sa.String(length=200), nullable=False),
        sa.Column("status", _enum(_EPISODE_STATUSES, "episode_status"), nullable=False),
        sa.Column("status_reason", sa.String(length=100), nullable=True),
        sa.Column("episode_number", sa.Integer(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("generation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_late", sa.Boolean(), nullable=False),
        sa.Column("generation_attempts", sa.Integer(), nullable=False),
        sa.Column("generation_errors", sa.JSON(), nullable=False),
        sa.Column("progress", sa.JSON(), nullable=True),
        sa.Column("dispatched_note_ids", sa.JSON(), nullable=True),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("sources", sa.JSON(), nullable=True),
        sa.Column("reading_minutes", sa.Integer(), nullable=True),
        sa.Column("cost_reported", sa.Numeric(12, 4), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("project_id", "idempotency_key", name="uq_episodes_project_slot"),
    )
    op.create_index("ix_episodes_project_status", "episodes", ["project_id", "status"])
    op.create_table(
        "episode_audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("episode_id", sa.Uuid(), sa.ForeignKey("episodes.id"), nullable=False),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("from_status", _enum(_EPISODE_STATUSES, "episode_status"), nullable=False),
        sa.Column("to_status", _enum(_EPISODE_STATUSES, "episode_status"), nullable=False),
        sa.Column("reason", sa.String(length=200), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "generation_queue",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("episode_id", sa.Uuid(), sa.ForeignKey("episodes.id"), nullable=True),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("generation_start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("target_delivery_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", _enum(_QUEUE_STATUSES, "queue_status"), nullable=False),
        sa.Column("lease_holder", sa.String(length=200), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_generation_queue_active_episode",
        "generation_queue",
        ["episode_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('pending', 'processing')"),
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )
    op.create_index(
        "ix_generation_queue_dispatch",
        "generation_queue",
        ["status", "priority", "generation_start_time"],
    )
    op.create_table(
        "generation_cost_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("episode_id", sa.Uuid(), sa.ForeignKey("episodes.id"), nullable=True),
        sa.Column("operation", sa.String(length=100), nullable=False),
        sa.Column("total_cost", sa.Numeric(12, 4), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "daily_cost_ledger",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Uuid(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("total_cost", sa.Numeric(12, 4), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("organization_id", "date", name="uq_daily_cost_ledger_org_date"),
    )
    op.create_table(
        "planning_notes",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("note", sa.String(length=1000), nullable=False),
        sa.Column("status", _enum(_NOTE_STATUSES, "planning_note_status"), nullable=False),
        sa.Column("applies_to_episode_id", sa.Uuid(), sa.ForeignKey("episodes.id"), nullable=True),
        sa.Column("rollover_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    """Drop the episode scheduler schema."""
    op.drop_table("planning_notes")
    op.drop_table("daily_cost_ledger")
    op.drop_table("generation_cost_records")
    op.drop_index("ix_generation_queue_dispatch", table_name="generation_queue")
    op.drop_index("uq_generation_queue_active_episode", table_name="generation_queue")
    op.drop_table("generation_queue")
    op.drop_table("episode_audit_logs")
    op.drop_index("ix_episodes_project_status", table_name="episodes")
    op.drop_table("episodes")
    op.drop_table("projects")
    op.drop_table("organizations")
