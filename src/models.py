"""Data models for the episode scheduler."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.attributes import set_committed_value

# SQLAlchemy base
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


SubscriptionTierEnum = Enum(
    "TRIAL",
    "STARTER",
    "GROWTH",
    "ENTERPRISE",
    name="subscription_tier",
    native_enum=False,
)
CadenceModeEnum = Enum(
    "daily",
    "weekly",
    "custom",
    name="cadence_mode",
    native_enum=False,
)
EpisodeStatusEnum = Enum(
    "DRAFT",
    "GENERATING",
    "PUBLISHED",
    "FAILED",
    "CANCELLED",
    name="episode_status",
    native_enum=False,
)
QueueStatusEnum = Enum(
    "pending",
    "processing",
    "completed",
    "failed",
    "cancelled",
    "blocked",
    name="queue_status",
    native_enum=False,
)
PlanningNoteStatusEnum = Enum(
    "pending",
    "acknowledged",
    "archived",
    name="planning_note_status",
    native_enum=False,
)

# Queue statuses that count as live work for an episode.
ACTIVE_QUEUE_STATUSES = ("pending", "processing")
TERMINAL_EPISODE_STATUSES = ("PUBLISHED", "FAILED", "CANCELLED")


class Organization(Base):
    """Subscriber organization with tier and spend limits."""

    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    subscription_tier = Column(SubscriptionTierEnum, nullable=False, default="TRIAL")
    daily_cost_limit = Column(Numeric(10, 2), nullable=True)
    episode_cost_limit = Column(Numeric(10, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Project(Base):
    """Subscriber project with its delivery cadence."""

    __tablename__ = "projects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    title = Column(String(200), nullable=False)
    brief = Column(JSON, nullable=False, default=dict)
    memories = Column(JSON, nullable=False, default=list)
    timezone = Column(String(100), nullable=False, default="UTC")
    cadence_mode = Column(CadenceModeEnum, nullable=False, default="weekly")
    cadence_days = Column(JSON, nullable=False, default=lambda: [1])
    delivery_hour = Column(Integer, nullable=False, default=9)
    is_paused = Column(Boolean, nullable=False, default=False)
    next_scheduled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class Episode(Base):
    """One scheduled unit of generated content for a project."""

    __tablename__ = "episodes"
    __table_args__ = (
        UniqueConstraint("project_id", "idempotency_key", name="uq_episodes_project_slot"),
        Index("ix_episodes_project_status", "project_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=False)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    idempotency_key = Column(String(200), nullable=False)
    status = Column(EpisodeStatusEnum, nullable=False, default="DRAFT")
    status_reason = Column(String(100), nullable=True)
    episode_number = Column(Integer, nullable=False, default=1)
    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    generation_started_at = Column(DateTime(timezone=True), nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    delivered_late = Column(Boolean, nullable=False, default=False)
    generation_attempts = Column(Integer, nullable=False, default=0)
    generation_errors = Column(JSON, nullable=False, default=list)
    progress = Column(JSON, nullable=True)
    dispatched_note_ids = Column(JSON, nullable=True)
    title = Column(String(500), nullable=True)
    content = Column(Text, nullable=True)
    sources = Column(JSON, nullable=True)
    reading_minutes = Column(Integer, nullable=True)
    cost_reported = Column(Numeric(12, 4), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class EpisodeAuditLog(Base):
    """Audit log for guarded episode status transitions."""

    __tablename__ = "episode_audit_logs"

    id = Column(Integer, primary_key=True)
    episode_id = Column(Uuid, ForeignKey("episodes.id"), nullable=False)
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=False)
    from_status = Column(EpisodeStatusEnum, nullable=False)
    to_status = Column(EpisodeStatusEnum, nullable=False)
    reason = Column(String(200), nullable=True)
    occurred_at = Column(DateTime(timezone=True), default=_utcnow)


class GenerationQueueEntry(Base):
    """Leasable work item for generating one episode."""

    __tablename__ = "generation_queue"
    __table_args__ = (
        Index(
            "uq_generation_queue_active_episode",
            "episode_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
        Index(
            "ix_generation_queue_dispatch",
            "status",
            "priority",
            "generation_start_time",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    episode_id = Column(Uuid, ForeignKey("episodes.id"), nullable=True)
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=False)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    priority = Column(Integer, nullable=False, default=5)
    generation_start_time = Column(DateTime(timezone=True), nullable=False)
    target_delivery_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(QueueStatusEnum, nullable=False, default="pending")
    lease_holder = Column(String(200), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class GenerationCostRecord(Base):
    """Append-only record of one reported generation cost."""

    __tablename__ = "generation_cost_records"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    episode_id = Column(Uuid, ForeignKey("episodes.id"), nullable=True)
    operation = Column(String(100), nullable=False, default="generation")
    total_cost = Column(Numeric(12, 4), nullable=False)
    occurred_at = Column(DateTime(timezone=True), default=_utcnow)


class DailyCostLedger(Base):
    """Per-organization, per-day aggregate of generation costs."""

    __tablename__ = "daily_cost_ledger"
    __table_args__ = (
        UniqueConstraint("organization_id", "date", name="uq_daily_cost_ledger_org_date"),
    )

    id = Column(Integer, primary_key=True)
    organization_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    date = Column(Date, nullable=False)
    total_cost = Column(Numeric(12, 4), nullable=False, default=0)
    record_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class PlanningNote(Base):
    """Subscriber feedback carried into the next successful generation."""

    __tablename__ = "planning_notes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=False)
    note = Column(String(1000), nullable=False)
    status = Column(PlanningNoteStatusEnum, nullable=False, default="pending")
    applies_to_episode_id = Column(Uuid, ForeignKey("episodes.id"), nullable=True)
    rollover_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


def _ensure_aware_timestamp(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC when timezone info is missing."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _normalize_timestamps_on_load(target: Base, *_args: object) -> None:
    """Ensure loaded timestamps retain timezone awareness."""
    for column in target.__table__.columns:
        if not isinstance(column.type, DateTime):
            continue
        value = target.__dict__.get(column.key)
        if isinstance(value, datetime) and value.tzinfo is None:
            set_committed_value(target, column.key, _ensure_aware_timestamp(value))


for _model in (
    Organization,
    Project,
    Episode,
    EpisodeAuditLog,
    GenerationQueueEntry,
    GenerationCostRecord,
    DailyCostLedger,
    PlanningNote,
):
    event.listen(_model, "load", _normalize_timestamps_on_load)
    event.listen(_model, "refresh", _normalize_timestamps_on_load)
