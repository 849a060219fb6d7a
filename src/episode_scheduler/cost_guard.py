"""Per-organization daily spend guard and cost ledger aggregation."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models import DailyCostLedger, GenerationCostRecord, Organization

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostGuardDecision:
    """Outcome of a pre-dispatch daily spend check."""

    organization_id: uuid.UUID
    ledger_date: date
    total_cost: Decimal
    daily_limit: Decimal

    @property
    def allowed(self) -> bool:
        """Return True while the organization is under its daily limit."""
        return self.total_cost < self.daily_limit


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _ledger_date(now: datetime) -> date:
    if now.tzinfo is None:
        return now.date()
    return now.astimezone(timezone.utc).date()


def resolve_daily_limit(organization: Organization | None) -> Decimal:
    """Return the organization's daily limit or the configured default."""
    if organization is not None and organization.daily_cost_limit is not None:
        return _to_decimal(organization.daily_cost_limit)
    return _to_decimal(settings.scheduler.default_daily_cost_limit)


def resolve_episode_limit(organization: Organization | None) -> Decimal:
    """Return the organization's per-episode limit or the configured default."""
    if organization is not None and organization.episode_cost_limit is not None:
        return _to_decimal(organization.episode_cost_limit)
    return _to_decimal(settings.scheduler.default_episode_cost_limit)


def check_daily_limit(
    session: Session,
    organization_id: uuid.UUID,
    *,
    now: datetime,
) -> CostGuardDecision:
    """Read today's ledger for an organization and compare it to the limit.

    Advisory only: a generation that races this read may push the total over
    the limit once, and the next check will reject.
    """
    ledger_date = _ledger_date(now)
    total = (
        session.query(DailyCostLedger.total_cost)
        .filter(
            DailyCostLedger.organization_id == organization_id,
            DailyCostLedger.date == ledger_date,
        )
        .scalar()
    )
    organization = session.get(Organization, organization_id)
    return CostGuardDecision(
        organization_id=organization_id,
        ledger_date=ledger_date,
        total_cost=_to_decimal(total or 0),
        daily_limit=resolve_daily_limit(organization),
    )


def record_generation_cost(
    session: Session,
    organization_id: uuid.UUID,
    episode_id: uuid.UUID | None,
    cost: object,
    *,
    now: datetime,
    operation: str = "generation",
) -> GenerationCostRecord:
    """Append a cost record and fold it into the organization's daily ledger."""
    amount = _to_decimal(cost)
    if amount < 0:
        raise ValueError("Generation cost must be >= 0.")
    record = GenerationCostRecord(
        organization_id=organization_id,
        episode_id=episode_id,
        operation=operation,
        total_cost=amount,
        occurred_at=now,
    )
    session.add(record)
    _increment_ledger(session, organization_id, _ledger_date(now), amount, now=now)

    organization = session.get(Organization, organization_id)
    episode_limit = resolve_episode_limit(organization)
    if amount > episode_limit:
        logger.warning(
            "Episode %s cost %s exceeded per-episode limit %s for organization %s",
            episode_id,
            amount,
            episode_limit,
            organization_id,
        )
    session.flush()
    return record


def _increment_ledger(
    session: Session,
    organization_id: uuid.UUID,
    ledger_date: date,
    amount: Decimal,
    *,
    now: datetime,
) -> None:
    """Atomically add to the ledger row, inserting it on first use."""
    if _apply_increment(session, organization_id, ledger_date, amount, now=now):
        return
    try:
        with session.begin_nested():
            session.add(
                DailyCostLedger(
                    organization_id=organization_id,
                    date=ledger_date,
                    total_cost=amount,
                    record_count=1,
                    updated_at=now,
                )
            )
            session.flush()
    except IntegrityError:
        if not _apply_increment(session, organization_id, ledger_date, amount, now=now):
            raise


def _apply_increment(
    session: Session,
    organization_id: uuid.UUID,
    ledger_date: date,
    amount: Decimal,
    *,
    now: datetime,
) -> bool:
    updated = (
        session.query(DailyCostLedger)
        .filter(
            DailyCostLedger.organization_id == organization_id,
            DailyCostLedger.date == ledger_date,
        )
        .update(
            {
                "total_cost": DailyCostLedger.total_cost + amount,
                "record_count": DailyCostLedger.record_count + 1,
                "updated_at": now,
            },
            synchronize_session=False,
        )
    )
    return updated == 1
