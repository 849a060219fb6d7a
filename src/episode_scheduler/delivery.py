"""Delivery notification boundary for published episodes."""

from __future__ import annotations

import logging
import uuid
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from models import Episode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveredEpisode:
    """Published episode details handed to the notifier."""

    episode_id: uuid.UUID
    project_id: uuid.UUID
    organization_id: uuid.UUID
    episode_number: int
    title: str | None
    scheduled_for: datetime
    published_at: datetime | None
    late: bool


class DeliveryNotifier(Protocol):
    """Protocol for delivering 'your episode is ready' notifications."""

    def notify_episode_ready(self, episode: DeliveredEpisode) -> None:
        """Notify the subscriber that an episode is available."""
        ...


class LoggingDeliveryNotifier:
    """Notifier that records deliveries in the log only."""

    def notify_episode_ready(self, episode: DeliveredEpisode) -> None:
        """Log the delivery."""
        logger.info(
            "Episode %s (#%s) delivered for project %s late=%s",
            episode.episode_id,
            episode.episode_number,
            episode.project_id,
            episode.late,
        )


def is_late(episode: Episode) -> bool:
    """Return True when generation finished at or after the delivery instant."""
    if episode.published_at is None:
        return False
    return episode.published_at >= episode.scheduled_for


def deliver_episode(
    session_factory: Callable[[], Session],
    notifier: DeliveryNotifier,
    episode_id: uuid.UUID,
    *,
    now: datetime,
    late: bool,
) -> bool:
    """Claim and deliver one published episode exactly once.

    The claim sets delivered_at before notifying; if the notifier fails the
    claim is restored so a later sweep retries.
    """
    with closing(session_factory()) as session:
        claimed = (
            session.query(Episode)
            .filter(
                Episode.id == episode_id,
                Episode.status == "PUBLISHED",
                Episode.delivered_at.is_(None),
            )
            .update(
                {"delivered_at": now, "delivered_late": late, "updated_at": now},
                synchronize_session=False,
            )
        )
        if claimed != 1:
            session.rollback()
            return False
        episode = session.get(Episode, episode_id, populate_existing=True)
        assert episode is not None
        delivered = DeliveredEpisode(
            episode_id=episode.id,
            project_id=episode.project_id,
            organization_id=episode.organization_id,
            episode_number=episode.episode_number,
            title=episode.title,
            scheduled_for=episode.scheduled_for,
            published_at=episode.published_at,
            late=late,
        )
        session.commit()

    try:
        notifier.notify_episode_ready(delivered)
    except Exception:
        logger.exception("Delivery notification failed for episode %s", episode_id)
        _restore_delivery_claim(session_factory, episode_id)
        return False
    return True


def deliver_due_episodes(
    session_factory: Callable[[], Session],
    notifier: DeliveryNotifier,
    *,
    now: datetime,
    limit: int,
) -> int:
    """Deliver published episodes whose delivery instant has arrived."""
    with closing(session_factory()) as session:
        due = (
            session.query(Episode)
            .filter(
                Episode.status == "PUBLISHED",
                Episode.delivered_at.is_(None),
                Episode.scheduled_for <= now,
            )
            .order_by(Episode.scheduled_for.asc(), Episode.id.asc())
            .limit(limit)
            .all()
        )
        candidates = [(episode.id, is_late(episode)) for episode in due]

    delivered = 0
    for episode_id, late in candidates:
        if deliver_episode(session_factory, notifier, episode_id, now=now, late=late):
            delivered += 1
    return delivered


def _restore_delivery_claim(
    session_factory: Callable[[], Session],
    episode_id: uuid.UUID,
) -> None:
    """Clear delivered_at after a failed notification."""
    try:
        with closing(session_factory()) as session:
            session.query(Episode).filter(Episode.id == episode_id).update(
                {"delivered_at": None, "delivered_late": False},
                synchronize_session=False,
            )
            session.commit()
    except Exception:
        logger.exception("Failed to restore delivery claim for episode %s", episode_id)
