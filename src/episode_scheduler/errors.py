"""Error taxonomy for episode scheduling, dispatch and callbacks."""

from __future__ import annotations


class EpisodeSchedulerError(Exception):
    """Base error carrying a machine-readable code and details."""

    code = "episode_scheduler_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the error with a machine-readable code and details."""
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class SchedulingError(EpisodeSchedulerError):
    """Raised for invalid cadence or timezone configuration."""

    code = "invalid_schedule"


class NotFoundError(EpisodeSchedulerError):
    """Raised when a referenced project or episode does not exist."""

    code = "not_found"


class LeaseConflict(EpisodeSchedulerError):
    """Raised when another dispatcher holds the lease on a queue entry."""

    code = "lease_conflict"


class CostLimitExceeded(EpisodeSchedulerError):
    """Raised when an organization has reached its daily generation spend."""

    code = "cost_limit_exceeded"


class WorkerUnreachable(EpisodeSchedulerError):
    """Raised when the generation worker cannot be reached or times out."""

    code = "worker_unreachable"


class WorkerReportedError(EpisodeSchedulerError):
    """Represents an error reported by the generation worker callback."""

    code = "worker_reported_error"


class InvalidTransition(EpisodeSchedulerError):
    """Raised when a guarded episode transition does not match current state."""

    code = "invalid_transition"

    def __init__(
        self,
        episode_id: object,
        from_status: str,
        to_status: str,
        current_status: str | None,
    ) -> None:
        """Initialize the error with the attempted and observed statuses."""
        super().__init__(
            f"Episode {episode_id} cannot transition {from_status} -> {to_status} "
            f"(current status: {current_status}).",
            details={
                "episode_id": str(episode_id),
                "from_status": from_status,
                "to_status": to_status,
                "current_status": current_status,
            },
        )
        self.episode_id = episode_id
        self.from_status = from_status
        self.to_status = to_status
        self.current_status = current_status
