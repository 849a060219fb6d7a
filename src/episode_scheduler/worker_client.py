"""Invocation payloads and clients for the external generation worker."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from config import settings
from episode_scheduler.errors import WorkerUnreachable
from services.http_client import HttpClient, RetryConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallbackUrls:
    """Callback endpoints the worker reports progress and outcomes to."""

    progress_url: str
    complete_url: str
    error_url: str

    @staticmethod
    def for_episode(episode_id: uuid.UUID, base_url: str | None = None) -> "CallbackUrls":
        """Build the callback URLs for an episode under a public base URL."""
        base = (base_url or settings.callbacks.base_url).rstrip("/")
        prefix = f"{base}/callbacks/episodes/{episode_id}"
        return CallbackUrls(
            progress_url=f"{prefix}/progress",
            complete_url=f"{prefix}/complete",
            error_url=f"{prefix}/error",
        )


@dataclass(frozen=True)
class GenerationContext:
    """Project context handed to the worker for one generation attempt."""

    brief: dict[str, Any]
    prior_memory: list[Any]
    pending_planning_notes: list[str]


@dataclass(frozen=True)
class GenerationRequest:
    """Dispatcher payload sent to the generation worker."""

    episode_id: uuid.UUID
    project_id: uuid.UUID
    organization_id: uuid.UUID
    attempt: int
    context: GenerationContext
    callbacks: CallbackUrls

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON wire form of the request."""
        return {
            "episodeId": str(self.episode_id),
            "projectId": str(self.project_id),
            "organizationId": str(self.organization_id),
            "attempt": self.attempt,
            "context": {
                "brief": self.context.brief,
                "priorMemory": self.context.prior_memory,
                "pendingPlanningNotes": self.context.pending_planning_notes,
            },
            "callbacks": {
                "progressUrl": self.callbacks.progress_url,
                "completeUrl": self.callbacks.complete_url,
                "errorUrl": self.callbacks.error_url,
            },
        }


class GenerationWorker(Protocol):
    """Protocol for clients that hand an episode to the generation worker."""

    def invoke(self, request: GenerationRequest) -> None:
        """Start generation; raise WorkerUnreachable if the worker did not accept it."""
        ...


class HttpGenerationWorker:
    """Generation worker client that posts invocation payloads over HTTP."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        http_client: HttpClient | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        """Initialize the client with the worker endpoint and HTTP settings."""
        self._base_url = (base_url or settings.worker.base_url).rstrip("/")
        key = api_key if api_key is not None else settings.worker.api_key
        headers = {"Authorization": f"Bearer {key}"} if key else None
        self._http = http_client or HttpClient(retry_config=retry_config, headers=headers)

    def invoke(self, request: GenerationRequest) -> None:
        """Post the invocation and return once the worker acknowledges it."""
        url = f"{self._base_url}/generate"
        try:
            response = self._http.post(url, json=request.to_payload())
        except httpx.HTTPStatusError as exc:
            raise WorkerUnreachable(
                f"Generation worker rejected episode {request.episode_id} "
                f"with status {exc.response.status_code}.",
                details={"status_code": exc.response.status_code, "url": url},
            ) from exc
        except httpx.HTTPError as exc:
            raise WorkerUnreachable(
                f"Generation worker unreachable for episode {request.episode_id}: {exc}",
                details={"url": url, "error": type(exc).__name__},
            ) from exc
        if response is None:
            raise WorkerUnreachable(
                f"Generation worker did not acknowledge episode {request.episode_id}.",
                details={"url": url},
            )
        logger.info(
            "Generation worker accepted episode %s attempt %s (status %s)",
            request.episode_id,
            request.attempt,
            response.status_code,
        )
