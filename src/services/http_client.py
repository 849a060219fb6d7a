"""HTTP client wrapper with configurable error handling and retry logic.

Used for service-to-service calls such as invoking the generation worker.
Key features:

- Centralized timeout configuration
- Pluggable error handling strategies
- Optional retry logic with exponential backoff
- Improved testability through dependency injection

Usage Examples:

    # POST with default error handling (raises on errors)
    client = HttpClient()
    response = client.post("https://worker.example.com/generate", json={...})

    # Log and return None instead of raising
    client = HttpClient(
        timeout=60,
        error_config=ErrorConfig(strategy=ErrorStrategy.LOG_AND_RETURN_NONE)
    )

    # With retries for transient connection failures
    client = HttpClient(retry_config=RetryConfig(max_attempts=2, backoff_factor=0.5))
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

import httpx

from config import settings

logger = logging.getLogger(__name__)


class ErrorStrategy(Enum):
    """Strategy for handling HTTP errors.

    - RAISE: Re-raise exceptions (default, for strict error handling)
    - LOG_AND_RETURN_NONE: Log error and return None (for graceful degradation)
    """

    RAISE = "raise"
    LOG_AND_RETURN_NONE = "log_and_return_none"


@dataclass
class ErrorConfig:
    """Configuration for error handling behavior.

    Args:
        strategy: How to handle HTTP errors
        log_level: Logging level for errors (default: ERROR)
        include_response_body: Whether to log response body on errors
    """

    strategy: ErrorStrategy = ErrorStrategy.RAISE
    log_level: int = logging.ERROR
    include_response_body: bool = False


@dataclass
class RetryConfig:
    """Configuration for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including initial attempt)
        retry_status_codes: HTTP status codes that should trigger a retry
        backoff_factor: Multiplier for exponential backoff (delay = backoff_factor * 2^attempt)
        max_backoff: Maximum backoff delay in seconds
        retry_exceptions: Exception types that should trigger a retry
    """

    max_attempts: int = 3
    retry_status_codes: set[int] = field(default_factory=lambda: {502, 503, 504})
    backoff_factor: float = 2.0
    max_backoff: float = 30.0
    retry_exceptions: tuple[type[Exception], ...] = (
        httpx.ConnectError,
        httpx.ConnectTimeout,
        httpx.PoolTimeout,
    )


class HttpClient:
    """Synchronous HTTP client with configurable error handling and retries.

    Args:
        timeout: Request timeout in seconds (default: settings.worker.timeout)
        connect_timeout: Connection timeout in seconds (default: settings.worker.connect_timeout)
        error_config: Error handling configuration
        retry_config: Retry configuration (None = no retries)
        headers: Headers sent with every request
    """

    def __init__(
        self,
        timeout: int | None = None,
        connect_timeout: int | None = None,
        error_config: ErrorConfig | None = None,
        retry_config: RetryConfig | None = None,
        headers: dict[str, str] | None = None,
    ):
        """Initialize the synchronous HTTP client."""
        self.timeout = timeout if timeout is not None else settings.worker.timeout
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.worker.connect_timeout
        )
        self.error_config = error_config or ErrorConfig()
        self.retry_config = retry_config
        self.headers = dict(headers or {})

    def post(self, url: str, **kwargs) -> httpx.Response | None:
        """Perform a synchronous POST request.

        Args:
            url: Target URL
            **kwargs: Additional arguments passed to httpx (json, data, headers, etc.)

        Returns:
            Response object, or None if error_strategy is LOG_AND_RETURN_NONE

        Raises:
            httpx.HTTPError: If error_strategy is RAISE and request fails
        """
        return self._request("POST", url, **kwargs)

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response | None:
        """Execute an HTTP request with error handling and optional retries."""
        if self.headers:
            kwargs["headers"] = {**self.headers, **(kwargs.get("headers") or {})}
        if self.retry_config is None:
            return self._execute_once(method, url, **kwargs)
        return self._execute_with_retry(method, url, **kwargs)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout))

    def _execute_once(self, method: str, url: str, **kwargs) -> httpx.Response | None:
        """Execute a single HTTP request with error handling."""
        try:
            with self._client() as client:
                response = client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            return self._handle_error(e, method, url)

    def _execute_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response | None:
        """Execute an HTTP request with retry logic and exponential backoff."""
        assert self.retry_config is not None
        last_exception: Exception | None = None

        for attempt in range(self.retry_config.max_attempts):
            try:
                with self._client() as client:
                    response = client.request(method, url, **kwargs)
                    response.raise_for_status()
                    return response
            except httpx.HTTPStatusError as e:
                last_exception = e
                if e.response.status_code not in self.retry_config.retry_status_codes:
                    return self._handle_error(e, method, url)
                if attempt + 1 >= self.retry_config.max_attempts:
                    break
                self._backoff(method, url, attempt, f"status {e.response.status_code}")
            except self.retry_config.retry_exceptions as e:
                last_exception = e
                if attempt + 1 >= self.retry_config.max_attempts:
                    break
                self._backoff(method, url, attempt, type(e).__name__)
            except httpx.RequestError as e:
                last_exception = e
                break

        assert last_exception is not None
        return self._handle_error(last_exception, method, url)

    def _backoff(self, method: str, url: str, attempt: int, reason: str) -> None:
        assert self.retry_config is not None
        delay = min(
            self.retry_config.backoff_factor * (2**attempt),
            self.retry_config.max_backoff,
        )
        logger.warning(
            "HTTP %s %s failed with %s, retrying in %.1fs (attempt %s/%s)",
            method,
            url,
            reason,
            delay,
            attempt + 1,
            self.retry_config.max_attempts,
        )
        time.sleep(delay)

    def _handle_error(self, error: Exception, method: str, url: str) -> httpx.Response | None:
        """Handle HTTP errors according to configured strategy."""
        if self.error_config.strategy == ErrorStrategy.RAISE:
            raise error

        error_msg = f"HTTP {method} {url} failed: {error}"
        if isinstance(error, httpx.HTTPStatusError) and self.error_config.include_response_body:
            error_msg += f"\nResponse body: {error.response.text}"
        logger.log(self.error_config.log_level, error_msg)
        return None
