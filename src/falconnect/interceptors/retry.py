"""Retry policy with exponential backoff and the interceptor applying it."""

import random
import time
from collections.abc import Callable
from typing import Annotated

import structlog
from pydantic import BaseModel, ConfigDict, Field

from falconnect.config import HttpClientConfig
from falconnect.constants import (
    DEFAULT_MAX_JITTER_MS,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    HTTP_STATUS_TOO_MANY_REQUESTS,
    RETRYABLE_CLIENT_ERROR_CODES,
)
from falconnect.errors import (
    CONNECTION_ERROR_CLASSES,
    HttpClientError,
    HttpStatusError,
    RequestCancelledError,
)
from falconnect.interceptors.base import Handler
from falconnect.models import Request, Response
from falconnect.redact import redact_url_credentials


logger = structlog.get_logger()


class RetryPolicy(BaseModel):
    """Configuration for retry behavior.

    Controls how many times to retry and the backoff strategy:
    delay = min(max_delay_ms, base_delay_ms * 2^attempt + jitter), where
    jitter is uniform in [0, max_jitter_ms). A 429 carrying a non-negative
    integer Retry-After header waits exactly that many seconds instead.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: Annotated[int, Field(ge=0, le=10)] = DEFAULT_MAX_RETRY_ATTEMPTS
    base_delay_ms: Annotated[int, Field(ge=0, le=60_000)] = 1000
    max_delay_ms: Annotated[int, Field(ge=0, le=600_000)] = 30_000
    max_jitter_ms: Annotated[int, Field(ge=0, le=60_000)] = DEFAULT_MAX_JITTER_MS

    @classmethod
    def from_config(cls, config: HttpClientConfig) -> "RetryPolicy":
        """Build a policy from the client configuration."""
        return cls(
            max_attempts=config.max_retry_attempts,
            base_delay_ms=round(config.retry_delay * 1000),
            max_delay_ms=round(config.max_retry_delay * 1000),
        )

    def should_retry(self, error: HttpClientError, attempt: int) -> bool:
        """Determine if a failed attempt should be retried.

        Args:
            error: The error raised by the attempt.
            attempt: Number of retries already performed (0 for the first
                failure).

        Returns:
            True if another attempt should be made.
        """
        if attempt >= self.max_attempts:
            return False

        if error.is_cancellation:
            return False

        if error.error_class in CONNECTION_ERROR_CLASSES:
            return True

        if isinstance(error, HttpStatusError):
            return error.is_server_error or (
                error.status_code in RETRYABLE_CLIENT_ERROR_CODES
            )

        # Local rate-limit rejections, decode and cache errors
        return False

    def compute_delay_ms(self, error: HttpClientError, attempt: int) -> int:
        """Calculate delay before the next attempt.

        Args:
            error: The error raised by the attempt.
            attempt: Number of retries already performed.

        Returns:
            Delay in milliseconds.
        """
        if (
            isinstance(error, HttpStatusError)
            and error.status_code == HTTP_STATUS_TOO_MANY_REQUESTS
        ):
            retry_after = error.retry_after_seconds
            if retry_after is not None:
                return retry_after * 1000

        exponential = self.base_delay_ms * (2**attempt)
        jitter = 0
        if self.max_jitter_ms > 0:
            # Add jitter to prevent thundering herd
            jitter = random.randrange(self.max_jitter_ms)  # noqa: S311
        return min(self.max_delay_ms, exponential + jitter)


class RetryInterceptor:
    """Re-runs the inner chain for retryable failures.

    Attempts are strictly sequential. Each retry is a new Request created
    with Request.for_retry(), so it passes through rate limiting and the
    transport again. When attempts run out the last error is re-raised
    with its retry_count set.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize the retry interceptor.

        Args:
            policy: Retry decision and delay policy.
            sleep: Replacement for the backoff wait (seconds), mainly for
                tests. Defaults to a wait that wakes on cancellation.
        """
        self._policy = policy
        self._sleep = sleep
        self._log = logger.bind(component="retry")

    @property
    def policy(self) -> RetryPolicy:
        """The retry policy in use."""
        return self._policy

    def __call__(self, request: Request, call_next: Handler) -> Response:
        """Send the request, retrying failed attempts per the policy."""
        attempt_request = request
        while True:
            try:
                return call_next(attempt_request)
            except HttpClientError as error:
                attempt = attempt_request.retry_count
                error.retry_count = attempt
                if attempt_request.is_cancelled or not self._policy.should_retry(
                    error, attempt
                ):
                    raise

                delay_ms = self._policy.compute_delay_ms(error, attempt)
                self._log.info(
                    "retry_attempt",
                    method=request.method,
                    url=redact_url_credentials(request.url),
                    attempt=attempt + 1,
                    max_attempts=self._policy.max_attempts,
                    delay_ms=delay_ms,
                    error_class=error.error_class.value,
                    status_code=error.status_code,
                )
                self._wait(attempt_request, delay_ms / 1000.0)
                attempt_request = attempt_request.for_retry()

    def _wait(self, request: Request, seconds: float) -> None:
        token = request.cancel_token
        if self._sleep is not None:
            self._sleep(seconds)
        elif token is not None:
            if token.wait(seconds):
                raise RequestCancelledError(
                    token.reason or "Request cancelled", request=request
                )
        else:
            time.sleep(seconds)
        request.raise_if_cancelled()
