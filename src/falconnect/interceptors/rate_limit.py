"""Global and per-host token-bucket rate limiting with bounded FIFO queues."""

import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

import structlog

from falconnect.config import RateLimitConfig
from falconnect.constants import (
    DEFAULT_BURST_SECONDS,
    DEFAULT_GLOBAL_RATE_LIMIT,
    DEFAULT_MAX_QUEUE_SIZE,
    DEFAULT_PER_HOST_RATE_LIMIT,
    DEFAULT_RATE_WINDOW_SECONDS,
)
from falconnect.errors import (
    QueueClearedError,
    RateLimitExceededError,
    RequestCancelledError,
)
from falconnect.interceptors.base import Handler
from falconnect.interceptors.token_bucket import TokenBucket
from falconnect.models import Request, Response


logger = structlog.get_logger()


@dataclass(eq=False)
class QueuedRequest:
    """A request waiting for rate-limit capacity.

    Attributes:
        request: The waiting request.
        future: Resolved when admitted, failed when cancelled or cleared.
        enqueued_at: Clock reading when the request was queued.
    """

    request: Request
    enqueued_at: float
    future: "Future[None]" = field(default_factory=Future)


class RateLimiter:
    """Admits requests against a global bucket and one bucket per host.

    A request is admitted only if both buckets yield a token. Otherwise it
    is rejected with RateLimitExceededError, or, when queuing is enabled,
    parked in a bounded per-host FIFO that a background thread drains as
    tokens become available. While a host has queued requests, new requests
    for that host queue behind them.
    """

    def __init__(
        self,
        global_rate_limit: int = DEFAULT_GLOBAL_RATE_LIMIT,
        per_host_rate_limit: int = DEFAULT_PER_HOST_RATE_LIMIT,
        burst_seconds: int = DEFAULT_BURST_SECONDS,
        window_seconds: float = DEFAULT_RATE_WINDOW_SECONDS,
        queue_requests: bool = True,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            global_rate_limit: Requests per second across all hosts.
            per_host_rate_limit: Requests per second for any single host.
            burst_seconds: Bucket capacity expressed in seconds of rate.
            window_seconds: Length of the admitted-request history window.
            queue_requests: Queue over-limit requests instead of rejecting.
            max_queue_size: Maximum queued requests per host.
            clock: Monotonic clock returning seconds.
            sleep: Sleep function used by queue drain threads.
        """
        self._per_host_rate_limit = per_host_rate_limit
        self._burst_seconds = burst_seconds
        self._window_seconds = window_seconds
        self._queue_requests = queue_requests
        self._max_queue_size = max_queue_size
        self._clock = clock
        self._sleep = sleep

        self._global_bucket = TokenBucket(
            capacity=global_rate_limit * burst_seconds,
            refill_rate=global_rate_limit,
            clock=clock,
        )
        self._host_buckets: dict[str, TokenBucket] = {}
        self._queues: dict[str, deque[QueuedRequest]] = {}
        self._draining: set[str] = set()
        self._history: deque[tuple[float, str]] = deque()
        self._lock = threading.Lock()
        self._log = logger.bind(component="rate_limit")

    @classmethod
    def from_config(
        cls,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "RateLimiter":
        """Build a rate limiter from configuration."""
        return cls(
            global_rate_limit=config.global_rate_limit,
            per_host_rate_limit=config.per_host_rate_limit,
            burst_seconds=config.burst_seconds,
            window_seconds=config.window_seconds,
            queue_requests=config.queue_requests,
            max_queue_size=config.max_queue_size,
            clock=clock,
            sleep=sleep,
        )

    @property
    def global_bucket(self) -> TokenBucket:
        """The process-wide bucket."""
        return self._global_bucket

    def host_bucket(self, host: str) -> TokenBucket:
        """Get or create the bucket for a host."""
        with self._lock:
            return self._host_bucket_locked(host)

    def _host_bucket_locked(self, host: str) -> TokenBucket:
        bucket = self._host_buckets.get(host)
        if bucket is None:
            bucket = TokenBucket(
                capacity=self._per_host_rate_limit * self._burst_seconds,
                refill_rate=self._per_host_rate_limit,
                clock=self._clock,
            )
            self._host_buckets[host] = bucket
        return bucket

    def _try_consume_locked(self, host_bucket: TokenBucket) -> bool:
        """Take one token from both buckets, or from neither."""
        if not self._global_bucket.try_consume():
            return False
        if host_bucket.try_consume():
            return True
        self._global_bucket.refund()
        return False

    def _record_locked(self, host: str) -> None:
        now = self._clock()
        self._history.append((now, host))
        self._prune_history_locked(now)

    def _prune_history_locked(self, now: float) -> None:
        cutoff = now - self._window_seconds
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

    def acquire(self, request: Request) -> None:
        """Block until the request is admitted.

        Args:
            request: Request to admit.

        Raises:
            RateLimitExceededError: If over the limit and queuing is disabled,
                or the host queue is full.
            RequestCancelledError: If the request is cancelled while queued.
            QueueClearedError: If clear_queues() runs while it is queued.
        """
        request.raise_if_cancelled()
        host = request.host

        with self._lock:
            host_bucket = self._host_bucket_locked(host)
            queue = self._queues.get(host)
            if not queue and self._try_consume_locked(host_bucket):
                self._record_locked(host)
                return

            if not self._queue_requests:
                self._log.warning("rate_limit_exceeded", host=host)
                msg = f"Rate limit exceeded for {host}"
                raise RateLimitExceededError(msg, request=request)

            if queue is None:
                queue = deque()
                self._queues[host] = queue
            if len(queue) >= self._max_queue_size:
                self._log.warning("rate_limit_queue_full", host=host)
                msg = f"Rate limit queue full for {host}"
                raise RateLimitExceededError(msg, request=request)

            queued = QueuedRequest(request=request, enqueued_at=self._clock())
            queue.append(queued)
            queue_size = len(queue)
            start_drain = host not in self._draining
            if start_drain:
                self._draining.add(host)

        self._log.debug("request_queued", host=host, queue_size=queue_size)

        unregister: Callable[[], None] | None = None
        if request.cancel_token is not None:
            unregister = request.cancel_token.add_callback(
                lambda reason: self._cancel_queued(host, queued, reason)
            )

        if start_drain:
            threading.Thread(
                target=self._drain,
                args=(host,),
                name=f"rate-limit-drain-{host}",
                daemon=True,
            ).start()

        try:
            queued.future.result()
        finally:
            if unregister is not None:
                unregister()

    def _drain(self, host: str) -> None:
        """Release queued requests for a host in FIFO order."""
        host_bucket = self.host_bucket(host)
        while True:
            with self._lock:
                if not self._queues.get(host):
                    self._queues.pop(host, None)
                    self._draining.discard(host)
                    return

            delay = max(
                self._global_bucket.time_until_next_token(),
                host_bucket.time_until_next_token(),
            )
            if delay > 0:
                self._sleep(delay)

            with self._lock:
                queue = self._queues.get(host)
                if not queue or not self._try_consume_locked(host_bucket):
                    continue
                queued = queue.popleft()
                self._record_locked(host)
                remaining = len(queue)

            self._log.debug("queued_request_released", host=host, remaining=remaining)
            queued.future.set_result(None)

    def _cancel_queued(self, host: str, queued: QueuedRequest, reason: str) -> None:
        with self._lock:
            queue = self._queues.get(host)
            if queue is None or queued not in queue:
                return
            queue.remove(queued)

        self._log.debug("queued_request_cancelled", host=host)
        queued.future.set_exception(
            RequestCancelledError(reason, request=queued.request)
        )

    def clear_queues(self) -> int:
        """Fail every queued request with QueueClearedError.

        Returns:
            Number of requests that were waiting.
        """
        with self._lock:
            waiting = [queued for queue in self._queues.values() for queued in queue]
            for queue in self._queues.values():
                queue.clear()

        for queued in waiting:
            queued.future.set_exception(QueueClearedError(request=queued.request))

        if waiting:
            self._log.info("rate_limit_queues_cleared", cleared=len(waiting))
        return len(waiting)

    def queue_depths(self) -> dict[str, int]:
        """Current queue length per host (hosts with empty queues omitted)."""
        with self._lock:
            return {host: len(queue) for host, queue in self._queues.items() if queue}

    def get_statistics(self) -> dict[str, Any]:
        """Snapshot of recent admissions and queue depths.

        Returns:
            Dictionary with requests in the window, rate, per-host counts,
            queued requests per host and window size.
        """
        with self._lock:
            self._prune_history_locked(self._clock())
            host_counts: dict[str, int] = {}
            for _, host in self._history:
                host_counts[host] = host_counts.get(host, 0) + 1
            in_window = len(self._history)
            queued = {host: len(queue) for host, queue in self._queues.items() if queue}

        return {
            "global_requests_in_window": in_window,
            "global_requests_per_second": in_window / self._window_seconds,
            "host_request_counts": host_counts,
            "queued_requests": queued,
            "window_seconds": self._window_seconds,
        }


class RateLimitInterceptor:
    """Admits each attempt through a RateLimiter before continuing."""

    def __init__(self, limiter: RateLimiter) -> None:
        """Initialize the interceptor.

        Args:
            limiter: Rate limiter shared for the lifetime of the client.
        """
        self._limiter = limiter

    @property
    def limiter(self) -> RateLimiter:
        """The underlying rate limiter."""
        return self._limiter

    def __call__(self, request: Request, call_next: Handler) -> Response:
        """Wait for admission, then continue down the chain."""
        self._limiter.acquire(request)
        return call_next(request)
