"""Per-request performance metrics and rolling aggregate statistics."""

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from falconnect.constants import (
    DEFAULT_MAX_METRICS_HISTORY,
    EXTRA_PERFORMANCE_METRICS,
    HTTP_STATUS_OK_MAX,
    HTTP_STATUS_OK_MIN,
    MAX_RECENT_DURATIONS,
    STATUS_LINE_SIZE_ESTIMATE,
    URL_ID_PLACEHOLDER,
)
from falconnect.errors import HttpClientError
from falconnect.interceptors.base import Handler
from falconnect.models import Request, Response
from falconnect.redact import redact_url_credentials


logger = structlog.get_logger()


@dataclass
class RequestMetrics:
    """Metrics for a single physical attempt.

    Attributes:
        method: HTTP method.
        url: Request URL.
        started_at: Wall-clock start time.
        start_time: Monotonic start reading in seconds.
        end_time: Monotonic end reading, set when finished.
        status_code: HTTP status, if a response was received.
        error: Error class value, if the attempt failed.
        request_size: Estimated request size in bytes.
        response_size: Estimated response size in bytes.
        retry_count: Retries preceding this attempt.
        phases: Best-effort per-phase durations in milliseconds.
    """

    method: str
    url: str
    started_at: datetime
    start_time: float
    end_time: float | None = None
    status_code: int | None = None
    error: str | None = None
    request_size: int = 0
    response_size: int = 0
    retry_count: int = 0
    phases: dict[str, float] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        """Whether the attempt has been finalized."""
        return self.end_time is not None

    @property
    def duration_ms(self) -> float:
        """Total duration in milliseconds (0 until finished)."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time) * 1000

    @property
    def is_success(self) -> bool:
        """2xx status and no error."""
        return (
            self.error is None
            and self.status_code is not None
            and HTTP_STATUS_OK_MIN <= self.status_code < HTTP_STATUS_OK_MAX
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "method": self.method,
            "url": self.url,
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 3),
            "status_code": self.status_code,
            "error": self.error,
            "request_size": self.request_size,
            "response_size": self.response_size,
            "retry_count": self.retry_count,
            "phases": dict(self.phases),
        }


@dataclass
class PerformanceStatistics:
    """Aggregated statistics over finished attempts.

    The median is computed over the most recent durations only, not the
    full history.
    """

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    status_code_counts: dict[int, int] = field(default_factory=dict)
    error_counts: dict[str, int] = field(default_factory=dict)
    total_request_size: int = 0
    total_response_size: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float | None = None
    max_duration_ms: float = 0.0
    recent_durations_ms: deque[float] = field(
        default_factory=lambda: deque(maxlen=MAX_RECENT_DURATIONS)
    )

    def add(self, metrics: RequestMetrics) -> None:
        """Fold a finished attempt into the statistics."""
        self.total_requests += 1
        if metrics.is_success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1

        if metrics.status_code is not None:
            self.status_code_counts[metrics.status_code] = (
                self.status_code_counts.get(metrics.status_code, 0) + 1
            )
        if metrics.error is not None:
            self.error_counts[metrics.error] = (
                self.error_counts.get(metrics.error, 0) + 1
            )

        self.total_request_size += metrics.request_size
        self.total_response_size += metrics.response_size

        duration = metrics.duration_ms
        self.total_duration_ms += duration
        if self.min_duration_ms is None or duration < self.min_duration_ms:
            self.min_duration_ms = duration
        self.max_duration_ms = max(self.max_duration_ms, duration)
        self.recent_durations_ms.append(duration)

    def snapshot(self) -> "PerformanceStatistics":
        """Independent copy that later updates do not touch."""
        return replace(
            self,
            status_code_counts=dict(self.status_code_counts),
            error_counts=dict(self.error_counts),
            recent_durations_ms=deque(
                self.recent_durations_ms, maxlen=MAX_RECENT_DURATIONS
            ),
        )

    @property
    def success_rate(self) -> float:
        """Percentage of successful attempts (0-100)."""
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests * 100

    @property
    def average_duration_ms(self) -> float:
        """Mean duration over all attempts."""
        if self.total_requests == 0:
            return 0.0
        return self.total_duration_ms / self.total_requests

    @property
    def median_duration_ms(self) -> float:
        """Median over the recent-duration window."""
        if not self.recent_durations_ms:
            return 0.0
        ordered = sorted(self.recent_durations_ms)
        middle = len(ordered) // 2
        if len(ordered) % 2:
            return ordered[middle]
        return (ordered[middle - 1] + ordered[middle]) / 2

    @property
    def average_request_size(self) -> int:
        """Integer mean request size."""
        if self.total_requests == 0:
            return 0
        return self.total_request_size // self.total_requests

    @property
    def average_response_size(self) -> int:
        """Integer mean response size."""
        if self.total_requests == 0:
            return 0
        return self.total_response_size // self.total_requests

    def to_dict(self) -> dict[str, Any]:
        """Convert statistics to dictionary.

        Returns:
            Dictionary of statistic name to value.
        """
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": self.success_rate,
            "status_code_counts": dict(self.status_code_counts),
            "error_counts": dict(self.error_counts),
            "total_request_size": self.total_request_size,
            "total_response_size": self.total_response_size,
            "average_request_size": self.average_request_size,
            "average_response_size": self.average_response_size,
            "total_duration_ms": round(self.total_duration_ms, 3),
            "average_duration_ms": round(self.average_duration_ms, 3),
            "median_duration_ms": round(self.median_duration_ms, 3),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 3),
            "max_duration_ms": round(self.max_duration_ms, 3),
        }


def normalize_url_pattern(url: str) -> str:
    """Group URLs by collapsing integer path segments.

    ``https://api.example.com/users/123?x=1`` becomes
    ``https://api.example.com/users/{id}``.
    """
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return url

    segments = [
        URL_ID_PLACEHOLDER if _is_integer(segment) else segment
        for segment in parsed.path.split("/")
    ]
    return f"{parsed.scheme}://{parsed.host}{'/'.join(segments) or '/'}"


def _is_integer(segment: str) -> bool:
    if not segment:
        return False
    try:
        int(segment)
    except ValueError:
        return False
    return True


def estimate_request_size(request: Request) -> int:
    """Estimate request size: method, URL, headers and body."""
    size = len(request.method) + len(str(request.full_url))
    size += sum(len(key) + len(value) for key, value in request.headers.items())
    return size + len(request.content or b"")


def estimate_response_size(response: Response) -> int:
    """Estimate response size: status line, headers and body."""
    size = STATUS_LINE_SIZE_ESTIMATE
    size += sum(len(key) + len(value) for key, value in response.headers.items())
    return size + len(response.content)


class MetricsCollector:
    """Records one RequestMetrics per physical attempt and aggregates them.

    Keeps a bounded history (oldest dropped first) plus global and
    per-URL-pattern statistics. Thread-safe.
    """

    def __init__(
        self,
        max_history: int = DEFAULT_MAX_METRICS_HISTORY,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        """Initialize the collector.

        Args:
            max_history: Maximum number of metrics records kept.
            clock: Monotonic clock returning seconds.
        """
        self._clock = clock
        self._history: deque[RequestMetrics] = deque(maxlen=max_history)
        self._statistics = PerformanceStatistics()
        self._url_statistics: dict[str, PerformanceStatistics] = {}
        self._lock = threading.Lock()

    def begin(self, request: Request) -> RequestMetrics:
        """Start metrics for an attempt at dispatch time."""
        return RequestMetrics(
            method=request.method,
            url=redact_url_credentials(str(request.full_url)),
            started_at=datetime.now(UTC),
            start_time=self._clock(),
            request_size=estimate_request_size(request),
            retry_count=request.retry_count,
        )

    def finish(
        self,
        metrics: RequestMetrics,
        response: Response | None = None,
        error: Exception | None = None,
    ) -> bool:
        """Finalize an attempt and fold it into the statistics.

        Args:
            metrics: Record returned by begin().
            response: Response of a successful attempt.
            error: Error of a failed attempt; its response (if any) supplies
                the status code and size.

        Returns:
            False if the record had already been finalized.
        """
        with self._lock:
            if metrics.is_finished:
                return False
            metrics.end_time = self._clock()

            if error is not None:
                if isinstance(error, HttpClientError):
                    metrics.error = error.error_class.value
                    metrics.status_code = error.status_code
                else:
                    metrics.error = type(error).__name__
                response = getattr(error, "response", None) or response
            if response is not None:
                metrics.status_code = response.status_code
                metrics.response_size = estimate_response_size(response)
                metrics.phases.update(response.timings)

            self._history.append(metrics)
            self._statistics.add(metrics)
            pattern = normalize_url_pattern(metrics.url)
            self._url_statistics.setdefault(pattern, PerformanceStatistics()).add(
                metrics
            )
            return True

    def get_recent_metrics(self, limit: int | None = None) -> list[RequestMetrics]:
        """Most recent metrics records, oldest first."""
        with self._lock:
            records = list(self._history)
        if limit is not None:
            return records[-limit:] if limit > 0 else []
        return records

    def get_statistics(self) -> PerformanceStatistics:
        """Snapshot of the global statistics."""
        with self._lock:
            return self._statistics.snapshot()

    def get_url_statistics(self) -> dict[str, PerformanceStatistics]:
        """Snapshots of the statistics per normalized URL pattern."""
        with self._lock:
            return {
                pattern: stats.snapshot()
                for pattern, stats in self._url_statistics.items()
            }

    def clear(self) -> None:
        """Drop all records and statistics."""
        with self._lock:
            self._history.clear()
            self._statistics = PerformanceStatistics()
            self._url_statistics.clear()

    def to_dict(self) -> dict[str, Any]:
        """Export global and per-pattern statistics."""
        with self._lock:
            return {
                "global": self._statistics.to_dict(),
                "by_url_pattern": {
                    pattern: stats.to_dict()
                    for pattern, stats in self._url_statistics.items()
                },
                "history_size": len(self._history),
            }


class PerformanceInterceptor:
    """Measures each attempt that reaches the transport.

    Every attempt is finalized exactly once, on success and on error.
    """

    def __init__(self, collector: MetricsCollector, log_requests: bool = False) -> None:
        """Initialize the interceptor.

        Args:
            collector: Metrics collector shared for the lifetime of the client.
            log_requests: Log a line per finished attempt.
        """
        self._collector = collector
        self._log_requests = log_requests
        self._log = logger.bind(component="performance")

    @property
    def collector(self) -> MetricsCollector:
        """The underlying metrics collector."""
        return self._collector

    def __call__(self, request: Request, call_next: Handler) -> Response:
        """Time the rest of the chain and record the outcome."""
        metrics = self._collector.begin(request)
        request.extra[EXTRA_PERFORMANCE_METRICS] = metrics
        try:
            response = call_next(request)
        except Exception as error:
            self._collector.finish(metrics, error=error)
            if self._log_requests:
                self._log.info(
                    "request_failed",
                    method=metrics.method,
                    url=metrics.url,
                    duration_ms=round(metrics.duration_ms, 2),
                    error=metrics.error,
                    status_code=metrics.status_code,
                )
            raise

        self._collector.finish(metrics, response=response)
        if self._log_requests:
            self._log.info(
                "request_complete",
                method=metrics.method,
                url=metrics.url,
                duration_ms=round(metrics.duration_ms, 2),
                status_code=metrics.status_code,
                response_size=metrics.response_size,
            )
        return response
