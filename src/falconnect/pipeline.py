"""Composition of interceptors around a transport."""

import time
from collections.abc import Callable, Sequence
from functools import reduce

import structlog

from falconnect.config import HttpClientConfig
from falconnect.interceptors.base import Handler, Interceptor
from falconnect.interceptors.cache import CacheInterceptor, CacheStore
from falconnect.interceptors.logging import LoggingInterceptor
from falconnect.interceptors.performance import (
    MetricsCollector,
    PerformanceInterceptor,
)
from falconnect.interceptors.rate_limit import RateLimiter, RateLimitInterceptor
from falconnect.interceptors.retry import RetryInterceptor, RetryPolicy
from falconnect.models import Request, Response
from falconnect.transport import Transport


logger = structlog.get_logger()


class RequestPipeline:
    """Runs a request through an ordered chain of interceptors.

    Interceptors are listed outermost first; the last one calls the
    transport. The standard chain built by from_config() is
    Retry, Logging, RateLimit, Cache, Performance, so retries re-enter at
    the rate limiter, cache hits skip metrics and the transport, and each
    physical attempt is measured once.
    """

    def __init__(
        self,
        transport: Transport,
        interceptors: Sequence[Interceptor] = (),
    ) -> None:
        """Initialize the pipeline.

        Args:
            transport: Performs the physical HTTP exchange.
            interceptors: Interceptors, outermost first.
        """
        self._transport = transport
        self._interceptors = tuple(interceptors)
        self._handler = reduce(
            _wrap,
            reversed(self._interceptors),
            transport.dispatch,
        )

    @classmethod
    def from_config(
        cls,
        config: HttpClientConfig,
        transport: Transport,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> "RequestPipeline":
        """Build the standard chain, including only enabled interceptors.

        Args:
            config: Client configuration.
            transport: Transport at the end of the chain.
            clock: Monotonic clock for rate limiting (tests).
            sleep: Sleep function for retry backoff and queue draining (tests).

        Returns:
            Configured RequestPipeline.
        """
        interceptors: list[Interceptor] = []

        if config.max_retry_attempts > 0:
            interceptors.append(
                RetryInterceptor(RetryPolicy.from_config(config), sleep=sleep)
            )

        if config.enable_logging:
            interceptors.append(LoggingInterceptor(log_bodies=config.log_bodies))

        if config.rate_limit.enabled:
            limiter = RateLimiter.from_config(
                config.rate_limit,
                clock=clock or time.monotonic,
                sleep=sleep or time.sleep,
            )
            interceptors.append(RateLimitInterceptor(limiter))

        if config.enable_cache:
            store = CacheStore(
                max_size_bytes=config.max_cache_size,
                default_max_age=config.cache_duration,
            )
            interceptors.append(CacheInterceptor(store))

        if config.enable_performance_monitoring:
            interceptors.append(
                PerformanceInterceptor(
                    MetricsCollector(), log_requests=config.enable_logging
                )
            )

        logger.debug(
            "pipeline_built",
            interceptors=[type(i).__name__ for i in interceptors],
        )
        return cls(transport, interceptors)

    @property
    def transport(self) -> Transport:
        """The transport at the end of the chain."""
        return self._transport

    @property
    def interceptors(self) -> tuple[Interceptor, ...]:
        """Interceptors, outermost first."""
        return self._interceptors

    @property
    def cache_store(self) -> CacheStore | None:
        """Cache store of the cache interceptor, if present."""
        for interceptor in self._interceptors:
            if isinstance(interceptor, CacheInterceptor):
                return interceptor.store
        return None

    @property
    def rate_limiter(self) -> RateLimiter | None:
        """Rate limiter of the rate-limit interceptor, if present."""
        for interceptor in self._interceptors:
            if isinstance(interceptor, RateLimitInterceptor):
                return interceptor.limiter
        return None

    @property
    def metrics(self) -> MetricsCollector | None:
        """Metrics collector of the performance interceptor, if present."""
        for interceptor in self._interceptors:
            if isinstance(interceptor, PerformanceInterceptor):
                return interceptor.collector
        return None

    def send(self, request: Request) -> Response:
        """Run a request through the chain.

        Raises:
            HttpClientError: Any failure not absorbed by the chain.
        """
        return self._handler(request)


def _wrap(call_next: Handler, interceptor: Interceptor) -> Handler:
    def handler(request: Request) -> Response:
        return interceptor(request, call_next)

    return handler

