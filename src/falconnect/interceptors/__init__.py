"""Interceptors composing the request pipeline.

Each interceptor is a callable ``(request, call_next) -> Response`` and can
be used on its own or composed by RequestPipeline:
- RetryInterceptor: exponential backoff with jitter, Retry-After support
- RateLimitInterceptor: global and per-host token buckets with FIFO queues
- CacheInterceptor: in-memory GET response cache with size-bounded eviction
- PerformanceInterceptor: per-attempt timing and size statistics
- LoggingInterceptor: structured request/response logging
"""

from falconnect.interceptors.base import Handler, Interceptor
from falconnect.interceptors.cache import CacheEntry, CacheInterceptor, CacheStore
from falconnect.interceptors.logging import LoggingInterceptor
from falconnect.interceptors.performance import (
    MetricsCollector,
    PerformanceInterceptor,
    PerformanceStatistics,
    RequestMetrics,
    normalize_url_pattern,
)
from falconnect.interceptors.rate_limit import (
    QueuedRequest,
    RateLimiter,
    RateLimitInterceptor,
)
from falconnect.interceptors.retry import RetryInterceptor, RetryPolicy
from falconnect.interceptors.token_bucket import TokenBucket


__all__ = [
    # Contract
    "Handler",
    "Interceptor",
    # Cache
    "CacheEntry",
    "CacheInterceptor",
    "CacheStore",
    # Logging
    "LoggingInterceptor",
    # Performance
    "MetricsCollector",
    "PerformanceInterceptor",
    "PerformanceStatistics",
    "RequestMetrics",
    "normalize_url_pattern",
    # Rate limiting
    "QueuedRequest",
    "RateLimitInterceptor",
    "RateLimiter",
    "TokenBucket",
    # Retry
    "RetryInterceptor",
    "RetryPolicy",
]
