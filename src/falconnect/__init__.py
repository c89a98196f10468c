"""HTTP client with rate limiting, response caching, retries and metrics.

This package layers an interceptor pipeline over httpx:
- Token-bucket rate limiting (global and per host) with FIFO queues
- In-memory response cache honoring Cache-Control and Expires
- Exponential backoff retries with jitter and Retry-After support
- Per-attempt performance metrics with per-URL-pattern statistics
- Cooperative cancellation and a typed error taxonomy
"""

from falconnect.cancellation import CancelToken
from falconnect.client import HttpClient
from falconnect.config import (
    ConfigValidationError,
    HttpClientConfig,
    RateLimitConfig,
    load_config,
)
from falconnect.errors import (
    CacheError,
    DecodeError,
    ErrorClass,
    HttpClientError,
    HttpConnectionError,
    HttpStatusError,
    QueueClearedError,
    RateLimitExceededError,
    RequestCancelledError,
)
from falconnect.models import ProgressCallback, Request, Response, TypedResponse
from falconnect.pipeline import RequestPipeline
from falconnect.transport import HttpxTransport, Transport


__all__ = [
    # Client
    "HttpClient",
    "RequestPipeline",
    "HttpxTransport",
    "Transport",
    # Config
    "HttpClientConfig",
    "RateLimitConfig",
    "ConfigValidationError",
    "load_config",
    # Models
    "Request",
    "Response",
    "TypedResponse",
    "ProgressCallback",
    "CancelToken",
    # Errors
    "ErrorClass",
    "HttpClientError",
    "HttpConnectionError",
    "HttpStatusError",
    "RateLimitExceededError",
    "QueueClearedError",
    "RequestCancelledError",
    "CacheError",
    "DecodeError",
]
