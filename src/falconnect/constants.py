"""HTTP constants for the client pipeline.

Centralizes status codes, header names and defaults shared across interceptors.
"""

# HTTP Status Code Ranges
HTTP_STATUS_OK_MIN = 200
HTTP_STATUS_OK_MAX = 300
HTTP_STATUS_BAD_REQUEST = 400
HTTP_STATUS_REQUEST_TIMEOUT = 408
HTTP_STATUS_CONFLICT = 409
HTTP_STATUS_TOO_MANY_REQUESTS = 429
HTTP_STATUS_SERVER_ERROR_MIN = 500
HTTP_STATUS_SERVICE_UNAVAILABLE = 503
HTTP_STATUS_SERVER_ERROR_MAX = 600

# 4xx codes that are worth another attempt
RETRYABLE_CLIENT_ERROR_CODES = frozenset(
    {
        HTTP_STATUS_REQUEST_TIMEOUT,
        HTTP_STATUS_CONFLICT,
        HTTP_STATUS_TOO_MANY_REQUESTS,
    }
)

# Header names (lowercase)
HEADER_CACHE_CONTROL = "cache-control"
HEADER_EXPIRES = "expires"
HEADER_RETRY_AFTER = "retry-after"
HEADER_AUTHORIZATION = "authorization"
HEADER_USER_AGENT = "user-agent"
HEADER_CONTENT_TYPE = "content-type"

# Headers that change the representation and so take part in the cache key
CACHE_KEY_HEADERS = (
    "accept",
    "accept-language",
    "accept-encoding",
    "authorization",
)

# Request.extra keys
EXTRA_RETRY_COUNT = "retry_count"
EXTRA_IS_RETRY = "is_retry"
EXTRA_PERFORMANCE_METRICS = "performance_metrics"

# Retry defaults
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_MAX_RETRY_DELAY_SECONDS = 30.0
DEFAULT_MAX_JITTER_MS = 1000

# Cache defaults
DEFAULT_MAX_CACHE_SIZE_BYTES = 50 * 1024 * 1024  # 50 MB
DEFAULT_CACHE_DURATION_SECONDS = 15 * 60.0

# Rate limit defaults
DEFAULT_GLOBAL_RATE_LIMIT = 100
DEFAULT_PER_HOST_RATE_LIMIT = 10
DEFAULT_BURST_SECONDS = 10
DEFAULT_RATE_WINDOW_SECONDS = 60.0
DEFAULT_MAX_QUEUE_SIZE = 50

# Performance monitoring defaults
DEFAULT_MAX_METRICS_HISTORY = 1000
MAX_RECENT_DURATIONS = 100
URL_ID_PLACEHOLDER = "{id}"

# Approximate size of an HTTP status line, used in size estimates
STATUS_LINE_SIZE_ESTIMATE = 20

# Chunk size for streaming reads
DEFAULT_CHUNK_SIZE = 8192
