"""Error types for the HTTP client pipeline."""

import json
from enum import Enum
from typing import TYPE_CHECKING, Any

from falconnect.constants import (
    HEADER_RETRY_AFTER,
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_SERVER_ERROR_MAX,
    HTTP_STATUS_SERVER_ERROR_MIN,
    HTTP_STATUS_SERVICE_UNAVAILABLE,
    HTTP_STATUS_TOO_MANY_REQUESTS,
    RETRYABLE_CLIENT_ERROR_CODES,
)


if TYPE_CHECKING:
    from falconnect.models import Request, Response


class ErrorClass(str, Enum):
    """Classification of client errors for metrics and retry decisions.

    - CONNECT_TIMEOUT: Connection could not be established in time
    - SEND_TIMEOUT: Request body could not be written in time
    - RECEIVE_TIMEOUT: Response did not arrive in time
    - CONNECTION_ERROR: Connection refused, reset or otherwise broken
    - HTTP_STATUS: Server answered with a 4xx/5xx status
    - RATE_LIMITED: Local rate limiter rejected the request
    - QUEUE_CLEARED: Request was waiting in a rate-limit queue that was cleared
    - CANCELLED: Request was cancelled through its cancel token
    - CACHE: Internal cache failure (never surfaced to callers)
    - PROTOCOL: Exchange rejected by the HTTP layer (unsupported scheme,
      too many redirects, undecodable content encoding)
    - DECODE: Response body could not be decoded to the requested type
    - UNKNOWN: Unclassified error
    """

    CONNECT_TIMEOUT = "CONNECT_TIMEOUT"
    SEND_TIMEOUT = "SEND_TIMEOUT"
    RECEIVE_TIMEOUT = "RECEIVE_TIMEOUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    HTTP_STATUS = "HTTP_STATUS"
    RATE_LIMITED = "RATE_LIMITED"
    QUEUE_CLEARED = "QUEUE_CLEARED"
    CANCELLED = "CANCELLED"
    CACHE = "CACHE"
    PROTOCOL = "PROTOCOL"
    DECODE = "DECODE"
    UNKNOWN = "UNKNOWN"


CONNECTION_ERROR_CLASSES = frozenset(
    {
        ErrorClass.CONNECT_TIMEOUT,
        ErrorClass.SEND_TIMEOUT,
        ErrorClass.RECEIVE_TIMEOUT,
        ErrorClass.CONNECTION_ERROR,
    }
)


class HttpClientError(Exception):
    """Base exception for every failure raised by the client pipeline.

    Provides structured error information for logging, metrics and
    retry decisions.
    """

    def __init__(
        self,
        error_class: ErrorClass,
        message: str,
        request: "Request | None" = None,
    ) -> None:
        """Initialize the client error.

        Args:
            error_class: Classification of the error.
            message: Human-readable error message.
            request: The request attempt that failed, if known.
        """
        super().__init__(message)
        self.error_class = error_class
        self.message = message
        self.request = request
        self.retry_count = 0

    @property
    def status_code(self) -> int | None:
        """HTTP status associated with the error, if any."""
        return None

    @property
    def is_cancellation(self) -> bool:
        """Whether this error represents a cancelled request."""
        return self.error_class in {ErrorClass.CANCELLED, ErrorClass.QUEUE_CLEARED}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "error_class": self.error_class.value,
            "message": self.message,
            "status_code": self.status_code,
            "method": self.request.method if self.request else None,
            "url": self.request.url if self.request else None,
            "retry_count": self.retry_count,
        }


class HttpConnectionError(HttpClientError):
    """Connection-level failure: timeouts, refused or broken connections.

    Always retryable up to the configured attempt cap.
    """

    def __init__(
        self,
        message: str,
        error_class: ErrorClass = ErrorClass.CONNECTION_ERROR,
        request: "Request | None" = None,
    ) -> None:
        """Initialize the connection error.

        Args:
            message: Human-readable error message.
            error_class: One of the connection-level error classes.
            request: The request attempt that failed.
        """
        if error_class not in CONNECTION_ERROR_CLASSES:
            msg = f"{error_class.value} is not a connection-level error class"
            raise ValueError(msg)
        super().__init__(error_class, message, request)


class HttpStatusError(HttpClientError):
    """The server answered with a 4xx or 5xx status code."""

    def __init__(
        self,
        response: "Response",
        message: str | None = None,
    ) -> None:
        """Initialize the status error.

        Args:
            response: The error response returned by the server.
            message: Optional message, derived from the status if omitted.
        """
        self.response = response
        super().__init__(
            ErrorClass.HTTP_STATUS,
            message or f"HTTP {response.status_code} for {response.request.url}",
            response.request,
        )

    @property
    def status_code(self) -> int:
        """HTTP status code of the response."""
        return self.response.status_code

    @property
    def status_category(self) -> str:
        """Status family, e.g. '4XX' or '5XX'."""
        if self.is_client_error:
            return "4XX"
        if self.is_server_error:
            return "5XX"
        return "Unknown"

    @property
    def is_client_error(self) -> bool:
        """Check if this is a client error (4XX)."""
        return (
            HTTP_STATUS_BAD_REQUEST <= self.status_code < HTTP_STATUS_SERVER_ERROR_MIN
        )

    @property
    def is_server_error(self) -> bool:
        """Check if this is a server error (5XX)."""
        return (
            HTTP_STATUS_SERVER_ERROR_MIN
            <= self.status_code
            < HTTP_STATUS_SERVER_ERROR_MAX
        )

    @property
    def is_retryable(self) -> bool:
        """Server errors and 408/409/429 are worth another attempt."""
        return self.is_server_error or self.status_code in RETRYABLE_CLIENT_ERROR_CODES

    @property
    def retry_after_seconds(self) -> int | None:
        """Non-negative integer Retry-After value, if present and parseable."""
        value = self.response.headers.get(HEADER_RETRY_AFTER)
        if value is None:
            return None
        try:
            seconds = int(value.strip())
        except ValueError:
            return None
        return seconds if seconds >= 0 else None

    @property
    def recommended_retry_delay_ms(self) -> int:
        """Suggested delay before retrying, independent of any retry policy."""
        if not self.is_retryable:
            return 0
        retry_after = self.retry_after_seconds
        if retry_after is not None and self.status_code in {
            HTTP_STATUS_TOO_MANY_REQUESTS,
            HTTP_STATUS_SERVICE_UNAVAILABLE,
        }:
            return retry_after * 1000
        if self.status_code == HTTP_STATUS_TOO_MANY_REQUESTS:
            return 60_000
        if self.status_code == HTTP_STATUS_SERVICE_UNAVAILABLE:
            return 30_000
        if self.status_code in {502, 504}:
            return 10_000
        if self.is_server_error:
            return 5_000
        return 3_000

    @property
    def user_friendly_message(self) -> str:
        """Short message suitable for end users."""
        messages = {
            400: "The request was invalid. Please check your input.",
            401: "Authentication is required. Please sign in again.",
            403: "You do not have permission to perform this action.",
            404: "The requested resource was not found.",
            408: "The request timed out. Please try again.",
            409: "The request conflicts with the current state. Please retry.",
            429: "Too many requests. Please slow down and try again later.",
            500: "Internal server error. Please try again later.",
            501: "This feature is not implemented yet.",
            502: "Server communication error. Please try again.",
            503: "Service temporarily unavailable. Please try again later.",
            504: "Server timeout. Please try again.",
        }
        if self.status_code in messages:
            return messages[self.status_code]
        if self.is_client_error:
            return f"Request error ({self.status_code}). Please check your request."
        return f"Server error ({self.status_code}). Please try again later."

    def extract_error_details(self) -> dict[str, str | None]:
        """Pull message/type/developer message from common error body formats.

        Returns:
            Dictionary with 'type', 'message' and 'developer_message' keys.
        """
        result: dict[str, str | None] = {
            "type": None,
            "message": None,
            "developer_message": None,
        }
        if not self.response.content:
            return result

        try:
            data = json.loads(self.response.content)
        except ValueError:
            result["message"] = self.response.content.decode("utf-8", "replace")
            return result

        if isinstance(data, dict):
            result["message"] = _first_present(
                data, ("message", "error", "error_message", "detail")
            )
            result["developer_message"] = _first_present(
                data,
                ("developerMessage", "developer_message", "debug_message", "debug"),
            )
            result["type"] = _first_present(
                data, ("type", "error_type", "error_code", "code")
            )
        elif isinstance(data, str):
            result["message"] = data
        return result

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary including the status category."""
        result = super().to_dict()
        result["status_category"] = self.status_category
        return result


class RateLimitExceededError(HttpClientError):
    """The local rate limiter rejected the request (conceptually HTTP 429).

    Raised without contacting the transport and never retried.
    """

    def __init__(self, message: str, request: "Request | None" = None) -> None:
        """Initialize the rate-limit error."""
        super().__init__(ErrorClass.RATE_LIMITED, message, request)

    @property
    def status_code(self) -> int:
        """Rate-limit rejections surface as 429 Too Many Requests."""
        return HTTP_STATUS_TOO_MANY_REQUESTS


class QueueClearedError(HttpClientError):
    """A queued request was discarded because the rate-limit queues were cleared."""

    def __init__(
        self,
        message: str = "Rate limit queue cleared",
        request: "Request | None" = None,
    ) -> None:
        """Initialize the queue-cleared error."""
        super().__init__(ErrorClass.QUEUE_CLEARED, message, request)


class RequestCancelledError(HttpClientError):
    """The request was cancelled through its cancel token."""

    def __init__(
        self,
        message: str = "Request cancelled",
        request: "Request | None" = None,
    ) -> None:
        """Initialize the cancellation error."""
        super().__init__(ErrorClass.CANCELLED, message, request)


class CacheError(HttpClientError):
    """Internal cache failure. Logged by the cache layer, never surfaced."""

    def __init__(self, message: str, request: "Request | None" = None) -> None:
        """Initialize the cache error."""
        super().__init__(ErrorClass.CACHE, message, request)


class DecodeError(HttpClientError):
    """The response body could not be decoded into the requested type."""

    def __init__(self, message: str, response: "Response") -> None:
        """Initialize the decode error.

        Args:
            message: Human-readable error message.
            response: The response whose body failed to decode.
        """
        self.response = response
        super().__init__(ErrorClass.DECODE, message, response.request)


def _first_present(data: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return str(value)
    return None
