"""Request/response logging with header redaction."""

import time

import structlog

from falconnect.errors import HttpClientError
from falconnect.interceptors.base import Handler
from falconnect.models import Request, Response
from falconnect.redact import redact_headers, redact_url_credentials


logger = structlog.get_logger()

MAX_LOGGED_BODY_CHARS = 2000


def _preview(body: bytes | None) -> str | None:
    if not body:
        return None
    text = body.decode("utf-8", "replace")
    if len(text) > MAX_LOGGED_BODY_CHARS:
        return text[:MAX_LOGGED_BODY_CHARS] + "...[truncated]"
    return text


class LoggingInterceptor:
    """Logs every attempt with redacted headers and optional bodies."""

    def __init__(self, log_bodies: bool = False) -> None:
        """Initialize the logging interceptor.

        Args:
            log_bodies: Include (truncated) request and response bodies.
        """
        self._log_bodies = log_bodies
        self._log = logger.bind(component="http")

    def __call__(self, request: Request, call_next: Handler) -> Response:
        """Log the request, then its response or error."""
        log = self._log.bind(
            method=request.method,
            url=redact_url_credentials(str(request.full_url)),
            retry_count=request.retry_count,
        )
        log.debug(
            "http_request",
            headers=redact_headers(request.headers),
            body=_preview(request.content) if self._log_bodies else None,
        )

        start_ns = time.perf_counter_ns()
        try:
            response = call_next(request)
        except HttpClientError as e:
            log.warning(
                "http_error",
                duration_ms=round((time.perf_counter_ns() - start_ns) / 1_000_000, 2),
                error_class=e.error_class.value,
                status_code=e.status_code,
                error=e.message,
            )
            raise

        log.info(
            "http_response",
            status_code=response.status_code,
            from_cache=response.from_cache,
            bytes=len(response.content),
            duration_ms=round((time.perf_counter_ns() - start_ns) / 1_000_000, 2),
            headers=redact_headers(response.headers),
            body=_preview(response.content) if self._log_bodies else None,
        )
        return response
