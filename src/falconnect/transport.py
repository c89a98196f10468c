"""Transport adapter dispatching requests through httpx."""

import time
from collections.abc import Iterator
from io import BytesIO
from typing import Protocol

import httpx
import structlog

from falconnect.config import HttpClientConfig
from falconnect.constants import DEFAULT_CHUNK_SIZE, HTTP_STATUS_BAD_REQUEST
from falconnect.errors import (
    ErrorClass,
    HttpClientError,
    HttpConnectionError,
    HttpStatusError,
    RequestCancelledError,
)
from falconnect.models import ProgressCallback, Request, Response


logger = structlog.get_logger()


class Transport(Protocol):
    """Performs one physical HTTP exchange.

    Implementations return a Response for 1xx-3xx statuses and raise
    HttpStatusError for 4xx/5xx, HttpConnectionError for connection-level
    failures, a PROTOCOL HttpClientError for exchanges httpx rejects
    outright and RequestCancelledError when the request's token fires.
    """

    def dispatch(self, request: Request) -> Response: ...

    def close(self) -> None: ...


class HttpxTransport:
    """Transport backed by a shared httpx.Client.

    Connection pooling, TLS and redirects are delegated to httpx. Bodies
    are moved in chunks so that cancellation can abort a transfer and
    progress callbacks see each chunk.
    """

    def __init__(
        self,
        config: HttpClientConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Client configuration (timeouts, pool, TLS, redirects).
            client: Preconfigured httpx client. When given, config is
                ignored and the caller owns the client.
        """
        config = config or HttpClientConfig()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(
                connect=config.connect_timeout,
                read=config.receive_timeout,
                write=config.send_timeout,
                pool=config.connect_timeout,
            ),
            # httpx pools per client; the per-host cap bounds the whole pool
            limits=httpx.Limits(
                max_connections=config.max_connections_per_host,
                max_keepalive_connections=config.max_connections_per_host,
                keepalive_expiry=config.idle_connection_timeout,
            ),
            verify=config.validate_certificates,
            follow_redirects=config.follow_redirects,
            max_redirects=config.max_redirects,
        )
        self._log = logger.bind(component="transport")

    def dispatch(self, request: Request) -> Response:
        """Send a request and read the full response body.

        Args:
            request: Request attempt to send.

        Returns:
            Response with timings ``time_to_first_byte_ms`` and
            ``download_ms``.

        Raises:
            HttpStatusError: Status code >= 400.
            HttpConnectionError: Timeout or connection failure.
            HttpClientError: PROTOCOL class for redirect loops, unsupported
                schemes and undecodable bodies.
            RequestCancelledError: Cancel token fired before or during the
                exchange.
        """
        request.raise_if_cancelled()

        headers = request.headers
        content: bytes | Iterator[bytes] | None = request.content
        if request.on_send_progress is not None and request.content:
            headers = httpx.Headers(request.headers)
            headers["content-length"] = str(len(request.content))
            content = _iter_upload(request, request.content, request.on_send_progress)

        http_request = self._client.build_request(
            request.method,
            request.full_url,
            headers=headers,
            content=content,
        )

        start = time.perf_counter()
        try:
            http_response = self._client.send(http_request, stream=True)
        except httpx.HTTPError as e:
            raise _map_transport_error(e, request) from e

        first_byte = time.perf_counter()
        try:
            body = self._read_body(http_response, request)
        except httpx.HTTPError as e:
            raise _map_transport_error(e, request) from e
        finally:
            http_response.close()
        end = time.perf_counter()

        response = Response(
            status_code=http_response.status_code,
            request=request,
            headers=httpx.Headers(http_response.headers),
            content=body,
            timings={
                "time_to_first_byte_ms": (first_byte - start) * 1000,
                "download_ms": (end - first_byte) * 1000,
            },
        )

        if response.status_code >= HTTP_STATUS_BAD_REQUEST:
            raise HttpStatusError(response)
        return response

    def _read_body(self, http_response: httpx.Response, request: Request) -> bytes:
        """Read the body chunk by chunk, aborting on cancellation."""
        progress = request.on_receive_progress
        total = _declared_length(http_response) if progress is not None else None
        buffer = BytesIO()
        for chunk in http_response.iter_bytes(chunk_size=DEFAULT_CHUNK_SIZE):
            if request.is_cancelled:
                self._log.debug(
                    "download_cancelled",
                    method=request.method,
                    bytes_read=buffer.tell(),
                )
                token = request.cancel_token
                reason = token.reason if token is not None else None
                raise RequestCancelledError(
                    reason or "Request cancelled", request=request
                )
            buffer.write(chunk)
            if progress is not None:
                progress(buffer.tell(), total)
        return buffer.getvalue()

    def close(self) -> None:
        """Close the underlying httpx client if this transport created it."""
        if self._owns_client:
            self._client.close()


def _iter_upload(
    request: Request, body: bytes, progress: ProgressCallback
) -> Iterator[bytes]:
    """Yield the body in chunks, reporting progress after each one is sent."""
    total = len(body)
    for offset in range(0, total, DEFAULT_CHUNK_SIZE):
        request.raise_if_cancelled()
        chunk = body[offset : offset + DEFAULT_CHUNK_SIZE]
        yield chunk
        progress(offset + len(chunk), total)


def _declared_length(http_response: httpx.Response) -> int | None:
    # Content-Length counts encoded bytes; iter_bytes yields decoded ones
    if "content-encoding" in http_response.headers:
        return None
    try:
        return int(http_response.headers["content-length"])
    except (KeyError, ValueError):
        return None


def _map_transport_error(
    error: httpx.HTTPError, request: Request
) -> HttpClientError:
    """Translate an httpx exception into a client error.

    Timeouts and network failures become retryable connection errors.
    Redirect loops, unsupported schemes and undecodable bodies will fail
    the same way on every attempt and are reported as protocol errors.
    """
    if isinstance(
        error,
        httpx.TooManyRedirects | httpx.DecodingError | httpx.UnsupportedProtocol,
    ):
        return HttpClientError(ErrorClass.PROTOCOL, str(error), request)
    if isinstance(error, httpx.ConnectTimeout | httpx.PoolTimeout):
        error_class = ErrorClass.CONNECT_TIMEOUT
        message = f"Connection timed out: {error}"
    elif isinstance(error, httpx.WriteTimeout):
        error_class = ErrorClass.SEND_TIMEOUT
        message = f"Sending request timed out: {error}"
    elif isinstance(error, httpx.ReadTimeout):
        error_class = ErrorClass.RECEIVE_TIMEOUT
        message = f"Receiving response timed out: {error}"
    else:
        error_class = ErrorClass.CONNECTION_ERROR
        message = f"Connection failed: {error}"
    return HttpConnectionError(message, error_class=error_class, request=request)
