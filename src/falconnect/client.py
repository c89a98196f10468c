"""HTTP client facade over the interceptor pipeline."""

import json as jsonlib
from collections.abc import Callable, Mapping, Sequence
from types import TracebackType
from typing import Any, TypeVar, overload

import httpx
import structlog

from falconnect.cancellation import CancelToken
from falconnect.config import HttpClientConfig
from falconnect.constants import (
    HEADER_AUTHORIZATION,
    HEADER_CONTENT_TYPE,
    HEADER_USER_AGENT,
)
from falconnect.errors import DecodeError
from falconnect.interceptors.base import Interceptor
from falconnect.models import (
    ProgressCallback,
    QueryParams,
    Request,
    Response,
    TypedResponse,
)
from falconnect.pipeline import RequestPipeline
from falconnect.redact import redact_url_credentials
from falconnect.transport import HttpxTransport, Transport


logger = structlog.get_logger()

T = TypeVar("T")

Decoder = Callable[[bytes], T]


class HttpClient:
    """HTTP client with retries, caching, rate limiting and metrics.

    One instance owns its pipeline state (cache, buckets, queues, metrics);
    nothing is shared between clients. Safe to use from multiple threads.

    Example:
        with HttpClient(HttpClientConfig.production()) as client:
            response = client.get("https://api.example.com/users/1")
            user = response.json()
    """

    def __init__(
        self,
        config: HttpClientConfig | None = None,
        transport: Transport | None = None,
        interceptors: Sequence[Interceptor] | None = None,
        base_url: str | None = None,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client configuration; defaults to HttpClientConfig().
            transport: Transport to use; defaults to an HttpxTransport
                built from config.
            interceptors: Custom interceptor chain (outermost first). When
                omitted, the standard chain is built from config.
            base_url: Base URL for relative request URLs; overrides
                config.base_url.
            clock: Monotonic clock for rate limiting (tests).
            sleep: Sleep function for backoff and queue draining (tests).
        """
        self._config = config or HttpClientConfig()
        self._transport = transport or HttpxTransport(self._config)
        self._base_url = base_url or self._config.base_url
        if interceptors is None:
            self._pipeline = RequestPipeline.from_config(
                self._config, self._transport, clock=clock, sleep=sleep
            )
        else:
            self._pipeline = RequestPipeline(self._transport, interceptors)
        self._auth_headers: dict[str, str] = {}
        self._log = logger.bind(component="client")

    @property
    def config(self) -> HttpClientConfig:
        """The client configuration."""
        return self._config

    @property
    def pipeline(self) -> RequestPipeline:
        """The interceptor pipeline."""
        return self._pipeline

    def set_bearer_token(self, token: str) -> None:
        """Send ``Authorization: Bearer <token>`` with every request."""
        self._auth_headers[HEADER_AUTHORIZATION] = f"Bearer {token}"

    def remove_bearer_token(self) -> None:
        """Stop sending the Authorization header."""
        self._auth_headers.pop(HEADER_AUTHORIZATION, None)

    def build_request(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        content: bytes | str | None = None,
        data: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        cancel_token: CancelToken | None = None,
        on_send_progress: ProgressCallback | None = None,
        on_receive_progress: ProgressCallback | None = None,
    ) -> Request:
        """Build a Request with default, auth and per-request headers applied.

        Per-request headers win over auth headers, which win over defaults.
        Form fields and files are encoded once here by httpx (urlencoded, or
        multipart when files are given), so every retry sends the same bytes.

        Raises:
            ValueError: More than one of json, content and data/files given.
        """
        body_kinds = [json is not None, content is not None]
        body_kinds.append(data is not None or files is not None)
        if sum(body_kinds) > 1:
            msg = "Only one of json, content or data/files may be given"
            raise ValueError(msg)

        url = self._resolve_url(url)
        merged = httpx.Headers(self._config.default_headers)
        if self._config.user_agent:
            merged[HEADER_USER_AGENT] = self._config.user_agent
        merged.update(self._auth_headers)

        body: bytes | None
        if json is not None:
            body = jsonlib.dumps(json).encode("utf-8")
            merged[HEADER_CONTENT_TYPE] = "application/json"
        elif data is not None or files is not None:
            form = httpx.Request(method, url, data=data, files=files)
            body = form.read()
            merged[HEADER_CONTENT_TYPE] = form.headers[HEADER_CONTENT_TYPE]
        elif isinstance(content, str):
            body = content.encode("utf-8")
        else:
            body = content

        if headers:
            merged.update(headers)

        return Request(
            method=method,
            url=url,
            headers=merged,
            content=body,
            params=params,
            cancel_token=cancel_token,
            on_send_progress=on_send_progress,
            on_receive_progress=on_receive_progress,
        )

    def _resolve_url(self, url: str) -> str:
        if self._base_url is None:
            return url
        return str(httpx.URL(self._base_url).join(url))

    @overload
    def request(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = ...,
        headers: Mapping[str, str] | None = ...,
        json: Any = ...,
        content: bytes | str | None = ...,
        data: Mapping[str, Any] | None = ...,
        files: Mapping[str, Any] | None = ...,
        cancel_token: CancelToken | None = ...,
        on_send_progress: ProgressCallback | None = ...,
        on_receive_progress: ProgressCallback | None = ...,
        decoder: None = ...,
    ) -> Response: ...

    @overload
    def request(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = ...,
        headers: Mapping[str, str] | None = ...,
        json: Any = ...,
        content: bytes | str | None = ...,
        data: Mapping[str, Any] | None = ...,
        files: Mapping[str, Any] | None = ...,
        cancel_token: CancelToken | None = ...,
        on_send_progress: ProgressCallback | None = ...,
        on_receive_progress: ProgressCallback | None = ...,
        decoder: Decoder[T],
    ) -> TypedResponse[T]: ...

    def request(
        self,
        method: str,
        url: str,
        *,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        content: bytes | str | None = None,
        data: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        cancel_token: CancelToken | None = None,
        on_send_progress: ProgressCallback | None = None,
        on_receive_progress: ProgressCallback | None = None,
        decoder: Decoder[Any] | None = None,
    ) -> Response | TypedResponse[Any]:
        """Send a request through the pipeline.

        Args:
            method: HTTP method.
            url: Absolute URL, or relative to the base URL.
            params: Query parameters.
            headers: Per-request headers.
            json: JSON-serializable body; sets Content-Type.
            content: Raw body.
            data: Form fields, urlencoded unless files are given.
            files: Files for a multipart/form-data body.
            cancel_token: Token that aborts the request when cancelled.
            on_send_progress: Called with (bytes sent, total) per chunk.
            on_receive_progress: Called with (bytes received, total or
                None) per chunk.
            decoder: Converts the body bytes into a typed value.

        Returns:
            Response, or TypedResponse when a decoder is given.

        Raises:
            HttpClientError: Any failure of the request.
            DecodeError: The decoder rejected the body.
            ValueError: More than one body kind given.
        """
        request = self.build_request(
            method,
            url,
            params=params,
            headers=headers,
            json=json,
            content=content,
            data=data,
            files=files,
            cancel_token=cancel_token,
            on_send_progress=on_send_progress,
            on_receive_progress=on_receive_progress,
        )
        response = self._pipeline.send(request)
        if decoder is None:
            return response
        return self._decode(response, decoder)

    def _decode(self, response: Response, decoder: Decoder[T]) -> TypedResponse[T]:
        try:
            data = decoder(response.content)
        except Exception as e:
            self._log.warning(
                "decode_failed",
                url=redact_url_credentials(response.request.url),
                status_code=response.status_code,
                error=str(e),
            )
            msg = f"Failed to decode response body: {e}"
            raise DecodeError(msg, response) from e
        return TypedResponse(data=data, raw=response)

    def get(self, url: str, **kwargs: Any) -> Any:
        """Send a GET request. See request()."""
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> Any:
        """Send a POST request. See request()."""
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs: Any) -> Any:
        """Send a PUT request. See request()."""
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs: Any) -> Any:
        """Send a PATCH request. See request()."""
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> Any:
        """Send a DELETE request. See request()."""
        return self.request("DELETE", url, **kwargs)

    def post_form(
        self,
        url: str,
        data: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        """POST form fields, as multipart when files are given."""
        return self.request("POST", url, data=data, files=files, **kwargs)

    def put_form(
        self,
        url: str,
        data: Mapping[str, Any] | None = None,
        files: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        """PUT form fields, as multipart when files are given."""
        return self.request("PUT", url, data=data, files=files, **kwargs)

    def get_statistics(self) -> dict[str, Any]:
        """JSON-serializable snapshot of performance, rate-limit and cache state.

        Sections whose interceptor is disabled are None.
        """
        metrics = self._pipeline.metrics
        limiter = self._pipeline.rate_limiter
        store = self._pipeline.cache_store
        return {
            "performance": metrics.to_dict() if metrics is not None else None,
            "rate_limit": limiter.get_statistics() if limiter is not None else None,
            "cache": store.get_statistics() if store is not None else None,
        }

    def clear_cache(self) -> None:
        """Drop every cached response."""
        store = self._pipeline.cache_store
        if store is not None:
            store.clear()

    def clear_queues(self) -> int:
        """Fail every request waiting for rate-limit capacity.

        Returns:
            Number of requests that were waiting.
        """
        limiter = self._pipeline.rate_limiter
        if limiter is None:
            return 0
        return limiter.clear_queues()

    def close(self) -> None:
        """Fail queued requests and release the transport."""
        self.clear_queues()
        self._transport.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()
