"""Request and response models flowing through the interceptor pipeline."""

import dataclasses
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import httpx

from falconnect.cancellation import CancelToken
from falconnect.constants import (
    EXTRA_IS_RETRY,
    EXTRA_RETRY_COUNT,
    HTTP_STATUS_OK_MAX,
    HTTP_STATUS_OK_MIN,
)


T = TypeVar("T")

QueryParams = Mapping[str, str | int | float | bool | list[str]]

# Called with (bytes transferred so far, total bytes or None if unknown)
ProgressCallback = Callable[[int, int | None], None]


@dataclass
class Request:
    """A single attempt of a logical HTTP call.

    Headers are case-insensitive. ``extra`` carries per-attempt metadata
    (retry bookkeeping, the attached metrics record). Retried attempts are
    created with for_retry() and share the body, cancel token and progress
    callbacks.
    """

    method: str
    url: str
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    content: bytes | None = None
    params: QueryParams | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    cancel_token: CancelToken | None = None
    on_send_progress: ProgressCallback | None = None
    on_receive_progress: ProgressCallback | None = None

    def __post_init__(self) -> None:
        """Normalize method casing and header container."""
        self.method = self.method.upper()
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers)

    @property
    def full_url(self) -> httpx.URL:
        """URL with query parameters applied."""
        if self.params:
            return httpx.URL(self.url, params=dict(self.params))
        return httpx.URL(self.url)

    @property
    def host(self) -> str:
        """Target host, used as the per-host rate-limit key."""
        return httpx.URL(self.url).host

    @property
    def retry_count(self) -> int:
        """Number of retries that preceded this attempt."""
        return int(self.extra.get(EXTRA_RETRY_COUNT, 0))

    @property
    def is_retry(self) -> bool:
        """Whether this attempt is a retry of an earlier one."""
        return bool(self.extra.get(EXTRA_IS_RETRY, False))

    @property
    def is_cancelled(self) -> bool:
        """Whether the request's cancel token has fired."""
        return self.cancel_token is not None and self.cancel_token.is_cancelled

    def raise_if_cancelled(self) -> None:
        """Raise RequestCancelledError if the cancel token has fired."""
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled(self)

    def for_retry(self) -> "Request":
        """Create the next attempt of this request.

        Returns:
            New Request with the same method, URL, headers, body, params,
            cancel token and progress callbacks, an incremented retry count
            and a copy of extra.
        """
        extra = {
            key: value
            for key, value in self.extra.items()
            if key not in {EXTRA_RETRY_COUNT, EXTRA_IS_RETRY}
        }
        extra[EXTRA_RETRY_COUNT] = self.retry_count + 1
        extra[EXTRA_IS_RETRY] = True
        return Request(
            method=self.method,
            url=self.url,
            headers=httpx.Headers(self.headers),
            content=self.content,
            params=self.params,
            extra=extra,
            cancel_token=self.cancel_token,
            on_send_progress=self.on_send_progress,
            on_receive_progress=self.on_receive_progress,
        )


@dataclass(frozen=True)
class Response:
    """An HTTP response produced by the transport or served from cache."""

    status_code: int
    request: Request
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    content: bytes = b""
    from_cache: bool = False
    timings: Mapping[str, float] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        """Check if the status is 2xx."""
        return HTTP_STATUS_OK_MIN <= self.status_code < HTTP_STATUS_OK_MAX

    @property
    def text(self) -> str:
        """Body decoded as UTF-8, with invalid bytes replaced."""
        return self.content.decode("utf-8", "replace")

    def json(self) -> Any:
        """Parse the body as JSON."""
        return json.loads(self.content)

    def as_cached(self, request: Request) -> "Response":
        """Copy of this response served from cache for another request."""
        return dataclasses.replace(self, request=request, from_cache=True)


@dataclass(frozen=True)
class TypedResponse(Generic[T]):
    """A response whose body was decoded by a caller-supplied decoder."""

    data: T
    raw: Response

    @property
    def status_code(self) -> int:
        """HTTP status code of the underlying response."""
        return self.raw.status_code

    @property
    def headers(self) -> httpx.Headers:
        """Headers of the underlying response."""
        return self.raw.headers

    @property
    def from_cache(self) -> bool:
        """Whether the underlying response came from the cache."""
        return self.raw.from_cache
