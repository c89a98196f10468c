"""In-memory response cache and the interceptor that serves from it."""

import hashlib
import json
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import structlog

from falconnect.constants import (
    CACHE_KEY_HEADERS,
    DEFAULT_CACHE_DURATION_SECONDS,
    DEFAULT_MAX_CACHE_SIZE_BYTES,
    HEADER_CACHE_CONTROL,
    HEADER_EXPIRES,
)
from falconnect.errors import CacheError
from falconnect.interceptors.base import Handler
from falconnect.models import Request, Response
from falconnect.redact import redact_url_credentials


logger = structlog.get_logger()

_MAX_AGE_PATTERN = re.compile(r"max-age=(\d+)")
_NO_STORE_DIRECTIVES = ("no-cache", "no-store")


@dataclass(frozen=True)
class CacheEntry:
    """A cached response with its freshness lifetime.

    Attributes:
        response: The stored response.
        stored_at: Wall-clock time (epoch seconds) the entry was stored.
        max_age: Freshness lifetime in seconds.
        size: Estimated size in bytes.
    """

    response: Response
    stored_at: float
    max_age: float
    size: int

    def is_expired(self, now: float) -> bool:
        """Check if the entry is older than its max age."""
        return now - self.stored_at > self.max_age


def forbids_caching(cache_control: str | None) -> bool:
    """Check whether a Cache-Control value carries no-cache or no-store."""
    if not cache_control:
        return False
    value = cache_control.lower()
    return any(directive in value for directive in _NO_STORE_DIRECTIVES)


def estimate_response_size(response: Response) -> int:
    """Estimate the in-memory size of a response in bytes."""
    size = sum(len(key) + len(value) for key, value in response.headers.items())
    return size + len(response.content)


class CacheStore:
    """Size-bounded in-memory store of GET responses.

    Entries are keyed by a fingerprint of the URL, query parameters and the
    headers that select a representation. When full, entries are evicted
    oldest-stored first; reading an entry does not refresh it. Expired
    entries are dropped when looked up or swept by evict_expired().

    Thread-safe: lookup, eviction and insertion each run under one lock.
    """

    def __init__(
        self,
        max_size_bytes: int = DEFAULT_MAX_CACHE_SIZE_BYTES,
        default_max_age: float = DEFAULT_CACHE_DURATION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache store.

        Args:
            max_size_bytes: Upper bound on the total estimated entry size.
            default_max_age: Lifetime in seconds when the response has no
                max-age or Expires header.
            clock: Wall clock returning epoch seconds.
        """
        self._max_size_bytes = max_size_bytes
        self._default_max_age = default_max_age
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._size_bytes = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._stores = 0
        self._evictions = 0
        self._log = logger.bind(component="cache")

    def __len__(self) -> int:
        """Number of entries currently held."""
        with self._lock:
            return len(self._entries)

    @property
    def size_bytes(self) -> int:
        """Total estimated size of all entries."""
        with self._lock:
            return self._size_bytes

    @property
    def max_size_bytes(self) -> int:
        """Configured size cap."""
        return self._max_size_bytes

    @staticmethod
    def is_cacheable_request(request: Request) -> bool:
        """Only GET requests without no-cache/no-store may be served from cache."""
        if request.method != "GET":
            return False
        return not forbids_caching(request.headers.get(HEADER_CACHE_CONTROL))

    @staticmethod
    def generate_key(request: Request) -> str:
        """Compute the fingerprint of a request.

        Args:
            request: Request to fingerprint.

        Returns:
            Hex SHA-256 digest.

        Raises:
            CacheError: If the query parameters cannot be serialized.
        """
        key_headers = {
            name: request.headers[name]
            for name in CACHE_KEY_HEADERS
            if name in request.headers
        }
        try:
            params = json.dumps(dict(request.params or {}), sort_keys=True)
            headers = json.dumps(key_headers, sort_keys=True)
        except (TypeError, ValueError) as e:
            msg = f"Cannot build cache key: {e}"
            raise CacheError(msg, request=request) from e

        fingerprint = f"{request.url}:{params}:{headers}"
        return hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()

    def lookup(self, request: Request) -> CacheEntry | None:
        """Find a fresh entry for a request.

        Expired entries are removed and reported as a miss.

        Args:
            request: Incoming request.

        Returns:
            The fresh CacheEntry, or None on a miss or ineligible request.
        """
        if not self.is_cacheable_request(request):
            return None

        key = self.generate_key(request)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                self._remove_locked(key)
                self._misses += 1
                self._log.debug(
                    "cache_expired",
                    url=redact_url_credentials(request.url),
                    age_seconds=round(now - entry.stored_at, 3),
                )
                return None
            self._hits += 1
            return entry

    def compute_max_age(self, response: Response) -> float:
        """Derive the freshness lifetime of a response.

        Priority: Cache-Control max-age, then Expires minus now (floored at
        zero), then the configured default.

        Args:
            response: Response to inspect.

        Returns:
            Lifetime in seconds.
        """
        cache_control = response.headers.get(HEADER_CACHE_CONTROL)
        if cache_control:
            match = _MAX_AGE_PATTERN.search(cache_control)
            if match:
                return float(match.group(1))

        expires = response.headers.get(HEADER_EXPIRES)
        if expires:
            try:
                expires_at = parsedate_to_datetime(expires)
            except (TypeError, ValueError):
                expires_at = None
            if expires_at is not None:
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=UTC)
                now = datetime.fromtimestamp(self._clock(), UTC)
                return max(0.0, (expires_at - now).total_seconds())

        return self._default_max_age

    def store(self, request: Request, response: Response) -> bool:
        """Store a response if it is cacheable.

        Args:
            request: The request the response answers.
            response: Response to store.

        Returns:
            True if an entry was written.
        """
        if request.method != "GET" or not response.is_success:
            return False
        if forbids_caching(response.headers.get(HEADER_CACHE_CONTROL)):
            return False

        max_age = self.compute_max_age(response)
        if max_age <= 0:
            return False

        key = self.generate_key(request)
        size = estimate_response_size(response)
        if size > self._max_size_bytes:
            self._log.debug(
                "cache_entry_too_large",
                url=redact_url_credentials(request.url),
                size=size,
                max_size=self._max_size_bytes,
            )
            return False

        entry = CacheEntry(
            response=response,
            stored_at=self._clock(),
            max_age=max_age,
            size=size,
        )
        with self._lock:
            self._remove_locked(key)
            if self._size_bytes + size > self._max_size_bytes:
                self._evict_oldest_locked(size)
            self._entries[key] = entry
            self._size_bytes += size
            self._stores += 1

        self._log.debug(
            "cache_store",
            method=request.method,
            url=redact_url_credentials(request.url),
            size=size,
            max_age_seconds=max_age,
        )
        return True

    def _remove_locked(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size_bytes -= entry.size

    def _evict_oldest_locked(self, required_size: int) -> None:
        by_age = sorted(self._entries.items(), key=lambda item: item[1].stored_at)
        for key, _ in by_age:
            if self._size_bytes + required_size <= self._max_size_bytes:
                break
            self._remove_locked(key)
            self._evictions += 1

    def remove(self, request: Request) -> bool:
        """Remove the entry for a request, if any."""
        key = self.generate_key(request)
        with self._lock:
            present = key in self._entries
            self._remove_locked(key)
            return present

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()
            self._size_bytes = 0

    def evict_expired(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items() if entry.is_expired(now)
            ]
            for key in expired:
                self._remove_locked(key)
        return len(expired)

    def get_statistics(self) -> dict[str, int]:
        """Snapshot of cache counters.

        Returns:
            Dictionary of statistic name to value.
        """
        with self._lock:
            return {
                "entries": len(self._entries),
                "size_bytes": self._size_bytes,
                "max_size_bytes": self._max_size_bytes,
                "hits": self._hits,
                "misses": self._misses,
                "stores": self._stores,
                "evictions": self._evictions,
            }


class CacheInterceptor:
    """Serves fresh GET responses from a CacheStore and stores new ones.

    Cache failures are logged and never reach the caller: a failing lookup
    is treated as a miss and a failing store leaves the response untouched.
    """

    def __init__(self, store: CacheStore) -> None:
        """Initialize the interceptor.

        Args:
            store: Cache store shared for the lifetime of the client.
        """
        self._store = store
        self._log = logger.bind(component="cache")

    @property
    def store(self) -> CacheStore:
        """The underlying cache store."""
        return self._store

    def __call__(self, request: Request, call_next: Handler) -> Response:
        """Short-circuit on a cache hit, otherwise fetch and store.

        A GET with no-cache or no-store skips the lookup but its response is
        still stored, so a forced refresh updates the entry.
        """
        if request.method != "GET":
            return call_next(request)

        entry: CacheEntry | None = None
        if CacheStore.is_cacheable_request(request):
            entry = self._safe_lookup(request)
        if entry is not None:
            self._log.debug(
                "cache_hit",
                method=request.method,
                url=redact_url_credentials(request.url),
            )
            return entry.response.as_cached(request)

        response = call_next(request)
        self._safe_store(request, response)
        return response

    def _safe_lookup(self, request: Request) -> CacheEntry | None:
        try:
            return self._store.lookup(request)
        except Exception as e:  # noqa: BLE001
            self._log.warning(
                "cache_error",
                operation="lookup",
                url=redact_url_credentials(request.url),
                error=str(e),
            )
            return None

    def _safe_store(self, request: Request, response: Response) -> None:
        try:
            self._store.store(request, response)
        except Exception as e:  # noqa: BLE001
            self._log.warning(
                "cache_error",
                operation="store",
                url=redact_url_credentials(request.url),
                error=str(e),
            )
