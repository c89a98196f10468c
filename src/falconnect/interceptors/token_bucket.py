"""Token bucket primitive used by the rate limiter."""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class TokenBucket:
    """Fixed-capacity token bucket with lazy, whole-token refill.

    Tokens are added only in whole units: ``floor(elapsed * refill_rate)``
    tokens are added on access and the refill timestamp only advances when
    at least one token was added, so partial progress carries over to the
    next access. The bucket starts full.

    Preconditions (not validated): ``capacity > 0`` and ``refill_rate > 0``.

    Attributes:
        capacity: Maximum tokens held (burst size).
        refill_rate: Tokens added per second.
        clock: Monotonic clock returning seconds.
    """

    capacity: int
    refill_rate: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _tokens: int = field(init=False, default=0)
    _last_refill: float = field(init=False, default=0.0)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        """Start with a full bucket."""
        self._tokens = self.capacity
        self._last_refill = self.clock()

    def _refill(self) -> None:
        """Add whole tokens for the time elapsed since the last refill.

        Must be called while holding the lock.
        """
        now = self.clock()
        tokens_to_add = math.floor((now - self._last_refill) * self.refill_rate)
        if tokens_to_add > 0:
            self._tokens = min(self.capacity, self._tokens + tokens_to_add)
            self._last_refill = now

    def try_consume(self) -> bool:
        """Take one token if available.

        Returns:
            True if a token was consumed, False if the bucket is empty.
        """
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def refund(self) -> None:
        """Return one token to the bucket, never exceeding capacity."""
        with self._lock:
            self._tokens = min(self.capacity, self._tokens + 1)

    def time_until_next_token(self) -> float:
        """Estimate how long until a token can be consumed.

        The estimate ignores partial progress toward the next token: an
        empty bucket always reports one full token interval.

        Returns:
            Seconds to wait; 0.0 if a token is available now.
        """
        with self._lock:
            self._refill()
            if self._tokens > 0:
                return 0.0
        return math.ceil(1000 / self.refill_rate) / 1000

    @property
    def available_tokens(self) -> int:
        """Current token count after refill."""
        with self._lock:
            self._refill()
            return self._tokens
