"""Cooperative cancellation for in-flight, queued and retrying requests."""

import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from falconnect.errors import RequestCancelledError


if TYPE_CHECKING:
    from falconnect.models import Request


CancelCallback = Callable[[str], None]


class CancelToken:
    """Thread-safe cancellation signal shared by every attempt of a request.

    Cancelling the token aborts the transport between body chunks, removes
    the request from any rate-limit queue (through registered callbacks)
    and stops further retry attempts.
    """

    def __init__(self) -> None:
        """Initialize an uncancelled token."""
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[CancelCallback] = []
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        """Check whether cancel() has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason passed to cancel(), if cancelled."""
        return self._reason

    def cancel(self, reason: str = "Request cancelled") -> None:
        """Cancel the token and run registered callbacks once.

        Args:
            reason: Message carried by the resulting RequestCancelledError.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            callback(reason)

    def add_callback(self, callback: CancelCallback) -> Callable[[], None]:
        """Register a callback run on cancellation.

        If the token is already cancelled the callback runs immediately.

        Args:
            callback: Function receiving the cancellation reason.

        Returns:
            Function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
            reason = self._reason or "Request cancelled"

        callback(reason)
        return lambda: None

    def _remove_callback(self, callback: CancelCallback) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds, waking early on cancellation.

        Returns:
            True if the token was cancelled.
        """
        return self._event.wait(timeout)

    def raise_if_cancelled(self, request: "Request | None" = None) -> None:
        """Raise RequestCancelledError if the token has been cancelled."""
        if self._event.is_set():
            raise RequestCancelledError(
                self._reason or "Request cancelled", request=request
            )
