"""Middleware contract shared by all interceptors."""

from collections.abc import Callable
from typing import Protocol

from falconnect.models import Request, Response


Handler = Callable[[Request], Response]


class Interceptor(Protocol):
    """A pipeline stage wrapping the rest of the chain.

    An interceptor either returns a response (from ``call_next`` or a
    short-circuit such as a cache hit) or raises an HttpClientError.
    Interceptors must not assume any other interceptor is installed.
    """

    def __call__(self, request: Request, call_next: Handler) -> Response:
        """Process a request.

        Args:
            request: The request attempt.
            call_next: Continues with the inner part of the chain.

        Returns:
            The response for this attempt.
        """
        ...
