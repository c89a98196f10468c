"""Unit tests for request/response models and cancellation tokens."""

import threading

import pytest

from falconnect.cancellation import CancelToken
from falconnect.errors import RequestCancelledError
from falconnect.models import Request, TypedResponse
from tests.helpers.http import make_request, make_response


class TestRequest:
    """Tests for Request."""

    def test_method_uppercased(self) -> None:
        """Test method normalization."""
        assert Request(method="get", url="https://x.test/").method == "GET"

    def test_headers_case_insensitive(self) -> None:
        """Test that plain dict headers become case-insensitive."""
        request = Request(method="GET", url="https://x.test/", headers={"Accept": "a"})
        assert request.headers["accept"] == "a"

    def test_full_url_applies_params(self) -> None:
        """Test query parameters are encoded into the URL."""
        request = make_request(params={"page": 2, "q": "a b"})
        assert str(request.full_url) == "https://api.example.com/users?page=2&q=a+b"

    def test_host(self) -> None:
        """Test host extraction for rate limiting."""
        assert make_request(url="https://api.example.com:8443/x").host == (
            "api.example.com"
        )

    def test_for_retry(self) -> None:
        """Test that retries copy the request with incremented count."""
        token = CancelToken()

        def on_progress(done: int, total: int | None) -> None:
            pass

        original = make_request(
            "POST",
            headers={"X-Id": "1"},
            content=b"body",
            params={"a": "1"},
            cancel_token=token,
            on_send_progress=on_progress,
            on_receive_progress=on_progress,
            extra={"performance_metrics": object(), "custom": 1},
        )

        first = original.for_retry()
        second = first.for_retry()

        assert (original.retry_count, original.is_retry) == (0, False)
        assert (first.retry_count, first.is_retry) == (1, True)
        assert second.retry_count == 2
        assert first.method == "POST"
        assert first.content == b"body"
        assert first.params == {"a": "1"}
        assert first.cancel_token is token
        assert first.on_send_progress is on_progress
        assert first.on_receive_progress is on_progress
        assert first.headers["X-Id"] == "1"
        assert first.headers is not original.headers
        assert first.extra["custom"] == 1

    def test_is_cancelled(self) -> None:
        """Test cancellation state via the token."""
        token = CancelToken()
        request = make_request(cancel_token=token)
        assert request.is_cancelled is False

        token.cancel()

        assert request.is_cancelled is True
        with pytest.raises(RequestCancelledError):
            request.raise_if_cancelled()

    def test_no_token_never_cancelled(self) -> None:
        """Test requests without a token."""
        request = make_request()
        request.raise_if_cancelled()
        assert request.is_cancelled is False


class TestResponse:
    """Tests for Response."""

    def test_helpers(self) -> None:
        """Test success flag, text and JSON decoding."""
        response = make_response(make_request(), content=b'{"id": 7}')

        assert response.is_success is True
        assert response.text == '{"id": 7}'
        assert response.json() == {"id": 7}

    def test_as_cached(self) -> None:
        """Test cached copies point at the new request."""
        response = make_response(make_request())
        other = make_request()

        cached = response.as_cached(other)

        assert cached.from_cache is True
        assert cached.request is other
        assert cached.content == response.content
        assert response.from_cache is False

    def test_immutable(self) -> None:
        """Test that responses cannot be modified."""
        response = make_response(make_request())
        with pytest.raises(AttributeError):
            response.status_code = 500  # type: ignore[misc]

    def test_typed_response(self) -> None:
        """Test typed wrapper delegates to the raw response."""
        raw = make_response(make_request(), headers={"X-Total": "3"})
        typed = TypedResponse(data=[1, 2, 3], raw=raw)

        assert typed.status_code == 200
        assert typed.headers["x-total"] == "3"
        assert typed.from_cache is False


class TestCancelToken:
    """Tests for CancelToken."""

    def test_cancel_once(self) -> None:
        """Test callbacks run exactly once with the reason."""
        token = CancelToken()
        reasons: list[str] = []
        token.add_callback(reasons.append)

        token.cancel("first")
        token.cancel("second")

        assert reasons == ["first"]
        assert token.reason == "first"

    def test_callback_after_cancel_runs_immediately(self) -> None:
        """Test late registration on a cancelled token."""
        token = CancelToken()
        token.cancel("done")
        reasons: list[str] = []

        token.add_callback(reasons.append)

        assert reasons == ["done"]

    def test_unregister(self) -> None:
        """Test unregistered callbacks are not run."""
        token = CancelToken()
        reasons: list[str] = []
        unregister = token.add_callback(reasons.append)

        unregister()
        token.cancel()

        assert reasons == []

    def test_wait(self) -> None:
        """Test wait returns early on cancellation."""
        token = CancelToken()
        assert token.wait(0.01) is False

        threading.Timer(0.02, token.cancel).start()

        assert token.wait(5) is True

    def test_raise_if_cancelled_reason(self) -> None:
        """Test the error carries the cancellation reason."""
        token = CancelToken()
        token.cancel("user navigated away")

        with pytest.raises(RequestCancelledError, match="user navigated away"):
            token.raise_if_cancelled()
