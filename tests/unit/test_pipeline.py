"""Unit tests for interceptor composition."""

import httpx
import pytest
from structlog.testing import capture_logs

from falconnect.config import HttpClientConfig
from falconnect.errors import ErrorClass, HttpConnectionError, HttpStatusError
from falconnect.interceptors.base import Handler
from falconnect.interceptors.cache import CacheInterceptor
from falconnect.interceptors.logging import LoggingInterceptor
from falconnect.interceptors.performance import PerformanceInterceptor
from falconnect.interceptors.rate_limit import RateLimitInterceptor
from falconnect.interceptors.retry import RetryInterceptor
from falconnect.models import Request, Response
from falconnect.pipeline import RequestPipeline
from tests.helpers.clock import FakeClock
from tests.helpers.http import make_request, make_response, mock_transport


class RecordingInterceptor:
    """Interceptor that records entry and exit around the chain."""

    def __init__(self, name: str, trail: list[str]) -> None:
        self.name = name
        self.trail = trail

    def __call__(self, request: Request, call_next: Handler) -> Response:
        self.trail.append(f"{self.name}:in")
        response = call_next(request)
        self.trail.append(f"{self.name}:out")
        return response


class StubTransport:
    """Transport returning 200 and recording dispatches."""

    def __init__(self, trail: list[str]) -> None:
        self.trail = trail

    def dispatch(self, request: Request) -> Response:
        self.trail.append("transport")
        return make_response(request)

    def close(self) -> None:
        self.trail.append("closed")


class TestComposition:
    """Tests for RequestPipeline composition."""

    def test_outermost_first(self) -> None:
        """Test interceptors wrap each other in list order."""
        trail: list[str] = []
        pipeline = RequestPipeline(
            StubTransport(trail),
            [RecordingInterceptor("a", trail), RecordingInterceptor("b", trail)],
        )

        pipeline.send(make_request())

        assert trail == ["a:in", "b:in", "transport", "b:out", "a:out"]

    def test_empty_chain_calls_transport(self) -> None:
        """Test a pipeline without interceptors."""
        trail: list[str] = []
        response = RequestPipeline(StubTransport(trail)).send(make_request())

        assert response.status_code == 200
        assert trail == ["transport"]

    def test_short_circuit(self) -> None:
        """Test an interceptor can answer without calling the chain."""
        trail: list[str] = []

        def answer(request: Request, call_next: Handler) -> Response:
            return make_response(request, 204)

        pipeline = RequestPipeline(StubTransport(trail), [answer])

        assert pipeline.send(make_request()).status_code == 204
        assert trail == []


class TestFromConfig:
    """Tests for the standard chain built from configuration."""

    def test_standard_order(self) -> None:
        """Test the full chain in its fixed order."""
        config = HttpClientConfig().copy_with(enable_logging=True)

        pipeline = RequestPipeline.from_config(config, StubTransport([]))

        assert [type(i) for i in pipeline.interceptors] == [
            RetryInterceptor,
            LoggingInterceptor,
            RateLimitInterceptor,
            CacheInterceptor,
            PerformanceInterceptor,
        ]
        assert pipeline.cache_store is not None
        assert pipeline.rate_limiter is not None
        assert pipeline.metrics is not None

    def test_disabled_interceptors_omitted(self) -> None:
        """Test only enabled interceptors are installed."""
        pipeline = RequestPipeline.from_config(
            HttpClientConfig.test(), StubTransport([])
        )

        assert [type(i) for i in pipeline.interceptors] == [
            LoggingInterceptor,
            RateLimitInterceptor,
        ]
        assert pipeline.cache_store is None
        assert pipeline.metrics is None

    @pytest.mark.parametrize("enable_logging", [True, False])
    def test_attempt_logging_follows_config(self, enable_logging: bool) -> None:
        """Test finished attempts are logged only when logging is enabled."""
        with capture_logs() as logs:
            pipeline = RequestPipeline.from_config(
                HttpClientConfig(enable_logging=enable_logging, enable_cache=False),
                StubTransport([]),
            )
            pipeline.send(make_request())

        completed = [e for e in logs if e["event"] == "request_complete"]
        assert len(completed) == (1 if enable_logging else 0)

    def test_cache_hit_skips_metrics_and_transport(self) -> None:
        """Test cache hits never reach the performance interceptor."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"id": 1})

        pipeline = RequestPipeline.from_config(
            HttpClientConfig(), mock_transport(handler)
        )

        first = pipeline.send(make_request())
        second = pipeline.send(make_request())

        assert (first.from_cache, second.from_cache) == (False, True)
        assert len(calls) == 1
        assert pipeline.metrics is not None
        assert pipeline.metrics.get_statistics().total_requests == 1
        assert pipeline.cache_store is not None
        assert pipeline.cache_store.get_statistics()["hits"] == 1

    def test_retry_reenters_rate_limiter_and_metrics(self) -> None:
        """Test every retry attempt is rate limited and measured."""
        statuses = iter([503, 503, 200])
        clock = FakeClock()

        pipeline = RequestPipeline.from_config(
            HttpClientConfig(retry_delay=0.5),
            mock_transport(lambda request: httpx.Response(next(statuses))),
            clock=clock,
            sleep=clock.sleep,
        )

        response = pipeline.send(make_request("POST"))

        assert response.status_code == 200
        assert pipeline.rate_limiter is not None
        stats = pipeline.rate_limiter.get_statistics()
        assert stats["global_requests_in_window"] == 3
        assert pipeline.metrics is not None
        perf = pipeline.metrics.get_statistics()
        assert (perf.total_requests, perf.failed_requests) == (3, 2)
        assert [m.retry_count for m in pipeline.metrics.get_recent_metrics()] == [
            0,
            1,
            2,
        ]
        assert len(clock.sleeps) == 2

    def test_exhausted_retries_surface_last_error(self) -> None:
        """Test the final error carries the retry count."""
        clock = FakeClock()
        pipeline = RequestPipeline.from_config(
            HttpClientConfig(max_retry_attempts=2, enable_cache=False),
            mock_transport(lambda request: httpx.Response(502)),
            clock=clock,
            sleep=clock.sleep,
        )

        with pytest.raises(HttpStatusError) as exc_info:
            pipeline.send(make_request())

        assert exc_info.value.retry_count == 2
        assert pipeline.metrics is not None
        assert pipeline.metrics.get_statistics().failed_requests == 3

    def test_connect_timeouts_exhaust_retries(self) -> None:
        """Test a POST timing out on every attempt surfaces a connect timeout."""
        clock = FakeClock()
        attempts: list[httpx.Request] = []

        def time_out(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        pipeline = RequestPipeline.from_config(
            HttpClientConfig(max_retry_attempts=2),
            mock_transport(time_out),
            clock=clock,
            sleep=clock.sleep,
        )

        with pytest.raises(HttpConnectionError) as exc_info:
            pipeline.send(make_request("POST", content=b'{"name": "n"}'))

        assert len(attempts) == 3
        assert all(a.content == b'{"name": "n"}' for a in attempts)
        assert exc_info.value.error_class == ErrorClass.CONNECT_TIMEOUT
        assert exc_info.value.retry_count == 2
        assert len(clock.sleeps) == 2
