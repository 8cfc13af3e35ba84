"""Tests for the retrying, circuit-breaking client used for JWKS fetches.

Covers one breaker failure per exhausted request, the reset deadline while
open, per-host isolation and retry of transient identity-provider errors.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from backchannel_logout.core.retry import (
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
    ProviderHTTPClient,
    RetryPolicy,
    retry_async,
)

JWKS_URI = "https://idp.example/jwks"
FAST_RETRY = RetryPolicy(max_retries=2, base_delay=0.001, jitter=False)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def trip(breaker: CircuitBreaker) -> None:
    for i in range(breaker.failure_threshold):
        await breaker.on_failure(ConnectionError(f"fail {i}"))


def mock_client(handler, **options) -> ProviderHTTPClient:
    """ProviderHTTPClient whose requests are answered by ``handler``."""
    client = ProviderHTTPClient("jwks", policy=FAST_RETRY, **options)
    client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


@pytest.mark.asyncio
class TestCircuitBreaker:
    async def test_opens_at_failure_threshold(self):
        breaker = CircuitBreaker("jwks:a", failure_threshold=3)

        await breaker.on_failure(ConnectionError("1"))
        await breaker.on_failure(ConnectionError("2"))
        assert breaker.state is CircuitState.CLOSED

        await breaker.on_failure(ConnectionError("3"))
        assert breaker.state is CircuitState.OPEN

    async def test_open_breaker_refuses_calls(self):
        clock = FakeClock()
        breaker = CircuitBreaker("jwks:b", failure_threshold=1, reset_timeout=30.0, clock=clock)
        await trip(breaker)
        clock.now += 10

        with pytest.raises(CircuitBreakerOpen) as exc_info:
            await breaker.before_call()

        assert exc_info.value.retry_after == pytest.approx(20.0)
        assert "jwks:b" in str(exc_info.value)

    async def test_failures_while_open_keep_reset_deadline(self):
        clock = FakeClock()
        breaker = CircuitBreaker("jwks:c", failure_threshold=1, reset_timeout=30.0, clock=clock)
        await trip(breaker)

        clock.now += 20
        await breaker.on_failure(ConnectionError("while open"))
        clock.now += 10

        await breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN

    async def test_successful_probe_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker("jwks:d", failure_threshold=2, reset_timeout=5.0, clock=clock)
        await trip(breaker)
        clock.now += 5

        await breaker.before_call()
        await breaker.on_success()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_failed_probe_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("jwks:e", failure_threshold=2, reset_timeout=5.0, clock=clock)
        await trip(breaker)
        clock.now += 5

        await breaker.before_call()
        await breaker.on_failure(ConnectionError("still down"))

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpen):
            await breaker.before_call()

    async def test_half_open_admits_one_call_at_a_time(self):
        clock = FakeClock()
        breaker = CircuitBreaker("jwks:l", failure_threshold=1, reset_timeout=5.0, clock=clock)
        await trip(breaker)
        clock.now += 5

        await breaker.before_call()
        with pytest.raises(CircuitBreakerOpen):
            await breaker.before_call()

        await breaker.on_success()
        await breaker.before_call()
        assert breaker.state is CircuitState.CLOSED

    async def test_success_clears_failure_count(self):
        breaker = CircuitBreaker("jwks:f", failure_threshold=3)
        await breaker.on_failure(ConnectionError("1"))
        await breaker.on_failure(ConnectionError("2"))

        await breaker.on_success()
        await breaker.on_failure(ConnectionError("3"))

        assert breaker.state is CircuitState.CLOSED

    async def test_reset(self):
        breaker = CircuitBreaker("jwks:g", failure_threshold=1)
        await trip(breaker)

        await breaker.reset()

        assert breaker.state is CircuitState.CLOSED


class TestBreakerRegistry:
    def test_for_service_returns_shared_breaker(self):
        first = CircuitBreaker.for_service("jwks:h", failure_threshold=7)

        assert CircuitBreaker.for_service("jwks:h") is first
        assert first.failure_threshold == 7

    def test_snapshots(self):
        CircuitBreaker.for_service("jwks:i", failure_threshold=7, reset_timeout=15.0)

        snapshot = CircuitBreaker.snapshots()["jwks:i"]

        assert snapshot == {
            "state": "closed",
            "failure_count": 0,
            "failure_threshold": 7,
            "reset_timeout": 15.0,
            "retry_after": None,
        }


class TestRetryPolicy:
    def test_exponential_growth_with_cap(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert [policy.delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=1.0, jitter=True)

        for _ in range(20):
            assert 0.5 <= policy.delay(0) <= 1.5

    @pytest.mark.parametrize(
        "error, expected",
        [
            (httpx.ConnectError("refused"), True),
            (httpx.ReadTimeout("slow"), True),
            (ConnectionError("reset"), True),
            (ValueError("not json"), False),
        ],
    )
    def test_should_retry(self, error, expected):
        assert RetryPolicy().should_retry(error) is expected

    @pytest.mark.parametrize("status, expected", [(503, True), (429, True), (404, False)])
    def test_should_retry_status(self, status, expected):
        request = httpx.Request("GET", JWKS_URI)
        error = httpx.HTTPStatusError(
            "status", request=request, response=httpx.Response(status, request=request)
        )

        assert RetryPolicy().should_retry(error) is expected


@pytest.mark.asyncio
class TestRetryAsync:
    async def test_exhausted_request_counts_once(self):
        breaker = CircuitBreaker("jwks:j", failure_threshold=5)
        func = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(ConnectionError):
            await retry_async(func, FAST_RETRY, breaker)

        assert func.call_count == 3
        assert breaker.failure_count == 1

    async def test_non_retryable_error_is_not_retried(self):
        func = AsyncMock(side_effect=ValueError("not json"))

        with pytest.raises(ValueError):
            await retry_async(func, FAST_RETRY)

        assert func.call_count == 1

    async def test_transient_error_then_success(self):
        func = AsyncMock(side_effect=[httpx.ConnectError("refused"), "keys"])

        assert await retry_async(func, FAST_RETRY) == "keys"
        assert func.call_count == 2

    async def test_cancelled_half_open_call_frees_the_slot(self):
        clock = FakeClock()
        breaker = CircuitBreaker("jwks:m", failure_threshold=1, reset_timeout=5.0, clock=clock)
        await trip(breaker)
        clock.now += 5
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(retry_async(hang, FAST_RETRY, breaker))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await breaker.before_call()
        assert breaker.state is CircuitState.HALF_OPEN

    async def test_open_breaker_skips_call(self):
        breaker = CircuitBreaker("jwks:k", failure_threshold=1, reset_timeout=60.0)
        await trip(breaker)
        func = AsyncMock(return_value="keys")

        with pytest.raises(CircuitBreakerOpen):
            await retry_async(func, breaker=breaker)

        assert func.call_count == 0


@pytest.mark.asyncio
class TestProviderHTTPClient:
    async def test_get_returns_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"keys": []})

        client = mock_client(handler)
        try:
            response = await client.get(JWKS_URI)
        finally:
            await client.close()

        assert response.json() == {"keys": []}

    async def test_gateway_errors_are_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"keys": []})

        client = mock_client(handler)
        try:
            response = await client.get(JWKS_URI)
        finally:
            await client.close()

        assert response.status_code == 200
        assert len(calls) == 3

    async def test_not_found_is_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url)
            return httpx.Response(404)

        client = mock_client(handler)
        try:
            with pytest.raises(httpx.HTTPStatusError):
                await client.get(JWKS_URI)
        finally:
            await client.close()

        assert len(calls) == 1

    async def test_outage_opens_breaker_for_that_host_only(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "idp.example":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"keys": []})

        client = mock_client(handler, failure_threshold=2, reset_timeout=60.0)
        try:
            for _ in range(2):
                with pytest.raises(httpx.ConnectError):
                    await client.get(JWKS_URI)
            with pytest.raises(CircuitBreakerOpen):
                await client.get(JWKS_URI)

            response = await client.get("https://other.example/jwks")
        finally:
            await client.close()

        assert response.status_code == 200
        assert client.breaker_for(JWKS_URI).state is CircuitState.OPEN
