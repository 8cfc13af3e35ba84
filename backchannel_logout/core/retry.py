"""Retries and circuit breaking for calls to identity providers.

Signing keys are fetched from each provider's JWKS endpoint. A provider that
stops answering trips a breaker scoped to its host, so other providers keep
working and requests for the failing one fail fast as service errors.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    ConnectionError,
    TimeoutError,
)
# Gateway errors and rate limiting
RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how patiently, a failed provider call is repeated."""

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 5.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (zero based)."""
        delay = min(self.base_delay * 2**attempt, self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay

    def should_retry(self, error: BaseException) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in RETRYABLE_STATUS_CODES
        return isinstance(error, RETRYABLE_EXCEPTIONS)


class CircuitBreakerOpen(Exception):
    """Raised instead of calling a provider whose breaker is open."""

    def __init__(self, service_name: str, retry_after: float):
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker open for {service_name}. Retry after {retry_after:.1f}s")


class CircuitBreaker:
    """Stops calling a provider after ``failure_threshold`` consecutive failures.

    After ``reset_timeout`` seconds one probe call is let through while other
    callers keep failing fast: success closes the breaker, failure opens it
    for another ``reset_timeout``.
    """

    _registry: dict[str, "CircuitBreaker"] = {}

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: float | None = None
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @classmethod
    def for_service(cls, service_name: str, **options: Any) -> "CircuitBreaker":
        """The shared breaker for ``service_name``, created on first use."""
        breaker = cls._registry.get(service_name)
        if breaker is None:
            breaker = cls._registry[service_name] = cls(service_name, **options)
        return breaker

    @classmethod
    def snapshots(cls) -> dict[str, dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in list(cls._registry.items())}

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "retry_after": self._retry_after() if self.state is CircuitState.OPEN else None,
        }

    def _retry_after(self) -> float:
        return max(0.0, self.reset_timeout - (self._clock() - (self.opened_at or 0.0)))

    async def before_call(self) -> None:
        """Raise CircuitBreakerOpen unless a call may go ahead."""
        async with self._lock:
            if self.state is CircuitState.CLOSED:
                return
            if self.state is CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitBreakerOpen(self.service_name, 0.0)
                self._probe_in_flight = True
                return
            retry_after = self._retry_after()
            if retry_after > 0:
                raise CircuitBreakerOpen(self.service_name, retry_after)
            logger.info(f"Circuit breaker half-open for {self.service_name}")
            self.state = CircuitState.HALF_OPEN
            self._probe_in_flight = True

    def release_probe(self) -> None:
        """Let another caller probe after a probe call was cancelled."""
        self._probe_in_flight = False

    async def on_success(self) -> None:
        async with self._lock:
            if self.state is CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker closed for {self.service_name}")
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.opened_at = None
            self._probe_in_flight = False

    async def on_failure(self, error: BaseException) -> None:
        async with self._lock:
            # Open breakers keep their original reset deadline
            if self.state is CircuitState.OPEN:
                return
            self.failure_count += 1
            if (
                self.state is CircuitState.HALF_OPEN
                or self.failure_count >= self.failure_threshold
            ):
                logger.warning(
                    f"Circuit breaker opened for {self.service_name} "
                    f"after {self.failure_count} failures: {error}"
                )
                self.state = CircuitState.OPEN
                self.opened_at = self._clock()
                self._probe_in_flight = False

    async def reset(self) -> None:
        async with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.opened_at = None
            self._probe_in_flight = False


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    breaker: CircuitBreaker | None = None,
) -> T:
    """Await ``func()``, retrying transient failures.

    A call that still fails after its retries counts as one breaker failure.

    Raises:
        CircuitBreakerOpen: If ``breaker`` is open; ``func`` is not called.
    """
    policy = policy or RetryPolicy()
    if breaker is not None:
        await breaker.before_call()

    attempt = 0
    try:
        while True:
            try:
                result = await func()
            except Exception as e:
                if attempt < policy.max_retries and policy.should_retry(e):
                    delay = policy.delay(attempt)
                    attempt += 1
                    logger.info(f"Retry {attempt}/{policy.max_retries} in {delay:.2f}s: {e}")
                    await asyncio.sleep(delay)
                    continue
                if breaker is not None:
                    await breaker.on_failure(e)
                raise
            if breaker is not None:
                await breaker.on_success()
            return result
    except asyncio.CancelledError:
        if breaker is not None:
            breaker.release_probe()
        raise


class ProviderHTTPClient:
    """GETs provider documents with retries and a breaker per provider host."""

    def __init__(
        self,
        service_name: str,
        timeout: float = 10.0,
        policy: RetryPolicy | None = None,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ):
        self.service_name = service_name
        self.timeout = timeout
        self.policy = policy or RetryPolicy()
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.headers = headers or {}
        self._client: httpx.AsyncClient | None = None

    def breaker_for(self, url: str) -> CircuitBreaker:
        host = urlsplit(url).netloc or url
        return CircuitBreaker.for_service(
            f"{self.service_name}:{host}",
            failure_threshold=self.failure_threshold,
            reset_timeout=self.reset_timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=self.headers)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(self, url: str) -> httpx.Response:
        """GET ``url``; non-2xx responses raise ``httpx.HTTPStatusError``."""

        async def fetch() -> httpx.Response:
            response = await self._get_client().get(url)
            response.raise_for_status()
            return response

        return await retry_async(fetch, self.policy, self.breaker_for(url))
