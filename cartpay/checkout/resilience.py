"""Retry-with-timeout-and-backoff wrapper for every network call in checkout.

The executor knows nothing about checkout. Callers pass a zero-argument
coroutine factory and a `RetryConfig`; each attempt gets a hard timeout and
failed attempts are retried while `retry_predicate` allows it, sleeping
`min(initial * multiplier ** (n - 1), max)` between attempt n and n + 1.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import TypeVar

import httpx

from cartpay.common.config import settings
from cartpay.common.errors import AttemptTimeoutError, ServiceError, TransientServiceError
from cartpay.common.logging import logger
from cartpay.common.metrics import retries_total, retry_exhausted_total

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429})
TRANSIENT_PROVIDER_CODES = frozenset(
    {
        "api_connection_error",
        "lock_timeout",
        "rate_limit",
        "service_unavailable",
        "deadline_exceeded",
        "resource_exhausted",
    }
)


def default_retry_predicate(error: BaseException) -> bool:
    """Retry transport failures, 5xx, 429 and known transient provider codes."""

    if isinstance(error, (httpx.TransportError, TransientServiceError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status in RETRYABLE_STATUS_CODES
    if isinstance(error, ServiceError):
        if error.status_code is not None and (error.status_code >= 500 or error.status_code in RETRYABLE_STATUS_CODES):
            return True
        return error.code in TRANSIENT_PROVIDER_CODES
    return False


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_backoff: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    per_attempt_timeout: float | None = 10.0
    retry_predicate: Callable[[BaseException], bool] = field(default=default_retry_predicate)

    @classmethod
    def from_settings(cls, **overrides) -> "RetryConfig":
        config = cls(
            max_attempts=settings.retry_max_attempts,
            initial_backoff=settings.retry_initial_backoff_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_backoff=settings.retry_max_backoff_seconds,
            per_attempt_timeout=settings.retry_attempt_timeout_seconds,
        )
        return replace(config, **overrides)

    def backoff_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""

        return min(self.initial_backoff * self.backoff_multiplier ** (attempt - 1), self.max_backoff)


class ResilienceExecutor:
    """Runs operations under a `RetryConfig`, reporting retries to Prometheus."""

    def __init__(
        self,
        service_name: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.service_name = service_name or settings.service_name
        self._sleep = sleep

    async def _attempt(self, operation: Callable[[], Awaitable[T]], config: RetryConfig, dependency: str) -> T:
        if config.per_attempt_timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=config.per_attempt_timeout)
        except asyncio.TimeoutError as exc:
            raise AttemptTimeoutError(
                f"{dependency} attempt timed out after {config.per_attempt_timeout}s",
                dependency=dependency,
            ) from exc

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        config: RetryConfig,
        *,
        dependency: str = "unknown",
    ) -> T:
        """Run `operation` until it succeeds or retries are exhausted.

        On failure the last error is re-raised unchanged with an `attempts`
        attribute recording how many attempts were made.
        """

        attempt = 0
        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                result = await self._attempt(operation, config, dependency)
            except Exception as exc:
                elapsed_ms = int((time.perf_counter() - start) * 1000)
                retryable = config.retry_predicate(exc)
                if not retryable or attempt >= config.max_attempts:
                    exc.attempts = attempt
                    retry_exhausted_total.labels(
                        service=self.service_name,
                        dependency=dependency,
                        error_type=type(exc).__name__,
                    ).inc()
                    logger.warning(
                        "operation failed dependency=%s attempts=%s retryable=%s latency_ms=%s error=%r",
                        dependency,
                        attempt,
                        retryable,
                        elapsed_ms,
                        exc,
                    )
                    raise
                delay = config.backoff_for(attempt)
                retries_total.labels(service=self.service_name, dependency=dependency).inc()
                logger.info(
                    "retrying dependency=%s attempt=%s/%s backoff_s=%s error=%r",
                    dependency,
                    attempt,
                    config.max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                continue
            if attempt > 1:
                logger.info("operation recovered dependency=%s attempts=%s", dependency, attempt)
            return result
