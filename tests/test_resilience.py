"""Retry, timeout and backoff behavior of the resilience executor."""

import asyncio

import httpx
import pytest

from cartpay.common.errors import AttemptTimeoutError, InvalidCouponError, TransientServiceError
from cartpay.checkout.resilience import RetryConfig, default_retry_predicate


def test_backoff_is_exponential_and_capped():
    config = RetryConfig(initial_backoff=1.0, backoff_multiplier=2.0, max_backoff=5.0)

    assert [config.backoff_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


def test_default_predicate_classification():
    request = httpx.Request("GET", "http://store/orders")

    assert default_retry_predicate(httpx.ConnectError("refused", request=request))
    assert default_retry_predicate(TransientServiceError("down", dependency="store", status_code=503))
    assert not default_retry_predicate(InvalidCouponError("nope", dependency="coupons", status_code=404))
    assert not default_retry_predicate(ValueError("bug"))


@pytest.mark.anyio
async def test_exhausted_retries_surface_last_error(executor, fast_retry, sleeper):
    """Three transient failures: the third error comes back with attempts=3."""

    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        raise TransientServiceError(f"failure {calls}", dependency="store", status_code=503)

    with pytest.raises(TransientServiceError) as excinfo:
        await executor.execute(flaky, fast_retry, dependency="store")

    assert calls == 3
    assert excinfo.value.message == "failure 3"
    assert excinfo.value.attempts == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.anyio
async def test_recovers_after_transient_failure(executor, fast_retry, sleeper):
    results = iter([TransientServiceError("blip", dependency="store"), "ok"])

    async def op():
        item = next(results)
        if isinstance(item, Exception):
            raise item
        return item

    assert await executor.execute(op, fast_retry, dependency="store") == "ok"
    assert sleeper.delays == [1.0]


@pytest.mark.anyio
async def test_terminal_error_is_not_retried(executor, fast_retry, sleeper):
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        raise InvalidCouponError("unknown code", dependency="coupons", status_code=404)

    with pytest.raises(InvalidCouponError) as excinfo:
        await executor.execute(op, fast_retry, dependency="coupons")

    assert calls == 1
    assert excinfo.value.attempts == 1
    assert sleeper.delays == []


@pytest.mark.anyio
async def test_attempt_timeout_is_retried(executor, sleeper):
    config = RetryConfig(max_attempts=2, initial_backoff=0.5, per_attempt_timeout=0.01)
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await asyncio.sleep(1)

    with pytest.raises(AttemptTimeoutError) as excinfo:
        await executor.execute(slow, config, dependency="wallet")

    assert calls == 2
    assert excinfo.value.attempts == 2
    assert sleeper.delays == [0.5]
