import asyncio
from unittest.mock import AsyncMock

import pytest

from stockflow.core.exceptions import (
    CircuitOpenError,
    NotFoundError,
    ServiceUnavailableError,
)
from stockflow.core.monitoring import metrics
from stockflow.core.resilience import RetryConfig, calculate_backoff, retry_forever


def flaky(failures, result="ok", error=ConnectionError):
    """AsyncMock that raises `failures` times before returning result."""
    return AsyncMock(side_effect=[error("down")] * failures + [result])


@pytest.mark.asyncio
async def test_guard_retries_transient_failures(guard_factory):
    guard = guard_factory("inventory", max_attempts=3)
    func = flaky(2)

    assert await guard.call(func, "order-1") == "ok"

    assert func.await_count == 3
    func.assert_awaited_with("order-1")
    assert guard._sleep.await_count == 2


@pytest.mark.asyncio
async def test_guard_surfaces_exhaustion_as_unavailable(guard_factory):
    guard = guard_factory("payment", max_attempts=3)
    func = AsyncMock(side_effect=ConnectionError("refused"))

    with pytest.raises(ServiceUnavailableError) as exc_info:
        await guard.call(func)

    assert func.await_count == 3
    assert exc_info.value.service == "payment"
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert metrics.get_counter("guard_unavailable_total", labels={"service": "payment"}) == 1


@pytest.mark.asyncio
async def test_guard_passes_business_errors_through_untouched(guard_factory):
    guard = guard_factory("inventory")
    func = AsyncMock(side_effect=NotFoundError("Product", "ghost"))

    with pytest.raises(NotFoundError):
        await guard.call(func)

    assert func.await_count == 1
    assert guard.breaker.total_failures == 0


@pytest.mark.asyncio
async def test_guard_does_not_call_through_open_circuit(guard_factory):
    guard = guard_factory("inventory")
    guard.breaker.force_open()
    func = AsyncMock(return_value="ok")

    with pytest.raises(CircuitOpenError) as exc_info:
        await guard.call(func)

    assert isinstance(exc_info.value, ServiceUnavailableError)
    func.assert_not_awaited()


@pytest.mark.asyncio
async def test_guard_timeout_is_retried_then_unavailable(guard_factory):
    guard = guard_factory("payment", max_attempts=2, call_timeout=0.01)

    async def hang():
        await asyncio.sleep(1)

    with pytest.raises(ServiceUnavailableError):
        await guard.call(hang)

    assert guard.breaker.total_timeouts == 2


@pytest.mark.asyncio
async def test_retry_forever_keeps_going_until_success(instant_retry):
    func = flaky(5, result="released")
    sleep = AsyncMock()

    result = await retry_forever("release", func, "order-1", retry_config=instant_retry, sleep=sleep)

    assert result == "released"
    assert func.await_count == 6
    assert sleep.await_count == 5
    assert metrics.get_counter("compensation_retries_total", labels={"action": "release"}) == 5


@pytest.mark.asyncio
async def test_retry_forever_retries_unavailable_collaborators(instant_retry):
    func = AsyncMock(side_effect=[ServiceUnavailableError("down", service="inventory"), "ok"])

    assert await retry_forever("release", func, retry_config=instant_retry, sleep=AsyncMock()) == "ok"


@pytest.mark.asyncio
async def test_retry_forever_raises_business_errors(instant_retry):
    func = AsyncMock(side_effect=NotFoundError("Product", "ghost"))
    sleep = AsyncMock()

    with pytest.raises(NotFoundError):
        await retry_forever("release", func, retry_config=instant_retry, sleep=sleep)

    sleep.assert_not_awaited()


def test_backoff_grows_exponentially_and_is_capped():
    cfg = RetryConfig(max_attempts=5, base_delay=1.0, max_delay=5.0, jitter_factor=0)

    assert calculate_backoff(cfg, 0) == 1.0
    assert calculate_backoff(cfg, 2) == 4.0
    assert calculate_backoff(cfg, 10) == 5.0


def test_backoff_jitter_stays_within_bounds():
    cfg = RetryConfig(max_attempts=5, base_delay=1.0, max_delay=100.0, jitter_factor=0.5)

    for _ in range(50):
        assert 0.5 <= calculate_backoff(cfg, 0) <= 1.5
