import asyncio
import pytest
from unittest.mock import AsyncMock

from oae.core.errors import AdapterRejected, AdapterUnavailable, StorageUnavailable
from oae.core.events import EventBus, SECURITY
from oae.core.retry import TokenBucket, backoff_delay, retry_call


def test_backoff_grows_and_is_capped():
    for attempt in range(1, 10):
        delay = backoff_delay(attempt, base=1.0, cap=60.0)
        expected = min(2 ** (attempt - 1), 60)
        assert expected * 1.1 <= delay <= expected * 1.3


@pytest.mark.asyncio
async def test_retries_transient_errors():
    sleep = AsyncMock()
    fn = AsyncMock(side_effect=[AdapterUnavailable("x"), StorageUnavailable("y"), "ok"])
    assert await retry_call(fn, name="t", sleep=sleep) == "ok"
    assert fn.await_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_rejection_is_not_retried():
    fn = AsyncMock(side_effect=AdapterRejected("no"))
    with pytest.raises(AdapterRejected):
        await retry_call(fn, name="t", sleep=AsyncMock())
    assert fn.await_count == 1


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    fn = AsyncMock(side_effect=AdapterUnavailable("down"))
    with pytest.raises(AdapterUnavailable):
        await retry_call(fn, name="t", max_attempts=3, sleep=AsyncMock())
    assert fn.await_count == 3


@pytest.mark.asyncio
async def test_budget_stops_retrying():
    fn = AsyncMock(side_effect=AdapterUnavailable("down"))
    with pytest.raises(AdapterUnavailable):
        await retry_call(fn, name="t", budget=0.5, sleep=AsyncMock())
    # the first backoff (>= 1.1s) already exceeds the budget
    assert fn.await_count == 1


@pytest.mark.asyncio
async def test_attempt_timeout_is_transient():
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(AdapterUnavailable) as exc:
        await retry_call(slow, name="slow", max_attempts=2, attempt_timeout=0.01, sleep=AsyncMock())
    assert "timed out" in exc.value.message


@pytest.mark.asyncio
async def test_token_bucket_allows_burst():
    bucket = TokenBucket(rate=1000.0, capacity=3)
    for _ in range(3):
        await asyncio.wait_for(bucket.acquire(), timeout=0.1)
    await asyncio.wait_for(bucket.acquire(), timeout=0.5)


@pytest.mark.asyncio
async def test_event_bus_isolates_handlers():
    bus = EventBus()
    got = []
    bus.subscribe(SECURITY, AsyncMock(side_effect=RuntimeError("boom")))
    bus.subscribe(SECURITY, AsyncMock(side_effect=got.append))
    await bus.publish(SECURITY, {"action": "pin.verify"})
    assert got == [{"action": "pin.verify"}]
    with pytest.raises(ValueError):
        bus.subscribe("bogus", AsyncMock())
