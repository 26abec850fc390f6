"""Bounded retries and rate limiting for calls that leave the process."""
import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

from oae.core.errors import AdapterUnavailable, RETRYABLE

logger = logging.getLogger(__name__)
T = TypeVar("T")


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 60.0) -> float:
    """Delay before retry number ``attempt`` (1-based), with up to 30% jitter."""
    delay = min(base * (2 ** (attempt - 1)), cap)
    return delay + random.uniform(0.1, 0.3) * delay


async def retry_call(
    fn: Callable[[], Awaitable[T]],
    *,
    name: str,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    attempt_timeout: Optional[float] = 10.0,
    budget: Optional[float] = 60.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``fn`` until it succeeds, retrying only transient errors.

    Each attempt is bounded by ``attempt_timeout``; the whole operation,
    including backoff sleeps, by ``budget``. Non-retryable errors propagate
    immediately; the last transient error propagates once the attempts or the
    budget run out.
    """
    deadline = time.monotonic() + budget if budget else None
    attempt = 0
    while True:
        attempt += 1
        try:
            if attempt_timeout:
                return await asyncio.wait_for(fn(), timeout=attempt_timeout)
            return await fn()
        except asyncio.TimeoutError as e:
            last = AdapterUnavailable(f"{name}: timed out after {attempt_timeout}s")
            last.__cause__ = e
        except RETRYABLE as e:
            last = e

        if attempt >= max_attempts:
            raise last
        delay = backoff_delay(attempt, base_delay, max_delay)
        if deadline is not None and time.monotonic() + delay > deadline:
            raise last
        logger.warning(f"{name} failed ({last.code}: {last.message}), retry {attempt}/{max_attempts - 1} in {delay:.1f}s")
        await sleep(delay)


class TokenBucket:
    """Async token bucket: ``rate`` tokens per second, at most ``capacity`` banked."""

    def __init__(self, rate: float, capacity: int):
        self.rate = rate
        self.capacity = capacity
        self._tokens = float(capacity)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.rate)
