"""Time source and backoff helpers.

Retry loops sleep through a ``Clock`` so tests can swap in a virtual clock
and assert on the exact delays without waiting for them.
"""

import asyncio
import random
import time
from typing import Callable


class Clock:
    """Monotonic clock backed by the event loop."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock(Clock):
    """
    Virtual clock for deterministic tests.

    ``sleep`` advances the virtual time immediately and records the
    requested delay, yielding once to the event loop.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: float = 0.2,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff with symmetric jitter.

    Args:
        attempt: 1-based attempt number; attempt 1 waits ``base``.
        base: Initial delay in seconds.
        cap: Upper bound applied before jitter.
        jitter: Fractional spread, 0.2 means +/-20%.
        rand: Source of uniform [0, 1) values.

    Returns:
        Delay in seconds.
    """
    exponent = min(16, max(0, attempt - 1))
    delay = min(cap, base * (2 ** exponent))
    if jitter > 0:
        delay *= (1 - jitter) + rand() * 2 * jitter
    return max(0.0, delay)
