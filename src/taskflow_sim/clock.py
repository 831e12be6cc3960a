"""Injectable time and randomness sources.

Every timer in the simulation (run duration, stall watchdog, start-time
wake-ups) suspends on a :class:`Clock`, and every outcome draw goes through a
:class:`RandomSource`.  Production code uses :class:`SystemClock` and
:class:`random.Random`; tests and fast-forward simulations use
:class:`ManualClock` and :class:`FixedRandom`.
"""

from __future__ import annotations

import asyncio
import heapq
import random
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Protocol, Union

from loguru import logger


class Clock(Protocol):
    def now(self) -> datetime:
        """Current aware datetime."""

    async def sleep(self, delay_ms: float) -> None:
        """Suspend the calling coroutine for *delay_ms* of clock time."""

    async def advance(self, delay_ms: float) -> None:
        """Let *delay_ms* of clock time pass (really, or virtually)."""


class RandomSource(Protocol):
    def random(self) -> float:
        """Uniform draw in ``[0.0, 1.0)``."""


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ms(clock: Clock) -> float:
    """Epoch milliseconds of ``clock.now()``, exact to the microsecond."""
    return ((clock.now() - _EPOCH) // timedelta(microseconds=1)) / 1000.0


# ---------------------------------------------------------------------------
# Real time
# ---------------------------------------------------------------------------

class SystemClock:
    """Wall-clock time backed by the running asyncio loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, delay_ms: float) -> None:
        await asyncio.sleep(max(0.0, delay_ms) / 1000.0)

    async def advance(self, delay_ms: float) -> None:
        await self.sleep(delay_ms)


# ---------------------------------------------------------------------------
# Virtual time
# ---------------------------------------------------------------------------

_SETTLE_ROUNDS = 50


async def _settle() -> None:
    # Give woken coroutines (and the tasks they spawn) a chance to run.
    for _ in range(_SETTLE_ROUNDS):
        await asyncio.sleep(0)


class ManualClock:
    """Virtual clock that only moves when :meth:`advance` is awaited.

    Sleepers are woken in deadline order; sleepers sharing a deadline wake in
    the order they went to sleep.  ``now()`` never goes backwards.
    """

    DEFAULT_START = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __init__(self, start: Optional[datetime] = None) -> None:
        start = start or self.DEFAULT_START
        if start.tzinfo is None:
            raise ValueError("ManualClock start must be timezone-aware")
        self._now = start
        self._sleepers: list[tuple[datetime, int, asyncio.Future[None]]] = []
        self._seq = 0

    def now(self) -> datetime:
        return self._now

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def sleep(self, delay_ms: float) -> None:
        if delay_ms <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        deadline = self._now + timedelta(milliseconds=delay_ms)
        heapq.heappush(self._sleepers, (deadline, self._seq, fut))
        self._seq += 1
        await fut

    async def advance(self, delay_ms: float) -> None:
        if delay_ms < 0:
            raise ValueError("Cannot move a ManualClock backwards")
        target = self._now + timedelta(milliseconds=delay_ms)
        await _settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._sleepers)
            if fut.done():
                continue
            self._now = max(self._now, deadline)
            fut.set_result(None)
            await _settle()
        self._now = target
        await _settle()
        logger.trace("ManualClock advanced to {}", self._now.isoformat())


# ---------------------------------------------------------------------------
# Randomness
# ---------------------------------------------------------------------------

class FixedRandom:
    """Deterministic :class:`RandomSource` replaying preset draws.

    ``FixedRandom(0.0)`` always draws 0.0; ``FixedRandom([0.9, 0.1])`` draws
    0.9 then 0.1 and repeats the last value once the sequence is exhausted.
    """

    def __init__(self, values: Union[float, Iterable[float]]) -> None:
        if isinstance(values, (int, float)):
            values = [float(values)]
        self._values = [float(v) for v in values]
        if not self._values:
            raise ValueError("FixedRandom needs at least one value")
        self._index = 0
        self.draws = 0

    def random(self) -> float:
        value = self._values[min(self._index, len(self._values) - 1)]
        self._index += 1
        self.draws += 1
        return value


def seeded_random(seed: Optional[int] = None) -> random.Random:
    return random.Random(seed)
