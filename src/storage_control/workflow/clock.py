"""Injectable time source for backoff delays and deadlines."""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time plus an awaitable sleep."""

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Real time: ``time.monotonic`` and ``asyncio.sleep``."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock:
    """Test clock: ``sleep`` advances time instantly and records the delay."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += max(seconds, 0.0)
        # Yield so cancellation and other tasks still get a turn.
        await asyncio.sleep(0)


class WorkflowDeadline:
    """Absolute workflow-level deadline; ``None`` seconds means unbounded."""

    def __init__(self, clock: Clock, seconds: float | None) -> None:
        self._clock = clock
        self.at = None if seconds is None else clock.monotonic() + seconds

    def remaining(self) -> float | None:
        if self.at is None:
            return None
        return max(self.at - self._clock.monotonic(), 0.0)

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def bound(self, budget: float | None) -> tuple[float | None, bool]:
        """Cap a phase budget by the remaining workflow time.

        Returns the effective budget and whether the workflow deadline is
        the binding limit.
        """
        remaining = self.remaining()
        if remaining is None:
            return budget, False
        if budget is None or remaining < budget:
            return remaining, True
        return budget, False
