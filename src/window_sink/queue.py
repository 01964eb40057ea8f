"""
Emission queue: hand-off of CLOSED windows to the emission workers.

A window is *scheduled* from the moment it is offered until the worker that
took it calls `done`. Offering a scheduled window again is a no-op, so the
same window is never emitted by two workers at once, and `pending` tells the
pipeline when every offered window has been processed.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .models import Window, WindowId

BackpressureCallback = Callable[[], Awaitable[None]]


class EmissionQueue:
    """Bounded FIFO of closed windows with de-duplication and in-flight accounting.

    Producers block while `capacity` windows are waiting; closed windows are
    never dropped. `on_high` fires once when the number of waiting windows
    reaches the high watermark and is re-armed only after it falls back to
    the low watermark, where `on_low` fires.
    """

    def __init__(
        self,
        capacity: int,
        *,
        high_watermark: Optional[int] = None,
        low_watermark: Optional[int] = None,
        on_high: Optional[BackpressureCallback] = None,
        on_low: Optional[BackpressureCallback] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = capacity
        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = (
            low_watermark
            if low_watermark is not None
            else min(int(0.5 * capacity), self._high_wm - 1)
        )
        if self._low_wm >= self._high_wm:
            raise ValueError("low_watermark must be below high_watermark")
        self._on_high = on_high
        self._on_low = on_low
        self._high_fired = False

        self._waiting: deque[Window] = deque()
        self._scheduled: set[datetime] = set()  # starts of waiting + in-flight windows
        self._in_flight = 0
        self._cond = asyncio.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def waiting(self) -> int:
        return len(self._waiting)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def pending(self) -> int:
        """Windows offered but not yet done (waiting, in flight or blocked on a full queue)."""
        return len(self._scheduled)

    def is_scheduled(self, window: Window | WindowId) -> bool:
        return window.start in self._scheduled

    async def offer(self, window: Window) -> bool:
        """Queue a window for emission; False when it is already scheduled."""
        async with self._cond:
            if window.start in self._scheduled:
                return False
            self._scheduled.add(window.start)
            await self._cond.wait_for(lambda: len(self._waiting) < self._capacity)
            self._waiting.append(window)
            self._cond.notify_all()
            crossed = self._crossed_high()
        if crossed and self._on_high:
            await self._on_high()
        return True

    async def take(self, timeout: Optional[float] = None) -> Window:
        """Next window, now counted as in flight.

        Raises:
            asyncio.TimeoutError: nothing arrived within `timeout` seconds
        """
        window, crossed = await asyncio.wait_for(self._take(), timeout=timeout)
        if crossed and self._on_low:
            await self._on_low()
        return window

    async def done(self, window: Window) -> None:
        """Release a taken window; it may be offered again afterwards."""
        async with self._cond:
            self._in_flight -= 1
            self._scheduled.discard(window.start)
            self._cond.notify_all()

    async def _take(self) -> tuple[Window, bool]:
        async with self._cond:
            await self._cond.wait_for(lambda: bool(self._waiting))
            window = self._waiting.popleft()
            self._in_flight += 1
            self._cond.notify_all()
            return window, self._crossed_low()

    def _crossed_high(self) -> bool:
        if not self._high_fired and len(self._waiting) >= self._high_wm:
            self._high_fired = True
            return True
        return False

    def _crossed_low(self) -> bool:
        if self._high_fired and len(self._waiting) <= self._low_wm:
            self._high_fired = False
            return True
        return False
