from __future__ import annotations

from datetime import datetime, timedelta

from ..models import EPOCH, Record, WindowId, as_utc


class WindowAssigner:
    """Buckets event times into non-overlapping fixed windows aligned to the epoch."""

    def __init__(self, window_duration: timedelta):
        if window_duration <= timedelta(0):
            raise ValueError("window_duration must be > 0")
        self._duration = window_duration

    @property
    def duration(self) -> timedelta:
        return self._duration

    def window_for(self, ts: datetime) -> WindowId:
        n = (as_utc(ts) - EPOCH) // self._duration
        start = EPOCH + n * self._duration
        return WindowId(start=start, end=start + self._duration)

    def assign(self, record: Record) -> WindowId:
        return self.window_for(record.event_time)
