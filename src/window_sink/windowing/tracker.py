"""
Window tracker: explicit per-window state machine driven by the watermark.

    OPEN --(watermark >= end)--> CLOSING --(watermark >= end + lateness)--> CLOSED
    CLOSED --(all shards committed)--> EMITTED

Closed windows are returned to the caller for emission; the tracker never
performs I/O. All public methods are safe to call from concurrent tasks or
threads. Buffers of different windows are never shared.
"""

from __future__ import annotations

import threading
from collections import Counter as _Counter
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger

from ..errors import LateDataDropped
from ..metrics import (
    LATE_RECORDS_DROPPED_TOTAL,
    RECORDS_INGESTED_TOTAL,
    WATERMARK_SECONDS,
    WINDOWS_TRACKED,
)
from ..models import Record, Window, WindowId, WindowState, as_utc
from .assigner import WindowAssigner


class WindowTracker:
    """Per-window accumulation state keyed by window start."""

    def __init__(
        self,
        assigner: WindowAssigner,
        allowed_lateness: timedelta = timedelta(0),
        *,
        emit_empty_windows: bool = False,
    ):
        self._assigner = assigner
        self._lateness = allowed_lateness
        self._emit_empty = emit_empty_windows
        self._windows: dict[datetime, Window] = {}
        self._watermark: Optional[datetime] = None
        # Start of the next window to materialize when empty windows are emitted
        self._frontier: Optional[datetime] = None
        self._lock = threading.RLock()
        self.dropped_late = 0

    @property
    def watermark(self) -> Optional[datetime]:
        return self._watermark

    @property
    def allowed_lateness(self) -> timedelta:
        return self._lateness

    def get(self, window: WindowId) -> Optional[Window]:
        with self._lock:
            return self._windows.get(window.start)

    def ingest(self, record: Record) -> WindowId:
        """Append a record to its window, creating the window if needed.

        Raises:
            LateDataDropped: the window's grace deadline has passed; the
                record is discarded and the drop counter incremented.
        """
        wid = self._assigner.assign(record)
        with self._lock:
            w = self._windows.get(wid.start)
            if self._is_late(wid, w):
                self.dropped_late += 1
                LATE_RECORDS_DROPPED_TOTAL.inc()
                logger.debug(f"Dropping late record for {wid}")
                raise LateDataDropped(wid, record.event_time)

            if w is None:
                w = Window(id=wid)
                if self._watermark is not None and wid.end <= self._watermark:
                    w.state = WindowState.CLOSING
                self._windows[wid.start] = w
                if self._frontier is None:
                    self._frontier = wid.start
                self._update_gauges()

            w.records.append(record)
            RECORDS_INGESTED_TOTAL.inc()
        return wid

    def advance_watermark(self, new_watermark: datetime) -> list[Window]:
        """Move the watermark forward and return windows that became CLOSED.

        Moving the watermark backwards is a logged no-op.
        """
        wm = as_utc(new_watermark)
        with self._lock:
            if self._watermark is not None and wm <= self._watermark:
                if wm < self._watermark:
                    logger.warning(
                        f"Ignoring backward watermark {wm.isoformat()} "
                        f"(current {self._watermark.isoformat()})"
                    )
                return []

            self._watermark = wm
            WATERMARK_SECONDS.set(wm.timestamp())

            if self._emit_empty:
                if self._frontier is None:
                    self._frontier = self._assigner.window_for(wm).start
                self._materialize_until(wm)

            closed: list[Window] = []
            for start in sorted(self._windows):
                w = self._windows[start]
                if w.state is WindowState.OPEN and w.end <= wm:
                    w.state = WindowState.CLOSING
                if w.state is WindowState.CLOSING and w.grace_deadline(self._lateness) <= wm:
                    self._close(w)
                    closed.append(w)

            self._prune(wm)
            self._update_gauges()

        for w in closed:
            logger.debug(f"Window {w.id} closed with {w.record_count} record(s)")
        return closed

    def close_all(self) -> list[Window]:
        """Close every OPEN/CLOSING window regardless of the watermark (end of input)."""
        with self._lock:
            if self._emit_empty and self._windows:
                last_end = max(w.end for w in self._windows.values())
                self._materialize_until(last_end)

            closed = []
            for start in sorted(self._windows):
                w = self._windows[start]
                if w.state in (WindowState.OPEN, WindowState.CLOSING):
                    self._close(w)
                    closed.append(w)
            self._update_gauges()
        return closed

    def mark_emitted(self, window: WindowId) -> None:
        """CLOSED -> EMITTED once every shard is committed; frees the buffer."""
        with self._lock:
            w = self._windows.get(window.start)
            if w is None or w.state is not WindowState.CLOSED:
                state = w.state.value if w is not None else "unknown"
                raise ValueError(f"Cannot mark window {window} emitted from state {state}")
            w.state = WindowState.EMITTED
            w.records = ()
            self._update_gauges()

    def flag(self, window: WindowId, reason: str) -> None:
        """Flag a CLOSED window for manual inspection; it will not be retried."""
        with self._lock:
            w = self._windows.get(window.start)
            if w is not None:
                w.flagged = reason

    def pending(self) -> list[Window]:
        """CLOSED, unflagged windows that still need emitting (reprocessing pass)."""
        with self._lock:
            return [
                w
                for _, w in sorted(self._windows.items())
                if w.state is WindowState.CLOSED and w.flagged is None
            ]

    def counts_by_state(self) -> dict[str, int]:
        with self._lock:
            counts = _Counter(w.state.value for w in self._windows.values())
        return {s.value: counts.get(s.value, 0) for s in WindowState}

    # --- internals ---

    def _is_late(self, wid: WindowId, w: Optional[Window]) -> bool:
        if w is not None and w.state in (WindowState.CLOSED, WindowState.EMITTED):
            return True
        return self._watermark is not None and wid.end + self._lateness <= self._watermark

    def _close(self, w: Window) -> None:
        w.state = WindowState.CLOSED
        w.records = tuple(w.records)

    def _materialize_until(self, limit: datetime) -> None:
        duration = self._assigner.duration
        while self._frontier is not None and self._frontier + duration <= limit:
            wid = WindowId(start=self._frontier, end=self._frontier + duration)
            if wid.start not in self._windows:
                self._windows[wid.start] = Window(id=wid)
            self._frontier = wid.end

    def _prune(self, wm: datetime) -> None:
        # Emitted windows past their deadline are covered by the watermark check
        expired = [
            start
            for start, w in self._windows.items()
            if w.state is WindowState.EMITTED and w.grace_deadline(self._lateness) <= wm
        ]
        for start in expired:
            del self._windows[start]

    def _update_gauges(self) -> None:
        counts = _Counter(w.state for w in self._windows.values())
        for state in WindowState:
            WINDOWS_TRACKED.labels(state=state.value).set(counts.get(state, 0))
