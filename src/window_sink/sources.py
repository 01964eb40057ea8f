"""
Record sources.

A source is an async iterable of `Record` and `Watermark` events. Sources
must be able to redeliver records for windows that have not been emitted;
the adapters here are replayable simply by iterating them again.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional, Protocol, Union

from .errors import MalformedRecord
from .models import Record, Watermark, as_utc
from .utils import parse_datetime, utc_now

SourceEvent = Union[Record, Watermark]


class RecordSource(Protocol):
    def __aiter__(self) -> AsyncIterator[SourceEvent]: ...


class BoundedOutOfOrdernessWatermarks:
    """Watermark = max event time seen - max_out_of_orderness.

    For sources that carry no watermark of their own.
    """

    def __init__(self, max_out_of_orderness: timedelta = timedelta(0)):
        self.max_out_of_orderness = max_out_of_orderness
        self._max_event_time: Optional[datetime] = None
        self._last: Optional[datetime] = None

    def observe(self, event_time: datetime) -> Optional[Watermark]:
        """Track an event time; returns a Watermark when it moved forward."""
        et = as_utc(event_time)
        if self._max_event_time is None or et > self._max_event_time:
            self._max_event_time = et
        wm = self._max_event_time - self.max_out_of_orderness
        if self._last is None or wm > self._last:
            self._last = wm
            return Watermark(wm)
        return None


class IterableSource:
    """In-memory source over a fixed sequence of events."""

    def __init__(self, events: Iterable[SourceEvent]):
        self._events = list(events)

    async def __aiter__(self) -> AsyncIterator[SourceEvent]:
        for event in self._events:
            yield event
            await asyncio.sleep(0)


def record_from_json(obj: dict) -> Record:
    """Build a Record from `{"key", "payload", "event_time", "arrival_time"?}`."""
    try:
        key = obj.get("key")
        payload = obj["payload"]
        event_time = parse_datetime(obj["event_time"])
        arrival = obj.get("arrival_time")
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedRecord(f"invalid source record {obj!r}: {e}") from e
    if not isinstance(payload, str):
        payload = json.dumps(payload, separators=(",", ":"))
    return Record(
        key=key.encode("utf-8") if key else b"",
        payload=payload.encode("utf-8"),
        event_time=event_time,
        arrival_time=parse_datetime(arrival) if arrival is not None else utc_now(),
    )


class NdjsonFileSource:
    """Reads one JSON record per line and interleaves heuristic watermarks."""

    def __init__(
        self,
        path: Union[str, Path],
        *,
        max_out_of_orderness: timedelta = timedelta(0),
    ):
        self.path = Path(path)
        self.max_out_of_orderness = max_out_of_orderness

    async def __aiter__(self) -> AsyncIterator[SourceEvent]:
        watermarks = BoundedOutOfOrdernessWatermarks(self.max_out_of_orderness)
        text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = record_from_json(json.loads(line))
            except json.JSONDecodeError as e:
                raise MalformedRecord(f"{self.path}:{lineno}: {e}") from e
            yield record
            wm = watermarks.observe(record.event_time)
            if wm is not None:
                yield wm
