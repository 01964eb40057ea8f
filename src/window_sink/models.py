"""
Core data model for the windowed sink.

Records are immutable once read from the source. Windows own their buffered
records until close, after which the buffer is frozen and handed off to the
encode/shard/write pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def as_utc(ts: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class OutputFormat(str, Enum):
    """Serialization formats supported by the sink."""

    TEXT = "TEXT"
    ROW_BINARY = "ROW_BINARY"
    COLUMNAR_BINARY = "COLUMNAR_BINARY"

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]


_EXTENSIONS = {
    OutputFormat.TEXT: "txt",
    OutputFormat.ROW_BINARY: "rows",
    OutputFormat.COLUMNAR_BINARY: "parquet",
}


class WindowState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    EMITTED = "emitted"


@dataclass(frozen=True)
class Record:
    """A single keyed record read from the source.

    Attributes:
        key: Partitioning key (may be empty)
        payload: Raw record body
        event_time: When the record happened (drives window assignment)
        arrival_time: When the source observed it
    """

    key: bytes
    payload: bytes
    event_time: datetime
    arrival_time: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_time", as_utc(self.event_time))
        object.__setattr__(self, "arrival_time", as_utc(self.arrival_time))


@dataclass(frozen=True)
class Watermark:
    """Source signal: no more records with event_time earlier than `ts`."""

    ts: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "ts", as_utc(self.ts))


@dataclass(frozen=True, order=True)
class WindowId:
    """Identity of a fixed window: [start, end)."""

    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


@dataclass(eq=False)
class Window:
    """Accumulation state for one window.

    The record buffer is mutated only by the tracker while the window is
    OPEN or CLOSING. Once CLOSED, `records` is a tuple and must not change.
    """

    id: WindowId
    state: WindowState = WindowState.OPEN
    records: list[Record] | tuple[Record, ...] = field(default_factory=list)
    flagged: Optional[str] = None  # reason, when a data error needs manual inspection

    @property
    def start(self) -> datetime:
        return self.id.start

    @property
    def end(self) -> datetime:
        return self.id.end

    @property
    def record_count(self) -> int:
        return len(self.records)

    def grace_deadline(self, allowed_lateness: timedelta) -> datetime:
        return self.id.end + allowed_lateness


@dataclass(frozen=True)
class Shard:
    """Disjoint partition of a closed window's records."""

    window: WindowId
    index: int
    count: int
    records: tuple[Record, ...]


@dataclass(frozen=True)
class OutputFile:
    """Deterministic destination of one shard."""

    path: str
    format: OutputFormat
    window: WindowId
    shard_index: int
    shard_count: int

    @classmethod
    def for_shard(
        cls,
        shard: Shard,
        *,
        output_prefix: str,
        filename_prefix: str,
        fmt: OutputFormat,
        window_start_format: str,
    ) -> "OutputFile":
        path = (
            f"{output_prefix}{shard.window.start.strftime(window_start_format)}"
            f"{filename_prefix}-{shard.index:05d}-of-{shard.count:05d}.{fmt.extension}"
        )
        return cls(
            path=path,
            format=fmt,
            window=shard.window,
            shard_index=shard.index,
            shard_count=shard.count,
        )
