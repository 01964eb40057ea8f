"""
File-based dead-letter log for windows flagged by data errors.

A window whose shard cannot be encoded (schema mismatch, malformed record)
is never retried automatically; its records are appended here as one NDJSON
line for manual inspection and possible replay.
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .models import Record, WindowId
from .utils import utc_now


@dataclass(frozen=True)
class DLQRecord:
    window: WindowId
    error: str
    records: list[Record]
    metadata: dict[str, Any] = field(default_factory=dict)
    flagged_at: Optional[datetime] = None


def _record_to_json(r: Record) -> dict[str, Any]:
    return {
        "key": base64.b64encode(r.key).decode("ascii"),
        "payload": base64.b64encode(r.payload).decode("ascii"),
        "event_time": r.event_time.isoformat(),
        "arrival_time": r.arrival_time.isoformat(),
    }


def _record_from_json(d: dict[str, Any]) -> Record:
    return Record(
        key=base64.b64decode(d["key"]),
        payload=base64.b64decode(d["payload"]),
        event_time=datetime.fromisoformat(d["event_time"]),
        arrival_time=datetime.fromisoformat(d["arrival_time"]),
    )


class DeadLetterQueue:
    """Append-only NDJSON log of flagged windows."""

    def __init__(self, path: str | Path, *, mkdirs: bool = True):
        self.path = Path(path)
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    async def save(
        self,
        window: WindowId,
        records: list[Record] | tuple[Record, ...],
        error: Exception,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        line = json.dumps(
            {
                "window_start": window.start.isoformat(),
                "window_end": window.end.isoformat(),
                "error": f"{type(error).__name__}: {error}",
                "metadata": metadata or {},
                "flagged_at": utc_now().isoformat(),
                "records": [_record_to_json(r) for r in records],
            }
        )
        async with self._lock:
            await asyncio.to_thread(self._append, line)
        logger.debug(f"DLQ: saved window {window} ({len(records)} records) to {self.path}")

    def _append(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def replay(self, max_records: int = 100) -> list[DLQRecord]:
        """Read back up to `max_records` flagged windows, oldest first."""
        if not self.path.exists():
            return []
        lines = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        out: list[DLQRecord] = []
        for line in lines.splitlines():
            if not line.strip():
                continue
            if len(out) >= max_records:
                break
            d = json.loads(line)
            out.append(
                DLQRecord(
                    window=WindowId(
                        start=datetime.fromisoformat(d["window_start"]),
                        end=datetime.fromisoformat(d["window_end"]),
                    ),
                    error=d["error"],
                    records=[_record_from_json(r) for r in d["records"]],
                    metadata=d.get("metadata", {}),
                    flagged_at=datetime.fromisoformat(d["flagged_at"]),
                )
            )
        return out
