"""
Windowed sink orchestration.

    source -> ingest -> WindowTracker --(closed windows)--> EmissionQueue
           -> emission workers: ShardPlanner -> Encoder -> SinkWriter

Ingestion never waits on emission beyond queue backpressure. Each closed
window is owned by exactly one emission worker; its shards are committed in
parallel and the window is marked EMITTED only when every commit succeeded.

Failure isolation:
- data errors flag the window (DLQ) and never retry it
- exhausted writes leave the window CLOSED for `reprocess_failed()`
- fatal errors (authorization, configuration) halt the pipeline and are
  re-raised from `run()`, `drain()` and `raise_if_failed()`
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from loguru import logger

from .config import SinkSettings
from .dlq import DeadLetterQueue
from .errors import DataError, FatalSinkError, LateDataDropped, SinkWriteFailed
from .formats import EncodedBlock, RecordSchema, build_encoder, load_schema
from .metrics import WINDOWS_TOTAL
from .models import OutputFile, Record, Shard, Watermark, Window, WindowId
from .policy import RetryPolicy
from .queue import BackpressureCallback, EmissionQueue
from .sharding import ShardPlanner
from .sources import RecordSource
from .storage import ObjectStore
from .windowing import WindowAssigner, WindowTracker
from .writer import SinkWriter


class WindowOutcome(str, Enum):
    EMITTED = "emitted"
    SKIPPED_EMPTY = "skipped_empty"
    FLAGGED = "flagged"
    WRITE_FAILED = "write_failed"


@dataclass(frozen=True)
class SinkHealth:
    """Point-in-time view of the sink."""

    windows: dict[str, int]
    queue_size: int
    capacity: int
    workers_alive: int
    windows_in_flight: int
    watermark: Optional[datetime]
    dropped_late: int
    failed_windows: list[WindowId] = field(default_factory=list)
    fatal_error: Optional[str] = None


class WindowedSink:
    """Groups an unbounded record stream into fixed windows and writes sharded files.

    Example:
        async with WindowedSink(settings, LocalFileStore()) as sink:
            await sink.run(NdjsonFileSource("records.ndjson"))
    """

    def __init__(
        self,
        settings: SinkSettings,
        store: ObjectStore,
        *,
        schema: Optional[RecordSchema] = None,
        retry_policy: Optional[RetryPolicy] = None,
        dlq: Optional[DeadLetterQueue] = None,
        on_backpressure_high: Optional[BackpressureCallback] = None,
        on_backpressure_low: Optional[BackpressureCallback] = None,
        sink_id: str = "wsink",
    ):
        self.settings = settings
        self.sink_id = sink_id

        if schema is None and settings.schema_path is not None:
            schema = load_schema(settings.schema_path)
        self.encoder = build_encoder(
            settings.output_format, schema, row_group_size=settings.row_group_size
        )

        self.tracker = WindowTracker(
            WindowAssigner(settings.window_duration),
            settings.allowed_lateness,
            emit_empty_windows=settings.emit_empty_windows,
        )
        self.planner = ShardPlanner(
            max_shards=settings.max_shards,
            target_records_per_shard=settings.target_records_per_shard,
            parallelism=settings.parallelism,
            emit_empty_windows=settings.emit_empty_windows,
        )
        self.writer = SinkWriter(
            store,
            retry_policy
            or RetryPolicy(
                max_attempts=settings.write_max_attempts,
                initial_backoff_ms=settings.write_initial_backoff_ms,
                max_backoff_ms=settings.write_max_backoff_ms,
                jitter=settings.write_jitter,
            ),
        )
        if dlq is None and settings.dlq_path is not None:
            dlq = DeadLetterQueue(settings.dlq_path)
        self.dlq = dlq

        self._queue = EmissionQueue(
            settings.emit_queue_capacity,
            on_high=on_backpressure_high,
            on_low=on_backpressure_low,
        )
        self._workers: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._drain_on_stop = True
        self._failed: dict[datetime, WindowId] = {}
        self._fatal: Optional[BaseException] = None

    # --- lifecycle ---

    async def start(self) -> None:
        if self._workers:
            return
        self._stopping.clear()
        for i in range(self.settings.emit_workers):
            self._workers.append(asyncio.create_task(self._worker_loop(i)))
        logger.info(
            f"{self.sink_id}: started {len(self._workers)} emission worker(s) "
            f"(format={self.settings.output_format.value}, "
            f"window={self.settings.window_duration}, "
            f"lateness={self.settings.allowed_lateness})"
        )

    async def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop emission workers.

        Commits already in flight always finish. With `drain=True` queued
        windows are emitted first; otherwise they stay CLOSED.
        """
        self._drain_on_stop = drain
        self._stopping.set()
        if not self._workers:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*self._workers, return_exceptions=True), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"{self.sink_id}: stop timed out; cancelling emission workers")
            for t in self._workers:
                t.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info(f"{self.sink_id}: stopped")

    async def __aenter__(self) -> "WindowedSink":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop(drain=exc_type is None)

    # --- ingestion stage ---

    async def ingest(self, record: Record) -> bool:
        """Buffer a record; returns False when it was dropped as late."""
        self.raise_if_failed()
        try:
            self.tracker.ingest(record)
        except LateDataDropped:
            return False
        return True

    async def advance_watermark(self, watermark: datetime) -> list[Window]:
        closed = self.tracker.advance_watermark(watermark)
        for w in closed:
            await self._queue.offer(w)
        return closed

    async def flush(self) -> list[Window]:
        """Close and enqueue every open window (end of a bounded input)."""
        closed = self.tracker.close_all()
        for w in closed:
            await self._queue.offer(w)
        return closed

    async def run(self, source: RecordSource, *, flush_at_end: bool = True) -> None:
        """Consume a source to exhaustion, then wait for emission to finish."""
        await self.start()
        async for event in source:
            if isinstance(event, Watermark):
                await self.advance_watermark(event.ts)
            else:
                await self.ingest(event)
        if flush_at_end:
            await self.flush()
        await self.drain()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every enqueued window has been processed."""

        async def _wait() -> None:
            while self._queue.pending:
                if self._fatal is not None or not any(not t.done() for t in self._workers):
                    break
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_wait(), timeout=timeout)
        self.raise_if_failed()

    async def reprocess_failed(self) -> list[WindowId]:
        """Re-enqueue CLOSED windows whose writes failed earlier."""
        windows = [w for w in self.tracker.pending() if not self._queue.is_scheduled(w)]
        for w in windows:
            logger.info(f"{self.sink_id}: reprocessing window {w.id}")
            await self._queue.offer(w)
        return [w.id for w in windows]

    def raise_if_failed(self) -> None:
        if self._fatal is not None:
            raise self._fatal

    # --- emission stage ---

    async def emit_window(self, window: Window) -> WindowOutcome:
        """Shard, encode and commit one CLOSED window."""
        shards = self.planner.partition(window)
        if not shards:
            self.tracker.mark_emitted(window.id)
            WINDOWS_TOTAL.labels(outcome=WindowOutcome.SKIPPED_EMPTY.value).inc()
            logger.debug(f"{self.sink_id}: skipped empty window {window.id}")
            return WindowOutcome.SKIPPED_EMPTY

        try:
            blocks = await asyncio.to_thread(self._encode_all, shards)
        except DataError as e:
            await self._flag(window, e)
            return WindowOutcome.FLAGGED

        outputs = [self._output_for(s) for s in shards]
        results = await asyncio.gather(
            *(self.writer.commit(o, b) for o, b in zip(outputs, blocks)),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for err in errors:
            if not isinstance(err, SinkWriteFailed):
                raise err
        if errors:
            self._failed[window.start] = window.id
            WINDOWS_TOTAL.labels(outcome=WindowOutcome.WRITE_FAILED.value).inc()
            logger.error(
                f"{self.sink_id}: {len(errors)}/{len(shards)} shard(s) of window {window.id} "
                f"failed; window left CLOSED for reprocessing"
            )
            return WindowOutcome.WRITE_FAILED

        record_count = window.record_count
        self.tracker.mark_emitted(window.id)
        self._failed.pop(window.start, None)
        WINDOWS_TOTAL.labels(outcome=WindowOutcome.EMITTED.value).inc()
        logger.info(
            f"{self.sink_id}: emitted window {window.id}: {record_count} record(s) "
            f"in {len(shards)} shard(s)"
        )
        return WindowOutcome.EMITTED

    def output_paths(self, window: Window) -> list[str]:
        """Final object paths a window's shards are written to."""
        return [self._output_for(s).path for s in self.planner.partition(window)]

    def health(self) -> SinkHealth:
        return SinkHealth(
            windows=self.tracker.counts_by_state(),
            queue_size=self._queue.waiting,
            capacity=self._queue.capacity,
            workers_alive=sum(1 for t in self._workers if not t.done()),
            windows_in_flight=self._queue.in_flight,
            watermark=self.tracker.watermark,
            dropped_late=self.tracker.dropped_late,
            failed_windows=list(self._failed.values()),
            fatal_error=repr(self._fatal) if self._fatal is not None else None,
        )

    # --- internals ---

    def _encode_all(self, shards: list[Shard]) -> list[EncodedBlock]:
        return [self.encoder.encode(s.records) for s in shards]

    def _output_for(self, shard: Shard) -> OutputFile:
        return OutputFile.for_shard(
            shard,
            output_prefix=self.settings.output_prefix,
            filename_prefix=self.settings.output_filename_prefix,
            fmt=self.settings.output_format,
            window_start_format=self.settings.window_start_format,
        )

    async def _flag(self, window: Window, error: DataError) -> None:
        self.tracker.flag(window.id, str(error))
        WINDOWS_TOTAL.labels(outcome=WindowOutcome.FLAGGED.value).inc()
        logger.warning(f"{self.sink_id}: window {window.id} flagged for inspection: {error}")
        if self.dlq is not None:
            await self.dlq.save(
                window.id,
                window.records,
                error,
                {"sink_id": self.sink_id, "format": self.settings.output_format.value},
            )

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            if self._fatal is not None:
                break
            if self._stopping.is_set() and (not self._drain_on_stop or not self._queue.waiting):
                break
            try:
                window = await self._queue.take(timeout=0.05)
            except asyncio.TimeoutError:
                continue

            try:
                await self.emit_window(window)
            except FatalSinkError as e:
                logger.error(f"{self.sink_id}: worker {worker_id} halting pipeline: {e}")
                self._fatal = e
            except Exception as e:
                logger.exception(f"{self.sink_id}: worker {worker_id} crashed on {window.id}")
                self._fatal = e
            finally:
                await self._queue.done(window)
