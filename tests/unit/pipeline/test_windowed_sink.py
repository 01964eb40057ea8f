"""
Unit tests for WindowedSink orchestration.
"""

import json
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from window_sink import (
    ConfigurationError,
    DeadLetterQueue,
    MissingSchema,
    OutputFormat,
    StoragePermissionDenied,
    Watermark,
    WindowedSink,
    WindowOutcome,
    WindowState,
)
from window_sink.formats import decode_row_binary, decode_text
from window_sink.sources import IterableSource
from window_sink.storage import InMemoryObjectStore


def sample(name, labels=None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class FailingStore(InMemoryObjectStore):
    """Fails every put while `failing` is set."""

    def __init__(self, exc: Exception | None = None):
        super().__init__()
        self.failing = True
        self._exc = exc or TimeoutError("storage unavailable")

    async def put(self, path, data, *, content_type=None):
        if self.failing:
            raise self._exc
        await super().put(path, data, content_type=content_type)


@pytest.mark.asyncio
async def test_end_to_end_two_windows_text(store, make_settings, rec, t0):
    settings = make_settings(max_shards=1)
    source = IterableSource(
        [
            rec("a", "1", minutes=1),
            rec("b", "1", minutes=2),
            rec("a", "1", minutes=6),
            Watermark(t0 + timedelta(minutes=10, seconds=1)),
        ]
    )

    async with WindowedSink(settings, store) as sink:
        await sink.run(source, flush_at_end=False)
        h = sink.health()

    first = "mem://out/2024-01-01T00-00-00-output-00000-of-00001.txt"
    second = "mem://out/2024-01-01T00-05-00-output-00000-of-00001.txt"
    assert await store.list() == [first, second]
    assert decode_text(await store.get(first)) == ["a\t1", "b\t1"]
    assert decode_text(await store.get(second)) == ["a\t1"]
    assert h.windows["emitted"] == 2
    assert h.failed_windows == []


@pytest.mark.asyncio
async def test_multiple_shards_partition_the_window(store, make_settings, rec, t0):
    settings = make_settings(max_shards=4, target_records_per_shard=1, emit_workers=2)
    records = [rec(f"user-{i}", str(i), seconds=i) for i in range(20)]

    async with WindowedSink(settings, store) as sink:
        await sink.run(IterableSource(records))

    paths = await store.list()
    assert paths == [
        f"mem://out/2024-01-01T00-00-00-output-{i:05d}-of-00004.txt" for i in range(4)
    ]
    lines = []
    for p in paths:
        lines.extend(decode_text(await store.get(p)))
    assert sorted(lines) == sorted(f"user-{i}\t{i}" for i in range(20))


@pytest.mark.asyncio
async def test_empty_window_skipped_when_disabled(store, make_settings, t0):
    async with WindowedSink(make_settings(emit_empty_windows=False), store) as sink:
        await sink.advance_watermark(t0 + timedelta(minutes=1))
        await sink.advance_watermark(t0 + timedelta(minutes=5))
        await sink.drain()

    assert await store.list() == []


@pytest.mark.asyncio
async def test_empty_window_emits_one_empty_shard_when_enabled(store, make_settings, t0):
    async with WindowedSink(make_settings(emit_empty_windows=True, max_shards=3), store) as sink:
        await sink.advance_watermark(t0 + timedelta(minutes=1))
        await sink.advance_watermark(t0 + timedelta(minutes=5))
        await sink.drain()

    paths = await store.list()
    assert paths == ["mem://out/2024-01-01T00-00-00-output-00000-of-00001.txt"]
    assert await store.get(paths[0]) == b""


@pytest.mark.asyncio
async def test_late_record_after_emission_is_dropped(store, make_settings, rec, t0):
    dropped_before = sample("wsink_late_records_dropped_total")

    async with WindowedSink(make_settings(max_shards=1), store) as sink:
        await sink.ingest(rec("a", "1", minutes=1))
        await sink.advance_watermark(t0 + timedelta(minutes=5))
        await sink.drain()
        paths = await store.list()

        accepted = await sink.ingest(rec("late", "1", minutes=2))
        await sink.drain()

        assert accepted is False
        assert sink.health().dropped_late == 1

    assert await store.list() == paths
    assert decode_text(await store.get(paths[0])) == ["a\t1"]
    assert sample("wsink_late_records_dropped_total") - dropped_before == 1


@pytest.mark.asyncio
async def test_failed_write_leaves_window_closed_then_reprocesses(make_settings, rec, t0):
    store = FailingStore()
    settings = make_settings(max_shards=1, write_max_attempts=2)

    async with WindowedSink(settings, store) as sink:
        wid = sink.tracker.ingest(rec("a", "1", minutes=1))
        await sink.advance_watermark(t0 + timedelta(minutes=5))
        await sink.drain()

        h = sink.health()
        assert h.failed_windows == [wid]
        assert sink.tracker.get(wid).state is WindowState.CLOSED
        assert await store.list() == []

        store.failing = False
        assert await sink.reprocess_failed() == [wid]
        await sink.drain()

        assert sink.tracker.get(wid).state is WindowState.EMITTED
        assert sink.health().failed_windows == []

    assert await store.list() == ["mem://out/2024-01-01T00-00-00-output-00000-of-00001.txt"]


@pytest.mark.asyncio
async def test_data_error_flags_window_and_others_continue(
    tmp_path, store, make_settings, rec, t0, event_schema
):
    flagged_before = sample("wsink_windows_total", {"outcome": "flagged"})
    dlq = DeadLetterQueue(tmp_path / "dlq.ndjson")
    settings = make_settings(output_format="ROW_BINARY", max_shards=1)

    async with WindowedSink(settings, store, schema=event_schema, dlq=dlq) as sink:
        good = sink.tracker.ingest(rec("a", json.dumps({"id": 1, "name": "ok"}), minutes=1))
        bad = sink.tracker.ingest(rec("b", json.dumps({"id": "oops"}), minutes=6))
        await sink.advance_watermark(t0 + timedelta(minutes=10))
        await sink.drain()

        assert sink.tracker.get(good).state is WindowState.EMITTED
        assert sink.tracker.get(bad).state is WindowState.CLOSED
        assert sink.tracker.get(bad).flagged
        assert await sink.reprocess_failed() == []

    paths = await store.list()
    assert paths == ["mem://out/2024-01-01T00-00-00-output-00000-of-00001.rows"]
    _, rows = decode_row_binary(await store.get(paths[0]))
    assert rows == [(b"a", {"id": 1, "name": "ok", "score": None, "active": None})]

    flagged = await dlq.replay(10)
    assert len(flagged) == 1
    assert flagged[0].window == bad
    assert sample("wsink_windows_total", {"outcome": "flagged"}) - flagged_before == 1


@pytest.mark.asyncio
async def test_permission_denied_halts_pipeline(make_settings, rec, t0):
    store = FailingStore(PermissionError("403 Forbidden"))
    sink = WindowedSink(make_settings(max_shards=1), store)
    await sink.start()

    await sink.ingest(rec("a", "1", minutes=1))
    await sink.advance_watermark(t0 + timedelta(minutes=5))
    with pytest.raises(StoragePermissionDenied):
        await sink.drain(timeout=2.0)

    assert sink.health().fatal_error is not None
    with pytest.raises(StoragePermissionDenied):
        await sink.ingest(rec("a", "1", minutes=6))
    await sink.stop()


def test_row_binary_without_schema_is_rejected(store, make_settings):
    with pytest.raises(MissingSchema) as exc:
        WindowedSink(make_settings(output_format=OutputFormat.ROW_BINARY), store)
    assert isinstance(exc.value, ConfigurationError)


@pytest.mark.asyncio
async def test_reemission_after_crash_overwrites_same_path(store, make_settings, rec, t0):
    records = [rec("a", "1", minutes=1), rec("b", "2", minutes=2)]
    settings = make_settings(max_shards=2, target_records_per_shard=1)

    # first run "crashes" after writing; the source replays into a fresh sink
    for _ in range(2):
        async with WindowedSink(settings, store) as sink:
            for r in records:
                await sink.ingest(r)
            await sink.advance_watermark(t0 + timedelta(minutes=5))
            await sink.drain()

    paths = await store.list()
    assert paths == [
        "mem://out/2024-01-01T00-00-00-output-00000-of-00002.txt",
        "mem://out/2024-01-01T00-00-00-output-00001-of-00002.txt",
    ]
    lines = [line for p in paths for line in decode_text(await store.get(p))]
    assert sorted(lines) == ["a\t1", "b\t2"]


@pytest.mark.asyncio
async def test_emit_window_outcomes(store, make_settings, rec, t0):
    sink = WindowedSink(make_settings(max_shards=1), store)
    sink.tracker.ingest(rec("a", "1", minutes=1))
    (window,) = sink.tracker.advance_watermark(t0 + timedelta(minutes=5))

    assert sink.output_paths(window) == [
        "mem://out/2024-01-01T00-00-00-output-00000-of-00001.txt"
    ]
    assert await sink.emit_window(window) is WindowOutcome.EMITTED


@pytest.mark.asyncio
async def test_stop_drains_queued_windows(store, make_settings, rec, t0):
    sink = WindowedSink(make_settings(max_shards=1, emit_workers=2), store)
    for m in (1, 6, 11):
        await sink.ingest(rec("k", str(m), minutes=m))
    await sink.advance_watermark(t0 + timedelta(minutes=15))

    await sink.start()
    await sink.stop(drain=True, timeout=5.0)

    assert len(await store.list()) == 3
    assert sink.health().workers_alive == 0


@pytest.mark.asyncio
async def test_backpressure_callbacks(store, make_settings, rec, t0):
    calls = []

    async def on_high():
        calls.append("high")

    async def on_low():
        calls.append("low")

    sink = WindowedSink(
        make_settings(max_shards=1, emit_queue_capacity=4),
        store,
        on_backpressure_high=on_high,
        on_backpressure_low=on_low,
    )
    for m in (1, 6, 11):
        await sink.ingest(rec("k", str(m), minutes=m))
    await sink.advance_watermark(t0 + timedelta(minutes=15))
    assert calls == ["high"]
    assert sink.health().queue_size == 3

    await sink.start()
    await sink.drain(timeout=5.0)
    await sink.stop()
    assert calls == ["high", "low"]


@pytest.mark.asyncio
async def test_flush_closes_open_windows_at_end_of_input(store, make_settings, rec):
    async with WindowedSink(make_settings(max_shards=1), store) as sink:
        await sink.run(IterableSource([rec("a", "1", minutes=1), rec("b", "2", minutes=7)]))
        assert sink.health().windows["emitted"] == 2

    assert len(await store.list()) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "output_format, bad_payload",
    [
        ("ROW_BINARY", json.dumps({"id": 2**63})),
        ("ROW_BINARY", "[" * 200_000),
        ("COLUMNAR_BINARY", json.dumps({"id": -(2**63) - 1})),
        ("COLUMNAR_BINARY", json.dumps({"id": 1, "score": 10**400})),
    ],
)
async def test_unencodable_window_is_flagged_and_pipeline_continues(
    store, make_settings, rec, t0, event_schema, output_format, bad_payload
):
    settings = make_settings(output_format=output_format, max_shards=1)

    async with WindowedSink(settings, store, schema=event_schema) as sink:
        bad = sink.tracker.ingest(rec("a", bad_payload, minutes=1))
        good = sink.tracker.ingest(rec("b", json.dumps({"id": 1}), minutes=6))
        await sink.advance_watermark(t0 + timedelta(minutes=10))
        await sink.drain()

        h = sink.health()
        assert h.fatal_error is None
        assert sink.tracker.get(bad).state is WindowState.CLOSED
        assert sink.tracker.get(bad).flagged
        assert sink.tracker.get(good).state is WindowState.EMITTED

        # the pipeline keeps accepting data after the flagged window
        assert await sink.ingest(rec("c", json.dumps({"id": 2}), minutes=11)) is True

    paths = await store.list()
    assert len(paths) == 1
    assert paths[0].startswith("mem://out/2024-01-01T00-05-00-output-00000-of-00001.")
