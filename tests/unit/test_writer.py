"""
Unit tests for SinkWriter commits, retries and idempotence.
"""

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from window_sink import (
    OutputFile,
    OutputFormat,
    RetryPolicy,
    SinkWriteFailed,
    SinkWriter,
    StoragePermissionDenied,
    WindowId,
)
from window_sink.formats import EncodedBlock
from window_sink.storage import InMemoryObjectStore, LocalFileStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
FAST = RetryPolicy(max_attempts=3, initial_backoff_ms=1, max_backoff_ms=2, jitter=False)


def output(path="mem://out/2024-01-01T00-00-00-output-00000-of-00001.txt") -> OutputFile:
    return OutputFile(
        path=path,
        format=OutputFormat.TEXT,
        window=WindowId(start=T0, end=T0 + timedelta(minutes=5)),
        shard_index=0,
        shard_count=1,
    )


BLOCK = EncodedBlock(data=b"a\t1\nb\t1\n", content_type="text/plain; charset=utf-8")


class FlakyStore(InMemoryObjectStore):
    """Fails the first N puts with a transient error."""

    def __init__(self, fail_first_n: int = 1, exc: Exception | None = None):
        super().__init__()
        self._fail = fail_first_n
        self._exc = exc or TimeoutError("transient")
        self.put_calls = 0

    async def put(self, path, data, *, content_type=None):
        self.put_calls += 1
        if self._fail > 0:
            self._fail -= 1
            raise self._exc
        await super().put(path, data, content_type=content_type)


class FinalizeFailsStore(InMemoryObjectStore):
    async def finalize(self, temp_path, final_path):
        raise ConnectionError("connection reset during finalize")


def sample(name, labels=None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


@pytest.mark.asyncio
async def test_commit_writes_final_path_only(store):
    out = output()
    await SinkWriter(store, FAST).commit(out, BLOCK)

    assert await store.list() == [out.path]
    assert await store.get(out.path) == BLOCK.data
    assert store.content_types[out.path] == BLOCK.content_type


@pytest.mark.asyncio
async def test_commit_twice_leaves_one_blob(store):
    out = output()
    writer = SinkWriter(store, FAST)
    await writer.commit(out, BLOCK)
    await writer.commit(out, BLOCK)

    assert await store.list() == [out.path]
    assert await store.get(out.path) == BLOCK.data


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    store = FlakyStore(fail_first_n=2)
    retries_before = sample("wsink_write_retries_total")

    await SinkWriter(store, FAST).commit(output(), BLOCK)

    assert store.put_calls == 3
    assert await store.exists(output().path)
    assert sample("wsink_write_retries_total") - retries_before == 2


@pytest.mark.asyncio
async def test_exhausted_retries_raise_sink_write_failed():
    store = FlakyStore(fail_first_n=100)
    labels = {"format": "TEXT", "status": "failure"}
    failures_before = sample("wsink_shard_writes_total", labels)

    with pytest.raises(SinkWriteFailed) as exc:
        await SinkWriter(store, FAST).commit(output(), BLOCK)

    assert exc.value.attempts == 3
    assert store.put_calls == 3
    assert await store.list() == []
    assert sample("wsink_shard_writes_total", labels) - failures_before == 1


@pytest.mark.asyncio
async def test_permission_denied_is_fatal_without_retry():
    store = FlakyStore(fail_first_n=100, exc=PermissionError("403 Forbidden"))
    with pytest.raises(StoragePermissionDenied):
        await SinkWriter(store, FAST).commit(output(), BLOCK)
    assert store.put_calls == 1


@pytest.mark.asyncio
async def test_failed_finalize_never_exposes_partial_object():
    store = FinalizeFailsStore()
    out = output()
    with pytest.raises(SinkWriteFailed):
        await SinkWriter(store, FAST).commit(out, BLOCK)
    assert not await store.exists(out.path)
    assert await store.list() == []  # temporaries cleaned up


@pytest.mark.asyncio
async def test_local_store_commit_is_atomic_rename(tmp_path):
    final = tmp_path / "out" / "2024-01-01T00-00-00-output-00000-of-00001.txt"
    out = output(path=str(final))

    await SinkWriter(LocalFileStore(), FAST).commit(out, BLOCK)

    assert final.read_bytes() == BLOCK.data
    assert [p.name for p in (tmp_path / "out").iterdir()] == [final.name]


def test_temp_path_is_next_to_final():
    temp = SinkWriter.temp_path_for("gs://bucket/out/file.txt")
    assert temp.startswith("gs://bucket/out/.temp-wsink-")
    assert temp.endswith("/file.txt")
