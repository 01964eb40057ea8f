"""
Sink writer: commits encoded shards to the object store.

Each attempt uploads to a fresh temporary path next to the final object and
then finalizes it under the deterministic final name, so partial uploads are
never visible there. Because the final path is a pure function of
(window, shard_index, shard_count), retrying or re-emitting a shard simply
overwrites the same object.
"""

from __future__ import annotations

import asyncio
import posixpath
import time
import uuid
from typing import Optional

from loguru import logger

from .errors import FatalSinkError, SinkWriteFailed, map_storage_error
from .formats import EncodedBlock
from .metrics import SHARD_WRITE_LATENCY, SHARD_WRITES_TOTAL, WRITE_RETRIES_TOTAL
from .models import OutputFile
from .policy import RetryPolicy
from .storage import ObjectStore

TEMP_DIR_PREFIX = ".temp-wsink-"


class SinkWriter:
    def __init__(self, store: ObjectStore, retry_policy: Optional[RetryPolicy] = None):
        self._store = store
        self._retry = retry_policy or RetryPolicy()

    @property
    def store(self) -> ObjectStore:
        return self._store

    @staticmethod
    def temp_path_for(final_path: str) -> str:
        directory, name = posixpath.split(final_path)
        return posixpath.join(directory, f"{TEMP_DIR_PREFIX}{uuid.uuid4().hex}", name)

    async def commit(self, output: OutputFile, block: EncodedBlock) -> None:
        """Atomically write one shard, retrying transient failures.

        Raises:
            SinkWriteFailed: retry budget exhausted or non-retryable error
            FatalSinkError: authorization failure; retrying cannot help
        """
        fmt = output.format.value
        t0 = time.perf_counter()
        attempt = 0
        try:
            while True:
                attempt += 1
                temp_path = self.temp_path_for(output.path)
                try:
                    await self._store.put(temp_path, block.data, content_type=block.content_type)
                    await self._store.finalize(temp_path, output.path)
                except Exception as exc:
                    err = map_storage_error(exc)
                    await self._discard(temp_path)
                    if isinstance(err, FatalSinkError):
                        logger.error(f"Fatal storage error writing {output.path}: {err}")
                        raise err from exc
                    if not self._retry.classify_retryable(err):
                        raise SinkWriteFailed(output.path, attempt, err) from exc
                    if attempt >= self._retry.max_attempts:
                        logger.error(
                            f"Giving up on {output.path} after {attempt} attempt(s): {err}"
                        )
                        raise SinkWriteFailed(output.path, attempt, err) from exc

                    delay_ms = self._retry.next_backoff_ms(attempt)
                    WRITE_RETRIES_TOTAL.inc()
                    logger.warning(
                        f"Write of {output.path} failed (attempt {attempt}/"
                        f"{self._retry.max_attempts}): {err}; retrying in {delay_ms}ms"
                    )
                    await asyncio.sleep(delay_ms / 1000.0)
                    continue

                SHARD_WRITES_TOTAL.labels(format=fmt, status="success").inc()
                logger.debug(f"Committed {output.path} ({len(block.data)} bytes)")
                return
        except BaseException:
            SHARD_WRITES_TOTAL.labels(format=fmt, status="failure").inc()
            raise
        finally:
            SHARD_WRITE_LATENCY.labels(format=fmt).observe(time.perf_counter() - t0)

    async def _discard(self, temp_path: str) -> None:
        try:
            await self._store.delete(temp_path)
        except Exception as exc:
            logger.warning(f"Could not remove temporary object {temp_path}: {exc}")
