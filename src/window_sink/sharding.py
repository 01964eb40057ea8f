"""
Shard planning for closed windows.

Records are routed by a stable hash of their key, so for a fixed shard count
the same key always lands in the same shard. Re-emitting a window after a
failure therefore reproduces identical shard files.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Callable

from .models import Record, Shard, Window


def stable_hash(key: bytes) -> int:
    """Process-independent 64-bit hash (unlike the builtin `hash`)."""
    return int.from_bytes(hashlib.blake2b(key, digest_size=8).digest(), "big")


@dataclass(frozen=True)
class ShardPlan:
    shard_count: int
    assign: Callable[[Record], int]


class ShardPlanner:
    """Decides how many shards a window is split into and where each record goes.

    Args:
        max_shards: Upper bound on shards per window; <= 0 defers to `parallelism`
        target_records_per_shard: Desired shard size used to scale the count down
        parallelism: Runner parallelism used when `max_shards` is unset
        emit_empty_windows: Whether an empty window still yields one empty shard
    """

    def __init__(
        self,
        *,
        max_shards: int = 0,
        target_records_per_shard: int = 10_000,
        parallelism: int = 1,
        emit_empty_windows: bool = False,
    ):
        if target_records_per_shard <= 0:
            raise ValueError("target_records_per_shard must be > 0")
        if parallelism <= 0:
            raise ValueError("parallelism must be > 0")
        self._max_shards = max_shards
        self._target = target_records_per_shard
        self._parallelism = parallelism
        self._emit_empty = emit_empty_windows

    def shard_count_for(self, record_count: int) -> int:
        cap = self._max_shards if self._max_shards > 0 else self._parallelism
        return max(1, min(cap, math.ceil(record_count / self._target)))

    def plan(self, window: Window) -> ShardPlan:
        n = self.shard_count_for(window.record_count)

        def assign(record: Record) -> int:
            return stable_hash(record.key) % n

        return ShardPlan(shard_count=n, assign=assign)

    def partition(self, window: Window) -> list[Shard]:
        """Split a closed window into disjoint shards, preserving record order.

        Returns an empty list for an empty window unless empty windows are
        emitted, in which case a single empty shard is returned.
        """
        if window.record_count == 0:
            if not self._emit_empty:
                return []
            return [Shard(window=window.id, index=0, count=1, records=())]

        plan = self.plan(window)
        buckets: list[list[Record]] = [[] for _ in range(plan.shard_count)]
        for record in window.records:
            buckets[plan.assign(record)].append(record)
        return [
            Shard(window=window.id, index=i, count=plan.shard_count, records=tuple(b))
            for i, b in enumerate(buckets)
        ]
