"""
Demo script for the windowed sink.

Streams synthetic out-of-order events into one-minute windows, writes
COLUMNAR_BINARY shards under ./demo-out/ and shows backpressure callbacks.
"""

import asyncio
import json
import random
from datetime import datetime, timedelta, timezone

from loguru import logger

from window_sink import Record, WindowedSink, load_settings
from window_sink.sources import BoundedOutOfOrdernessWatermarks
from window_sink.storage import LocalFileStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


async def on_bp_high():
    logger.warning("⚠️  Backpressure HIGH (emission queue above high watermark)")


async def on_bp_low():
    logger.info("✅ Backpressure recovered (emission queue below low watermark)")


async def main():
    settings = load_settings(
        window_duration="1m",
        allowed_lateness="10s",
        output_prefix="demo-out/",
        output_format="COLUMNAR_BINARY",
        max_shards=4,
        target_records_per_shard=250,
        emit_workers=2,
        emit_queue_capacity=8,
    )
    watermarks = BoundedOutOfOrdernessWatermarks(timedelta(seconds=5))
    rng = random.Random(7)

    async with WindowedSink(
        settings,
        LocalFileStore(),
        on_backpressure_high=on_bp_high,
        on_backpressure_low=on_bp_low,
    ) as sink:
        logger.info("🚀 Producing 10,000 events over ~10 minutes of event time")

        for i in range(10_000):
            # up to 8s of disorder; some records will miss the grace period
            et = T0 + timedelta(milliseconds=i * 60) - timedelta(seconds=rng.uniform(0, 8))
            payload = {"seq": i, "user": f"user-{i % 97}", "amount": round(rng.random() * 100, 2)}
            await sink.ingest(
                Record(
                    key=f"user-{i % 97}".encode(),
                    payload=json.dumps(payload).encode(),
                    event_time=et,
                    arrival_time=et,
                )
            )
            wm = watermarks.observe(et)
            if wm is not None:
                await sink.advance_watermark(wm.ts)

            if i % 2000 == 0:
                health = sink.health()
                logger.info(
                    f"Progress: {i}/10000 | windows={health.windows} | "
                    f"queue={health.queue_size}/{health.capacity} | late={health.dropped_late}"
                )

        await sink.flush()
        await sink.drain()

        health = sink.health()
        logger.info(
            f"Final health: windows={health.windows} dropped_late={health.dropped_late} "
            f"failed={len(health.failed_windows)}"
        )

    logger.info("✅ Windowed sink demo complete; inspect with `wsink inspect demo-out/<file>`")


if __name__ == "__main__":
    asyncio.run(main())
