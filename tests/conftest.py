"""
Pytest configuration and fixtures for window-sink.

Provides record/settings factories and cross-platform event loop configuration.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone

import pytest

from window_sink import Record, load_settings
from window_sink.formats import FieldSpec, RecordSchema
from window_sink.storage import InMemoryObjectStore

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def rec():
    """Build a Record at T0 + minutes/seconds."""

    def _rec(key: str, payload: str, minutes: float = 0, seconds: float = 0) -> Record:
        ts = T0 + timedelta(minutes=minutes, seconds=seconds)
        return Record(
            key=key.encode("utf-8"),
            payload=payload.encode("utf-8"),
            event_time=ts,
            arrival_time=ts,
        )

    return _rec


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def make_settings():
    """Settings tuned for fast tests; override any field by keyword."""

    def _make(**overrides):
        base = dict(
            window_duration="5m",
            output_prefix="mem://out/",
            emit_workers=1,
            write_max_attempts=3,
            write_initial_backoff_ms=1,
            write_max_backoff_ms=2,
            write_jitter=False,
        )
        base.update(overrides)
        return load_settings(**base)

    return _make


@pytest.fixture
def event_schema():
    return RecordSchema(
        name="event",
        fields=[
            FieldSpec(name="id", type="long", nullable=False),
            FieldSpec(name="name", type="string"),
            FieldSpec(name="score", type="double"),
            FieldSpec(name="active", type="boolean"),
        ],
    )
