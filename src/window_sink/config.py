from __future__ import annotations

import re
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import OutputFormat

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)\s*$", re.IGNORECASE)
_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> Any:
    """Accept `500ms`, `30s`, `5m`, `1h`, `2d` on top of pydantic's timedelta formats."""
    if isinstance(value, str):
        m = _DURATION_RE.match(value)
        if m:
            return timedelta(seconds=float(m.group(1)) * _UNITS[m.group(2).lower()])
    return value


class SinkSettings(BaseSettings):
    """Immutable sink configuration, built once and passed to every component."""

    model_config = SettingsConfigDict(
        env_prefix="WSINK_",
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )

    window_duration: timedelta
    output_prefix: str
    allowed_lateness: timedelta = timedelta(0)
    output_filename_prefix: str = "output"
    output_format: OutputFormat = OutputFormat.TEXT
    max_shards: int = 0
    emit_empty_windows: bool = False

    # shard-count policy when max_shards <= 0
    parallelism: int = 1
    target_records_per_shard: int = 10_000

    window_start_format: str = "%Y-%m-%dT%H-%M-%S-"
    schema_path: Optional[Path] = None
    row_group_size: int = 10_000

    write_max_attempts: int = 5
    write_initial_backoff_ms: int = 100
    write_max_backoff_ms: int = 10_000
    write_jitter: bool = True

    emit_workers: int = 2
    emit_queue_capacity: int = 1000
    dlq_path: Optional[Path] = None

    @field_validator("window_duration", "allowed_lateness", mode="before")
    @classmethod
    def _parse_duration(cls, v):
        return parse_duration(v)

    @field_validator("window_duration")
    @classmethod
    def _positive_window(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("window_duration must be > 0")
        return v

    @field_validator("allowed_lateness")
    @classmethod
    def _non_negative_lateness(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("allowed_lateness must be >= 0")
        return v

    @field_validator("output_prefix")
    @classmethod
    def _prefix_is_directory(cls, v: str) -> str:
        if not v or not v.endswith("/"):
            raise ValueError(f"output_prefix must end with '/': {v!r}")
        return v

    @field_validator("output_format", mode="before")
    @classmethod
    def _upcase_format(cls, v):
        if isinstance(v, str):
            return v.strip().upper().replace("-", "_")
        return v

    @field_validator(
        "parallelism",
        "target_records_per_shard",
        "row_group_size",
        "write_max_attempts",
        "emit_workers",
        "emit_queue_capacity",
    )
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v


def load_settings(**overrides: Any) -> SinkSettings:
    """Build settings from env/.env plus overrides; validation errors are fatal."""
    try:
        return SinkSettings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e


@lru_cache()
def get_settings() -> SinkSettings:
    return load_settings()
