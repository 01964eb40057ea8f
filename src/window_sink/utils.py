"""
Small time helpers shared by sources, the DLQ and the CLI.
"""

from datetime import datetime, timezone
from typing import Union


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(dt: Union[str, int, float, datetime]) -> datetime:
    """Parse ISO-8601 strings (with `Z`), epoch seconds, or pass datetimes through; result is UTC."""
    if isinstance(dt, datetime):
        parsed = dt
    elif isinstance(dt, (int, float)):
        return datetime.fromtimestamp(dt, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(dt.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
