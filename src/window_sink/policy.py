from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from .errors import DataError, FatalSinkError, TransientStorageError

_TRANSIENT_HINTS = ("timeout", "temporar", "unavailable", "busy", "retry", "throttl", "503")


def default_retry_classifier(exc: Exception) -> bool:
    """True for errors worth retrying against the object store."""
    if isinstance(exc, (FatalSinkError, DataError, PermissionError)):
        return False
    if isinstance(exc, (TransientStorageError, TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(hint in msg for hint in _TRANSIENT_HINTS)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with optional jitter.

    `next_backoff_ms(attempt)` is 1-based: attempt 1 waits `initial_backoff_ms`.
    With jitter the wait is drawn from 50-100% of the computed value.
    """

    max_attempts: int = 5
    initial_backoff_ms: int = 100
    max_backoff_ms: int = 10_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    classify_retryable: Callable[[Exception], bool] = field(default=default_retry_classifier)

    def next_backoff_ms(self, attempt: int) -> int:
        base = self.initial_backoff_ms * (self.backoff_multiplier ** min(max(0, attempt - 1), 64))
        capped = min(base, self.max_backoff_ms)
        if self.jitter:
            return int(random.uniform(capped / 2, capped))
        return int(capped)
