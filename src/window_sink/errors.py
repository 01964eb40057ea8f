"""
Custom exceptions for the windowed sink.

Four error classes drive propagation:
- Transient (storage I/O) - retried with bounded backoff, then escalated
- Data (schema/malformed records) - never retried, window flagged
- Late (record past the grace deadline) - dropped and counted
- Fatal (authorization, misconfiguration) - halts the pipeline
"""


class WindowSinkError(Exception):
    """Base error for the windowed sink."""

    pass


class TransientStorageError(WindowSinkError):
    """Temporary storage errors that should be retried with backoff."""

    pass


class DataError(WindowSinkError):
    """Input cannot be encoded; retrying the same input cannot help."""

    pass


class SchemaMismatch(DataError):
    """Records of one shard do not conform to a single schema."""

    pass


class MalformedRecord(DataError):
    """A record payload cannot be parsed for the selected format."""

    pass


class LateDataDropped(WindowSinkError):
    """Record arrived after its window's grace deadline."""

    def __init__(self, window, event_time):
        super().__init__(f"late record for window {window} (event_time={event_time.isoformat()})")
        self.window = window
        self.event_time = event_time


class SinkWriteFailed(WindowSinkError):
    """A shard could not be committed within the retry budget."""

    def __init__(self, path: str, attempts: int, cause: Exception | None = None):
        super().__init__(f"failed to commit {path} after {attempts} attempt(s): {cause}")
        self.path = path
        self.attempts = attempts
        self.cause = cause


class FatalSinkError(WindowSinkError):
    """Errors that halt the whole pipeline."""

    pass


class ConfigurationError(FatalSinkError):
    """Invalid or incomplete sink configuration."""

    pass


class StoragePermissionDenied(FatalSinkError):
    """The object store rejected our credentials."""

    pass


class MissingSchema(DataError, ConfigurationError):
    """A schema-bearing format was selected without a schema."""

    pass


def map_storage_error(e: Exception) -> WindowSinkError:
    if isinstance(e, WindowSinkError):
        return e
    if isinstance(e, PermissionError):
        return StoragePermissionDenied(str(e))
    if isinstance(e, (TimeoutError, ConnectionError, OSError)):
        return TransientStorageError(str(e))
    msg = str(e).lower()
    if "unauthorized" in msg or "forbidden" in msg or "access denied" in msg:
        return StoragePermissionDenied(str(e))
    return TransientStorageError(str(e))
