"""Window Sink

Event-time windowed sink for unbounded record streams:
- WindowAssigner / WindowTracker (watermark-driven window state machine)
- ShardPlanner (stable key-hash sharding)
- TEXT / ROW_BINARY / COLUMNAR_BINARY encoders
- SinkWriter (temp-then-finalize commits with retry + backoff)
- WindowedSink orchestration, dead-letter log and Prometheus metrics
"""

from .config import SinkSettings, get_settings, load_settings
from .dlq import DeadLetterQueue, DLQRecord
from .errors import (
    ConfigurationError,
    DataError,
    FatalSinkError,
    LateDataDropped,
    MalformedRecord,
    MissingSchema,
    SchemaMismatch,
    SinkWriteFailed,
    StoragePermissionDenied,
    TransientStorageError,
    WindowSinkError,
)
from .models import (
    OutputFile,
    OutputFormat,
    Record,
    Shard,
    Watermark,
    Window,
    WindowId,
    WindowState,
)
from .pipeline import SinkHealth, WindowedSink, WindowOutcome
from .policy import RetryPolicy, default_retry_classifier
from .sharding import ShardPlanner
from .windowing import WindowAssigner, WindowTracker
from .writer import SinkWriter

__version__ = "0.1.0"

__all__ = [
    # config
    "SinkSettings",
    "get_settings",
    "load_settings",
    # model
    "Record",
    "Watermark",
    "Window",
    "WindowId",
    "WindowState",
    "Shard",
    "OutputFile",
    "OutputFormat",
    # components
    "WindowAssigner",
    "WindowTracker",
    "ShardPlanner",
    "SinkWriter",
    "RetryPolicy",
    "default_retry_classifier",
    "WindowedSink",
    "WindowOutcome",
    "SinkHealth",
    "DeadLetterQueue",
    "DLQRecord",
    # errors
    "WindowSinkError",
    "TransientStorageError",
    "DataError",
    "MissingSchema",
    "SchemaMismatch",
    "MalformedRecord",
    "LateDataDropped",
    "SinkWriteFailed",
    "FatalSinkError",
    "ConfigurationError",
    "StoragePermissionDenied",
]
