"""Object store adapters."""

from .base import ObjectStore
from .local import LocalFileStore
from .memory import InMemoryObjectStore

__all__ = ["ObjectStore", "LocalFileStore", "InMemoryObjectStore"]
