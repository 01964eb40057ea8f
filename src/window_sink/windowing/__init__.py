"""Event-time windowing: fixed window assignment and the watermark-driven tracker."""

from .assigner import WindowAssigner
from .tracker import WindowTracker

__all__ = ["WindowAssigner", "WindowTracker"]
