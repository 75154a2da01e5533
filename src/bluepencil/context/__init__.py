"""Context snapshot construction and staleness tracking."""

from .types import CompressionLevel, ContextSnapshot, Priority, Staleness, UpdateEvent, UpdateType
from .edit_log import EditEventLog, UpdateEventQueue, make_update_event
from .budget import DegradationPolicy
from .builder import BuilderConfig, ContextBuilder, ContextFocus
from .tracker import StalenessThresholds, StalenessTracker

__all__ = [
    "BuilderConfig",
    "CompressionLevel",
    "ContextBuilder",
    "ContextFocus",
    "ContextSnapshot",
    "DegradationPolicy",
    "EditEventLog",
    "Priority",
    "Staleness",
    "StalenessThresholds",
    "StalenessTracker",
    "UpdateEvent",
    "UpdateEventQueue",
    "UpdateType",
    "make_update_event",
]
