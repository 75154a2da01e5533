"""Entity collections, the outline index, and record persistence."""

from .entity_store import EntityNotFoundError, EntityStore
from .outline_tree import OutlineCycleError, OutlineForest
from .persistence import InMemoryRecordStore, JsonDirectoryRecordStore, RecordStore, hydrate_store

__all__ = [
    "EntityNotFoundError",
    "EntityStore",
    "InMemoryRecordStore",
    "JsonDirectoryRecordStore",
    "OutlineCycleError",
    "OutlineForest",
    "RecordStore",
    "hydrate_store",
]
