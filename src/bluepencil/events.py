"""Event bus infrastructure connecting the entity store to context tracking.

The entity store publishes one typed event per mutation; the staleness tracker
subscribes and turns them into queued context update events. Editing surfaces
publish :class:`DocumentEdited` and :class:`CursorMoved` through the same bus.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    Callable,
    Generic,
    Literal,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]

ChangeType = Literal["insert", "delete", "replace"]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system.

    Subclasses should be ``@dataclass(slots=True)`` as well::

        @dataclass(slots=True)
        class DocumentCreated(Event):
            project_id: str
            document_id: str
    """

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Project / document events
# =============================================================================


@dataclass(slots=True)
class ProjectUpdated(Event):
    project_id: str


@dataclass(slots=True)
class ProjectDeleted(Event):
    project_id: str


@dataclass(slots=True)
class DocumentCreated(Event):
    project_id: str
    document_id: str


@dataclass(slots=True)
class DocumentUpdated(Event):
    """Emitted after :meth:`EntityStore.update_document`.

    Attributes:
        fields: Names of the patched fields.
        word_count: Word count after the update.
    """

    project_id: str
    document_id: str
    fields: tuple[str, ...] = ()
    word_count: int = 0


@dataclass(slots=True)
class DocumentDeleted(Event):
    project_id: str
    document_id: str


@dataclass(slots=True)
class DocumentsReordered(Event):
    project_id: str
    ordered_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class DocumentEdited(Event):
    """Raw edit reported by an editing surface.

    Attributes:
        change_type: ``insert``, ``delete`` or ``replace``.
        position: Character offset of the change.
        snippet: Inserted (or removed) text.
    """

    project_id: str
    document_id: str
    change_type: ChangeType
    position: int
    snippet: str = ""
    section_id: str | None = None


@dataclass(slots=True)
class CursorMoved(Event):
    document_id: str
    anchor: int
    head: int


_QUIET_EVENT_TYPES.add(CursorMoved)
_QUIET_EVENT_TYPES.add(DocumentEdited)


@dataclass(slots=True)
class ActiveDocumentChanged(Event):
    project_id: str
    document_id: str | None


# =============================================================================
# Character / outline events
# =============================================================================


@dataclass(slots=True)
class CharacterUpdated(Event):
    project_id: str
    character_id: str
    created: bool = False


@dataclass(slots=True)
class CharacterDeleted(Event):
    project_id: str
    character_id: str


@dataclass(slots=True)
class OutlineUpdated(Event):
    """Emitted for any outline mutation.

    Attributes:
        action: ``created``, ``updated``, ``moved``, ``linked``, ``unlinked`` or ``deleted``.
        node_ids: Every node touched, including cascaded descendants.
    """

    project_id: str
    action: str
    node_ids: tuple[str, ...] = field(default_factory=tuple)


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Handlers are invoked synchronously in registration order. Bound methods
    are held through weak references so subscribers can be collected.

    Thread Safety:
        Not thread-safe. All operations run on the single logical actor
        that owns the entity store.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``.

        Subscribing the same handler twice results in two invocations.
        """
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        A handler that raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if not handlers:
            return

        if not is_quiet:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            handlers.pop(i)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "ChangeType",
    "ProjectUpdated",
    "ProjectDeleted",
    "DocumentCreated",
    "DocumentUpdated",
    "DocumentDeleted",
    "DocumentsReordered",
    "DocumentEdited",
    "CursorMoved",
    "ActiveDocumentChanged",
    "CharacterUpdated",
    "CharacterDeleted",
    "OutlineUpdated",
]
