"""Event bus used to notify the builder UI about assistant activity.

The pipeline never talks to UI widgets directly; it publishes the events
below and panels subscribe to the ones they render.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

# Type variable for event types
E = TypeVar("E", bound="Event")

# Handler type: a callable that takes an event and returns None
Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system.

    Example::

        @dataclass(slots=True)
        class ChangesSaved(Event):
            document_id: str | None
            skipped: bool = False
    """

    pass


# =============================================================================
# Request Lifecycle Events
# =============================================================================


@dataclass(slots=True)
class RequestStarted(Event):
    """Emitted when a request enters AwaitingResponse.

    Attributes:
        request_id: Identifier of the request's cancellation token.
        kind: Request kind value (``user_prompt``, ``suggest``, ...).
        document_id: Document the request targets.
    """

    request_id: int
    kind: str
    document_id: str | None = None


@dataclass(slots=True)
class SuggestionReady(Event):
    """Emitted when a suggestion is ready to be displayed (not applied).

    Attributes:
        request_id: Identifier of the originating request.
        explanation: Short, non-technical description of the suggestion.
        automatic: True when produced by the auto-suggest path.
    """

    request_id: int
    explanation: str
    automatic: bool = False


@dataclass(slots=True)
class MutationApplied(Event):
    """Emitted when a change was applied to the live document.

    Attributes:
        request_id: Identifier of the originating request.
        explanation: Explanation returned by the model.
        path: ``replacement``, ``imperative`` or ``fallback``.
        warnings: Non-fatal warnings raised while applying.
    """

    request_id: int
    explanation: str
    path: str
    warnings: tuple[str, ...] = ()


@dataclass(slots=True)
class MutationFailed(Event):
    """Emitted when a request ends in a surfaced failure.

    Attributes:
        request_id: Identifier of the originating request.
        code: Machine-readable error code.
        message: Simplified user-facing message.
    """

    request_id: int
    code: str
    message: str


@dataclass(slots=True)
class QuotaRefreshRequested(Event):
    """Emitted when upstream reports a usage cap so quota displays refresh."""

    error_code: str | None = None


# =============================================================================
# Persistence Events
# =============================================================================


@dataclass(slots=True)
class ChangesSaved(Event):
    """Emitted after a save finished.

    Attributes:
        document_id: Document that was saved.
        skipped: True when the content was already persisted.
    """

    document_id: str | None
    skipped: bool = False


@dataclass(slots=True)
class SaveFailed(Event):
    """Emitted when a change was applied but could not be persisted."""

    document_id: str | None
    message: str = "Changes applied but save failed. Please save manually."


# =============================================================================
# UI Events
# =============================================================================


@dataclass(slots=True)
class StatusMessage(Event):
    """Emitted to show a transient message in the assistant panel.

    Attributes:
        message: The text to display.
        timeout_ms: Display duration in milliseconds (0 = permanent).
        details: Optional structured payload for richer panels.
    """

    message: str
    timeout_ms: int = 5000
    details: dict[str, Any] = field(default_factory=dict)


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus for decoupled communication.

    Handlers are stored as weak references where possible to prevent
    memory leaks.

    Thread Safety:
        This implementation is NOT thread-safe. All operations should be
        performed from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of the specified type.

        Args:
            event_type: The class of events to subscribe to.
            handler: A callable that will be invoked with the event.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove a previously registered handler; safe if never subscribed."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers are invoked synchronously in registration order. A handler
        that raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        if handlers is None:
            logger.debug("No handlers for event type %s", event_type.__name__)
            return

        logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        for i, handler_ref in enumerate(handlers):
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
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the number of handlers for *event_type*, or in total."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Handler reference: weak for bound methods, strong for plain callables."""

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
    """Get a human-readable name for a handler for logging purposes."""
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
    # Request lifecycle
    "RequestStarted",
    "SuggestionReady",
    "MutationApplied",
    "MutationFailed",
    "QuotaRefreshRequested",
    # Persistence
    "ChangesSaved",
    "SaveFailed",
    # UI
    "StatusMessage",
]
