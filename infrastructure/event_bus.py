"""
Lightweight event bus for decoupled graph change notifications.

Every GraphStore mutation returns a GraphEvent naming the categories it
touched, and publishes it here. The supervising engine subscribes the view
cache to these events, so invalidation is an explicit, testable path rather
than a hidden side effect of persistence code.

Delivery:
- Sync handlers run on the publishing thread, after the store commits
- Async handlers are scheduled on the running loop via create_task; the
  bus holds each task until it finishes and logs its failure
- A failing handler is logged and never reaches the publisher
- Events are msgspec Structs, so they serialize without adapters

Architecture:
    GraphStore / SessionEngine -> EventBus -> [ViewCache invalidation, loggers]

Usage:
    bus = EventBus()
    bus.subscribe_mutations(lambda event: cache.invalidate_categories(event.categories))
    bus.publish(GraphEvent(
        type=EventType.NODE_CREATED,
        categories=["brush"],
        payload={"node_id": "..."},
        timestamp=time.time(),
        source="graph_db",
    ))
"""
from typing import Callable, List, Dict, Any, Optional, Set
from enum import Enum
import msgspec
import asyncio
import functools
import threading
from collections import defaultdict
import logging


logger = logging.getLogger("troubleshoot.event_bus")


class EventType(str, Enum):
    """Types of events published by the graph and session layers."""
    NODE_CREATED = "node_created"
    NODE_UPDATED = "node_updated"
    NODE_DELETED = "node_deleted"
    CONNECTION_CREATED = "connection_created"
    CONNECTION_UPDATED = "connection_updated"
    CONNECTION_DELETED = "connection_deleted"
    CATEGORY_UPDATED = "category_updated"
    CATEGORY_DELETED = "category_deleted"
    # Session lifecycle (informational; never invalidates graph views)
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"
    SESSION_ABANDONED = "session_abandoned"


# Events that change graph rows and therefore invalidate derived views.
MUTATION_EVENTS = (
    EventType.NODE_CREATED,
    EventType.NODE_UPDATED,
    EventType.NODE_DELETED,
    EventType.CONNECTION_CREATED,
    EventType.CONNECTION_UPDATED,
    EventType.CONNECTION_DELETED,
    EventType.CATEGORY_UPDATED,
    EventType.CATEGORY_DELETED,
)


class GraphEvent(msgspec.Struct, kw_only=True):
    """
    Event emitted when the graph (or a session) changes.

    Attributes:
        type: Type of event
        categories: Categories whose derived views the change affects
        payload: Event-specific data (node_id, connection_id, ...)
        timestamp: Unix timestamp when event occurred
        source: Component that emitted the event
    """
    type: EventType
    categories: List[str] = msgspec.field(default_factory=list)
    payload: Dict[str, Any] = msgspec.field(default_factory=dict)
    timestamp: float = 0.0
    source: str = "unknown"

    @property
    def is_mutation(self) -> bool:
        return self.type in MUTATION_EVENTS


class EventBus:
    """
    Event bus for graph change notifications.

    Thread Safety:
        Subscriber lists are guarded by a lock and copied before dispatch,
        so publishing from concurrent request threads is safe. Handlers run
        on the publishing thread.
    """

    def __init__(self):
        """Initialize empty subscriber lists."""
        self._subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._async_subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()
        self._published = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def published_count(self) -> int:
        return self._published

    def subscribe(self, event_type: EventType, handler: Callable[[GraphEvent], None]):
        """
        Subscribe to events with a synchronous handler.

        Args:
            event_type: Type of event to listen for
            handler: Callable that takes GraphEvent as argument
        """
        with self._lock:
            if handler not in self._subscribers[event_type]:
                self._subscribers[event_type].append(handler)
        logger.debug(f"Subscribed sync handler to {event_type.value}")

    def subscribe_mutations(self, handler: Callable[[GraphEvent], None]):
        """Subscribe a synchronous handler to every graph mutation event."""
        for event_type in MUTATION_EVENTS:
            self.subscribe(event_type, handler)

    def subscribe_async(self, event_type: EventType, handler: Callable[[GraphEvent], Any]):
        """
        Subscribe to events with an async handler.

        The handler is scheduled on the running event loop when an event is
        published; if no loop is running the event is skipped with a warning.
        """
        with self._lock:
            if handler not in self._async_subscribers[event_type]:
                self._async_subscribers[event_type].append(handler)
        logger.debug(f"Subscribed async handler to {event_type.value}")

    def publish(self, event: GraphEvent):
        """
        Publish an event to all subscribers.

        Note:
            - Sync handlers run immediately (blocking)
            - Async handlers are scheduled and run in the background
            - Exceptions in handlers are logged but don't propagate
        """
        logger.debug(
            f"Publishing {event.type.value} from {event.source} "
            f"(categories: {event.categories})"
        )
        with self._lock:
            sync_handlers = list(self._subscribers[event.type])
            async_handlers = list(self._async_subscribers[event.type])
            self._published += 1

        for handler in sync_handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Error in sync handler for {event.type.value}: {e}",
                    exc_info=True
                )

        for handler in async_handlers:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(
                    f"Cannot schedule async handler for {event.type.value}: "
                    "no event loop running"
                )
                continue
            task = loop.create_task(handler(event))
            with self._lock:
                self._tasks.add(task)
            task.add_done_callback(functools.partial(self._async_done, event.type))

    def _async_done(self, event_type: EventType, task: asyncio.Task):
        with self._lock:
            self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Error in async handler for {event_type.value}: {error}",
                exc_info=error
            )

    @property
    def pending_tasks(self) -> int:
        """Async handler tasks scheduled but not yet finished."""
        with self._lock:
            return len(self._tasks)

    def unsubscribe(self, event_type: EventType, handler: Callable):
        """Unsubscribe a handler (must be the same instance)."""
        with self._lock:
            if handler in self._subscribers[event_type]:
                self._subscribers[event_type].remove(handler)
            if handler in self._async_subscribers[event_type]:
                self._async_subscribers[event_type].remove(handler)
        logger.debug(f"Unsubscribed handler from {event_type.value}")

    def unsubscribe_mutations(self, handler: Callable):
        for event_type in MUTATION_EVENTS:
            self.unsubscribe(event_type, handler)

    def clear_subscribers(self, event_type: Optional[EventType] = None):
        """
        Clear all subscribers for an event type (or all types).

        Warning:
            This is primarily for testing.
        """
        with self._lock:
            if event_type is None:
                self._subscribers.clear()
                self._async_subscribers.clear()
            else:
                self._subscribers[event_type].clear()
                self._async_subscribers[event_type].clear()

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        """Count of subscribers for an event type (None = all types)."""
        with self._lock:
            if event_type is None:
                total = sum(len(handlers) for handlers in self._subscribers.values())
                total += sum(len(handlers) for handlers in self._async_subscribers.values())
                return total
            return (
                len(self._subscribers[event_type]) +
                len(self._async_subscribers[event_type])
            )


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get the process-wide event bus (used when no bus is injected)."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
        logger.info("Initialized global event bus")
    return _event_bus


def reset_event_bus() -> None:
    """Drop the process-wide bus (tests)."""
    global _event_bus
    _event_bus = None
