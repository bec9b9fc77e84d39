"""
VEIL Lifecycle Events

In-process pub/sub for observers of the lifecycle coordinator.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          LIFECYCLE EVENTS                                │
    │                                                                          │
    │  Creation              Verification          System                      │
    │  ├─ RecordSubmitted    ├─ VerificationStarted ├─ CacheReloaded          │
    │  └─ RecordCreated      ├─ RecordVerified      └─ TransactionStatusChanged│
    │                        └─ VerificationFailed                             │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Handlers run synchronously in priority order. A failing handler never breaks
the lifecycle operation that published the event: the failure is counted,
logged and passed to ``on_error``.

Usage
─────

    bus = EventBus()

    @bus.subscribe(TransactionStatusChanged)
    def show_status(event):
        print(event.status, event.message)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Type

from veil.observability import VeilLayer, get_correlation_id, get_logger

logger = get_logger("events", VeilLayer.LIFECYCLE)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for lifecycle events.

    Events are facts about something that already happened.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


# ════════════════════════════════════════════════════════════════════════════
# LIFECYCLE EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class RecordSubmitted(Event):
    """Emitted when a creation transaction is submitted."""
    record_id: str = ""
    tx_hash: str = ""
    creator: str = ""


@dataclass
class RecordCreated(Event):
    """Emitted when a creation transaction reaches finality."""
    record_id: str = ""
    tx_hash: str = ""
    block_number: int = 0
    ciphertext_handle: str = ""


@dataclass
class VerificationStarted(Event):
    """Emitted when a verification attempt begins."""
    record_id: str = ""
    attempt: int = 0


@dataclass
class RecordVerified(Event):
    """Emitted when a record is observed VERIFIED."""
    record_id: str = ""
    clear_value: int = 0
    short_circuited: bool = False
    tx_hash: str = ""


@dataclass
class VerificationFailed(Event):
    """Emitted when a verification attempt ends in failure."""
    record_id: str = ""
    error_type: str = ""
    reason: str = ""


@dataclass
class CacheReloaded(Event):
    """Emitted after a reload replaces (or is discarded by) the cache."""
    generation: int = 0
    loaded: int = 0
    failed: int = 0
    applied: bool = True
    stats: Dict[str, int] = field(default_factory=dict)


class TxDisplayStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class TransactionStatusChanged(Event):
    """User-facing status notification for an in-progress operation."""
    status: TxDisplayStatus = TxDisplayStatus.PENDING
    message: str = ""
    record_id: str = ""
    tx_hash: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    In-memory event bus.

    Supports typed subscriptions, filters and priorities. Thread-safe for
    concurrent publishing and subscribing.

    Example:
        bus = EventBus()

        @bus.subscribe(RecordCreated, RecordVerified)
        def on_record(event):
            ...

        bus.publish(RecordCreated(record_id="asset-1"))
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to subscribe a handler to event types.

        With no event types the handler receives every event. Higher
        priority handlers run first.
        """
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        if event.correlation_id is None:
            event.correlation_id = get_correlation_id()

        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                r for r in self._handlers
                if any(isinstance(event, t) for t in r.event_types)
                and (r.filter_func is None or r.filter_func(event))
            ]

        # Call handlers outside the lock
        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            logger.warning(
                "Event handler failed",
                operation="publish",
                event_type=event.event_type,
                error=str(e),
            )
            if self._on_error:
                self._on_error(error)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


class EventRecorder:
    """Subscriber that keeps every event it sees, in order."""

    def __init__(self, bus: EventBus, *event_types: Type[Event]):
        self.events: List[Event] = []
        bus.subscribe(*event_types)(self.events.append)

    def of_type(self, event_type: Type[Event]) -> List[Event]:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        self.events.clear()
