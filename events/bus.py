"""
In-process event bus for the autoscaling control loop.
Publishes typed alert and scaling-action events to registered handlers.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

class EventType(str, Enum):
    """Event channels emitted by the control loop."""
    ALERT = "alert"
    SCALING_ACTION_STARTED = "scaling_action_started"
    SCALING_ACTION_COMPLETED = "scaling_action_completed"
    SCALING_ACTION_FAILED = "scaling_action_failed"

@dataclass(frozen=True)
class AlertEvent:
    """Payload published when an alert rule fires."""
    rule_id: str
    rule_name: str
    metric: str
    value: float
    threshold: float
    condition: str
    severity: str
    timestamp: float
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def event_type(self) -> EventType:
        return EventType.ALERT

@dataclass(frozen=True)
class ScalingActionEvent:
    """Snapshot of a scaling action at a lifecycle transition."""
    event_type: EventType
    action_id: str
    policy_id: str
    service: str
    action: str
    current_instances: int
    target_instances: int
    status: str
    reason: str
    timestamp: float
    error: Optional[str] = None

Event = Union[AlertEvent, ScalingActionEvent]
EventHandler = Callable[[Event], None]

class EventBus:
    """
    Synchronous fan-out pub/sub.

    Handlers run on the publishing thread and must be cheap. A handler that
    raises is logged and skipped; publishers never see the error.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._handlers: Dict[EventType, List[EventHandler]] = {}

    def subscribe(self, event_type: EventType, handler: EventHandler) -> Callable[[], None]:
        """Register a handler and return a callable that removes it again."""
        event_type = EventType(event_type)
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler on every event type."""
        removers = [self.subscribe(event_type, handler) for event_type in EventType]

        def unsubscribe():
            for remove in removers:
                remove()

        return unsubscribe

    def publish(self, event: Event) -> int:
        """Deliver an event to its subscribers. Returns the number of handlers that succeeded."""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Event handler {getattr(handler, '__name__', handler)!r} failed for {event.event_type.value}: {e}")
        return delivered

    def handler_count(self, event_type: Optional[EventType] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._handlers.get(EventType(event_type), []))
            return sum(len(handlers) for handlers in self._handlers.values())
