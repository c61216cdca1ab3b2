"""
Event System Module

Publish/subscribe bridge between the engine and entity-owning modules.
``EventDispatchNotifier`` turns engine notifications into ``DomainEvent``s so
that, for example, the policy module can publish a policy when its approval
workflow reaches ``workflow.approved``.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .notifications import NotificationAdapter, build_payload


class DomainEvent(Enum):
    """Workflow events entity owners can subscribe to"""
    STEP_ACTIVATED = "workflow.step_activated"
    APPROVED = "workflow.approved"
    REJECTED = "workflow.rejected"
    CANCELLED = "workflow.cancelled"


COMPLETION_EVENTS = {
    "APPROVED": DomainEvent.APPROVED,
    "REJECTED": DomainEvent.REJECTED,
    "CANCELLED": DomainEvent.CANCELLED,
}


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("compliance_workflows.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


class EventDispatchNotifier(NotificationAdapter):
    """Republishes engine notifications as domain events"""

    def __init__(self, dispatcher: EventDispatcher):
        self.dispatcher = dispatcher

    def on_step_activated(self, instance, step) -> None:
        self.dispatcher.publish(EventPayload(
            event_type=DomainEvent.STEP_ACTIVATED,
            entity_type=instance.entity_type.value,
            entity_id=instance.entity_id,
            data=build_payload(DomainEvent.STEP_ACTIVATED.value, instance, step=step)
        ))

    def on_instance_completed(self, instance, final_status) -> None:
        event_type = COMPLETION_EVENTS[final_status.value]
        self.dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=instance.entity_type.value,
            entity_id=instance.entity_id,
            data=build_payload(event_type.value, instance, final_status=final_status)
        ))
