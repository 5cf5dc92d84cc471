"""
Event System Module

Publish/subscribe dispatcher for loan and installment state changes.
Subscribers (notifications, audit sinks) see facts after they are persisted;
a failing subscriber never fails the operation that published the event.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the lending core"""

    # Loan events
    LOAN_APPLIED = "loan.applied"
    LOAN_APPROVED = "loan.approved"
    LOAN_REJECTED = "loan.rejected"
    LOAN_COMPLETED = "loan.completed"
    LOAN_DELETED = "loan.deleted"
    LOAN_PENALTY_CHANGED = "loan.penalty_changed"

    # Schedule events
    SCHEDULE_GENERATED = "schedule.generated"

    # EMI events
    EMI_OVERDUE = "emi.overdue"
    EMI_PENALTY_CHANGED = "emi.penalty_changed"
    EMI_PENALTY_WAIVED = "emi.penalty_waived"
    EMI_RESET = "emi.reset"
    EMI_PAYMENT_REQUESTED = "emi.payment_requested"
    EMI_PAYMENT_REQUEST_CANCELED = "emi.payment_request_canceled"
    EMI_PAID = "emi.paid"


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
        self.logger = logging.getLogger("emi_engine.events")

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

    def unsubscribe_all(self, handler: Callable) -> None:
        """Unsubscribe a catch-all handler"""
        with self._lock:
            try:
                self._global_handlers.remove(handler)
            except ValueError:
                self.logger.warning(f"Global handler {_handler_name(handler)} was not subscribed")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # Delivery is best effort; the state change is already persisted
                self.logger.exception(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}"
                )

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
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class EventRecorder:
    """Catch-all subscriber that keeps every event it sees"""

    def __init__(self):
        self.events: List[EventPayload] = []

    def __call__(self, event: EventPayload) -> None:
        self.events.append(event)

    def of_type(self, event_type: DomainEvent) -> List[EventPayload]:
        return [event for event in self.events if event.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


# Global event dispatcher instance (singleton pattern)
_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher instance"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = EventDispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: EventDispatcher) -> None:
    """Set a custom global event dispatcher"""
    global _global_dispatcher
    _global_dispatcher = dispatcher


class EventPublisherMixin:
    """Mixin to add event publishing capabilities to services"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: Optional[EventDispatcher]) -> None:
        """Set the event dispatcher for this instance"""
        self._event_dispatcher = event_dispatcher

    def publish_event(self, event: EventPayload) -> None:
        dispatcher = self._event_dispatcher or get_global_dispatcher()
        dispatcher.publish(event)


def create_emi_event(event_type: DomainEvent, emi, **extra) -> EventPayload:
    """Create an EMI-related event"""
    data = {
        "loan_id": emi.loan_id,
        "user_id": emi.user_id,
        "day_number": emi.day_number,
        "due_date": emi.due_date.isoformat(),
        "status": emi.status.value,
        "principal_amount": emi.principal_amount,
        "interest_amount": emi.interest_amount,
        "penalty_amount": emi.penalty_amount,
        "total_amount": emi.total_amount,
    }
    data.update(extra)
    return EventPayload(event_type=event_type, entity_type="emi", entity_id=emi.id, data=data)


def create_loan_event(event_type: DomainEvent, loan, **extra) -> EventPayload:
    """Create a loan-related event"""
    data = {
        "user_id": loan.user_id,
        "applicant_name": loan.applicant_name,
        "amount": loan.amount,
        "total_days": loan.total_days,
        "status": loan.status.value,
        "penalty_amount": loan.penalty_amount,
        "total_paid": loan.total_paid,
        "remaining_balance": loan.remaining_balance,
    }
    data.update(extra)
    return EventPayload(event_type=event_type, entity_type="loan", entity_id=loan.id, data=data)


def create_loan_penalty_event(loan_id: str, delta: int, penalty_amount: int, reason: str) -> EventPayload:
    """Loan penalty total moved by delta (without loading the loan)"""
    return EventPayload(
        event_type=DomainEvent.LOAN_PENALTY_CHANGED,
        entity_type="loan",
        entity_id=loan_id,
        data={"delta": delta, "penalty_amount": penalty_amount, "reason": reason},
    )
