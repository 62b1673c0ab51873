"""Event definitions emitted by the pending-status poller."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Update types pushed to outcome consumers."""

    CONTINUE_POLLING = "continue_polling"
    REVERTED_TO_CART = "reverted_to_cart"
    STATUS_RESOLVED = "status_resolved"

    @property
    def routing_key(self) -> str:
        return f"payment.{self.value}"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    transaction_id: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_encoders = {
            datetime: lambda v: v.isoformat(),
            UUID: lambda v: str(v)
        }

    @property
    def type(self) -> str:
        return self.event_type.value


class PollerUpdateEvent(BaseEvent):
    """Status change detected for a watched transaction."""
    new_status: str
    count: int = 0


class ContinuePollingEvent(PollerUpdateEvent):
    """Transaction is still pending at the gateway; monitoring continues."""
    event_type: EventType = EventType.CONTINUE_POLLING


class RevertedToCartEvent(PollerUpdateEvent):
    """Payment page was abandoned; pending purchases went back to the cart."""
    event_type: EventType = EventType.REVERTED_TO_CART
    new_status: str = "cart"
    redirect_to: str = "/checkout"
    redirect_after_seconds: int = 3


class StatusResolvedEvent(PollerUpdateEvent):
    """Transaction reached a terminal status and was resolved again."""
    event_type: EventType = EventType.STATUS_RESOLVED
    outcome: Optional[Dict[str, Any]] = None  # ResolvedOutcome as JSON


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.CONTINUE_POLLING: ContinuePollingEvent,
    EventType.REVERTED_TO_CART: RevertedToCartEvent,
    EventType.STATUS_RESOLVED: StatusResolvedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
