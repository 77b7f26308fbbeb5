"""
events.py - Event Schema Definitions

PURPOSE:
    Defines every event the reservation service writes to its outbox and the
    dispatcher publishes to Kafka. Uses Pydantic for validation and JSON
    serialization.

EVENT CATEGORIES:
    1. Reservation Events: Stock Ledger state transitions
       - reservation.held
       - reservation.committed
       - reservation.released
       - reservation.expired

    2. Order Events: terminal outcome of a checkout saga
       - order.created
       - order.failed

COMMON FIELDS (BaseEvent):
    - event_id: Unique identifier (UUID4 string)
    - occurred_at: UTC epoch milliseconds

    Topic-specific fields come from the fixed set
    {reservation_id, checkout_id, order_id, user_id, lines, reason}.
    Unknown fields are rejected when decoding.

PARTITION KEY:
    Reservation events are keyed by reservation_id, order events by checkout_id,
    so every event of one reservation (or one checkout) lands on one partition
    in the order it was written.

USAGE:
    event = ReservationHeldEvent(reservation_id="...", checkout_id="...", lines=[...])
    payload = encode_event(event)            # bytes for the outbox
    event = decode_event("reservation.held", payload)
"""

from typing import ClassVar, List, Optional, Type
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from shared.clock import utc_now_ms


class EventLine(BaseModel):
    """One SKU line carried by an event."""

    model_config = ConfigDict(extra="forbid")

    sku_id: str
    qty: int


class BaseEvent(BaseModel):
    """
    Base event model for all outbox events.

    Subclasses pin their topic in the ``topic`` class variable; the topic is not
    part of the JSON payload.
    """

    model_config = ConfigDict(extra="forbid")

    topic: ClassVar[str] = ""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    occurred_at: int = Field(default_factory=utc_now_ms)

    @property
    def partition_key(self) -> str:
        raise NotImplementedError


# ============================================================================
# RESERVATION EVENTS - Stock Ledger transitions
# ============================================================================

class _ReservationEvent(BaseEvent):
    reservation_id: str
    checkout_id: str
    lines: List[EventLine]

    @property
    def partition_key(self) -> str:
        return self.reservation_id


class ReservationHeldEvent(_ReservationEvent):
    """Stock moved from available to reserved for every line."""

    topic: ClassVar[str] = "reservation.held"


class ReservationCommittedEvent(_ReservationEvent):
    """Reserved stock left the warehouse."""

    topic: ClassVar[str] = "reservation.committed"


class ReservationReleasedEvent(_ReservationEvent):
    """Reserved stock returned to available by an explicit rollback."""

    topic: ClassVar[str] = "reservation.released"
    reason: Optional[str] = None


class ReservationExpiredEvent(_ReservationEvent):
    """Reserved stock returned to available because the TTL lapsed."""

    topic: ClassVar[str] = "reservation.expired"


# ============================================================================
# ORDER EVENTS - checkout saga outcome
# ============================================================================

class OrderCreatedEvent(BaseEvent):
    """Checkout reached DONE: paid, ordered, stock committed."""

    topic: ClassVar[str] = "order.created"
    checkout_id: str
    order_id: str
    user_id: str
    reservation_id: str
    lines: List[EventLine]

    @property
    def partition_key(self) -> str:
        return self.checkout_id


class OrderFailedEvent(BaseEvent):
    """Checkout reached FAILED; ``reason`` is a stable error code."""

    topic: ClassVar[str] = "order.failed"
    checkout_id: str
    user_id: str
    reason: str
    reservation_id: Optional[str] = None
    order_id: Optional[str] = None

    @property
    def partition_key(self) -> str:
        return self.checkout_id


EVENT_TYPE_MAP = {
    cls.topic: cls
    for cls in (
        ReservationHeldEvent,
        ReservationCommittedEvent,
        ReservationReleasedEvent,
        ReservationExpiredEvent,
        OrderCreatedEvent,
        OrderFailedEvent,
    )
}

ALL_TOPICS = list(EVENT_TYPE_MAP)


def encode_event(event: BaseEvent) -> bytes:
    return event.model_dump_json(exclude_none=True).encode("utf-8")


def decode_event(topic: str, payload: bytes) -> BaseEvent:
    """Validate a payload against its topic schema (raises ValidationError / KeyError)."""
    event_class: Type[BaseEvent] = EVENT_TYPE_MAP[topic]
    return event_class.model_validate_json(payload)
