"""Webhook event types and event models.

This module defines the closed vocabulary of events emitted by the booking
lifecycle and the structure in which they are published to the event bus.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class EventType(str, Enum):
    """Supported webhook event types.

    Events are organized by category:
    - booking.*: Booking lifecycle events
    - payment.*: Payment events
    - room.*: Room availability and housekeeping status
    - rate.*: Rate plan changes
    - guest.*, system.*: Open families, any suffix is accepted
    """

    # Booking events
    BOOKING_CREATED = "booking.created"
    BOOKING_UPDATED = "booking.updated"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_CHECKED_IN = "booking.checked_in"
    BOOKING_CHECKED_OUT = "booking.checked_out"
    BOOKING_NO_SHOW = "booking.no_show"

    # Payment events
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_PARTIAL_REFUND = "payment.partial_refund"

    # Room events
    ROOM_AVAILABILITY_CHANGED = "room.availability_changed"
    ROOM_STATUS_CHANGED = "room.status_changed"

    # Rate events
    RATE_UPDATED = "rate.updated"
    RATE_CREATED = "rate.created"
    RATE_DELETED = "rate.deleted"

    # Guest and system events used internally
    GUEST_UPDATED = "guest.updated"
    SYSTEM_WEBHOOK_TEST = "system.webhook_test"


# Families where any "<prefix><name>" event type is valid
OPEN_EVENT_FAMILIES = ("guest.", "system.")

_KNOWN_EVENT_TYPES = frozenset(e.value for e in EventType)


def is_known_event_type(event_type: str) -> bool:
    """Check whether an event type belongs to the vocabulary.

    Args:
        event_type: Event type string such as "booking.updated".

    Returns:
        True if the type is a closed-set member or in an open family.
    """
    if event_type in _KNOWN_EVENT_TYPES:
        return True
    return any(
        event_type.startswith(prefix) and len(event_type) > len(prefix)
        for prefix in OPEN_EVENT_FAMILIES
    )


def normalize_event_type(event_type: str | EventType) -> str:
    """Return the string form of an event type, rejecting unknown ones.

    Raises:
        ValueError: If the event type is outside the vocabulary.
    """
    value = event_type.value if isinstance(event_type, EventType) else str(event_type)
    if not is_known_event_type(value):
        raise ValueError(f"Unknown event type: {value}")
    return value


class Event(BaseModel):
    """An event published by the booking lifecycle.

    Attributes:
        id: Unique event identifier.
        event_type: Vocabulary member, e.g. "booking.updated".
        tenant_id: Tenant the event belongs to; scopes endpoint matching.
        occurred_at: When the state change happened.
        body: Event-specific data, delivered as "data" in webhook payloads.
    """

    id: str = Field(
        default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}",
        description="Unique event identifier",
    )
    event_type: str = Field(..., description="Event type")
    tenant_id: str = Field(..., description="Owning tenant")
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event occurred",
    )
    body: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data",
    )

    @field_validator("event_type", mode="before")
    @classmethod
    def _check_event_type(cls, value: Any) -> str:
        return normalize_event_type(value)


def create_event(
    event_type: EventType | str,
    tenant_id: str,
    body: dict[str, Any],
    *,
    event_id: str | None = None,
    occurred_at: datetime | None = None,
) -> Event:
    """Create an event ready for publication.

    Args:
        event_type: Type of event.
        tenant_id: Tenant scope.
        body: Event-specific data.
        event_id: Optional custom event ID.
        occurred_at: Optional custom timestamp.

    Returns:
        Event instance.
    """
    event = Event(event_type=event_type, tenant_id=tenant_id, body=body)

    if event_id:
        event.id = event_id

    if occurred_at:
        event.occurred_at = occurred_at

    return event
