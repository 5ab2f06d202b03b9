"""Booking aggregate and OTA amendment models.

The booking is owned by the reservations system; the amendment pipeline
only mutates its amendments, amendment flags, status and status history,
plus the fields an approved amendment changes.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from innsync.errors import InvalidStatusTransition, NotFound, PolicyDenied, ValidationRejected

logger = structlog.get_logger(__name__)

# Requested-change keys, as sent by channels
CHECK_IN = "checkIn"
CHECK_OUT = "checkOut"
TOTAL_AMOUNT = "totalAmount"
ROOMS = "rooms"
GUEST_INFO = "guestInfo"
SPECIAL_REQUESTS = "specialRequests"
GUEST_FIELDS = ("name", "email", "phone")

SYSTEM_ACTOR = "system"

_instant = TypeAdapter(datetime)


def parse_instant(value: Any) -> datetime:
    """Parse an instant, treating naive values as UTC.

    Raises:
        ValidationRejected: If the value is not a date/time.
    """
    try:
        parsed = _instant.validate_python(value)
    except ValueError as e:
        raise ValidationRejected(f"Invalid date/time value: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class BookingStatus(str, Enum):
    """Booking lifecycle status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    CANCELLED = "cancelled"
    MODIFIED = "modified"


STATUS_TRANSITIONS: dict[BookingStatus, tuple[BookingStatus, ...]] = {
    BookingStatus.PENDING: (
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.MODIFIED,
    ),
    BookingStatus.CONFIRMED: (
        BookingStatus.CHECKED_IN,
        BookingStatus.CANCELLED,
        BookingStatus.MODIFIED,
    ),
    BookingStatus.MODIFIED: (
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.CHECKED_IN,
    ),
    BookingStatus.CHECKED_IN: (BookingStatus.CHECKED_OUT,),
    BookingStatus.CHECKED_OUT: (),
    BookingStatus.CANCELLED: (),
}

# Statuses that hold a room for availability checks
OCCUPYING_STATUSES = frozenset(
    {
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        BookingStatus.MODIFIED,
        BookingStatus.CHECKED_IN,
    }
)


class CancellationPolicy(str, Enum):
    """Cancellation terms attached to a booking."""

    FLEXIBLE = "flexible"
    STANDARD = "standard"
    NON_REFUNDABLE = "non_refundable"


class AmendmentType(str, Enum):
    """Kinds of amendment a channel can request."""

    DATES_CHANGE = "dates_change"
    RATE_CHANGE = "rate_change"
    ROOM_CHANGE = "room_change"
    GUEST_DETAILS_CHANGE = "guest_details_change"
    SPECIAL_REQUEST_CHANGE = "special_request_change"
    CANCELLATION_REQUEST = "cancellation_request"


class AmendmentStatus(str, Enum):
    """Status of an OTA amendment."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"
    CONFLICTED = "conflicted"


# Statuses still awaiting a decision
OPEN_AMENDMENT_STATUSES = frozenset({AmendmentStatus.PENDING, AmendmentStatus.CONFLICTED})


class GuestInfo(BaseModel):
    """Guest descriptor."""

    name: str
    email: str | None = None
    phone: str | None = None
    vip: bool = False


class RoomAssignment(BaseModel):
    """A room assigned to a booking."""

    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId")
    room_type: str | None = Field(default=None, alias="roomType")


class AmendmentResolution(BaseModel):
    """Who decided an amendment, when and why."""

    decided_by: str
    decided_at: datetime
    reason: str | None = None
    auto_approved: bool = False


class AmendmentInput(BaseModel):
    """An amendment as submitted by a channel."""

    model_config = ConfigDict(populate_by_name=True)

    type: AmendmentType = Field(..., description="Amendment type")
    requested_changes: dict[str, Any] = Field(
        default_factory=dict,
        alias="requestedChanges",
        description="Field name to new value",
    )
    channel: str | None = Field(default=None, description="Originating channel")
    channel_amendment_id: str | None = Field(
        default=None,
        alias="channelAmendmentId",
        description="Channel-side correlator",
    )
    received_at: datetime | None = Field(default=None, alias="receivedAt")
    bypass_policy: bool = Field(
        default=False,
        alias="bypassPolicy",
        description="Skip the cancellation policy check",
    )
    notes: str | None = None


class OTAAmendment(BaseModel):
    """An amendment recorded on a booking."""

    amendment_id: str = Field(
        default_factory=lambda: f"AM{uuid.uuid4().hex[:12].upper()}",
        description="Unique within the booking",
    )
    channel: str
    channel_amendment_id: str | None = None
    amendment_type: AmendmentType
    requested_changes: dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime
    amendment_status: AmendmentStatus = AmendmentStatus.PENDING
    resolution: AmendmentResolution | None = None
    requires_manual_approval: bool = False
    flag_reason: str | None = None
    approved_changes: dict[str, Any] | None = None
    bypass_policy: bool = False
    notes: str | None = None

    @classmethod
    def from_input(
        cls,
        amendment_input: AmendmentInput,
        *,
        default_channel: str,
        now: datetime,
    ) -> "OTAAmendment":
        """Build a pending amendment from channel input."""
        return cls(
            channel=amendment_input.channel or default_channel,
            channel_amendment_id=amendment_input.channel_amendment_id,
            amendment_type=amendment_input.type,
            requested_changes=dict(amendment_input.requested_changes),
            requested_at=amendment_input.received_at or now,
            bypass_policy=amendment_input.bypass_policy,
            notes=amendment_input.notes,
        )

    @property
    def is_open(self) -> bool:
        """Whether the amendment still awaits a decision."""
        return self.amendment_status in OPEN_AMENDMENT_STATUSES

    def fields(self) -> set[str]:
        """Requested-change keys touched by this amendment."""
        return set(self.requested_changes)


class StatusChange(BaseModel):
    """One entry of a booking's status history."""

    from_status: BookingStatus | None
    to_status: BookingStatus
    changed_at: datetime
    source: str = "system"
    actor: str = SYSTEM_ACTOR
    reason: str | None = None
    automatic: bool = False


class AmendmentFlags(BaseModel):
    """Summary of a booking's amendment activity."""

    last_amendment_at: datetime | None = None
    has_open_amendments: bool = False
    amendment_count: int = 0
    requires_reconfirmation: bool = False


class Booking(BaseModel):
    """The booking aggregate as seen by the amendment pipeline."""

    booking_id: str
    tenant_id: str
    channel: str
    channel_booking_id: str | None = None
    status: BookingStatus = BookingStatus.CONFIRMED
    check_in: datetime
    check_out: datetime
    total_amount: float = 0.0
    guest: GuestInfo
    rooms: list[RoomAssignment] = Field(default_factory=list)
    special_requests: str | None = None
    cancellation_policy: CancellationPolicy = CancellationPolicy.STANDARD
    ota_amendments: list[OTAAmendment] = Field(default_factory=list)
    amendment_flags: AmendmentFlags = Field(default_factory=AmendmentFlags)
    status_history: list[StatusChange] = Field(default_factory=list)
    version: int = Field(default=0, ge=0, description="Optimistic concurrency counter")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def room_ids(self) -> list[str]:
        """IDs of the assigned rooms."""
        return [r.room_id for r in self.rooms]

    def hours_until_check_in(self, now: datetime) -> float:
        """Hours from ``now`` until check-in (negative once it has passed)."""
        return (self.check_in - now).total_seconds() / 3600

    def can_cancel(self, now: datetime) -> bool:
        """Check the cancellation policy.

        Non-refundable bookings never qualify; otherwise cancellation needs
        more than 24 hours before check-in and a booking that is not
        checked in, checked out or already cancelled.
        """
        if self.cancellation_policy == CancellationPolicy.NON_REFUNDABLE:
            return False
        if self.status in (
            BookingStatus.CHECKED_IN,
            BookingStatus.CHECKED_OUT,
            BookingStatus.CANCELLED,
        ):
            return False
        return self.hours_until_check_in(now) > 24

    def get_amendment(self, amendment_id: str) -> OTAAmendment:
        """Get an amendment by ID.

        Raises:
            NotFound: If the booking has no such amendment.
        """
        for amendment in self.ota_amendments:
            if amendment.amendment_id == amendment_id:
                return amendment
        raise NotFound(
            f"Amendment '{amendment_id}' not found on booking '{self.booking_id}'"
        )

    def find_by_channel_amendment_id(self, channel_amendment_id: str) -> OTAAmendment | None:
        """Find an amendment by its channel correlator."""
        for amendment in self.ota_amendments:
            if amendment.channel_amendment_id == channel_amendment_id:
                return amendment
        return None

    def pending_amendments(self, *, exclude: str | None = None) -> list[OTAAmendment]:
        """Amendments in ``pending``, optionally excluding one."""
        return [
            a for a in self.ota_amendments
            if a.amendment_status == AmendmentStatus.PENDING and a.amendment_id != exclude
        ]

    def open_amendments(self) -> list[OTAAmendment]:
        """Amendments still awaiting a decision (pending or conflicted)."""
        return [a for a in self.ota_amendments if a.is_open]

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def change_status(
        self,
        new_status: BookingStatus,
        *,
        now: datetime,
        source: str = "system",
        actor: str = SYSTEM_ACTOR,
        reason: str | None = None,
        automatic: bool = False,
        bypass_amendment_check: bool = False,
        bypass_cancellation_policy: bool = False,
        early_check_in: bool = False,
        force_modified: bool = False,
    ) -> StatusChange:
        """Move the booking to a new status.

        Raises:
            InvalidStatusTransition: If the matrix forbids the transition.
            PolicyDenied: If a business rule refuses it.
        """
        current = self.status
        allowed = STATUS_TRANSITIONS[current]
        if new_status not in allowed:
            raise InvalidStatusTransition(current.value, new_status.value, [s.value for s in allowed])

        if new_status == BookingStatus.CONFIRMED:
            if self.amendment_flags.has_open_amendments and not bypass_amendment_check:
                raise PolicyDenied(
                    "Cannot confirm booking with pending amendments. Resolve amendments first."
                )
        elif new_status == BookingStatus.CHECKED_IN:
            if now < self.check_in and not early_check_in:
                raise PolicyDenied(
                    f"Cannot check in before check-in date: {self.check_in.isoformat()}"
                )
        elif new_status == BookingStatus.CANCELLED:
            if source in ("guest", "ota") and not bypass_cancellation_policy and not self.can_cancel(now):
                raise PolicyDenied(
                    "Booking cannot be cancelled due to cancellation policy restrictions"
                )
        elif new_status == BookingStatus.MODIFIED:
            if not self.amendment_flags.has_open_amendments and not force_modified:
                raise PolicyDenied("Cannot set status to modified without pending amendments")

        change = StatusChange(
            from_status=current,
            to_status=new_status,
            changed_at=now,
            source=source,
            actor=actor,
            reason=reason or f"Status changed from {current.value} to {new_status.value}",
            automatic=automatic,
        )
        self.status = new_status
        self.status_history.append(change)

        if new_status == BookingStatus.MODIFIED:
            self.amendment_flags.requires_reconfirmation = True
        elif new_status == BookingStatus.CONFIRMED:
            self.amendment_flags.requires_reconfirmation = False

        return change

    # ------------------------------------------------------------------
    # Amendments
    # ------------------------------------------------------------------

    def add_amendment(self, amendment: OTAAmendment, *, now: datetime) -> OTAAmendment:
        """Append a pending amendment and mark the booking as modified."""
        self.ota_amendments.append(amendment)

        self.amendment_flags.has_open_amendments = True
        self.amendment_flags.last_amendment_at = now
        self.amendment_flags.amendment_count = len(self.ota_amendments)

        if self.status != BookingStatus.MODIFIED and BookingStatus.MODIFIED in STATUS_TRANSITIONS[self.status]:
            self.change_status(
                BookingStatus.MODIFIED,
                now=now,
                source="ota",
                actor=amendment.channel,
                reason=f"OTA amendment received: {amendment.amendment_type.value}",
                automatic=True,
            )

        return amendment

    def resolve_amendment(
        self,
        amendment_id: str,
        decision: AmendmentStatus,
        *,
        now: datetime,
        actor: str = SYSTEM_ACTOR,
        reason: str | None = None,
        auto_approved: bool = False,
        approved_changes: dict[str, Any] | None = None,
    ) -> OTAAmendment:
        """Record a decision on an open amendment and apply it.

        Approved changes are applied to the booking; an approved
        cancellation cancels the booking. Once no amendment is open, a
        modified booking returns to confirmed.

        Raises:
            NotFound: If the amendment does not exist.
            PolicyDenied: If the amendment was already decided.
        """
        amendment = self.get_amendment(amendment_id)
        if not amendment.is_open:
            raise PolicyDenied(
                f"Amendment {amendment_id} is already {amendment.amendment_status.value}"
            )
        if decision in OPEN_AMENDMENT_STATUSES:
            raise ValueError(f"'{decision.value}' is not a decision")

        if decision == AmendmentStatus.APPROVED:
            changes = approved_changes if approved_changes is not None else amendment.requested_changes
            amendment.approved_changes = dict(changes)
            self.apply_changes(changes)

        amendment.amendment_status = decision
        amendment.resolution = AmendmentResolution(
            decided_by=actor,
            decided_at=now,
            reason=reason,
            auto_approved=auto_approved,
        )

        self.refresh_amendment_flags()

        if (
            decision == AmendmentStatus.APPROVED
            and amendment.amendment_type == AmendmentType.CANCELLATION_REQUEST
        ):
            self.change_status(
                BookingStatus.CANCELLED,
                now=now,
                source="ota",
                actor=actor,
                reason=reason or "OTA cancellation approved",
                automatic=auto_approved,
                bypass_cancellation_policy=True,
            )
        elif not self.amendment_flags.has_open_amendments and self.status == BookingStatus.MODIFIED:
            self.change_status(
                BookingStatus.CONFIRMED,
                now=now,
                reason="All amendments processed, booking reconfirmed",
                automatic=True,
            )

        return amendment

    def mark_conflicted(self, amendment_id: str) -> OTAAmendment:
        """Move a pending amendment to ``conflicted``."""
        amendment = self.get_amendment(amendment_id)
        amendment.amendment_status = AmendmentStatus.CONFLICTED
        return amendment

    def refresh_amendment_flags(self) -> None:
        """Recompute the amendment flags from the amendment list."""
        self.amendment_flags.has_open_amendments = any(a.is_open for a in self.ota_amendments)
        self.amendment_flags.amendment_count = len(self.ota_amendments)

    def apply_changes(self, changes: dict[str, Any]) -> dict[str, Any]:
        """Apply requested changes to the booking.

        Returns:
            Original values of the changed fields.
        """
        original: dict[str, Any] = {}

        for key, value in changes.items():
            if key == CHECK_IN:
                original[key] = self.check_in
                self.check_in = parse_instant(value)
            elif key == CHECK_OUT:
                original[key] = self.check_out
                self.check_out = parse_instant(value)
            elif key == TOTAL_AMOUNT:
                original[key] = self.total_amount
                self.total_amount = float(value)
            elif key == ROOMS:
                original[key] = [r.model_dump(by_alias=True) for r in self.rooms]
                self.rooms = [RoomAssignment.model_validate(r) for r in value]
            elif key == GUEST_INFO:
                original[key] = self.guest.model_dump()
                updates = dict(value)
                if "vipStatus" in updates:
                    updates["vip"] = updates.pop("vipStatus")
                self.guest = self.guest.model_copy(
                    update={k: v for k, v in updates.items() if k in GuestInfo.model_fields}
                )
            elif key in GUEST_FIELDS:
                original[key] = getattr(self.guest, key)
                self.guest = self.guest.model_copy(update={key: value})
            elif key == SPECIAL_REQUESTS:
                original[key] = self.special_requests
                self.special_requests = value
            else:
                logger.warning(
                    "amendment_change_ignored",
                    booking_id=self.booking_id,
                    field=key,
                )

        return original
