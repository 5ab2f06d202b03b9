"""Amendment coordinator.

Orchestrates an incoming amendment through validation, conflict handling,
auto-approval or manual review, and handles manual decisions.

Writes to a booking are serialized per booking with an in-process lock and
saved with an optimistic version check, retried a bounded number of
times. Staff notifications, events, channel confirmations and review
pushes are issued only after the booking is committed and never undo the
decision. The review push runs last and is the only one that raises.
"""

from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal, TypeVar

import structlog
from pydantic import BaseModel, Field

from innsync.amendments.auto_approval import AutoApprovalEvaluator
from innsync.amendments.channels import ChannelConfirmation, ChannelConfirmer
from innsync.amendments.conflicts import AmendmentConflict, ConflictResolver, detect_conflicts
from innsync.amendments.models import (
    SYSTEM_ACTOR,
    AmendmentFlags,
    AmendmentInput,
    AmendmentStatus,
    AmendmentType,
    Booking,
    BookingStatus,
    OTAAmendment,
    StatusChange,
)
from innsync.amendments.repository import BookingRepository, InMemoryBookingRepository
from innsync.amendments.review_queue import (
    AMENDMENT_APPROVED_TOPIC,
    AMENDMENT_RECEIVED_TOPIC,
    AMENDMENT_REJECTED_TOPIC,
    CONFLICT_PRIORITY,
    GUEST_NOTIFICATION_TOPIC,
    STAFF_RECIPIENTS,
    ReviewItem,
    ReviewKind,
    ReviewQueueAdapter,
    calculate_review_priority,
)
from innsync.amendments.validator import AmendmentValidator
from innsync.config import settings
from innsync.errors import (
    ConflictUnresolved,
    InnsyncError,
    NotFound,
    PolicyDenied,
    ValidationRejected,
    VersionConflict,
)
from innsync.locks import KeyedLocks
from innsync.webhooks.bus import EventBus, get_event_bus
from innsync.webhooks.events import EventType, create_event

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Event published when an admin moves a booking to a status
STATUS_EVENTS: dict[BookingStatus, EventType] = {
    BookingStatus.CONFIRMED: EventType.BOOKING_CONFIRMED,
    BookingStatus.CHECKED_IN: EventType.BOOKING_CHECKED_IN,
    BookingStatus.CHECKED_OUT: EventType.BOOKING_CHECKED_OUT,
    BookingStatus.CANCELLED: EventType.BOOKING_CANCELLED,
    BookingStatus.MODIFIED: EventType.BOOKING_UPDATED,
    BookingStatus.PENDING: EventType.BOOKING_UPDATED,
}

# Staff notification topic for a decided amendment
DECISION_TOPICS: dict[AmendmentStatus, str] = {
    AmendmentStatus.APPROVED: AMENDMENT_APPROVED_TOPIC,
    AmendmentStatus.REJECTED: AMENDMENT_REJECTED_TOPIC,
}


class ReceiveStatus(str, Enum):
    """Outcome of receiving an amendment."""

    AUTO_APPROVED = "auto_approved"
    PENDING_REVIEW = "pending_review"
    CONFLICT_DETECTED = "conflict_detected"
    REJECTED = "rejected"
    APPROVED = "approved"  # repeat delivery of a manually approved amendment


class AmendmentResult(BaseModel):
    """Response to an incoming amendment."""

    status: ReceiveStatus
    booking_id: str
    amendment_id: str
    amendment_status: AmendmentStatus
    reason: str | None = None
    conflicts: list[AmendmentConflict] = Field(default_factory=list)
    superseded: list[str] = Field(default_factory=list)
    requires_manual_approval: bool = False
    flag_reason: str | None = None
    review_priority: int | None = None
    duplicate: bool = Field(
        default=False,
        description="The channel amendment ID was already received",
    )


class DecisionResult(BaseModel):
    """Response to a manual approve or reject."""

    booking_id: str
    amendment_id: str
    status: AmendmentStatus
    booking_status: BookingStatus
    superseded: list[str] = Field(default_factory=list)


class BulkItem(BaseModel):
    """One amendment addressed by a bulk decision."""

    booking_id: str
    amendment_id: str


class BulkError(BaseModel):
    """A bulk item that could not be decided."""

    booking_id: str
    amendment_id: str
    error: str


class BulkResult(BaseModel):
    """Outcome of a bulk decision."""

    action: Literal["approve", "reject"]
    processed: int = 0
    results: list[DecisionResult] = Field(default_factory=list)
    errors: list[BulkError] = Field(default_factory=list)


class BookingSummary(BaseModel):
    """Booking fields shown next to its amendments."""

    booking_id: str
    channel: str
    guest_name: str
    status: BookingStatus
    check_in: datetime
    check_out: datetime

    @classmethod
    def of(cls, booking: Booking) -> "BookingSummary":
        return cls(
            booking_id=booking.booking_id,
            channel=booking.channel,
            guest_name=booking.guest.name,
            status=booking.status,
            check_in=booking.check_in,
            check_out=booking.check_out,
        )


class PendingAmendments(BaseModel):
    """A booking with its undecided amendments."""

    booking: BookingSummary
    pending_amendments: list[OTAAmendment]


class BookingAmendments(BaseModel):
    """A booking's amendments, newest first."""

    booking: BookingSummary
    amendments: list[OTAAmendment]
    amendment_flags: AmendmentFlags
    total: int


class StatusChangeResult(BaseModel):
    """Outcome of a manual booking status change."""

    booking_id: str
    old_status: BookingStatus
    new_status: BookingStatus
    change: StatusChange


class AmendmentMetrics(BaseModel):
    """Amendment counts and approval rate."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)
    auto_approved: int = 0
    approval_rate: float = Field(
        default=0.0,
        description="approved / (approved + rejected), in percent",
    )


@dataclass
class _Commit:
    """What a committed mutation asks to do after the save."""

    event_type: EventType | None = None
    amendment: OTAAmendment | None = None
    review: ReviewItem | None = None
    confirmations: list[OTAAmendment] = field(default_factory=list)
    decided: list[str] = field(default_factory=list)
    event_extra: dict[str, Any] = field(default_factory=dict)
    received: bool = False
    notify_guest: bool = False


def booking_event_body(
    booking: Booking,
    amendment: OTAAmendment | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Event body describing a booking after a change."""
    body: dict[str, Any] = {
        "bookingId": booking.booking_id,
        "channel": booking.channel,
        "channelBookingId": booking.channel_booking_id,
        "status": booking.status.value,
        "checkIn": booking.check_in.isoformat(),
        "checkOut": booking.check_out.isoformat(),
        "totalAmount": booking.total_amount,
        "guest": {"name": booking.guest.name, "vip": booking.guest.vip},
        "rooms": [r.room_id for r in booking.rooms],
    }
    if amendment is not None:
        body["amendment"] = {
            "amendmentId": amendment.amendment_id,
            "type": amendment.amendment_type.value,
            "status": amendment.amendment_status.value,
            "changes": amendment.approved_changes or amendment.requested_changes,
            "autoApproved": bool(amendment.resolution and amendment.resolution.auto_approved),
        }
    body.update(extra)
    return body


def amendments_conflict(booking: Booking, first: OTAAmendment, second: OTAAmendment) -> bool:
    """Whether two amendments conflict in either direction."""
    return bool(
        detect_conflicts(booking, first, against=[second])
        or detect_conflicts(booking, second, against=[first])
    )


class AmendmentCoordinator:
    """Coordinates the amendment pipeline for bookings.

    Example:
        coordinator = AmendmentCoordinator(repository)
        result = await coordinator.receive(
            "B1",
            AmendmentInput(type="special_request_change",
                           requested_changes={"specialRequests": "late check-in"}),
        )
    """

    def __init__(
        self,
        repository: BookingRepository | None = None,
        *,
        validator: AmendmentValidator | None = None,
        resolver: ConflictResolver | None = None,
        evaluator: AutoApprovalEvaluator | None = None,
        review: ReviewQueueAdapter | None = None,
        bus: EventBus | None = None,
        confirmer: ChannelConfirmer | None = None,
        max_save_attempts: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            repository: Booking persistence.
            validator: Amendment validator (built on the repository if omitted).
            resolver: Conflict resolution strategies.
            evaluator: Auto-approval evaluator.
            review: Review queue adapter.
            bus: Event bus (uses global if not provided).
            confirmer: Channel confirmation sender.
            max_save_attempts: Versioned save attempts before giving up.
            clock: Source of the current time.
        """
        self.repository = repository or InMemoryBookingRepository()
        self.validator = validator or AmendmentValidator(self.repository)
        self.resolver = resolver or ConflictResolver.from_settings()
        self.evaluator = evaluator or AutoApprovalEvaluator()
        self.review = review or ReviewQueueAdapter()
        self._bus = bus
        self.confirmer = confirmer or ChannelConfirmer()
        self._max_save_attempts = max_save_attempts or settings.AMENDMENT_SAVE_MAX_ATTEMPTS
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks = KeyedLocks()
        self._logger = logger.bind(component="amendment_coordinator")

    @property
    def bus(self) -> EventBus:
        """Event bus used for booking events."""
        if self._bus is None:
            self._bus = get_event_bus()
        return self._bus

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _load(self, booking_id: str) -> Booking:
        booking = await self.repository.get(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found", details={"booking_id": booking_id})
        return booking

    async def _mutate(
        self,
        booking_id: str,
        mutation: Callable[[Booking], Awaitable[tuple[T, bool]]],
    ) -> tuple[Booking, T]:
        """Load, mutate and save a booking under its lock.

        ``mutation`` returns ``(result, dirty)``; a clean result skips the
        save. On a version conflict the whole load-mutate-save cycle is
        repeated, up to the configured bound.

        Raises:
            ConflictUnresolved: If every save attempt hit a version conflict.
        """
        async with self._locks.hold(booking_id):
            for attempt in range(1, self._max_save_attempts + 1):
                booking = await self._load(booking_id)
                result, dirty = await mutation(booking)
                if not dirty:
                    return booking, result
                try:
                    saved = await self.repository.save(booking)
                except VersionConflict as e:
                    self._logger.warning(
                        "booking_save_conflict",
                        booking_id=booking_id,
                        attempt=attempt,
                        max_attempts=self._max_save_attempts,
                        expected=e.expected,
                        actual=e.actual,
                    )
                    continue
                return saved, result

        raise ConflictUnresolved(
            f"Booking {booking_id} was modified concurrently; "
            f"gave up after {self._max_save_attempts} attempts",
            details={"booking_id": booking_id, "attempts": self._max_save_attempts},
        )

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    async def receive(self, booking_id: str, amendment_input: AmendmentInput) -> AmendmentResult:
        """Process an incoming amendment.

        Args:
            booking_id: Booking being amended.
            amendment_input: Amendment as sent by the channel.

        Returns:
            AmendmentResult with status auto_approved, pending_review,
            conflict_detected or rejected; a repeat of a manually approved
            amendment reports approved.

        Raises:
            NotFound: If the booking does not exist.
            ValidationRejected: If the amendment fails validation.
            PolicyDenied: If a policy refuses the amendment.
            PersistenceError: If the review queue push fails.
            ConflictUnresolved: If concurrent writes exhausted the retry bound.
        """
        now = self._now()

        self._logger.info(
            "amendment_received",
            booking_id=booking_id,
            amendment_type=amendment_input.type.value,
            channel=amendment_input.channel,
            channel_amendment_id=amendment_input.channel_amendment_id,
        )

        async def mutation(booking: Booking) -> tuple[tuple[AmendmentResult, _Commit], bool]:
            if amendment_input.channel_amendment_id:
                existing = booking.find_by_channel_amendment_id(amendment_input.channel_amendment_id)
                if existing is not None:
                    return (self._duplicate_result(booking, existing), _Commit()), False

            draft = OTAAmendment.from_input(
                amendment_input,
                default_channel=booking.channel,
                now=now,
            )
            outcome = await self.validator.validate(booking, draft, now)
            draft.requires_manual_approval = outcome.requires_manual_approval
            draft.flag_reason = outcome.flag_reason
            booking.add_amendment(draft, now=now)

            return self._admit(booking, draft, now), True

        saved, (result, commit) = await self._mutate(booking_id, mutation)

        if result.duplicate:
            self._logger.info(
                "amendment_duplicate",
                booking_id=booking_id,
                amendment_id=result.amendment_id,
                amendment_status=result.amendment_status.value,
            )
            return result

        await self._after_commit(saved, commit)

        self._logger.info(
            "amendment_processed",
            booking_id=booking_id,
            amendment_id=result.amendment_id,
            status=result.status.value,
            reason=result.reason,
        )
        return result

    def _duplicate_result(self, booking: Booking, amendment: OTAAmendment) -> AmendmentResult:
        status_map = {
            AmendmentStatus.PENDING: ReceiveStatus.PENDING_REVIEW,
            AmendmentStatus.CONFLICTED: ReceiveStatus.CONFLICT_DETECTED,
            AmendmentStatus.REJECTED: ReceiveStatus.REJECTED,
            AmendmentStatus.SUPERSEDED: ReceiveStatus.REJECTED,
        }
        if amendment.amendment_status == AmendmentStatus.APPROVED:
            status = (
                ReceiveStatus.AUTO_APPROVED
                if amendment.resolution and amendment.resolution.auto_approved
                else ReceiveStatus.APPROVED
            )
        else:
            status = status_map[amendment.amendment_status]
        return AmendmentResult(
            status=status,
            booking_id=booking.booking_id,
            amendment_id=amendment.amendment_id,
            amendment_status=amendment.amendment_status,
            reason=amendment.resolution.reason if amendment.resolution else amendment.flag_reason,
            requires_manual_approval=amendment.requires_manual_approval,
            flag_reason=amendment.flag_reason,
            duplicate=True,
        )

    def _admit(
        self,
        booking: Booking,
        amendment: OTAAmendment,
        now: datetime,
    ) -> tuple[AmendmentResult, _Commit]:
        """Conflict handling and auto-approval for a freshly appended amendment."""
        commit = _Commit(amendment=amendment, received=True)
        superseded: list[str] = []

        conflicts = detect_conflicts(booking, amendment)
        if conflicts:
            self._logger.warning(
                "amendment_conflicts_detected",
                booking_id=booking.booking_id,
                amendment_id=amendment.amendment_id,
                conflicts=[c.model_dump(mode="json") for c in conflicts],
            )
            resolution = self.resolver.resolve(booking, amendment, conflicts, now)

            if resolution is None or not resolution.resolved:
                booking.mark_conflicted(amendment.amendment_id)
                commit.review = ReviewItem(
                    kind=ReviewKind.CONFLICT_RESOLUTION,
                    booking_id=booking.booking_id,
                    amendment_id=amendment.amendment_id,
                    channel=amendment.channel,
                    amendment_type=amendment.amendment_type.value,
                    priority=CONFLICT_PRIORITY,
                    reason="Amendment conflicts require manual resolution",
                    conflicts=[c.model_dump(mode="json") for c in conflicts],
                )
                return (
                    self._result(
                        ReceiveStatus.CONFLICT_DETECTED,
                        booking,
                        amendment,
                        reason="Amendment conflicts require manual resolution",
                        conflicts=conflicts,
                        review_priority=CONFLICT_PRIORITY,
                    ),
                    commit,
                )

            superseded = list(resolution.superseded)
            commit.decided.extend(superseded)
            commit.confirmations.extend(booking.get_amendment(a) for a in superseded)

            if resolution.candidate_rejected:
                commit.decided.append(amendment.amendment_id)
                commit.confirmations.append(amendment)
                return (
                    self._result(
                        ReceiveStatus.REJECTED,
                        booking,
                        amendment,
                        reason=resolution.description,
                        conflicts=conflicts,
                    ),
                    commit,
                )

        decision = self.evaluator.evaluate(booking, amendment, now)

        if decision.can_auto_approve:
            superseded.extend(
                self._approve_in_booking(
                    booking,
                    amendment,
                    now=now,
                    actor=SYSTEM_ACTOR,
                    reason=decision.reason,
                    auto_approved=True,
                )
            )
            commit.event_type = self._event_for(amendment)
            commit.decided.append(amendment.amendment_id)
            commit.decided.extend(superseded)
            commit.confirmations.append(amendment)
            commit.confirmations.extend(booking.get_amendment(a) for a in superseded)
            return (
                self._result(
                    ReceiveStatus.AUTO_APPROVED,
                    booking,
                    amendment,
                    reason=decision.reason,
                    superseded=superseded,
                ),
                commit,
            )

        priority = calculate_review_priority(booking, now)
        commit.review = ReviewItem(
            booking_id=booking.booking_id,
            amendment_id=amendment.amendment_id,
            channel=amendment.channel,
            amendment_type=amendment.amendment_type.value,
            priority=priority,
            reason=decision.reason,
        )
        return (
            self._result(
                ReceiveStatus.PENDING_REVIEW,
                booking,
                amendment,
                reason=decision.reason,
                superseded=superseded,
                review_priority=priority,
            ),
            commit,
        )

    @staticmethod
    def _result(
        status: ReceiveStatus,
        booking: Booking,
        amendment: OTAAmendment,
        **kwargs: Any,
    ) -> AmendmentResult:
        return AmendmentResult(
            status=status,
            booking_id=booking.booking_id,
            amendment_id=amendment.amendment_id,
            amendment_status=amendment.amendment_status,
            requires_manual_approval=amendment.requires_manual_approval,
            flag_reason=amendment.flag_reason,
            **kwargs,
        )

    @staticmethod
    def _event_for(amendment: OTAAmendment) -> EventType:
        if (
            amendment.amendment_type == AmendmentType.CANCELLATION_REQUEST
            and amendment.amendment_status == AmendmentStatus.APPROVED
        ):
            return EventType.BOOKING_CANCELLED
        return EventType.BOOKING_UPDATED

    def _approve_in_booking(
        self,
        booking: Booking,
        amendment: OTAAmendment,
        *,
        now: datetime,
        actor: str,
        reason: str | None,
        auto_approved: bool = False,
        approved_changes: dict[str, Any] | None = None,
    ) -> list[str]:
        """Approve an amendment and supersede the open amendments it conflicts with.

        An approved cancellation supersedes every other open amendment.

        Returns:
            IDs of superseded amendments.
        """
        booking.resolve_amendment(
            amendment.amendment_id,
            AmendmentStatus.APPROVED,
            now=now,
            actor=actor,
            reason=reason,
            auto_approved=auto_approved,
            approved_changes=approved_changes,
        )

        cancels = amendment.amendment_type == AmendmentType.CANCELLATION_REQUEST
        superseded: list[str] = []
        for other in booking.open_amendments():
            if cancels or amendments_conflict(booking, amendment, other):
                booking.resolve_amendment(
                    other.amendment_id,
                    AmendmentStatus.SUPERSEDED,
                    now=now,
                    actor=SYSTEM_ACTOR,
                    reason=f"Superseded by approved amendment {amendment.amendment_id}",
                )
                superseded.append(other.amendment_id)

        if superseded:
            self._logger.info(
                "amendments_superseded",
                booking_id=booking.booking_id,
                approved=amendment.amendment_id,
                superseded=superseded,
            )
        return superseded

    # ------------------------------------------------------------------
    # Manual decisions
    # ------------------------------------------------------------------

    async def approve(
        self,
        booking_id: str,
        amendment_id: str,
        *,
        actor: str,
        reason: str | None = None,
        partial_changes: dict[str, Any] | None = None,
        bypass_validation: bool = False,
    ) -> DecisionResult:
        """Approve an open amendment on behalf of a reviewer.

        Args:
            booking_id: Booking ID.
            amendment_id: Amendment to approve.
            actor: Reviewer identifier.
            reason: Optional approval note.
            partial_changes: Subset of changes to apply instead of the request.
            bypass_validation: Skip re-validation against current state.

        Returns:
            DecisionResult.

        Raises:
            NotFound: If the booking or amendment does not exist.
            PolicyDenied: If the amendment was already decided.
            ValidationRejected: If re-validation fails.
        """
        now = self._now()

        async def mutation(booking: Booking) -> tuple[tuple[DecisionResult, _Commit], bool]:
            amendment = booking.get_amendment(amendment_id)
            if not amendment.is_open:
                raise PolicyDenied(
                    f"Amendment {amendment_id} is already {amendment.amendment_status.value}"
                )

            if not bypass_validation:
                target = amendment
                if partial_changes is not None:
                    target = amendment.model_copy(update={"requested_changes": partial_changes})
                await self.validator.validate(booking, target, now)

            superseded = self._approve_in_booking(
                booking,
                amendment,
                now=now,
                actor=actor,
                reason=reason,
                approved_changes=partial_changes,
            )
            commit = _Commit(
                event_type=self._event_for(amendment),
                amendment=amendment,
                decided=[amendment_id, *superseded],
                confirmations=[amendment, *(booking.get_amendment(a) for a in superseded)],
            )
            result = DecisionResult(
                booking_id=booking_id,
                amendment_id=amendment_id,
                status=amendment.amendment_status,
                booking_status=booking.status,
                superseded=superseded,
            )
            return (result, commit), True

        saved, (result, commit) = await self._mutate(booking_id, mutation)
        await self._after_commit(saved, commit)

        self._logger.info(
            "amendment_approved",
            booking_id=booking_id,
            amendment_id=amendment_id,
            actor=actor,
            superseded=result.superseded,
        )
        return result

    async def reject(
        self,
        booking_id: str,
        amendment_id: str,
        *,
        actor: str,
        reason: str,
        notify_guest: bool = True,
    ) -> DecisionResult:
        """Reject an open amendment.

        Raises:
            ValidationRejected: If the reason is empty.
            NotFound: If the booking or amendment does not exist.
            PolicyDenied: If the amendment was already decided.
        """
        if not reason or not reason.strip():
            raise ValidationRejected("Rejection reason is required")

        now = self._now()

        async def mutation(booking: Booking) -> tuple[tuple[DecisionResult, _Commit], bool]:
            amendment = booking.resolve_amendment(
                amendment_id,
                AmendmentStatus.REJECTED,
                now=now,
                actor=actor,
                reason=reason.strip(),
            )
            commit = _Commit(
                event_type=EventType.BOOKING_UPDATED,
                amendment=amendment,
                decided=[amendment_id],
                confirmations=[amendment],
                event_extra={"notifyGuest": notify_guest},
                notify_guest=notify_guest,
            )
            result = DecisionResult(
                booking_id=booking_id,
                amendment_id=amendment_id,
                status=amendment.amendment_status,
                booking_status=booking.status,
            )
            return (result, commit), True

        saved, (result, commit) = await self._mutate(booking_id, mutation)
        await self._after_commit(saved, commit)

        self._logger.info(
            "amendment_rejected",
            booking_id=booking_id,
            amendment_id=amendment_id,
            actor=actor,
        )
        return result

    async def bulk_decide(
        self,
        items: list[BulkItem],
        action: Literal["approve", "reject"],
        *,
        actor: str,
        reason: str | None = None,
    ) -> BulkResult:
        """Approve or reject many amendments, collecting per-item errors."""
        result = BulkResult(action=action)

        for item in items:
            try:
                if action == "approve":
                    decision = await self.approve(
                        item.booking_id,
                        item.amendment_id,
                        actor=actor,
                        reason=reason or "Bulk approved",
                    )
                else:
                    decision = await self.reject(
                        item.booking_id,
                        item.amendment_id,
                        actor=actor,
                        reason=reason or "Bulk rejected",
                    )
            except InnsyncError as e:
                result.errors.append(
                    BulkError(
                        booking_id=item.booking_id,
                        amendment_id=item.amendment_id,
                        error=e.message,
                    )
                )
                continue
            result.results.append(decision)

        result.processed = len(result.results)
        self._logger.info(
            "bulk_amendments_processed",
            action=action,
            processed=result.processed,
            errors=len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Booking status
    # ------------------------------------------------------------------

    async def change_booking_status(
        self,
        booking_id: str,
        new_status: BookingStatus,
        *,
        actor: str,
        reason: str | None = None,
        bypass_validation: bool = False,
    ) -> StatusChangeResult:
        """Manually move a booking to a new status.

        ``bypass_validation`` skips the business rules (pending amendments,
        early check-in, modified without amendments) but never the
        transition matrix.

        Raises:
            NotFound: If the booking does not exist.
            InvalidStatusTransition: If the matrix forbids the transition.
            PolicyDenied: If a business rule refuses it.
        """
        now = self._now()

        async def mutation(booking: Booking) -> tuple[tuple[BookingStatus, StatusChange], bool]:
            old_status = booking.status
            change = booking.change_status(
                new_status,
                now=now,
                source="admin",
                actor=actor,
                reason=reason,
                bypass_amendment_check=bypass_validation,
                early_check_in=bypass_validation,
                force_modified=bypass_validation,
            )
            return (old_status, change), True

        saved, (old_status, change) = await self._mutate(booking_id, mutation)

        await self._publish(
            STATUS_EVENTS[new_status],
            saved,
            previousStatus=old_status.value,
        )

        self._logger.info(
            "booking_status_changed",
            booking_id=booking_id,
            old_status=old_status.value,
            new_status=new_status.value,
            actor=actor,
        )
        return StatusChangeResult(
            booking_id=booking_id,
            old_status=old_status,
            new_status=saved.status,
            change=change,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_pending(
        self,
        *,
        channel: str | None = None,
        limit: int = 50,
    ) -> list[PendingAmendments]:
        """Bookings with undecided amendments, latest amendment first."""
        bookings = await self.repository.list_with_open_amendments(channel=channel, limit=limit)
        return [
            PendingAmendments(
                booking=BookingSummary.of(b),
                pending_amendments=b.open_amendments(),
            )
            for b in bookings
        ]

    async def get_booking_amendments(
        self,
        booking_id: str,
        *,
        status: AmendmentStatus | None = None,
        limit: int | None = None,
    ) -> BookingAmendments:
        """A booking's amendments, newest first, optionally filtered by status."""
        booking = await self._load(booking_id)
        amendments = [
            a for a in reversed(booking.ota_amendments)
            if status is None or a.amendment_status == status
        ]
        amendments.sort(key=lambda a: a.requested_at, reverse=True)
        if limit is not None:
            amendments = amendments[:limit]
        return BookingAmendments(
            booking=BookingSummary.of(booking),
            amendments=amendments,
            amendment_flags=booking.amendment_flags,
            total=len(amendments),
        )

    async def get_status_history(
        self,
        booking_id: str,
        *,
        limit: int | None = None,
    ) -> list[StatusChange]:
        """A booking's status history, most recent first."""
        booking = await self._load(booking_id)
        # Entries sharing a timestamp keep latest-appended first
        history = sorted(
            reversed(booking.status_history),
            key=lambda c: c.changed_at,
            reverse=True,
        )
        return history[:limit] if limit is not None else history

    async def amendment_metrics(
        self,
        *,
        channel: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> AmendmentMetrics:
        """Counts by status and type, and the manual approval rate."""
        bookings = await self.repository.list_all(channel=channel)
        amendments = [
            a
            for b in bookings
            for a in b.ota_amendments
            if (start is None or a.requested_at >= start)
            and (end is None or a.requested_at <= end)
        ]

        by_status = Counter(a.amendment_status.value for a in amendments)
        by_type = Counter(a.amendment_type.value for a in amendments)
        approved = by_status.get(AmendmentStatus.APPROVED.value, 0)
        rejected = by_status.get(AmendmentStatus.REJECTED.value, 0)
        decided = approved + rejected

        return AmendmentMetrics(
            total=len(amendments),
            by_status={s.value: by_status.get(s.value, 0) for s in AmendmentStatus},
            by_type=dict(by_type),
            auto_approved=sum(
                1 for a in amendments if a.resolution is not None and a.resolution.auto_approved
            ),
            approval_rate=round(approved / decided * 100, 2) if decided else 0.0,
        )

    # ------------------------------------------------------------------
    # After commit
    # ------------------------------------------------------------------

    async def _after_commit(self, booking: Booking, commit: _Commit) -> None:
        """Notify staff, publish events, confirm decisions and queue reviews.

        Raises:
            PersistenceError: If the review queue push fails. The booking is
                already saved, so the amendment remains listed as pending.
        """
        for amendment_id in commit.decided:
            await self.review.discard(booking.booking_id, amendment_id)

        await self._notify(booking, commit)

        if commit.event_type is not None:
            stored = (
                booking.get_amendment(commit.amendment.amendment_id)
                if commit.amendment is not None
                else None
            )
            await self._publish(commit.event_type, booking, stored, **commit.event_extra)

        for amendment in commit.confirmations:
            self.confirmer.schedule(
                ChannelConfirmation.for_decision(
                    channel=amendment.channel,
                    booking_id=booking.booking_id,
                    amendment_id=amendment.amendment_id,
                    decision=booking.get_amendment(amendment.amendment_id).amendment_status.value,
                    channel_booking_id=booking.channel_booking_id,
                    channel_amendment_id=amendment.channel_amendment_id,
                )
            )

        if commit.review is not None:
            await self.review.enqueue(commit.review, booking=booking)

    async def _notify(self, booking: Booking, commit: _Commit) -> None:
        """Staff and guest notifications for a committed mutation."""
        base = {
            "recipients": list(STAFF_RECIPIENTS),
            "bookingId": booking.booking_id,
            "channel": booking.channel,
        }

        if commit.received and commit.amendment is not None:
            await self.review.notify(
                AMENDMENT_RECEIVED_TOPIC,
                {
                    **base,
                    "amendmentId": commit.amendment.amendment_id,
                    "amendmentType": commit.amendment.amendment_type.value,
                    "guestName": booking.guest.name,
                },
                amendment_id=commit.amendment.amendment_id,
            )

        for amendment_id in commit.decided:
            status = booking.get_amendment(amendment_id).amendment_status
            topic = DECISION_TOPICS.get(status)
            if topic is None:
                continue
            await self.review.notify(
                topic,
                {**base, "amendmentId": amendment_id, "status": status.value},
                amendment_id=amendment_id,
            )

        if commit.notify_guest and commit.amendment is not None and booking.guest.email:
            stored = booking.get_amendment(commit.amendment.amendment_id)
            await self.review.notify(
                GUEST_NOTIFICATION_TOPIC,
                {
                    "bookingId": booking.booking_id,
                    "email": booking.guest.email,
                    "guestName": booking.guest.name,
                    "amendmentId": stored.amendment_id,
                    "status": stored.amendment_status.value,
                    "reason": stored.resolution.reason if stored.resolution else None,
                },
                amendment_id=stored.amendment_id,
            )

    async def _publish(
        self,
        event_type: EventType,
        booking: Booking,
        amendment: OTAAmendment | None = None,
        **extra: Any,
    ) -> None:
        event = create_event(
            event_type,
            booking.tenant_id,
            booking_event_body(booking, amendment, **extra),
        )
        try:
            result = await self.bus.publish(event)
        except Exception as e:
            self._logger.error(
                "booking_event_publish_failed",
                booking_id=booking.booking_id,
                event_type=event_type.value,
                error=str(e),
                exc_info=True,
            )
            return

        if result.failures:
            self._logger.warning(
                "booking_event_partially_enqueued",
                booking_id=booking.booking_id,
                event_id=event.id,
                failures=[f.endpoint_id for f in result.failures],
            )


# Global coordinator instance
_coordinator: AmendmentCoordinator | None = None


def get_amendment_coordinator() -> AmendmentCoordinator:
    """Get the global amendment coordinator.

    Returns:
        Singleton AmendmentCoordinator.
    """
    global _coordinator
    if _coordinator is None:
        _coordinator = AmendmentCoordinator()
    return _coordinator


def set_amendment_coordinator(coordinator: AmendmentCoordinator | None) -> None:
    """Set the global amendment coordinator.

    Useful for testing.

    Args:
        coordinator: AmendmentCoordinator instance, or None to reset.
    """
    global _coordinator
    _coordinator = coordinator
