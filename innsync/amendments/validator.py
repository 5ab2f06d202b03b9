"""Per-type validation rules for OTA amendments.

Validation never mutates the booking. A rule either raises, or returns an
outcome that may escalate the amendment to manual approval.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel

from innsync.amendments.models import (
    CHECK_IN,
    CHECK_OUT,
    ROOMS,
    TOTAL_AMOUNT,
    AmendmentType,
    Booking,
    BookingStatus,
    OTAAmendment,
    RoomAssignment,
    parse_instant,
)
from innsync.amendments.repository import BookingRepository
from innsync.errors import PolicyDenied, ValidationRejected

logger = structlog.get_logger(__name__)

AMENDMENT_WINDOW = timedelta(hours=2)
RATE_CHANGE_THRESHOLD_PERCENT = 20.0


class ValidationOutcome(BaseModel):
    """Result of a passed validation."""

    requires_manual_approval: bool = False
    flag_reason: str | None = None


TypeValidator = Callable[[Booking, OTAAmendment, datetime], Awaitable[ValidationOutcome]]


def format_percent(value: float) -> str:
    """Format a percentage with at most one decimal place, e.g. "30%" or "27.5%"."""
    return f"{round(value, 1):g}%"


class AmendmentValidator:
    """Validates amendments against booking state and availability."""

    def __init__(self, repository: BookingRepository) -> None:
        """Initialize the validator.

        Args:
            repository: Booking repository used for room availability checks.
        """
        self._repository = repository
        self._validators: dict[AmendmentType, TypeValidator] = {
            AmendmentType.DATES_CHANGE: self._validate_dates_change,
            AmendmentType.RATE_CHANGE: self._validate_rate_change,
            AmendmentType.ROOM_CHANGE: self._validate_room_change,
            AmendmentType.CANCELLATION_REQUEST: self._validate_cancellation,
        }

    async def validate(
        self,
        booking: Booking,
        amendment: OTAAmendment,
        now: datetime,
    ) -> ValidationOutcome:
        """Validate an amendment.

        Args:
            booking: Booking being amended.
            amendment: Amendment to check.
            now: Current time.

        Returns:
            ValidationOutcome, possibly requiring manual approval.

        Raises:
            ValidationRejected: If a general or type rule fails.
            PolicyDenied: If the cancellation policy refuses a cancellation.
        """
        if booking.status == BookingStatus.CANCELLED:
            raise ValidationRejected("Cannot amend cancelled booking")

        if booking.status == BookingStatus.CHECKED_OUT:
            raise ValidationRejected("Cannot amend completed booking")

        if (
            amendment.amendment_type != AmendmentType.CANCELLATION_REQUEST
            and now + AMENDMENT_WINDOW >= booking.check_in
        ):
            raise ValidationRejected("Amendment window closed - too close to check-in time")

        validator = self._validators.get(amendment.amendment_type)
        if validator is None:
            return ValidationOutcome()

        outcome = await validator(booking, amendment, now)

        if outcome.requires_manual_approval:
            logger.info(
                "amendment_flagged_for_review",
                booking_id=booking.booking_id,
                amendment_type=amendment.amendment_type.value,
                flag_reason=outcome.flag_reason,
            )

        return outcome

    async def _ensure_rooms_available(
        self,
        booking: Booking,
        room_ids: list[str],
        start: datetime,
        end: datetime,
        message: str,
    ) -> None:
        if not room_ids:
            return
        overlapping = await self._repository.find_overlapping(
            room_ids, start, end, exclude_booking_id=booking.booking_id
        )
        if overlapping:
            logger.info(
                "amendment_rooms_unavailable",
                booking_id=booking.booking_id,
                room_ids=room_ids,
                conflicting_bookings=[b.booking_id for b in overlapping],
            )
            raise ValidationRejected(
                message,
                details={"conflicting_bookings": [b.booking_id for b in overlapping]},
            )

    async def _validate_dates_change(
        self,
        booking: Booking,
        amendment: OTAAmendment,
        now: datetime,
    ) -> ValidationOutcome:
        changes = amendment.requested_changes
        if CHECK_IN not in changes and CHECK_OUT not in changes:
            raise ValidationRejected("Date change must include checkIn or checkOut")

        new_check_in = parse_instant(changes[CHECK_IN]) if CHECK_IN in changes else booking.check_in
        new_check_out = parse_instant(changes[CHECK_OUT]) if CHECK_OUT in changes else booking.check_out

        if CHECK_IN in changes and new_check_in < now:
            raise ValidationRejected("Cannot change check-in to a past date")

        if new_check_out <= new_check_in:
            raise ValidationRejected("Check-out date must be after check-in date")

        await self._ensure_rooms_available(
            booking,
            booking.room_ids(),
            new_check_in,
            new_check_out,
            "Room not available for requested dates",
        )
        return ValidationOutcome()

    async def _validate_rate_change(
        self,
        booking: Booking,
        amendment: OTAAmendment,
        now: datetime,
    ) -> ValidationOutcome:
        changes = amendment.requested_changes
        if TOTAL_AMOUNT not in changes:
            return ValidationOutcome()

        try:
            new_total = float(changes[TOTAL_AMOUNT])
        except (TypeError, ValueError) as e:
            raise ValidationRejected(
                f"Invalid totalAmount: {changes[TOTAL_AMOUNT]!r}"
            ) from e

        if new_total < 0:
            raise ValidationRejected("totalAmount cannot be negative")

        current_total = booking.total_amount
        if current_total == 0:
            if new_total != 0:
                return ValidationOutcome(
                    requires_manual_approval=True,
                    flag_reason="Significant rate change: from zero total",
                )
            return ValidationOutcome()

        change_percent = abs(new_total - current_total) / current_total * 100
        if change_percent > RATE_CHANGE_THRESHOLD_PERCENT:
            return ValidationOutcome(
                requires_manual_approval=True,
                flag_reason=f"Significant rate change: {format_percent(change_percent)}",
            )
        return ValidationOutcome()

    async def _validate_room_change(
        self,
        booking: Booking,
        amendment: OTAAmendment,
        now: datetime,
    ) -> ValidationOutcome:
        rooms = amendment.requested_changes.get(ROOMS)
        if not rooms or not isinstance(rooms, list):
            raise ValidationRejected("Room change must include a non-empty rooms list")

        try:
            room_ids = [RoomAssignment.model_validate(r).room_id for r in rooms]
        except ValueError as e:
            raise ValidationRejected(f"Invalid rooms: {e}") from e

        await self._ensure_rooms_available(
            booking,
            room_ids,
            booking.check_in,
            booking.check_out,
            "Requested rooms are not available",
        )
        return ValidationOutcome()

    async def _validate_cancellation(
        self,
        booking: Booking,
        amendment: OTAAmendment,
        now: datetime,
    ) -> ValidationOutcome:
        if not amendment.bypass_policy and not booking.can_cancel(now):
            raise PolicyDenied(
                "Booking cannot be cancelled due to policy restrictions",
                details={"cancellation_policy": booking.cancellation_policy.value},
            )
        return ValidationOutcome()
