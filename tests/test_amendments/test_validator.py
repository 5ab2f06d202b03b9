"""Tests for amendment validation rules."""

from datetime import UTC, datetime, timedelta

import pytest

from innsync.amendments.models import (
    AmendmentType,
    Booking,
    BookingStatus,
    CancellationPolicy,
    GuestInfo,
    OTAAmendment,
    RoomAssignment,
)
from innsync.amendments.repository import InMemoryBookingRepository
from innsync.amendments.validator import AmendmentValidator, format_percent
from innsync.errors import PolicyDenied, ValidationRejected

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


def make_booking(booking_id="B1", room_id="101", days=5, **overrides) -> Booking:
    data = {
        "booking_id": booking_id,
        "tenant_id": "tenant-1",
        "channel": "booking.com",
        "check_in": NOW + timedelta(days=days),
        "check_out": NOW + timedelta(days=days + 3),
        "total_amount": 1000.0,
        "guest": GuestInfo(name="Guest"),
        "rooms": [RoomAssignment(room_id=room_id)],
    }
    data.update(overrides)
    return Booking(**data)


def make_amendment(amendment_type: AmendmentType, changes: dict, **overrides) -> OTAAmendment:
    return OTAAmendment(
        channel="booking.com",
        amendment_type=amendment_type,
        requested_changes=changes,
        requested_at=NOW,
        **overrides,
    )


@pytest.fixture
def repository():
    """Create an empty booking repository."""
    return InMemoryBookingRepository()


@pytest.fixture
def validator(repository):
    """Create a validator over the repository."""
    return AmendmentValidator(repository)


@pytest.fixture
def booking():
    """Confirmed booking in room 101, check-in in five days."""
    return make_booking()


# ============================================================================
# General Rule Tests
# ============================================================================


class TestGeneralRules:
    """Tests for rules that apply to every amendment type."""

    @pytest.mark.asyncio
    async def test_cancelled_booking(self, validator):
        """Test cancelled bookings cannot be amended."""
        booking = make_booking(status=BookingStatus.CANCELLED)

        with pytest.raises(ValidationRejected, match="cancelled booking"):
            await validator.validate(
                booking, make_amendment(AmendmentType.SPECIAL_REQUEST_CHANGE, {}), NOW
            )

    @pytest.mark.asyncio
    async def test_checked_out_booking(self, validator):
        """Test completed bookings cannot be amended."""
        booking = make_booking(status=BookingStatus.CHECKED_OUT)

        with pytest.raises(ValidationRejected, match="completed booking"):
            await validator.validate(
                booking, make_amendment(AmendmentType.SPECIAL_REQUEST_CHANGE, {}), NOW
            )

    @pytest.mark.asyncio
    async def test_window_closed(self, validator, booking):
        """Test amendments within two hours of check-in are refused."""
        late = booking.check_in - timedelta(hours=1)

        with pytest.raises(ValidationRejected, match="window closed"):
            await validator.validate(
                booking, make_amendment(AmendmentType.SPECIAL_REQUEST_CHANGE, {}), late
            )

    @pytest.mark.asyncio
    async def test_window_exactly_two_hours(self, validator, booking):
        """Test the window closes at exactly two hours."""
        edge = booking.check_in - timedelta(hours=2)

        with pytest.raises(ValidationRejected):
            await validator.validate(
                booking, make_amendment(AmendmentType.SPECIAL_REQUEST_CHANGE, {}), edge
            )

    @pytest.mark.asyncio
    async def test_unvalidated_type_passes(self, validator, booking):
        """Test types without a specific rule pass."""
        outcome = await validator.validate(
            booking,
            make_amendment(AmendmentType.GUEST_DETAILS_CHANGE, {"name": "New"}),
            NOW,
        )

        assert outcome.requires_manual_approval is False


# ============================================================================
# Dates Change Tests
# ============================================================================


class TestDatesChange:
    """Tests for dates_change validation."""

    @pytest.mark.asyncio
    async def test_requires_a_date(self, validator, booking):
        """Test a dates change must carry a date."""
        with pytest.raises(ValidationRejected, match="checkIn or checkOut"):
            await validator.validate(booking, make_amendment(AmendmentType.DATES_CHANGE, {}), NOW)

    @pytest.mark.asyncio
    async def test_past_check_in(self, validator, booking):
        """Test check-in cannot move into the past."""
        changes = {"checkIn": (NOW - timedelta(days=1)).isoformat()}

        with pytest.raises(ValidationRejected, match="past date"):
            await validator.validate(booking, make_amendment(AmendmentType.DATES_CHANGE, changes), NOW)

    @pytest.mark.asyncio
    async def test_check_out_after_check_in(self, validator, booking):
        """Test check-out must follow check-in."""
        changes = {"checkOut": booking.check_in.isoformat()}

        with pytest.raises(ValidationRejected, match="after check-in"):
            await validator.validate(booking, make_amendment(AmendmentType.DATES_CHANGE, changes), NOW)

    @pytest.mark.asyncio
    async def test_room_unavailable(self, validator, repository, booking):
        """Test the new dates must not clash with another booking of the room."""
        await repository.add(make_booking("B2", days=10))
        changes = {"checkOut": (NOW + timedelta(days=11)).isoformat()}

        with pytest.raises(ValidationRejected, match="not available") as exc_info:
            await validator.validate(booking, make_amendment(AmendmentType.DATES_CHANGE, changes), NOW)

        assert exc_info.value.details["conflicting_bookings"] == ["B2"]

    @pytest.mark.asyncio
    async def test_cancelled_bookings_do_not_block(self, validator, repository, booking):
        """Test cancelled bookings free their rooms."""
        await repository.add(make_booking("B2", days=10, status=BookingStatus.CANCELLED))
        changes = {"checkOut": (NOW + timedelta(days=11)).isoformat()}

        outcome = await validator.validate(booking, make_amendment(AmendmentType.DATES_CHANGE, changes), NOW)

        assert outcome.requires_manual_approval is False

    @pytest.mark.asyncio
    async def test_own_booking_ignored(self, validator, repository, booking):
        """Test the booking never conflicts with itself."""
        await repository.add(booking)
        changes = {"checkIn": (NOW + timedelta(days=6)).isoformat()}

        outcome = await validator.validate(booking, make_amendment(AmendmentType.DATES_CHANGE, changes), NOW)

        assert outcome.requires_manual_approval is False


# ============================================================================
# Rate Change Tests
# ============================================================================


class TestRateChange:
    """Tests for rate_change validation."""

    @pytest.mark.asyncio
    async def test_significant_change_flagged(self, validator, booking):
        """Test a 30% change requires manual approval."""
        outcome = await validator.validate(
            booking, make_amendment(AmendmentType.RATE_CHANGE, {"totalAmount": 1300}), NOW
        )

        assert outcome.requires_manual_approval is True
        assert "30%" in outcome.flag_reason

    @pytest.mark.asyncio
    async def test_small_change_passes(self, validator, booking):
        """Test changes within 20% pass without review."""
        outcome = await validator.validate(
            booking, make_amendment(AmendmentType.RATE_CHANGE, {"totalAmount": 1150}), NOW
        )

        assert outcome.requires_manual_approval is False

    @pytest.mark.asyncio
    async def test_negative_rejected(self, validator, booking):
        """Test negative totals are rejected."""
        with pytest.raises(ValidationRejected, match="negative"):
            await validator.validate(
                booking, make_amendment(AmendmentType.RATE_CHANGE, {"totalAmount": -5}), NOW
            )

    @pytest.mark.asyncio
    async def test_non_numeric_rejected(self, validator, booking):
        """Test non-numeric totals are rejected."""
        with pytest.raises(ValidationRejected):
            await validator.validate(
                booking, make_amendment(AmendmentType.RATE_CHANGE, {"totalAmount": "lots"}), NOW
            )

    @pytest.mark.asyncio
    async def test_from_zero_flagged(self, validator):
        """Test any change from a zero total is flagged."""
        booking = make_booking(total_amount=0.0)

        outcome = await validator.validate(
            booking, make_amendment(AmendmentType.RATE_CHANGE, {"totalAmount": 50}), NOW
        )

        assert outcome.requires_manual_approval is True

    @pytest.mark.asyncio
    async def test_without_total_passes(self, validator, booking):
        """Test rate changes without a total pass."""
        outcome = await validator.validate(
            booking, make_amendment(AmendmentType.RATE_CHANGE, {"ratePlan": "BAR"}), NOW
        )

        assert outcome.requires_manual_approval is False

    def test_format_percent(self):
        """Test percentage formatting."""
        assert format_percent(30.0) == "30%"
        assert format_percent(27.456) == "27.5%"


# ============================================================================
# Room Change and Cancellation Tests
# ============================================================================


class TestRoomChange:
    """Tests for room_change validation."""

    @pytest.mark.asyncio
    async def test_requires_rooms(self, validator, booking):
        """Test room changes must list rooms."""
        with pytest.raises(ValidationRejected, match="rooms"):
            await validator.validate(booking, make_amendment(AmendmentType.ROOM_CHANGE, {}), NOW)

    @pytest.mark.asyncio
    async def test_occupied_room(self, validator, repository, booking):
        """Test requested rooms must be free for the stay."""
        await repository.add(make_booking("B2", room_id="202"))

        with pytest.raises(ValidationRejected, match="not available"):
            await validator.validate(
                booking,
                make_amendment(AmendmentType.ROOM_CHANGE, {"rooms": [{"roomId": "202"}]}),
                NOW,
            )

    @pytest.mark.asyncio
    async def test_free_room(self, validator, repository, booking):
        """Test free rooms pass."""
        await repository.add(make_booking("B2", room_id="202", days=20))

        outcome = await validator.validate(
            booking,
            make_amendment(AmendmentType.ROOM_CHANGE, {"rooms": [{"roomId": "202"}]}),
            NOW,
        )

        assert outcome.requires_manual_approval is False


class TestCancellation:
    """Tests for cancellation_request validation."""

    @pytest.mark.asyncio
    async def test_policy_refuses_late_cancellation(self, validator, booking):
        """Test cancellations inside 24 hours are refused by policy."""
        late = booking.check_in - timedelta(hours=12)

        with pytest.raises(PolicyDenied):
            await validator.validate(booking, make_amendment(AmendmentType.CANCELLATION_REQUEST, {}), late)

    @pytest.mark.asyncio
    async def test_bypass_policy(self, validator, booking):
        """Test bypassPolicy skips the policy check."""
        late = booking.check_in - timedelta(hours=1)

        outcome = await validator.validate(
            booking,
            make_amendment(AmendmentType.CANCELLATION_REQUEST, {}, bypass_policy=True),
            late,
        )

        assert outcome.requires_manual_approval is False

    @pytest.mark.asyncio
    async def test_non_refundable(self, validator):
        """Test non-refundable bookings cannot be cancelled by channels."""
        booking = make_booking(cancellation_policy=CancellationPolicy.NON_REFUNDABLE)

        with pytest.raises(PolicyDenied) as exc_info:
            await validator.validate(booking, make_amendment(AmendmentType.CANCELLATION_REQUEST, {}), NOW)

        assert exc_info.value.details["cancellation_policy"] == "non_refundable"
