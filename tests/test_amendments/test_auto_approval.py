"""Tests for auto-approval rules."""

from datetime import UTC, datetime, timedelta

import pytest

from innsync.amendments.auto_approval import (
    AutoApprovalEvaluator,
    AutoApprovalRule,
    calculate_value_impact,
    default_rules,
)
from innsync.amendments.models import (
    AmendmentType,
    Booking,
    BookingStatus,
    GuestInfo,
    OTAAmendment,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def evaluator():
    """Evaluator with the default rules."""
    return AutoApprovalEvaluator()


@pytest.fixture
def booking():
    """Confirmed booking with check-in in five days."""
    return Booking(
        booking_id="B1",
        tenant_id="tenant-1",
        channel="booking.com",
        check_in=NOW + timedelta(days=5),
        check_out=NOW + timedelta(days=8),
        total_amount=1000.0,
        guest=GuestInfo(name="Guest"),
    )


def make_amendment(amendment_type: AmendmentType, changes: dict, **overrides) -> OTAAmendment:
    return OTAAmendment(
        channel="booking.com",
        amendment_type=amendment_type,
        requested_changes=changes,
        requested_at=NOW,
        **overrides,
    )


# ============================================================================
# Rule Tests
# ============================================================================


class TestDefaultRules:
    """Tests for the default rule set."""

    def test_low_risk_types_only(self):
        """Test only special requests and guest details have rules."""
        assert set(default_rules()) == {
            AmendmentType.SPECIAL_REQUEST_CHANGE,
            AmendmentType.GUEST_DETAILS_CHANGE,
        }

    def test_guest_details_exclusions(self):
        """Test email and phone changes are excluded."""
        rule = default_rules()[AmendmentType.GUEST_DETAILS_CHANGE]

        assert rule.excluded_fields == {"email", "phone"}
        assert rule.max_value_change == 0

    def test_value_impact(self, booking):
        """Test value impact is the absolute total change."""
        assert calculate_value_impact(booking, make_amendment(AmendmentType.RATE_CHANGE, {"totalAmount": 900})) == 100
        assert calculate_value_impact(booking, make_amendment(AmendmentType.RATE_CHANGE, {})) == 0


# ============================================================================
# Evaluation Tests
# ============================================================================


class TestEvaluate:
    """Tests for AutoApprovalEvaluator.evaluate."""

    def test_special_request_approved(self, evaluator, booking):
        """Test a plain special request is auto-approved."""
        decision = evaluator.evaluate(
            booking,
            make_amendment(AmendmentType.SPECIAL_REQUEST_CHANGE, {"specialRequests": "late check-in"}),
            NOW,
        )

        assert decision.can_auto_approve is True
        assert decision.reasons == []

    def test_guest_name_approved(self, evaluator, booking):
        """Test a guest name change is auto-approved."""
        decision = evaluator.evaluate(
            booking,
            make_amendment(AmendmentType.GUEST_DETAILS_CHANGE, {"guestInfo": {"name": "Ada King"}}),
            NOW,
        )

        assert decision.can_auto_approve is True

    def test_excluded_field_flags_amendment(self, evaluator, booking):
        """Test excluded fields force manual approval and flag the amendment."""
        amendment = make_amendment(
            AmendmentType.GUEST_DETAILS_CHANGE,
            {"guestInfo": {"email": "new@example.com"}},
        )

        decision = evaluator.evaluate(booking, amendment, NOW)

        assert decision.can_auto_approve is False
        assert amendment.requires_manual_approval is True
        assert amendment.flag_reason == "Changes to email require verification"
        assert "email" in decision.reason

    def test_flagged_amendment_denied(self, evaluator, booking):
        """Test amendments flagged by validation are never auto-approved."""
        amendment = make_amendment(
            AmendmentType.SPECIAL_REQUEST_CHANGE,
            {"specialRequests": "x"},
            requires_manual_approval=True,
            flag_reason="Significant rate change: 30%",
        )

        decision = evaluator.evaluate(booking, amendment, NOW)

        assert decision.can_auto_approve is False
        assert decision.reasons[0] == "Manual approval required: Significant rate change: 30%"

    def test_no_rule(self, evaluator, booking):
        """Test types without a rule need review."""
        decision = evaluator.evaluate(
            booking, make_amendment(AmendmentType.ROOM_CHANGE, {"rooms": [{"roomId": "1"}]}), NOW
        )

        assert decision.can_auto_approve is False
        assert decision.reason == "No auto-approval rule defined"

    def test_disabled_rule(self, booking):
        """Test disabled rules behave like missing ones."""
        evaluator = AutoApprovalEvaluator(
            {AmendmentType.SPECIAL_REQUEST_CHANGE: AutoApprovalRule(enabled=False)}
        )

        decision = evaluator.evaluate(
            booking, make_amendment(AmendmentType.SPECIAL_REQUEST_CHANGE, {"specialRequests": "x"}), NOW
        )

        assert decision.reason == "No auto-approval rule defined"

    def test_value_threshold(self, evaluator, booking):
        """Test money changes above the threshold need review."""
        decision = evaluator.evaluate(
            booking,
            make_amendment(
                AmendmentType.SPECIAL_REQUEST_CHANGE,
                {"specialRequests": "x", "totalAmount": 1050},
            ),
            NOW,
        )

        assert decision.can_auto_approve is False
        assert decision.reason == "Value impact (50) exceeds threshold (0)"

    def test_custom_rule_threshold(self, booking):
        """Test a custom rule can allow small money changes."""
        evaluator = AutoApprovalEvaluator()
        evaluator.set_rule(AmendmentType.RATE_CHANGE, AutoApprovalRule(max_value_change=100))

        decision = evaluator.evaluate(
            booking, make_amendment(AmendmentType.RATE_CHANGE, {"totalAmount": 1050}), NOW
        )

        assert decision.can_auto_approve is True

    def test_checked_in_guest(self, evaluator, booking):
        """Test checked-in bookings need review."""
        booking.status = BookingStatus.CHECKED_IN

        decision = evaluator.evaluate(
            booking, make_amendment(AmendmentType.SPECIAL_REQUEST_CHANGE, {"specialRequests": "x"}), NOW
        )

        assert decision.reasons == ["Guest is checked in"]

    def test_late_dates_change(self, evaluator, booking):
        """Test date changes within 24 hours of check-in list every reason."""
        now = booking.check_in - timedelta(hours=12)
        amendment = make_amendment(
            AmendmentType.DATES_CHANGE,
            {"checkOut": (booking.check_out + timedelta(days=2)).isoformat()},
        )

        decision = evaluator.evaluate(booking, amendment, now)

        assert decision.can_auto_approve is False
        assert decision.reasons == [
            "No auto-approval rule defined",
            "Date changes require manual review within 24 hours",
        ]
        assert "24 hours" in decision.reason
