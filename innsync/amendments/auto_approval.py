"""Auto-approval rules for low-risk amendments."""

from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from innsync.amendments.models import (
    GUEST_INFO,
    TOTAL_AMOUNT,
    AmendmentType,
    Booking,
    BookingStatus,
    OTAAmendment,
)

logger = structlog.get_logger(__name__)

DATES_CHANGE_REVIEW_HOURS = 24


class AutoApprovalRule(BaseModel):
    """Auto-approval settings for one amendment type."""

    enabled: bool = Field(default=True, description="Whether the rule applies")
    max_value_change: float = Field(
        default=0.0,
        ge=0,
        description="Largest absolute change to the booking total",
    )
    excluded_fields: set[str] = Field(
        default_factory=set,
        description="Fields whose change always needs manual approval",
    )


def default_rules() -> dict[AmendmentType, AutoApprovalRule]:
    """Rules for the low-risk amendment types.

    Date, rate, room and cancellation changes have no rule and always go
    to manual review.
    """
    return {
        AmendmentType.SPECIAL_REQUEST_CHANGE: AutoApprovalRule(max_value_change=0),
        AmendmentType.GUEST_DETAILS_CHANGE: AutoApprovalRule(
            max_value_change=0,
            excluded_fields={"email", "phone"},
        ),
    }


class AutoApprovalDecision(BaseModel):
    """Whether an amendment can skip manual review.

    ``reasons`` lists every denial in evaluation order; ``reason`` joins
    them, or explains the approval.
    """

    can_auto_approve: bool
    reason: str
    reasons: list[str] = Field(default_factory=list)


def calculate_value_impact(booking: Booking, amendment: OTAAmendment) -> float:
    """Absolute change to the booking total; zero when money is not touched."""
    if TOTAL_AMOUNT not in amendment.requested_changes:
        return 0.0
    try:
        proposed = float(amendment.requested_changes[TOTAL_AMOUNT])
    except (TypeError, ValueError):
        return float("inf")
    return abs(proposed - booking.total_amount)


def touched_excluded_fields(rule: AutoApprovalRule, amendment: OTAAmendment) -> list[str]:
    """Excluded fields changed by the amendment, top-level or inside guestInfo."""
    touched = set(amendment.requested_changes) & rule.excluded_fields
    guest_info = amendment.requested_changes.get(GUEST_INFO)
    if isinstance(guest_info, dict):
        touched |= set(guest_info) & rule.excluded_fields
    return sorted(touched)


class AutoApprovalEvaluator:
    """Decides whether an amendment can be approved without a human."""

    def __init__(self, rules: dict[AmendmentType, AutoApprovalRule] | None = None) -> None:
        self._rules = default_rules() if rules is None else dict(rules)

    def set_rule(self, amendment_type: AmendmentType, rule: AutoApprovalRule) -> None:
        """Register or replace the rule for an amendment type."""
        self._rules[amendment_type] = rule

    def get_rule(self, amendment_type: AmendmentType) -> AutoApprovalRule | None:
        """Rule for an amendment type, if any."""
        return self._rules.get(amendment_type)

    def evaluate(
        self,
        booking: Booking,
        amendment: OTAAmendment,
        now: datetime,
    ) -> AutoApprovalDecision:
        """Evaluate an amendment for auto-approval.

        Changes to a rule's excluded fields mark the amendment as requiring
        manual approval (the amendment is updated in place).

        Args:
            booking: Booking being amended.
            amendment: Amendment to evaluate.
            now: Current time.

        Returns:
            AutoApprovalDecision.
        """
        rule = self._rules.get(amendment.amendment_type)

        if rule is not None and rule.enabled:
            excluded = touched_excluded_fields(rule, amendment)
            if excluded:
                amendment.requires_manual_approval = True
                amendment.flag_reason = amendment.flag_reason or (
                    f"Changes to {', '.join(excluded)} require verification"
                )

        reasons: list[str] = []

        if amendment.requires_manual_approval:
            reason = "Manual approval required"
            if amendment.flag_reason:
                reason = f"{reason}: {amendment.flag_reason}"
            reasons.append(reason)

        if rule is None or not rule.enabled:
            reasons.append("No auto-approval rule defined")
        else:
            impact = calculate_value_impact(booking, amendment)
            if impact > rule.max_value_change:
                reasons.append(
                    f"Value impact ({impact:g}) exceeds threshold ({rule.max_value_change:g})"
                )

        if booking.status == BookingStatus.CHECKED_IN:
            reasons.append("Guest is checked in")

        if (
            amendment.amendment_type == AmendmentType.DATES_CHANGE
            and booking.hours_until_check_in(now) < DATES_CHANGE_REVIEW_HOURS
        ):
            reasons.append("Date changes require manual review within 24 hours")

        if reasons:
            decision = AutoApprovalDecision(
                can_auto_approve=False,
                reason="; ".join(reasons),
                reasons=reasons,
            )
        else:
            decision = AutoApprovalDecision(
                can_auto_approve=True,
                reason="Amendment meets auto-approval criteria",
            )

        logger.debug(
            "auto_approval_evaluated",
            booking_id=booking.booking_id,
            amendment_id=amendment.amendment_id,
            can_auto_approve=decision.can_auto_approve,
            reasons=reasons,
        )
        return decision
