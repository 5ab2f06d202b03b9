"""Conflict detection between amendments on the same booking.

A new amendment conflicts with a pending one when both touch the same
requested-change field, or when the pending one is a cancellation and the
new one is not. Resolution strategies are registered per conflict type.
"""

from collections.abc import Callable, Iterable
from datetime import datetime
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from innsync.amendments.models import (
    SYSTEM_ACTOR,
    AmendmentStatus,
    AmendmentType,
    Booking,
    OTAAmendment,
)
from innsync.config import settings

logger = structlog.get_logger(__name__)


class ConflictType(str, Enum):
    """Kinds of amendment conflict."""

    FIELD_CONFLICT = "field_conflict"
    CANCELLATION_CONFLICT = "cancellation_conflict"


class AmendmentConflict(BaseModel):
    """A conflict between a candidate and an existing amendment."""

    amendment_id: str = Field(..., description="The existing amendment")
    conflict_type: ConflictType
    fields: list[str] = Field(default_factory=list, description="Overlapping fields")
    description: str


class ResolutionResult(BaseModel):
    """Outcome of a resolution strategy."""

    resolved: bool
    strategy: str
    superseded: list[str] = Field(default_factory=list)
    candidate_rejected: bool = False
    description: str | None = None


ResolutionStrategy = Callable[
    [Booking, OTAAmendment, list[AmendmentConflict], datetime],
    ResolutionResult,
]


def detect_conflicts(
    booking: Booking,
    candidate: OTAAmendment,
    against: Iterable[OTAAmendment] | None = None,
) -> list[AmendmentConflict]:
    """Find conflicts between a candidate and other amendments.

    Args:
        booking: Booking holding the amendments.
        candidate: Amendment being admitted.
        against: Amendments to compare with; defaults to the booking's
            other pending amendments.

    Returns:
        Conflicts in amendment order. One existing amendment may yield
        both a field and a cancellation conflict.
    """
    others = (
        booking.pending_amendments(exclude=candidate.amendment_id)
        if against is None
        else [a for a in against if a.amendment_id != candidate.amendment_id]
    )
    candidate_fields = candidate.fields()
    conflicts: list[AmendmentConflict] = []

    for existing in others:
        overlap = sorted(candidate_fields & existing.fields())
        if overlap:
            conflicts.append(
                AmendmentConflict(
                    amendment_id=existing.amendment_id,
                    conflict_type=ConflictType.FIELD_CONFLICT,
                    fields=overlap,
                    description=f"Conflicting changes to: {', '.join(overlap)}",
                )
            )

        if (
            existing.amendment_type == AmendmentType.CANCELLATION_REQUEST
            and candidate.amendment_type != AmendmentType.CANCELLATION_REQUEST
        ):
            conflicts.append(
                AmendmentConflict(
                    amendment_id=existing.amendment_id,
                    conflict_type=ConflictType.CANCELLATION_CONFLICT,
                    description="Cannot modify booking with pending cancellation",
                )
            )

    return conflicts


def supersede_existing(
    booking: Booking,
    candidate: OTAAmendment,
    conflicts: list[AmendmentConflict],
    now: datetime,
) -> ResolutionResult:
    """Supersede every conflicting amendment in favour of the candidate."""
    superseded: list[str] = []
    for amendment_id in dict.fromkeys(c.amendment_id for c in conflicts):
        existing = booking.get_amendment(amendment_id)
        if not existing.is_open:
            continue
        booking.resolve_amendment(
            amendment_id,
            AmendmentStatus.SUPERSEDED,
            now=now,
            actor=SYSTEM_ACTOR,
            reason=f"Superseded by amendment {candidate.amendment_id}",
        )
        superseded.append(amendment_id)

    return ResolutionResult(
        resolved=True,
        strategy="supersede_existing",
        superseded=superseded,
        description=f"Superseded {len(superseded)} earlier amendment(s)",
    )


def keep_existing(
    booking: Booking,
    candidate: OTAAmendment,
    conflicts: list[AmendmentConflict],
    now: datetime,
) -> ResolutionResult:
    """Reject the candidate and keep the earlier amendments."""
    cited = ", ".join(dict.fromkeys(c.amendment_id for c in conflicts))
    booking.resolve_amendment(
        candidate.amendment_id,
        AmendmentStatus.REJECTED,
        now=now,
        actor=SYSTEM_ACTOR,
        reason=f"Conflicts with pending amendment(s): {cited}",
    )
    return ResolutionResult(
        resolved=True,
        strategy="keep_existing",
        candidate_rejected=True,
        description=f"Rejected in favour of {cited}",
    )


class ConflictResolver:
    """Registry of resolution strategies keyed by conflict type."""

    def __init__(self, strategies: dict[ConflictType, ResolutionStrategy] | None = None) -> None:
        self._strategies: dict[ConflictType, ResolutionStrategy] = dict(strategies or {})

    @classmethod
    def from_settings(cls) -> "ConflictResolver":
        """Build the resolver configured by application settings."""
        resolver = cls()
        if settings.AMENDMENT_SUPERSEDE_ON_CONFLICT:
            resolver.register(ConflictType.FIELD_CONFLICT, supersede_existing)
        return resolver

    def register(self, conflict_type: ConflictType, strategy: ResolutionStrategy) -> None:
        """Register a strategy for a conflict type."""
        self._strategies[conflict_type] = strategy

    def unregister(self, conflict_type: ConflictType) -> None:
        """Remove the strategy for a conflict type."""
        self._strategies.pop(conflict_type, None)

    def get(self, conflict_type: ConflictType) -> ResolutionStrategy | None:
        """Strategy registered for a conflict type, if any."""
        return self._strategies.get(conflict_type)

    def resolve(
        self,
        booking: Booking,
        candidate: OTAAmendment,
        conflicts: list[AmendmentConflict],
        now: datetime,
    ) -> ResolutionResult | None:
        """Try the strategy registered for the first conflict's type.

        Returns:
            The strategy's result, or None when no strategy is registered.
        """
        if not conflicts:
            return None

        strategy = self._strategies.get(conflicts[0].conflict_type)
        if strategy is None:
            return None

        result = strategy(booking, candidate, conflicts, now)
        logger.info(
            "amendment_conflict_resolution",
            booking_id=booking.booking_id,
            amendment_id=candidate.amendment_id,
            strategy=result.strategy,
            resolved=result.resolved,
            superseded=result.superseded,
        )
        return result
