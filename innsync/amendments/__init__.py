"""OTA amendment pipeline.

This module provides:
- Booking and OTAAmendment: The booking aggregate and its amendments
- AmendmentValidator: General and per-type validation rules
- Conflict detection and pluggable resolution strategies
- AutoApprovalEvaluator: Rule-based auto-approval
- ReviewQueueAdapter: Priority review queue and staff notifications
- ChannelConfirmer: Decision confirmations back to the channel
- AmendmentCoordinator: Orchestration of all of the above
"""

from innsync.amendments.auto_approval import (
    AutoApprovalDecision,
    AutoApprovalEvaluator,
    AutoApprovalRule,
)
from innsync.amendments.channels import ChannelClient, ChannelConfirmation, ChannelConfirmer
from innsync.amendments.conflicts import (
    AmendmentConflict,
    ConflictResolver,
    ConflictType,
    detect_conflicts,
)
from innsync.amendments.coordinator import (
    AmendmentCoordinator,
    AmendmentResult,
    ReceiveStatus,
    get_amendment_coordinator,
)
from innsync.amendments.models import (
    AmendmentInput,
    AmendmentStatus,
    AmendmentType,
    Booking,
    BookingStatus,
    GuestInfo,
    OTAAmendment,
)
from innsync.amendments.repository import BookingRepository, InMemoryBookingRepository
from innsync.amendments.review_queue import ReviewItem, ReviewQueueAdapter
from innsync.amendments.validator import AmendmentValidator

__all__ = [
    # Models
    "AmendmentInput",
    "AmendmentStatus",
    "AmendmentType",
    "Booking",
    "BookingStatus",
    "GuestInfo",
    "OTAAmendment",
    # Persistence
    "BookingRepository",
    "InMemoryBookingRepository",
    # Pipeline
    "AmendmentConflict",
    "AmendmentValidator",
    "AutoApprovalDecision",
    "AutoApprovalEvaluator",
    "AutoApprovalRule",
    "ConflictResolver",
    "ConflictType",
    "detect_conflicts",
    "ReviewItem",
    "ReviewQueueAdapter",
    # Channels
    "ChannelClient",
    "ChannelConfirmation",
    "ChannelConfirmer",
    # Coordinator
    "AmendmentCoordinator",
    "AmendmentResult",
    "ReceiveStatus",
    "get_amendment_coordinator",
]
