"""OTA amendment API endpoints.

Provides:
- The channel-facing amendment webhook
- Manual approve / reject decisions, single and bulk
- Pending queue, per-booking history and metrics
- Manual booking status changes
"""

from datetime import datetime
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Header
from pydantic import BaseModel, ConfigDict, Field

from innsync.amendments.coordinator import BulkItem, get_amendment_coordinator
from innsync.amendments.models import AmendmentInput, AmendmentStatus, BookingStatus

logger = structlog.get_logger(__name__)

# Channel-facing ingress
ingress_router = APIRouter(prefix="/webhooks/ota", tags=["OTA Ingress"])

# Staff-facing amendment management
router = APIRouter(prefix="/ota/amendments", tags=["Amendments"])


# ============================================================================
# Request Models
# ============================================================================


class AmendmentWebhookRequest(BaseModel):
    """Amendment pushed by a channel."""

    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(..., alias="bookingId", min_length=1, description="Booking ID")
    amendment_data: AmendmentInput = Field(..., alias="amendmentData")


class ApproveAmendmentRequest(BaseModel):
    """Manual approval of an amendment."""

    model_config = ConfigDict(populate_by_name=True)

    reason: str | None = Field(default=None, description="Approval note")
    partial_changes: dict[str, Any] | None = Field(
        default=None,
        alias="partialChanges",
        description="Subset of the requested changes to apply",
    )
    bypass_validation: bool = Field(default=False, alias="bypassValidation")
    approved_by: str = Field(default="admin", alias="approvedBy", description="Reviewer ID")


class RejectAmendmentRequest(BaseModel):
    """Manual rejection of an amendment."""

    model_config = ConfigDict(populate_by_name=True)

    rejection_reason: str = Field(..., alias="rejectionReason", description="Why it was rejected")
    notify_guest: bool = Field(default=True, alias="notifyGuest")
    rejected_by: str = Field(default="admin", alias="rejectedBy", description="Reviewer ID")


class BulkItemRequest(BaseModel):
    """One amendment in a bulk decision."""

    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(..., alias="bookingId")
    amendment_id: str = Field(..., alias="amendmentId")


class BulkDecisionRequest(BaseModel):
    """Approve or reject many amendments at once."""

    items: list[BulkItemRequest] = Field(..., min_length=1)
    action: Literal["approve", "reject"]
    reason: str | None = None
    actor: str = "admin"


class ChangeStatusRequest(BaseModel):
    """Manual booking status change."""

    model_config = ConfigDict(populate_by_name=True)

    status: BookingStatus
    reason: str | None = None
    bypass_validation: bool = Field(default=False, alias="bypassValidation")
    changed_by: str = Field(default="admin", alias="changedBy")


# ============================================================================
# Ingress
# ============================================================================


@ingress_router.post(
    "/amendments",
    responses={
        200: {"description": "Amendment processed"},
        400: {"description": "Validation or policy failure"},
        404: {"description": "Booking not found"},
        503: {"description": "Persistence failure"},
    },
)
async def receive_amendment(
    request: AmendmentWebhookRequest,
    x_channel_id: str | None = Header(default=None),
) -> dict[str, Any]:
    """Receive an amendment from a channel.

    The channel is taken from the body, falling back to the ``X-Channel-Id``
    header and then to the booking's own channel.
    """
    amendment_input = request.amendment_data
    if amendment_input.channel is None and x_channel_id:
        amendment_input = amendment_input.model_copy(update={"channel": x_channel_id})

    result = await get_amendment_coordinator().receive(request.booking_id, amendment_input)
    return {"status": result.status.value, "data": result.model_dump(mode="json")}


# ============================================================================
# Queries
# ============================================================================


@router.get("/pending")
async def list_pending_amendments(
    channel: str | None = None,
    limit: int = 50,
) -> dict[str, Any]:
    """List bookings with undecided amendments."""
    pending = await get_amendment_coordinator().list_pending(channel=channel, limit=limit)
    return {
        "status": "success",
        "data": [p.model_dump(mode="json") for p in pending],
        "count": len(pending),
    }


@router.get("/metrics")
async def get_amendment_metrics(
    channel: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    """Amendment counts by status and type, and the approval rate."""
    metrics = await get_amendment_coordinator().amendment_metrics(
        channel=channel,
        start=start,
        end=end,
    )
    return {"status": "success", "data": metrics.model_dump(mode="json")}


@router.get("/booking/{booking_id}")
async def get_booking_amendments(
    booking_id: str,
    status: AmendmentStatus | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """A booking's amendments, newest first."""
    amendments = await get_amendment_coordinator().get_booking_amendments(
        booking_id,
        status=status,
        limit=limit,
    )
    return {"status": "success", "data": amendments.model_dump(mode="json")}


@router.get("/booking/{booking_id}/status-history")
async def get_status_history(booking_id: str, limit: int | None = None) -> dict[str, Any]:
    """A booking's status history, most recent first."""
    history = await get_amendment_coordinator().get_status_history(booking_id, limit=limit)
    return {
        "status": "success",
        "data": {
            "bookingId": booking_id,
            "statusHistory": [h.model_dump(mode="json") for h in history],
        },
    }


# ============================================================================
# Decisions
# ============================================================================


@router.post("/bulk")
async def bulk_decide(request: BulkDecisionRequest) -> dict[str, Any]:
    """Approve or reject many amendments; per-item errors are reported."""
    result = await get_amendment_coordinator().bulk_decide(
        [BulkItem(booking_id=i.booking_id, amendment_id=i.amendment_id) for i in request.items],
        request.action,
        actor=request.actor,
        reason=request.reason,
    )
    return {"status": "success", "data": result.model_dump(mode="json")}


@router.post("/booking/{booking_id}/change-status")
async def change_booking_status(booking_id: str, request: ChangeStatusRequest) -> dict[str, Any]:
    """Manually move a booking to a new status."""
    result = await get_amendment_coordinator().change_booking_status(
        booking_id,
        request.status,
        actor=request.changed_by,
        reason=request.reason,
        bypass_validation=request.bypass_validation,
    )
    return {"status": "success", "data": result.model_dump(mode="json")}


@router.post("/{booking_id}/{amendment_id}/approve")
async def approve_amendment(
    booking_id: str,
    amendment_id: str,
    request: ApproveAmendmentRequest | None = None,
) -> dict[str, Any]:
    """Approve an open amendment."""
    request = request or ApproveAmendmentRequest()
    result = await get_amendment_coordinator().approve(
        booking_id,
        amendment_id,
        actor=request.approved_by,
        reason=request.reason,
        partial_changes=request.partial_changes,
        bypass_validation=request.bypass_validation,
    )
    return {"status": "success", "data": result.model_dump(mode="json")}


@router.post("/{booking_id}/{amendment_id}/reject")
async def reject_amendment(
    booking_id: str,
    amendment_id: str,
    request: RejectAmendmentRequest,
) -> dict[str, Any]:
    """Reject an open amendment. A reason is required."""
    result = await get_amendment_coordinator().reject(
        booking_id,
        amendment_id,
        actor=request.rejected_by,
        reason=request.rejection_reason,
        notify_guest=request.notify_guest,
    )
    return {"status": "success", "data": result.model_dump(mode="json")}
