"""Error hierarchy for the amendment pipeline and webhook delivery.

Exception Hierarchy:
    InnsyncError (base)
    ├── ValidationRejected - Amendment or request failed validation (400)
    ├── PolicyDenied - A business policy refused the operation (400)
    │   └── InvalidStatusTransition - Booking status matrix forbids the change
    ├── NotFound - Booking, amendment or endpoint missing (404)
    ├── ConflictUnresolved - Concurrent writes exhausted the retry bound (409)
    ├── PersistenceError - Storage or queue failure (503)
    │   └── VersionConflict - Stale optimistic-concurrency save
    ├── ChannelConfirmationError - Channel confirmation call failed (502)
    └── DeliveryFailure - Webhook delivery gave up (internal only)
"""

from typing import Any


class InnsyncError(Exception):
    """Base exception for all innsync errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        http_status: Status code used when the error reaches an HTTP caller.
    """

    http_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationRejected(InnsyncError):
    """The request or amendment violates a validation rule."""

    http_status = 400


class PolicyDenied(InnsyncError):
    """A business policy refused the operation (e.g. cancellation policy)."""

    http_status = 400


class InvalidStatusTransition(PolicyDenied):
    """The booking status matrix does not allow the requested transition.

    Attributes:
        from_status: Current booking status.
        to_status: Requested booking status.
    """

    def __init__(self, from_status: str, to_status: str, allowed: list[str]) -> None:
        super().__init__(
            f"Invalid status transition from '{from_status}' to '{to_status}'. "
            f"Allowed transitions: {', '.join(allowed) or 'none'}",
            details={"from": from_status, "to": to_status, "allowed": allowed},
        )
        self.from_status = from_status
        self.to_status = to_status


class NotFound(InnsyncError):
    """A referenced entity does not exist."""

    http_status = 404


class ConflictUnresolved(InnsyncError):
    """Concurrent modification could not be reconciled within the retry bound."""

    http_status = 409


class PersistenceError(InnsyncError):
    """Storage or queue operation failed; nothing was partially written."""

    http_status = 503


class VersionConflict(PersistenceError):
    """A save was attempted against a stale aggregate version.

    Attributes:
        entity_id: Identifier of the aggregate.
        expected: Version the caller loaded.
        actual: Version currently stored.
    """

    def __init__(self, entity_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict on '{entity_id}': expected {expected}, found {actual}",
            details={"entity_id": entity_id, "expected": expected, "actual": actual},
        )
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class ChannelConfirmationError(InnsyncError):
    """A channel rejected or failed to receive an amendment confirmation."""

    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        channel: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.channel = channel


class DeliveryFailure(InnsyncError):
    """A webhook delivery attempt failed. Never surfaced to event publishers."""

    def __init__(
        self,
        message: str,
        *,
        endpoint_id: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.endpoint_id = endpoint_id
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update({"endpoint_id": self.endpoint_id, "status_code": self.status_code})
        return base
