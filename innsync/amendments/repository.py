"""Booking persistence interface and in-memory implementation.

Saves are versioned: a save succeeds only if the stored version still
matches the version the caller loaded, and bumps it by one.
"""

from datetime import datetime

import structlog

from innsync.amendments.models import OCCUPYING_STATUSES, Booking
from innsync.errors import VersionConflict

logger = structlog.get_logger(__name__)


class BookingRepository:
    """Abstract base class for booking persistence."""

    async def get(self, booking_id: str) -> Booking | None:
        """Load a booking (a private copy the caller may mutate)."""
        raise NotImplementedError

    async def add(self, booking: Booking) -> Booking:
        """Store a new booking."""
        raise NotImplementedError

    async def save(self, booking: Booking) -> Booking:
        """Save a booking loaded at ``booking.version``.

        Returns:
            The stored booking with its new version.

        Raises:
            VersionConflict: If the booking changed since it was loaded.
        """
        raise NotImplementedError

    async def find_overlapping(
        self,
        room_ids: list[str],
        start: datetime,
        end: datetime,
        exclude_booking_id: str | None = None,
    ) -> list[Booking]:
        """Bookings occupying any of the rooms during [start, end)."""
        raise NotImplementedError

    async def list_with_open_amendments(
        self,
        *,
        channel: str | None = None,
        limit: int = 50,
    ) -> list[Booking]:
        """Bookings with undecided amendments, latest amendment first."""
        raise NotImplementedError

    async def list_all(self, *, channel: str | None = None) -> list[Booking]:
        """All bookings, optionally for one channel."""
        raise NotImplementedError


class InMemoryBookingRepository(BookingRepository):
    """In-memory persistence for development and testing."""

    def __init__(self) -> None:
        """Initialize in-memory storage."""
        self._bookings: dict[str, Booking] = {}

    async def get(self, booking_id: str) -> Booking | None:
        booking = self._bookings.get(booking_id)
        return booking.model_copy(deep=True) if booking else None

    async def add(self, booking: Booking) -> Booking:
        stored = booking.model_copy(deep=True)
        self._bookings[stored.booking_id] = stored
        return stored.model_copy(deep=True)

    async def save(self, booking: Booking) -> Booking:
        current = self._bookings.get(booking.booking_id)
        actual = current.version if current else 0
        if current is not None and current.version != booking.version:
            logger.debug(
                "booking_version_conflict",
                booking_id=booking.booking_id,
                expected=booking.version,
                actual=actual,
            )
            raise VersionConflict(booking.booking_id, booking.version, actual)

        stored = booking.model_copy(deep=True, update={"version": actual + 1})
        self._bookings[stored.booking_id] = stored
        return stored.model_copy(deep=True)

    async def find_overlapping(
        self,
        room_ids: list[str],
        start: datetime,
        end: datetime,
        exclude_booking_id: str | None = None,
    ) -> list[Booking]:
        wanted = set(room_ids)
        return [
            b.model_copy(deep=True)
            for b in self._bookings.values()
            if b.booking_id != exclude_booking_id
            and b.status in OCCUPYING_STATUSES
            and wanted.intersection(b.room_ids())
            and b.check_in < end
            and b.check_out > start
        ]

    async def list_with_open_amendments(
        self,
        *,
        channel: str | None = None,
        limit: int = 50,
    ) -> list[Booking]:
        matches = [
            b for b in self._bookings.values()
            if b.amendment_flags.has_open_amendments
            and (channel is None or b.channel == channel)
        ]
        matches.sort(
            key=lambda b: b.amendment_flags.last_amendment_at or b.check_in,
            reverse=True,
        )
        return [b.model_copy(deep=True) for b in matches[:limit]]

    async def list_all(self, *, channel: str | None = None) -> list[Booking]:
        return [
            b.model_copy(deep=True)
            for b in self._bookings.values()
            if channel is None or b.channel == channel
        ]
