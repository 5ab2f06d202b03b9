"""Priority queue handoff for amendments that need a human decision.

Items are pushed to a priority queue (highest priority first, FIFO within
a priority level) and announced on the notification bus. The queue
technology is hidden behind ``ReviewQueue``; an in-memory heap and a Redis
sorted set are provided.
"""

import asyncio
import heapq
import itertools
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from innsync.amendments.models import Booking
from innsync.config import settings
from innsync.errors import PersistenceError

logger = structlog.get_logger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 10
CONFLICT_PRIORITY = 10
REVIEW_REQUIRED_TOPIC = "amendment-review-required"
AMENDMENT_RECEIVED_TOPIC = "amendment-received"
AMENDMENT_APPROVED_TOPIC = "amendment-approved"
AMENDMENT_REJECTED_TOPIC = "amendment-rejected"
GUEST_NOTIFICATION_TOPIC = "guest-amendment-notification"
STAFF_RECIPIENTS = ("front-desk", "reservations")

# Redis score layout: priority band, then enqueue sequence
_SEQUENCE_SPAN = 10**13


class ReviewKind(str, Enum):
    """Why an item is waiting for review."""

    AMENDMENT_REVIEW = "amendment-review"
    CONFLICT_RESOLUTION = "amendment-conflict-resolution"


class ReviewItem(BaseModel):
    """An amendment waiting for a manual decision."""

    id: str = Field(default_factory=lambda: f"rvw_{uuid.uuid4().hex[:12]}")
    kind: ReviewKind = ReviewKind.AMENDMENT_REVIEW
    booking_id: str
    amendment_id: str
    channel: str
    amendment_type: str
    priority: int
    reason: str | None = None
    conflicts: list[dict[str, Any]] = Field(default_factory=list)
    queued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def calculate_review_priority(booking: Booking, now: datetime) -> int:
    """Review priority for a booking's amendment.

    Base 5; +5 under 24 hours to check-in, else +3 under 72, else +1 under
    168; +2 for totals above 1000; +3 for VIP guests. Capped at 10.
    """
    priority = 5
    hours = booking.hours_until_check_in(now)

    if hours < 24:
        priority += 5
    elif hours < 72:
        priority += 3
    elif hours < 168:
        priority += 1

    if booking.total_amount > 1000:
        priority += 2

    if booking.guest.vip:
        priority += 3

    return min(priority, MAX_PRIORITY)


class ReviewQueue:
    """Abstract base class for the review priority queue."""

    async def push(self, item: ReviewItem) -> None:
        """Add an item."""
        raise NotImplementedError

    async def pop(self) -> ReviewItem | None:
        """Remove and return the highest-priority, oldest item."""
        raise NotImplementedError

    async def peek(self, limit: int = 50) -> list[ReviewItem]:
        """Items in pop order, without removing them."""
        raise NotImplementedError

    async def remove(self, booking_id: str, amendment_id: str) -> int:
        """Drop items for an amendment that was decided elsewhere."""
        raise NotImplementedError

    async def size(self) -> int:
        """Number of waiting items."""
        raise NotImplementedError


class InMemoryReviewQueue(ReviewQueue):
    """Heap-backed review queue for development and testing."""

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, ReviewItem]] = []
        self._sequence = itertools.count()

    async def push(self, item: ReviewItem) -> None:
        heapq.heappush(self._heap, (-item.priority, next(self._sequence), item))

    async def pop(self) -> ReviewItem | None:
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[2]

    async def peek(self, limit: int = 50) -> list[ReviewItem]:
        return [entry[2] for entry in sorted(self._heap)[:limit]]

    async def remove(self, booking_id: str, amendment_id: str) -> int:
        kept = [
            entry for entry in self._heap
            if not (entry[2].booking_id == booking_id and entry[2].amendment_id == amendment_id)
        ]
        removed = len(self._heap) - len(kept)
        if removed:
            heapq.heapify(kept)
            self._heap = kept
        return removed

    async def size(self) -> int:
        return len(self._heap)


class RedisReviewQueue(ReviewQueue):
    """Review queue on a Redis sorted set.

    The score orders by priority (highest first) and then by an enqueue
    sequence from ``INCR``, so ``ZPOPMIN`` yields FIFO order within a level.

    Example:
        queue = RedisReviewQueue(Redis.from_url("redis://localhost:6379"))
    """

    def __init__(
        self,
        redis: Any,  # redis.asyncio.Redis
        *,
        key: str = "innsync:review-queue",
    ) -> None:
        """Initialize the queue.

        Args:
            redis: Redis client instance.
            key: Sorted set key.
        """
        self.redis = redis
        self._key = key
        self._sequence_key = f"{key}:seq"

    @classmethod
    def from_url(cls, url: str | None = None) -> "RedisReviewQueue":
        """Create a queue with a client for the given (or configured) URL."""
        return cls(Redis.from_url(url or settings.REDIS_URL))

    @staticmethod
    def score(priority: int, sequence: int) -> int:
        """Sorted set score for a priority and enqueue sequence."""
        return (MAX_PRIORITY - priority) * _SEQUENCE_SPAN + sequence % _SEQUENCE_SPAN

    async def push(self, item: ReviewItem) -> None:
        sequence = int(await self.redis.incr(self._sequence_key))
        await self.redis.zadd(
            self._key,
            {item.model_dump_json(): self.score(item.priority, sequence)},
        )

    async def pop(self) -> ReviewItem | None:
        popped = await self.redis.zpopmin(self._key, 1)
        if not popped:
            return None
        member, _score = popped[0]
        return ReviewItem.model_validate_json(member)

    async def peek(self, limit: int = 50) -> list[ReviewItem]:
        members = await self.redis.zrange(self._key, 0, limit - 1)
        return [ReviewItem.model_validate_json(m) for m in members]

    async def remove(self, booking_id: str, amendment_id: str) -> int:
        members = await self.redis.zrange(self._key, 0, -1)
        doomed = [
            m for m in members
            if (item := ReviewItem.model_validate_json(m)).booking_id == booking_id
            and item.amendment_id == amendment_id
        ]
        if not doomed:
            return 0
        removed: int = await self.redis.zrem(self._key, *doomed)
        return removed

    async def size(self) -> int:
        count: int = await self.redis.zcard(self._key)
        return count


# Notification subscriber type
NotificationHandler = Callable[[str, dict[str, Any]], Awaitable[None] | None]


class NotificationBus:
    """Abstract base class for staff-facing notifications."""

    async def broadcast(self, topic: str, payload: dict[str, Any]) -> None:
        """Broadcast a message on a topic."""
        raise NotImplementedError


class InMemoryNotificationBus(NotificationBus):
    """Keeps broadcasts in memory and forwards them to subscribers."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any]]] = []
        self._subscribers: list[NotificationHandler] = []

    def subscribe(self, handler: NotificationHandler) -> None:
        """Add a subscriber called for every broadcast."""
        self._subscribers.append(handler)

    async def broadcast(self, topic: str, payload: dict[str, Any]) -> None:
        self.messages.append((topic, payload))
        for handler in self._subscribers:
            result = handler(topic, payload)
            if asyncio.iscoroutine(result):
                await result


class ReviewQueueAdapter:
    """Pushes review items and announces them.

    A push failure raises ``PersistenceError`` so the caller never loses
    the amendment silently; a broadcast failure is only logged.
    """

    def __init__(
        self,
        queue: ReviewQueue | None = None,
        notifications: NotificationBus | None = None,
    ) -> None:
        self.queue = queue or create_review_queue()
        self.notifications = notifications or InMemoryNotificationBus()
        self._logger = logger.bind(component="review_queue")

    async def enqueue(
        self,
        item: ReviewItem,
        *,
        booking: Booking | None = None,
    ) -> ReviewItem:
        """Queue an item for review and broadcast it.

        Args:
            item: Review item.
            booking: Booking summary to include in the broadcast.

        Returns:
            The queued item.

        Raises:
            ValueError: If the priority is outside [0, 10].
            PersistenceError: If the push fails.
        """
        if not MIN_PRIORITY <= item.priority <= MAX_PRIORITY:
            raise ValueError(
                f"Review priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, "
                f"got {item.priority}"
            )

        try:
            await self.queue.push(item)
        except Exception as e:
            self._logger.error(
                "review_enqueue_failed",
                booking_id=item.booking_id,
                amendment_id=item.amendment_id,
                error=str(e),
            )
            raise PersistenceError(
                f"Failed to queue amendment {item.amendment_id} for review",
                details={"booking_id": item.booking_id, "amendment_id": item.amendment_id},
            ) from e

        self._logger.info(
            "amendment_queued_for_review",
            booking_id=item.booking_id,
            amendment_id=item.amendment_id,
            kind=item.kind.value,
            priority=item.priority,
            reason=item.reason,
        )

        payload: dict[str, Any] = {"amendment": item.model_dump(mode="json")}
        if booking is not None:
            payload["booking"] = {
                "id": booking.booking_id,
                "guestName": booking.guest.name,
                "checkIn": booking.check_in.isoformat(),
                "checkOut": booking.check_out.isoformat(),
            }

        await self.notify(REVIEW_REQUIRED_TOPIC, payload, amendment_id=item.amendment_id)
        return item

    async def notify(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        amendment_id: str | None = None,
    ) -> None:
        """Broadcast a notification; failures are logged."""
        try:
            await self.notifications.broadcast(topic, payload)
        except Exception as e:
            self._logger.warning(
                "review_broadcast_failed",
                topic=topic,
                amendment_id=amendment_id,
                error=str(e),
            )

    async def discard(self, booking_id: str, amendment_id: str) -> None:
        """Remove queued items for a decided amendment; failures are logged."""
        try:
            removed = await self.queue.remove(booking_id, amendment_id)
        except Exception as e:
            self._logger.warning(
                "review_discard_failed",
                booking_id=booking_id,
                amendment_id=amendment_id,
                error=str(e),
            )
            return
        if removed:
            self._logger.debug(
                "review_items_discarded",
                booking_id=booking_id,
                amendment_id=amendment_id,
                count=removed,
            )


def create_review_queue() -> ReviewQueue:
    """Create the review queue selected by ``REVIEW_QUEUE_BACKEND``."""
    if settings.REVIEW_QUEUE_BACKEND == "redis":
        return RedisReviewQueue.from_url()
    return InMemoryReviewQueue()
