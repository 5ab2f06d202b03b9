"""Tests for the amendment review queue."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from innsync.amendments.models import Booking, GuestInfo
from innsync.amendments.review_queue import (
    AMENDMENT_RECEIVED_TOPIC,
    REVIEW_REQUIRED_TOPIC,
    InMemoryNotificationBus,
    InMemoryReviewQueue,
    RedisReviewQueue,
    ReviewItem,
    ReviewKind,
    ReviewQueueAdapter,
    calculate_review_priority,
    create_review_queue,
)
from innsync.config import settings
from innsync.errors import PersistenceError

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


def make_booking(hours: float = 24 * 10, total: float = 500.0, vip: bool = False) -> Booking:
    return Booking(
        booking_id="B1",
        tenant_id="tenant-1",
        channel="booking.com",
        check_in=NOW + timedelta(hours=hours),
        check_out=NOW + timedelta(hours=hours + 72),
        total_amount=total,
        guest=GuestInfo(name="Ada", vip=vip),
    )


def make_item(priority: int, amendment_id: str = "AM1") -> ReviewItem:
    return ReviewItem(
        booking_id="B1",
        amendment_id=amendment_id,
        channel="booking.com",
        amendment_type="rate_change",
        priority=priority,
    )


@pytest.fixture
def queue():
    """Create an in-memory review queue."""
    return InMemoryReviewQueue()


@pytest.fixture
def notifications():
    """Create an in-memory notification bus."""
    return InMemoryNotificationBus()


@pytest.fixture
def adapter(queue, notifications):
    """Create a review queue adapter."""
    return ReviewQueueAdapter(queue, notifications)


# ============================================================================
# Priority Tests
# ============================================================================


class TestReviewPriority:
    """Tests for calculate_review_priority."""

    @pytest.mark.parametrize(
        ("hours", "total", "vip", "expected"),
        [
            (24 * 10, 500, False, 5),
            (100, 500, False, 6),
            (48, 500, False, 8),
            (12, 500, False, 10),
            (24 * 10, 1300, False, 7),
            (24 * 10, 500, True, 8),
            (12, 5000, True, 10),
        ],
    )
    def test_priority(self, hours, total, vip, expected):
        """Test priority from lead time, value and VIP status."""
        assert calculate_review_priority(make_booking(hours, total, vip), NOW) == expected


# ============================================================================
# In-Memory Queue Tests
# ============================================================================


class TestInMemoryReviewQueue:
    """Tests for InMemoryReviewQueue."""

    @pytest.mark.asyncio
    async def test_highest_priority_first(self, queue):
        """Test items pop by priority, FIFO within a level."""
        await queue.push(make_item(5, "AM-a"))
        await queue.push(make_item(9, "AM-b"))
        await queue.push(make_item(5, "AM-c"))

        popped = [(await queue.pop()).amendment_id for _ in range(3)]

        assert popped == ["AM-b", "AM-a", "AM-c"]
        assert await queue.pop() is None

    @pytest.mark.asyncio
    async def test_peek_does_not_remove(self, queue):
        """Test peek returns items in pop order."""
        await queue.push(make_item(3, "AM-a"))
        await queue.push(make_item(7, "AM-b"))

        peeked = await queue.peek()

        assert [i.amendment_id for i in peeked] == ["AM-b", "AM-a"]
        assert await queue.size() == 2

    @pytest.mark.asyncio
    async def test_remove(self, queue):
        """Test removing items for a decided amendment."""
        await queue.push(make_item(3, "AM-a"))
        await queue.push(make_item(7, "AM-b"))

        assert await queue.remove("B1", "AM-a") == 1
        assert await queue.remove("B1", "AM-a") == 0
        assert [i.amendment_id for i in await queue.peek()] == ["AM-b"]


# ============================================================================
# Redis Queue Tests
# ============================================================================


class TestRedisReviewQueue:
    """Tests for RedisReviewQueue against a mocked client."""

    def test_score_orders_priority_then_sequence(self):
        """Test higher priorities get lower scores and sequence breaks ties."""
        assert RedisReviewQueue.score(10, 5) < RedisReviewQueue.score(9, 1)
        assert RedisReviewQueue.score(5, 1) < RedisReviewQueue.score(5, 2)

    @pytest.mark.asyncio
    async def test_push(self):
        """Test push adds the serialized item with its score."""
        redis = AsyncMock()
        redis.incr.return_value = 4
        queue = RedisReviewQueue(redis, key="test:queue")
        item = make_item(8)

        await queue.push(item)

        redis.incr.assert_awaited_once_with("test:queue:seq")
        redis.zadd.assert_awaited_once_with(
            "test:queue",
            {item.model_dump_json(): RedisReviewQueue.score(8, 4)},
        )

    @pytest.mark.asyncio
    async def test_pop(self):
        """Test pop deserializes the lowest-score member."""
        item = make_item(8)
        redis = AsyncMock()
        redis.zpopmin.return_value = [(item.model_dump_json().encode(), 1.0)]

        popped = await RedisReviewQueue(redis).pop()

        assert popped == item

    @pytest.mark.asyncio
    async def test_pop_empty(self):
        """Test pop on an empty set returns None."""
        redis = AsyncMock()
        redis.zpopmin.return_value = []

        assert await RedisReviewQueue(redis).pop() is None

    @pytest.mark.asyncio
    async def test_remove(self):
        """Test remove drops only the decided amendment's members."""
        keep = make_item(5, "AM-keep").model_dump_json()
        drop = make_item(5, "AM-drop").model_dump_json()
        redis = AsyncMock()
        redis.zrange.return_value = [keep, drop]
        redis.zrem.return_value = 1

        removed = await RedisReviewQueue(redis, key="k").remove("B1", "AM-drop")

        assert removed == 1
        redis.zrem.assert_awaited_once_with("k", drop)

    def test_backend_selection(self, monkeypatch):
        """Test the configured backend is used."""
        monkeypatch.setattr(settings, "REVIEW_QUEUE_BACKEND", "memory")
        assert isinstance(create_review_queue(), InMemoryReviewQueue)

        monkeypatch.setattr(settings, "REVIEW_QUEUE_BACKEND", "redis")
        assert isinstance(create_review_queue(), RedisReviewQueue)


# ============================================================================
# Adapter Tests
# ============================================================================


class TestReviewQueueAdapter:
    """Tests for ReviewQueueAdapter."""

    @pytest.mark.asyncio
    async def test_enqueue_pushes_and_broadcasts(self, adapter, queue, notifications):
        """Test enqueue pushes the item and announces it with a booking summary."""
        item = make_item(7)

        await adapter.enqueue(item, booking=make_booking())

        assert await queue.size() == 1
        topic, payload = notifications.messages[0]
        assert topic == REVIEW_REQUIRED_TOPIC
        assert payload["amendment"]["amendment_id"] == "AM1"
        assert payload["booking"]["id"] == "B1"
        assert payload["booking"]["guestName"] == "Ada"

    @pytest.mark.asyncio
    async def test_priority_out_of_range(self, adapter):
        """Test priorities outside [0, 10] are refused."""
        with pytest.raises(ValueError):
            await adapter.enqueue(make_item(11))

    @pytest.mark.asyncio
    async def test_push_failure_raises(self, notifications):
        """Test a failing push surfaces as PersistenceError."""
        broken = AsyncMock(spec=InMemoryReviewQueue)
        broken.push.side_effect = ConnectionError("redis down")
        adapter = ReviewQueueAdapter(broken, notifications)

        with pytest.raises(PersistenceError):
            await adapter.enqueue(make_item(5))

        assert notifications.messages == []

    @pytest.mark.asyncio
    async def test_broadcast_failure_logged(self, queue):
        """Test a failing broadcast does not fail the enqueue."""
        notifications = AsyncMock()
        notifications.broadcast.side_effect = RuntimeError("offline")
        adapter = ReviewQueueAdapter(queue, notifications)

        await adapter.enqueue(make_item(5))

        assert await queue.size() == 1

    @pytest.mark.asyncio
    async def test_notify_other_topics(self, adapter, queue, notifications):
        """Test notify broadcasts without touching the queue."""
        await adapter.notify(AMENDMENT_RECEIVED_TOPIC, {"bookingId": "B1", "amendmentId": "AM1"})

        assert notifications.messages == [(AMENDMENT_RECEIVED_TOPIC, {"bookingId": "B1", "amendmentId": "AM1"})]
        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_notify_failure_logged(self, queue):
        """Test a failing notify does not raise."""
        notifications = AsyncMock()
        notifications.broadcast.side_effect = RuntimeError("offline")
        adapter = ReviewQueueAdapter(queue, notifications)

        await adapter.notify(AMENDMENT_RECEIVED_TOPIC, {"bookingId": "B1"}, amendment_id="AM1")

        notifications.broadcast.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_subscribers_notified(self, adapter, notifications):
        """Test notification subscribers receive broadcasts."""
        received = []
        notifications.subscribe(lambda topic, payload: received.append(topic))

        await adapter.enqueue(make_item(5))

        assert received == [REVIEW_REQUIRED_TOPIC]

    @pytest.mark.asyncio
    async def test_discard(self, adapter, queue):
        """Test discard removes a decided amendment's items."""
        await adapter.enqueue(make_item(5, "AM-x"))
        await adapter.enqueue(
            ReviewItem(
                kind=ReviewKind.CONFLICT_RESOLUTION,
                booking_id="B1",
                amendment_id="AM-x",
                channel="booking.com",
                amendment_type="dates_change",
                priority=10,
            )
        )

        await adapter.discard("B1", "AM-x")

        assert await queue.size() == 0
