"""Tests for delivery jobs and the partitioned delivery queue."""

from datetime import UTC, datetime

import pytest

from innsync.errors import PersistenceError
from innsync.webhooks.queue import DeliveryJob, PartitionedDeliveryQueue, partition_for

# ============================================================================
# Fixtures
# ============================================================================


def make_job(endpoint_id: str = "we_abc", event_id: str = "evt_1") -> DeliveryJob:
    return DeliveryJob(
        endpoint_id=endpoint_id,
        event_id=event_id,
        event_type="booking.updated",
        tenant_id="tenant-1",
        payload={"bookingId": "B1"},
        occurred_at=datetime(2026, 1, 1, tzinfo=UTC),
    )


@pytest.fixture
def queue():
    """Create a four-partition queue."""
    return PartitionedDeliveryQueue(4)


# ============================================================================
# DeliveryJob Tests
# ============================================================================


class TestDeliveryJob:
    """Tests for DeliveryJob."""

    def test_defaults(self):
        """Test new jobs start at attempt 0 with a dlv_ ID."""
        job = make_job()

        assert job.id.startswith("dlv_")
        assert job.attempt == 0
        assert job.first_attempt_at is None

    def test_next_attempt(self):
        """Test next_attempt keeps the ID and bumps the attempt."""
        job = make_job()

        following = job.next_attempt()

        assert following.id == job.id
        assert following.attempt == 1
        assert job.attempt == 0

    def test_negative_attempt_rejected(self):
        """Test attempts are non-negative."""
        with pytest.raises(ValueError):
            DeliveryJob(
                endpoint_id="we",
                event_id="e",
                event_type="booking.updated",
                tenant_id="t",
                occurred_at=datetime.now(UTC),
                attempt=-1,
            )


# ============================================================================
# Partitioning Tests
# ============================================================================


class TestPartitioning:
    """Tests for partition_for."""

    def test_stable(self):
        """Test the same endpoint always maps to the same partition."""
        assert partition_for("we_123", 8) == partition_for("we_123", 8)

    def test_in_range(self):
        """Test partitions are within range."""
        for index in range(200):
            assert 0 <= partition_for(f"we_{index}", 8) < 8

    def test_spreads_endpoints(self):
        """Test endpoints spread over several partitions."""
        used = {partition_for(f"we_{index}", 8) for index in range(100)}

        assert len(used) > 1


# ============================================================================
# Queue Tests
# ============================================================================


class TestPartitionedDeliveryQueue:
    """Tests for PartitionedDeliveryQueue."""

    def test_requires_partition(self):
        """Test at least one partition is required."""
        with pytest.raises(ValueError):
            PartitionedDeliveryQueue(0)

    @pytest.mark.asyncio
    async def test_put_routes_by_endpoint(self, queue):
        """Test jobs land in the endpoint's partition."""
        job = make_job("we_route")

        index = await queue.put(job)

        assert index == queue.partition_of("we_route")
        assert queue.depths()[index] == 1
        assert sum(queue.depths()) == 1

    @pytest.mark.asyncio
    async def test_fifo_per_endpoint(self, queue):
        """Test jobs for one endpoint come out in enqueue order."""
        jobs = [make_job("we_same", f"evt_{i}") for i in range(5)]
        for job in jobs:
            await queue.put(job)

        partition = queue.partition_of("we_same")
        received = []
        for _ in jobs:
            received.append((await queue.get(partition)).event_id)
            queue.task_done(partition)

        assert received == [f"evt_{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_full_partition_raises(self):
        """Test a full partition refuses jobs with PersistenceError."""
        queue = PartitionedDeliveryQueue(1, maxsize=1)
        await queue.put(make_job())

        with pytest.raises(PersistenceError):
            await queue.put(make_job())

    @pytest.mark.asyncio
    async def test_join(self, queue):
        """Test join returns once every job is marked done."""
        await queue.put(make_job("we_x"))
        partition = queue.partition_of("we_x")
        await queue.get(partition)
        queue.task_done(partition)

        await queue.join()

        assert queue.depths() == [0, 0, 0, 0]
