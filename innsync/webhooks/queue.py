"""Delivery jobs and the partitioned work queue feeding the delivery engine.

Jobs are routed to one of a fixed number of ordered sub-queues by hashing
the endpoint ID, so every job for an endpoint lands in the same partition
and is consumed by a single worker in enqueue order.
"""

from __future__ import annotations

import asyncio
import uuid
import zlib
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from innsync.errors import PersistenceError

logger = structlog.get_logger(__name__)


class DeliveryJob(BaseModel):
    """One event bound for one endpoint.

    The ID is stable across retries and is sent as ``X-Delivery-Id``.
    """

    id: str = Field(
        default_factory=lambda: f"dlv_{uuid.uuid4().hex[:16]}",
        description="Delivery identifier",
    )
    endpoint_id: str = Field(..., description="Target endpoint")
    event_id: str = Field(..., description="Source event identifier")
    event_type: str = Field(..., description="Event type")
    tenant_id: str = Field(..., description="Tenant scope")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event body")
    occurred_at: datetime = Field(..., description="When the event occurred")
    attempt: int = Field(default=0, ge=0, description="0-based attempt index")
    first_attempt_at: datetime | None = None
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def next_attempt(self) -> DeliveryJob:
        """Copy of this job for the following attempt."""
        return self.model_copy(update={"attempt": self.attempt + 1})


def partition_for(endpoint_id: str, partitions: int) -> int:
    """Map an endpoint ID to a partition index.

    CRC32 is stable across processes, unlike ``hash()`` on strings.
    """
    return zlib.crc32(endpoint_id.encode("utf-8")) % partitions


class DeliveryQueue(ABC):
    """Abstract ordered work queue for delivery jobs."""

    @property
    @abstractmethod
    def partitions(self) -> int:
        """Number of ordered sub-queues."""

    @abstractmethod
    async def put(self, job: DeliveryJob) -> int:
        """Enqueue a job.

        Returns:
            The partition the job was placed in.

        Raises:
            PersistenceError: If the job could not be enqueued.
        """

    @abstractmethod
    async def get(self, partition: int) -> DeliveryJob:
        """Wait for the next job of a partition."""

    @abstractmethod
    def task_done(self, partition: int) -> None:
        """Mark the last job taken from a partition as finished."""

    @abstractmethod
    def depths(self) -> list[int]:
        """Number of waiting jobs per partition."""

    @abstractmethod
    async def join(self) -> None:
        """Wait until every enqueued job has been processed."""


class PartitionedDeliveryQueue(DeliveryQueue):
    """In-process partitioned queue built on ``asyncio.Queue``.

    Args:
        partitions: Number of ordered sub-queues.
        maxsize: Capacity per partition (0 for unbounded). A full
            partition refuses new jobs rather than blocking the publisher.
    """

    def __init__(self, partitions: int = 8, *, maxsize: int = 0) -> None:
        if partitions < 1:
            raise ValueError("partitions must be at least 1")
        self._queues: list[asyncio.Queue[DeliveryJob]] = [
            asyncio.Queue(maxsize=maxsize) for _ in range(partitions)
        ]
        self._logger = logger.bind(component="delivery_queue")

    @property
    def partitions(self) -> int:
        return len(self._queues)

    def partition_of(self, endpoint_id: str) -> int:
        """Partition index that holds jobs for an endpoint."""
        return partition_for(endpoint_id, len(self._queues))

    async def put(self, job: DeliveryJob) -> int:
        index = self.partition_of(job.endpoint_id)
        try:
            self._queues[index].put_nowait(job)
        except asyncio.QueueFull as e:
            self._logger.error(
                "delivery_queue_full",
                partition=index,
                endpoint_id=job.endpoint_id,
                delivery_id=job.id,
            )
            raise PersistenceError(
                f"Delivery queue partition {index} is full",
                details={"partition": index, "endpoint_id": job.endpoint_id},
            ) from e

        self._logger.debug(
            "delivery_enqueued",
            partition=index,
            delivery_id=job.id,
            endpoint_id=job.endpoint_id,
            event_type=job.event_type,
        )
        return index

    async def get(self, partition: int) -> DeliveryJob:
        return await self._queues[partition].get()

    def task_done(self, partition: int) -> None:
        self._queues[partition].task_done()

    def depths(self) -> list[int]:
        return [q.qsize() for q in self._queues]

    async def join(self) -> None:
        await asyncio.gather(*(q.join() for q in self._queues))
