"""Webhook delivery engine.

Consumes delivery jobs from the partitioned queue with one worker per
partition. Each worker owns a job from its first attempt until success or
give-up, so a job being retried stays at the head of its partition and
later events for the same endpoint wait behind it. Test events sent from
the API take the same per-endpoint lock as the workers.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from innsync.config import settings
from innsync.errors import DeliveryFailure
from innsync.locks import KeyedLocks
from innsync.webhooks.events import EventType
from innsync.webhooks.queue import DeliveryJob, DeliveryQueue, PartitionedDeliveryQueue
from innsync.webhooks.registry import (
    DeliveryOutcome,
    EndpointRegistry,
    WebhookEndpoint,
    get_endpoint_registry,
)
from innsync.webhooks.retry import ErrorClass, ErrorKind, GiveUp, next_retry
from innsync.webhooks.security import create_signature_headers

logger = structlog.get_logger(__name__)

EVENT_HEADER = "X-Event"
DELIVERY_ID_HEADER = "X-Delivery-Id"
ATTEMPT_HEADER = "X-Attempt"


def serialize_body(job: DeliveryJob) -> str:
    """Serialize the wire body ``{eventType, occurredAt, data}``.

    The returned string is exactly what is signed and transmitted.
    """
    return json.dumps(
        {
            "eventType": job.event_type,
            "occurredAt": job.occurred_at.isoformat(),
            "data": job.payload,
        },
        separators=(",", ":"),
        default=str,
    )


def classify_response(status_code: int) -> ErrorClass | None:
    """Classify an HTTP status; None means success."""
    if 200 <= status_code <= 299:
        return None
    return ErrorClass.from_status(status_code)


class DeliveryEngine:
    """Delivers queued webhook jobs with signing, timeouts and retries.

    Features:
    - One worker per queue partition, preserving per-endpoint order
    - HMAC-signed requests re-signed on every attempt
    - Retry schedule from the endpoint's retry policy
    - Retry sleeps woken by endpoint deactivation or shutdown
    """

    def __init__(
        self,
        registry: EndpointRegistry | None = None,
        queue: DeliveryQueue | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        user_agent: str | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Endpoint registry (uses global if not provided).
            queue: Work queue (a new partitioned queue if not provided).
            client: HTTP client; one is created on demand when omitted.
            user_agent: User-Agent header for deliveries.
            rng: Random source for retry jitter.
        """
        self._registry = registry or get_endpoint_registry()
        self._queue = queue or PartitionedDeliveryQueue(settings.WEBHOOK_WORKER_PARTITIONS)
        self._client = client
        self._owns_client = client is None
        self._user_agent = user_agent or settings.WEBHOOK_USER_AGENT
        self._rng = rng
        self._workers: list[asyncio.Task[None]] = []
        self._shutdown = asyncio.Event()
        self._wakeups: dict[str, asyncio.Event] = {}
        self._endpoint_locks = KeyedLocks()
        self._in_flight: dict[int, str] = {}
        self._delivered = 0
        self._failed = 0
        self._dropped = 0
        self._retried = 0
        self._logger = logger.bind(component="delivery_engine")

        self._registry.add_deactivation_listener(self._on_endpoint_deactivated)

    @property
    def queue(self) -> DeliveryQueue:
        """The work queue this engine consumes."""
        return self._queue

    @property
    def is_running(self) -> bool:
        """Whether workers are running."""
        return bool(self._workers) and not self._shutdown.is_set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    async def start(self) -> None:
        """Start one worker per partition."""
        if self._workers:
            return

        self._shutdown = asyncio.Event()
        self._get_client()
        self._workers = [
            asyncio.create_task(self._worker(p), name=f"webhook-worker-{p}")
            for p in range(self._queue.partitions)
        ]
        self._logger.info("delivery_engine_started", workers=len(self._workers))

    async def stop(self) -> None:
        """Stop workers, waking and dropping any pending retries."""
        if not self._workers:
            return

        self._shutdown.set()
        for event in self._wakeups.values():
            event.set()
        self._wakeups.clear()

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

        self._logger.info(
            "delivery_engine_stopped",
            delivered=self._delivered,
            failed=self._failed,
            dropped=self._dropped,
        )

    async def enqueue(self, job: DeliveryJob) -> int:
        """Place a job on the work queue.

        Returns:
            Partition index.
        """
        return await self._queue.put(job)

    async def _worker(self, partition: int) -> None:
        while True:
            job = await self._queue.get(partition)
            self._in_flight[partition] = job.id
            try:
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(
                    "delivery_worker_error",
                    partition=partition,
                    delivery_id=job.id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self._in_flight.pop(partition, None)
                self._queue.task_done(partition)

    async def process(self, job: DeliveryJob) -> DeliveryOutcome | None:
        """Run a job through all of its attempts.

        Args:
            job: Job to deliver.

        Returns:
            Outcome of the last attempt, or None if the job was dropped
            before any attempt.
        """
        current = job
        if current.first_attempt_at is None:
            current = current.model_copy(update={"first_attempt_at": datetime.now(UTC)})

        last_outcome: DeliveryOutcome | None = None

        while True:
            endpoint = await self._registry.get(current.endpoint_id)
            if endpoint is None:
                self._drop(current, "endpoint_missing")
                return last_outcome
            drop_reason = self._drop_reason(endpoint, current)
            if drop_reason is not None:
                self._drop(current, drop_reason)
                return last_outcome

            async with self._endpoint_locks.hold(endpoint.id):
                last_outcome, error = await self.attempt(endpoint, current)
                snapshot = await self._registry.record_delivery(endpoint.id, last_outcome)

            if error is None:
                self._delivered += 1
                return last_outcome

            # The endpoint may have been deactivated while the request was in flight
            drop_reason = self._drop_reason(snapshot, current)
            if drop_reason is not None:
                self._drop(current, drop_reason)
                return last_outcome

            decision = next_retry(endpoint.retry_policy, current.attempt, error, rng=self._rng)
            if isinstance(decision, GiveUp):
                self._failed += 1
                failure = DeliveryFailure(
                    f"Delivery gave up: {decision.reason}",
                    endpoint_id=endpoint.id,
                    status_code=last_outcome.status_code,
                    details={
                        "delivery_id": current.id,
                        "attempts": current.attempt + 1,
                        "error_class": error.kind.value,
                        "last_error": last_outcome.error_message,
                    },
                )
                self._logger.error("delivery_failed_permanently", **failure.to_dict())
                return last_outcome

            self._retried += 1
            self._logger.debug(
                "scheduling_retry",
                delivery_id=current.id,
                endpoint_id=endpoint.id,
                delay_seconds=round(decision.delay, 3),
                next_attempt=current.attempt + 1,
            )

            if not await self._wait_before_retry(endpoint.id, decision.delay):
                self._dropped += 1
                self._logger.info(
                    "delivery_retry_cancelled",
                    delivery_id=current.id,
                    endpoint_id=endpoint.id,
                )
                return last_outcome

            current = current.next_attempt()

    def _drop(self, job: DeliveryJob, reason: str) -> None:
        self._dropped += 1
        self._logger.info(
            "delivery_dropped",
            delivery_id=job.id,
            endpoint_id=job.endpoint_id,
            attempt=job.attempt,
            reason=reason,
        )

    @staticmethod
    def _drop_reason(endpoint: WebhookEndpoint | None, job: DeliveryJob) -> str | None:
        if endpoint is None:
            return "endpoint_missing"
        if not endpoint.is_active:
            return "endpoint_inactive"
        if not endpoint.subscribes_to(job.event_type):
            return "not_subscribed"
        return None

    def _build_headers(
        self,
        endpoint: WebhookEndpoint,
        job: DeliveryJob,
        body: str,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": endpoint.http_config.content_type,
            "User-Agent": self._user_agent,
            **endpoint.http_config.headers,
        }
        # Signing headers are set last so custom headers cannot override them
        headers.update(create_signature_headers(body, endpoint.secret.get_secret_value()))
        headers[EVENT_HEADER] = job.event_type
        headers[DELIVERY_ID_HEADER] = job.id
        headers[ATTEMPT_HEADER] = str(job.attempt)
        return headers

    async def attempt(
        self,
        endpoint: WebhookEndpoint,
        job: DeliveryJob,
    ) -> tuple[DeliveryOutcome, ErrorClass | None]:
        """Make a single signed delivery attempt.

        Args:
            endpoint: Target endpoint.
            job: Job being delivered.

        Returns:
            Tuple of (outcome, error class or None on success).
        """
        body = serialize_body(job)
        headers = self._build_headers(endpoint, job, body)
        timeout = endpoint.http_config.timeout_seconds

        self._logger.debug(
            "attempting_delivery",
            delivery_id=job.id,
            endpoint_id=endpoint.id,
            attempt=job.attempt,
            url=str(endpoint.url),
        )

        status_code: int | None = None
        error: ErrorClass | None
        error_message: str | None = None
        started = time.perf_counter()

        try:
            response = await self._get_client().request(
                endpoint.http_config.method,
                str(endpoint.url),
                content=body.encode("utf-8"),
                headers=headers,
                timeout=timeout,
            )
            status_code = response.status_code
            error = classify_response(status_code)
            if error is not None:
                error_message = f"HTTP {status_code}"
        except httpx.TimeoutException:
            error = ErrorClass(kind=ErrorKind.TIMEOUT)
            error_message = f"Request timed out after {timeout}s"
        except httpx.NetworkError as e:
            error = ErrorClass(kind=ErrorKind.CONNECTION_ERROR)
            error_message = f"Connection error: {e}"
        except httpx.HTTPError as e:
            error = ErrorClass(kind=ErrorKind.OTHER)
            error_message = str(e) or e.__class__.__name__

        elapsed_ms = (time.perf_counter() - started) * 1000

        outcome = DeliveryOutcome(
            success=error is None,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            error_message=error_message,
            event_type=job.event_type,
            delivery_id=job.id,
            attempt=job.attempt,
        )

        if error is None:
            self._logger.info(
                "delivery_success",
                delivery_id=job.id,
                endpoint_id=endpoint.id,
                status_code=status_code,
                attempt=job.attempt,
            )
        else:
            self._logger.warning(
                "delivery_attempt_failed",
                delivery_id=job.id,
                endpoint_id=endpoint.id,
                attempt=job.attempt,
                error_class=error.kind.value,
                status_code=status_code,
                error=error_message,
            )

        return outcome, error

    async def _wait_before_retry(self, endpoint_id: str, delay: float) -> bool:
        """Sleep before a retry.

        Returns:
            False if the engine is shutting down; the caller then drops the job.
        """
        if self._shutdown.is_set():
            return False

        wakeup = self._wakeups.setdefault(endpoint_id, asyncio.Event())
        try:
            await asyncio.wait_for(wakeup.wait(), timeout=delay)
        except TimeoutError:
            pass
        finally:
            if self._wakeups.get(endpoint_id) is wakeup:
                del self._wakeups[endpoint_id]

        return not self._shutdown.is_set()

    def _on_endpoint_deactivated(self, endpoint_id: str) -> None:
        wakeup = self._wakeups.pop(endpoint_id, None)
        if wakeup is not None:
            self._logger.debug("retry_sleep_interrupted", endpoint_id=endpoint_id)
            wakeup.set()

    async def send_test_event(self, endpoint_id: str, *, tenant_id: str | None = None) -> DeliveryOutcome:
        """Send one signed test event to an endpoint, without retries.

        Waits for any delivery in flight to the same endpoint first.

        Args:
            endpoint_id: Endpoint to test.
            tenant_id: Optional tenant scope.

        Returns:
            Outcome of the attempt.

        Raises:
            NotFound: If the endpoint does not exist.
        """
        endpoint = await self._registry.require(endpoint_id, tenant_id=tenant_id)
        job = DeliveryJob(
            endpoint_id=endpoint.id,
            event_id=f"evt_test_{int(time.time())}",
            event_type=EventType.SYSTEM_WEBHOOK_TEST.value,
            tenant_id=endpoint.tenant_id,
            payload={
                "test": True,
                "message": "This is a test webhook delivery",
                "endpointId": endpoint.id,
            },
            occurred_at=datetime.now(UTC),
        )
        async with self._endpoint_locks.hold(endpoint.id):
            outcome, _ = await self.attempt(endpoint, job)
            await self._registry.record_delivery(endpoint.id, outcome)
        return outcome

    def status(self) -> dict[str, Any]:
        """Queue and worker status for monitoring."""
        depths = self._queue.depths()
        return {
            "running": self.is_running,
            "partitions": self._queue.partitions,
            "queue_depths": depths,
            "queued": sum(depths),
            "in_flight": len(self._in_flight),
            "delivered": self._delivered,
            "failed": self._failed,
            "dropped": self._dropped,
            "retried": self._retried,
        }


# Global delivery engine instance
_delivery_engine: DeliveryEngine | None = None


def get_delivery_engine() -> DeliveryEngine:
    """Get the global delivery engine.

    Returns:
        Singleton DeliveryEngine.
    """
    global _delivery_engine
    if _delivery_engine is None:
        _delivery_engine = DeliveryEngine()
    return _delivery_engine


def set_delivery_engine(engine: DeliveryEngine | None) -> None:
    """Set the global delivery engine.

    Useful for testing.

    Args:
        engine: DeliveryEngine instance, or None to reset.
    """
    global _delivery_engine
    _delivery_engine = engine
