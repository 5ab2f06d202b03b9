"""Event bus matching published events to webhook endpoints.

``publish`` finds the tenant's active subscribers, applies each endpoint's
filters to the event body and enqueues one delivery job per match. Enqueue
failures are collected and reported; they never stop the remaining jobs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from innsync.webhooks.dispatcher import DeliveryEngine, get_delivery_engine
from innsync.webhooks.events import Event, EventType, create_event
from innsync.webhooks.queue import DeliveryJob
from innsync.webhooks.registry import EndpointRegistry, get_endpoint_registry

logger = structlog.get_logger(__name__)

# Type for local event listeners
EventListener = Callable[[Event], Awaitable[None] | None]


class EnqueueFailure(BaseModel):
    """An endpoint whose delivery job could not be enqueued."""

    endpoint_id: str
    error: str


class PublishResult(BaseModel):
    """Outcome of publishing one event."""

    event_id: str
    enqueued: list[str] = Field(default_factory=list, description="Delivery job IDs")
    filtered: list[str] = Field(
        default_factory=list,
        description="Endpoints skipped by their filters",
    )
    failures: list[EnqueueFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when every matching endpoint received a job."""
        return not self.failures


class EventBus:
    """Publishes booking lifecycle events to webhook endpoints.

    Local listeners receive every published event before fan-out; their
    errors are logged and never block publication.
    """

    def __init__(
        self,
        registry: EndpointRegistry | None = None,
        engine: DeliveryEngine | None = None,
    ) -> None:
        """Initialize the bus.

        Args:
            registry: Endpoint registry (uses global if not provided).
            engine: Delivery engine (uses global if not provided).
        """
        self._registry = registry or get_endpoint_registry()
        self._engine = engine or get_delivery_engine()
        self._listeners: list[EventListener] = []
        self._logger = logger.bind(component="event_bus")

    def add_listener(self, listener: EventListener) -> None:
        """Add a local event listener.

        Args:
            listener: Async or sync function called with each event.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        """Remove a local event listener."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify_listeners(self, event: Event) -> None:
        for listener in self._listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._logger.warning(
                    "listener_error",
                    event_id=event.id,
                    error=str(e),
                )

    async def publish(self, event: Event) -> PublishResult:
        """Publish an event to all matching endpoints.

        Args:
            event: Event to publish.

        Returns:
            PublishResult listing enqueued jobs, filtered endpoints and
            enqueue failures.
        """
        await self._notify_listeners(event)

        result = PublishResult(event_id=event.id)
        subscribers = await self._registry.find_subscribers(event.tenant_id, event.event_type)

        if not subscribers:
            self._logger.debug(
                "no_endpoints_subscribed",
                event_id=event.id,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
            )
            return result

        for endpoint in subscribers:
            if not endpoint.filters.matches(event.body):
                result.filtered.append(endpoint.id)
                continue

            job = DeliveryJob(
                endpoint_id=endpoint.id,
                event_id=event.id,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
                payload=event.body,
                occurred_at=event.occurred_at,
            )
            try:
                await self._engine.enqueue(job)
            except Exception as e:
                self._logger.error(
                    "delivery_enqueue_failed",
                    event_id=event.id,
                    endpoint_id=endpoint.id,
                    error=str(e),
                )
                result.failures.append(EnqueueFailure(endpoint_id=endpoint.id, error=str(e)))
                continue
            result.enqueued.append(job.id)

        self._logger.info(
            "event_published",
            event_id=event.id,
            event_type=event.event_type,
            tenant_id=event.tenant_id,
            enqueued=len(result.enqueued),
            filtered=len(result.filtered),
            failures=len(result.failures),
        )

        return result

    async def publish_event(
        self,
        event_type: EventType | str,
        tenant_id: str,
        body: dict[str, Any],
    ) -> PublishResult:
        """Convenience method to publish by event type and body."""
        return await self.publish(create_event(event_type, tenant_id, body))


# Global event bus instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global event bus.

    Returns:
        Singleton EventBus.
    """
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def set_event_bus(bus: EventBus | None) -> None:
    """Set the global event bus.

    Useful for testing.

    Args:
        bus: EventBus instance, or None to reset.
    """
    global _event_bus
    _event_bus = bus
