"""Outbound webhook delivery for booking lifecycle events.

This module provides:
- EventType: Closed vocabulary of published event types
- EndpointRegistry: Tenant webhook endpoints, statistics and health
- DeliveryEngine: Partitioned, signed delivery with retries
- EventBus: Subscription and filter matching for published events
- HMAC signature generation and verification
"""

from innsync.webhooks.bus import EventBus, PublishResult, get_event_bus
from innsync.webhooks.dispatcher import DeliveryEngine, get_delivery_engine
from innsync.webhooks.events import Event, EventType, create_event
from innsync.webhooks.filters import EndpointFilter
from innsync.webhooks.queue import DeliveryJob, PartitionedDeliveryQueue
from innsync.webhooks.registry import (
    DeliveryOutcome,
    EndpointRegistry,
    HealthStatus,
    HttpConfig,
    WebhookEndpoint,
    get_endpoint_registry,
)
from innsync.webhooks.retry import RetryPolicy, next_retry
from innsync.webhooks.security import generate_signature, verify_signature

__all__ = [
    # Events
    "Event",
    "EventType",
    "create_event",
    # Registry
    "DeliveryOutcome",
    "EndpointFilter",
    "EndpointRegistry",
    "HealthStatus",
    "HttpConfig",
    "WebhookEndpoint",
    "get_endpoint_registry",
    # Delivery
    "DeliveryEngine",
    "DeliveryJob",
    "PartitionedDeliveryQueue",
    "RetryPolicy",
    "get_delivery_engine",
    "next_retry",
    # Bus
    "EventBus",
    "PublishResult",
    "get_event_bus",
    # Security
    "generate_signature",
    "verify_signature",
]
