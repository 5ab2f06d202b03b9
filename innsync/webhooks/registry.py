"""Webhook endpoint registration, statistics and health.

Provides storage and management of tenant webhook endpoints, their
subscriptions and filters, and the delivery statistics that drive the
endpoint health classification.
"""

from __future__ import annotations

import asyncio
import secrets
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, HttpUrl, SecretStr, field_validator

from innsync.errors import NotFound, ValidationRejected
from innsync.webhooks.events import normalize_event_type
from innsync.webhooks.filters import EndpointFilter
from innsync.webhooks.retry import RetryPolicy

logger = structlog.get_logger(__name__)

UNHEALTHY_CONSECUTIVE_FAILURES = 5
DEGRADED_CONSECUTIVE_FAILURES = 2
UNHEALTHY_FAILURE_RATE = 0.5
DEGRADED_FAILURE_RATE = 0.2

# Recent attempts kept per endpoint for the deliveries view
DELIVERY_HISTORY_SIZE = 100

DeactivationListener = Callable[[str], Awaitable[None] | None]


def generate_secret() -> str:
    """Generate a new endpoint signing secret."""
    return f"whsec_{secrets.token_hex(24)}"


class HealthStatus(str, Enum):
    """Derived endpoint health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HttpConfig(BaseModel):
    """HTTP request settings for an endpoint."""

    method: Literal["POST", "PUT"] = Field(default="POST", description="HTTP method")
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Custom headers to include in requests",
    )
    timeout_seconds: float = Field(
        default=30.0,
        description="Request timeout in seconds",
        ge=1,
        le=300,
    )
    content_type: str = Field(
        default="application/json",
        description="Content-Type of the request body",
    )


class DeliveryOutcome(BaseModel):
    """Result of one delivery attempt, as recorded against an endpoint."""

    success: bool
    status_code: int | None = None
    response_time_ms: float = 0.0
    error_message: str | None = None
    event_type: str | None = None
    delivery_id: str | None = None
    attempt: int = 0
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DeliveryStats(BaseModel):
    """Delivery counters. Invariant: succeeded + failed == total."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    avg_response_time_ms: float = 0.0
    last_delivery: DeliveryOutcome | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Share of failed deliveries (0.0 when nothing was sent)."""
        if self.total == 0:
            return 0.0
        return self.failed / self.total


class EndpointHealth(BaseModel):
    """Health derived from consecutive failures and failure rate."""

    status: HealthStatus = HealthStatus.HEALTHY
    consecutive_failures: int = 0
    uptime: float = 100.0


def derive_health_status(consecutive_failures: int, failure_rate: float) -> HealthStatus:
    """Classify endpoint health.

    Args:
        consecutive_failures: Failures since the last success.
        failure_rate: failed / total.

    Returns:
        Health status.
    """
    if (
        consecutive_failures >= UNHEALTHY_CONSECUTIVE_FAILURES
        or failure_rate > UNHEALTHY_FAILURE_RATE
    ):
        return HealthStatus.UNHEALTHY
    if (
        consecutive_failures >= DEGRADED_CONSECUTIVE_FAILURES
        or failure_rate > DEGRADED_FAILURE_RATE
    ):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def compute_uptime(failure_rate: float) -> float:
    """Uptime percentage: max(0, 100 - failure_rate * 100)."""
    return max(0.0, 100.0 - failure_rate * 100.0)


class WebhookEndpoint(BaseModel):
    """A tenant's webhook endpoint.

    The secret is excluded from serialization; read it explicitly with
    ``secret.get_secret_value()`` when signing.
    """

    id: str = Field(
        default_factory=lambda: f"we_{uuid.uuid4().hex[:12]}",
        description="Unique endpoint identifier",
    )
    tenant_id: str = Field(..., description="Owning tenant")
    name: str = Field(default="", description="Human-readable name")
    url: HttpUrl = Field(..., description="Webhook endpoint URL")
    events: list[str] = Field(..., min_length=1, description="Subscribed event types")
    is_active: bool = Field(default=True, description="Whether endpoint is active")
    secret: SecretStr = Field(
        default_factory=lambda: SecretStr(generate_secret()),
        exclude=True,
        repr=False,
    )
    http_config: HttpConfig = Field(default_factory=HttpConfig)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    filters: EndpointFilter = Field(default_factory=EndpointFilter)
    stats: DeliveryStats = Field(default_factory=DeliveryStats)
    health: EndpointHealth = Field(default_factory=EndpointHealth)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("events")
    @classmethod
    def _check_events(cls, value: list[str]) -> list[str]:
        normalized = [normalize_event_type(e) for e in value]
        # Preserve order, drop duplicates
        return list(dict.fromkeys(normalized))

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this endpoint subscribes to an event type."""
        return event_type in self.events

    def apply_outcome(self, outcome: DeliveryOutcome) -> None:
        """Apply one delivery outcome to statistics and health."""
        stats = self.stats
        stats.total += 1
        stats.last_delivery = outcome

        if outcome.success:
            stats.succeeded += 1
            stats.last_success_at = outcome.recorded_at
            # Rolling mean over successful deliveries only
            stats.avg_response_time_ms += (
                outcome.response_time_ms - stats.avg_response_time_ms
            ) / stats.succeeded
            self.health.consecutive_failures = 0
        else:
            stats.failed += 1
            stats.last_failure_at = outcome.recorded_at
            self.health.consecutive_failures += 1

        rate = stats.failure_rate
        self.health.status = derive_health_status(self.health.consecutive_failures, rate)
        self.health.uptime = compute_uptime(rate)


# Global endpoint registry instance
_endpoint_registry: EndpointRegistry | None = None


class EndpointRegistry:
    """Stores webhook endpoints and records delivery outcomes.

    All mutations run under a single lock so concurrent deliveries never
    lose counter updates. Reads return copies.
    """

    def __init__(self) -> None:
        """Initialize the registry."""
        self._endpoints: dict[str, WebhookEndpoint] = {}
        self._history: dict[str, deque[DeliveryOutcome]] = {}
        self._lock = asyncio.Lock()
        self._deactivation_listeners: list[DeactivationListener] = []
        self._logger = logger.bind(component="endpoint_registry")

    def add_deactivation_listener(self, listener: DeactivationListener) -> None:
        """Register a callback invoked with the endpoint id on deactivation or deletion."""
        self._deactivation_listeners.append(listener)

    def remove_deactivation_listener(self, listener: DeactivationListener) -> None:
        """Remove a deactivation callback."""
        if listener in self._deactivation_listeners:
            self._deactivation_listeners.remove(listener)

    async def _notify_deactivated(self, endpoint_id: str) -> None:
        for listener in self._deactivation_listeners:
            try:
                result = listener(endpoint_id)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._logger.warning(
                    "deactivation_listener_error",
                    endpoint_id=endpoint_id,
                    error=str(e),
                )

    async def create(
        self,
        tenant_id: str,
        url: str,
        events: list[str],
        *,
        name: str = "",
        http_config: HttpConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        filters: EndpointFilter | None = None,
        secret: str | None = None,
    ) -> tuple[WebhookEndpoint, str]:
        """Register a new endpoint.

        Args:
            tenant_id: Owning tenant.
            url: Endpoint URL.
            events: Event types to subscribe to.
            name: Human-readable name.
            http_config: HTTP request settings.
            retry_policy: Retry policy.
            filters: Optional body filters.
            secret: Explicit secret (generated when omitted).

        Returns:
            Tuple of (created endpoint, revealed secret).

        Raises:
            ValidationRejected: If the endpoint definition is invalid.
        """
        try:
            endpoint = WebhookEndpoint(
                tenant_id=tenant_id,
                url=url,  # type: ignore[arg-type]
                events=events,
                name=name,
                http_config=http_config or HttpConfig(),
                retry_policy=retry_policy or RetryPolicy(),
                filters=filters or EndpointFilter(),
                **({"secret": SecretStr(secret)} if secret else {}),
            )
        except ValueError as e:
            raise ValidationRejected(f"Invalid webhook endpoint: {e}") from e

        async with self._lock:
            self._endpoints[endpoint.id] = endpoint
            self._history[endpoint.id] = deque(maxlen=DELIVERY_HISTORY_SIZE)

        self._logger.info(
            "endpoint_created",
            endpoint_id=endpoint.id,
            tenant_id=tenant_id,
            url=str(endpoint.url),
            events=endpoint.events,
        )

        return endpoint.model_copy(deep=True), endpoint.secret.get_secret_value()

    async def get(self, endpoint_id: str, *, tenant_id: str | None = None) -> WebhookEndpoint | None:
        """Get an endpoint by ID, optionally scoped to a tenant.

        Returns:
            A copy of the endpoint, or None if not found (or owned by another tenant).
        """
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            return None
        if tenant_id is not None and endpoint.tenant_id != tenant_id:
            return None
        return endpoint.model_copy(deep=True)

    async def require(self, endpoint_id: str, *, tenant_id: str | None = None) -> WebhookEndpoint:
        """Get an endpoint or raise NotFound."""
        endpoint = await self.get(endpoint_id, tenant_id=tenant_id)
        if endpoint is None:
            raise NotFound(f"Webhook endpoint '{endpoint_id}' not found")
        return endpoint

    async def update(
        self,
        endpoint_id: str,
        *,
        tenant_id: str | None = None,
        url: str | None = None,
        name: str | None = None,
        events: list[str] | None = None,
        is_active: bool | None = None,
        http_config: HttpConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        filters: EndpointFilter | None = None,
    ) -> WebhookEndpoint:
        """Update an endpoint's configuration.

        Returns:
            Updated endpoint copy.

        Raises:
            NotFound: If the endpoint does not exist for the tenant.
            ValidationRejected: If the new values are invalid.
        """
        changes: dict[str, Any] = {}
        if url is not None:
            changes["url"] = url
        if name is not None:
            changes["name"] = name
        if events is not None:
            changes["events"] = events
        if is_active is not None:
            changes["is_active"] = is_active
        if http_config is not None:
            changes["http_config"] = http_config
        if retry_policy is not None:
            changes["retry_policy"] = retry_policy
        if filters is not None:
            changes["filters"] = filters

        async with self._lock:
            current = self._endpoints.get(endpoint_id)
            if current is None or (tenant_id is not None and current.tenant_id != tenant_id):
                raise NotFound(f"Webhook endpoint '{endpoint_id}' not found")

            data = current.model_dump()
            data.update(
                {k: v.model_dump() if isinstance(v, BaseModel) else v for k, v in changes.items()}
            )
            data["secret"] = current.secret
            data["updated_at"] = datetime.now(UTC)
            try:
                updated = WebhookEndpoint.model_validate(data)
            except ValueError as e:
                raise ValidationRejected(f"Invalid webhook endpoint: {e}") from e
            self._endpoints[endpoint_id] = updated
            deactivated = current.is_active and not updated.is_active

        self._logger.info(
            "endpoint_updated",
            endpoint_id=endpoint_id,
            fields=sorted(changes),
        )

        if deactivated:
            await self._notify_deactivated(endpoint_id)

        return updated.model_copy(deep=True)

    async def deactivate(self, endpoint_id: str, *, tenant_id: str | None = None) -> WebhookEndpoint:
        """Deactivate an endpoint; pending retries for it are dropped."""
        endpoint = await self.update(endpoint_id, tenant_id=tenant_id, is_active=False)
        self._logger.info("endpoint_deactivated", endpoint_id=endpoint_id)
        return endpoint

    async def delete(self, endpoint_id: str, *, tenant_id: str | None = None) -> bool:
        """Delete an endpoint.

        Returns:
            True if deleted, False if not found.
        """
        async with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None or (tenant_id is not None and endpoint.tenant_id != tenant_id):
                return False
            del self._endpoints[endpoint_id]
            self._history.pop(endpoint_id, None)

        self._logger.info("endpoint_deleted", endpoint_id=endpoint_id)
        await self._notify_deactivated(endpoint_id)
        return True

    async def regenerate_secret(self, endpoint_id: str, *, tenant_id: str | None = None) -> str:
        """Replace an endpoint's secret.

        Returns:
            The new secret (the only time it is revealed).
        """
        new_secret = generate_secret()
        async with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None or (tenant_id is not None and endpoint.tenant_id != tenant_id):
                raise NotFound(f"Webhook endpoint '{endpoint_id}' not found")
            endpoint.secret = SecretStr(new_secret)
            endpoint.updated_at = datetime.now(UTC)

        self._logger.info("endpoint_secret_regenerated", endpoint_id=endpoint_id)
        return new_secret

    async def list_by_tenant(
        self,
        tenant_id: str,
        *,
        active_only: bool = False,
    ) -> list[WebhookEndpoint]:
        """List a tenant's endpoints, oldest first."""
        endpoints = [
            e for e in self._endpoints.values()
            if e.tenant_id == tenant_id and (e.is_active or not active_only)
        ]
        endpoints.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in endpoints]

    async def find_subscribers(self, tenant_id: str, event_type: str) -> list[WebhookEndpoint]:
        """Active endpoints of a tenant subscribed to an event type.

        Filters are not evaluated here; the event bus applies them.
        """
        return [
            e.model_copy(deep=True)
            for e in self._endpoints.values()
            if e.tenant_id == tenant_id and e.is_active and e.subscribes_to(event_type)
        ]

    async def record_delivery(self, endpoint_id: str, outcome: DeliveryOutcome) -> WebhookEndpoint | None:
        """Atomically apply a delivery outcome to an endpoint.

        Returns:
            Updated endpoint copy, or None if the endpoint no longer exists.
        """
        async with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None:
                self._logger.debug("record_delivery_unknown_endpoint", endpoint_id=endpoint_id)
                return None
            previous_status = endpoint.health.status
            endpoint.apply_outcome(outcome)
            self._history.setdefault(
                endpoint_id, deque(maxlen=DELIVERY_HISTORY_SIZE)
            ).append(outcome)
            snapshot = endpoint.model_copy(deep=True)

        if snapshot.health.status != previous_status:
            self._logger.warning(
                "endpoint_health_changed",
                endpoint_id=endpoint_id,
                previous=previous_status.value,
                current=snapshot.health.status.value,
                consecutive_failures=snapshot.health.consecutive_failures,
            )

        return snapshot

    async def list_deliveries(
        self,
        endpoint_id: str,
        *,
        limit: int = 50,
        success: bool | None = None,
    ) -> list[DeliveryOutcome]:
        """Recent delivery attempts for an endpoint, newest first."""
        history = list(self._history.get(endpoint_id, ()))
        if success is not None:
            history = [h for h in history if h.success == success]
        history.reverse()
        return history[:limit]


def get_endpoint_registry() -> EndpointRegistry:
    """Get the global endpoint registry instance.

    Returns:
        Singleton EndpointRegistry.
    """
    global _endpoint_registry
    if _endpoint_registry is None:
        _endpoint_registry = EndpointRegistry()
    return _endpoint_registry


def set_endpoint_registry(registry: EndpointRegistry) -> None:
    """Set the global endpoint registry instance.

    Useful for testing.

    Args:
        registry: EndpointRegistry instance.
    """
    global _endpoint_registry
    _endpoint_registry = registry
