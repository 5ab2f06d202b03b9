"""Webhook endpoint management API.

Endpoints are scoped to the tenant named in the ``X-Tenant-Id`` header.
Secrets are revealed only by the create and regenerate-secret responses.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Header
from pydantic import BaseModel, Field, HttpUrl

from innsync.errors import NotFound
from innsync.webhooks.dispatcher import get_delivery_engine
from innsync.webhooks.filters import EndpointFilter
from innsync.webhooks.registry import (
    DeliveryOutcome,
    HttpConfig,
    WebhookEndpoint,
    get_endpoint_registry,
)
from innsync.webhooks.retry import RetryPolicy

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhook-endpoints", tags=["Webhook Endpoints"])


# ============================================================================
# Request Models
# ============================================================================


class EndpointCreateRequest(BaseModel):
    """Request to register a webhook endpoint."""

    url: HttpUrl = Field(..., description="Webhook endpoint URL")
    events: list[str] = Field(..., min_length=1, description="Event types to subscribe to")
    name: str = Field(default="", description="Human-readable name")
    http_config: HttpConfig | None = None
    retry_policy: RetryPolicy | None = None
    filters: EndpointFilter | None = None


class EndpointUpdateRequest(BaseModel):
    """Request to update a webhook endpoint. Omitted fields are unchanged."""

    url: HttpUrl | None = None
    name: str | None = None
    events: list[str] | None = None
    is_active: bool | None = None
    http_config: HttpConfig | None = None
    retry_policy: RetryPolicy | None = None
    filters: EndpointFilter | None = None


# ============================================================================
# Response Models
# ============================================================================


class EndpointCreatedResponse(BaseModel):
    """A newly created endpoint, with its secret revealed once."""

    endpoint: WebhookEndpoint
    secret: str = Field(..., description="Signing secret; store it now")


class SecretResponse(BaseModel):
    """A regenerated secret."""

    endpoint_id: str
    secret: str


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "",
    response_model=EndpointCreatedResponse,
    status_code=201,
    responses={
        201: {"description": "Endpoint created"},
        400: {"description": "Invalid request"},
    },
)
async def create_endpoint(
    request: EndpointCreateRequest,
    x_tenant_id: str = Header(...),
) -> EndpointCreatedResponse:
    """Register a webhook endpoint.

    A signing secret is generated and returned in this response only.
    """
    endpoint, secret = await get_endpoint_registry().create(
        x_tenant_id,
        str(request.url),
        request.events,
        name=request.name,
        http_config=request.http_config,
        retry_policy=request.retry_policy,
        filters=request.filters,
    )
    return EndpointCreatedResponse(endpoint=endpoint, secret=secret)


@router.get("", response_model=list[WebhookEndpoint])
async def list_endpoints(
    active_only: bool = False,
    x_tenant_id: str = Header(...),
) -> list[WebhookEndpoint]:
    """List the tenant's endpoints."""
    return await get_endpoint_registry().list_by_tenant(x_tenant_id, active_only=active_only)


@router.get("/queue/status")
async def get_queue_status() -> dict[str, Any]:
    """Delivery queue depth and worker counters."""
    return get_delivery_engine().status()


@router.get(
    "/{endpoint_id}",
    response_model=WebhookEndpoint,
    responses={404: {"description": "Endpoint not found"}},
)
async def get_endpoint(endpoint_id: str, x_tenant_id: str = Header(...)) -> WebhookEndpoint:
    """Get an endpoint with its statistics and health."""
    return await get_endpoint_registry().require(endpoint_id, tenant_id=x_tenant_id)


@router.patch(
    "/{endpoint_id}",
    response_model=WebhookEndpoint,
    responses={404: {"description": "Endpoint not found"}},
)
async def update_endpoint(
    endpoint_id: str,
    request: EndpointUpdateRequest,
    x_tenant_id: str = Header(...),
) -> WebhookEndpoint:
    """Update an endpoint's configuration."""
    return await get_endpoint_registry().update(
        endpoint_id,
        tenant_id=x_tenant_id,
        url=str(request.url) if request.url is not None else None,
        name=request.name,
        events=request.events,
        is_active=request.is_active,
        http_config=request.http_config,
        retry_policy=request.retry_policy,
        filters=request.filters,
    )


@router.delete(
    "/{endpoint_id}",
    status_code=204,
    responses={404: {"description": "Endpoint not found"}},
)
async def delete_endpoint(endpoint_id: str, x_tenant_id: str = Header(...)) -> None:
    """Delete an endpoint. Pending retries for it are dropped."""
    if not await get_endpoint_registry().delete(endpoint_id, tenant_id=x_tenant_id):
        raise NotFound(f"Webhook endpoint '{endpoint_id}' not found")


@router.post(
    "/{endpoint_id}/deactivate",
    response_model=WebhookEndpoint,
    responses={404: {"description": "Endpoint not found"}},
)
async def deactivate_endpoint(endpoint_id: str, x_tenant_id: str = Header(...)) -> WebhookEndpoint:
    """Deactivate an endpoint. Pending retries for it are dropped."""
    return await get_endpoint_registry().deactivate(endpoint_id, tenant_id=x_tenant_id)


@router.post(
    "/{endpoint_id}/regenerate-secret",
    response_model=SecretResponse,
    responses={404: {"description": "Endpoint not found"}},
)
async def regenerate_secret(endpoint_id: str, x_tenant_id: str = Header(...)) -> SecretResponse:
    """Replace the endpoint's signing secret and reveal the new one."""
    secret = await get_endpoint_registry().regenerate_secret(endpoint_id, tenant_id=x_tenant_id)
    return SecretResponse(endpoint_id=endpoint_id, secret=secret)


@router.post(
    "/{endpoint_id}/test",
    response_model=DeliveryOutcome,
    responses={404: {"description": "Endpoint not found"}},
)
async def test_endpoint(endpoint_id: str, x_tenant_id: str = Header(...)) -> DeliveryOutcome:
    """Send one signed ``system.webhook_test`` event to the endpoint."""
    outcome = await get_delivery_engine().send_test_event(endpoint_id, tenant_id=x_tenant_id)
    logger.info(
        "endpoint_test_sent",
        endpoint_id=endpoint_id,
        success=outcome.success,
        status_code=outcome.status_code,
    )
    return outcome


@router.get(
    "/{endpoint_id}/deliveries",
    response_model=list[DeliveryOutcome],
    responses={404: {"description": "Endpoint not found"}},
)
async def list_deliveries(
    endpoint_id: str,
    limit: int = 50,
    success: bool | None = None,
    x_tenant_id: str = Header(...),
) -> list[DeliveryOutcome]:
    """Recent delivery attempts for an endpoint, newest first."""
    registry = get_endpoint_registry()
    await registry.require(endpoint_id, tenant_id=x_tenant_id)
    return await registry.list_deliveries(endpoint_id, limit=limit, success=success)
