"""Integration API endpoints.

Receives inbound vendor webhooks and exposes registry state: adapter
listings, aggregated health, delivery history and sync operations.
"""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.integrations.errors import ErrorCode, IntegrationResult
from src.integrations.registry import IntegrationRegistry
from src.webhooks.models import WebhookDelivery, WebhookDeliveryStatus

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/integrations", tags=["Integrations"])

# Failed results map to these HTTP statuses; anything else is a 400
ERROR_STATUS_CODES = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DUPLICATE_REGISTRATION: 409,
    ErrorCode.INVALID_SIGNATURE: 401,
    ErrorCode.AUTHENTICATION_FAILURE: 401,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.DELIVERY_FAILURE: 502,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.INITIALIZATION_FAILURE: 503,
    ErrorCode.ADAPTER_ERROR: 502,
}


# ============================================================================
# Response Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Outcome of an inbound or test delivery."""

    success: bool = Field(..., description="Whether the handler succeeded")
    data: Any = Field(default=None, description="Handler result data")


class IntegrationSummary(BaseModel):
    """Registered adapter summary."""

    name: str
    vendor: str
    type: str
    version: str
    enabled: bool
    ready: bool
    webhook: bool


class HealthEntry(BaseModel):
    """Health outcome for one adapter."""

    healthy: bool
    data: Any = None
    error: str | None = None


class HealthResponse(BaseModel):
    """Aggregated adapter health."""

    healthy: bool = Field(..., description="True when every adapter reported healthy")
    integrations: dict[str, HealthEntry]


class WebhookDeliveryResponse(BaseModel):
    """Webhook delivery record."""

    id: str
    name: str
    direction: str
    event: str
    payload_id: str | None
    status: WebhookDeliveryStatus
    attempt_count: int
    max_attempts: int
    last_attempt_at: str | None
    response_status: int | None
    error_message: str | None
    created_at: str
    completed_at: str | None

    @classmethod
    def from_delivery(cls, delivery: WebhookDelivery) -> "WebhookDeliveryResponse":
        """Create response from WebhookDelivery model."""
        return cls(
            id=delivery.id,
            name=delivery.name,
            direction=delivery.direction.value,
            event=delivery.event,
            payload_id=delivery.payload_id,
            status=delivery.status,
            attempt_count=delivery.attempt_count,
            max_attempts=delivery.max_attempts,
            last_attempt_at=delivery.last_attempt_at.isoformat() if delivery.last_attempt_at else None,
            response_status=delivery.response_status,
            error_message=delivery.error_message,
            created_at=delivery.created_at.isoformat(),
            completed_at=delivery.completed_at.isoformat() if delivery.completed_at else None,
        )


# ============================================================================
# Helpers
# ============================================================================


def _get_registry(request: Request) -> IntegrationRegistry:
    return request.app.state.registry


def _raise_for_result(result: IntegrationResult) -> None:
    """Raise HTTPException for failed results."""
    if result.success:
        return
    status_code = ERROR_STATUS_CODES.get(result.error_code, 400)
    raise HTTPException(status_code=status_code, detail=result.error or "Request failed")


# ============================================================================
# Endpoints
# ============================================================================


@router.get("", response_model=list[IntegrationSummary])
async def list_integrations(request: Request) -> list[IntegrationSummary]:
    """List registered integrations (credentials are never included)."""
    registry = _get_registry(request)
    return [IntegrationSummary(**entry.to_dict()) for entry in registry.list_integrations()]


@router.get("/health", response_model=HealthResponse)
async def integrations_health(request: Request) -> HealthResponse:
    """Run every adapter's health check."""
    registry = _get_registry(request)
    result = await registry.health_check_all()

    entries = {
        name: HealthEntry(healthy=outcome.success, data=outcome.data, error=outcome.error)
        for name, outcome in result.data.items()
    }
    return HealthResponse(
        healthy=all(entry.healthy for entry in entries.values()),
        integrations=entries,
    )


@router.get(
    "/sync/{operation_id}",
    responses={
        404: {"description": "Sync operation not found"},
    },
)
async def get_sync_operation(operation_id: str, request: Request) -> dict[str, Any]:
    """Get a sync operation by id."""
    registry = _get_registry(request)
    operation = registry.get_sync_operation(operation_id)

    if not operation:
        raise HTTPException(status_code=404, detail=f"Sync operation {operation_id} not found")

    return operation.model_dump(mode="json")


@router.post(
    "/{name}/webhook",
    response_model=WebhookAckResponse,
    responses={
        401: {"description": "Invalid signature"},
        404: {"description": "Webhook not registered"},
        502: {"description": "Handler failed after retries"},
    },
)
async def receive_webhook(name: str, request: Request) -> WebhookAckResponse | JSONResponse:
    """Receive a vendor webhook.

    The raw body is verified against the registration's secret before
    the adapter's handler runs. URL-verification handshakes get the
    bare ``{"challenge": ...}`` body the vendor expects.
    """
    registry = _get_registry(request)
    body = await request.body()

    result = await registry.dispatcher.deliver_inbound(name, body, dict(request.headers))

    if not result.success:
        logger.warning(
            "inbound_webhook_rejected",
            name=name,
            error_code=result.error_code.value if result.error_code else None,
        )
    _raise_for_result(result)

    if isinstance(result.data, dict) and set(result.data) == {"challenge"}:
        return JSONResponse(content={"challenge": result.data["challenge"]})

    return WebhookAckResponse(success=True, data=result.data)


@router.post(
    "/{name}/webhook/test",
    response_model=WebhookAckResponse,
    responses={
        404: {"description": "Webhook not registered"},
    },
)
async def test_webhook(name: str, request: Request) -> WebhookAckResponse:
    """Run the registered handler with a synthetic test payload."""
    registry = _get_registry(request)
    result = await registry.dispatcher.test_registration(name)

    logger.info("webhook_tested", name=name, success=result.success)
    _raise_for_result(result)

    return WebhookAckResponse(success=True, data=result.data)


@router.get(
    "/{name}/webhook/deliveries",
    response_model=list[WebhookDeliveryResponse],
    responses={
        404: {"description": "Webhook not registered"},
    },
)
async def list_webhook_deliveries(
    name: str,
    request: Request,
    limit: int = 50,
    status: WebhookDeliveryStatus | None = None,
) -> list[WebhookDeliveryResponse]:
    """List recent deliveries for a registration, newest first."""
    registry = _get_registry(request)

    if not registry.dispatcher.get(name):
        raise HTTPException(status_code=404, detail=f"Webhook {name} not found")

    deliveries = registry.dispatcher.list_deliveries(name, limit=limit, status=status)
    return [WebhookDeliveryResponse.from_delivery(d) for d in deliveries]
