"""Webhook delivery configuration and delivery tracking models."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from src.integrations.errors import IntegrationResult
from src.integrations.types import WebhookPayload

if TYPE_CHECKING:
    from src.config import Settings

# Inbound handler: receives a payload, returns a result
WebhookHandler = Callable[[WebhookPayload], Awaitable[IntegrationResult]]


class DeliveryDirection(str, Enum):
    """Whether a delivery was received or sent."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class WebhookDeliveryStatus(str, Enum):
    """Status of a webhook delivery."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


# Integration custom_settings keys that override delivery defaults
DELIVERY_OVERRIDE_KEYS = {
    "signature_header": "signature_header",
    "signature_prefix": "signature_prefix",
    "webhook_timeout_seconds": "timeout_seconds",
    "webhook_max_retries": "max_retries",
    "webhook_retry_delay_seconds": "retry_delay_seconds",
}


def delivery_overrides(custom_settings: dict[str, object]) -> dict[str, object]:
    """Pick delivery config overrides out of an integration's custom settings."""
    return {
        field: custom_settings[key]
        for key, field in DELIVERY_OVERRIDE_KEYS.items()
        if key in custom_settings
    }


class WebhookDeliveryConfig(BaseModel):
    """Delivery settings for one registered webhook."""

    url: str = Field(..., description="Target URL")
    secret: str | None = Field(default=None, description="Signing secret")
    signature_header: str | None = Field(
        default=None,
        description="Header carrying the signature (default X-Webhook-Signature)",
    )
    signature_prefix: str | None = Field(
        default=None,
        description="Scheme tag placed before the hex digest, e.g. 'sha256='",
    )
    timeout_seconds: float = Field(
        default=30.0,
        description="Per-attempt deadline in seconds",
        gt=0,
    )
    max_retries: int = Field(
        default=3,
        description="Retries after the first attempt",
        ge=0,
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        description="Wait between failed attempts",
        ge=0,
    )
    custom_headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra headers for outbound requests",
    )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_settings(cls, url: str, settings: Settings, **overrides: object) -> WebhookDeliveryConfig:
        """Build a config using the environment defaults.

        Args:
            url: Target URL.
            settings: Application settings.
            **overrides: Field values taking precedence over the defaults.

        Returns:
            Delivery configuration.
        """
        values: dict[str, object] = {
            "url": url,
            "signature_header": settings.WEBHOOK_SIGNATURE_HEADER,
            "timeout_seconds": settings.WEBHOOK_TIMEOUT_SECONDS,
            "max_retries": settings.WEBHOOK_MAX_RETRIES,
            "retry_delay_seconds": settings.WEBHOOK_RETRY_DELAY_SECONDS,
        }
        values.update(overrides)
        return cls.model_validate(values)


class WebhookRegistration(BaseModel):
    """A registered webhook: config plus handler."""

    model_config = {"arbitrary_types_allowed": True}

    name: str
    config: WebhookDeliveryConfig
    handler: WebhookHandler
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WebhookDelivery(BaseModel):
    """Record of one delivery and its attempts."""

    id: str = Field(default_factory=lambda: f"dlv_{uuid.uuid4().hex[:12]}")
    name: str = Field(..., description="Registration name")
    direction: DeliveryDirection
    event: str = Field(..., description="Event name")
    payload_id: str | None = Field(default=None, description="Inbound payload id")
    status: WebhookDeliveryStatus = WebhookDeliveryStatus.PENDING
    attempt_count: int = 0
    max_attempts: int = 1
    last_attempt_at: datetime | None = None
    response_status: int | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    def record_attempt(self) -> None:
        """Count a new attempt."""
        self.attempt_count += 1
        self.last_attempt_at = datetime.now(UTC)

    def mark_retrying(self, error_message: str) -> None:
        """Record a failed attempt that will be retried."""
        self.status = WebhookDeliveryStatus.RETRYING
        self.error_message = error_message

    def mark_success(self) -> None:
        """Mark delivery as successful."""
        self.status = WebhookDeliveryStatus.SUCCESS
        self.error_message = None
        self.completed_at = datetime.now(UTC)

    def mark_failed(self, error_message: str | None) -> None:
        """Mark delivery as permanently failed."""
        self.status = WebhookDeliveryStatus.FAILED
        self.error_message = error_message
        self.completed_at = datetime.now(UTC)

