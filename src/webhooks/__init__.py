"""Webhook dispatch for third-party integrations.

This module provides:
- WebhookDispatcher: Named registrations, inbound delivery with retry and
  timeout, signed outbound delivery
- EventBus / NotificationType: Host notifications
- WebhookDeliveryConfig / WebhookDelivery: Delivery settings and records
- HMAC-SHA256 signing and verification
"""

from src.webhooks.dispatcher import WebhookDispatcher
from src.webhooks.events import EventBus, Notification, NotificationType
from src.webhooks.models import (
    DeliveryDirection,
    WebhookDelivery,
    WebhookDeliveryConfig,
    WebhookDeliveryStatus,
    WebhookHandler,
    WebhookRegistration,
)
from src.webhooks.security import sign, verify

__all__ = [
    # Dispatcher
    "WebhookDispatcher",
    # Events
    "EventBus",
    "Notification",
    "NotificationType",
    # Models
    "DeliveryDirection",
    "WebhookDelivery",
    "WebhookDeliveryConfig",
    "WebhookDeliveryStatus",
    "WebhookHandler",
    "WebhookRegistration",
    # Security
    "sign",
    "verify",
]
