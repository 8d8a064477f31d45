"""Host notifications emitted by the registry and dispatcher.

Notifications are a side channel: they never affect the result of the
operation that emitted them, and no subscriber is required.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class NotificationType(str, Enum):
    """Lifecycle notifications observable by the host."""

    # Integration lifecycle
    INTEGRATION_REGISTERED = "integration:registered"
    INTEGRATION_UNREGISTERED = "integration:unregistered"
    INTEGRATION_ENABLED = "integration:enabled"
    INTEGRATION_DISABLED = "integration:disabled"

    # Webhook lifecycle
    WEBHOOK_REGISTERED = "webhook:registered"
    WEBHOOK_UNREGISTERED = "webhook:unregistered"
    WEBHOOK_PROCESSED = "webhook:processed"
    WEBHOOK_FAILED = "webhook:failed"

    # Sync jobs
    SYNC_STARTED = "sync:started"
    SYNC_PROGRESS = "sync:progress"
    SYNC_COMPLETED = "sync:completed"


class Notification(BaseModel):
    """A single emitted notification."""

    id: str = Field(default_factory=lambda: f"ntf_{uuid.uuid4().hex[:12]}")
    type: NotificationType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict)


# Type for notification listeners
Listener = Callable[[Notification], Awaitable[None] | None]


class EventBus:
    """Observer list shared by the registry, dispatcher and sync tracker."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._logger = logger.bind(component="event_bus")

    def add_listener(self, listener: Listener) -> None:
        """Subscribe a sync or async listener to every notification."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        """Unsubscribe a listener. Unknown listeners are ignored."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(self, notification_type: NotificationType, **data: Any) -> Notification:
        """Emit a notification to all listeners.

        Listener errors are logged and do not stop delivery to the
        remaining listeners.

        Args:
            notification_type: Type of notification.
            **data: Notification data.

        Returns:
            The emitted notification.
        """
        notification = Notification(type=notification_type, data=data)

        for listener in list(self._listeners):
            try:
                result = listener(notification)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._logger.warning(
                    "listener_error",
                    notification=notification_type.value,
                    error=str(e),
                )

        return notification
