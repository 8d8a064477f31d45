"""Central registry for integration adapters.

Handles registration, lifecycle (initialize/authenticate/disconnect),
health aggregation, inbound webhook routing and sync-job tracking for
all adapters. Construct one instance at application start-up and pass
it to collaborators.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import ValidationError

from src.config import Settings
from src.config import settings as default_settings
from src.integrations.base import BaseIntegration
from src.integrations.errors import (
    DuplicateRegistrationError,
    ErrorCode,
    InitializationError,
    IntegrationResult,
    NotFoundError,
)
from src.integrations.sync import SyncOperationTracker
from src.integrations.types import (
    DEFAULT_WEBHOOK_EVENT,
    IntegrationConfig,
    IntegrationCredentials,
    SyncOperation,
    SyncStatus,
    WebhookPayload,
)
from src.webhooks.dispatcher import WebhookDispatcher
from src.webhooks.events import EventBus, NotificationType
from src.webhooks.models import WebhookDeliveryConfig, delivery_overrides

logger = structlog.get_logger(__name__)

DISABLED_ERROR = "Integration disabled"


def _first_error(error: ValidationError) -> str:
    detail = error.errors()[0]
    field = ".".join(str(part) for part in detail["loc"])
    return f"{field}: {detail['msg']}" if field else detail["msg"]


@dataclass
class RegisteredIntegration:
    """Registry bookkeeping for one adapter.

    Attributes:
        name: Registration name.
        integration: Adapter instance.
        config: Adapter configuration.
        ready: Whether the last initialize succeeded and it is enabled.
        webhook_wired: Whether the dispatcher holds its inbound handler.
    """

    name: str
    integration: BaseIntegration
    config: IntegrationConfig
    ready: bool = False
    webhook_wired: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Summary for listings (no credentials)."""
        return {
            "name": self.name,
            "vendor": self.integration.name,
            "type": self.integration.type,
            "version": self.integration.version,
            "enabled": self.config.enabled,
            "ready": self.ready,
            "webhook": self.webhook_wired,
        }


class IntegrationRegistry:
    """Owns adapter lifecycle and wires inbound handlers into the dispatcher.

    Names are unique: registering an existing name is rejected with
    DUPLICATE_REGISTRATION; use ``replace`` to swap an adapter.
    """

    def __init__(
        self,
        dispatcher: WebhookDispatcher | None = None,
        *,
        tracker: SyncOperationTracker | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            dispatcher: Webhook dispatcher (a new one is created if omitted).
            tracker: Sync tracker (a new one sharing the dispatcher's
                event bus is created if omitted).
            settings: Application settings (uses global if not provided).
        """
        self.dispatcher = dispatcher or WebhookDispatcher()
        self.events: EventBus = self.dispatcher.events
        self.tracker = tracker or SyncOperationTracker(self.events)
        self.settings = settings or default_settings
        self._entries: dict[str, RegisteredIntegration] = {}
        self._logger = logger.bind(component="integration_registry")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        name: str,
        integration: BaseIntegration,
        config: IntegrationConfig,
    ) -> IntegrationResult:
        """Register an adapter and initialize it if enabled.

        If initialization fails the registration is kept but marked not
        ready, its webhook is not wired, and the failure is returned. Invalid
        webhook delivery settings are rejected before anything is stored.

        Args:
            name: Registration name.
            integration: Adapter instance.
            config: Adapter configuration.

        Returns:
            Success, DUPLICATE_REGISTRATION, INVALID_REQUEST or
            INITIALIZATION_FAILURE.
        """
        if name in self._entries:
            self._logger.warning("integration_already_registered", name=name)
            return IntegrationResult.from_error(DuplicateRegistrationError("Integration", name))

        delivery_config = None
        if self._wants_webhook(integration, config):
            if self.dispatcher.get(name):
                return IntegrationResult.from_error(DuplicateRegistrationError("Webhook", name))
            try:
                delivery_config = self._delivery_config(config)
            except ValidationError as e:
                self._logger.warning("invalid_webhook_settings", name=name, error=str(e))
                return IntegrationResult.fail(
                    f"Invalid webhook settings for {name}: {_first_error(e)}",
                    ErrorCode.INVALID_REQUEST,
                )

        entry = RegisteredIntegration(name=name, integration=integration, config=config)
        self._entries[name] = entry

        if config.enabled:
            result = await self._initialize(entry)
            if not result.success:
                return result

        await self._wire_webhook(entry, delivery_config)

        self._logger.info("integration_registered", name=name, ready=entry.ready)
        await self.events.emit(
            NotificationType.INTEGRATION_REGISTERED,
            name=name,
            vendor=integration.name,
            enabled=config.enabled,
        )

        return IntegrationResult.ok({"name": name, "status": "registered", "ready": entry.ready})

    async def replace(
        self,
        name: str,
        integration: BaseIntegration,
        config: IntegrationConfig,
    ) -> IntegrationResult:
        """Swap the adapter registered under ``name``.

        The old adapter is disconnected and its webhook unwired before the
        new one is registered.
        """
        if name in self._entries:
            self._logger.info("integration_replacing", name=name)
            await self._remove(name)
        return await self.register(name, integration, config)

    async def unregister(self, name: str) -> IntegrationResult:
        """Disconnect an adapter and remove it with its webhook wiring.

        Returns:
            Success (with the disconnect outcome), or NOT_FOUND.
        """
        if name not in self._entries:
            return IntegrationResult.from_error(NotFoundError("Integration", name))

        disconnect = await self._remove(name)

        self._logger.info("integration_unregistered", name=name)
        await self.events.emit(NotificationType.INTEGRATION_UNREGISTERED, name=name)

        return IntegrationResult.ok(
            {"name": name, "status": "unregistered", "disconnected": disconnect.success}
        )

    async def _remove(self, name: str) -> IntegrationResult:
        entry = self._entries.pop(name)
        disconnect = await self._safe_call(entry, "disconnect")
        if entry.webhook_wired:
            await self.dispatcher.unregister(name)
        return disconnect

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> BaseIntegration | None:
        """Get an adapter by registration name."""
        entry = self._entries.get(name)
        return entry.integration if entry else None

    def get_config(self, name: str) -> IntegrationConfig | None:
        """Get an adapter's configuration."""
        entry = self._entries.get(name)
        return entry.config if entry else None

    def is_ready(self, name: str) -> bool:
        """Whether the adapter is registered, enabled and initialized."""
        entry = self._entries.get(name)
        return bool(entry and entry.ready)

    def list_integrations(self) -> list[RegisteredIntegration]:
        """List all registrations."""
        return list(self._entries.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def enable(self, name: str) -> IntegrationResult:
        """Enable and initialize an adapter."""
        entry = self._entries.get(name)
        if not entry:
            return IntegrationResult.from_error(NotFoundError("Integration", name))

        entry.config.enabled = True
        result = await self._initialize(entry)
        if not result.success:
            return result

        await self._wire_webhook(entry)

        self._logger.info("integration_enabled", name=name)
        await self.events.emit(NotificationType.INTEGRATION_ENABLED, name=name)
        return result

    async def disable(self, name: str) -> IntegrationResult:
        """Disable and disconnect an adapter."""
        entry = self._entries.get(name)
        if not entry:
            return IntegrationResult.from_error(NotFoundError("Integration", name))

        entry.config.enabled = False
        entry.ready = False
        result = await self._safe_call(entry, "disconnect")

        if result.success:
            self._logger.info("integration_disabled", name=name)
            await self.events.emit(NotificationType.INTEGRATION_DISABLED, name=name)
        return result

    async def authenticate(
        self,
        name: str,
        credentials: IntegrationCredentials,
    ) -> IntegrationResult:
        """Hand host-obtained credentials to an adapter."""
        entry = self._entries.get(name)
        if not entry:
            return IntegrationResult.from_error(NotFoundError("Integration", name))

        result = await self._safe_call(entry, "authenticate", credentials)
        self._logger.info(
            "integration_authenticated",
            name=name,
            credential_type=credentials.type,
            success=result.success,
        )
        return result

    async def health_check_all(self) -> IntegrationResult:
        """Check every adapter without letting one failure hide the others.

        Disabled adapters are not invoked and report a fixed
        "Integration disabled" result.

        Returns:
            Success with a mapping of name -> IntegrationResult.
        """
        entries = list(self._entries.values())

        async def check(entry: RegisteredIntegration) -> IntegrationResult:
            if not entry.config.enabled:
                return IntegrationResult.fail(DISABLED_ERROR, ErrorCode.INVALID_STATE)
            return await self._safe_call(entry, "health_check")

        outcomes = await asyncio.gather(*(check(entry) for entry in entries))
        results = {entry.name: outcome for entry, outcome in zip(entries, outcomes, strict=True)}

        self._logger.info(
            "health_check_completed",
            total=len(results),
            healthy=sum(1 for r in results.values() if r.success),
        )
        return IntegrationResult.ok(results)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def route_webhook(
        self,
        name: str,
        payload: WebhookPayload | dict[str, Any],
    ) -> IntegrationResult:
        """Invoke an adapter's inbound handler directly.

        Args:
            name: Registration name.
            payload: Webhook payload, or raw data to wrap in one.

        Returns:
            The handler's result, or NOT_FOUND if the adapter is missing
            or has no handler.
        """
        entry = self._entries.get(name)
        handler = entry.integration.webhook_handler if entry else None
        if not entry or handler is None:
            return IntegrationResult.fail(f"No webhook handler for {name}", ErrorCode.NOT_FOUND)

        if not isinstance(payload, WebhookPayload):
            event = payload.get("event")
            payload = WebhookPayload(
                event=event if isinstance(event, str) and event else DEFAULT_WEBHOOK_EVENT,
                data=payload,
                source=name,
            )

        try:
            result = await handler(payload)
        except Exception as e:
            self._logger.error("webhook_handler_error", name=name, error=str(e))
            result = IntegrationResult.fail(str(e), ErrorCode.ADAPTER_ERROR)

        if result.success:
            await self.events.emit(
                NotificationType.WEBHOOK_PROCESSED,
                name=name,
                payload=payload.to_json_dict(),
            )
        else:
            self._logger.warning("webhook_route_failed", name=name, error=result.error)
            await self.events.emit(
                NotificationType.WEBHOOK_FAILED,
                name=name,
                payload=payload.to_json_dict(),
                error=result.error,
            )
        return result

    def _wants_webhook(self, integration: BaseIntegration, config: IntegrationConfig) -> bool:
        return integration.webhook_handler is not None and bool(config.webhook_url)

    def _delivery_config(self, config: IntegrationConfig) -> WebhookDeliveryConfig:
        return WebhookDeliveryConfig.from_settings(
            config.webhook_url,
            self.settings,
            secret=config.webhook_secret,
            **delivery_overrides(config.custom_settings),
        )

    async def _wire_webhook(
        self,
        entry: RegisteredIntegration,
        delivery_config: WebhookDeliveryConfig | None = None,
    ) -> None:
        handler = entry.integration.webhook_handler
        if entry.webhook_wired or handler is None or not entry.config.webhook_url:
            return

        if delivery_config is None:
            try:
                delivery_config = self._delivery_config(entry.config)
            except ValidationError as e:
                self._logger.warning("webhook_wiring_failed", name=entry.name, error=str(e))
                return

        result = await self.dispatcher.register(entry.name, delivery_config, handler)
        entry.webhook_wired = result.success
        if not result.success:
            self._logger.warning("webhook_wiring_failed", name=entry.name, error=result.error)

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    async def start_sync(self, operation: SyncOperation) -> IntegrationResult:
        """Start tracking a sync operation for a registered adapter."""
        if operation.integration_name not in self._entries:
            return IntegrationResult.from_error(
                NotFoundError("Integration", operation.integration_name)
            )
        return await self.tracker.start(operation)

    async def update_sync_progress(self, operation_id: str, **progress: Any) -> IntegrationResult:
        """Merge progress fields into a running sync operation."""
        return await self.tracker.update_progress(operation_id, **progress)

    async def complete_sync_operation(
        self,
        operation_id: str,
        status: SyncStatus,
        error: str | None = None,
    ) -> IntegrationResult:
        """Finish a sync operation as completed or failed."""
        return await self.tracker.complete(operation_id, status, error)

    def get_sync_operation(self, operation_id: str) -> SyncOperation | None:
        """Get a sync operation by id."""
        return self.tracker.get(operation_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> IntegrationResult:
        """Disconnect every adapter and clear all state.

        Disconnects run concurrently and independently; their outcomes are
        collected rather than raised.

        Returns:
            Success with a mapping of name -> disconnect result.
        """
        self._logger.info("integration_registry_shutting_down", count=len(self._entries))

        entries = list(self._entries.values())
        outcomes = await asyncio.gather(*(self._safe_call(entry, "disconnect") for entry in entries))
        results = {entry.name: outcome for entry, outcome in zip(entries, outcomes, strict=True)}

        self._entries.clear()
        await self.dispatcher.shutdown()
        self.tracker.clear()

        failed = [name for name, outcome in results.items() if not outcome.success]
        self._logger.info("integration_registry_shutdown_complete", failed=failed)
        return IntegrationResult.ok(results)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _initialize(self, entry: RegisteredIntegration) -> IntegrationResult:
        result = await self._safe_call(entry, "initialize")
        entry.ready = result.success
        if result.success:
            return result

        error = InitializationError(entry.name, result.error)
        self._logger.error("integration_initialization_failed", name=entry.name, error=result.error)
        return IntegrationResult.from_error(error)

    async def _safe_call(
        self,
        entry: RegisteredIntegration,
        operation: str,
        *args: Any,
    ) -> IntegrationResult:
        """Call an adapter operation, turning exceptions into failed results."""
        try:
            return await getattr(entry.integration, operation)(*args)
        except Exception as e:
            self._logger.error(
                "integration_operation_error",
                name=entry.name,
                operation=operation,
                error=str(e),
            )
            return IntegrationResult.fail(str(e) or e.__class__.__name__, ErrorCode.ADAPTER_ERROR)
