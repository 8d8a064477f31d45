"""Zapier integration: inbound actions and outbound CRM triggers.

Zaps call into the hub with an action envelope
(``{"action": "create_contact", "data": {...}}``); the hub pushes CRM events
out to per-event Zapier catch-hook URLs.
"""

import json
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from src.config import Settings
from src.integrations.base import BaseIntegration
from src.integrations.errors import ErrorCode, IntegrationResult
from src.integrations.types import (
    ApiKeyCredentials,
    CRMContact,
    CRMDeal,
    CRMTask,
    IntegrationConfig,
    IntegrationCredentials,
    WebhookPayload,
)
from src.webhooks.dispatcher import WebhookDispatcher
from src.webhooks.models import WebhookDeliveryConfig, WebhookHandler, delivery_overrides
from src.webhooks.security import serialize_payload, sign

SIGNATURE_HEADER = "X-Zapier-Signature"
EVENT_HEADER = "X-Zapier-Event"
API_KEY_HEADER = "X-API-Key"

DEFAULT_TRIGGERS = (
    "contact.created",
    "contact.updated",
    "deal.created",
    "deal.updated",
    "deal.stage_changed",
    "task.created",
    "task.completed",
    "invoice.created",
    "payment.received",
)


class ZapierAction(BaseModel):
    """Inbound action envelope sent by a Zap."""

    action: str
    data: dict[str, Any] = Field(default_factory=dict)
    zap_id: str | None = None


class ZapierTriggerData(BaseModel):
    """Outbound trigger body posted to a Zapier catch hook."""

    event: str
    data: Any
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    crm_id: str


class EmailRequest(BaseModel):
    """Email requested by a ``send_email`` action."""

    to: str
    subject: str
    body: str = ""
    template: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


def _pick(data: dict[str, Any], *keys: str) -> Any:
    """First truthy value among alias keys, else None."""
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def _without_none(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


class ZapierIntegration(BaseIntegration):
    """Automation-trigger adapter for Zapier.

    Trigger URLs are kept per event. ``initialize`` registers the default
    CRM events against ``{base_url}/api/webhooks/zapier/{event}``.
    """

    name = "Zapier"
    type = "webhook"
    version = "1.0.0"

    def __init__(
        self,
        config: IntegrationConfig,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        dispatcher: WebhookDispatcher | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            config: Integration configuration.
            settings: Application settings (uses global if not provided).
            client: Optional preconfigured HTTP client.
            dispatcher: Dispatcher whose retry policy and delivery records
                outbound triggers go through (a private one if omitted).
        """
        super().__init__(config, settings=settings, client=client)
        self.dispatcher = dispatcher or WebhookDispatcher()
        self._triggers: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> IntegrationResult:
        """Register default triggers and mark the adapter enabled."""
        self._logger.info("zapier_initializing")

        base_url = (self.config.base_url or "").rstrip("/")
        for event in DEFAULT_TRIGGERS:
            self._triggers[event] = f"{base_url}/api/webhooks/zapier/{event}"

        self.enabled = True
        self._logger.info("zapier_initialized", trigger_count=len(self._triggers))
        return IntegrationResult.ok(
            {"triggers": list(self._triggers), "webhook_url": self.config.webhook_url}
        )

    async def authenticate(self, credentials: IntegrationCredentials) -> IntegrationResult:
        """Accept an API key and confirm the adapter is usable."""
        if not isinstance(credentials, ApiKeyCredentials) or not credentials.api_key:
            return IntegrationResult.fail(
                "API key required for Zapier integration",
                ErrorCode.AUTHENTICATION_FAILURE,
            )

        self.config.api_key = credentials.api_key
        health = await self.health_check()
        if not health.success:
            return health

        self._logger.info("zapier_authenticated")
        return IntegrationResult.ok({"authenticated": True})

    async def disconnect(self) -> IntegrationResult:
        """Drop trigger registrations and close the HTTP client."""
        self.enabled = False
        self._triggers.clear()
        await self.close()

        self._logger.info("zapier_disconnected")
        return IntegrationResult.ok()

    async def health_check(self) -> IntegrationResult:
        if not self.enabled:
            return IntegrationResult.fail("Zapier integration not enabled", ErrorCode.INVALID_STATE)

        return IntegrationResult.ok(
            {
                "status": "healthy",
                "triggers": list(self._triggers),
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def register_trigger(self, event: str, url: str) -> IntegrationResult:
        """Route an outbound CRM event to a Zapier catch-hook URL."""
        self._triggers[event] = url
        self._logger.info("zapier_trigger_registered", trigger=event)
        return IntegrationResult.ok({"event": event, "webhook_url": url})

    def unregister_trigger(self, event: str) -> IntegrationResult:
        if self._triggers.pop(event, None) is None:
            return IntegrationResult.fail(f"Trigger not found: {event}", ErrorCode.NOT_FOUND)

        self._logger.info("zapier_trigger_unregistered", trigger=event)
        return IntegrationResult.ok({"event": event})

    def get_registered_triggers(self) -> dict[str, str]:
        """Copy of the event -> URL map."""
        return dict(self._triggers)

    def _signing_secret(self) -> str | None:
        return self.config.custom_settings.get("signing_secret") or self.config.client_secret

    async def trigger_event(
        self,
        event: str,
        data: Any,
        url: str | None = None,
    ) -> IntegrationResult:
        """Push a signed CRM event to Zapier.

        Delivery goes through the dispatcher's retry policy: each attempt
        runs under the webhook timeout, and timeouts, transport errors and
        5xx responses are retried.

        Args:
            event: CRM event name.
            data: Event data.
            url: Explicit catch-hook URL; defaults to the registered trigger.

        Returns:
            Success with Zapier's acknowledgment, NOT_FOUND when no URL is
            known for the event, INVALID_STATE without a signing secret,
            INVALID_REQUEST for bad delivery settings, or DELIVERY_FAILURE.
        """
        target = url or self._triggers.get(event)
        if not target:
            return IntegrationResult.fail(
                f"No webhook URL configured for event: {event}",
                ErrorCode.NOT_FOUND,
            )

        secret = self._signing_secret()
        if not secret:
            return IntegrationResult.fail(
                "Signing secret required to trigger Zapier events",
                ErrorCode.INVALID_STATE,
            )

        try:
            delivery_config = WebhookDeliveryConfig.from_settings(
                target,
                self.settings,
                secret=secret,
                **delivery_overrides(self.config.custom_settings),
            )
        except ValidationError as e:
            return IntegrationResult.fail(str(e), ErrorCode.INVALID_REQUEST)

        trigger = ZapierTriggerData(event=event, data=data, crm_id=self.settings.INSTANCE_ID)
        body = serialize_payload(trigger.model_dump(mode="json"))

        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: event,
            SIGNATURE_HEADER: sign(secret, body),
        }
        if self.config.api_key:
            headers[API_KEY_HEADER] = self.config.api_key

        result = await self.dispatcher.post_with_retry(
            self.name.lower(),
            delivery_config,
            body,
            headers,
            event=event,
            client=await self._get_client(),
        )
        if not result.success:
            self._logger.error("zapier_trigger_failed", trigger=event, error=result.error)
            return result

        try:
            acknowledgment: Any = json.loads(result.data["body"])
        except ValueError:
            acknowledgment = result.data["body"]

        self._logger.info("zapier_trigger_sent", trigger=event, status=result.data["status"])
        return IntegrationResult.ok(
            {"event": event, "status": result.data["status"], "zapier_response": acknowledgment}
        )

    # ------------------------------------------------------------------
    # Inbound actions
    # ------------------------------------------------------------------

    @property
    def webhook_handler(self) -> WebhookHandler | None:
        return self.handle_webhook

    async def handle_webhook(self, payload: WebhookPayload) -> IntegrationResult:
        """Translate a Zap action into a CRM record or request."""
        self._logger.info("zapier_webhook_received", webhook_event=payload.event)

        if not isinstance(payload.data, dict):
            return IntegrationResult.fail("Zapier payload must be an object", ErrorCode.INVALID_REQUEST)

        try:
            action = ZapierAction.model_validate(payload.data)
            handler = {
                "create_contact": self._create_contact,
                "update_contact": self._update_contact,
                "create_deal": self._create_deal,
                "update_deal": self._update_deal,
                "create_task": self._create_task,
                "send_email": self._send_email,
            }.get(action.action)

            if handler is None:
                self._logger.warning("zapier_unknown_action", action=action.action)
                return IntegrationResult.fail(f"Unknown action: {action.action}", ErrorCode.INVALID_REQUEST)

            return handler(action.data)
        except (ValidationError, ValueError) as e:
            self._logger.warning("zapier_invalid_action", error=str(e))
            return IntegrationResult.fail(str(e), ErrorCode.INVALID_REQUEST)

    def _create_contact(self, data: dict[str, Any]) -> IntegrationResult:
        contact = CRMContact(
            first_name=_pick(data, "firstName", "first_name") or "",
            last_name=_pick(data, "lastName", "last_name") or "",
            email=data.get("email") or "",
            phone=data.get("phone") or "",
            company=data.get("company") or "",
            title=_pick(data, "title", "job_title") or "",
            tags=data.get("tags") or [],
            custom_fields=_pick(data, "customFields", "custom_fields") or {},
        )
        self._logger.info("zapier_contact_created")
        return IntegrationResult.ok({"action": "create_contact", "contact": contact})

    def _update_contact(self, data: dict[str, Any]) -> IntegrationResult:
        contact_id = _pick(data, "id", "contactId", "contact_id")
        if not contact_id:
            return IntegrationResult.fail("Contact ID required for update", ErrorCode.INVALID_REQUEST)

        updates = _without_none(
            {
                "first_name": _pick(data, "firstName", "first_name"),
                "last_name": _pick(data, "lastName", "last_name"),
                "email": data.get("email"),
                "phone": data.get("phone"),
                "company": data.get("company"),
                "title": _pick(data, "title", "job_title"),
                "custom_fields": _pick(data, "customFields", "custom_fields") or {},
            }
        )
        # Validate field types against the contact shape
        CRMContact.model_validate(updates)

        self._logger.info("zapier_contact_updated", contact_id=contact_id)
        return IntegrationResult.ok(
            {"action": "update_contact", "contact_id": contact_id, "updates": updates}
        )

    def _create_deal(self, data: dict[str, Any]) -> IntegrationResult:
        probability = data.get("probability")
        deal = CRMDeal(
            name=_pick(data, "name", "deal_name") or "",
            amount=float(_pick(data, "amount", "value") or 0),
            stage=_pick(data, "stage", "deal_stage") or "prospect",
            probability=float(probability) if probability else None,
            close_date=_pick(data, "closeDate", "close_date"),
            contact_id=_pick(data, "contactId", "contact_id"),
            company_id=_pick(data, "companyId", "company_id"),
            owner_id=_pick(data, "ownerId", "owner_id"),
            description=data.get("description") or "",
            custom_fields=_pick(data, "customFields", "custom_fields") or {},
        )
        self._logger.info("zapier_deal_created")
        return IntegrationResult.ok({"action": "create_deal", "deal": deal})

    def _update_deal(self, data: dict[str, Any]) -> IntegrationResult:
        deal_id = _pick(data, "id", "dealId", "deal_id")
        if not deal_id:
            return IntegrationResult.fail("Deal ID required for update", ErrorCode.INVALID_REQUEST)

        amount = data.get("amount")
        probability = data.get("probability")
        updates = _without_none(
            {
                "name": _pick(data, "name", "deal_name"),
                "amount": float(amount) if amount else None,
                "stage": _pick(data, "stage", "deal_stage"),
                "probability": float(probability) if probability else None,
                "close_date": _pick(data, "closeDate", "close_date"),
                "description": data.get("description"),
                "custom_fields": _pick(data, "customFields", "custom_fields") or {},
            }
        )
        CRMDeal.model_validate(updates)

        self._logger.info("zapier_deal_updated", deal_id=deal_id)
        return IntegrationResult.ok({"action": "update_deal", "deal_id": deal_id, "updates": updates})

    def _create_task(self, data: dict[str, Any]) -> IntegrationResult:
        related = _pick(data, "relatedTo", "related_to")
        task = CRMTask(
            title=_pick(data, "title", "task_name") or "",
            description=data.get("description") or "",
            type=data.get("type") or "task",
            priority=data.get("priority") or "medium",
            status="pending",
            due_date=_pick(data, "dueDate", "due_date"),
            assigned_to=_pick(data, "assignedTo", "assigned_to"),
            related_to=related or None,
        )
        self._logger.info("zapier_task_created")
        return IntegrationResult.ok({"action": "create_task", "task": task})

    def _send_email(self, data: dict[str, Any]) -> IntegrationResult:
        to = _pick(data, "to", "recipient")
        subject = data.get("subject")
        if not to or not subject:
            return IntegrationResult.fail(
                "Email recipient and subject are required",
                ErrorCode.INVALID_REQUEST,
            )

        email = EmailRequest(
            to=to,
            subject=subject,
            body=_pick(data, "body", "content") or "",
            template=data.get("template"),
            variables=data.get("variables") or {},
        )
        self._logger.info("zapier_email_requested")
        return IntegrationResult.ok({"action": "send_email", "email": email})
