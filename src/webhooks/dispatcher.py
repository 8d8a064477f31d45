"""Webhook dispatcher with bounded retry logic.

Owns the named webhook registrations, validates inbound signatures,
runs handlers under a per-attempt deadline with a fixed delay between
attempts, and pushes signed outbound deliveries over HTTP.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog

from src.integrations.errors import (
    DeliveryError,
    DeliveryTimeoutError,
    DuplicateRegistrationError,
    IntegrationResult,
    InvalidSignatureError,
    NotFoundError,
)
from src.integrations.types import DEFAULT_WEBHOOK_EVENT, WebhookPayload
from src.webhooks.events import EventBus, NotificationType
from src.webhooks.models import (
    DeliveryDirection,
    WebhookDelivery,
    WebhookDeliveryConfig,
    WebhookDeliveryStatus,
    WebhookHandler,
    WebhookRegistration,
)
from src.webhooks.security import (
    SIGNATURE_HEADER,
    create_signature_headers,
    get_header,
    serialize_payload,
    verify,
)

logger = structlog.get_logger(__name__)

TEST_EVENT = "webhook.test"
USER_AGENT = "IntegrationHub-Webhook/1.0"

# Keep at most this many delivery records per registration
MAX_DELIVERY_HISTORY = 100


class _AttemptFailed(Exception):
    """A single attempt failed.

    Attributes:
        retryable: Whether another attempt may succeed.
        timed_out: Whether the attempt hit its deadline.
    """

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.timed_out = timed_out


class WebhookDispatcher:
    """Routes webhook traffic for named registrations.

    Features:
    - Reject-by-default registration with an explicit replace path
    - HMAC signature validation for inbound calls (never retried)
    - Bounded retries with a per-attempt timeout and fixed retry delay
    - Signed outbound delivery via httpx
    - Delivery records for debugging
    """

    def __init__(self, events: EventBus | None = None) -> None:
        """Initialize the dispatcher.

        Args:
            events: Notification bus (a private one is created if omitted).
        """
        self.events = events or EventBus()
        self._registrations: dict[str, WebhookRegistration] = {}
        self._deliveries: dict[str, list[WebhookDelivery]] = {}
        self._logger = logger.bind(component="webhook_dispatcher")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        name: str,
        config: WebhookDeliveryConfig,
        handler: WebhookHandler,
    ) -> IntegrationResult:
        """Register a webhook under a unique name.

        Args:
            name: Registration name.
            config: Delivery configuration.
            handler: Inbound handler.

        Returns:
            Success, or DUPLICATE_REGISTRATION if the name is taken.
        """
        if name in self._registrations:
            self._logger.warning("webhook_already_registered", name=name)
            return IntegrationResult.from_error(DuplicateRegistrationError("Webhook", name))

        return await self._store(name, config, handler)

    async def replace(
        self,
        name: str,
        config: WebhookDeliveryConfig,
        handler: WebhookHandler,
    ) -> IntegrationResult:
        """Register a webhook, overwriting any existing registration."""
        if name in self._registrations:
            self._logger.info("webhook_replaced", name=name)
        return await self._store(name, config, handler)

    async def _store(
        self,
        name: str,
        config: WebhookDeliveryConfig,
        handler: WebhookHandler,
    ) -> IntegrationResult:
        self._registrations[name] = WebhookRegistration(name=name, config=config, handler=handler)
        self._deliveries.setdefault(name, [])

        self._logger.info(
            "webhook_registered",
            name=name,
            url=config.url,
            signed=bool(config.secret),
            max_retries=config.max_retries,
        )
        await self.events.emit(NotificationType.WEBHOOK_REGISTERED, name=name, url=config.url)

        return IntegrationResult.ok({"name": name, "url": config.url})

    async def unregister(self, name: str) -> IntegrationResult:
        """Remove a registration.

        Returns:
            Success, or NOT_FOUND if absent.
        """
        if name not in self._registrations:
            return IntegrationResult.from_error(NotFoundError("Webhook", name))

        del self._registrations[name]
        self._deliveries.pop(name, None)

        self._logger.info("webhook_unregistered", name=name)
        await self.events.emit(NotificationType.WEBHOOK_UNREGISTERED, name=name)

        return IntegrationResult.ok({"name": name})

    def get(self, name: str) -> WebhookRegistration | None:
        """Get a registration by name."""
        return self._registrations.get(name)

    def list_registrations(self) -> list[WebhookRegistration]:
        """List all registrations."""
        return list(self._registrations.values())

    def list_deliveries(
        self,
        name: str,
        *,
        limit: int = 50,
        status: WebhookDeliveryStatus | None = None,
    ) -> list[WebhookDelivery]:
        """List recent deliveries for a registration, newest first."""
        deliveries = list(self._deliveries.get(name, []))
        if status:
            deliveries = [d for d in deliveries if d.status == status]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[:limit]

    def _track(self, delivery: WebhookDelivery) -> None:
        history = self._deliveries.setdefault(delivery.name, [])
        history.append(delivery)
        if len(history) > MAX_DELIVERY_HISTORY:
            del history[: len(history) - MAX_DELIVERY_HISTORY]

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def deliver_inbound(
        self,
        name: str,
        raw_payload: Any,
        headers: dict[str, str] | None = None,
    ) -> IntegrationResult:
        """Validate and process an inbound webhook call.

        Args:
            name: Registration name.
            raw_payload: Body as received (bytes, JSON string or parsed JSON).
                Signatures are checked against these exact bytes.
            headers: Request headers.

        Returns:
            The handler's result on success; NOT_FOUND, INVALID_SIGNATURE
            or DELIVERY_FAILURE otherwise.
        """
        headers = headers or {}
        registration = self._registrations.get(name)
        if not registration:
            return IntegrationResult.from_error(NotFoundError("Webhook", name))

        config = registration.config
        header_name = config.signature_header or SIGNATURE_HEADER
        provided_signature = get_header(headers, header_name)

        data = _parse_body(raw_payload)
        event = data.get("event") if isinstance(data, dict) else None
        payload = WebhookPayload(
            event=event if isinstance(event, str) and event else DEFAULT_WEBHOOK_EVENT,
            data=data,
            source=name,
            signature=provided_signature,
        )

        if config.secret and not verify(
            config.secret,
            raw_payload,
            provided_signature,
            config.signature_prefix,
        ):
            self._logger.warning("webhook_signature_rejected", name=name, payload_id=payload.id)
            return IntegrationResult.from_error(InvalidSignatureError(name))

        delivery = WebhookDelivery(
            name=name,
            direction=DeliveryDirection.INBOUND,
            event=payload.event,
            payload_id=payload.id,
            max_attempts=config.max_attempts,
        )
        self._track(delivery)

        return await self._run_handler(registration, payload, delivery)

    async def test_registration(self, name: str) -> IntegrationResult:
        """Send a synthetic ``webhook.test`` payload through the handler.

        Signature checks are bypassed; retries and timeouts still apply.
        """
        registration = self._registrations.get(name)
        if not registration:
            return IntegrationResult.from_error(NotFoundError("Webhook", name))

        payload = WebhookPayload(
            event=TEST_EVENT,
            data={"test": True, "message": "This is a test webhook delivery"},
            source=name,
        )
        delivery = WebhookDelivery(
            name=name,
            direction=DeliveryDirection.INBOUND,
            event=TEST_EVENT,
            payload_id=payload.id,
            max_attempts=registration.config.max_attempts,
        )
        self._track(delivery)

        result = await self._run_handler(registration, payload, delivery)
        self._logger.info("webhook_tested", name=name, success=result.success)
        return result

    async def _run_handler(
        self,
        registration: WebhookRegistration,
        payload: WebhookPayload,
        delivery: WebhookDelivery,
    ) -> IntegrationResult:
        config = registration.config

        async def attempt() -> IntegrationResult:
            try:
                result = await asyncio.wait_for(
                    registration.handler(payload),
                    timeout=config.timeout_seconds,
                )
            except TimeoutError as e:
                timeout = DeliveryTimeoutError(registration.name, config.timeout_seconds)
                raise _AttemptFailed(timeout.message, timed_out=True) from e
            except _AttemptFailed:
                raise
            except Exception as e:
                raise _AttemptFailed(str(e) or e.__class__.__name__) from e

            if not result.success:
                raise _AttemptFailed(result.error or "Handler reported failure")
            return result

        result = await self._with_retry(registration.name, config, delivery, attempt)

        if result.success:
            await self.events.emit(
                NotificationType.WEBHOOK_PROCESSED,
                name=registration.name,
                direction=DeliveryDirection.INBOUND.value,
                payload=payload.to_json_dict(),
                attempts=delivery.attempt_count,
            )
        else:
            await self.events.emit(
                NotificationType.WEBHOOK_FAILED,
                name=registration.name,
                direction=DeliveryDirection.INBOUND.value,
                payload=payload.to_json_dict(),
                error=result.error,
                attempts=delivery.attempt_count,
            )
        return result

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def deliver_outbound(
        self,
        name: str,
        event: str,
        data: Any,
    ) -> IntegrationResult:
        """POST a signed event to the registration's target URL.

        Retries on timeouts, transport errors and 5xx responses; 4xx
        responses fail immediately.

        Args:
            name: Registration name.
            event: Event name, sent in the X-Webhook-Event header.
            data: Event data.

        Returns:
            Success with the remote status/body, or a failed result.
        """
        registration = self._registrations.get(name)
        if not registration:
            return IntegrationResult.from_error(NotFoundError("Webhook", name))

        config = registration.config
        payload = WebhookPayload(event=event, data=data, source=name)
        body = serialize_payload(payload.to_json_dict())

        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Name": name,
            "X-Webhook-Event": event,
            "X-Webhook-Id": payload.id,
            **config.custom_headers,
        }
        if config.secret:
            headers.update(
                create_signature_headers(
                    body,
                    config.secret,
                    header=config.signature_header or SIGNATURE_HEADER,
                    prefix=config.signature_prefix,
                )
            )

        return await self.post_with_retry(
            name,
            config,
            body,
            headers,
            event=event,
            payload_id=payload.id,
        )

    async def post_with_retry(
        self,
        name: str,
        config: WebhookDeliveryConfig,
        body: bytes,
        headers: dict[str, str],
        *,
        event: str,
        payload_id: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> IntegrationResult:
        """POST a prepared body to ``config.url`` under the retry policy.

        Shared by registered outbound webhooks and adapters with their own
        wire format. Each attempt runs under ``config.timeout_seconds``.
        Timeouts, transport errors and 5xx responses are retried; 4xx
        responses fail immediately.

        Args:
            name: Name the delivery record is kept under.
            config: Target URL and retry settings.
            body: Serialized (already signed) request body.
            headers: Request headers.
            event: Event name for the delivery record.
            payload_id: Payload id for the delivery record.
            client: HTTP client to reuse; a short-lived one is opened per
                attempt if omitted.

        Returns:
            Success with the remote status and body, or DELIVERY_FAILURE.
        """
        delivery = WebhookDelivery(
            name=name,
            direction=DeliveryDirection.OUTBOUND,
            event=event,
            payload_id=payload_id,
            max_attempts=config.max_attempts,
        )
        self._track(delivery)

        async def send(http: httpx.AsyncClient) -> httpx.Response:
            return await asyncio.wait_for(
                http.post(config.url, content=body, headers=headers),
                timeout=config.timeout_seconds,
            )

        async def attempt() -> IntegrationResult:
            try:
                if client is not None:
                    response = await send(client)
                else:
                    async with httpx.AsyncClient(timeout=config.timeout_seconds) as http:
                        response = await send(http)
            except (TimeoutError, httpx.TimeoutException) as e:
                raise _AttemptFailed("Request timeout", timed_out=True) from e
            except httpx.HTTPError as e:
                raise _AttemptFailed(f"Connection error: {e}") from e

            delivery.response_status = response.status_code
            if not response.is_success:
                raise _AttemptFailed(
                    f"HTTP {response.status_code}",
                    retryable=response.status_code >= 500,
                )
            return IntegrationResult.ok(
                {
                    "event": event,
                    "status": response.status_code,
                    "body": response.text[:1000],
                }
            )

        result = await self._with_retry(name, config, delivery, attempt)

        notification = (
            NotificationType.WEBHOOK_PROCESSED if result.success else NotificationType.WEBHOOK_FAILED
        )
        await self.events.emit(
            notification,
            name=name,
            direction=DeliveryDirection.OUTBOUND.value,
            event=event,
            error=result.error,
            attempts=delivery.attempt_count,
        )
        return result

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    async def _with_retry(
        self,
        name: str,
        config: WebhookDeliveryConfig,
        delivery: WebhookDelivery,
        attempt: Callable[[], Awaitable[IntegrationResult]],
    ) -> IntegrationResult:
        """Run ``attempt`` up to ``max_retries + 1`` times.

        Returns:
            The first successful result, or DELIVERY_FAILURE carrying the
            last error once attempts are exhausted.
        """
        max_attempts = config.max_attempts
        last_failure: _AttemptFailed | None = None

        for attempt_number in range(1, max_attempts + 1):
            delivery.record_attempt()
            try:
                result = await attempt()
            except _AttemptFailed as failure:
                last_failure = failure
                self._logger.warning(
                    "delivery_attempt_failed",
                    name=name,
                    delivery_id=delivery.id,
                    attempt=attempt_number,
                    max_attempts=max_attempts,
                    timed_out=failure.timed_out,
                    error=failure.message,
                )
                if not failure.retryable:
                    break
                if attempt_number < max_attempts:
                    delivery.mark_retrying(failure.message)
                    await asyncio.sleep(config.retry_delay_seconds)
                continue

            delivery.mark_success()
            self._logger.info(
                "delivery_success",
                name=name,
                delivery_id=delivery.id,
                attempts=delivery.attempt_count,
            )
            return result

        last_error = last_failure.message if last_failure else None
        delivery.mark_failed(last_error)
        error = DeliveryError(
            name,
            attempts=delivery.attempt_count,
            last_error=last_error,
        )
        self._logger.error(
            "delivery_failed_permanently",
            name=name,
            delivery_id=delivery.id,
            attempts=delivery.attempt_count,
            error=last_error,
        )
        result = IntegrationResult.from_error(error)
        if last_failure and last_failure.timed_out:
            result.details["timed_out"] = True
        return result

    async def shutdown(self) -> None:
        """Drop all registrations and delivery records."""
        self._logger.info("webhook_dispatcher_shutdown", registrations=len(self._registrations))
        self._registrations.clear()
        self._deliveries.clear()


def _parse_body(raw_payload: Any) -> Any:
    """Parse a raw body into JSON data, falling back to the raw text."""
    if isinstance(raw_payload, bytes | str):
        text = raw_payload.decode("utf-8", errors="replace") if isinstance(raw_payload, bytes) else raw_payload
        try:
            return json.loads(text)
        except ValueError:
            return text
    return raw_payload
