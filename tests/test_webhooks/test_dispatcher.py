"""Tests for webhook dispatcher module."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.integrations.errors import ErrorCode, IntegrationResult
from src.integrations.types import WebhookPayload
from src.webhooks.dispatcher import TEST_EVENT, WebhookDispatcher
from src.webhooks.events import EventBus, NotificationType
from src.webhooks.models import (
    DeliveryDirection,
    WebhookDeliveryConfig,
    WebhookDeliveryStatus,
)
from src.webhooks.security import SIGNATURE_HEADER, sign

SECRET = "whsec_dispatcher_test"

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def events():
    """Create event bus with a recording listener."""
    bus = EventBus()
    bus.received = []
    bus.add_listener(bus.received.append)
    return bus


@pytest.fixture
def dispatcher(events):
    """Create test webhook dispatcher."""
    return WebhookDispatcher(events=events)


@pytest.fixture
def config():
    """Signed delivery config without retry delay."""
    return WebhookDeliveryConfig(
        url="https://example.com/hook",
        secret=SECRET,
        max_retries=2,
        retry_delay_seconds=0,
        timeout_seconds=1,
    )


@pytest.fixture
def handler():
    """Handler that always succeeds."""
    return AsyncMock(return_value=IntegrationResult.ok({"handled": True}))


@pytest.fixture
def body():
    """Raw inbound body."""
    return json.dumps({"event": "contact.created", "data": {"id": "c_1"}}).encode()


def _types(events):
    return [n.type for n in events.received]


# ============================================================================
# Registration Tests
# ============================================================================


class TestRegistration:
    """Tests for registration management."""

    @pytest.mark.asyncio
    async def test_register(self, dispatcher, config, handler, events):
        """Test registering a webhook."""
        result = await dispatcher.register("zapier", config, handler)

        assert result.success is True
        assert dispatcher.get("zapier").config is config
        assert _types(events) == [NotificationType.WEBHOOK_REGISTERED]

    @pytest.mark.asyncio
    async def test_register_duplicate_rejected(self, dispatcher, config, handler):
        """Test duplicate names are rejected and the original kept."""
        await dispatcher.register("zapier", config, handler)
        other = AsyncMock()

        result = await dispatcher.register("zapier", config, other)

        assert result.success is False
        assert result.error_code == ErrorCode.DUPLICATE_REGISTRATION
        assert dispatcher.get("zapier").handler is handler

    @pytest.mark.asyncio
    async def test_replace(self, dispatcher, config, handler):
        """Test replace overwrites an existing registration."""
        await dispatcher.register("zapier", config, handler)
        other = AsyncMock(return_value=IntegrationResult.ok())

        result = await dispatcher.replace("zapier", config, other)

        assert result.success is True
        assert dispatcher.get("zapier").handler is other

    @pytest.mark.asyncio
    async def test_unregister(self, dispatcher, config, handler, events):
        """Test unregistering removes the webhook."""
        await dispatcher.register("zapier", config, handler)

        result = await dispatcher.unregister("zapier")

        assert result.success is True
        assert dispatcher.get("zapier") is None
        assert NotificationType.WEBHOOK_UNREGISTERED in _types(events)

    @pytest.mark.asyncio
    async def test_unregister_unknown(self, dispatcher):
        """Test unregistering an unknown name."""
        result = await dispatcher.unregister("missing")

        assert result.success is False
        assert result.error_code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_list_registrations(self, dispatcher, config, handler):
        """Test listing registrations."""
        await dispatcher.register("zapier", config, handler)
        await dispatcher.register("slack", config, handler)

        names = {r.name for r in dispatcher.list_registrations()}

        assert names == {"zapier", "slack"}


# ============================================================================
# Inbound Delivery Tests
# ============================================================================


class TestDeliverInbound:
    """Tests for inbound delivery."""

    @pytest.mark.asyncio
    async def test_unknown_registration(self, dispatcher, body):
        """Test delivery to an unknown name."""
        result = await dispatcher.deliver_inbound("missing", body, {})

        assert result.success is False
        assert result.error_code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_valid_signature(self, dispatcher, config, handler, body, events):
        """Test a correctly signed body reaches the handler once."""
        await dispatcher.register("zapier", config, handler)

        result = await dispatcher.deliver_inbound(
            "zapier", body, {SIGNATURE_HEADER: sign(SECRET, body)}
        )

        assert result.success is True
        assert result.data == {"handled": True}
        handler.assert_awaited_once()

        payload = handler.await_args.args[0]
        assert isinstance(payload, WebhookPayload)
        assert payload.event == "contact.created"
        assert payload.source == "zapier"
        assert payload.data["data"] == {"id": "c_1"}
        assert payload.signature == sign(SECRET, body)

        delivery = dispatcher.list_deliveries("zapier")[0]
        assert delivery.direction == DeliveryDirection.INBOUND
        assert delivery.status == WebhookDeliveryStatus.SUCCESS
        assert delivery.attempt_count == 1
        assert _types(events)[-1] == NotificationType.WEBHOOK_PROCESSED

    @pytest.mark.asyncio
    async def test_header_lookup_case_insensitive(self, dispatcher, config, handler, body):
        """Test lower-cased header names from HTTP servers are accepted."""
        await dispatcher.register("zapier", config, handler)

        result = await dispatcher.deliver_inbound(
            "zapier", body, {SIGNATURE_HEADER.lower(): sign(SECRET, body)}
        )

        assert result.success is True

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, dispatcher, config, handler, body, events):
        """Test a tampered body is rejected without side effects."""
        await dispatcher.register("zapier", config, handler)
        signature = sign(SECRET, body)
        tampered = body.replace(b"c_1", b"c_2")
        received_before = len(events.received)

        result = await dispatcher.deliver_inbound("zapier", tampered, {SIGNATURE_HEADER: signature})

        assert result.success is False
        assert result.error_code == ErrorCode.INVALID_SIGNATURE
        assert handler.await_count == 0
        assert dispatcher.list_deliveries("zapier") == []
        assert len(events.received) == received_before

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, dispatcher, config, handler, body):
        """Test an unsigned body is rejected when a secret is configured."""
        await dispatcher.register("zapier", config, handler)

        result = await dispatcher.deliver_inbound("zapier", body, {})

        assert result.error_code == ErrorCode.INVALID_SIGNATURE
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_secret_skips_verification(self, dispatcher, handler, body):
        """Test registrations without a secret accept unsigned bodies."""
        config = WebhookDeliveryConfig(url="https://example.com/hook", retry_delay_seconds=0)
        await dispatcher.register("open", config, handler)

        result = await dispatcher.deliver_inbound("open", body, {})

        assert result.success is True
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_custom_header_and_prefix(self, dispatcher, handler, body):
        """Test per-registration signature header and prefix."""
        config = WebhookDeliveryConfig(
            url="https://example.com/hook",
            secret=SECRET,
            signature_header="X-Hub-Signature-256",
            signature_prefix="sha256=",
            retry_delay_seconds=0,
        )
        await dispatcher.register("github", config, handler)

        result = await dispatcher.deliver_inbound(
            "github", body, {"X-Hub-Signature-256": "sha256=" + sign(SECRET, body)}
        )

        assert result.success is True

    @pytest.mark.asyncio
    async def test_default_event_and_text_body(self, dispatcher, handler):
        """Test non-JSON bodies are passed through with the default event."""
        config = WebhookDeliveryConfig(url="https://example.com/hook", retry_delay_seconds=0)
        await dispatcher.register("plain", config, handler)

        await dispatcher.deliver_inbound("plain", b"hello", {})

        payload = handler.await_args.args[0]
        assert payload.event == "webhook.received"
        assert payload.data == "hello"

    @pytest.mark.asyncio
    async def test_dict_payload(self, dispatcher, handler):
        """Test already-parsed payloads are accepted."""
        body = {"event": "deal.created", "data": {"amount": 10}}
        config = WebhookDeliveryConfig(
            url="https://example.com/hook",
            secret=SECRET,
            retry_delay_seconds=0,
        )
        await dispatcher.register("zapier", config, handler)

        result = await dispatcher.deliver_inbound(
            "zapier", body, {SIGNATURE_HEADER: sign(SECRET, body)}
        )

        assert result.success is True
        assert handler.await_args.args[0].event == "deal.created"


# ============================================================================
# Retry Tests
# ============================================================================


class TestRetry:
    """Tests for bounded retries and timeouts."""

    @pytest.mark.asyncio
    async def test_always_failing_handler(self, dispatcher, config, body, events):
        """Test a failing handler runs max_retries + 1 times."""
        handler = AsyncMock(return_value=IntegrationResult.fail("downstream unavailable"))
        await dispatcher.register("zapier", config, handler)

        result = await dispatcher.deliver_inbound(
            "zapier", body, {SIGNATURE_HEADER: sign(SECRET, body)}
        )

        assert handler.await_count == 3
        assert result.success is False
        assert result.error_code == ErrorCode.DELIVERY_FAILURE
        assert "downstream unavailable" in result.error
        assert result.details["attempts"] == 3

        delivery = dispatcher.list_deliveries("zapier")[0]
        assert delivery.status == WebhookDeliveryStatus.FAILED
        assert delivery.attempt_count == 3
        assert _types(events)[-1] == NotificationType.WEBHOOK_FAILED

    @pytest.mark.asyncio
    async def test_single_retry_exhausted(self, dispatcher, body, events):
        """Test max_retries=1 gives two attempts and one failure notification."""
        handler = AsyncMock(return_value=IntegrationResult.fail("still down"))
        config = WebhookDeliveryConfig(
            url="https://example.com/hook",
            max_retries=1,
            retry_delay_seconds=0,
        )
        await dispatcher.register("slack", config, handler)

        result = await dispatcher.deliver_inbound("slack", body, {})

        assert handler.await_count == 2
        assert result.success is False
        assert result.error_code == ErrorCode.DELIVERY_FAILURE
        assert result.details["attempts"] == 2
        assert _types(events).count(NotificationType.WEBHOOK_FAILED) == 1
        assert NotificationType.WEBHOOK_PROCESSED not in _types(events)

    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, dispatcher, config, body):
        """Test a handler that recovers is retried until success."""
        handler = AsyncMock(
            side_effect=[
                IntegrationResult.fail("first"),
                RuntimeError("second"),
                IntegrationResult.ok({"ok": True}),
            ]
        )
        await dispatcher.register("zapier", config, handler)

        result = await dispatcher.deliver_inbound(
            "zapier", body, {SIGNATURE_HEADER: sign(SECRET, body)}
        )

        assert result.success is True
        assert result.data == {"ok": True}
        assert handler.await_count == 3
        assert dispatcher.list_deliveries("zapier")[0].attempt_count == 3

    @pytest.mark.asyncio
    async def test_zero_retries(self, dispatcher, body):
        """Test max_retries=0 gives a single attempt."""
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        config = WebhookDeliveryConfig(url="https://example.com/hook", max_retries=0)
        await dispatcher.register("once", config, handler)

        result = await dispatcher.deliver_inbound("once", body, {})

        assert handler.await_count == 1
        assert result.error_code == ErrorCode.DELIVERY_FAILURE
        assert "boom" in result.error

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, dispatcher, body):
        """Test a slow handler is abandoned at the deadline and retried."""
        calls = 0

        async def slow_handler(payload):
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)
            return IntegrationResult.ok()

        config = WebhookDeliveryConfig(
            url="https://example.com/hook",
            timeout_seconds=0.05,
            max_retries=1,
            retry_delay_seconds=0,
        )
        await dispatcher.register("slow", config, slow_handler)

        result = await dispatcher.deliver_inbound("slow", body, {})

        assert calls == 2
        assert result.success is False
        assert result.error_code == ErrorCode.DELIVERY_FAILURE
        assert result.details["timed_out"] is True
        assert "timeout" in result.error.lower()

    @pytest.mark.asyncio
    async def test_retry_delay_applied(self, dispatcher, body):
        """Test the configured delay is awaited between attempts."""
        handler = AsyncMock(return_value=IntegrationResult.fail("nope"))
        config = WebhookDeliveryConfig(
            url="https://example.com/hook",
            max_retries=2,
            retry_delay_seconds=0.25,
        )
        await dispatcher.register("delayed", config, handler)

        with patch("src.webhooks.dispatcher.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            await dispatcher.deliver_inbound("delayed", body, {})

        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(0.25)


# ============================================================================
# Test Registration Tests
# ============================================================================


class TestTestRegistration:
    """Tests for synthetic test deliveries."""

    @pytest.mark.asyncio
    async def test_sends_test_event(self, dispatcher, config, handler):
        """Test the handler receives a webhook.test payload without a signature."""
        await dispatcher.register("zapier", config, handler)

        result = await dispatcher.test_registration("zapier")

        assert result.success is True
        payload = handler.await_args.args[0]
        assert payload.event == TEST_EVENT
        assert payload.data["test"] is True

    @pytest.mark.asyncio
    async def test_unknown(self, dispatcher):
        """Test testing an unknown registration."""
        result = await dispatcher.test_registration("missing")

        assert result.error_code == ErrorCode.NOT_FOUND


# ============================================================================
# Outbound Delivery Tests
# ============================================================================


class TestDeliverOutbound:
    """Tests for outbound HTTP delivery."""

    @pytest.mark.asyncio
    async def test_successful_delivery(self, dispatcher, config, handler):
        """Test successful delivery sends signed headers."""
        await dispatcher.register("zapier", config, handler)

        mock_response = MagicMock()
        mock_response.is_success = True
        mock_response.status_code = 200
        mock_response.text = "OK"

        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(return_value=mock_response)
            mock_client.return_value.__aenter__.return_value.post = post

            result = await dispatcher.deliver_outbound("zapier", "deal.created", {"id": "d_1"})

        assert result.success is True
        assert result.data["status"] == 200

        url = post.await_args.args[0]
        sent_body = post.await_args.kwargs["content"]
        headers = post.await_args.kwargs["headers"]
        assert url == "https://example.com/hook"
        assert headers["X-Webhook-Name"] == "zapier"
        assert headers["X-Webhook-Event"] == "deal.created"
        assert headers[SIGNATURE_HEADER] == sign(SECRET, sent_body)
        assert json.loads(sent_body)["data"] == {"id": "d_1"}

        delivery = dispatcher.list_deliveries("zapier")[0]
        assert delivery.direction == DeliveryDirection.OUTBOUND
        assert delivery.response_status == 200

    @pytest.mark.asyncio
    async def test_5xx_retried(self, dispatcher, config, handler):
        """Test server errors are retried up to the limit."""
        await dispatcher.register("zapier", config, handler)

        mock_response = MagicMock()
        mock_response.is_success = False
        mock_response.status_code = 503

        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(return_value=mock_response)
            mock_client.return_value.__aenter__.return_value.post = post

            result = await dispatcher.deliver_outbound("zapier", "deal.created", {})

        assert post.await_count == 3
        assert result.error_code == ErrorCode.DELIVERY_FAILURE
        assert "HTTP 503" in result.error

    @pytest.mark.asyncio
    async def test_4xx_not_retried(self, dispatcher, config, handler):
        """Test client errors fail immediately."""
        await dispatcher.register("zapier", config, handler)

        mock_response = MagicMock()
        mock_response.is_success = False
        mock_response.status_code = 400

        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(return_value=mock_response)
            mock_client.return_value.__aenter__.return_value.post = post

            result = await dispatcher.deliver_outbound("zapier", "deal.created", {})

        assert post.await_count == 1
        assert result.success is False
        assert dispatcher.list_deliveries("zapier")[0].response_status == 400

    @pytest.mark.asyncio
    async def test_timeout(self, dispatcher, config, handler):
        """Test transport timeouts are reported as timed out."""
        await dispatcher.register("zapier", config, handler)

        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = AsyncMock(
                side_effect=httpx.TimeoutException("Timeout")
            )

            result = await dispatcher.deliver_outbound("zapier", "deal.created", {})

        assert result.success is False
        assert result.details["timed_out"] is True
        assert "timeout" in dispatcher.list_deliveries("zapier")[0].error_message.lower()

    @pytest.mark.asyncio
    async def test_connection_error(self, dispatcher, config, handler):
        """Test connection errors are retried then reported."""
        await dispatcher.register("zapier", config, handler)

        with patch("httpx.AsyncClient") as mock_client:
            post = AsyncMock(side_effect=httpx.ConnectError("refused"))
            mock_client.return_value.__aenter__.return_value.post = post

            result = await dispatcher.deliver_outbound("zapier", "deal.created", {})

        assert post.await_count == 3
        assert "Connection error" in result.error

    @pytest.mark.asyncio
    async def test_unknown(self, dispatcher):
        """Test outbound delivery to an unknown name."""
        result = await dispatcher.deliver_outbound("missing", "deal.created", {})

        assert result.error_code == ErrorCode.NOT_FOUND


# ============================================================================
# Shutdown Tests
# ============================================================================


class TestShutdown:
    """Tests for dispatcher shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_clears_state(self, dispatcher, config, handler):
        """Test shutdown drops registrations and deliveries."""
        await dispatcher.register("zapier", config, handler)
        await dispatcher.test_registration("zapier")

        await dispatcher.shutdown()

        assert dispatcher.list_registrations() == []
        assert dispatcher.list_deliveries("zapier") == []
