"""Slack integration for CRM notifications and team communication.

Provides bot-token authentication, channel/user listing, outbound
messages formatted from CRM events, and inbound Events API /
interactive-component handling.
"""

import json
from datetime import UTC, datetime
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from src.integrations.base import BaseIntegration
from src.integrations.errors import ErrorCode, IntegrationResult
from src.integrations.types import (
    BearerTokenCredentials,
    IntegrationCredentials,
    OAuth2Credentials,
    WebhookPayload,
)
from src.webhooks.models import WebhookHandler

NOT_AUTHENTICATED = "Slack not authenticated"
FOOTER = "Integration Hub"


class SlackField(BaseModel):
    """Attachment field."""

    title: str
    value: str
    short: bool = False


class SlackAction(BaseModel):
    """Interactive attachment action."""

    name: str
    text: str
    type: Literal["button", "select"] = "button"
    value: str | None = None
    style: Literal["default", "primary", "danger"] = "default"


class SlackAttachment(BaseModel):
    """Legacy message attachment."""

    color: str | None = None
    pretext: str | None = None
    title: str | None = None
    title_link: str | None = None
    text: str | None = None
    fallback: str | None = None
    fields: list[SlackField] = Field(default_factory=list)
    actions: list[SlackAction] = Field(default_factory=list)
    footer: str | None = None
    ts: int | None = None


class SlackMessage(BaseModel):
    """chat.postMessage request body."""

    channel: str
    text: str = ""
    username: str | None = None
    icon_emoji: str | None = None
    attachments: list[SlackAttachment] = Field(default_factory=list)
    blocks: list[dict[str, Any]] = Field(default_factory=list)
    thread_ts: str | None = None

    def to_api(self) -> dict[str, Any]:
        """Serialize for the Slack API, omitting unset fields."""
        return self.model_dump(exclude_none=True)


class SlackChannel(BaseModel):
    """Channel summary."""

    id: str
    name: str
    is_channel: bool = False
    is_group: bool = False
    is_im: bool = False
    is_member: bool = False
    is_private: bool = False


class SlackUser(BaseModel):
    """Workspace member summary."""

    id: str
    name: str
    real_name: str | None = None
    email: str | None = None
    is_bot: bool = False


class SlackError(Exception):
    """Slack API returned ok=false or an HTTP error."""


def _money(value: Any) -> str:
    try:
        return f"${float(value):,.2f}"
    except (TypeError, ValueError):
        return "N/A"


def format_crm_notification(event: str, data: dict[str, Any]) -> SlackMessage:
    """Format a CRM domain event into a Slack message.

    Args:
        event: CRM event name, e.g. ``deal.created``.
        data: Event data.

    Returns:
        Message with channel left as ``#general``.
    """
    ts = int(datetime.now(UTC).timestamp())
    message = SlackMessage(channel="#general", username="Integration Hub", icon_emoji=":office:")

    if event == "contact.created":
        message.text = "New Contact Created"
        fields = [
            SlackField(title="Name", value=f"{data.get('first_name', '')} {data.get('last_name', '')}".strip(), short=True),
            SlackField(title="Email", value=data.get("email") or "N/A", short=True),
            SlackField(title="Company", value=data.get("company") or "N/A", short=True),
            SlackField(title="Phone", value=data.get("phone") or "N/A", short=True),
        ]
        color = "good"
    elif event == "deal.created":
        message.text = "New Deal Created"
        fields = [
            SlackField(title="Deal Name", value=str(data.get("name", "")), short=True),
            SlackField(title="Amount", value=_money(data.get("amount")), short=True),
            SlackField(title="Stage", value=str(data.get("stage", "")), short=True),
            SlackField(title="Probability", value=f"{data.get('probability') or 0}%", short=True),
        ]
        color = "warning"
    elif event == "deal.stage_changed":
        message.text = "Deal Stage Updated"
        fields = [
            SlackField(title="Deal", value=str(data.get("name", "")), short=True),
            SlackField(title="Old Stage", value=str(data.get("previous_stage", "")), short=True),
            SlackField(title="New Stage", value=str(data.get("current_stage", "")), short=True),
            SlackField(title="Amount", value=_money(data.get("amount")), short=True),
        ]
        color = "warning"
    elif event == "task.created":
        message.text = "New Task Created"
        fields = [
            SlackField(title="Task", value=str(data.get("title", ""))),
            SlackField(title="Priority", value=str(data.get("priority", "medium")), short=True),
            SlackField(title="Due Date", value=str(data.get("due_date") or "N/A"), short=True),
            SlackField(title="Assigned To", value=data.get("assigned_to") or "Unassigned", short=True),
        ]
        color = "#36a64f"
    elif event == "payment.received":
        message.text = "Payment Received"
        fields = [
            SlackField(title="Amount", value=_money(data.get("amount")), short=True),
            SlackField(title="Customer", value=str(data.get("customer", "")), short=True),
            SlackField(title="Invoice", value=data.get("invoice") or "N/A", short=True),
            SlackField(title="Payment Method", value=str(data.get("payment_method", "")), short=True),
        ]
        color = "good"
    else:
        message.text = f"CRM Event: {event}"
        message.attachments = [
            SlackAttachment(
                color="#439FE0",
                text=json.dumps(data, indent=2, default=str),
                footer=FOOTER,
                ts=ts,
            )
        ]
        return message

    message.attachments = [SlackAttachment(color=color, fields=fields, footer=FOOTER, ts=ts)]
    return message


class SlackIntegration(BaseIntegration):
    """Chat-notification adapter for Slack.

    The bot token comes from ``config.access_token`` or from
    ``authenticate`` with OAuth2 / bearer-token credentials.
    """

    name = "Slack"
    type = "communication"
    version = "1.0.0"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._bot_token: str | None = self.config.access_token
        self._app_token: str | None = None

    def _client_defaults(self) -> dict[str, Any]:
        defaults = super()._client_defaults()
        defaults["base_url"] = self.config.base_url or self.settings.SLACK_API_BASE_URL
        return defaults

    async def _call(self, method: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call a Slack Web API method.

        Raises:
            SlackError: On HTTP failure or ``ok: false``.
        """
        client = await self._get_client()
        try:
            response = await client.post(
                f"/{method}",
                json=body or {},
                headers={"Authorization": f"Bearer {self._bot_token}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SlackError(f"{method} failed: {e}") from e

        data = response.json()
        if not data.get("ok"):
            raise SlackError(data.get("error") or f"{method} failed")
        return data

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> IntegrationResult:
        """Verify the bot token with auth.test."""
        self._logger.info("slack_initializing")

        if not self._bot_token:
            return IntegrationResult.fail(NOT_AUTHENTICATED, ErrorCode.AUTHENTICATION_FAILURE)

        auth = await self._test_auth()
        if not auth.success:
            return auth

        self.enabled = True
        self._logger.info("slack_initialized", team=auth.data.get("team"))
        return IntegrationResult.ok(
            {"bot_token": True, "team": auth.data.get("team"), "webhook_url": self.config.webhook_url}
        )

    async def authenticate(self, credentials: IntegrationCredentials) -> IntegrationResult:
        """Accept OAuth2 or bearer-token credentials and verify them."""
        if isinstance(credentials, OAuth2Credentials):
            self._bot_token = credentials.access_token
            # App-level token travels as the refresh token
            self._app_token = credentials.refresh_token
        elif isinstance(credentials, BearerTokenCredentials):
            self._bot_token = credentials.bearer_token
        else:
            return IntegrationResult.fail(
                "OAuth2 or Bearer Token required for Slack integration",
                ErrorCode.AUTHENTICATION_FAILURE,
            )

        auth = await self._test_auth()
        if not auth.success:
            return auth

        self._logger.info("slack_authenticated")
        return IntegrationResult.ok({"authenticated": True})

    async def disconnect(self) -> IntegrationResult:
        """Forget tokens and close the HTTP client."""
        self.enabled = False
        self._bot_token = None
        self._app_token = None
        await self.close()

        self._logger.info("slack_disconnected")
        return IntegrationResult.ok()

    async def health_check(self) -> IntegrationResult:
        """Report healthy when auth.test succeeds."""
        if not self.enabled or not self._bot_token:
            return IntegrationResult.fail("Slack integration not configured", ErrorCode.INVALID_STATE)

        auth = await self._test_auth()
        if not auth.success:
            return auth

        return IntegrationResult.ok(
            {
                "status": "healthy",
                "team": auth.data.get("team"),
                "user": auth.data.get("user"),
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    async def _test_auth(self) -> IntegrationResult:
        try:
            data = await self._call("auth.test")
        except SlackError as e:
            self._logger.warning("slack_auth_failed", error=str(e))
            return IntegrationResult.fail(str(e), ErrorCode.AUTHENTICATION_FAILURE)
        return IntegrationResult.ok(data)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(self, message: SlackMessage) -> IntegrationResult:
        """Post a message and return Slack's acknowledgment."""
        if not self._bot_token:
            return IntegrationResult.fail(NOT_AUTHENTICATED, ErrorCode.AUTHENTICATION_FAILURE)

        try:
            data = await self._call("chat.postMessage", message.to_api())
        except SlackError as e:
            self._logger.error("slack_send_failed", channel=message.channel, error=str(e))
            return IntegrationResult.fail(str(e), ErrorCode.DELIVERY_FAILURE)

        self._logger.info("slack_message_sent", channel=message.channel)
        return IntegrationResult.ok(
            {"channel": data.get("channel"), "ts": data.get("ts"), "message": data.get("message")}
        )

    async def send_crm_notification(
        self,
        event: str,
        data: dict[str, Any],
        channel: str = "#general",
    ) -> IntegrationResult:
        """Format a CRM event and post it to a channel."""
        message = format_crm_notification(event, data)
        message.channel = channel
        return await self.send_message(message)

    async def send_interactive_message(
        self,
        channel: str,
        text: str,
        actions: list[SlackAction],
    ) -> IntegrationResult:
        """Post a message with buttons or menus."""
        message = SlackMessage(
            channel=channel,
            text=text,
            attachments=[
                SlackAttachment(
                    fallback=text,
                    color="good",
                    actions=[a.model_copy(update={"value": a.value or a.name}) for a in actions],
                )
            ],
        )
        return await self.send_message(message)

    async def get_channels(self) -> IntegrationResult:
        """List public and private channels."""
        if not self._bot_token:
            return IntegrationResult.fail(NOT_AUTHENTICATED, ErrorCode.AUTHENTICATION_FAILURE)

        try:
            data = await self._call(
                "conversations.list",
                {"types": "public_channel,private_channel", "limit": 1000},
            )
        except SlackError as e:
            return IntegrationResult.fail(str(e), ErrorCode.ADAPTER_ERROR)

        return IntegrationResult.ok(
            [SlackChannel.model_validate(channel) for channel in data.get("channels", [])]
        )

    async def get_users(self) -> IntegrationResult:
        """List human workspace members."""
        if not self._bot_token:
            return IntegrationResult.fail(NOT_AUTHENTICATED, ErrorCode.AUTHENTICATION_FAILURE)

        try:
            data = await self._call("users.list", {"limit": 1000})
        except SlackError as e:
            return IntegrationResult.fail(str(e), ErrorCode.ADAPTER_ERROR)

        users = [
            SlackUser(
                id=member["id"],
                name=member.get("name", ""),
                real_name=member.get("real_name"),
                email=(member.get("profile") or {}).get("email"),
                is_bot=member.get("is_bot", False),
            )
            for member in data.get("members", [])
        ]
        return IntegrationResult.ok([user for user in users if not user.is_bot])

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @property
    def webhook_handler(self) -> WebhookHandler | None:
        return self.handle_webhook

    async def handle_webhook(self, payload: WebhookPayload) -> IntegrationResult:
        """Dispatch on the inbound Slack payload kind.

        - ``url_verification``: echo the challenge
        - event callbacks (``event`` key): messages and app mentions
        - ``interactive_message`` / ``block_actions``: button and menu clicks
        """
        data = payload.data if isinstance(payload.data, dict) else {}
        kind = data.get("type")
        self._logger.info("slack_webhook_received", webhook_event=payload.event, kind=kind)

        if kind == "url_verification":
            return IntegrationResult.ok({"challenge": data.get("challenge")})

        if isinstance(data.get("event"), dict):
            return await self._handle_event(data["event"])

        if kind in ("interactive_message", "block_actions"):
            return self._handle_interactive_component(data)

        return IntegrationResult.ok({"processed": True})

    async def _handle_event(self, event: dict[str, Any]) -> IntegrationResult:
        event_type = event.get("type")

        if event_type == "app_mention":
            return await self._handle_bot_mention(event)

        if event_type == "message":
            text = event.get("text") or ""
            if "<@U" in text or event.get("channel_type") == "im":
                return await self._handle_bot_mention(event)
        else:
            self._logger.info("slack_event_unhandled", event_type=event_type)

        return IntegrationResult.ok({"processed": True})

    async def _handle_bot_mention(self, event: dict[str, Any]) -> IntegrationResult:
        text = (event.get("text") or "").lower()

        if "help" in text:
            reply = (
                "Integration Hub bot commands:\n"
                "- `@hub stats` - CRM statistics\n"
                "- `@hub deals` - recent deals\n"
                "- `@hub help` - this message"
            )
        elif "stats" in text:
            reply = "CRM statistics are available in the dashboard."
        else:
            reply = "Hello! Type `@hub help` to see what I can do."

        sent = await self.send_message(
            SlackMessage(channel=event.get("channel", ""), text=reply, thread_ts=event.get("ts"))
        )
        if not sent.success:
            return sent
        return IntegrationResult.ok({"responded": True})

    def _handle_interactive_component(self, data: dict[str, Any]) -> IntegrationResult:
        actions = data.get("actions") or []
        if not actions:
            return IntegrationResult.ok({"processed": True})

        action = actions[0]
        name = action.get("name") or action.get("action_id")
        self._logger.info("slack_action_clicked", action=name, value=action.get("value"))
        return IntegrationResult.ok({"action": name, "value": action.get("value")})
