"""Shared contract types for third-party integrations.

Configuration, credentials, inbound payloads, sync operations and the
CRM record shapes adapters translate vendor data into.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class IntegrationConfig(BaseModel):
    """Per-adapter settings owned by the registry."""

    enabled: bool = Field(default=False, description="Whether the adapter is active")
    api_key: str | None = Field(default=None, description="Vendor API key")
    client_id: str | None = Field(default=None, description="OAuth client id")
    client_secret: str | None = Field(default=None, description="OAuth client secret")
    access_token: str | None = Field(default=None, description="OAuth/bot access token")
    refresh_token: str | None = Field(default=None, description="OAuth refresh token")
    webhook_url: str | None = Field(
        default=None,
        description="Inbound webhook URL; enables dispatcher wiring when set",
    )
    webhook_secret: str | None = Field(
        default=None,
        description="Secret used to verify inbound webhook signatures",
    )
    base_url: str | None = Field(default=None, description="Vendor or host base URL")
    version: str | None = Field(default=None, description="Vendor API version")
    scopes: list[str] = Field(default_factory=list, description="Granted scopes")
    custom_settings: dict[str, Any] = Field(
        default_factory=dict,
        description="Vendor-specific key/value settings",
    )


# ============================================================================
# Credentials (tagged union)
# ============================================================================


class _CredentialsBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)


class ApiKeyCredentials(_CredentialsBase):
    """Static API key."""

    type: Literal["api_key"] = "api_key"
    api_key: str


class BearerTokenCredentials(_CredentialsBase):
    """Pre-issued bearer token."""

    type: Literal["bearer_token"] = "bearer_token"
    bearer_token: str


class OAuth2Credentials(_CredentialsBase):
    """Tokens obtained through an OAuth2 flow run by the host."""

    type: Literal["oauth2"] = "oauth2"
    access_token: str
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None


class BasicAuthCredentials(_CredentialsBase):
    """Username/password pair."""

    type: Literal["basic_auth"] = "basic_auth"
    username: str
    password: str


IntegrationCredentials = Annotated[
    ApiKeyCredentials | BearerTokenCredentials | OAuth2Credentials | BasicAuthCredentials,
    Field(discriminator="type"),
]


# ============================================================================
# Webhook payload
# ============================================================================

DEFAULT_WEBHOOK_EVENT = "webhook.received"


def generate_webhook_id() -> str:
    """Generate a unique webhook delivery id."""
    return f"webhook_{int(datetime.now(UTC).timestamp() * 1000)}_{uuid.uuid4().hex[:16]}"


class WebhookPayload(BaseModel):
    """One inbound or synthesized webhook delivery. Immutable."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_webhook_id, description="Unique delivery id")
    event: str = Field(default=DEFAULT_WEBHOOK_EVENT, description="Event name")
    data: Any = Field(default=None, description="Arbitrary JSON data")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Receipt time",
    )
    source: str = Field(..., description="Source integration name")
    signature: str | None = Field(default=None, description="Signature header value, if any")

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "id": self.id,
            "event": self.event,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


# ============================================================================
# Sync operations
# ============================================================================


class SyncOperationType(str, Enum):
    """Direction of a sync job."""

    IMPORT = "import"
    EXPORT = "export"
    BIDIRECTIONAL = "bidirectional"


class SyncStatus(str, Enum):
    """Sync job lifecycle: pending -> running -> completed | failed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)


class SyncOperation(BaseModel):
    """A long-running import/export job started by an integration."""

    id: str = Field(default_factory=lambda: f"sync_{uuid.uuid4().hex[:12]}")
    integration_name: str
    operation: SyncOperationType
    entity_type: str
    status: SyncStatus = SyncStatus.PENDING
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    records_processed: int = Field(default=0, ge=0)
    records_total: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)
    last_sync_token: str | None = None


# ============================================================================
# CRM record shapes (translation targets)
# ============================================================================


class CRMContact(BaseModel):
    """Contact record as produced by adapter translation."""

    id: str | None = None
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""
    title: str = ""
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class CRMDeal(BaseModel):
    """Deal record as produced by adapter translation."""

    id: str | None = None
    name: str = ""
    amount: float = 0.0
    stage: str = "prospect"
    probability: float | None = None
    close_date: datetime | None = None
    contact_id: str | None = None
    company_id: str | None = None
    owner_id: str | None = None
    description: str = ""
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class TaskRelation(BaseModel):
    """Entity a task is attached to."""

    type: Literal["contact", "deal", "company"]
    id: str


class CRMTask(BaseModel):
    """Task record as produced by adapter translation."""

    id: str | None = None
    title: str = ""
    description: str = ""
    type: Literal["call", "email", "meeting", "task"] = "task"
    priority: Literal["low", "medium", "high"] = "medium"
    status: Literal["pending", "completed", "overdue"] = "pending"
    due_date: datetime | None = None
    assigned_to: str | None = None
    related_to: TaskRelation | None = None
