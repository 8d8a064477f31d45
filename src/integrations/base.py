"""Base adapter interface for third-party integrations.

Every adapter implements the same four lifecycle operations and returns
IntegrationResult from each, so the registry can treat all vendors alike.
Inbound webhook support is an optional capability exposed through
``webhook_handler``.
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from src.config import Settings
from src.config import settings as default_settings
from src.integrations.errors import IntegrationResult
from src.integrations.types import IntegrationConfig, IntegrationCredentials
from src.webhooks.models import WebhookHandler

logger = structlog.get_logger(__name__)


class BaseIntegration(ABC):
    """Abstract base class for all integration adapters.

    Example:
        class EchoIntegration(BaseIntegration):
            name = "echo"
            type = "testing"

            async def initialize(self) -> IntegrationResult:
                self.enabled = True
                return IntegrationResult.ok()
            ...
    """

    #: Vendor name
    name: str
    #: Integration category (communication, webhook, accounting, ...)
    type: str
    #: Adapter version
    version: str = "1.0.0"

    def __init__(
        self,
        config: IntegrationConfig,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            config: Integration configuration.
            settings: Application settings (uses global if not provided).
            client: Optional preconfigured HTTP client.
        """
        self.config = config
        self.settings = settings or default_settings
        self.enabled = config.enabled
        self._client = client
        self._logger = logger.bind(integration=self.name)

    @abstractmethod
    async def initialize(self) -> IntegrationResult:
        """Bring the adapter to a ready state."""
        ...

    @abstractmethod
    async def authenticate(self, credentials: IntegrationCredentials) -> IntegrationResult:
        """Accept credentials obtained by the host."""
        ...

    @abstractmethod
    async def disconnect(self) -> IntegrationResult:
        """Release credentials and connections."""
        ...

    @abstractmethod
    async def health_check(self) -> IntegrationResult:
        """Report whether the vendor is reachable and usable."""
        ...

    @property
    def webhook_handler(self) -> WebhookHandler | None:
        """Inbound webhook handler, or None if the adapter has none."""
        return None

    # ------------------------------------------------------------------
    # HTTP client helpers
    # ------------------------------------------------------------------

    def _client_defaults(self) -> dict[str, Any]:
        """Keyword arguments for the lazily created HTTP client."""
        return {
            "timeout": self.settings.HTTP_TIMEOUT_SECONDS,
            "headers": {
                "Content-Type": "application/json",
                "User-Agent": f"IntegrationHub-{self.name}/{self.version}",
            },
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(**self._client_defaults())
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
