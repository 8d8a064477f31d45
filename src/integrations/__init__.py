"""Third-party integration contract.

Adapters, the registry and the sync tracker live in their own modules
(``src.integrations.registry``, ``src.integrations.slack``, ...); this
package exports the shared result and data types.
"""

from src.integrations.errors import (
    DeliveryError,
    DeliveryTimeoutError,
    DuplicateRegistrationError,
    ErrorCode,
    InitializationError,
    IntegrationError,
    IntegrationResult,
    InvalidSignatureError,
    NotFoundError,
)
from src.integrations.types import (
    ApiKeyCredentials,
    BasicAuthCredentials,
    BearerTokenCredentials,
    CRMContact,
    CRMDeal,
    CRMTask,
    IntegrationConfig,
    IntegrationCredentials,
    OAuth2Credentials,
    SyncOperation,
    SyncOperationType,
    SyncStatus,
    WebhookPayload,
)

__all__ = [
    # Results and errors
    "ErrorCode",
    "IntegrationResult",
    "IntegrationError",
    "NotFoundError",
    "DuplicateRegistrationError",
    "InvalidSignatureError",
    "InitializationError",
    "DeliveryError",
    "DeliveryTimeoutError",
    # Types
    "IntegrationConfig",
    "IntegrationCredentials",
    "ApiKeyCredentials",
    "BearerTokenCredentials",
    "OAuth2Credentials",
    "BasicAuthCredentials",
    "WebhookPayload",
    "SyncOperation",
    "SyncOperationType",
    "SyncStatus",
    "CRMContact",
    "CRMDeal",
    "CRMTask",
]
