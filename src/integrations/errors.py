"""Error taxonomy and the uniform result type for integrations.

This module provides:
- ErrorCode: Machine-readable failure categories
- IntegrationResult: Success/error envelope returned by every public operation
- Exception hierarchy used internally and converted to results at the edges

Exception Hierarchy:
    IntegrationError (base)
    ├── NotFoundError - Unknown registration, adapter or operation id
    ├── DuplicateRegistrationError - Name collision
    ├── InvalidSignatureError - Inbound authentication failure
    ├── InitializationError - Adapter could not reach ready state
    └── DeliveryError - Handler/network failure after retries
        └── DeliveryTimeoutError - A single attempt's deadline elapsed
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Failure categories carried by failed results."""

    NOT_FOUND = "not_found"
    DUPLICATE_REGISTRATION = "duplicate_registration"
    INVALID_SIGNATURE = "invalid_signature"
    INITIALIZATION_FAILURE = "initialization_failure"
    DELIVERY_FAILURE = "delivery_failure"
    TIMEOUT = "timeout"
    INVALID_STATE = "invalid_state"
    AUTHENTICATION_FAILURE = "authentication_failure"
    INVALID_REQUEST = "invalid_request"
    ADAPTER_ERROR = "adapter_error"


# ============================================================================
# Exception Hierarchy
# ============================================================================


class IntegrationError(Exception):
    """Base exception for integration errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        recoverable: Whether retrying may succeed.
    """

    code: ErrorCode = ErrorCode.ADAPTER_ERROR

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class NotFoundError(IntegrationError):
    """Unknown registration, adapter or sync operation."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} {name} not found", details={"kind": kind, "name": name})
        self.kind = kind
        self.name = name


class DuplicateRegistrationError(IntegrationError):
    """A registration already exists under this name."""

    code = ErrorCode.DUPLICATE_REGISTRATION

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(
            f"{kind} {name} is already registered",
            details={"kind": kind, "name": name},
        )
        self.kind = kind
        self.name = name


class InvalidSignatureError(IntegrationError):
    """Inbound webhook signature did not match. Never retried."""

    code = ErrorCode.INVALID_SIGNATURE

    def __init__(self, name: str) -> None:
        super().__init__(f"Invalid webhook signature for {name}", details={"name": name})
        self.name = name


class InitializationError(IntegrationError):
    """Adapter could not be initialized."""

    code = ErrorCode.INITIALIZATION_FAILURE

    def __init__(self, name: str, reason: str | None) -> None:
        super().__init__(
            f"Integration {name} failed to initialize: {reason or 'unknown error'}",
            details={"name": name, "reason": reason},
            recoverable=True,
        )
        self.name = name
        self.reason = reason


class DeliveryError(IntegrationError):
    """Delivery failed after exhausting all attempts.

    Attributes:
        name: Registration name.
        attempts: Number of attempts made.
        last_error: Message of the last underlying failure.
    """

    code = ErrorCode.DELIVERY_FAILURE

    def __init__(self, name: str, *, attempts: int, last_error: str | None) -> None:
        super().__init__(
            f"Webhook processing failed: {last_error}",
            details={"name": name, "attempts": attempts, "last_error": last_error},
            recoverable=True,
        )
        self.name = name
        self.attempts = attempts
        self.last_error = last_error


class DeliveryTimeoutError(DeliveryError):
    """A single delivery attempt exceeded its deadline."""

    code = ErrorCode.TIMEOUT

    def __init__(self, name: str, timeout_seconds: float) -> None:
        message = f"Webhook processing timeout after {timeout_seconds}s"
        IntegrationError.__init__(
            self,
            message,
            details={"name": name, "timeout_seconds": timeout_seconds},
            recoverable=True,
        )
        self.name = name
        self.attempts = 1
        self.last_error = message
        self.timeout_seconds = timeout_seconds


# ============================================================================
# Result Envelope
# ============================================================================


class IntegrationResult(BaseModel):
    """Uniform outcome of an integration operation.

    Expected failures (missing registration, bad signature, delivery
    exhaustion) are reported here instead of being raised.
    """

    success: bool = True
    data: Any = None
    error: str | None = None
    error_code: ErrorCode | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None) -> "IntegrationResult":
        """Build a successful result."""
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        error: str,
        code: ErrorCode = ErrorCode.ADAPTER_ERROR,
        *,
        details: dict[str, Any] | None = None,
    ) -> "IntegrationResult":
        """Build a failed result."""
        return cls(success=False, error=error, error_code=code, details=details or {})

    @classmethod
    def from_error(cls, error: IntegrationError) -> "IntegrationResult":
        """Convert an integration exception into a failed result."""
        return cls.fail(error.message, error.code, details=error.details)
