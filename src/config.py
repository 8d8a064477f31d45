"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults, plus structlog setup.
"""

import logging
import os
from dataclasses import dataclass

import structlog


def _get_float_env(name: str, default: float) -> float:
    """Get a float value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set or unparsable.

    Returns:
        Float value from environment.
    """
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_int_env(name: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        LOG_LEVEL: Logging level.
        ENVIRONMENT: Deployment environment name.
        INSTANCE_ID: Identifier stamped on outbound automation triggers.
        WEBHOOK_TIMEOUT_SECONDS: Default per-attempt webhook deadline.
        WEBHOOK_MAX_RETRIES: Default retries after the first attempt.
        WEBHOOK_RETRY_DELAY_SECONDS: Default wait between attempts.
        WEBHOOK_SIGNATURE_HEADER: Default signature header name.
        SLACK_API_BASE_URL: Slack Web API base URL.
        HTTP_TIMEOUT_SECONDS: Adapter HTTP client timeout.
    """

    # Logging
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Identity
    INSTANCE_ID: str = "integration-hub"

    # Webhook delivery defaults
    WEBHOOK_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_MAX_RETRIES: int = 3
    WEBHOOK_RETRY_DELAY_SECONDS: float = 1.0
    WEBHOOK_SIGNATURE_HEADER: str = "X-Webhook-Signature"

    # Vendors
    SLACK_API_BASE_URL: str = "https://slack.com/api"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            ENVIRONMENT=os.getenv("ENVIRONMENT", "development"),
            INSTANCE_ID=os.getenv("INSTANCE_ID", "integration-hub"),
            WEBHOOK_TIMEOUT_SECONDS=_get_float_env("WEBHOOK_TIMEOUT_SECONDS", 30.0),
            WEBHOOK_MAX_RETRIES=_get_int_env("WEBHOOK_MAX_RETRIES", 3),
            WEBHOOK_RETRY_DELAY_SECONDS=_get_float_env("WEBHOOK_RETRY_DELAY_SECONDS", 1.0),
            WEBHOOK_SIGNATURE_HEADER=os.getenv("WEBHOOK_SIGNATURE_HEADER", "X-Webhook-Signature"),
            SLACK_API_BASE_URL=os.getenv("SLACK_API_BASE_URL", "https://slack.com/api"),
            HTTP_TIMEOUT_SECONDS=_get_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog and quiet noisy HTTP client loggers.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=False,
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# Global settings instance
settings = Settings.from_env()
