"""Tests for application settings and logging setup."""

import logging

import structlog

from src.config import Settings, configure_logging

# ============================================================================
# Settings Tests
# ============================================================================


class TestSettings:
    """Tests for Settings.from_env."""

    def test_defaults(self, monkeypatch):
        """Test defaults when nothing is set."""
        for name in (
            "WEBHOOK_TIMEOUT_SECONDS",
            "WEBHOOK_MAX_RETRIES",
            "WEBHOOK_RETRY_DELAY_SECONDS",
            "WEBHOOK_SIGNATURE_HEADER",
            "INSTANCE_ID",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.WEBHOOK_TIMEOUT_SECONDS == 30.0
        assert settings.WEBHOOK_MAX_RETRIES == 3
        assert settings.WEBHOOK_RETRY_DELAY_SECONDS == 1.0
        assert settings.WEBHOOK_SIGNATURE_HEADER == "X-Webhook-Signature"
        assert settings.INSTANCE_ID == "integration-hub"

    def test_from_env(self, monkeypatch):
        """Test values are read from the environment."""
        monkeypatch.setenv("WEBHOOK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "0")
        monkeypatch.setenv("SLACK_API_BASE_URL", "http://localhost:9000/api")

        settings = Settings.from_env()

        assert settings.WEBHOOK_TIMEOUT_SECONDS == 2.5
        assert settings.WEBHOOK_MAX_RETRIES == 0
        assert settings.SLACK_API_BASE_URL == "http://localhost:9000/api"

    def test_unparsable_numbers_fall_back(self, monkeypatch):
        """Test bad numeric values use the defaults."""
        monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "many")
        monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "")

        settings = Settings.from_env()

        assert settings.WEBHOOK_MAX_RETRIES == 3
        assert settings.HTTP_TIMEOUT_SECONDS == 30.0


# ============================================================================
# Logging Tests
# ============================================================================


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_quiets_http_loggers(self):
        """Test httpx request logs are raised to WARNING."""
        configure_logging("DEBUG")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_unknown_level_defaults_to_info(self):
        """Test an unknown level name does not raise."""
        configure_logging("CHATTY")

        assert structlog.is_configured()
