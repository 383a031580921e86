"""Tests for mailbox client configuration.

Tests cover:
- Default values and explicit overrides
- Environment variable loading
- CLI argument parsing
- Field validation and constraints
- validate_config warnings
"""

from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from src.common.settings.config import MailboxConfig, validate_config


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clean_env():
    """Fixture that clears MAILBOX_ environment variables before and after tests."""
    saved_env = {k: v for k, v in os.environ.items() if k.upper().startswith("MAILBOX_")}

    for key in list(os.environ.keys()):
        if key.upper().startswith("MAILBOX_"):
            del os.environ[key]

    yield

    for key in list(os.environ.keys()):
        if key.upper().startswith("MAILBOX_"):
            del os.environ[key]
    os.environ.update(saved_env)


# =============================================================================
# Model Tests
# =============================================================================


class TestMailboxConfig:
    """Tests for MailboxConfig defaults and validation."""

    def test_default_values(self, clean_env: None) -> None:
        """Test that default values are correctly applied."""
        config = MailboxConfig()

        assert config.backend_url == "http://localhost:8080"
        assert config.api_token is None
        assert config.api_token_value is None
        assert config.send_undo_window_ms == 8000
        assert config.done_undo_window_ms == 5000
        assert config.delete_undo_window_ms == 3000
        assert config.toast_linger_ms == 2000
        assert config.toast_error_linger_ms == 3000
        assert config.resubscribe_attempts == 3
        assert config.tick_interval_ms == 100
        assert config.category == "inbox"
        assert config.log_level == "INFO"

    def test_explicit_values(self, clean_env: None) -> None:
        """Test that explicit constructor values are used."""
        config = MailboxConfig(
            backend_url="https://mail.example.com/",
            api_token="secret",
            category="urgent",
        )

        assert config.backend_url == "https://mail.example.com"
        assert config.api_token_value == "secret"
        assert "secret" not in repr(config)
        assert config.category == "urgent"

    def test_log_level_normalization(self, clean_env: None) -> None:
        """Test that log level is normalized to uppercase."""
        config = MailboxConfig(log_level="debug")  # type: ignore[arg-type]
        assert config.log_level == "DEBUG"

    def test_invalid_log_level(self, clean_env: None) -> None:
        """Test that invalid log level raises error."""
        with pytest.raises(ValidationError) as exc_info:
            MailboxConfig(log_level="LOUD")  # type: ignore[arg-type]
        assert "log_level" in str(exc_info.value).lower()

    def test_negative_window(self, clean_env: None) -> None:
        """Test that undo windows cannot be negative."""
        with pytest.raises(ValidationError) as exc_info:
            MailboxConfig(done_undo_window_ms=-1)
        assert "done_undo_window_ms" in str(exc_info.value)

    def test_zero_tick_interval(self, clean_env: None) -> None:
        """Test that the countdown tick must be positive."""
        with pytest.raises(ValidationError) as exc_info:
            MailboxConfig(tick_interval_ms=0)
        assert "tick_interval_ms" in str(exc_info.value)

    def test_linger_order(self, clean_env: None) -> None:
        """Test that error toasts cannot linger less than regular ones."""
        with pytest.raises(ValidationError) as exc_info:
            MailboxConfig(toast_linger_ms=5000, toast_error_linger_ms=1000)
        assert "toast_error_linger_ms" in str(exc_info.value)


class TestMailboxConfigEnv:
    """Tests for environment variable loading."""

    def test_env_values(self, clean_env: None) -> None:
        """Test that MAILBOX_ variables are loaded."""
        os.environ["MAILBOX_BACKEND_URL"] = "https://env.example.com"
        os.environ["MAILBOX_SEND_UNDO_WINDOW_MS"] = "10000"
        os.environ["MAILBOX_API_TOKEN"] = "from-env"

        config = MailboxConfig()

        assert config.backend_url == "https://env.example.com"
        assert config.send_undo_window_ms == 10000
        assert config.api_token_value == "from-env"

    def test_explicit_overrides_env(self, clean_env: None) -> None:
        """Test that constructor arguments beat the environment."""
        os.environ["MAILBOX_CATEGORY"] = "urgent"
        config = MailboxConfig(category="important")
        assert config.category == "important"


class TestMailboxConfigCLI:
    """Tests for MailboxConfig CLI argument parsing."""

    def test_from_cli_args_defaults(self, clean_env: None) -> None:
        """Test CLI parsing with no arguments uses defaults."""
        config = MailboxConfig.from_cli_args([])
        assert config == MailboxConfig()

    def test_from_cli_args_multiple(self, clean_env: None) -> None:
        """Test CLI parsing with multiple arguments."""
        config = MailboxConfig.from_cli_args(
            [
                "--backend-url", "https://cli.example.com",
                "--category", "urgent",
                "--send-undo-window-ms", "12000",
                "--request-timeout", "5",
                "--log-level", "WARNING",
            ]
        )

        assert config.backend_url == "https://cli.example.com"
        assert config.category == "urgent"
        assert config.send_undo_window_ms == 12000
        assert config.request_timeout == 5.0
        assert config.log_level == "WARNING"

    def test_cli_overrides_env(self, clean_env: None) -> None:
        """Test that CLI arguments beat the environment."""
        os.environ["MAILBOX_CATEGORY"] = "urgent"
        config = MailboxConfig.from_cli_args(["--category", "important"])
        assert config.category == "important"

    def test_from_cli_args_with_overrides(self, clean_env: None) -> None:
        """Test that explicit overrides take precedence over CLI args."""
        config = MailboxConfig.from_cli_args(
            ["--category", "urgent"],
            category="important",
        )
        assert config.category == "important"

    def test_from_cli_args_ignores_unknown(self, clean_env: None) -> None:
        """Test that unknown CLI arguments are ignored."""
        config = MailboxConfig.from_cli_args(["--unknown", "value"])
        assert config.category == "inbox"


class TestValidateConfig:
    """Tests for validate_config."""

    def test_local_defaults(self, clean_env: None) -> None:
        """Test that a local configuration only lacks a token."""
        warnings = validate_config(MailboxConfig())
        assert warnings == ["No API token configured; the backend may reject requests"]

    def test_clean(self, clean_env: None) -> None:
        """Test that a complete HTTPS configuration has no warnings."""
        config = MailboxConfig(backend_url="https://mail.example.com", api_token="t")
        assert validate_config(config) == []

    def test_zero_window(self, clean_env: None) -> None:
        """Test the warning for a disabled undo window."""
        config = MailboxConfig(delete_undo_window_ms=0, api_token="t")
        assert validate_config(config) == [
            "delete_undo_window_ms is 0; undo will never be possible"
        ]

    def test_plain_http(self, clean_env: None) -> None:
        """Test the warning for a remote plain-HTTP backend."""
        config = MailboxConfig(backend_url="http://mail.example.com", api_token="t")
        [warning] = validate_config(config)
        assert "HTTPS" in warning
