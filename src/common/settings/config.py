"""Mailbox client configuration.

This module provides the Pydantic-based configuration for the mailbox client,
with support for CLI argument parsing and environment variable loading.

Configuration Sources (in order of precedence, highest first):
    1. Explicit constructor arguments
    2. CLI arguments (via from_cli_args)
    3. Environment variables (automatic via pydantic-settings)
    4. Default values

Environment Variables:
    Environment variables are prefixed with "MAILBOX_". Variable names are
    derived from field names in SCREAMING_SNAKE_CASE.

    Examples:
        MAILBOX_BACKEND_URL=https://mail.example.com
        MAILBOX_API_TOKEN=secret
        MAILBOX_SEND_UNDO_WINDOW_MS=10000

CLI Arguments:
    --backend-url, --api-token, --category, --send-undo-window-ms,
    --request-timeout, --log-level

Example:
    >>> from src.common.settings.config import MailboxConfig
    >>> config = MailboxConfig()
    >>> config.send_undo_window_ms
    8000
    >>> config = MailboxConfig.from_cli_args(['--category', 'urgent'])
    >>> config.category
    'urgent'
"""

from __future__ import annotations

import argparse
from typing import Any, Literal, Self, Sequence

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MailboxConfig(BaseSettings):
    """Configuration for the mailbox client.

    Attributes:
        backend_url: Base URL of the mailbox backend.
        api_token: Bearer token for the backend. Stored as SecretStr to
            prevent accidental logging.
        request_timeout: Per-request timeout in seconds.
        send_undo_window_ms: Undo window for outbound sends.
        done_undo_window_ms: Undo window for mark-done.
        delete_undo_window_ms: Undo window for delete.
        toast_linger_ms: How long settled toasts stay visible.
        toast_error_linger_ms: How long error toasts stay visible.
        tick_interval_ms: How often undo countdowns refresh their progress.
        resubscribe_attempts: Consecutive failed resubscriptions tolerated
            before the mailbox is reported as unloadable.
        resubscribe_delay: Seconds between resubscription attempts.
        category: Category the view subscribes to.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).

    Example:
        >>> config = MailboxConfig(done_undo_window_ms=4000)
        >>> config.done_undo_window_ms
        4000
    """

    model_config = SettingsConfigDict(
        env_prefix="MAILBOX_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    backend_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the mailbox backend",
    )
    api_token: SecretStr | None = Field(
        default=None,
        description="Bearer token for the backend",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout in seconds",
    )
    send_undo_window_ms: int = Field(
        default=8000,
        ge=0,
        description="Undo window for outbound sends",
    )
    done_undo_window_ms: int = Field(
        default=5000,
        ge=0,
        description="Undo window for mark-done",
    )
    delete_undo_window_ms: int = Field(
        default=3000,
        ge=0,
        description="Undo window for delete",
    )
    toast_linger_ms: int = Field(
        default=2000,
        ge=0,
        description="How long settled toasts stay visible",
    )
    toast_error_linger_ms: int = Field(
        default=3000,
        ge=0,
        description="How long error toasts stay visible",
    )
    tick_interval_ms: int = Field(
        default=100,
        gt=0,
        description="How often undo countdowns refresh their progress",
    )
    resubscribe_attempts: int = Field(
        default=3,
        ge=0,
        description="Resubscription attempts before giving up",
    )
    resubscribe_delay: float = Field(
        default=1.0,
        ge=0,
        description="Seconds between resubscription attempts",
    )
    category: str = Field(
        default="inbox",
        min_length=1,
        description="Category the view subscribes to",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> str:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("backend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Drop trailing slashes so paths can be appended directly."""
        return v.rstrip("/")

    @model_validator(mode="after")
    def check_linger_order(self) -> Self:
        """Error toasts must stay at least as long as regular ones."""
        if self.toast_error_linger_ms < self.toast_linger_ms:
            raise ValueError(
                "toast_error_linger_ms must be >= toast_linger_ms"
            )
        return self

    @property
    def api_token_value(self) -> str | None:
        """Return the plain API token, or None if unset."""
        if self.api_token is None:
            return None
        return self.api_token.get_secret_value()

    @classmethod
    def from_cli_args(
        cls,
        args: Sequence[str] | None = None,
        **overrides: Any,
    ) -> Self:
        """Create configuration from CLI arguments.

        Parses command-line arguments and combines them with environment
        variables and defaults. Explicit overrides take highest precedence.

        Args:
            args: Command-line arguments to parse. If None, uses sys.argv[1:].
            **overrides: Additional keyword arguments that override all other
                sources.

        Returns:
            A new configuration instance.

        Example:
            >>> config = MailboxConfig.from_cli_args(['--send-undo-window-ms', '10000'])
            >>> config.send_undo_window_ms
            10000
        """
        parser = cls._create_argument_parser()
        parsed, _ = parser.parse_known_args(args)
        cli_values = {
            k: v for k, v in vars(parsed).items() if v is not None
        }
        return cls(**{**cli_values, **overrides})

    @classmethod
    def _create_argument_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Mailbox client configuration",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument(
            "--backend-url",
            type=str,
            default=None,
            dest="backend_url",
            help="Base URL of the mailbox backend",
        )
        parser.add_argument(
            "--api-token",
            type=str,
            default=None,
            dest="api_token",
            help="Bearer token for the backend",
        )
        parser.add_argument(
            "--category",
            type=str,
            default=None,
            help="Category to watch",
        )
        parser.add_argument(
            "--send-undo-window-ms",
            type=int,
            default=None,
            dest="send_undo_window_ms",
            help="Undo window for outbound sends",
        )
        parser.add_argument(
            "--request-timeout",
            type=float,
            default=None,
            dest="request_timeout",
            help="Per-request timeout in seconds",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            default=None,
            dest="log_level",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Logging level",
        )
        return parser


def validate_config(config: MailboxConfig) -> list[str]:
    """Validate a configuration and return any warnings.

    Args:
        config: The configuration to validate.

    Returns:
        A list of warning messages. Empty if no issues found.

    Example:
        >>> warnings = validate_config(MailboxConfig(send_undo_window_ms=0))
        >>> "undo" in warnings[0].lower()
        True
    """
    warnings: list[str] = []

    for name in ("send_undo_window_ms", "done_undo_window_ms", "delete_undo_window_ms"):
        if getattr(config, name) == 0:
            warnings.append(f"{name} is 0; undo will never be possible")

    if config.api_token is None:
        warnings.append("No API token configured; the backend may reject requests")

    if config.backend_url.startswith("http://") and "localhost" not in config.backend_url:
        warnings.append(
            f"Backend URL {config.backend_url} is not using HTTPS"
        )

    return warnings
