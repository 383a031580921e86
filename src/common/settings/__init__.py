"""Shared settings for the mailbox client.

Modules:
    config: pydantic-settings configuration loaded from env and CLI
"""

from __future__ import annotations

from src.common.settings.config import MailboxConfig, validate_config

__all__ = [
    "MailboxConfig",
    "validate_config",
]
