"""Mailbox watcher entry point.

Mounts a mailbox view on one category and logs the visible threads, toasts
and category-move notifications as they change, until interrupted.

Usage::

    mailbox-watch --backend-url http://localhost:8080 --category urgent
    python -m src.inbox.cli --log-level DEBUG

Environment variables (prefixed with ``MAILBOX_``) are also supported. See
``MailboxConfig`` for the full list.
"""

from __future__ import annotations

import asyncio
import logging

from src.common.settings.config import MailboxConfig, validate_config
from src.inbox.backend import MailboxBackend
from src.inbox.models import EntityFilter
from src.inbox.notifications import CategoryMoveNotification
from src.inbox.stream import HttpStreamTransport
from src.inbox.toasts import Toast
from src.inbox.view import MailboxView

logger = logging.getLogger(__name__)


def describe_entity(view: MailboxView, entity_id: str) -> str:
    """Render one effective entity as a log line."""
    entity = view.effective(entity_id)
    if entity is None:
        return f"{entity_id}: removed"
    flags = "".join((
        "R" if entity.is_read else "-",
        "D" if entity.is_done else "-",
        "T" if entity.is_deleted else "-",
    ))
    subject = (entity.model_extra or {}).get("subject", "")
    return f"{entity_id} [{flags}] {subject}".rstrip()


async def watch(config: MailboxConfig) -> None:
    """Mount a view and log its changes until cancelled."""
    token = config.api_token_value
    async with MailboxBackend(
        config.backend_url,
        timeout=config.request_timeout,
        api_token=token,
    ) as backend:
        transport = HttpStreamTransport(
            config.backend_url,
            timeout=config.request_timeout,
            api_token=token,
        )
        view = MailboxView(
            backend,
            transport,
            config,
            entity_filter=EntityFilter(category=config.category),
        )

        def on_view_change(ids: frozenset[str]) -> None:
            for entity_id in sorted(ids):
                logger.info("%s", describe_entity(view, entity_id))

        def on_toast(toast_id: str, toast: Toast | None) -> None:
            if toast is not None:
                logger.info("Toast: %s %s", toast.title, toast.description)

        def on_notifications(items: list[CategoryMoveNotification]) -> None:
            if items:
                logger.info("Moved to %s: %s", items[0].type, items[0].subject)

        view.add_listener(on_view_change)
        view.toasts.add_listener(on_toast)
        view.notifications.add_listener(on_notifications)

        view.mount()
        try:
            await view.source.wait_for_snapshot()
            logger.info("%d visible threads in %s", len(view.visible()), config.category)
            await asyncio.Event().wait()
        finally:
            await view.unmount()


def main() -> None:
    """Parse config, configure logging, and watch the mailbox."""
    config = MailboxConfig.from_cli_args()

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    for warning in validate_config(config):
        logger.warning("%s", warning)

    logger.info("Watching %s at %s", config.category, config.backend_url)
    try:
        asyncio.run(watch(config))
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
