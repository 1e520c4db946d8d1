"""Patient notification hook used for appointment reminders."""
from __future__ import annotations

import logging
from typing import Callable

__all__ = ["Notifier", "send_notification"]

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str], None]


def send_notification(recipient_id: str, message: str) -> None:
    """Default sender for email/SMS reminders; it only logs the message."""

    logger.info("Notification for %s: %s", recipient_id, message)
