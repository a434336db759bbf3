"""Boundary to the notification collaborator that delivers user messages."""

import logging
from typing import Protocol

from .models import Notification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Accepts notifications; delivery (in-app, email, push) is the implementer's concern."""

    async def notify(self, notification: Notification) -> None:
        ...


class LoggingNotifier:
    """Default notifier for standalone deployments: writes notifications to the log."""

    def __init__(self):
        self.logger = logger

    async def notify(self, notification: Notification) -> None:
        methods = ', '.join(m.value for m in notification.methods)
        self.logger.info(
            f"[{notification.priority.value}] {notification.title} -> "
            f"user {notification.recipient_user_id} via {methods}: {notification.message}"
        )
