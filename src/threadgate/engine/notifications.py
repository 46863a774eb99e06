"""Operator and event notifications over the best-effort side channel."""

import logging
from typing import Optional

from threadgate.integrations.notifier import Notifier
from threadgate.integrations.side_channel import BestEffortChannel
from threadgate.webhooks.formatting import format_notification, should_notify
from threadgate.webhooks.normalizer import NormalizedEvent

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Fire-and-forget chat notifications.

    Every method returns immediately; delivery runs on the side channel and
    failures are logged there.
    """

    def __init__(
        self,
        notifier: Notifier,
        channel: BestEffortChannel,
        chat_id: Optional[str],
        bot_login: str,
    ):
        self.notifier = notifier
        self.channel = channel
        self.chat_id = chat_id
        self.bot_login = bot_login

    @property
    def enabled(self) -> bool:
        return bool(self.chat_id)

    def notify(self, text: str, markdown: bool = True, job: str = "notify") -> bool:
        """Queue a message to the operator chat."""
        if not self.chat_id:
            logger.debug(f"No operator chat configured, dropping {job}")
            return False
        chat_id = self.chat_id
        self.channel.fire(job, lambda: self.notifier.send(chat_id, text, markdown))
        return True

    def notify_webhook(self, event: NormalizedEvent) -> bool:
        """Queue a notification for a significant webhook event."""
        if event.is_ignorable or not should_notify(event.event, self.bot_login):
            return False
        return self.notify(
            format_notification(event.event, self.bot_login),
            job=f"webhook:{event.event_kind}",
        )
