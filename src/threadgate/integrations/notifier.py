"""Chat notifications (Telegram)."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from threadgate.config import settings
from threadgate.webhooks.formatting import strip_markdown

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Delivers human-readable text to a chat destination."""

    @abstractmethod
    async def deliver(self, destination: str, text: str, markdown: bool) -> None:
        """Send once. Raises on failure."""

    async def send(self, destination: str, text: str, markdown: bool = True) -> bool:
        """
        Send with one plain-text retry.

        Markdown messages that fail are retried once with markdown stripped.
        Returns False when the message was dropped; never raises.
        """
        try:
            await self.deliver(destination, text, markdown)
            return True
        except Exception as e:
            if not markdown:
                logger.error(f"Notification to {destination} failed: {e}")
                return False
            logger.info(f"Markdown notification failed ({e}), retrying as plain text")

        try:
            await self.deliver(destination, strip_markdown(text), False)
            return True
        except Exception as e:
            logger.error(f"Notification to {destination} dropped: {e}")
            return False


class NullNotifier(Notifier):
    """Used when no chat channel is configured."""

    async def deliver(self, destination: str, text: str, markdown: bool) -> None:
        logger.debug(f"Notifier not configured, dropping message for {destination}")


class TelegramNotifier(Notifier):
    """Telegram Bot API sendMessage."""

    def __init__(
        self,
        token: str,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.api_url = (api_url or settings.telegram_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.notifier_timeout_seconds
        self.transport = transport

    async def deliver(self, destination: str, text: str, markdown: bool) -> None:
        payload = {"chat_id": destination, "text": text, "disable_web_page_preview": True}
        if markdown:
            payload["parse_mode"] = "Markdown"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(f"{self.api_url}/bot{self.token}/sendMessage", json=payload)
            response.raise_for_status()
            data = response.json()
            if not data.get("ok", False):
                raise RuntimeError(f"Telegram error: {data.get('description', 'unknown')}")


def build_notifier() -> Notifier:
    """Notifier configured from settings."""
    if settings.telegram_enabled:
        return TelegramNotifier(settings.telegram_bot_token)
    logger.info("Telegram not configured, notifications disabled")
    return NullNotifier()
