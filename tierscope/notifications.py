"""Best-effort failure alerts. Nothing here ever raises into the pipeline."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class NullNotifier:
    async def notify(self, message: str) -> bool:
        logger.debug("Notification suppressed: %s", message)
        return False


class TelegramNotifier:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.client = client

    async def notify(self, message: str) -> bool:
        if not self.settings.telegram_bot_token or not self.settings.telegram_chat_id:
            logger.info("Telegram not configured, skipping notification")
            return False

        url = f"{TELEGRAM_API}/bot{self.settings.telegram_bot_token}/sendMessage"
        payload = {
            "chat_id": self.settings.telegram_chat_id,
            "text": message,
            "parse_mode": "Markdown",
        }
        try:
            if self.client is not None:
                response = await self.client.post(url, json=payload, timeout=10.0)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, timeout=10.0)
            response.raise_for_status()
        except Exception as exc:
            logger.warning("Failed to send Telegram notification: %s", exc)
            return False
        return True
