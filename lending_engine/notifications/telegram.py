"""Telegram notification service."""
from __future__ import annotations

import logging
import ssl

import aiohttp
import certifi

from ..config import TelegramConfig

logger = logging.getLogger(__name__)

# sendMessage rejects longer texts
MAX_MESSAGE_LENGTH = 4096


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split *text* into chunks of at most *limit* characters, on line breaks where possible.

    Ranked reports grow with the number of opportunities; a single line
    longer than *limit* is cut hard.
    """
    chunks: list[str] = []
    current: str | None = None
    for line in text.split("\n"):
        while len(line) > limit:
            if current is not None:
                chunks.append(current)
                current = None
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = line if current is None else f"{current}\n{line}"
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current is not None:
        chunks.append(current)
    return chunks


class TelegramNotifier:
    """Liquidation alerts go to the alert bot, scan logs to the (muted) log bot."""

    def __init__(self, config: TelegramConfig, timeout: float = 10.0) -> None:
        self.alert_bot_token = config.alert_bot_token
        self.log_bot_token = config.log_bot_token
        self.chat_id = config.chat_id
        self.timeout = timeout

    async def _send_message(
        self, message: str, bot_token: str, silent: bool = False
    ) -> bool:
        """Send *message* through *bot_token*, in as many parts as needed.

        False if credentials are missing or any part is rejected.
        """
        if not bot_token or not self.chat_id:
            logger.warning("Telegram credentials not configured")
            return False

        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        async with aiohttp.ClientSession(connector=connector) as session:
            for part in split_message(message):
                payload = {
                    "chat_id": self.chat_id,
                    "text": part,
                    "parse_mode": "HTML",
                    "disable_notification": silent,
                }
                async with session.post(
                    url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        logger.error("Telegram rejected message: HTTP %s", response.status)
                        return False
        return True

    async def send_alert(self, message: str, subject: str = "") -> bool:
        """Send an opportunity alert. *subject* becomes a bold header."""
        text = f"<b>{subject}</b>\n\n{message}" if subject else message
        sent = await self._send_message(text, self.alert_bot_token, silent=False)
        if sent:
            logger.info("Telegram alert sent")
        return sent

    async def send_log(self, message: str, silent: bool = True) -> bool:
        sent = await self._send_message(message, self.log_bot_token, silent=silent)
        if sent:
            logger.debug("Telegram log sent")
        return sent
