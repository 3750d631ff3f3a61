"""Telegram Bot API transport for freelancer notifications.

Endpoints used:
- POST /bot{token}/sendMessage: send a text message to a chat
"""

import asyncio
import logging

import httpx

from hedwig.app.config import get_settings

logger = logging.getLogger(__name__)


class TelegramService:
    """Send chat messages via the Telegram Bot API."""

    def __init__(self):
        self.settings = get_settings()
        self.base_url = "https://api.telegram.org"

    @property
    def configured(self) -> bool:
        return bool(self.settings.telegram_bot_token)

    async def send_message(self, chat_id: str, text: str) -> bool:
        """Send a message, retrying on rate limits. Returns True on success."""
        if not self.configured:
            logger.warning("Telegram bot not configured, message not sent to chat %s", chat_id)
            return False

        url = f"{self.base_url}/bot{self.settings.telegram_bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text, "disable_web_page_preview": True}

        for attempt in range(3):
            try:
                async with httpx.AsyncClient(timeout=15.0) as client:
                    resp = await client.post(url, json=payload)

                if 200 <= resp.status_code < 300:
                    logger.info("Telegram message sent to chat %s", chat_id)
                    return True

                # 429 carries a retry_after hint
                if resp.status_code == 429 and attempt < 2:
                    try:
                        wait = int(resp.json().get("parameters", {}).get("retry_after", 1))
                    except ValueError:
                        wait = 1
                    logger.warning(
                        "Telegram 429, retrying in %ds (attempt %d/3)", wait, attempt + 1,
                    )
                    await asyncio.sleep(wait)
                    continue

                logger.error("Telegram send failed (%d): %s", resp.status_code, resp.text[:300])
                return False

            except httpx.TimeoutException:
                logger.error("Telegram send timed out for chat %s", chat_id)
                return False
            except httpx.HTTPError as e:
                logger.error("Telegram httpx error: %s", e)
                return False

        return False
