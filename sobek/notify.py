"""
User notifications.

Users link a Telegram chat to their account; notifications to users without a
linked chat are skipped (``notify`` returns False). Delivery is always
best-effort for the escrow flows.
"""

import logging
from typing import Optional, Protocol

import httpx

from sobek.escrow.errors import NotificationError
from sobek.escrow.storage import LedgerStore

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class Notifier(Protocol):
    async def notify(self, user_id: str, message: str) -> bool:
        """Send a message to a user. Returns False if it was not delivered."""
        ...


class TelegramNotifier:
    """Sends messages through the Telegram Bot API."""

    def __init__(
        self,
        store: LedgerStore,
        bot_token: str,
        api_url: str = TELEGRAM_API_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not bot_token:
            raise ValueError("Missing Telegram bot token")
        self.store = store
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def send_message(self, chat_id: int, text: str) -> bool:
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json={"chat_id": chat_id, "text": text})
        except httpx.HTTPError as e:
            raise NotificationError(f"Telegram request failed: {e}") from e
        if response.status_code != 200:
            logger.warning(f"Telegram sendMessage returned {response.status_code}")
            return False
        return True

    async def notify(self, user_id: str, message: str) -> bool:
        user = await self.store.get_user(user_id)
        if not user or user.telegram_chat_id is None:
            logger.debug(f"User {user_id} has no linked Telegram chat")
            return False
        return await self.send_message(user.telegram_chat_id, message)


class LoggingNotifier:
    """Notifier used when no bot token is configured."""

    async def notify(self, user_id: str, message: str) -> bool:
        logger.info(f"[notify {user_id}] {message}")
        return True
