from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import DeliveryError

logger = get_logger("telegram_service")

TELEGRAM_MESSAGE_LIMIT = 4096


class TelegramService:
    """Telegram Bot API client: outbound messages and file downloads."""

    BASE_URL = "https://api.telegram.org/bot{token}"
    FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"

    def __init__(self, bot_token: str, http_client: httpx.AsyncClient):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.http_client = http_client

    async def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        """Call a Bot API method. Raises DeliveryError unless Telegram answers ok."""
        url = f"{self.base_url}/{method}"
        try:
            response = await self.http_client.post(url, json=data or {}, timeout=30.0)
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Telegram API error: {e}")
            raise DeliveryError(f"telegram {method} failed: {e}") from e

        if not isinstance(result, dict):
            logger.error(f"Telegram {method} returned unexpected body: {response.status_code}")
            raise DeliveryError(f"telegram {method} returned unexpected body", response.status_code)

        if not result.get("ok"):
            description = result.get("description") or "unknown error"
            logger.warning(f"Telegram {method} rejected: {description}")
            raise DeliveryError(f"telegram {method} rejected: {description}", response.status_code)
        return result

    async def send_message(self, chat_id: str, text: str) -> dict:
        """Send plain text, split into chunks Telegram accepts."""
        result: dict = {}
        for chunk in split_message(text, TELEGRAM_MESSAGE_LIMIT):
            data = {"chat_id": chat_id, "text": chunk}
            result = await self._make_request("sendMessage", data)
        return result

    async def get_file_url(self, file_id: str) -> str:
        result = await self._make_request("getFile", {"file_id": file_id})
        file_info = result.get("result")
        file_path = file_info.get("file_path") if isinstance(file_info, dict) else None
        if not file_path:
            raise DeliveryError(f"telegram getFile returned no path for {file_id}")
        return self.FILE_URL.format(token=self.bot_token, path=file_path)


def split_message(text: str, limit: int) -> list[str]:
    """Split on line breaks where possible so long replies stay readable."""
    text = text or ""
    if len(text) <= limit:
        return [text]
    chunks = []
    remaining = text
    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip("\n")
    if remaining:
        chunks.append(remaining)
    return chunks
