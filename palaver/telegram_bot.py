"""Telegram bridge for Palaver.

Long-polls Telegram for messages and forwards prefixed private-chat texts
to the Palaver /chat REST API, then sends the reply back.

Usage:
    TELEGRAM_BOT_TOKEN=... PALAVER_API_URL=http://localhost:3333 python -m palaver.telegram_bot

Environment:
    TELEGRAM_BOT_TOKEN              - Bot token from @BotFather
    PALAVER_API_URL                 - Palaver REST API base URL (default: http://localhost:3333)
    PALAVER_TELEGRAM_PREFIX         - Only texts starting with this are relayed (default: /ai)
    PALAVER_TELEGRAM_ALLOWED_USERS  - Comma-separated Telegram user IDs (optional, empty = allow all)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import OrderedDict
from collections.abc import Hashable
from typing import Any
from uuid import uuid4

import httpx

from palaver.config import Settings

logger = logging.getLogger(__name__)

# Telegram Bot API base
TG_API = "https://api.telegram.org/bot{token}/{method}"

# Max Telegram message length
TG_MAX_LEN = 4096


class RecentIds:
    """Set of recently seen ids with a fixed capacity; oldest evicted first.

    Keeps the bridge from answering the same message twice (redelivered
    updates after a restart or offset hiccup) and from relaying its own
    messages back into the conversation.
    """

    def __init__(self, capacity: int = 300) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._ids: OrderedDict[Hashable, None] = OrderedDict()

    def add(self, item: Hashable) -> None:
        if item in self._ids:
            return
        self._ids[item] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)

    def __contains__(self, item: object) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class PalaverTelegramBot:
    """Lightweight Telegram bot that proxies to the Palaver /chat API."""

    def __init__(
        self,
        bot_token: str,
        api_url: str = "http://localhost:3333",
        prefix: str = "/ai",
        allowed_users: set[int] | None = None,
        agent_id: str | None = None,
        dedup_capacity: int = 300,
        http: httpx.AsyncClient | None = None,
    ):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self.prefix = prefix.strip()
        self.allowed_users = allowed_users
        self.agent_id = agent_id
        self._offset = 0
        self._seen = RecentIds(dedup_capacity)
        # Map telegram chat_id -> conversation id for /new rotation
        self._sessions: dict[int, str] = {}
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(connect=10, read=660, write=10, pool=10))

    def conversation_id(self, chat_id: int) -> str:
        return self._sessions.get(chat_id, f"tg_{chat_id}")

    async def start(self) -> None:
        """Start polling loop."""
        me = await self._tg("getMe")
        logger.info("Bot started: @%s (%s)", me.get("username"), me.get("id"))

        while True:
            try:
                updates = await self._tg(
                    "getUpdates",
                    params={"offset": self._offset, "timeout": 30},
                )
                for update in updates:
                    self._offset = update["update_id"] + 1
                    await self._handle_update(update)
            except httpx.ReadTimeout:
                continue  # Normal for long polling
            except Exception as e:
                logger.error("Polling error: %s", e)
                await asyncio.sleep(5)

    async def _handle_update(self, update: dict[str, Any]) -> None:
        """Handle a single Telegram update."""
        message = update.get("message")
        if not message:
            return

        chat = message.get("chat", {})
        chat_id = chat.get("id")
        if chat_id is None or chat.get("type") != "private":
            return

        key = (chat_id, message.get("message_id"))
        if key in self._seen:
            logger.debug("Ignoring already handled message %s", key)
            return
        self._seen.add(key)

        user_id = message.get("from", {}).get("id")
        text = (message.get("text") or "").strip()
        if not text:
            return

        # Access control
        if self.allowed_users and user_id not in self.allowed_users:
            await self._send(chat_id, "Not authorized.")
            return

        if text == "/new":
            self._sessions[chat_id] = f"tg_{chat_id}_{uuid4().hex[:8]}"
            await self._send(chat_id, "New session started.")
            return

        rest = text[len(self.prefix):]
        # The prefix is a whole command word: "/aim" is not "/ai"
        if not text.startswith(self.prefix) or (rest and not rest[0].isspace()):
            return
        user_text = rest.strip()
        if not user_text:
            return

        await self._chat(chat_id, user_text)

    async def _chat(self, chat_id: int, text: str) -> None:
        """Send message to Palaver and relay the reply to Telegram."""
        await self._tg("sendChatAction", params={"chat_id": chat_id, "action": "typing"})

        payload: dict[str, Any] = {"conversation_id": self.conversation_id(chat_id), "text": text}
        if self.agent_id:
            payload["agent_id"] = self.agent_id

        try:
            response = await self._http.post(f"{self.api_url}/chat", json=payload)
            data = response.json()
            if response.status_code != 200:
                await self._send(chat_id, f"Error: {data.get('error', 'Unknown error')}")
                return
            await self._send_long(chat_id, data.get("reply") or "(no reply)")
        except httpx.TimeoutException:
            await self._send(chat_id, "Request timed out.")
        except Exception as e:
            logger.error("Chat error: %s", e)
            await self._send(chat_id, f"Error: {e}")

    async def _send(self, chat_id: int, text: str) -> dict:
        """Send a message to Telegram and remember its id."""
        result = await self._tg("sendMessage", params={"chat_id": chat_id, "text": text})
        if isinstance(result, dict) and "message_id" in result:
            self._seen.add((chat_id, result["message_id"]))
        return result

    async def _send_long(self, chat_id: int, text: str) -> None:
        """Send a long message, splitting if needed."""
        for chunk in split_message(text):
            await self._send(chat_id, chunk)

    async def _tg(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call Telegram Bot API."""
        url = TG_API.format(token=self.bot_token, method=method)
        response = await self._http.get(url, params=params)
        data = response.json()
        if not data.get("ok"):
            logger.warning("Telegram API error: %s", data)
            return data.get("result", [])
        return data.get("result", {})

    async def close(self) -> None:
        """Cleanup."""
        await self._http.aclose()


def split_message(text: str, limit: int = TG_MAX_LEN) -> list[str]:
    """Split text on newlines into chunks of at most ``limit`` characters."""
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) + 1 > limit:
            if current:
                chunks.append(current)
            current = line
        else:
            current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


async def main() -> None:
    """Entry point."""
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not settings.telegram_bot_token:
        print("Error: TELEGRAM_BOT_TOKEN not set", file=sys.stderr)
        sys.exit(1)

    bot = PalaverTelegramBot(
        settings.telegram_bot_token,
        api_url=settings.api_url,
        prefix=settings.telegram_prefix,
        allowed_users=settings.allowed_user_ids or None,
        agent_id=settings.agent_id,
        dedup_capacity=settings.dedup_capacity,
    )
    try:
        await bot.start()
    finally:
        await bot.close()


if __name__ == "__main__":
    asyncio.run(main())
