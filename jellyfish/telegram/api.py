"""Thin async client for the Telegram Bot API (httpx)."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from jellyfish.errors import JellyfishError

TELEGRAM_BOT_API_BASE = "https://api.telegram.org"


class TelegramApiError(JellyfishError):
    def __init__(self, method: str, description: str, *, error_code: int | None = None):
        super().__init__(f"{method}: {description}")
        self.method = method
        self.description = description
        self.error_code = error_code

    @property
    def not_modified(self) -> bool:
        return "message is not modified" in self.description


def inline_keyboard(rows: list[list[tuple[str, str]]]) -> dict[str, Any]:
    """Build ``reply_markup`` from rows of (label, callback_data)."""
    return {
        "inline_keyboard": [
            [{"text": label, "callback_data": data} for label, data in row] for row in rows
        ]
    }


class TelegramApi:
    def __init__(self, token: str, *, base_url: str = TELEGRAM_BOT_API_BASE, timeout_s: float = 30.0):
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, payload: dict[str, Any] | None = None, *, timeout_s: float | None = None) -> Any:
        url = f"{self._base_url}/bot{self._token}/{method}"
        kwargs: dict[str, Any] = {"json": payload or {}}
        if timeout_s is not None:
            kwargs["timeout"] = timeout_s
        response = await self._client.post(url, **kwargs)
        try:
            data = response.json()
        except ValueError:
            raise TelegramApiError(method, f"HTTP {response.status_code}: {response.text[:200]}") from None
        if not data.get("ok"):
            raise TelegramApiError(
                method,
                str(data.get("description") or f"HTTP {response.status_code}"),
                error_code=data.get("error_code"),
            )
        return data.get("result")

    async def get_updates(self, offset: int | None, *, timeout_s: int = 30) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {
            "timeout": timeout_s,
            "allowed_updates": ["message", "callback_query"],
        }
        if offset is not None:
            payload["offset"] = offset
        return await self.call("getUpdates", payload, timeout_s=timeout_s + 10) or []

    async def send_message(
        self,
        chat_id: str | int,
        text: str,
        *,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        return await self.call("sendMessage", payload)

    async def edit_message_text(self, chat_id: str | int, message_id: int, text: str) -> None:
        """Edit a message; "message is not modified" is not an error."""
        try:
            await self.call("editMessageText", {"chat_id": chat_id, "message_id": message_id, "text": text})
        except TelegramApiError as e:
            if e.not_modified:
                logger.debug("Edit of {}:{} skipped (not modified)", chat_id, message_id)
                return
            raise

    async def answer_callback_query(self, callback_query_id: str, text: str | None = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        await self.call("answerCallbackQuery", payload)

    async def send_chat_action(self, chat_id: str | int, action: str = "typing") -> None:
        await self.call("sendChatAction", {"chat_id": chat_id, "action": action})

    async def set_my_commands(self, commands: list[tuple[str, str]]) -> None:
        await self.call(
            "setMyCommands",
            {"commands": [{"command": name, "description": desc} for name, desc in commands]},
        )

    async def download_file(self, file_id: str, dest_dir: Path) -> Path:
        """Download a Telegram file into ``dest_dir`` and return the local path."""
        info = await self.call("getFile", {"file_id": file_id})
        file_path = str(info.get("file_path") or "")
        if not file_path:
            raise TelegramApiError("getFile", "no file_path in response")
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / f"{file_id[:16]}_{Path(file_path).name}"
        url = f"{self._base_url}/file/bot{self._token}/{file_path}"
        async with self._client.stream("GET", url) as response:
            response.raise_for_status()
            with target.open("wb") as f:
                async for chunk in response.aiter_bytes():
                    f.write(chunk)
        return target
