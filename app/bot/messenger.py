from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Protocol

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import InlineKeyboardMarkup

logger = logging.getLogger(__name__)


class Messenger(Protocol):
    async def send(self, chat_id: int, text: str, menu: InlineKeyboardMarkup | None = None) -> int: ...

    async def edit(self, chat_id: int, message_id: int, text: str, menu: InlineKeyboardMarkup | None = None) -> None: ...

    def delete_later(self, chat_id: int, message_id: int, delay: float) -> None: ...


class AiogramMessenger:
    def __init__(self, bot: Bot) -> None:
        self.bot = bot
        self._pending: set[asyncio.Task] = set()

    async def send(self, chat_id: int, text: str, menu: InlineKeyboardMarkup | None = None) -> int:
        msg = await self.bot.send_message(
            chat_id=chat_id,
            text=text,
            parse_mode="HTML",
            reply_markup=menu,
            disable_web_page_preview=True,
        )
        return msg.message_id

    async def edit(self, chat_id: int, message_id: int, text: str, menu: InlineKeyboardMarkup | None = None) -> None:
        try:
            await self.bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                parse_mode="HTML",
                reply_markup=menu,
            )
        except TelegramBadRequest as exc:
            if "message is not modified" not in str(exc).lower():
                raise

    async def _delete_after(self, chat_id: int, message_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramBadRequest:
            # Already deleted by the user or too old to delete.
            pass
        except Exception as exc:  # noqa: BLE001
            logger.warning("message_delete_failed", extra={"event": "message_delete_failed", "chat_id": chat_id, "reason": str(exc)})

    def delete_later(self, chat_id: int, message_id: int, delay: float) -> None:
        task = asyncio.create_task(self._delete_after(chat_id, message_id, delay))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        for task in list(self._pending):
            with suppress(asyncio.CancelledError):
                await task
