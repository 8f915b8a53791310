"""Telegram transport: the outbound send boundary.

Maps aiogram's exception zoo onto a single ``TransportError`` that tells the
caller whether retrying can help.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from aiogram import Bot
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramBadRequest,
    TelegramForbiddenError,
    TelegramNotFound,
    TelegramRetryAfter,
    TelegramUnauthorizedError,
)


class TransportError(Exception):
    def __init__(
        self, message: str, *, permanent: bool = False, retry_after: float | None = None
    ) -> None:
        super().__init__(message)
        self.permanent = permanent
        self.retry_after = retry_after


class Transport(Protocol):
    async def send_text(self, chat_id: int, text: str) -> None: ...


class TelegramTransport:
    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_text(self, chat_id: int, text: str) -> None:
        try:
            await self._bot.send_message(chat_id=chat_id, text=text, parse_mode="HTML")
        except TelegramRetryAfter as exc:
            raise TransportError(
                f"rate limited for {exc.retry_after}s", retry_after=exc.retry_after
            ) from exc
        except (
            TelegramBadRequest,
            TelegramForbiddenError,
            TelegramNotFound,
            TelegramUnauthorizedError,
        ) as exc:
            # Chat gone, bot kicked or token revoked: retrying will not help.
            raise TransportError(str(exc), permanent=True) from exc
        except TelegramAPIError as exc:
            raise TransportError(str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise TransportError("request timed out") from exc
