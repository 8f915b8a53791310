"""Telegram command handler: admin-only status queries.

Unauthorized senders are audited to the log only: they never reach the
state store.  Authorized commands read the store and never change the
power state.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from aiogram import Dispatcher, F
from aiogram.exceptions import TelegramAPIError
from aiogram.types import Message

from models import (
    IncomingCommand,
    PowerState,
    StateRecord,
    format_duration,
    format_timestamp,
    utcnow,
)
from storage import StateStore, StoreError

logger = logging.getLogger("power_watcher.handlers")

REJECTION_TEXT = "⛔ You are not authorized to use this bot."
STORE_UNAVAILABLE_TEXT = "⚠️ State store is unavailable, try again later."
UNKNOWN_COMMAND_TEXT = "Unknown command. Use /status."
HELP_TEXT = (
    "⚡ <b>Power watcher</b>\n\n"
    "Commands:\n"
    "/status - current power state and how long it has lasted\n"
    "/help - this message"
)

_STATUS_LINES: dict[PowerState, str] = {
    PowerState.UP: "\U0001f7e2 Power is ON",
    PowerState.DOWN: "\U0001f534 Power is OFF",
}


def _audit(
    *,
    chat_id: int,
    user_id: int,
    action: str,
    success: bool,
    error: str | None = None,
) -> None:
    logger.info(
        "AUDIT",
        extra={
            "chat_id": chat_id,
            "user_id": user_id,
            "action": action,
            "ok": success,
            "error_detail": error,
        },
    )


def _command_name(text: str) -> str:
    """``/Status@my_bot extra`` -> ``/status``."""
    head = text.strip().split(maxsplit=1)[0] if text.strip() else ""
    return head.split("@", 1)[0].lower()


def format_status(record: StateRecord, now: datetime) -> str:
    headline = _STATUS_LINES.get(record.current_state)
    if headline is None or record.since is None:
        return "❔ Power state is not known yet."

    elapsed = (now - record.since).total_seconds()
    lines = [
        f"{headline} for {format_duration(elapsed)}",
        f"<i>Since {format_timestamp(record.since)}</i>",
    ]
    if record.last_notified_at is not None:
        lines.append(
            f"Last alert: {record.last_notified_state.value.upper()} "
            f"at {format_timestamp(record.last_notified_at)}"
        )
    if record.is_pending:
        lines.append("Alert for the current state is still pending.")
    return "\n".join(lines)


class CommandHandler:
    """Authorizes inbound commands and answers status queries."""

    def __init__(
        self,
        store: StateStore,
        admin_user_id: int,
        *,
        reject_unauthorized: bool = True,
        stale_after: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._admin_id = admin_user_id
        self._reject = reject_unauthorized
        self._stale_after = stale_after
        self._clock = clock

    def is_authorized(self, sender_id: int) -> bool:
        return sender_id == self._admin_id

    async def handle(self, command: IncomingCommand) -> str | None:
        """Return the reply text, or ``None`` when nothing should be sent."""
        action = _command_name(command.text) or "<text>"

        if not self.is_authorized(command.sender_id):
            _audit(
                chat_id=command.chat_id,
                user_id=command.sender_id,
                action=action,
                success=False,
                error="Unauthorized user",
            )
            return REJECTION_TEXT if self._reject else None

        now = self._clock()
        age = (now - command.sent_at).total_seconds()
        if age > self._stale_after:
            # Queued while the host was down; the answer would be misleading.
            logger.info("Ignoring stale %s (%.0fs old)", action, age)
            return None

        try:
            fresh = await self._store.advance_cursor(command.chat_id, command.message_id)
        except StoreError as exc:
            logger.warning("Cannot advance admin cursor: %s", exc)
            fresh = True
        if not fresh:
            logger.info("Ignoring already handled message %d", command.message_id)
            return None

        _audit(
            chat_id=command.chat_id,
            user_id=command.sender_id,
            action=action,
            success=True,
        )

        if action == "/status":
            try:
                record = await self._store.load_record()
            except StoreError as exc:
                logger.error("Status query failed: %s", exc)
                return STORE_UNAVAILABLE_TEXT
            return format_status(record, now)
        if action in ("/start", "/help"):
            return HELP_TEXT
        return UNKNOWN_COMMAND_TEXT

    # -- aiogram glue --

    def register(self, dp: Dispatcher) -> None:
        dp.message.register(self._on_message, F.text.startswith("/"))

    async def _on_message(self, message: Message) -> None:
        user = message.from_user
        if user is None or message.text is None:
            return  # channel post / anonymous admin
        command = IncomingCommand(
            sender_id=user.id,
            chat_id=message.chat.id,
            message_id=message.message_id,
            text=message.text,
            sent_at=message.date,
        )
        reply = await self.handle(command)
        if reply is None:
            return
        try:
            await message.answer(reply, parse_mode="HTML")
        except TelegramAPIError as exc:
            logger.warning("Cannot reply in chat %s: %s", message.chat.id, exc)
