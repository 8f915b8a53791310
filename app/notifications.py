"""Notification dispatcher: turns confirmed transitions into chat alerts.

- Single consumer task: alerts go out strictly in confirmation order
- Dedup against the persisted ``power:last_notified`` key (survives restarts)
- Transport retries with exponential back-off, honouring Telegram retry_after
- At-least-once: a crash between a successful send and the dedup write makes
  the alert go out again after restart; the text carries the ``since``
  timestamp so the duplicate is recognisable
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from models import (
    OutboundMessage,
    PowerState,
    StateRecord,
    Transition,
    format_duration,
    format_timestamp,
    utcnow,
)
from storage import StateStore, StoreError
from transport import Transport, TransportError

logger = logging.getLogger("power_watcher.notifications")

T = TypeVar("T")

_IDLE_POLL = 0.5  # seconds between stop-flag checks while the queue is empty

_TITLES: dict[PowerState, str] = {
    PowerState.UP: "\U0001f7e2 <b>Power is back ON</b>",
    PowerState.DOWN: "\U0001f534 <b>Power is OFF</b>",
    PowerState.UNKNOWN: "❔ <b>Power state is unknown</b>",
}

_PREVIOUS_DURATION: dict[PowerState, str] = {
    PowerState.UP: "Power was on for",
    PowerState.DOWN: "Power was off for",
}


def missed_changes(transition: Transition, record: StateRecord) -> bool:
    """True when the chat last heard of a state this transition did not start from."""
    return (
        record.last_notified_since is not None
        and transition.previous_since is not None
        and record.last_notified_since != transition.previous_since
    )


def format_transition(transition: Transition, record: StateRecord) -> str:
    lines = [
        _TITLES[transition.to_state],
        f"<i>Since {format_timestamp(transition.since)}</i>",
    ]
    label = _PREVIOUS_DURATION.get(transition.from_state)
    if label and transition.previous_since is not None:
        elapsed = (transition.since - transition.previous_since).total_seconds()
        lines.append(f"{label} {format_duration(elapsed)}")
    if missed_changes(transition, record):
        assert record.last_notified_since is not None
        lines.append(
            f"⚠️ Earlier changes were not delivered. Last reported: "
            f"{record.last_notified_state.value.upper()} "
            f"since {format_timestamp(record.last_notified_since)}"
        )
    return "\n".join(lines)


class NotificationDispatcher:
    """Serialised, deduplicated, retried delivery of power alerts."""

    def __init__(
        self,
        store: StateStore,
        transport: Transport,
        chat_id: int,
        *,
        send_retries: int = 3,
        store_retries: int = 3,
        retry_backoff: float = 1.0,
        notify_initial: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._transport = transport
        self._chat_id = chat_id
        self._send_retries = send_retries
        self._store_retries = store_retries
        self._backoff = retry_backoff
        self._notify_initial = notify_initial
        self._clock = clock
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[Transition] | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop = False

    # -- lifecycle --

    async def start(self, queue: asyncio.Queue[Transition]) -> None:
        self._queue = queue
        self._stop = False
        self._task = asyncio.create_task(self._run_loop(), name="notifications")
        logger.info("Notification dispatcher started")

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting work, drain what is queued, give up after ``timeout``."""
        self._stop = True
        if self._task and not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            except asyncio.TimeoutError:
                left = self._queue.qsize() if self._queue else 0
                logger.error(
                    "Dispatcher did not drain within %.1fs, %d transition(s) left; "
                    "the persisted state will replay on restart",
                    timeout, left,
                )
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        logger.info("Notification dispatcher stopped")

    async def _run_loop(self) -> None:
        assert self._queue is not None
        while True:
            if self._stop and self._queue.empty():
                return
            try:
                transition = await asyncio.wait_for(self._queue.get(), timeout=_IDLE_POLL)
            except asyncio.TimeoutError:
                continue
            try:
                await self.notify(transition)
            except Exception:
                logger.exception(
                    "Unexpected error notifying %s", transition.correlation_id
                )
            finally:
                self._queue.task_done()

    # -- public operations --

    async def notify(self, transition: Transition) -> bool:
        """Announce ``transition`` unless the chat already knows about it.

        Returns ``True`` when a message was delivered.
        """
        async with self._lock:
            record = await self._with_store_retries("read state", self._store.load_record)
            if record is None:
                logger.error(
                    "Cannot read dedup key, notification postponed to replay",
                    extra={"correlation_id": transition.correlation_id},
                )
                return False

            if transition.to_state == record.last_notified_state:
                logger.info(
                    "Already notified %s, skipping",
                    transition.to_state.value,
                    extra={"correlation_id": transition.correlation_id},
                )
                return False

            if (
                transition.is_baseline
                and record.last_notified_state is PowerState.UNKNOWN
                and not self._notify_initial
            ):
                logger.info(
                    "Baseline power state %s recorded without alert",
                    transition.to_state.value,
                    extra={"state": transition.to_state.value},
                )
                await self._mark_notified(transition)
                return False

            message = OutboundMessage(
                chat_id=self._chat_id,
                text=format_transition(transition, record),
                correlation_id=transition.correlation_id,
            )
            if not await self._deliver(message):
                logger.error(
                    "Notification dropped, last notified state stays %s",
                    record.last_notified_state.value,
                    extra={
                        "chat_id": self._chat_id,
                        "correlation_id": message.correlation_id,
                        "ok": False,
                    },
                )
                return False

            await self._mark_notified(transition)
            return True

    async def replay_pending(self) -> Transition | None:
        """Re-announce a transition persisted but never acknowledged.

        Called once at startup.  A populated store with nothing pending
        produces no message.
        """
        record = await self._with_store_retries("read state", self._store.load_record)
        if record is None or not record.is_pending:
            return None
        transition = Transition(
            from_state=record.last_notified_state,
            to_state=record.current_state,
            since=record.since or self._clock(),
        )
        logger.info(
            "Replaying pending notification %s -> %s",
            transition.from_state.value, transition.to_state.value,
            extra={"correlation_id": transition.correlation_id},
        )
        await self.notify(transition)
        return transition

    async def send_report(self, text: str, correlation_id: str) -> bool:
        """Send a free-form report through the same serialised path."""
        async with self._lock:
            return await self._deliver(
                OutboundMessage(chat_id=self._chat_id, text=text, correlation_id=correlation_id)
            )

    # -- internals --

    async def _deliver(self, message: OutboundMessage) -> bool:
        attempts = self._send_retries + 1
        for attempt in range(1, attempts + 1):
            delay = self._backoff * (2 ** (attempt - 1))
            try:
                await self._transport.send_text(message.chat_id, message.text)
                logger.info(
                    "Notification delivered",
                    extra={
                        "chat_id": message.chat_id,
                        "correlation_id": message.correlation_id,
                        "ok": True,
                    },
                )
                return True
            except TransportError as exc:
                logger.warning(
                    "Notification send failed (attempt %d/%d): %s",
                    attempt, attempts, exc,
                    extra={"correlation_id": message.correlation_id},
                )
                if exc.permanent:
                    return False
                if exc.retry_after:
                    delay = max(delay, exc.retry_after)
            if attempt < attempts:
                await asyncio.sleep(delay)
        return False

    async def _mark_notified(self, transition: Transition) -> bool:
        now = self._clock()

        async def _write() -> bool:
            await self._store.mark_notified(transition.to_state, now, transition.since)
            return True

        if await self._with_store_retries("write last_notified", _write):
            return True
        logger.error(
            "Could not record delivered notification; it will be re-sent after restart",
            extra={"correlation_id": transition.correlation_id, "state": transition.to_state.value},
        )
        return False

    async def _with_store_retries(
        self, what: str, op: Callable[[], Awaitable[T]]
    ) -> T | None:
        attempts = self._store_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await op()
            except StoreError as exc:
                logger.warning(
                    "State store %s failed (attempt %d/%d): %s",
                    what, attempt, attempts, exc,
                )
            if attempt < attempts:
                await asyncio.sleep(self._backoff * (2 ** (attempt - 1)))
        return None
