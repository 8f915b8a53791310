"""Heartbeat: detects outages that took the monitor itself down.

While running, the monitor stamps ``power:heartbeat`` periodically.  On the
next start the gap since the last stamp is how long the host was off (or at
least how long the monitor was not running).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from models import format_duration, format_timestamp, utcnow
from notifications import NotificationDispatcher
from storage import KEY_HEARTBEAT, KEY_WAKE_UP, StateStore, StoreError

logger = logging.getLogger("power_watcher.heartbeat")


class Heartbeat:
    def __init__(
        self,
        store: StateStore,
        dispatcher: NotificationDispatcher,
        *,
        interval: float = 60.0,
        outage_threshold: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._interval = interval
        self._threshold = outage_threshold
        self._clock = clock

    async def report_previous_outage(self) -> bool:
        """Report the gap since the last heartbeat if it exceeds the threshold.

        Returns ``True`` when a report was delivered.  Always records the
        new wake-up time, so a report is attempted once per outage.
        """
        now = self._clock()
        last_beat = await self._store.get_time(KEY_HEARTBEAT)
        woke_up = await self._store.get_time(KEY_WAKE_UP)
        delivered = False

        if last_beat is None:
            logger.info("No previous heartbeat, first run")
        else:
            gap = (now - last_beat).total_seconds()
            if self._threshold > 0 and gap >= self._threshold:
                lines = [
                    "⚡ <b>Power watcher is back online</b>",
                    f"It was offline for {format_duration(gap)} "
                    f"(last heartbeat {format_timestamp(last_beat)}).",
                ]
                if woke_up is not None and woke_up <= last_beat:
                    ran_for = (last_beat - woke_up).total_seconds()
                    lines.append(f"Before that it ran for {format_duration(ran_for)}.")
                delivered = await self._dispatcher.send_report(
                    "\n".join(lines), correlation_id=f"outage@{last_beat.isoformat()}"
                )
            else:
                logger.info("Restarted after %.0fs, below outage threshold", gap)

        await self._store.set_time(KEY_WAKE_UP, now)
        await self._store.set_time(KEY_HEARTBEAT, now)
        return delivered

    async def beat(self) -> None:
        await self._store.set_time(KEY_HEARTBEAT, self._clock())

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            try:
                await self.beat()
            except StoreError as exc:
                logger.warning("Heartbeat write failed: %s", exc)
            except Exception:
                logger.exception("Heartbeat loop error")
