"""Debounce filter and power state machine.

Raw sensor readings go in; confirmed, persisted transitions come out on the
dispatcher queue, in confirmation order.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from models import PowerState, RawReading, StateRecord, Transition, utcnow
from sensor import PowerSensor, sample
from storage import StateStore, StoreError

logger = logging.getLogger("power_watcher.state_machine")


class Debouncer:
    """Accepts a new state only after it has been observed consistently.

    Count mode (``min_duration == 0``): ``min_readings`` consecutive readings.
    Elapsed mode (``min_duration > 0``): the candidate has been observed
    without interruption for at least ``min_duration`` seconds.
    UNKNOWN readings carry no information and break the streak.
    """

    def __init__(
        self,
        confirmed: PowerState,
        *,
        min_readings: int = 3,
        min_duration: float = 0.0,
    ) -> None:
        if min_readings < 1:
            raise ValueError("min_readings must be >= 1")
        self._confirmed = confirmed
        self._min_readings = min_readings
        self._min_duration = min_duration
        self._candidate: PowerState | None = None
        self._count = 0
        self._first_seen: datetime | None = None

    @property
    def confirmed(self) -> PowerState:
        return self._confirmed

    @property
    def candidate(self) -> PowerState | None:
        return self._candidate

    def _reset(self) -> None:
        self._candidate = None
        self._count = 0
        self._first_seen = None

    def feed(self, reading: RawReading) -> PowerState | None:
        """Return the newly confirmed state, or ``None`` if nothing changed."""
        observed = reading.observed
        if observed is PowerState.UNKNOWN or observed == self._confirmed:
            self._reset()
            return None

        if observed != self._candidate:
            self._candidate = observed
            self._count = 0
            self._first_seen = reading.observed_at
        self._count += 1

        if self._min_duration > 0:
            assert self._first_seen is not None
            stable = (reading.observed_at - self._first_seen).total_seconds() >= self._min_duration
        else:
            stable = self._count >= self._min_readings
        if not stable:
            return None

        self._confirmed = observed
        self._reset()
        return observed


class PowerStateMachine:
    """Polls the sensor, debounces, persists and emits transitions.

    A confirmed transition is queued for notification only after its
    ``power:state`` write succeeded.  When the store keeps failing, the
    in-memory state still advances and the write is retried on every
    following tick.
    """

    def __init__(
        self,
        sensor: PowerSensor,
        store: StateStore,
        queue: asyncio.Queue[Transition],
        *,
        debounce_readings: int = 3,
        debounce_seconds: float = 0.0,
        poll_interval: float = 5.0,
        store_retries: int = 3,
        retry_backoff: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sensor = sensor
        self._store = store
        self._queue = queue
        self._debounce_readings = debounce_readings
        self._debounce_seconds = debounce_seconds
        self._poll_interval = poll_interval
        self._store_retries = store_retries
        self._retry_backoff = retry_backoff
        self._clock = clock

        self._debouncer = Debouncer(
            PowerState.UNKNOWN,
            min_readings=debounce_readings,
            min_duration=debounce_seconds,
        )
        self._since: datetime | None = None
        # last state known to be in the store
        self._settled_state = PowerState.UNKNOWN
        self._settled_since: datetime | None = None
        self._unsettled: Transition | None = None

    @property
    def state(self) -> PowerState:
        return self._debouncer.confirmed

    @property
    def since(self) -> datetime | None:
        return self._since

    @property
    def unsettled(self) -> Transition | None:
        return self._unsettled

    async def load(self) -> StateRecord:
        """Resume from the persisted record (UNKNOWN on first boot)."""
        record = await self._store.load_record()
        self._debouncer = Debouncer(
            record.current_state,
            min_readings=self._debounce_readings,
            min_duration=self._debounce_seconds,
        )
        self._since = self._settled_since = record.since
        self._settled_state = record.current_state
        logger.info(
            "Resumed power state %s (since %s)",
            record.current_state.value, record.since,
            extra={"state": record.current_state.value},
        )
        return record

    async def observe(self, reading: RawReading) -> Transition | None:
        """Feed one reading.  Returns the transition if one was settled."""
        confirmed = self._debouncer.feed(reading)
        if confirmed is None:
            return None

        if confirmed == self._settled_state:
            # Flipped back before the previous change reached the store.
            if self._unsettled is not None:
                logger.warning(
                    "Dropping unsettled transition %s -> %s, state is back to %s",
                    self._unsettled.from_state.value,
                    self._unsettled.to_state.value,
                    confirmed.value,
                )
                self._unsettled = None
            self._since = self._settled_since
            return None

        self._since = reading.observed_at
        self._unsettled = Transition(
            from_state=self._settled_state,
            to_state=confirmed,
            since=reading.observed_at,
            previous_since=self._settled_since,
        )
        logger.info(
            "Power state confirmed: %s -> %s",
            self._settled_state.value, confirmed.value,
            extra={"state": confirmed.value},
        )
        return await self._settle()

    async def _settle(self) -> Transition | None:
        transition = self._unsettled
        assert transition is not None
        if not await self._persist(transition):
            return None
        self._unsettled = None
        self._settled_state = transition.to_state
        self._settled_since = transition.since
        await self._queue.put(transition)
        return transition

    async def _persist(self, transition: Transition) -> bool:
        attempts = self._store_retries + 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                await self._store.save_state(transition.to_state, transition.since)
                return True
            except StoreError as exc:
                last_error = str(exc)
                logger.warning(
                    "State write failed (attempt %d/%d): %s",
                    attempt, attempts, exc,
                )
            if attempt < attempts:
                await asyncio.sleep(self._retry_backoff * (2 ** (attempt - 1)))

        logger.error(
            "State write gave up after %d attempts, transition left unsettled",
            attempts,
            extra={
                "state": transition.to_state.value,
                "correlation_id": transition.correlation_id,
                "error_detail": last_error,
            },
        )
        return False

    async def tick(self) -> Transition | None:
        """Retry an unsettled write, then take and process one reading."""
        if self._unsettled is not None:
            await self._settle()
        reading = await sample(self._sensor, self._clock)
        return await self.observe(reading)

    async def run(self, stop: asyncio.Event) -> None:
        logger.info(
            "Power sensing started (poll every %.1fs, debounce %s)",
            self._poll_interval,
            f"{self._debounce_seconds:g}s" if self._debounce_seconds > 0
            else f"{self._debounce_readings} readings",
        )
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Power sensing loop error")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Power sensing stopped")
