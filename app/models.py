"""Data model shared by the sensing, notification and command paths."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PowerState(str, Enum):
    """Confirmed (debounced) power status."""

    UP = "up"
    DOWN = "down"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: object) -> PowerState:
        """Lenient decoding of persisted values; garbage becomes UNKNOWN."""
        try:
            return cls(raw)
        except (TypeError, ValueError):
            return cls.UNKNOWN


@dataclass(frozen=True, slots=True)
class RawReading:
    observed: PowerState
    observed_at: datetime


@dataclass(frozen=True, slots=True)
class StateRecord:
    """Persisted view of the power state and of the last alert sent.

    ``last_notified_state`` lags ``current_state`` while a notification is
    outstanding (pending-notify window).
    """

    current_state: PowerState = PowerState.UNKNOWN
    since: datetime | None = None
    last_notified_state: PowerState = PowerState.UNKNOWN
    last_notified_at: datetime | None = None
    # `since` of the announced state; differs from the next transition's
    # previous_since when alerts in between were lost
    last_notified_since: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return (
            self.current_state is not PowerState.UNKNOWN
            and self.current_state != self.last_notified_state
        )


@dataclass(frozen=True, slots=True)
class Transition:
    from_state: PowerState
    to_state: PowerState
    since: datetime
    previous_since: datetime | None = None

    @property
    def correlation_id(self) -> str:
        return f"{self.to_state.value}@{self.since.isoformat()}"

    @property
    def is_baseline(self) -> bool:
        return self.from_state is PowerState.UNKNOWN


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    chat_id: int
    text: str
    correlation_id: str


@dataclass(frozen=True, slots=True)
class IncomingCommand:
    """Inbound bot message, stripped down to what the handler needs."""

    sender_id: int
    chat_id: int
    message_id: int
    text: str
    sent_at: datetime


def format_duration(seconds: float) -> str:
    """Human-friendly duration like ``2 days 3 hours 10 seconds``."""
    total = max(int(seconds), 0)
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)

    parts: list[str] = []
    for value, unit in ((days, "day"), (hours, "hour"), (minutes, "minute"), (secs, "second")):
        if value:
            parts.append(f"{value} {unit}" + ("" if value == 1 else "s"))
    return " ".join(parts) or "0 seconds"


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
