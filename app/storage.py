"""SQLite state store: single persistent connection, WAL mode, CAS writes.

Every key holds a JSON document plus a monotonically increasing ``version``.
Writers never blindly overwrite: they read ``(value, version)`` and commit
with ``UPDATE ... WHERE version = ?``, retrying on conflict.

Keys (all inside one namespace):
- power:state          confirmed power state and when it started
- power:last_notified  last state announced to the chat
- power:heartbeat      last time the monitor was known to be running
- power:wake_up        when the current monitor run started
- admin:cursor:<chat>  last admin message id handled in a chat
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import aiosqlite

from models import PowerState, StateRecord

logger = logging.getLogger("power_watcher.storage")

KEY_STATE = "power:state"
KEY_LAST_NOTIFIED = "power:last_notified"
KEY_HEARTBEAT = "power:heartbeat"
KEY_WAKE_UP = "power:wake_up"
KEY_ADMIN_CURSOR = "admin:cursor"

DEFAULT_NAMESPACE = "power_watcher"
_CAS_ATTEMPTS = 5


class StoreError(Exception):
    """The state store could not complete an operation."""


class VersionConflict(StoreError):
    """A compare-and-set lost against a concurrent writer."""


@dataclass(frozen=True, slots=True)
class Versioned:
    value: dict[str, Any] | None
    version: int  # 0 when the key does not exist


def _parse_ts(raw: Any) -> datetime | None:
    if not isinstance(raw, str):
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


class StateStore:
    """Key/value access layer over a persistent aiosqlite connection."""

    def __init__(self, path: Path, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._path = path
        self._ns = namespace
        self._db: aiosqlite.Connection | None = None
        self._locks: dict[str, asyncio.Lock] = {}

    async def open(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self._path))
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA busy_timeout=5000")
            await self._db.execute(
                """CREATE TABLE IF NOT EXISTS kv (
                       namespace  TEXT    NOT NULL,
                       key        TEXT    NOT NULL,
                       value      TEXT    NOT NULL,
                       version    INTEGER NOT NULL,
                       updated_at REAL    NOT NULL,
                       PRIMARY KEY (namespace, key)
                   )"""
            )
            await self._db.commit()
        except (aiosqlite.Error, OSError) as exc:
            await self.close()
            raise StoreError(f"cannot open state store {self._path}: {exc}") from exc
        logger.info("State store opened: %s (WAL mode, namespace=%s)", self._path, self._ns)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # --- raw key/value ---

    async def get(self, key: str) -> Versioned:
        assert self._db is not None, "StateStore.open() not called"
        try:
            async with self._db.execute(
                "SELECT value, version FROM kv WHERE namespace = ? AND key = ?",
                (self._ns, key),
            ) as cur:
                row = await cur.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(f"GET {key} failed: {exc}") from exc
        if row is None:
            return Versioned(None, 0)
        try:
            value = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Corrupt value under %s, treating as absent", key)
            value = None
        return Versioned(value if isinstance(value, dict) else None, row[1])

    async def compare_and_set(
        self, key: str, value: dict[str, Any], expected_version: int
    ) -> int:
        """Write ``value`` only if the key is still at ``expected_version``.

        Returns the new version.  Raises ``VersionConflict`` otherwise.
        """
        assert self._db is not None, "StateStore.open() not called"
        payload = json.dumps(value, ensure_ascii=False)
        now = time.time()
        try:
            if expected_version == 0:
                cur = await self._db.execute(
                    "INSERT INTO kv (namespace, key, value, version, updated_at) "
                    "VALUES (?, ?, ?, 1, ?) ON CONFLICT(namespace, key) DO NOTHING",
                    (self._ns, key, payload, now),
                )
            else:
                cur = await self._db.execute(
                    "UPDATE kv SET value = ?, version = version + 1, updated_at = ? "
                    "WHERE namespace = ? AND key = ? AND version = ?",
                    (payload, now, self._ns, key, expected_version),
                )
            changed = cur.rowcount
            await cur.close()
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"CAS {key} failed: {exc}") from exc
        if changed != 1:
            raise VersionConflict(f"{key} moved past version {expected_version}")
        return expected_version + 1

    async def update(
        self,
        key: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any] | None],
    ) -> dict[str, Any] | None:
        """Read-modify-write ``key`` with CAS.

        ``fn`` receives the current value and returns the new one, or
        ``None`` to leave the key untouched.  Returns what was written.
        """
        async with self._lock(key):
            for _ in range(_CAS_ATTEMPTS):
                current = await self.get(key)
                new_value = fn(current.value)
                if new_value is None:
                    return None
                try:
                    await self.compare_and_set(key, new_value, current.version)
                    return new_value
                except VersionConflict:
                    logger.warning("CAS conflict on %s, re-reading", key)
        raise VersionConflict(f"{key}: gave up after {_CAS_ATTEMPTS} conflicting writes")

    async def set(self, key: str, value: dict[str, Any]) -> None:
        await self.update(key, lambda _current: value)

    # --- power state ---

    async def load_record(self) -> StateRecord:
        state = (await self.get(KEY_STATE)).value or {}
        notified = (await self.get(KEY_LAST_NOTIFIED)).value or {}
        return StateRecord(
            current_state=PowerState.parse(state.get("state")),
            since=_parse_ts(state.get("since")),
            last_notified_state=PowerState.parse(notified.get("state")),
            last_notified_at=_parse_ts(notified.get("at")),
            last_notified_since=_parse_ts(notified.get("since")),
        )

    async def save_state(self, state: PowerState, since: datetime) -> None:
        """Persist a confirmed transition (power:state)."""
        await self.set(KEY_STATE, {"state": state.value, "since": since.isoformat()})

    async def mark_notified(
        self, state: PowerState, at: datetime, since: datetime | None = None
    ) -> None:
        """Persist the dedup key (power:last_notified)."""
        value = {"state": state.value, "at": at.isoformat()}
        if since is not None:
            value["since"] = since.isoformat()
        await self.set(KEY_LAST_NOTIFIED, value)

    # --- timestamps (heartbeat / wake-up) ---

    async def get_time(self, key: str) -> datetime | None:
        value = (await self.get(key)).value or {}
        return _parse_ts(value.get("at"))

    async def set_time(self, key: str, at: datetime) -> None:
        await self.set(key, {"at": at.isoformat()})

    # --- admin cursor ---

    async def advance_cursor(self, chat_id: int, message_id: int) -> bool:
        """Move the per-chat admin cursor forward.

        Returns ``False`` when ``message_id`` was already handled.
        """
        def _advance(current: dict[str, Any] | None) -> dict[str, Any] | None:
            last = (current or {}).get("message_id", 0)
            if isinstance(last, int) and message_id <= last:
                return None
            return {"message_id": message_id}

        return await self.update(f"{KEY_ADMIN_CURSOR}:{chat_id}", _advance) is not None

    async def get_cursor(self, chat_id: int) -> int:
        value = (await self.get(f"{KEY_ADMIN_CURSOR}:{chat_id}")).value or {}
        last = value.get("message_id", 0)
        return last if isinstance(last, int) else 0

    # --- introspection ---

    async def dump(self) -> dict[str, tuple[str, int]]:
        """Return ``{key: (raw_value, version)}`` for this namespace."""
        assert self._db is not None, "StateStore.open() not called"
        async with self._db.execute(
            "SELECT key, value, version FROM kv WHERE namespace = ? ORDER BY key",
            (self._ns,),
        ) as cur:
            rows = await cur.fetchall()
        return {r[0]: (r[1], r[2]) for r in rows}
