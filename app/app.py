#!/usr/bin/env python3
"""
Power Watcher.

Watches the host's mains power and reports confirmed transitions to a
Telegram chat; answers /status for the configured administrator.

Production-hardened version:
- Debounced state machine, state persisted to SQLite (WAL) before alerting
- Dedup key in the store: restarts never re-send stale alerts
- Telegram sends retried with exponential back-off
- Structured JSON logs (never leaks tokens)
- Graceful SIGTERM handling (via aiogram), queued alerts drained on exit
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

from aiogram import Bot, Dispatcher
from aiogram.exceptions import TelegramUnauthorizedError
from aiogram.types import User

from handlers import CommandHandler
from heartbeat import Heartbeat
from models import Transition
from notifications import NotificationDispatcher
from sensor import (
    DEFAULT_SYSFS_PATH,
    HttpProbeSensor,
    PowerSensor,
    ProcessAliveSensor,
    SysfsPowerSensor,
)
from state_machine import PowerStateMachine
from storage import DEFAULT_NAMESPACE, StateStore, StoreError
from transport import TelegramTransport

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_STORE_UNAVAILABLE = 2

SENSOR_KINDS: frozenset[str] = frozenset({"process", "sysfs", "http"})
_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")

# ---------------------------------------------------------------------------
# Logging: structured JSON on stdout
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Emit each log record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            payload["exc"] = self.formatException(record.exc_info)
        # Merge structured extras added via `extra={…}`
        for key in (
            "chat_id", "user_id", "action", "ok", "error_detail",
            "state", "correlation_id",
        ):
            val = getattr(record, key, None)
            if val is not None:
                payload[key] = val
        return json.dumps(payload, ensure_ascii=False)


def _setup_logging() -> logging.Logger:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)
    return logging.getLogger("power_watcher")


logger = _setup_logging()

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Config:
    """Validated, immutable configuration read from the environment."""

    bot_token: str
    chat_id_to_report: int
    admin_user_id: int
    state_store_path: Path
    state_namespace: str = DEFAULT_NAMESPACE
    sensor: str = "process"
    sensor_sysfs_path: Path = DEFAULT_SYSFS_PATH
    sensor_http_url: str = ""
    poll_interval: float = 5.0
    debounce_readings: int = 3
    debounce_seconds: float = 0.0
    send_retries: int = 3
    store_retries: int = 3
    retry_backoff: float = 1.0
    queue_size: int = 64
    heartbeat_interval: float = 60.0
    outage_threshold: float = 300.0
    notify_initial_state: bool = False
    reject_unauthorized: bool = True
    stale_command_seconds: float = 60.0
    shutdown_timeout: float = 10.0
    log_level: str = "INFO"

    def __repr__(self) -> str:
        # bot_token must never end up in a log line
        return (
            f"Config(chat_id_to_report={self.chat_id_to_report}, "
            f"admin_user_id={self.admin_user_id}, "
            f"state_store_path='{self.state_store_path}', sensor='{self.sensor}')"
        )


def _fail(message: str, *args: Any) -> NoReturn:
    logger.critical(message, *args)
    sys.exit(EXIT_CONFIG)


def _clean_token(raw: str) -> str:
    token = raw.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "\"'":
        token = token[1:-1].strip()
    return token


def _env_int(name: str, default: int | None = None, *, minimum: int | None = None) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        if default is None:
            _fail("%s is not set", name)
        return default
    try:
        value = int(raw)
    except ValueError:
        _fail("%s must be an integer, got '%s'", name, raw)
    if minimum is not None and value < minimum:
        _fail("%s must be >= %d", name, minimum)
    return value


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        _fail("%s must be a number, got '%s'", name, raw)
    if value < minimum:
        _fail("%s must be >= %g", name, minimum)
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    _fail("%s must be a boolean, got '%s'", name, raw)


def _load_and_validate_config() -> Config:
    """Read the environment.

    Exits the process with a clear log message on any validation failure.
    """

    # -- required --
    bot_token = _clean_token(os.environ.get("BOT_TOKEN", ""))
    if not bot_token:
        _fail("BOT_TOKEN is missing or empty")
    if not _TOKEN_RE.match(bot_token):
        _fail("BOT_TOKEN is malformed (expected '<digits>:<token>')")

    chat_id = _env_int("CHAT_ID_TO_REPORT")
    if chat_id == 0:
        _fail("CHAT_ID_TO_REPORT must not be 0")
    admin_id = _env_int("ADMIN_USER_ID", minimum=1)

    store_path = os.environ.get("STATE_STORE_PATH", "").strip()
    if not store_path:
        _fail("STATE_STORE_PATH is not set")

    # -- optional with defaults --
    sensor = os.environ.get("POWER_SENSOR", "process").strip().lower() or "process"
    if sensor not in SENSOR_KINDS:
        _fail("POWER_SENSOR must be one of %s", ", ".join(sorted(SENSOR_KINDS)))
    http_url = os.environ.get("SENSOR_HTTP_URL", "").strip()
    if sensor == "http" and not http_url.startswith(("http://", "https://")):
        _fail("SENSOR_HTTP_URL must be an http(s) URL when POWER_SENSOR=http")

    log_level = os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        _fail("LOG_LEVEL '%s' is not a logging level", log_level)

    return Config(
        bot_token=bot_token,
        chat_id_to_report=chat_id,
        admin_user_id=admin_id,
        state_store_path=Path(store_path),
        state_namespace=os.environ.get("STATE_NAMESPACE", "").strip() or DEFAULT_NAMESPACE,
        sensor=sensor,
        sensor_sysfs_path=Path(
            os.environ.get("SENSOR_SYSFS_PATH", "").strip() or DEFAULT_SYSFS_PATH
        ),
        sensor_http_url=http_url,
        poll_interval=_env_float("POLL_INTERVAL_SECONDS", 5.0, minimum=0.1),
        debounce_readings=_env_int("DEBOUNCE_READINGS", 3, minimum=1),
        debounce_seconds=_env_float("DEBOUNCE_SECONDS", 0.0),
        send_retries=_env_int("SEND_RETRIES", 3, minimum=0),
        store_retries=_env_int("STORE_RETRIES", 3, minimum=0),
        retry_backoff=_env_float("RETRY_BACKOFF_SECONDS", 1.0),
        queue_size=_env_int("QUEUE_SIZE", 64, minimum=1),
        heartbeat_interval=_env_float("HEARTBEAT_INTERVAL_SECONDS", 60.0, minimum=1.0),
        outage_threshold=_env_float("OUTAGE_REPORT_THRESHOLD_SECONDS", 300.0),
        notify_initial_state=_env_bool("NOTIFY_INITIAL_STATE", False),
        reject_unauthorized=_env_bool("REJECT_UNAUTHORIZED", True),
        stale_command_seconds=_env_float("STALE_COMMAND_SECONDS", 60.0),
        shutdown_timeout=_env_float("SHUTDOWN_TIMEOUT_SECONDS", 10.0),
        log_level=log_level,
    )


def _build_sensor(config: Config) -> PowerSensor:
    if config.sensor == "sysfs":
        return SysfsPowerSensor(config.sensor_sysfs_path)
    if config.sensor == "http":
        return HttpProbeSensor(config.sensor_http_url)
    return ProcessAliveSensor()


# ---------------------------------------------------------------------------
# Power watcher
# ---------------------------------------------------------------------------


class PowerWatcher:
    """Wires sensing, notification and command paths; manages lifecycle."""

    _TELEGRAM_VERIFY_RETRIES = 5
    _TELEGRAM_VERIFY_BACKOFF = 2.0

    def __init__(self, config: Config) -> None:
        self._config = config
        self._bot = Bot(token=config.bot_token)
        self._dp = Dispatcher()
        self._store = StateStore(config.state_store_path, config.state_namespace)
        self._sensor = _build_sensor(config)
        self._queue: asyncio.Queue[Transition] = asyncio.Queue(maxsize=config.queue_size)
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

        self._dispatcher = NotificationDispatcher(
            self._store,
            TelegramTransport(self._bot),
            config.chat_id_to_report,
            send_retries=config.send_retries,
            store_retries=config.store_retries,
            retry_backoff=config.retry_backoff,
            notify_initial=config.notify_initial_state,
        )
        self._machine = PowerStateMachine(
            self._sensor,
            self._store,
            self._queue,
            debounce_readings=config.debounce_readings,
            debounce_seconds=config.debounce_seconds,
            poll_interval=config.poll_interval,
            store_retries=config.store_retries,
            retry_backoff=config.retry_backoff,
        )
        self._heartbeat = Heartbeat(
            self._store,
            self._dispatcher,
            interval=config.heartbeat_interval,
            outage_threshold=config.outage_threshold,
        )
        self._commands = CommandHandler(
            self._store,
            config.admin_user_id,
            reject_unauthorized=config.reject_unauthorized,
            stale_after=config.stale_command_seconds,
        )
        self._commands.register(self._dp)

    # -- lifecycle --

    async def run(self) -> None:
        """Open the store, resume state, then block on long-polling."""
        try:
            await self._store.open()
            await self._machine.load()
        except StoreError as exc:
            logger.critical("State store unreachable: %s", exc)
            sys.exit(EXIT_STORE_UNAVAILABLE)

        await self._verify_telegram_token()

        await self._dispatcher.replay_pending()
        try:
            await self._heartbeat.report_previous_outage()
        except StoreError as exc:
            logger.warning("Outage check skipped: %s", exc)

        await self._dispatcher.start(self._queue)
        self._tasks = [
            asyncio.create_task(self._machine.run(self._stop), name="power-sensing"),
            asyncio.create_task(self._heartbeat.run(self._stop), name="heartbeat"),
        ]

        logger.info("Bot polling started")
        await self._dp.start_polling(self._bot, allowed_updates=["message"])

    async def shutdown(self) -> None:
        """Stop loops, drain alerts, release resources.  Safe after a failed run()."""
        self._stop.set()
        timeout = self._config.shutdown_timeout
        for task in self._tasks:
            try:
                await asyncio.wait_for(task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Task %s did not stop in %.1fs", task.get_name(), timeout)
            except Exception:
                logger.exception("Task %s failed", task.get_name())
        await self._dispatcher.stop(timeout)

        errors: list[str] = []
        for label, coro in [
            ("sensor", self._sensor.close()),
            ("state store", self._store.close()),
            ("bot session", self._bot.session.close()),
        ]:
            try:
                await coro
            except Exception as exc:
                errors.append(f"{label}: {exc}")
        if errors:
            logger.warning("Shutdown warnings: %s", "; ".join(errors))
        logger.info("Shutdown complete")

    async def _verify_telegram_token(self) -> User | None:
        """Pre-flight getMe.  A rejected token is fatal, a network error is not."""
        retries = self._TELEGRAM_VERIFY_RETRIES
        for attempt in range(1, retries + 1):
            try:
                me = await self._bot.get_me()
                logger.info("Telegram token verified: @%s", me.username)
                return me
            except TelegramUnauthorizedError:
                logger.critical("Telegram rejected BOT_TOKEN")
                sys.exit(EXIT_CONFIG)
            except Exception as exc:
                logger.warning(
                    "Telegram getMe failed (attempt %d/%d): %s", attempt, retries, exc
                )
            if attempt < retries:
                await asyncio.sleep(self._TELEGRAM_VERIFY_BACKOFF * attempt)
        logger.error("Telegram API unreachable, polling will keep retrying")
        return None


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def main() -> int:
    logger.info("Loading configuration…")
    config = _load_and_validate_config()
    logging.getLogger().setLevel(config.log_level)
    logger.info("Configuration loaded: %r", config)

    watcher = PowerWatcher(config)
    try:
        await watcher.run()  # blocks until SIGTERM / SIGINT (handled by aiogram)
    except asyncio.CancelledError:
        logger.info("Cancelled, shutting down")
    except Exception:
        logger.exception("Fatal error")
        return EXIT_CONFIG
    finally:
        await watcher.shutdown()
    return EXIT_OK


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
