"""Power sensor adapters.

A sensor answers one question, "does the host have mains power right now?",
and knows nothing about debouncing or persistence.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol

import aiohttp

from models import PowerState, RawReading, utcnow

logger = logging.getLogger("power_watcher.sensor")

DEFAULT_SYSFS_PATH = Path("/sys/class/power_supply/AC/online")
PROBE_TIMEOUT = aiohttp.ClientTimeout(total=5, sock_connect=3)


class SensorError(Exception):
    """The sensor could not produce a reading."""


class PowerSensor(Protocol):
    async def read(self) -> PowerState: ...

    async def close(self) -> None: ...


class ProcessAliveSensor:
    """The host has power for as long as this process is running.

    Outages are detected after the fact from heartbeat gaps.
    """

    async def read(self) -> PowerState:
        return PowerState.UP

    async def close(self) -> None:
        return None


class SysfsPowerSensor:
    """Reads the kernel's AC adapter ``online`` flag."""

    def __init__(self, path: Path = DEFAULT_SYSFS_PATH) -> None:
        self._path = path

    async def read(self) -> PowerState:
        try:
            raw = (await asyncio.to_thread(self._path.read_text)).strip()
        except OSError as exc:
            raise SensorError(f"cannot read {self._path}: {exc}") from exc
        if raw == "1":
            return PowerState.UP
        if raw == "0":
            return PowerState.DOWN
        raise SensorError(f"unexpected value in {self._path}: {raw!r}")

    async def close(self) -> None:
        return None


class HttpProbeSensor:
    """Probes a device that is powered from mains only (router, plug, ...).

    Any HTTP answer means the device and therefore mains are up; a refused
    connection or a timeout means down.
    """

    def __init__(self, url: str, timeout: aiohttp.ClientTimeout = PROBE_TIMEOUT) -> None:
        self._url = url
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def read(self) -> PowerState:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        try:
            async with self._session.get(self._url, allow_redirects=False) as resp:
                logger.debug("Probe %s -> HTTP %d", self._url, resp.status)
                return PowerState.UP
        except (asyncio.TimeoutError, aiohttp.ClientConnectionError):
            return PowerState.DOWN
        except aiohttp.ClientError as exc:
            raise SensorError(f"probe {self._url} failed: {exc}") from exc

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


async def sample(
    sensor: PowerSensor, clock: Callable[[], datetime] = utcnow
) -> RawReading:
    """Take one reading.  Sensor failures become UNKNOWN readings."""
    try:
        observed = await sensor.read()
    except SensorError as exc:
        logger.warning("Sensor read failed: %s", exc)
        observed = PowerState.UNKNOWN
    except Exception:
        logger.exception("Unexpected sensor failure")
        observed = PowerState.UNKNOWN
    return RawReading(observed=observed, observed_at=clock())
