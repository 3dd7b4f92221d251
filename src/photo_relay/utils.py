"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import math
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

SleepFunc = Callable[[float], Awaitable[None]]

_EXTRA_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class RateLimiter:
    """Fixed pause taken after each successful delivery."""

    def __init__(self, interval: float, *, sleep: SleepFunc | None = None):
        self.update_interval(interval)
        self._sleep = sleep or asyncio.sleep

    @property
    def interval(self) -> float:
        return self._interval

    def update_interval(self, interval: float) -> None:
        self._interval = max(0.0, float(interval))

    async def pause(self) -> None:
        if self._interval <= 0:
            return
        await self._sleep(self._interval)


def parse_seconds(value: str | None, default: float = 0.0) -> float:
    """Parse a non-negative duration in seconds, falling back to ``default``."""

    if value is None:
        return default
    stripped = value.strip()
    if not stripped:
        return default
    try:
        parsed = float(stripped)
    except ValueError:
        return default
    if not math.isfinite(parsed):
        return default
    return max(0.0, parsed)


def parse_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    """Parse a non-negative integer setting, falling back to ``default``."""

    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return max(minimum, parsed)


def ensure_utc(moment: datetime) -> datetime:
    """Return ``moment`` as an aware UTC datetime; naive values are taken as UTC."""

    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    value = _EXTRA_FRACTION_RE.sub(r"\1", value.strip())
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return ensure_utc(parsed)


def format_timestamp(moment: datetime) -> str:
    return ensure_utc(moment).isoformat().replace("+00:00", "Z")


def resolve_timezone(name: str) -> tzinfo:
    return ZoneInfo(name)


def as_local_time(moment: datetime, zone: tzinfo) -> datetime:
    """Return ``moment`` converted to ``zone``."""

    return ensure_utc(moment).astimezone(zone)
