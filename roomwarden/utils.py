"""Shared utility helpers for roomwarden."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, TypeVar

from .errors import TransientProtocolError

T = TypeVar("T")

_DURATION_RE = re.compile(r"^(\d+)\s*([smhd]?)$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse an ISO timestamp string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # SQLite stores naive timestamps as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def format_timestamp(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


def parse_duration(text: str) -> int:
    """Parse '90', '90s', '30m', '2h' or '1d' into seconds.

    Raises ValueError on anything else.
    """
    match = _DURATION_RE.match(text.strip())
    if not match:
        raise ValueError(f"invalid duration: {text!r}")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit.lower()]


def format_duration(seconds: float) -> str:
    """Human-friendly duration, e.g. '1h 5m'."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    hours, rem = divmod(seconds, 3600)
    minutes = rem // 60
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"


def localpart(member_id: str) -> str:
    """'@alice:example.org' → 'alice'."""
    return member_id.split(":", 1)[0].lstrip("@")


async def with_timeout(aw: Awaitable[T], timeout: float, action: str, room_id: str) -> T:
    """Await a gateway call, turning a timeout into a transient failure."""
    try:
        return await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransientProtocolError(action, room_id, f"timed out after {timeout:g}s") from exc


class KeyedLock:
    """One asyncio.Lock per key, created on demand and dropped when idle."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
