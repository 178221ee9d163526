"""Operator alerts — templated, deduplicated, rate-limited notices.

Permanent propagation failures, failed welcomes and lost welcome rooms are
reported here. Alerts go to ``alerts.room`` through the gateway from a
background flush loop; with no alert room configured they are only logged.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .errors import ProtocolError
from .formatting import render

if TYPE_CHECKING:
    from .config import WardenConfig
    from .gateway import Gateway


class AlertNotifier:
    """Centralized alert channel for operator-visible failures."""

    def __init__(
        self,
        config: WardenConfig,
        gateway: Gateway | None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._logger = logger or logging.getLogger("roomwarden.alerts")

        # Dedup ring buffer: (message_hash, timestamp)
        self._recent: deque[tuple[int, float]] = deque(maxlen=200)
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._flush_task: asyncio.Task | None = None

        self._max_per_minute = config.alerts.max_per_minute
        self._dedup_window_seconds = config.alerts.dedup_window_seconds

        # Every alert ever raised, for metrics
        self.alerts_raised: int = 0

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

    # ── Public API ───────────────────────────────────────────

    async def alert(self, template_key: str, variables: dict[str, Any]) -> None:
        """Render ``alerts.templates.<template_key>`` and queue it."""
        template = getattr(self._config.alerts.templates, template_key, None)
        if not template:
            self._logger.warning("No alert template named '%s'", template_key)
            return
        try:
            message = template.format(**variables)
        except (KeyError, IndexError) as exc:
            self._logger.warning("Alert template '%s' failed to render: %s", template_key, exc)
            return
        await self.alert_raw(message)

    async def alert_raw(self, message: str) -> None:
        self.alerts_raised += 1
        self._logger.warning("ALERT: %s", message)
        if self._is_duplicate(message):
            self._logger.debug("Deduped alert: %s", message[:60])
            return
        if not self._config.alerts.room:
            return
        await self._queue.put(message)

    # ── Internal ─────────────────────────────────────────────

    def _is_duplicate(self, message: str) -> bool:
        msg_hash = hash(message)
        now = datetime.now(timezone.utc).timestamp()
        if any(h == msg_hash and now - t < self._dedup_window_seconds for h, t in self._recent):
            return True
        self._recent.append((msg_hash, now))
        return False

    async def _flush_loop(self) -> None:
        """Drain the alert queue with rate limiting."""
        sent_this_minute = 0
        minute_start = datetime.now(timezone.utc).timestamp()

        while True:
            message = await self._queue.get()
            now = datetime.now(timezone.utc).timestamp()

            if now - minute_start >= 60:
                sent_this_minute = 0
                minute_start = now

            if sent_this_minute >= self._max_per_minute:
                self._logger.warning("Alert rate limit hit, dropping: %s", message[:60])
                continue

            room_id = self._config.alerts.room
            if self._gateway is None or not room_id:
                continue
            try:
                body, html = render(message, {})
            except (KeyError, IndexError, ValueError):
                body, html = message, None
            try:
                await self._gateway.send_message(room_id, body, html)
                sent_this_minute += 1
            except ProtocolError as exc:
                self._logger.error("Alert delivery failed: %s", exc)
