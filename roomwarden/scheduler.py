"""Scheduler module — keyed one-shot timers and periodic jobs.

One logical timer service shared by the room lifecycle (delayed leave) and
the ban synchronizer (reconciliation sweep). A key owns at most one live
timer: installing a timer for a key cancels the previous one first.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

TimerCallback = Callable[[], Awaitable[None]]


class Scheduler:
    """Central module for all delayed and periodic tasks."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("roomwarden.scheduler")
        self._timers: dict[str, asyncio.Task] = {}
        self._jobs: dict[str, asyncio.Task] = {}

    # ══════════════════════════════════════════════════════════
    #  One-shot timers
    # ══════════════════════════════════════════════════════════

    def schedule(self, key: str, delay: float, callback: TimerCallback) -> None:
        """Run ``callback`` after ``delay`` seconds, replacing any timer for ``key``."""
        self.cancel(key)
        self._timers[key] = asyncio.create_task(
            self._run_timer(key, max(delay, 0.0), callback),
            name=f"timer:{key}",
        )

    def cancel(self, key: str) -> bool:
        """Cancel the live timer for ``key``. Returns True if one existed."""
        task = self._timers.pop(key, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def has_timer(self, key: str) -> bool:
        return key in self._timers

    def timer_keys(self) -> list[str]:
        return list(self._timers)

    async def _run_timer(self, key: str, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        # Deregister before running so the callback may reschedule or cancel freely
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            await callback()
        except Exception:
            self._logger.exception("Timer %s failed", key)

    # ══════════════════════════════════════════════════════════
    #  Periodic jobs
    # ══════════════════════════════════════════════════════════

    def every(
        self,
        name: str,
        interval: float,
        callback: TimerCallback,
        initial_delay: float | None = None,
    ) -> None:
        """Run ``callback`` every ``interval`` seconds until stopped."""
        if name in self._jobs:
            self._jobs.pop(name).cancel()
        self._jobs[name] = asyncio.create_task(
            self._job_loop(name, interval, callback, interval if initial_delay is None else initial_delay),
            name=f"job:{name}",
        )
        self._logger.info("Periodic job %s started (interval: %gs)", name, interval)

    async def _job_loop(
        self, name: str, interval: float, callback: TimerCallback, initial_delay: float,
    ) -> None:
        await asyncio.sleep(initial_delay)
        while True:
            try:
                await callback()
            except Exception:
                self._logger.exception("Periodic job %s failed", name)
            await asyncio.sleep(interval)

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def stop(self) -> None:
        """Cancel all timers and jobs."""
        tasks = list(self._timers.values()) + list(self._jobs.values())
        self._timers.clear()
        self._jobs.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
