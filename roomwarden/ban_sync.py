"""Ban synchronizer — one canonical ban list applied across many rooms.

Issuing or revoking a ban starts a new propagation cycle for the subject:
one PropagationRecord per BAN_TARGET room, each applied independently.
Failed records are retried by the periodic reconciliation sweep with
exponential backoff until they succeed or become permanent failures.
Consistency across rooms is eventual.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import CommandPermissionError, PermanentProtocolError, ProtocolError
from .utils import KeyedLock, format_timestamp, now_utc, parse_timestamp, with_timeout

if TYPE_CHECKING:
    from .alert_notifier import AlertNotifier
    from .config import AdminPrincipal, WardenConfig
    from .database import WardenDatabase
    from .gateway import Gateway
    from .rooms import RoomRegistry


class BanAction(str, Enum):
    BAN = "ban"
    UNBAN = "unban"


class PropagationStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[PropagationStatus, frozenset[PropagationStatus]] = {
    PropagationStatus.PENDING: frozenset({PropagationStatus.APPLIED, PropagationStatus.FAILED}),
    PropagationStatus.FAILED: frozenset({PropagationStatus.PENDING}),
    PropagationStatus.APPLIED: frozenset(),
}


@dataclass(frozen=True)
class BanEntry:
    subject_id: str
    reason: str | None
    issued_at: datetime
    issued_by: str

    def to_row(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "reason": self.reason,
            "issued_at": format_timestamp(self.issued_at),
            "issued_by": self.issued_by,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> BanEntry:
        return cls(
            subject_id=row["subject_id"],
            reason=row.get("reason"),
            issued_at=parse_timestamp(row["issued_at"]) or now_utc(),
            issued_by=row["issued_by"],
        )


@dataclass
class PropagationRecord:
    """Application state of one ban/unban in one target room."""

    subject_id: str
    target_room_id: str
    action: BanAction
    status: PropagationStatus = PropagationStatus.PENDING
    attempts: int = 0
    last_attempt_at: datetime | None = None
    permanent: bool = False
    last_error: str | None = None
    reason: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.subject_id, self.target_room_id)

    def transition(self, new_status: PropagationStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"illegal propagation transition {self.status.value} -> {new_status.value}"
            )
        self.status = new_status

    def to_row(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "target_room_id": self.target_room_id,
            "action": self.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_attempt_at": format_timestamp(self.last_attempt_at),
            "permanent": int(self.permanent),
            "last_error": self.last_error,
            "reason": self.reason,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> PropagationRecord:
        return cls(
            subject_id=row["subject_id"],
            target_room_id=row["target_room_id"],
            action=BanAction(row["action"]),
            status=PropagationStatus(row["status"]),
            attempts=row.get("attempts") or 0,
            last_attempt_at=parse_timestamp(row.get("last_attempt_at")),
            permanent=bool(row.get("permanent")),
            last_error=row.get("last_error"),
            reason=row.get("reason"),
        )


class BanSynchronizer:
    """Owns the ban list and every propagation record."""

    def __init__(
        self,
        config: WardenConfig,
        database: WardenDatabase,
        gateway: Gateway,
        registry: RoomRegistry,
        alerts: AlertNotifier | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._settings = config.ban_sync
        self._db = database
        self._gateway = gateway
        self._registry = registry
        self._alerts = alerts
        self._logger = logger or logging.getLogger("roomwarden.ban_sync")
        self._timeout = config.gateway.action_timeout_seconds

        self._entries: dict[str, BanEntry] = {}
        self._records: dict[tuple[str, str], PropagationRecord] = {}

        self._semaphore = asyncio.Semaphore(self._settings.max_concurrency)
        self._locks = KeyedLock()
        # Keys with a propagation task queued or running
        self._scheduled: set[tuple[str, str]] = set()
        self._tasks: set[asyncio.Task] = set()

        # Counters (for metrics)
        self.bans_issued: int = 0
        self.bans_revoked: int = 0
        self.propagations_applied: int = 0
        self.propagations_failed: int = 0

    # ══════════════════════════════════════════════════════════
    #  Issue / revoke
    # ══════════════════════════════════════════════════════════

    def _check_level(self, principal: AdminPrincipal) -> None:
        required = self._settings.ban_level
        if principal.level < required:
            raise CommandPermissionError(principal.member_id, required, principal.level)

    async def issue_ban(
        self,
        subject_id: str,
        reason: str | None,
        issued_by: AdminPrincipal,
    ) -> BanEntry:
        """Add ``subject_id`` to the ban list and start propagating it.

        Issuing a ban that already exists keeps the original entry and starts
        a fresh cycle, which also re-arms any permanently failed rooms.
        """
        self._check_level(issued_by)
        entry = self._entries.get(subject_id)
        if entry is None:
            entry = BanEntry(
                subject_id=subject_id,
                reason=reason or self._settings.default_reason,
                issued_at=now_utc(),
                issued_by=issued_by.member_id,
            )
            self._entries[subject_id] = entry
            await self._db.save_ban(entry.to_row())
            self.bans_issued += 1

        records = await self._new_cycle(subject_id, BanAction.BAN, entry.reason)
        self._logger.info(
            "%s banned %s (%s); propagating to %d room(s)",
            issued_by.member_id, subject_id, entry.reason, len(records),
        )
        for record in records:
            self._spawn(record)
        return entry

    async def revoke_ban(self, subject_id: str, issued_by: AdminPrincipal) -> bool:
        """Remove ``subject_id`` from the ban list and lift it everywhere.

        Returns False when the subject was not banned.
        """
        self._check_level(issued_by)
        entry = self._entries.pop(subject_id, None)
        if entry is None:
            return False
        await self._db.delete_ban(subject_id)
        self.bans_revoked += 1

        records = await self._new_cycle(subject_id, BanAction.UNBAN, None)
        self._logger.info(
            "%s unbanned %s; propagating to %d room(s)",
            issued_by.member_id, subject_id, len(records),
        )
        for record in records:
            self._spawn(record)
        return True

    async def _new_cycle(
        self, subject_id: str, action: BanAction, reason: str | None,
    ) -> list[PropagationRecord]:
        """Replace the subject's record set with fresh PENDING records."""
        records = [
            PropagationRecord(
                subject_id=subject_id,
                target_room_id=room_id,
                action=action,
                reason=reason,
            )
            for room_id in self._registry.ban_targets()
        ]
        for key in [k for k in self._records if k[0] == subject_id]:
            del self._records[key]
        for record in records:
            self._records[record.key] = record
        await self._db.replace_records(subject_id, [r.to_row() for r in records])
        return records

    # ══════════════════════════════════════════════════════════
    #  Propagation
    # ══════════════════════════════════════════════════════════

    def _spawn(self, record: PropagationRecord) -> asyncio.Task:
        self._scheduled.add(record.key)
        task = asyncio.create_task(
            self.propagate(record),
            name=f"propagate:{record.subject_id}:{record.target_room_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error(
                "Propagation task %s crashed", task.get_name(), exc_info=task.exception(),
            )

    async def propagate(self, record: PropagationRecord) -> PropagationStatus | None:
        """Apply one record. Returns its new status, or None if superseded."""
        key = record.key
        try:
            async with self._semaphore:
                async with self._locks.hold(f"{record.subject_id}|{record.target_room_id}"):
                    return await self._attempt(record)
        finally:
            if self._records.get(key) is record or key not in self._records:
                self._scheduled.discard(key)

    async def _attempt(self, record: PropagationRecord) -> PropagationStatus | None:
        if self._records.get(record.key) is not record:
            self._logger.debug(
                "Skipping superseded %s of %s in %s",
                record.action.value, record.subject_id, record.target_room_id,
            )
            return None
        if record.status is PropagationStatus.APPLIED:
            return record.status
        if record.status is PropagationStatus.FAILED:
            if record.permanent:
                return record.status
            record.transition(PropagationStatus.PENDING)

        record.last_attempt_at = now_utc()
        room_id = record.target_room_id
        try:
            if record.action is BanAction.BAN:
                await with_timeout(
                    self._gateway.ban(room_id, record.subject_id, record.reason),
                    self._timeout, "ban", room_id,
                )
            else:
                await with_timeout(
                    self._gateway.unban(room_id, record.subject_id),
                    self._timeout, "unban", room_id,
                )
        except ProtocolError as e:
            await self._record_failure(record, e)
        else:
            record.transition(PropagationStatus.APPLIED)
            record.last_error = None
            self.propagations_applied += 1
            self._logger.info(
                "Applied %s of %s in %s", record.action.value, record.subject_id, room_id,
            )

        if self._records.get(record.key) is record:
            await self._db.save_record(record.to_row())
        return record.status

    async def _record_failure(self, record: PropagationRecord, error: ProtocolError) -> None:
        record.attempts += 1
        record.last_error = str(error)
        record.transition(PropagationStatus.FAILED)
        self.propagations_failed += 1

        max_attempts = self._settings.max_attempts
        if isinstance(error, PermanentProtocolError) or record.attempts >= max_attempts:
            record.permanent = True
            self._logger.error(
                "%s of %s in %s failed permanently after %d attempt(s): %s",
                record.action.value, record.subject_id, record.target_room_id,
                record.attempts, error,
            )
            if self._alerts:
                await self._alerts.alert(
                    "propagation_failed",
                    {
                        "action": record.action.value,
                        "subject": record.subject_id,
                        "room": record.target_room_id,
                        "attempts": record.attempts,
                        "error": error,
                    },
                )
        else:
            self._logger.warning(
                "%s of %s in %s failed (attempt %d/%d), will retry: %s",
                record.action.value, record.subject_id, record.target_room_id,
                record.attempts, max_attempts, error,
            )

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th failure before retrying."""
        if attempts <= 0:
            return 0.0
        return min(
            self._settings.backoff_base_seconds * 2 ** (attempts - 1),
            self._settings.backoff_max_seconds,
        )

    def _due(self, record: PropagationRecord) -> bool:
        if record.last_attempt_at is None:
            return True
        elapsed = (now_utc() - record.last_attempt_at).total_seconds()
        return elapsed >= self.backoff_delay(record.attempts)

    async def reconcile(self, force: bool = False, wait: bool = True) -> int:
        """Retry eligible records. Returns how many were started.

        ``force`` ignores backoff but never retries permanent failures.
        With ``wait`` the sweep returns only once every retry has finished.
        """
        tasks: list[asyncio.Task] = []
        for record in list(self._records.values()):
            if record.key in self._scheduled:
                continue
            if record.status is PropagationStatus.PENDING:
                tasks.append(self._spawn(record))
            elif record.status is PropagationStatus.FAILED and not record.permanent:
                if force or self._due(record):
                    tasks.append(self._spawn(record))
        if tasks:
            self._logger.info("Reconciliation: retrying %d record(s)", len(tasks))
        if tasks and wait:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    # ══════════════════════════════════════════════════════════
    #  Target room changes
    # ══════════════════════════════════════════════════════════

    async def sync_room(self, room_id: str) -> int:
        """Queue every existing ban against a newly added target room."""
        count = 0
        for entry in list(self._entries.values()):
            key = (entry.subject_id, room_id)
            if key in self._records:
                continue
            record = PropagationRecord(
                subject_id=entry.subject_id,
                target_room_id=room_id,
                action=BanAction.BAN,
                reason=entry.reason,
            )
            self._records[key] = record
            await self._db.save_record(record.to_row())
            self._spawn(record)
            count += 1
        if count:
            self._logger.info("Queued %d existing ban(s) for new target %s", count, room_id)
        return count

    async def forget_room(self, room_id: str) -> int:
        """Drop all records for a room that is no longer a ban target."""
        for key in [k for k in self._records if k[1] == room_id]:
            del self._records[key]
        return await self._db.delete_records_for_room(room_id)

    # ══════════════════════════════════════════════════════════
    #  Queries & lifecycle
    # ══════════════════════════════════════════════════════════

    def get_entry(self, subject_id: str) -> BanEntry | None:
        return self._entries.get(subject_id)

    def entries(self) -> list[BanEntry]:
        return sorted(self._entries.values(), key=lambda e: e.issued_at)

    def records_for(self, subject_id: str) -> list[PropagationRecord]:
        return sorted(
            (r for r in self._records.values() if r.subject_id == subject_id),
            key=lambda r: r.target_room_id,
        )

    def records(self) -> list[PropagationRecord]:
        return list(self._records.values())

    def permanent_failures(self) -> list[PropagationRecord]:
        return [r for r in self._records.values() if r.permanent]

    async def restore(self) -> None:
        """Reload entries and records persisted by a previous run."""
        for row in await self._db.get_bans():
            entry = BanEntry.from_row(row)
            self._entries[entry.subject_id] = entry
        for row in await self._db.get_records():
            record = PropagationRecord.from_row(row)
            self._records[record.key] = record
        self._logger.info(
            "Restored %d ban(s), %d propagation record(s)",
            len(self._entries), len(self._records),
        )

    async def wait_idle(self) -> None:
        """Wait until no propagation task is queued or running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
