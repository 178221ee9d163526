"""SQLite database module for roomwarden.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any


class WardenDatabase:
    """SQLite-backed persistence for managed rooms and the ban list."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        await self._run(self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS managed_rooms (
                    room_id TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    member_id TEXT,
                    origin_room_id TEXT,
                    created_at TEXT NOT NULL,
                    scheduled_leave_at TEXT,
                    rejoin_attempts INTEGER DEFAULT 0,
                    PRIMARY KEY (room_id, mode)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_managed_rooms_mode ON managed_rooms(mode)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS ban_entries (
                    subject_id TEXT PRIMARY KEY,
                    reason TEXT,
                    issued_at TEXT NOT NULL,
                    issued_by TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS propagation_records (
                    subject_id TEXT NOT NULL,
                    target_room_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER DEFAULT 0,
                    last_attempt_at TEXT,
                    permanent BOOLEAN DEFAULT 0,
                    last_error TEXT,
                    reason TEXT,
                    UNIQUE(subject_id, target_room_id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_propagation_status "
                "ON propagation_records(status)"
            )

            conn.commit()
            self._logger.info("Database tables created/verified")
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Managed Rooms
    # ══════════════════════════════════════════════════════════

    async def upsert_room(self, row: dict[str, Any]) -> None:
        """Insert or replace a managed room row."""

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO managed_rooms "
                    "(room_id, mode, member_id, origin_room_id, created_at, "
                    "scheduled_leave_at, rejoin_attempts) "
                    "VALUES (:room_id, :mode, :member_id, :origin_room_id, :created_at, "
                    ":scheduled_leave_at, :rejoin_attempts)",
                    row,
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    async def delete_room(self, room_id: str, mode: str) -> bool:
        """Remove a managed room entry. Returns True if a row was deleted."""

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cur = conn.execute(
                    "DELETE FROM managed_rooms WHERE room_id = ? AND mode = ?", (room_id, mode),
                )
                conn.commit()
                return cur.rowcount > 0
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_rooms(self, mode: str | None = None) -> list[dict]:
        """Return managed room rows, optionally filtered by mode."""

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                if mode is None:
                    rows = conn.execute(
                        "SELECT * FROM managed_rooms ORDER BY created_at"
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM managed_rooms WHERE mode = ? ORDER BY created_at",
                        (mode,),
                    ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Ban Entries
    # ══════════════════════════════════════════════════════════

    async def save_ban(self, row: dict[str, Any]) -> None:
        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO ban_entries (subject_id, reason, issued_at, issued_by) "
                    "VALUES (:subject_id, :reason, :issued_at, :issued_by)",
                    row,
                )
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    async def delete_ban(self, subject_id: str) -> bool:
        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cur = conn.execute("DELETE FROM ban_entries WHERE subject_id = ?", (subject_id,))
                conn.commit()
                return cur.rowcount > 0
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_bans(self) -> list[dict]:
        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute("SELECT * FROM ban_entries ORDER BY issued_at").fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    # ══════════════════════════════════════════════════════════
    #  Propagation Records
    # ══════════════════════════════════════════════════════════

    async def replace_records(self, subject_id: str, rows: list[dict[str, Any]]) -> None:
        """Atomically replace every propagation record for ``subject_id``."""

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "DELETE FROM propagation_records WHERE subject_id = ?", (subject_id,),
                )
                for row in rows:
                    conn.execute(self._RECORD_UPSERT, row)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

        await self._run(_sync)

    async def save_record(self, row: dict[str, Any]) -> None:
        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(self._RECORD_UPSERT, row)
                conn.commit()
            finally:
                conn.close()

        await self._run(_sync)

    async def delete_records_for_room(self, room_id: str) -> int:
        def _sync() -> int:
            conn = self._get_connection()
            try:
                cur = conn.execute(
                    "DELETE FROM propagation_records WHERE target_room_id = ?", (room_id,),
                )
                conn.commit()
                return cur.rowcount
            finally:
                conn.close()

        return await self._run(_sync)

    async def get_records(self) -> list[dict]:
        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM propagation_records ORDER BY subject_id, target_room_id"
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await self._run(_sync)

    _RECORD_UPSERT = (
        "INSERT OR REPLACE INTO propagation_records "
        "(subject_id, target_room_id, action, status, attempts, last_attempt_at, "
        "permanent, last_error, reason) "
        "VALUES (:subject_id, :target_room_id, :action, :status, :attempts, "
        ":last_attempt_at, :permanent, :last_error, :reason)"
    )
