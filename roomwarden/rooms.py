"""Managed rooms and the registry of MONITORED / BAN_TARGET entries.

WELCOME entries are owned by the room lifecycle manager; this registry owns
the other two modes. Config seeds the registry at startup and ``!room``
commands extend it; both are persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .database import WardenDatabase
from .utils import format_timestamp, now_utc, parse_timestamp


class RoomMode(str, Enum):
    MONITORED = "monitored"
    WELCOME = "welcome"
    BAN_TARGET = "ban_target"

    @classmethod
    def parse(cls, text: str) -> RoomMode:
        """Accept 'monitored', 'ban_target', 'ban-target' in any case."""
        normalized = text.strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"unknown room mode: {text!r}") from None


@dataclass
class ManagedRoom:
    room_id: str
    mode: RoomMode
    created_at: datetime = field(default_factory=now_utc)
    scheduled_leave_at: datetime | None = None
    # WELCOME only
    member_id: str | None = None
    origin_room_id: str | None = None
    rejoin_attempts: int = 0

    def to_row(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "mode": self.mode.value,
            "member_id": self.member_id,
            "origin_room_id": self.origin_room_id,
            "created_at": format_timestamp(self.created_at),
            "scheduled_leave_at": format_timestamp(self.scheduled_leave_at),
            "rejoin_attempts": self.rejoin_attempts,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ManagedRoom:
        return cls(
            room_id=row["room_id"],
            mode=RoomMode(row["mode"]),
            created_at=parse_timestamp(row["created_at"]) or now_utc(),
            scheduled_leave_at=parse_timestamp(row.get("scheduled_leave_at")),
            member_id=row.get("member_id"),
            origin_room_id=row.get("origin_room_id"),
            rejoin_attempts=row.get("rejoin_attempts") or 0,
        )


class RoomRegistry:
    """MONITORED and BAN_TARGET rooms, keyed by room id."""

    def __init__(
        self,
        database: WardenDatabase,
        logger: logging.Logger | None = None,
    ) -> None:
        self._db = database
        self._logger = logger or logging.getLogger("roomwarden.rooms")
        self._rooms: dict[tuple[str, RoomMode], ManagedRoom] = {}

    async def load(self, monitored: list[str], ban_targets: list[str]) -> None:
        """Load persisted entries, then add configured rooms not yet known."""
        for mode in (RoomMode.MONITORED, RoomMode.BAN_TARGET):
            for row in await self._db.get_rooms(mode.value):
                room = ManagedRoom.from_row(row)
                self._rooms[(room.room_id, room.mode)] = room

        for room_id in monitored:
            await self.add(room_id, RoomMode.MONITORED)
        for room_id in ban_targets:
            await self.add(room_id, RoomMode.BAN_TARGET)

        self._logger.info(
            "Room registry loaded: %d monitored, %d ban targets",
            len(self.monitored()), len(self.ban_targets()),
        )

    async def add(self, room_id: str, mode: RoomMode) -> bool:
        """Register ``room_id`` under ``mode``. Returns False if already present."""
        if mode is RoomMode.WELCOME:
            raise ValueError("welcome rooms are managed by the lifecycle manager")
        if (room_id, mode) in self._rooms:
            return False
        room = ManagedRoom(room_id=room_id, mode=mode)
        await self._db.upsert_room(room.to_row())
        self._rooms[(room_id, mode)] = room
        self._logger.info("Registered %s as %s", room_id, mode.value)
        return True

    async def remove(self, room_id: str, mode: RoomMode | None = None) -> list[RoomMode]:
        """Drop ``room_id`` (one mode or all). Returns the modes removed."""
        removed: list[RoomMode] = []
        for m in (RoomMode.MONITORED, RoomMode.BAN_TARGET):
            if mode is not None and m is not mode:
                continue
            if self._rooms.pop((room_id, m), None) is not None:
                await self._db.delete_room(room_id, m.value)
                removed.append(m)
        if removed:
            self._logger.info(
                "Unregistered %s (%s)", room_id, ", ".join(m.value for m in removed),
            )
        return removed

    def is_monitored(self, room_id: str) -> bool:
        return (room_id, RoomMode.MONITORED) in self._rooms

    def is_ban_target(self, room_id: str) -> bool:
        return (room_id, RoomMode.BAN_TARGET) in self._rooms

    def monitored(self) -> list[str]:
        return sorted(r for r, m in self._rooms if m is RoomMode.MONITORED)

    def ban_targets(self) -> list[str]:
        return sorted(r for r, m in self._rooms if m is RoomMode.BAN_TARGET)

    def entries(self) -> list[ManagedRoom]:
        return sorted(self._rooms.values(), key=lambda r: (r.mode.value, r.room_id))

