"""Shared test fixtures for roomwarden."""

from __future__ import annotations

import asyncio
import itertools
import logging
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from roomwarden.alert_notifier import AlertNotifier
from roomwarden.ban_sync import BanSynchronizer
from roomwarden.command_engine import CommandEngine
from roomwarden.config import WardenConfig
from roomwarden.database import WardenDatabase
from roomwarden.errors import ProtocolError
from roomwarden.room_lifecycle import RoomLifecycleManager
from roomwarden.rooms import RoomRegistry
from roomwarden.scheduler import Scheduler

BOT_ID = "@warden:example.org"
ADMIN_ID = "@alice:example.org"
MOD_ID = "@bob:example.org"
VIEWER_ID = "@carol:example.org"
LOBBY = "!lobby:example.org"
OFFTOPIC = "!offtopic:example.org"
MODS = "!mods:example.org"


# ── Minimal config dict matching WardenConfig schema ─────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "matrix": {
            "homeserver": "https://matrix.example.org",
            "user_id": BOT_ID,
            "access_token": "secret",
        },
        "database": {"path": ":memory:"},
        "rooms": {
            "monitored": [LOBBY],
            "ban_targets": [LOBBY, OFFTOPIC],
        },
        "welcome": {
            "grace_period_seconds": 3600,
            "max_rejoin_attempts": 1,
            "message": "Hello {member_pill}, welcome to {room}! Closing in **{grace}**.",
        },
        "ban_sync": {
            "ban_level": 50,
            "max_attempts": 3,
            "backoff_base_seconds": 30,
            "backoff_max_seconds": 3600,
        },
        "gateway": {"action_timeout_seconds": 2},
        "commands": {"prefix": "!", "admin_rooms": [MODS], "rate_limit_per_minute": 100},
        "admins": [
            {"member_id": ADMIN_ID, "level": 100},
            {"member_id": MOD_ID, "level": 50},
            {"member_id": VIEWER_ID, "level": 0},
        ],
        "alerts": {"room": MODS},
        "metrics": {"enabled": False},
    }
    base.update(overrides)
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> WardenConfig:
    """Return a parsed WardenConfig."""
    return WardenConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_roomwarden.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[WardenDatabase, None]:
    """Provide an initialized database with temp file."""
    db = WardenDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


# ── Fake gateway ─────────────────────────────────────────────

class FakeGateway:
    """Records every outbound call; failures can be scripted per action.

    ``fail(action, *errors)`` queues exceptions raised by the next calls to
    ``action``; ``block(action)`` makes calls hang until ``release(action)``.
    """

    def __init__(self, user_id: str = BOT_ID) -> None:
        self.user_id = user_id
        self.calls: list[tuple[Any, ...]] = []
        self._failures: dict[str, list[Exception]] = {}
        self._gates: dict[str, asyncio.Event] = {}
        self._room_ids = itertools.count(1)

    def fail(self, action: str, *errors: Exception) -> None:
        self._failures.setdefault(action, []).extend(errors)

    def block(self, action: str) -> None:
        self._gates[action] = asyncio.Event()

    def release(self, action: str) -> None:
        gate = self._gates.pop(action, None)
        if gate is not None:
            gate.set()

    def calls_to(self, action: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == action]

    async def _record(self, action: str, *args: Any) -> None:
        self.calls.append((action, *args))
        gate = self._gates.get(action)
        if gate is not None:
            await gate.wait()
        queued = self._failures.get(action)
        if queued:
            raise queued.pop(0)

    async def create_room(self, *, name: str, topic: str, invite: list[str]) -> str:
        await self._record("create_room", name, topic, list(invite))
        return f"!welcome{next(self._room_ids)}:example.org"

    async def invite(self, room_id: str, member_id: str) -> None:
        await self._record("invite", room_id, member_id)

    async def join(self, room_id: str) -> None:
        await self._record("join", room_id)

    async def send_message(self, room_id: str, body: str, html: str | None = None) -> None:
        await self._record("send_message", room_id, body, html)

    async def leave(self, room_id: str) -> None:
        await self._record("leave", room_id)

    async def ban(self, room_id: str, member_id: str, reason: str | None = None) -> None:
        await self._record("ban", room_id, member_id, reason)

    async def unban(self, room_id: str, member_id: str) -> None:
        await self._record("unban", room_id, member_id)

    async def kick(self, room_id: str, member_id: str, reason: str | None = None) -> None:
        await self._record("kick", room_id, member_id, reason)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


def protocol_error(cls: type[ProtocolError], action: str = "ban", room: str = LOBBY) -> ProtocolError:
    return cls(action, room, "scripted failure")


# ── Component fixtures ───────────────────────────────────────

@pytest_asyncio.fixture
async def registry(sample_config: WardenConfig, database: WardenDatabase) -> RoomRegistry:
    reg = RoomRegistry(database, logging.getLogger("test.rooms"))
    await reg.load(sample_config.rooms.monitored, sample_config.rooms.ban_targets)
    return reg


@pytest_asyncio.fixture
async def scheduler() -> AsyncGenerator[Scheduler, None]:
    sched = Scheduler(logging.getLogger("test.scheduler"))
    yield sched
    await sched.stop()


@pytest.fixture
def alerts(sample_config: WardenConfig, gateway: FakeGateway) -> AlertNotifier:
    return AlertNotifier(sample_config, gateway, logging.getLogger("test.alerts"))


@pytest_asyncio.fixture
async def lifecycle(
    sample_config: WardenConfig,
    database: WardenDatabase,
    gateway: FakeGateway,
    scheduler: Scheduler,
    registry: RoomRegistry,
    alerts: AlertNotifier,
) -> RoomLifecycleManager:
    return RoomLifecycleManager(
        config=sample_config,
        database=database,
        gateway=gateway,
        scheduler=scheduler,
        registry=registry,
        alerts=alerts,
        logger=logging.getLogger("test.lifecycle"),
    )


@pytest_asyncio.fixture
async def ban_sync(
    sample_config: WardenConfig,
    database: WardenDatabase,
    gateway: FakeGateway,
    registry: RoomRegistry,
    alerts: AlertNotifier,
) -> AsyncGenerator[BanSynchronizer, None]:
    sync = BanSynchronizer(
        config=sample_config,
        database=database,
        gateway=gateway,
        registry=registry,
        alerts=alerts,
        logger=logging.getLogger("test.ban_sync"),
    )
    yield sync
    await sync.stop()


@pytest_asyncio.fixture
async def command_engine(
    sample_config: WardenConfig,
    gateway: FakeGateway,
    ban_sync: BanSynchronizer,
    lifecycle: RoomLifecycleManager,
    registry: RoomRegistry,
) -> CommandEngine:
    return CommandEngine(
        config=sample_config,
        gateway=gateway,
        ban_sync=ban_sync,
        lifecycle=lifecycle,
        registry=registry,
        logger=logging.getLogger("test.commands"),
    )
