"""End-to-end tests through WardenApp with a scripted gateway.

Tests:
- Join in a monitored room → welcome room, message, leave timer
- Bot kicked from a welcome room → one rejoin
- !ban from an admin → propagated to every ban target and replied to
- Restart → welcome rooms and ban list restored from SQLite
- A failing handler is logged and counted without escaping
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from roomwarden.gateway import Membership, MembershipChange, RoomMessage
from roomwarden.main import WardenApp
from roomwarden.room_lifecycle import RoomLifecycleManager

from conftest import ADMIN_ID, BOT_ID, LOBBY, MODS, OFFTOPIC, FakeGateway, make_config_dict

NEWBIE = "@newbie:example.org"
TROLL = "@troll:example.org"
KICKER = "@mod:example.org"


@pytest.fixture
def config_path(tmp_path: Path) -> str:
    data = make_config_dict(database={"path": str(tmp_path / "warden.db")})
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


async def _make_app(config_path: str, gateway: FakeGateway) -> WardenApp:
    app = WardenApp(config_path, gateway=gateway)
    await app.setup()
    return app


async def _shutdown(app: WardenApp) -> None:
    await app.scheduler.stop()
    await app.ban_sync.stop()
    await app.alerts.stop()


class TestWelcomeFlow:
    @pytest.mark.asyncio
    async def test_join_then_bot_kicked(self, config_path: str) -> None:
        gateway = FakeGateway()
        app = await _make_app(config_path, gateway)
        try:
            await app.handle_membership(MembershipChange(LOBBY, NEWBIE, Membership.JOIN, NEWBIE))

            room = app.lifecycle.room_for_member(NEWBIE)
            assert room is not None
            assert len(gateway.calls_to("create_room")) == 1
            assert gateway.calls_to("send_message")[0][1] == room.room_id
            assert app.scheduler.has_timer(RoomLifecycleManager.timer_key(room.room_id))

            await app.handle_membership(MembershipChange(
                room.room_id, BOT_ID, Membership.LEAVE, KICKER, Membership.JOIN, "oops",
            ))
            assert gateway.calls_to("join") == [("join", room.room_id)]
            assert app.lifecycle.get(room.room_id).rejoin_attempts == 1
            assert app.events_processed == 2
            assert app.event_errors == 0
        finally:
            await _shutdown(app)


class TestBanFlow:
    @pytest.mark.asyncio
    async def test_admin_ban_propagates(self, config_path: str) -> None:
        gateway = FakeGateway()
        app = await _make_app(config_path, gateway)
        try:
            await app.handle_message(RoomMessage(MODS, ADMIN_ID, f"!ban {TROLL} spamming links"))
            await app.ban_sync.wait_idle()

            assert sorted(c[1] for c in gateway.calls_to("ban")) == [LOBBY, OFFTOPIC]
            assert all(c[2] == TROLL and c[3] == "spamming links" for c in gateway.calls_to("ban"))
            replies = [c for c in gateway.calls_to("send_message") if c[1] == MODS]
            assert replies and "Propagating to 2 room(s)" in replies[0][2]
            assert app.command_engine.commands_processed == 1
        finally:
            await _shutdown(app)


class TestRestart:
    @pytest.mark.asyncio
    async def test_state_survives_restart(self, config_path: str) -> None:
        first = await _make_app(config_path, FakeGateway())
        try:
            await first.handle_membership(MembershipChange(LOBBY, NEWBIE, Membership.JOIN, NEWBIE))
            await first.handle_message(RoomMessage(MODS, ADMIN_ID, f"!ban {TROLL} spam"))
            await first.ban_sync.wait_idle()
            welcome_room = first.lifecycle.room_for_member(NEWBIE).room_id
        finally:
            await _shutdown(first)

        gateway = FakeGateway()
        second = await _make_app(config_path, gateway)
        try:
            restored = second.lifecycle.get(welcome_room)
            assert restored is not None and restored.member_id == NEWBIE
            assert second.scheduler.has_timer(RoomLifecycleManager.timer_key(welcome_room))
            assert second.ban_sync.get_entry(TROLL) is not None
            # Applied records need no further work
            assert await second.ban_sync.reconcile() == 0
            assert gateway.calls_to("ban") == []
        finally:
            await _shutdown(second)


class TestHandlerErrors:
    @pytest.mark.asyncio
    async def test_failing_handler_is_counted(
        self, config_path: str, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        app = await _make_app(config_path, FakeGateway())
        try:
            async def _boom(change: MembershipChange) -> None:
                raise RuntimeError("boom")

            monkeypatch.setattr(app.lifecycle, "on_membership_change", _boom)
            await app.handle_membership(MembershipChange(LOBBY, NEWBIE, Membership.JOIN, NEWBIE))
            assert app.events_processed == 1
            assert app.event_errors == 1
        finally:
            await _shutdown(app)

    @pytest.mark.asyncio
    async def test_start_and_stop_without_sync_loop(self, config_path: str) -> None:
        app = WardenApp(config_path, gateway=FakeGateway())
        await app.start()
        assert app.running
        assert app.metrics_server is None
        await app.stop()
        assert not app.running
