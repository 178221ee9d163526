"""AlertNotifier tests.

Tests:
- Template rendering with variable substitution
- Missing template → nothing queued
- Deduplication within window
- No alert room → logged only
- Flush loop delivers to the alert room
- Rate limiting
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from roomwarden.alert_notifier import AlertNotifier
from roomwarden.config import WardenConfig
from roomwarden.errors import TransientProtocolError

from conftest import MODS, FakeGateway, make_config_dict


def _failure_vars(**overrides) -> dict:
    variables = {
        "action": "ban", "subject": "@troll:example.org", "room": "!a:example.org",
        "attempts": 5, "error": "M_FORBIDDEN",
    }
    variables.update(overrides)
    return variables


class TestAlertNotifier:
    """Template, dedup, and delivery."""

    @pytest.mark.asyncio
    async def test_template_rendering(self, alerts: AlertNotifier) -> None:
        await alerts.alert("propagation_failed", _failure_vars())
        message = await alerts._queue.get()
        assert "@troll:example.org" in message
        assert "!a:example.org" in message
        assert "5 attempt(s)" in message

    @pytest.mark.asyncio
    async def test_missing_template(self, alerts: AlertNotifier) -> None:
        await alerts.alert("nonexistent_template_key", {})
        assert alerts._queue.empty()
        assert alerts.alerts_raised == 0

    @pytest.mark.asyncio
    async def test_bad_variables(self, alerts: AlertNotifier) -> None:
        await alerts.alert("propagation_failed", {"action": "ban"})
        assert alerts._queue.empty()

    @pytest.mark.asyncio
    async def test_dedup(self, alerts: AlertNotifier) -> None:
        await alerts.alert("propagation_failed", _failure_vars())
        await alerts.alert("propagation_failed", _failure_vars())
        assert alerts._queue.qsize() == 1
        assert alerts.alerts_raised == 2

    @pytest.mark.asyncio
    async def test_no_alert_room_logs_only(
        self, gateway: FakeGateway, caplog: pytest.LogCaptureFixture,
    ) -> None:
        config = WardenConfig(**make_config_dict(alerts={"room": None}))
        notifier = AlertNotifier(config, gateway, logging.getLogger("test.alerts"))
        with caplog.at_level(logging.WARNING):
            await notifier.alert_raw("something broke")
        assert notifier._queue.empty()
        assert "ALERT: something broke" in caplog.text

    @pytest.mark.asyncio
    async def test_flush_delivers_to_alert_room(
        self, alerts: AlertNotifier, gateway: FakeGateway,
    ) -> None:
        await alerts.start()
        try:
            await alerts.alert_raw("**disk** full")
            await asyncio.sleep(0.05)
        finally:
            await alerts.stop()
        assert gateway.calls_to("send_message") == [
            ("send_message", MODS, "disk full", "<strong>disk</strong> full"),
        ]

    @pytest.mark.asyncio
    async def test_delivery_failure_does_not_stop_loop(
        self, alerts: AlertNotifier, gateway: FakeGateway,
    ) -> None:
        gateway.fail("send_message", TransientProtocolError("send_message", MODS))
        await alerts.start()
        try:
            await alerts.alert_raw("first")
            await alerts.alert_raw("second")
            await asyncio.sleep(0.05)
        finally:
            await alerts.stop()
        assert [c[2] for c in gateway.calls_to("send_message")] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_rate_limit(self, gateway: FakeGateway) -> None:
        config = WardenConfig(**make_config_dict(alerts={"room": MODS, "max_per_minute": 2}))
        notifier = AlertNotifier(config, gateway)
        await notifier.start()
        try:
            for i in range(4):
                await notifier.alert_raw(f"alert {i}")
            await asyncio.sleep(0.05)
        finally:
            await notifier.stop()
        assert len(gateway.calls_to("send_message")) == 2
