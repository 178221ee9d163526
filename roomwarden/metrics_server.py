"""Prometheus metrics server for roomwarden.

Serves ``/metrics`` in Prometheus text format and ``/health`` as JSON on
an aiohttp web runner owned by the app.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from .main import WardenApp


class WardenMetricsServer:
    """Roomwarden Prometheus metrics endpoint."""

    def __init__(
        self,
        app: WardenApp,
        host: str = "0.0.0.0",
        port: int = 28290,
        logger: logging.Logger | None = None,
    ) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._logger = logger or logging.getLogger("roomwarden.metrics")
        self._runner: web.AppRunner | None = None

    def make_web_app(self) -> web.Application:
        web_app = web.Application()
        web_app.router.add_get("/metrics", self._handle_metrics)
        web_app.router.add_get("/health", self._handle_health)
        return web_app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.make_web_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        self._logger.info("Metrics server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ── Handlers ─────────────────────────────────────────────

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        body = "\n".join(self.collect_metrics()) + "\n"
        return web.Response(text=body, content_type="text/plain", charset="utf-8")

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(self.health_details())

    # ── Collection ───────────────────────────────────────────

    def collect_metrics(self) -> list[str]:
        app = self._app
        lines: list[str] = [
            f"roomwarden_uptime_seconds {app.uptime_seconds:.0f}",
            f"roomwarden_events_processed_total {app.events_processed}",
            f"roomwarden_event_errors_total {app.event_errors}",
        ]

        # ── Lifecycle ────────────────────────────────────────
        if app.lifecycle:
            lc = app.lifecycle
            lines.append(f"roomwarden_welcome_rooms_open {len(lc.entries())}")
            lines.append(f"roomwarden_welcome_rooms_created_total {lc.welcomes_created}")
            lines.append(f"roomwarden_welcome_failures_total {lc.welcome_failures}")
            lines.append(f"roomwarden_welcome_rooms_closed_total {lc.rooms_closed}")
            lines.append(f"roomwarden_rejoins_total {lc.rejoins}")

        # ── Ban sync ─────────────────────────────────────────
        if app.ban_sync:
            bs = app.ban_sync
            lines.append(f"roomwarden_bans_active {len(bs.entries())}")
            lines.append(f"roomwarden_bans_issued_total {bs.bans_issued}")
            lines.append(f"roomwarden_bans_revoked_total {bs.bans_revoked}")
            lines.append(f"roomwarden_propagations_applied_total {bs.propagations_applied}")
            lines.append(f"roomwarden_propagations_failed_total {bs.propagations_failed}")
            counts: dict[str, int] = {}
            for record in bs.records():
                counts[record.status.value] = counts.get(record.status.value, 0) + 1
            for status in ("pending", "applied", "failed"):
                lines.append(
                    f'roomwarden_propagation_records{{status="{status}"}} {counts.get(status, 0)}'
                )
            lines.append(f"roomwarden_propagation_permanent_failures {len(bs.permanent_failures())}")

        # ── Commands & alerts ────────────────────────────────
        if app.command_engine:
            ce = app.command_engine
            lines.append(f"roomwarden_commands_processed_total {ce.commands_processed}")
            lines.append(f"roomwarden_commands_denied_total {ce.commands_denied}")
            lines.append(f"roomwarden_commands_invalid_total {ce.commands_invalid}")
        if app.alerts:
            lines.append(f"roomwarden_alerts_total {app.alerts.alerts_raised}")

        return lines

    def health_details(self) -> dict:
        app = self._app
        return {
            "status": "ok" if app.running else "starting",
            "database": "connected" if app.db else "disconnected",
            "monitored_rooms": len(app.registry.monitored()) if app.registry else 0,
            "ban_target_rooms": len(app.registry.ban_targets()) if app.registry else 0,
            "welcome_rooms": len(app.lifecycle.entries()) if app.lifecycle else 0,
        }
