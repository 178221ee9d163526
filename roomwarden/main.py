"""Service orchestrator — WardenApp.

Startup sequence:
config → DB init → registry → components → restore state → gateway connect
→ periodic jobs → metrics → run. ``stop()`` unwinds in reverse order.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from . import __version__
from .alert_notifier import AlertNotifier
from .ban_sync import BanSynchronizer
from .command_engine import CommandEngine
from .config import WardenConfig, load_config
from .database import WardenDatabase
from .gateway import Gateway, MatrixGateway, MembershipChange, RoomMessage
from .metrics_server import WardenMetricsServer
from .room_lifecycle import RoomLifecycleManager
from .rooms import RoomRegistry
from .scheduler import Scheduler


class WardenApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str, gateway: Gateway | None = None) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("roomwarden")

        # Components (initialized in setup())
        self.config: WardenConfig | None = None
        self.db: WardenDatabase | None = None
        self.gateway: Gateway | None = gateway
        self.registry: RoomRegistry | None = None
        self.scheduler: Scheduler | None = None
        self.alerts: AlertNotifier | None = None
        self.lifecycle: RoomLifecycleManager | None = None
        self.ban_sync: BanSynchronizer | None = None
        self.command_engine: CommandEngine | None = None
        self.metrics_server: WardenMetricsServer | None = None

        # State
        self.running = False
        self._start_time: float | None = None

        # Counters (for metrics)
        self.events_processed: int = 0
        self.event_errors: int = 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    # ══════════════════════════════════════════════════════════
    #  Startup
    # ══════════════════════════════════════════════════════════

    async def setup(self) -> None:
        """Build every component and restore persisted state."""
        self._start_time = time.time()

        # 1. Load and validate config
        self.config = load_config(str(self.config_path))
        self.logger.info(
            "Config loaded: %d monitored room(s), %d ban target(s), %d admin(s)",
            len(self.config.rooms.monitored),
            len(self.config.rooms.ban_targets),
            len(self.config.admins),
        )

        # 2. Initialize database
        self.db = WardenDatabase(self.config.database.path, logging.getLogger("roomwarden.db"))
        await self.db.initialize()
        self.logger.info("Database initialized: %s", self.config.database.path)

        # 3. Room registry (config seeds, DB extends)
        self.registry = RoomRegistry(self.db)
        await self.registry.load(self.config.rooms.monitored, self.config.rooms.ban_targets)

        # 4. Gateway and domain components
        if self.gateway is None:
            self.gateway = MatrixGateway(self.config)
        self.scheduler = Scheduler()
        self.alerts = AlertNotifier(self.config, self.gateway)
        self.lifecycle = RoomLifecycleManager(
            config=self.config,
            database=self.db,
            gateway=self.gateway,
            scheduler=self.scheduler,
            registry=self.registry,
            alerts=self.alerts,
        )
        self.ban_sync = BanSynchronizer(
            config=self.config,
            database=self.db,
            gateway=self.gateway,
            registry=self.registry,
            alerts=self.alerts,
        )
        self.command_engine = CommandEngine(
            config=self.config,
            gateway=self.gateway,
            ban_sync=self.ban_sync,
            lifecycle=self.lifecycle,
            registry=self.registry,
        )

        # 5. Restore state from a previous run
        await self.lifecycle.restore()
        await self.ban_sync.restore()

    async def start(self) -> None:
        """Start the service and block on the sync loop."""
        self.logger.info("Starting roomwarden...")
        await self.setup()

        # 6. Register event handlers BEFORE connect
        gateway = self.gateway
        if isinstance(gateway, MatrixGateway):
            gateway.on_membership(self.handle_membership)
            gateway.on_message(self.handle_message)
            await gateway.connect(self._rooms_to_join())
            self.logger.info("Connected to %s as %s", self.config.matrix.homeserver, gateway.user_id)

        # 7. Alerts and periodic jobs
        await self.alerts.start()
        self.scheduler.every(
            "reconcile",
            self.config.ban_sync.reconcile_interval_seconds,
            self.ban_sync.reconcile,
            initial_delay=0,
        )

        # 8. Metrics server
        if self.config.metrics.enabled:
            self.metrics_server = WardenMetricsServer(
                self, host=self.config.metrics.host, port=self.config.metrics.port,
            )
            await self.metrics_server.start()

        # 9. Mark running
        self.running = True
        self.logger.info("roomwarden started successfully (v%s)", __version__)

        # 10. Block on the sync loop
        if isinstance(gateway, MatrixGateway):
            await gateway.run()

    def _rooms_to_join(self) -> list[str]:
        rooms = list(self.registry.monitored())
        rooms += self.registry.ban_targets()
        rooms += self.config.commands.admin_rooms
        if self.config.alerts.room:
            rooms.append(self.config.alerts.room)
        return list(dict.fromkeys(rooms))

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self.running:
            return
        self.logger.info("Shutting down roomwarden...")
        self.running = False

        if self.metrics_server:
            await self.metrics_server.stop()
        if self.scheduler:
            await self.scheduler.stop()
        if self.ban_sync:
            await self.ban_sync.stop()
        if self.alerts:
            await self.alerts.stop()
        if isinstance(self.gateway, MatrixGateway):
            await self.gateway.stop()

        self.logger.info("roomwarden stopped.")

    # ══════════════════════════════════════════════════════════
    #  Event handlers
    # ══════════════════════════════════════════════════════════

    async def handle_membership(self, change: MembershipChange) -> None:
        try:
            self.events_processed += 1
            await self.lifecycle.on_membership_change(change)
        except Exception:
            self.event_errors += 1
            self.logger.exception(
                "membership handler error for %s in %s", change.member_id, change.room_id,
            )

    async def handle_message(self, message: RoomMessage) -> None:
        try:
            self.events_processed += 1
            await self.command_engine.handle_message(message)
        except Exception:
            self.event_errors += 1
            self.logger.exception(
                "message handler error for %s in %s", message.sender_id, message.room_id,
            )
