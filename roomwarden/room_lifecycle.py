"""Room lifecycle manager — private welcome rooms for new joiners.

A join in a MONITORED room creates a private direct room with the member,
posts the welcome message and schedules the bot's departure once the grace
period is over. Every WELCOME entry owns exactly one leave timer in the
shared scheduler, keyed ``leave:<room_id>``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from .errors import PermanentProtocolError, ProtocolError, TransientProtocolError
from .formatting import pill, render
from .gateway import MembershipChange, Transition
from .rooms import ManagedRoom, RoomMode
from .utils import KeyedLock, format_duration, localpart, now_utc, with_timeout

if TYPE_CHECKING:
    from .alert_notifier import AlertNotifier
    from .config import WardenConfig
    from .database import WardenDatabase
    from .gateway import Gateway
    from .rooms import RoomRegistry
    from .scheduler import Scheduler

# Retry delay when leaving a welcome room fails transiently
LEAVE_RETRY_SECONDS = 60.0


class RoomLifecycleManager:
    """Owns WELCOME room entries and their leave timers."""

    def __init__(
        self,
        config: WardenConfig,
        database: WardenDatabase,
        gateway: Gateway,
        scheduler: Scheduler,
        registry: RoomRegistry,
        alerts: AlertNotifier | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._gateway = gateway
        self._scheduler = scheduler
        self._registry = registry
        self._alerts = alerts
        self._logger = logger or logging.getLogger("roomwarden.lifecycle")
        self._timeout = config.gateway.action_timeout_seconds

        self._rooms: dict[str, ManagedRoom] = {}
        self._locks = KeyedLock()

        # Counters (for metrics)
        self.welcomes_created: int = 0
        self.welcome_failures: int = 0
        self.rooms_closed: int = 0
        self.rejoins: int = 0

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    def get(self, room_id: str) -> ManagedRoom | None:
        return self._rooms.get(room_id)

    def entries(self) -> list[ManagedRoom]:
        return sorted(self._rooms.values(), key=lambda r: r.created_at)

    def room_for_member(self, member_id: str) -> ManagedRoom | None:
        for room in self._rooms.values():
            if room.member_id == member_id:
                return room
        return None

    @staticmethod
    def timer_key(room_id: str) -> str:
        return f"leave:{room_id}"

    # ══════════════════════════════════════════════════════════
    #  Join → welcome
    # ══════════════════════════════════════════════════════════

    async def on_member_joined(self, room_id: str, member_id: str) -> ManagedRoom | None:
        """Open a welcome room for ``member_id`` if they joined a monitored room.

        Returns the new entry, or None when nothing was created.
        """
        if not self._config.welcome.enabled:
            return None
        if not self._registry.is_monitored(room_id):
            return None
        if member_id == self._gateway.user_id:
            return None

        async with self._locks.hold(f"member:{member_id}"):
            existing = self.room_for_member(member_id)
            if existing is not None:
                self._logger.debug(
                    "%s already has welcome room %s", member_id, existing.room_id,
                )
                return None
            return await self._open_welcome_room(room_id, member_id)

    async def _open_welcome_room(self, origin_room_id: str, member_id: str) -> ManagedRoom | None:
        welcome = self._config.welcome
        variables = self._template_vars(member_id, origin_room_id)
        try:
            name = render(welcome.room_name, variables)[0]
            topic = render(welcome.room_topic, variables)[0]
        except (KeyError, IndexError) as e:
            self._logger.error("Welcome room name/topic template is invalid: %s", e)
            name, topic = f"Welcome, {localpart(member_id)}", ""

        try:
            room_id = await with_timeout(
                self._gateway.create_room(name=name, topic=topic, invite=[member_id]),
                self._timeout, "create_room", origin_room_id,
            )
        except ProtocolError as e:
            self.welcome_failures += 1
            self._logger.error("Could not create welcome room for %s: %s", member_id, e)
            if self._alerts:
                await self._alerts.alert(
                    "welcome_failed",
                    {"member": member_id, "room": origin_room_id, "error": e},
                )
            return None

        async with self._locks.hold(room_id):
            return await self._register_welcome_room(room_id, origin_room_id, member_id, variables)

    async def _register_welcome_room(
        self,
        room_id: str,
        origin_room_id: str,
        member_id: str,
        variables: dict[str, Any],
    ) -> ManagedRoom:
        # Caller holds the room lock
        welcome = self._config.welcome
        created_at = now_utc()
        room = ManagedRoom(
            room_id=room_id,
            mode=RoomMode.WELCOME,
            created_at=created_at,
            scheduled_leave_at=created_at + timedelta(seconds=welcome.grace_period_seconds),
            member_id=member_id,
            origin_room_id=origin_room_id,
        )
        self._rooms[room_id] = room
        await self._db.upsert_room(room.to_row())
        self._arm_timer(room)
        self.welcomes_created += 1
        self._logger.info(
            "Opened welcome room %s for %s (from %s, leaving at %s)",
            room_id, member_id, origin_room_id, room.scheduled_leave_at.isoformat(),
        )

        # Best-effort: the room stays managed even if the greeting fails
        try:
            body, html = render(welcome.message, variables)
            await with_timeout(
                self._gateway.send_message(room_id, body, html),
                self._timeout, "send_message", room_id,
            )
        except (KeyError, IndexError) as e:
            self._logger.error("Welcome message template is invalid: %s", e)
        except ProtocolError as e:
            self._logger.warning("Welcome message to %s failed: %s", room_id, e)
        return room

    def _template_vars(self, member_id: str, origin_room_id: str) -> dict[str, Any]:
        return {
            "member": member_id,
            "member_name": localpart(member_id),
            "member_pill": pill(member_id),
            "room": origin_room_id,
            "grace": format_duration(self._config.welcome.grace_period_seconds),
        }

    # ══════════════════════════════════════════════════════════
    #  Timers
    # ══════════════════════════════════════════════════════════

    def _arm_timer(self, room: ManagedRoom) -> None:
        delay = 0.0
        if room.scheduled_leave_at is not None:
            delay = (room.scheduled_leave_at - now_utc()).total_seconds()
        room_id = room.room_id
        self._scheduler.schedule(
            self.timer_key(room_id), delay, lambda: self.on_leave_timer_fired(room_id),
        )

    async def on_leave_timer_fired(self, room_id: str) -> None:
        """Leave and forget the welcome room. Safe to call repeatedly."""
        async with self._locks.hold(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                self._logger.debug("Leave timer for %s: room no longer tracked", room_id)
                return
            try:
                await self._leave_and_forget(room)
            except TransientProtocolError as e:
                self._logger.warning(
                    "Leaving %s failed, retrying in %gs: %s", room_id, LEAVE_RETRY_SECONDS, e,
                )
                self._scheduler.schedule(
                    self.timer_key(room_id),
                    LEAVE_RETRY_SECONDS,
                    lambda: self.on_leave_timer_fired(room_id),
                )

    async def reschedule_leave(self, room_id: str, delay: float) -> ManagedRoom | None:
        """Move the room's single leave timer to ``delay`` seconds from now."""
        async with self._locks.hold(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                return None
            room.scheduled_leave_at = now_utc() + timedelta(seconds=delay)
            await self._db.upsert_room(room.to_row())
            self._arm_timer(room)
            self._logger.info(
                "Welcome room %s now leaves at %s", room_id, room.scheduled_leave_at.isoformat(),
            )
            return room

    async def close_welcome_room(self, room_id: str) -> bool:
        """Leave now. Returns False if ``room_id`` is not a welcome room.

        Raises TransientProtocolError if the leave could not be sent; the
        entry and its timer are kept in that case.
        """
        async with self._locks.hold(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                return False
            await self._leave_and_forget(room)
            return True

    async def _leave_and_forget(self, room: ManagedRoom) -> None:
        try:
            await with_timeout(
                self._gateway.leave(room.room_id), self._timeout, "leave", room.room_id,
            )
        except PermanentProtocolError as e:
            # Room gone or bot already out; nothing left to leave
            self._logger.warning("Leave %s: %s", room.room_id, e)
        await self._forget(room)
        self.rooms_closed += 1
        self._logger.info("Closed welcome room %s for %s", room.room_id, room.member_id)

    async def _forget(self, room: ManagedRoom) -> None:
        self._rooms.pop(room.room_id, None)
        self._scheduler.cancel(self.timer_key(room.room_id))
        await self._db.delete_room(room.room_id, RoomMode.WELCOME.value)

    # ══════════════════════════════════════════════════════════
    #  Removal
    # ══════════════════════════════════════════════════════════

    async def on_member_removed(
        self,
        room_id: str,
        member_id: str,
        by_whom: str,
        reason: str | None = None,
    ) -> None:
        """React to a leave/kick/ban inside a tracked welcome room."""
        async with self._locks.hold(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                return
            bot_id = self._gateway.user_id
            if member_id not in (bot_id, room.member_id):
                return

            if by_whom == member_id:
                if member_id == bot_id:
                    await self._forget(room)
                    self._logger.info("Left welcome room %s; entry removed", room_id)
                else:
                    self._logger.info(
                        "%s left welcome room %s; keeping it until its timer", member_id, room_id,
                    )
                return

            self._logger.warning(
                "%s was removed from welcome room %s by %s (%s)",
                member_id, room_id, by_whom, reason or "no reason",
            )
            max_attempts = self._config.welcome.max_rejoin_attempts
            if room.rejoin_attempts >= max_attempts:
                await self._give_up(room, member_id, f"rejoin limit ({max_attempts}) reached")
                return

            room.rejoin_attempts += 1
            await self._db.upsert_room(room.to_row())
            try:
                if member_id == bot_id:
                    await with_timeout(
                        self._gateway.join(room_id), self._timeout, "join", room_id,
                    )
                else:
                    await with_timeout(
                        self._gateway.invite(room_id, member_id), self._timeout, "invite", room_id,
                    )
            except ProtocolError as e:
                await self._give_up(room, member_id, str(e))
                return

            self.rejoins += 1
            self._logger.info(
                "Re-established %s in welcome room %s (attempt %d/%d)",
                member_id, room_id, room.rejoin_attempts, max_attempts,
            )

    async def _give_up(self, room: ManagedRoom, member_id: str, error: str) -> None:
        if member_id != self._gateway.user_id:
            # The bot is still inside; do not leave the room orphaned with it
            try:
                await with_timeout(
                    self._gateway.leave(room.room_id), self._timeout, "leave", room.room_id,
                )
            except ProtocolError as e:
                self._logger.warning("Leave %s after failed re-invite: %s", room.room_id, e)
        await self._forget(room)
        self._logger.error("Gave up on welcome room %s: %s", room.room_id, error)
        if self._alerts:
            await self._alerts.alert(
                "rejoin_failed",
                {"room": room.room_id, "member": room.member_id, "error": error},
            )

    # ══════════════════════════════════════════════════════════
    #  Dispatch & restore
    # ══════════════════════════════════════════════════════════

    async def on_membership_change(self, change: MembershipChange) -> None:
        transition = change.transition
        if transition is Transition.JOINED:
            await self.on_member_joined(change.room_id, change.member_id)
        elif transition in (Transition.KICKED, Transition.BANNED, Transition.LEFT):
            await self.on_member_removed(
                change.room_id, change.member_id, change.by_whom, change.reason,
            )
        elif transition in (
            Transition.PROFILE_CHANGED, Transition.UNBANNED, Transition.INVITED, Transition.KNOCKED,
        ):
            pass
        else:
            raise ValueError(f"unhandled membership transition: {transition}")

    async def restore(self) -> int:
        """Reload persisted welcome rooms and re-arm their leave timers."""
        rows = await self._db.get_rooms(RoomMode.WELCOME.value)
        for row in rows:
            room = ManagedRoom.from_row(row)
            if room.scheduled_leave_at is None:
                room.scheduled_leave_at = room.created_at + timedelta(
                    seconds=self._config.welcome.grace_period_seconds,
                )
            self._rooms[room.room_id] = room
            self._arm_timer(room)
        if rows:
            self._logger.info("Restored %d welcome room(s)", len(rows))
        return len(rows)
