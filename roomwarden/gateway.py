"""Protocol gateway — the only place that talks to the homeserver.

The core depends on the ``Gateway`` protocol and on the two event types
delivered through it. ``MatrixGateway`` implements the protocol with
matrix-nio and maps error responses onto the transient/permanent split the
rest of the service relies on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

import aiohttp
import nio

from .errors import PermanentProtocolError, TransientProtocolError

if TYPE_CHECKING:
    from .config import WardenConfig


class Membership(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    BAN = "ban"
    INVITE = "invite"
    KNOCK = "knock"


class Transition(Enum):
    """Closed set of membership transitions the core reacts to."""

    JOINED = "joined"
    PROFILE_CHANGED = "profile_changed"  # join -> join: display name or avatar
    LEFT = "left"  # self-initiated leave
    KICKED = "kicked"
    BANNED = "banned"
    UNBANNED = "unbanned"
    INVITED = "invited"
    KNOCKED = "knocked"


@dataclass(frozen=True)
class MembershipChange:
    room_id: str
    member_id: str
    membership: Membership
    by_whom: str
    previous: Membership | None = None
    reason: str | None = None

    @property
    def transition(self) -> Transition:
        if self.membership is Membership.JOIN:
            if self.previous is Membership.JOIN:
                return Transition.PROFILE_CHANGED
            return Transition.JOINED
        if self.membership is Membership.BAN:
            return Transition.BANNED
        if self.membership is Membership.INVITE:
            return Transition.INVITED
        if self.membership is Membership.KNOCK:
            return Transition.KNOCKED
        # leave
        if self.by_whom == self.member_id:
            return Transition.LEFT
        if self.previous is Membership.BAN:
            return Transition.UNBANNED
        return Transition.KICKED

    @property
    def involuntary(self) -> bool:
        return self.transition in (Transition.KICKED, Transition.BANNED)


@dataclass(frozen=True)
class RoomMessage:
    room_id: str
    sender_id: str
    body: str
    format: str | None = None


MembershipHandler = Callable[[MembershipChange], Awaitable[None]]
MessageHandler = Callable[[RoomMessage], Awaitable[None]]


class Gateway(Protocol):
    """Outbound actions the core may issue.

    Every method raises ``TransientProtocolError`` or
    ``PermanentProtocolError`` on failure.
    """

    user_id: str

    async def create_room(self, *, name: str, topic: str, invite: list[str]) -> str: ...

    async def invite(self, room_id: str, member_id: str) -> None: ...

    async def join(self, room_id: str) -> None: ...

    async def send_message(self, room_id: str, body: str, html: str | None = None) -> None: ...

    async def leave(self, room_id: str) -> None: ...

    async def ban(self, room_id: str, member_id: str, reason: str | None = None) -> None: ...

    async def unban(self, room_id: str, member_id: str) -> None: ...

    async def kick(self, room_id: str, member_id: str, reason: str | None = None) -> None: ...


# ══════════════════════════════════════════════════════════
#  matrix-nio adapter
# ══════════════════════════════════════════════════════════

# errcodes that will not succeed on retry
PERMANENT_ERRCODES = frozenset({
    "M_FORBIDDEN",
    "M_NOT_FOUND",
    "M_UNKNOWN",
    "M_BAD_STATE",
    "M_UNKNOWN_TOKEN",
    "M_INVALID_PARAM",
})


def _membership(value: str | None) -> Membership | None:
    if not value:
        return None
    try:
        return Membership(value)
    except ValueError:
        return None


class MatrixGateway:
    """Gateway backed by ``nio.AsyncClient``."""

    def __init__(
        self,
        config: WardenConfig,
        logger: logging.Logger | None = None,
        client: nio.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("roomwarden.gateway")
        self.user_id = config.matrix.user_id
        if client is None:
            client = nio.AsyncClient(
                config.matrix.homeserver,
                config.matrix.user_id,
                device_id=config.matrix.device_id,
            )
            client.access_token = config.matrix.access_token
            client.user_id = config.matrix.user_id
        self._client = client
        self._membership_handlers: list[MembershipHandler] = []
        self._message_handlers: list[MessageHandler] = []
        self._stopping = False

    # ── Event registration ───────────────────────────────────

    def on_membership(self, handler: MembershipHandler) -> MembershipHandler:
        self._membership_handlers.append(handler)
        return handler

    def on_message(self, handler: MessageHandler) -> MessageHandler:
        self._message_handlers.append(handler)
        return handler

    # ── Lifecycle ────────────────────────────────────────────

    async def connect(self, rooms: list[str]) -> None:
        """Initial sync (history is not replayed), then join ``rooms``."""
        resp = await self._client.sync(timeout=0, full_state=True)
        if isinstance(resp, nio.SyncError):
            raise PermanentProtocolError("sync", "*", resp.message)
        self._logger.info("Initial sync complete (next_batch=%s)", self._client.next_batch)

        for room_id in rooms:
            try:
                await self.join(room_id)
            except (TransientProtocolError, PermanentProtocolError) as e:
                self._logger.warning("Could not join %s: %s", room_id, e)

        self._client.add_event_callback(self._on_member_event, nio.RoomMemberEvent)
        self._client.add_event_callback(self._on_text_event, nio.RoomMessageText)
        self._client.add_event_callback(self._on_encrypted_event, nio.MegolmEvent)

    async def run(self) -> None:
        """Block on the sync loop."""
        await self._client.sync_forever(timeout=self._config.matrix.sync_timeout_ms)

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        await self._client.close()

    # ── Inbound ──────────────────────────────────────────────

    async def _on_member_event(self, room: Any, event: Any) -> None:
        membership = _membership(event.membership)
        if membership is None:
            return
        content = getattr(event, "content", None) or {}
        change = MembershipChange(
            room_id=room.room_id,
            member_id=event.state_key,
            membership=membership,
            by_whom=event.sender,
            previous=_membership(getattr(event, "prev_membership", None)),
            reason=content.get("reason"),
        )
        for handler in self._membership_handlers:
            await handler(change)

    async def _on_text_event(self, room: Any, event: Any) -> None:
        if event.sender == self.user_id:
            return
        message = RoomMessage(
            room_id=room.room_id,
            sender_id=event.sender,
            body=event.body,
            format=getattr(event, "format", None),
        )
        for handler in self._message_handlers:
            await handler(message)

    async def _on_encrypted_event(self, room: Any, event: Any) -> None:
        self._logger.debug(
            "Ignoring undecryptable event %s in %s", getattr(event, "event_id", "?"), room.room_id,
        )

    # ── Outbound ─────────────────────────────────────────────

    async def _call(self, action: str, room_id: str, coro: Awaitable[Any]) -> Any:
        try:
            resp = await coro
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransientProtocolError(action, room_id, str(e) or type(e).__name__) from e
        if isinstance(resp, nio.ErrorResponse):
            errcode = getattr(resp, "status_code", None) or ""
            detail = f"{errcode} {resp.message}".strip()
            if errcode in PERMANENT_ERRCODES:
                raise PermanentProtocolError(action, room_id, detail)
            raise TransientProtocolError(action, room_id, detail)
        return resp

    async def create_room(self, *, name: str, topic: str, invite: list[str]) -> str:
        resp = await self._call(
            "create_room",
            "(new)",
            self._client.room_create(
                visibility=nio.RoomVisibility.private,
                preset=nio.RoomPreset.trusted_private_chat,
                name=name,
                topic=topic,
                invite=invite,
                is_direct=True,
            ),
        )
        return resp.room_id

    async def invite(self, room_id: str, member_id: str) -> None:
        await self._call("invite", room_id, self._client.room_invite(room_id, member_id))

    async def join(self, room_id: str) -> None:
        await self._call("join", room_id, self._client.join(room_id))

    async def send_message(self, room_id: str, body: str, html: str | None = None) -> None:
        content: dict[str, Any] = {"msgtype": "m.notice", "body": body}
        if html:
            content["format"] = "org.matrix.custom.html"
            content["formatted_body"] = html
        await self._call(
            "send_message",
            room_id,
            self._client.room_send(room_id, message_type="m.room.message", content=content),
        )

    async def leave(self, room_id: str) -> None:
        await self._call("leave", room_id, self._client.room_leave(room_id))

    async def ban(self, room_id: str, member_id: str, reason: str | None = None) -> None:
        await self._call("ban", room_id, self._client.room_ban(room_id, member_id, reason=reason))

    async def unban(self, room_id: str, member_id: str) -> None:
        await self._call("unban", room_id, self._client.room_unban(room_id, member_id))

    async def kick(self, room_id: str, member_id: str, reason: str | None = None) -> None:
        await self._call("kick", room_id, self._client.room_kick(room_id, member_id, reason=reason))
