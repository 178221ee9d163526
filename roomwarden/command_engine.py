"""Command engine — operator commands typed into admin rooms.

Commands are a tree of ``Literal`` and ``Argument`` nodes registered once at
startup; registration rejects malformed trees. Incoming text is matched
against the tree, the issuer's level is checked against the highest level
declared along the matched path, and the terminal node's handler produces
the reply.
"""

from __future__ import annotations

import functools
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from .errors import CommandPermissionError, ParseError, ProtocolError
from .formatting import markdown_to_html, markdown_to_plain
from .rooms import RoomMode
from .utils import format_duration, now_utc, parse_duration, with_timeout

if TYPE_CHECKING:
    from .ban_sync import BanSynchronizer
    from .config import AdminPrincipal, WardenConfig
    from .gateway import Gateway, RoomMessage
    from .room_lifecycle import RoomLifecycleManager
    from .rooms import RoomRegistry

NOT_PERMITTED = "⛔ You are not permitted to run that command."

_USER_ID_RE = re.compile(r"^@[^:\s]+:\S+$")
_ROOM_ID_RE = re.compile(r"^![^:\s]+:\S+$")
_TOKEN_RE = re.compile(r"\S+")


# ══════════════════════════════════════════════════════════
#  Command tree
# ══════════════════════════════════════════════════════════

class ArgKind(Enum):
    WORD = "word"
    INTEGER = "integer"
    USER_ID = "user_id"
    ROOM_ID = "room_id"
    ROOM_MODE = "room_mode"
    DURATION = "duration"
    GREEDY = "greedy"  # rest of the line


Handler = Callable[["CommandInvocation"], Awaitable[str]]


@dataclass(eq=False)
class Literal:
    name: str
    children: list[Node] = field(default_factory=list)
    handler: Handler | None = None
    level: int = 0
    description: str = ""


@dataclass(eq=False)
class Argument:
    name: str
    kind: ArgKind
    children: list[Node] = field(default_factory=list)
    handler: Handler | None = None
    level: int = 0
    description: str = ""


Node = Union[Literal, Argument]


def literal(name: str, *children: Node, handler: Handler | None = None,
            level: int = 0, description: str = "") -> Literal:
    return Literal(name.lower(), list(children), handler, level, description)


def argument(name: str, kind: ArgKind, *children: Node, handler: Handler | None = None,
             level: int = 0, description: str = "") -> Argument:
    return Argument(name, kind, list(children), handler, level, description)


@dataclass(frozen=True)
class CommandInvocation:
    source_room_id: str
    source_member_id: str
    raw_text: str
    node: Node
    path: tuple[Node, ...]
    arguments: dict[str, Any]

    @property
    def required_level(self) -> int:
        return max(n.level for n in self.path)

    @property
    def name(self) -> str:
        return " ".join(n.name for n in self.path if isinstance(n, Literal))


class CommandTree:
    """Registered root commands, validated on registration."""

    def __init__(self) -> None:
        self._roots: dict[str, Literal] = {}

    def register(self, root: Literal) -> None:
        if not isinstance(root, Literal):
            raise ValueError("root command must be a literal")
        if root.name in self._roots:
            raise ValueError(f"duplicate command: {root.name}")
        self._validate(root, root.name)
        self._roots[root.name] = root

    def _validate(self, node: Node, path: str) -> None:
        literals = [c.name for c in node.children if isinstance(c, Literal)]
        if len(literals) != len(set(literals)):
            raise ValueError(f"duplicate literal under '{path}'")
        arguments = [c for c in node.children if isinstance(c, Argument)]
        if len(arguments) > 1:
            raise ValueError(f"more than one argument under '{path}'")
        if isinstance(node, Argument) and node.kind is ArgKind.GREEDY and node.children:
            raise ValueError(f"greedy argument '{node.name}' under '{path}' must be last")
        if not node.children and node.handler is None:
            raise ValueError(f"'{path}' has no handler and no children")
        for child in node.children:
            self._validate(child, f"{path} {_token(child, node)}")

    def roots(self) -> list[Literal]:
        return [self._roots[name] for name in sorted(self._roots)]

    def get(self, name: str) -> Literal | None:
        return self._roots.get(name.lower())

    # ── Parsing ──────────────────────────────────────────────

    def parse(self, text: str) -> tuple[Node, list[Node], dict[str, Any]]:
        """Match ``text`` (prefix already stripped) to a terminal node."""
        tokens = list(_TOKEN_RE.finditer(text))
        if not tokens:
            raise ParseError("empty command", usage="help")
        root = self._roots.get(tokens[0].group().lower())
        if root is None:
            raise ParseError(f"unknown command '{tokens[0].group()}'", usage="help")

        node: Node = root
        path: list[Node] = [root]
        arguments: dict[str, Any] = {}
        i = 1
        while i < len(tokens):
            token = tokens[i].group()
            child = next(
                (c for c in node.children
                 if isinstance(c, Literal) and c.name == token.lower()),
                None,
            )
            if child is None:
                child = next((c for c in node.children if isinstance(c, Argument)), None)
                if child is None:
                    raise ParseError(
                        f"unexpected '{token}'", self.usage(path), root.level,
                    )
                if child.kind is ArgKind.GREEDY:
                    arguments[child.name] = text[tokens[i].start():].strip()
                    i = len(tokens)
                else:
                    arguments[child.name] = self._convert(child, token, path, root.level)
                    i += 1
            else:
                i += 1
            node = child
            path.append(node)

        if node.handler is None:
            raise ParseError("incomplete command", self.usage(path), root.level)
        return node, path, arguments

    def _convert(self, arg: Argument, token: str, path: list[Node], level: int) -> Any:
        kind = arg.kind
        try:
            if kind is ArgKind.INTEGER:
                return int(token)
            if kind is ArgKind.USER_ID:
                if not _USER_ID_RE.match(token):
                    raise ValueError(f"'{token}' is not a user id")
                return token
            if kind is ArgKind.ROOM_ID:
                if not _ROOM_ID_RE.match(token):
                    raise ValueError(f"'{token}' is not a room id")
                return token
            if kind is ArgKind.ROOM_MODE:
                return RoomMode.parse(token)
            if kind is ArgKind.DURATION:
                return parse_duration(token)
        except ValueError as e:
            raise ParseError(
                f"bad <{arg.name}>: {e}", self.usage(path + [arg]), level,
            ) from None
        return token

    # ── Usage ────────────────────────────────────────────────

    def usage(self, path: list[Node]) -> str:
        """Every executable form reachable from the end of ``path``."""
        parent: Node | None = None
        prefix: list[str] = []
        for node in path:
            prefix.append(_token(node, parent))
            parent = node
        forms = [" ".join(prefix + suffix) for suffix in _forms(path[-1])]
        return " | ".join(forms)

    def usage_lines(self, root: Literal) -> list[str]:
        return [" ".join([root.name] + suffix) for suffix in _forms(root)]


def _token(node: Node, parent: Node | None) -> str:
    if isinstance(node, Literal):
        return node.name
    if node.kind is ArgKind.GREEDY:
        optional = parent is not None and parent.handler is not None
        return f"[{node.name}...]" if optional else f"<{node.name}...>"
    return f"<{node.name}>"


def _forms(node: Node) -> list[list[str]]:
    forms: list[list[str]] = [[]] if node.handler is not None else []
    for child in node.children:
        for suffix in _forms(child):
            forms.append([_token(child, node)] + suffix)
    return forms


# ══════════════════════════════════════════════════════════
#  Rate limiter
# ══════════════════════════════════════════════════════════

class CommandRateLimiter:
    """Per-operator sliding window over the last minute.

    Only configured principals reach ``check``, so the table never grows
    past the admin list.
    """

    WINDOW_SECONDS = 60.0

    def __init__(self, max_per_minute: int = 10) -> None:
        self._max = max_per_minute
        self._windows: dict[str, deque[float]] = {}

    def check(self, member_id: str, now: float | None = None) -> bool:
        """Record a command from ``member_id``; False when over the limit."""
        if now is None:
            now = time.monotonic()
        window = self._windows.setdefault(member_id, deque())
        while window and now - window[0] >= self.WINDOW_SECONDS:
            window.popleft()
        if len(window) >= self._max:
            return False
        window.append(now)
        return True


# ══════════════════════════════════════════════════════════
#  Engine
# ══════════════════════════════════════════════════════════

class CommandEngine:
    """Parses, authorizes and executes operator commands."""

    def __init__(
        self,
        config: WardenConfig,
        gateway: Gateway,
        ban_sync: BanSynchronizer,
        lifecycle: RoomLifecycleManager,
        registry: RoomRegistry,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._ban_sync = ban_sync
        self._lifecycle = lifecycle
        self._registry = registry
        self._logger = logger or logging.getLogger("roomwarden.commands")
        self._prefix = config.commands.prefix
        self._timeout = config.gateway.action_timeout_seconds
        self._rate_limiter = CommandRateLimiter(config.commands.rate_limit_per_minute)

        self.tree = CommandTree()
        self._build_tree()

        # Counters (for metrics)
        self.commands_processed: int = 0
        self.commands_denied: int = 0
        self.commands_invalid: int = 0

    def _build_tree(self) -> None:
        levels = self._config.commands.levels
        user = functools.partial(argument, "user", ArgKind.USER_ID)
        room = functools.partial(argument, "room", ArgKind.ROOM_ID)

        for root in (
            literal("help", handler=self._cmd_help, level=levels.info,
                    description="List the commands you may run"),
            literal("ping", handler=self._cmd_ping, level=levels.info,
                    description="Check that the bot is alive"),
            literal(
                "ban",
                user(argument("reason", ArgKind.GREEDY, handler=self._cmd_ban),
                     handler=self._cmd_ban),
                level=levels.ban, description="Ban a user in every ban target room",
            ),
            literal("unban", user(handler=self._cmd_unban), level=levels.ban,
                    description="Lift a ban everywhere"),
            literal("bans", handler=self._cmd_bans, level=levels.info,
                    description="Show the ban list"),
            literal("banstatus", user(handler=self._cmd_banstatus), level=levels.info,
                    description="Show per-room propagation of a ban"),
            literal("reconcile", handler=self._cmd_reconcile, level=levels.ban,
                    description="Retry failed propagation now"),
            literal(
                "room",
                literal("add", room(argument("mode", ArgKind.ROOM_MODE,
                                             handler=self._cmd_room_add))),
                literal("remove", room(handler=self._cmd_room_remove)),
                literal("list", handler=self._cmd_room_list),
                level=levels.room, description="Manage monitored and ban target rooms",
            ),
            literal(
                "welcome",
                literal("list", handler=self._cmd_welcome_list),
                literal("close", room(handler=self._cmd_welcome_close)),
                literal("extend", room(argument("duration", ArgKind.DURATION,
                                                handler=self._cmd_welcome_extend))),
                level=levels.welcome, description="Inspect and manage welcome rooms",
            ),
        ):
            self.tree.register(root)

    # ── Parse / authorize / dispatch ─────────────────────────

    def parse(self, raw_text: str, room_id: str, member_id: str) -> CommandInvocation:
        text = raw_text.strip()
        if text.startswith(self._prefix):
            text = text[len(self._prefix):]
        node, path, arguments = self.tree.parse(text)
        return CommandInvocation(
            source_room_id=room_id,
            source_member_id=member_id,
            raw_text=raw_text,
            node=node,
            path=tuple(path),
            arguments=arguments,
        )

    def authorize(self, invocation: CommandInvocation, principal: AdminPrincipal | None) -> bool:
        return principal is not None and principal.level >= invocation.required_level

    async def dispatch(self, invocation: CommandInvocation) -> str:
        """Run the matched handler and return its reply text."""
        try:
            return await invocation.node.handler(invocation)
        except CommandPermissionError as e:
            self._logger.warning("Permission denied in %s: %s", invocation.name, e)
            return NOT_PERMITTED
        except ProtocolError as e:
            return f"❌ {e}"
        except Exception:
            self._logger.exception("Command '%s' failed", invocation.raw_text)
            return "❌ Internal error while running that command."

    async def handle_message(self, message: RoomMessage) -> str | None:
        """Entry point for chat messages. Returns the reply sent, if any."""
        admin_rooms = self._config.commands.admin_rooms
        if admin_rooms and message.room_id not in admin_rooms:
            return None
        if message.sender_id == self._gateway.user_id:
            return None
        body = message.body.strip()
        if not body.startswith(self._prefix):
            return None
        principal = self._config.get_principal(message.sender_id)
        if principal is None:
            return None

        if not self._rate_limiter.check(message.sender_id):
            self._logger.warning("Rate limited commands from %s", message.sender_id)
            return None

        try:
            invocation = self.parse(body, message.room_id, message.sender_id)
        except ParseError as e:
            self.commands_invalid += 1
            if principal.level < e.required_level:
                reply = NOT_PERMITTED
            else:
                reply = f"❌ {e}"
        else:
            if not self.authorize(invocation, principal):
                self.commands_denied += 1
                self._logger.info(
                    "%s (level %d) denied '%s' (needs %d)",
                    principal.member_id, principal.level, invocation.name,
                    invocation.required_level,
                )
                reply = NOT_PERMITTED
            else:
                self.commands_processed += 1
                self._logger.info("%s ran '%s'", principal.member_id, body)
                reply = await self.dispatch(invocation)

        await self._reply(message.room_id, reply)
        return reply

    async def _reply(self, room_id: str, text: str) -> None:
        try:
            await with_timeout(
                self._gateway.send_message(room_id, markdown_to_plain(text), markdown_to_html(text)),
                self._timeout, "send_message", room_id,
            )
        except ProtocolError as e:
            self._logger.warning("Could not reply in %s: %s", room_id, e)

    def _principal(self, invocation: CommandInvocation) -> AdminPrincipal:
        principal = self._config.get_principal(invocation.source_member_id)
        if principal is None:
            raise CommandPermissionError(invocation.source_member_id, invocation.required_level, 0)
        return principal

    # ══════════════════════════════════════════════════════════
    #  Handlers
    # ══════════════════════════════════════════════════════════

    async def _cmd_help(self, inv: CommandInvocation) -> str:
        level = self._principal(inv).level
        lines = ["**Commands**"]
        for root in self.tree.roots():
            if root.level > level:
                continue
            for form in self.tree.usage_lines(root):
                lines.append(f"`{self._prefix}{form}`")
            if root.description:
                lines[-1] += f": {root.description}"
        return "\n".join(lines)

    async def _cmd_ping(self, inv: CommandInvocation) -> str:
        return "pong"

    async def _cmd_ban(self, inv: CommandInvocation) -> str:
        subject = inv.arguments["user"]
        if subject == self._gateway.user_id:
            return "❌ I will not ban myself."
        entry = await self._ban_sync.issue_ban(
            subject, inv.arguments.get("reason"), self._principal(inv),
        )
        targets = len(self._ban_sync.records_for(subject))
        if not targets:
            return f"🔨 {subject} added to the ban list. No ban target rooms are configured."
        return (
            f"🔨 Banned {subject} ({entry.reason}). "
            f"Propagating to {targets} room(s)."
        )

    async def _cmd_unban(self, inv: CommandInvocation) -> str:
        subject = inv.arguments["user"]
        if not await self._ban_sync.revoke_ban(subject, self._principal(inv)):
            return f"{subject} is not on the ban list."
        targets = len(self._ban_sync.records_for(subject))
        return f"✅ Unbanned {subject}. Propagating to {targets} room(s)."

    async def _cmd_bans(self, inv: CommandInvocation) -> str:
        entries = self._ban_sync.entries()
        if not entries:
            return "The ban list is empty."
        lines = [f"**Ban list** ({len(entries)})"]
        for e in entries:
            lines.append(
                f"{e.subject_id}: {e.reason or '-'} "
                f"(by {e.issued_by}, {e.issued_at:%Y-%m-%d %H:%M} UTC)"
            )
        return "\n".join(lines)

    async def _cmd_banstatus(self, inv: CommandInvocation) -> str:
        subject = inv.arguments["user"]
        records = self._ban_sync.records_for(subject)
        entry = self._ban_sync.get_entry(subject)
        if entry is None and not records:
            return f"{subject} is not on the ban list."
        head = f"**{subject}**: " + ("banned" if entry else "not banned")
        lines = [head]
        for r in records:
            line = f"{r.target_room_id}: {r.action.value} {r.status.value}"
            if r.attempts:
                line += f" after {r.attempts} attempt(s)"
            if r.permanent:
                line += " (permanent)"
            if r.last_error:
                line += f": {r.last_error}"
            lines.append(line)
        return "\n".join(lines)

    async def _cmd_reconcile(self, inv: CommandInvocation) -> str:
        started = await self._ban_sync.reconcile(force=True, wait=False)
        failures = len(self._ban_sync.permanent_failures())
        reply = f"🔁 Retrying {started} record(s)."
        if failures:
            reply += f" {failures} permanent failure(s) need attention."
        return reply

    async def _cmd_room_add(self, inv: CommandInvocation) -> str:
        room_id = inv.arguments["room"]
        mode: RoomMode = inv.arguments["mode"]
        if mode is RoomMode.WELCOME:
            return "❌ Welcome rooms are created automatically."
        if not await self._registry.add(room_id, mode):
            return f"{room_id} is already {mode.value}."

        reply = f"✅ {room_id} is now {mode.value}."
        if mode is RoomMode.MONITORED:
            try:
                await with_timeout(self._gateway.join(room_id), self._timeout, "join", room_id)
            except ProtocolError as e:
                reply += f" Warning: could not join it ({e})."
        else:
            queued = await self._ban_sync.sync_room(room_id)
            if queued:
                reply += f" Applying {queued} existing ban(s)."
        return reply

    async def _cmd_room_remove(self, inv: CommandInvocation) -> str:
        room_id = inv.arguments["room"]
        removed = await self._registry.remove(room_id)
        if not removed:
            return f"{room_id} is not a managed room."
        if RoomMode.BAN_TARGET in removed:
            await self._ban_sync.forget_room(room_id)
        return f"✅ {room_id} is no longer " + " or ".join(m.value for m in removed) + "."

    async def _cmd_room_list(self, inv: CommandInvocation) -> str:
        rooms = self._registry.entries()
        lines = ["**Managed rooms**"]
        lines.extend(f"{r.room_id}: {r.mode.value}" for r in rooms)
        lines.append(f"{len(self._lifecycle.entries())} welcome room(s) open")
        return "\n".join(lines)

    async def _cmd_welcome_list(self, inv: CommandInvocation) -> str:
        rooms = self._lifecycle.entries()
        if not rooms:
            return "No welcome rooms are open."
        now = now_utc()
        lines = [f"**Welcome rooms** ({len(rooms)})"]
        for r in rooms:
            remaining = 0.0
            if r.scheduled_leave_at is not None:
                remaining = max((r.scheduled_leave_at - now).total_seconds(), 0.0)
            lines.append(f"{r.room_id}: {r.member_id}, closes in {format_duration(remaining)}")
        return "\n".join(lines)

    async def _cmd_welcome_close(self, inv: CommandInvocation) -> str:
        room_id = inv.arguments["room"]
        if not await self._lifecycle.close_welcome_room(room_id):
            return f"{room_id} is not a welcome room."
        return f"✅ Closed welcome room {room_id}."

    async def _cmd_welcome_extend(self, inv: CommandInvocation) -> str:
        room_id = inv.arguments["room"]
        extra: int = inv.arguments["duration"]
        room = self._lifecycle.get(room_id)
        if room is None:
            return f"{room_id} is not a welcome room."
        remaining = 0.0
        if room.scheduled_leave_at is not None:
            remaining = max((room.scheduled_leave_at - now_utc()).total_seconds(), 0.0)
        room = await self._lifecycle.reschedule_leave(room_id, remaining + extra)
        if room is None:
            return f"{room_id} is not a welcome room."
        return f"✅ {room_id} now closes in {format_duration(remaining + extra)}."
