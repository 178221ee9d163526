"""Exception hierarchy for roomwarden.

Steady-state errors are caught at component boundaries and reported; only
configuration errors raised during startup end the process.
"""

from __future__ import annotations


class WardenError(Exception):
    """Base class for all roomwarden errors."""


class ParseError(WardenError):
    """Operator command text did not match the command tree."""

    def __init__(self, message: str, usage: str = "", required_level: int = 0) -> None:
        super().__init__(message)
        self.usage = usage
        self.required_level = required_level

    def __str__(self) -> str:
        base = super().__str__()
        if self.usage:
            return f"{base}\nUsage: {self.usage}"
        return base


class CommandPermissionError(WardenError):
    """Issuer's permission level is below what the action requires."""

    def __init__(self, member_id: str, required: int, actual: int) -> None:
        super().__init__(
            f"{member_id} has level {actual}, {required} required"
        )
        self.member_id = member_id
        self.required = required
        self.actual = actual


class ProtocolError(WardenError):
    """A gateway action failed."""

    def __init__(self, action: str, room_id: str, detail: str = "") -> None:
        message = f"{action} in {room_id} failed"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.action = action
        self.room_id = room_id
        self.detail = detail


class TransientProtocolError(ProtocolError):
    """Network or remote hiccup; worth retrying later."""


class PermanentProtocolError(ProtocolError):
    """Room gone or bot lacks power; retrying will not help."""
