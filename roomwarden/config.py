"""Configuration system for roomwarden.

All Pydantic models are defined here with sensible defaults. The loaded
config is an immutable snapshot: components read it, nothing writes it back.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


def _check_room_id(value: str) -> str:
    if not value.startswith("!") or ":" not in value:
        raise ValueError(f"not a room id: {value!r}")
    return value


def _check_member_id(value: str) -> str:
    if not value.startswith("@") or ":" not in value:
        raise ValueError(f"not a member id: {value!r}")
    return value


# ═══════════════════════════════════════════════════════════════
#  Transport
# ═══════════════════════════════════════════════════════════════

class MatrixConfig(BaseModel):
    homeserver: str = "https://matrix.org"
    user_id: str = "@roomwarden:matrix.org"
    access_token: str = ""
    device_id: str = "ROOMWARDEN"
    sync_timeout_ms: int = 30000

    @field_validator("user_id")
    @classmethod
    def _valid_user_id(cls, v: str) -> str:
        return _check_member_id(v)


class GatewayConfig(BaseModel):
    action_timeout_seconds: float = Field(default=15.0, gt=0)


class DatabaseConfig(BaseModel):
    path: str = "roomwarden.db"


# ═══════════════════════════════════════════════════════════════
#  Rooms & Welcome
# ═══════════════════════════════════════════════════════════════

class RoomsConfig(BaseModel):
    monitored: list[str] = Field(default_factory=list)
    ban_targets: list[str] = Field(default_factory=list)

    @field_validator("monitored", "ban_targets")
    @classmethod
    def _valid_rooms(cls, v: list[str]) -> list[str]:
        return [_check_room_id(r) for r in v]


class WelcomeConfig(BaseModel):
    enabled: bool = True
    grace_period_seconds: int = Field(default=3600, ge=0)
    max_rejoin_attempts: int = Field(default=1, ge=0)
    room_name: str = "Welcome, {member_name}"
    room_topic: str = "A private room to help you get started."
    message: str = (
        "Hello {member_pill}, welcome!\n"
        "This private room is just for you. Ask anything here, "
        "it will close on its own in **{grace}**."
    )


# ═══════════════════════════════════════════════════════════════
#  Ban Sync
# ═══════════════════════════════════════════════════════════════

class BanSyncConfig(BaseModel):
    ban_level: int = 50
    default_reason: str = "banned"
    reconcile_interval_seconds: float = Field(default=300.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=30.0, ge=0)
    backoff_max_seconds: float = Field(default=3600.0, ge=0)
    max_concurrency: int = Field(default=4, ge=1)


# ═══════════════════════════════════════════════════════════════
#  Commands & Admins
# ═══════════════════════════════════════════════════════════════

class CommandLevelsConfig(BaseModel):
    info: int = 0
    ban: int = 50
    welcome: int = 50
    room: int = 100


class CommandsConfig(BaseModel):
    prefix: str = "!"
    admin_rooms: list[str] = Field(default_factory=list)
    rate_limit_per_minute: int = 10
    levels: CommandLevelsConfig = Field(default_factory=CommandLevelsConfig)

    @field_validator("admin_rooms")
    @classmethod
    def _valid_rooms(cls, v: list[str]) -> list[str]:
        return [_check_room_id(r) for r in v]

    @field_validator("prefix")
    @classmethod
    def _nonempty_prefix(cls, v: str) -> str:
        if not v or v.strip() != v:
            raise ValueError("command prefix must be non-empty without whitespace")
        return v


class AdminPrincipal(BaseModel):
    """An operator allowed to issue commands."""

    member_id: str
    level: int = 0

    model_config = {"frozen": True}

    @field_validator("member_id")
    @classmethod
    def _valid_member(cls, v: str) -> str:
        return _check_member_id(v)


# ═══════════════════════════════════════════════════════════════
#  Alerts & Metrics
# ═══════════════════════════════════════════════════════════════

class AlertTemplatesConfig(BaseModel):
    propagation_failed: str = (
        "⚠️ Could not {action} {subject} in {room} after {attempts} attempt(s): {error}"
    )
    welcome_failed: str = "⚠️ Welcome for {member} (joined {room}) failed: {error}"
    rejoin_failed: str = "⚠️ Lost welcome room {room} for {member}: {error}"


class AlertsConfig(BaseModel):
    room: str | None = None
    dedup_window_seconds: float = 300.0
    max_per_minute: int = 10
    templates: AlertTemplatesConfig = Field(default_factory=AlertTemplatesConfig)

    @field_validator("room")
    @classmethod
    def _valid_room(cls, v: str | None) -> str | None:
        return _check_room_id(v) if v else None


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 28290


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class WardenConfig(BaseModel):
    """Full service configuration."""

    matrix: MatrixConfig = Field(default_factory=MatrixConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    rooms: RoomsConfig = Field(default_factory=RoomsConfig)
    welcome: WelcomeConfig = Field(default_factory=WelcomeConfig)
    ban_sync: BanSyncConfig = Field(default_factory=BanSyncConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    admins: list[AdminPrincipal] = Field(default_factory=list)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @model_validator(mode="after")
    def _unique_admins(self) -> WardenConfig:
        seen: set[str] = set()
        for admin in self.admins:
            if admin.member_id in seen:
                raise ValueError(f"duplicate admin entry: {admin.member_id}")
            seen.add(admin.member_id)
        return self

    def get_principal(self, member_id: str) -> AdminPrincipal | None:
        for admin in self.admins:
            if admin.member_id == member_id:
                return admin
        return None


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> WardenConfig:
    """Load and validate YAML config file into WardenConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return WardenConfig(**raw)
