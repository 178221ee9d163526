"""Configuration loading and validation tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from roomwarden.config import WardenConfig, load_config

from conftest import ADMIN_ID, make_config_dict


class TestDefaults:
    def test_minimal_config(self) -> None:
        config = WardenConfig()
        assert config.welcome.grace_period_seconds == 3600
        assert config.welcome.max_rejoin_attempts == 1
        assert config.ban_sync.reconcile_interval_seconds == 300
        assert config.ban_sync.backoff_base_seconds == 30
        assert config.ban_sync.backoff_max_seconds == 3600
        assert config.ban_sync.max_attempts == 5
        assert config.gateway.action_timeout_seconds == 15
        assert config.commands.prefix == "!"

    def test_sample_config(self, sample_config: WardenConfig) -> None:
        assert sample_config.get_principal(ADMIN_ID).level == 100
        assert sample_config.get_principal("@nobody:example.org") is None


class TestValidation:
    def test_bad_room_id(self) -> None:
        with pytest.raises(ValidationError):
            WardenConfig(**make_config_dict(rooms={"monitored": ["#lobby:example.org"]}))

    def test_bad_admin_id(self) -> None:
        with pytest.raises(ValidationError):
            WardenConfig(**make_config_dict(admins=[{"member_id": "alice", "level": 1}]))

    def test_duplicate_admins(self) -> None:
        admins = [{"member_id": ADMIN_ID, "level": 1}, {"member_id": ADMIN_ID, "level": 2}]
        with pytest.raises(ValidationError):
            WardenConfig(**make_config_dict(admins=admins))

    def test_blank_prefix(self) -> None:
        with pytest.raises(ValidationError):
            WardenConfig(**make_config_dict(commands={"prefix": ""}))

    def test_negative_grace(self) -> None:
        with pytest.raises(ValidationError):
            WardenConfig(**make_config_dict(welcome={"grace_period_seconds": -1}))

    def test_principal_is_immutable(self, sample_config: WardenConfig) -> None:
        with pytest.raises(ValidationError):
            sample_config.admins[0].level = 0


class TestLoadConfig:
    def test_load_yaml_with_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WARDEN_TOKEN", "tok123")
        data = make_config_dict()
        data["matrix"]["access_token"] = "${WARDEN_TOKEN}"
        data["database"] = {"path": "${WARDEN_DB:-fallback.db}"}
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")

        config = load_config(str(path))
        assert config.matrix.access_token == "tok123"
        assert config.database.path == "fallback.db"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_config(str(path))
