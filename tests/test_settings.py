from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from restore_engine.errors import SettingsError
from restore_engine.restore.changes import DEFAULT_MUTABLE_FIELDS
from restore_engine.restore.data_models import BehaviorFlags
from restore_engine.settings import (
    DATA_ROOT_ENV,
    ClientSettings,
    default_data_root,
    load_settings,
    resolve_data_root,
)


def _write_settings(root: Path, payload: Any) -> None:
    root.mkdir(parents=True, exist_ok=True)
    text = payload if isinstance(payload, str) else json.dumps(payload)
    (root / "settings.json").write_text(text, encoding="utf-8")


def test_default_data_root_prefers_env_override(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv(DATA_ROOT_ENV, str(tmp_path / "override"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))

    assert default_data_root() == tmp_path / "override"


def test_default_data_root_falls_back_to_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv(DATA_ROOT_ENV, raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))

    assert default_data_root() == tmp_path / "xdg" / "qbrestore"


def test_default_data_root_falls_back_to_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv(DATA_ROOT_ENV, raising=False)
    monkeypatch.delenv("XDG_DATA_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))

    assert default_data_root() == tmp_path / ".local" / "share" / "qbrestore"


def test_explicit_data_root_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv(DATA_ROOT_ENV, str(tmp_path / "override"))

    assert resolve_data_root(tmp_path / "explicit") == tmp_path / "explicit"
    assert resolve_data_root("  ") == tmp_path / "override"


def test_missing_settings_file_gives_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path)

    assert settings.data_root == tmp_path
    assert settings.instance_id == "default"
    assert settings.client == ClientSettings()
    assert settings.restore.mutable_fields == DEFAULT_MUTABLE_FIELDS
    assert settings.restore.operation_timeout_seconds == 60.0
    assert settings.restore.flags == BehaviorFlags()
    assert settings.restore.journal is True


def test_settings_file_is_parsed(tmp_path: Path) -> None:
    _write_settings(
        tmp_path,
        {
            "instance_id": "seedbox",
            "client": {"host": "qb.lan", "port": 9090, "username": "admin", "password": "s3cret", "verify_cert": False},
            "restore": {
                "mutable_fields": ["name", "category", "tags", "save_path"],
                "operation_timeout_seconds": 5,
                "start_paused": False,
                "skip_hash_check": True,
                "journal": False,
            },
        },
    )

    settings = load_settings(tmp_path)

    assert settings.instance_id == "seedbox"
    assert settings.client.host == "qb.lan"
    assert settings.client.port == 9090
    assert settings.client.password == "s3cret"
    assert settings.client.verify_cert is False
    assert settings.client.request_timeout_seconds == 30.0
    assert "save_path" in settings.restore.mutable_fields
    assert settings.restore.operation_timeout_seconds == 5.0
    assert settings.restore.flags == BehaviorFlags(start_paused=False, skip_hash_check=True, auto_resume_verified=True)
    assert settings.restore.journal is False
    assert "password" not in settings.to_dict()["client"]


def test_null_operation_timeout_disables_it(tmp_path: Path) -> None:
    _write_settings(tmp_path, {"restore": {"operation_timeout_seconds": None}})

    assert load_settings(tmp_path).restore.operation_timeout_seconds is None


@pytest.mark.parametrize(
    "payload",
    [
        "{broken",
        [],
        {"client": []},
        {"client": {"port": "8080"}},
        {"client": {"port": True}},
        {"client": {"verify_cert": "yes"}},
        {"client": {"request_timeout_seconds": 0}},
        {"restore": {"mutable_fields": "name"}},
        {"restore": {"mutable_fields": ["name", "colour"]}},
        {"restore": {"operation_timeout_seconds": -1}},
        {"instance_id": 3},
    ],
)
def test_malformed_settings_raise(tmp_path: Path, payload: Any) -> None:
    _write_settings(tmp_path, payload)

    with pytest.raises(SettingsError):
        load_settings(tmp_path)
