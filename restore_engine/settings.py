"""
Engine settings and data-root resolution.

The data root holds stored backup runs, restore artifacts and the optional
``settings.json`` file. Resolution order:

1) Explicit argument (CLI ``--data-root``)
2) ``QBRESTORE_DATA_ROOT``
3) ``$XDG_DATA_HOME/qbrestore``
4) ``~/.local/share/qbrestore``

A missing settings file means defaults. A present but malformed one raises
:class:`SettingsError`.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import SettingsError
from .restore.changes import DEFAULT_MUTABLE_FIELDS, TORRENT_FIELDS
from .restore.data_models import BehaviorFlags

DATA_ROOT_ENV = "QBRESTORE_DATA_ROOT"
SETTINGS_FILENAME = "settings.json"

_KNOWN_FIELDS = frozenset(descriptor.name for descriptor in TORRENT_FIELDS)


def default_data_root() -> Path:
    """Return the data root used when none is configured explicitly."""
    configured = os.environ.get(DATA_ROOT_ENV)
    if configured:
        return Path(configured).expanduser()
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg).expanduser() / "qbrestore"
    return Path.home() / ".local" / "share" / "qbrestore"


def resolve_data_root(data_root: Path | str | None = None) -> Path:
    if data_root is None or str(data_root).strip() == "":
        return default_data_root()
    return Path(data_root).expanduser()


@dataclass(frozen=True, slots=True)
class ClientSettings:
    """Connection settings for the managed qBittorrent instance."""

    host: str = "localhost"
    port: int = 8080
    username: str = ""
    password: str = ""
    verify_cert: bool = True
    request_timeout_seconds: float = 30.0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ClientSettings":
        defaults = cls()
        return cls(
            host=_str(payload, "host", defaults.host, context="client"),
            port=_int(payload, "port", defaults.port, context="client"),
            username=_str(payload, "username", defaults.username, context="client"),
            password=_str(payload, "password", defaults.password, context="client"),
            verify_cert=_bool(payload, "verify_cert", defaults.verify_cert, context="client"),
            request_timeout_seconds=_positive_float(
                payload, "request_timeout_seconds", defaults.request_timeout_seconds, context="client"
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        # Password omitted.
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "verify_cert": self.verify_cert,
            "request_timeout_seconds": self.request_timeout_seconds,
        }


@dataclass(frozen=True, slots=True)
class RestoreSettings:
    """
    Defaults applied to restore executions.

    Attributes
    ----------
    mutable_fields : frozenset[str]
        Torrent fields the capability gate reports as changeable in place.
    operation_timeout_seconds : float | None
        Per-adapter-call timeout. None waits indefinitely.
    flags : BehaviorFlags
        Default behavior flags for torrent adds.
    journal : bool
        Write plan/result/journal artifacts under ``<data_root>/restores``.
    """

    mutable_fields: frozenset[str] = DEFAULT_MUTABLE_FIELDS
    operation_timeout_seconds: float | None = 60.0
    flags: BehaviorFlags = field(default_factory=BehaviorFlags)
    journal: bool = True

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RestoreSettings":
        defaults = cls()

        raw_fields = payload.get("mutable_fields", sorted(defaults.mutable_fields))
        if not isinstance(raw_fields, list) or not all(isinstance(f, str) for f in raw_fields):
            raise SettingsError("restore.mutable_fields must be a list of field names.")
        unknown = sorted(set(raw_fields) - _KNOWN_FIELDS)
        if unknown:
            raise SettingsError(f"restore.mutable_fields has unknown field(s): {', '.join(unknown)}")

        timeout: float | None
        if payload.get("operation_timeout_seconds", 0) is None:
            timeout = None
        else:
            timeout = _positive_float(
                payload, "operation_timeout_seconds", defaults.operation_timeout_seconds, context="restore"
            )

        flags = BehaviorFlags(
            start_paused=_bool(payload, "start_paused", defaults.flags.start_paused, context="restore"),
            skip_hash_check=_bool(payload, "skip_hash_check", defaults.flags.skip_hash_check, context="restore"),
            auto_resume_verified=_bool(
                payload, "auto_resume_verified", defaults.flags.auto_resume_verified, context="restore"
            ),
        )
        return cls(
            mutable_fields=frozenset(raw_fields),
            operation_timeout_seconds=timeout,
            flags=flags,
            journal=_bool(payload, "journal", defaults.journal, context="restore"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "mutable_fields": sorted(self.mutable_fields),
            "operation_timeout_seconds": self.operation_timeout_seconds,
            **self.flags.to_dict(),
            "journal": self.journal,
        }


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Settings loaded for one data root."""

    data_root: Path
    instance_id: str = "default"
    client: ClientSettings = field(default_factory=ClientSettings)
    restore: RestoreSettings = field(default_factory=RestoreSettings)

    @property
    def settings_path(self) -> Path:
        return self.data_root / SETTINGS_FILENAME

    def with_data_root(self, data_root: Path) -> "EngineSettings":
        return replace(self, data_root=data_root)

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_root": str(self.data_root),
            "instance_id": self.instance_id,
            "client": self.client.to_dict(),
            "restore": self.restore.to_dict(),
        }


def load_settings(data_root: Path | str | None = None) -> EngineSettings:
    """
    Load settings for a data root.

    Parameters
    ----------
    data_root : Path | str | None
        Explicit data root. If None, see :func:`default_data_root`.

    Returns
    -------
    EngineSettings
        Loaded settings, or defaults when ``settings.json`` does not exist.

    Raises
    ------
    SettingsError
        If the file exists but cannot be read, is not valid JSON, or holds
        values of the wrong type.
    """
    root = resolve_data_root(data_root)
    path = root / SETTINGS_FILENAME
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return EngineSettings(data_root=root)
    except OSError as exc:
        raise SettingsError(f"Failed to read settings: {path} ({exc})") from exc

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Invalid JSON in settings: {path} ({exc.msg})") from exc
    if not isinstance(payload, dict):
        raise SettingsError(f"Settings must be a JSON object: {path}")

    return EngineSettings(
        data_root=root,
        instance_id=_str(payload, "instance_id", "default", context="settings") or "default",
        client=ClientSettings.from_dict(_section(payload, "client")),
        restore=RestoreSettings.from_dict(_section(payload, "restore")),
    )


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise SettingsError(f"Settings section {key!r} must be an object.")
    return value


def _str(payload: Mapping[str, Any], key: str, default: str, *, context: str) -> str:
    value = payload.get(key, default)
    if not isinstance(value, str):
        raise SettingsError(f"{context}.{key} must be a string.")
    return value


def _bool(payload: Mapping[str, Any], key: str, default: bool, *, context: str) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise SettingsError(f"{context}.{key} must be true or false.")
    return value


def _int(payload: Mapping[str, Any], key: str, default: int, *, context: str) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise SettingsError(f"{context}.{key} must be an integer.")
    return value


def _positive_float(payload: Mapping[str, Any], key: str, default: float | None, *, context: str) -> float:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise SettingsError(f"{context}.{key} must be a positive number.")
    return float(value)
