"""
Per-instance execution locking.

At most one restore may execute against a managed instance at a time, so two
reconciliations never race on the same category/tag namespace. Planning does
not take these locks.

Two layers are provided:

- :class:`InstanceLockRegistry` - in-process, one non-blocking ``threading.Lock``
  per instance id.
- :func:`acquire_instance_lock_file` - cross-process lock file written with
  exclusive create. A lock is treated as stale only when we can prove the
  recorded PID is not running on this host.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

from restore_engine.errors import RestoreEngineError
from restore_engine.restore.errors import InstanceBusyError

logger = logging.getLogger(__name__)


class InstanceLockError(RestoreEngineError):
    """
    Raised when a lock file cannot be acquired, broken, or released.

    Messages are user-facing and say how to proceed (e.g. ``--break-lock``).
    """


class InstanceLockRegistry:
    """In-process registry of per-instance locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, instance_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[instance_id] = lock
            return lock

    def is_held(self, instance_id: str) -> bool:
        return self._lock_for(str(instance_id)).locked()

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[None]:
        """
        Hold the lock for ``instance_id`` for the duration of the block.

        Raises
        ------
        InstanceBusyError
            If another execution already holds it.
        """
        lock = self._lock_for(str(instance_id))
        if not lock.acquire(blocking=False):
            raise InstanceBusyError(f"A restore is already running for instance {instance_id!r}")
        try:
            yield
        finally:
            lock.release()


@dataclass(frozen=True, slots=True)
class InstanceLockInfo:
    """
    Metadata recorded in a lock file.

    Attributes
    ----------
    schema_version : str
        Schema identifier for the lock JSON.
    instance_id : str
        Managed instance the lock applies to.
    created_at_utc : str
        Acquisition time, ISO 8601 with ``Z``.
    hostname : str
        Host that created the lock.
    pid : int
        Process that created the lock.
    run_id : str | None
        Backup run being restored.
    """

    schema_version: str
    instance_id: str
    created_at_utc: str
    hostname: str
    pid: int
    run_id: str | None = None


def build_instance_lock_path(*, lock_root: Path, instance_id: str) -> Path:
    """Return ``<lock_root>/instance-<id>.lock``."""
    safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in str(instance_id))
    return lock_root / f"instance-{safe}.lock"


@contextmanager
def acquire_instance_lock_file(
    *,
    lock_path: Path,
    instance_id: str,
    run_id: str | None,
    force: bool = False,
    break_lock: bool = False,
) -> Iterator[None]:
    """
    Hold a cross-process lock file for one instance.

    Parameters
    ----------
    lock_path : Path
        Lock file to create.
    instance_id : str
        Instance id recorded in the lock.
    run_id : str | None
        Backup run recorded in the lock, for inspection.
    force : bool
        Break the lock only when it is provably stale (same host, dead PID).
    break_lock : bool
        Break an existing lock even when it is not provably stale.

    Raises
    ------
    InstanceLockError
        If the lock is held and cannot be broken under the given flags, or
        cannot be written or released.
    """
    lock_path = lock_path.expanduser()
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    info = _build_lock_info(instance_id=instance_id, run_id=run_id)

    try:
        _write_lock_exclusive(lock_path, info)
    except FileExistsError:
        existing = _try_read_lock(lock_path)
        allow, message = _evaluate_existing_lock(existing=existing, force=force, break_lock=break_lock)
        if not allow:
            raise InstanceLockError(message)
        logger.warning("%s (%s)", message, lock_path)
        try:
            lock_path.unlink(missing_ok=True)
        except OSError as exc:
            raise InstanceLockError(f"Failed to remove existing lock: {lock_path} ({exc})") from exc
        try:
            _write_lock_exclusive(lock_path, info)
        except FileExistsError:
            raise InstanceLockError(f"Lock is held by another process: {lock_path}")

    try:
        yield
    finally:
        _release_lock(lock_path, info)


def _build_lock_info(*, instance_id: str, run_id: str | None) -> InstanceLockInfo:
    created = datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return InstanceLockInfo(
        schema_version="qbrestore_instance_lock_v1",
        instance_id=str(instance_id),
        created_at_utc=created,
        hostname=platform.node(),
        pid=os.getpid(),
        run_id=run_id,
    )


def _write_lock_exclusive(lock_path: Path, info: InstanceLockInfo) -> None:
    payload = json.dumps(asdict(info), sort_keys=True) + "\n"
    with lock_path.open("x", encoding="utf-8", newline="\n") as f:
        f.write(payload)


def _release_lock(lock_path: Path, info: InstanceLockInfo) -> None:
    # Only remove the file if it still names this process; unreadable content is removed too.
    try:
        existing = _try_read_lock(lock_path)
        if existing is not None:
            same_owner = (
                str(existing.get("pid")) == str(info.pid)
                and str(existing.get("hostname", "")).lower() == info.hostname.lower()
            )
            if not same_owner:
                return
        lock_path.unlink(missing_ok=True)
    except OSError as exc:
        raise InstanceLockError(f"Failed to release lock: {lock_path} ({exc})") from exc


def _try_read_lock(lock_path: Path) -> Mapping[str, object] | None:
    try:
        data = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _evaluate_existing_lock(
    *,
    existing: Mapping[str, object] | None,
    force: bool,
    break_lock: bool,
) -> tuple[bool, str]:
    details = _format_lock_details(existing)
    if existing is None:
        if break_lock:
            return True, "Breaking lock with unreadable metadata."
        return False, (
            "Lock exists but could not be read. Inspect the lock file and re-run with --break-lock if necessary.\n"
            + details
        )

    if _is_provably_stale(existing):
        if force:
            return True, "Breaking provably stale lock due to --force."
        return False, "Lock appears to be stale. Re-run with --force to break it.\n" + details

    if break_lock:
        return True, "Breaking lock due to --break-lock."
    return False, "Lock is held and is not provably stale. Re-run with --break-lock to override.\n" + details


def _format_lock_details(existing: Mapping[str, object] | None) -> str:
    if not existing:
        return ""
    keys = ["instance_id", "created_at_utc", "hostname", "pid", "run_id"]
    parts = [f"{key}={existing.get(key)!r}" for key in keys if key in existing]
    return "Lock details: " + ", ".join(parts) if parts else ""


def _is_provably_stale(existing: Mapping[str, object]) -> bool:
    host = existing.get("hostname")
    pid = existing.get("pid")
    if not isinstance(host, str) or not isinstance(pid, int):
        return False
    if host.lower() != platform.node().lower():
        return False
    return is_pid_running(pid) is False


def is_pid_running(pid: int) -> bool | None:
    """
    Determine whether a process is running on this host.

    Returns
    -------
    bool | None
        True if running, False if not, None when it cannot be determined
        (unsupported platform or permission denied).
    """
    if os.name == "nt" or pid <= 0:
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return None
    return True
