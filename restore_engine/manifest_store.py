"""
Snapshot store: manifest I/O and run discovery.

Manifests are immutable once written by the backup service. This module reads
them for planning, resolves where each captured ``.torrent`` lives, and
provides the atomic JSON writer used for restore artifacts.

Layout
------
``<data_root>/backups/runs/<run_id>/manifest.json``

Captured ``.torrent`` files are plain files referenced either by the item's
``torrentBlob`` (relative to the data root) or its ``archivePath`` (relative to
the run directory). Archive compression is not handled here.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol

from .data_models import BackupManifest, ManifestItem
from .errors import ManifestIOError, ManifestValidationError, SnapshotNotFoundError

logger = logging.getLogger(__name__)

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
MANIFEST_FILENAME = "manifest.json"


class SnapshotStore(Protocol):
    """Contract for retrieving immutable manifests by backup run id."""

    def get_manifest(self, run_id: str) -> BackupManifest:
        """
        Return the manifest for ``run_id``.

        Raises
        ------
        SnapshotNotFoundError
            If the run has no manifest.
        """
        ...


@dataclass(frozen=True, slots=True)
class JsonWriteOptions:
    """Options controlling JSON artifact serialization."""

    pretty: bool = True
    indent: int = 2
    sort_keys: bool = True
    ensure_ascii: bool = False


@dataclass(frozen=True, slots=True)
class RunSummary:
    """Lightweight listing entry for a stored backup run."""

    run_id: str
    generated_at: str
    kind: str
    torrent_count: int
    manifest_path: Path

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "generated_at": self.generated_at,
            "kind": self.kind,
            "torrent_count": self.torrent_count,
            "manifest_path": str(self.manifest_path),
        }


class JsonManifestStore:
    """
    Snapshot store backed by run directories under a data root.

    Parameters
    ----------
    data_root : Path
        Root directory holding ``backups/runs/<run_id>/manifest.json``.
    """

    def __init__(self, data_root: Path) -> None:
        self._data_root = data_root.expanduser()

    @property
    def data_root(self) -> Path:
        return self._data_root

    @property
    def runs_root(self) -> Path:
        return self._data_root / "backups" / "runs"

    def run_dir(self, run_id: str) -> Path:
        """Return the directory for ``run_id`` after validating it is a plain path segment."""
        run_id = str(run_id).strip()
        if not _RUN_ID_RE.match(run_id):
            raise SnapshotNotFoundError(f"Invalid backup run id: {run_id!r}")
        return self.runs_root / run_id

    def get_manifest(self, run_id: str) -> BackupManifest:
        """
        Load and validate the manifest for a run.

        Parameters
        ----------
        run_id : str
            Backup run identifier.

        Returns
        -------
        BackupManifest
            Manifest with every item's ``torrent_blob`` resolved to an absolute
            path when a captured ``.torrent`` file exists on disk.

        Raises
        ------
        SnapshotNotFoundError
            If the run directory or manifest file does not exist.
        ManifestIOError
            If the manifest exists but cannot be read or parsed.
        ManifestValidationError
            If the manifest violates invariants.
        """
        run_dir = self.run_dir(run_id)
        manifest_path = run_dir / MANIFEST_FILENAME
        if not manifest_path.is_file():
            raise SnapshotNotFoundError(f"No manifest for backup run {run_id!r}: {manifest_path}")

        payload = read_json(manifest_path)
        try:
            manifest = BackupManifest.from_dict(payload, run_id=str(run_id).strip())
        except (ValueError, TypeError) as exc:
            raise ManifestValidationError(f"Manifest validation failed: {manifest_path} ({exc})") from exc

        items = tuple(self._resolve_blob(run_dir, item) for item in manifest.items)
        logger.debug("Loaded manifest for run %s with %d item(s)", run_id, len(items))
        return dataclasses.replace(manifest, items=items)

    def list_runs(self) -> list[RunSummary]:
        """
        Return summaries of stored runs, newest first.

        Unreadable manifests are skipped with a warning so one corrupt run does
        not hide the others.
        """
        summaries: list[RunSummary] = []
        for manifest_path in iter_manifest_paths(self.runs_root):
            try:
                payload = read_json(manifest_path)
            except ManifestIOError as exc:
                logger.warning("Skipping unreadable manifest %s: %s", manifest_path, exc)
                continue
            items = payload.get("items")
            summaries.append(
                RunSummary(
                    run_id=manifest_path.parent.name,
                    generated_at=str(payload.get("generatedAt", "")),
                    kind=str(payload.get("kind", "") or ""),
                    torrent_count=len(items) if isinstance(items, list) else 0,
                    manifest_path=manifest_path,
                )
            )
        summaries.sort(key=lambda s: (s.generated_at, s.run_id), reverse=True)
        return summaries

    def _resolve_blob(self, run_dir: Path, item: ManifestItem) -> ManifestItem:
        candidates: list[Path] = []
        if item.torrent_blob:
            blob = Path(item.torrent_blob)
            if blob.is_absolute():
                candidates.append(blob)
            else:
                candidates.append(self._data_root / blob)
                candidates.append(self._data_root / "backups" / blob)
        if item.archive_path:
            candidates.append(run_dir / item.archive_path)

        for candidate in candidates:
            if candidate.is_file():
                return dataclasses.replace(item, torrent_blob=str(candidate))
        return dataclasses.replace(item, torrent_blob=None)


def read_json(json_path: Path) -> Mapping[str, Any]:
    """
    Read a JSON object from disk.

    Raises
    ------
    ManifestIOError
        If the file cannot be read, is not valid JSON, or is not an object.
    """
    try:
        payload = json.loads(json_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ManifestIOError(f"Failed to read JSON: {json_path}") from exc
    except json.JSONDecodeError as exc:
        raise ManifestIOError(f"Invalid JSON: {json_path}") from exc
    if not isinstance(payload, dict):
        raise ManifestIOError(f"Expected a JSON object: {json_path}")
    return payload


def write_json_atomic(
    json_path: Path,
    payload: Mapping[str, Any],
    *,
    options: JsonWriteOptions | None = None,
) -> None:
    """
    Write JSON atomically (temp file + replace).

    Raises
    ------
    ManifestIOError
        If the file cannot be written.
    """
    opts = options or JsonWriteOptions()
    json_path = json_path.expanduser()
    json_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = json_path.with_suffix(json_path.suffix + ".tmp")

    try:
        with temp_path.open("w", encoding="utf-8", newline="\n") as handle:
            if opts.pretty:
                json.dump(
                    payload,
                    handle,
                    indent=opts.indent,
                    sort_keys=opts.sort_keys,
                    ensure_ascii=opts.ensure_ascii,
                )
                handle.write("\n")
            else:
                json.dump(
                    payload,
                    handle,
                    separators=(",", ":"),
                    sort_keys=opts.sort_keys,
                    ensure_ascii=opts.ensure_ascii,
                )
        os.replace(temp_path, json_path)
    except OSError as exc:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise ManifestIOError(f"Failed to write JSON: {json_path} ({exc!s})") from exc


def write_manifest_atomic(store: JsonManifestStore, manifest: BackupManifest) -> Path:
    """Write ``manifest`` into its run directory and return the manifest path."""
    manifest_path = store.run_dir(manifest.run_id) / MANIFEST_FILENAME
    write_json_atomic(manifest_path, manifest.to_dict())
    return manifest_path


def iter_manifest_paths(runs_root: Path) -> Iterator[Path]:
    """Yield ``manifest.json`` paths of run directories directly under ``runs_root``."""
    if not runs_root.is_dir():
        return
    for run_dir in sorted(runs_root.iterdir()):
        manifest_path = run_dir / MANIFEST_FILENAME
        if run_dir.is_dir() and manifest_path.is_file():
            yield manifest_path
