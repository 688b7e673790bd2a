from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from restore_engine.data_models import ManifestItem, normalize_hashes


class RestoreMode(Enum):
    """How far a restore may go in reconciling live state toward a manifest."""

    INCREMENTAL = "incremental"
    OVERWRITE = "overwrite"
    COMPLETE = "complete"

    @property
    def updates_existing(self) -> bool:
        """True when existing categories and torrents are brought in line with the manifest."""
        return self is not RestoreMode.INCREMENTAL

    @property
    def deletes_extra(self) -> bool:
        """True when objects absent from the manifest are removed."""
        return self is RestoreMode.COMPLETE


@dataclass(frozen=True, slots=True)
class RestoreRequest:
    """
    Immutable planning request.

    Attributes
    ----------
    run_id : str
        Backup run whose manifest is the restore target.
    mode : RestoreMode
        Reconciliation mode.
    exclude_hashes : frozenset[str]
        Torrent hashes to drop from the plan's torrent buckets. Normalized to
        lowercase so two requests naming the same hashes compare equal.
    """

    run_id: str
    mode: RestoreMode
    exclude_hashes: frozenset[str] = frozenset()

    @classmethod
    def create(cls, run_id: str, mode: RestoreMode, exclude_hashes: Any = None) -> "RestoreRequest":
        return cls(run_id=str(run_id).strip(), mode=mode, exclude_hashes=normalize_hashes(exclude_hashes))


@dataclass(frozen=True, slots=True)
class BehaviorFlags:
    """
    Client-behavior flags passed through to the adapter when adding torrents.

    Attributes
    ----------
    start_paused : bool
        Add torrents in the paused state.
    skip_hash_check : bool
        Ask the client to skip the integrity check on add.
    auto_resume_verified : bool
        Resume a paused torrent once the client reports its data as verified.
        Only meaningful together with ``skip_hash_check``.
    """

    start_paused: bool = True
    skip_hash_check: bool = False
    auto_resume_verified: bool = True

    def effective(self) -> "BehaviorFlags":
        """Return the flags actually applied: auto-resume is off unless the hash check is skipped."""
        if self.skip_hash_check or not self.auto_resume_verified:
            return self
        return replace(self, auto_resume_verified=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_paused": self.start_paused,
            "skip_hash_check": self.skip_hash_check,
            "auto_resume_verified": self.auto_resume_verified,
        }


@dataclass(frozen=True, slots=True)
class Change:
    """
    One field-level difference on an existing torrent.

    Attributes
    ----------
    field : str
        Registry field name (e.g. ``category``, ``infohash_v1``).
    current : Any
        Value reported by the live client.
    desired : Any
        Value recorded in the manifest. For set-valued fields this is the full
        desired set, sorted.
    supported : bool
        False when the field cannot be changed in place and needs manual action.
    message : str | None
        Manual-action description; only set for unsupported changes.
    """

    field: str
    current: Any
    desired: Any
    supported: bool
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "field": self.field,
            "current": _jsonable(self.current),
            "desired": _jsonable(self.desired),
            "supported": self.supported,
        }
        if self.message is not None:
            payload["message"] = self.message
        return payload


@dataclass(frozen=True, slots=True)
class CategoryCreate:
    name: str
    save_path: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "save_path": self.save_path}


@dataclass(frozen=True, slots=True)
class CategoryUpdate:
    name: str
    current_path: str
    desired_path: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "current_path": self.current_path, "desired_path": self.desired_path}


@dataclass(frozen=True, slots=True)
class TorrentAdd:
    manifest: ManifestItem

    @property
    def hash(self) -> str:
        return self.manifest.hash

    def to_dict(self) -> dict[str, Any]:
        return {"manifest": self.manifest.to_dict()}


@dataclass(frozen=True, slots=True)
class TorrentUpdate:
    """
    Planned in-place update of an existing torrent.

    ``current`` and ``desired`` hold the compared registry fields only.
    ``changes`` is never empty.
    """

    hash: str
    current: Mapping[str, Any]
    desired: Mapping[str, Any]
    changes: tuple[Change, ...]

    @property
    def supported_changes(self) -> tuple[Change, ...]:
        return tuple(c for c in self.changes if c.supported)

    @property
    def unsupported_changes(self) -> tuple[Change, ...]:
        return tuple(c for c in self.changes if not c.supported)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "current": {k: _jsonable(v) for k, v in self.current.items()},
            "desired": {k: _jsonable(v) for k, v in self.desired.items()},
            "changes": [c.to_dict() for c in self.changes],
        }


@dataclass(frozen=True, slots=True)
class CategoryPlan:
    create: tuple[CategoryCreate, ...] = ()
    update: tuple[CategoryUpdate, ...] = ()
    delete: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "create": [c.to_dict() for c in self.create],
            "update": [u.to_dict() for u in self.update],
            "delete": list(self.delete),
        }


@dataclass(frozen=True, slots=True)
class TagPlan:
    create: tuple[str, ...] = ()
    delete: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"create": [{"name": name} for name in self.create], "delete": list(self.delete)}


@dataclass(frozen=True, slots=True)
class TorrentPlan:
    add: tuple[TorrentAdd, ...] = ()
    update: tuple[TorrentUpdate, ...] = ()
    delete: tuple[str, ...] = ()

    def hashes(self) -> set[str]:
        return {a.hash for a in self.add} | {u.hash for u in self.update} | set(self.delete)

    def without(self, hashes: frozenset[str]) -> "TorrentPlan":
        """Return a copy with every entry keyed by one of ``hashes`` removed."""
        if not hashes:
            return self
        return TorrentPlan(
            add=tuple(a for a in self.add if a.hash not in hashes),
            update=tuple(u for u in self.update if u.hash not in hashes),
            delete=tuple(h for h in self.delete if h not in hashes),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "add": [a.to_dict() for a in self.add],
            "update": [u.to_dict() for u in self.update],
            "delete": list(self.delete),
        }


@dataclass(frozen=True, slots=True)
class RestorePlan:
    """
    Side-effect-free reconciliation set for one request.

    Attributes
    ----------
    run_id : str
        Backup run the plan restores.
    mode : RestoreMode
        Mode the plan was computed for.
    categories, tags, torrents : CategoryPlan, TagPlan, TorrentPlan
        Operation buckets, each sorted by name or hash.
    """

    run_id: str
    mode: RestoreMode
    categories: CategoryPlan = field(default_factory=CategoryPlan)
    tags: TagPlan = field(default_factory=TagPlan)
    torrents: TorrentPlan = field(default_factory=TorrentPlan)

    @property
    def has_actions(self) -> bool:
        return any(
            (
                self.categories.create,
                self.categories.update,
                self.categories.delete,
                self.tags.create,
                self.tags.delete,
                self.torrents.add,
                self.torrents.update,
                self.torrents.delete,
            )
        )

    def unsupported_changes(self) -> list[tuple[str, Change]]:
        """Return ``(hash, change)`` pairs that need manual follow-up."""
        return [(u.hash, c) for u in self.torrents.update for c in u.unsupported_changes]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable payload."""
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "categories": self.categories.to_dict(),
            "tags": self.tags.to_dict(),
            "torrents": self.torrents.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class RestoreErrorRecord:
    """One failed operation. ``operation`` is a stable id such as ``torrent.add``."""

    operation: str
    target: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"operation": self.operation, "target": self.target, "message": self.message}


@dataclass(frozen=True, slots=True)
class AppliedCategories:
    created: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AppliedTags:
    created: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AppliedTorrents:
    added: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AppliedOperations:
    """Targets applied (or, in a dry run, that would be applied), grouped by bucket."""

    categories: AppliedCategories = field(default_factory=AppliedCategories)
    tags: AppliedTags = field(default_factory=AppliedTags)
    torrents: AppliedTorrents = field(default_factory=AppliedTorrents)

    def counts(self) -> dict[str, int]:
        return {
            "categories.created": len(self.categories.created),
            "categories.updated": len(self.categories.updated),
            "categories.deleted": len(self.categories.deleted),
            "tags.created": len(self.tags.created),
            "tags.deleted": len(self.tags.deleted),
            "torrents.added": len(self.torrents.added),
            "torrents.updated": len(self.torrents.updated),
            "torrents.deleted": len(self.torrents.deleted),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "categories": {
                "created": list(self.categories.created),
                "updated": list(self.categories.updated),
                "deleted": list(self.categories.deleted),
            },
            "tags": {"created": list(self.tags.created), "deleted": list(self.tags.deleted)},
            "torrents": {
                "added": list(self.torrents.added),
                "updated": list(self.torrents.updated),
                "deleted": list(self.torrents.deleted),
            },
        }


@dataclass(frozen=True, slots=True)
class RestoreResult:
    """
    Outcome of one execute call. Never mutated after it is returned.

    Attributes
    ----------
    dry_run : bool
        True when no mutator was called.
    mode : RestoreMode
        Mode of the executed plan.
    plan : RestorePlan
        The plan that was walked.
    applied : AppliedOperations
        Targets applied per bucket.
    warnings : tuple[str, ...]
        Non-fatal anomalies and manual-action notices.
    errors : tuple[RestoreErrorRecord, ...]
        Per-operation failures, in execution order.
    cancelled : bool
        True when execution stopped early on a cancellation request.
    flags : BehaviorFlags
        Effective behavior flags used for torrent adds.
    started_at, finished_at : str
        UTC timestamps in ``YYYY-MM-DDTHH:MM:SSZ`` form.
    """

    dry_run: bool
    mode: RestoreMode
    plan: RestorePlan
    applied: AppliedOperations
    warnings: tuple[str, ...] = ()
    errors: tuple[RestoreErrorRecord, ...] = ()
    cancelled: bool = False
    flags: BehaviorFlags = field(default_factory=BehaviorFlags)
    started_at: str = ""
    finished_at: str = ""

    @property
    def succeeded(self) -> bool:
        return not self.errors and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable payload."""
        return {
            "dry_run": self.dry_run,
            "mode": self.mode.value,
            "plan": self.plan.to_dict(),
            "applied": self.applied.to_dict(),
            "warnings": list(self.warnings),
            "errors": [e.to_dict() for e in self.errors],
            "cancelled": self.cancelled,
            "flags": self.flags.to_dict(),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (tuple, list, set, frozenset)):
        return list(value)
    return value
