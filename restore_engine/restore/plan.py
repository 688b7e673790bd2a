from __future__ import annotations

import logging
from dataclasses import replace

from restore_engine.adapters.base import LiveClientAdapter, read_live_state
from restore_engine.data_models import BackupManifest, LiveState, normalize_hashes
from restore_engine.manifest_store import SnapshotStore

from .changes import CapabilityGate, StaticCapabilityGate
from .data_models import RestoreMode, RestorePlan, RestoreRequest
from .diff import compute_diff
from .errors import RestoreModeError

logger = logging.getLogger(__name__)


def parse_restore_mode(value: str | None) -> RestoreMode:
    """Parse a mode string; empty input means ``incremental``."""
    text = (value or "").strip().lower()
    if not text:
        return RestoreMode.INCREMENTAL
    try:
        return RestoreMode(text)
    except ValueError as exc:
        raise RestoreModeError(f"Invalid restore mode: {value!r}") from exc


def plan_from_state(
    manifest: BackupManifest,
    live: LiveState,
    mode: RestoreMode,
    *,
    gate: CapabilityGate,
    exclude_hashes: frozenset[str] = frozenset(),
) -> RestorePlan:
    """
    Build a plan from already-loaded manifest and live state.

    Pure: no I/O and no mutation calls.
    """
    diff = compute_diff(manifest, live, mode, gate=gate)
    plan = RestorePlan(
        run_id=manifest.run_id,
        mode=mode,
        categories=diff.categories,
        tags=diff.tags,
        torrents=diff.torrents,
    )
    return apply_exclusions(plan, exclude_hashes)


def apply_exclusions(plan: RestorePlan, exclude_hashes: frozenset[str] | set[str] | list[str]) -> RestorePlan:
    """
    Drop excluded torrent hashes from the plan's torrent buckets.

    Category and tag buckets are never filtered. Applying an empty exclusion
    set returns the plan unchanged.
    """
    hashes = normalize_hashes(exclude_hashes)
    if not hashes:
        return plan
    return replace(plan, torrents=plan.torrents.without(hashes))


def build_restore_plan(
    request: RestoreRequest,
    *,
    store: SnapshotStore,
    adapter: LiveClientAdapter,
    gate: CapabilityGate | None = None,
) -> RestorePlan:
    """
    Build a deterministic restore plan for a request.

    Parameters
    ----------
    request : RestoreRequest
        Run id, mode and excluded hashes.
    store : SnapshotStore
        Snapshot store used to load the manifest.
    adapter : LiveClientAdapter
        Live client adapter used to read current state. Only enumerations are called.
    gate : CapabilityGate | None
        Capability gate for torrent fields; defaults to :class:`StaticCapabilityGate`.

    Returns
    -------
    RestorePlan
        Plan with excluded hashes removed from the torrent buckets.

    Raises
    ------
    SnapshotNotFoundError
        If the run id has no manifest.
    LiveStateUnavailableError
        If the adapter cannot enumerate current state.
    """
    manifest = store.get_manifest(request.run_id)
    live = read_live_state(adapter)

    plan = plan_from_state(
        manifest,
        live,
        request.mode,
        gate=gate or StaticCapabilityGate(),
        exclude_hashes=request.exclude_hashes,
    )

    logger.info(
        "Restore plan for run %s (%s): categories +%d ~%d -%d, tags +%d -%d, torrents +%d ~%d -%d, "
        "excluded %d hash(es)",
        plan.run_id,
        plan.mode.value,
        len(plan.categories.create),
        len(plan.categories.update),
        len(plan.categories.delete),
        len(plan.tags.create),
        len(plan.tags.delete),
        len(plan.torrents.add),
        len(plan.torrents.update),
        len(plan.torrents.delete),
        len(request.exclude_hashes),
    )
    return plan
