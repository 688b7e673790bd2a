"""
Diff engine: pure comparison of a manifest against live client state.

Nothing here performs I/O. For identical inputs the output is identical,
including bucket order (categories and tags by name, torrents by hash).
"""

from __future__ import annotations

from dataclasses import dataclass

from restore_engine.data_models import BackupManifest, LiveState

from .changes import TORRENT_FIELDS, CapabilityGate, FieldDescriptor, classify_changes, extract_fields
from .data_models import (
    CategoryCreate,
    CategoryPlan,
    CategoryUpdate,
    RestoreMode,
    TagPlan,
    TorrentAdd,
    TorrentPlan,
    TorrentUpdate,
)


@dataclass(frozen=True, slots=True)
class RestoreDiff:
    """Category, tag and torrent differences for one mode."""

    categories: CategoryPlan
    tags: TagPlan
    torrents: TorrentPlan


def diff_categories(manifest: BackupManifest, live: LiveState, mode: RestoreMode) -> CategoryPlan:
    create: list[CategoryCreate] = []
    update: list[CategoryUpdate] = []

    for name in sorted(manifest.categories):
        desired_path = manifest.categories[name].save_path
        current = live.categories.get(name)
        if current is None:
            create.append(CategoryCreate(name=name, save_path=desired_path))
        elif mode.updates_existing and current.save_path != desired_path:
            update.append(CategoryUpdate(name=name, current_path=current.save_path, desired_path=desired_path))

    delete: list[str] = []
    if mode.deletes_extra:
        delete = sorted(name for name in live.categories if name not in manifest.categories)

    return CategoryPlan(create=tuple(create), update=tuple(update), delete=tuple(delete))


def diff_tags(manifest: BackupManifest, live: LiveState, mode: RestoreMode) -> TagPlan:
    # Tags referenced by captured torrents must exist before those torrents are added.
    wanted = set(manifest.tags)
    for item in manifest.items:
        wanted.update(item.tags)

    create = sorted(wanted - live.tags)
    delete = sorted(live.tags - wanted) if mode.deletes_extra else []
    return TagPlan(create=tuple(create), delete=tuple(delete))


def diff_torrents(
    manifest: BackupManifest,
    live: LiveState,
    mode: RestoreMode,
    *,
    gate: CapabilityGate,
    fields: tuple[FieldDescriptor, ...] = TORRENT_FIELDS,
) -> TorrentPlan:
    desired = manifest.items_by_hash()

    add: list[TorrentAdd] = []
    update: list[TorrentUpdate] = []
    for torrent_hash in sorted(desired):
        item = desired[torrent_hash]
        current = live.torrents.get(torrent_hash)
        if current is None:
            add.append(TorrentAdd(manifest=item))
            continue
        if not mode.updates_existing:
            continue

        changes = classify_changes(current, item, gate=gate, fields=fields)
        if not changes:
            continue
        update.append(
            TorrentUpdate(
                hash=torrent_hash,
                current=extract_fields(current, fields=fields),
                desired=extract_fields(item, fields=fields),
                changes=changes,
            )
        )

    delete: list[str] = []
    if mode.deletes_extra:
        delete = sorted(h for h in live.torrents if h not in desired)

    return TorrentPlan(add=tuple(add), update=tuple(update), delete=tuple(delete))


def compute_diff(
    manifest: BackupManifest,
    live: LiveState,
    mode: RestoreMode,
    *,
    gate: CapabilityGate,
) -> RestoreDiff:
    """
    Compute the reconciliation buckets for ``mode``.

    Parameters
    ----------
    manifest : BackupManifest
        Restore target.
    live : LiveState
        Current client state.
    mode : RestoreMode
        ``incremental`` only creates/adds, ``overwrite`` also updates, ``complete``
        also deletes objects absent from the manifest.
    gate : CapabilityGate
        Capability gate used to classify torrent field changes.

    Returns
    -------
    RestoreDiff
        Deterministically ordered buckets.
    """
    return RestoreDiff(
        categories=diff_categories(manifest, live, mode),
        tags=diff_tags(manifest, live, mode),
        torrents=diff_torrents(manifest, live, mode, gate=gate),
    )
