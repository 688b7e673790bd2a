"""
Restore plan execution.

Operations run in dependency order so a torrent never references a category
or tag that does not exist yet, and deletions only happen after dependents
are handled:

1. category creates, category updates
2. tag creates
3. torrent adds, torrent updates
4. torrent deletes
5. tag deletes
6. category deletes

Each operation fails independently: its error is recorded and execution moves
on. Nothing is retried or rolled back. A dry run walks the same sequence and
records what would be applied without calling any mutator.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable

from restore_engine.adapters.base import AdapterError, LiveClientAdapter
from restore_engine.clock import Clock, SystemClock, format_utc
from restore_engine.data_models import normalize_hash

from .changes import TORRENT_FIELDS
from .data_models import (
    AppliedCategories,
    AppliedOperations,
    AppliedTags,
    AppliedTorrents,
    BehaviorFlags,
    RestoreErrorRecord,
    RestorePlan,
    RestoreResult,
    TorrentUpdate,
)
from .journal import RestoreExecutionJournal

logger = logging.getLogger(__name__)

_FIELDS_BY_NAME = {descriptor.name: descriptor for descriptor in TORRENT_FIELDS}


class _OperationTimedOut(Exception):
    """Raised when an adapter call outlives the per-operation timeout."""


@dataclass(frozen=True, slots=True)
class PlannedOperation:
    """
    One adapter call derived from a plan.

    Attributes
    ----------
    operation : str
        Stable id, e.g. ``category.create`` or ``torrent.delete``.
    target : str
        Category name, tag name, or torrent hash.
    applied_key : str
        Bucket in :class:`AppliedOperations` credited on success,
        e.g. ``categories.created``.
    call : Callable[[LiveClientAdapter], None]
        Invokes the adapter mutator.
    """

    operation: str
    target: str
    applied_key: str
    call: Callable[[LiveClientAdapter], None]


def order_operations(plan: RestorePlan, flags: BehaviorFlags) -> list[PlannedOperation]:
    """Expand a plan into adapter calls in dependency order."""
    ops: list[PlannedOperation] = []

    for create in plan.categories.create:
        ops.append(
            PlannedOperation(
                "category.create",
                create.name,
                "categories.created",
                lambda a, c=create: a.create_category(c.name, c.save_path),
            )
        )
    for update in plan.categories.update:
        ops.append(
            PlannedOperation(
                "category.update",
                update.name,
                "categories.updated",
                lambda a, u=update: a.update_category(u.name, u.desired_path),
            )
        )
    for tag in plan.tags.create:
        ops.append(PlannedOperation("tag.create", tag, "tags.created", lambda a, t=tag: a.create_tag(t)))
    for add in plan.torrents.add:
        ops.append(
            PlannedOperation(
                "torrent.add",
                add.hash,
                "torrents.added",
                lambda a, item=add.manifest: a.add_torrent(item, flags),
            )
        )
    for torrent_update in plan.torrents.update:
        supported = torrent_update.supported_changes
        if not supported:
            continue
        ops.append(
            PlannedOperation(
                "torrent.update",
                torrent_update.hash,
                "torrents.updated",
                lambda a, h=torrent_update.hash, changes=supported: a.update_torrent(h, changes),
            )
        )
    for torrent_hash in plan.torrents.delete:
        ops.append(
            PlannedOperation(
                "torrent.delete",
                torrent_hash,
                "torrents.deleted",
                lambda a, h=torrent_hash: a.delete_torrent(h),
            )
        )
    for tag in plan.tags.delete:
        ops.append(PlannedOperation("tag.delete", tag, "tags.deleted", lambda a, t=tag: a.delete_tag(t)))
    for name in plan.categories.delete:
        ops.append(
            PlannedOperation(
                "category.delete",
                name,
                "categories.deleted",
                lambda a, n=name: a.delete_category(n),
            )
        )
    return ops


def manual_action_warnings(plan: RestorePlan) -> list[str]:
    """Describe every unsupported change that the executor will not apply."""
    warnings: list[str] = []
    for torrent_hash, change in plan.unsupported_changes():
        warnings.append(f"Torrent {torrent_hash}: {change.field} needs manual action. {change.message or ''}".rstrip())
    return warnings


def execute_restore_plan(
    plan: RestorePlan,
    *,
    adapter: LiveClientAdapter,
    dry_run: bool,
    flags: BehaviorFlags | None = None,
    clock: Clock | None = None,
    operation_timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    journal: RestoreExecutionJournal | None = None,
) -> RestoreResult:
    """
    Walk a plan and apply it through the adapter.

    Parameters
    ----------
    plan : RestorePlan
        Plan to apply as-is. It is not re-diffed against live state.
    adapter : LiveClientAdapter
        Live client adapter whose mutators are called.
    dry_run : bool
        If True, no mutator is called; every operation is recorded as applied.
    flags : BehaviorFlags | None
        Requested behavior flags. The effective flags (auto-resume off unless
        the hash check is skipped) are what reach the adapter.
    clock : Clock | None
        Clock used for result timestamps and journal records.
    operation_timeout : float | None
        Seconds to wait for each adapter call. None waits indefinitely.
    cancel_event : threading.Event | None
        Checked before each operation; once set, remaining operations are skipped.
    journal : RestoreExecutionJournal | None
        Optional execution journal.

    Returns
    -------
    RestoreResult
        Applied targets, warnings and per-operation errors. Errors are never raised.
    """
    clock_to_use = clock if clock is not None else SystemClock()
    requested = flags if flags is not None else BehaviorFlags()
    effective = requested.effective()
    if effective != requested:
        logger.info("Auto-resume disabled: it only applies when the hash check is skipped")

    started_at = format_utc(clock_to_use.now())
    operations = order_operations(plan, effective)
    applied: dict[str, list[str]] = {}
    warnings = manual_action_warnings(plan)
    errors: list[RestoreErrorRecord] = []
    cancelled = False

    _journal(
        journal,
        "restore_execution_started",
        {
            "run_id": plan.run_id,
            "mode": plan.mode.value,
            "dry_run": dry_run,
            "operations_count": len(operations),
            "flags": effective.to_dict(),
        },
    )

    for index, op in enumerate(operations):
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            remaining = len(operations) - index
            warnings.append(f"Restore cancelled; {remaining} operation(s) were not attempted.")
            logger.warning("Restore of run %s cancelled with %d operation(s) remaining", plan.run_id, remaining)
            _journal(journal, "restore_execution_cancelled", {"remaining": remaining})
            break

        if dry_run:
            applied.setdefault(op.applied_key, []).append(op.target)
            logger.info("[dry-run] would %s %s", op.operation, op.target)
            _journal(journal, "operation_dry_run", {"operation": op.operation, "target": op.target})
            continue

        try:
            _call_with_timeout(op, adapter, operation_timeout)
        except _OperationTimedOut:
            message = f"Timed out after {operation_timeout:g}s"
            errors.append(RestoreErrorRecord(op.operation, op.target, message))
            logger.warning("%s %s timed out after %ss", op.operation, op.target, operation_timeout)
            _journal(journal, "operation_failed", {"operation": op.operation, "target": op.target, "error": message})
        except Exception as exc:  # noqa: BLE001
            errors.append(RestoreErrorRecord(op.operation, op.target, str(exc) or type(exc).__name__))
            # Adapter errors are expected failures; anything else gets a traceback.
            logger.warning(
                "%s %s failed: %s",
                op.operation,
                op.target,
                exc,
                exc_info=not isinstance(exc, AdapterError),
            )
            _journal(
                journal,
                "operation_failed",
                {
                    "operation": op.operation,
                    "target": op.target,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
        else:
            applied.setdefault(op.applied_key, []).append(op.target)
            logger.info("Applied %s %s", op.operation, op.target)
            _journal(journal, "operation_applied", {"operation": op.operation, "target": op.target})

    if not dry_run:
        updated = set(applied.get("torrents.updated", ()))
        if updated:
            warnings.extend(
                verify_torrent_updates(
                    adapter,
                    [u for u in plan.torrents.update if u.hash in updated],
                )
            )

    result = RestoreResult(
        dry_run=dry_run,
        mode=plan.mode,
        plan=plan,
        applied=_freeze_applied(applied),
        warnings=tuple(warnings),
        errors=tuple(errors),
        cancelled=cancelled,
        flags=effective,
        started_at=started_at,
        finished_at=format_utc(clock_to_use.now()),
    )
    _journal(
        journal,
        "restore_execution_finished",
        {
            "applied": result.applied.counts(),
            "errors": len(result.errors),
            "warnings": len(result.warnings),
            "cancelled": cancelled,
        },
    )
    return result


def verify_torrent_updates(adapter: LiveClientAdapter, updates: list[TorrentUpdate]) -> list[str]:
    """
    Re-read torrents once and report supported changes the client did not resolve.

    This only produces warnings; no further operations are issued.
    """
    try:
        live = {normalize_hash(t.hash): t for t in adapter.list_torrents()}
    except Exception as exc:  # noqa: BLE001
        logger.warning("Could not verify torrent updates: %s", exc)
        return [f"Could not verify torrent updates: {exc}"]

    warnings: list[str] = []
    for update in updates:
        torrent = live.get(update.hash)
        if torrent is None:
            warnings.append(f"Torrent {update.hash} was updated but is no longer reported by the client.")
            continue
        for change in update.supported_changes:
            descriptor = _FIELDS_BY_NAME.get(change.field)
            if descriptor is None:
                continue
            reported = descriptor.normalize(descriptor.current(torrent))
            if reported != change.desired:
                warnings.append(
                    f"Torrent {update.hash}: {change.field} still differs after update "
                    f"(reported {reported!r}, expected {change.desired!r})."
                )
    return warnings


def _call_with_timeout(op: PlannedOperation, adapter: LiveClientAdapter, timeout: float | None) -> None:
    if timeout is None:
        op.call(adapter)
        return
    # A fresh worker per call: a hung call must not block the next operation.
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="restore-op")
    try:
        future = pool.submit(op.call, adapter)
        # The adapter may raise TimeoutError itself; only an unfinished call counts as timed out.
        _, pending = wait([future], timeout=timeout)
        if pending:
            raise _OperationTimedOut(op.operation, op.target)
        future.result()
    finally:
        pool.shutdown(wait=False)


def _freeze_applied(applied: dict[str, list[str]]) -> AppliedOperations:
    def get(key: str) -> tuple[str, ...]:
        return tuple(applied.get(key, ()))

    return AppliedOperations(
        categories=AppliedCategories(
            created=get("categories.created"),
            updated=get("categories.updated"),
            deleted=get("categories.deleted"),
        ),
        tags=AppliedTags(created=get("tags.created"), deleted=get("tags.deleted")),
        torrents=AppliedTorrents(
            added=get("torrents.added"),
            updated=get("torrents.updated"),
            deleted=get("torrents.deleted"),
        ),
    )


def _journal(journal: RestoreExecutionJournal | None, event: str, data: dict[str, object]) -> None:
    if journal is not None:
        journal.append(event, data)
