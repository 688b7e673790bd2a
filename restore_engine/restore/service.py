from __future__ import annotations

import contextlib
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Iterator

from restore_engine.adapters.base import LiveClientAdapter
from restore_engine.clock import Clock, SystemClock
from restore_engine.errors import ManifestIOError
from restore_engine.instance_lock import (
    InstanceLockRegistry,
    acquire_instance_lock_file,
    build_instance_lock_path,
)
from restore_engine.manifest_store import SnapshotStore, write_json_atomic

from .changes import CapabilityGate, StaticCapabilityGate
from .data_models import BehaviorFlags, RestoreMode, RestorePlan, RestoreRequest, RestoreResult
from .errors import RestoreArtifactError, RestoreError
from .execute import execute_restore_plan
from .journal import RestoreExecutionJournal
from .plan import apply_exclusions, build_restore_plan

logger = logging.getLogger(__name__)

# Shared by every service in the process so two services for one instance still exclude each other.
_DEFAULT_REGISTRY = InstanceLockRegistry()


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    try:
        write_json_atomic(path, payload)
    except ManifestIOError as exc:
        raise RestoreArtifactError(f"Failed to write JSON artifact: {path}") from exc


class RestoreService:
    """
    Entry points for planning and executing restores against one instance.

    Parameters
    ----------
    store : SnapshotStore
        Snapshot store holding backup manifests.
    adapter : LiveClientAdapter
        Live client adapter for the managed instance.
    instance_id : str
        Identity of the managed instance; executions are serialized per id.
    gate : CapabilityGate | None
        Capability gate for torrent fields. Defaults to the static default set.
    clock : Clock | None
        Injectable clock for timestamps and artifact directory names.
    operation_timeout : float | None
        Per-adapter-call timeout in seconds. None waits indefinitely.
    lock_registry : InstanceLockRegistry | None
        In-process lock registry. Defaults to a process-wide registry.
    lock_root : Path | None
        When set, a lock file under this directory is also held during
        execution, for exclusion across processes.
    artifacts_root : Path | None
        When set, each execution writes ``plan.json``, ``result.json`` and
        ``journal.jsonl`` under ``<artifacts_root>/<run_id>/<timestamp>/``.
    """

    def __init__(
        self,
        store: SnapshotStore,
        adapter: LiveClientAdapter,
        *,
        instance_id: str = "default",
        gate: CapabilityGate | None = None,
        clock: Clock | None = None,
        operation_timeout: float | None = None,
        lock_registry: InstanceLockRegistry | None = None,
        lock_root: Path | None = None,
        artifacts_root: Path | None = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._instance_id = str(instance_id)
        self._gate = gate if gate is not None else StaticCapabilityGate()
        self._clock = clock if clock is not None else SystemClock()
        self._operation_timeout = operation_timeout
        self._locks = lock_registry if lock_registry is not None else _DEFAULT_REGISTRY
        self._lock_root = lock_root
        self._artifacts_root = artifacts_root

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def build_plan(
        self,
        run_id: str,
        mode: RestoreMode,
        exclude_hashes: Iterable[str] | None = None,
    ) -> RestorePlan:
        """
        Compute a plan without touching the client beyond enumeration.

        Does not take the instance lock, so planning may run concurrently with
        an execution; the result then reflects whatever state was read.
        """
        request = RestoreRequest.create(run_id, mode, exclude_hashes)
        return build_restore_plan(request, store=self._store, adapter=self._adapter, gate=self._gate)

    def execute(
        self,
        run_id: str,
        mode: RestoreMode,
        exclude_hashes: Iterable[str] | None = None,
        *,
        dry_run: bool,
        flags: BehaviorFlags | None = None,
        plan: RestorePlan | None = None,
        cancel_event: threading.Event | None = None,
        force_lock: bool = False,
        break_lock: bool = False,
    ) -> RestoreResult:
        """
        Apply (or, with ``dry_run``, simulate) a restore.

        Parameters
        ----------
        run_id, mode, exclude_hashes : str, RestoreMode, Iterable[str] | None
            The request. Used to build a plan when ``plan`` is not supplied.
        dry_run : bool
            Report intended effects without calling any mutator.
        flags : BehaviorFlags | None
            Behavior flags for torrent adds.
        plan : RestorePlan | None
            Previously built plan to apply. Live state may have drifted since
            it was built; it is not re-diffed, but ``exclude_hashes`` is still
            applied to it.
        cancel_event : threading.Event | None
            Set to stop before the next operation.
        force_lock, break_lock : bool
            Lock-file override flags, see :func:`acquire_instance_lock_file`.

        Returns
        -------
        RestoreResult
            Per-operation failures are reported inside the result.

        Raises
        ------
        InstanceBusyError
            If another execution holds this instance.
        RestoreError
            If a supplied plan does not match the request.
        SnapshotNotFoundError, ManifestError, LiveStateUnavailableError
            If a plan has to be built and planning fails.
        """
        request = RestoreRequest.create(run_id, mode, exclude_hashes)
        if plan is not None and (plan.run_id != request.run_id or plan.mode is not request.mode):
            raise RestoreError(
                f"Supplied plan is for run {plan.run_id!r} ({plan.mode.value}), "
                f"not {request.run_id!r} ({request.mode.value})"
            )
        if plan is not None:
            plan = apply_exclusions(plan, request.exclude_hashes)

        with self._locks.hold(self._instance_id), self._lock_file(request.run_id, force_lock, break_lock):
            logger.info(
                "Executing restore of run %s on instance %s (mode=%s, dry_run=%s)",
                request.run_id,
                self._instance_id,
                request.mode.value,
                dry_run,
            )
            if plan is None:
                plan = build_restore_plan(request, store=self._store, adapter=self._adapter, gate=self._gate)

            artifacts_dir = self._artifacts_dir(request.run_id)
            journal = None
            if artifacts_dir is not None:
                journal = RestoreExecutionJournal(
                    artifacts_dir / "journal.jsonl", clock=self._clock, run_id=request.run_id
                )
                _write_json(artifacts_dir / "plan.json", plan.to_dict())

            result = execute_restore_plan(
                plan,
                adapter=self._adapter,
                dry_run=dry_run,
                flags=flags,
                clock=self._clock,
                operation_timeout=self._operation_timeout,
                cancel_event=cancel_event,
                journal=journal,
            )

            if artifacts_dir is not None:
                _write_json(artifacts_dir / "result.json", result.to_dict())
                logger.info("Restore artifacts written to %s", artifacts_dir)

        logger.info(
            "Restore of run %s finished: %d error(s), %d warning(s)%s",
            request.run_id,
            len(result.errors),
            len(result.warnings),
            ", cancelled" if result.cancelled else "",
        )
        return result

    @contextlib.contextmanager
    def _lock_file(self, run_id: str, force: bool, break_lock: bool) -> Iterator[None]:
        if self._lock_root is None:
            yield
            return
        lock_path = build_instance_lock_path(lock_root=self._lock_root, instance_id=self._instance_id)
        with acquire_instance_lock_file(
            lock_path=lock_path,
            instance_id=self._instance_id,
            run_id=run_id,
            force=force,
            break_lock=break_lock,
        ):
            yield

    def _artifacts_dir(self, run_id: str) -> Path | None:
        if self._artifacts_root is None:
            return None
        stamp = self._clock.now().strftime("%Y%m%dT%H%M%S%fZ")
        path = self._artifacts_root / run_id / stamp
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RestoreArtifactError(f"Failed to create restore artifacts directory: {path}") from exc
        return path
