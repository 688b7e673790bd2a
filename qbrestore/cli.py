"""
Command-line interface for qbrestore.

Notes
-----
The CLI is thin. It parses arguments, configures logging and delegates to
engine modules.

Safety posture (restore command)
--------------------------------
- ``plan``: reads the manifest and live client state, never mutates.
- ``restore --dry-run``: walks the plan and reports what would be applied.
- ``restore``: applies the plan. Deletions only happen in ``complete`` mode.

Exit codes: 0 success, 1 restore finished with per-operation errors or was
cancelled, 2 domain error (bad arguments, planning failure, instance busy).
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler

from restore_engine.adapters import qbittorrent
from restore_engine.adapters.base import LiveClientAdapter
from restore_engine.errors import RestoreEngineError
from restore_engine.manifest_store import JsonManifestStore
from restore_engine.restore.changes import StaticCapabilityGate
from restore_engine.restore.data_models import BehaviorFlags
from restore_engine.restore.plan import parse_restore_mode
from restore_engine.restore.render import render_restore_plan_text, render_restore_result_text
from restore_engine.restore.service import RestoreService
from restore_engine.settings import EngineSettings, load_settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RESTORE_ERRORS = 1
EXIT_DOMAIN_ERROR = 2

_NOISY_LOGGERS = ("qbittorrentapi", "urllib3")


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser.
    """
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--data-root",
        default=None,
        help="Override the data root. If omitted, QBRESTORE_DATA_ROOT or the XDG default is used.",
    )
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (default: INFO).",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Shortcut for --log-level DEBUG.")
    common.add_argument("--log-file", type=Path, default=None, help="Also write log records to this file.")

    parser = argparse.ArgumentParser(
        prog="qbrestore",
        description="Restore qBittorrent categories, tags and torrents from a backup run",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    runs_p = sub.add_parser("runs", parents=[common], help="List stored backup runs (newest first)")
    runs_p.add_argument("--json", action="store_true", help="Print JSON instead of text.")

    for name, help_text in (
        ("plan", "Compute a restore plan without changing the client"),
        ("restore", "Execute a restore (use --dry-run to simulate)"),
    ):
        p = sub.add_parser(name, parents=[common], help=help_text)
        p.add_argument("--run-id", required=True, help="Backup run to restore.")
        p.add_argument(
            "--mode",
            default="incremental",
            help="incremental (add only), overwrite (add and update) or complete (also delete). Default: incremental.",
        )
        p.add_argument(
            "--exclude",
            action="append",
            default=[],
            metavar="HASH",
            help="Torrent hash to leave untouched. Repeatable.",
        )
        p.add_argument("--json", action="store_true", help="Print JSON instead of text.")
        p.add_argument(
            "--max-items",
            type=int,
            default=100,
            help="Maximum number of entries to list per section in text output (default: 100).",
        )

        if name == "restore":
            p.add_argument("--dry-run", action="store_true", help="Report intended effects without applying them.")
            p.add_argument(
                "--start-paused",
                action=argparse.BooleanOptionalAction,
                default=None,
                help="Add torrents paused (default from settings: on).",
            )
            p.add_argument(
                "--skip-hash-check",
                action=argparse.BooleanOptionalAction,
                default=None,
                help="Ask the client to skip the hash check on add (default from settings: off).",
            )
            p.add_argument(
                "--auto-resume-verified",
                action=argparse.BooleanOptionalAction,
                default=None,
                help="Resume added torrents the client reports as verified. Only applies with --skip-hash-check.",
            )
            p.add_argument(
                "--timeout",
                type=float,
                default=None,
                help="Per-operation timeout in seconds (default from settings).",
            )
            p.add_argument("--no-lock-file", action="store_true", help="Skip the cross-process lock file.")
            p.add_argument("--force", action="store_true", help="Break a provably stale lock file.")
            p.add_argument("--break-lock", action="store_true", help="Break an existing lock file unconditionally.")

    return parser


def configure_logging(*, level: str, log_file: Path | None) -> None:
    """Route log records to a stderr RichHandler and an optional file."""
    handlers: list[logging.Handler] = [
        RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    ]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handlers.append(file_handler)
    logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]", handlers=handlers, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_adapter(settings: EngineSettings) -> LiveClientAdapter:
    return qbittorrent.QBittorrentAdapter(settings.client)


def build_service(
    settings: EngineSettings,
    adapter: LiveClientAdapter,
    *,
    timeout: float | None,
    lock_file: bool,
) -> RestoreService:
    mutable = frozenset(settings.restore.mutable_fields)
    # An adapter that reports its own capabilities narrows the configured set.
    adapter_gate = getattr(adapter, "is_field_mutable", None)
    if adapter_gate is not None:
        mutable = frozenset(name for name in mutable if adapter_gate(name))
    return RestoreService(
        JsonManifestStore(settings.data_root),
        adapter,
        instance_id=settings.instance_id,
        gate=StaticCapabilityGate(mutable),
        operation_timeout=timeout if timeout is not None else settings.restore.operation_timeout_seconds,
        lock_root=settings.data_root / "locks" if lock_file else None,
        artifacts_root=settings.data_root / "restores" if settings.restore.journal else None,
    )


def _resolve_flags(args: argparse.Namespace, defaults: BehaviorFlags) -> BehaviorFlags:
    def pick(value: bool | None, default: bool) -> bool:
        return default if value is None else value

    return BehaviorFlags(
        start_paused=pick(args.start_paused, defaults.start_paused),
        skip_hash_check=pick(args.skip_hash_check, defaults.skip_hash_check),
        auto_resume_verified=pick(args.auto_resume_verified, defaults.auto_resume_verified),
    )


@contextmanager
def _cancel_on_interrupt(event: threading.Event) -> Iterator[None]:
    """Turn Ctrl+C into a cancellation request checked between operations."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: Any) -> None:
        logger.warning("Interrupt received; stopping after the current operation")
        event.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Parameters
    ----------
    argv : list[str] | None
        Optional argument vector. If None, argparse uses sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(level="DEBUG" if args.verbose else args.log_level, log_file=args.log_file)

    try:
        settings = load_settings(args.data_root)

        if args.command == "runs":
            runs = JsonManifestStore(settings.data_root).list_runs()
            if args.json:
                _print_json([run.to_dict() for run in runs])
            elif not runs:
                print(f"No backup runs under {settings.data_root}")
            else:
                for run in runs:
                    print(f"{run.run_id}  {run.generated_at}  {run.kind or '-'}  torrents={run.torrent_count}")
            return EXIT_OK

        if args.max_items < 0:
            print("ERROR: --max-items must be non-negative.")
            return EXIT_DOMAIN_ERROR

        mode = parse_restore_mode(args.mode)

        if args.command == "plan":
            service = build_service(settings, build_adapter(settings), timeout=None, lock_file=False)
            plan = service.build_plan(args.run_id, mode, args.exclude)
            if args.json:
                _print_json(plan.to_dict())
            else:
                print(render_restore_plan_text(plan, max_items=args.max_items))
            return EXIT_OK

        if args.command == "restore":
            if args.timeout is not None and args.timeout <= 0:
                print("ERROR: --timeout must be positive.")
                return EXIT_DOMAIN_ERROR

            service = build_service(
                settings,
                build_adapter(settings),
                timeout=args.timeout,
                lock_file=not args.no_lock_file,
            )
            cancel_event = threading.Event()
            with _cancel_on_interrupt(cancel_event):
                result = service.execute(
                    args.run_id,
                    mode,
                    args.exclude,
                    dry_run=args.dry_run,
                    flags=_resolve_flags(args, settings.restore.flags),
                    cancel_event=cancel_event,
                    force_lock=args.force,
                    break_lock=args.break_lock,
                )
            if args.json:
                _print_json(result.to_dict())
            else:
                print(render_restore_result_text(result, max_items=args.max_items))
            return EXIT_OK if result.succeeded else EXIT_RESTORE_ERRORS
    except RestoreEngineError as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"ERROR: {exc}")
        return EXIT_DOMAIN_ERROR

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
