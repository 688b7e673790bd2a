"""
Rendering for restore planning and execution output.

This module renders a RestorePlan or RestoreResult to deterministic,
human-readable text.
"""

from __future__ import annotations

from .data_models import RestorePlan, RestoreResult


def render_restore_plan_text(plan: RestorePlan, *, max_items: int) -> str:
    """
    Render a restore plan as deterministic plain text.

    Parameters
    ----------
    plan : RestorePlan
        The restore plan to render.
    max_items : int
        Maximum number of entries to list per bucket. Counts always reflect the
        full plan. Must be non-negative.

    Returns
    -------
    str
        A deterministic text representation of the plan.

    Raises
    ------
    ValueError
        If max_items is negative.
    """
    if max_items < 0:
        raise ValueError("max_items must be non-negative.")

    lines: list[str] = []
    lines.append("Restore plan")
    lines.append(f"Run: {plan.run_id}")
    lines.append(f"Mode: {plan.mode.value}")
    lines.append("")

    buckets = _plan_buckets(plan)
    for label, entries in buckets:
        lines.append(f"{label}: {len(entries)}")

    if not plan.has_actions:
        lines.append("")
        lines.append("Nothing to do.")
        return "\n".join(lines)

    for label, entries in buckets:
        if not entries:
            continue
        lines.append("")
        lines.append(f"{label}:")
        lines.extend(_limited(entries, max_items))

    unsupported = plan.unsupported_changes()
    if unsupported:
        lines.append("")
        lines.append("Manual action required:")
        for torrent_hash, change in unsupported:
            lines.append(f"- {torrent_hash} {change.field}: {change.message}")

    return "\n".join(lines)


def render_restore_result_text(result: RestoreResult, *, max_items: int) -> str:
    """Render an execution result: applied counts, then warnings and errors in full."""
    if max_items < 0:
        raise ValueError("max_items must be non-negative.")

    lines: list[str] = []
    title = "Restore dry run" if result.dry_run else "Restore result"
    lines.append(title)
    lines.append(f"Run: {result.plan.run_id}")
    lines.append(f"Mode: {result.mode.value}")
    if result.started_at:
        lines.append(f"Started: {result.started_at}")
    if result.finished_at:
        lines.append(f"Finished: {result.finished_at}")
    if result.cancelled:
        lines.append("Status: cancelled")
    elif result.errors:
        lines.append("Status: completed with errors")
    else:
        lines.append("Status: ok")
    lines.append("")

    verb = "would apply" if result.dry_run else "applied"
    for key, count in result.applied.counts().items():
        lines.append(f"{key} ({verb}): {count}")

    if result.warnings:
        lines.append("")
        lines.append(f"Warnings ({len(result.warnings)}):")
        lines.extend(f"- {warning}" for warning in result.warnings)

    if result.errors:
        lines.append("")
        lines.append(f"Errors ({len(result.errors)}):")
        shown = result.errors[:max_items] if max_items else ()
        for error in shown:
            lines.append(f"- {error.operation} {error.target}: {error.message}")
        if max_items < len(result.errors):
            lines.append(f"... ({len(result.errors) - max_items} more not shown)")

    return "\n".join(lines)


def _plan_buckets(plan: RestorePlan) -> list[tuple[str, list[str]]]:
    category_updates = [
        f"~ {u.name}: {u.current_path or '<default>'} -> {u.desired_path or '<default>'}"
        for u in plan.categories.update
    ]
    torrent_updates = [
        f"~ {u.hash} [{', '.join(_change_label(c.field, c.supported) for c in u.changes)}]"
        for u in plan.torrents.update
    ]
    return [
        ("categories.create", [f"+ {c.name} ({c.save_path or '<default>'})" for c in plan.categories.create]),
        ("categories.update", category_updates),
        ("categories.delete", [f"- {name}" for name in plan.categories.delete]),
        ("tags.create", [f"+ {name}" for name in plan.tags.create]),
        ("tags.delete", [f"- {name}" for name in plan.tags.delete]),
        ("torrents.add", [f"+ {a.hash} {a.manifest.name}" for a in plan.torrents.add]),
        ("torrents.update", torrent_updates),
        ("torrents.delete", [f"- {h}" for h in plan.torrents.delete]),
    ]


def _change_label(field_name: str, supported: bool) -> str:
    return field_name if supported else f"{field_name} (manual)"


def _limited(entries: list[str], max_items: int) -> list[str]:
    shown = entries[:max_items] if max_items else []
    lines = [f"  {entry}" for entry in shown]
    if max_items < len(entries):
        lines.append(f"  ... ({len(entries) - max_items} more not shown)")
    return lines
