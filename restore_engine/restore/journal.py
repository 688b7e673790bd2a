"""
Execution journal for restores.

One JSON object per line, appended and flushed per event, so a journal stays
readable up to the last completed operation even if the process dies
mid-restore. Records carry a per-journal sequence number and the run id.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from restore_engine.clock import Clock, format_utc
from restore_engine.errors import ManifestIOError


@dataclass(frozen=True, slots=True)
class JournalEvent:
    """
    A single journal record.

    Attributes
    ----------
    seq : int
        1-based position within the journal.
    ts : str
        UTC timestamp, ``YYYY-MM-DDTHH:MM:SSZ``.
    event : str
        Event id such as ``operation_applied`` or ``operation_failed``.
    run_id : str | None
        Backup run being restored, if bound.
    data : Mapping[str, Any]
        JSON-serializable payload.
    """

    seq: int
    ts: str
    event: str
    run_id: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"seq": self.seq, "ts": self.ts, "event": self.event, "run_id": self.run_id, "data": dict(self.data)}


class RestoreExecutionJournal:
    """
    Append-only JSONL journal of one restore execution.

    Parameters
    ----------
    journal_path : Path
        File to append to. Parent directories are created.
    clock : Clock
        Clock for record timestamps.
    run_id : str | None
        Run id stamped on every record.
    """

    def __init__(self, journal_path: Path, *, clock: Clock, run_id: str | None = None) -> None:
        self._journal_path = journal_path
        self._clock = clock
        self._run_id = run_id
        self._seq = 0
        self._guard = threading.Lock()
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._journal_path

    def append(self, event: str, data: Mapping[str, Any]) -> JournalEvent:
        """
        Append one event record and return it.

        Raises
        ------
        OSError
            If the journal cannot be written.
        TypeError
            If `data` is not JSON-serializable.
        """
        with self._guard:
            self._seq += 1
            record = JournalEvent(
                seq=self._seq,
                ts=format_utc(self._clock.now()),
                event=event,
                run_id=self._run_id,
                data=data,
            )
            line = json.dumps(record.to_dict(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
            with self._journal_path.open("a", encoding="utf-8", newline="\n") as handle:
                handle.write(line + "\n")
                handle.flush()
        return record


def read_journal(journal_path: Path) -> list[JournalEvent]:
    """
    Load every record of a journal.

    A truncated final line (process killed mid-write) is ignored.

    Raises
    ------
    ManifestIOError
        If the file cannot be read or a complete line is not a JSON object.
    """
    try:
        lines = journal_path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise ManifestIOError(f"Failed to read journal: {journal_path}") from exc

    events: list[JournalEvent] = []
    for index, line in enumerate(lines):
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as exc:
            if index == len(lines) - 1:
                break
            raise ManifestIOError(f"Invalid journal line {index + 1}: {journal_path}") from exc
        if not isinstance(raw, dict):
            raise ManifestIOError(f"Invalid journal line {index + 1}: {journal_path}")
        events.append(
            JournalEvent(
                seq=int(raw.get("seq", index + 1)),
                ts=str(raw.get("ts", "")),
                event=str(raw.get("event", "")),
                run_id=raw.get("run_id"),
                data=raw.get("data") or {},
            )
        )
    return events
