"""Progress ledger derived from tasks, plus the append-only progress journal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from autoloop.loop.models import Document, LoopStatus, Progress, TaskStatus, status_value
from autoloop.loop.tasks import next_task


def recalculate(document: Document) -> Progress:
    """Recompute counters from the task list.

    Only `completed` counts toward `completed_tasks`. Iteration metadata is
    carried over from the stored progress because tasks cannot express it.
    """

    total = len(document.tasks)
    completed = sum(
        1 for task in document.tasks if status_value(task.status) == TaskStatus.COMPLETED.value
    )
    status = (
        LoopStatus.COMPLETED.value
        if next_task(document.tasks) is None
        else LoopStatus.IN_PROGRESS.value
    )
    return Progress(
        total_tasks=total,
        completed_tasks=completed,
        total_iterations_run=document.progress.total_iterations_run,
        last_iteration_at=document.progress.last_iteration_at,
        status=status,
    )


def percent_complete(progress: Progress) -> int:
    if progress.total_tasks <= 0:
        return 0
    return progress.completed_tasks * 100 // progress.total_tasks


class JournalKind(str, Enum):
    """Entry kinds in the progress journal."""

    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    LEARNING = "LEARNING"
    QUALITY_CHECK = "QUALITY_CHECK"
    COMMIT = "COMMIT"
    MANUAL = "MANUAL"


@dataclass(slots=True)
class JournalEntry:
    kind: JournalKind
    message: str
    iteration: int | None = None
    task_id: str | None = None


def format_entry(entry: JournalEntry, *, now: datetime | None = None) -> str:
    """Render `[ts] [iteration:N] [task:ID] KIND: message`."""

    timestamp = (now or datetime.now(tz=UTC)).replace(microsecond=0).isoformat()
    parts = [f"[{timestamp}]"]
    if entry.iteration:
        parts.append(f"[iteration:{entry.iteration}]")
    if entry.task_id:
        parts.append(f"[task:{entry.task_id}]")
    parts.append(f"{entry.kind.value}: {entry.message}")
    return " ".join(parts)


def append_entry(path: Path, entry: JournalEntry) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(format_entry(entry) + "\n")


def read_tail(path: Path, lines: int) -> list[str]:
    """Return the last `lines` journal lines; all of them when `lines <= 0`."""

    if not path.exists():
        return []
    all_lines = path.read_text("utf-8").splitlines()
    if lines <= 0 or lines >= len(all_lines):
        return all_lines
    return all_lines[-lines:]
