"""Task graph operations: eligibility, selection, transitions, validation.

All functions are pure with respect to I/O. Mutating operations change the
given task list in place and never remove tasks.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from autoloop.errors import DuplicateTaskError, TaskGraphError, TaskNotFoundError
from autoloop.loop.models import (
    MIN_PENDING_TASKS_FOR_DISCOVERY,
    Task,
    TaskStatus,
    priority_rank,
    status_value,
)

_DEPENDENCY_SATISFIED = frozenset({TaskStatus.COMPLETED.value, TaskStatus.SKIPPED.value})
_VALID_STATUSES = frozenset(status.value for status in TaskStatus)


@dataclass(slots=True)
class ValidationError:
    """One structural problem found in a task list."""

    message: str
    task_id: str | None = None

    def __str__(self) -> str:
        return self.message


def is_eligible(task: Task, all_tasks: Sequence[Task]) -> bool:
    """Return True when the task is pending and every dependency is completed or skipped.

    Unknown dependency IDs count as unmet.
    """

    if status_value(task.status) != TaskStatus.PENDING.value:
        return False
    if not task.depends_on:
        return True
    statuses = _status_by_id(all_tasks)
    return all(statuses.get(dep) in _DEPENDENCY_SATISFIED for dep in task.depends_on)


def eligible_tasks(all_tasks: Sequence[Task]) -> list[Task]:
    """Eligible tasks in document order."""

    statuses = _status_by_id(all_tasks)
    return [
        task
        for task in all_tasks
        if status_value(task.status) == TaskStatus.PENDING.value
        and all(statuses.get(dep) in _DEPENDENCY_SATISFIED for dep in task.depends_on)
    ]


def next_task(all_tasks: Sequence[Task]) -> Task | None:
    """Pick the eligible task with the best priority; ties keep document order."""

    best: Task | None = None
    best_rank = 0
    for task in eligible_tasks(all_tasks):
        rank = priority_rank(task.priority)
        if best is None or rank < best_rank:
            best = task
            best_rank = rank
    return best


def find_task(all_tasks: Sequence[Task], task_id: str) -> Task | None:
    for task in all_tasks:
        if task.id == task_id:
            return task
    return None


def transition(all_tasks: Sequence[Task], task_id: str, new_status: TaskStatus | str) -> Task:
    """Set one task's status. Unconditional: any prior status is accepted."""

    status = TaskStatus(status_value(new_status))
    task = find_task(all_tasks, task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    task.status = status
    return task


def complete_task(
    all_tasks: Sequence[Task],
    task_id: str,
    *,
    commit_sha: str | None = None,
    iteration: int | None = None,
    notes: str | None = None,
    duration_seconds: float | None = None,
    now: datetime | None = None,
) -> Task:
    """Mark a task completed and attach completion metadata."""

    task = transition(all_tasks, task_id, TaskStatus.COMPLETED)
    task.completed_at = (now or datetime.now(tz=UTC)).replace(microsecond=0).isoformat()
    task.commit_sha = commit_sha or None
    task.iteration = iteration
    if notes is not None:
        task.notes = notes
    if duration_seconds is not None:
        task.duration_seconds = duration_seconds
    return task


def skip_task(all_tasks: Sequence[Task], task_id: str) -> Task:
    """Mark a task skipped. Skipping an already skipped task is a no-op."""

    return transition(all_tasks, task_id, TaskStatus.SKIPPED)


def reset_task(all_tasks: Sequence[Task], task_id: str) -> Task:
    """Return a task to pending from any status and clear completion metadata."""

    task = transition(all_tasks, task_id, TaskStatus.PENDING)
    task.completed_at = None
    task.commit_sha = None
    task.iteration = None
    task.duration_seconds = None
    return task


def add_task(all_tasks: list[Task], task: Task) -> Task:
    """Append a task, keeping insertion order for selection tie-breaks."""

    if not task.id:
        raise TaskGraphError("Task ID is required")
    if find_task(all_tasks, task.id) is not None:
        raise DuplicateTaskError(task.id)
    if not status_value(task.status):
        task.status = TaskStatus.PENDING
    all_tasks.append(task)
    return task


def validate(all_tasks: Sequence[Task]) -> list[ValidationError]:
    """Report structural problems, at most one per malformed task.

    Checks run in order (missing ID, duplicate ID, missing title, invalid
    status) and the first failing check is the only one reported for that
    task. Unknown dependency references are reported afterwards.
    """

    errors: list[ValidationError] = []
    seen: set[str] = set()
    for task in all_tasks:
        error = _first_violation(task, seen)
        if task.id:
            seen.add(task.id)
        if error is not None:
            errors.append(error)

    for task in all_tasks:
        if not task.id:
            continue
        for dep in task.depends_on:
            if dep not in seen:
                errors.append(
                    ValidationError(
                        message=f"task {task.id} depends on unknown task: {dep}",
                        task_id=task.id,
                    ),
                )
    return errors


def remaining_count(all_tasks: Sequence[Task]) -> int:
    """Tasks that are neither completed nor skipped."""

    return sum(1 for task in all_tasks if status_value(task.status) not in _DEPENDENCY_SATISFIED)


def pending_count(all_tasks: Sequence[Task]) -> int:
    return sum(1 for task in all_tasks if status_value(task.status) == TaskStatus.PENDING.value)


def should_run_discovery(
    all_tasks: Sequence[Task],
    *,
    iteration: int,
    last_discovery_iteration: int,
    discover_interval: int,
) -> bool:
    """Decide whether a pilot iteration should look for new work instead of implementing.

    Discovery runs when nothing is pending, when no discovery has happened yet
    (`last_discovery_iteration` is 0), when `discover_interval` iterations have
    passed since the last one, or when the pending backlog drops below
    `MIN_PENDING_TASKS_FOR_DISCOVERY`.
    """

    pending = pending_count(all_tasks)
    if pending == 0 or last_discovery_iteration == 0:
        return True
    if iteration - last_discovery_iteration >= discover_interval:
        return True
    return pending < MIN_PENDING_TASKS_FOR_DISCOVERY


def count_by_status(all_tasks: Sequence[Task]) -> dict[str, int]:
    counts = {status.value: 0 for status in TaskStatus}
    for task in all_tasks:
        key = status_value(task.status)
        counts[key] = counts.get(key, 0) + 1
    return counts


def _first_violation(task: Task, seen: set[str]) -> ValidationError | None:
    if not task.id:
        return ValidationError(message="task missing ID")
    if task.id in seen:
        return ValidationError(message=f"duplicate task ID: {task.id}", task_id=task.id)
    if not task.title.strip():
        return ValidationError(message=f"task {task.id} missing title", task_id=task.id)
    status = status_value(task.status)
    if status not in _VALID_STATUSES:
        return ValidationError(
            message=f"task {task.id} has invalid status: {status}",
            task_id=task.id,
        )
    return None


def _status_by_id(all_tasks: Sequence[Task]) -> dict[str, str]:
    return {task.id: status_value(task.status) for task in all_tasks}
