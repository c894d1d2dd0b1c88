from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from autoloop.errors import DuplicateTaskError, TaskGraphError, TaskNotFoundError
from autoloop.loop.models import Priority, Task, TaskStatus
from autoloop.loop.tasks import (
    add_task,
    complete_task,
    count_by_status,
    eligible_tasks,
    is_eligible,
    next_task,
    pending_count,
    remaining_count,
    reset_task,
    should_run_discovery,
    skip_task,
    transition,
    validate,
)

pytestmark = [
    allure.epic("Autonomous Loop"),
    allure.feature("Task Graph"),
]


def _task(task_id: str, status=TaskStatus.PENDING, priority=Priority.MEDIUM, depends_on=None):
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        status=status,
        priority=priority,
        depends_on=list(depends_on or []),
    )


def test_task_without_dependencies_is_eligible_only_when_pending() -> None:
    for status in TaskStatus:
        task = _task("1", status=status)
        assert is_eligible(task, [task]) is (status == TaskStatus.PENDING)


def test_dependency_must_be_completed_or_skipped() -> None:
    unmet = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED)
    met = (TaskStatus.COMPLETED, TaskStatus.SKIPPED)

    for status in unmet:
        dependency = _task("A", status=status)
        dependent = _task("T", depends_on=["A"])
        assert is_eligible(dependent, [dependency, dependent]) is False

    for status in met:
        dependency = _task("A", status=status)
        dependent = _task("T", depends_on=["A"])
        assert is_eligible(dependent, [dependency, dependent]) is True


def test_unknown_dependency_is_unmet() -> None:
    task = _task("T", depends_on=["missing"])

    assert is_eligible(task, [task]) is False
    assert eligible_tasks([task]) == []


def test_next_task_prefers_highest_priority_regardless_of_position() -> None:
    tasks = [
        _task("low", priority=Priority.LOW),
        _task("critical", priority=Priority.CRITICAL),
        _task("medium", priority=Priority.MEDIUM),
    ]

    selected = next_task(tasks)

    assert selected is not None
    assert selected.id == "critical"


def test_next_task_is_deterministic_and_keeps_list_order_on_ties() -> None:
    tasks = [
        _task("b", priority=Priority.HIGH),
        _task("a", priority=Priority.HIGH),
        _task("c", priority=Priority.LOW),
    ]

    first = next_task(tasks)
    second = next_task(tasks)

    assert first is second
    assert first is not None
    assert first.id == "b"


def test_unknown_priority_ranks_after_low() -> None:
    tasks = [_task("weird", priority="urgent-ish"), _task("low", priority=Priority.LOW)]

    selected = next_task(tasks)

    assert selected is not None
    assert selected.id == "low"


def test_next_task_returns_none_when_nothing_eligible() -> None:
    tasks = [
        _task("1", status=TaskStatus.COMPLETED),
        _task("2", status=TaskStatus.BLOCKED),
        _task("3", depends_on=["2"]),
    ]

    assert next_task(tasks) is None
    assert next_task([]) is None


def test_skip_twice_is_a_no_op() -> None:
    tasks = [_task("1")]

    skip_task(tasks, "1")
    skip_task(tasks, "1")

    assert tasks[0].status == TaskStatus.SKIPPED


def test_reset_is_unconditional_and_clears_completion_metadata() -> None:
    tasks = [_task("1")]
    complete_task(tasks, "1", commit_sha="abc123", iteration=3, duration_seconds=12.5)

    reset_task(tasks, "1")
    reset_task(tasks, "1")

    task = tasks[0]
    assert task.status == TaskStatus.PENDING
    assert task.completed_at is None
    assert task.commit_sha is None
    assert task.iteration is None
    assert task.duration_seconds is None


def test_complete_task_records_metadata() -> None:
    tasks = [_task("1")]
    now = datetime(2026, 3, 1, 10, 30, 15, 999, tzinfo=UTC)

    task = complete_task(tasks, "1", commit_sha="deadbeef", iteration=2, notes="done", now=now)

    assert task.status == TaskStatus.COMPLETED
    assert task.completed_at == "2026-03-01T10:30:15+00:00"
    assert task.commit_sha == "deadbeef"
    assert task.iteration == 2
    assert task.notes == "done"


def test_transition_unknown_task_raises_not_found() -> None:
    with pytest.raises(TaskNotFoundError, match="Task not found: 42"):
        transition([_task("1")], "42", TaskStatus.SKIPPED)


def test_transition_rejects_unknown_status() -> None:
    with pytest.raises(ValueError):
        transition([_task("1")], "1", "finished")


def test_add_task_rejects_duplicate_and_empty_ids() -> None:
    tasks = [_task("1")]

    with pytest.raises(DuplicateTaskError, match="Task with ID 1 already exists"):
        add_task(tasks, _task("1"))
    with pytest.raises(TaskGraphError, match="Task ID is required"):
        add_task(tasks, _task(""))

    add_task(tasks, _task("2"))
    assert [task.id for task in tasks] == ["1", "2"]


def test_validate_reports_first_violation_per_task_then_unknown_dependencies() -> None:
    tasks = [
        Task(id="", title=""),
        _task("1"),
        Task(id="1", title=""),
        Task(id="2", title=""),
        Task(id="3", title="Three", status="finished"),
        _task("4", depends_on=["99"]),
    ]

    messages = [error.message for error in validate(tasks)]

    assert messages == [
        "task missing ID",
        "duplicate task ID: 1",
        "task 2 missing title",
        "task 3 has invalid status: finished",
        "task 4 depends on unknown task: 99",
    ]


def test_remaining_and_counts() -> None:
    tasks = [
        _task("1", status=TaskStatus.COMPLETED),
        _task("2", status=TaskStatus.SKIPPED),
        _task("3", status=TaskStatus.BLOCKED),
        _task("4"),
    ]

    assert remaining_count(tasks) == 2
    counts = count_by_status(tasks)
    assert counts["completed"] == 1
    assert counts["skipped"] == 1
    assert counts["blocked"] == 1
    assert counts["pending"] == 1
    assert counts["in_progress"] == 0


def test_pending_count_ignores_blocked_and_in_progress() -> None:
    tasks = [
        _task("1"),
        _task("2", status=TaskStatus.IN_PROGRESS),
        _task("3", status=TaskStatus.BLOCKED),
        _task("4"),
    ]

    assert pending_count(tasks) == 2


def test_discovery_runs_when_nothing_is_pending() -> None:
    tasks = [_task("1", status=TaskStatus.COMPLETED)]

    assert should_run_discovery(
        tasks,
        iteration=3,
        last_discovery_iteration=1,
        discover_interval=5,
    )
    assert should_run_discovery([], iteration=1, last_discovery_iteration=0, discover_interval=5)


def test_discovery_runs_first_when_it_never_ran() -> None:
    tasks = [_task(str(number)) for number in range(5)]

    assert should_run_discovery(
        tasks,
        iteration=1,
        last_discovery_iteration=0,
        discover_interval=5,
    )


def test_discovery_waits_for_interval_while_backlog_is_healthy() -> None:
    tasks = [_task(str(number)) for number in range(5)]

    assert not should_run_discovery(
        tasks,
        iteration=4,
        last_discovery_iteration=1,
        discover_interval=5,
    )
    assert should_run_discovery(
        tasks,
        iteration=6,
        last_discovery_iteration=1,
        discover_interval=5,
    )


def test_discovery_runs_early_when_backlog_runs_low() -> None:
    tasks = [_task("1"), _task("2", status=TaskStatus.COMPLETED)]

    assert should_run_discovery(
        tasks,
        iteration=2,
        last_discovery_iteration=1,
        discover_interval=5,
    )
