from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner
from conftest import RecordingRunner, write_document

from autoloop import main as main_module
from autoloop.errors import SandboxUnavailableError
from autoloop.loop.controllers import AutoloopCliController, detect_quality_checks
from autoloop.loop.document import AutoloopPaths, load_document
from autoloop.loop.models import LoopConfig, Task, TaskStatus
from autoloop.main import autoloop

pytestmark = [
    allure.epic("Autonomous Loop"),
    allure.feature("CLI"),
]


def _use_runner(monkeypatch, runner: RecordingRunner, availability_check=None) -> None:
    controller = AutoloopCliController(
        runner=runner,
        availability_check=availability_check or (lambda sandbox, **_: None),
    )
    monkeypatch.setattr(main_module, "CONTROLLER", controller)


def test_init_creates_document_prompt_and_journal(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text("[project]\nname='x'\n", "utf-8")

    result = CliRunner().invoke(
        autoloop,
        ["init", "--project-dir", str(tmp_path), "--ai-tool", "codex", "--max-iterations", "7"],
    )

    assert result.exit_code == 0, result.output
    paths = AutoloopPaths.for_project(tmp_path)
    assert paths.document.exists()
    assert paths.prompt.exists()
    assert paths.journal.exists()
    assert "Quality checks: pytest, ruff check ." in result.output

    document = load_document(paths.document)
    assert document.config.ai_tool == "codex"
    assert document.config.max_iterations == 7
    assert document.config.quality_checks == ["pytest", "ruff check ."]
    assert "```bash\npytest" in paths.prompt.read_text("utf-8")


def test_init_with_prd_converts_tasks(tmp_path: Path) -> None:
    prd = tmp_path / "prd-auth.md"
    prd.write_text("# Auth\n", "utf-8")
    (tmp_path / "tasks-prd-auth.md").write_text(
        "- [ ] 1.0 Parent\n  - [ ] 1.1 Child\n",
        "utf-8",
    )

    result = CliRunner().invoke(
        autoloop,
        ["init", "--project-dir", str(tmp_path), "--prd", str(prd), "--sandbox", "docker"],
    )

    assert result.exit_code == 0, result.output
    document = load_document(AutoloopPaths.for_project(tmp_path).document)
    assert document.project.name == "auth"
    assert [task.id for task in document.tasks] == ["1.0", "1.1"]
    assert document.config.sandbox == "docker"
    assert "Sandbox: docker (image node:lts)" in result.output


def test_init_refuses_to_overwrite_existing_document(project_dir: Path) -> None:
    write_document(project_dir, [Task(id="1", title="Keep me")])

    result = CliRunner().invoke(autoloop, ["init", "--project-dir", str(project_dir)])

    assert result.exit_code != 0
    assert "already initialized" in result.output
    assert load_document(AutoloopPaths.for_project(project_dir).document).tasks[0].id == "1"


def test_init_rejects_invalid_sandbox_image(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        autoloop,
        [
            "init",
            "--project-dir",
            str(tmp_path),
            "--sandbox",
            "docker",
            "--sandbox-image",
            "node;rm -rf /",
        ],
    )

    assert result.exit_code != 0
    assert "Invalid sandbox image" in result.output
    assert not AutoloopPaths.for_project(tmp_path).document.exists()


def test_detect_quality_checks_prefers_go_over_node(tmp_path: Path) -> None:
    assert detect_quality_checks(tmp_path) == []
    (tmp_path / "package.json").write_text("{}", "utf-8")
    assert detect_quality_checks(tmp_path)[0] == "npm test"
    (tmp_path / "go.mod").write_text("module x\n", "utf-8")
    assert detect_quality_checks(tmp_path)[0] == "go test ./..."


def test_convert_keeps_existing_config(project_dir: Path) -> None:
    write_document(project_dir, [], config=LoopConfig(ai_tool="amp", max_iterations=9))
    prd = project_dir / "plan.md"
    prd.write_text("# Plan\n", "utf-8")
    (project_dir / "tasks-plan.md").write_text("- [ ] 1.0 Only task\n", "utf-8")

    result = CliRunner().invoke(autoloop, ["convert", "--project-dir", str(project_dir), str(prd)])

    assert result.exit_code == 0, result.output
    assert "Tasks: 1" in result.output
    document = load_document(AutoloopPaths.for_project(project_dir).document)
    assert document.config.ai_tool == "amp"
    assert document.config.max_iterations == 9
    assert document.tasks[0].title == "Only task"


def test_task_commands_mutate_document_and_journal(project_dir: Path) -> None:
    write_document(project_dir, [Task(id="1", title="First")])
    runner = CliRunner()
    base = ["--project-dir", str(project_dir)]

    added = runner.invoke(
        autoloop,
        ["task", "add", *base, "2", "Second", "--priority", "high", "--depends-on", "1"],
    )
    completed = runner.invoke(
        autoloop,
        ["task", "complete", *base, "1", "--commit-sha", "abc123", "--notes", "by hand"],
    )
    skipped = runner.invoke(autoloop, ["task", "skip", *base, "2"])
    reset = runner.invoke(autoloop, ["task", "reset", *base, "1"])
    listed = runner.invoke(autoloop, ["task", "list", *base])

    assert added.exit_code == 0, added.output
    assert "Added task 2: Second" in added.output
    assert completed.exit_code == 0, completed.output
    assert "Task 1 marked as completed" in completed.output
    assert skipped.exit_code == 0
    assert reset.exit_code == 0
    assert "[ ] 1 First" in listed.output
    assert "[-] 2 Second" in listed.output

    paths = AutoloopPaths.for_project(project_dir)
    document = load_document(paths.document)
    first, second = document.tasks
    assert first.status == TaskStatus.PENDING
    assert first.commit_sha is None
    assert first.notes == "by hand"
    assert second.status == TaskStatus.SKIPPED
    assert second.depends_on == ["1"]
    assert second.source == "manual"

    journal = paths.journal.read_text("utf-8").splitlines()
    assert len(journal) == 4
    assert journal[0].endswith("[task:2] MANUAL: Task added manually")
    assert journal[1].endswith("[task:1] COMPLETED: Task marked completed manually")


def test_task_add_warns_about_unknown_dependency(project_dir: Path) -> None:
    write_document(project_dir, [])

    result = CliRunner().invoke(
        autoloop,
        ["task", "add", "--project-dir", str(project_dir), "1", "Lonely", "--depends-on", "9"],
    )

    assert result.exit_code == 0, result.output
    assert "Warning: task 1 depends on unknown task: 9" in result.output


def test_task_errors_exit_non_zero(project_dir: Path) -> None:
    write_document(project_dir, [Task(id="1", title="First")])
    runner = CliRunner()

    missing = runner.invoke(autoloop, ["task", "skip", "--project-dir", str(project_dir), "42"])
    duplicate = runner.invoke(
        autoloop,
        ["task", "add", "--project-dir", str(project_dir), "1", "Again"],
    )

    assert missing.exit_code != 0
    assert "Task not found: 42" in missing.output
    assert duplicate.exit_code != 0
    assert "Task with ID 1 already exists" in duplicate.output


def test_commands_without_init_explain_next_step(tmp_path: Path) -> None:
    result = CliRunner().invoke(autoloop, ["status", "--project-dir", str(tmp_path)])

    assert result.exit_code != 0
    assert "autoloop init" in result.output


def test_status_reports_progress_and_next_task(project_dir: Path) -> None:
    write_document(
        project_dir,
        [
            Task(id="1", title="Done", status=TaskStatus.COMPLETED),
            Task(id="2", title="Next up"),
            Task(id="3", title="Later", depends_on=["2"]),
        ],
    )

    result = CliRunner().invoke(autoloop, ["status", "--project-dir", str(project_dir)])

    assert result.exit_code == 0, result.output
    assert "Progress: 1/3 (33%)" in result.output
    assert "Status: in_progress" in result.output
    assert "Next task: 2 Next up" in result.output
    assert "pending=2" in result.output


def test_start_dry_run_does_not_invoke_agent(project_dir: Path, monkeypatch) -> None:
    write_document(project_dir, [Task(id="1", title="One")], config=LoopConfig(ai_tool="codex"))
    runner = RecordingRunner()
    _use_runner(monkeypatch, runner)

    result = CliRunner().invoke(
        autoloop,
        ["start", "--project-dir", str(project_dir), "--dry-run", "--iterations", "4"],
    )

    assert result.exit_code == 0, result.output
    assert "Max iterations: 4" in result.output
    assert "Dry run" in result.output
    assert runner.requests == []


def test_start_exhausts_and_exits_zero(project_dir: Path, monkeypatch) -> None:
    write_document(project_dir, [Task(id="1", title="One")], config=LoopConfig(ai_tool="codex"))
    monkeypatch.setenv("AUTOLOOP_PAUSE_SECONDS", "0")
    runner = RecordingRunner(exit_codes=[0, 1])
    _use_runner(monkeypatch, runner)

    result = CliRunner().invoke(
        autoloop,
        ["start", "--project-dir", str(project_dir), "--iterations", "2", "-y"],
    )

    assert result.exit_code == 0, result.output
    assert len(runner.requests) == 2
    assert "Iteration limit reached." in result.output
    assert "remaining=1" in result.output
    assert "[iteration:2] Agent exited with code 1" in result.output


def test_start_with_no_tasks_completes_immediately(project_dir: Path, monkeypatch) -> None:
    write_document(project_dir, [])
    runner = RecordingRunner()
    _use_runner(monkeypatch, runner)

    result = CliRunner().invoke(autoloop, ["start", "--project-dir", str(project_dir), "--yes"])

    assert result.exit_code == 0, result.output
    assert "All tasks completed." in result.output
    assert runner.requests == []


def test_start_declined_confirmation_aborts(project_dir: Path, monkeypatch) -> None:
    write_document(project_dir, [Task(id="1", title="One")])
    runner = RecordingRunner()
    _use_runner(monkeypatch, runner)

    result = CliRunner().invoke(
        autoloop,
        ["start", "--project-dir", str(project_dir)],
        input="n\n",
    )

    assert result.exit_code == 0, result.output
    assert "Aborted." in result.output
    assert runner.requests == []


def test_start_fails_when_sandbox_runtime_unavailable(project_dir: Path, monkeypatch) -> None:
    write_document(project_dir, [Task(id="1", title="One")])
    runner = RecordingRunner()

    def _unavailable(sandbox, **_):
        raise SandboxUnavailableError("docker daemon is not running")

    _use_runner(monkeypatch, runner, availability_check=_unavailable)

    result = CliRunner().invoke(
        autoloop,
        ["start", "--project-dir", str(project_dir), "--sandbox", "docker", "-y"],
    )

    assert result.exit_code != 0
    assert "docker daemon is not running" in result.output
    assert runner.requests == []
    raw = json.loads(AutoloopPaths.for_project(project_dir).document.read_text("utf-8"))
    assert raw["config"]["sandbox"] == "none"


def test_start_failed_run_exits_non_zero(project_dir: Path, monkeypatch) -> None:
    write_document(project_dir, [Task(id="1", title="One")], config=LoopConfig(ai_tool="codex"))
    monkeypatch.setenv("AUTOLOOP_PAUSE_SECONDS", "0")
    document_file = AutoloopPaths.for_project(project_dir).document
    runner = RecordingRunner(on_run=lambda _: document_file.write_text("[]", "utf-8"))
    _use_runner(monkeypatch, runner)

    result = CliRunner().invoke(
        autoloop,
        ["start", "--project-dir", str(project_dir), "--iterations", "3", "-y"],
    )

    assert result.exit_code != 0
    assert "iteration 2: failed to reload document" in result.output
    assert "Autonomous loop failed." in result.output


def test_version_option() -> None:
    result = CliRunner().invoke(autoloop, ["--version"])

    assert result.exit_code == 0
    assert "0.4.0" in result.output


def test_status_lists_document_problems_and_recent_journal(project_dir: Path) -> None:
    write_document(project_dir, [Task(id="1", title="Orphan", depends_on=["404"])])
    journal = AutoloopPaths.for_project(project_dir).journal
    journal.write_text("[2026-01-01T00:00:00+00:00] [iteration:1] LEARNING: cache deps\n", "utf-8")

    result = CliRunner().invoke(autoloop, ["status", "--project-dir", str(project_dir)])

    assert result.exit_code == 0, result.output
    assert "Problem: task 1 depends on unknown task: 404" in result.output
    assert "Recent journal:" in result.output
    assert "LEARNING: cache deps" in result.output
    assert "Next task: -" in result.output


def test_pilot_dry_run_writes_nothing(tmp_path: Path, monkeypatch) -> None:
    runner = RecordingRunner()
    _use_runner(monkeypatch, runner)

    result = CliRunner().invoke(
        autoloop,
        ["pilot", "--project-dir", str(tmp_path), "--ai-tool", "codex", "--dry-run"],
    )

    assert result.exit_code == 0, result.output
    assert "Mode: pilot (discover every 5 iterations, up to 10 tasks each)" in result.output
    assert "Loop plan:" in result.output
    assert "Dry run" in result.output
    assert not AutoloopPaths.for_project(tmp_path).directory.exists()
    assert runner.requests == []


def test_pilot_initializes_project_and_runs_discovery(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AUTOLOOP_PAUSE_SECONDS", "0")
    runner = RecordingRunner()
    _use_runner(monkeypatch, runner)
    paths = AutoloopPaths.for_project(tmp_path)

    result = CliRunner().invoke(
        autoloop,
        [
            "pilot",
            "--project-dir",
            str(tmp_path),
            "--ai-tool",
            "codex",
            "--iterations",
            "4",
            "--max-tasks",
            "3",
            "--focus",
            "testing",
            "-y",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Discovery iterations: 2" in result.output
    assert "No new tasks after 2 discoveries" in result.output
    assert len(runner.requests) == 2
    assert str(paths.discovery_prompt) in runner.requests[0].command.argv
    assert paths.prompt.exists()
    assert paths.journal.exists()
    discovery_prompt = paths.discovery_prompt.read_text("utf-8")
    assert "- **Max new tasks to generate**: 3" in discovery_prompt
    assert "### Focus Area: testing" in discovery_prompt

    document = load_document(paths.document)
    assert document.config.pilot_mode is True
    assert document.config.max_iterations == 4
    assert document.config.pilot is not None
    assert document.config.pilot.focus == "testing"

    status = CliRunner().invoke(autoloop, ["status", "--project-dir", str(tmp_path)])
    assert "Mode: pilot (discover every 5 iterations, up to 3 tasks each, focus testing)" in (
        status.output
    )


def test_pilot_keeps_existing_tasks_and_prompt(project_dir: Path, monkeypatch) -> None:
    write_document(project_dir, [Task(id="1", title="One")])
    runner = RecordingRunner()
    _use_runner(monkeypatch, runner)
    paths = AutoloopPaths.for_project(project_dir)

    result = CliRunner().invoke(
        autoloop,
        [
            "pilot",
            "--project-dir",
            str(project_dir),
            "--ai-tool",
            "codex",
            "--iterations",
            "1",
            "-y",
        ],
    )

    assert result.exit_code == 0, result.output
    document = load_document(paths.document)
    assert [task.id for task in document.tasks] == ["1"]
    assert document.config.pilot_mode is True
    assert paths.prompt.read_text("utf-8") == "Do the next task.\n"
    assert "Run 'autoloop start' to continue" in result.output


def test_pilot_declined_confirmation_writes_nothing(tmp_path: Path, monkeypatch) -> None:
    runner = RecordingRunner()
    _use_runner(monkeypatch, runner)

    result = CliRunner().invoke(
        autoloop,
        ["pilot", "--project-dir", str(tmp_path), "--ai-tool", "codex"],
        input="n\n",
    )

    assert result.exit_code == 0, result.output
    assert "Aborted." in result.output
    assert not AutoloopPaths.for_project(tmp_path).document.exists()
    assert runner.requests == []
