"""Controllers for autoloop CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from autoloop.config import Settings
from autoloop.errors import ConfigurationError, DocumentError, DocumentNotFoundError
from autoloop.loop.backend.agents import (
    require_supported_tool,
    resolve_sandbox,
    sandbox_from_config,
    sandbox_mode,
)
from autoloop.loop.backend.base import AgentRunner
from autoloop.loop.backend.cli_backend import CliAgentRunner, check_sandbox_available
from autoloop.loop.convert import convert_markdown, find_tasks_file
from autoloop.loop.document import (
    AutoloopPaths,
    enable_pilot_mode,
    load_document,
    new_document,
    new_pilot_document,
    save_document,
    validate_document,
)
from autoloop.loop.models import (
    DEFAULT_DISCOVER_INTERVAL,
    DEFAULT_MAX_DISCOVERY_TASKS,
    DEFAULT_PILOT_ITERATIONS,
    ContainerSandbox,
    Document,
    LoopConfig,
    MicroVmSandbox,
    PilotConfig,
    Priority,
    Sandbox,
    Task,
    TaskSource,
    TaskStatus,
    status_value,
)
from autoloop.loop.orchestrator import LoopOrchestrator, LoopResult, LoopRunConfig, LoopState
from autoloop.loop.progress import (
    JournalEntry,
    JournalKind,
    append_entry,
    percent_complete,
    read_tail,
    recalculate,
)
from autoloop.loop.prompts import write_discovery_prompt, write_prompt
from autoloop.loop.tasks import (
    add_task,
    complete_task,
    count_by_status,
    next_task,
    reset_task,
    skip_task,
    validate,
)

logger = logging.getLogger(__name__)

_RECENT_JOURNAL_LINES = 5

_STATUS_ICONS = {
    TaskStatus.COMPLETED.value: "[x]",
    TaskStatus.SKIPPED.value: "[-]",
    TaskStatus.BLOCKED.value: "[!]",
    TaskStatus.IN_PROGRESS.value: "[>]",
}

# First matching marker file wins.
_QUALITY_CHECK_MARKERS: tuple[tuple[tuple[str, ...], list[str]], ...] = (
    (("go.mod",), ["go test ./...", "go vet ./...", "go build ./..."]),
    (("package.json",), ["npm test", "npm run lint", "npm run build"]),
    (("Cargo.toml",), ["cargo test", "cargo clippy", "cargo build"]),
    (("pyproject.toml", "requirements.txt"), ["pytest", "ruff check ."]),
)


@dataclass(slots=True)
class InitCommand:
    """CLI input for project initialization."""

    project_dir: Path | None
    prd_path: Path | None = None
    ai_tool: str = "claude"
    max_iterations: int = 50
    sandbox: str = "none"
    sandbox_image: str | None = None
    sandbox_template: str | None = None


@dataclass(slots=True)
class ConvertCommand:
    project_dir: Path | None
    prd_path: Path


@dataclass(slots=True)
class StatusCommand:
    project_dir: Path | None


@dataclass(slots=True)
class StartCommand:
    """CLI input for one loop run. Overrides are not persisted."""

    project_dir: Path | None
    iterations: int | None = None
    assume_yes: bool = False
    dry_run: bool = False
    sandbox: str | None = None
    sandbox_image: str | None = None
    sandbox_template: str | None = None


@dataclass(slots=True)
class PilotCommand:
    """CLI input for a discover-and-implement run. Settings are persisted."""

    project_dir: Path | None
    iterations: int = DEFAULT_PILOT_ITERATIONS
    discover_interval: int = DEFAULT_DISCOVER_INTERVAL
    max_tasks: int = DEFAULT_MAX_DISCOVERY_TASKS
    focus: str | None = None
    ai_tool: str = "claude"
    sandbox: str = "none"
    sandbox_image: str | None = None
    sandbox_template: str | None = None
    assume_yes: bool = False
    dry_run: bool = False


@dataclass(slots=True)
class TaskListCommand:
    project_dir: Path | None


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for complete/skip/reset of one task."""

    project_dir: Path | None
    task_id: str
    action: str
    commit_sha: str | None = None
    notes: str | None = None


@dataclass(slots=True)
class TaskAddCommand:
    project_dir: Path | None
    task_id: str
    title: str
    priority: str = Priority.MEDIUM.value
    depends_on: tuple[str, ...] = ()
    parent_id: str | None = None
    description: str = ""


@dataclass(slots=True)
class StartOutcome:
    """Printable lines plus whether the run should exit with success."""

    lines: list[str] = field(default_factory=list)
    success: bool = True
    result: LoopResult | None = None


class AutoloopCliController:
    """Use-case handlers invoked by the CLI layer."""

    def __init__(
        self,
        *,
        runner: AgentRunner | None = None,
        availability_check: Callable[..., None] = check_sandbox_available,
    ) -> None:
        self.runner = runner
        self.availability_check = availability_check

    def init(self, command: InitCommand) -> list[str]:
        """Create the autoloop directory, prompt, journal, and task document."""

        settings = Settings.from_env(project_dir=command.project_dir)
        paths = AutoloopPaths.for_project(settings.project_dir)
        if paths.document.exists():
            raise DocumentError(
                f"Autoloop already initialized: {paths.document} exists. "
                "Use 'autoloop convert' to regenerate tasks.",
            )

        tool = require_supported_tool(command.ai_tool)
        sandbox = resolve_sandbox(
            command.sandbox,
            image=command.sandbox_image,
            template=command.sandbox_template,
        )
        config = LoopConfig(
            max_iterations=command.max_iterations,
            ai_tool=tool,
            sandbox=sandbox_mode(sandbox).value,
            sandbox_image=command.sandbox_image,
            sandbox_template=command.sandbox_template,
            quality_checks=detect_quality_checks(settings.project_dir),
        )

        if command.prd_path is not None:
            document = convert_markdown(
                command.prd_path,
                find_tasks_file(command.prd_path),
                config=config,
            )
        else:
            document = new_document(
                settings.project_dir.resolve().name or "unnamed-project",
                "",
                config=config,
            )

        paths.directory.mkdir(parents=True, exist_ok=True)
        write_prompt(paths.root / config.prompt_file, config)
        if not paths.journal.exists():
            paths.journal.write_text("", "utf-8")
        save_document(document, paths.document)
        logger.info("Initialized autoloop at %s", paths.directory)

        lines = [
            f"Initialized autoloop in {paths.directory}",
            f"Document: {paths.document}",
            f"Prompt: {paths.root / config.prompt_file}",
            f"Journal: {paths.journal}",
            f"AI tool: {config.ai_tool}",
            f"Sandbox: {_describe_sandbox(config)}",
        ]
        if config.quality_checks:
            lines.append(f"Quality checks: {', '.join(config.quality_checks)}")
        else:
            lines.append("Quality checks: none detected")
        lines.append(f"Tasks: {len(document.tasks)}")
        return lines

    def convert(self, command: ConvertCommand) -> list[str]:
        """Convert a markdown PRD (and its tasks file) into the task document."""

        settings = Settings.from_env(project_dir=command.project_dir)
        paths = AutoloopPaths.for_project(settings.project_dir)
        config = None
        if paths.document.exists():
            config = load_document(paths.document).config

        tasks_path = find_tasks_file(command.prd_path)
        document = convert_markdown(command.prd_path, tasks_path, config=config)
        save_document(document, paths.document)

        lines = [f"Converted {command.prd_path} -> {paths.document}"]
        if tasks_path is None:
            lines.append(
                f"No tasks file found next to {command.prd_path.name}; task list is empty.",
            )
        else:
            lines.append(f"Tasks: {len(document.tasks)} (from {tasks_path})")
        return lines

    def status(self, command: StatusCommand) -> list[str]:
        """Summarize progress, config, document problems, and recent journal lines."""

        settings = Settings.from_env(project_dir=command.project_dir)
        paths = AutoloopPaths.for_project(settings.project_dir)
        document = _load(settings.project_dir)
        progress = recalculate(document)
        counts = count_by_status(document.tasks)
        upcoming = next_task(document.tasks)

        lines = [
            f"Project: {document.project.name}",
            f"Status: {progress.status}",
            (
                f"Progress: {progress.completed_tasks}/{progress.total_tasks} "
                f"({percent_complete(progress)}%)"
            ),
            f"AI tool: {document.config.ai_tool}",
            f"Sandbox: {_describe_sandbox(document.config)}",
            f"Max iterations: {document.config.max_iterations}",
            f"Mode: {_describe_mode(document.config)}",
            f"Iterations run: {progress.total_iterations_run}",
            f"Last iteration: {progress.last_iteration_at or '-'}",
            "Tasks: " + " ".join(f"{key}={value}" for key, value in counts.items()),
            f"Next task: {upcoming.id} {upcoming.title}" if upcoming else "Next task: -",
        ]
        lines.extend(f"Problem: {error}" for error in validate_document(document))
        recent = read_tail(paths.journal, _RECENT_JOURNAL_LINES)
        if recent:
            lines.append("Recent journal:")
            lines.extend(f"  {line}" for line in recent)
        return lines

    def start(
        self,
        command: StartCommand,
        *,
        confirm: Callable[[str], bool] | None = None,
        reporter: Callable[[str], None] | None = None,
    ) -> StartOutcome:
        """Preflight, then run the loop unless this is a dry run or the user declines."""

        settings = Settings.from_env(project_dir=command.project_dir)
        settings.validate()
        project_dir = settings.project_dir.resolve()
        document = _load(project_dir)

        run_config = LoopRunConfig.build(
            project_dir=project_dir,
            config=document.config,
            settings=settings,
            iterations=command.iterations,
            sandbox=command.sandbox,
            sandbox_image=command.sandbox_image,
            sandbox_template=command.sandbox_template,
        )
        orchestrator = LoopOrchestrator(
            config=run_config,
            runner=self.runner or CliAgentRunner(),
            availability_check=self.availability_check,
            reporter=reporter,
        )
        orchestrator.preflight()

        summary = _start_summary(document, run_config)
        if command.dry_run:
            return StartOutcome(lines=[*summary, "Dry run: no agent was started."])

        if reporter is not None:
            for line in summary:
                reporter(line)
        if not command.assume_yes and confirm is not None and not confirm("Start the loop?"):
            return StartOutcome(lines=["Aborted."])

        result = orchestrator.run()
        return StartOutcome(lines=_result_lines(result), success=result.succeeded, result=result)

    def pilot(
        self,
        command: PilotCommand,
        *,
        confirm: Callable[[str], bool] | None = None,
        reporter: Callable[[str], None] | None = None,
    ) -> StartOutcome:
        """Put the project in pilot mode and run the discover-and-implement loop.

        An existing task list is kept; only the loop config is switched to
        pilot mode. Nothing is written before the confirmation.
        """

        settings = Settings.from_env(project_dir=command.project_dir)
        settings.validate()
        if command.discover_interval < 1:
            raise ConfigurationError(
                f"discover interval must be >= 1, got {command.discover_interval}",
            )
        if command.max_tasks < 1:
            raise ConfigurationError(f"max tasks must be >= 1, got {command.max_tasks}")
        project_dir = settings.project_dir.resolve()
        paths = AutoloopPaths.for_project(project_dir)

        tool = require_supported_tool(command.ai_tool)
        sandbox = resolve_sandbox(
            command.sandbox,
            image=command.sandbox_image,
            template=command.sandbox_template,
        )
        pilot = PilotConfig(
            discover_interval=command.discover_interval,
            max_discovery_tasks=command.max_tasks,
            focus=command.focus or None,
        )
        if paths.document.exists():
            document = load_document(paths.document)
            enable_pilot_mode(document.config, pilot)
        else:
            document = new_pilot_document(
                project_dir,
                LoopConfig(quality_checks=detect_quality_checks(project_dir)),
                pilot,
            )
        config = document.config
        config.max_iterations = command.iterations
        config.ai_tool = tool
        config.sandbox = sandbox_mode(sandbox).value
        config.sandbox_image = command.sandbox_image
        config.sandbox_template = command.sandbox_template

        run_config = LoopRunConfig.build(project_dir=project_dir, config=config, settings=settings)
        orchestrator = LoopOrchestrator(
            config=run_config,
            runner=self.runner or CliAgentRunner(),
            availability_check=self.availability_check,
            reporter=reporter,
        )
        orchestrator.preflight()

        summary = [*_start_summary(document, run_config), f"Mode: {_describe_pilot(pilot)}"]
        if command.dry_run:
            return StartOutcome(
                lines=[*summary, *_PILOT_PLAN, "Dry run: no agent was started."],
            )

        if reporter is not None:
            for line in summary:
                reporter(line)
        question = "Start pilot mode? This will analyze and modify your project."
        if not command.assume_yes and confirm is not None and not confirm(question):
            return StartOutcome(lines=["Aborted."])

        paths.directory.mkdir(parents=True, exist_ok=True)
        save_document(document, paths.document)
        if not run_config.prompt_path.exists():
            write_prompt(run_config.prompt_path, config)
        write_discovery_prompt(run_config.discovery_prompt_path or paths.discovery_prompt, config)
        if not paths.journal.exists():
            paths.journal.write_text("", "utf-8")
        logger.info("Pilot mode enabled at %s", paths.directory)

        result = orchestrator.run()
        return StartOutcome(
            lines=[*_result_lines(result), *_pilot_result_lines(paths, result)],
            success=result.succeeded,
            result=result,
        )

    def task_list(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        document = _load(settings.project_dir)
        lines = []
        for task in document.tasks:
            indent = "  " if task.parent_id else ""
            icon = _STATUS_ICONS.get(status_value(task.status), "[ ]")
            lines.append(f"{indent}{icon} {task.id} {task.title}")

        progress = recalculate(document)
        lines.append("")
        lines.append(
            f"Total: {progress.total_tasks}  Completed: {progress.completed_tasks}  "
            f"Pending: {progress.total_tasks - progress.completed_tasks}",
        )
        return lines

    def task_mutate(self, command: TaskMutateCommand) -> list[str]:
        """Apply complete/skip/reset, save, and journal the manual change."""

        settings = Settings.from_env(project_dir=command.project_dir)
        paths = AutoloopPaths.for_project(settings.project_dir)
        document = _load(settings.project_dir)

        if command.action == "complete":
            complete_task(
                document.tasks,
                command.task_id,
                commit_sha=command.commit_sha,
                notes=command.notes,
            )
            kind = JournalKind.COMPLETED
            message = "Task marked completed manually"
        elif command.action == "skip":
            skip_task(document.tasks, command.task_id)
            kind = JournalKind.MANUAL
            message = "Task skipped manually"
        elif command.action == "reset":
            reset_task(document.tasks, command.task_id)
            kind = JournalKind.MANUAL
            message = "Task reset to pending manually"
        else:
            raise ValueError(f"Unsupported task action: {command.action}")

        save_document(document, paths.document)
        entry = JournalEntry(kind=kind, message=message, task_id=command.task_id)
        append_entry(paths.journal, entry)
        return [f"Task {command.task_id} marked as {_ACTION_STATUS[command.action]}"]

    def task_add(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        paths = AutoloopPaths.for_project(settings.project_dir)
        document = _load(settings.project_dir)

        task = add_task(
            document.tasks,
            Task(
                id=command.task_id,
                title=command.title,
                status=TaskStatus.PENDING,
                priority=Priority(command.priority),
                description=command.description,
                parent_id=command.parent_id or None,
                depends_on=list(command.depends_on),
                source=TaskSource.MANUAL.value,
            ),
        )
        save_document(document, paths.document)
        append_entry(
            paths.journal,
            JournalEntry(kind=JournalKind.MANUAL, message="Task added manually", task_id=task.id),
        )

        lines = [f"Added task {task.id}: {task.title}"]
        lines.extend(
            f"Warning: {error}" for error in validate(document.tasks) if error.task_id == task.id
        )
        return lines


_ACTION_STATUS = {
    "complete": TaskStatus.COMPLETED.value,
    "skip": TaskStatus.SKIPPED.value,
    "reset": TaskStatus.PENDING.value,
}


def detect_quality_checks(project_dir: Path) -> list[str]:
    """Suggest quality gate commands from the project's build marker files."""

    for markers, checks in _QUALITY_CHECK_MARKERS:
        if any((project_dir / marker).exists() for marker in markers):
            return list(checks)
    return []


def _load(project_dir: Path) -> Document:
    paths = AutoloopPaths.for_project(project_dir)
    try:
        return load_document(paths.document)
    except DocumentNotFoundError as error:
        raise DocumentNotFoundError("No autoloop found. Run 'autoloop init' first.") from error


def _describe_sandbox(config: LoopConfig) -> str:
    try:
        sandbox = sandbox_from_config(config)
    except ConfigurationError:
        return f"{config.sandbox} (invalid)"
    return _describe_sandbox_variant(sandbox)


def _describe_sandbox_variant(sandbox: Sandbox) -> str:
    mode = sandbox_mode(sandbox).value
    if isinstance(sandbox, ContainerSandbox):
        return f"{mode} (image {sandbox.image})"
    if isinstance(sandbox, MicroVmSandbox) and sandbox.template:
        return f"{mode} (template {sandbox.template})"
    return mode


def _start_summary(document: Document, config: LoopRunConfig) -> list[str]:
    progress = recalculate(document)
    upcoming = next_task(document.tasks)
    return [
        f"Project: {document.project.name}",
        f"AI tool: {config.ai_tool}",
        f"Sandbox: {_describe_sandbox_variant(config.sandbox)}",
        f"Max iterations: {config.max_iterations}",
        f"Prompt: {config.prompt_path}",
        (
            f"Tasks: {progress.completed_tasks}/{progress.total_tasks} completed, "
            f"next: {upcoming.id if upcoming else '-'}"
        ),
    ]


def _result_lines(result: LoopResult) -> list[str]:
    if result.state == LoopState.COMPLETED:
        headline = "All tasks completed."
    elif result.state == LoopState.EXHAUSTED:
        headline = "Iteration limit reached."
    elif result.state == LoopState.CANCELLED:
        headline = "Loop cancelled."
    else:
        headline = f"Loop failed: {result.error}"
    return [
        headline,
        (
            f"Loop summary: state={result.state.value} iterations={result.iterations_run} "
            f"agent_failures={result.agent_failures} remaining={result.remaining_tasks}"
        ),
    ]


_PILOT_PLAN = [
    "Loop plan:",
    "  1. Discovery: analyze the project and add tasks",
    "  2. Implementation: pick and implement the top task",
    "  3. Repeat until max iterations or no more work",
]


def _describe_mode(config: LoopConfig) -> str:
    return _describe_pilot(config.pilot) if config.pilot_mode else "standard"


def _describe_pilot(pilot: PilotConfig | None) -> str:
    pilot = pilot or PilotConfig()
    text = (
        f"pilot (discover every {pilot.discover_interval} iterations, "
        f"up to {pilot.max_discovery_tasks} tasks each"
    )
    if pilot.focus:
        text += f", focus {pilot.focus}"
    return text + ")"


def _pilot_result_lines(paths: AutoloopPaths, result: LoopResult) -> list[str]:
    lines = [
        f"Discovery iterations: {result.discovery_iterations}",
        f"Implementation iterations: {result.implementation_iterations}",
    ]
    try:
        document = load_document(paths.document)
    except DocumentError as error:
        logger.warning("Could not load final task state: %s", error)
        lines.append("Could not load final task state.")
        return lines

    progress = recalculate(document)
    lines.append(f"Tasks: {progress.completed_tasks}/{progress.total_tasks} completed")
    if progress.completed_tasks < progress.total_tasks:
        lines.append("Run 'autoloop start' to continue, or 'autoloop status' for details.")
    return lines
