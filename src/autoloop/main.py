"""CLI entrypoint for autoloop."""

import logging
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any

import rich_click as click

from autoloop import __version__
from autoloop.errors import AutoloopError
from autoloop.loop.backend.agents import SUPPORTED_AGENTS, SUPPORTED_SANDBOX_MODES
from autoloop.loop.controllers import (
    AutoloopCliController,
    ConvertCommand,
    InitCommand,
    PilotCommand,
    StartCommand,
    StatusCommand,
    TaskAddCommand,
    TaskListCommand,
    TaskMutateCommand,
)
from autoloop.loop.models import (
    DEFAULT_DISCOVER_INTERVAL,
    DEFAULT_MAX_DISCOVERY_TASKS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PILOT_ITERATIONS,
    Priority,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AutoloopCliController()

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

project_dir_option = click.option(
    "--project-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root. Defaults to AUTOLOOP_PROJECT_DIR or the current directory.",
)


def _handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn expected domain errors into a clean CLI failure."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (AutoloopError, ValueError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="autoloop")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def autoloop(log_level: str) -> None:
    """Run an AI coding agent in a bounded loop over a task list."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@autoloop.command("init")
@project_dir_option
@click.option(
    "--prd",
    "prd_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Markdown PRD to convert into the initial task list.",
)
@click.option(
    "--ai-tool",
    type=click.Choice(SUPPORTED_AGENTS, case_sensitive=False),
    default="claude",
    show_default=True,
    help="Agent CLI to invoke each iteration.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_ITERATIONS,
    show_default=True,
    help="Iteration ceiling stored in the document.",
)
@click.option(
    "--sandbox",
    type=click.Choice(SUPPORTED_SANDBOX_MODES, case_sensitive=False),
    default="none",
    show_default=True,
    help="Where the agent runs.",
)
@click.option("--sandbox-image", default=None, help="Docker image for --sandbox=docker.")
@click.option(
    "--sandbox-template",
    default=None,
    help="Template for --sandbox=docker-sandbox.",
)
@_handle_errors
def init(  # noqa: PLR0913
    project_dir: Path | None,
    prd_path: Path | None,
    ai_tool: str,
    max_iterations: int,
    sandbox: str,
    sandbox_image: str | None,
    sandbox_template: str | None,
) -> None:
    """Create `.claude/auto/` with the task document, prompt, and journal."""

    _emit_lines(
        CONTROLLER.init(
            InitCommand(
                project_dir=project_dir,
                prd_path=prd_path,
                ai_tool=ai_tool,
                max_iterations=max_iterations,
                sandbox=sandbox,
                sandbox_image=sandbox_image,
                sandbox_template=sandbox_template,
            ),
        ),
    )


@autoloop.command("convert")
@project_dir_option
@click.argument("prd_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_handle_errors
def convert(project_dir: Path | None, prd_path: Path) -> None:
    """Convert a markdown PRD and its `tasks-*.md` file into the task document."""

    _emit_lines(CONTROLLER.convert(ConvertCommand(project_dir=project_dir, prd_path=prd_path)))


@autoloop.command("status")
@project_dir_option
@_handle_errors
def status(project_dir: Path | None) -> None:
    """Show project progress, loop configuration, and the next task."""

    _emit_lines(CONTROLLER.status(StatusCommand(project_dir=project_dir)))


@autoloop.command("start")
@project_dir_option
@click.option(
    "--iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Override max iterations for this run.",
)
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Skip the confirmation prompt.")
@click.option("--dry-run", is_flag=True, help="Validate and print the plan without running.")
@click.option(
    "--sandbox",
    type=click.Choice(SUPPORTED_SANDBOX_MODES, case_sensitive=False),
    default=None,
    help="Override the sandbox mode for this run.",
)
@click.option("--sandbox-image", default=None, help="Override the docker image for this run.")
@click.option(
    "--sandbox-template",
    default=None,
    help="Override the docker sandbox template for this run.",
)
@_handle_errors
def start(  # noqa: PLR0913
    project_dir: Path | None,
    iterations: int | None,
    assume_yes: bool,
    dry_run: bool,
    sandbox: str | None,
    sandbox_image: str | None,
    sandbox_template: str | None,
) -> None:
    """Run the autonomous loop until tasks are done or iterations run out."""

    outcome = CONTROLLER.start(
        StartCommand(
            project_dir=project_dir,
            iterations=iterations,
            assume_yes=assume_yes,
            dry_run=dry_run,
            sandbox=sandbox,
            sandbox_image=sandbox_image,
            sandbox_template=sandbox_template,
        ),
        confirm=lambda question: click.confirm(question, default=True),
        reporter=click.echo,
    )
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException("Autonomous loop failed.")


@autoloop.command("pilot")
@project_dir_option
@click.option(
    "--iterations",
    type=click.IntRange(min=1),
    default=DEFAULT_PILOT_ITERATIONS,
    show_default=True,
    help="Max total iterations, discovery and implementation together.",
)
@click.option(
    "--discover-interval",
    type=click.IntRange(min=1),
    default=DEFAULT_DISCOVER_INTERVAL,
    show_default=True,
    help="Re-run discovery every N iterations.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_DISCOVERY_TASKS,
    show_default=True,
    help="Max tasks the agent may add per discovery.",
)
@click.option(
    "--focus",
    default=None,
    help="Focus area: testing, docs, security, performance, refactoring, or free text.",
)
@click.option(
    "--ai-tool",
    type=click.Choice(SUPPORTED_AGENTS, case_sensitive=False),
    default="claude",
    show_default=True,
    help="Agent CLI to invoke each iteration.",
)
@click.option(
    "--sandbox",
    type=click.Choice(SUPPORTED_SANDBOX_MODES, case_sensitive=False),
    default="none",
    show_default=True,
    help="Where the agent runs.",
)
@click.option("--sandbox-image", default=None, help="Docker image for --sandbox=docker.")
@click.option(
    "--sandbox-template",
    default=None,
    help="Template for --sandbox=docker-sandbox.",
)
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Skip the confirmation prompt.")
@click.option("--dry-run", is_flag=True, help="Validate and print the plan without running.")
@_handle_errors
def pilot(  # noqa: PLR0913
    project_dir: Path | None,
    iterations: int,
    discover_interval: int,
    max_tasks: int,
    focus: str | None,
    ai_tool: str,
    sandbox: str,
    sandbox_image: str | None,
    sandbox_template: str | None,
    assume_yes: bool,
    dry_run: bool,
) -> None:
    """Discover work and implement it in one autonomous loop.

    Discovery iterations ask the agent to add tasks to the document;
    implementation iterations work through them. No `init` is needed.
    """

    outcome = CONTROLLER.pilot(
        PilotCommand(
            project_dir=project_dir,
            iterations=iterations,
            discover_interval=discover_interval,
            max_tasks=max_tasks,
            focus=focus,
            ai_tool=ai_tool,
            sandbox=sandbox,
            sandbox_image=sandbox_image,
            sandbox_template=sandbox_template,
            assume_yes=assume_yes,
            dry_run=dry_run,
        ),
        confirm=lambda question: click.confirm(question, default=False),
        reporter=click.echo,
    )
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException("Pilot loop failed.")


@autoloop.group()
def task() -> None:
    """Manual task management."""


@task.command("list")
@project_dir_option
@_handle_errors
def task_list(project_dir: Path | None) -> None:
    """List tasks with status markers."""

    _emit_lines(CONTROLLER.task_list(TaskListCommand(project_dir=project_dir)))


@task.command("complete")
@project_dir_option
@click.argument("task_id")
@click.option("--commit-sha", default=None, help="Commit that completed the task.")
@click.option("--notes", default=None, help="Free-form completion notes.")
@_handle_errors
def task_complete(
    project_dir: Path | None,
    task_id: str,
    commit_sha: str | None,
    notes: str | None,
) -> None:
    """Mark a task completed."""

    _emit_lines(
        CONTROLLER.task_mutate(
            TaskMutateCommand(
                project_dir=project_dir,
                task_id=task_id,
                action="complete",
                commit_sha=commit_sha,
                notes=notes,
            ),
        ),
    )


@task.command("skip")
@project_dir_option
@click.argument("task_id")
@_handle_errors
def task_skip(project_dir: Path | None, task_id: str) -> None:
    """Mark a task skipped so dependents become eligible."""

    _emit_lines(
        CONTROLLER.task_mutate(
            TaskMutateCommand(project_dir=project_dir, task_id=task_id, action="skip"),
        ),
    )


@task.command("reset")
@project_dir_option
@click.argument("task_id")
@_handle_errors
def task_reset(project_dir: Path | None, task_id: str) -> None:
    """Return a task to pending and clear its completion data."""

    _emit_lines(
        CONTROLLER.task_mutate(
            TaskMutateCommand(project_dir=project_dir, task_id=task_id, action="reset"),
        ),
    )


@task.command("add")
@project_dir_option
@click.argument("task_id")
@click.argument("title")
@click.option(
    "--priority",
    type=click.Choice([item.value for item in Priority], case_sensitive=False),
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="ID of a task that must finish first. Can be repeated.",
)
@click.option("--parent-id", default=None, help="Parent task ID.")
@click.option("--description", default="", help="Longer task description.")
@_handle_errors
def task_add(  # noqa: PLR0913
    project_dir: Path | None,
    task_id: str,
    title: str,
    priority: str,
    depends_on: tuple[str, ...],
    parent_id: str | None,
    description: str,
) -> None:
    """Append a pending task."""

    _emit_lines(
        CONTROLLER.task_add(
            TaskAddCommand(
                project_dir=project_dir,
                task_id=task_id,
                title=title,
                priority=priority.lower(),
                depends_on=depends_on,
                parent_id=parent_id,
                description=description,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    autoloop()
