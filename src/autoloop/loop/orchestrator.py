"""Bounded iteration driver that invokes an external agent until the task list is done.

Each iteration reloads the document from disk, asks the task graph for the
next eligible task, builds the agent command for the configured sandbox, and
runs it as a child process. The document, not the process exit code, is the
source of truth: agent failures are logged and the loop moves on. The
orchestrator never writes the document.

In pilot mode some iterations run the discovery prompt instead, asking the
agent to append new tasks; see `should_run_discovery` for the cadence.
"""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from autoloop.config import Settings
from autoloop.errors import AgentExecutionError, ConfigurationError, DocumentError
from autoloop.loop.backend.agents import (
    AgentInvocation,
    build_command,
    container_path,
    require_supported_tool,
    resolve_sandbox,
)
from autoloop.loop.backend.base import AgentRunner, AgentRunRequest
from autoloop.loop.backend.cli_backend import check_sandbox_available
from autoloop.loop.document import AutoloopPaths, load_document
from autoloop.loop.models import (
    DEFAULT_DISCOVER_INTERVAL,
    DEFAULT_DISCOVERY_PROMPT_FILE,
    MAX_EMPTY_DISCOVERIES,
    ContainerSandbox,
    Document,
    LoopConfig,
    PilotConfig,
    Sandbox,
)
from autoloop.loop.tasks import next_task, pending_count, remaining_count, should_run_discovery

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    """Run-level states. The last four are terminal."""

    STARTING = "starting"
    ITERATING = "iterating"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class LoopRunConfig:
    """Immutable settings for one loop run.

    A run is in pilot mode when `discovery_prompt_path` is set: it then
    alternates discovery iterations, which ask the agent to add tasks, with
    implementation iterations.
    """

    project_dir: Path
    document_path: Path
    prompt_path: Path
    ai_tool: str
    sandbox: Sandbox
    max_iterations: int
    pause_seconds: float = 2.0
    max_consecutive_failures: int = 0
    graceful_shutdown_seconds: int = 30
    runtime_check_timeout_seconds: float = 5.0
    discovery_prompt_path: Path | None = None
    discover_interval: int = DEFAULT_DISCOVER_INTERVAL

    @property
    def pilot_mode(self) -> bool:
        return self.discovery_prompt_path is not None

    @classmethod
    def build(  # noqa: PLR0913
        cls,
        *,
        project_dir: Path,
        config: LoopConfig,
        settings: Settings,
        iterations: int | None = None,
        sandbox: str | None = None,
        sandbox_image: str | None = None,
        sandbox_template: str | None = None,
    ) -> LoopRunConfig:
        """Combine document config, process settings, and one-off CLI overrides."""

        paths = AutoloopPaths.for_project(project_dir)
        max_iterations = iterations if iterations else config.max_iterations
        if max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {max_iterations}")

        discovery_prompt_path = None
        discover_interval = DEFAULT_DISCOVER_INTERVAL
        if config.pilot_mode:
            pilot = config.pilot or PilotConfig()
            if pilot.discover_interval < 1:
                raise ConfigurationError(
                    f"discover_interval must be >= 1, got {pilot.discover_interval}",
                )
            discover_interval = pilot.discover_interval
            discovery_prompt_path = project_dir / (
                config.discovery_prompt_file or DEFAULT_DISCOVERY_PROMPT_FILE
            )

        return cls(
            project_dir=project_dir,
            document_path=paths.document,
            prompt_path=project_dir / config.prompt_file,
            ai_tool=config.ai_tool,
            sandbox=resolve_sandbox(
                sandbox or config.sandbox,
                image=sandbox_image or config.sandbox_image,
                template=sandbox_template or config.sandbox_template,
            ),
            max_iterations=max_iterations,
            pause_seconds=settings.loop.pause_seconds,
            max_consecutive_failures=settings.loop.max_consecutive_failures,
            graceful_shutdown_seconds=settings.loop.graceful_shutdown_seconds,
            runtime_check_timeout_seconds=settings.loop.runtime_check_timeout_seconds,
            discovery_prompt_path=discovery_prompt_path,
            discover_interval=discover_interval,
        )


@dataclass(slots=True)
class LoopResult:
    """Terminal state and counters for CLI reporting."""

    state: LoopState
    iterations_run: int = 0
    agent_failures: int = 0
    remaining_tasks: int = 0
    discovery_iterations: int = 0
    failed_iteration: int | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state in {LoopState.COMPLETED, LoopState.EXHAUSTED, LoopState.CANCELLED}

    @property
    def implementation_iterations(self) -> int:
        return self.iterations_run - self.discovery_iterations


class LoopOrchestrator:
    """Drives reload -> select -> invoke -> pace until a terminal state."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        config: LoopRunConfig,
        runner: AgentRunner,
        loader: Callable[[Path], Document] = load_document,
        availability_check: Callable[..., None] = check_sandbox_available,
        reporter: Callable[[str], None] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.loader = loader
        self.availability_check = availability_check
        self.reporter = reporter
        self.environ = environ
        self.state = LoopState.STARTING
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def preflight(self) -> None:
        """Fail fast on a bad tool, an unmountable prompt, or an unreachable sandbox runtime."""

        require_supported_tool(self.config.ai_tool)
        if isinstance(self.config.sandbox, ContainerSandbox):
            for prompt_path in (self.config.prompt_path, self.config.discovery_prompt_path):
                if prompt_path is not None:
                    container_path(prompt_path, self.config.project_dir)
        self.availability_check(
            self.config.sandbox,
            timeout_seconds=self.config.runtime_check_timeout_seconds,
        )

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self) -> LoopResult:  # noqa: C901, PLR0912
        """Run iterations until completion, exhaustion, cancellation, or failure."""

        result = LoopResult(state=LoopState.STARTING)
        consecutive_failures = 0
        last_discovery = 0
        empty_discoveries = 0
        with stop_on_signals(lambda name: self.request_stop(signal_name=name)):
            self.state = LoopState.ITERATING
            for iteration in range(1, self.config.max_iterations + 1):
                if self._stop_requested:
                    return self._cancel(result)

                try:
                    document = self.loader(self.config.document_path)
                except DocumentError as error:
                    return self._fail(
                        result,
                        iteration=iteration,
                        message=f"iteration {iteration}: failed to reload document: {error}",
                    )

                result.remaining_tasks = remaining_count(document.tasks)
                discovery = self.config.pilot_mode and should_run_discovery(
                    document.tasks,
                    iteration=iteration,
                    last_discovery_iteration=last_discovery,
                    discover_interval=self.config.discover_interval,
                )
                tasks_before = len(document.tasks)
                if discovery:
                    last_discovery = iteration
                    result.discovery_iterations += 1
                    prompt_path = self.config.discovery_prompt_path or self.config.prompt_path
                    self._report(
                        logging.INFO,
                        f"[iteration:{iteration}] Discovery iteration {iteration} of "
                        f"{self.config.max_iterations}: analyzing project for new tasks",
                    )
                else:
                    task = next_task(document.tasks)
                    if task is None:
                        return self._complete(
                            result,
                            f"No eligible tasks left after {result.iterations_run} iterations.",
                        )
                    prompt_path = self.config.prompt_path
                    self._report(
                        logging.INFO,
                        f"[iteration:{iteration}] Starting iteration {iteration} of "
                        f"{self.config.max_iterations} (next task {task.id}: {task.title})",
                    )

                result.iterations_run = iteration
                try:
                    succeeded = self._invoke_agent(iteration, prompt_path)
                except ConfigurationError as error:
                    return self._fail(
                        result,
                        iteration=iteration,
                        message=f"iteration {iteration}: {error}",
                    )

                if succeeded:
                    consecutive_failures = 0
                    self._report(logging.INFO, f"[iteration:{iteration}] Iteration complete.")
                else:
                    result.agent_failures += 1
                    consecutive_failures += 1
                    limit = self.config.max_consecutive_failures
                    if limit > 0 and consecutive_failures >= limit:
                        return self._fail(
                            result,
                            iteration=iteration,
                            message=(
                                f"iteration {iteration}: {consecutive_failures} consecutive "
                                "agent failures, aborting. Check AI tool auth/config."
                            ),
                        )

                if discovery:
                    empty_discoveries, exhausted_work = self._record_discovery(
                        result,
                        iteration=iteration,
                        tasks_before=tasks_before,
                        empty_discoveries=empty_discoveries,
                    )
                    if exhausted_work:
                        return self._complete(
                            result,
                            f"No new tasks after {empty_discoveries} discoveries. Stopping.",
                        )

                if self._stop_requested:
                    return self._cancel(result)
                if iteration < self.config.max_iterations:
                    self._sleep_with_stop(self.config.pause_seconds)

        self.state = LoopState.EXHAUSTED
        result.state = LoopState.EXHAUSTED
        self._refresh_remaining(result)
        self._report(
            logging.INFO,
            f"Loop finished after {result.iterations_run} iterations. "
            f"Remaining tasks: {result.remaining_tasks}",
        )
        return result

    def _invoke_agent(self, iteration: int, prompt_path: Path) -> bool:
        """Run the agent once. Returns False on spawn failure or non-zero exit."""

        invocation = AgentInvocation(
            ai_tool=self.config.ai_tool,
            prompt_path=prompt_path,
            project_dir=self.config.project_dir,
            sandbox=self.config.sandbox,
        )
        try:
            command = build_command(invocation, environ=self.environ)
            execution = self.runner.run(
                AgentRunRequest(
                    command=command,
                    stop_requested=lambda: self._stop_requested,
                    graceful_shutdown_seconds=self.config.graceful_shutdown_seconds,
                ),
            )
        except AgentExecutionError as error:
            self._report(
                logging.WARNING,
                f"[iteration:{iteration}] Agent failed to run: {error}. Continuing...",
            )
            return False

        if execution.exit_code != 0:
            self._report(
                logging.WARNING,
                f"[iteration:{iteration}] Agent exited with code {execution.exit_code}. "
                "Continuing...",
            )
            return False
        return True

    def _record_discovery(
        self,
        result: LoopResult,
        *,
        iteration: int,
        tasks_before: int,
        empty_discoveries: int,
    ) -> tuple[int, bool]:
        """Return the updated empty-discovery streak and whether pilot has run out of work."""

        try:
            document = self.loader(self.config.document_path)
        except DocumentError as error:
            # The next iteration's reload fails the run if the document stays broken.
            logger.warning("Could not reload document after discovery: %s", error)
            return empty_discoveries + 1, False

        added = len(document.tasks) - tasks_before
        result.remaining_tasks = remaining_count(document.tasks)
        if added > 0:
            self._report(logging.INFO, f"[iteration:{iteration}] Discovery added {added} new tasks")
            return 0, False

        empty_discoveries += 1
        self._report(
            logging.WARNING,
            f"[iteration:{iteration}] Discovery found no new tasks "
            f"({empty_discoveries}/{MAX_EMPTY_DISCOVERIES} empty)",
        )
        exhausted = (
            empty_discoveries >= MAX_EMPTY_DISCOVERIES and pending_count(document.tasks) == 0
        )
        return empty_discoveries, exhausted

    def _complete(self, result: LoopResult, message: str) -> LoopResult:
        self.state = LoopState.COMPLETED
        result.state = LoopState.COMPLETED
        self._report(logging.INFO, message)
        return result

    def _cancel(self, result: LoopResult) -> LoopResult:
        self.state = LoopState.CANCELLED
        result.state = LoopState.CANCELLED
        self._refresh_remaining(result)
        self._report(
            logging.WARNING,
            f"Loop cancelled ({self._stop_signal_name or 'unknown'}) after "
            f"{result.iterations_run} iterations. Remaining tasks: {result.remaining_tasks}",
        )
        return result

    def _fail(self, result: LoopResult, *, iteration: int, message: str) -> LoopResult:
        self.state = LoopState.FAILED
        result.state = LoopState.FAILED
        result.failed_iteration = iteration
        result.error = message
        self._report(logging.ERROR, message)
        return result

    def _refresh_remaining(self, result: LoopResult) -> None:
        try:
            document = self.loader(self.config.document_path)
        except DocumentError as error:
            logger.warning("Could not reload document for final summary: %s", error)
            return
        result.remaining_tasks = remaining_count(document.tasks)

    def _report(self, level: int, message: str) -> None:
        """Send an operator line to the reporter, or to the log when there is none."""

        if self.reporter is None:
            logger.log(level, message)
        else:
            self.reporter(message)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))


@contextmanager
def stop_on_signals(on_signal: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to `on_signal` for the duration of the block.

    Outside the main thread handlers cannot be installed and the block runs
    without them. Previous handlers are restored on exit.
    """

    watched = [getattr(signal, name) for name in ("SIGINT", "SIGTERM") if hasattr(signal, name)]

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_signal(name)

    previous: dict[int, object] = {}
    try:
        for signum in watched:
            previous[signum] = signal.signal(signum, _handler)
    except ValueError:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        yield
        return
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
