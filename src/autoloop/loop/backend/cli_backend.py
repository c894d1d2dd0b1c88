"""Subprocess-based runner for agent commands and sandbox runtime checks."""

from __future__ import annotations

import shutil
import subprocess
import time

from autoloop.errors import AgentExecutionError, SandboxUnavailableError
from autoloop.loop.backend.base import AgentRunRequest, AgentRunResult
from autoloop.loop.models import ContainerSandbox, MicroVmSandbox, NoSandbox, Sandbox

INTERRUPTED_EXIT_CODE = 130
_POLL_INTERVAL_SECONDS = 0.1


class CliAgentRunner:
    """Run an agent command with inherited stdio and report its exit status."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        command = request.command
        if not command.argv:
            raise AgentExecutionError("Agent command is empty.", transient=False)
        try:
            process = subprocess.Popen(  # noqa: S603
                list(command.argv),
                cwd=command.cwd,
            )
        except FileNotFoundError as error:
            raise AgentExecutionError(
                f"Agent command not found: {command.program}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentExecutionError(
                f"Agent command failed to start: {error}",
                transient=True,
            ) from error

        return _wait_with_shutdown(
            process,
            stop_requested=request.stop_requested,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
        )


def _wait_with_shutdown(
    process: subprocess.Popen[bytes],
    *,
    stop_requested,
    graceful_shutdown_seconds: int | None,
) -> AgentRunResult:
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return AgentRunResult(
                exit_code=returncode,
                interrupted=shutdown_deadline is not None,
            )

        if stop_requested is not None and stop_requested():
            now = time.monotonic()
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return AgentRunResult(exit_code=INTERRUPTED_EXIT_CODE, interrupted=True)

        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def check_sandbox_available(sandbox: Sandbox, *, timeout_seconds: float = 5.0) -> None:
    """Raise SandboxUnavailableError when the runtime behind a sandbox is unreachable."""

    if isinstance(sandbox, NoSandbox):
        return
    if isinstance(sandbox, ContainerSandbox):
        _check_runtime(
            ["docker", "info"],
            missing_hint="docker not found in PATH; install Docker or use --sandbox=none",
            failure_hint="docker daemon is not running; start Docker Desktop or the docker service",
            timeout_seconds=timeout_seconds,
        )
        return
    if isinstance(sandbox, MicroVmSandbox):
        _check_runtime(
            ["docker", "sandbox", "version"],
            missing_hint="docker not found in PATH; install Docker Desktop",
            failure_hint=(
                "docker sandbox plugin not available; install Docker Desktop with Sandbox support"
            ),
            timeout_seconds=timeout_seconds,
        )
        return
    raise TypeError(f"Unknown sandbox variant: {sandbox!r}")


def _check_runtime(
    argv: list[str],
    *,
    missing_hint: str,
    failure_hint: str,
    timeout_seconds: float,
) -> None:
    if shutil.which(argv[0]) is None:
        raise SandboxUnavailableError(missing_hint)
    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout_seconds,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        raise SandboxUnavailableError(f"{failure_hint} ({error})") from error
    if completed.returncode != 0:
        raise SandboxUnavailableError(failure_hint)
