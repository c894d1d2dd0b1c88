"""Backend interface for agent command execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True, slots=True)
class AgentCommand:
    """Argument vector for one agent invocation. Never passed through a shell."""

    argv: tuple[str, ...]
    cwd: Path | None = None

    @property
    def program(self) -> str:
        return self.argv[0]


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent invocation."""

    command: AgentCommand
    stop_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from the runner."""

    exit_code: int
    interrupted: bool = False


class AgentRunner(Protocol):
    """Protocol implemented by agent process runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the command to completion and return its exit status."""
