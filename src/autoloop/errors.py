"""Error taxonomy shared by the loop, the document store, and the CLI."""

from __future__ import annotations

from collections.abc import Sequence


class AutoloopError(RuntimeError):
    """Base class for all expected autoloop failures."""


class ConfigurationError(AutoloopError):
    """Invalid tool, sandbox mode, or sandbox image. Fatal before the loop starts."""


class UnsupportedToolError(ConfigurationError):
    """AI tool name is not in the fixed allow-list."""

    def __init__(self, tool: str, supported: Sequence[str]) -> None:
        super().__init__(
            f"Unsupported AI tool: {tool!r} (supported: {', '.join(supported)})",
        )
        self.tool = tool
        self.supported = tuple(supported)


class SandboxUnavailableError(AutoloopError):
    """Docker or docker sandbox runtime is not reachable."""


class DocumentError(AutoloopError):
    """Document load, parse, or save failure."""


class DocumentNotFoundError(DocumentError):
    """Document file does not exist."""


class DocumentParseError(DocumentError):
    """Document file exists but is not a valid document."""


class TaskGraphError(AutoloopError):
    """Manual task mutation failure."""


class TaskNotFoundError(TaskGraphError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class DuplicateTaskError(TaskGraphError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with ID {task_id} already exists")
        self.task_id = task_id


class AgentExecutionError(AutoloopError):
    """Agent process could not be started or prepared. Recoverable inside the loop."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
