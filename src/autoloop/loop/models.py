"""Domain models for the task document and loop configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DOCUMENT_SCHEMA_VERSION = "1.0"
DEFAULT_SANDBOX_IMAGE = "node:lts"
DEFAULT_PROMPT_FILE = ".claude/auto/prompt.md"
DEFAULT_MAX_ITERATIONS = 50
DEFAULT_AI_TOOL = "claude"
DEFAULT_DISCOVERY_PROMPT_FILE = ".claude/auto/discovery-prompt.md"

# Pilot mode
DEFAULT_PILOT_ITERATIONS = 30
DEFAULT_DISCOVER_INTERVAL = 5
DEFAULT_MAX_DISCOVERY_TASKS = 10
MIN_PENDING_TASKS_FOR_DISCOVERY = 2
MAX_EMPTY_DISCOVERIES = 2


class TaskStatus(str, Enum):
    """Task lifecycle states stored in the document."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class Priority(str, Enum):
    """Selection tie-break priority, highest first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Lower rank wins. Anything unrecognized sorts after LOW.
PRIORITY_RANKS: dict[str, int] = {
    Priority.CRITICAL.value: 0,
    Priority.HIGH.value: 1,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 3,
}
UNKNOWN_PRIORITY_RANK = len(PRIORITY_RANKS)


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class TaskSource(str, Enum):
    """Where a task came from."""

    MANUAL = "manual"
    PRD = "prd"
    DISCOVERY = "pilot-discovery"


class LoopStatus(str, Enum):
    """Overall document progress status."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SandboxMode(str, Enum):
    """Persisted sandbox mode names."""

    NONE = "none"
    DOCKER = "docker"
    DOCKER_SANDBOX = "docker-sandbox"


@dataclass(frozen=True, slots=True)
class NoSandbox:
    """Run the agent binary directly on the host."""


@dataclass(frozen=True, slots=True)
class ContainerSandbox:
    """Run the agent in an ephemeral `docker run` container."""

    image: str = DEFAULT_SANDBOX_IMAGE


@dataclass(frozen=True, slots=True)
class MicroVmSandbox:
    """Run the agent in a reusable `docker sandbox` microVM keyed by template."""

    template: str | None = None
    name: str | None = None


Sandbox = NoSandbox | ContainerSandbox | MicroVmSandbox


@dataclass(slots=True)
class Task:
    """One unit of work in the document."""

    id: str
    title: str
    status: TaskStatus | str = TaskStatus.PENDING
    priority: Priority | str = Priority.MEDIUM
    description: str = ""
    complexity: str = ""
    parent_id: str | None = None
    depends_on: list[str] = field(default_factory=list)
    source: str | None = None
    completed_at: str | None = None
    commit_sha: str | None = None
    iteration: int | None = None
    notes: str | None = None
    duration_seconds: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Project:
    """Project metadata."""

    name: str
    description: str = ""
    source_prd: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass(slots=True)
class PilotConfig:
    """Discovery cadence for pilot mode."""

    discover_interval: int = DEFAULT_DISCOVER_INTERVAL
    max_discovery_tasks: int = DEFAULT_MAX_DISCOVERY_TASKS
    focus: str | None = None


@dataclass(slots=True)
class LoopConfig:
    """Loop settings persisted in the document `config` section."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    ai_tool: str = DEFAULT_AI_TOOL
    sandbox: str = SandboxMode.NONE.value
    sandbox_image: str | None = None
    sandbox_template: str | None = None
    prompt_file: str = DEFAULT_PROMPT_FILE
    quality_checks: list[str] = field(default_factory=list)
    pilot_mode: bool = False
    pilot: PilotConfig | None = None
    discovery_prompt_file: str | None = None


@dataclass(slots=True)
class Progress:
    """Aggregate counters derived from the task list."""

    total_tasks: int = 0
    completed_tasks: int = 0
    total_iterations_run: int = 0
    last_iteration_at: str | None = None
    status: str = LoopStatus.NOT_STARTED.value


@dataclass(slots=True)
class Document:
    """Aggregate root persisted as one JSON file."""

    project: Project
    config: LoopConfig = field(default_factory=LoopConfig)
    tasks: list[Task] = field(default_factory=list)
    progress: Progress = field(default_factory=Progress)
    version: str = DOCUMENT_SCHEMA_VERSION


def status_value(status: TaskStatus | str) -> str:
    """Return the raw string value for a known or unknown status."""

    return status.value if isinstance(status, TaskStatus) else str(status)


def priority_rank(priority: Priority | str | None) -> int:
    """Numeric rank for selection ordering (lower = higher priority)."""

    if priority is None:
        return UNKNOWN_PRIORITY_RANK
    raw = priority.value if isinstance(priority, Priority) else str(priority)
    return PRIORITY_RANKS.get(raw.strip().lower(), UNKNOWN_PRIORITY_RANK)
