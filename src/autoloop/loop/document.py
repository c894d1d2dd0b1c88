"""File-based document store for the task list, loop config, and progress."""

from __future__ import annotations

import json
import os
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autoloop.errors import DocumentError, DocumentNotFoundError, DocumentParseError
from autoloop.loop.models import (
    DEFAULT_DISCOVERY_PROMPT_FILE,
    DOCUMENT_SCHEMA_VERSION,
    Document,
    LoopConfig,
    PilotConfig,
    Priority,
    Progress,
    Project,
    Task,
    TaskStatus,
    status_value,
)
from autoloop.loop.progress import recalculate
from autoloop.loop.tasks import ValidationError, validate

AUTOLOOP_DIR = Path(".claude") / "auto"
DOCUMENT_FILE = "prd.json"
PROMPT_FILE = "prompt.md"
DISCOVERY_PROMPT_FILE = "discovery-prompt.md"
JOURNAL_FILE = "progress.md"

_TASK_FIELDS = (
    "id",
    "title",
    "description",
    "status",
    "priority",
    "complexity",
    "parent_id",
    "depends_on",
    "source",
    "completed_at",
    "commit_sha",
    "iteration",
    "notes",
    "duration_seconds",
)


@dataclass(slots=True)
class AutoloopPaths:
    """Resolved file locations for one project."""

    root: Path
    directory: Path
    document: Path
    prompt: Path
    discovery_prompt: Path
    journal: Path

    @classmethod
    def for_project(cls, project_dir: Path) -> AutoloopPaths:
        directory = autoloop_dir(project_dir)
        return cls(
            root=project_dir,
            directory=directory,
            document=document_path(project_dir),
            prompt=directory / PROMPT_FILE,
            discovery_prompt=directory / DISCOVERY_PROMPT_FILE,
            journal=directory / JOURNAL_FILE,
        )


def autoloop_dir(project_dir: Path) -> Path:
    return project_dir / AUTOLOOP_DIR


def document_path(project_dir: Path) -> Path:
    return autoloop_dir(project_dir) / DOCUMENT_FILE


def utc_timestamp() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def new_document(name: str, description: str, config: LoopConfig | None = None) -> Document:
    """Create an empty document with default config."""

    now = utc_timestamp()
    return Document(
        project=Project(name=name, description=description, created_at=now, updated_at=now),
        config=config or LoopConfig(),
        tasks=[],
        progress=Progress(),
        version=DOCUMENT_SCHEMA_VERSION,
    )


def enable_pilot_mode(config: LoopConfig, pilot: PilotConfig) -> LoopConfig:
    config.pilot_mode = True
    config.pilot = pilot
    config.discovery_prompt_file = config.discovery_prompt_file or DEFAULT_DISCOVERY_PROMPT_FILE
    return config


def new_pilot_document(project_dir: Path, config: LoopConfig, pilot: PilotConfig) -> Document:
    """Create an empty document whose tasks will be discovered by the agent."""

    enable_pilot_mode(config, pilot)
    return new_document(
        project_dir.resolve().name or "unnamed-project",
        "Autonomous pilot mode: AI-discovered tasks",
        config=config,
    )


def load_document(path: Path) -> Document:
    """Load and validate the shape of a document file."""

    try:
        text = path.read_text("utf-8")
    except FileNotFoundError as error:
        raise DocumentNotFoundError(f"Document not found: {path}") from error
    except OSError as error:
        raise DocumentError(f"Failed to read document {path}: {error}") from error

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as error:
        raise DocumentParseError(f"Failed to parse document {path}: {error}") from error
    if not isinstance(raw, dict):
        raise DocumentParseError(f"Expected JSON object in {path}")

    try:
        return document_from_dict(raw)
    except (TypeError, ValueError) as error:
        raise DocumentParseError(f"Invalid document at {path}: {error}") from error


def save_document(document: Document, path: Path) -> None:
    """Recalculate progress and write the whole document atomically."""

    document.project.updated_at = utc_timestamp()
    document.progress = recalculate(document)
    payload = json.dumps(document_to_dict(document), ensure_ascii=False, indent=2) + "\n"

    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(payload, "utf-8")
        os.replace(tmp_path, path)
    except OSError as error:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise DocumentError(f"Failed to save document {path}: {error}") from error


def validate_document(document: Document) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if not document.version:
        errors.append(ValidationError(message="version is required"))
    if not document.project.name:
        errors.append(ValidationError(message="project.name is required"))
    errors.extend(validate(document.tasks))
    return errors


def document_from_dict(raw: dict[str, Any]) -> Document:
    project_raw = _object(raw.get("project", {}), "project")
    config_raw = _object(raw.get("config", {}), "config")
    progress_raw = _object(raw.get("progress", {}), "progress")
    tasks_raw = raw.get("tasks") or []
    if not isinstance(tasks_raw, list):
        raise TypeError("tasks must be an array")

    return Document(
        version=str(raw.get("version", "")),
        project=Project(
            name=str(project_raw.get("name", "")),
            description=str(project_raw.get("description", "")),
            source_prd=_optional_str(project_raw.get("source_prd")),
            created_at=str(project_raw.get("created_at", "")),
            updated_at=str(project_raw.get("updated_at", "")),
        ),
        config=_config_from_dict(config_raw),
        tasks=[task_from_dict(item) for item in tasks_raw],
        progress=Progress(
            total_tasks=int(progress_raw.get("total_tasks", 0)),
            completed_tasks=int(progress_raw.get("completed_tasks", 0)),
            total_iterations_run=int(progress_raw.get("total_iterations_run", 0)),
            last_iteration_at=_optional_str(progress_raw.get("last_iteration_at")),
            status=str(progress_raw.get("status", "")),
        ),
    )


def task_from_dict(item: Any) -> Task:
    """Build a task, tolerating numeric IDs and keeping unknown fields."""

    if not isinstance(item, dict):
        raise TypeError("task entry must be an object")
    depends_raw = item.get("depends_on") or []
    if not isinstance(depends_raw, list):
        raise TypeError(f"task {item.get('id')!r}: depends_on must be an array")
    iteration_raw = item.get("iteration")
    duration_raw = item.get("duration_seconds")

    return Task(
        id=_task_id(item.get("id")),
        title=str(item.get("title") or ""),
        description=str(item.get("description") or ""),
        status=_parse_status(item.get("status")),
        priority=_parse_priority(item.get("priority")),
        complexity=str(item.get("complexity") or ""),
        parent_id=_task_id(item.get("parent_id")) or None,
        depends_on=[_task_id(dep) for dep in depends_raw],
        source=_optional_str(item.get("source")),
        completed_at=_optional_str(item.get("completed_at")),
        commit_sha=_optional_str(item.get("commit_sha")),
        iteration=int(iteration_raw) if iteration_raw else None,
        notes=_optional_str(item.get("notes")),
        duration_seconds=float(duration_raw) if duration_raw is not None else None,
        extra={key: value for key, value in item.items() if key not in _TASK_FIELDS},
    )


def document_to_dict(document: Document) -> dict[str, Any]:
    config = document.config
    config_payload: dict[str, Any] = {
        "max_iterations": config.max_iterations,
        "quality_checks": list(config.quality_checks),
        "ai_tool": config.ai_tool,
        "ai_prompt_file": config.prompt_file,
        "sandbox": config.sandbox,
    }
    if config.sandbox_image:
        config_payload["sandbox_image"] = config.sandbox_image
    if config.sandbox_template:
        config_payload["sandbox_template"] = config.sandbox_template
    if config.pilot_mode:
        config_payload["pilot_mode"] = True
        if config.pilot is not None:
            pilot_payload: dict[str, Any] = {
                "discover_interval": config.pilot.discover_interval,
                "max_discovery_tasks": config.pilot.max_discovery_tasks,
            }
            if config.pilot.focus:
                pilot_payload["focus"] = config.pilot.focus
            config_payload["pilot_config"] = pilot_payload
        if config.discovery_prompt_file:
            config_payload["discovery_prompt_file"] = config.discovery_prompt_file

    project_payload: dict[str, Any] = {
        "name": document.project.name,
        "description": document.project.description,
    }
    if document.project.source_prd:
        project_payload["source_prd"] = document.project.source_prd
    project_payload["created_at"] = document.project.created_at
    project_payload["updated_at"] = document.project.updated_at

    progress_payload: dict[str, Any] = {
        "total_tasks": document.progress.total_tasks,
        "completed_tasks": document.progress.completed_tasks,
        "total_iterations_run": document.progress.total_iterations_run,
        "status": document.progress.status,
    }
    if document.progress.last_iteration_at:
        progress_payload["last_iteration_at"] = document.progress.last_iteration_at

    return {
        "version": document.version,
        "project": project_payload,
        "config": config_payload,
        "tasks": [task_to_dict(task) for task in document.tasks],
        "progress": progress_payload,
    }


def task_to_dict(task: Task) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": task.id,
        "title": task.title,
        "status": status_value(task.status),
    }
    optional: dict[str, Any] = {
        "description": task.description,
        "priority": task.priority.value if isinstance(task.priority, Priority) else task.priority,
        "complexity": task.complexity,
        "parent_id": task.parent_id,
        "depends_on": list(task.depends_on),
        "source": task.source,
        "completed_at": task.completed_at,
        "commit_sha": task.commit_sha,
        "iteration": task.iteration,
        "notes": task.notes,
        "duration_seconds": task.duration_seconds,
    }
    payload.update({key: value for key, value in optional.items() if value})
    for key, value in task.extra.items():
        payload.setdefault(key, value)
    return payload


def _config_from_dict(raw: dict[str, Any]) -> LoopConfig:
    defaults = LoopConfig()
    checks = raw.get("quality_checks") or []
    if not isinstance(checks, list):
        raise TypeError("config.quality_checks must be an array")
    return LoopConfig(
        max_iterations=int(raw.get("max_iterations", defaults.max_iterations)),
        ai_tool=str(raw.get("ai_tool") or defaults.ai_tool),
        sandbox=str(raw.get("sandbox") or defaults.sandbox),
        sandbox_image=_optional_str(raw.get("sandbox_image")),
        sandbox_template=_optional_str(raw.get("sandbox_template")),
        prompt_file=str(raw.get("ai_prompt_file") or defaults.prompt_file),
        quality_checks=[str(check) for check in checks],
        pilot_mode=bool(raw.get("pilot_mode", False)),
        pilot=_pilot_from_dict(raw.get("pilot_config")),
        discovery_prompt_file=_optional_str(raw.get("discovery_prompt_file")),
    )


def _pilot_from_dict(raw: Any) -> PilotConfig | None:
    if raw is None:
        return None
    pilot_raw = _object(raw, "config.pilot_config")
    defaults = PilotConfig()
    return PilotConfig(
        discover_interval=int(pilot_raw.get("discover_interval") or defaults.discover_interval),
        max_discovery_tasks=int(
            pilot_raw.get("max_discovery_tasks") or defaults.max_discovery_tasks,
        ),
        focus=_optional_str(pilot_raw.get("focus")),
    )


def _task_id(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise TypeError(f"task id must be a string or number, got: {value!r}")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, str):
        return value
    raise TypeError(f"task id must be a string or number, got: {value!r}")


def _parse_status(value: Any) -> TaskStatus | str:
    raw = "" if value is None else str(value)
    try:
        return TaskStatus(raw)
    except ValueError:
        return raw


def _parse_priority(value: Any) -> Priority | str:
    if value is None or value == "":
        return Priority.MEDIUM
    raw = str(value)
    try:
        return Priority(raw.strip().lower())
    except ValueError:
        return raw


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _object(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise TypeError(f"{name} must be an object")
    return value
