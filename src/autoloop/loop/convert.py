"""Markdown plan -> task document conversion."""

from __future__ import annotations

import re
from pathlib import Path

from autoloop.errors import DocumentError, DocumentParseError
from autoloop.loop.document import new_document
from autoloop.loop.models import (
    Complexity,
    Document,
    LoopConfig,
    Priority,
    Task,
    TaskSource,
    TaskStatus,
)
from autoloop.loop.progress import recalculate

# "- [ ] 1.1 Title [~3,000 tokens - Medium]"
_TASK_LINE_RE = re.compile(
    r"^(\s*)- \[([ xX])\]\s*(\d+\.\d+)\s+(.+?)(?:\s*\[~[\d,]+\s+tokens?\s*-\s*(\w+)\])?\s*$",
)
_TITLE_RE = re.compile(r"^#\s+(.+)$")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\- _]")
_SLUG_DASH_RE = re.compile(r"[\s_\-]+")
_COMPLEXITIES = frozenset(item.value for item in Complexity)


def convert_markdown(
    prd_path: Path,
    tasks_path: Path | None = None,
    *,
    config: LoopConfig | None = None,
) -> Document:
    """Build a document from a PRD markdown file and optional task list."""

    prd_text = _read(prd_path, "PRD")
    name, description = extract_metadata(prd_text)
    document = new_document(name, description, config=config)
    document.project.source_prd = str(prd_path)

    if tasks_path is not None:
        document.tasks = parse_task_markdown(_read(tasks_path, "tasks file"))

    document.progress = recalculate(document)
    return document


def extract_metadata(content: str) -> tuple[str, str]:
    """Project slug and description from the first H1 heading."""

    for line in content.splitlines():
        match = _TITLE_RE.match(line.strip())
        if match:
            title = match.group(1).strip()
            return slugify(title), title
    return "unnamed-project", "Converted from PRD"


def slugify(text: str) -> str:
    lowered = _SLUG_STRIP_RE.sub("", text.lower())
    return _SLUG_DASH_RE.sub("-", lowered).strip("-")


def parse_task_markdown(content: str) -> list[Task]:
    """Parse checkbox task lines; indented lines become children of the last parent."""

    tasks: list[Task] = []
    parent_id: str | None = None
    for line in content.splitlines():
        match = _TASK_LINE_RE.match(line)
        if match is None:
            continue
        indent, checkbox, task_id, title, complexity_raw = match.groups()
        complexity = (complexity_raw or "").strip().lower()
        task = Task(
            id=task_id,
            title=title.strip(),
            status=TaskStatus.COMPLETED if checkbox in {"x", "X"} else TaskStatus.PENDING,
            priority=Priority.MEDIUM,
            complexity=complexity if complexity in _COMPLEXITIES else Complexity.MEDIUM.value,
            source=TaskSource.PRD.value,
        )
        if indent:
            task.parent_id = parent_id
            if parent_id is not None:
                task.depends_on = [parent_id]
        else:
            parent_id = task.id
        tasks.append(task)

    if not tasks:
        raise DocumentParseError("No valid tasks found in markdown")
    return tasks


def find_tasks_file(prd_path: Path) -> Path | None:
    """Locate `tasks-<name>.md` next to the PRD."""

    candidate = prd_path.with_name(f"tasks-{prd_path.name}")
    return candidate if candidate.exists() else None


def _read(path: Path, label: str) -> str:
    try:
        return path.read_text("utf-8")
    except OSError as error:
        raise DocumentError(f"Failed to read {label} {path}: {error}") from error
