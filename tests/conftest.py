"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from autoloop.loop.backend.base import AgentRunRequest, AgentRunResult
from autoloop.loop.document import AutoloopPaths, new_document, save_document
from autoloop.loop.models import Document, LoopConfig, Task


@pytest.fixture(autouse=True)
def _clean_autoloop_env(monkeypatch):
    for name in (
        "AUTOLOOP_PROJECT_DIR",
        "AUTOLOOP_PAUSE_SECONDS",
        "AUTOLOOP_MAX_CONSECUTIVE_FAILURES",
        "AUTOLOOP_GRACEFUL_SHUTDOWN_SECONDS",
        "AUTOLOOP_RUNTIME_CHECK_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    """Project with an initialized autoloop directory and prompt file."""

    paths = AutoloopPaths.for_project(tmp_path)
    paths.directory.mkdir(parents=True)
    paths.prompt.write_text("Do the next task.\n", "utf-8")
    paths.journal.write_text("", "utf-8")
    return tmp_path


def write_document(
    project_dir: Path,
    tasks: list[Task],
    *,
    config: LoopConfig | None = None,
) -> Document:
    document = new_document("demo", "Demo project", config=config)
    document.tasks = tasks
    save_document(document, AutoloopPaths.for_project(project_dir).document)
    return document


class RecordingRunner:
    """Fake runner that records commands and returns scripted exit codes."""

    def __init__(self, exit_codes: list[int] | None = None, on_run=None) -> None:
        self.exit_codes = list(exit_codes or [])
        self.on_run = on_run
        self.requests: list[AgentRunRequest] = []

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.requests.append(request)
        if self.on_run is not None:
            self.on_run(len(self.requests))
        exit_code = self.exit_codes.pop(0) if self.exit_codes else 0
        return AgentRunResult(exit_code=exit_code)
