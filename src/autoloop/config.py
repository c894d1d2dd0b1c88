"""Runtime configuration for the autonomous loop process."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class LoopRuntimeSettings:
    """Process-level loop pacing and shutdown settings.

    `max_consecutive_failures` is 0 (breaker off) by default, so agent failures
    are logged and the loop keeps going until its iteration ceiling. Set
    AUTOLOOP_MAX_CONSECUTIVE_FAILURES to e.g. 3 to abort on repeated failures
    such as missing agent credentials.
    """

    pause_seconds: float = 2.0
    max_consecutive_failures: int = 0
    graceful_shutdown_seconds: int = 30
    runtime_check_timeout_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_dir: Path = Path(".")
    loop: LoopRuntimeSettings = field(default_factory=LoopRuntimeSettings)

    @classmethod
    def from_env(cls, project_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            project_dir=project_dir or Path(os.getenv("AUTOLOOP_PROJECT_DIR", ".")),
            loop=LoopRuntimeSettings(
                pause_seconds=_env_float("AUTOLOOP_PAUSE_SECONDS", default=2.0),
                max_consecutive_failures=_env_int(
                    "AUTOLOOP_MAX_CONSECUTIVE_FAILURES",
                    default=0,
                ),
                graceful_shutdown_seconds=_env_int(
                    "AUTOLOOP_GRACEFUL_SHUTDOWN_SECONDS",
                    default=30,
                ),
                runtime_check_timeout_seconds=_env_float(
                    "AUTOLOOP_RUNTIME_CHECK_TIMEOUT_SECONDS",
                    default=5.0,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if loop settings are out of range."""

        if self.loop.pause_seconds < 0:
            raise ValueError("AUTOLOOP_PAUSE_SECONDS must be >= 0.")
        if self.loop.max_consecutive_failures < 0:
            raise ValueError("AUTOLOOP_MAX_CONSECUTIVE_FAILURES must be >= 0.")
        if self.loop.graceful_shutdown_seconds < 0:
            raise ValueError("AUTOLOOP_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.loop.runtime_check_timeout_seconds <= 0:
            raise ValueError("AUTOLOOP_RUNTIME_CHECK_TIMEOUT_SECONDS must be > 0.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error
