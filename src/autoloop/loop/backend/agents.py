"""Agent invocation adapter: builds argument vectors, never executes them.

Three execution targets are supported: the agent binary on the host, an
ephemeral `docker run` container with the project mounted at a fixed path,
and a reusable `docker sandbox` microVM that sees the project at the same
absolute path as the host.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from autoloop.errors import AgentExecutionError, ConfigurationError, UnsupportedToolError
from autoloop.loop.backend.base import AgentCommand
from autoloop.loop.models import (
    DEFAULT_SANDBOX_IMAGE,
    ContainerSandbox,
    LoopConfig,
    MicroVmSandbox,
    NoSandbox,
    Sandbox,
    SandboxMode,
)

SUPPORTED_AGENTS = ("claude", "amp", "cursor", "codex")
SUPPORTED_SANDBOX_MODES = tuple(mode.value for mode in SandboxMode)
CONTAINER_WORKDIR = "/workspace"
DEFAULT_MICROVM_AGENT = "claude"

# Host variables forwarded into `docker run`. Only names are passed (`-e NAME`)
# so values never show up in the process list.
FORWARDED_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "AMP_API_KEY",
    "CURSOR_API_KEY",
    "TERM",
)

_IMAGE_RE = re.compile(
    r"^[a-zA-Z0-9][a-zA-Z0-9._\-/]*(:[a-zA-Z0-9._\-]+)?(@sha256:[a-f0-9]{64})?$",
)


@dataclass(frozen=True, slots=True)
class AgentInvocation:
    """Everything needed to build one agent command."""

    ai_tool: str
    prompt_path: Path
    project_dir: Path
    sandbox: Sandbox


def normalize_tool(ai_tool: str) -> str:
    return ai_tool.strip().lower()


def require_supported_tool(ai_tool: str) -> str:
    """Return the normalized tool name or raise UnsupportedToolError."""

    tool = normalize_tool(ai_tool)
    if tool not in SUPPORTED_AGENTS:
        raise UnsupportedToolError(ai_tool, SUPPORTED_AGENTS)
    return tool


def is_valid_image(image: str) -> bool:
    """Docker image reference check: rejects shell metacharacters and paths."""

    if not image or image.startswith(("/", ".")):
        return False
    return _IMAGE_RE.match(image) is not None


def resolve_sandbox(
    mode: str,
    *,
    image: str | None = None,
    template: str | None = None,
) -> Sandbox:
    """Turn a persisted sandbox mode string into a sandbox variant."""

    normalized = mode.strip().lower()
    if normalized == SandboxMode.NONE.value:
        return NoSandbox()
    if normalized == SandboxMode.DOCKER.value:
        resolved = image or DEFAULT_SANDBOX_IMAGE
        if not is_valid_image(resolved):
            raise ConfigurationError(
                f"Invalid sandbox image {resolved!r}: must match Docker image reference format",
            )
        return ContainerSandbox(image=resolved)
    if normalized == SandboxMode.DOCKER_SANDBOX.value:
        return MicroVmSandbox(template=template or None)
    raise ConfigurationError(
        f"Unsupported sandbox mode: {mode!r} (supported: {', '.join(SUPPORTED_SANDBOX_MODES)})",
    )


def sandbox_from_config(config: LoopConfig) -> Sandbox:
    return resolve_sandbox(
        config.sandbox,
        image=config.sandbox_image,
        template=config.sandbox_template,
    )


def sandbox_mode(sandbox: Sandbox) -> SandboxMode:
    if isinstance(sandbox, NoSandbox):
        return SandboxMode.NONE
    if isinstance(sandbox, ContainerSandbox):
        return SandboxMode.DOCKER
    if isinstance(sandbox, MicroVmSandbox):
        return SandboxMode.DOCKER_SANDBOX
    raise TypeError(f"Unknown sandbox variant: {sandbox!r}")


def local_args(
    ai_tool: str,
    prompt_path: Path | str,
    *,
    prompt_text: str | None = None,
) -> list[str]:
    """Agent arguments (without the binary) for a supported tool.

    Claude has no prompt-file flag, so its prompt is passed inline; the text
    is read from `prompt_path` unless `prompt_text` is given.
    """

    tool = require_supported_tool(ai_tool)
    if tool == "claude":
        text = prompt_text if prompt_text is not None else _read_prompt(Path(prompt_path))
        return ["-p", text, "--dangerously-skip-permissions"]
    if tool == "codex":
        return ["--prompt-file", str(prompt_path), "--auto"]
    if tool == "amp":
        return ["--prompt-file", str(prompt_path)]
    return [str(prompt_path)]


def docker_args(
    *,
    project_dir: Path,
    image: str,
    ai_tool: str,
    agent_args: list[str],
    environ: Mapping[str, str] | None = None,
    user: str | None = None,
) -> list[str]:
    """`docker` arguments for an ephemeral container run of the agent."""

    tool = require_supported_tool(ai_tool)
    args = ["run", "--rm", "--init", "-i"]
    resolved_user = user if user is not None else _host_user()
    if resolved_user:
        args.append(f"--user={resolved_user}")
    args.extend(["-v", f"{project_dir}:{CONTAINER_WORKDIR}", "-w", CONTAINER_WORKDIR])
    args.extend(forwarded_env_args(os.environ if environ is None else environ))
    args.append(image)
    args.append(tool)
    args.extend(agent_args)
    return args


def docker_sandbox_args(
    *,
    project_dir: Path,
    ai_tool: str,
    agent_args: list[str],
    template: str | None = None,
    name: str | None = None,
) -> list[str]:
    """`docker` arguments for a named, reusable microVM sandbox run.

    Credentials come from the guest's shell configuration, so no
    environment is forwarded.
    """

    tool = normalize_tool(ai_tool) or DEFAULT_MICROVM_AGENT
    require_supported_tool(tool)
    args = ["sandbox", "run"]
    if name:
        args.extend(["--name", name])
    if template:
        args.extend(["--template", template])
    args.append(tool)
    args.append(str(project_dir) if str(project_dir) else ".")
    if agent_args:
        args.append("--")
        args.extend(agent_args)
    return args


def build_command(
    invocation: AgentInvocation,
    *,
    environ: Mapping[str, str] | None = None,
) -> AgentCommand:
    """Build the command for a tool and sandbox, validating the tool first."""

    tool = require_supported_tool(invocation.ai_tool)
    sandbox = invocation.sandbox

    if isinstance(sandbox, NoSandbox):
        return AgentCommand(
            argv=(tool, *local_args(tool, invocation.prompt_path)),
            cwd=invocation.project_dir,
        )

    if isinstance(sandbox, ContainerSandbox):
        if not is_valid_image(sandbox.image):
            raise ConfigurationError(f"Invalid sandbox image {sandbox.image!r}")
        container_prompt = container_path(invocation.prompt_path, invocation.project_dir)
        agent_args = local_args(
            tool,
            container_prompt,
            prompt_text=_read_prompt(invocation.prompt_path) if tool == "claude" else None,
        )
        return AgentCommand(
            argv=(
                "docker",
                *docker_args(
                    project_dir=invocation.project_dir,
                    image=sandbox.image,
                    ai_tool=tool,
                    agent_args=agent_args,
                    environ=environ,
                ),
            ),
            cwd=invocation.project_dir,
        )

    if isinstance(sandbox, MicroVmSandbox):
        return AgentCommand(
            argv=(
                "docker",
                *docker_sandbox_args(
                    project_dir=invocation.project_dir,
                    ai_tool=tool,
                    agent_args=local_args(tool, invocation.prompt_path),
                    template=sandbox.template,
                    name=sandbox.name,
                ),
            ),
            cwd=invocation.project_dir,
        )

    raise TypeError(f"Unknown sandbox variant: {sandbox!r}")


def forwarded_env_args(environ: Mapping[str, str]) -> list[str]:
    args: list[str] = []
    for name in FORWARDED_ENV_VARS:
        if name in environ:
            args.extend(["-e", name])
    return args


def container_path(prompt_path: Path, project_dir: Path) -> str:
    """Map a host prompt path to its location inside the `docker run` mount."""

    try:
        relative = prompt_path.resolve().relative_to(project_dir.resolve())
    except ValueError as error:
        raise ConfigurationError(
            f"Prompt file {prompt_path} is outside the project directory {project_dir}",
        ) from error
    return f"{CONTAINER_WORKDIR}/{relative.as_posix()}"


def _read_prompt(path: Path) -> str:
    try:
        return path.read_text("utf-8")
    except OSError as error:
        raise AgentExecutionError(
            f"Failed to read prompt file {path}: {error}",
            transient=False,
        ) from error


def _host_user() -> str | None:
    getuid = getattr(os, "getuid", None)
    getgid = getattr(os, "getgid", None)
    if getuid is None or getgid is None:
        return None
    return f"{getuid()}:{getgid()}"
