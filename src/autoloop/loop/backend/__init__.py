"""Agent command building and execution."""

from autoloop.loop.backend.agents import (
    SUPPORTED_AGENTS,
    SUPPORTED_SANDBOX_MODES,
    AgentInvocation,
    build_command,
    resolve_sandbox,
)
from autoloop.loop.backend.base import AgentCommand, AgentRunner, AgentRunRequest, AgentRunResult
from autoloop.loop.backend.cli_backend import CliAgentRunner, check_sandbox_available

__all__ = [
    "SUPPORTED_AGENTS",
    "SUPPORTED_SANDBOX_MODES",
    "AgentCommand",
    "AgentInvocation",
    "AgentRunRequest",
    "AgentRunResult",
    "AgentRunner",
    "CliAgentRunner",
    "build_command",
    "check_sandbox_available",
    "resolve_sandbox",
]
