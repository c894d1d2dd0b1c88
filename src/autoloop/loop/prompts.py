"""Prompts fed to the agent: the implementation prompt and the pilot discovery prompt."""

from __future__ import annotations

from pathlib import Path

from autoloop.loop.document import AUTOLOOP_DIR, DOCUMENT_FILE, JOURNAL_FILE
from autoloop.loop.models import LoopConfig, TaskSource

_DOCUMENT_PATH = (AUTOLOOP_DIR / DOCUMENT_FILE).as_posix()
_JOURNAL_PATH = (AUTOLOOP_DIR / JOURNAL_FILE).as_posix()

_DEFAULT_TEMPLATE = f"""\
# Autonomous Iteration Prompt

You are running in autonomous mode. Each iteration is independent and starts
with a fresh context window.

## Your Task

1. **Read project context**:
   - Read `CLAUDE.md` or `AGENTS.md` for project guardrails
   - Read `{_JOURNAL_PATH}` for learnings from prior iterations
   - Read `{_DOCUMENT_PATH}` to find the task list and current state

2. **Select the next task**:
   - Only tasks with status "pending" are candidates
   - Skip tasks whose `depends_on` tasks are not yet "completed" or "skipped"
   - Prefer priority "critical" > "high" > "medium" > "low"
   - If priorities are equal, take the task that appears first in the list

3. **Implement the task**:
   - Set the task's status to "in_progress" in `{_DOCUMENT_PATH}`
   - Follow the project guardrails
   - Write tests alongside code
   - Keep changes atomic: one task per iteration

4. **Run quality checks**:
   - Execute the commands listed under `config.quality_checks`
   - All checks must pass before committing
   - If a check fails, fix the issue and retry

5. **Commit changes**:
   - Use conventional commit format: `type(scope): description`
   - Include the task ID in the commit message

6. **Update state**:
   - Set the task's status to "completed"
   - Record the commit SHA in the task's `commit_sha` field

7. **Document learnings**:
   - Append insights, gotchas, or decisions to `{_JOURNAL_PATH}`
   - Format: `[timestamp] [iteration:N] [task:ID] LEARNING: description`

## Rules

- Complete exactly ONE task per iteration
- Never skip quality checks
- If stuck, set the task's status to "blocked" and document why

## Error Recovery

If you encounter errors:
1. Try to fix them within this iteration
2. If unfixable, mark the task as "blocked"
3. Append the error details to `{_JOURNAL_PATH}` as a LEARNING entry
4. The next iteration starts with fresh context and can try a different approach
"""


def default_prompt_template() -> str:
    return _DEFAULT_TEMPLATE


def render_prompt(config: LoopConfig) -> str:
    """Default template plus a project-specific configuration section."""

    lines = [
        default_prompt_template(),
        "## Project-Specific Configuration",
        "",
        f"- **AI Tool**: {config.ai_tool}",
        f"- **Max Iterations**: {config.max_iterations}",
        f"- **Task Document**: {_DOCUMENT_PATH}",
        f"- **Progress Journal**: {_JOURNAL_PATH}",
    ]
    if config.quality_checks:
        lines.extend(
            [
                "",
                "### Quality Checks",
                "",
                "Run these commands as quality gates before committing:",
                "",
                "```bash",
                *config.quality_checks,
                "```",
            ],
        )
    return "\n".join(lines) + "\n"


def write_prompt(path: Path, config: LoopConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_prompt(config), "utf-8")


_DISCOVERY_TEMPLATE = f"""\
# Discovery Iteration Prompt

You are running in DISCOVERY mode as part of the autonomous pilot loop.
Your job is to analyze the project and generate high-value tasks.

**Do NOT write any code or make any commits in this iteration.**
**Only update `{_DOCUMENT_PATH}` and `{_JOURNAL_PATH}`.**

## Steps

1. **Read project context**:
   - Read `CLAUDE.md` or `AGENTS.md` for project guardrails and conventions
   - Read `README.md` for the project overview
   - Scan the project directory structure

2. **Analyze the codebase** for improvement opportunities:
   - Test coverage gaps (modules with few or no tests)
   - TODO, FIXME, and HACK markers
   - Code quality issues such as long functions or dead code
   - Missing or outdated documentation
   - Security concerns in input validation and error handling
   - Recent git history with unfinished follow-up work

3. **Read existing tasks**:
   - Read `{_DOCUMENT_PATH}` to see the current tasks
   - Do NOT create duplicates: compare titles and descriptions carefully
   - Skip areas that already have pending or in-progress tasks

4. **Generate new tasks**:
   - Append tasks with status "pending"
   - Each task must be atomic and touch at most 5 files
   - Use clear, actionable titles
   - Set priority and complexity
   - Set the "source" field to "{TaskSource.DISCOVERY.value}"

5. **Document findings**:
   - Append a summary of what you found to `{_JOURNAL_PATH}`
   - Format: `[timestamp] [discovery] FOUND: description`

## Priority Order

1. **Security issues** (critical)
2. **Failing or missing tests** (high)
3. **Code quality violations** (medium)
4. **Documentation gaps** (medium)
5. **Performance improvements** (low)
6. **Refactoring opportunities** (low)

## Rules

- Generate ONLY atomic tasks
- Do NOT change source files
- Do NOT commit anything
- Keep task descriptions specific and actionable
- Include `files_to_modify` in each task when possible
"""

_FOCUS_HINTS = {
    "testing": (
        "Focus on test coverage gaps, missing edge case tests, flaky tests, "
        "and test infrastructure."
    ),
    "docs": "Focus on missing documentation, an outdated README, and API docs.",
    "documentation": "Focus on missing documentation, an outdated README, and API docs.",
    "security": (
        "Focus on input validation, authentication, authorization, "
        "and dependency vulnerabilities."
    ),
    "performance": (
        "Focus on hot paths, unnecessary allocations, N+1 queries, "
        "and caching opportunities."
    ),
    "refactoring": (
        "Focus on duplication, long functions, high complexity, "
        "and dead code."
    ),
}


def discovery_prompt_template() -> str:
    return _DISCOVERY_TEMPLATE


def render_discovery_prompt(config: LoopConfig) -> str:
    """Discovery template plus task limits, focus area, and quality checks."""

    lines = [discovery_prompt_template()]
    if config.pilot is not None:
        lines.extend(
            [
                "## Discovery Configuration",
                "",
                f"- **Max new tasks to generate**: {config.pilot.max_discovery_tasks}",
            ],
        )
        if config.pilot.focus:
            focus = config.pilot.focus
            hint = _FOCUS_HINTS.get(
                focus.strip().lower(),
                f"Look for improvements related to: {focus}",
            )
            lines.extend(
                [
                    "",
                    f"### Focus Area: {focus}",
                    "",
                    f"Prioritize tasks related to this focus area. {hint}",
                ],
            )
    if config.quality_checks:
        lines.extend(
            [
                "",
                "## Quality Checks Reference",
                "",
                "These are the project's quality check commands:",
                "",
                "```bash",
                *config.quality_checks,
                "```",
            ],
        )
    return "\n".join(lines) + "\n"


def write_discovery_prompt(path: Path, config: LoopConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_discovery_prompt(config), "utf-8")
