"""Agent runner that executes a phase prompt through an external CLI."""

import json
import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import structlog

from repo_conductor.enums import PhaseOutcome
from repo_conductor.exceptions import AgentError, AgentTimeoutError
from repo_conductor.models.domain import AgentResult
from repo_conductor.models.workflow import PhaseDefinition
from repo_conductor.providers.base import AgentRunner
from repo_conductor.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

DEFAULT_AGENT_COMMAND = ("claude", "--print", "--dangerously-skip-permissions")

# A fenced json block at the very end of the output carries the context
# fragment the phase wants merged into the run context.
_TRAILING_JSON_BLOCK = re.compile(r"```json\s*\n(?P<body>.*?)\n```\s*\Z", re.DOTALL)


def build_phase_prompt(phase: PhaseDefinition, context: Mapping[str, Any]) -> str:
    """Combine the phase prompt with the current run context."""
    context_json = json.dumps(dict(context), indent=2, sort_keys=True, default=str)
    return (
        f"{phase.prompt}\n\n"
        f"## Run context\n\n```json\n{context_json}\n```\n\n"
        "To pass values to later phases, end your answer with a fenced json "
        "block containing a single object."
    )


def extract_context_fragment(output: str) -> dict[str, Any]:
    """Return the object in a trailing ```json block, or an empty dict."""
    match = _TRAILING_JSON_BLOCK.search(output.rstrip())
    if match is None:
        return {}
    try:
        fragment = json.loads(match.group("body"))
    except json.JSONDecodeError:
        log.warning("agent_context_fragment_invalid")
        return {}
    return fragment if isinstance(fragment, dict) else {}


class CommandAgentRunner(AgentRunner):
    """Runs an agent CLI (Claude Code by default) for each agent phase.

    The prompt is passed on stdin to avoid argument-length limits, the
    process runs inside the run's worktree, and exit code 0 means success.
    """

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_AGENT_COMMAND,
        timeout_seconds: float | None = None,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            command: Executable and arguments
            timeout_seconds: Kill the agent after this many seconds
            environment: Environment for the agent process; None inherits
        """
        if not command:
            raise AgentError("Agent command must not be empty")
        self.command = list(command)
        self.timeout_seconds = timeout_seconds
        self.environment = environment

    async def run_phase(
        self,
        phase: PhaseDefinition,
        context: Mapping[str, Any],
        working_dir: Path | None,
    ) -> AgentResult:
        prompt = build_phase_prompt(phase, context)
        log.info(
            "agent_phase_started",
            phase=phase.name,
            command=self.command[0],
            cwd=str(working_dir) if working_dir else None,
            prompt_length=len(prompt),
        )

        try:
            stdout, stderr, code = await run_command(
                *self.command,
                cwd=working_dir,
                check=False,
                timeout=self.timeout_seconds,
                env=self.environment,
                input_text=prompt,
            )
        except TimeoutError as e:
            raise AgentTimeoutError(
                "Agent did not finish", timeout_seconds=self.timeout_seconds, phase=phase.name
            ) from e
        except FileNotFoundError as e:
            raise AgentError(f"{self.command[0]} CLI not found in PATH", phase=phase.name) from e

        success = code == 0
        log.info(
            "agent_phase_complete",
            phase=phase.name,
            success=success,
            output_length=len(stdout),
            error_length=len(stderr),
        )

        if not success:
            return AgentResult(
                outcome=PhaseOutcome.FAILURE,
                report=stderr.strip() or stdout.strip() or f"Agent exited with code {code}",
            )

        return AgentResult(
            outcome=PhaseOutcome.SUCCESS,
            context=extract_context_fragment(stdout),
            report=stdout,
        )
