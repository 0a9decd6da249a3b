"""Test doubles shared across test modules."""

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from repo_conductor.enums import PhaseOutcome
from repo_conductor.models.domain import AgentResult
from repo_conductor.models.workflow import PhaseDefinition
from repo_conductor.providers.base import AgentRunner


class FakeAgent(AgentRunner):
    """Agent returning scripted results per phase name.

    A phase without a script succeeds with an empty context fragment. A
    script may be an AgentResult, an exception instance (raised), or a
    callable taking the context and returning an AgentResult (or an
    awaitable of one).
    """

    def __init__(self, scripts: Mapping[str, Any] | None = None) -> None:
        self.scripts: dict[str, Any] = dict(scripts or {})
        self.calls: list[tuple[str, dict[str, Any], Path | None]] = []

    async def run_phase(
        self,
        phase: PhaseDefinition,
        context: Mapping[str, Any],
        working_dir: Path | None = None,
    ) -> AgentResult:
        self.calls.append((phase.name, dict(context), working_dir))
        script = self.scripts.get(phase.name)
        if script is None:
            return AgentResult(outcome=PhaseOutcome.SUCCESS)
        if isinstance(script, BaseException):
            raise script
        if isinstance(script, AgentResult):
            return script
        result = script(context)
        if hasattr(result, "__await__"):
            result = await result
        return result

    @property
    def phases_run(self) -> list[str]:
        return [name for name, _, _ in self.calls]
