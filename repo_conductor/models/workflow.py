"""Workflow definition models.

A workflow is an ordered list of phases. Each phase declares outgoing
transitions; the engine picks the first matching transition in priority
order after a phase finishes. Definitions are immutable once loaded, so
every model here is frozen.

Example:
    Building a two-phase workflow in code::

        workflow = WorkflowDefinition(
            name="implement",
            version=1,
            phases=[
                PhaseDefinition(
                    name="design",
                    type=PhaseType.AGENT,
                    prompt="Write a design",
                    transitions=[Transition(target="build", auto=True)],
                ),
                PhaseDefinition(name="build", type=PhaseType.AGENT, prompt="Build it"),
            ],
        )
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from repo_conductor.enums import PhaseType


class Transition(BaseModel):
    """Directed edge from one phase to another.

    ``auto`` transitions fire unconditionally and ignore ``when``. A
    transition with neither ``auto`` nor ``when`` never fires.
    """

    model_config = ConfigDict(frozen=True)

    target: str = Field(..., min_length=1)
    priority: int = 0
    auto: bool = False
    when: dict[str, Any] | None = None


class PhaseDefinition(BaseModel):
    """A single unit of work in a workflow.

    A phase with no transitions is terminal: a successful execution of it
    completes the run.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: PhaseType = PhaseType.AGENT
    prompt: str = ""
    transitions: tuple[Transition, ...] = ()
    max_retries: int = Field(default=0, ge=0)

    @property
    def is_terminal(self) -> bool:
        return not self.transitions


class WorkflowDefinition(BaseModel):
    """Named, versioned, ordered collection of phases."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)
    description: str = ""
    phases: tuple[PhaseDefinition, ...]

    @model_validator(mode="after")
    def validate_phase_graph(self) -> "WorkflowDefinition":
        """Reject empty workflows, duplicate names and dangling targets."""
        if not self.phases:
            raise ValueError(f"Workflow '{self.name}' must declare at least one phase")

        names: set[str] = set()
        for phase in self.phases:
            if phase.name in names:
                raise ValueError(f"Duplicate phase name '{phase.name}' in workflow '{self.name}'")
            names.add(phase.name)

        for phase in self.phases:
            for transition in phase.transitions:
                if transition.target not in names:
                    raise ValueError(
                        f"Phase '{phase.name}' transitions to unknown phase "
                        f"'{transition.target}' in workflow '{self.name}'"
                    )
        return self
