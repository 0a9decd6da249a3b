"""Phase graph traversal for workflow definitions.

These helpers answer the questions the executor asks about a workflow:
which phase comes first, in what order a phase's transitions are
considered, and which transition fires for a given run context.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from repo_conductor.engine.guards import evaluate_guard, parse_guard
from repo_conductor.exceptions import GuardEvaluationError
from repo_conductor.models.workflow import PhaseDefinition, Transition, WorkflowDefinition

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    """The transition that fired and the phase it leads to."""

    transition: Transition
    target_phase: PhaseDefinition


def get_phase_by_name(workflow: WorkflowDefinition, name: str) -> PhaseDefinition | None:
    for phase in workflow.phases:
        if phase.name == name:
            return phase
    return None


def get_first_phase(workflow: WorkflowDefinition) -> PhaseDefinition:
    """Return the phase a new run starts at (the first declared one)."""
    return workflow.phases[0]


def get_phase_transitions(phase: PhaseDefinition) -> list[Transition]:
    """Return a phase's transitions in evaluation order.

    Sorted by ascending priority; transitions with equal priority keep their
    declared order. The phase's own transition tuple is never reordered.
    """
    return sorted(phase.transitions, key=lambda transition: transition.priority)


def evaluate_transitions(
    workflow: WorkflowDefinition,
    phase_name: str,
    context: Mapping[str, Any],
    *,
    strict: bool = False,
) -> TransitionResult | None:
    """Select the transition to take out of a phase.

    The first transition in priority order that is ``auto`` or whose guard
    holds wins. Transitions with neither are skipped.

    Args:
        workflow: Workflow the phase belongs to
        phase_name: Phase that just finished
        context: Run context guards are evaluated against
        strict: Propagate malformed guards instead of treating them as
            non-matching

    Returns:
        The winning transition and its target phase, or None when the phase
        is unknown or nothing matches

    Raises:
        GuardEvaluationError: Only in strict mode, for a malformed guard
    """
    phase = get_phase_by_name(workflow, phase_name)
    if phase is None:
        return None

    for transition in get_phase_transitions(phase):
        if not transition.auto:
            if transition.when is None:
                continue
            try:
                matched = evaluate_guard(transition.when, context)
            except GuardEvaluationError as e:
                if strict:
                    raise
                log.warning(
                    "guard_evaluation_failed",
                    workflow=workflow.name,
                    phase=phase_name,
                    target=transition.target,
                    error=str(e),
                )
                continue
            if not matched:
                continue

        target = get_phase_by_name(workflow, transition.target)
        if target is None:
            # Definitions are validated on construction; only reachable if
            # a definition was built with validation bypassed.
            log.error(
                "transition_target_missing",
                workflow=workflow.name,
                phase=phase_name,
                target=transition.target,
            )
            continue
        return TransitionResult(transition=transition, target_phase=target)

    return None


def validate_workflow_guards(workflow: WorkflowDefinition) -> None:
    """Parse every guard in a workflow, raising on the first malformed one.

    Raises:
        GuardEvaluationError: Naming the phase and target of the bad guard
    """
    for phase in workflow.phases:
        for transition in phase.transitions:
            if transition.auto or transition.when is None:
                continue
            try:
                parse_guard(transition.when)
            except GuardEvaluationError as e:
                raise GuardEvaluationError(
                    f"Invalid guard on transition {phase.name} -> {transition.target} "
                    f"in workflow '{workflow.name}': {e.message}"
                ) from e
