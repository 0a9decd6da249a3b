"""
Workflow run executor.

The executor drives persisted workflow runs one phase at a time and applies
operator control actions (pause, resume, cancel). It coordinates:

- StateManager: durable run state and compare-and-set status changes
- RunLeaseRegistry: at most one execution in flight per run
- WorktreeManager: an isolated checkout for each run (optional)
- AgentRunner: the collaborator that actually performs agent phases

Step Semantics:
    ``execute_next_runnable_node`` runs exactly one phase and persists its
    result before returning:

    1. Take the run lease (another holder -> ``busy`` error)
    2. Terminal run -> ``run_terminal``; paused run -> ``blocked``
    3. Pick the phase (stored current phase, or an explicit name)
    4. Claim the run for execution (pending -> running)
    5. Prepare the run worktree (failure is fatal for the run)
    6. Run the agent for agent phases; other phase types succeed at once
    7. Merge the context fragment and choose the next phase
    8. Append history and write status and phase in one transaction
    9. Release the lease

Status Decisions After A Phase:
    - a transition matched        -> running, at the target phase
    - failure, nothing matched    -> failed
    - success, no transitions     -> completed
    - success, nothing matched    -> running, awaiting a transition; later
      steps re-evaluate the guards against the (updated) context

    A pause or cancel recorded while the phase was running is kept: the
    phase result is still appended to history, but the status is not
    overwritten.

Example:
    >>> executor = WorkflowExecutor(state, registry, CommandAgentRunner())
    >>> run = await executor.start_run("implement-issue", context={"issue": 42})
    >>> result = await executor.execute_workflow_run(run.id)
    >>> result.status
    <RunStatus.COMPLETED: 'completed'>
"""

import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from repo_conductor.config.workflows import WorkflowRegistry
from repo_conductor.engine.leases import RunLeaseRegistry
from repo_conductor.engine.run_state import can_transition_run, resolve_control_transition
from repo_conductor.engine.state_manager import StateManager
from repo_conductor.engine.types import HistoryEntryState, RunState
from repo_conductor.engine.workflow import (
    evaluate_transitions,
    get_first_phase,
    get_phase_by_name,
)
from repo_conductor.enums import (
    ExecutionScope,
    PhaseOutcome,
    PhaseType,
    RunControlAction,
    RunStatus,
    StepOutcome,
)
from repo_conductor.exceptions import (
    ConfigurationError,
    GitOperationError,
    GuardEvaluationError,
    RunControlErrorCode,
    RunExecutionErrorCode,
    WorkflowError,
    WorkflowRunControlError,
    WorkflowRunExecutionError,
)
from repo_conductor.git.worktree import WorktreeManager
from repo_conductor.models.domain import AgentResult, Run, RunControlResult, StepResult, WorkflowRunResult
from repo_conductor.models.workflow import PhaseDefinition, WorkflowDefinition
from repo_conductor.providers.base import AgentRunner
from repo_conductor.utils.logging_config import bind_run_context, clear_run_context

log = structlog.get_logger(__name__)

NEXT_RUNNABLE = "next_runnable"
MAX_CONTROL_PRECONDITION_RETRIES = 5
REPORT_HISTORY_LIMIT = 4000
RESERVED_CONTEXT_KEYS = frozenset({"last_phase", "last_outcome", "last_error"})


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _merge_context(target: dict[str, Any], values: dict[str, Any]) -> None:
    """Merge ``values`` into ``target``, recursing into nested mappings."""
    for key, value in values.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_context(target[key], value)
        else:
            target[key] = value


class _Decision:
    """Where a run goes after a phase has finished."""

    __slots__ = ("status", "next_phase", "awaiting", "error")

    def __init__(
        self,
        status: RunStatus,
        next_phase: str | None = None,
        awaiting: bool = False,
        error: str | None = None,
    ) -> None:
        self.status = status
        self.next_phase = next_phase
        self.awaiting = awaiting
        self.error = error


class WorkflowExecutor:
    """Execute and control persisted workflow runs.

    Attributes:
        state: Run state persistence
        workflows: Registry the runs' pinned definitions are resolved from
        agent: Collaborator executing agent phases
        leases: Exclusive execution leases
        worktrees: Worktree manager, or None for runs without a repository
        strict_guards: Propagate malformed guards as run failures instead of
            treating them as non-matching transitions
    """

    def __init__(
        self,
        state: StateManager,
        workflows: WorkflowRegistry,
        agent: AgentRunner,
        *,
        leases: RunLeaseRegistry | None = None,
        worktrees: WorktreeManager | None = None,
        strict_guards: bool = False,
        max_steps: int | None = None,
        base_ref: str | None = None,
    ) -> None:
        self.state = state
        self.workflows = workflows
        self.agent = agent
        self.leases = leases or RunLeaseRegistry(state.state_dir / "leases")
        self.worktrees = worktrees
        self.strict_guards = strict_guards
        self.max_steps = max_steps
        self.base_ref = base_ref

    # ------------------------------------------------------------------
    # Queries and run creation
    # ------------------------------------------------------------------

    def _resolve_workflow(
        self, name: str, version: int | None = None, run_id: str | None = None
    ) -> WorkflowDefinition:
        workflow = self.workflows.get(name, version)
        if workflow is None:
            label = name if version is None else f"{name} (version {version})"
            raise WorkflowRunExecutionError(
                RunExecutionErrorCode.WORKFLOW_NOT_FOUND,
                f"Workflow not found: {label}",
                run_id=run_id,
            )
        return workflow

    async def start_run(
        self,
        workflow_name: str,
        *,
        version: int | None = None,
        run_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Run:
        """Create a pending run positioned at the workflow's first phase.

        Args:
            workflow_name: Registered workflow name
            version: Pin a specific version; latest when None
            run_id: Explicit run id; generated when None
            context: Initial run context

        Raises:
            WorkflowRunExecutionError: If the workflow is not registered
            WorkflowError: If the run id is already taken
        """
        workflow = self._resolve_workflow(workflow_name, version)
        now = _now()
        state: RunState = {
            "id": run_id or uuid.uuid4().hex[:12],
            "workflow_name": workflow.name,
            "workflow_version": workflow.version,
            "current_phase": get_first_phase(workflow).name,
            "status": RunStatus.PENDING.value,
            "context": dict(context or {}),
            "history": [],
            "created_at": now,
            "updated_at": now,
        }
        await self.state.create_run(state)
        return Run.from_state(state)

    async def get_run(self, run_id: str) -> Run:
        return Run.from_state(await self.state.load_run(run_id))

    async def list_runs(self, status: RunStatus | str | None = None) -> list[Run]:
        return [Run.from_state(state) for state in await self.state.list_runs(status)]

    async def update_run_context(self, run_id: str, values: dict[str, Any]) -> Run:
        """Merge values into a run's context, e.g. a human approval.

        A run awaiting a transition picks the new values up on its next
        step.

        The ``last_phase``, ``last_outcome`` and ``last_error`` keys are
        written by the executor after each phase and cannot be set here.

        Raises:
            WorkflowRunControlError: ``invalid_transition`` for terminal runs
            WorkflowError: If ``values`` sets an executor-owned key
        """
        reserved = sorted(RESERVED_CONTEXT_KEYS.intersection(values))
        if reserved:
            raise WorkflowError(f"Context keys are managed by the executor: {', '.join(reserved)}")

        async with self.state.transaction(run_id) as current:
            status = RunStatus(current["status"])
            if status.is_terminal:
                raise WorkflowRunControlError(
                    RunControlErrorCode.INVALID_TRANSITION,
                    f"Cannot update the context of workflow run {run_id} in status {status.value}",
                    action="update_context",
                    run_id=run_id,
                    run_status=status.value,
                )
            _merge_context(current["context"], values)
            updated = current

        log.info("run_context_updated", run_id=run_id, keys=sorted(values))
        return Run.from_state(updated)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_next_runnable_node(
        self,
        run_id: str,
        node_selector: str = NEXT_RUNNABLE,
    ) -> StepResult:
        """Execute one phase of a run and persist the result.

        Args:
            run_id: Run to advance
            node_selector: ``next_runnable`` for the run's current phase, or
                the name of the phase to run

        Returns:
            What happened; see StepOutcome

        Raises:
            WorkflowRunControlError: ``busy`` if another execution holds the
                run, ``concurrent_conflict`` if the run changed underneath
            WorkflowRunExecutionError: If the phase or workflow is unknown
            RunNotFoundError: If the run does not exist
        """
        lease = self.leases.acquire(run_id)
        if lease is None:
            state = await self.state.load_run(run_id)
            raise WorkflowRunControlError(
                RunControlErrorCode.BUSY,
                f"Workflow run {run_id} is already being executed",
                action="execute",
                run_id=run_id,
                run_status=state["status"],
            )

        bind_run_context(run_id)
        try:
            return await self._execute_step(run_id, node_selector)
        finally:
            self.leases.release(lease)
            clear_run_context()

    async def _execute_step(self, run_id: str, node_selector: str) -> StepResult:
        state = await self.state.load_run(run_id)
        status = RunStatus(state["status"])

        if status.is_terminal:
            return StepResult(run_id=run_id, outcome=StepOutcome.RUN_TERMINAL, status=status)
        if status == RunStatus.PAUSED:
            return StepResult(run_id=run_id, outcome=StepOutcome.BLOCKED, status=status)

        workflow = self._resolve_workflow(state["workflow_name"], state["workflow_version"], run_id)

        if node_selector == NEXT_RUNNABLE:
            phase = get_phase_by_name(workflow, state["current_phase"])
            if phase is None:
                raise WorkflowRunExecutionError(
                    RunExecutionErrorCode.PHASE_NOT_FOUND,
                    f"Phase '{state['current_phase']}' of run {run_id} is not part of "
                    f"workflow '{workflow.name}' version {workflow.version}",
                    run_id=run_id,
                )
            if state.get("awaiting_transition"):
                settled = await self._settle_awaiting(run_id, state, workflow, phase)
                if isinstance(settled, StepResult):
                    return settled
                phase = settled
        else:
            selected = get_phase_by_name(workflow, node_selector)
            if selected is None:
                raise WorkflowRunExecutionError(
                    RunExecutionErrorCode.PHASE_NOT_FOUND,
                    f"Phase '{node_selector}' not found in workflow '{workflow.name}'",
                    run_id=run_id,
                )
            phase = selected

        if status != RunStatus.RUNNING and not can_transition_run(status, RunStatus.RUNNING):
            return StepResult(run_id=run_id, outcome=StepOutcome.BLOCKED, status=status)

        claimed = await self.state.compare_and_set(
            run_id,
            expected_status=status,
            expected_phase=state["current_phase"],
            status=RunStatus.RUNNING,
            current_phase=phase.name,
            updates={"awaiting_transition": False},
        )
        if claimed is None:
            return await self._interrupted_step(run_id)
        if status != RunStatus.RUNNING:
            log.info("run_status_changed", run_id=run_id, previous=status.value, status=RunStatus.RUNNING.value)

        return await self._run_phase(run_id, claimed, workflow, phase)

    async def _settle_awaiting(
        self,
        run_id: str,
        state: RunState,
        workflow: WorkflowDefinition,
        phase: PhaseDefinition,
    ) -> PhaseDefinition | StepResult:
        """Re-evaluate the transitions of a phase that already finished.

        Returns the phase to run next, or a StepResult when the run stays
        blocked or has just reached a terminal status.
        """
        outcome = PhaseOutcome(state.get("last_outcome", PhaseOutcome.SUCCESS.value))
        decision = self._decide(workflow, phase, state["context"], outcome)

        if decision.next_phase is not None:
            target = get_phase_by_name(workflow, decision.next_phase)
            assert target is not None
            log.info("run_transition_resolved", run_id=run_id, phase=phase.name, next_phase=target.name)
            return target

        if decision.awaiting:
            return StepResult(
                run_id=run_id,
                outcome=StepOutcome.BLOCKED,
                status=RunStatus(state["status"]),
                phase=phase.name,
            )

        updates: dict[str, Any] = {"awaiting_transition": False}
        if decision.error:
            updates["error"] = decision.error
        settled = await self.state.compare_and_set(
            run_id,
            expected_status=RunStatus.RUNNING,
            expected_phase=phase.name,
            status=decision.status,
            updates=updates,
        )
        if settled is None:
            return await self._interrupted_step(run_id)

        log.info("run_status_changed", run_id=run_id, previous=RunStatus.RUNNING.value, status=decision.status.value)
        return StepResult(run_id=run_id, outcome=StepOutcome.RUN_TERMINAL, status=decision.status, phase=phase.name)

    async def _interrupted_step(self, run_id: str) -> StepResult:
        """Report a step whose claim lost to a concurrent control action."""
        state = await self.state.load_run(run_id)
        status = RunStatus(state["status"])
        if status.is_terminal:
            return StepResult(run_id=run_id, outcome=StepOutcome.RUN_TERMINAL, status=status)
        if status == RunStatus.PAUSED:
            return StepResult(run_id=run_id, outcome=StepOutcome.BLOCKED, status=status)
        raise WorkflowRunControlError(
            RunControlErrorCode.CONCURRENT_CONFLICT,
            f"Workflow run {run_id} changed while it was being claimed for execution",
            action="execute",
            run_id=run_id,
            run_status=status.value,
        )

    async def _prepare_worktree(self, run_id: str, workflow: WorkflowDefinition) -> Path | None:
        if self.worktrees is None:
            return None
        info = await self.worktrees.create_worktree(
            self.worktrees.sandbox_repo_path(),
            run_id,
            workflow=workflow.name,
            base_ref=self.base_ref,
        )
        return info.path

    async def _run_phase(
        self,
        run_id: str,
        state: RunState,
        workflow: WorkflowDefinition,
        phase: PhaseDefinition,
    ) -> StepResult:
        log.info("phase_started", run_id=run_id, phase=phase.name, type=phase.type.value)

        working_dir: Path | None = None
        error: str | None = None
        fatal = False

        if phase.type == PhaseType.AGENT:
            try:
                working_dir = await self._prepare_worktree(run_id, workflow)
            except (GitOperationError, ConfigurationError) as e:
                log.error("worktree_preparation_failed", run_id=run_id, phase=phase.name, error=str(e))
                result = AgentResult(outcome=PhaseOutcome.FAILURE)
                error = str(e)
                fatal = True
            else:
                try:
                    result = await self.agent.run_phase(phase, state["context"], working_dir)
                except Exception as e:
                    log.error("agent_phase_failed", run_id=run_id, phase=phase.name, error=str(e), exc_info=True)
                    result = AgentResult(outcome=PhaseOutcome.FAILURE)
                    error = str(e)
                else:
                    if not result.succeeded:
                        error = result.report.strip()[:500] or f"Phase '{phase.name}' reported failure"
        else:
            result = AgentResult(outcome=PhaseOutcome.SUCCESS)

        context = dict(state["context"])
        context.update(result.context)
        context["last_phase"] = phase.name
        context["last_outcome"] = result.outcome.value
        if error:
            context["last_error"] = error
        else:
            context.pop("last_error", None)

        if fatal:
            decision = _Decision(RunStatus.FAILED, error=error)
        else:
            decision = self._decide(workflow, phase, context, result.outcome, error)

        entry: HistoryEntryState = {
            "phase": phase.name,
            "outcome": result.outcome.value,
            "timestamp": _now(),
        }
        if decision.next_phase:
            entry["next_phase"] = decision.next_phase
        if error:
            entry["error"] = error
        if result.report:
            entry["report"] = result.report[:REPORT_HISTORY_LIMIT]

        async with self.state.transaction(run_id) as current:
            current_status = RunStatus(current["status"])
            current["context"] = context
            current["history"].append(entry)
            current["last_outcome"] = result.outcome.value
            if working_dir is not None:
                current["worktree_path"] = str(working_dir)

            if current_status == RunStatus.RUNNING:
                current["status"] = decision.status.value
                if decision.next_phase:
                    current["current_phase"] = decision.next_phase
                current["awaiting_transition"] = decision.awaiting
                if decision.status == RunStatus.FAILED:
                    current["error"] = decision.error or f"Phase '{phase.name}' failed"
            elif current_status == RunStatus.PAUSED:
                # The result is kept; the transition is taken after resume.
                current["awaiting_transition"] = True

            final_status = RunStatus(current["status"])

        log.info(
            "phase_finished",
            run_id=run_id,
            phase=phase.name,
            outcome=result.outcome.value,
            next_phase=decision.next_phase,
            status=final_status.value,
        )
        if final_status != RunStatus.RUNNING:
            log.info("run_status_changed", run_id=run_id, previous=RunStatus.RUNNING.value, status=final_status.value)

        return StepResult(
            run_id=run_id,
            outcome=StepOutcome.EXECUTED,
            status=final_status,
            phase=phase.name,
            phase_outcome=result.outcome,
            next_phase=decision.next_phase if final_status == RunStatus.RUNNING else None,
        )

    def _decide(
        self,
        workflow: WorkflowDefinition,
        phase: PhaseDefinition,
        context: dict[str, Any],
        outcome: PhaseOutcome,
        error: str | None = None,
    ) -> _Decision:
        try:
            match = evaluate_transitions(workflow, phase.name, context, strict=self.strict_guards)
        except GuardEvaluationError as e:
            return _Decision(RunStatus.FAILED, error=f"Invalid guard after phase '{phase.name}': {e.message}")

        if match is not None:
            return _Decision(RunStatus.RUNNING, next_phase=match.target_phase.name)
        if outcome == PhaseOutcome.FAILURE:
            return _Decision(RunStatus.FAILED, error=error or f"Phase '{phase.name}' failed")
        if phase.is_terminal:
            return _Decision(RunStatus.COMPLETED)
        return _Decision(RunStatus.RUNNING, awaiting=True)

    async def execute_workflow_run(
        self,
        run_id: str,
        execution_scope: ExecutionScope | str = ExecutionScope.FULL,
        *,
        node_selector: str = NEXT_RUNNABLE,
        max_steps: int | None = None,
    ) -> WorkflowRunResult:
        """Drive a run for one phase or until it stops.

        ``single_node`` executes one step. ``full`` keeps stepping while
        phases execute and the run stays running; the persisted status is
        read again before every step, so a pause or cancel from another
        caller stops the loop at the next phase boundary.

        Args:
            run_id: Run to drive
            execution_scope: ``full`` or ``single_node``
            node_selector: Selector for the first step only
            max_steps: Stop after this many steps (overrides the executor
                default)
        """
        scope = ExecutionScope(execution_scope)
        limit = max_steps if max_steps is not None else self.max_steps
        executed: list[str] = []
        selector = node_selector
        steps = 0

        while True:
            step = await self.execute_next_runnable_node(run_id, selector)
            selector = NEXT_RUNNABLE
            steps += 1
            if step.outcome == StepOutcome.EXECUTED and step.phase is not None:
                executed.append(step.phase)

            if scope == ExecutionScope.SINGLE_NODE:
                break
            if step.outcome != StepOutcome.EXECUTED or step.status != RunStatus.RUNNING:
                break
            if limit is not None and steps >= limit:
                log.info("run_step_limit_reached", run_id=run_id, steps=steps)
                break

        return WorkflowRunResult(
            run_id=run_id,
            scope=scope,
            status=step.status,
            executed_phases=executed,
            final_step=step,
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def workflow_run_control(
        self,
        run_id: str,
        action: RunControlAction | str,
    ) -> RunControlResult:
        """Apply pause, resume or cancel to a run.

        Allowed: pause a running run, resume a paused run, cancel any
        non-terminal run. Every other combination is rejected.

        Raises:
            WorkflowRunControlError: ``invalid_transition`` for disallowed
                combinations, ``concurrent_conflict`` if the run kept
                changing across all retries
            RunNotFoundError: If the run does not exist
        """
        control = RunControlAction(action)

        for attempt in range(1, MAX_CONTROL_PRECONDITION_RETRIES + 1):
            state = await self.state.load_run(run_id)
            current = RunStatus(state["status"])
            target = resolve_control_transition(current, control)
            if target is None:
                raise WorkflowRunControlError(
                    RunControlErrorCode.INVALID_TRANSITION,
                    f"Cannot {control.value} workflow run {run_id} in status {current.value}",
                    action=control.value,
                    run_id=run_id,
                    run_status=current.value,
                )

            updated = await self.state.compare_and_set(run_id, expected_status=current, status=target)
            if updated is not None:
                log.info(
                    "run_control_applied",
                    run_id=run_id,
                    action=control.value,
                    previous=current.value,
                    status=target.value,
                )
                return RunControlResult(run_id=run_id, action=control, previous_status=current, status=target)

            log.debug("run_control_precondition_failed", run_id=run_id, action=control.value, attempt=attempt)

        raise WorkflowRunControlError(
            RunControlErrorCode.CONCURRENT_CONFLICT,
            f"Workflow run {run_id} kept changing; {control.value} was not applied",
            action=control.value,
            run_id=run_id,
        )

    async def cleanup_run(self, run_id: str, *, delete_branch: bool = False) -> Path | None:
        """Remove the worktree of a finished run.

        The worktree and its branch belong to the run until it reaches a
        terminal status, so pending, running and paused runs are refused.

        Args:
            run_id: Run to clean up
            delete_branch: Also delete the run's branch; it is kept by
                default so its commits stay reachable

        Returns:
            The removed worktree path, or None if the run had none

        Raises:
            WorkflowRunControlError: ``busy`` while the run is executing;
                ``invalid_transition`` while it is not terminal
        """
        state = await self.state.load_run(run_id)
        if self.leases.is_held(run_id):
            raise WorkflowRunControlError(
                RunControlErrorCode.BUSY,
                f"Workflow run {run_id} is being executed; cannot clean up",
                action="cleanup",
                run_id=run_id,
                run_status=state["status"],
            )
        status = RunStatus(state["status"])
        if not status.is_terminal:
            raise WorkflowRunControlError(
                RunControlErrorCode.INVALID_TRANSITION,
                f"Workflow run {run_id} is {status.value}; only finished runs can be cleaned up",
                action="cleanup",
                run_id=run_id,
                run_status=status.value,
            )

        path_value = state.get("worktree_path")
        if not path_value:
            return None

        path = Path(path_value)
        if self.worktrees is not None:
            await self.worktrees.remove_worktree(path, delete_branch=delete_branch)
        else:
            WorktreeManager._delete_directory(path)

        async with self.state.transaction(run_id) as current:
            current.pop("worktree_path", None)

        log.info("run_cleaned_up", run_id=run_id, path=str(path))
        return path
