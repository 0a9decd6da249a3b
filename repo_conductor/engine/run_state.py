"""Run status machine.

Two explicit tables drive every status change a run can make:

- RUN_TRANSITIONS lists the statuses reachable from each status. The
  executor consults it whenever a phase result moves a run.
- CONTROL_TRANSITIONS maps an operator action on a given status to the
  resulting status. Pairs missing from it are rejected; nothing is
  silently ignored.

Terminal statuses (completed, failed, cancelled) appear in neither table
as a source, so a terminal run never changes again.
"""

from repo_conductor.enums import RunControlAction, RunStatus

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.PAUSED}
    ),
    RunStatus.PAUSED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

CONTROL_TRANSITIONS: dict[tuple[RunStatus, RunControlAction], RunStatus] = {
    (RunStatus.RUNNING, RunControlAction.PAUSE): RunStatus.PAUSED,
    (RunStatus.PAUSED, RunControlAction.RESUME): RunStatus.RUNNING,
    (RunStatus.PENDING, RunControlAction.CANCEL): RunStatus.CANCELLED,
    (RunStatus.RUNNING, RunControlAction.CANCEL): RunStatus.CANCELLED,
    (RunStatus.PAUSED, RunControlAction.CANCEL): RunStatus.CANCELLED,
}


def is_run_terminal(status: RunStatus | str) -> bool:
    return RunStatus(status).is_terminal


def can_transition_run(from_status: RunStatus | str, to_status: RunStatus | str) -> bool:
    """Return True if a run may move from ``from_status`` to ``to_status``."""
    return RunStatus(to_status) in RUN_TRANSITIONS[RunStatus(from_status)]


def resolve_control_transition(
    status: RunStatus | str, action: RunControlAction | str
) -> RunStatus | None:
    """Look up the status a control action leads to.

    Returns:
        The resulting status, or None when the action is not allowed from
        ``status``
    """
    return CONTROL_TRANSITIONS.get((RunStatus(status), RunControlAction(action)))
