"""Type definitions for persisted run state.

This module provides TypedDict definitions for the JSON documents the
StateManager writes to the state directory, enabling static type checking
for state dictionary access. Each run is stored as ``{run_id}.json``.

Example:
    A run waiting in its second phase::

        state: RunState = {
            "id": "a1b2c3d4e5f6",
            "workflow_name": "implement-issue",
            "workflow_version": 2,
            "current_phase": "review",
            "status": "running",
            "context": {"issue": 42, "last_outcome": "success"},
            "history": [
                {
                    "phase": "design",
                    "outcome": "success",
                    "timestamp": "2024-01-15T10:32:15+00:00",
                    "next_phase": "review",
                }
            ],
            "created_at": "2024-01-15T10:30:00+00:00",
            "updated_at": "2024-01-15T10:32:15+00:00",
        }
"""

from typing import Any, NotRequired, TypedDict


class HistoryEntryState(TypedDict):
    """One executed phase, appended after the phase finishes.

    History is append-only: entries are never edited or removed.
    """

    phase: str
    """Name of the phase that ran."""

    outcome: str
    """"success" or "failure"."""

    timestamp: str
    """ISO 8601 timestamp when the phase finished."""

    next_phase: NotRequired[str]
    """Phase selected by the transition evaluation, when one matched."""

    error: NotRequired[str]
    """Error message when the phase failed."""

    report: NotRequired[str]
    """Agent report, truncated for storage."""


class RunState(TypedDict):
    """Complete persisted state of a workflow run.

    ``workflow_name`` and ``workflow_version`` pin the definition the run
    was started with; a newer version of the same workflow never affects
    an existing run.
    """

    id: str
    """Unique run identifier; also the state file name."""

    workflow_name: str
    workflow_version: int

    current_phase: str
    """Phase the next execution step will run."""

    status: str
    """One of: pending, running, paused, completed, failed, cancelled."""

    context: dict[str, Any]
    """Accumulated key-value data guards are evaluated against."""

    history: list[HistoryEntryState]

    created_at: str
    updated_at: str

    worktree_path: NotRequired[str]
    """Isolated checkout prepared for the run, once one exists."""

    awaiting_transition: NotRequired[bool]
    """True when the current phase succeeded but no transition matched.

    The next execution step re-evaluates the phase's transitions against
    the (possibly updated) context instead of re-running the phase.
    """

    last_outcome: NotRequired[str]
    """Outcome of the most recent phase; read when settling an awaited transition."""

    error: NotRequired[str]
    """Reason the run failed, when status is "failed"."""
