"""
Domain models for the workflow engine.

This module contains the data classes representing the core entities the
engine passes around: normalized SCM records (work items, pull requests,
auth status), worktree descriptions, agent results, and the read-only
views and result records produced by the run executor. SCM records are the
normalized internal representation, converted from provider-specific
formats (GitHub, Azure DevOps).

Example:
    Normalizing a GitHub issue::

        item = WorkItem(
            id="42",
            title="Fix login bug",
            body="Users cannot log in with SSO",
            labels=["bug"],
            provider=ScmProviderKind.GITHUB,
            url="https://github.com/org/repo/issues/42",
        )
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from repo_conductor.enums import (
    ExecutionScope,
    PhaseOutcome,
    RunControlAction,
    RunStatus,
    ScmProviderKind,
    StepOutcome,
)


@dataclass
class WorkItem:
    """Issue or work item normalized across providers.

    Attributes:
        id: Provider identifier, rendered as a string
        title: Short summary
        body: Description text (may be empty)
        labels: Label or tag names
        provider: Provider the item was read from
        url: Browser URL, when the provider exposes one
    """

    id: str
    title: str
    body: str
    labels: list[str]
    provider: ScmProviderKind
    url: str | None = None


@dataclass
class CreatePullRequestParams:
    """Input for opening a pull request.

    ``target_branch`` defaults to the provider's conventional main branch
    when omitted.
    """

    title: str
    body: str
    source_branch: str
    target_branch: str | None = None


@dataclass
class PullRequestResult:
    """Identifier and URL of a newly opened pull request."""

    id: str
    provider: ScmProviderKind
    url: str | None = None


@dataclass
class AuthStatus:
    """Result of a provider authentication check."""

    authenticated: bool
    user: str | None = None
    scopes: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class InstallResult:
    """Outcome of the dependency install for a fresh worktree.

    Attributes:
        status: "installed" or "skipped"
        reason: Why the install was skipped: "skip_option", "skip_env" or
            "no_lockfile"
        source: "override" or "lockfile" for an install that ran
        command: Command line that ran, as displayed in logs
        lockfile: Lockfile that selected the command
        timeout_seconds: Timeout the command ran under
    """

    status: str
    reason: str | None = None
    source: str | None = None
    command: str | None = None
    lockfile: str | None = None
    timeout_seconds: float | None = None


@dataclass
class WorktreeInfo:
    """A git worktree checked out for a run.

    Attributes:
        path: Absolute worktree directory
        branch: Checked-out branch, or "detached"
        commit: HEAD commit sha
        run_id: Owning run, when the worktree follows the per-run layout
        install: Dependency install performed when the worktree was created
    """

    path: Path
    branch: str
    commit: str
    run_id: str | None = None
    install: InstallResult | None = None


@dataclass
class AgentResult:
    """What the agent collaborator reports back for one phase.

    Attributes:
        outcome: Success or failure of the phase
        context: Fragment merged into the run context
        report: Free-form text produced by the agent
    """

    outcome: PhaseOutcome
    context: dict[str, Any] = field(default_factory=dict)
    report: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == PhaseOutcome.SUCCESS


@dataclass
class HistoryEntry:
    """One executed phase in a run's append-only history."""

    phase: str
    outcome: PhaseOutcome
    timestamp: datetime
    next_phase: str | None = None
    error: str | None = None
    report: str | None = None


@dataclass
class Run:
    """Read-only view of a persisted workflow run."""

    id: str
    workflow_name: str
    workflow_version: int
    current_phase: str
    status: RunStatus
    context: dict[str, Any]
    history: list[HistoryEntry]
    created_at: datetime
    updated_at: datetime
    worktree_path: Path | None = None
    awaiting_transition: bool = False
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> "Run":
        """Build a view from a persisted run state dictionary."""
        history = [
            HistoryEntry(
                phase=entry["phase"],
                outcome=PhaseOutcome(entry["outcome"]),
                timestamp=datetime.fromisoformat(entry["timestamp"]),
                next_phase=entry.get("next_phase"),
                error=entry.get("error"),
                report=entry.get("report"),
            )
            for entry in state.get("history", [])
        ]
        worktree_path = state.get("worktree_path")
        return cls(
            id=state["id"],
            workflow_name=state["workflow_name"],
            workflow_version=state["workflow_version"],
            current_phase=state["current_phase"],
            status=RunStatus(state["status"]),
            context=dict(state.get("context", {})),
            history=history,
            created_at=datetime.fromisoformat(state["created_at"]),
            updated_at=datetime.fromisoformat(state["updated_at"]),
            worktree_path=Path(worktree_path) if worktree_path else None,
            awaiting_transition=bool(state.get("awaiting_transition", False)),
            error=state.get("error"),
        )


@dataclass
class StepResult:
    """Result of one ``execute_next_runnable_node`` call.

    ``phase`` and ``phase_outcome`` are set only when a phase actually ran.
    """

    run_id: str
    outcome: StepOutcome
    status: RunStatus
    phase: str | None = None
    phase_outcome: PhaseOutcome | None = None
    next_phase: str | None = None


@dataclass
class WorkflowRunResult:
    """Result of driving a run with ``execute_workflow_run``."""

    run_id: str
    scope: ExecutionScope
    status: RunStatus
    executed_phases: list[str]
    final_step: StepResult


@dataclass
class RunControlResult:
    """Result of an accepted pause, resume or cancel request."""

    run_id: str
    action: RunControlAction
    previous_status: RunStatus
    status: RunStatus
