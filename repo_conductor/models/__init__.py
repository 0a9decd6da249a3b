"""Data models for workflows, runs and normalized SCM records."""

from repo_conductor.models.domain import (
    AgentResult,
    AuthStatus,
    CreatePullRequestParams,
    HistoryEntry,
    PullRequestResult,
    Run,
    RunControlResult,
    StepResult,
    WorkflowRunResult,
    WorkItem,
    WorktreeInfo,
)
from repo_conductor.models.workflow import PhaseDefinition, Transition, WorkflowDefinition

__all__ = [
    "AgentResult",
    "AuthStatus",
    "CreatePullRequestParams",
    "HistoryEntry",
    "PhaseDefinition",
    "PullRequestResult",
    "Run",
    "RunControlResult",
    "StepResult",
    "Transition",
    "WorkflowDefinition",
    "WorkflowRunResult",
    "WorkItem",
    "WorktreeInfo",
]
