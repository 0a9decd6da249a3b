"""
Abstract base classes for providers.

This module defines the interfaces the engine depends on: source-control
providers (GitHub, Azure DevOps) that clone repositories, read work items
and open pull requests, and agent runners that execute a phase prompt.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from repo_conductor.enums import ScmProviderKind
from repo_conductor.exceptions import InvalidWorkItemIdError
from repo_conductor.models.domain import (
    AgentResult,
    AuthStatus,
    CreatePullRequestParams,
    PullRequestResult,
    WorkItem,
)
from repo_conductor.models.workflow import PhaseDefinition


def parse_positive_integer_id(value: int | str, entity: str) -> int:
    """Validate a work item id before it reaches the network.

    Args:
        value: Integer or string of ASCII digits
        entity: Name used in the error message, e.g. "GitHub issue"

    Returns:
        The id as a positive int

    Raises:
        InvalidWorkItemIdError: For booleans, non-integers and ids < 1
    """
    parsed: int | None = None
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        # ASCII only: isdigit() also accepts "²", which int() rejects.
        if text.isascii() and text.isdecimal():
            parsed = int(text)

    if parsed is None or parsed < 1:
        raise InvalidWorkItemIdError(f"Invalid {entity} id: {value}")
    return parsed


class ScmProvider(ABC):
    """Abstract base class for source-control providers.

    A provider is bound to one repository, identified by ``remote_ref`` in
    the provider's own notation (``owner/repo`` for GitHub,
    ``org/project/repository`` for Azure DevOps). Provider-specific
    payloads are normalized into the domain models in models.domain.

    All methods are async so HTTP and git I/O never block the event loop.
    """

    kind: ScmProviderKind

    @property
    @abstractmethod
    def remote_ref(self) -> str:
        """Remote reference of the bound repository."""

    @abstractmethod
    def get_config(self) -> Mapping[str, Any]:
        """Return the provider configuration (without secrets)."""

    @abstractmethod
    async def check_auth(self, environment: Mapping[str, str] | None = None) -> AuthStatus:
        """Report whether usable credentials are available.

        Never modifies any state. A missing or rejected credential is an
        unauthenticated status, not an exception.
        """

    @abstractmethod
    async def clone_repo(
        self,
        remote_ref: str,
        local_path: Path,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        """Materialize ``remote_ref`` at ``local_path``.

        Raises:
            CloneError: If the destination already holds other content or
                the clone fails
        """

    @abstractmethod
    async def get_work_item(self, work_item_id: int | str) -> WorkItem:
        """Fetch an issue or work item by its numeric id.

        Raises:
            InvalidWorkItemIdError: If the id is not a positive integer;
                raised before any network call
        """

    @abstractmethod
    async def create_pull_request(self, params: CreatePullRequestParams) -> PullRequestResult:
        """Open a pull request from ``params.source_branch``."""

    async def close(self) -> None:
        """Release network resources held by the provider."""
        return None


class AgentRunner(ABC):
    """Executes the prompt of an agent phase.

    Implementations decide how the agent is reached (CLI, SDK...). They
    report success or failure through the returned AgentResult; raising is
    reserved for infrastructure problems, which the executor records as a
    failed phase.
    """

    @abstractmethod
    async def run_phase(
        self,
        phase: PhaseDefinition,
        context: Mapping[str, Any],
        working_dir: Path | None,
    ) -> AgentResult:
        """Run one phase.

        Args:
            phase: Phase being executed (its prompt drives the agent)
            context: Current run context, read-only
            working_dir: Run worktree, or None when the run has no repository

        Returns:
            Outcome, context fragment and report for the phase
        """
