"""Enumerations for repo-conductor runs, phases and providers."""

from enum import Enum


class ScmProviderKind(str, Enum):
    """Source-control hosting services a run can target."""

    GITHUB = "github"
    AZURE_DEVOPS = "azure-devops"

    def __str__(self) -> str:
        return self.value


class RunStatus(str, Enum):
    """Lifecycle status of a workflow run.

    ``completed``, ``failed`` and ``cancelled`` are terminal: a run in one of
    them never changes status again.
    """

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class PhaseType(str, Enum):
    """Kinds of phase a workflow can declare.

    Only ``agent`` phases hand work to the agent collaborator; the others
    complete immediately and exist to carry transitions.
    """

    AGENT = "agent"
    HUMAN = "human"
    TOOL = "tool"
    TERMINAL = "terminal"

    def __str__(self) -> str:
        return self.value


class PhaseOutcome(str, Enum):
    """Result of executing a single phase."""

    SUCCESS = "success"
    FAILURE = "failure"

    def __str__(self) -> str:
        return self.value


class RunControlAction(str, Enum):
    """Operator actions accepted by run control."""

    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"

    def __str__(self) -> str:
        return self.value


class ExecutionScope(str, Enum):
    """How much of a run a single execute call drives."""

    FULL = "full"
    SINGLE_NODE = "single_node"

    def __str__(self) -> str:
        return self.value


class StepOutcome(str, Enum):
    """What happened when the executor tried to run the next phase.

    - executed: a phase ran and its result was persisted
    - run_terminal: the run was already completed, failed or cancelled
    - blocked: the run is paused, or waiting for its context to satisfy a
      transition guard
    """

    EXECUTED = "executed"
    RUN_TERMINAL = "run_terminal"
    BLOCKED = "blocked"

    def __str__(self) -> str:
        return self.value
