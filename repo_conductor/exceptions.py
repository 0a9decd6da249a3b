"""Custom exception hierarchy for the repo-conductor workflow engine.

This module defines a structured exception hierarchy that enables
precise error handling, better debugging, and user-friendly error messages
throughout the engine, the sandbox layer and the SCM providers.

Exception Hierarchy:
    RepoConductorError (base)
    ├── ConfigurationError
    │   ├── InvalidRemoteRefError      (repo_conductor.git.exceptions)
    │   └── InvalidSandboxPathError    (repo_conductor.git.exceptions)
    ├── GitOperationError
    │   ├── CloneError                 (repo_conductor.git.exceptions)
    │   ├── WorktreeError              (repo_conductor.git.exceptions)
    │   └── DependencyInstallError     (repo_conductor.git.exceptions)
    ├── GuardEvaluationError
    ├── InvalidWorkItemIdError
    ├── WorkflowError
    │   ├── RunNotFoundError
    │   ├── WorkflowRunControlError
    │   ├── WorkflowRunExecutionError
    │   └── PhaseExecutionError
    ├── ExternalServiceError
    └── AgentError
        └── AgentTimeoutError

Example Usage:
    >>> from repo_conductor.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""

from enum import Enum


class RunControlErrorCode(str, Enum):
    """Machine-readable reasons a run-control request was rejected."""

    INVALID_TRANSITION = "invalid_transition"
    BUSY = "busy"
    CONCURRENT_CONFLICT = "concurrent_conflict"

    def __str__(self) -> str:
        return self.value


class RunExecutionErrorCode(str, Enum):
    """Machine-readable reasons a run could not be executed."""

    WORKFLOW_NOT_FOUND = "workflow_not_found"
    PHASE_NOT_FOUND = "phase_not_found"

    def __str__(self) -> str:
        return self.value


class RepoConductorError(Exception):
    """Base exception for all repo-conductor errors.

    All custom exceptions in the engine inherit from this base class,
    allowing callers to catch every repo-conductor-specific error with
    a single except clause.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(RepoConductorError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings. Invalid input that can be rejected before any
    I/O happens (bad remote references, unsupported provider kinds) also
    lands here.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Unsupported SCM provider kind
        - Workflow definition referencing an unknown phase
    """

    pass


class GitOperationError(RepoConductorError):
    """Git operation errors.

    Raised when Git operations fail (clone, fetch, worktree add/remove)
    or repository state is invalid. See repo_conductor.git.exceptions for
    the clone and worktree specific subclasses.
    """

    pass


class GuardEvaluationError(RepoConductorError):
    """A guard expression is malformed.

    Raised for unknown operators, unknown logic keywords, or expressions
    whose shape is neither a condition nor a group.
    """

    pass


class InvalidWorkItemIdError(RepoConductorError, ValueError):
    """A work item or issue id is not a positive integer."""

    pass


class WorkflowError(RepoConductorError):
    """Workflow execution errors.

    Raised when workflow execution fails (run control, state management,
    phase selection, etc.).

    Examples:
        - Workflow definition not registered
        - Run state not found
        - Run-control action rejected
        - State persistence failed
    """

    pass


class RunNotFoundError(WorkflowError):
    """No persisted state exists for the requested run id."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Workflow run not found: {run_id}")


class WorkflowRunControlError(WorkflowError):
    """A run-control request could not be applied.

    Attributes:
        code: Why the request was rejected (see RunControlErrorCode)
        action: The control action requested, or "execute" for executions
        run_id: The run the request targeted
        run_status: Status of the run when the request was rejected
    """

    def __init__(
        self,
        code: RunControlErrorCode,
        message: str,
        *,
        action: str,
        run_id: str,
        run_status: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            code: Machine-readable rejection reason
            message: Error message
            action: Action that was rejected
            run_id: Target run id
            run_status: Run status observed at rejection time
        """
        self.code = code
        self.action = action
        self.run_id = run_id
        self.run_status = run_status
        super().__init__(message)


class WorkflowRunExecutionError(WorkflowError):
    """A run could not be executed because its inputs are inconsistent.

    Attributes:
        code: Why execution was refused (see RunExecutionErrorCode)
        run_id: The run being executed, if any
    """

    def __init__(
        self,
        code: RunExecutionErrorCode,
        message: str,
        run_id: str | None = None,
    ) -> None:
        self.code = code
        self.run_id = run_id
        super().__init__(message)


class PhaseExecutionError(WorkflowError):
    """A single phase could not be executed.

    Attributes:
        phase: Name of the phase that failed
        recoverable: Whether a later step may succeed without intervention
    """

    def __init__(self, message: str, phase: str, recoverable: bool = False) -> None:
        self.phase = phase
        self.recoverable = recoverable
        super().__init__(f"Phase '{phase}' failed: {message}")
        self.message = message


class ExternalServiceError(RepoConductorError):
    """External service communication errors.

    Raised when communication with the GitHub or Azure DevOps APIs fails
    (HTTP errors, API failures, timeouts, etc.).

    Examples:
        - HTTP request failed
        - API returned error
        - Rate limiting
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.message = message
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)


class AgentError(RepoConductorError):
    """Base exception for agent execution errors.

    Attributes:
        message: Human-readable error description
        phase: Phase being executed when the error occurred
    """

    def __init__(self, message: str, phase: str | None = None) -> None:
        self.phase = phase
        full_message = f"{message} (phase: {phase})" if phase else message
        super().__init__(full_message)
        # Preserve original message
        self.message = message


class AgentTimeoutError(AgentError):
    """Agent took too long to respond.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        phase: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        if timeout_seconds and "timeout" not in message.lower():
            message = f"{message} (timeout: {timeout_seconds}s)"
        super().__init__(message, phase=phase)
