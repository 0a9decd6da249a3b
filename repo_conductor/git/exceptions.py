"""Exceptions raised by the sandbox, clone and worktree helpers.

Path and reference problems are configuration errors: they are detected
before any filesystem or network work happens and are never retried.
Clone and worktree failures are git operation errors.
"""

from pathlib import Path

from repo_conductor.exceptions import ConfigurationError, GitOperationError


class InvalidRemoteRefError(ConfigurationError):
    """A remote reference has the wrong shape for its provider."""

    def __init__(self, message: str, remote_ref: str) -> None:
        self.remote_ref = remote_ref
        super().__init__(message)


class InvalidSandboxPathError(ConfigurationError):
    """A path segment would escape or corrupt the sandbox layout."""

    def __init__(self, segment: str) -> None:
        self.segment = segment
        super().__init__(f"Invalid sandbox path segment: {segment}")


class CloneError(GitOperationError):
    """Cloning a repository into the sandbox failed.

    Attributes:
        destination: Directory the clone targeted
        hint: Optional suggestion for resolving the problem
    """

    def __init__(self, message: str, destination: Path, hint: str | None = None) -> None:
        self.destination = destination
        self.hint = hint
        full_message = f"{message}\n\nHint: {hint}" if hint else message
        super().__init__(full_message)
        self.message = message


class WorktreeError(GitOperationError):
    """Creating, listing or removing a worktree failed."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(message)


class DependencyInstallError(GitOperationError):
    """Installing a worktree's dependencies failed or timed out.

    Attributes:
        worktree_path: Worktree the install ran in
        command: Install command as displayed in logs
        return_code: Exit status, or None when the command never finished
    """

    def __init__(
        self,
        message: str,
        worktree_path: Path,
        command: str,
        return_code: int | None = None,
    ) -> None:
        self.worktree_path = worktree_path
        self.command = command
        self.return_code = return_code
        super().__init__(message)
