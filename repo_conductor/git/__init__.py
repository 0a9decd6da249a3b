"""Sandbox layout, cloning and worktree management.

Modules:
    - sandbox: deterministic, validated sandbox paths per remote reference
    - clone: ``git clone`` with credential redaction
    - branch_name: branch name templates for run worktrees
    - worktree: per-run worktrees on top of a canonical clone
    - install_deps: lockfile-driven dependency install for fresh worktrees
    - exceptions: InvalidRemoteRefError, InvalidSandboxPathError, CloneError,
      WorktreeError, DependencyInstallError

Example:
    >>> from repo_conductor.git.sandbox import derive_sandbox_repo_path
    >>> derive_sandbox_repo_path("azure-devops", "contoso/platform/api")
    PosixPath('/home/me/.conductor/repos/azure-devops/contoso/platform/api')
"""
