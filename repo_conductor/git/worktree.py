"""Per-run git worktrees on top of a shared canonical clone.

Layout for a canonical clone at ``<sandbox>/github/acme/widgets``::

    <sandbox>/github/acme/widgets                  canonical clone
    <sandbox>/github/acme/widgets.worktrees/<run>  worktree of run <run>

The worktree path is a pure function of the clone path and the run id, so
two runs never share a checkout and a run always finds its own again.

Concurrency:
    The canonical clone is only mutated (clone, fetch, worktree add/prune)
    while holding a per-clone asyncio lock owned by the manager. Worktrees
    themselves belong to exactly one run.
"""

import asyncio
import os
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path

import structlog

from repo_conductor.git.branch_name import generate_branch_name
from repo_conductor.git.clone import git_environment, is_git_checkout
from repo_conductor.git.exceptions import WorktreeError
from repo_conductor.git.install_deps import install_dependencies
from repo_conductor.git.sandbox import derive_sandbox_repo_path, validate_path_segment
from repo_conductor.models.domain import WorktreeInfo
from repo_conductor.providers.base import ScmProvider
from repo_conductor.utils.async_subprocess import run_command
from repo_conductor.utils.retry import async_retry

log = structlog.get_logger(__name__)

WORKTREES_SUFFIX = ".worktrees"
DETACHED = "detached"


def worktrees_dir_for(sandbox_repo_path: Path) -> Path:
    return sandbox_repo_path.with_name(sandbox_repo_path.name + WORKTREES_SUFFIX)


def worktree_path_for(sandbox_repo_path: Path, run_id: str) -> Path:
    """Return where the worktree of ``run_id`` lives. Pure; touches nothing."""
    return worktrees_dir_for(sandbox_repo_path) / validate_path_segment(run_id)


def parse_worktree_porcelain(output: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output.

    Entries without a HEAD (bare repositories) are skipped; entries without
    a branch line are reported as ``detached``.
    """
    worktrees: list[WorktreeInfo] = []
    path: str | None = None
    commit: str | None = None
    branch: str | None = None

    for line in [*output.splitlines(), ""]:
        if line.startswith("worktree "):
            path = line[len("worktree ") :]
        elif line.startswith("HEAD "):
            commit = line[len("HEAD ") :]
        elif line.startswith("branch "):
            branch = line[len("branch ") :].removeprefix("refs/heads/")
        elif line == "":
            if path and commit:
                worktrees.append(WorktreeInfo(path=Path(path), branch=branch or DETACHED, commit=commit))
            path = commit = branch = None

    return worktrees


class WorktreeManager:
    """Creates, lists and removes run worktrees for one SCM provider.

    Example:
        >>> manager = WorktreeManager(provider)
        >>> clone = manager.sandbox_repo_path()
        >>> info = await manager.create_worktree(clone, "a1b2c3", workflow="implement")
        >>> await manager.remove_worktree(info.path)
    """

    def __init__(
        self,
        provider: ScmProvider,
        *,
        environment: Mapping[str, str] | None = None,
        branch_template: str | None = None,
        install: bool = True,
        install_command: str | None = None,
        install_timeout_seconds: float | None = None,
    ) -> None:
        self.provider = provider
        self.environment = environment
        self.branch_template = branch_template
        self.install = install
        self.install_command = install_command
        self.install_timeout_seconds = install_timeout_seconds
        self._locks: dict[Path, asyncio.Lock] = {}

    def _lock_for(self, sandbox_repo_path: Path) -> asyncio.Lock:
        key = sandbox_repo_path.resolve()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _git_env(self) -> dict[str, str]:
        return git_environment(os.environ if self.environment is None else self.environment)

    def sandbox_repo_path(self) -> Path:
        """Canonical clone location for the provider's repository."""
        return derive_sandbox_repo_path(self.provider.kind, self.provider.remote_ref, self.environment)

    async def ensure_clone(self, sandbox_repo_path: Path) -> None:
        """Make sure the canonical clone exists (caller holds the clone lock).

        An existing checkout is reused and refreshed with a best-effort
        fetch. Otherwise the provider clones into the path.

        Raises:
            CloneError: If the path holds something else or cloning fails
        """
        if is_git_checkout(sandbox_repo_path):
            _, stderr, code = await run_command(
                "git", "fetch", "--prune", "origin",
                cwd=sandbox_repo_path,
                check=False,
                env=self._git_env(),
            )
            if code != 0:
                log.warning("repository_fetch_failed", path=str(sandbox_repo_path), error=stderr.strip())
            return

        await self.provider.clone_repo(self.provider.remote_ref, sandbox_repo_path, self.environment)

    async def create_worktree(
        self,
        sandbox_repo_path: Path,
        run_id: str,
        *,
        workflow: str = "run",
        branch: str | None = None,
        base_ref: str | None = None,
    ) -> WorktreeInfo:
        """Create (or return the existing) worktree for a run.

        A branch that already exists (a run recreating its worktree) is
        checked out as is; only a new branch starts at ``base_ref``.
        Dependencies are installed into a newly created worktree, never
        into a reused one.

        Args:
            sandbox_repo_path: Canonical clone location
            run_id: Owning run; determines the worktree path
            workflow: Workflow name used in the generated branch name
            branch: Explicit branch name instead of the template
            base_ref: Ref to branch from when the branch is new; defaults
                to the clone's HEAD

        Returns:
            Path, branch, HEAD commit and install result of the worktree

        Raises:
            CloneError: If the canonical clone cannot be prepared
            WorktreeError: If ``git worktree add`` fails twice
            DependencyInstallError: If the dependency install fails
        """
        path = worktree_path_for(sandbox_repo_path, run_id)

        async with self._lock_for(sandbox_repo_path):
            await self.ensure_clone(sandbox_repo_path)

            for existing in await self._list(sandbox_repo_path):
                if existing.path.resolve() == path.resolve() and path.is_dir():
                    log.info("worktree_reused", run_id=run_id, path=str(path))
                    existing.run_id = run_id
                    return existing

            branch_name = (branch or "").strip() or generate_branch_name(
                self.branch_template, workflow=workflow, run_id=run_id
            )
            path.parent.mkdir(parents=True, exist_ok=True)
            await self._add_worktree(sandbox_repo_path, path, branch_name, base_ref)

            stdout, _, _ = await run_command("git", "rev-parse", "HEAD", cwd=path, env=self._git_env())

        info = WorktreeInfo(path=path, branch=branch_name, commit=stdout.strip(), run_id=run_id)
        log.info("worktree_created", run_id=run_id, path=str(path), branch=branch_name, commit=info.commit)

        info.install = await install_dependencies(
            path,
            environment=self.environment,
            skip=not self.install,
            command=self.install_command,
            timeout_seconds=self.install_timeout_seconds,
        )
        return info

    async def _branch_exists(self, sandbox_repo_path: Path, branch: str) -> bool:
        _, _, code = await run_command(
            "git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}",
            cwd=sandbox_repo_path,
            check=False,
            env=self._git_env(),
        )
        return code == 0

    @async_retry(max_attempts=2, backoff_factor=0, exceptions=(WorktreeError,))
    async def _add_worktree(
        self,
        sandbox_repo_path: Path,
        path: Path,
        branch: str,
        base_ref: str | None,
    ) -> None:
        if await self._branch_exists(sandbox_repo_path, branch):
            # An existing branch keeps its commits; -B would reset it.
            args = ["git", "worktree", "add", str(path), branch]
            if base_ref and base_ref.strip():
                log.info("worktree_branch_exists", branch=branch, ignored_base_ref=base_ref.strip())
        else:
            args = ["git", "worktree", "add", "-b", branch, str(path)]
            if base_ref and base_ref.strip():
                args.append(base_ref.strip())

        try:
            await run_command(*args, cwd=sandbox_repo_path, env=self._git_env())
        except subprocess.CalledProcessError as e:
            # Stale registrations (e.g. a deleted directory) block re-adding.
            await run_command(
                "git", "worktree", "prune", cwd=sandbox_repo_path, check=False, env=self._git_env()
            )
            if path.exists() and not any(path.iterdir()):
                path.rmdir()
            raise WorktreeError(
                f"git worktree add failed for {path}: {(e.stderr or '').strip()}", path
            ) from e

    async def remove_worktree(
        self,
        worktree_path: Path,
        sandbox_repo_path: Path | None = None,
        *,
        delete_branch: bool = False,
    ) -> None:
        """Remove a worktree. Removing one that is already gone is a no-op.

        The worktree's branch survives by default, so recreating the
        worktree later continues from its commits.

        Args:
            worktree_path: Worktree directory
            sandbox_repo_path: Canonical clone; derived from the worktree
                layout when omitted
            delete_branch: Also delete the branch the worktree had checked
                out (``git branch --delete --force``)

        Raises:
            WorktreeError: If the directory or the branch cannot be deleted
        """
        repo_path = sandbox_repo_path or self._clone_for(worktree_path)
        clone_exists = repo_path is not None and is_git_checkout(repo_path)

        if clone_exists:
            assert repo_path is not None
            async with self._lock_for(repo_path):
                branch = None
                if delete_branch:
                    branch = await self._checked_out_branch(repo_path, worktree_path)
                await run_command(
                    "git", "worktree", "remove", "--force", str(worktree_path),
                    cwd=repo_path,
                    check=False,
                    env=self._git_env(),
                )
                self._delete_directory(worktree_path)
                await run_command("git", "worktree", "prune", cwd=repo_path, check=False, env=self._git_env())
                if branch is not None:
                    await self._delete_branch(repo_path, branch)
        else:
            self._delete_directory(worktree_path)

        log.info("worktree_removed", path=str(worktree_path))

    async def _checked_out_branch(self, repo_path: Path, worktree_path: Path) -> str | None:
        target = worktree_path.resolve()
        for info in await self._list(repo_path):
            if info.path.resolve() == target and info.branch != DETACHED:
                return info.branch
        return None

    async def _delete_branch(self, repo_path: Path, branch: str) -> None:
        try:
            await run_command(
                "git", "branch", "--delete", "--force", branch, cwd=repo_path, env=self._git_env()
            )
        except subprocess.CalledProcessError as e:
            raise WorktreeError(f"Could not delete branch {branch}: {(e.stderr or '').strip()}") from e
        log.info("worktree_branch_deleted", branch=branch)

    @staticmethod
    def _delete_directory(path: Path) -> None:
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise WorktreeError(f"Could not delete worktree directory {path}: {e}", path) from e

    @staticmethod
    def _clone_for(worktree_path: Path) -> Path | None:
        parent = worktree_path.parent
        if not parent.name.endswith(WORKTREES_SUFFIX):
            return None
        return parent.with_name(parent.name[: -len(WORKTREES_SUFFIX)])

    async def list_worktrees(self, sandbox_repo_path: Path) -> list[WorktreeInfo]:
        """List run worktrees of a canonical clone (the clone itself excluded).

        Returns an empty list when the clone does not exist yet.
        """
        if not is_git_checkout(sandbox_repo_path):
            return []
        return await self._list(sandbox_repo_path)

    async def _list(self, sandbox_repo_path: Path) -> list[WorktreeInfo]:
        stdout, _, _ = await run_command(
            "git", "worktree", "list", "--porcelain", cwd=sandbox_repo_path, env=self._git_env()
        )
        clone = sandbox_repo_path.resolve()
        worktrees_dir = worktrees_dir_for(clone)
        result = []
        for info in parse_worktree_porcelain(stdout):
            resolved = info.path.resolve()
            if resolved == clone:
                continue
            if resolved.parent == worktrees_dir:
                info.run_id = resolved.name
            result.append(info)
        return result
