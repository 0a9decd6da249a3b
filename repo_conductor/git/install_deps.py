"""Dependency install for freshly created worktrees.

A new worktree only contains tracked files, so an agent working in it would
find no installed packages. The install command is picked from the first
lockfile present, in this order:

    pnpm-lock.yaml      pnpm install
    bun.lockb, bun.lock bun install
    yarn.lock           yarn install
    package-lock.json   npm install
    uv.lock             uv sync
    poetry.lock         poetry install
    Pipfile.lock        pipenv install
    requirements.txt    pip install -r requirements.txt
    Gemfile.lock        bundle install
    go.sum              go mod download
    Cargo.lock          cargo fetch

Environment:
    CONDUCTOR_INSTALL_CMD: Shell command run instead of the lockfile lookup
    CONDUCTOR_SKIP_INSTALL: "1" skips the install
    CONDUCTOR_INSTALL_TIMEOUT_SECONDS: Positive number of seconds
"""

import os
import shlex
from collections.abc import Mapping
from pathlib import Path

import structlog

from repo_conductor.exceptions import ConfigurationError
from repo_conductor.git.exceptions import DependencyInstallError
from repo_conductor.models.domain import InstallResult
from repo_conductor.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

INSTALL_COMMAND_ENV = "CONDUCTOR_INSTALL_CMD"
SKIP_INSTALL_ENV = "CONDUCTOR_SKIP_INSTALL"
INSTALL_TIMEOUT_ENV = "CONDUCTOR_INSTALL_TIMEOUT_SECONDS"
DEFAULT_INSTALL_TIMEOUT_SECONDS = 300.0

LOCKFILE_COMMANDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("pnpm-lock.yaml", ("pnpm", "install")),
    ("bun.lockb", ("bun", "install")),
    ("bun.lock", ("bun", "install")),
    ("yarn.lock", ("yarn", "install")),
    ("package-lock.json", ("npm", "install")),
    ("uv.lock", ("uv", "sync")),
    ("poetry.lock", ("poetry", "install")),
    ("Pipfile.lock", ("pipenv", "install")),
    ("requirements.txt", ("pip", "install", "-r", "requirements.txt")),
    ("Gemfile.lock", ("bundle", "install")),
    ("go.sum", ("go", "mod", "download")),
    ("Cargo.lock", ("cargo", "fetch")),
)

# Lines of stderr kept in the error message of a failed install.
STDERR_TAIL_LINES = 20


def detect_lockfile_command(worktree_path: Path) -> tuple[str, tuple[str, ...]] | None:
    """Return ``(lockfile, argv)`` for the first lockfile present, if any."""
    for lockfile, argv in LOCKFILE_COMMANDS:
        if (worktree_path / lockfile).is_file():
            return lockfile, argv
    return None


def resolve_install_timeout(environment: Mapping[str, str], timeout_seconds: float | None = None) -> float:
    """Timeout for the install: explicit value, then environment, then default.

    Raises:
        ConfigurationError: If the environment value is not a positive number
    """
    if timeout_seconds is not None:
        return timeout_seconds

    raw = environment.get(INSTALL_TIMEOUT_ENV, "").strip()
    if not raw:
        return DEFAULT_INSTALL_TIMEOUT_SECONDS
    try:
        value = float(raw)
    except ValueError:
        value = 0.0
    if not value > 0 or value == float("inf"):
        raise ConfigurationError(f"{INSTALL_TIMEOUT_ENV} must be a positive number of seconds, got: {raw}")
    return value


async def install_dependencies(
    worktree_path: Path,
    *,
    environment: Mapping[str, str] | None = None,
    skip: bool = False,
    command: str | None = None,
    timeout_seconds: float | None = None,
) -> InstallResult:
    """Install the dependencies of a worktree.

    Args:
        worktree_path: Worktree to install into; also the working directory
        environment: Environment for the lookup and the command; None uses
            ``os.environ``
        skip: Skip without looking at the worktree
        command: Shell command overriding the lockfile lookup; takes
            precedence over ``CONDUCTOR_INSTALL_CMD``
        timeout_seconds: Overrides ``CONDUCTOR_INSTALL_TIMEOUT_SECONDS``

    Returns:
        What ran, or why nothing did

    Raises:
        ConfigurationError: If the timeout setting is invalid
        DependencyInstallError: If the command cannot start, fails or times out
    """
    if skip:
        log.info("dependency_install_skipped", path=str(worktree_path), reason="skip_option")
        return InstallResult(status="skipped", reason="skip_option")

    env = dict(os.environ if environment is None else environment)
    if env.get(SKIP_INSTALL_ENV, "").strip() == "1":
        log.info("dependency_install_skipped", path=str(worktree_path), reason="skip_env")
        return InstallResult(status="skipped", reason="skip_env")

    timeout = resolve_install_timeout(env, timeout_seconds)

    override = (command or env.get(INSTALL_COMMAND_ENV) or "").strip()
    lockfile: str | None = None
    if override:
        argv: tuple[str, ...] = ("sh", "-c", override)
        display = override
        source = "override"
    else:
        detected = detect_lockfile_command(worktree_path)
        if detected is None:
            log.info("dependency_install_skipped", path=str(worktree_path), reason="no_lockfile")
            return InstallResult(status="skipped", reason="no_lockfile")
        lockfile, argv = detected
        display = shlex.join(argv)
        source = "lockfile"

    log.info(
        "dependency_install_started",
        path=str(worktree_path),
        command=display,
        source=source,
        lockfile=lockfile,
        timeout=timeout,
    )
    try:
        _, stderr, code = await run_command(*argv, cwd=worktree_path, check=False, timeout=timeout, env=env)
    except FileNotFoundError as e:
        raise DependencyInstallError(
            f'Install command "{display}" failed to start: {e}', worktree_path, display
        ) from e
    except TimeoutError as e:
        raise DependencyInstallError(
            f'Install command "{display}" timed out after {timeout:g}s', worktree_path, display
        ) from e

    if code != 0:
        tail = "\n".join(stderr.strip().splitlines()[-STDERR_TAIL_LINES:])
        message = f'Install command "{display}" failed with exit code {code}'
        raise DependencyInstallError(f"{message}: {tail}" if tail else message, worktree_path, display, code)

    log.info("dependency_install_finished", path=str(worktree_path), command=display)
    return InstallResult(
        status="installed",
        source=source,
        command=display,
        lockfile=lockfile,
        timeout_seconds=timeout,
    )
