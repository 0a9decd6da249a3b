"""Cloning repositories into the sandbox.

Providers build the clone URL and any authentication arguments; this module
owns the shared mechanics:

- refusing destinations that already hold something else
- running ``git clone`` without ever prompting for credentials
- removing a partial clone it created when the clone fails
- keeping ``AUTHORIZATION`` headers out of every error message

Authentication is passed as a one-shot ``-c http.<origin>/.extraheader=...``
config argument so the token is never written to the clone's config.
"""

import base64
import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from urllib.parse import urlsplit

import git
import structlog
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from repo_conductor.git.exceptions import CloneError
from repo_conductor.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

EXTRA_HEADER_MARKER = ".extraheader="
AUTHORIZATION_PREFIX = "authorization:"
REDACTED_AUTHORIZATION = "AUTHORIZATION: <redacted>"


def redact_git_auth_arg(arg: str) -> str:
    """Replace the value of an ``extraheader`` AUTHORIZATION argument."""
    marker_index = arg.lower().find(EXTRA_HEADER_MARKER)
    if marker_index == -1:
        return arg

    header_start = marker_index + len(EXTRA_HEADER_MARKER)
    raw_header = arg[header_start:]
    header = raw_header.lstrip()
    if not header.lower().startswith(AUTHORIZATION_PREFIX):
        return arg

    leading_whitespace = raw_header[: len(raw_header) - len(header)]
    return f"{arg[:header_start]}{leading_whitespace}{REDACTED_AUTHORIZATION}"


def redact_git_auth_args(args: Sequence[str]) -> list[str]:
    return [redact_git_auth_arg(arg) for arg in args]


def contains_git_auth_args(args: Sequence[str]) -> bool:
    return any(redact_git_auth_arg(arg) != arg for arg in args)


def build_basic_auth_args(clone_url: str, username: str, token: str) -> list[str]:
    """Build ``git -c`` arguments that send a basic auth header to one origin.

    Args:
        clone_url: HTTPS URL being cloned; the header is scoped to its origin
        username: Basic auth user (``x-access-token`` for GitHub tokens,
            empty for Azure DevOps PATs)
        token: Secret to send

    Returns:
        ``["-c", "http.<origin>/.extraheader=AUTHORIZATION: basic <b64>"]``,
        or an empty list for non-HTTP URLs
    """
    parts = urlsplit(clone_url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return []

    encoded = base64.b64encode(f"{username}:{token}".encode()).decode("ascii")
    origin = f"{parts.scheme}://{parts.netloc}"
    return ["-c", f"http.{origin}/.extraheader=AUTHORIZATION: basic {encoded}"]


def read_origin_url(path: Path) -> str | None:
    """Return the ``origin`` URL of the checkout at ``path``, if any.

    Returns None when ``path`` is not the top of a git checkout or has no
    origin remote.
    """
    try:
        repo = git.Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return None

    try:
        if repo.working_tree_dir is None or Path(repo.working_tree_dir).resolve() != path.resolve():
            return None
        if "origin" not in [remote.name for remote in repo.remotes]:
            return None
        return repo.remotes.origin.url
    finally:
        repo.close()


def is_git_checkout(path: Path) -> bool:
    """Return True if ``path`` is the top-level directory of a git checkout."""
    try:
        repo = git.Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False
    try:
        return repo.working_tree_dir is not None and Path(repo.working_tree_dir).resolve() == path.resolve()
    finally:
        repo.close()


def git_environment(environment: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment for non-interactive git invocations."""
    env = dict(os.environ if environment is None else environment)
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


async def clone_repository(
    clone_url: str,
    destination: Path,
    *,
    auth_args: Sequence[str] = (),
    environment: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> None:
    """Clone ``clone_url`` into ``destination``.

    Safe to call for a missing or empty destination. A destination that
    already has content is never touched.

    Args:
        clone_url: URL (or local path) to clone from
        destination: Target directory
        auth_args: ``git -c`` arguments added before ``clone``
        environment: Environment for git; defaults to ``os.environ``
        timeout: Seconds before the clone is killed

    Raises:
        CloneError: If the destination is not empty, or git fails. The
            message never contains credentials.
    """
    if destination.exists() and (not destination.is_dir() or any(destination.iterdir())):
        existing_origin = read_origin_url(destination) if destination.is_dir() else None
        if existing_origin is not None:
            message = (
                f"Cannot clone {clone_url} into {destination}: "
                f"directory already contains a checkout of {existing_origin}"
            )
        else:
            message = f"Cannot clone {clone_url} into {destination}: destination is not empty"
        raise CloneError(
            message,
            destination,
            hint="Remove the directory or point the sandbox at a different location",
        )

    existed_before = destination.exists()
    destination.parent.mkdir(parents=True, exist_ok=True)

    args = ["git", *auth_args, "clone", "--", clone_url, str(destination)]
    log.info("repository_clone_started", url=clone_url, destination=str(destination))

    try:
        await run_command(*args, env=git_environment(environment), timeout=timeout, redact=redact_git_auth_args)
    except (subprocess.CalledProcessError, TimeoutError) as e:
        if not existed_before and destination.exists():
            shutil.rmtree(destination, ignore_errors=True)

        command = " ".join(redact_git_auth_args(args))
        stderr = getattr(e, "stderr", None) or ""
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        reason = "timed out" if isinstance(e, TimeoutError) else "failed"
        log.error("repository_clone_failed", url=clone_url, destination=str(destination))
        raise CloneError(f"git clone {reason}: {command}{detail}", destination) from None

    log.info("repository_cloned", url=clone_url, destination=str(destination))
