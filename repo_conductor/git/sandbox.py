"""Sandbox path resolution.

Every repository a run works on is cloned under one sandbox root, at a
location derived only from the provider kind and the remote reference:

    <sandbox>/github/<owner>/<repo>
    <sandbox>/github/<host>/<owner>/<repo>
    <sandbox>/azure-devops/<organization>/<project>/<repository>

Each segment is validated before any path is built, so a malformed or
hostile remote reference can never point outside the sandbox root.

Example:
    >>> derive_sandbox_repo_path("github", "acme/widgets", {"CONDUCTOR_SANDBOX_DIR": "/tmp/s"})
    PosixPath('/tmp/s/github/acme/widgets')
"""

import os
from collections.abc import Mapping
from pathlib import Path

from repo_conductor.enums import ScmProviderKind
from repo_conductor.exceptions import ConfigurationError
from repo_conductor.git.exceptions import InvalidRemoteRefError, InvalidSandboxPathError

SANDBOX_DIR_ENV = "CONDUCTOR_SANDBOX_DIR"
DEFAULT_SANDBOX_SUBPATH = Path(".conductor") / "repos"

_FORBIDDEN_SEGMENTS = frozenset({"", ".", ".."})
_FORBIDDEN_CHARACTERS = ("/", "\\", "\x00")


def resolve_sandbox_dir(environment: Mapping[str, str] | None = None) -> Path:
    """Return the sandbox root directory.

    A non-blank ``CONDUCTOR_SANDBOX_DIR`` wins; a relative value is resolved
    against the current working directory. Otherwise the root is
    ``~/.conductor/repos``.

    Args:
        environment: Environment to read; defaults to ``os.environ``
    """
    env = os.environ if environment is None else environment
    configured = (env.get(SANDBOX_DIR_ENV) or "").strip()
    if configured:
        path = Path(configured).expanduser()
        return path if path.is_absolute() else path.resolve()
    return Path.home() / DEFAULT_SANDBOX_SUBPATH


def validate_path_segment(segment: str) -> str:
    """Reject a segment that is empty, ``.``, ``..`` or contains a separator.

    Raises:
        InvalidSandboxPathError: If the segment is unsafe to join into a path
    """
    if segment in _FORBIDDEN_SEGMENTS or any(ch in segment for ch in _FORBIDDEN_CHARACTERS):
        raise InvalidSandboxPathError(segment)
    return segment


def parse_remote_ref(provider_kind: ScmProviderKind | str, remote_ref: str) -> list[str]:
    """Split a remote reference into validated path segments.

    Surrounding whitespace and slashes are ignored; every inner segment is
    trimmed and validated before the segment count is checked.

    Raises:
        InvalidSandboxPathError: If any segment is unsafe
        InvalidRemoteRefError: If the segment count does not fit the provider
        ConfigurationError: If the provider kind is unknown
    """
    kind = _coerce_kind(provider_kind)
    normalized = remote_ref.strip().strip("/")
    segments = [segment.strip() for segment in normalized.split("/")] if normalized else []
    for segment in segments:
        validate_path_segment(segment)

    if kind == ScmProviderKind.GITHUB:
        if len(segments) in (2, 3):
            return segments
        raise InvalidRemoteRefError(
            f"Invalid GitHub remoteRef: {remote_ref}. Expected owner/repo or host/owner/repo.",
            remote_ref,
        )

    if len(segments) == 3:
        return segments
    raise InvalidRemoteRefError(
        f"Invalid Azure DevOps remoteRef: {remote_ref}. Expected org/project/repository.",
        remote_ref,
    )


def derive_sandbox_repo_path(
    provider_kind: ScmProviderKind | str,
    remote_ref: str,
    environment: Mapping[str, str] | None = None,
) -> Path:
    """Build the canonical clone location for a remote reference.

    The result depends only on the inputs and the sandbox root; calling it
    twice with the same arguments yields the same path.

    Args:
        provider_kind: ``github`` or ``azure-devops``
        remote_ref: ``owner/repo``, ``host/owner/repo`` or
            ``org/project/repository``
        environment: Environment used to resolve the sandbox root

    Returns:
        ``<sandbox>/<kind>/<segments...>``
    """
    kind = _coerce_kind(provider_kind)
    segments = parse_remote_ref(kind, remote_ref)
    return resolve_sandbox_dir(environment).joinpath(kind.value, *segments)


def _coerce_kind(provider_kind: ScmProviderKind | str) -> ScmProviderKind:
    try:
        return ScmProviderKind(provider_kind)
    except ValueError as e:
        raise ConfigurationError(f"Unsupported SCM provider kind: {provider_kind}") from e
