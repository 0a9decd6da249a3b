"""GitHub SCM provider implementation using PyGithub and REST API."""

import asyncio
import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.Issue import Issue as GHIssue  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from repo_conductor.enums import ScmProviderKind
from repo_conductor.exceptions import ExternalServiceError
from repo_conductor.git.clone import build_basic_auth_args, clone_repository
from repo_conductor.git.sandbox import parse_remote_ref
from repo_conductor.models.domain import (
    AuthStatus,
    CreatePullRequestParams,
    PullRequestResult,
    WorkItem,
)
from repo_conductor.providers.base import ScmProvider, parse_positive_integer_id

log = structlog.get_logger(__name__)

T = TypeVar("T")

GITHUB_HOSTNAME = "github.com"
GIT_ACCESS_TOKEN_USERNAME = "x-access-token"
TOKEN_ENV_VARS = ("CONDUCTOR_GH_TOKEN", "GH_TOKEN")
ENTERPRISE_TOKEN_ENV_VARS = ("CONDUCTOR_GH_ENTERPRISE_TOKEN", "GH_ENTERPRISE_TOKEN")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous PyGithub call in a thread pool."""
    return await asyncio.to_thread(func)


def resolve_github_token(hostname: str, environment: Mapping[str, str] | None = None) -> str | None:
    """Pick the token for a GitHub host from the environment.

    github.com reads CONDUCTOR_GH_TOKEN then GH_TOKEN; enterprise hosts
    read CONDUCTOR_GH_ENTERPRISE_TOKEN then GH_ENTERPRISE_TOKEN.
    """
    env = os.environ if environment is None else environment
    names = TOKEN_ENV_VARS if hostname == GITHUB_HOSTNAME else ENTERPRISE_TOKEN_ENV_VARS
    for name in names:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return None


def api_base_url(hostname: str) -> str:
    if hostname == GITHUB_HOSTNAME:
        return "https://api.github.com"
    return f"https://{hostname}/api/v3"


def _is_url(remote_ref: str) -> bool:
    return "://" in remote_ref or remote_ref.startswith("git@")


class GitHubScmProvider(ScmProvider):
    """GitHub implementation using the PyGithub library.

    Bound to ``owner/repo`` on github.com or ``host/owner/repo`` on a
    GitHub Enterprise host.
    """

    kind = ScmProviderKind.GITHUB

    def __init__(self, repo: str, environment: Mapping[str, str] | None = None) -> None:
        """Initialize GitHub provider.

        Args:
            repo: ``owner/repo`` or ``host/owner/repo``
            environment: Environment tokens are read from; defaults to
                ``os.environ`` at call time

        Raises:
            InvalidRemoteRefError: If ``repo`` has the wrong shape
        """
        segments = parse_remote_ref(ScmProviderKind.GITHUB, repo)
        if len(segments) == 3:
            self.hostname, self.owner, self.repo = segments
        else:
            self.hostname = GITHUB_HOSTNAME
            self.owner, self.repo = segments
        self.environment = environment
        self.base_url = api_base_url(self.hostname)
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    @property
    def remote_ref(self) -> str:
        if self.hostname == GITHUB_HOSTNAME:
            return f"{self.owner}/{self.repo}"
        return f"{self.hostname}/{self.owner}/{self.repo}"

    def get_config(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "repo": self.remote_ref}

    def _token(self, environment: Mapping[str, str] | None = None) -> str | None:
        return resolve_github_token(
            self.hostname, environment if environment is not None else self.environment
        )

    def _new_client(self, token: str) -> Github:
        return Github(auth=Auth.Token(token), base_url=self.base_url)

    async def _get_repo(self) -> GHRepository:
        """Connect lazily and cache the repository handle."""
        if self._repo is None:
            token = self._token()
            if token is None:
                raise ExternalServiceError(
                    f"No GitHub token for {self.hostname}. "
                    f"Set {' or '.join(self._token_env_names())}."
                )

            def _connect() -> tuple[Github, GHRepository]:
                client = self._new_client(token)
                return client, client.get_repo(f"{self.owner}/{self.repo}")

            try:
                self._client, self._repo = await _run_sync(_connect)
            except GithubException as e:
                log.error("github_connect_failed", repo=self.remote_ref, error=str(e))
                raise ExternalServiceError(
                    f"Could not open GitHub repository {self.remote_ref}", status_code=e.status
                ) from e
            log.info("github_connected", base_url=self.base_url, repo=self.remote_ref)
        return self._repo

    def _token_env_names(self) -> tuple[str, ...]:
        return TOKEN_ENV_VARS if self.hostname == GITHUB_HOSTNAME else ENTERPRISE_TOKEN_ENV_VARS

    async def close(self) -> None:
        if self._client:
            await _run_sync(self._client.close)
            self._client = None
            self._repo = None

    async def check_auth(self, environment: Mapping[str, str] | None = None) -> AuthStatus:
        """Check the configured token against the GitHub API."""
        token = self._token(environment)
        if token is None:
            return AuthStatus(
                authenticated=False,
                error=(
                    f"GitHub authentication is not configured for {self.hostname}. "
                    f"Set {' or '.join(self._token_env_names())}."
                ),
            )

        def _check() -> tuple[str, list[str]]:
            client = self._new_client(token)
            try:
                login = client.get_user().login
                scopes = list(client.oauth_scopes or [])
                return login, scopes
            finally:
                client.close()

        try:
            user, scopes = await _run_sync(_check)
        except GithubException as e:
            log.warning("github_auth_check_failed", host=self.hostname, status=e.status)
            return AuthStatus(
                authenticated=False,
                error=f"GitHub authentication failed for {self.hostname} (HTTP {e.status}). "
                "Check that the token is valid and not expired.",
            )

        log.info("github_auth_checked", host=self.hostname, user=user)
        return AuthStatus(authenticated=True, user=user, scopes=scopes)

    async def clone_repo(
        self,
        remote_ref: str,
        local_path: Path,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        """Clone over HTTPS, sending the token as an extra header when set."""
        env = environment if environment is not None else self.environment
        if _is_url(remote_ref):
            clone_url = remote_ref.strip()
            token = self._token(env)
        else:
            segments = parse_remote_ref(ScmProviderKind.GITHUB, remote_ref)
            hostname = segments[0] if len(segments) == 3 else GITHUB_HOSTNAME
            owner, repo = segments[-2:]
            clone_url = f"https://{hostname}/{owner}/{repo}.git"
            token = resolve_github_token(hostname, env)

        auth_args = build_basic_auth_args(clone_url, GIT_ACCESS_TOKEN_USERNAME, token) if token else []
        await clone_repository(clone_url, local_path, auth_args=auth_args, environment=env)

    async def get_work_item(self, work_item_id: int | str) -> WorkItem:
        """Get an issue by number."""
        number = parse_positive_integer_id(work_item_id, "GitHub issue")
        log.info("get_issue", repo=self.remote_ref, number=number)

        repo = await self._get_repo()
        try:
            gh_issue = await _run_sync(lambda: repo.get_issue(number))
        except GithubException as e:
            log.error("github_get_issue_failed", number=number, error=str(e))
            raise ExternalServiceError(
                f"Could not fetch GitHub issue #{number}", status_code=e.status
            ) from e
        return self._convert_issue(gh_issue)

    async def create_pull_request(self, params: CreatePullRequestParams) -> PullRequestResult:
        """Open a pull request; the base branch defaults to ``main``."""
        base = params.target_branch or "main"
        log.info("create_pull_request", repo=self.remote_ref, head=params.source_branch, base=base)

        repo = await self._get_repo()
        try:
            gh_pr = await _run_sync(
                lambda: repo.create_pull(
                    title=params.title,
                    body=params.body,
                    head=params.source_branch,
                    base=base,
                )
            )
        except GithubException as e:
            log.error("github_create_pr_failed", head=params.source_branch, error=str(e))
            raise ExternalServiceError(
                f"Could not create GitHub pull request from {params.source_branch}",
                status_code=e.status,
            ) from e

        return PullRequestResult(id=str(gh_pr.number), provider=self.kind, url=gh_pr.html_url)

    def _convert_issue(self, gh_issue: GHIssue) -> WorkItem:
        return WorkItem(
            id=str(gh_issue.number),
            title=gh_issue.title,
            body=gh_issue.body or "",
            labels=[label.name for label in gh_issue.labels],
            provider=self.kind,
            url=gh_issue.html_url,
        )
