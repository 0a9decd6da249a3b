"""Azure DevOps SCM provider implementation using direct REST API calls."""

import base64
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx
import structlog

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
from repo_conductor.utils.connection_pool import HTTPConnectionPool, get_pool
from repo_conductor.utils.retry import async_retry, is_transient_error

log = structlog.get_logger(__name__)

AZURE_DEVOPS_HOST = "https://dev.azure.com"
API_VERSION = "7.1"
TOKEN_ENV_VARS = ("CONDUCTOR_AZURE_DEVOPS_TOKEN", "AZURE_DEVOPS_EXT_PAT")


def resolve_azure_devops_token(environment: Mapping[str, str] | None = None) -> str | None:
    env = os.environ if environment is None else environment
    for name in TOKEN_ENV_VARS:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return None


def _branch_ref(branch: str) -> str:
    return branch if branch.startswith("refs/") else f"refs/heads/{branch}"


class AzureDevOpsScmProvider(ScmProvider):
    """Azure DevOps implementation using direct REST API calls.

    Bound to ``organization/project/repository``. Authentication uses a
    personal access token sent as basic auth with an empty user name.
    """

    kind = ScmProviderKind.AZURE_DEVOPS

    def __init__(
        self,
        organization: str,
        project: str,
        repository: str,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize Azure DevOps provider.

        Args:
            organization: Organization name (``dev.azure.com/<organization>``)
            project: Project name
            repository: Git repository name
            environment: Environment the PAT is read from; defaults to
                ``os.environ`` at call time
        """
        parse_remote_ref(ScmProviderKind.AZURE_DEVOPS, f"{organization}/{project}/{repository}")
        self.organization = organization.strip()
        self.project = project.strip()
        self.repository = repository.strip()
        self.environment = environment
        self.base_url = f"{AZURE_DEVOPS_HOST}/{quote(self.organization)}"
        self._pool: HTTPConnectionPool | None = None

    @property
    def remote_ref(self) -> str:
        return f"{self.organization}/{self.project}/{self.repository}"

    def get_config(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "organization": self.organization,
            "project": self.project,
            "repository": self.repository,
        }

    async def _get_pool(self) -> HTTPConnectionPool:
        if self._pool is None:
            self._pool = await get_pool(
                name=f"azure-devops-{self.organization}",
                base_url=self.base_url,
                headers={"Accept": "application/json"},
            )
        return self._pool

    async def close(self) -> None:
        """Clear pool reference (pool manager handles actual cleanup)."""
        self._pool = None

    def _auth_headers(self, environment: Mapping[str, str] | None = None) -> dict[str, str]:
        token = resolve_azure_devops_token(environment if environment is not None else self.environment)
        if token is None:
            raise ExternalServiceError(
                f"No Azure DevOps token. Set {' or '.join(TOKEN_ENV_VARS)}."
            )
        encoded = base64.b64encode(f":{token}".encode()).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Azure DevOps request failed: {action}",
                status_code=response.status_code,
                response_text=response.text,
            )

    async def check_auth(self, environment: Mapping[str, str] | None = None) -> AuthStatus:
        """Check the PAT against the organization's connection data endpoint."""
        env = environment if environment is not None else self.environment
        if resolve_azure_devops_token(env) is None:
            return AuthStatus(
                authenticated=False,
                error=(
                    "Azure DevOps authentication is not configured. "
                    f"Set {' or '.join(TOKEN_ENV_VARS)} to a personal access token."
                ),
            )

        pool = await self._get_pool()
        try:
            response = await pool.get(
                "/_apis/connectionData",
                headers=self._auth_headers(env),
            )
        except httpx.HTTPError as e:
            log.warning("azure_devops_auth_check_failed", organization=self.organization, error=str(e))
            return AuthStatus(authenticated=False, error=f"Could not reach Azure DevOps: {e}")

        # Rejected PATs get a 203 sign-in page rather than a 401.
        user = None
        if response.status_code == 200:
            user = (response.json().get("authenticatedUser") or {}).get("providerDisplayName")
        if user is None:
            log.warning(
                "azure_devops_auth_check_failed",
                organization=self.organization,
                status=response.status_code,
            )
            return AuthStatus(
                authenticated=False,
                error=(
                    f"Azure DevOps rejected the token for {self.organization} "
                    f"(HTTP {response.status_code}). Check that the PAT is valid and not expired."
                ),
            )

        log.info("azure_devops_auth_checked", organization=self.organization, user=user)
        return AuthStatus(authenticated=True, user=user)

    async def clone_repo(
        self,
        remote_ref: str,
        local_path: Path,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        env = environment if environment is not None else self.environment
        if "://" in remote_ref:
            clone_url = remote_ref.strip()
        else:
            organization, project, repository = parse_remote_ref(ScmProviderKind.AZURE_DEVOPS, remote_ref)
            clone_url = f"{AZURE_DEVOPS_HOST}/{quote(organization)}/{quote(project)}/_git/{quote(repository)}"

        token = resolve_azure_devops_token(env)
        auth_args = build_basic_auth_args(clone_url, "", token) if token else []
        await clone_repository(clone_url, local_path, auth_args=auth_args, environment=env)

    @async_retry(max_attempts=3, exceptions=(httpx.TransportError, ExternalServiceError), retry_if=is_transient_error)
    async def get_work_item(self, work_item_id: int | str) -> WorkItem:
        """Get a work item by id."""
        item_id = parse_positive_integer_id(work_item_id, "Azure DevOps work item")
        log.info("get_work_item", project=self.project, work_item_id=item_id)

        pool = await self._get_pool()
        response = await pool.get(
            f"/{quote(self.project)}/_apis/wit/workitems/{item_id}",
            params={"api-version": API_VERSION},
            headers=self._auth_headers(),
        )
        self._raise_for_status(response, f"get work item {item_id}")
        return self._parse_work_item(response.json())

    @async_retry(max_attempts=3, exceptions=(httpx.TransportError, ExternalServiceError), retry_if=is_transient_error)
    async def create_pull_request(self, params: CreatePullRequestParams) -> PullRequestResult:
        """Open a pull request; the target branch defaults to ``main``."""
        target = params.target_branch or "main"
        log.info(
            "create_pull_request",
            repository=self.remote_ref,
            source=params.source_branch,
            target=target,
        )

        pool = await self._get_pool()
        response = await pool.post(
            f"/{quote(self.project)}/_apis/git/repositories/{quote(self.repository)}/pullrequests",
            params={"api-version": API_VERSION},
            headers=self._auth_headers(),
            json={
                "sourceRefName": _branch_ref(params.source_branch),
                "targetRefName": _branch_ref(target),
                "title": params.title,
                "description": params.body,
            },
        )
        self._raise_for_status(response, f"create pull request from {params.source_branch}")

        pr_id = str(response.json()["pullRequestId"])
        url = (
            f"{self.base_url}/{quote(self.project)}/_git/{quote(self.repository)}/pullrequest/{pr_id}"
        )
        return PullRequestResult(id=pr_id, provider=self.kind, url=url)

    def _parse_work_item(self, data: dict[str, Any]) -> WorkItem:
        fields = data.get("fields", {})
        tags = fields.get("System.Tags") or ""
        html_link = (data.get("_links") or {}).get("html") or {}
        return WorkItem(
            id=str(data["id"]),
            title=fields.get("System.Title") or "",
            body=fields.get("System.Description") or "",
            labels=[tag.strip() for tag in tags.split(";") if tag.strip()],
            provider=self.kind,
            url=html_link.get("href"),
        )
