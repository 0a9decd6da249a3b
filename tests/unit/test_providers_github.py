"""Tests for repo_conductor/providers/github_scm.py - GitHub provider implementation."""

from unittest.mock import AsyncMock, Mock, patch

import pytest
from github import GithubException

from repo_conductor.enums import ScmProviderKind
from repo_conductor.exceptions import ExternalServiceError, InvalidWorkItemIdError
from repo_conductor.git.exceptions import InvalidRemoteRefError
from repo_conductor.models.domain import CreatePullRequestParams
from repo_conductor.providers.github_scm import (
    GitHubScmProvider,
    api_base_url,
    resolve_github_token,
)

TOKEN_ENV = {"GH_TOKEN": "ghp_test_token_123"}


@pytest.fixture
def mock_github_repo():
    """Create a mock GitHub repository."""
    return Mock()


@pytest.fixture
def mock_github_client(mock_github_repo):
    """Create a mock Github client returning ``mock_github_repo``."""
    client = Mock()
    client.get_repo = Mock(return_value=mock_github_repo)
    client.close = Mock()
    return client


@pytest.fixture
def provider():
    return GitHubScmProvider("acme/widgets", environment=TOKEN_ENV)


def make_issue(number=42, title="Fix login bug", body="SSO is broken", labels=("bug",)):
    issue = Mock()
    issue.number = number
    issue.title = title
    issue.body = body
    issue.html_url = f"https://github.com/acme/widgets/issues/{number}"
    issue.labels = []
    for name in labels:
        label = Mock()
        label.name = name
        issue.labels.append(label)
    return issue


class TestTokenResolution:
    def test_github_com_prefers_conductor_variable(self):
        env = {"CONDUCTOR_GH_TOKEN": "primary", "GH_TOKEN": "fallback"}

        assert resolve_github_token("github.com", env) == "primary"

    def test_github_com_falls_back_to_gh_token(self):
        assert resolve_github_token("github.com", {"GH_TOKEN": "fallback"}) == "fallback"

    def test_blank_values_are_ignored(self):
        env = {"CONDUCTOR_GH_TOKEN": "   ", "GH_TOKEN": "fallback"}

        assert resolve_github_token("github.com", env) == "fallback"

    def test_enterprise_host_reads_enterprise_variables(self):
        env = {"GH_TOKEN": "public", "GH_ENTERPRISE_TOKEN": "internal"}

        assert resolve_github_token("ghe.example.com", env) == "internal"

    def test_enterprise_host_ignores_public_token(self):
        assert resolve_github_token("ghe.example.com", {"GH_TOKEN": "public"}) is None

    def test_api_base_url(self):
        assert api_base_url("github.com") == "https://api.github.com"
        assert api_base_url("ghe.example.com") == "https://ghe.example.com/api/v3"


class TestGitHubScmProviderInit:
    def test_owner_repo(self, provider):
        assert provider.hostname == "github.com"
        assert provider.owner == "acme"
        assert provider.repo == "widgets"
        assert provider.base_url == "https://api.github.com"
        assert provider.remote_ref == "acme/widgets"
        assert provider._client is None

    def test_enterprise_host(self):
        provider = GitHubScmProvider("ghe.example.com/platform/api")

        assert provider.hostname == "ghe.example.com"
        assert provider.owner == "platform"
        assert provider.base_url == "https://ghe.example.com/api/v3"
        assert provider.remote_ref == "ghe.example.com/platform/api"

    def test_get_config_has_no_secrets(self, provider):
        assert provider.get_config() == {"kind": "github", "repo": "acme/widgets"}

    @pytest.mark.parametrize("repo", ["widgets", "a/b/c/d"])
    def test_invalid_repo(self, repo):
        with pytest.raises(InvalidRemoteRefError):
            GitHubScmProvider(repo)


class TestCheckAuth:
    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_missing_token(self, mock_github_class):
        provider = GitHubScmProvider("acme/widgets", environment={})

        status = await provider.check_auth()

        assert status.authenticated is False
        assert "GH_TOKEN" in status.error
        mock_github_class.assert_not_called()

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_authenticated(self, mock_github_class, provider, mock_github_client):
        mock_github_client.get_user.return_value.login = "octocat"
        mock_github_client.oauth_scopes = ["repo", "workflow"]
        mock_github_class.return_value = mock_github_client

        status = await provider.check_auth()

        assert status.authenticated is True
        assert status.user == "octocat"
        assert status.scopes == ["repo", "workflow"]
        assert mock_github_class.call_args.kwargs["base_url"] == "https://api.github.com"
        mock_github_client.close.assert_called_once()

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_rejected_token(self, mock_github_class, provider, mock_github_client):
        mock_github_client.get_user.side_effect = GithubException(401, {"message": "Bad credentials"}, None)
        mock_github_class.return_value = mock_github_client

        status = await provider.check_auth()

        assert status.authenticated is False
        assert "HTTP 401" in status.error
        mock_github_client.close.assert_called_once()

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_explicit_environment_overrides_provider_environment(
        self, mock_github_class, provider
    ):
        status = await provider.check_auth(environment={})

        assert status.authenticated is False
        mock_github_class.assert_not_called()


class TestGetWorkItem:
    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_converts_issue(self, mock_github_class, provider, mock_github_client, mock_github_repo):
        mock_github_repo.get_issue.return_value = make_issue(labels=("bug", "p1"))
        mock_github_class.return_value = mock_github_client

        item = await provider.get_work_item("42")

        mock_github_client.get_repo.assert_called_once_with("acme/widgets")
        mock_github_repo.get_issue.assert_called_once_with(42)
        assert item.id == "42"
        assert item.title == "Fix login bug"
        assert item.labels == ["bug", "p1"]
        assert item.provider == ScmProviderKind.GITHUB
        assert item.url == "https://github.com/acme/widgets/issues/42"

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_missing_body_becomes_empty(
        self, mock_github_class, provider, mock_github_client, mock_github_repo
    ):
        mock_github_repo.get_issue.return_value = make_issue(body=None, labels=())
        mock_github_class.return_value = mock_github_client

        item = await provider.get_work_item(42)

        assert item.body == ""
        assert item.labels == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["0", "-3", "abc", "", "²", "٣", "1.5", 0, True])
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_invalid_id_never_reaches_network(self, mock_github_class, provider, bad_id):
        with pytest.raises(InvalidWorkItemIdError):
            await provider.get_work_item(bad_id)

        mock_github_class.assert_not_called()

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_api_error(self, mock_github_class, provider, mock_github_client, mock_github_repo):
        mock_github_repo.get_issue.side_effect = GithubException(404, {"message": "Not Found"}, None)
        mock_github_class.return_value = mock_github_client

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.get_work_item(7)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_token(self):
        provider = GitHubScmProvider("acme/widgets", environment={})

        with pytest.raises(ExternalServiceError, match="No GitHub token"):
            await provider.get_work_item(1)

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_repository_handle_is_cached(
        self, mock_github_class, provider, mock_github_client, mock_github_repo
    ):
        mock_github_repo.get_issue.return_value = make_issue()
        mock_github_class.return_value = mock_github_client

        await provider.get_work_item(1)
        await provider.get_work_item(2)

        mock_github_class.assert_called_once()


class TestCreatePullRequest:
    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_defaults_base_to_main(
        self, mock_github_class, provider, mock_github_client, mock_github_repo
    ):
        mock_github_repo.create_pull.return_value = Mock(
            number=7, html_url="https://github.com/acme/widgets/pull/7"
        )
        mock_github_class.return_value = mock_github_client

        result = await provider.create_pull_request(
            CreatePullRequestParams(title="Add feature", body="Details", source_branch="feature/x")
        )

        mock_github_repo.create_pull.assert_called_once_with(
            title="Add feature", body="Details", head="feature/x", base="main"
        )
        assert result.id == "7"
        assert result.provider == ScmProviderKind.GITHUB
        assert result.url == "https://github.com/acme/widgets/pull/7"

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_explicit_base(self, mock_github_class, provider, mock_github_client, mock_github_repo):
        mock_github_repo.create_pull.return_value = Mock(number=8, html_url=None)
        mock_github_class.return_value = mock_github_client

        await provider.create_pull_request(
            CreatePullRequestParams(
                title="t", body="b", source_branch="feature/x", target_branch="develop"
            )
        )

        assert mock_github_repo.create_pull.call_args.kwargs["base"] == "develop"

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_api_error(self, mock_github_class, provider, mock_github_client, mock_github_repo):
        mock_github_repo.create_pull.side_effect = GithubException(422, {"message": "exists"}, None)
        mock_github_class.return_value = mock_github_client

        with pytest.raises(ExternalServiceError) as exc_info:
            await provider.create_pull_request(
                CreatePullRequestParams(title="t", body="b", source_branch="feature/x")
            )

        assert exc_info.value.status_code == 422


class TestCloneRepo:
    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.clone_repository", new_callable=AsyncMock)
    async def test_clone_with_token(self, mock_clone, provider, tmp_path):
        destination = tmp_path / "widgets"

        await provider.clone_repo("acme/widgets", destination)

        args, kwargs = mock_clone.call_args
        assert args == ("https://github.com/acme/widgets.git", destination)
        auth_args = kwargs["auth_args"]
        assert auth_args[0] == "-c"
        assert auth_args[1].startswith("http.https://github.com/.extraheader=AUTHORIZATION: basic ")
        assert "ghp_test_token_123" not in auth_args[1]

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.clone_repository", new_callable=AsyncMock)
    async def test_clone_without_token(self, mock_clone, tmp_path):
        provider = GitHubScmProvider("acme/widgets", environment={})

        await provider.clone_repo("acme/widgets", tmp_path / "w")

        assert mock_clone.call_args.kwargs["auth_args"] == []

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.clone_repository", new_callable=AsyncMock)
    async def test_enterprise_clone_uses_enterprise_token(self, mock_clone, provider, tmp_path):
        env = {"GH_ENTERPRISE_TOKEN": "ghe-secret"}

        await provider.clone_repo("ghe.example.com/platform/api", tmp_path / "api", environment=env)

        args, kwargs = mock_clone.call_args
        assert args[0] == "https://ghe.example.com/platform/api.git"
        assert kwargs["auth_args"][1].startswith("http.https://ghe.example.com/.extraheader=")
        assert kwargs["environment"] == env

    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.clone_repository", new_callable=AsyncMock)
    async def test_clone_plain_url(self, mock_clone, provider, tmp_path):
        await provider.clone_repo("https://github.com/acme/other.git", tmp_path / "other")

        assert mock_clone.call_args.args[0] == "https://github.com/acme/other.git"


class TestClose:
    @pytest.mark.asyncio
    @patch("repo_conductor.providers.github_scm.Github")
    async def test_close_resets_client(self, mock_github_class, provider, mock_github_client, mock_github_repo):
        mock_github_repo.get_issue.return_value = make_issue()
        mock_github_class.return_value = mock_github_client
        await provider.get_work_item(1)

        await provider.close()

        mock_github_client.close.assert_called_once()
        assert provider._client is None
        assert provider._repo is None

    @pytest.mark.asyncio
    async def test_close_without_client(self, provider):
        await provider.close()

        assert provider._client is None
