"""Factory for creating SCM provider instances based on configuration."""

from collections.abc import Mapping
from typing import Any

import structlog

from repo_conductor.config.settings import AzureDevOpsScmConfig, GitHubScmConfig
from repo_conductor.enums import ScmProviderKind
from repo_conductor.exceptions import ConfigurationError
from repo_conductor.providers.azure_devops_scm import AzureDevOpsScmProvider
from repo_conductor.providers.base import ScmProvider
from repo_conductor.providers.github_scm import GitHubScmProvider

log = structlog.get_logger(__name__)


def create_scm_provider(
    config: GitHubScmConfig | AzureDevOpsScmConfig | Mapping[str, Any],
    environment: Mapping[str, str] | None = None,
) -> ScmProvider:
    """Create the provider matching ``config.kind``.

    Args:
        config: Provider configuration model, or an equivalent mapping
        environment: Environment credentials are read from

    Returns:
        GitHubScmProvider or AzureDevOpsScmProvider

    Raises:
        ConfigurationError: If the kind is unsupported or required fields
            are missing

    Example:
        >>> provider = create_scm_provider({"kind": "github", "repo": "acme/widgets"})
        >>> provider.remote_ref
        'acme/widgets'
    """
    if isinstance(config, Mapping):
        kind = config.get("kind")
        values = dict(config)
    else:
        kind = config.kind
        values = config.model_dump()

    if kind == ScmProviderKind.GITHUB.value:
        repo = values.get("repo")
        if not repo:
            raise ConfigurationError("GitHub SCM configuration requires 'repo'")
        log.info("creating_github_provider", repo=repo)
        return GitHubScmProvider(repo=repo, environment=environment)

    if kind == ScmProviderKind.AZURE_DEVOPS.value:
        missing = [key for key in ("organization", "project", "repository") if not values.get(key)]
        if missing:
            raise ConfigurationError(
                f"Azure DevOps SCM configuration requires: {', '.join(missing)}"
            )
        log.info(
            "creating_azure_devops_provider",
            organization=values["organization"],
            project=values["project"],
            repository=values["repository"],
        )
        return AzureDevOpsScmProvider(
            organization=values["organization"],
            project=values["project"],
            repository=values["repository"],
            environment=environment,
        )

    raise ConfigurationError(f"Unsupported SCM provider kind: {kind}")
