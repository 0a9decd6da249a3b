"""Provider implementations for source control and agent integrations.

Key Components:
    - ScmProvider: Abstract base for source-control providers
    - AgentRunner: Abstract base for agent phase execution
    - GitHubScmProvider: GitHub via PyGithub
    - AzureDevOpsScmProvider: Azure DevOps REST API via httpx
    - CommandAgentRunner: External agent CLI (Claude Code by default)
    - create_scm_provider: Factory keyed on the provider kind

Example:
    >>> from repo_conductor.providers.factory import create_scm_provider
    >>> provider = create_scm_provider({"kind": "github", "repo": "acme/widgets"})
    >>> status = await provider.check_auth()
"""

from repo_conductor.providers.base import AgentRunner, ScmProvider

__all__ = [
    "AgentRunner",
    "ScmProvider",
]
