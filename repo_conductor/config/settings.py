"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for every part of the engine:
the SCM provider a run targets, the sandbox root, run state storage, the
agent command, executor policy, worktree dependency installs and where
workflow definitions live.

Example configuration::

    scm:
      kind: github
      repo: acme/widgets
    sandbox:
      root: ${CONDUCTOR_SANDBOX_DIR:-/var/lib/conductor/repos}
    state:
      state_directory: .conductor/state
    agent:
      command: ["claude", "--print", "--dangerously-skip-permissions"]
      timeout_seconds: 1800
    executor:
      strict_guards: false
    install:
      timeout_seconds: 600
    workflows:
      directory: workflows
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_conductor.exceptions import ConfigurationError
from repo_conductor.git.sandbox import SANDBOX_DIR_ENV


class GitHubScmConfig(BaseModel):
    """GitHub repository on github.com or an enterprise host."""

    kind: Literal["github"] = "github"
    repo: str = Field(..., description="owner/repo or host/owner/repo")

    @property
    def remote_ref(self) -> str:
        return self.repo


class AzureDevOpsScmConfig(BaseModel):
    """Azure DevOps Git repository."""

    kind: Literal["azure-devops"] = "azure-devops"
    organization: str = Field(..., description="Azure DevOps organization")
    project: str = Field(..., description="Project containing the repository")
    repository: str = Field(..., description="Git repository name")

    @property
    def remote_ref(self) -> str:
        return f"{self.organization}/{self.project}/{self.repository}"


ScmProviderConfig = Annotated[
    GitHubScmConfig | AzureDevOpsScmConfig,
    Field(discriminator="kind"),
]


class SandboxConfig(BaseModel):
    """Where canonical clones and run worktrees are created."""

    root: str | None = Field(
        default=None,
        description=f"Sandbox root; overrides {SANDBOX_DIR_ENV} when set",
    )


class StateConfig(BaseModel):
    """Run state persistence."""

    state_directory: str = Field(default=".conductor/state", description="Directory for run state files")
    lease_ttl_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Age after which an execution lease is considered abandoned",
    )


class AgentConfig(BaseModel):
    """Agent CLI executed for agent phases."""

    command: list[str] = Field(
        default_factory=lambda: ["claude", "--print", "--dangerously-skip-permissions"],
        min_length=1,
        description="Executable and arguments; the prompt is written to stdin",
    )
    timeout_seconds: float | None = Field(default=1800.0, gt=0, description="Per-phase timeout")


class InstallConfig(BaseModel):
    """Dependency install run in every newly created worktree.

    The ``CONDUCTOR_INSTALL_CMD``, ``CONDUCTOR_SKIP_INSTALL`` and
    ``CONDUCTOR_INSTALL_TIMEOUT_SECONDS`` variables apply when the
    corresponding field is left unset.
    """

    skip: bool = Field(default=False, description="Never install dependencies")
    command: str | None = Field(default=None, description="Shell command replacing the lockfile lookup")
    timeout_seconds: float | None = Field(default=None, gt=0, description="Install timeout")


class ExecutorConfig(BaseModel):
    """Run executor policy."""

    strict_guards: bool = Field(
        default=False,
        description="Treat malformed guards as fatal instead of non-matching",
    )
    max_steps: int | None = Field(default=None, ge=1, description="Cap on phases per full execution")
    branch_template: str | None = Field(default=None, description="Template for run branch names")
    base_ref: str | None = Field(default=None, description="Ref new worktrees branch from")


class WorkflowsConfig(BaseModel):
    """Location of workflow definition files."""

    directory: str = Field(default="workflows", description="Directory of *.yaml workflow definitions")


class ConductorSettings(BaseSettings):
    """Main engine settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    scm: ScmProviderConfig | None = None
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    workflows: WorkflowsConfig = Field(default_factory=WorkflowsConfig)

    @property
    def state_dir(self) -> Path:
        return Path(self.state.state_directory)

    @property
    def workflows_dir(self) -> Path:
        return Path(self.workflows.directory)

    def sandbox_environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Environment for sandbox resolution, applying ``sandbox.root``."""
        env = dict(os.environ if base is None else base)
        if self.sandbox.root:
            env[SANDBOX_DIR_ENV] = self.sandbox.root
        return env

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> ConductorSettings:
        """Load settings from YAML file with environment variable interpolation.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            ConductorSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        Raises:
            ValueError: If a required environment variable is not set

        Note:
            YAML comment lines (starting with #) are preserved unchanged.
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            stripped = line.lstrip()
            if stripped.startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
