"""Configuration system for the workflow engine.

This package provides type-safe configuration management using Pydantic
and YAML loading of workflow definitions.

Key Components:
    - ConductorSettings: Main configuration container with YAML loading support
    - GitHubScmConfig / AzureDevOpsScmConfig: SCM provider configuration
    - WorkflowRegistry: Loaded workflow definitions by name and version

Example:
    >>> from repo_conductor.config.settings import ConductorSettings
    >>> settings = ConductorSettings.from_yaml("conductor.yaml")
    >>> settings.scm.kind
    'github'
"""
