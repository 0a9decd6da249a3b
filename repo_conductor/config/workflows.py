"""Loading workflow definitions from YAML.

Each file holds one workflow::

    name: implement-issue
    version: 2
    phases:
      - name: design
        type: agent
        prompt: Draft a design for the issue.
        transitions:
          - target: implement
            when: {field: last_outcome, operator: "==", value: success}
      - name: implement
        type: agent
        prompt: Implement the design.

Every version that is loaded stays registered, so runs pinned to an older
version keep resolving to the definition they started with.
"""

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from repo_conductor.engine.workflow import validate_workflow_guards
from repo_conductor.exceptions import ConfigurationError, GuardEvaluationError
from repo_conductor.models.workflow import WorkflowDefinition

log = structlog.get_logger(__name__)

WORKFLOW_FILE_PATTERNS = ("*.yaml", "*.yml")


def load_workflow_file(path: str | Path, *, strict_guards: bool = False) -> WorkflowDefinition:
    """Parse and validate one workflow file.

    Args:
        path: YAML file path
        strict_guards: Also validate every guard expression up front

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    workflow_file = Path(path)
    if not workflow_file.exists():
        raise ConfigurationError(f"Workflow file not found: {workflow_file}")

    try:
        data = yaml.safe_load(workflow_file.read_text())
    except OSError as e:
        raise ConfigurationError(f"Cannot read workflow file: {workflow_file}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {workflow_file}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Workflow file {workflow_file} must contain a YAML object")

    try:
        workflow = WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid workflow definition in {workflow_file}: {e}") from e

    if strict_guards:
        try:
            validate_workflow_guards(workflow)
        except GuardEvaluationError as e:
            raise ConfigurationError(f"{workflow_file}: {e.message}") from e

    return workflow


class WorkflowRegistry:
    """Workflow definitions indexed by name and version."""

    def __init__(self, workflows: list[WorkflowDefinition] | None = None) -> None:
        self._workflows: dict[str, dict[int, WorkflowDefinition]] = {}
        for workflow in workflows or []:
            self.register(workflow)

    def register(self, workflow: WorkflowDefinition) -> None:
        """Add a definition.

        Raises:
            ConfigurationError: If the same name and version is registered
                with different content
        """
        versions = self._workflows.setdefault(workflow.name, {})
        existing = versions.get(workflow.version)
        if existing is not None and existing != workflow:
            raise ConfigurationError(
                f"Workflow '{workflow.name}' version {workflow.version} is defined more than once"
            )
        versions[workflow.version] = workflow

    def get(self, name: str, version: int | None = None) -> WorkflowDefinition | None:
        """Look up a definition; ``version=None`` returns the latest."""
        versions = self._workflows.get(name)
        if not versions:
            return None
        if version is None:
            return versions[max(versions)]
        return versions.get(version)

    def names(self) -> list[str]:
        return sorted(self._workflows)

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._workflows.values())

    @classmethod
    def from_directory(cls, directory: str | Path, *, strict_guards: bool = False) -> "WorkflowRegistry":
        """Load every ``*.yaml``/``*.yml`` file in a directory.

        A missing directory yields an empty registry.
        """
        registry = cls()
        root = Path(directory)
        if not root.is_dir():
            log.warning("workflow_directory_missing", directory=str(root))
            return registry

        files = sorted({p for pattern in WORKFLOW_FILE_PATTERNS for p in root.glob(pattern)})
        for workflow_file in files:
            workflow = load_workflow_file(workflow_file, strict_guards=strict_guards)
            registry.register(workflow)
            log.debug(
                "workflow_loaded",
                name=workflow.name,
                version=workflow.version,
                path=str(workflow_file),
            )
        return registry
