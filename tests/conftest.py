"""Pytest configuration and shared fixtures."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import structlog

from repo_conductor.config.workflows import WorkflowRegistry
from repo_conductor.engine.executor import WorkflowExecutor
from repo_conductor.engine.leases import RunLeaseRegistry
from repo_conductor.engine.state_manager import StateManager
from repo_conductor.models.workflow import WorkflowDefinition
from repo_conductor.providers.base import AgentRunner
from tests.fakes import FakeAgent


@pytest.fixture(autouse=True)
def reset_structlog():
    """Drop logging configuration installed by CLI tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_manager(temp_state_dir: Path) -> StateManager:
    """StateManager instance with temp directory."""
    return StateManager(str(temp_state_dir))


@pytest.fixture
def lease_registry(temp_state_dir: Path) -> RunLeaseRegistry:
    return RunLeaseRegistry(temp_state_dir / "leases")


@pytest.fixture
def linear_workflow() -> WorkflowDefinition:
    """design -> implement -> done, advancing on success."""
    return WorkflowDefinition.model_validate(
        {
            "name": "implement-issue",
            "version": 1,
            "phases": [
                {
                    "name": "design",
                    "prompt": "Draft a design.",
                    "transitions": [
                        {"target": "implement", "when": {"field": "last_outcome", "operator": "==", "value": "success"}}
                    ],
                },
                {
                    "name": "implement",
                    "prompt": "Implement the design.",
                    "transitions": [
                        {"target": "done", "when": {"field": "last_outcome", "operator": "==", "value": "success"}}
                    ],
                },
                {"name": "done", "type": "terminal"},
            ],
        }
    )


@pytest.fixture
def review_workflow() -> WorkflowDefinition:
    """implement -> review, looping back to implement until approved."""
    return WorkflowDefinition.model_validate(
        {
            "name": "review-loop",
            "version": 1,
            "phases": [
                {
                    "name": "implement",
                    "transitions": [{"target": "review", "auto": True}],
                },
                {
                    "name": "review",
                    "transitions": [
                        {
                            "target": "merge",
                            "priority": 10,
                            "when": {"field": "review.approved", "operator": "==", "value": True},
                        },
                        {
                            "target": "implement",
                            "priority": 5,
                            "when": {"field": "review.approved", "operator": "==", "value": False},
                        },
                    ],
                },
                {"name": "merge", "type": "tool"},
            ],
        }
    )


@pytest.fixture
def workflow_registry(linear_workflow, review_workflow) -> WorkflowRegistry:
    return WorkflowRegistry([linear_workflow, review_workflow])


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def make_executor(
    state_manager: StateManager,
    workflow_registry: WorkflowRegistry,
    lease_registry: RunLeaseRegistry,
) -> Callable[..., WorkflowExecutor]:
    """Build an executor over the shared state directory."""

    def factory(agent: AgentRunner | None = None, **kwargs: Any) -> WorkflowExecutor:
        return WorkflowExecutor(
            state_manager,
            workflow_registry,
            agent or FakeAgent(),
            leases=lease_registry,
            **kwargs,
        )

    return factory


@pytest.fixture
def executor(make_executor, fake_agent) -> WorkflowExecutor:
    return make_executor(fake_agent)
