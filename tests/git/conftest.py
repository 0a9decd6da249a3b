"""Fixtures building real git repositories for the git layer tests."""

import git
import pytest


@pytest.fixture
def origin_repo(tmp_path):
    """A non-bare repository with one commit on ``main``."""
    path = tmp_path / "origin"
    repo = git.Repo.init(path, initial_branch="main")
    (path / "README.md").write_text("# widgets\n")
    repo.index.add(["README.md"])
    actor = git.Actor("Test User", "test@example.com")
    repo.index.commit("Initial commit", author=actor, committer=actor)
    repo.close()
    return path
