"""Tests for the worktree dependency installer."""

import shutil
from unittest.mock import AsyncMock, patch

import pytest

from repo_conductor.exceptions import ConfigurationError
from repo_conductor.git.exceptions import DependencyInstallError
from repo_conductor.git.install_deps import (
    DEFAULT_INSTALL_TIMEOUT_SECONDS,
    detect_lockfile_command,
    install_dependencies,
    resolve_install_timeout,
)

requires_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="sh not available")


@pytest.fixture
def worktree(tmp_path):
    path = tmp_path / "worktree"
    path.mkdir()
    return path


@pytest.fixture
def mock_run():
    with patch("repo_conductor.git.install_deps.run_command", new_callable=AsyncMock) as mock:
        mock.return_value = ("", "", 0)
        yield mock


class TestDetectLockfileCommand:
    def test_none(self, worktree):
        assert detect_lockfile_command(worktree) is None

    def test_priority_order(self, worktree):
        (worktree / "package-lock.json").write_text("{}")
        (worktree / "yarn.lock").write_text("# lock")

        assert detect_lockfile_command(worktree) == ("yarn.lock", ("yarn", "install"))

    @pytest.mark.parametrize(
        "lockfile,argv",
        [
            ("bun.lock", ("bun", "install")),
            ("uv.lock", ("uv", "sync")),
            ("requirements.txt", ("pip", "install", "-r", "requirements.txt")),
            ("go.sum", ("go", "mod", "download")),
            ("Cargo.lock", ("cargo", "fetch")),
        ],
    )
    def test_single_lockfile(self, worktree, lockfile, argv):
        (worktree / lockfile).write_text("")

        assert detect_lockfile_command(worktree) == (lockfile, argv)

    def test_directory_is_not_a_lockfile(self, worktree):
        (worktree / "uv.lock").mkdir()

        assert detect_lockfile_command(worktree) is None


class TestResolveInstallTimeout:
    def test_default(self):
        assert resolve_install_timeout({}) == DEFAULT_INSTALL_TIMEOUT_SECONDS

    def test_environment(self):
        assert resolve_install_timeout({"CONDUCTOR_INSTALL_TIMEOUT_SECONDS": "12.5"}) == 12.5

    def test_explicit_value_wins(self):
        assert resolve_install_timeout({"CONDUCTOR_INSTALL_TIMEOUT_SECONDS": "12"}, 3) == 3

    @pytest.mark.parametrize("raw", ["bad-value", "0", "-5", "nan", "inf"])
    def test_invalid_environment_value(self, raw):
        with pytest.raises(ConfigurationError, match="CONDUCTOR_INSTALL_TIMEOUT_SECONDS"):
            resolve_install_timeout({"CONDUCTOR_INSTALL_TIMEOUT_SECONDS": raw})


class TestInstallDependencies:
    @pytest.mark.asyncio
    async def test_skip_option(self, worktree, mock_run):
        (worktree / "pnpm-lock.yaml").write_text("lock")

        result = await install_dependencies(worktree, environment={}, skip=True)

        assert result.status == "skipped"
        assert result.reason == "skip_option"
        mock_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skip_environment(self, worktree, mock_run):
        (worktree / "pnpm-lock.yaml").write_text("lock")

        result = await install_dependencies(worktree, environment={"CONDUCTOR_SKIP_INSTALL": "1"})

        assert result.reason == "skip_env"
        mock_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_lockfile(self, worktree, mock_run):
        result = await install_dependencies(worktree, environment={})

        assert result.status == "skipped"
        assert result.reason == "no_lockfile"
        mock_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lockfile_command(self, worktree, mock_run):
        (worktree / "poetry.lock").write_text("")

        result = await install_dependencies(worktree, environment={"CONDUCTOR_INSTALL_TIMEOUT_SECONDS": "45"})

        assert result.status == "installed"
        assert result.source == "lockfile"
        assert result.command == "poetry install"
        assert result.lockfile == "poetry.lock"
        assert result.timeout_seconds == 45
        args, kwargs = mock_run.call_args
        assert args == ("poetry", "install")
        assert kwargs["cwd"] == worktree
        assert kwargs["timeout"] == 45
        assert kwargs["check"] is False

    @pytest.mark.asyncio
    async def test_environment_override(self, worktree, mock_run):
        env = {"CONDUCTOR_INSTALL_CMD": "pnpm install --frozen-lockfile"}

        result = await install_dependencies(worktree, environment=env)

        assert result.source == "override"
        assert result.command == "pnpm install --frozen-lockfile"
        assert result.lockfile is None
        assert result.timeout_seconds == DEFAULT_INSTALL_TIMEOUT_SECONDS
        assert mock_run.call_args.args == ("sh", "-c", "pnpm install --frozen-lockfile")

    @pytest.mark.asyncio
    async def test_command_argument_beats_environment(self, worktree, mock_run):
        env = {"CONDUCTOR_INSTALL_CMD": "make env-deps"}

        result = await install_dependencies(worktree, environment=env, command="make deps")

        assert result.command == "make deps"

    @pytest.mark.asyncio
    async def test_command_not_found(self, worktree, mock_run):
        (worktree / "Cargo.lock").write_text("")
        mock_run.side_effect = FileNotFoundError("cargo")

        with pytest.raises(DependencyInstallError, match="failed to start") as exc_info:
            await install_dependencies(worktree, environment={})

        assert exc_info.value.command == "cargo fetch"
        assert exc_info.value.return_code is None

    @pytest.mark.asyncio
    async def test_timeout(self, worktree, mock_run):
        (worktree / "go.sum").write_text("")
        mock_run.side_effect = TimeoutError()

        with pytest.raises(DependencyInstallError, match="timed out after 2s"):
            await install_dependencies(worktree, environment={}, timeout_seconds=2)


@requires_sh
class TestInstallDependenciesShell:
    @pytest.mark.asyncio
    async def test_override_runs_in_worktree(self, worktree):
        result = await install_dependencies(
            worktree, environment={"PATH": "/usr/bin:/bin"}, command="echo ok > installed.txt"
        )

        assert result.status == "installed"
        assert (worktree / "installed.txt").read_text() == "ok\n"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, worktree):
        with pytest.raises(DependencyInstallError) as exc_info:
            await install_dependencies(
                worktree, environment={"PATH": "/usr/bin:/bin"}, command="echo lock mismatch >&2; exit 7"
            )

        assert exc_info.value.return_code == 7
        assert "exit code 7" in str(exc_info.value)
        assert "lock mismatch" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_slow_install_is_killed(self, worktree):
        with pytest.raises(DependencyInstallError, match="timed out"):
            await install_dependencies(
                worktree, environment={"PATH": "/usr/bin:/bin"}, command="sleep 5", timeout_seconds=0.2
            )
