"""CLI entry point for repo-conductor."""

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog
import yaml

from repo_conductor.config.settings import ConductorSettings
from repo_conductor.config.workflows import WorkflowRegistry
from repo_conductor.engine.executor import NEXT_RUNNABLE, WorkflowExecutor
from repo_conductor.engine.leases import RunLeaseRegistry
from repo_conductor.engine.state_manager import StateManager
from repo_conductor.enums import ExecutionScope, RunControlAction, RunStatus, ScmProviderKind
from repo_conductor.exceptions import (
    ConfigurationError,
    RepoConductorError,
    RunControlErrorCode,
    RunExecutionErrorCode,
    RunNotFoundError,
    WorkflowRunControlError,
    WorkflowRunExecutionError,
)
from repo_conductor.git.sandbox import derive_sandbox_repo_path
from repo_conductor.git.worktree import WorktreeManager
from repo_conductor.models.domain import Run
from repo_conductor.providers.base import ScmProvider
from repo_conductor.providers.command_agent import CommandAgentRunner
from repo_conductor.providers.factory import create_scm_provider
from repo_conductor.utils.connection_pool import close_all_pools
from repo_conductor.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

T = TypeVar("T")

EXIT_ERROR = 1
EXIT_NOT_FOUND = 3
EXIT_CODES: dict[str, int] = {
    RunControlErrorCode.INVALID_TRANSITION.value: 4,
    RunControlErrorCode.BUSY.value: 5,
    RunControlErrorCode.CONCURRENT_CONFLICT.value: 6,
    RunExecutionErrorCode.WORKFLOW_NOT_FOUND.value: EXIT_NOT_FOUND,
    RunExecutionErrorCode.PHASE_NOT_FOUND.value: EXIT_NOT_FOUND,
}


def exit_code_for(error: RepoConductorError) -> int:
    """Map an engine error to the process exit code."""
    if isinstance(error, (WorkflowRunControlError, WorkflowRunExecutionError)):
        return EXIT_CODES.get(error.code.value, EXIT_ERROR)
    if isinstance(error, RunNotFoundError):
        return EXIT_NOT_FOUND
    return EXIT_ERROR


def _run(command: str, coro: Awaitable[T]) -> T:
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except RepoConductorError as e:
        code = getattr(e, "code", None)
        prefix = f"Error [{code}]" if code is not None else "Error"
        click.echo(f"{prefix}: {e}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(exit_code_for(e))
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@click.group()
@click.option(
    "--config",
    default="conductor.yaml",
    help="Path to configuration file (defaults apply when it does not exist)",
)
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=False, help="Log output format")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, json_logs: bool) -> None:
    """repo-conductor: run multi-phase agent workflows against repositories."""
    configure_logging(log_level, json_output=json_logs)

    config_path = Path(config)
    try:
        if config_path.exists():
            settings = ConductorSettings.from_yaml(config_path)
        else:
            log.debug("config_file_missing", path=str(config_path))
            settings = ConductorSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(EXIT_ERROR)

    ctx.obj = {"settings": settings}


def _provider_for(settings: ConductorSettings) -> ScmProvider | None:
    if settings.scm is None:
        return None
    return create_scm_provider(settings.scm, settings.sandbox_environment())


def _require_provider(settings: ConductorSettings) -> ScmProvider:
    provider = _provider_for(settings)
    if provider is None:
        raise ConfigurationError("No SCM provider configured (set 'scm' in the configuration file)")
    return provider


@asynccontextmanager
async def _executor_session(settings: ConductorSettings) -> AsyncIterator[WorkflowExecutor]:
    """Build an executor from settings and release provider resources afterwards."""
    state = StateManager(settings.state_dir)
    leases = RunLeaseRegistry(settings.state_dir / "leases", ttl_seconds=settings.state.lease_ttl_seconds)
    workflows = WorkflowRegistry.from_directory(
        settings.workflows_dir, strict_guards=settings.executor.strict_guards
    )
    agent = CommandAgentRunner(settings.agent.command, timeout_seconds=settings.agent.timeout_seconds)

    provider = _provider_for(settings)
    worktrees = None
    if provider is not None:
        worktrees = WorktreeManager(
            provider,
            environment=settings.sandbox_environment(),
            branch_template=settings.executor.branch_template,
            install=not settings.install.skip,
            install_command=settings.install.command,
            install_timeout_seconds=settings.install.timeout_seconds,
        )

    executor = WorkflowExecutor(
        state,
        workflows,
        agent,
        leases=leases,
        worktrees=worktrees,
        strict_guards=settings.executor.strict_guards,
        max_steps=settings.executor.max_steps,
        base_ref=settings.executor.base_ref,
    )
    try:
        yield executor
    finally:
        if provider is not None:
            await provider.close()
        await close_all_pools()


async def _with_executor(settings: ConductorSettings, action: Callable[[WorkflowExecutor], Awaitable[T]]) -> T:
    async with _executor_session(settings) as executor:
        return await action(executor)


def _parse_assignments(assignments: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are read as YAML scalars.

    Dotted keys build nested mappings: ``review.approved=true`` gives
    ``{"review": {"approved": True}}``.
    """
    context: dict[str, Any] = {}
    for assignment in assignments:
        key, sep, raw = assignment.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected key=value, got: {assignment}", param_hint="--set")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError as e:
            raise click.BadParameter(f"Invalid value for {key}: {e}", param_hint="--set") from e

        *parents, leaf = key.strip().split(".")
        target = context
        for parent in parents:
            target = target.setdefault(parent, {})
            if not isinstance(target, dict):
                raise click.BadParameter(f"Conflicting keys for {key}", param_hint="--set")
        target[leaf] = value
    return context


def _echo_run(run: Run, verbose: bool = False) -> None:
    click.echo(f"Run:       {run.id}")
    click.echo(f"Workflow:  {run.workflow_name} (version {run.workflow_version})")
    click.echo(f"Status:    {run.status.value}")
    click.echo(f"Phase:     {run.current_phase}{' (awaiting transition)' if run.awaiting_transition else ''}")
    if run.worktree_path:
        click.echo(f"Worktree:  {run.worktree_path}")
    if run.error:
        click.echo(f"Error:     {run.error}")
    if verbose:
        click.echo(f"Context:   {json.dumps(run.context, sort_keys=True)}")
        click.echo("History:")
        for entry in run.history:
            line = f"  {entry.timestamp.isoformat()}  {entry.phase}: {entry.outcome.value}"
            if entry.next_phase:
                line += f" -> {entry.next_phase}"
            click.echo(line)


@cli.command()
@click.argument("workflow")
@click.option("--version", "workflow_version", type=int, help="Workflow version (default: latest)")
@click.option("--run-id", help="Explicit run id")
@click.option("--set", "assignments", multiple=True, help="Initial context value as key=value")
@click.pass_context
def start(
    ctx: click.Context,
    workflow: str,
    workflow_version: int | None,
    run_id: str | None,
    assignments: tuple[str, ...],
) -> None:
    """Create a pending run of WORKFLOW."""
    settings = ctx.obj["settings"]
    context = _parse_assignments(assignments)
    run = _run(
        "start",
        _with_executor(
            settings,
            lambda ex: ex.start_run(workflow, version=workflow_version, run_id=run_id, context=context),
        ),
    )
    click.echo(run.id)


@cli.command()
@click.argument("run_id")
@click.option("--single", is_flag=True, help="Execute one phase only")
@click.option("--phase", "node_selector", default=NEXT_RUNNABLE, help="Phase to execute first")
@click.option("--max-steps", type=int, help="Stop after this many phases")
@click.pass_context
def execute(ctx: click.Context, run_id: str, single: bool, node_selector: str, max_steps: int | None) -> None:
    """Execute RUN_ID until it stops (or one phase with --single)."""
    settings = ctx.obj["settings"]
    scope = ExecutionScope.SINGLE_NODE if single else ExecutionScope.FULL
    result = _run(
        "execute",
        _with_executor(
            settings,
            lambda ex: ex.execute_workflow_run(
                run_id, scope, node_selector=node_selector, max_steps=max_steps
            ),
        ),
    )
    for phase in result.executed_phases:
        click.echo(f"executed {phase}")
    click.echo(f"{result.run_id}: {result.status.value} ({result.final_step.outcome.value})")
    if result.status == RunStatus.FAILED:
        sys.exit(EXIT_ERROR)


def _control(ctx: click.Context, run_id: str, action: RunControlAction) -> None:
    settings = ctx.obj["settings"]
    result = _run(
        action.value,
        _with_executor(settings, lambda ex: ex.workflow_run_control(run_id, action)),
    )
    click.echo(f"{result.run_id}: {result.previous_status.value} -> {result.status.value}")


@cli.command()
@click.argument("run_id")
@click.pass_context
def pause(ctx: click.Context, run_id: str) -> None:
    """Pause a running run at the next phase boundary."""
    _control(ctx, run_id, RunControlAction.PAUSE)


@cli.command()
@click.argument("run_id")
@click.pass_context
def resume(ctx: click.Context, run_id: str) -> None:
    """Resume a paused run."""
    _control(ctx, run_id, RunControlAction.RESUME)


@cli.command()
@click.argument("run_id")
@click.pass_context
def cancel(ctx: click.Context, run_id: str) -> None:
    """Cancel a run that has not finished."""
    _control(ctx, run_id, RunControlAction.CANCEL)


@cli.command("set-context")
@click.argument("run_id")
@click.option("--set", "assignments", multiple=True, required=True, help="Context value as key=value")
@click.pass_context
def set_context(ctx: click.Context, run_id: str, assignments: tuple[str, ...]) -> None:
    """Merge values into the context of RUN_ID."""
    settings = ctx.obj["settings"]
    values = _parse_assignments(assignments)
    run = _run("set_context", _with_executor(settings, lambda ex: ex.update_run_context(run_id, values)))
    click.echo(f"{run.id}: context updated ({', '.join(sorted(values))})")


@cli.command()
@click.argument("run_id")
@click.option("--verbose", "-v", is_flag=True, help="Show context and history")
@click.pass_context
def status(ctx: click.Context, run_id: str, verbose: bool) -> None:
    """Show the status of a run."""
    settings = ctx.obj["settings"]
    run = _run("status", _with_executor(settings, lambda ex: ex.get_run(run_id)))
    _echo_run(run, verbose=verbose)


@cli.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in RunStatus]),
    help="Only show runs in this status",
)
@click.pass_context
def runs(ctx: click.Context, status_filter: str | None) -> None:
    """List runs."""
    settings = ctx.obj["settings"]
    found = _run("runs", _with_executor(settings, lambda ex: ex.list_runs(status_filter)))
    if not found:
        click.echo("No runs found")
        return
    for run in found:
        click.echo(f"{run.id}  {run.status.value:<10} {run.workflow_name}@{run.workflow_version}  {run.current_phase}")


@cli.command("sandbox-path")
@click.option("--kind", type=click.Choice([k.value for k in ScmProviderKind]), help="SCM provider kind")
@click.option("--remote-ref", help="owner/repo, host/owner/repo or org/project/repository")
@click.pass_context
def sandbox_path(ctx: click.Context, kind: str | None, remote_ref: str | None) -> None:
    """Print the canonical clone location for a repository."""
    settings: ConductorSettings = ctx.obj["settings"]
    if kind is None or remote_ref is None:
        if settings.scm is None:
            raise click.UsageError("Pass --kind and --remote-ref, or configure 'scm'")
        kind = kind or settings.scm.kind
        remote_ref = remote_ref or settings.scm.remote_ref

    try:
        path = derive_sandbox_repo_path(kind, remote_ref, settings.sandbox_environment())
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_ERROR)
    click.echo(str(path))


@cli.command("check-auth")
@click.pass_context
def check_auth(ctx: click.Context) -> None:
    """Check credentials for the configured SCM provider."""
    settings = ctx.obj["settings"]

    async def _check() -> Any:
        provider = _require_provider(settings)
        try:
            return await provider.check_auth(settings.sandbox_environment())
        finally:
            await provider.close()
            await close_all_pools()

    auth = _run("check_auth", _check())
    if auth.authenticated:
        scopes = f" (scopes: {', '.join(auth.scopes)})" if auth.scopes else ""
        click.echo(f"Authenticated as {auth.user}{scopes}")
    else:
        click.echo(f"Not authenticated: {auth.error}", err=True)
        sys.exit(EXIT_ERROR)


@cli.command()
@click.pass_context
def worktrees(ctx: click.Context) -> None:
    """List run worktrees of the configured repository."""
    settings = ctx.obj["settings"]

    async def _list() -> Any:
        provider = _require_provider(settings)
        try:
            manager = WorktreeManager(provider, environment=settings.sandbox_environment())
            return await manager.list_worktrees(manager.sandbox_repo_path())
        finally:
            await provider.close()

    found = _run("worktrees", _list())
    if not found:
        click.echo("No worktrees found")
        return
    for info in found:
        click.echo(f"{info.path}  {info.branch}  {info.commit[:12]}  run={info.run_id or '-'}")


@cli.command()
@click.argument("run_id")
@click.option("--delete-branch", is_flag=True, help="Also delete the run's branch")
@click.pass_context
def cleanup(ctx: click.Context, run_id: str, delete_branch: bool) -> None:
    """Remove the worktree of the finished run RUN_ID."""
    settings = ctx.obj["settings"]
    removed = _run(
        "cleanup",
        _with_executor(settings, lambda ex: ex.cleanup_run(run_id, delete_branch=delete_branch)),
    )
    if removed is None:
        click.echo(f"{run_id}: no worktree to remove")
    else:
        click.echo(f"{run_id}: removed {removed}")


if __name__ == "__main__":
    cli()
