"""Tests for workflow_run_control (pause, resume, cancel)."""

from unittest.mock import AsyncMock, patch

import pytest

from repo_conductor.engine.executor import MAX_CONTROL_PRECONDITION_RETRIES
from repo_conductor.enums import RunControlAction, RunStatus
from repo_conductor.exceptions import RunControlErrorCode, RunNotFoundError, WorkflowRunControlError


async def running_run(executor):
    run = await executor.start_run("implement-issue")
    await executor.execute_next_runnable_node(run.id)
    return run


class TestAllowedActions:
    @pytest.mark.asyncio
    async def test_pause_running_run(self, executor):
        run = await running_run(executor)

        result = await executor.workflow_run_control(run.id, RunControlAction.PAUSE)

        assert result.previous_status == RunStatus.RUNNING
        assert result.status == RunStatus.PAUSED
        assert (await executor.get_run(run.id)).status == RunStatus.PAUSED

    @pytest.mark.asyncio
    async def test_resume_paused_run(self, executor):
        run = await running_run(executor)
        await executor.workflow_run_control(run.id, "pause")

        result = await executor.workflow_run_control(run.id, "resume")

        assert result.action == RunControlAction.RESUME
        assert result.status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_cancel_pending_run(self, executor):
        run = await executor.start_run("implement-issue")

        result = await executor.workflow_run_control(run.id, "cancel")

        assert result.previous_status == RunStatus.PENDING
        assert result.status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_paused_run(self, executor):
        run = await running_run(executor)
        await executor.workflow_run_control(run.id, "pause")

        result = await executor.workflow_run_control(run.id, "cancel")

        assert result.status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_control_keeps_history_and_phase(self, executor):
        run = await running_run(executor)
        before = await executor.get_run(run.id)

        await executor.workflow_run_control(run.id, "pause")
        after = await executor.get_run(run.id)

        assert after.current_phase == before.current_phase
        assert after.history == before.history


class TestRejectedActions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["pause", "resume"])
    async def test_pending_run(self, executor, action):
        run = await executor.start_run("implement-issue")

        with pytest.raises(WorkflowRunControlError) as exc_info:
            await executor.workflow_run_control(run.id, action)

        error = exc_info.value
        assert error.code == RunControlErrorCode.INVALID_TRANSITION
        assert error.action == action
        assert error.run_id == run.id
        assert error.run_status == "pending"

    @pytest.mark.asyncio
    async def test_resume_running_run(self, executor):
        run = await running_run(executor)

        with pytest.raises(WorkflowRunControlError) as exc_info:
            await executor.workflow_run_control(run.id, "resume")

        assert exc_info.value.code == RunControlErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_pause_twice(self, executor):
        run = await running_run(executor)
        await executor.workflow_run_control(run.id, "pause")

        with pytest.raises(WorkflowRunControlError) as exc_info:
            await executor.workflow_run_control(run.id, "pause")

        assert exc_info.value.code == RunControlErrorCode.INVALID_TRANSITION

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["pause", "resume", "cancel"])
    async def test_terminal_runs_are_final(self, executor, action):
        run = await executor.start_run("implement-issue")
        await executor.execute_workflow_run(run.id)

        with pytest.raises(WorkflowRunControlError) as exc_info:
            await executor.workflow_run_control(run.id, action)

        assert exc_info.value.code == RunControlErrorCode.INVALID_TRANSITION
        assert (await executor.get_run(run.id)).status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_action(self, executor):
        run = await executor.start_run("implement-issue")

        with pytest.raises(ValueError):
            await executor.workflow_run_control(run.id, "retry")

    @pytest.mark.asyncio
    async def test_missing_run(self, executor):
        with pytest.raises(RunNotFoundError):
            await executor.workflow_run_control("ghost", "cancel")


class TestConcurrentConflict:
    @pytest.mark.asyncio
    async def test_retries_then_reports_conflict(self, executor):
        run = await running_run(executor)

        with patch.object(executor.state, "compare_and_set", AsyncMock(return_value=None)) as cas:
            with pytest.raises(WorkflowRunControlError) as exc_info:
                await executor.workflow_run_control(run.id, "pause")

        assert exc_info.value.code == RunControlErrorCode.CONCURRENT_CONFLICT
        assert cas.await_count == MAX_CONTROL_PRECONDITION_RETRIES
        assert (await executor.get_run(run.id)).status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_conflict(self, executor):
        run = await running_run(executor)
        real_cas = executor.state.compare_and_set
        attempts = []

        async def flaky(*args, **kwargs):
            attempts.append(kwargs)
            if len(attempts) == 1:
                return None
            return await real_cas(*args, **kwargs)

        with patch.object(executor.state, "compare_and_set", side_effect=flaky):
            result = await executor.workflow_run_control(run.id, "cancel")

        assert result.status == RunStatus.CANCELLED
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_status_change_between_attempts_is_revalidated(self, executor):
        run = await running_run(executor)
        real_cas = executor.state.compare_and_set
        calls = []

        async def cancel_first(*args, **kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                # Someone else cancels the run before our write lands.
                await real_cas(run.id, expected_status="running", status="cancelled")
                return None
            return await real_cas(*args, **kwargs)

        with patch.object(executor.state, "compare_and_set", side_effect=cancel_first):
            with pytest.raises(WorkflowRunControlError) as exc_info:
                await executor.workflow_run_control(run.id, "pause")

        assert exc_info.value.code == RunControlErrorCode.INVALID_TRANSITION
        assert exc_info.value.run_status == "cancelled"
