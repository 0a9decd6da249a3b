"""
Run state persistence with atomic transactions.

This module provides the StateManager class which persists workflow run
state to disk with support for atomic updates via transactions and
compare-and-set status changes. The state manager ensures data integrity
through:

- Atomic file writes using temporary files and rename operations
- Per-run locking to prevent concurrent modification
- Conditional updates that only apply when the run is still in the status
  (and phase) the caller observed

State File Structure:
    Each run gets its own file named ``{run_id}.json`` in the state
    directory; see repo_conductor.engine.types.RunState for the schema.

Transaction Support:
    The ``transaction()`` context manager provides atomic state updates::

        async with state_manager.transaction("a1b2c3") as state:
            state["context"]["reviewed"] = True
            # Changes are saved atomically on context exit

Concurrency Model:
    Each run has its own asyncio lock. Multiple runs can be accessed
    concurrently, but each individual run is accessed serially. Exclusive
    execution across processes is the job of RunLeaseRegistry, not of this
    class.

Example:
    >>> state = StateManager(".conductor/state")
    >>> run = await state.load_run("a1b2c3")
    >>> run["context"]["foo"] = "bar"
    >>> await state.save_run("a1b2c3", run)
"""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

import aiofiles
import structlog

from repo_conductor.engine.types import RunState
from repo_conductor.enums import RunStatus
from repo_conductor.exceptions import RunNotFoundError, WorkflowError
from repo_conductor.git.sandbox import validate_path_segment

log = structlog.get_logger(__name__)


class StateManager:
    """Persist workflow runs with atomic file operations.

    Attributes:
        state_dir: Directory where state files are stored.

    Thread Safety:
        This class is designed for single-threaded asyncio usage. Each run
        has its own lock, and lock creation itself is guarded by a
        meta-lock.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the state manager with a storage directory.

        Args:
            state_dir: Directory for run state files. Created, including
                parents, if it does not exist.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        # Per-run locks to prevent concurrent modification of the same run
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, run_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if run_id not in self._locks:
                self._locks[run_id] = asyncio.Lock()
            return self._locks[run_id]

    def _get_state_path(self, run_id: str) -> Path:
        """Compute the state file path for a run.

        Raises:
            InvalidSandboxPathError: If the run id cannot be used as a file
                name (empty, ``..``, contains a separator)
        """
        validate_path_segment(run_id)
        return self.state_dir / f"{run_id}.json"

    def exists(self, run_id: str) -> bool:
        return self._get_state_path(run_id).exists()

    async def _load_run_internal(self, run_id: str) -> RunState:
        """Load state from disk without acquiring the run lock.

        Warning:
            Caller MUST hold the run lock before calling this method.
        """
        state_path = self._get_state_path(run_id)
        if not state_path.exists():
            raise RunNotFoundError(run_id)

        async with aiofiles.open(state_path) as f:
            content = await f.read()
            return cast(RunState, json.loads(content))

    async def _save_run_internal(self, run_id: str, state: RunState) -> None:
        """Save state to disk without acquiring the run lock.

        Updates ``updated_at`` before writing.

        Warning:
            Caller MUST hold the run lock before calling this method.
        """
        state["updated_at"] = datetime.now(UTC).isoformat()
        await self._write_state(self._get_state_path(run_id), state)

    async def create_run(self, state: RunState) -> RunState:
        """Persist a brand-new run.

        Args:
            state: Fully populated initial run state

        Returns:
            The persisted state

        Raises:
            WorkflowError: If a run with the same id already exists
        """
        run_id = state["id"]
        lock = await self._get_lock(run_id)
        async with lock:
            state_path = self._get_state_path(run_id)
            if state_path.exists():
                raise WorkflowError(f"Workflow run already exists: {run_id}")
            await self._write_state(state_path, state)

        log.info(
            "run_created",
            run_id=run_id,
            workflow=state["workflow_name"],
            version=state["workflow_version"],
        )
        return state

    async def load_run(self, run_id: str) -> RunState:
        """Load the current state of a run.

        Raises:
            RunNotFoundError: If no state file exists for the run
            json.JSONDecodeError: If the state file contains invalid JSON
        """
        lock = await self._get_lock(run_id)
        async with lock:
            return await self._load_run_internal(run_id)

    async def save_run(self, run_id: str, state: RunState) -> None:
        """Atomically overwrite the state of a run.

        The ``updated_at`` timestamp is updated in place before saving.
        """
        lock = await self._get_lock(run_id)
        async with lock:
            await self._save_run_internal(run_id, state)

    async def _write_state(self, path: Path, state: RunState) -> None:
        """Write state to disk atomically using a temporary file.

        State is written to a .tmp file in the same directory first, then
        renamed onto the target path, so readers never observe a partially
        written file.
        """
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(state, indent=2))

        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)

    @asynccontextmanager
    async def transaction(self, run_id: str) -> AsyncIterator[RunState]:
        """Context manager for atomic state updates.

        The state is loaded when entering the context and saved when the
        block exits normally. If the block raises, nothing is saved and the
        exception propagates.

        Example:
            >>> async with manager.transaction("a1b2c3") as state:
            ...     state["context"]["processed"] = True

        Note:
            The lock is held for the entire duration of the context.
            Keep transactions short to avoid blocking other operations.
        """
        lock = await self._get_lock(run_id)
        async with lock:
            state = await self._load_run_internal(run_id)
            try:
                yield state
                await self._save_run_internal(run_id, state)
            except Exception:
                log.error("state_transaction_failed", run_id=run_id)
                raise

    async def compare_and_set(
        self,
        run_id: str,
        *,
        expected_status: RunStatus | str,
        status: RunStatus | str,
        expected_phase: str | None = None,
        current_phase: str | None = None,
        updates: dict[str, Any] | None = None,
    ) -> RunState | None:
        """Change a run's status only if it still matches what the caller saw.

        Args:
            run_id: Run to update
            expected_status: Status the caller observed
            status: Status to write
            expected_phase: When given, the current phase must also match
            current_phase: When given, the new current phase
            updates: Extra top-level fields to write alongside the status

        Returns:
            The updated state, or None if the precondition did not hold (the
            run was changed by someone else in the meantime)

        Raises:
            RunNotFoundError: If the run does not exist
        """
        lock = await self._get_lock(run_id)
        async with lock:
            state = await self._load_run_internal(run_id)
            if state["status"] != str(RunStatus(expected_status)):
                return None
            if expected_phase is not None and state["current_phase"] != expected_phase:
                return None

            state["status"] = str(RunStatus(status))
            if current_phase is not None:
                state["current_phase"] = current_phase
            if updates:
                state.update(updates)  # type: ignore[typeddict-item]
            await self._save_run_internal(run_id, state)
            return state

    async def list_runs(self, status: RunStatus | str | None = None) -> list[RunState]:
        """Load every persisted run, optionally filtered by status.

        Note:
            This loads each run file, which could be slow for directories
            with many runs.
        """
        runs: list[RunState] = []
        for state_file in sorted(self.state_dir.glob("*.json")):
            state = await self.load_run(state_file.stem)
            if status is None or state["status"] == str(RunStatus(status)):
                runs.append(state)
        return runs
