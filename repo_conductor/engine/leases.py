"""Exclusive execution leases for workflow runs.

At most one execution may be in flight for a run at any time, across every
process sharing the state directory. A lease is a file created with
``O_CREAT | O_EXCL``, which the filesystem guarantees only one creator wins:

    <state_dir>/leases/<run_id>.lease

The file records an owner token and an expiry. A lease left behind by a
crashed process is broken once it has expired.

Removing a lease file (release, or breaking an expired lease) happens under
an exclusive ``flock`` on ``<run_id>.lease.lock`` and only after re-reading
the holder under that lock. Two processes that both saw the same expired
lease therefore cannot delete each other's fresh lease.
"""

import fcntl
import json
import os
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import structlog

from repo_conductor.git.sandbox import validate_path_segment

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RunLease:
    """A held lease; pass it back to ``release``."""

    run_id: str
    owner: str
    path: Path
    expires_at: float


class RunLeaseRegistry:
    """File-backed lease table keyed by run id."""

    def __init__(self, lease_dir: str | Path, ttl_seconds: float = 3600.0) -> None:
        self.lease_dir = Path(lease_dir)
        self.lease_dir.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = ttl_seconds

    def _path(self, run_id: str) -> Path:
        return self.lease_dir / f"{validate_path_segment(run_id)}.lease"

    @contextmanager
    def _removal_guard(self, path: Path) -> Iterator[None]:
        """Serialize removals of one lease file across processes.

        The kernel drops the lock when the holder exits, so a crash never
        leaves it behind.
        """
        with open(path.with_name(path.name + ".lock"), "a") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def acquire(self, run_id: str) -> RunLease | None:
        """Try to take the lease for a run.

        Returns:
            The lease, or None if another live holder has it
        """
        path = self._path(run_id)
        owner = secrets.token_hex(8)
        expires_at = time.time() + self.ttl_seconds

        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._break_if_expired(path):
                    log.debug("run_lease_busy", run_id=run_id)
                    return None
                continue

            with os.fdopen(fd, "w") as f:
                json.dump({"run_id": run_id, "owner": owner, "expires_at": expires_at, "pid": os.getpid()}, f)
            log.debug("run_lease_acquired", run_id=run_id, owner=owner)
            return RunLease(run_id=run_id, owner=owner, path=path, expires_at=expires_at)

        return None

    def release(self, lease: RunLease) -> None:
        """Release a lease if it is still ours. Releasing twice is harmless."""
        with self._removal_guard(lease.path):
            holder = self._read(lease.path)
            if holder is None or holder.get("owner") != lease.owner:
                log.warning("run_lease_lost", run_id=lease.run_id, owner=lease.owner)
                return
            lease.path.unlink(missing_ok=True)
        log.debug("run_lease_released", run_id=lease.run_id, owner=lease.owner)

    def is_held(self, run_id: str) -> bool:
        holder = self._read(self._path(run_id))
        return holder is not None and holder.get("expires_at", 0) > time.time()

    def _break_if_expired(self, path: Path) -> bool:
        """Delete the lease at ``path`` if it has expired.

        Returns:
            True when the path is free to be created again
        """
        with self._removal_guard(path):
            holder = self._read(path)
            if holder is None:
                # Vanished, or a concurrent writer has not finished writing it yet.
                return not path.exists()
            if holder.get("expires_at", 0) > time.time():
                return False
            path.unlink(missing_ok=True)
        log.warning("run_lease_expired", run_id=holder.get("run_id"), owner=holder.get("owner"))
        return True

    @staticmethod
    def _read(path: Path) -> dict | None:
        try:
            return json.loads(path.read_text())
        except (FileNotFoundError, json.JSONDecodeError):
            return None
