"""Async subprocess execution for git and agent CLIs.

Clones and agent phases can take minutes; running them through asyncio keeps
the executor responsive to pause and cancel requests for other runs.

Example:
    >>> from repo_conductor.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "status", cwd="/repo")
"""

import asyncio
import os
import signal
import subprocess
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)

Redactor = Callable[[Sequence[str]], list[str]]


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill the process and everything it started, then reap it."""
    if process.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
    redact: Redactor | None = None,
) -> tuple[str, str, int]:
    """Run a command without a shell and capture its output.

    The child gets its own process group, so a timeout or a cancelled task
    also kills any processes it spawned (agent CLIs commonly do).

    Args:
        *args: Executable followed by its arguments
        cwd: Working directory; None keeps the parent's
        check: Raise ``CalledProcessError`` on a non-zero exit
        timeout: Seconds before the process group is killed
        env: Complete child environment; None inherits the parent's
        input_text: Written to stdin, which is then closed
        redact: Maps the argument list to the form that may appear in logs
            and in ``CalledProcessError.cmd``

    Returns:
        ``(stdout, stderr, return_code)``, decoded as UTF-8 with replacement

    Raises:
        subprocess.CalledProcessError: Non-zero exit with ``check=True``
        TimeoutError: The timeout expired; the process group was killed
        FileNotFoundError: The executable does not exist
    """
    shown = redact(args) if redact is not None else list(args)
    log.debug("command_started", command=shown[0], args=shown[1:], cwd=str(cwd) if cwd else None)

    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=os.name == "posix",
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(input_text.encode("utf-8") if input_text is not None else None),
            timeout=timeout,
        )
    except (TimeoutError, asyncio.CancelledError):
        await _terminate(process)
        log.warning("command_killed", command=shown[0], pid=process.pid, timeout=timeout)
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
    code = process.returncode or 0
    log.debug("command_finished", command=shown[0], return_code=code)

    if check and code != 0:
        raise subprocess.CalledProcessError(code, shown, stdout, stderr)

    return stdout, stderr, code
