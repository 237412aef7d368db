"""Command executor: runs a validated argv as a subprocess with a timeout.

No shell is involved. stdout and stderr are captured separately and
decoded as UTF-8 with replacement.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from collections.abc import Collection, Sequence
from pathlib import Path

import structlog

from anvil.errors import ErrorKind
from anvil.tools.definitions import InvocationState, ToolResult, ToolStatus

log = structlog.get_logger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
TRUNCATION_MARKER = "\n[... output truncated at {limit} bytes ...]"
# Seconds to wait for a killed process group to release its pipes.
REAP_TIMEOUT = 5.0


async def execute(
    program: str,
    argv: Sequence[str],
    timeout: float,
    *,
    ok_exit_codes: Collection[int] = frozenset({0}),
    cwd: Path | str | None = None,
    stdin: str | None = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> ToolResult:
    """Run *program* with *argv* and wait at most *timeout* seconds.

    Returns:
        ToolResult. An exit code in *ok_exit_codes* is a success (stderr is
        kept). Any other exit code, a missing program, or a timeout is a
        failure carrying the matching ``error_kind``.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
        return ToolResult(
            status=ToolStatus.FAILURE,
            state=InvocationState.FAILED,
            error_kind=ErrorKind.EXECUTION_FAILED,
            message=f"Could not start '{program}': {exc.strerror or exc}",
        )

    payload = stdin.encode("utf-8") if stdin is not None else None
    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        log.warning("tool.timeout", program=program, timeout=timeout)
        return ToolResult(
            status=ToolStatus.FAILURE,
            state=InvocationState.FAILED,
            error_kind=ErrorKind.EXECUTION_TIMED_OUT,
            message=f"'{program}' timed out after {timeout:g}s and was killed",
        )
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    stdout = _decode(stdout_b, max_output_bytes)
    stderr = _decode(stderr_b, max_output_bytes)
    code = proc.returncode

    if code in ok_exit_codes:
        return ToolResult(
            status=ToolStatus.SUCCESS, stdout=stdout, stderr=stderr, exit_code=code
        )
    return ToolResult(
        status=ToolStatus.FAILURE,
        stdout=stdout,
        stderr=stderr,
        exit_code=code,
        state=InvocationState.FAILED,
        error_kind=ErrorKind.EXECUTION_FAILED,
        message=f"'{program}' exited with code {code}",
    )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the process group *proc* leads, so its children die with it."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=REAP_TIMEOUT)
    except asyncio.TimeoutError:
        log.warning("tool.unreaped", pid=proc.pid)


def _decode(data: bytes | None, limit: int) -> str:
    data = data or b""
    if len(data) <= limit:
        return data.decode("utf-8", errors="replace")
    return data[:limit].decode("utf-8", errors="replace") + TRUNCATION_MARKER.format(limit=limit)
