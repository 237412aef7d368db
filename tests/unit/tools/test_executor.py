"""Tests for the subprocess executor."""

from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path

import pytest

from anvil.errors import ErrorKind
from anvil.tools.definitions import InvocationState, ToolStatus
from anvil.tools.executor import execute

needs = {
    name: pytest.mark.skipif(shutil.which(name) is None, reason=f"{name} not installed")
    for name in ("sleep", "grep", "cat", "sh")
}


@needs["grep"]
async def test_success_captures_stdout(tmp_path):
    (tmp_path / "a.txt").write_text("alpha\nbeta\n")
    result = await execute("grep", ["-n", "-e", "beta", "--", "a.txt"], 5, cwd=tmp_path)
    assert result.status is ToolStatus.SUCCESS
    assert result.exit_code == 0
    assert result.stdout == "2:beta\n"
    assert result.error_kind is None


@needs["grep"]
async def test_ok_exit_codes_treat_no_match_as_success(tmp_path):
    (tmp_path / "a.txt").write_text("alpha\n")
    result = await execute(
        "grep", ["-e", "zzz", "a.txt"], 5, cwd=tmp_path, ok_exit_codes={0, 1}
    )
    assert result.ok
    assert result.exit_code == 1
    assert result.stdout == ""


@needs["grep"]
async def test_nonzero_exit_is_execution_failed(tmp_path):
    result = await execute("grep", ["-e", "x", "missing.txt"], 5, cwd=tmp_path)
    assert result.status is ToolStatus.FAILURE
    assert result.state is InvocationState.FAILED
    assert result.error_kind is ErrorKind.EXECUTION_FAILED
    assert result.exit_code == 2
    assert "missing.txt" in result.stderr
    assert result.message == "'grep' exited with code 2"


@needs["sleep"]
async def test_timeout_kills_process():
    started = time.monotonic()
    result = await execute("sleep", ["10"], 0.2)
    assert time.monotonic() - started < 5
    assert result.status is ToolStatus.FAILURE
    assert result.error_kind is ErrorKind.EXECUTION_TIMED_OUT
    assert result.exit_code is None
    assert "timed out after 0.2s" in result.message


async def test_missing_program():
    result = await execute("definitely-not-a-real-program-xyz", [], 5)
    assert result.error_kind is ErrorKind.EXECUTION_FAILED
    assert result.exit_code is None
    assert result.message.startswith("Could not start")


@needs["cat"]
async def test_stdin_is_fed_to_process():
    result = await execute("cat", [], 5, stdin="from stdin\n")
    assert result.stdout == "from stdin\n"


@needs["cat"]
async def test_no_stdin_means_empty_input():
    result = await execute("cat", [], 5)
    assert result.ok
    assert result.stdout == ""


@needs["sh"]
async def test_output_is_truncated():
    result = await execute("sh", ["-c", "printf '%0500d' 0"], 5, max_output_bytes=100)
    assert result.stdout.startswith("0" * 100)
    assert result.stdout.endswith("[... output truncated at 100 bytes ...]")


@needs["sh"]
async def test_arguments_are_not_shell_interpreted(tmp_path):
    result = await execute("sh", ["-c", 'printf %s "$1"', "sh", "$(touch pwned); `id`"], 5, cwd=tmp_path)
    assert result.stdout == "$(touch pwned); `id`"
    assert not (tmp_path / "pwned").exists()


@needs["sh"]
@pytest.mark.skipif(not Path("/proc/self/stat").exists(), reason="needs /proc")
async def test_timeout_kills_background_children(tmp_path):
    started = time.monotonic()
    result = await execute("sh", ["-c", "sleep 30 & echo $! > child.pid; wait"], 0.5, cwd=tmp_path)
    assert time.monotonic() - started < 5
    assert result.error_kind is ErrorKind.EXECUTION_TIMED_OUT

    child = int((tmp_path / "child.pid").read_text())
    for _ in range(50):
        if not _running(child):
            break
        await asyncio.sleep(0.02)
    assert not _running(child)


@needs["sleep"]
async def test_cancellation_kills_process():
    task = asyncio.create_task(execute("sleep", ["10"], 30))
    await asyncio.sleep(0.2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def _running(pid: int) -> bool:
    """True while *pid* exists and is not a zombie awaiting its reaper."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except (FileNotFoundError, ProcessLookupError):
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"
