"""
Subprocess I/O management for blocks that drive external processes.

Two shapes are supported:

1. Merged output (run_merged): stderr folded into stdout, lines handed to a
   callback as they arrive. Used for shell commands.
2. Separate streams with stdin (run_with_stdin): three concurrent tasks per
   process - stdout reader, stderr reader, stdin writer. Used for assistant
   CLIs that read a prompt from stdin and block until EOF.

Exit is detected from the process return code, not from the pipes closing. A
background child that inherited stdout keeps the pipe open long after the
process we started has exited, so readers are joined with a bound instead.

Shutdown rules:
- timeout: kill the process, cancel the I/O tasks, wait up to
  KILL_GRACE_SECONDS for the kill to land, raise ProcessTimeoutError
- normal exit: join the writer for STDIN_JOIN_SECONDS and each reader for
  READER_JOIN_SECONDS; a task still running after its bound is cancelled and
  abandoned so it can never stall the caller
- cancellation from the host, or any other error: kill first, then re-raise

Background tasks use the create_task/cancel pattern rather than a TaskGroup
because unfinished readers must be abandoned, not awaited.
"""

import asyncio
import logging
import os
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .exceptions import ProcessTimeoutError

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 5.0
READER_JOIN_SECONDS = 5.0
STDIN_JOIN_SECONDS = 1.0

# How often a running process is checked for exit
EXIT_POLL_SECONDS = 0.05

# Streams are read in chunks and split into lines here, so a single line may
# be arbitrarily long
READ_CHUNK_SIZE = 64 * 1024

LineCallback = Callable[[str], None]


@dataclass(frozen=True)
class ProcessResult:
    """Exit status and captured output of a finished process."""

    exit_code: int
    stdout: str
    stderr: str = ""
    stdout_lines: tuple[str, ...] = ()


def shell_argv(command: str) -> list[str]:
    """Platform shell invocation so pipes and redirects in the command work."""
    if sys.platform == "win32":
        return ["cmd.exe", "/c", command]
    return ["sh", "-c", command]


def build_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Inherit the current environment, overlaid with extra variables."""
    env = dict(os.environ)
    if extra:
        env.update(extra)
    return env


def _emit(raw: bytes, sink: list[str], on_line: LineCallback | None) -> None:
    line = raw.decode("utf-8", errors="replace").rstrip("\r")
    sink.append(line)
    if on_line is not None:
        on_line(line)


async def _pump(
    stream: asyncio.StreamReader | None, sink: list[str], on_line: LineCallback | None
) -> None:
    """Read a stream until EOF, delivering each complete line."""
    if stream is None:
        return
    pending = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        pending.extend(chunk)
        end = pending.rfind(b"\n")
        if end < 0:
            continue
        for raw in bytes(pending[:end]).split(b"\n"):
            _emit(raw, sink, on_line)
        del pending[: end + 1]
    if pending:
        _emit(bytes(pending), sink, on_line)


async def _feed(stdin: asyncio.StreamWriter | None, text: str) -> None:
    """Write text to stdin, flush, then close it exactly once to signal EOF."""
    if stdin is None:
        return
    try:
        stdin.write(text.encode("utf-8"))
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as e:
        logger.warning(f"Process closed stdin before the prompt was fully written: {e}")
    finally:
        stdin.close()


async def _wait_for_exit(process: asyncio.subprocess.Process) -> int:
    """
    Wait until the process itself has exited.

    Process.wait() also waits for every pipe to close, which never happens
    while a background child holds one of them.
    """
    while process.returncode is None:
        await asyncio.sleep(EXIT_POLL_SECONDS)
    return process.returncode


async def kill_process(
    process: asyncio.subprocess.Process, grace_seconds: float = KILL_GRACE_SECONDS
) -> None:
    """Forcibly kill a process and wait a bounded time for it to be reaped."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    try:
        await asyncio.wait_for(_wait_for_exit(process), timeout=grace_seconds)
    except TimeoutError:
        logger.warning(f"Process {process.pid} still running {grace_seconds}s after kill")


async def _abort(process: asyncio.subprocess.Process, tasks: Sequence[asyncio.Task[None]]) -> None:
    """Kill the process, then cancel its I/O tasks."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    for task in tasks:
        task.cancel()
    await kill_process(process)


async def _join(task: asyncio.Task[None], seconds: float, label: str) -> None:
    done, _ = await asyncio.wait({task}, timeout=seconds)
    if not done:
        logger.warning(f"{label} did not finish within {seconds}s, abandoning it")
        task.cancel()
        return
    if not task.cancelled() and task.exception() is not None:
        logger.warning(f"{label} failed: {task.exception()}")


async def run_merged(
    argv: Sequence[str],
    *,
    timeout: float,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    capture_output: bool = True,
    on_line: LineCallback | None = None,
    label: str = "Command",
) -> ProcessResult:
    """
    Run a process with stderr merged into stdout.

    Args:
        argv: Program and arguments
        timeout: Bound on waiting for the process to exit
        cwd: Working directory
        env: Full environment for the child
        capture_output: When False, output goes to the parent's streams
        on_line: Called with each output line as it arrives
        label: Used in the timeout message

    Returns:
        ProcessResult with the output lines (empty when not captured)

    Raises:
        ProcessTimeoutError: After the process has been killed
    """
    pipe = asyncio.subprocess.PIPE if capture_output else None
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=pipe,
        stderr=asyncio.subprocess.STDOUT if capture_output else None,
        cwd=cwd,
        env=dict(env) if env is not None else None,
    )

    lines: list[str] = []
    reader = asyncio.create_task(_pump(process.stdout, lines, on_line))
    try:
        async with asyncio.timeout(timeout):
            exit_code = await _wait_for_exit(process)
    except TimeoutError:
        await _abort(process, (reader,))
        raise ProcessTimeoutError(timeout, " ".join(argv), label=label)
    except BaseException:
        await _abort(process, (reader,))
        raise

    await _join(reader, READER_JOIN_SECONDS, "output reader")
    return ProcessResult(exit_code=exit_code, stdout="\n".join(lines), stdout_lines=tuple(lines))


async def run_with_stdin(
    argv: Sequence[str],
    stdin_text: str,
    *,
    timeout: float,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    on_stdout: LineCallback | None = None,
    on_stderr: LineCallback | None = None,
    label: str = "CLI",
) -> ProcessResult:
    """
    Run a process that reads its input from stdin, capturing both streams.

    Returns:
        ProcessResult with stdout and stderr captured independently

    Raises:
        ProcessTimeoutError: After the process has been killed
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=dict(env) if env is not None else None,
    )
    logger.debug(f"Started {label} process {process.pid}: {' '.join(argv)}")

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    stdout_task = asyncio.create_task(_pump(process.stdout, stdout_lines, on_stdout))
    stderr_task = asyncio.create_task(_pump(process.stderr, stderr_lines, on_stderr))
    stdin_task = asyncio.create_task(_feed(process.stdin, stdin_text))
    tasks = (stdout_task, stderr_task, stdin_task)

    try:
        async with asyncio.timeout(timeout):
            exit_code = await _wait_for_exit(process)
    except TimeoutError:
        logger.error(f"{label} timed out after {timeout} seconds, killing process {process.pid}")
        await _abort(process, tasks)
        raise ProcessTimeoutError(timeout, " ".join(argv), label=label)
    except BaseException:
        await _abort(process, tasks)
        raise

    await _join(stdin_task, STDIN_JOIN_SECONDS, "stdin writer")
    await _join(stdout_task, READER_JOIN_SECONDS, "stdout reader")
    await _join(stderr_task, READER_JOIN_SECONDS, "stderr reader")

    return ProcessResult(
        exit_code=exit_code,
        stdout="\n".join(stdout_lines),
        stderr="\n".join(stderr_lines),
        stdout_lines=tuple(stdout_lines),
    )
