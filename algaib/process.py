"""Process helpers for invoking agent executables.

Resolves executables against an augmented search path and runs agents that
do not need a terminal (prompt passed as an argument or piped on stdin),
streaming their output to a caller-supplied sink.
"""

import asyncio
import codecs
import logging
import os
import shutil
import signal
from pathlib import Path
from typing import Callable

from algaib.cancellation import CancellationToken
from algaib.errors import (
    AgentInvocationError,
    AgentNotFoundError,
    AgentProcessError,
    AgentTimeoutError,
    RunCancelled,
)

logger = logging.getLogger(__name__)
command_logger = logging.getLogger("algaib.commands")

OutputSink = Callable[[str], None]

# Common installation locations not always on a caller's PATH
_COMMON_BIN_DIRS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "~/.local/bin",
    "~/.claude/local",
    "~/.claude/bin",
)

_READ_SIZE = 4096


def augmented_path(extra: list[str] | None = None, base: str | None = None) -> str:
    """Return a PATH string with common agent install locations appended.

    Args:
        extra: Additional directories appended after the common ones
        base: Starting PATH (default: the current process PATH)
    """
    base = os.environ.get("PATH", "") if base is None else base
    parts = [p for p in base.split(os.pathsep) if p]
    for directory in [*_COMMON_BIN_DIRS, *(extra or [])]:
        expanded = str(Path(directory).expanduser())
        if expanded not in parts:
            parts.append(expanded)
    return os.pathsep.join(parts)


def agent_env(extra_paths: list[str] | None = None, **overrides: str) -> dict[str, str]:
    """Environment for an agent child process."""
    env = dict(os.environ)
    env["PATH"] = augmented_path(extra_paths)
    env.update(overrides)
    return env


def resolve_executable(executable: str, env: dict[str, str]) -> str:
    """Find ``executable`` on the environment's PATH.

    Raises:
        AgentNotFoundError: If it cannot be found
    """
    found = shutil.which(executable, path=env.get("PATH"))
    if found is None:
        raise AgentNotFoundError(executable)
    return found


def log_command(argv: list[str], cwd: Path | str) -> None:
    """Record a spawned command line, truncating long arguments."""
    shown = " ".join(a if len(a) <= 200 else a[:200] + "…" for a in argv)
    command_logger.info(f"cwd={cwd} cmd={shown}")


async def run_piped(
    argv: list[str],
    cwd: Path,
    env: dict[str, str],
    stdin_text: str | None = None,
    on_output: OutputSink | None = None,
    token: CancellationToken | None = None,
    timeout: float | None = None,
) -> str:
    """Run a non-interactive agent and stream its stdout.

    Args:
        argv: Command line; argv[0] is resolved against env["PATH"]
        cwd: Working directory
        env: Child environment
        stdin_text: Text written to stdin before closing it (None: no stdin)
        on_output: Sink receiving each decoded stdout chunk
        token: Cancellation token; tripping it kills the child
        timeout: Seconds to wait for exit before killing the child

    Returns:
        Accumulated stdout

    Raises:
        AgentNotFoundError: If the executable cannot be resolved
        AgentInvocationError: If the process cannot be spawned
        AgentProcessError: On non-zero exit (message includes stderr)
        AgentTimeoutError: If the deadline passes
        RunCancelled: If the token trips
    """
    token = token or CancellationToken()
    token.raise_if_cancelled()

    executable = resolve_executable(argv[0], env)
    log_command(argv, cwd)

    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            *argv[1:],
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        raise AgentInvocationError(f"Failed to start {argv[0]}: {e}") from e

    logger.info(f"Started {argv[0]} (PID {process.pid})")
    stdout_parts: list[str] = []
    stderr_parts: list[str] = []

    async def _pump(stream: asyncio.StreamReader, parts: list[str], sink: OutputSink | None) -> None:
        # Multi-byte characters may straddle reads
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                parts.append(text)
                if sink is not None:
                    sink(text)
            if not data:
                break

    async def _communicate() -> int:
        if stdin_text is not None and process.stdin is not None:
            process.stdin.write(stdin_text.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()
        assert process.stdout is not None and process.stderr is not None
        await asyncio.gather(
            _pump(process.stdout, stdout_parts, on_output),
            _pump(process.stderr, stderr_parts, None),
        )
        return await process.wait()

    try:
        exit_code = await token.guard(_communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        await _terminate(process)
        raise AgentTimeoutError(
            f"{argv[0]} did not finish within {timeout}s"
        ) from e
    except RunCancelled:
        await _terminate(process)
        raise
    except BaseException:
        _kill(process)
        raise

    stdout = "".join(stdout_parts)
    if exit_code != 0:
        raise AgentProcessError(exit_code, "".join(stderr_parts) or stdout)
    return stdout


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill the child and reap it, giving up after a short grace period."""
    _kill(process)
    try:
        await asyncio.wait_for(process.wait(), timeout=5)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} did not exit after SIGKILL")
