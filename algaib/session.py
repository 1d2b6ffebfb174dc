"""Pseudo-terminal sessions for interactive coding agents.

An AgentSession runs one agent process inside a pty so that the agent's
permission prompts show up as ordinary output instead of being suppressed
by non-interactive flags. Output chunks are streamed to a sink and scanned
for prompts; a detected prompt is handed to a mediator and the decision is
typed back into the terminal as ``y`` or ``n``.

A session is single use: one process, one prompt, one result.
"""

import asyncio
import codecs
import contextlib
import fcntl
import inspect
import logging
import os
import pty
import re
import signal
import struct
import termios
from pathlib import Path
from typing import Awaitable, Callable, Union

from algaib.cancellation import CancellationToken
from algaib.errors import (
    AgentInvocationError,
    AgentProcessError,
    AgentTimeoutError,
    AlgaibError,
    RunCancelled,
)
from algaib.models import PermissionRequest
from algaib.permissions import PermissionScanner
from algaib.process import OutputSink, agent_env, log_command, resolve_executable

logger = logging.getLogger(__name__)

PermissionMediator = Callable[[PermissionRequest], Union[Awaitable[bool], bool]]

# CSI sequences, OSC sequences (BEL or ST terminated), and two-byte escapes
ANSI_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]"
)

EOF_CHAR = "\x04"
ALLOW_LINE = "y\n"
DENY_LINE = "n\n"

# Canonical-mode terminals drop input past MAX_CANON (4096 bytes on Linux)
_MAX_LINE_CHARS = 1000
_READ_SIZE = 4096
_DRAIN_SECONDS = 2.0
# Unmatched output kept so a prompt split across reads is still detected
_SCAN_TAIL_CHARS = 1000


def strip_ansi(text: str) -> str:
    """Remove terminal control sequences and carriage returns."""
    return ANSI_PATTERN.sub("", text).replace("\r\n", "\n")


def _wrap_long_lines(text: str, limit: int = _MAX_LINE_CHARS) -> str:
    """Split lines longer than ``limit`` at whitespace where possible."""
    lines = []
    for line in text.split("\n"):
        while len(line) > limit:
            cut = line.rfind(" ", 0, limit)
            if cut <= 0:
                cut = limit
            lines.append(line[:cut])
            line = line[cut:].lstrip(" ")
        lines.append(line)
    return "\n".join(lines)


def _configure_terminal(fd: int, rows: int, cols: int) -> None:
    """Disable echo and newline translation, and set the window size."""
    attrs = termios.tcgetattr(fd)
    attrs[1] &= ~termios.ONLCR
    attrs[3] &= ~termios.ECHO
    termios.tcsetattr(fd, termios.TCSANOW, attrs)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


class AgentSession:
    """One agent process running in a pseudo-terminal.

    The permission mailbox holds at most one outstanding request. Prompts
    detected while it is occupied are ignored until respond() clears it.

    Usage:
        session = AgentSession(["claude", "-p", "-"], cwd, on_output=print,
                               on_permission_request=ask_user, token=token)
        output = await session.run(prompt)

    Attributes:
        argv: Command line; argv[0] is resolved against the env's PATH
        cwd: Working directory of the agent
        timeout: Seconds to wait for the process to exit (None: no limit)
    """

    def __init__(
        self,
        argv: list[str],
        cwd: Path | str,
        env: dict[str, str] | None = None,
        on_output: OutputSink | None = None,
        on_permission_request: PermissionMediator | None = None,
        token: CancellationToken | None = None,
        scanner: PermissionScanner | None = None,
        timeout: float | None = None,
        rows: int = 30,
        cols: int = 120,
    ) -> None:
        self.argv = list(argv)
        self.cwd = Path(cwd)
        self.env = dict(env) if env is not None else agent_env()
        self.env.setdefault("TERM", "xterm-256color")
        self.on_output = on_output
        self.on_permission_request = on_permission_request
        self.token = token or CancellationToken()
        self.scanner = scanner or PermissionScanner()
        self.timeout = timeout
        self.rows = rows
        self.cols = cols

        self._process: asyncio.subprocess.Process | None = None
        self._master_fd: int | None = None
        self._reading = False
        self._eof = asyncio.Event()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._chunks: list[str] = []
        self._scan_tail = ""
        self._pending: PermissionRequest | None = None
        self._mediation: asyncio.Future | None = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pending_request(self) -> PermissionRequest | None:
        return self._pending

    @property
    def output(self) -> str:
        """Output received so far, control sequences removed."""
        return strip_ansi("".join(self._chunks))

    async def run(self, prompt: str) -> str:
        """Start the agent, send the prompt, and wait for it to exit.

        Args:
            prompt: Text written to the agent's input, followed by end-of-input

        Returns:
            Accumulated output with control sequences removed

        Raises:
            AgentNotFoundError: If the executable cannot be resolved
            AgentInvocationError: If the process cannot be spawned
            AgentProcessError: If the process exits non-zero
            AgentTimeoutError: If the process outlives the timeout
            RunCancelled: If the token trips (the process is killed first)
        """
        if self._process is not None:
            raise AlgaibError("AgentSession can only be run once")
        self.token.raise_if_cancelled()

        executable = resolve_executable(self.argv[0], self.env)
        master_fd, slave_fd = pty.openpty()
        try:
            _configure_terminal(slave_fd, self.rows, self.cols)
            log_command(self.argv, self.cwd)
            self._process = await asyncio.create_subprocess_exec(
                executable,
                *self.argv[1:],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(self.cwd),
                env=self.env,
                start_new_session=True,
            )
        except OSError as e:
            os.close(master_fd)
            raise AgentInvocationError(f"Failed to start {self.argv[0]}: {e}") from e
        finally:
            os.close(slave_fd)

        logger.info(f"Started pty process {self.argv[0]} with PID {self._process.pid}")
        self._master_fd = master_fd
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self._reading = True

        try:
            exit_code = await self.token.guard(self._interact(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await self._shutdown()
            raise AgentTimeoutError(
                f"{self.argv[0]} did not finish within {self.timeout}s"
            ) from e
        except RunCancelled:
            logger.info(f"Cancellation requested, killing {self.argv[0]}")
            await self._shutdown()
            raise
        except BaseException:
            self.kill()
            raise
        finally:
            self._close()

        logger.info(f"Pty process exited with code {exit_code}")
        output = self.output
        if exit_code != 0:
            raise AgentProcessError(exit_code, output)
        return output

    async def respond(self, allow: bool, request_id: str | None = None) -> bool:
        """Answer the outstanding permission request.

        Args:
            allow: True types ``y``, False types ``n``
            request_id: If given, must match the outstanding request

        Returns:
            True if a response was written, False if nothing matched
        """
        pending = self._pending
        if pending is None:
            logger.warning("No permission request pending")
            return False
        if request_id is not None and request_id != pending.id:
            logger.warning(
                f"Ignoring response for {request_id}; outstanding request is {pending.id}"
            )
            return False

        logger.info(f"Responding to {pending.id}: {'ALLOW' if allow else 'DENY'}")
        # Free the slot first; the agent may prompt again as soon as it reads the answer
        self._pending = None
        try:
            await self._write(ALLOW_LINE if allow else DENY_LINE)
        except OSError as e:
            logger.warning(f"Could not deliver permission response: {e}")
            return False
        return True

    def kill(self) -> None:
        """Forcefully terminate the agent's process group. Safe to repeat."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        logger.info(f"Killing pty process {process.pid}")
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            with contextlib.suppress(ProcessLookupError):
                process.kill()

    async def _interact(self, prompt: str) -> int:
        text = _wrap_long_lines(prompt)
        if not text.endswith("\n"):
            text += "\n"
        await self._write(text + EOF_CHAR)
        assert self._process is not None
        exit_code = await self._process.wait()

        # Output still buffered in the terminal is readable until EOF
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._eof.wait(), timeout=_DRAIN_SECONDS)
        return exit_code

    async def _write(self, data: str) -> None:
        fd = self._master_fd
        if fd is None:
            raise AgentInvocationError("Session is not running")
        await asyncio.to_thread(_write_all, fd, data.encode("utf-8"))

    def _on_readable(self) -> None:
        assert self._master_fd is not None
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except OSError:
            # EIO once every slave descriptor has been closed
            data = b""

        if not data:
            self._stop_reading()
            self._eof.set()
            return

        text = self._decoder.decode(data)
        if text:
            self._handle_output(text)

    def _handle_output(self, text: str) -> None:
        self._chunks.append(text)
        if self.on_output is not None:
            self.on_output(text)
        logger.debug(f"[pty] {text[:200]!r}")

        window = self._scan_tail + text
        request = self.scanner.scan(strip_ansi(window))
        if request is None:
            self._scan_tail = window[-_SCAN_TAIL_CHARS:]
            return
        # A matched prompt is consumed whether or not it is mediated
        self._scan_tail = ""
        if self._pending is not None:
            logger.debug(f"Prompt ignored while {self._pending.id} is outstanding")
            return

        self._pending = request
        logger.info(f"Permission request detected: {request.type} ({request.description})")
        self._mediation = asyncio.ensure_future(self._mediate(request))

    async def _mediate(self, request: PermissionRequest) -> None:
        if self.on_permission_request is None:
            logger.info("Auto-allowing (no permission callback)")
            allow = True
        else:
            try:
                decision = self.on_permission_request(request)
                if inspect.isawaitable(decision):
                    decision = await decision
                allow = bool(decision)
            except Exception as e:
                logger.error(f"Permission callback failed, denying {request.id}: {e}")
                allow = False
        await self.respond(allow, request.id)

    def _stop_reading(self) -> None:
        if self._reading and self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self._reading = False

    async def _shutdown(self) -> None:
        self.kill()
        if self._process is None:
            return
        try:
            await asyncio.wait_for(self._process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"Process {self._process.pid} did not exit after SIGKILL")

    def _close(self) -> None:
        if self._mediation is not None and not self._mediation.done():
            self._mediation.cancel()
        self._stop_reading()
        if self._master_fd is not None:
            os.close(self._master_fd)
            self._master_fd = None
        self._pending = None
