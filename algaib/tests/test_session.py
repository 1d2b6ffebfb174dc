"""Tests for pty-backed agent sessions.

The agents here are small Python scripts run with the current interpreter.
They read the prompt until end-of-input, like ``claude -p -`` does, and
then talk to the session through the terminal.
"""

import asyncio
import sys
import textwrap
from pathlib import Path

import pytest

from algaib.cancellation import CancellationToken
from algaib.errors import (
    AgentNotFoundError,
    AgentProcessError,
    AgentTimeoutError,
    AlgaibError,
    RunCancelled,
)
from algaib.session import AgentSession, strip_ansi

READ_PROMPT = """
import os, sys

def read_prompt():
    data = b""
    while True:
        chunk = os.read(0, 4096)
        if not chunk:
            return data.decode()
        data += chunk

def read_answer():
    return os.read(0, 1024).decode().strip()
"""


def write_agent(tmp_path: Path, body: str) -> list[str]:
    script = tmp_path / "agent.py"
    script.write_text(READ_PROMPT + textwrap.dedent(body))
    return [sys.executable, str(script)]


class TestStripAnsi:
    def test_removes_color_and_osc_sequences(self):
        text = "\x1b[31mred\x1b[0m \x1b]0;title\x07done\r\n"
        assert strip_ansi(text) == "red done\n"


class TestAgentSessionRun:
    @pytest.mark.asyncio
    async def test_returns_output_and_streams_chunks(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            prompt = read_prompt()
            print("\\x1b[32mreceived\\x1b[0m " + prompt.strip(), flush=True)
            """,
        )
        chunks: list[str] = []
        session = AgentSession(argv, tmp_path, on_output=chunks.append)

        output = await session.run("hello agent")

        assert "received hello agent" in output
        assert "\x1b[" not in output
        assert "received" in "".join(chunks)
        assert session.is_running is False

    @pytest.mark.asyncio
    async def test_long_prompt_lines_arrive_intact(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            prompt = read_prompt()
            print("WORDS=%d" % len(prompt.split()), flush=True)
            """,
        )
        prompt = " ".join(["word"] * 3000)

        output = await AgentSession(argv, tmp_path).run(prompt)

        assert "WORDS=3000" in output

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            read_prompt()
            print("something broke", flush=True)
            sys.exit(3)
            """,
        )

        with pytest.raises(AgentProcessError) as exc_info:
            await AgentSession(argv, tmp_path).run("go")

        assert exc_info.value.exit_code == 3
        assert "something broke" in exc_info.value.output

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path):
        session = AgentSession(["definitely-not-an-agent-binary"], tmp_path)

        with pytest.raises(AgentNotFoundError):
            await session.run("go")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            read_prompt()
            import time
            time.sleep(30)
            """,
        )
        session = AgentSession(argv, tmp_path, timeout=0.5)

        with pytest.raises(AgentTimeoutError):
            await asyncio.wait_for(session.run("go"), timeout=10)
        assert session.is_running is False

    @pytest.mark.asyncio
    async def test_session_is_single_use(self, tmp_path: Path):
        argv = write_agent(tmp_path, "read_prompt()\n")
        session = AgentSession(argv, tmp_path)
        await session.run("go")

        with pytest.raises(AlgaibError):
            await session.run("again")


class TestPermissionMediation:
    @pytest.mark.asyncio
    async def test_auto_allows_without_mediator(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            read_prompt()
            print('Do you want to write to "out.txt"? [y/n]', flush=True)
            print("ANSWER=" + read_answer(), flush=True)
            """,
        )

        output = await asyncio.wait_for(AgentSession(argv, tmp_path).run("go"), timeout=10)

        assert "ANSWER=y" in output

    @pytest.mark.asyncio
    async def test_deny_writes_n_and_frees_mailbox(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            read_prompt()
            print('Do you want to edit "main.go"?', flush=True)
            print("FIRST=" + read_answer(), flush=True)
            print('Do you want to run "make test"?', flush=True)
            print("SECOND=" + read_answer(), flush=True)
            """,
        )
        seen = []

        async def mediator(request):
            seen.append((request.type, request.description))
            return len(seen) > 1

        session = AgentSession(argv, tmp_path, on_permission_request=mediator)
        output = await asyncio.wait_for(session.run("go"), timeout=10)

        assert "FIRST=n" in output
        assert "SECOND=y" in output
        assert seen == [("file_edit", "main.go"), ("bash", "make test")]
        assert session.pending_request is None

    @pytest.mark.asyncio
    async def test_prompt_split_across_reads(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            import time
            read_prompt()
            sys.stdout.write("Do you want to ed")
            sys.stdout.flush()
            time.sleep(0.3)
            print('it "main.go"?', flush=True)
            print("ANSWER=" + read_answer(), flush=True)
            """,
        )
        seen = []

        def mediator(request):
            seen.append((request.type, request.description))
            return False

        session = AgentSession(argv, tmp_path, on_permission_request=mediator)
        output = await asyncio.wait_for(session.run("go"), timeout=10)

        assert "ANSWER=n" in output
        assert seen == [("file_edit", "main.go")]

    @pytest.mark.asyncio
    async def test_sync_mediator_supported(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            read_prompt()
            print("Allow this action?", flush=True)
            print("ANSWER=" + read_answer(), flush=True)
            """,
        )

        session = AgentSession(argv, tmp_path, on_permission_request=lambda request: False)
        output = await asyncio.wait_for(session.run("go"), timeout=10)

        assert "ANSWER=n" in output

    @pytest.mark.asyncio
    async def test_failing_mediator_denies(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            read_prompt()
            print("Continue? (y/n)", flush=True)
            print("ANSWER=" + read_answer(), flush=True)
            """,
        )

        def mediator(request):
            raise RuntimeError("UI went away")

        session = AgentSession(argv, tmp_path, on_permission_request=mediator)
        output = await asyncio.wait_for(session.run("go"), timeout=10)

        assert "ANSWER=n" in output

    @pytest.mark.asyncio
    async def test_respond_without_pending_request(self, tmp_path: Path):
        session = AgentSession(["true"], tmp_path)

        assert await session.respond(True) is False


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_kills_process(self, tmp_path: Path):
        argv = write_agent(
            tmp_path,
            """
            read_prompt()
            print("working", flush=True)
            import time
            time.sleep(30)
            """,
        )
        token = CancellationToken()

        def on_output(text: str) -> None:
            if "working" in text:
                token.cancel("user pressed stop")

        session = AgentSession(argv, tmp_path, on_output=on_output, token=token)

        with pytest.raises(RunCancelled):
            await asyncio.wait_for(session.run("go"), timeout=10)
        assert session.is_running is False

        session.kill()  # repeated kill is harmless

    @pytest.mark.asyncio
    async def test_cancelled_token_prevents_start(self, tmp_path: Path):
        token = CancellationToken()
        token.cancel()
        session = AgentSession([sys.executable, "-c", "pass"], tmp_path, token=token)

        with pytest.raises(RunCancelled):
            await session.run("go")
        assert session.is_running is False
