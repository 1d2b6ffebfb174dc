"""Agent adapters for external coding-agent CLIs.

Agent families are described by an AgentSpec capability table rather than
by subclasses. Each entry says how to start the executable for two jobs:

- execution of a subtask (``exec_args``), run according to ``mode``:
    interactive: inside a pty, prompt typed in, permission prompts mediated
    argument: prompt passed as an argument, output piped
    prompt_file: path of an instruction file passed as an argument
- plan generation (``generate_args``), always piped, with the prompt on
  stdin when ``generate_via_stdin`` is set

Argument templates may contain ``{prompt}`` and ``{prompt_file}``.

AgentAdapter.execute() never raises for agent trouble: a missing binary, a
crash or a timeout hands the subtask to the local fallback strategy, and
every outcome leaves a result file with YAML front matter. Only RunCancelled
propagates.
"""

import asyncio
import logging
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import yaml

from algaib.cancellation import CancellationToken
from algaib.config import AlgaibConfig
from algaib.errors import AgentInvocationError, AlgaibError, RunCancelled
from algaib.fallback import FallbackRequest, LocalFallback
from algaib.models import AgentResult
from algaib.process import OutputSink, agent_env, run_piped
from algaib.session import AgentSession, PermissionMediator

logger = logging.getLogger(__name__)

AgentMode = Literal["interactive", "argument", "prompt_file"]

_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class AgentSpec:
    """How to invoke one agent family.

    Attributes:
        name: Registry key, also recorded as the result's agent
        executable: Program name resolved on the augmented PATH
        mode: How subtasks are executed
        exec_args: Arguments for subtask execution
        generate_args: Arguments for plan generation
        generate_via_stdin: Pipe the generation prompt on stdin
    """

    name: str
    executable: str
    mode: AgentMode = "argument"
    exec_args: tuple[str, ...] = ("{prompt}",)
    generate_args: tuple[str, ...] = ("{prompt}",)
    generate_via_stdin: bool = False

    def exec_argv(self, prompt: str = "", prompt_file: str = "") -> list[str]:
        return [self.executable, *_fill(self.exec_args, prompt, prompt_file)]

    def generate_argv(self, prompt: str = "") -> list[str]:
        return [self.executable, *_fill(self.generate_args, prompt, "")]


def _fill(args: tuple[str, ...], prompt: str, prompt_file: str) -> list[str]:
    # str.replace rather than format(): prompts contain braces
    return [a.replace("{prompt_file}", prompt_file).replace("{prompt}", prompt) for a in args]


DEFAULT_AGENT_SPECS: tuple[AgentSpec, ...] = (
    AgentSpec(
        name="claude",
        executable="claude",
        mode="interactive",
        exec_args=("-p", "-"),
        # Piped runs have no mediation, so the native permission gate stays on
        generate_args=("-p", "-"),
        generate_via_stdin=True,
    ),
    AgentSpec(
        name="gemini",
        executable="gemini",
        exec_args=("-p", "{prompt}"),
        generate_args=("-p", "{prompt}"),
    ),
    AgentSpec(
        name="codex",
        executable="codex",
        exec_args=("-q", "{prompt}"),
        generate_args=("-q", "{prompt}"),
    ),
)


@dataclass
class ExecutionRequest:
    """Everything an adapter needs to execute one subtask.

    ``output_file`` is absolute; the orchestrator resolves it against the
    workspace root. Context files are passed to the agent as written.
    """

    subtask_id: str
    description: str
    output_file: Path
    workspace_root: Path
    context_files: list[str] = field(default_factory=list)
    on_output: OutputSink | None = None
    on_permission_request: PermissionMediator | None = None
    token: CancellationToken = field(default_factory=CancellationToken)


def write_result_file(
    path: Path,
    body: str,
    *,
    agent: str,
    subtask_id: str,
    status: str,
    tokens_used: int = 0,
    fallback: bool = False,
) -> None:
    """Write a markdown result file with YAML front matter."""
    front_matter = yaml.safe_dump(
        {
            "agent": agent,
            "subtask_id": subtask_id,
            "status": status,
            "tokens_used": tokens_used,
            "fallback": fallback,
        },
        sort_keys=False,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"---\n{front_matter}---\n\n{body.rstrip()}\n", encoding="utf-8")


def read_front_matter(path: Path) -> dict:
    """Parse the YAML front matter of a result file ({} when absent)."""
    text = path.read_text(encoding="utf-8", errors="replace")
    if not text.startswith("---"):
        return {}
    _, _, rest = text.partition("\n")
    header, sep, _ = rest.partition("\n---")
    if not sep:
        return {}
    data = yaml.safe_load(header)
    return data if isinstance(data, dict) else {}


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None


class AgentAdapter:
    """Runs subtasks and planning prompts against one agent family.

    Usage:
        adapter = AgentAdapter(spec, config)
        result = await adapter.execute(request)
        text = await adapter.generate(prompt, cwd, token=token)

    Attributes:
        spec: The agent family's capability entry
        config: Timeouts and executable search paths
        fallback: Local strategy used when the agent cannot run
    """

    def __init__(
        self,
        spec: AgentSpec,
        config: AlgaibConfig | None = None,
        fallback: LocalFallback | None = None,
    ) -> None:
        self.spec = spec
        self.config = config or AlgaibConfig()
        self.fallback = fallback or LocalFallback(extra_paths=self.config.extra_search_paths)

    @property
    def name(self) -> str:
        return self.spec.name

    def build_prompt(self, request: ExecutionRequest) -> str:
        context = "\n".join(f"- {f}" for f in request.context_files) or "- (none)"
        return (
            f"# Task for {self.name}\n\n"
            f"## Context Files\n{context}\n\n"
            f"## Instruction\n{request.description}\n\n"
            f"## Output Requirement\n"
            f"Save your response to: {request.output_file}\n"
            f"Format as Markdown with Frontmatter.\n"
        )

    async def execute(self, request: ExecutionRequest) -> AgentResult:
        """Execute a subtask, falling back to local actions on agent failure.

        Returns:
            AgentResult; status is ``failure`` only when the fallback failed too

        Raises:
            RunCancelled: If the request's token trips
        """
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        prompt = self.build_prompt(request)
        instruction_file = self._write_instruction_file(request.subtask_id, prompt)
        try:
            try:
                previous_mtime = _mtime(request.output_file)
                output = await self._invoke(request, prompt, instruction_file)
                content = await self._collect_output(request, output, previous_mtime)
                return AgentResult(
                    subtask_id=request.subtask_id,
                    agent=self.name,
                    status="success",
                    output_file=str(request.output_file),
                    tokens_used=len(content) // 4,
                    execution_time_ms=elapsed_ms(),
                )
            except RunCancelled:
                raise
            except (AgentInvocationError, OSError) as e:
                logger.warning(f"[{self.name}] Agent failed, attempting local fallback: {e}")
                if request.on_output is not None:
                    request.on_output(f"[{self.name}] CLI failed: {e}. Attempting local fallback...\n")

            return await self._run_fallback(request, elapsed_ms)
        finally:
            instruction_file.unlink(missing_ok=True)

    async def generate(
        self,
        prompt: str,
        cwd: Path,
        on_output: OutputSink | None = None,
        token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run a one-shot, non-interactive generation and return stdout.

        Raises:
            AgentInvocationError: If the agent is missing, fails or times out
            RunCancelled: If the token trips
        """
        env = agent_env(self.config.extra_search_paths)
        if self.spec.generate_via_stdin:
            argv = self.spec.generate_argv()
            stdin_text: str | None = prompt
        else:
            argv = self.spec.generate_argv(prompt)
            stdin_text = None
        return await run_piped(
            argv,
            cwd=cwd,
            env=env,
            stdin_text=stdin_text,
            on_output=on_output,
            token=token,
            timeout=timeout,
        )

    async def _invoke(self, request: ExecutionRequest, prompt: str, instruction_file: Path) -> str:
        env = agent_env(self.config.extra_search_paths)
        timeout = self.config.task_timeout_seconds

        if self.spec.mode == "interactive":
            session = AgentSession(
                self.spec.exec_argv(prompt, str(instruction_file)),
                cwd=request.workspace_root,
                env=env,
                on_output=request.on_output,
                on_permission_request=request.on_permission_request,
                token=request.token,
                timeout=timeout,
            )
            return await session.run(prompt)

        if self.spec.mode == "prompt_file":
            argv = self.spec.exec_argv("", str(instruction_file))
        else:
            argv = self.spec.exec_argv(prompt, str(instruction_file))
        return await run_piped(
            argv,
            cwd=request.workspace_root,
            env=env,
            on_output=request.on_output,
            token=request.token,
            timeout=timeout,
        )

    async def _collect_output(
        self, request: ExecutionRequest, output: str, previous_mtime: float | None
    ) -> str:
        """Return the output file's content, writing captured output if the agent didn't."""
        path = request.output_file
        deadline = time.monotonic() + self.config.output_wait_seconds
        while True:
            current = _mtime(path)
            if current is not None and current != previous_mtime:
                # Agents are free to write any encoding
                content = path.read_text(encoding="utf-8", errors="replace")
                if content.strip():
                    logger.info(f"[{self.name}] Agent wrote {path}")
                    return content
            if time.monotonic() >= deadline:
                break
            await request.token.guard(asyncio.sleep(_POLL_INTERVAL))

        body = output.strip() or "(no output)"
        write_result_file(
            path,
            body,
            agent=self.name,
            subtask_id=request.subtask_id,
            status="success",
            tokens_used=len(body) // 4,
        )
        logger.info(f"[{self.name}] Wrote captured output to {path}")
        return path.read_text(encoding="utf-8")

    async def _run_fallback(self, request: ExecutionRequest, elapsed_ms) -> AgentResult:
        fallback_request = FallbackRequest(
            description=request.description,
            workspace_root=request.workspace_root,
            on_output=request.on_output,
            token=request.token,
        )
        try:
            action, log_line = await self.fallback.run(fallback_request)
        except RunCancelled:
            raise
        except (AlgaibError, OSError, LookupError) as e:
            logger.error(f"[{self.name}] Local fallback failed: {e}")
            write_result_file(
                request.output_file,
                f"# Execution Result\n\n**Status**: Failure\n**Error**: {e}\n",
                agent=self.name,
                subtask_id=request.subtask_id,
                status="failure",
                fallback=True,
            )
            return AgentResult(
                subtask_id=request.subtask_id,
                agent=self.name,
                status="failure",
                output_file=str(request.output_file),
                tokens_used=0,
                execution_time_ms=elapsed_ms(),
                error=str(e),
                fallback=True,
            )

        write_result_file(
            request.output_file,
            "# Execution Result\n\n"
            "**Status**: Success\n"
            f"**Action**: Local Execution Strategy ({action})\n"
            f"**Log**: {log_line}\n",
            agent=self.name,
            subtask_id=request.subtask_id,
            status="success",
            fallback=True,
        )
        return AgentResult(
            subtask_id=request.subtask_id,
            agent=self.name,
            status="success",
            output_file=str(request.output_file),
            tokens_used=0,
            execution_time_ms=elapsed_ms(),
            fallback=True,
        )

    def _write_instruction_file(self, subtask_id: str, prompt: str) -> Path:
        path = Path(tempfile.gettempdir()) / f"algaib-instruction-{subtask_id}.md"
        path.write_text(prompt, encoding="utf-8")
        return path


class AgentRegistry:
    """Adapters by agent name.

    Usage:
        registry = AgentRegistry(config)
        registry.register(AgentSpec("aider", "aider", exec_args=("--message", "{prompt}")))
        adapter = registry.get("aider")
    """

    def __init__(
        self,
        config: AlgaibConfig | None = None,
        specs: tuple[AgentSpec, ...] | list[AgentSpec] = DEFAULT_AGENT_SPECS,
        fallback: LocalFallback | None = None,
    ) -> None:
        self.config = config or AlgaibConfig()
        self.fallback = fallback
        self._adapters: dict[str, AgentAdapter] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: AgentSpec) -> AgentAdapter:
        """Add (or replace) an agent family and return its adapter."""
        adapter = AgentAdapter(spec, self.config, self.fallback)
        self._adapters[spec.name] = adapter
        return adapter

    def get(self, name: str) -> AgentAdapter | None:
        return self._adapters.get(name)

    def names(self) -> list[str]:
        return list(self._adapters)
