"""Run state machine: plan a task, persist the plan, execute its subtasks.

Subtasks run strictly in order. The plan record is written after every
status change and before the caller hears about it, so a crash or Ctrl-C
always leaves a record that execute_plan() can resume:

- ``completed`` subtasks are skipped
- a subtask left ``running`` by an interrupted run is executed again
- a ``failed`` subtask ends the run as failed (statuses never move back)

The first failure stops the run. Cancellation is not a failure: the
in-flight subtask stays ``running`` and the run ends ``cancelled``.
"""

import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Literal, Union

from opentelemetry import trace

from algaib import telemetry
from algaib.agents import AgentRegistry, ExecutionRequest
from algaib.cancellation import CancellationToken
from algaib.config import AlgaibConfig
from algaib.errors import RunCancelled
from algaib.lock import PlanLock
from algaib.models import AgentResult, PermissionRequest, Plan, Subtask, Task, TaskPriority
from algaib.planner import Planner
from algaib.result_log import log_agent_result
from algaib.store import PlanRecordStore

logger = logging.getLogger(__name__)

RunStatus = Literal["idle", "planning", "executing", "completed", "failed", "cancelled"]


@dataclass
class RunOptions:
    """Per-run choices. None falls back to the configured default."""

    planner_agent: str | None = None
    executor_agent: str | None = None
    skills: str | None = None
    yolo_mode: bool | None = None
    priority: TaskPriority = "medium"
    context_files: list[str] = field(default_factory=list)


@dataclass
class RunCallbacks:
    """Push-style progress notifications. Every callback is optional.

    on_permission_request may return a bool or an awaitable of one; True
    allows the action. Without it (and outside yolo mode) requests are
    allowed.
    """

    on_log: Callable[[str], None] | None = None
    on_plan_created: Callable[[Plan], None] | None = None
    on_planner_output: Callable[[str], None] | None = None
    on_subtask_output: Callable[[Subtask, str], None] | None = None
    on_subtask_start: Callable[[Subtask], None] | None = None
    on_subtask_complete: Callable[[Subtask, AgentResult], None] | None = None
    on_subtask_fail: Callable[[Subtask, AgentResult | None, str], None] | None = None
    on_permission_request: (
        Callable[[PermissionRequest], Union[bool, Awaitable[bool]]] | None
    ) = None


@dataclass
class RunResult:
    """Outcome of a run."""

    status: RunStatus
    task: Task | None = None
    plan: Plan | None = None
    results: list[AgentResult] = field(default_factory=list)
    plan_path: Path | None = None
    error: str | None = None


class Orchestrator:
    """Plans and executes tasks with external coding agents.

    One run at a time per instance. cancel() trips the current run's token,
    which every suspension point below observes.

    Usage:
        orchestrator = Orchestrator(AlgaibConfig.from_env())
        result = await orchestrator.run_full_flow("Add a health endpoint")
        # later, after an interruption
        result = await orchestrator.execute_plan(result.plan.id)

    Attributes:
        config: Workspace layout, default agents, timeouts
        registry: Agent adapters by name
        store: Plan record persistence
        planner: Plan creation
    """

    def __init__(
        self,
        config: AlgaibConfig | None = None,
        registry: AgentRegistry | None = None,
        store: PlanRecordStore | None = None,
        planner: Planner | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.config = config or AlgaibConfig()
        self.registry = registry or AgentRegistry(self.config)
        assert self.config.plan_dir is not None
        self.store = store or PlanRecordStore(self.config.plan_dir, self.config.workspace_root)
        self.planner = planner or Planner(self.registry, self.config)
        self.tracer = tracer or trace.get_tracer(self.config.service_name)
        self._status: RunStatus = "idle"
        self._token: CancellationToken | None = None

    @property
    def status(self) -> RunStatus:
        return self._status

    def cancel(self, reason: str = "Cancelled by user") -> None:
        """Cancel the current run. No-op when nothing is running."""
        if self._token is not None:
            logger.info(f"Cancelling run: {reason}")
            self._token.cancel(reason)

    async def run_full_flow(
        self,
        description: str,
        options: RunOptions | None = None,
        callbacks: RunCallbacks | None = None,
    ) -> RunResult:
        """Plan a new task, persist the plan, and execute it."""
        options = options or RunOptions()
        callbacks = callbacks or RunCallbacks()
        token = self._start_run()

        task = Task.create(description, options.priority, options.context_files)
        try:
            plan, plan_path = await self._plan(task, options, callbacks, token)
        except RunCancelled as e:
            self._emit(callbacks, "Planning cancelled")
            return self._finish("cancelled", task=task, error=str(e))

        return await self._execute(plan, task, plan_path, options, callbacks, token)

    async def plan_task(
        self,
        description: str,
        options: RunOptions | None = None,
        callbacks: RunCallbacks | None = None,
    ) -> RunResult:
        """Plan and persist a task without executing it.

        Returns:
            RunResult with status ``completed`` (or ``cancelled``) carrying the
            plan and its record path
        """
        options = options or RunOptions()
        callbacks = callbacks or RunCallbacks()
        token = self._start_run()

        task = Task.create(description, options.priority, options.context_files)
        try:
            plan, plan_path = await self._plan(task, options, callbacks, token)
        except RunCancelled as e:
            return self._finish("cancelled", task=task, error=str(e))
        return self._finish("completed", task=task, plan=plan, plan_path=plan_path)

    async def execute_plan(
        self,
        identifier: str,
        options: RunOptions | None = None,
        callbacks: RunCallbacks | None = None,
    ) -> RunResult:
        """Resume a stored plan by id or path.

        Raises:
            PlanNotFoundError: If the identifier resolves to nothing
            PlanRecordError: If the record cannot be read
            PlanLockedError: If another process is executing the plan
        """
        options = options or RunOptions()
        callbacks = callbacks or RunCallbacks()

        plan, task = self.store.load(identifier)
        plan_path = self.store.resolve(identifier)
        token = self._start_run()
        self._emit(callbacks, f"Resuming plan {plan.id} ({_describe_counts(plan)})")
        return await self._execute(plan, task, plan_path, options, callbacks, token)

    def _start_run(self) -> CancellationToken:
        self._token = CancellationToken()
        self._status = "idle"
        return self._token

    async def _plan(
        self,
        task: Task,
        options: RunOptions,
        callbacks: RunCallbacks,
        token: CancellationToken,
    ) -> tuple[Plan, Path]:
        self._status = "planning"
        self._emit(callbacks, f"Planning: {task.description}")

        with self.tracer.start_as_current_span("algaib.plan") as span:
            span.set_attribute("task.id", task.id)
            plan = await self.planner.create_plan(
                task,
                planner_agent=options.planner_agent,
                executor_agent=options.executor_agent,
                skills=options.skills,
                on_output=callbacks.on_planner_output,
                token=token,
            )
            span.set_attribute("plan.id", plan.id)
            span.set_attribute("plan.subtasks", len(plan.subtasks))

        self.store.ensure_dir()
        plan_path = self.store.persist(plan, task)
        self._emit(callbacks, f"Plan {plan.id} created with {len(plan.subtasks)} subtask(s)")
        if callbacks.on_plan_created is not None:
            callbacks.on_plan_created(plan)
        return plan, plan_path

    async def _execute(
        self,
        plan: Plan,
        task: Task,
        plan_path: Path,
        options: RunOptions,
        callbacks: RunCallbacks,
        token: CancellationToken,
    ) -> RunResult:
        self._status = "executing"
        results: list[AgentResult] = []

        def finish(status: RunStatus, error: str | None = None) -> RunResult:
            return self._finish(
                status, task=task, plan=plan, results=results, plan_path=plan_path, error=error
            )

        with PlanLock(plan_path.parent, plan.id):
            for subtask in plan.subtasks:
                if token.cancelled:
                    return finish("cancelled", token.reason)

                if subtask.status == "completed":
                    self._emit(callbacks, f"Skipping completed subtask: {subtask.title}")
                    continue

                if subtask.status == "failed":
                    error = f"Subtask '{subtask.title}' failed in an earlier run"
                    self._emit(callbacks, error)
                    return finish("failed", error)

                adapter = self.registry.get(subtask.agent)
                if adapter is None:
                    error = f"No adapter for agent '{subtask.agent}'"
                    logger.error(f"Subtask {subtask.id}: no adapter for '{subtask.agent}'")
                    self._mark(subtask, "failed", plan, task, plan_path)
                    if callbacks.on_subtask_fail is not None:
                        callbacks.on_subtask_fail(subtask, None, error)
                    return finish("failed", error)

                if subtask.status == "pending":
                    self._mark(subtask, "running", plan, task, plan_path)
                else:
                    self._emit(callbacks, f"Re-running interrupted subtask: {subtask.title}")
                self._emit(callbacks, f"Starting subtask: {subtask.title} ({subtask.agent})")
                if callbacks.on_subtask_start is not None:
                    callbacks.on_subtask_start(subtask)

                request = ExecutionRequest(
                    subtask_id=subtask.id,
                    description=subtask.description,
                    output_file=self._resolve(subtask.output_file),
                    workspace_root=self.config.workspace_root,
                    context_files=list(subtask.input_context_files),
                    on_output=self._output_sink(subtask, callbacks),
                    on_permission_request=self._mediator(options, callbacks),
                    token=token,
                )

                with self.tracer.start_as_current_span("algaib.subtask") as span:
                    span.set_attribute("subtask.id", subtask.id)
                    span.set_attribute("subtask.agent", subtask.agent)
                    try:
                        result = await adapter.execute(request)
                    except RunCancelled as e:
                        span.set_attribute("subtask.status", "cancelled")
                        self.store.persist(plan, task, plan_path)
                        self._emit(callbacks, f"Cancelled during subtask: {subtask.title}")
                        return finish("cancelled", str(e))
                    span.set_attribute("subtask.status", result.status)
                    span.set_attribute("subtask.fallback", result.fallback)

                results.append(result)
                self._record(subtask, result, request.output_file)

                if result.status == "success":
                    self._mark(subtask, "completed", plan, task, plan_path)
                    self._emit(callbacks, f"Completed subtask: {subtask.title}")
                    if callbacks.on_subtask_complete is not None:
                        callbacks.on_subtask_complete(subtask, result)
                    continue

                error = result.error or "Subtask failed"
                self._mark(subtask, "failed", plan, task, plan_path)
                self._emit(callbacks, f"Subtask failed: {subtask.title}: {error}")
                if callbacks.on_subtask_fail is not None:
                    callbacks.on_subtask_fail(subtask, result, error)
                return finish("failed", error)

        return finish("completed")

    def _finish(self, status: RunStatus, **kwargs) -> RunResult:
        self._status = status
        self._token = None
        logger.info(f"Run finished: {status}")
        return RunResult(status=status, **kwargs)

    def _mark(
        self, subtask: Subtask, status: str, plan: Plan, task: Task, plan_path: Path
    ) -> None:
        # Persist before any callback sees the new status
        subtask.transition(status)  # type: ignore[arg-type]
        self.store.persist(plan, task, plan_path)

    def _record(self, subtask: Subtask, result: AgentResult, output_path: Path) -> None:
        telemetry.subtasks_counter.add(1, {"agent": result.agent, "status": result.status})
        telemetry.subtask_duration.record(result.execution_time_ms / 1000)
        if result.fallback:
            telemetry.fallbacks_counter.add(1, {"agent": result.agent, "status": result.status})
        log_agent_result(self.config.result_log_path, result, subtask.title, output_path)

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.config.workspace_root / candidate

    def _output_sink(self, subtask: Subtask, callbacks: RunCallbacks) -> Callable[[str], None] | None:
        on_subtask_output = callbacks.on_subtask_output
        if on_subtask_output is None:
            return None
        return lambda text: on_subtask_output(subtask, text)

    def _mediator(self, options: RunOptions, callbacks: RunCallbacks):
        yolo = self.config.yolo_mode if options.yolo_mode is None else options.yolo_mode

        async def mediate(request: PermissionRequest) -> bool:
            if yolo:
                allow = True
                self._emit(callbacks, f"YOLO: auto-approved {request.type}: {request.description}")
            elif callbacks.on_permission_request is None:
                allow = True
            else:
                decision = callbacks.on_permission_request(request)
                if inspect.isawaitable(decision):
                    decision = await decision
                allow = bool(decision)

            telemetry.permission_requests_counter.add(
                1, {"type": request.type, "decision": "allow" if allow else "deny"}
            )
            return allow

        return mediate

    def _emit(self, callbacks: RunCallbacks, message: str) -> None:
        logger.info(message)
        if callbacks.on_log is not None:
            callbacks.on_log(message)


def _describe_counts(plan: Plan) -> str:
    counts = plan.status_counts()
    return ", ".join(f"{n} {status}" for status, n in counts.items() if n)
