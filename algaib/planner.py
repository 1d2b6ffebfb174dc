"""Planner: turns a task description into an ordered list of subtasks.

The planning agent is asked for a fenced JSON block. Parsing is tolerant of
surrounding prose, terminal control codes and a few common key spellings.
Any failure other than cancellation yields a fixed two-step fallback plan,
so planning always produces something executable.
"""

import json
import logging
import math
import re
from typing import Any

from algaib import telemetry
from algaib.agents import AgentRegistry
from algaib.cancellation import CancellationToken
from algaib.config import AlgaibConfig
from algaib.errors import AlgaibError, PlanParseError, RunCancelled
from algaib.models import Plan, Subtask, Task, new_plan_id, subtask_output_file
from algaib.process import OutputSink
from algaib.session import strip_ansi

logger = logging.getLogger(__name__)

PLAN_PROMPT = """You are a planning agent. Break the user's task into an ordered list of subtasks.

Rules:
- Each subtask must be a self-contained instruction for a coding agent.
- Subtasks run one after another; each one sees the previous subtask's result file.
- Do not assign agents. The configured executor runs every subtask.
- Keep the list short: only the steps the task actually needs.

Respond with exactly one fenced JSON block and nothing else:

```json
{{
  "subtasks": [
    {{"title": "Short title", "description": "Detailed instruction"}}
  ]
}}
```
{skills}
Task:
{task}
"""

FENCE_PATTERN = re.compile(r"```[\w-]*[ \t]*\n?(.*?)```", re.DOTALL)

_LIST_KEYS = ("subtasks", "tasks", "steps")
_TITLE_KEYS = ("title", "name")
_DESCRIPTION_KEYS = ("description", "details", "instruction", "task")
_TITLE_FROM_DESCRIPTION_CHARS = 50


def build_plan_prompt(task: Task, skills: str | None = None) -> str:
    skills_block = f"\nProject skills and conventions:\n{skills.strip()}\n" if skills else ""
    return PLAN_PROMPT.format(skills=skills_block, task=task.description)


def extract_json(text: str) -> Any | None:
    """Find the first balanced JSON object or array in ``text`` that parses.

    Brackets inside JSON strings are ignored. Candidates that balance but do
    not parse are skipped and the search continues after them.

    Returns:
        The decoded value, or None if nothing parses
    """
    start = _next_open(text, 0)
    while start != -1:
        end = _balanced_end(text, start)
        if end is None:
            return None
        try:
            return json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            start = _next_open(text, start + 1)
    return None


def _next_open(text: str, pos: int) -> int:
    candidates = [i for i in (text.find("{", pos), text.find("[", pos)) if i != -1]
    return min(candidates) if candidates else -1


def _balanced_end(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escape_next = False

    for i, char in enumerate(text[start:], start):
        if in_string:
            if escape_next:
                escape_next = False
            elif char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return i

    return None


def _decode(output: str) -> Any:
    text = strip_ansi(output).strip()
    fence = FENCE_PATTERN.search(text)
    candidate = fence.group(1).strip() if fence else text

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    for source in (candidate, text):
        data = extract_json(source)
        if data is not None:
            return data

    raise PlanParseError(f"No JSON found in planner output: {text[:200]!r}")


def _first_str(item: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_plan_response(output: str, task: Task, executor_agent: str) -> list[Subtask]:
    """Turn raw planner output into chained subtasks.

    Args:
        output: Raw planner stdout (control codes allowed)
        task: The task being planned; seeds ids, paths and context files
        executor_agent: Agent assigned to every subtask

    Returns:
        Subtasks in execution order, each depending on its predecessor

    Raises:
        PlanParseError: If no usable subtask list can be found
    """
    data = _decode(output)

    if isinstance(data, dict):
        items = next((data[k] for k in _LIST_KEYS if isinstance(data.get(k), list)), None)
        if items is None:
            raise PlanParseError(f"Planner JSON has none of the keys {', '.join(_LIST_KEYS)}")
    elif isinstance(data, list):
        items = data
    else:
        raise PlanParseError(f"Planner JSON is a {type(data).__name__}, not a list or object")

    subtasks: list[Subtask] = []
    for item in items:
        if not isinstance(item, dict):
            continue

        title = _first_str(item, _TITLE_KEYS)
        description = _first_str(item, _DESCRIPTION_KEYS) or title
        if description is None:
            logger.debug(f"Skipping planner item without title or description: {item}")
            continue
        if title is None:
            title = description[:_TITLE_FROM_DESCRIPTION_CHARS]

        index = len(subtasks)
        priority = item.get("priority")
        # json.loads accepts NaN and Infinity
        if (
            isinstance(priority, bool)
            or not isinstance(priority, (int, float))
            or not math.isfinite(priority)
        ):
            priority = index + 1

        previous = subtasks[-1] if subtasks else None
        subtasks.append(
            Subtask.create(
                title=title,
                description=description,
                agent=executor_agent,
                priority=int(priority),
                input_context_files=(
                    [previous.output_file] if previous else list(task.context_files)
                ),
                output_file=subtask_output_file(task.id, index),
                dependencies=[previous.id] if previous else [],
            )
        )

    if not subtasks:
        raise PlanParseError("Planner returned no usable subtasks")
    return subtasks


def fallback_plan(task: Task, executor_agent: str) -> Plan:
    """Fixed two-step plan: analyze the request, then carry it out."""
    analysis = Subtask.create(
        title="Analyze Requirements",
        description=(
            f"User Request: {task.description}\n"
            "Action: Analyze the request and the required context."
        ),
        agent=executor_agent,
        priority=1,
        input_context_files=list(task.context_files),
        output_file=subtask_output_file(task.id, 0, kind="analysis"),
        dependencies=[],
    )
    execution = Subtask.create(
        title=f"Execute: {task.description}",
        description=f"Based on the analysis, implement: {task.description}",
        agent=executor_agent,
        priority=2,
        input_context_files=[analysis.output_file],
        output_file=subtask_output_file(task.id, 1),
        dependencies=[analysis.id],
    )
    return Plan(id=new_plan_id(), task_id=task.id, subtasks=[analysis, execution])


class Planner:
    """Creates plans by asking a planning agent.

    Usage:
        planner = Planner(registry, config)
        plan = await planner.create_plan(task, skills=skills_text, token=token)
    """

    def __init__(self, registry: AgentRegistry, config: AlgaibConfig | None = None) -> None:
        self.registry = registry
        self.config = config or registry.config

    async def create_plan(
        self,
        task: Task,
        planner_agent: str | None = None,
        executor_agent: str | None = None,
        skills: str | None = None,
        on_output: OutputSink | None = None,
        token: CancellationToken | None = None,
    ) -> Plan:
        """Plan a task.

        Args:
            task: Task to decompose
            planner_agent: Agent that writes the plan (default: config)
            executor_agent: Agent assigned to every subtask (default: config)
            skills: Pre-rendered skill text included verbatim in the prompt
            on_output: Sink for the planner's raw output
            token: Run cancellation token

        Returns:
            The agent's plan, or the fallback plan if planning failed

        Raises:
            RunCancelled: If the token trips while the planner runs
        """
        planner_agent = planner_agent or self.config.planner_agent
        executor_agent = executor_agent or self.config.executor_agent
        token = token or CancellationToken()

        adapter = self.registry.get(planner_agent)
        if adapter is None:
            logger.warning(f"No adapter for planner '{planner_agent}', using fallback plan")
            return self._fallback(task, executor_agent)

        logger.info(f"Planning task {task.id} with {planner_agent}")
        try:
            output = await adapter.generate(
                build_plan_prompt(task, skills),
                cwd=self.config.workspace_root,
                on_output=on_output,
                token=token,
                timeout=self.config.planner_timeout_seconds,
            )
            subtasks = parse_plan_response(output, task, executor_agent)
        except RunCancelled:
            raise
        except (AlgaibError, OSError) as e:
            logger.warning(f"Planning failed, using fallback plan: {e}")
            return self._fallback(task, executor_agent)

        telemetry.plans_counter.add(1, {"source": "agent"})
        logger.info(f"Planner produced {len(subtasks)} subtask(s)")
        return Plan(id=new_plan_id(), task_id=task.id, subtasks=subtasks)

    def _fallback(self, task: Task, executor_agent: str) -> Plan:
        telemetry.plans_counter.add(1, {"source": "fallback"})
        return fallback_plan(task, executor_agent)
