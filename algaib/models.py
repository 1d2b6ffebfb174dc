"""Data models for algaib.

Defines dataclasses for tasks, plans, subtasks, agent results and permission
requests. Plans and tasks round-trip through to_dict()/from_dict() with
ISO-8601 timestamps for the plan record store.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

from algaib.config import STATE_DIRNAME
from algaib.errors import InvalidTransitionError

TaskPriority = Literal["low", "medium", "high", "critical"]
SubtaskStatus = Literal["pending", "running", "completed", "failed"]
PermissionType = Literal["file_write", "file_edit", "bash", "unknown"]

# Forward-only status transitions
_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("running", "failed"),
    "running": ("completed", "failed"),
    "completed": (),
    "failed": (),
}


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def new_task_id() -> str:
    return f"task-{_epoch_ms()}"


def new_plan_id() -> str:
    return f"plan-{_epoch_ms()}"


def subtask_output_file(task_id: str, index: int, kind: str = "result") -> str:
    """Default output path for the subtask at ``index`` (0-based).

    Paths are relative to the workspace root, e.g.
    ``.ai-al-gaib/contexts/task-1/results/1-result.md``.
    """
    return f"{STATE_DIRNAME}/contexts/{task_id}/results/{index + 1}-{kind}.md"


@dataclass(frozen=True)
class Task:
    """A user request. Created once per run and never modified."""

    id: str
    description: str
    priority: TaskPriority = "medium"
    created_at: datetime = field(default_factory=datetime.now)
    context_files: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        description: str,
        priority: TaskPriority = "medium",
        context_files: list[str] | None = None,
    ) -> "Task":
        return cls(
            id=new_task_id(),
            description=description,
            priority=priority,
            context_files=tuple(context_files or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["context_files"] = list(self.context_files)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            description=data["description"],
            priority=data.get("priority", "medium"),
            created_at=datetime.fromisoformat(data["created_at"]),
            context_files=tuple(data.get("context_files", ())),
        )


@dataclass
class Subtask:
    """One unit of work within a plan, assigned to exactly one agent.

    ``dependencies`` records the previous subtask id. Execution is strictly
    sequential; the field does not make the plan a graph.
    """

    id: str
    title: str
    description: str
    agent: str
    priority: int
    input_context_files: list[str] = field(default_factory=list)
    output_file: str = ""
    dependencies: list[str] = field(default_factory=list)
    status: SubtaskStatus = "pending"

    @classmethod
    def create(cls, **kwargs: Any) -> "Subtask":
        return cls(id=str(uuid.uuid4()), **kwargs)

    def transition(self, new_status: SubtaskStatus) -> None:
        """Move to ``new_status``.

        Raises:
            InvalidTransitionError: If the change is not forward-moving
        """
        if new_status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Subtask {self.id}: cannot move from {self.status} to {new_status}"
            )
        self.status = new_status

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Subtask":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data["description"],
            agent=data["agent"],
            priority=int(data.get("priority", 0)),
            input_context_files=list(data.get("input_context_files", [])),
            output_file=data.get("output_file", ""),
            dependencies=list(data.get("dependencies", [])),
            status=data.get("status", "pending"),
        )


@dataclass
class Plan:
    """Ordered subtasks for one task. Mutated in place during execution."""

    id: str
    task_id: str
    subtasks: list[Subtask]
    created_at: datetime = field(default_factory=datetime.now)

    def running_subtasks(self) -> list[Subtask]:
        return [s for s in self.subtasks if s.status == "running"]

    def status_counts(self) -> dict[str, int]:
        counts = {"pending": 0, "running": 0, "completed": 0, "failed": 0}
        for subtask in self.subtasks:
            counts[subtask.status] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            subtasks=[Subtask.from_dict(s) for s in data.get("subtasks", [])],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class AgentResult:
    """Result of one subtask execution attempt.

    Status values:
        success: The agent (or the local fallback) produced the output file
        failure: Neither the agent nor the fallback could complete the subtask
    """

    subtask_id: str
    agent: str
    status: Literal["success", "failure"]
    output_file: str
    tokens_used: int
    execution_time_ms: int
    error: str | None = None
    fallback: bool = False


@dataclass
class PermissionRequest:
    """A permission prompt detected in an agent's output stream.

    Exists only until a response is written back; never persisted.
    """

    id: str
    type: PermissionType
    description: str
    raw_text: str
