"""Plan record persistence.

Stores a plan and its task as a versioned JSON envelope so an interrupted
run can be resumed with ``execute_plan(identifier)``.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from algaib.errors import PlanNotFoundError, PlanRecordError
from algaib.models import Plan, Task

logger = logging.getLogger(__name__)

RECORD_VERSION = 1


@dataclass
class PlanSummary:
    """Listing entry for a stored plan."""

    plan_id: str
    task_description: str
    created_at: datetime
    path: Path
    counts: dict[str, int]


class PlanRecordStore:
    """Reads and writes plan records under a plan directory.

    Usage:
        store = PlanRecordStore(config.plan_dir, config.workspace_root)
        path = store.persist(plan, task)
        plan, task = store.load(plan.id)

    Attributes:
        plan_dir: Directory holding ``<plan-id>.json`` records
        workspace_root: Base for resolving relative identifiers
    """

    def __init__(self, plan_dir: Path, workspace_root: Path | None = None) -> None:
        self.plan_dir = Path(plan_dir)
        self.workspace_root = Path(workspace_root) if workspace_root else None

    def ensure_dir(self) -> Path:
        """Create the plan directory if needed. Safe to call repeatedly."""
        self.plan_dir.mkdir(parents=True, exist_ok=True)
        return self.plan_dir

    def path_for(self, plan_id: str) -> Path:
        return self.plan_dir / f"{plan_id}.json"

    def persist(self, plan: Plan, task: Task, path: Path | None = None) -> Path:
        """Write the plan record.

        The record is written to a temporary sibling and moved into place so a
        crash mid-write leaves the previous record intact.

        Args:
            plan: Plan to store (current subtask statuses included)
            task: The plan's task
            path: Explicit destination (default: ``<plan_dir>/<plan.id>.json``)

        Returns:
            Path of the written record
        """
        target = Path(path) if path else self.path_for(plan.id)
        target.parent.mkdir(parents=True, exist_ok=True)

        record = {
            "version": RECORD_VERSION,
            "plan": plan.to_dict(),
            "task": task.to_dict(),
        }

        tmp_path = target.with_name(target.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2)
        os.replace(tmp_path, target)

        logger.debug(f"Persisted plan {plan.id} to {target}")
        return target

    def resolve(self, identifier: str) -> Path:
        """Resolve an absolute path, relative path, or bare plan id.

        Raises:
            PlanNotFoundError: If no candidate path exists
        """
        candidates = self._candidates(identifier)
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        raise PlanNotFoundError(identifier, [str(c) for c in candidates])

    def _candidates(self, identifier: str) -> list[Path]:
        raw = Path(identifier)
        if raw.is_absolute():
            return [raw]

        candidates = [Path.cwd() / raw]
        if self.workspace_root is not None:
            candidates.append(self.workspace_root / raw)

        plan_id = raw.name[: -len(".json")] if raw.name.endswith(".json") else raw.name
        candidates.append(self.path_for(plan_id))

        # De-duplicate while keeping order
        unique: list[Path] = []
        for candidate in candidates:
            if candidate not in unique:
                unique.append(candidate)
        return unique

    def load(self, identifier: str) -> tuple[Plan, Task]:
        """Load a plan record.

        Args:
            identifier: Absolute path, relative path, or bare plan id

        Returns:
            Tuple of (plan, task) with timestamps restored

        Raises:
            PlanNotFoundError: If nothing resolves
            PlanRecordError: If the record is malformed or of another version
        """
        path = self.resolve(identifier)
        return self._read(path)

    def _read(self, path: Path) -> tuple[Plan, Task]:
        try:
            with open(path, encoding="utf-8") as f:
                data: dict[str, Any] = json.load(f)
        except json.JSONDecodeError as e:
            raise PlanRecordError(f"Plan record {path} is not valid JSON: {e}") from e

        version = data.get("version")
        if version != RECORD_VERSION:
            raise PlanRecordError(
                f"Plan record {path} has unsupported version {version!r}"
            )

        try:
            plan = Plan.from_dict(data["plan"])
            task = Task.from_dict(data["task"])
        except (KeyError, TypeError, ValueError) as e:
            raise PlanRecordError(f"Plan record {path} is malformed: {e}") from e

        return plan, task

    def list_records(self) -> list[PlanSummary]:
        """List stored plans, most recent first. Unreadable records are skipped."""
        if not self.plan_dir.exists():
            return []

        summaries: list[PlanSummary] = []
        for path in self.plan_dir.glob("*.json"):
            try:
                plan, task = self._read(path)
            except Exception as e:
                logger.warning(f"Skipping unreadable plan record {path}: {e}")
                continue
            summaries.append(
                PlanSummary(
                    plan_id=plan.id,
                    task_description=task.description,
                    created_at=plan.created_at,
                    path=path,
                    counts=plan.status_counts(),
                )
            )

        summaries.sort(key=lambda s: s.created_at, reverse=True)
        return summaries
