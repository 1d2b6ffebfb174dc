"""Tests for plan record persistence."""

import json
import os
from datetime import datetime
from pathlib import Path

import pytest

from algaib.errors import PlanNotFoundError, PlanRecordError
from algaib.models import Plan, Subtask, Task
from algaib.store import RECORD_VERSION, PlanRecordStore


def make_plan(plan_id: str = "plan-1", created_at: datetime | None = None) -> tuple[Plan, Task]:
    task = Task.create("Add a login page", context_files=["docs/auth.md"])
    first = Subtask.create(
        title="Analyze",
        description="Read the auth docs",
        agent="claude",
        priority=1,
        input_context_files=["docs/auth.md"],
        output_file=f".ai-al-gaib/contexts/{task.id}/results/1-result.md",
        status="completed",
    )
    second = Subtask.create(
        title="Implement",
        description="Build the page",
        agent="claude",
        priority=2,
        input_context_files=[first.output_file],
        output_file=f".ai-al-gaib/contexts/{task.id}/results/2-result.md",
        dependencies=[first.id],
        status="running",
    )
    plan = Plan(
        id=plan_id,
        task_id=task.id,
        subtasks=[first, second],
        created_at=created_at or datetime(2025, 1, 15, 14, 23, 0),
    )
    return plan, task


class TestEnsureDir:
    def test_creates_directory(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path / "a" / "plans")

        store.ensure_dir()

        assert (tmp_path / "a" / "plans").is_dir()

    def test_second_call_is_noop(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path / "plans")
        store.ensure_dir()
        (tmp_path / "plans" / "keep.txt").write_text("x")

        store.ensure_dir()

        assert (tmp_path / "plans" / "keep.txt").read_text() == "x"


class TestPersist:
    def test_writes_versioned_envelope(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path)
        plan, task = make_plan()

        path = store.persist(plan, task)

        data = json.loads(path.read_text())
        assert path == tmp_path / "plan-1.json"
        assert data["version"] == RECORD_VERSION
        assert data["plan"]["id"] == "plan-1"
        assert data["task"]["description"] == "Add a login page"
        assert data["plan"]["created_at"] == "2025-01-15T14:23:00"

    def test_leaves_no_temporary_file(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path)
        plan, task = make_plan()

        store.persist(plan, task)

        assert [p.name for p in tmp_path.iterdir()] == ["plan-1.json"]

    def test_explicit_path(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path / "plans")
        plan, task = make_plan()

        path = store.persist(plan, task, tmp_path / "custom" / "record.json")

        assert path.exists()


class TestLoad:
    def test_round_trip_by_id(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path)
        plan, task = make_plan()
        store.persist(plan, task)

        loaded_plan, loaded_task = store.load("plan-1")

        assert loaded_plan == plan
        assert loaded_task == task
        assert loaded_plan.subtasks[1].status == "running"
        assert loaded_plan.subtasks[1].dependencies == [plan.subtasks[0].id]

    def test_load_by_absolute_path(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path / "plans")
        plan, task = make_plan()
        path = store.persist(plan, task)

        loaded_plan, _ = store.load(str(path))

        assert loaded_plan.id == "plan-1"

    def test_load_by_path_relative_to_workspace(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path / ".ai-al-gaib" / "plans", workspace_root=tmp_path)
        plan, task = make_plan()
        store.persist(plan, task)

        loaded_plan, _ = store.load(".ai-al-gaib/plans/plan-1.json")

        assert loaded_plan.id == "plan-1"

    def test_load_by_path_relative_to_cwd(self, tmp_path: Path, monkeypatch):
        store = PlanRecordStore(tmp_path / "plans")
        plan, task = make_plan()
        store.persist(plan, task)
        monkeypatch.chdir(tmp_path)

        loaded_plan, _ = store.load(os.path.join("plans", "plan-1.json"))

        assert loaded_plan.id == "plan-1"

    def test_missing_plan_names_candidates(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path / "plans", workspace_root=tmp_path)

        with pytest.raises(PlanNotFoundError) as exc_info:
            store.load("plan-404")

        assert str(tmp_path / "plans" / "plan-404.json") in exc_info.value.candidates
        assert "plan-404" in str(exc_info.value)

    def test_unsupported_version_rejected(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path)
        plan, task = make_plan()
        path = store.persist(plan, task)
        data = json.loads(path.read_text())
        data["version"] = 99
        path.write_text(json.dumps(data))

        with pytest.raises(PlanRecordError, match="version"):
            store.load("plan-1")

    def test_invalid_json_rejected(self, tmp_path: Path):
        (tmp_path / "plan-1.json").write_text("{not json")
        store = PlanRecordStore(tmp_path)

        with pytest.raises(PlanRecordError):
            store.load("plan-1")

    def test_malformed_record_rejected(self, tmp_path: Path):
        (tmp_path / "plan-1.json").write_text(json.dumps({"version": RECORD_VERSION}))
        store = PlanRecordStore(tmp_path)

        with pytest.raises(PlanRecordError, match="malformed"):
            store.load("plan-1")


class TestListRecords:
    def test_empty_when_directory_missing(self, tmp_path: Path):
        assert PlanRecordStore(tmp_path / "nothing").list_records() == []

    def test_newest_first_with_counts(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path)
        old_plan, old_task = make_plan("plan-1", datetime(2025, 1, 1))
        new_plan, new_task = make_plan("plan-2", datetime(2025, 2, 1))
        store.persist(old_plan, old_task)
        store.persist(new_plan, new_task)

        summaries = store.list_records()

        assert [s.plan_id for s in summaries] == ["plan-2", "plan-1"]
        assert summaries[0].counts["completed"] == 1
        assert summaries[0].counts["running"] == 1

    def test_skips_unreadable_records(self, tmp_path: Path):
        store = PlanRecordStore(tmp_path)
        plan, task = make_plan()
        store.persist(plan, task)
        (tmp_path / "broken.json").write_text("garbage")

        summaries = store.list_records()

        assert [s.plan_id for s in summaries] == ["plan-1"]
