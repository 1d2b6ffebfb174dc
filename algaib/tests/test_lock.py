"""Tests for plan lock manager."""

import os
from pathlib import Path

import pytest

from algaib.errors import PlanLockedError
from algaib.lock import PlanLock


class TestPlanLockAcquire:
    """Tests for PlanLock.acquire()."""

    def test_acquire_creates_lock_file_with_pid(self, tmp_path: Path) -> None:
        lock = PlanLock(tmp_path, "plan-1")

        assert lock.acquire() is True
        assert (tmp_path / "plan-1.lock").read_text().strip() == str(os.getpid())

    def test_acquire_fails_when_held_by_running_process(self, tmp_path: Path) -> None:
        """PID 1 always exists, so its lock is never stale."""
        (tmp_path / "plan-1.lock").write_text("1")

        assert PlanLock(tmp_path, "plan-1").acquire() is False

    def test_acquire_takes_over_stale_lock(self, tmp_path: Path) -> None:
        lock_file = tmp_path / "plan-1.lock"
        lock_file.write_text("99999999")

        assert PlanLock(tmp_path, "plan-1").acquire() is True
        assert lock_file.read_text().strip() == str(os.getpid())

    def test_acquire_with_invalid_content(self, tmp_path: Path) -> None:
        (tmp_path / "plan-1.lock").write_text("not_a_pid")

        assert PlanLock(tmp_path, "plan-1").acquire() is True

    def test_reacquire_by_same_process(self, tmp_path: Path) -> None:
        lock = PlanLock(tmp_path, "plan-1")
        lock.acquire()

        assert PlanLock(tmp_path, "plan-1").acquire() is True


class TestPlanLockContextManager:
    def test_releases_on_exit(self, tmp_path: Path) -> None:
        with PlanLock(tmp_path, "plan-1"):
            assert (tmp_path / "plan-1.lock").exists()

        assert not (tmp_path / "plan-1.lock").exists()

    def test_releases_on_exception(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            with PlanLock(tmp_path, "plan-1"):
                raise ValueError("boom")

        assert not (tmp_path / "plan-1.lock").exists()

    def test_raises_when_locked(self, tmp_path: Path) -> None:
        (tmp_path / "plan-1.lock").write_text("1")

        with pytest.raises(PlanLockedError, match="PID: 1"):
            with PlanLock(tmp_path, "plan-1"):
                pass

    def test_release_without_lock_is_safe(self, tmp_path: Path) -> None:
        PlanLock(tmp_path, "plan-1").release()
