"""Lock manager for plan execution.

Provides PID-based locking to prevent two processes from executing the
same plan at once.
"""

import os
from pathlib import Path
from types import TracebackType

from algaib.errors import PlanLockedError


class PlanLock:
    """PID-based lock for plan execution.

    The lock is a ``<plan-id>.lock`` file beside the plan record holding the
    PID of the process executing it. Locks left behind by dead processes
    are treated as stale and taken over.

    Usage:
        with PlanLock(config.plan_dir, plan.id):
            ...  # execute the plan

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, lock_dir: Path, plan_id: str) -> None:
        self.lock_path = Path(lock_dir) / f"{plan_id}.lock"

    def acquire(self) -> bool:
        """Try to acquire the lock.

        Returns:
            True if lock acquired, False if held by another running process
        """
        holder_pid = self.get_holder_pid()
        if holder_pid is not None and holder_pid != os.getpid():
            if self._is_process_running(holder_pid):
                return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock. Safe to call even if the lock doesn't exist."""
        self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """PID recorded in the lock file, or None if absent or unreadable."""
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 only checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, owned by someone else
            return True

    def __enter__(self) -> "PlanLock":
        """Acquire lock on context entry.

        Raises:
            PlanLockedError: If the lock is held by another running process
        """
        if not self.acquire():
            raise PlanLockedError(
                f"Plan is already being executed (PID: {self.get_holder_pid()})"
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
