"""Configuration for algaib.

Provides centralized configuration with sensible defaults and environment
variable overrides for workspace layout, agent selection, timeouts, and
telemetry.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

# Directory (relative to the workspace root) holding plans and results
STATE_DIRNAME = ".ai-al-gaib"


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_paths(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [p for p in raw.split(os.pathsep) if p]


@dataclass
class AlgaibConfig:
    """Configuration for planning and executing subtasks.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method. The plan and log
    directories default to locations under the workspace root.
    """

    workspace_root: Path = field(default_factory=Path.cwd)
    plan_dir: Path | None = None
    log_dir: Path | None = None

    # Agent selection
    planner_agent: str = "claude"
    executor_agent: str = "claude"
    yolo_mode: bool = False

    # Timeouts
    task_timeout_seconds: int = 600
    planner_timeout_seconds: int = 300
    output_wait_seconds: float = 2.0

    # Extra directories searched for agent executables
    extra_search_paths: list[str] = field(default_factory=list)

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "algaib"

    def __post_init__(self) -> None:
        self.workspace_root = Path(self.workspace_root)
        if self.plan_dir is None:
            self.plan_dir = self.workspace_root / STATE_DIRNAME / "plans"
        if self.log_dir is None:
            self.log_dir = self.workspace_root / "logs"

    @property
    def result_log_path(self) -> Path:
        """Append-only log of every subtask result."""
        assert self.log_dir is not None
        return self.log_dir / "agent-results.log"

    @classmethod
    def from_env(cls) -> "AlgaibConfig":
        """Load config with environment variable overrides.

        Environment variables:
            ALGAIB_WORKSPACE: Workspace root (default: current directory)
            ALGAIB_PLANNER: Planner agent name (default: claude)
            ALGAIB_EXECUTOR: Executor agent name (default: claude)
            ALGAIB_YOLO: Auto-approve every permission request (default: false)
            ALGAIB_TASK_TIMEOUT: Per-subtask timeout in seconds (default: 600)
            ALGAIB_PLANNER_TIMEOUT: Planner timeout in seconds (default: 300)
            ALGAIB_EXTRA_PATH: Extra executable directories, os.pathsep separated
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        workspace = os.getenv("ALGAIB_WORKSPACE")
        return cls(
            workspace_root=Path(workspace) if workspace else Path.cwd(),
            planner_agent=os.getenv("ALGAIB_PLANNER", "claude"),
            executor_agent=os.getenv("ALGAIB_EXECUTOR", "claude"),
            yolo_mode=_env_flag("ALGAIB_YOLO"),
            task_timeout_seconds=int(os.getenv("ALGAIB_TASK_TIMEOUT", "600")),
            planner_timeout_seconds=int(os.getenv("ALGAIB_PLANNER_TIMEOUT", "300")),
            extra_search_paths=_env_paths("ALGAIB_EXTRA_PATH"),
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
