"""Local fallback strategy for subtasks whose agent is unavailable.

When an agent binary is missing or fails, the adapter hands the subtask to
LocalFallback. It matches the subtask description against an ordered rule
table and runs the first matching local action:

- ``nextjs``: scaffold a Next.js app with ``npx create-next-app``
- ``analyze``: summarize the workspace's files by extension
- ``note``: record that nothing could be done locally

Each action returns a one-line log that ends up in the result file. An
action that fails raises, and the adapter records a failure result.
"""

import asyncio
import logging
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from algaib.cancellation import CancellationToken
from algaib.process import OutputSink, agent_env, run_piped

logger = logging.getLogger(__name__)

# Directories not worth walking when summarizing a workspace
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"}

_APP_NAME_PATTERNS = (
    re.compile(r"([A-Za-z0-9_-]+)(?:라는| 라는)?\s*(?:폴더|디렉토리)"),
    re.compile(r"(?:folder|directory|named|called)\s+['\"`]?([A-Za-z0-9_-]+)", re.IGNORECASE),
    re.compile(r"([A-Za-z0-9_-]+)\s+(?:folder|directory)", re.IGNORECASE),
)
DEFAULT_APP_NAME = "my-next-app"


@dataclass
class FallbackRequest:
    """What a local action needs to know about the subtask."""

    description: str
    workspace_root: Path
    on_output: OutputSink | None = None
    token: CancellationToken = field(default_factory=CancellationToken)

    def emit(self, text: str) -> None:
        if self.on_output is not None:
            self.on_output(text)


LocalAction = Callable[[FallbackRequest, dict[str, str]], Awaitable[str]]


@dataclass(frozen=True)
class FallbackRule:
    """Description predicate paired with the action it triggers."""

    name: str
    matches: Callable[[str], bool]
    action: LocalAction


def _words(*words: str) -> Callable[[str], bool]:
    return lambda desc: any(w in desc for w in words)


def _is_nextjs(desc: str) -> bool:
    return "next" in desc and any(w in desc for w in ("create", "project", "scaffold", "구성"))


def extract_app_name(description: str) -> str:
    """Pick the folder name for a scaffold from the task description."""
    for pattern in _APP_NAME_PATTERNS:
        match = pattern.search(description)
        if match:
            return match.group(1)
    return DEFAULT_APP_NAME


async def scaffold_nextjs(request: FallbackRequest, env: dict[str, str]) -> str:
    app_name = extract_app_name(request.description)
    argv = [
        "npx",
        "create-next-app@latest",
        app_name,
        "--typescript",
        "--tailwind",
        "--eslint",
        "--yes",
    ]
    request.emit(f"[local] Running: {' '.join(argv)}\n")
    await run_piped(
        argv,
        cwd=request.workspace_root,
        env=env,
        on_output=request.on_output,
        token=request.token,
    )
    return f"Created Next.js project in ./{app_name}"


def summarize_files(root: Path) -> Counter:
    """Count files under ``root`` by extension, skipping dependency folders."""
    counts: Counter = Counter()
    for _, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in _SKIP_DIRS and not d.startswith(".")]
        for name in filenames:
            counts[Path(name).suffix.lower() or "(none)"] += 1
    return counts


async def analyze_workspace(request: FallbackRequest, env: dict[str, str]) -> str:
    request.token.raise_if_cancelled()
    counts = await asyncio.to_thread(summarize_files, request.workspace_root)
    total = sum(counts.values())
    if total == 0:
        return f"Workspace {request.workspace_root} contains no files"
    top = ", ".join(f"{ext}: {n}" for ext, n in counts.most_common(5))
    return f"Scanned {total} files in {request.workspace_root} ({top})"


async def record_note(request: FallbackRequest, env: dict[str, str]) -> str:
    return (
        "No local action matched this subtask. "
        "Install the agent CLI for full AI capabilities."
    )


DEFAULT_FALLBACK_RULES: tuple[FallbackRule, ...] = (
    FallbackRule("nextjs", _is_nextjs, scaffold_nextjs),
    FallbackRule("analyze", _words("analyze", "analyse", "read", "check", "review"), analyze_workspace),
    FallbackRule("note", lambda desc: True, record_note),
)


class LocalFallback:
    """Ordered table of local actions; the first matching rule runs.

    Attributes:
        rules: Rules in evaluation order
        extra_paths: Extra directories searched for tools such as npx
    """

    def __init__(
        self,
        rules: tuple[FallbackRule, ...] | list[FallbackRule] = DEFAULT_FALLBACK_RULES,
        extra_paths: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.rules = list(rules)
        self.extra_paths = extra_paths or []
        self._env = env

    def select(self, description: str) -> FallbackRule | None:
        desc = description.lower()
        for rule in self.rules:
            if rule.matches(desc):
                return rule
        return None

    async def run(self, request: FallbackRequest) -> tuple[str, str]:
        """Run the first matching action.

        Returns:
            Tuple of (rule name, action log line)

        Raises:
            LookupError: If no rule matches
            AlgaibError: If the action's own tooling fails
            RunCancelled: If the token trips
        """
        rule = self.select(request.description)
        if rule is None:
            raise LookupError("No local fallback rule matches the subtask")

        logger.info(f"Local fallback '{rule.name}' for: {request.description[:80]}")
        env = self._env if self._env is not None else agent_env(self.extra_paths)
        log_line = await rule.action(request, env)
        return rule.name, log_line
