"""Append-only record of subtask results.

Every execution attempt appends one block to ``agent-results.log``: a
header line with the agent, subtask, status, output path and error,
followed by the content of the output file.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from algaib.models import AgentResult

logger = logging.getLogger(__name__)

OUTPUT_BEGIN = "----- OUTPUT BEGIN -----"
OUTPUT_END = "----- OUTPUT END -----"


def format_result_block(
    result: AgentResult,
    subtask_title: str,
    output_path: Path | None = None,
    timestamp: datetime | None = None,
) -> str:
    """Render one log block.

    Args:
        result: The subtask result
        subtask_title: Title shown beside the subtask id
        output_path: Where to read the output from (default: result.output_file)
        timestamp: Header timestamp (default: now, UTC)
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    header = [
        f"[{timestamp.isoformat()}] [AgentResult] agent={result.agent}",
        f"subtask={result.subtask_id} ({subtask_title})",
        f"status={result.status.upper()}",
    ]
    if result.output_file:
        header.append(f"output={result.output_file}")
    if result.error:
        header.append(f"error={result.error}")

    content = ""
    path = output_path or (Path(result.output_file) if result.output_file else None)
    if path is not None:
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            header.append(f"output_read_error={e}")

    body = content.rstrip("\n") or "(no output)"
    return f"{' | '.join(header)}\n{OUTPUT_BEGIN}\n{body}\n{OUTPUT_END}\n\n"


def log_agent_result(
    log_path: Path,
    result: AgentResult,
    subtask_title: str,
    output_path: Path | None = None,
) -> None:
    """Append a result block to ``log_path``, creating its directory."""
    block = format_result_block(result, subtask_title, output_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(block)
    logger.debug(f"Logged result for subtask {result.subtask_id} to {log_path}")
