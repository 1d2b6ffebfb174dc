"""Logging configuration for algaib.

Sets up console output plus two log files under the log directory:

- ``debug.log``: every record from the ``algaib`` loggers, rotated by size
- ``cli.log``: one line per spawned agent command (the ``algaib.commands`` logger)

Subtask results go to a third file, ``agent-results.log``, written by
algaib.result_log rather than through logging.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_COMMAND_FORMAT = "[%(asctime)s] %(message)s"

DEBUG_LOG_NAME = "debug.log"
COMMAND_LOG_NAME = "cli.log"


def configure_logging(
    log_dir: Path | str | None = None,
    verbose: bool = False,
    console: bool = True,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """Configure the ``algaib`` logger hierarchy.

    Reconfiguring replaces the handlers installed by an earlier call.

    Args:
        log_dir: Directory for log files (None: console only)
        verbose: Log DEBUG to the console instead of WARNING
        console: Attach a console handler at all
        max_file_size_mb: Maximum size of debug.log before rotation
        backup_count: Number of rotated files to keep
    """
    root = logging.getLogger("algaib")
    root.setLevel(logging.DEBUG)
    commands = logging.getLogger("algaib.commands")

    for target in (root, commands):
        for handler in target.handlers[:]:
            target.removeHandler(handler)
            handler.close()

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
        console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
        root.addHandler(console_handler)

    if log_dir is None:
        return

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_path / DEBUG_LOG_NAME,
        maxBytes=max_file_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
    root.addHandler(file_handler)

    command_handler = logging.FileHandler(log_path / COMMAND_LOG_NAME, encoding="utf-8")
    command_handler.setFormatter(logging.Formatter(_COMMAND_FORMAT))
    commands.addHandler(command_handler)

    root.debug(f"Logging initialized (files: {log_path})")
