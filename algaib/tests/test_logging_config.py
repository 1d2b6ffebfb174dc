"""Tests for logging configuration."""

import logging
from pathlib import Path

import pytest

from algaib.logging_config import COMMAND_LOG_NAME, DEBUG_LOG_NAME, configure_logging
from algaib.process import log_command


@pytest.fixture(autouse=True)
def reset_algaib_loggers():
    yield
    for name in ("algaib", "algaib.commands"):
        target = logging.getLogger(name)
        for handler in target.handlers[:]:
            target.removeHandler(handler)
            handler.close()


class TestConfigureLogging:
    def test_writes_debug_log(self, tmp_path: Path):
        configure_logging(tmp_path, console=False)

        logging.getLogger("algaib.planner").debug("planning details")
        for handler in logging.getLogger("algaib").handlers:
            handler.flush()

        assert "planning details" in (tmp_path / DEBUG_LOG_NAME).read_text()

    def test_commands_go_to_cli_log(self, tmp_path: Path):
        configure_logging(tmp_path, console=False)

        log_command(["claude", "-p", "-"], tmp_path)
        for handler in logging.getLogger("algaib.commands").handlers:
            handler.flush()

        assert "cmd=claude -p -" in (tmp_path / COMMAND_LOG_NAME).read_text()

    def test_reconfigure_replaces_handlers(self, tmp_path: Path):
        configure_logging(tmp_path, console=True)
        configure_logging(tmp_path, console=True)

        assert len(logging.getLogger("algaib").handlers) == 2
        assert len(logging.getLogger("algaib.commands").handlers) == 1

    def test_console_only(self):
        configure_logging(None)

        handlers = logging.getLogger("algaib").handlers
        assert len(handlers) == 1
        assert handlers[0].level == logging.WARNING
