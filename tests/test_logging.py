"""Tests for structured logging setup."""

import json
import logging

import pytest
import structlog

from agentic_shell.config import ShellSettings
from agentic_shell.logging import (
    MAX_LOGGED_VALUE_CHARS,
    configure_logging,
    log_context,
    truncate_long_values,
)


@pytest.fixture
def log_stream(capsys):
    """stderr that logs are rendered into.

    pytest re-installs its own sys.stderr before each test call, so a
    monkeypatched stream would be replaced; read the captured stderr instead.
    """

    class _CapturedStderr:
        def getvalue(self) -> str:
            return capsys.readouterr().err

    yield _CapturedStderr()
    structlog.reset_defaults()


class TestTruncation:
    """Tests for shortening long values."""

    def test_long_values_are_cut(self):
        command = "x" * (MAX_LOGGED_VALUE_CHARS + 20)
        event = truncate_long_values(None, "info", {"event": "spawned", "command": command})

        assert event["command"].startswith("x" * MAX_LOGGED_VALUE_CHARS)
        assert event["command"].endswith("... [20 more chars]")

    def test_short_and_non_string_values_are_kept(self):
        event = {"event": "e" * (MAX_LOGGED_VALUE_CHARS + 1), "pid": 42, "command": "ls"}
        assert truncate_long_values(None, "info", dict(event)) == event


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_json_output_goes_to_stderr(self, log_stream):
        configure_logging(ShellSettings(log_level="info", log_format="json"))

        structlog.get_logger("test").info("spawned", pid=42)

        record = json.loads(log_stream.getvalue().strip().splitlines()[-1])
        assert record["event"] == "spawned"
        assert record["pid"] == 42
        assert record["level"] == "info"

    def test_level_filters(self, log_stream):
        configure_logging(ShellSettings(log_level="warning", log_format="json"))

        logger = structlog.get_logger("test")
        logger.info("hidden")
        logger.warning("shown")

        output = log_stream.getvalue()
        assert "hidden" not in output
        assert "shown" in output

    def test_debug_mode_lowers_level(self, log_stream):
        configure_logging(ShellSettings(log_level="error", log_format="json", debug_mode=True))

        structlog.get_logger("test").debug("details")

        assert "details" in log_stream.getvalue()
        assert logging.getLogger("asyncio").level == logging.WARNING

    def test_context_is_merged(self, log_stream):
        configure_logging(ShellSettings(log_level="info", log_format="json"))

        with log_context(shell_command="npm test"):
            structlog.get_logger("test").info("spawned")
        structlog.get_logger("test").info("after")

        first, second = (json.loads(line) for line in log_stream.getvalue().splitlines()[-2:])
        assert first["shell_command"] == "npm test"
        assert "shell_command" not in second


class TestLogContext:
    """Tests for log_context."""

    def test_values_are_unbound_on_exit(self):
        with log_context(shell_command="ls", pid=7):
            bound = structlog.contextvars.get_contextvars()
            assert bound["shell_command"] == "ls"
            assert bound["pid"] == 7
        assert "shell_command" not in structlog.contextvars.get_contextvars()
