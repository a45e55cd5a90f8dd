"""Structured logging configuration for agentic shell.

Uses structlog for structured, context-rich logging that supports
both human-readable console output and machine-readable JSON format.
Logs always go to stderr: stdout belongs to the output of the commands
being run.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from agentic_shell.config import ShellSettings

#: Longest string value written to a log line (commands can be whole scripts)
MAX_LOGGED_VALUE_CHARS = 500


def truncate_long_values(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Shorten long string values such as heredoc commands or pid-report lines."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_LOGGED_VALUE_CHARS:
            hidden = len(value) - MAX_LOGGED_VALUE_CHARS
            event_dict[key] = f"{value[:MAX_LOGGED_VALUE_CHARS]}... [{hidden} more chars]"
    return event_dict


def configure_logging(settings: "ShellSettings | None" = None) -> None:
    """Configure structured logging based on settings.

    Args:
        settings: Application settings. If None, uses defaults.
    """
    # Determine log level
    log_level = logging.WARNING
    log_format = "console"

    if settings is not None:
        log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
        log_format = settings.log_format
        if settings.debug_mode:
            log_level = logging.DEBUG

    # Common processors for all outputs
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        truncate_long_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        # One object per line for log collection
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Standard library logging, for asyncio's own messages
    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    # Keep asyncio debug chatter out of command output
    logging.getLogger("asyncio").setLevel(max(log_level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name) if name else structlog.get_logger()


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Bind values to every log call made inside the block.

    Tasks created inside the block keep the values after it exits.

    Example:
        with log_context(shell_command="npm test"):
            logger.info("spawned")  # Will include shell_command
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


class Loggers:
    """Pre-configured logger instances for agentic shell components."""

    @staticmethod
    def cli() -> structlog.stdlib.BoundLogger:
        """Logger for CLI components."""
        return get_logger("agentic_shell.cli")

    @staticmethod
    def config() -> structlog.stdlib.BoundLogger:
        """Logger for configuration."""
        return get_logger("agentic_shell.config")

    @staticmethod
    def tools() -> structlog.stdlib.BoundLogger:
        """Logger for the shell tool and its invocations."""
        return get_logger("agentic_shell.tools")

    @staticmethod
    def execution() -> structlog.stdlib.BoundLogger:
        """Logger for the process execution engine."""
        return get_logger("agentic_shell.execution")

    @staticmethod
    def policy() -> structlog.stdlib.BoundLogger:
        """Logger for policy classification and allow-list persistence."""
        return get_logger("agentic_shell.policy")
