"""Agentic Shell - safe shell command execution for AI agents.

This package provides:

- Shell profiles for bash, zsh, sh, fish, PowerShell, cmd and nushell
- Root-command extraction and allow-list policy classification
- An asyncio execution engine with process groups, inactivity timeouts,
  binary output detection and backgrounding
- The shell tool that ties validation, confirmation and execution together
"""

from agentic_shell.config import (
    SettingsContext,
    ShellSettings,
    get_context_settings,
    get_settings,
    reload_settings,
    set_context_settings,
    set_settings,
)
from agentic_shell.logging import configure_logging, get_logger
from agentic_shell.settings_persistence import SettingsPersistence
from agentic_shell.tools.shell import (
    CancellationToken,
    ConfirmationOutcome,
    ShellConfig,
    ShellExecutionService,
    ShellTool,
    ShellToolResult,
)
from agentic_shell.hitl import ApprovalManager

__version__ = "0.1.0"

__all__ = [
    # Settings
    "SettingsContext",
    "ShellSettings",
    "SettingsPersistence",
    "get_context_settings",
    "get_settings",
    "reload_settings",
    "set_context_settings",
    "set_settings",
    # Logging
    "configure_logging",
    "get_logger",
    # Shell tool
    "ApprovalManager",
    "CancellationToken",
    "ConfirmationOutcome",
    "ShellConfig",
    "ShellExecutionService",
    "ShellTool",
    "ShellToolResult",
]
