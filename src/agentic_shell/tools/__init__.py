"""Tools for agentic shell.

Provides the tool registry, standard tool errors and the shell tool.
"""

from agentic_shell.tools.registry import (
    ErrorCode,
    ToolCategory,
    ToolDefinition,
    ToolError,
    ToolRegistry,
    get_registry,
    register_tool,
)
from agentic_shell.tools.shell import ShellTool, execute_with_approval, shell_command

__all__ = [
    # Registry
    "ErrorCode",
    "ToolCategory",
    "ToolDefinition",
    "ToolError",
    "ToolRegistry",
    "get_registry",
    "register_tool",
    # Shell
    "ShellTool",
    "execute_with_approval",
    "shell_command",
]
