"""Tool registry and standard tool errors.

Provides:
- ToolDefinition: Metadata for a registered tool
- ToolError / ErrorCode: Structured tool failures
- ToolRegistry: Registry for tool discovery
"""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


class ToolCategory(Enum):
    """Categories for organizing tools."""

    EXECUTION = "execution"
    FILE = "file"
    OTHER = "other"


@dataclass
class ToolDefinition:
    """Metadata for a registered tool.

    Attributes:
        name: Tool name (defaults to function name)
        description: Human-readable description
        func: The actual tool function
        category: Tool category for organization
        is_async: Whether the tool is async
        requires_confirmation: Whether calls may need user approval
        metadata: Extra free-form metadata
    """

    name: str
    description: str
    func: Callable[..., Any]
    category: ToolCategory = ToolCategory.OTHER
    is_async: bool = False
    requires_confirmation: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if inspect.iscoroutinefunction(self.func):
            self.is_async = True


class ToolError(Exception):
    """Standard error for tool failures.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (see ErrorCode)
        recoverable: Whether the caller can retry with different input
        details: Additional error details
        tool_name: Name of the tool that failed
    """

    def __init__(
        self,
        message: str,
        error_code: str = "TOOL_ERROR",
        recoverable: bool = False,
        details: dict[str, Any] | None = None,
        tool_name: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.recoverable = recoverable
        self.details = details or {}
        self.tool_name = tool_name

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "success": False,
            "error": {
                "message": self.message,
                "code": self.error_code,
                "recoverable": self.recoverable,
                "details": self.details,
                "tool_name": self.tool_name,
            },
        }


class ErrorCode:
    """Standard error codes for tool failures."""

    # Input errors
    INVALID_TOOL_PARAMS = "INVALID_TOOL_PARAMS"
    PATH_NOT_IN_WORKSPACE = "PATH_NOT_IN_WORKSPACE"

    # Policy errors
    EXECUTION_DENIED = "EXECUTION_DENIED"

    # Execution errors
    SPAWN_FAILURE = "SPAWN_FAILURE"
    SHELL_EXECUTE_ERROR = "SHELL_EXECUTE_ERROR"

    # Internal errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ToolRegistry:
    """Registry for managing and discovering tools."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}

    def register(
        self,
        func: Callable[..., Any] | None = None,
        *,
        name: str | None = None,
        description: str | None = None,
        category: ToolCategory = ToolCategory.OTHER,
        requires_confirmation: bool = False,
        **metadata,
    ) -> Callable[..., Any]:
        """Register a tool function.

        Can be used as a decorator:
            @registry.register(category=ToolCategory.EXECUTION)
            async def my_tool(command: str) -> dict:
                ...

        Or called directly:
            registry.register(my_tool, category=ToolCategory.EXECUTION)
        """

        def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
            tool_name = name or f.__name__
            tool_desc = description or (f.__doc__ or "").split("\n")[0].strip()

            self._tools[tool_name] = ToolDefinition(
                name=tool_name,
                description=tool_desc,
                func=f,
                category=category,
                requires_confirmation=requires_confirmation,
                metadata=metadata,
            )
            return f

        if func is not None:
            return decorator(func)
        return decorator

    def get(self, name: str) -> ToolDefinition | None:
        """Get a tool definition by name."""
        return self._tools.get(name)

    def get_function(self, name: str) -> Callable[..., Any] | None:
        """Get the tool function by name."""
        definition = self._tools.get(name)
        return definition.func if definition else None

    def list_tools(self) -> list[ToolDefinition]:
        """List all registered tools."""
        return list(self._tools.values())

    def list_by_category(self, category: ToolCategory) -> list[ToolDefinition]:
        """List tools by category."""
        return [t for t in self._tools.values() if t.category == category]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


# Global registry instance
_default_registry = ToolRegistry()


def get_registry() -> ToolRegistry:
    """Get the default tool registry."""
    return _default_registry


def register_tool(
    func: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    category: ToolCategory = ToolCategory.OTHER,
    requires_confirmation: bool = False,
    **metadata,
) -> Callable[..., Any]:
    """Register a tool with the default registry.

    Decorator for registering tools:
        @register_tool(category=ToolCategory.EXECUTION, requires_confirmation=True)
        async def shell_command(command: str) -> dict:
            '''Run a shell command.'''
            ...
    """
    return _default_registry.register(
        func,
        name=name,
        description=description,
        category=category,
        requires_confirmation=requires_confirmation,
        **metadata,
    )
