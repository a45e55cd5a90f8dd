"""Shell command execution for agents.

Four parts, used in this order for every request:
- Parsing: root-command extraction for each supported shell grammar
- Policy: allow / ask the user / deny, from the allow-list and approval mode
- Execution: process-group spawning, streaming, inactivity timeout,
  binary detection and backgrounding
- Orchestration: validation, confirmation and result assembly

Usage:
    from agentic_shell.tools.shell import ShellTool

    tool = ShellTool()
    result = await tool.run({"command": "git status"}, confirm=ask_user)
    print(result.llm_content)
"""

from agentic_shell.tools.shell.profiles import (
    POSIX_SHELL_TYPES,
    ShellCapabilities,
    ShellConfiguration,
    ShellProfile,
    ShellProfileId,
    ShellType,
    SHELL_PROFILE_REGISTRY,
    detect_shell_profile_from_env,
    get_all_shell_profile_ids,
    get_default_shell_configuration,
    get_shell_configuration_from_profile,
    get_shell_profile,
)
from agentic_shell.tools.shell.models import (
    ApprovalMode,
    BinaryDetectedEvent,
    BinaryProgressEvent,
    CommandDetail,
    CommandNode,
    ConfirmationDetails,
    ConfirmationOutcome,
    DataEvent,
    ExitEvent,
    InvocationState,
    ParseResult,
    PolicyDecision,
    PolicyVerdict,
    ShellExecutionResult,
    ShellOutputEvent,
    ShellToolParams,
    ShellToolResult,
    TerminalReason,
    TerminationCause,
    TokenizeResult,
    ToolErrorInfo,
)
from agentic_shell.tools.shell.tokenizer import (
    CommandTokenizer,
    get_command_roots,
    initialize_shell_parsers,
    parse_command_details,
    split_commands,
    strip_shell_wrapper,
)
from agentic_shell.tools.shell.cancellation import CancellationToken, InactivityTimer
from agentic_shell.tools.shell.classifier import (
    CommandPolicyClassifier,
    get_policy_update_prefixes,
    is_command_excluded,
    is_shell_invocation_allowlisted,
)
from agentic_shell.tools.shell.config import ShellConfig
from agentic_shell.tools.shell.execution import (
    ShellExecutionConfig,
    ShellExecutionHandle,
    ShellExecutionService,
    UnhandledEventError,
)
from agentic_shell.tools.shell.executor import (
    ShellTool,
    ShellToolInvocation,
    execute_with_approval,
    get_shell_tool_description,
    shell_command,
)

__all__ = [
    # Profiles
    "POSIX_SHELL_TYPES",
    "ShellCapabilities",
    "ShellConfiguration",
    "ShellProfile",
    "ShellProfileId",
    "ShellType",
    "SHELL_PROFILE_REGISTRY",
    "detect_shell_profile_from_env",
    "get_all_shell_profile_ids",
    "get_default_shell_configuration",
    "get_shell_configuration_from_profile",
    "get_shell_profile",
    # Parsing
    "CommandTokenizer",
    "CommandDetail",
    "CommandNode",
    "ParseResult",
    "TokenizeResult",
    "get_command_roots",
    "initialize_shell_parsers",
    "parse_command_details",
    "split_commands",
    "strip_shell_wrapper",
    # Policy
    "ApprovalMode",
    "CommandPolicyClassifier",
    "ConfirmationDetails",
    "ConfirmationOutcome",
    "PolicyDecision",
    "PolicyVerdict",
    "get_policy_update_prefixes",
    "is_command_excluded",
    "is_shell_invocation_allowlisted",
    # Configuration
    "ShellConfig",
    # Execution
    "BinaryDetectedEvent",
    "BinaryProgressEvent",
    "CancellationToken",
    "DataEvent",
    "ExitEvent",
    "InactivityTimer",
    "ShellExecutionConfig",
    "ShellExecutionHandle",
    "ShellExecutionResult",
    "ShellExecutionService",
    "ShellOutputEvent",
    "TerminationCause",
    "UnhandledEventError",
    # Tool
    "InvocationState",
    "ShellTool",
    "ShellToolInvocation",
    "ShellToolParams",
    "ShellToolResult",
    "TerminalReason",
    "ToolErrorInfo",
    "execute_with_approval",
    "get_shell_tool_description",
    "shell_command",
]
