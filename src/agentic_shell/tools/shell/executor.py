"""Shell tool: validation, confirmation and execution of one command.

``ShellTool`` is the tool definition (name, description, parameter schema,
validation). ``ShellTool.build`` creates a ``ShellToolInvocation`` that goes
through confirmation and execution and always ends with a
``ShellToolResult``:

    created -> awaiting_confirmation -> running -> terminal
        \\_______________________________/

The module also registers ``shell_command`` with the tool registry for
callers that cannot block on a confirmation prompt.
"""

import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Mapping

from pydantic import ValidationError

from agentic_shell.config import ShellSettings, get_settings
from agentic_shell.hitl import approval as approval_store
from agentic_shell.logging import Loggers, log_context
from agentic_shell.settings_persistence import SettingsPersistence
from agentic_shell.tools.registry import ErrorCode, ToolCategory, ToolError, register_tool
from agentic_shell.tools.shell.cancellation import CancellationToken
from agentic_shell.tools.shell.classifier import (
    SHELL_TOOL_NAME,
    CommandPolicyClassifier,
    is_command_excluded,
)
from agentic_shell.tools.shell.config import ShellConfig
from agentic_shell.tools.shell.execution import (
    OUTPUT_UPDATE_INTERVAL_MS,
    ShellExecutionConfig,
    ShellExecutionService,
    UnhandledEventError,
    format_bytes,
)
from agentic_shell.tools.shell.models import (
    BinaryDetectedEvent,
    BinaryProgressEvent,
    ConfirmationDetails,
    ConfirmationOutcome,
    DataEvent,
    ExitEvent,
    InvocationState,
    PolicyVerdict,
    ShellExecutionResult,
    ShellOutputEvent,
    ShellToolParams,
    ShellToolResult,
    TerminalReason,
    TerminationCause,
    ToolErrorInfo,
)
from agentic_shell.tools.shell.profiles import (
    POSIX_SHELL_TYPES,
    ShellConfiguration,
    ShellType,
    format_tool_replacements,
)
from agentic_shell.tools.shell.tokenizer import (
    get_command_roots,
    initialize_shell_parsers,
    strip_shell_wrapper,
)

if TYPE_CHECKING:
    from agentic_shell.hitl.approval import ApprovalManager

logger = Loggers.tools()

SHELL_TOOL_DISPLAY_NAME = "Shell"
CONFIRMATION_TITLE = "Confirm Shell Command"

CANCELLED_BEFORE_START = "Command was cancelled by user before it could start."
CANCELLED_DISPLAY = "Command cancelled by user."
PATH_NOT_IN_WORKSPACE_DISPLAY = "Path not in workspace."
BINARY_DETECTED_MESSAGE = "[Binary output detected. Halting stream...]"

Summarizer = Callable[[str, CancellationToken | None], Awaitable[str]]
UpdateOutput = Callable[[str], None]
ConfirmCallback = Callable[[ConfirmationDetails], Awaitable[ConfirmationOutcome]]
SetPid = Callable[[int], None]


# =============================================================================
# Tool description
# =============================================================================


def get_shell_guidance(shell: ShellType) -> str:
    """Default syntax guidance for a shell kind."""
    return {
        ShellType.POWERSHELL: (
            "Use PowerShell syntax and cmdlets (e.g., Get-ChildItem, Select-Object)."
        ),
        ShellType.ZSH: (
            "Use zsh syntax (e.g., glob qualifiers, array indexing) and avoid "
            "bash-only builtins."
        ),
        ShellType.POSIX: "Use POSIX sh-compatible syntax; avoid bash-specific features.",
        ShellType.OTHER: (
            "Use the configured shell's native syntax; do not assume bash semantics."
        ),
    }.get(shell, "")


def _shell_label(shell: ShellType) -> str:
    return {
        ShellType.POSIX: "POSIX-compatible",
        ShellType.OTHER: "non-POSIX",
    }.get(shell, shell.value)


RETURNED_INFO = """

The following information is returned:

Output: Combined stdout/stderr. Can be `(empty)` or partial on error and for any unwaited background processes.
Exit Code: Only included if non-zero (command failed).
Error: Only included if a process-level error occurred (e.g., spawn failure).
Signal: Only included if process was terminated by a signal.
Background PIDs: Only included if background processes were started.
Process Group PGID: Only included if available."""


def get_shell_tool_description(
    shell_config: ShellConfiguration,
    guidance: str | None = None,
    tool_guidance: Mapping[str, str] | None = None,
) -> str:
    """Build the tool description shown to the model.

    Args:
        shell_config: Invocation recipe commands run with.
        guidance: Custom syntax guidance (defaults to the shell kind's).
        tool_guidance: Unix tool -> replacement hints.
    """
    shell = shell_config.shell
    invocation = shell_config.invocation
    shell_context = f"Configured shell: `{shell_config.executable}` ({_shell_label(shell)})."

    guidance = guidance if guidance is not None else get_shell_guidance(shell)
    guidance_suffix = f" Guidance: {guidance}" if guidance else ""
    tool_guidance_suffix = ""
    if tool_guidance:
        tool_guidance_suffix = f" Tools: {format_tool_replacements(tool_guidance)}."

    if shell == ShellType.POWERSHELL:
        return (
            f"This tool executes a given shell command as `{invocation}`. {shell_context} "
            "Command can start background processes using PowerShell constructs such as "
            "`Start-Process -NoNewWindow` or `Start-Job`."
            f"{guidance_suffix}{tool_guidance_suffix}{RETURNED_INFO}"
        )

    if shell == ShellType.BASH:
        syntax_guidance = ""
    elif shell == ShellType.ZSH:
        syntax_guidance = (
            " This shell is zsh; avoid bash-only constructs and prefer zsh-compatible syntax."
        )
    elif shell == ShellType.POSIX:
        syntax_guidance = (
            " This shell is POSIX-style; avoid bash-specific features when possible."
        )
    else:
        syntax_guidance = (
            " This shell is non-POSIX; do not assume bash syntax and use the shell's "
            "native constructs."
        )

    if shell == ShellType.OTHER:
        background_guidance = " Background process handling depends on the shell configuration."
    else:
        background_guidance = " Command can start background processes using `&`."

    return (
        f"This tool executes a given shell command as `{invocation}`. {shell_context}"
        f"{background_guidance} Command is executed as a subprocess that leads its own "
        "process group. Command process group can be terminated as `kill -- -PGID` or "
        "signaled as `kill -s SIGNAL -- -PGID`."
        f"{syntax_guidance}{guidance_suffix}{tool_guidance_suffix}{RETURNED_INFO}"
    )


def get_command_description(shell_config: ShellConfiguration) -> str:
    return f"Exact command to execute as `{shell_config.invocation}`"


# =============================================================================
# Invocation
# =============================================================================


class ShellToolInvocation:
    """One validated request to run a command.

    Attributes:
        params: The validated request.
        state: Current lifecycle state.
        terminal_reason: How the invocation ended, once terminal.
        pid: Process id once spawned (the only thing kept after backgrounding).
    """

    def __init__(self, tool: "ShellTool", params: ShellToolParams):
        self.tool = tool
        self.params = params
        self.state = InvocationState.CREATED
        self.terminal_reason: TerminalReason | None = None
        self.pid: int | None = None
        self.verdict: PolicyVerdict | None = None

    @property
    def settings(self) -> ShellSettings:
        return self.tool.settings

    def get_description(self) -> str:
        """One-line description: command, directory, purpose and background flag."""
        description = self.params.command
        if self.params.dir_path:
            description += f" [in {self.params.dir_path}]"
        else:
            description += f" [current working directory {Path.cwd()}]"
        if self.params.description:
            purpose = self.params.description.replace("\n", " ")
            description += f" ({purpose})"
        if self.params.is_background:
            description += " [background]"
        return description

    def _finish(self, reason: TerminalReason) -> None:
        self.state = InvocationState.TERMINAL
        self.terminal_reason = reason

    async def should_confirm_execute(
        self, cancellation: CancellationToken | None = None
    ) -> ConfirmationDetails | Literal[False]:
        """Classify the command and describe the confirmation to show, if any.

        Returns:
            ConfirmationDetails when the user must be asked, False otherwise
            (allowed commands, and denied ones, which fail in ``execute``).
        """
        self.verdict = self.tool.classifier.classify(
            self.params.command,
            allowed_patterns=self.tool.policy_store.allowed_patterns,
            approval_mode=self.settings.approval_mode,
            is_interactive=self.settings.interactive,
        )
        if not self.verdict.needs_confirmation:
            return False

        self.state = InvocationState.AWAITING_CONFIRMATION
        return ConfirmationDetails(
            title=CONFIRMATION_TITLE,
            command=self.params.command,
            root_command=self.verdict.root_command_display,
            root_commands=list(self.verdict.root_commands),
            on_confirm=self.on_confirm,
        )

    async def on_confirm(self, outcome: ConfirmationOutcome) -> None:
        """Apply the user's answer; "always" answers add allow-list entries."""
        outcome = ConfirmationOutcome(outcome)
        if outcome == ConfirmationOutcome.CANCEL:
            self._finish(TerminalReason.CANCELLED)
            return

        await self.tool.policy_store.apply_outcome(
            self.params.command, outcome, self.tool.shell.shell
        )
        self.state = InvocationState.CREATED

    async def execute(
        self,
        cancellation: CancellationToken | None = None,
        update_output: UpdateOutput | None = None,
        set_pid: SetPid | None = None,
    ) -> ShellToolResult:
        """Run the command and assemble the result.

        Args:
            cancellation: Caller's cancellation token.
            update_output: Receives the cumulative output while running.
            set_pid: Receives the pid once the process has been spawned.
        """
        if self.state == InvocationState.TERMINAL or (cancellation and cancellation.cancelled):
            self._finish(TerminalReason.CANCELLED)
            return ShellToolResult(llm_content=CANCELLED_BEFORE_START, return_display=CANCELLED_DISPLAY)

        if self.verdict is not None and self.verdict.is_denied:
            self._finish(TerminalReason.DENIED)
            reason = self.verdict.reason or "Command is not allowed."
            return _error_result(reason, ErrorCode.EXECUTION_DENIED)

        if self.state == InvocationState.AWAITING_CONFIRMATION:
            self._finish(TerminalReason.DENIED)
            message = f"Command requires confirmation before it can run: {self.params.command}"
            return _error_result(message, ErrorCode.EXECUTION_DENIED)

        cwd = self.settings.resolve_dir(self.params.dir_path)
        path_error = self.settings.validate_path_access(cwd)
        if path_error:
            self._finish(TerminalReason.REJECTED)
            return _error_result(
                path_error, ErrorCode.PATH_NOT_IN_WORKSPACE, PATH_NOT_IN_WORKSPACE_DISPLAY
            )

        self.state = InvocationState.RUNNING
        command = strip_shell_wrapper(self.params.command)
        on_event = self._event_handler(update_output)

        with log_context(shell_command=self.params.command):
            handle = await self.tool.execution_service.execute(
                command,
                cwd,
                on_event,
                cancellation=cancellation,
                config=self.tool.execution_config(is_background=self.params.is_background),
            )
            if handle.pid is not None:
                self.pid = handle.pid
                if set_pid:
                    set_pid(handle.pid)

            result = await handle.result
        tool_result = self._assemble(result, handle.executed_command)

        if result.aborted:
            self._finish(TerminalReason.CANCELLED)
        elif result.backgrounded or self.params.is_background:
            self._finish(TerminalReason.BACKGROUNDED)
        else:
            self._finish(TerminalReason.COMPLETED)
        logger.info(
            "shell_invocation_finished",
            command=self.params.command,
            pid=result.pid,
            cause=result.cause.value,
            exit_code=result.exit_code,
        )

        if self.settings.summarize_tool_output and self.tool.summarizer is not None:
            summary = await self.tool.summarizer(tool_result.llm_content, cancellation)
            return ShellToolResult(
                llm_content=summary,
                return_display=tool_result.return_display,
                error=tool_result.error,
            )
        return tool_result

    def _event_handler(self, update_output: UpdateOutput | None) -> Callable[[ShellOutputEvent], None]:
        """Turn engine events into cumulative display text."""
        cumulative = ""
        is_binary = False
        last_update = time.monotonic()
        interval = OUTPUT_UPDATE_INTERVAL_MS / 1000

        def on_event(event: ShellOutputEvent) -> None:
            nonlocal cumulative, is_binary, last_update
            should_update = False

            if isinstance(event, DataEvent):
                if not is_binary:
                    cumulative += event.chunk
                    should_update = True
            elif isinstance(event, BinaryDetectedEvent):
                is_binary = True
                cumulative = BINARY_DETECTED_MESSAGE
                should_update = True
            elif isinstance(event, BinaryProgressEvent):
                is_binary = True
                cumulative = (
                    f"[Receiving binary output... {format_bytes(event.bytes_received)} received]"
                )
                should_update = time.monotonic() - last_update > interval
            elif isinstance(event, ExitEvent):
                pass
            else:
                raise UnhandledEventError(event)

            if should_update and update_output and not self.params.is_background:
                update_output(cumulative)
                last_update = time.monotonic()

        return on_event

    def _assemble(self, result: ShellExecutionResult, executed_command: str) -> ShellToolResult:
        """Build the model-facing content and the user-facing display."""
        data: dict[str, Any] | None = None
        timeout_message = ""
        background_message = (
            f"Command moved to background (PID: {result.pid}). "
            "Output hidden. Press Ctrl+B to view."
        )

        if result.aborted:
            if result.timed_out:
                minutes = self.settings.inactivity_timeout_ms / 60000
                timeout_message = (
                    "Command was automatically cancelled because it exceeded the timeout "
                    f"of {minutes:.1f} minutes without output."
                )
                llm_content = timeout_message
            else:
                llm_content = "Command was cancelled by user before it could complete."
            if result.output.strip():
                llm_content += f" Below is the output before it was cancelled:\n{result.output}"
            else:
                llm_content += " There was no output before it was cancelled."
        elif self.params.is_background or result.backgrounded:
            llm_content = background_message
            data = {
                "pid": result.pid,
                "command": self.params.command,
                "initialOutput": result.output,
            }
        else:
            parts = [f"Output: {result.output or '(empty)'}"]
            if result.error is not None:
                message = str(result.error).replace(executed_command, self.params.command)
                parts.append(f"Error: {message}")
            if result.exit_code is not None and result.exit_code != 0:
                parts.append(f"Exit Code: {result.exit_code}")
            if result.signal:
                parts.append(f"Signal: {result.signal}")
            if result.background_pids:
                parts.append(f"Background PIDs: {', '.join(str(p) for p in result.background_pids)}")
            if result.pid:
                parts.append(f"Process Group PGID: {result.pid}")
            llm_content = "\n".join(parts)

        if self.settings.debug_mode:
            display = llm_content
        elif self.params.is_background or result.backgrounded:
            display = background_message
        elif result.output.strip():
            display = result.output
        elif result.aborted:
            display = timeout_message or CANCELLED_DISPLAY
        elif result.signal:
            display = f"Command terminated by signal: {result.signal}"
        elif result.error is not None:
            display = f"Command failed: {result.error}"
        elif result.exit_code is not None and result.exit_code != 0:
            display = f"Command exited with code: {result.exit_code}"
        else:
            display = ""

        error = None
        if result.error is not None:
            kind = (
                ErrorCode.SPAWN_FAILURE
                if result.cause == TerminationCause.SPAWN_ERROR
                else ErrorCode.SHELL_EXECUTE_ERROR
            )
            error = ToolErrorInfo(message=str(result.error), kind=kind)

        return ShellToolResult(llm_content=llm_content, return_display=display, data=data, error=error)


def _error_result(message: str, kind: str, display: str | None = None) -> ShellToolResult:
    return ShellToolResult(
        llm_content=message,
        return_display=display if display is not None else message,
        error=ToolErrorInfo(message=message, kind=kind),
    )


# =============================================================================
# Tool
# =============================================================================


class ShellTool:
    """The shell tool definition.

    Example:
        tool = ShellTool(settings)
        result = await tool.run({"command": "ls -la"}, confirm=ask_user)
        print(result.llm_content)
    """

    name = SHELL_TOOL_NAME
    display_name = SHELL_TOOL_DISPLAY_NAME

    def __init__(
        self,
        settings: ShellSettings | None = None,
        shell_config: ShellConfig | None = None,
        policy_store: "ApprovalManager | None" = None,
        execution_service: ShellExecutionService | None = None,
        summarizer: Summarizer | None = None,
    ):
        self.settings = settings or get_settings()
        if shell_config is None:
            if self.settings.shell_config_path:
                shell_config = ShellConfig.from_yaml(self.settings.shell_config_path)
            else:
                shell_config = ShellConfig.load_default()
        self.shell_config = shell_config
        self.shell = shell_config.resolve_shell_configuration()

        self.policy_store = policy_store or approval_store.ApprovalManager(
            persistence=SettingsPersistence(self.settings.app_name),
        )
        self.policy_store.extend(self.settings.allowed_tools)
        self.policy_store.extend(shell_config.allow_commands)

        self.execution_service = execution_service or ShellExecutionService()
        self.summarizer = summarizer
        self.classifier = CommandPolicyClassifier(self.shell.shell)

    @property
    def description(self) -> str:
        return get_shell_tool_description(
            self.shell,
            guidance=self.shell_config.resolve_guidance(),
            tool_guidance=self.shell_config.resolve_tool_guidance(),
        )

    @property
    def parameter_schema(self) -> dict[str, Any]:
        """JSON schema of the tool's parameters."""
        schema = ShellToolParams.model_json_schema()
        schema["properties"]["command"]["description"] = get_command_description(self.shell)
        return schema

    def execution_config(self, is_background: bool = False) -> ShellExecutionConfig:
        return ShellExecutionConfig(
            shell=self.shell,
            inactivity_timeout_ms=self.settings.inactivity_timeout_ms,
            is_background=is_background,
            discover_background_pids=(
                self.settings.enable_background_pid_discovery
                and self.shell.shell in POSIX_SHELL_TYPES
            ),
        )

    def _parse_params(self, params: ShellToolParams | Mapping[str, Any]) -> ShellToolParams:
        if isinstance(params, ShellToolParams):
            return params
        return ShellToolParams.model_validate(dict(params))

    def _validate(self, params: ShellToolParams) -> tuple[str, str] | None:
        """Validation error as (message, error kind), or None."""
        if not params.command.strip():
            return "Command cannot be empty.", ErrorCode.INVALID_TOOL_PARAMS

        excluded = is_command_excluded(
            params.command, self.shell_config.exclude_commands, self.shell.shell
        )
        if excluded:
            return excluded, ErrorCode.INVALID_TOOL_PARAMS

        if not get_command_roots(params.command, self.shell.shell):
            return (
                "Could not identify command root to obtain permission from user.",
                ErrorCode.INVALID_TOOL_PARAMS,
            )

        if params.dir_path:
            resolved = self.settings.resolve_dir(params.dir_path)
            path_error = self.settings.validate_path_access(resolved)
            if path_error:
                return path_error, ErrorCode.PATH_NOT_IN_WORKSPACE
            if not resolved.is_dir():
                return f"Directory does not exist: {resolved}", ErrorCode.INVALID_TOOL_PARAMS
        return None

    def validate_tool_params(self, params: ShellToolParams | Mapping[str, Any]) -> str | None:
        """Check a request before anything runs.

        Returns:
            None if valid, otherwise a human-readable rejection.
        """
        try:
            parsed = self._parse_params(params)
        except ValidationError as e:
            return f"Invalid parameters: {e.errors()[0]['msg']}"
        error = self._validate(parsed)
        return error[0] if error else None

    def build(self, params: ShellToolParams | Mapping[str, Any]) -> ShellToolInvocation:
        """Create an invocation for valid params.

        Raises:
            ToolError: INVALID_TOOL_PARAMS or PATH_NOT_IN_WORKSPACE.
        """
        try:
            parsed = self._parse_params(params)
        except ValidationError as e:
            raise ToolError(
                f"Invalid parameters: {e.errors()[0]['msg']}",
                error_code=ErrorCode.INVALID_TOOL_PARAMS,
                recoverable=True,
                tool_name=self.name,
            ) from e
        error = self._validate(parsed)
        if error:
            raise ToolError(error[0], error_code=error[1], recoverable=True, tool_name=self.name)
        return ShellToolInvocation(self, parsed)

    async def run(
        self,
        params: ShellToolParams | Mapping[str, Any],
        cancellation: CancellationToken | None = None,
        update_output: UpdateOutput | None = None,
        confirm: ConfirmCallback | None = None,
        set_pid: SetPid | None = None,
    ) -> ShellToolResult:
        """Validate, confirm and execute a request.

        Args:
            params: The request.
            cancellation: Caller's cancellation token.
            update_output: Receives cumulative output while running.
            confirm: Asks the user; without it, commands needing
                confirmation are refused.
            set_pid: Receives the pid once spawned.
        """
        await initialize_shell_parsers()
        try:
            invocation = self.build(params)
        except ToolError as e:
            display = (
                PATH_NOT_IN_WORKSPACE_DISPLAY
                if e.error_code == ErrorCode.PATH_NOT_IN_WORKSPACE
                else e.message
            )
            return _error_result(e.message, e.error_code, display)

        details = await invocation.should_confirm_execute(cancellation)
        if details and confirm is not None:
            outcome = await confirm(details)
            await details.on_confirm(outcome)

        return await invocation.execute(cancellation, update_output, set_pid)


# =============================================================================
# Registered tool functions
# =============================================================================


def _pending_payload(request: "approval_store.ApprovalRequest") -> dict[str, Any]:
    return {
        "success": False,
        "pending_approval": True,
        "approval_request_id": request.id,
        "command": request.command,
        "root_commands": request.root_commands,
        "message": f"Command requires approval: {request.root_command_display}",
    }


@register_tool(
    category=ToolCategory.EXECUTION,
    requires_confirmation=True,
    description="Execute a shell command in the workspace",
)
async def shell_command(
    command: str,
    description: str | None = None,
    dir_path: str | None = None,
    is_background: bool = False,
) -> dict[str, Any]:
    """Execute a shell command in the workspace.

    Args:
        command: Exact command to execute.
        description: Brief description of the command for the user.
        dir_path: Directory to run in, relative to the workspace root.
        is_background: Move the command to the background after a moment.

    Returns:
        The tool result dictionary (llmContent, returnDisplay, data, error)
        plus ``success``. If the command needs approval:
            - pending_approval: True
            - approval_request_id: ID to pass to execute_with_approval

    Examples:
        >>> result = await shell_command("rm -rf ./build")
        >>> if result.get("pending_approval"):
        ...     await execute_with_approval(result["approval_request_id"], "proceed_once")
    """
    settings = get_settings()
    manager = approval_store.get_approval_manager()
    tool = ShellTool(settings=settings, policy_store=manager)

    await initialize_shell_parsers()
    params = ShellToolParams(
        command=command,
        description=description,
        dir_path=dir_path,
        is_background=is_background,
    )
    error = tool.validate_tool_params(params)
    if error:
        result = await tool.run(params)
        return {"success": False, **result.to_dict()}

    invocation = tool.build(params)
    if not manager.consume_grant(command):
        details = await invocation.should_confirm_execute()
        if details:
            request = manager.request_approval(
                command=command,
                root_commands=details.root_commands,
                root_command_display=details.root_command,
                description=description,
                dir_path=dir_path,
                is_background=is_background,
                shell_type=tool.shell.shell,
            )
            logger.info("approval_requested", request_id=request.id, command=command)
            return _pending_payload(request)

    result = await invocation.execute()
    return {"success": result.error is None, **result.to_dict()}


@register_tool(
    category=ToolCategory.EXECUTION,
    description="Resolve a pending shell command approval and run the command",
)
async def execute_with_approval(
    approval_request_id: str,
    outcome: str = ConfirmationOutcome.PROCEED_ONCE.value,
) -> dict[str, Any]:
    """Resolve a pending approval and, unless cancelled, run the command.

    Args:
        approval_request_id: ID returned by shell_command.
        outcome: proceed_once, proceed_always, proceed_always_and_save or cancel.
    """
    manager = approval_store.get_approval_manager()
    request = await manager.resolve(approval_request_id, ConfirmationOutcome(outcome))
    if request is None:
        raise ToolError(
            f"No pending approval with ID {approval_request_id}",
            error_code=ErrorCode.INVALID_TOOL_PARAMS,
            tool_name="execute_with_approval",
        )
    if manager.is_rejected(approval_request_id):
        result = ShellToolResult(llm_content=CANCELLED_BEFORE_START, return_display=CANCELLED_DISPLAY)
        return {"success": False, **result.to_dict()}

    return await shell_command(
        request.command,
        description=request.description,
        dir_path=request.dir_path,
        is_background=request.is_background,
    )
