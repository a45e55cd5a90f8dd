"""Tests for the shell tool: validation, confirmation, execution and results.

Result assembly is tested against a scripted execution service; the
end-to-end tests run only harmless commands (echo, sleep, true).
"""

import asyncio
import contextlib
import json
import os
import signal
import sys
from pathlib import Path

import pytest

from agentic_shell.tools.registry import ErrorCode, ToolCategory, ToolError, get_registry
from agentic_shell.tools.shell.cancellation import CancellationToken
from agentic_shell.tools.shell.execution import ShellExecutionHandle, UnhandledEventError
from agentic_shell.tools.shell.executor import (
    CANCELLED_BEFORE_START,
    ShellTool,
    execute_with_approval,
    get_shell_tool_description,
    shell_command,
)
from agentic_shell.tools.shell.models import (
    BinaryDetectedEvent,
    BinaryProgressEvent,
    ConfirmationOutcome,
    DataEvent,
    ExitEvent,
    InvocationState,
    ShellExecutionResult,
    TerminalReason,
    TerminationCause,
)
from agentic_shell.tools.shell.profiles import ShellConfiguration, ShellType

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process tests need a POSIX shell")

WRAPPED = "{ broken-cmd\n}; __code=$?; pgrep -g 0 >/tmp/shell_pgrep_0.tmp 2>&1; exit $__code;"


class ScriptedExecutionService:
    """Execution service that replays events and returns a fixed result."""

    def __init__(self, result: ShellExecutionResult, events=(), executed_command: str = WRAPPED):
        self.result = result
        self.events = list(events)
        self.executed_command = executed_command
        self.calls = []

    async def execute(self, command, cwd, on_event, cancellation=None, config=None):
        self.calls.append({"command": command, "cwd": cwd, "config": config})
        for event in self.events:
            on_event(event)

        async def finish():
            return self.result

        return ShellExecutionHandle(
            pid=self.result.pid,
            result=asyncio.create_task(finish()),
            executed_command=self.executed_command,
        )


def exited(output="", exit_code=0, **kwargs) -> ShellExecutionResult:
    return ShellExecutionResult(
        output=output, exit_code=exit_code, cause=TerminationCause.EXITED, pid=4242, **kwargs
    )


@pytest.fixture
def scripted_tool(make_tool):
    """Build a yolo-mode tool around a scripted execution service."""

    def factory(result, events=(), **overrides):
        tool = make_tool(approval_mode="yolo", **overrides)
        tool.execution_service = ScriptedExecutionService(result, events)
        return tool

    return factory


class TestDescription:
    """Tests for the model-facing description."""

    def test_bash_description(self, make_tool):
        """The description names the invocation, guidance and tool hints."""
        description = make_tool().description
        assert "This tool executes a given shell command as `bash -c <command>`." in description
        assert "Configured shell: `bash` (bash)." in description
        assert "Command can start background processes using `&`." in description
        assert "kill -- -PGID" in description
        assert "Guidance: Use bash-compatible syntax." in description
        assert "grep→rg (ripgrep)" in description
        assert "Process Group PGID: Only included if available." in description

    def test_powershell_description(self):
        """PowerShell gets its own background advice."""
        config = ShellConfiguration("pwsh", ("-NoProfile", "-Command"), ShellType.POWERSHELL)
        description = get_shell_tool_description(config)
        assert "`pwsh -NoProfile -Command <command>`" in description
        assert "Start-Process -NoNewWindow" in description
        assert "kill -- -PGID" not in description
        assert "Guidance: Use PowerShell syntax and cmdlets" in description

    def test_other_description(self):
        """Shells without a known grammar are labelled non-POSIX."""
        config = ShellConfiguration("nu", ("-c",), ShellType.OTHER)
        description = get_shell_tool_description(config, guidance="")
        assert "Configured shell: `nu` (non-POSIX)." in description
        assert "Background process handling depends on the shell configuration." in description
        assert "Guidance:" not in description

    def test_posix_label(self):
        """sh-style shells are labelled POSIX-compatible."""
        config = ShellConfiguration("sh", ("-c",), ShellType.POSIX)
        description = get_shell_tool_description(config)
        assert "(POSIX-compatible)" in description
        assert "Use POSIX sh-compatible syntax" in description

    def test_parameter_schema(self, make_tool):
        """The command parameter names the exact invocation."""
        schema = make_tool().parameter_schema
        assert schema["required"] == ["command"]
        assert schema["properties"]["command"]["description"] == (
            "Exact command to execute as `bash -c <command>`"
        )
        assert set(schema["properties"]) == {"command", "description", "dir_path", "is_background"}


class TestValidation:
    """Tests for parameter validation."""

    def test_valid(self, make_tool):
        assert make_tool().validate_tool_params({"command": "ls -la"}) is None

    def test_empty_command(self, make_tool):
        assert make_tool().validate_tool_params({"command": "   "}) == "Command cannot be empty."

    def test_unknown_parameter(self, make_tool):
        error = make_tool().validate_tool_params({"command": "ls", "timeout": 5})
        assert error.startswith("Invalid parameters:")

    def test_no_command_root(self, make_tool):
        error = make_tool().validate_tool_params({"command": ";;"})
        assert error == "Could not identify command root to obtain permission from user."

    def test_excluded_command(self, make_tool, bash_config):
        bash_config.exclude_commands = ["rm -rf"]
        error = make_tool().validate_tool_params({"command": "ls && rm -rf build"})
        assert error == "Command 'rm -rf build' is blocked by configuration"

    def test_dir_outside_workspace(self, make_tool):
        error = make_tool().validate_tool_params({"command": "ls", "dir_path": ".."})
        assert error.startswith("Path not in workspace:")

    def test_missing_dir(self, make_tool):
        error = make_tool().validate_tool_params({"command": "ls", "dir_path": "nope"})
        assert error.startswith("Directory does not exist:")

    def test_existing_dir(self, make_tool, workspace):
        (workspace / "src").mkdir()
        assert make_tool().validate_tool_params({"command": "ls", "dir_path": "src"}) is None

    def test_build_raises(self, make_tool):
        with pytest.raises(ToolError) as exc_info:
            make_tool().build({"command": ""})
        assert exc_info.value.error_code == ErrorCode.INVALID_TOOL_PARAMS


class TestInvocationDescription:
    """Tests for the one-line invocation description."""

    def test_default_directory(self, make_tool):
        invocation = make_tool().build({"command": "ls"})
        assert invocation.get_description() == f"ls [current working directory {Path.cwd()}]"

    def test_all_parts(self, make_tool, workspace):
        (workspace / "src").mkdir()
        invocation = make_tool().build(
            {
                "command": "npm start",
                "dir_path": "src",
                "description": "Start the\ndev server",
                "is_background": True,
            }
        )
        assert invocation.get_description() == (
            "npm start [in src] (Start the dev server) [background]"
        )


class TestConfirmation:
    """Tests for the confirmation step."""

    @pytest.mark.asyncio
    async def test_allowlisted_needs_no_confirmation(self, make_tool, approval_manager):
        approval_manager.extend(["ls"])
        invocation = make_tool().build({"command": "ls -la"})
        assert await invocation.should_confirm_execute() is False
        assert invocation.state == InvocationState.CREATED

    @pytest.mark.asyncio
    async def test_settings_allow_list(self, make_tool):
        invocation = make_tool(allowed_tools=["run_shell_command(git status)"]).build(
            {"command": "git status"}
        )
        assert await invocation.should_confirm_execute() is False

    @pytest.mark.asyncio
    async def test_confirmation_details(self, make_tool):
        invocation = make_tool().build({"command": "git status && npm test"})
        details = await invocation.should_confirm_execute()

        assert details.title == "Confirm Shell Command"
        assert details.type == "exec"
        assert details.command == "git status && npm test"
        assert details.root_command == "git, npm"
        assert details.root_commands == ["git", "npm"]
        assert invocation.state == InvocationState.AWAITING_CONFIRMATION

    @pytest.mark.asyncio
    async def test_proceed_always_adds_roots(self, make_tool, approval_manager):
        tool = make_tool()
        details = await tool.build({"command": "git status && npm test"}).should_confirm_execute()
        await details.on_confirm(ConfirmationOutcome.PROCEED_ALWAYS)

        assert "git" in approval_manager.allowed_patterns
        assert "npm" in approval_manager.allowed_patterns
        second = tool.build({"command": "npm run lint"})
        assert await second.should_confirm_execute() is False

    @pytest.mark.asyncio
    async def test_proceed_always_and_save_persists(self, make_tool, tmp_path):
        details = await make_tool().build({"command": "make build"}).should_confirm_execute()
        await details.on_confirm(ConfirmationOutcome.PROCEED_ALWAYS_AND_SAVE)

        saved = json.loads((tmp_path / "saved" / "settings.json").read_text())
        assert saved["allowed_tools"] == ["make"]

    @pytest.mark.asyncio
    async def test_proceed_once_changes_nothing(self, make_tool, approval_manager):
        invocation = make_tool().build({"command": "make build"})
        details = await invocation.should_confirm_execute()
        await details.on_confirm(ConfirmationOutcome.PROCEED_ONCE)

        assert approval_manager.allowed_patterns == ()
        assert invocation.state == InvocationState.CREATED

    @pytest.mark.asyncio
    async def test_cancel_stops_before_spawn(self, make_tool):
        tool = make_tool()
        tool.execution_service = ScriptedExecutionService(exited())
        invocation = tool.build({"command": "make build"})
        details = await invocation.should_confirm_execute()
        await details.on_confirm(ConfirmationOutcome.CANCEL)

        result = await invocation.execute()
        assert result.llm_content == CANCELLED_BEFORE_START
        assert result.return_display == "Command cancelled by user."
        assert invocation.terminal_reason == TerminalReason.CANCELLED
        assert tool.execution_service.calls == []

    @pytest.mark.asyncio
    async def test_non_interactive_denial(self, make_tool):
        tool = make_tool(interactive=False)
        tool.execution_service = ScriptedExecutionService(exited())
        result = await tool.run({"command": "make build"})

        assert result.error.kind == ErrorCode.EXECUTION_DENIED
        assert "make" in result.llm_content
        assert tool.execution_service.calls == []

    @pytest.mark.asyncio
    async def test_unconfirmed_without_prompt(self, make_tool):
        tool = make_tool()
        tool.execution_service = ScriptedExecutionService(exited())
        result = await tool.run({"command": "make build"})

        assert result.error.kind == ErrorCode.EXECUTION_DENIED
        assert tool.execution_service.calls == []

    @pytest.mark.asyncio
    async def test_run_asks_confirm_callback(self, make_tool):
        tool = make_tool()
        tool.execution_service = ScriptedExecutionService(exited("built"))
        asked = []

        async def confirm(details):
            asked.append(details.root_command)
            return ConfirmationOutcome.PROCEED_ONCE

        result = await tool.run({"command": "make build"}, confirm=confirm)
        assert asked == ["make"]
        assert result.llm_content.startswith("Output: built")


class TestResultAssembly:
    """Tests for result messages, against scripted runs."""

    @pytest.mark.asyncio
    async def test_success(self, scripted_tool):
        tool = scripted_tool(exited("hi"))
        result = await tool.run({"command": "echo hi"})

        assert result.llm_content == "Output: hi\nProcess Group PGID: 4242"
        assert result.return_display == "hi"
        assert result.data is None
        assert result.error is None

    @pytest.mark.asyncio
    async def test_silent_success_has_empty_display(self, scripted_tool):
        result = await scripted_tool(exited("")).run({"command": "true"})
        assert result.llm_content.startswith("Output: (empty)")
        assert result.return_display == ""

    @pytest.mark.asyncio
    async def test_exit_code(self, scripted_tool):
        result = await scripted_tool(exited("", exit_code=2)).run({"command": "false"})
        assert "Exit Code: 2" in result.llm_content
        assert result.return_display == "Command exited with code: 2"

    @pytest.mark.asyncio
    async def test_exit_code_with_output(self, scripted_tool):
        result = await scripted_tool(exited("oops", exit_code=1)).run({"command": "make"})
        assert result.llm_content.splitlines()[:2] == ["Output: oops", "Exit Code: 1"]
        assert result.return_display == "oops"

    @pytest.mark.asyncio
    async def test_signal(self, scripted_tool):
        result_in = ShellExecutionResult(
            output="", exit_code=None, cause=TerminationCause.SIGNALED, signal="SIGTERM", pid=7
        )
        result = await scripted_tool(result_in).run({"command": "server"})
        assert "Signal: SIGTERM" in result.llm_content
        assert "Exit Code" not in result.llm_content
        assert result.return_display == "Command terminated by signal: SIGTERM"

    @pytest.mark.asyncio
    async def test_background_pids(self, scripted_tool):
        result = await scripted_tool(exited("ok", background_pids=(11, 12))).run(
            {"command": "daemon & echo ok"}
        )
        assert "Background PIDs: 11, 12" in result.llm_content

    @pytest.mark.asyncio
    async def test_error_replaces_wrapper_with_command(self, scripted_tool):
        """The user's command replaces the injected wrapper in error text."""
        error = RuntimeError(f"failed to run: {WRAPPED}")
        result = await scripted_tool(exited("", exit_code=None, error=error)).run(
            {"command": "broken-cmd"}
        )
        assert "Error: failed to run: broken-cmd" in result.llm_content
        assert "pgrep" not in result.llm_content
        assert result.error.kind == ErrorCode.SHELL_EXECUTE_ERROR
        assert result.return_display.startswith("Command failed:")

    @pytest.mark.asyncio
    async def test_spawn_error_kind(self, scripted_tool):
        result_in = ShellExecutionResult(
            output="",
            exit_code=None,
            cause=TerminationCause.SPAWN_ERROR,
            error=FileNotFoundError("No such file or directory: 'bash'"),
        )
        result = await scripted_tool(result_in).run({"command": "ls"})
        assert result.error.kind == ErrorCode.SPAWN_FAILURE
        assert "Process Group PGID" not in result.llm_content

    @pytest.mark.asyncio
    async def test_timeout_message(self, scripted_tool):
        result_in = ShellExecutionResult(
            output="", exit_code=None, cause=TerminationCause.TIMED_OUT, pid=9
        )
        tool = scripted_tool(result_in, inactivity_timeout_ms=90_000)
        result = await tool.run({"command": "sleep 600"})

        expected = (
            "Command was automatically cancelled because it exceeded the timeout "
            "of 1.5 minutes without output."
        )
        assert result.llm_content == expected + " There was no output before it was cancelled."
        assert result.return_display == expected

    @pytest.mark.asyncio
    async def test_cancelled_with_output(self, scripted_tool):
        result_in = ShellExecutionResult(
            output="partial", exit_code=None, cause=TerminationCause.CANCELLED, pid=9
        )
        result = await scripted_tool(result_in).run({"command": "make"})
        assert result.llm_content == (
            "Command was cancelled by user before it could complete. "
            "Below is the output before it was cancelled:\npartial"
        )
        assert result.return_display == "partial"

    @pytest.mark.asyncio
    async def test_cancelled_without_output(self, scripted_tool):
        result_in = ShellExecutionResult(
            output="", exit_code=None, cause=TerminationCause.CANCELLED, pid=9
        )
        result = await scripted_tool(result_in).run({"command": "make"})
        assert result.return_display == "Command cancelled by user."

    @pytest.mark.asyncio
    async def test_backgrounded(self, scripted_tool):
        result_in = ShellExecutionResult(
            output="listening", exit_code=None, cause=TerminationCause.BACKGROUNDED, pid=321
        )
        result = await scripted_tool(result_in).run({"command": "node server.js"})

        message = "Command moved to background (PID: 321). Output hidden. Press Ctrl+B to view."
        assert result.llm_content == message
        assert result.return_display == message
        assert result.data == {
            "pid": 321,
            "command": "node server.js",
            "initialOutput": "listening",
        }

    @pytest.mark.asyncio
    async def test_debug_mode_shows_full_result(self, scripted_tool):
        result = await scripted_tool(exited("hi"), debug_mode=True).run({"command": "echo hi"})
        assert result.return_display == result.llm_content

    @pytest.mark.asyncio
    async def test_summarizer(self, scripted_tool):
        seen = []

        async def summarize(text, cancellation):
            seen.append(text)
            return "summary"

        result_in = ShellExecutionResult(
            output="", exit_code=None, cause=TerminationCause.BACKGROUNDED, pid=5
        )
        tool = scripted_tool(result_in, summarize_tool_output=True)
        tool.summarizer = summarize
        result = await tool.run({"command": "server"})

        assert result.llm_content == "summary"
        assert result.data is None
        assert seen[0].startswith("Command moved to background")

    @pytest.mark.asyncio
    async def test_runs_stripped_command_in_workspace(self, scripted_tool, workspace):
        tool = scripted_tool(exited("x"))
        await tool.run({"command": "bash -c 'ls -la'"})
        call = tool.execution_service.calls[0]
        assert call["command"] == "ls -la"
        assert call["cwd"] == workspace.resolve()

    @pytest.mark.asyncio
    async def test_terminal_reasons(self, scripted_tool):
        invocation = scripted_tool(exited("x")).build({"command": "echo x"})
        await invocation.execute()
        assert invocation.state == InvocationState.TERMINAL
        assert invocation.terminal_reason == TerminalReason.COMPLETED
        assert invocation.pid == 4242

    @pytest.mark.asyncio
    async def test_result_dict(self, scripted_tool):
        result_in = ShellExecutionResult(
            output="", exit_code=None, cause=TerminationCause.SPAWN_ERROR, error=OSError("boom")
        )
        payload = (await scripted_tool(result_in).run({"command": "ls"})).to_dict()
        assert payload["error"] == {"message": "boom", "type": ErrorCode.SPAWN_FAILURE}
        assert "data" not in payload


class TestStreaming:
    """Tests for live output updates."""

    @pytest.mark.asyncio
    async def test_cumulative_updates(self, scripted_tool):
        events = [DataEvent("a\n"), DataEvent("b\n"), ExitEvent(exit_code=0)]
        updates = []
        await scripted_tool(exited("a\nb"), events).run(
            {"command": "printf"}, update_output=updates.append
        )
        assert updates == ["a\n", "a\nb\n"]

    @pytest.mark.asyncio
    async def test_binary_stream(self, scripted_tool):
        events = [
            DataEvent("text"),
            BinaryDetectedEvent(),
            BinaryProgressEvent(bytes_received=2048),
            DataEvent("ignored"),
        ]
        updates = []
        await scripted_tool(exited(""), events).run(
            {"command": "cat image.png"}, update_output=updates.append
        )
        # Progress within a second of the last update is throttled
        assert updates == ["text", "[Binary output detected. Halting stream...]"]

    @pytest.mark.asyncio
    async def test_background_requests_are_not_streamed(self, scripted_tool):
        result_in = ShellExecutionResult(
            output="", exit_code=None, cause=TerminationCause.BACKGROUNDED, pid=5
        )
        updates = []
        await scripted_tool(result_in, [DataEvent("booting")]).run(
            {"command": "server", "is_background": True}, update_output=updates.append
        )
        assert updates == []

    @pytest.mark.asyncio
    async def test_unknown_event_raises(self, scripted_tool):
        with pytest.raises(UnhandledEventError):
            await scripted_tool(exited(""), [object()]).run({"command": "ls"})

    @pytest.mark.asyncio
    async def test_set_pid(self, scripted_tool):
        pids = []
        await scripted_tool(exited("")).run({"command": "ls"}, set_pid=pids.append)
        assert pids == [4242]


class TestBeforeStart:
    """Tests for requests that never reach a process."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, scripted_tool):
        token = CancellationToken()
        token.cancel()
        tool = scripted_tool(exited(""))
        result = await tool.run({"command": "ls"}, cancellation=token)

        assert result.llm_content == "Command was cancelled by user before it could start."
        assert result.return_display == "Command cancelled by user."
        assert tool.execution_service.calls == []

    @pytest.mark.asyncio
    async def test_path_outside_workspace(self, scripted_tool):
        tool = scripted_tool(exited(""))
        result = await tool.run({"command": "ls", "dir_path": "../.."})

        assert result.error.kind == ErrorCode.PATH_NOT_IN_WORKSPACE
        assert result.return_display == "Path not in workspace."
        assert result.llm_content.startswith("Path not in workspace:")
        assert tool.execution_service.calls == []

    @pytest.mark.asyncio
    async def test_invalid_params(self, scripted_tool):
        result = await scripted_tool(exited("")).run({"command": ""})
        assert result.error.kind == ErrorCode.INVALID_TOOL_PARAMS
        assert result.llm_content == "Command cannot be empty."


@posix_only
class TestEndToEnd:
    """Tests that run real commands through the whole lifecycle."""

    @pytest.mark.asyncio
    async def test_echo(self, make_tool):
        result = await make_tool(approval_mode="yolo").run({"command": "echo hi"})

        lines = result.llm_content.splitlines()
        assert lines[0] == "Output: hi"
        assert lines[-1].startswith("Process Group PGID: ")
        assert not any(line.startswith(("Exit Code", "Signal", "Background PIDs")) for line in lines)
        assert result.return_display == "hi\n"

    @pytest.mark.asyncio
    async def test_silent_success(self, make_tool):
        result = await make_tool(approval_mode="yolo").run({"command": "true"})
        assert result.return_display == ""

    @pytest.mark.asyncio
    async def test_inactivity_timeout(self, make_tool):
        tool = make_tool(approval_mode="yolo", inactivity_timeout_ms=100)
        result = await asyncio.wait_for(tool.run({"command": "sleep 60"}), timeout=10)

        assert "exceeded the timeout of 0.0 minutes without output" in result.llm_content
        assert "no output before it was cancelled" in result.llm_content
        assert result.error is None

    @pytest.mark.asyncio
    async def test_background(self, make_tool):
        updates = []
        pids = []
        tool = make_tool(approval_mode="yolo")
        result = await tool.run(
            {"command": "echo booting; sleep 30", "is_background": True},
            update_output=updates.append,
            set_pid=pids.append,
        )
        try:
            assert result.llm_content == (
                f"Command moved to background (PID: {pids[0]}). "
                "Output hidden. Press Ctrl+B to view."
            )
            assert result.data["pid"] == pids[0]
            assert updates == []
        finally:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(pids[0], signal.SIGKILL)
            await tool.execution_service.wait_detached(timeout=5)


class TestRegisteredTool:
    """Tests for the registry functions with deferred approval."""

    def test_registered(self):
        definition = get_registry().get("shell_command")
        assert definition is not None
        assert definition.category == ToolCategory.EXECUTION
        assert definition.requires_confirmation
        assert definition.is_async
        assert "execute_with_approval" in get_registry()

    @pytest.mark.asyncio
    async def test_validation_error(self, settings):
        result = await shell_command("")
        assert result["success"] is False
        assert result["error"]["type"] == ErrorCode.INVALID_TOOL_PARAMS

    @pytest.mark.asyncio
    async def test_pending_approval(self, settings):
        result = await shell_command("make build")
        assert result["success"] is False
        assert result["pending_approval"] is True
        assert result["root_commands"] == ["make"]
        assert result["approval_request_id"]

    @pytest.mark.asyncio
    async def test_cancel_pending(self, settings):
        pending = await shell_command("make build")
        result = await execute_with_approval(pending["approval_request_id"], "cancel")
        assert result["success"] is False
        assert result["llmContent"] == CANCELLED_BEFORE_START

    @pytest.mark.asyncio
    async def test_unknown_request(self, settings):
        with pytest.raises(ToolError):
            await execute_with_approval("missing")

    @posix_only
    @pytest.mark.asyncio
    async def test_allowlisted_runs(self, workspace):
        from agentic_shell.config import SettingsContext, ShellSettings

        with SettingsContext(ShellSettings(target_dir=workspace, allowed_tools=["echo"])):
            result = await shell_command("echo hi")
        assert result["success"] is True
        assert result["llmContent"].startswith("Output: hi")

    @posix_only
    @pytest.mark.asyncio
    async def test_proceed_once_runs_once(self, settings):
        pending = await shell_command("echo approved")
        result = await execute_with_approval(pending["approval_request_id"], "proceed_once")
        assert result["success"] is True
        assert result["llmContent"].startswith("Output: approved")

        again = await shell_command("echo approved")
        assert again["pending_approval"] is True

    @posix_only
    @pytest.mark.asyncio
    async def test_proceed_always_saves(self, settings, tmp_path):
        pending = await shell_command("echo saved")
        await execute_with_approval(pending["approval_request_id"], "proceed_always_and_save")

        saved = json.loads((tmp_path / ".agentic_shell" / "settings.json").read_text())
        assert saved["allowed_tools"] == ["echo"]
        again = await shell_command("echo again")
        assert again["success"] is True
