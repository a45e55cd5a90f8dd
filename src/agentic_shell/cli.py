"""Command-line front end for the shell tool.

Runs a single command through validation, confirmation and execution,
streaming its output to the terminal:

    agentic-shell "git status"
    agentic-shell --dir src --description "List sources" "ls -la"
    agentic-shell --list-profiles
"""

import asyncio
import contextlib
import signal
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from agentic_shell import __version__
from agentic_shell.config import ShellSettings, set_settings
from agentic_shell.logging import Loggers, configure_logging
from agentic_shell.tools.shell import (
    SHELL_PROFILE_REGISTRY,
    CancellationToken,
    ConfirmationDetails,
    ConfirmationOutcome,
    ShellConfig,
    ShellProfileId,
    ShellTool,
    ShellToolResult,
)
from agentic_shell.tools.shell.profiles import format_tool_replacements

console = Console()
logger = Loggers.cli()

_CHOICES = {
    "once": ConfirmationOutcome.PROCEED_ONCE,
    "always": ConfirmationOutcome.PROCEED_ALWAYS,
    "save": ConfirmationOutcome.PROCEED_ALWAYS_AND_SAVE,
    "cancel": ConfirmationOutcome.CANCEL,
}


def build_settings(
    yolo: bool = False,
    non_interactive: bool = False,
    timeout_ms: int | None = None,
    debug: bool = False,
) -> ShellSettings:
    """Settings from the config layers with command-line overrides on top."""
    overrides: dict[str, Any] = {}
    if yolo:
        overrides["approval_mode"] = "yolo"
    if non_interactive:
        overrides["interactive"] = False
    if timeout_ms is not None:
        overrides["inactivity_timeout_ms"] = timeout_ms
    if debug:
        overrides["debug_mode"] = True
        overrides["log_level"] = "debug"
    return ShellSettings(**overrides)


def load_shell_config(settings: ShellSettings, profile: str | None = None) -> ShellConfig:
    """Load the shell config, optionally forcing a profile.

    Raises:
        ValueError: If the file or the forced profile names an unknown value.
    """
    if settings.shell_config_path:
        shell_config = ShellConfig.from_yaml(settings.shell_config_path)
    else:
        shell_config = ShellConfig.load_default()
    if profile:
        shell_config.profile = ShellProfileId(profile)
    return shell_config


def print_profiles() -> None:
    """Print the shell profile registry as a table."""
    table = Table(title="Shell Profiles", title_justify="left")
    table.add_column("Profile", style="bold cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Type", style="dim")
    table.add_column("Invocation", no_wrap=True)
    table.add_column("Search", style="dim")

    for profile in SHELL_PROFILE_REGISTRY.values():
        table.add_row(
            profile.id.value,
            profile.display_name,
            profile.shell_type.value,
            escape(profile.configuration.invocation),
            profile.search_command,
        )
    console.print(table)


def print_shell_info(tool: ShellTool) -> None:
    """Print the resolved shell configuration and guidance."""
    table = Table(show_header=False, box=None, padding=(0, 2, 0, 0))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")

    profile_id = tool.shell_config.resolve_profile_id()
    table.add_row("Profile", profile_id.value if profile_id else "[dim]platform default[/dim]")
    table.add_row("Invocation", escape(tool.shell.invocation))
    table.add_row("Shell type", tool.shell.shell.value)
    table.add_row("Guidance", escape(tool.shell_config.resolve_guidance() or ""))
    table.add_row("Search", escape(tool.shell_config.resolve_search_command() or ""))
    tool_guidance = tool.shell_config.resolve_tool_guidance()
    if tool_guidance:
        table.add_row("Tools", escape(format_tool_replacements(tool_guidance)))
    table.add_row("Workspace", str(tool.settings.workspace_root))
    allowed = ", ".join(tool.policy_store.allowed_patterns)
    table.add_row("Allowed", escape(allowed) if allowed else "[dim]none[/dim]")

    console.print(Panel(table, title="[bold]Shell[/bold]", border_style="cyan"))


async def confirm_in_terminal(details: ConfirmationDetails) -> ConfirmationOutcome:
    """Ask the user about a command with a rich prompt."""
    console.print(
        Panel(
            f"[bold]{escape(details.command)}[/bold]\n[dim]Runs: {escape(details.root_command)}[/dim]",
            title=f"[yellow]{details.title}[/yellow]",
            border_style="yellow",
        )
    )
    answer = await asyncio.to_thread(
        Prompt.ask,
        "Allow execution?",
        choices=list(_CHOICES),
        default="once",
        console=console,
    )
    return _CHOICES[answer]


class _OutputPrinter:
    """Prints the new part of cumulative output updates."""

    def __init__(self) -> None:
        self.printed = ""

    def __call__(self, text: str) -> None:
        if text.startswith(self.printed):
            console.out(text[len(self.printed):], end="", highlight=False)
        else:
            console.print(f"\n[dim]{escape(text)}[/dim]")
        self.printed = text


async def run_command(tool: ShellTool, params: dict[str, Any]) -> ShellToolResult:
    """Run one request through the tool, cancelling on Ctrl+C."""
    cancellation = CancellationToken()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, cancellation.cancel)

    printer = _OutputPrinter()
    try:
        result = await tool.run(
            params,
            cancellation=cancellation,
            update_output=printer,
            confirm=confirm_in_terminal,
            set_pid=lambda pid: logger.debug("command_started", pid=pid),
        )
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)

    if printer.printed and not printer.printed.endswith("\n"):
        console.out("")
    if result.return_display and result.return_display.strip() != printer.printed.strip():
        console.print(result.return_display, highlight=False, markup=False)
    if result.error is not None:
        console.print(f"[red]{result.error.kind}[/red]: {escape(result.error.message)}")
    return result


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.argument("command", required=False)
@click.option("--dir", "dir_path", help="Directory to run in, relative to the workspace")
@click.option("--description", help="Short description shown in the prompt")
@click.option("--background", is_flag=True, help="Move the command to the background")
@click.option(
    "--profile",
    type=click.Choice([p.value for p in ShellProfileId]),
    help="Shell profile to use",
)
@click.option("--yolo", is_flag=True, help="Run without confirmation")
@click.option(
    "--non-interactive",
    is_flag=True,
    help="Refuse commands that are not on the allow-list instead of asking",
)
@click.option("--timeout-ms", type=int, help="Inactivity timeout in milliseconds (<= 0 disables)")
@click.option("--debug", is_flag=True, help="Show the full tool result")
@click.option("--list-profiles", is_flag=True, help="List the known shell profiles")
@click.option("--shell-info", is_flag=True, help="Show the resolved shell configuration")
@click.pass_context
def cli(
    ctx: click.Context,
    command: str | None,
    dir_path: str | None,
    description: str | None,
    background: bool,
    profile: str | None,
    yolo: bool,
    non_interactive: bool,
    timeout_ms: int | None,
    debug: bool,
    list_profiles: bool,
    shell_info: bool,
) -> None:
    """Run a shell command the way an agent's shell tool would."""
    if list_profiles:
        print_profiles()
        return

    settings = build_settings(yolo, non_interactive, timeout_ms, debug)
    set_settings(settings)
    configure_logging(settings)

    try:
        shell_config = load_shell_config(settings, profile)
    except ValueError as e:
        console.print(f"[red]Invalid shell configuration:[/red] {escape(str(e))}")
        ctx.exit(2)
    tool = ShellTool(settings=settings, shell_config=shell_config)

    if shell_info:
        print_shell_info(tool)
        return
    if not command:
        raise click.UsageError("a command is required", ctx=ctx)

    logger.debug("cli_run", command=command, cwd=str(Path.cwd()))
    result = asyncio.run(
        run_command(
            tool,
            {
                "command": command,
                "description": description,
                "dir_path": dir_path,
                "is_background": background,
            },
        )
    )
    ctx.exit(1 if result.error is not None else 0)


def main() -> None:
    """Entry point of the ``agentic-shell`` script."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
