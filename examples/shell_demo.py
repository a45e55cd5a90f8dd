#!/usr/bin/env python
"""Standalone demo for the shell tool.

This demo walks through the tool's lifecycle in a temporary workspace:
1. Root command extraction and policy classification
2. Command execution with streamed output
3. Inactivity timeout
4. Background promotion
5. Deferred approval through the registered tool functions

Usage:
    python examples/shell_demo.py
"""

import asyncio
import os
import signal
import tempfile
from pathlib import Path

from agentic_shell import SettingsContext, ShellConfig, ShellSettings, ShellTool
from agentic_shell.hitl import ApprovalManager
from agentic_shell.settings_persistence import SettingsPersistence
from agentic_shell.tools.shell import (
    CommandPolicyClassifier,
    ShellProfileId,
    ShellType,
    execute_with_approval,
    get_command_roots,
    shell_command,
)


# =============================================================================
# Demo Functions
# =============================================================================


def demo_classification():
    """Demo root extraction and classification (NO commands are executed)."""
    print("\n" + "=" * 60)
    print("Policy Classification Demo")
    print("=" * 60)

    classifier = CommandPolicyClassifier(ShellType.BASH)
    allowed = ["ls", "git status", "npm *"]
    test_commands = [
        "ls -la",
        "git status && git push",
        "npm run build | tee build.log",
        "echo $(whoami) > out.txt",
        "bash -c 'ls -la'",
    ]

    print(f"\n  Allow-list: {allowed}")
    for cmd in test_commands:
        roots = get_command_roots(cmd)
        verdict = classifier.classify(cmd, allowed_patterns=allowed)
        print(f"    [{verdict.decision.value:8}] {cmd:<35} roots={roots}")

    verdict = classifier.classify("make build", is_interactive=False)
    print(f"\n  Non-interactive 'make build': {verdict.reason}")
    print()


async def demo_execution(tool: ShellTool):
    """Demo execution with streamed output."""
    print("\n" + "=" * 60)
    print("Execution Demo")
    print("=" * 60)

    for cmd in ["echo 'Hello, World!'", "echo out; echo err >&2", "exit 3", "sleep 30 & echo started"]:
        print(f"\n  Command: {cmd}")
        result = await tool.run({"command": cmd})
        for line in result.llm_content.splitlines():
            print(f"    {line}")
        print(f"    Display: {result.return_display!r}")
    print()


async def demo_streaming(tool: ShellTool):
    """Demo cumulative output updates."""
    print("\n" + "=" * 60)
    print("Streaming Demo")
    print("=" * 60)

    updates: list[str] = []
    await tool.run(
        {"command": "for i in 1 2 3; do echo line $i; sleep 0.2; done"},
        update_output=updates.append,
    )
    print(f"\n  Received {len(updates)} updates")
    if updates:
        print(f"  Last update: {updates[-1]!r}")
    print()


async def demo_timeout(settings: ShellSettings, shell_config: ShellConfig):
    """Demo the inactivity timeout."""
    print("\n" + "=" * 60)
    print("Inactivity Timeout Demo")
    print("=" * 60)

    tool = ShellTool(
        settings=settings.model_copy(update={"inactivity_timeout_ms": 1000}),
        shell_config=shell_config,
    )
    print("\n  Command: echo working; sleep 10 (timeout: 1s without output)")
    result = await tool.run({"command": "echo working; sleep 10"})
    print(f"    {result.llm_content}")
    print()


async def demo_background(tool: ShellTool):
    """Demo moving a long-running command to the background."""
    print("\n" + "=" * 60)
    print("Background Demo")
    print("=" * 60)

    result = await tool.run({"command": "echo server ready; sleep 30", "is_background": True})
    print(f"\n  {result.llm_content}")
    print(f"  Data: {result.data}")
    if result.data:
        os.killpg(result.data["pid"], signal.SIGTERM)
        print(f"  Stopped process group {result.data['pid']}")
    print()


async def demo_deferred_approval():
    """Demo the registered functions with a deferred approval."""
    print("\n" + "=" * 60)
    print("Deferred Approval Demo")
    print("=" * 60)

    pending = await shell_command("date +%Y", description="Print the year")
    print(f"\n  shell_command -> pending_approval={pending.get('pending_approval')}")
    print(f"    {pending.get('message')}")

    result = await execute_with_approval(pending["approval_request_id"], "proceed_once")
    print(f"  execute_with_approval -> {result['llmContent'].splitlines()[0]}")

    again = await shell_command("date +%Y")
    print(f"  second call -> pending_approval={again.get('pending_approval')}")
    print()


async def main():
    """Run all demos."""
    print("\n" + "#" * 60)
    print("#  Shell Tool Demo")
    print("#" * 60)

    with tempfile.TemporaryDirectory() as temp_dir:
        workspace = Path(temp_dir)
        (workspace / "notes.txt").write_text("Hello from the workspace!\n")

        settings = ShellSettings(target_dir=workspace, approval_mode="yolo")
        shell_config = ShellConfig(profile=ShellProfileId.BASH)
        tool = ShellTool(
            settings=settings,
            shell_config=shell_config,
            policy_store=ApprovalManager(
                persistence=SettingsPersistence(path=workspace / "settings.json")
            ),
        )

        demo_classification()
        await demo_execution(tool)
        await demo_streaming(tool)
        await demo_timeout(settings, shell_config)
        await demo_background(tool)

        with SettingsContext(ShellSettings(target_dir=workspace)):
            await demo_deferred_approval()

    print("\n" + "#" * 60)
    print("#  Demo Complete!")
    print("#" * 60 + "\n")


if __name__ == "__main__":
    asyncio.run(main())
