"""Shared test fixtures for agentic-shell tests.

Provides:
- An isolated settings context rooted in a temporary workspace
- A fresh approval manager per test
- Helpers for building the shell tool against a fixed bash configuration
"""

import os
from pathlib import Path

import pytest

from agentic_shell.config import SettingsContext, ShellSettings
from agentic_shell.hitl.approval import ApprovalManager, set_approval_manager
from agentic_shell.settings_persistence import SettingsPersistence
from agentic_shell.tools.shell import ShellConfig, ShellProfileId, ShellTool


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep tests away from the real home directory, cwd and environment."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("SHELL", "/bin/bash")
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("AGENTIC_SHELL_"):
            monkeypatch.delenv(key)
    monkeypatch.setattr("agentic_shell.config._settings_instance", None)
    set_approval_manager(None)
    yield
    set_approval_manager(None)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary workspace directory."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def settings(workspace: Path):
    """Interactive settings rooted in the temporary workspace."""
    test_settings = ShellSettings(target_dir=workspace)
    with SettingsContext(test_settings):
        yield test_settings


@pytest.fixture
def bash_config() -> ShellConfig:
    """Shell config pinned to bash so tests do not depend on $SHELL."""
    return ShellConfig(profile=ShellProfileId.BASH)


@pytest.fixture
def approval_manager(tmp_path: Path) -> ApprovalManager:
    """Approval manager that saves into the temporary directory."""
    persistence = SettingsPersistence(path=tmp_path / "saved" / "settings.json")
    return ApprovalManager(persistence=persistence)


@pytest.fixture
def make_tool(settings: ShellSettings, bash_config: ShellConfig, approval_manager: ApprovalManager):
    """Factory for shell tools with per-test settings overrides."""

    def factory(**overrides) -> ShellTool:
        tool_settings = settings.model_copy(update=overrides) if overrides else settings
        return ShellTool(
            settings=tool_settings,
            shell_config=bash_config,
            policy_store=approval_manager,
        )

    return factory
