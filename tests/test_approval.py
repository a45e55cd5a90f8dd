"""Tests for the approval manager and settings persistence of allow rules."""

import asyncio
import json

import pytest

from agentic_shell.hitl import (
    ApprovalManager,
    ApprovalStatus,
    get_approval_manager,
    set_approval_manager,
)
from agentic_shell.settings_persistence import SettingsPersistence
from agentic_shell.tools.shell.models import ConfirmationOutcome
from agentic_shell.tools.shell.profiles import ShellType


@pytest.fixture
def saved_path(tmp_path):
    return tmp_path / "saved" / "settings.json"


@pytest.fixture
def manager(saved_path):
    return ApprovalManager(persistence=SettingsPersistence(path=saved_path))


class TestAllowList:
    """Tests for the session allow-list."""

    def test_initial_patterns_deduplicated(self):
        manager = ApprovalManager(allowed_patterns=["ls", "git", "ls"])
        assert manager.allowed_patterns == ("ls", "git")

    def test_extend_keeps_order(self, manager):
        manager.extend(["git", "npm test"])
        manager.extend(["git", "make"])
        assert manager.allowed_patterns == ("git", "npm test", "make")

    @pytest.mark.asyncio
    async def test_add_allow_rule_session_only(self, manager, saved_path):
        await manager.add_allow_rule(["git"])
        assert "git" in manager.allowed_patterns
        assert not saved_path.exists()

    @pytest.mark.asyncio
    async def test_add_allow_rule_saved(self, manager, saved_path):
        await manager.add_allow_rule(["git", "npm"], save=True)
        assert json.loads(saved_path.read_text()) == {"allowed_tools": ["git", "npm"]}

    @pytest.mark.asyncio
    async def test_saved_rules_keep_existing_settings(self, manager, saved_path):
        saved_path.parent.mkdir(parents=True)
        saved_path.write_text(json.dumps({"approval_mode": "yolo", "allowed_tools": ["ls"]}))

        await manager.add_allow_rule(["ls", "git"], save=True)

        data = json.loads(saved_path.read_text())
        assert data == {"approval_mode": "yolo", "allowed_tools": ["ls", "git"]}

    @pytest.mark.asyncio
    async def test_concurrent_additions_all_saved(self, manager, saved_path):
        await asyncio.gather(
            manager.add_allow_rule(["git"], save=True),
            manager.add_allow_rule(["npm"], save=True),
            manager.add_allow_rule(["make"], save=True),
        )
        saved = json.loads(saved_path.read_text())["allowed_tools"]
        assert sorted(saved) == ["git", "make", "npm"]
        assert list(manager.allowed_patterns) == saved


class TestApplyOutcome:
    """Tests for turning confirmation answers into allow rules."""

    @pytest.mark.asyncio
    async def test_proceed_once_adds_nothing(self, manager):
        assert await manager.apply_outcome("git status", ConfirmationOutcome.PROCEED_ONCE) is None
        assert manager.allowed_patterns == ()

    @pytest.mark.asyncio
    async def test_proceed_always_adds_roots(self, manager, saved_path):
        added = await manager.apply_outcome(
            "git status && npm test", ConfirmationOutcome.PROCEED_ALWAYS
        )
        assert added == ["git", "npm"]
        assert manager.allowed_patterns == ("git", "npm")
        assert not saved_path.exists()

    @pytest.mark.asyncio
    async def test_proceed_always_and_save(self, manager, saved_path):
        await manager.apply_outcome("make test", ConfirmationOutcome.PROCEED_ALWAYS_AND_SAVE)
        assert json.loads(saved_path.read_text())["allowed_tools"] == ["make"]

    @pytest.mark.asyncio
    async def test_powershell_roots(self, manager):
        added = await manager.apply_outcome(
            "Get-ChildItem | Select-Object Name",
            ConfirmationOutcome.PROCEED_ALWAYS,
            ShellType.POWERSHELL,
        )
        assert added == ["Get-ChildItem", "Select-Object"]


class TestDeferredApproval:
    """Tests for approval requests resolved after the tool call returned."""

    def _request(self, manager, command="make build"):
        return manager.request_approval(
            command=command,
            root_commands=["make"],
            root_command_display="make",
            dir_path="src",
        )

    def test_request_is_pending(self, manager):
        request = self._request(manager)
        assert manager.get_pending_request(request.id) is request
        assert request.dir_path == "src"
        assert request.shell_type == ShellType.BASH

    @pytest.mark.asyncio
    async def test_unknown_request(self, manager):
        assert await manager.resolve("missing", ConfirmationOutcome.PROCEED_ONCE) is None

    @pytest.mark.asyncio
    async def test_proceed_once_grants_single_run(self, manager):
        request = self._request(manager)
        resolved = await manager.resolve(request.id, ConfirmationOutcome.PROCEED_ONCE)

        assert resolved is request
        assert manager.is_approved(request.id)
        assert manager.get_pending_request(request.id) is None
        assert manager.allowed_patterns == ()
        assert manager.consume_grant("make build") is True
        assert manager.consume_grant("make build") is False

    @pytest.mark.asyncio
    async def test_grant_is_exact(self, manager):
        request = self._request(manager)
        await manager.resolve(request.id, ConfirmationOutcome.PROCEED_ONCE)
        assert manager.consume_grant("make clean") is False

    @pytest.mark.asyncio
    async def test_cancel_rejects(self, manager):
        request = self._request(manager)
        await manager.resolve(request.id, ConfirmationOutcome.CANCEL)

        assert manager.is_rejected(request.id)
        assert manager.get_result(request.id).status == ApprovalStatus.REJECTED
        assert manager.consume_grant("make build") is False

    @pytest.mark.asyncio
    async def test_proceed_always_adds_rule(self, manager):
        request = self._request(manager)
        await manager.resolve(request.id, ConfirmationOutcome.PROCEED_ALWAYS)

        assert manager.is_approved(request.id)
        assert "make" in manager.allowed_patterns

    @pytest.mark.asyncio
    async def test_resolved_only_once(self, manager):
        request = self._request(manager)
        await manager.resolve(request.id, ConfirmationOutcome.PROCEED_ONCE)
        assert await manager.resolve(request.id, ConfirmationOutcome.PROCEED_ONCE) is None


class TestSessionManager:
    """Tests for the session-wide manager accessors."""

    def test_created_once(self):
        assert get_approval_manager() is get_approval_manager()

    def test_replace_and_reset(self, manager):
        set_approval_manager(manager)
        assert get_approval_manager() is manager
        set_approval_manager(None)
        assert get_approval_manager() is not manager
