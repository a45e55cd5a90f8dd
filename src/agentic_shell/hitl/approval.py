"""Approval management for shell commands.

Keeps the session allow-list that "always allow" answers append to, writes
entries the user asked to keep to the project settings file, and tracks
confirmation requests handed to callers that cannot block on a prompt.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable

from agentic_shell.logging import Loggers
from agentic_shell.settings_persistence import SettingsPersistence
from agentic_shell.tools.shell.classifier import get_policy_update_prefixes
from agentic_shell.tools.shell.models import ConfirmationOutcome
from agentic_shell.tools.shell.profiles import ShellType

logger = Loggers.policy()


class ApprovalStatus(Enum):
    """Status of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class ApprovalRequest:
    """Request for user approval of a command."""

    id: str
    command: str
    root_commands: list[str]
    root_command_display: str
    description: str | None = None
    dir_path: str | None = None
    is_background: bool = False
    shell_type: ShellType = ShellType.BASH
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ApprovalResult:
    """Result of an approval decision."""

    request_id: str
    status: ApprovalStatus
    outcome: ConfirmationOutcome
    decided_at: datetime = field(default_factory=datetime.now)


class ApprovalManager:
    """Allow-list store and approval request tracker.

    The allow-list is append-only. Concurrent additions are serialized so
    entries are saved in the order they were confirmed.

    Example:
        manager = ApprovalManager(allowed_patterns=["ls"])
        await manager.add_allow_rule(["git"], save=False)
        assert "git" in manager.allowed_patterns
    """

    def __init__(
        self,
        allowed_patterns: Iterable[str] = (),
        persistence: SettingsPersistence | None = None,
    ):
        """Initialize approval manager.

        Args:
            allowed_patterns: Initial allow-list entries (e.g. from settings)
            persistence: Where saved entries are written
        """
        self._allowed: list[str] = list(dict.fromkeys(allowed_patterns))
        self._persistence = persistence or SettingsPersistence()
        self._lock = asyncio.Lock()
        self._pending: dict[str, ApprovalRequest] = {}
        self._results: dict[str, ApprovalResult] = {}
        self._grants: dict[str, int] = {}

    @property
    def allowed_patterns(self) -> tuple[str, ...]:
        return tuple(self._allowed)

    def extend(self, patterns: Iterable[str]) -> None:
        """Add entries for this session only (e.g. from configuration)."""
        for pattern in patterns:
            if pattern not in self._allowed:
                self._allowed.append(pattern)

    async def add_allow_rule(self, prefixes: list[str], save: bool = False) -> None:
        """Append allow-list entries.

        Args:
            prefixes: Root commands or command prefixes to allow
            save: Also write them to the project settings file
        """
        async with self._lock:
            self.extend(prefixes)
            logger.info("allow_rule_added", prefixes=prefixes, save=save)
            if save:
                path = await asyncio.to_thread(self._persistence.add_allowed_tools, prefixes)
                logger.info("allow_rule_saved", path=str(path))

    async def apply_outcome(
        self,
        command: str,
        outcome: ConfirmationOutcome,
        shell_type: ShellType | str = ShellType.BASH,
    ) -> list[str] | None:
        """Persist the allow-rule implied by a confirmation outcome.

        Returns:
            The entries added, or None if the outcome adds no rule.
        """
        prefixes = get_policy_update_prefixes(command, outcome, shell_type)
        if prefixes is None:
            return None
        await self.add_allow_rule(
            prefixes, save=outcome == ConfirmationOutcome.PROCEED_ALWAYS_AND_SAVE
        )
        return prefixes

    # -------------------------------------------------------------------------
    # Deferred approval
    # -------------------------------------------------------------------------

    def request_approval(
        self,
        command: str,
        root_commands: list[str],
        root_command_display: str,
        description: str | None = None,
        dir_path: str | None = None,
        is_background: bool = False,
        shell_type: ShellType | str = ShellType.BASH,
    ) -> ApprovalRequest:
        """Create an approval request for a caller that resolves it later."""
        request = ApprovalRequest(
            id=str(uuid.uuid4())[:8],
            command=command,
            root_commands=root_commands,
            root_command_display=root_command_display,
            description=description,
            dir_path=dir_path,
            is_background=is_background,
            shell_type=ShellType(shell_type),
        )
        self._pending[request.id] = request
        return request

    def get_pending_request(self, request_id: str) -> ApprovalRequest | None:
        """Get a pending request by ID."""
        return self._pending.get(request_id)

    async def resolve(
        self, request_id: str, outcome: ConfirmationOutcome
    ) -> ApprovalRequest | None:
        """Record the user's answer to a pending request.

        A "once" answer grants a single run of exactly that command; the
        "always" answers add allow-list entries.

        Returns:
            The resolved request, or None if no request has this ID.
        """
        request = self._pending.pop(request_id, None)
        if request is None:
            return None

        if outcome == ConfirmationOutcome.CANCEL:
            status = ApprovalStatus.REJECTED
        else:
            status = ApprovalStatus.APPROVED
            if outcome == ConfirmationOutcome.PROCEED_ONCE:
                self._grants[request.command] = self._grants.get(request.command, 0) + 1
            else:
                await self.apply_outcome(request.command, outcome, request.shell_type)

        self._results[request_id] = ApprovalResult(
            request_id=request_id, status=status, outcome=outcome
        )
        return request

    def consume_grant(self, command: str) -> bool:
        """Use up a one-time grant for ``command`` if there is one."""
        remaining = self._grants.get(command, 0)
        if remaining <= 0:
            return False
        if remaining == 1:
            del self._grants[command]
        else:
            self._grants[command] = remaining - 1
        return True

    def is_approved(self, request_id: str) -> bool:
        """Check if request was approved."""
        result = self._results.get(request_id)
        return result is not None and result.status == ApprovalStatus.APPROVED

    def is_rejected(self, request_id: str) -> bool:
        """Check if request was rejected."""
        result = self._results.get(request_id)
        return result is not None and result.status == ApprovalStatus.REJECTED

    def get_result(self, request_id: str) -> ApprovalResult | None:
        """Get the result for a request."""
        return self._results.get(request_id)


# Session-wide manager used by the registered tool function
_default_manager: ApprovalManager | None = None


def get_approval_manager() -> ApprovalManager:
    """Get the session approval manager, creating it on first use."""
    global _default_manager
    if _default_manager is None:
        _default_manager = ApprovalManager()
    return _default_manager


def set_approval_manager(manager: ApprovalManager | None) -> None:
    """Replace (or with None, reset) the session approval manager."""
    global _default_manager
    _default_manager = manager
