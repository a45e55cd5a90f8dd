"""Human-in-the-Loop module for agentic shell.

Provides the allow-list store that confirmation answers feed, and
approval requests for callers that resolve confirmations later.
"""

from agentic_shell.hitl.approval import (
    ApprovalManager,
    ApprovalRequest,
    ApprovalResult,
    ApprovalStatus,
    get_approval_manager,
    set_approval_manager,
)

__all__ = [
    "ApprovalManager",
    "ApprovalRequest",
    "ApprovalResult",
    "ApprovalStatus",
    "get_approval_manager",
    "set_approval_manager",
]
