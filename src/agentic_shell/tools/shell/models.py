"""Data models for the shell tool.

Provides dataclasses for command parsing, policy verdicts, execution
events and results, and the tool's request/result contract.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Parsing
# =============================================================================


@dataclass
class Redirect:
    """Represents a shell redirection."""

    operator: str  # e.g., ">", ">>", "<", "2>"
    target: str  # The file or descriptor


@dataclass
class CommandNode:
    """Parsed representation of a shell command."""

    command: str  # Root command (e.g., "rm")
    args: list[str] = field(default_factory=list)
    redirections: list[Redirect] = field(default_factory=list)
    pipes_to: "CommandNode | None" = None
    chained_with: list[tuple[str, "CommandNode"]] = field(
        default_factory=list
    )  # [("&&", node), (";", node)]
    subshells: list["CommandNode"] = field(default_factory=list)
    background: bool = False  # Ends with &
    raw_command: str = ""  # Original command text


@dataclass
class TokenizeResult:
    """Result of tokenizing a shell command."""

    nodes: list[CommandNode]
    has_pipes: bool = False
    has_chains: bool = False  # ;, &&, ||
    has_subshells: bool = False  # $(), ``, (...)
    has_redirections: bool = False
    has_background: bool = False
    parse_errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CommandDetail:
    """One simple command found in a compound command."""

    name: str
    text: str


@dataclass(frozen=True)
class ParseResult:
    """Best-effort structural parse of a command."""

    details: tuple[CommandDetail, ...]
    has_error: bool = False


# =============================================================================
# Policy
# =============================================================================


class ApprovalMode(str, Enum):
    """How much confirmation the user wants."""

    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"  # Skip all confirmation


class ConfirmationOutcome(str, Enum):
    """The user's answer to a confirmation prompt."""

    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    PROCEED_ALWAYS_AND_SAVE = "proceed_always_and_save"
    CANCEL = "cancel"


@dataclass
class ConfirmationDetails:
    """Everything the UI needs to ask the user about a command.

    ``on_confirm`` resolves once any allow-rule implied by the outcome has
    been persisted.
    """

    title: str
    command: str
    root_command: str
    root_commands: list[str]
    on_confirm: Callable[[ConfirmationOutcome], Awaitable[None]]
    type: str = "exec"


class PolicyDecision(str, Enum):
    """Classifier decision."""

    ALLOW = "allow"
    ASK_USER = "ask_user"
    DENY = "deny"


@dataclass(frozen=True)
class PolicyVerdict:
    """Outcome of classifying a command against the current policy."""

    decision: PolicyDecision
    root_commands: tuple[str, ...] = ()
    root_command_display: str = ""
    reason: str | None = None

    @classmethod
    def allowed(cls, root_commands: tuple[str, ...] = ()) -> "PolicyVerdict":
        return cls(decision=PolicyDecision.ALLOW, root_commands=root_commands)

    @classmethod
    def ask_user(
        cls, root_commands: tuple[str, ...], root_command_display: str
    ) -> "PolicyVerdict":
        return cls(
            decision=PolicyDecision.ASK_USER,
            root_commands=root_commands,
            root_command_display=root_command_display,
        )

    @classmethod
    def denied(cls, reason: str, root_commands: tuple[str, ...] = ()) -> "PolicyVerdict":
        return cls(decision=PolicyDecision.DENY, root_commands=root_commands, reason=reason)

    @property
    def is_allowed(self) -> bool:
        return self.decision == PolicyDecision.ALLOW

    @property
    def needs_confirmation(self) -> bool:
        return self.decision == PolicyDecision.ASK_USER

    @property
    def is_denied(self) -> bool:
        return self.decision == PolicyDecision.DENY


# =============================================================================
# Execution events and results
# =============================================================================


@dataclass(frozen=True)
class DataEvent:
    """Decoded text produced by the process since the previous event."""

    chunk: str


@dataclass(frozen=True)
class BinaryDetectedEvent:
    """The stream switched to binary mode; no more text follows."""


@dataclass(frozen=True)
class BinaryProgressEvent:
    """Bytes received so far on a binary stream."""

    bytes_received: int


@dataclass(frozen=True)
class ExitEvent:
    """The process exited."""

    exit_code: int | None
    signal: str | None = None


ShellOutputEvent = Union[DataEvent, BinaryDetectedEvent, BinaryProgressEvent, ExitEvent]


class TerminationCause(str, Enum):
    """Why a run ended. Exactly one cause is recorded per run."""

    EXITED = "exited"
    SIGNALED = "signaled"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    SPAWN_ERROR = "spawn_error"
    BACKGROUNDED = "backgrounded"


@dataclass(frozen=True)
class ShellExecutionResult:
    """Final state of one process run.

    Attributes:
        output: Combined stdout/stderr text (or a binary marker).
        raw_output: Bytes received before the run ended or was detached.
        exit_code: Exit code; None when terminated abnormally.
        signal: Name of the terminating signal, if any.
        error: Process-level error (spawn failure and similar).
        pid: Process id, which is also the process-group id on POSIX.
        cause: Why the run ended.
        background_pids: Other processes found in the group at completion.
        is_binary: Whether the stream was in binary mode.
    """

    output: str
    exit_code: int | None
    cause: TerminationCause
    raw_output: bytes = b""
    signal: str | None = None
    error: BaseException | None = None
    pid: int | None = None
    background_pids: tuple[int, ...] = ()
    is_binary: bool = False

    @property
    def aborted(self) -> bool:
        return self.cause in (TerminationCause.CANCELLED, TerminationCause.TIMED_OUT)

    @property
    def timed_out(self) -> bool:
        return self.cause == TerminationCause.TIMED_OUT

    @property
    def backgrounded(self) -> bool:
        return self.cause == TerminationCause.BACKGROUNDED


# =============================================================================
# Tool contract
# =============================================================================


class ShellToolParams(BaseModel):
    """Input schema of the shell tool."""

    command: str = Field(description="Exact command to execute")
    description: str | None = Field(
        default=None,
        description=(
            "Brief description of the command for the user. Be specific and concise. "
            "Ideally a single sentence. Can be up to 3 sentences for clarity. No line breaks."
        ),
    )
    dir_path: str | None = Field(
        default=None,
        description=(
            "(OPTIONAL) The path of the directory to run the command in. If not provided, "
            "the project root directory is used. Must be a directory within the workspace "
            "and must already exist."
        ),
    )
    is_background: bool = Field(
        default=False,
        description=(
            "Set to true if this command should be run in the background (e.g. for "
            "long-running servers or watchers). The command will be started, allowed to "
            "run for a brief moment to check for immediate errors, and then moved to "
            "the background."
        ),
    )

    model_config = ConfigDict(extra="forbid")


@dataclass(frozen=True)
class ToolErrorInfo:
    """Structured error attached to a tool result."""

    message: str
    kind: str


@dataclass
class ShellToolResult:
    """What the tool returns to the invocation framework."""

    llm_content: str
    return_display: str
    data: dict[str, Any] | None = None
    error: ToolErrorInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the framework's result dictionary."""
        result: dict[str, Any] = {
            "llmContent": self.llm_content,
            "returnDisplay": self.return_display,
        }
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = {"message": self.error.message, "type": self.error.kind}
        return result


class InvocationState(str, Enum):
    """Lifecycle of a single tool invocation."""

    CREATED = "created"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RUNNING = "running"
    TERMINAL = "terminal"


class TerminalReason(str, Enum):
    """How an invocation reached its terminal state."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DENIED = "denied"
    REJECTED = "rejected"
    BACKGROUNDED = "backgrounded"
