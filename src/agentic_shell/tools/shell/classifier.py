"""Command policy classification.

Decides whether a command may run as is, needs the user's confirmation or
must be refused. The decision is made from the command's root programs and
the allow-list entries collected from settings and earlier "always allow"
answers.

Allow-list entry forms:
    ls                              bare root command
    git status                      command prefix
    run_shell_command(git status)   tool pattern (ShellTool(...) also works)
    run_shell_command               bare tool name, allows everything
    npm *                           fnmatch glob over the command text
"""

import fnmatch
import re
from typing import Iterable

from agentic_shell.logging import Loggers
from agentic_shell.tools.shell.models import (
    ApprovalMode,
    CommandDetail,
    ConfirmationOutcome,
    PolicyVerdict,
)
from agentic_shell.tools.shell.profiles import ShellType
from agentic_shell.tools.shell.tokenizer import (
    get_command_roots,
    has_redirection,
    parse_command_details,
    strip_shell_wrapper,
)

logger = Loggers.policy()

SHELL_TOOL_NAME = "run_shell_command"
SHELL_TOOL_ALIASES: frozenset[str] = frozenset({SHELL_TOOL_NAME, "ShellTool"})

_TOOL_PATTERN = re.compile(r"^(?P<tool>\w+)\((?P<prefix>.*)\)$", re.DOTALL)
_GLOB_CHARS = frozenset("*?[")
_ENV_PREFIX = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_]*=\S*\s+)+")

FALLBACK_DISPLAY = "shell command"


def _normalize(text: str) -> str:
    return " ".join(text.split())


def _entry_prefix(entry: str) -> str | None:
    """Reduce an allow-list entry to the command prefix it allows.

    Returns:
        "" for an entry that allows every command, None for an entry that
        is not about the shell tool, otherwise the normalized prefix.
    """
    entry = entry.strip()
    if not entry:
        return None
    if entry in SHELL_TOOL_ALIASES:
        return ""
    match = _TOOL_PATTERN.match(entry)
    if match:
        if match.group("tool") not in SHELL_TOOL_ALIASES:
            return None
        prefix = _normalize(match.group("prefix"))
        return prefix or None
    return _normalize(entry)


def _detail_matches(detail: CommandDetail, prefix: str) -> bool:
    text = _normalize(_ENV_PREFIX.sub("", detail.text))
    if any(ch in _GLOB_CHARS for ch in prefix):
        return fnmatch.fnmatchcase(text, prefix)
    if " " not in prefix and detail.name == prefix:
        return True
    return text == prefix or text.startswith(prefix + " ")


def _unmatched_details(
    details: Iterable[CommandDetail], prefixes: list[str]
) -> list[CommandDetail]:
    return [
        detail
        for detail in details
        if not any(_detail_matches(detail, prefix) for prefix in prefixes)
    ]


def is_shell_invocation_allowlisted(
    command: str,
    allowed_patterns: Iterable[str],
    shell_type: ShellType | str = ShellType.BASH,
) -> bool:
    """Whether every simple command in ``command`` matches an allow-list entry.

    A command that cannot be parsed is only allowed by an allow-everything
    entry.
    """
    prefixes = [p for p in (_entry_prefix(e) for e in allowed_patterns) if p is not None]
    if not prefixes:
        return False
    if "" in prefixes:
        return True

    parsed = parse_command_details(strip_shell_wrapper(command), shell_type)
    if parsed is None or parsed.has_error or not parsed.details:
        return False
    return not _unmatched_details(parsed.details, prefixes)


def is_command_excluded(
    command: str,
    excluded_patterns: Iterable[str],
    shell_type: ShellType | str = ShellType.BASH,
) -> str | None:
    """Check a command against the configured exclude list.

    Returns:
        The rejection reason, or None if no part of the command is excluded.
    """
    prefixes = [p for p in (_entry_prefix(e) for e in excluded_patterns) if p]
    if not prefixes:
        return None

    parsed = parse_command_details(strip_shell_wrapper(command), shell_type)
    if parsed is None:
        return None
    for detail in parsed.details:
        if any(_detail_matches(detail, prefix) for prefix in prefixes):
            return f"Command '{detail.text}' is blocked by configuration"
    return None


def get_policy_update_prefixes(
    command: str,
    outcome: ConfirmationOutcome,
    shell_type: ShellType | str = ShellType.BASH,
) -> list[str] | None:
    """Allow-list entries implied by a confirmation outcome.

    For the "always" outcomes this is the command's root set. If no root can
    be extracted the whole raw command is used instead, which allows any
    command starting with that text.
    """
    if outcome not in (
        ConfirmationOutcome.PROCEED_ALWAYS,
        ConfirmationOutcome.PROCEED_ALWAYS_AND_SAVE,
    ):
        return None

    roots = get_command_roots(command, shell_type)
    if roots:
        return roots
    logger.warning("policy_update_raw_command", command=command)
    return [command]


class CommandPolicyClassifier:
    """Classifies commands as allowed, needing confirmation, or denied.

    Example:
        classifier = CommandPolicyClassifier(ShellType.BASH)
        verdict = classifier.classify("git status", allowed_patterns=["git"])
        assert verdict.is_allowed
    """

    def __init__(self, shell_type: ShellType | str = ShellType.BASH):
        self.shell_type = ShellType(shell_type)

    def root_command_display(self, command: str) -> str:
        """Label shown in the confirmation prompt.

        Parsed command names joined with ", ". When parsing fails, the first
        whitespace-separated token (plus ", redirection" when the command
        redirects), or "shell command" for nothing at all.
        """
        command = strip_shell_wrapper(command)
        parsed = parse_command_details(command, self.shell_type)
        if parsed is None or parsed.has_error or not parsed.details:
            words = command.split()
            display = words[0] if words else FALLBACK_DISPLAY
            if has_redirection(command, self.shell_type):
                display += ", redirection"
            return display
        return ", ".join(detail.name for detail in parsed.details)

    def classify(
        self,
        command: str,
        allowed_patterns: Iterable[str] = (),
        approval_mode: ApprovalMode | str = ApprovalMode.DEFAULT,
        is_interactive: bool = True,
    ) -> PolicyVerdict:
        """Classify a command against the current policy.

        Args:
            command: The raw command (a shell wrapper is stripped first).
            allowed_patterns: Allow-list entries.
            approval_mode: ``yolo`` allows everything.
            is_interactive: Whether a user can be asked.

        Returns:
            PolicyVerdict: allowed, ask_user (with roots and display label)
            or denied (with a reason).
        """
        stripped = strip_shell_wrapper(command)
        roots = tuple(get_command_roots(stripped, self.shell_type))
        patterns = list(allowed_patterns)

        if ApprovalMode(approval_mode) == ApprovalMode.YOLO:
            return PolicyVerdict.allowed(roots)

        if is_shell_invocation_allowlisted(stripped, patterns, self.shell_type):
            logger.debug("command_allowlisted", command=stripped)
            return PolicyVerdict.allowed(roots)

        if not is_interactive:
            reason = self._non_interactive_reason(stripped, roots, patterns)
            logger.info("command_denied", command=stripped, reason=reason)
            return PolicyVerdict.denied(reason, roots)

        return PolicyVerdict.ask_user(roots, self.root_command_display(stripped))

    def _non_interactive_reason(
        self, command: str, roots: tuple[str, ...], patterns: list[str]
    ) -> str:
        prefixes = [p for p in (_entry_prefix(e) for e in patterns) if p is not None]
        parsed = parse_command_details(command, self.shell_type)
        if parsed is not None and not parsed.has_error and parsed.details:
            unmatched = [d.name for d in _unmatched_details(parsed.details, prefixes)]
            names = list(dict.fromkeys(unmatched))
        else:
            names = list(roots) or [command.strip()]
        return (
            f"Command(s) not in the allowed commands for non-interactive mode: "
            f"{', '.join(names)}. Confirmation is not available without an "
            f"interactive session; add them to the allowed tools, e.g. "
            f"{SHELL_TOOL_NAME}({names[0]})."
        )
