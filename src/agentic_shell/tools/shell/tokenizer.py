"""Command tokenizer and root-command extraction.

Splits a command into simple commands according to the operator set of the
target shell (pipes, ``&&``/``||`` where supported, ``;``, background
``&``, command substitutions) and reports the program each one invokes.
This is not a full shell grammar: only what permission checks and
confirmation labels need.

Grammars are compiled by ``initialize_shell_parsers()``. Parsing before that
finishes blocks until initialization completes.
"""

import asyncio
import re
import shlex
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from agentic_shell.tools.shell.models import (
    CommandDetail,
    CommandNode,
    ParseResult,
    Redirect,
    TokenizeResult,
)
from agentic_shell.tools.shell.profiles import ShellType

# Placeholder left where a command substitution was cut out
_SUBSTITUTION_PLACEHOLDER = "__agentic_subst__"

# Reserved words that introduce or close a compound statement
_POSIX_RESERVED_PREFIXES = frozenset({"!", "if", "then", "else", "elif", "do", "while", "until", "time", "{"})
_POSIX_RESERVED_CLOSERS = frozenset({"fi", "done", "esac", "}", "then", "else", "do"})
_POSIX_CONTROL_STATEMENTS = frozenset({"for", "case", "select", "function"})

_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

# Shells started with -c / /c / -Command that an agent may prepend itself
_SHELL_WRAPPER = re.compile(
    r"""^\s*(?:
        (?:\S*[/\\])?(?:sh|bash|zsh)(?:\.exe)?\s+-c
        |(?:\S*[/\\])?cmd(?:\.exe)?\s+/c
        |(?:\S*[/\\])?(?:powershell|pwsh)(?:\.exe)?\s+(?:-NoProfile\s+)?-Command
    )\s+(?P<inner>.+?)\s*$""",
    re.IGNORECASE | re.VERBOSE | re.DOTALL,
)

# Wrapper injected by the execution engine to report child pids
_PID_REPORT_WRAPPER = re.compile(
    r"^\{ (?P<inner>.*)\n\}; __code=\$\?; pgrep -g 0 >(?P<path>\S+) 2>&1; exit \$__code;$",
    re.DOTALL,
)


@dataclass(frozen=True)
class ShellGrammar:
    """Operator set of one shell kind.

    Attributes:
        shell_type: The shell kind this grammar describes.
        quotes: Quote characters.
        escape: Escape character outside single quotes ('' for none).
        and_or: Whether ``&&`` and ``||`` chain commands.
        semicolon: Whether ``;`` separates commands.
        background_amp: Whether ``&`` sends a command to the background.
        amp_separator: Whether ``&`` separates commands (cmd.exe).
        call_operator: Whether a leading ``&`` invokes a command (PowerShell).
        dollar_substitution: ``$(...)`` substitution.
        backtick_substitution: Backtick substitution.
        process_substitution: ``<(...)`` / ``>(...)``.
        paren_substitution: Bare ``(...)`` substitution.
        env_assignments: Whether ``VAR=value cmd`` prefixes are skipped.
        keyword_connectors: Words that join commands like operators.
        external_prefixes: Prefixes stripped from command names.
        redirection: Pattern matching a redirection operator.
    """

    shell_type: ShellType
    quotes: str
    escape: str
    and_or: bool
    semicolon: bool
    background_amp: bool
    amp_separator: bool
    call_operator: bool
    dollar_substitution: bool
    backtick_substitution: bool
    process_substitution: bool
    paren_substitution: bool
    env_assignments: bool
    keyword_connectors: frozenset[str]
    external_prefixes: tuple[str, ...]
    redirection: re.Pattern[str]

    @property
    def reserved_prefixes(self) -> frozenset[str]:
        if self.shell_type in (ShellType.BASH, ShellType.ZSH, ShellType.POSIX):
            return _POSIX_RESERVED_PREFIXES
        if self.shell_type == ShellType.FISH:
            return frozenset({"if", "else", "while", "begin", "time"})
        return frozenset()

    @property
    def reserved_closers(self) -> frozenset[str]:
        if self.shell_type in (ShellType.BASH, ShellType.ZSH, ShellType.POSIX):
            return _POSIX_RESERVED_CLOSERS
        if self.shell_type == ShellType.FISH:
            return frozenset({"end", "else"})
        return frozenset()

    @property
    def control_statements(self) -> frozenset[str]:
        if self.shell_type in (ShellType.BASH, ShellType.ZSH, ShellType.POSIX):
            return _POSIX_CONTROL_STATEMENTS
        if self.shell_type == ShellType.FISH:
            return frozenset({"for", "switch", "case", "function"})
        return frozenset()


def _build_grammars() -> Mapping[ShellType, ShellGrammar]:
    """Compile the grammar of every shell kind."""
    posix_redirect = re.compile(r"(?:\d*|&)(?:>>|>\||>&|>|<<<|<<|<&|<)|&>>?")
    windows_redirect = re.compile(r"\d?(?:>>|>&\d|>|<)")
    nushell_redirect = re.compile(r"(?:^|\s)(?:o|out|e|err|o\+e|out\+err)>>?(?=\s|$)")

    def posix(shell_type: ShellType) -> ShellGrammar:
        return ShellGrammar(
            shell_type=shell_type,
            quotes="'\"",
            escape="\\",
            and_or=True,
            semicolon=True,
            background_amp=True,
            amp_separator=False,
            call_operator=False,
            dollar_substitution=True,
            backtick_substitution=True,
            process_substitution=shell_type != ShellType.POSIX,
            paren_substitution=False,
            env_assignments=True,
            keyword_connectors=frozenset(),
            external_prefixes=(),
            redirection=posix_redirect,
        )

    return MappingProxyType({
        ShellType.BASH: posix(ShellType.BASH),
        ShellType.ZSH: posix(ShellType.ZSH),
        ShellType.POSIX: posix(ShellType.POSIX),
        ShellType.FISH: ShellGrammar(
            shell_type=ShellType.FISH,
            quotes="'\"",
            escape="\\",
            and_or=True,
            semicolon=True,
            background_amp=True,
            amp_separator=False,
            call_operator=False,
            dollar_substitution=True,  # fish 3.4+
            backtick_substitution=False,
            process_substitution=False,
            paren_substitution=True,
            env_assignments=True,
            keyword_connectors=frozenset({"and", "or", "not"}),
            external_prefixes=(),
            redirection=posix_redirect,
        ),
        ShellType.POWERSHELL: ShellGrammar(
            shell_type=ShellType.POWERSHELL,
            quotes="'\"",
            escape="`",
            and_or=True,
            semicolon=True,
            background_amp=True,
            amp_separator=False,
            call_operator=True,
            dollar_substitution=True,
            backtick_substitution=False,
            process_substitution=False,
            paren_substitution=False,
            env_assignments=False,
            keyword_connectors=frozenset(),
            external_prefixes=(),
            redirection=windows_redirect,
        ),
        ShellType.CMD: ShellGrammar(
            shell_type=ShellType.CMD,
            quotes='"',
            escape="^",
            and_or=True,
            semicolon=False,
            background_amp=False,
            amp_separator=True,
            call_operator=False,
            dollar_substitution=False,
            backtick_substitution=False,
            process_substitution=False,
            paren_substitution=False,
            env_assignments=False,
            keyword_connectors=frozenset(),
            external_prefixes=(),
            redirection=windows_redirect,
        ),
        ShellType.OTHER: ShellGrammar(
            shell_type=ShellType.OTHER,
            quotes="'\"",
            escape="\\",
            and_or=False,
            semicolon=True,
            background_amp=True,
            amp_separator=False,
            call_operator=False,
            dollar_substitution=False,
            backtick_substitution=False,
            process_substitution=False,
            paren_substitution=True,
            env_assignments=False,
            keyword_connectors=frozenset(),
            external_prefixes=("e:",),
            redirection=nushell_redirect,
        ),
    })


_init_lock = threading.Lock()
_grammars: Mapping[ShellType, ShellGrammar] | None = None
_tokenizers: dict[ShellType, "CommandTokenizer"] = {}


def _ensure_grammars() -> Mapping[ShellType, ShellGrammar]:
    """Return the grammars, building them under the init lock if needed."""
    global _grammars
    if _grammars is not None:
        return _grammars
    with _init_lock:
        if _grammars is None:
            _grammars = _build_grammars()
    return _grammars


async def initialize_shell_parsers() -> None:
    """Compile all shell grammars off the event loop.

    Idempotent. If compilation fails the error propagates and the next call
    (or the next parse) tries again.
    """
    if _grammars is not None:
        return
    await asyncio.to_thread(_ensure_grammars)


def parsers_initialized() -> bool:
    """Whether grammar compilation has completed."""
    return _grammars is not None


def get_grammar(shell_type: ShellType | str = ShellType.BASH) -> ShellGrammar:
    """Get the grammar for a shell kind."""
    return _ensure_grammars()[ShellType(shell_type)]


def get_tokenizer(shell_type: ShellType | str = ShellType.BASH) -> "CommandTokenizer":
    """Get a shared tokenizer for a shell kind."""
    shell_type = ShellType(shell_type)
    tokenizer = _tokenizers.get(shell_type)
    if tokenizer is None:
        tokenizer = CommandTokenizer(shell_type)
        _tokenizers[shell_type] = tokenizer
    return tokenizer


class CommandTokenizer:
    """Tokenizes shell commands into structured CommandNode trees.

    A quote-aware scanner splits the command on the shell's top-level
    operators; each simple command is then split into words with shlex.
    """

    def __init__(self, shell_type: ShellType | str = ShellType.BASH):
        self.grammar = get_grammar(shell_type)

    def tokenize(self, command: str) -> TokenizeResult:
        """Parse a shell command into structured tokens.

        Args:
            command: The shell command string to parse.

        Returns:
            TokenizeResult with parsed command nodes and metadata.
        """
        command = command.strip()
        if not command:
            return TokenizeResult(nodes=[], parse_errors=["Empty command"])

        result = TokenizeResult(nodes=[])
        masked = self._mask_quoted(command)

        segments, errors = self._scan(command)
        result.parse_errors.extend(errors)
        operators = {op for op, _ in segments if op}
        result.has_pipes = bool(operators & {"|", "|&"})
        chain_operators = {";", "&&", "||", "\n"}
        if self.grammar.amp_separator:
            chain_operators.add("&")
        result.has_chains = bool(operators & chain_operators)
        result.has_background = self.grammar.background_amp and "&" in operators
        result.has_redirections = bool(self.grammar.redirection.search(masked))
        result.has_subshells = bool(self._find_substitutions(command))

        result.nodes = self._parse_command_string(command, segments)
        return result

    # -------------------------------------------------------------------------
    # Scanning
    # -------------------------------------------------------------------------

    def _scan(self, command: str) -> tuple[list[tuple[str | None, str]], list[str]]:
        """Split on top-level operators, respecting quotes and nesting.

        Returns a list of (operator that follows the segment, segment text)
        and a list of parse errors.
        """
        g = self.grammar
        segments: list[tuple[str | None, str]] = []
        errors: list[str] = []
        current: list[str] = []
        quote = ""
        depth = 0
        in_backtick = False
        i = 0
        n = len(command)

        def flush(op: str | None) -> None:
            segments.append((op, "".join(current).strip()))
            current.clear()

        while i < n:
            ch = command[i]

            if quote:
                if ch == g.escape and quote == '"' and g.escape != "^" and i + 1 < n:
                    current.append(command[i : i + 2])
                    i += 2
                    continue
                if ch == quote:
                    quote = ""
                current.append(ch)
                i += 1
                continue

            if g.escape and ch == g.escape and i + 1 < n:
                current.append(command[i : i + 2])
                i += 2
                continue
            if ch in g.quotes:
                quote = ch
                current.append(ch)
                i += 1
                continue
            if g.backtick_substitution and ch == "`":
                in_backtick = not in_backtick
                current.append(ch)
                i += 1
                continue
            if ch == "(":
                depth += 1
                current.append(ch)
                i += 1
                continue
            if ch == ")":
                if depth == 0:
                    errors.append("Unbalanced ')'")
                else:
                    depth -= 1
                current.append(ch)
                i += 1
                continue
            if depth > 0 or in_backtick:
                current.append(ch)
                i += 1
                continue

            pair = command[i : i + 2]
            if g.and_or and pair in ("&&", "||"):
                flush(pair)
                i += 2
                continue
            if pair == "|&" and g.shell_type in (ShellType.BASH, ShellType.ZSH):
                flush("|&")
                i += 2
                continue
            if ch == "|":
                flush("|")
                i += 1
                continue
            if ch == ";" and g.semicolon:
                flush(";")
                i += 1
                continue
            if ch == "\n":
                flush("\n")
                i += 1
                continue
            if ch == "&":
                prev = command[i - 1] if i > 0 else ""
                nxt = command[i + 1] if i + 1 < n else ""
                if (prev and prev in "<>") or nxt == ">":
                    # Part of a redirection: 2>&1, &>file
                    current.append(ch)
                elif g.amp_separator:
                    flush("&")
                elif g.call_operator and not "".join(current).strip():
                    current.append(ch)
                elif g.background_amp:
                    flush("&")
                else:
                    current.append(ch)
                i += 1
                continue

            current.append(ch)
            i += 1

        if quote:
            errors.append(f"Unterminated quote: {quote}")
        if depth > 0:
            errors.append("Unbalanced '('")
        if in_backtick:
            errors.append("Unterminated backtick")

        tail = "".join(current).strip()
        if tail or not segments:
            segments.append((None, tail))
        return [(op, text) for op, text in segments if text or op], errors

    def _mask_quoted(self, command: str) -> str:
        """Replace quoted text with placeholders so operators inside quotes are ignored."""
        g = self.grammar
        out: list[str] = []
        quote = ""
        i = 0
        while i < len(command):
            ch = command[i]
            if quote:
                if ch == g.escape and quote == '"' and g.escape != "^" and i + 1 < len(command):
                    out.append("__")
                    i += 2
                    continue
                if ch == quote:
                    quote = ""
                    out.append(ch)
                else:
                    out.append("_")
                i += 1
                continue
            if g.escape and ch == g.escape and i + 1 < len(command):
                out.append("__")
                i += 2
                continue
            if ch in g.quotes:
                quote = ch
            out.append(ch)
            i += 1
        return "".join(out)

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    def _parse_command_string(
        self,
        command: str,
        segments: list[tuple[str | None, str]] | None = None,
    ) -> list[CommandNode]:
        """Parse a command string into pipeline heads, in order.

        Each head's ``pipes_to`` links the rest of its pipeline; the
        operator joining two pipelines is recorded in ``chained_with`` of
        the earlier head.
        """
        if segments is None:
            segments, _ = self._scan(command)

        heads: list[CommandNode] = []
        pipeline_tail: CommandNode | None = None
        previous_op: str | None = None

        for op, text in segments:
            node = self._parse_single_command(text)
            if previous_op in ("|", "|&") and pipeline_tail is not None:
                pipeline_tail.pipes_to = node
            else:
                if heads and previous_op:
                    heads[-1].chained_with.append((previous_op, node))
                heads.append(node)
            pipeline_tail = node
            if op == "&":
                node.background = not self.grammar.amp_separator
            previous_op = op

        return heads

    def _parse_single_command(self, command: str) -> CommandNode:
        """Parse a single command (no pipes or chains)."""
        g = self.grammar
        node = CommandNode(command="", raw_command=command)

        text = command
        # A whole-segment group: ( cd dir && make )
        if text.startswith("(") and text.endswith(")") and g.shell_type != ShellType.OTHER:
            node.subshells = self._parse_command_string(text[1:-1])
            return node

        subshells, text = self._extract_subshells(text)
        node.subshells = subshells

        redirections, text = self._extract_redirections(text)
        node.redirections = redirections

        words = self._split_words(text)
        words = self._strip_prefix_words(words)
        if words and words[0] in g.reserved_closers and len(words) == 1:
            words = []
        if words and words[0] in g.control_statements:
            words = []

        if words:
            node.command = self._normalize_root(words[0])
            node.args = words[1:]
        return node

    def _strip_prefix_words(self, words: list[str]) -> list[str]:
        """Drop assignments, reserved words and keyword connectors before the root."""
        g = self.grammar
        while words:
            head = words[0]
            if g.env_assignments and _ENV_ASSIGNMENT.match(head):
                words = words[1:]
            elif head in g.keyword_connectors or head in g.reserved_prefixes:
                words = words[1:]
            elif head == "&" and g.call_operator:
                words = words[1:]
            elif head == _SUBSTITUTION_PLACEHOLDER:
                return []
            else:
                break
        return words

    def _normalize_root(self, word: str) -> str:
        """Reduce a command word to the program name."""
        for prefix in self.grammar.external_prefixes:
            if word.startswith(prefix) and len(word) > len(prefix):
                word = word[len(prefix):]
        if word.startswith("&") and self.grammar.call_operator:
            word = word[1:]
        word = word.strip("'\"")
        name = re.split(r"[/\\]", word)[-1]
        return name or word

    def _split_words(self, text: str) -> list[str]:
        posix = self.grammar.shell_type not in (ShellType.POWERSHELL, ShellType.CMD)
        try:
            words = shlex.split(text, posix=posix)
        except ValueError:
            # Fallback to simple split
            words = text.split()
        if not posix:
            words = [w[1:-1] if len(w) >= 2 and w[0] == w[-1] and w[0] in "'\"" else w for w in words]
        return words

    def _find_substitutions(self, command: str) -> list[tuple[int, int, str]]:
        """Locate command substitutions as (start, end, inner text)."""
        g = self.grammar
        masked = self._mask_quoted(command)
        spans: list[tuple[int, int, str]] = []
        i = 0
        n = len(command)

        while i < n:
            ch = masked[i]
            opener_len = 0
            if g.dollar_substitution and masked.startswith("$((", i):
                # Arithmetic expansion, not a command
                end = masked.find("))", i + 3)
                if end == -1:
                    break
                i = end + 2
                continue
            if g.dollar_substitution and masked.startswith("$(", i):
                opener_len = 2
            elif g.process_substitution and masked[i : i + 2] in ("<(", ">("):
                opener_len = 2
            elif g.paren_substitution and ch == "(" and (i == 0 or masked[i - 1] != "$"):
                opener_len = 1
            elif g.backtick_substitution and ch == "`":
                end = masked.find("`", i + 1)
                if end == -1:
                    break
                spans.append((i, end + 1, command[i + 1 : end]))
                i = end + 1
                continue

            if opener_len:
                depth = 1
                j = i + opener_len
                while j < n and depth:
                    if masked[j] == "(":
                        depth += 1
                    elif masked[j] == ")":
                        depth -= 1
                    j += 1
                if depth:
                    break
                spans.append((i, j, command[i + opener_len : j - 1]))
                i = j
                continue
            i += 1

        return spans

    def _extract_subshells(self, command: str) -> tuple[list[CommandNode], str]:
        """Parse substitutions and return the command with placeholders in their place."""
        spans = self._find_substitutions(command)
        if not spans:
            return [], command

        subshells: list[CommandNode] = []
        pieces: list[str] = []
        last = 0
        for start, end, inner in spans:
            subshells.extend(self._parse_command_string(inner))
            pieces.append(command[last:start])
            pieces.append(_SUBSTITUTION_PLACEHOLDER)
            last = end
        pieces.append(command[last:])
        return subshells, "".join(pieces)

    def _extract_redirections(self, command: str) -> tuple[list[Redirect], str]:
        """Extract redirections from a command, returning the cleaned command."""
        masked = self._mask_quoted(command)
        pattern = re.compile(rf"(?P<op>{self.grammar.redirection.pattern})\s*(?P<target>[^\s;|&<>]+)?")

        redirections: list[Redirect] = []
        pieces: list[str] = []
        last = 0
        for match in pattern.finditer(masked):
            op = match.group("op").strip()
            target_span = match.span("target")
            target = command[target_span[0] : target_span[1]] if target_span[0] >= 0 else ""
            redirections.append(Redirect(operator=op, target=target))
            pieces.append(command[last : match.start()])
            pieces.append(" ")
            last = match.end()
        pieces.append(command[last:])
        return redirections, "".join(pieces).strip()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def iter_nodes(self, result: TokenizeResult) -> list[CommandNode]:
        """All command nodes in source order, including pipes and substitutions."""
        nodes: list[CommandNode] = []

        def collect(node: CommandNode) -> None:
            nodes.append(node)
            for subshell in node.subshells:
                collect(subshell)
            if node.pipes_to:
                collect(node.pipes_to)

        for node in result.nodes:
            collect(node)
        return nodes

    def get_all_commands(self, result: TokenizeResult) -> list[str]:
        """Extract all root commands from a tokenize result.

        Includes commands from substitutions and piped commands.
        """
        return [node.command for node in self.iter_nodes(result) if node.command]


# =============================================================================
# Module-level helpers
# =============================================================================


def strip_shell_wrapper(command: str) -> str:
    """Remove a known outer wrapper so policy checks see the real command.

    Handles ``bash -c '...'`` style shell invocations and the pid-report
    wrapper added by the execution engine.
    """
    stripped = command.strip()

    match = _PID_REPORT_WRAPPER.match(stripped)
    if match:
        return match.group("inner").strip()

    match = _SHELL_WRAPPER.match(stripped)
    if match:
        inner = match.group("inner").strip()
        if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in "'\"":
            inner = inner[1:-1]
        return inner.strip()
    return stripped


def build_pid_report_wrapper(command: str, pid_file: str) -> str:
    """Wrap a command so the pids left in its process group are written to ``pid_file``.

    The closing brace goes on its own line so a trailing comment in the
    command cannot swallow it.
    """
    return f"{{ {command.strip()}\n}}; __code=$?; pgrep -g 0 >{pid_file} 2>&1; exit $__code;"


def get_command_roots(command: str, shell_type: ShellType | str = ShellType.BASH) -> list[str]:
    """Root commands invoked by ``command``, deduplicated in first-seen order.

    Empty for an empty or punctuation-only command.
    """
    tokenizer = get_tokenizer(shell_type)
    result = tokenizer.tokenize(strip_shell_wrapper(command))
    return list(dict.fromkeys(tokenizer.get_all_commands(result)))


def has_redirection(command: str, shell_type: ShellType | str = ShellType.BASH) -> bool:
    """Whether the command redirects input or output outside of quotes."""
    tokenizer = get_tokenizer(shell_type)
    return bool(tokenizer.grammar.redirection.search(tokenizer._mask_quoted(command)))


def parse_command_details(
    command: str, shell_type: ShellType | str = ShellType.BASH
) -> ParseResult | None:
    """Best-effort structural parse.

    Returns:
        None for an empty command; otherwise every simple command found,
        with ``has_error`` set when quotes or parentheses do not balance.
    """
    if not command.strip():
        return None
    tokenizer = get_tokenizer(shell_type)
    result = tokenizer.tokenize(command)
    details = tuple(
        CommandDetail(name=node.command, text=node.raw_command)
        for node in tokenizer.iter_nodes(result)
        if node.command
    )
    return ParseResult(details=details, has_error=bool(result.parse_errors))


def split_commands(command: str, shell_type: ShellType | str = ShellType.BASH) -> list[str]:
    """Text of every simple command, used for prefix matching."""
    parsed = parse_command_details(strip_shell_wrapper(command), shell_type)
    if parsed is None:
        return []
    return [detail.text for detail in parsed.details]
