"""Tests for command parsing and root-command extraction.

These tests only parse command strings; nothing is executed.
"""

import pytest

from agentic_shell.tools.shell.profiles import ShellType
from agentic_shell.tools.shell.tokenizer import (
    CommandTokenizer,
    build_pid_report_wrapper,
    get_command_roots,
    has_redirection,
    initialize_shell_parsers,
    parse_command_details,
    parsers_initialized,
    split_commands,
    strip_shell_wrapper,
)


class TestCommandTokenizer:
    """Tests for the structural tokenizer."""

    def test_simple_command(self):
        """Test parsing a simple command."""
        tokenizer = CommandTokenizer()
        result = tokenizer.tokenize("ls -la")

        assert len(result.nodes) == 1
        assert result.nodes[0].command == "ls"
        assert result.nodes[0].args == ["-la"]
        assert not result.has_pipes
        assert not result.parse_errors

    def test_pipeline(self):
        """Pipelines are linked through pipes_to."""
        tokenizer = CommandTokenizer()
        result = tokenizer.tokenize("cat file | grep foo | wc -l")

        assert result.has_pipes
        assert len(result.nodes) == 1
        head = result.nodes[0]
        assert head.command == "cat"
        assert head.pipes_to.command == "grep"
        assert head.pipes_to.pipes_to.command == "wc"

    def test_chain(self):
        """Chained pipelines are recorded on the earlier head."""
        tokenizer = CommandTokenizer()
        result = tokenizer.tokenize("make && make install; echo done")

        assert result.has_chains
        assert [node.command for node in result.nodes] == ["make", "make", "echo"]
        op, node = result.nodes[0].chained_with[0]
        assert op == "&&"
        assert node is result.nodes[1]

    def test_operators_inside_quotes_are_ignored(self):
        """Quoted operators do not split the command."""
        tokenizer = CommandTokenizer()
        result = tokenizer.tokenize("git commit -m 'fix; then | pipe && more'")

        assert len(result.nodes) == 1
        assert not result.has_pipes
        assert not result.has_chains
        assert result.nodes[0].args == ["commit", "-m", "fix; then | pipe && more"]

    def test_redirections(self):
        """Redirections are extracted from the arguments."""
        tokenizer = CommandTokenizer()
        result = tokenizer.tokenize("npm run build > out.log 2>&1")

        node = result.nodes[0]
        assert result.has_redirections
        assert node.command == "npm"
        assert node.args == ["run", "build"]
        assert [(r.operator, r.target) for r in node.redirections] == [
            (">", "out.log"),
            ("2>&", "1"),
        ]

    def test_background(self):
        """A trailing & marks the command as a background job."""
        tokenizer = CommandTokenizer()
        result = tokenizer.tokenize("sleep 10 &")

        assert result.has_background
        assert result.nodes[-1].background

    def test_command_substitution(self):
        """Substituted commands appear as subshells."""
        tokenizer = CommandTokenizer()
        result = tokenizer.tokenize("echo $(whoami) `date`")

        assert result.has_subshells
        assert [n.command for n in result.nodes[0].subshells] == ["whoami", "date"]

    def test_unterminated_quote_is_a_parse_error(self):
        """Unbalanced quotes are reported, not raised."""
        result = CommandTokenizer().tokenize("echo 'abc")
        assert any("Unterminated quote" in error for error in result.parse_errors)

    def test_empty_command(self):
        """An empty command yields no nodes."""
        result = CommandTokenizer().tokenize("   ")
        assert result.nodes == []


class TestCommandRoots:
    """Tests for root-command extraction."""

    @pytest.mark.parametrize(
        "command,expected",
        [
            ("ls -la", ["ls"]),
            ("git status && git diff", ["git"]),
            ("cat a | grep b | sort", ["cat", "grep", "sort"]),
            ("echo $(whoami)", ["echo", "whoami"]),
            ("FOO=bar make test", ["make"]),
            ("/usr/bin/ls -la", ["ls"]),
            ("if true; then echo yes; fi", ["true", "echo"]),
            ("for i in a b; do echo $i; done", ["echo"]),
            ("( cd build && make )", ["cd", "make"]),
            ("diff <(ls a) <(ls b)", ["diff", "ls"]),
            ("echo $((1 + 2))", ["echo"]),
            ("bash -c 'rm -rf build'", ["rm"]),
        ],
    )
    def test_bash(self, command, expected):
        """Bash roots are deduplicated in first-seen order."""
        assert get_command_roots(command, ShellType.BASH) == expected

    @pytest.mark.parametrize("command", ["", "   ", ";;", "&&"])
    def test_empty_or_punctuation(self, command):
        """Nothing to run means no roots."""
        assert get_command_roots(command) == []

    def test_fish_keyword_connectors(self):
        """fish's and/or/not join commands like operators."""
        assert get_command_roots("make; and echo ok", ShellType.FISH) == ["make", "echo"]

    def test_fish_paren_substitution(self):
        """fish substitutes commands in bare parentheses."""
        assert get_command_roots("echo (pwd)", ShellType.FISH) == ["echo", "pwd"]

    def test_powershell_pipeline(self):
        """PowerShell cmdlets are roots."""
        roots = get_command_roots("Get-ChildItem | Select-Object Name", ShellType.POWERSHELL)
        assert roots == ["Get-ChildItem", "Select-Object"]

    def test_powershell_call_operator(self):
        """A leading & invokes the following command."""
        assert get_command_roots("& ./build.ps1 -Release", ShellType.POWERSHELL) == ["build.ps1"]

    def test_cmd_ampersand_separates(self):
        """In cmd.exe a single & separates commands."""
        assert get_command_roots("dir & echo done", ShellType.CMD) == ["dir", "echo"]

    def test_cmd_caret_escape(self):
        """An escaped ampersand does not split the command."""
        assert get_command_roots("echo a ^& b", ShellType.CMD) == ["echo"]

    def test_other_shell_external_prefix(self):
        """The generic grammar strips the e: external-command prefix."""
        assert get_command_roots("e:ls -l", ShellType.OTHER) == ["ls"]


class TestHelpers:
    """Tests for module-level helpers."""

    def test_strip_shell_wrapper(self):
        """Known shell wrappers are removed."""
        assert strip_shell_wrapper("bash -c 'ls -la'") == "ls -la"
        assert strip_shell_wrapper('cmd.exe /c "dir"') == "dir"
        assert strip_shell_wrapper("pwsh -NoProfile -Command Get-Date") == "Get-Date"
        assert strip_shell_wrapper("  ls  ") == "ls"

    def test_pid_report_wrapper_round_trip(self):
        """The engine's wrapper strips back to the original command."""
        wrapped = build_pid_report_wrapper("echo hi", "/tmp/shell_pgrep_x.tmp")
        assert wrapped.startswith("{ echo hi\n}")
        assert "pgrep -g 0 >/tmp/shell_pgrep_x.tmp" in wrapped
        assert strip_shell_wrapper(wrapped) == "echo hi"

    def test_pid_report_wrapper_keeps_background_ampersand(self):
        """A trailing & needs no separator before the closing brace."""
        wrapped = build_pid_report_wrapper("sleep 5 &", "/tmp/p.tmp")
        assert wrapped.startswith("{ sleep 5 &\n}")
        assert strip_shell_wrapper(wrapped) == "sleep 5 &"

    def test_pid_report_wrapper_survives_trailing_comment(self):
        """A comment at the end of the command cannot hide the closing brace."""
        wrapped = build_pid_report_wrapper("echo hi # note", "/tmp/p.tmp")
        first_line, rest = wrapped.split("\n", 1)
        assert first_line == "{ echo hi # note"
        assert rest.startswith("}; __code=$?;")
        assert strip_shell_wrapper(wrapped) == "echo hi # note"

    def test_pid_report_wrapper_keeps_trailing_semicolon(self):
        wrapped = build_pid_report_wrapper("ls;", "/tmp/p.tmp")
        assert strip_shell_wrapper(wrapped) == "ls;"

    def test_has_redirection(self):
        """Only unquoted redirections count."""
        assert has_redirection("echo hi > out.txt")
        assert not has_redirection("echo '>' x")

    def test_parse_command_details(self):
        """Every simple command is listed with its text."""
        parsed = parse_command_details("git status | head -5")
        assert not parsed.has_error
        assert [(d.name, d.text) for d in parsed.details] == [
            ("git", "git status"),
            ("head", "head -5"),
        ]

    def test_parse_command_details_empty(self):
        """An empty command cannot be parsed."""
        assert parse_command_details("  ") is None

    def test_split_commands(self):
        """Each simple command's text is returned."""
        assert split_commands("git status && npm test") == ["git status", "npm test"]


class TestInitialization:
    """Tests for parser initialization."""

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self):
        """Initializing twice is harmless."""
        await initialize_shell_parsers()
        await initialize_shell_parsers()
        assert parsers_initialized()
