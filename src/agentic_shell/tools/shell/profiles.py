"""Shell profile registry.

Static catalog of every supported shell: how to invoke it, how its syntax
differs from bash, which Unix tools have a shell-native replacement and
what the shell can do (background jobs, && / ||, structured pipelines).

The registry is plain data keyed by ``ShellProfileId``. It is built once at
import time and exposed through read-only mappings.
"""

import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath, PureWindowsPath
from types import MappingProxyType
from typing import Mapping


class ShellProfileId(str, Enum):
    """Identifier of a shell profile."""

    BASH = "bash"
    ZSH = "zsh"
    FISH = "fish"
    NUSHELL = "nushell"
    ELVISH = "elvish"
    POWERSHELL = "powershell"
    CMD = "cmd"
    OTHER = "other"


class ShellType(str, Enum):
    """Effective shell kind used for parsing and escaping."""

    BASH = "bash"
    ZSH = "zsh"
    POSIX = "posix"
    FISH = "fish"
    POWERSHELL = "powershell"
    CMD = "cmd"
    OTHER = "other"


# Shell kinds that understand the POSIX process-group wrapper
POSIX_SHELL_TYPES = frozenset({ShellType.BASH, ShellType.ZSH, ShellType.POSIX})


@dataclass(frozen=True)
class ShellCapabilities:
    """Capabilities that affect how commands are generated and executed."""

    supports_background_jobs: bool
    supports_structured_output: bool
    posix_compatible: bool
    supports_and_or: bool
    supports_job_control: bool


@dataclass(frozen=True)
class ShellConfiguration:
    """Invocation recipe: ``executable *args_prefix <command>``."""

    executable: str
    args_prefix: tuple[str, ...]
    shell: ShellType

    def build_argv(self, command: str) -> list[str]:
        """Return the argv that runs ``command`` through this shell."""
        return [self.executable, *self.args_prefix, command]

    @property
    def invocation(self) -> str:
        """Human-readable invocation template."""
        return " ".join([self.executable, *self.args_prefix, "<command>"])


@dataclass(frozen=True)
class ShellProfile:
    """Complete definition of a shell profile.

    Attributes:
        id: Unique identifier.
        display_name: Human-readable name.
        shell_type: Shell kind used for parsing logic.
        executable: Default executable name or path.
        args_prefix: Arguments passed before the command (e.g. ``-c``).
        guidance: Concise guidance about this shell's syntax.
        syntax_examples: Common syntax patterns keyed by construct.
        tool_replacements: Unix tool -> shell-native alternative.
        search_command: Preferred search command for this shell.
        search_guidance: Optional guidance about searching in this shell.
        capabilities: What the shell supports.
    """

    id: ShellProfileId
    display_name: str
    shell_type: ShellType
    executable: str
    args_prefix: tuple[str, ...]
    guidance: str
    syntax_examples: Mapping[str, str]
    tool_replacements: Mapping[str, str]
    search_command: str
    capabilities: ShellCapabilities
    search_guidance: str | None = None

    @property
    def configuration(self) -> ShellConfiguration:
        """Invocation recipe for this profile."""
        return ShellConfiguration(
            executable=self.executable,
            args_prefix=self.args_prefix,
            shell=self.shell_type,
        )


def _profile(**kwargs) -> ShellProfile:
    kwargs["syntax_examples"] = MappingProxyType(dict(kwargs["syntax_examples"]))
    kwargs["tool_replacements"] = MappingProxyType(dict(kwargs["tool_replacements"]))
    kwargs["args_prefix"] = tuple(kwargs["args_prefix"])
    return ShellProfile(**kwargs)


_POSIX_TOOL_REPLACEMENTS = {
    "grep": "rg (ripgrep)",
    "find": "fd",
    "sed": "sd",
    "cat": "bat",
}

SHELL_PROFILE_REGISTRY: Mapping[ShellProfileId, ShellProfile] = MappingProxyType({
    ShellProfileId.BASH: _profile(
        id=ShellProfileId.BASH,
        display_name="Bash",
        shell_type=ShellType.BASH,
        executable="bash",
        args_prefix=["-c"],
        guidance="Use bash-compatible syntax. Arrays are 0-indexed. Use `[[` for conditionals.",
        syntax_examples={
            "set_variable": "VAR=value",
            "export_variable": "export VAR=value",
            "background_job": "cmd &",
            "chain_on_success": "cmd1 && cmd2",
            "chain_on_failure": "cmd1 || cmd2",
            "command_substitution": "$(cmd) or `cmd`",
            "define_function": "func() { ...; }",
            "for_loop": "for i in a b c; do echo $i; done",
            "array": "arr=(a b c); echo ${arr[0]}",
            "conditional": "[[ -f file ]] && echo exists",
        },
        tool_replacements=_POSIX_TOOL_REPLACEMENTS,
        search_command="rg",
        capabilities=ShellCapabilities(
            supports_background_jobs=True,
            supports_structured_output=False,
            posix_compatible=True,
            supports_and_or=True,
            supports_job_control=True,
        ),
    ),
    ShellProfileId.ZSH: _profile(
        id=ShellProfileId.ZSH,
        display_name="Zsh",
        shell_type=ShellType.ZSH,
        executable="zsh",
        args_prefix=["-c"],
        guidance=(
            "Use zsh syntax. Arrays are 1-indexed. Use glob qualifiers. "
            "Avoid bash-only builtins."
        ),
        syntax_examples={
            "set_variable": "VAR=value",
            "export_variable": "export VAR=value",
            "background_job": "cmd &",
            "chain_on_success": "cmd1 && cmd2",
            "chain_on_failure": "cmd1 || cmd2",
            "command_substitution": "$(cmd)",
            "define_function": "func() { ...; }",
            "for_loop": "for i in a b c; do echo $i; done",
            "array": "arr=(a b c); echo $arr[1]  # 1-indexed!",
            "glob_qualifier": "*(.)  # files only, *(/) dirs only",
            "extended_glob": "**/*.ts  # recursive glob",
        },
        tool_replacements=_POSIX_TOOL_REPLACEMENTS,
        search_command="rg",
        capabilities=ShellCapabilities(
            supports_background_jobs=True,
            supports_structured_output=False,
            posix_compatible=True,
            supports_and_or=True,
            supports_job_control=True,
        ),
    ),
    ShellProfileId.FISH: _profile(
        id=ShellProfileId.FISH,
        display_name="Fish",
        shell_type=ShellType.FISH,
        executable="fish",
        args_prefix=["-c"],
        guidance=(
            "Use fish syntax. No POSIX compatibility. Use `set` for variables, "
            "`(cmd)` for substitution."
        ),
        syntax_examples={
            "set_variable": "set VAR value",
            "export_variable": "set -x VAR value",
            "background_job": "cmd &",
            "chain_on_success": "cmd1; and cmd2  # or && in fish 3.0+",
            "chain_on_failure": "cmd1; or cmd2   # or || in fish 3.0+",
            "command_substitution": "(cmd)  # NOT $(cmd)",
            "define_function": "function name; ...; end",
            "for_loop": "for i in a b c; echo $i; end",
            "conditional": "if test -f file; echo exists; end",
            "list": "set mylist a b c; echo $mylist[1]",
        },
        tool_replacements={
            **_POSIX_TOOL_REPLACEMENTS,
            "sed": "string replace (builtin) or sd",
            "export": "set -x",
        },
        search_command="rg",
        capabilities=ShellCapabilities(
            supports_background_jobs=True,
            supports_structured_output=False,
            posix_compatible=False,
            supports_and_or=True,  # fish 3.0+
            supports_job_control=True,
        ),
    ),
    ShellProfileId.NUSHELL: _profile(
        id=ShellProfileId.NUSHELL,
        display_name="Nushell",
        shell_type=ShellType.OTHER,
        executable="nu",
        args_prefix=["-c"],
        guidance=(
            "Use nushell syntax. Pipelines pass structured data. No && or ||. "
            "Use `where`, `select`, `get`."
        ),
        syntax_examples={
            "set_variable": "let var = value  # immutable",
            "mutable_variable": "mut var = value  # mutable",
            "export_variable": "$env.VAR = value",
            "background_job": "N/A - use `job spawn { cmd }`",
            "chain_on_success": "cmd1; cmd2  # or use try { }",
            "chain_on_failure": "try { cmd1 } catch { cmd2 }",
            "command_substitution": "(cmd)",
            "define_function": "def name [] { ... }",
            "for_loop": "for i in [a b c] { echo $i }",
            "list": "[a b c]",
            "record": "{name: value, key: val}",
            "pipeline": "ls | where size > 1mb | select name",
            "json_parse": "open file.json | get path.to.value",
        },
        tool_replacements={
            "grep": "rg, or: lines | where {|l| $l =~ pattern}",
            "find": "fd, or: ls **/* | where name =~ pattern",
            "sed": "str replace",
            "awk": "select, get, split column",
            "cat": "open (returns structured data)",
            "jq": "native: open file.json | get path",
            "curl": "http get",
        },
        search_command="rg",
        search_guidance="For structured filtering, use `| where` on pipeline output.",
        capabilities=ShellCapabilities(
            supports_background_jobs=False,  # job spawn is different
            supports_structured_output=True,
            posix_compatible=False,
            supports_and_or=False,
            supports_job_control=False,
        ),
    ),
    ShellProfileId.ELVISH: _profile(
        id=ShellProfileId.ELVISH,
        display_name="Elvish",
        shell_type=ShellType.OTHER,
        executable="elvish",
        args_prefix=["-c"],
        guidance="Use elvish syntax. Pipelines pass values. Use `e:` prefix for external commands.",
        syntax_examples={
            "set_variable": "set var = value",
            "export_variable": "set-env VAR value",
            "background_job": "cmd &",
            "chain_on_success": "try { cmd1 } else { }; cmd2",
            "chain_on_failure": "try { cmd1 } catch { cmd2 }",
            "command_substitution": "(cmd)",
            "define_function": "fn name { ... }",
            "for_loop": "for i [a b c] { echo $i }",
            "list": "[a b c]",
            "map": "[&key=value &k2=v2]",
            "external_command": "e:grep pattern file",
            "pipeline": "ls | each {|f| echo $f }",
        },
        tool_replacements={
            "grep": "rg or e:grep",
            "find": "fd or e:find",
            "sed": "e:sed or sd",
            "cat": "e:cat or bat",
        },
        search_command="rg",
        capabilities=ShellCapabilities(
            supports_background_jobs=True,
            supports_structured_output=True,
            posix_compatible=False,
            supports_and_or=False,
            supports_job_control=True,
        ),
    ),
    ShellProfileId.POWERSHELL: _profile(
        id=ShellProfileId.POWERSHELL,
        display_name="PowerShell",
        shell_type=ShellType.POWERSHELL,
        executable="pwsh",
        args_prefix=["-NoProfile", "-Command"],
        guidance="Use PowerShell cmdlets. Pipelines pass objects. Use `$_` in script blocks.",
        syntax_examples={
            "set_variable": "$var = value",
            "export_variable": "$env:VAR = value",
            "background_job": "Start-Job { cmd } or cmd &",
            "chain_on_success": "cmd1 && cmd2  # PS 7+",
            "chain_on_failure": "cmd1 || cmd2  # PS 7+",
            "command_substitution": "$(cmd)",
            "define_function": "function Name { param(...) ... }",
            "for_loop": 'foreach ($i in @("a","b","c")) { Write-Host $i }',
            "array": "@(1, 2, 3)",
            "hashtable": '@{key="value"; k2="v2"}',
            "pipeline": "Get-ChildItem | Where-Object { $_.Length -gt 1MB }",
            "filter_alias": 'gci | ? { $_.Name -like "*.ts" }',
        },
        tool_replacements={
            "grep": "Select-String or sls",
            "find": "Get-ChildItem -Recurse or gci -r",
            "cat": "Get-Content or gc",
            "curl": "Invoke-WebRequest or iwr",
            "wget": "Invoke-WebRequest -OutFile",
            "ls": "Get-ChildItem or gci",
            "rm": "Remove-Item or ri",
            "cp": "Copy-Item or copy",
            "mv": "Move-Item or move",
            "echo": "Write-Host or Write-Output",
        },
        search_command="Select-String",
        search_guidance=(
            "Use Select-String for text search, Where-Object for filtering objects."
        ),
        capabilities=ShellCapabilities(
            supports_background_jobs=True,
            supports_structured_output=True,
            posix_compatible=False,
            supports_and_or=True,  # PS 7+
            supports_job_control=True,
        ),
    ),
    ShellProfileId.CMD: _profile(
        id=ShellProfileId.CMD,
        display_name="Windows CMD",
        shell_type=ShellType.CMD,
        executable="cmd.exe",
        args_prefix=["/c"],
        guidance=(
            "Use Windows cmd.exe syntax. Variables use %VAR% or !VAR! with "
            "delayed expansion."
        ),
        syntax_examples={
            "set_variable": "set VAR=value",
            "export_variable": "set VAR=value  # same as set",
            "background_job": "start /b cmd",
            "chain_on_success": "cmd1 && cmd2",
            "chain_on_failure": "cmd1 || cmd2",
            "command_substitution": "for /f \"tokens=*\" %i in ('cmd') do @echo %i",
            "for_loop": "for %i in (a b c) do @echo %i",
            "conditional": "if exist file echo exists",
            "redirect": "> file 2>&1",
            "delayed_expansion": (
                "setlocal enabledelayedexpansion & set VAR=x & echo !VAR!"
            ),
        },
        tool_replacements={
            "grep": "findstr",
            "find": "dir /s /b",
            "cat": "type",
            "ls": "dir",
            "rm": "del",
            "cp": "copy",
            "mv": "move",
            "pwd": "cd",
            "clear": "cls",
        },
        search_command="findstr",
        search_guidance="Use findstr /s /i for recursive case-insensitive search.",
        capabilities=ShellCapabilities(
            supports_background_jobs=True,  # start /b
            supports_structured_output=False,
            posix_compatible=False,
            supports_and_or=True,
            supports_job_control=False,
        ),
    ),
    ShellProfileId.OTHER: _profile(
        id=ShellProfileId.OTHER,
        display_name="Other",
        shell_type=ShellType.OTHER,
        executable="sh",
        args_prefix=["-c"],
        guidance="Use the configured shell's native syntax; do not assume bash semantics.",
        syntax_examples={},
        tool_replacements={},
        search_command="grep",
        capabilities=ShellCapabilities(
            supports_background_jobs=False,
            supports_structured_output=False,
            posix_compatible=False,
            supports_and_or=False,
            supports_job_control=False,
        ),
    ),
})

# Executable basename -> profile, used for $SHELL detection
_EXECUTABLE_TO_PROFILE: Mapping[str, ShellProfileId] = MappingProxyType({
    "bash": ShellProfileId.BASH,
    "zsh": ShellProfileId.ZSH,
    "fish": ShellProfileId.FISH,
    "nu": ShellProfileId.NUSHELL,
    "nushell": ShellProfileId.NUSHELL,
    "elvish": ShellProfileId.ELVISH,
    "pwsh": ShellProfileId.POWERSHELL,
    "powershell": ShellProfileId.POWERSHELL,
    "cmd": ShellProfileId.CMD,
})


def get_shell_profile(profile_id: ShellProfileId | str) -> ShellProfile:
    """Get a shell profile by id.

    Args:
        profile_id: Profile id or its string value.

    Returns:
        The registered profile (the same object on every call).

    Raises:
        ValueError: If the id is not a known profile.
    """
    return SHELL_PROFILE_REGISTRY[ShellProfileId(profile_id)]


def get_all_shell_profile_ids() -> tuple[ShellProfileId, ...]:
    """Get all profile ids in registry order."""
    return tuple(SHELL_PROFILE_REGISTRY)


def get_shell_configuration_from_profile(
    profile_id: ShellProfileId | str,
) -> ShellConfiguration:
    """Get the invocation recipe of a profile."""
    return get_shell_profile(profile_id).configuration


def detect_shell_profile_from_env(
    environ: Mapping[str, str] | None = None,
) -> ShellProfileId | None:
    """Detect a shell profile from the ``SHELL`` environment variable.

    Args:
        environ: Environment to read (defaults to ``os.environ``).

    Returns:
        The matching profile id, or None when ``SHELL`` is unset or unknown.
    """
    env = os.environ if environ is None else environ
    shell_env = env.get("SHELL")
    if not shell_env:
        return None

    # Accept both separators regardless of the host platform
    basename = PureWindowsPath(PurePath(shell_env).name).name.lower()
    if basename.endswith(".exe"):
        basename = basename[: -len(".exe")]
    return _EXECUTABLE_TO_PROFILE.get(basename)


def get_default_shell_configuration() -> ShellConfiguration:
    """Platform default used when nothing is configured or detected."""
    if sys.platform == "win32":
        return ShellConfiguration(
            executable="powershell.exe",
            args_prefix=("-NoProfile", "-Command"),
            shell=ShellType.POWERSHELL,
        )
    return ShellConfiguration(executable="bash", args_prefix=("-c",), shell=ShellType.BASH)


def build_profile_guidance(profile_id: ShellProfileId | str) -> str:
    """Build a guidance string from a profile, including capability hints."""
    profile = get_shell_profile(profile_id)
    parts = [profile.guidance]

    if not profile.capabilities.supports_and_or:
        parts.append("Do NOT use && or || for chaining commands.")
    if not profile.capabilities.supports_background_jobs:
        parts.append("Background jobs via & are not supported.")
    if profile.capabilities.supports_structured_output:
        parts.append("Pipelines pass structured data (objects), not plain text.")

    return " ".join(parts)


def format_tool_replacements(replacements: Mapping[str, str]) -> str:
    """Format tool replacements, e.g. ``"grep→rg, sed→sd"``."""
    return ", ".join(f"{tool}→{replacement}" for tool, replacement in replacements.items())
