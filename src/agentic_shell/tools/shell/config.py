"""Per-shell configuration overrides.

Lets the user pick a shell profile and override individual parts of it
(executable, arguments, guidance, tool hints) from a YAML file, plus
command allow/exclude lists.

Every ``resolve_*`` helper follows the same order: explicit non-empty
value, then the selected profile, then the profile detected from
``$SHELL``, then the platform default.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from agentic_shell.logging import Loggers
from agentic_shell.tools.shell.profiles import (
    ShellConfiguration,
    ShellProfile,
    ShellProfileId,
    ShellType,
    detect_shell_profile_from_env,
    get_default_shell_configuration,
    get_shell_profile,
)

logger = Loggers.config()

USER_CONFIG_RELATIVE = Path(".config") / "agentic-shell" / "shell.yaml"
LOCAL_CONFIG_NAME = "shell.yaml"


def _normalize_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _normalize_args_prefix(value: Any) -> tuple[str, ...] | None:
    if not isinstance(value, (list, tuple)):
        return None
    normalized = tuple(arg for arg in value if isinstance(arg, str) and arg)
    return normalized or None


@dataclass
class ShellConfig:
    """User overrides for the shell the tool runs commands in.

    Attributes:
        profile: Selected shell profile (None = detect from $SHELL).
        executable: Shell executable override.
        args_prefix: Arguments placed before the command (e.g. ["-c"]).
        shell_type: Shell kind override used for parsing.
        guidance: Syntax guidance shown to the model.
        search_command: Preferred search command.
        search_guidance: Guidance about searching.
        tool_guidance: Extra Unix tool -> replacement hints.
        allow_commands: Allow-list entries added to the settings' list.
        exclude_commands: Commands rejected at validation.
    """

    profile: ShellProfileId | None = None
    executable: str | None = None
    args_prefix: list[str] | None = None
    shell_type: ShellType | None = None
    guidance: str | None = None
    search_command: str | None = None
    search_guidance: str | None = None
    tool_guidance: dict[str, str] = field(default_factory=dict)
    allow_commands: list[str] = field(default_factory=list)
    exclude_commands: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShellConfig":
        """Create config from dictionary.

        Raises:
            ValueError: If ``profile`` or ``shell_type`` is not a known value.
        """
        profile = data.get("profile")
        shell_type = data.get("shell_type")
        tool_guidance = data.get("tool_guidance") or {}

        return cls(
            profile=ShellProfileId(profile) if profile else None,
            executable=data.get("executable"),
            args_prefix=data.get("args_prefix"),
            shell_type=ShellType(shell_type) if shell_type else None,
            guidance=data.get("guidance"),
            search_command=data.get("search_command"),
            search_guidance=data.get("search_guidance"),
            tool_guidance=dict(tool_guidance),
            allow_commands=list(data.get("allow_commands", [])),
            exclude_commands=list(data.get("exclude_commands", [])),
        )

    @classmethod
    def from_yaml(cls, path: Path | str) -> "ShellConfig":
        """Load config from YAML file. A missing file yields the defaults."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        logger.debug("shell_config_loaded", path=str(path))
        return cls.from_dict(data)

    @classmethod
    def load_default(cls) -> "ShellConfig":
        """Load configuration from default location.

        Looks for config in:
        1. ~/.config/agentic-shell/shell.yaml
        2. ./shell.yaml (project local)
        """
        user_config = Path.home() / USER_CONFIG_RELATIVE
        if user_config.exists():
            return cls.from_yaml(user_config)

        local_config = Path(LOCAL_CONFIG_NAME)
        if local_config.exists():
            return cls.from_yaml(local_config)

        return cls()

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary (only values that are set)."""
        data: dict[str, Any] = {
            "profile": self.profile.value if self.profile else None,
            "executable": self.executable,
            "args_prefix": self.args_prefix,
            "shell_type": self.shell_type.value if self.shell_type else None,
            "guidance": self.guidance,
            "search_command": self.search_command,
            "search_guidance": self.search_guidance,
            "tool_guidance": self.tool_guidance or None,
            "allow_commands": self.allow_commands or None,
            "exclude_commands": self.exclude_commands or None,
        }
        return {key: value for key, value in data.items() if value is not None}

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve_profile_id(
        self, environ: Mapping[str, str] | None = None
    ) -> ShellProfileId | None:
        """Selected profile, else the one detected from $SHELL."""
        if self.profile is not None:
            return self.profile
        return detect_shell_profile_from_env(environ)

    def resolve_profile(self, environ: Mapping[str, str] | None = None) -> ShellProfile | None:
        profile_id = self.resolve_profile_id(environ)
        return get_shell_profile(profile_id) if profile_id else None

    def resolve_shell_configuration(
        self, environ: Mapping[str, str] | None = None
    ) -> ShellConfiguration:
        """The invocation recipe commands run with."""
        profile = self.resolve_profile(environ)
        base = profile.configuration if profile else get_default_shell_configuration()

        return ShellConfiguration(
            executable=_normalize_text(self.executable) or base.executable,
            args_prefix=_normalize_args_prefix(self.args_prefix) or base.args_prefix,
            shell=ShellType(self.shell_type) if self.shell_type else base.shell,
        )

    def resolve_guidance(self, environ: Mapping[str, str] | None = None) -> str | None:
        explicit = _normalize_text(self.guidance)
        if explicit:
            return explicit
        profile = self.resolve_profile(environ)
        return profile.guidance if profile else None

    def resolve_search_command(self, environ: Mapping[str, str] | None = None) -> str | None:
        explicit = _normalize_text(self.search_command)
        if explicit:
            return explicit
        profile = self.resolve_profile(environ)
        return profile.search_command if profile else None

    def resolve_search_guidance(self, environ: Mapping[str, str] | None = None) -> str | None:
        if self.search_guidance is not None:
            # An explicit empty value switches the profile's guidance off
            return _normalize_text(self.search_guidance)
        profile = self.resolve_profile(environ)
        return profile.search_guidance if profile else None

    def resolve_tool_guidance(
        self, environ: Mapping[str, str] | None = None
    ) -> dict[str, str] | None:
        """Profile tool replacements with the custom entries merged over them."""
        profile = self.resolve_profile(environ)
        defaults = dict(profile.tool_replacements) if profile else None

        custom = {
            key.strip(): value.strip()
            for key, value in self.tool_guidance.items()
            if isinstance(key, str) and key.strip()
            and isinstance(value, str) and value.strip()
        }
        if not custom:
            return defaults
        return {**(defaults or {}), **custom}
