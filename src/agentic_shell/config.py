"""Application settings for agentic shell.

Settings Management:
    The module provides both global singleton and context-based settings:

    1. Global singleton (simple cases):
        set_settings(my_settings)
        settings = get_settings()

    2. Context-based (isolated contexts, tests):
        with SettingsContext(my_settings):
            settings = get_settings()  # Returns my_settings

Settings Loading Priority (highest to lowest):
    1. Constructor arguments
    2. Environment variables (AGENTIC_SHELL_* prefix)
    3. Project config (./.agentic_shell/settings.json)
    4. User config (~/.agentic_shell/settings.json)
    5. .env file
    6. Default values
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Generator, Literal, Tuple, Type

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

__all__ = [
    "ShellSettings",
    "SettingsContext",
    "get_settings",
    "set_settings",
    "set_context_settings",
    "get_context_settings",
    "reload_settings",
]

DEFAULT_APP_NAME = "agentic_shell"


def _get_json_config_source(
    settings_cls: Type[BaseSettings],
    json_file: Path,
) -> PydanticBaseSettingsSource | None:
    """Create a JSON config source if the file exists."""
    if not json_file.exists():
        return None
    return JsonConfigSettingsSource(settings_cls, json_file=json_file)


class ShellSettings(BaseSettings):
    """Settings for the shell tool.

    Settings are loaded from (in order of precedence):
    1. Environment variables (AGENTIC_SHELL_ prefix)
    2. Project config (./.agentic_shell/settings.json)
    3. User config (~/.agentic_shell/settings.json)
    4. .env file
    5. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTIC_SHELL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field(
        default=DEFAULT_APP_NAME,
        title="App Name",
        description="Application name, also the name of the config directories",
    )
    target_dir: Path = Field(
        default_factory=Path.cwd,
        title="Workspace",
        description="Workspace root; commands run here unless dir_path is given",
    )

    # Policy
    approval_mode: Literal["default", "auto_edit", "yolo"] = Field(
        default="default",
        title="Approval Mode",
        description="'yolo' runs every command without confirmation",
    )
    interactive: bool = Field(
        default=True,
        title="Interactive",
        description="Whether a user is present to confirm commands",
    )
    allowed_tools: list[str] = Field(
        default_factory=list,
        title="Allowed Tools",
        description=(
            "Allow-list entries, e.g. 'ls', 'git status', "
            "'run_shell_command(npm test)' or 'npm *'"
        ),
    )

    # Execution
    inactivity_timeout_ms: int = Field(
        default=300_000,
        title="Inactivity Timeout",
        description="Cancel a command after this long without output (<= 0 disables)",
    )
    enable_background_pid_discovery: bool = Field(
        default=True,
        title="Background PID Discovery",
        description="Report processes left running in the command's process group",
    )
    shell_config_path: Path | None = Field(
        default=None,
        title="Shell Config",
        description="YAML file with shell profile overrides",
    )

    # Output
    summarize_tool_output: bool = Field(
        default=False,
        title="Summarize Output",
        description="Pass command output through the summarizer before returning it",
    )
    debug_mode: bool = Field(
        default=False,
        title="Debug Mode",
        description="Show the full tool result to the user and log at debug level",
    )
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="warning",
        title="Log Level",
        description="Logging verbosity level",
    )
    log_format: Literal["console", "json"] = Field(
        default="console",
        title="Log Format",
        description="Log output format (console for dev, json for production)",
    )

    @field_validator("target_dir", "shell_config_path", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path | None) -> Path | None:
        """Expand ~ in paths."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Layer JSON config files between the environment and .env.

        JSON sources are only included if the files exist.
        """
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings]

        app_name = cls.model_fields["app_name"].default or DEFAULT_APP_NAME

        project_json = _get_json_config_source(
            settings_cls, Path.cwd() / f".{app_name}" / "settings.json"
        )
        if project_json:
            sources.append(project_json)

        user_json = _get_json_config_source(
            settings_cls, Path.home() / f".{app_name}" / "settings.json"
        )
        if user_json:
            sources.append(user_json)

        sources.append(dotenv_settings)
        return tuple(sources)

    @property
    def workspace_root(self) -> Path:
        return self.target_dir.resolve()

    def resolve_dir(self, dir_path: str | None) -> Path:
        """Resolve a (possibly relative) directory against the workspace."""
        if not dir_path:
            return self.workspace_root
        return (self.workspace_root / Path(dir_path).expanduser()).resolve()

    def validate_path_access(self, path: str | Path) -> str | None:
        """Check that ``path`` lies inside the workspace.

        Returns:
            None if access is allowed, otherwise an error message.
        """
        resolved = self.resolve_dir(str(path))
        root = self.workspace_root
        if resolved != root and root not in resolved.parents:
            return (
                f'Path not in workspace: Attempted path "{resolved}" resolves outside '
                f"the allowed workspace directories: {root}"
            )
        return None


# Context variable for settings (takes precedence over global singleton)
_settings_context: ContextVar[ShellSettings | None] = ContextVar(
    "settings_context", default=None
)

# Global settings instance holder (fallback when no context)
_settings_instance: ShellSettings | None = None


def get_settings() -> ShellSettings:
    """Get the current settings instance.

    Settings resolution order:
    1. Context variable (set via SettingsContext or set_context_settings)
    2. Global singleton (set via set_settings)
    3. Fresh ShellSettings instance (created on first access)
    """
    context_settings = _settings_context.get()
    if context_settings is not None:
        return context_settings

    global _settings_instance
    if _settings_instance is None:
        _settings_instance = ShellSettings()
    return _settings_instance


def set_settings(settings: ShellSettings) -> None:
    """Set the global settings instance."""
    global _settings_instance
    _settings_instance = settings


def set_context_settings(settings: ShellSettings | None) -> Token:
    """Set settings for the current context.

    Returns:
        Token that can be used to reset the context variable.
    """
    return _settings_context.set(settings)


def get_context_settings() -> ShellSettings | None:
    """Get settings from current context (if any)."""
    return _settings_context.get()


@contextmanager
def SettingsContext(settings: ShellSettings) -> Generator[ShellSettings, None, None]:
    """Context manager for isolated settings.

    Example:
        with SettingsContext(test_settings) as s:
            result = await shell_command("ls")  # Uses test_settings
    """
    token = _settings_context.set(settings)
    try:
        yield settings
    finally:
        _settings_context.reset(token)


def reload_settings() -> ShellSettings:
    """Reload settings (clears global singleton and context cache)."""
    global _settings_instance
    _settings_instance = None
    _settings_context.set(None)
    return get_settings()
