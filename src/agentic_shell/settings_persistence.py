"""Settings persistence utilities.

Saves settings values to the layered JSON config files read by
``ShellSettings``. "Always allow" answers that the user asks to keep are
written here as ``allowed_tools`` entries.
"""

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agentic_shell.config import DEFAULT_APP_NAME

if TYPE_CHECKING:
    from agentic_shell.config import ShellSettings


class SettingsPersistence:
    """Manages loading and saving settings to JSON files.

    Loading priority (highest to lowest):
        1. Environment variables
        2. Project config (./.{app_name}/settings.json)
        3. User config (~/.{app_name}/settings.json)
        4. .env file
        5. Default values

    Saving: Always saves to project config unless a path is given.
    """

    def __init__(self, app_name: str = DEFAULT_APP_NAME, path: Path | None = None):
        """Initialize persistence manager.

        Args:
            app_name: Application name used for config directories
            path: Explicit file to load from and save to
        """
        self.app_name = app_name
        self._path = path

    @property
    def project_config_path(self) -> Path:
        """Get path to project config file (./.{app_name}/settings.json)."""
        return self._path or Path.cwd() / f".{self.app_name}" / "settings.json"

    @property
    def user_config_path(self) -> Path:
        """Get path to user config file (~/.{app_name}/settings.json)."""
        return Path.home() / f".{self.app_name}" / "settings.json"

    def save(
        self,
        settings: "ShellSettings",
        exclude_defaults: bool = True,
        path: Path | None = None,
    ) -> Path:
        """Save settings to JSON config file.

        Args:
            settings: Settings instance to save
            exclude_defaults: If True, only save non-default values
            path: Optional custom path (defaults to project_config_path)

        Returns:
            Path to the saved config file
        """
        data = settings.model_dump(
            mode="json",
            exclude_defaults=exclude_defaults,
            exclude_none=True,
        )
        return self._write(data, path or self.project_config_path)

    def load(self, path: Path | None = None) -> dict[str, Any]:
        """Load settings from JSON config file.

        If no path is specified, tries project config first, then user config.

        Returns:
            Dictionary of settings from file, or empty dict if no file exists
        """
        if path is not None:
            if not path.exists():
                return {}
            with open(path) as f:
                return json.load(f)

        for config_path in [self.project_config_path, self.user_config_path]:
            if config_path.exists():
                with open(config_path) as f:
                    return json.load(f)

        return {}

    def add_allowed_tools(self, entries: list[str], path: Path | None = None) -> Path:
        """Append allow-list entries to the project config, keeping existing ones.

        Returns:
            Path to the saved config file
        """
        target_path = path or self.project_config_path
        data = self.load(target_path)
        existing = list(data.get("allowed_tools", []))
        for entry in entries:
            if entry not in existing:
                existing.append(entry)
        data["allowed_tools"] = existing
        return self._write(data, target_path)

    def _write(self, data: dict[str, Any], target_path: Path) -> Path:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        with open(target_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        return target_path
