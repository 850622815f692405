"""Platform-aware configuration path resolution.

Config file locations:
- Windows: %PROGRAMDATA% (system), %APPDATA% (user)
- Unix: /etc/ (system), ~/.config/agentcore/ or ~/.agentcore/ (user)
- Project: <cwd>/.agentcore/
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

CONFIG_FILENAME = "config.yaml"
APP_NAME = "agentcore"
SHORT_NAME = ".agentcore"


def get_system_config_path() -> Path | None:
    """Get system-level config path (the file may not exist)."""
    if sys.platform == "win32":
        program_data = os.environ.get("PROGRAMDATA")
        if program_data:
            return Path(program_data) / APP_NAME / CONFIG_FILENAME
        return None
    return Path("/etc") / APP_NAME / CONFIG_FILENAME


def get_user_config_path() -> Path | None:
    """Get user-level config path (the file may not exist)."""
    if sys.platform == "win32":
        app_data = os.environ.get("APPDATA")
        if app_data:
            return Path(app_data) / APP_NAME / CONFIG_FILENAME
        return None

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / APP_NAME / CONFIG_FILENAME

    home = Path.home()
    xdg_default = home / ".config"
    if xdg_default.exists():
        return xdg_default / APP_NAME / CONFIG_FILENAME

    return home / SHORT_NAME / CONFIG_FILENAME


def get_project_config_path(cwd: str) -> Path:
    """Get project-level config path for a working directory."""
    return Path(cwd) / SHORT_NAME / CONFIG_FILENAME


def get_project_data_dir(cwd: str) -> Path:
    """Directory for per-project runtime data (stored tool output, etc.)."""
    return Path(cwd) / SHORT_NAME


def get_config_paths(cwd: str | None = None) -> list[Path]:
    """Get all config paths in priority order (lowest to highest).

    Args:
        cwd: Optional project directory for project-level config.

    Returns:
        List of config paths: system, user, project.
    """
    paths: list[Path] = []

    system_path = get_system_config_path()
    if system_path:
        paths.append(system_path)

    user_path = get_user_config_path()
    if user_path:
        paths.append(user_path)

    if cwd:
        paths.append(get_project_config_path(cwd))

    return paths
