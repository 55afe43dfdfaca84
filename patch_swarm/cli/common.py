"""Common utilities and global state for the CLI.

Contains the console singleton and config loading with a defaults fallback.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from rich.console import Console

if TYPE_CHECKING:
    from patch_swarm.config import PatchSwarmConfig

# Config file override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_config_path() -> Optional[str]:
    return _config_path


def set_config_path(path: Optional[str]) -> None:
    """Set the config file override."""
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def load_config_safe() -> Optional["PatchSwarmConfig"]:
    """
    Load config, returning None if the file does not exist.

    An existing but invalid file still raises ConfigError.
    """
    from pathlib import Path

    from patch_swarm.config import DEFAULT_CONFIG_FILE, load_config

    path = get_config_path() or DEFAULT_CONFIG_FILE
    if not Path(path).exists():
        return None
    return load_config(path)


def get_config_or_default() -> "PatchSwarmConfig":
    """Get config or fall back to built-in defaults."""
    config = load_config_safe()
    if config is not None:
        return config

    from patch_swarm.config import PatchSwarmConfig

    return PatchSwarmConfig()
