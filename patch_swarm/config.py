"""
Configuration loading and validation for Patch Swarm.

This module handles:
- Loading patch-swarm.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Default values for every optional field
- Caching of the loaded configuration

The loaded PatchSwarmConfig is passed explicitly into the selector,
supervisor and sequencer; nothing in the core reads it as ambient state.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from patch_swarm.errors import ConfigError
from patch_swarm.models import AgentCredentials


DEFAULT_CONFIG_FILE = "patch-swarm.yaml"


@dataclass
class AgentConfig:
    """Agent CLI configuration."""
    binary: str = "aider"                      # Path to the agent binary
    model: str = "gpt-4o"                      # Default model identifier
    timeout_seconds: float = 300               # Hard timeout per pass
    base_args: list[str] = field(default_factory=lambda: [
        "--no-auto-commits",
        "--no-pretty",
    ])
    extra_args: list[str] = field(default_factory=list)
    install_command: list[str] = field(default_factory=lambda: [
        "pip", "install", "aider-chat",
    ])                                         # Empty list disables bootstrap
    version_timeout_seconds: int = 30          # Timeout for `--version` probe
    rules: list[str] = field(default_factory=list)  # Appended to the agent message
    openai_api_key_env: str = "OPENAI_API_KEY"
    anthropic_api_key_env: str = "ANTHROPIC_API_KEY"

    def get_credentials(self) -> AgentCredentials:
        """Read model-provider API keys from the environment."""
        return AgentCredentials(
            openai_api_key=os.environ.get(self.openai_api_key_env) or None,
            anthropic_api_key=os.environ.get(self.anthropic_api_key_env) or None,
        )


@dataclass
class LivenessConfig:
    """Stall detection and termination policy for the agent subprocess."""
    activity_threshold_seconds: float = 30.0   # Silence before a status event
    activity_interval_seconds: float = 30.0    # Activity reporter tick
    health_check_threshold_seconds: float = 120.0  # Silence before probing
    health_check_interval_seconds: float = 60.0    # Health check tick
    max_stale_checks: int = 3                  # Unanswered probes before kill
    kill_grace_seconds: float = 10.0           # SIGTERM -> SIGKILL delay
    health_probe: str = "\n"                   # Keystroke written as a probe
    max_prompt_write_failures: int = 3         # Failed answers before kill


@dataclass
class GitConfig:
    """Git configuration for cloning, branching and pushing."""
    clone_depth: int = 1
    clone_timeout_seconds: int = 60
    push_timeout_seconds: int = 60
    branch_prefix: str = "patch-swarm/"
    committer_name: str = "patch-swarm"
    committer_email: str = "patch-swarm-bot@users.noreply.github.com"


@dataclass
class SequencingConfig:
    """Multi-pass sequencing configuration."""
    enabled: bool = True
    default_mode: str = "patcher"              # Used when no mode is selected
    default_sequence: list[str] = field(default_factory=lambda: ["architect", "patcher"])
    marker_labels: list[str] = field(default_factory=lambda: [
        "multipass",
        "patch-swarm:multipass",
    ])
    pass_retries: int = 0                      # Retries for timed-out/stuck passes


@dataclass
class HeuristicConfig:
    """Tuning constants for content-based mode selection."""
    architect_weight: int = 2
    sequencing_threshold: int = 3


@dataclass
class GitHubConfig:
    """GitHub repository configuration."""
    repo: str = ""                             # Repository in "owner/repo" format
    token_env_var: str = "GITHUB_TOKEN"        # Environment variable containing a token

    def get_token(self) -> Optional[str]:
        """Get the GitHub token from environment, if set."""
        return os.environ.get(self.token_env_var) or None


@dataclass
class PatchSwarmConfig:
    """
    Main configuration for Patch Swarm.

    This is the top-level config loaded from patch-swarm.yaml.
    """
    # Paths
    repo_root: str = "."
    state_dir: str = ".patch-swarm"
    modes_file: Optional[str] = None           # Optional directive/model overrides

    # Nested configurations
    agent: AgentConfig = field(default_factory=AgentConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    git: GitConfig = field(default_factory=GitConfig)
    sequencing: SequencingConfig = field(default_factory=SequencingConfig)
    heuristics: HeuristicConfig = field(default_factory=HeuristicConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def state_path(self) -> Path:
        """Absolute path to the state directory."""
        return Path(self.repo_root) / self.state_dir

    @property
    def logs_path(self) -> Path:
        """Absolute path to the logs directory."""
        return self.state_path / "logs"

    @property
    def modes_path(self) -> Optional[Path]:
        """Absolute path to the mode override file, if configured."""
        if not self.modes_file:
            return None
        path = Path(self.modes_file)
        if not path.is_absolute():
            path = Path(self.repo_root) / path
        return path


# Module-level cache for the loaded configuration
_config_cache: Optional[PatchSwarmConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _as_list(value: Any, name: str) -> list[str]:
    """Accept a YAML list or a comma separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item) for item in value]
    raise ConfigError(f"{name} must be a list or a comma separated string")


def _parse_agent_config(data: dict[str, Any]) -> AgentConfig:
    """Parse agent configuration from dict."""
    defaults = AgentConfig()
    install = data.get("install_command", defaults.install_command)
    if isinstance(install, str):
        install = install.split()
    return AgentConfig(
        binary=data.get("binary", defaults.binary),
        model=data.get("model", defaults.model),
        timeout_seconds=data.get("timeout_seconds", defaults.timeout_seconds),
        base_args=_as_list(data.get("base_args", defaults.base_args), "agent.base_args"),
        extra_args=_as_list(data.get("extra_args", []), "agent.extra_args"),
        install_command=list(install or []),
        version_timeout_seconds=data.get("version_timeout_seconds", 30),
        rules=_as_list(data.get("rules", []), "agent.rules"),
        openai_api_key_env=data.get("openai_api_key_env", "OPENAI_API_KEY"),
        anthropic_api_key_env=data.get("anthropic_api_key_env", "ANTHROPIC_API_KEY"),
    )


def _parse_liveness_config(data: dict[str, Any]) -> LivenessConfig:
    """Parse liveness configuration from dict."""
    config = LivenessConfig(
        activity_threshold_seconds=data.get("activity_threshold_seconds", 30.0),
        activity_interval_seconds=data.get("activity_interval_seconds", 30.0),
        health_check_threshold_seconds=data.get("health_check_threshold_seconds", 120.0),
        health_check_interval_seconds=data.get("health_check_interval_seconds", 60.0),
        max_stale_checks=data.get("max_stale_checks", 3),
        kill_grace_seconds=data.get("kill_grace_seconds", 10.0),
        health_probe=data.get("health_probe", "\n"),
        max_prompt_write_failures=data.get("max_prompt_write_failures", 3),
    )
    if config.max_stale_checks < 1:
        raise ConfigError("liveness.max_stale_checks must be at least 1")
    return config


def _parse_git_config(data: dict[str, Any]) -> GitConfig:
    """Parse git configuration from dict."""
    return GitConfig(
        clone_depth=data.get("clone_depth", 1),
        clone_timeout_seconds=data.get("clone_timeout_seconds", 60),
        push_timeout_seconds=data.get("push_timeout_seconds", 60),
        branch_prefix=data.get("branch_prefix", "patch-swarm/"),
        committer_name=data.get("committer_name", "patch-swarm"),
        committer_email=data.get(
            "committer_email", "patch-swarm-bot@users.noreply.github.com"
        ),
    )


def _parse_sequencing_config(data: dict[str, Any]) -> SequencingConfig:
    """Parse sequencing configuration from dict."""
    defaults = SequencingConfig()
    sequence = _as_list(
        data.get("default_sequence", defaults.default_sequence),
        "sequencing.default_sequence",
    )
    if len(sequence) != 2:
        raise ConfigError("sequencing.default_sequence must name exactly two modes")
    return SequencingConfig(
        enabled=data.get("enabled", True),
        default_mode=data.get("default_mode", defaults.default_mode),
        default_sequence=sequence,
        marker_labels=_as_list(
            data.get("marker_labels", defaults.marker_labels),
            "sequencing.marker_labels",
        ),
        pass_retries=data.get("pass_retries", 0),
    )


def _parse_heuristic_config(data: dict[str, Any]) -> HeuristicConfig:
    """Parse heuristic tuning constants from dict."""
    return HeuristicConfig(
        architect_weight=data.get("architect_weight", 2),
        sequencing_threshold=data.get("sequencing_threshold", 3),
    )


def _parse_github_config(data: dict[str, Any]) -> GitHubConfig:
    """Parse GitHub configuration from dict."""
    return GitHubConfig(
        repo=data.get("repo", ""),
        token_env_var=data.get("token_env_var", "GITHUB_TOKEN"),
    )


def load_config(config_path: Optional[str] = None) -> PatchSwarmConfig:
    """
    Load configuration from patch-swarm.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for patch-swarm.yaml in current directory.

    Returns:
        PatchSwarmConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    return PatchSwarmConfig(
        repo_root=data.get("repo_root", "."),
        state_dir=data.get("state_dir", ".patch-swarm"),
        modes_file=data.get("modes_file"),
        agent=_parse_agent_config(data.get("agent", {}) or {}),
        liveness=_parse_liveness_config(data.get("liveness", {}) or {}),
        git=_parse_git_config(data.get("git", {}) or {}),
        sequencing=_parse_sequencing_config(data.get("sequencing", {}) or {}),
        heuristics=_parse_heuristic_config(data.get("heuristics", {}) or {}),
        github=_parse_github_config(data.get("github", {}) or {}),
    )


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> PatchSwarmConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        PatchSwarmConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
