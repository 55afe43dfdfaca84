"""Tests for patch-swarm.yaml loading."""

import pytest

from patch_swarm.config import (
    PatchSwarmConfig,
    get_config,
    load_config,
)
from patch_swarm.errors import ConfigError


def write_config(tmp_path, text: str):
    path = tmp_path / "patch-swarm.yaml"
    path.write_text(text)
    return str(path)


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file_raises_config_error(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_empty_file_gives_defaults(self, tmp_path):
        config = load_config(write_config(tmp_path, ""))

        assert config.agent.binary == "aider"
        assert config.agent.timeout_seconds == 300
        assert config.liveness.max_stale_checks == 3
        assert config.sequencing.default_sequence == ["architect", "patcher"]
        assert config.heuristics.architect_weight == 2
        assert config.heuristics.sequencing_threshold == 3

    def test_nested_sections_are_parsed(self, tmp_path):
        path = write_config(tmp_path, """
agent:
  binary: /opt/aider
  model: claude-3-7-sonnet-latest
  timeout_seconds: 90
  extra_args:
    - "--map-tokens 1024"
  rules: [Write tests, Keep functions small]
liveness:
  health_check_threshold_seconds: 45
  max_stale_checks: 5
git:
  branch_prefix: bots/
sequencing:
  pass_retries: 2
  marker_labels: "multipass, two-pass"
heuristics:
  architect_weight: 3
github:
  repo: acme/widgets
""")
        config = load_config(path)

        assert config.agent.binary == "/opt/aider"
        assert config.agent.model == "claude-3-7-sonnet-latest"
        assert config.agent.timeout_seconds == 90
        assert config.agent.extra_args == ["--map-tokens 1024"]
        assert config.agent.rules == ["Write tests", "Keep functions small"]
        assert config.liveness.health_check_threshold_seconds == 45
        assert config.liveness.max_stale_checks == 5
        assert config.git.branch_prefix == "bots/"
        assert config.sequencing.pass_retries == 2
        assert config.sequencing.marker_labels == ["multipass", "two-pass"]
        assert config.heuristics.architect_weight == 3
        assert config.github.repo == "acme/widgets"

    def test_env_vars_are_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PS_MODEL", "gpt-4.1")
        config = load_config(write_config(tmp_path, "agent:\n  model: ${PS_MODEL}\n"))

        assert config.agent.model == "gpt-4.1"

    def test_unset_env_var_raises(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PS_UNSET_VAR", raising=False)
        with pytest.raises(ConfigError, match="PS_UNSET_VAR"):
            load_config(write_config(tmp_path, "agent:\n  model: ${PS_UNSET_VAR}\n"))

    def test_invalid_yaml_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(write_config(tmp_path, "agent: [unclosed\n"))

    def test_default_sequence_must_have_two_modes(self, tmp_path):
        with pytest.raises(ConfigError, match="exactly two"):
            load_config(write_config(tmp_path, "sequencing:\n  default_sequence: [architect]\n"))

    def test_max_stale_checks_must_be_positive(self, tmp_path):
        with pytest.raises(ConfigError, match="max_stale_checks"):
            load_config(write_config(tmp_path, "liveness:\n  max_stale_checks: 0\n"))

    def test_install_command_string_is_split(self, tmp_path):
        config = load_config(write_config(tmp_path, "agent:\n  install_command: pipx install aider-chat\n"))

        assert config.agent.install_command == ["pipx", "install", "aider-chat"]


class TestConfigPaths:
    """Tests for derived paths."""

    def test_logs_path_is_under_state_dir(self, tmp_path):
        config = PatchSwarmConfig(repo_root=str(tmp_path))

        assert config.logs_path == tmp_path / ".patch-swarm" / "logs"

    def test_relative_modes_file_resolves_against_repo_root(self, tmp_path):
        config = PatchSwarmConfig(repo_root=str(tmp_path), modes_file="modes.yaml")

        assert config.modes_path == tmp_path / "modes.yaml"

    def test_no_modes_file(self, tmp_path):
        assert PatchSwarmConfig(repo_root=str(tmp_path)).modes_path is None


class TestCredentials:
    """Tests for credential lookup from the environment."""

    def test_credentials_come_from_configured_env_vars(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

        credentials = PatchSwarmConfig().agent.get_credentials()

        assert credentials.openai_api_key == "sk-openai"
        assert credentials.anthropic_api_key is None
        assert "sk-openai" not in repr(credentials)

    def test_github_token(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_example")

        assert PatchSwarmConfig().github.get_token() == "ghp_example"


class TestGetConfig:
    """Tests for the config cache."""

    def test_cached_until_reload(self, tmp_path):
        path = write_config(tmp_path, "agent:\n  model: first\n")
        assert get_config(path).agent.model == "first"

        write_config(tmp_path, "agent:\n  model: second\n")
        assert get_config(path).agent.model == "first"
        assert get_config(path, force_reload=True).agent.model == "second"
