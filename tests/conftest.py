"""Shared fixtures for patch-swarm tests."""

import os
import shutil
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from patch_swarm.config import AgentConfig, LivenessConfig, PatchSwarmConfig, clear_config_cache


def run_git(*args, cwd):
    """Run git for test setup, failing loudly."""
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        env=env,
        check=True,
        capture_output=True,
        text=True,
    ).stdout


@pytest.fixture(autouse=True)
def _clear_caches():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def git_remote(tmp_path):
    """A bare repository with one commit on its default branch."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    seed = tmp_path / "seed"
    seed.mkdir()
    run_git("init", cwd=seed)
    (seed / "README.md").write_text("# demo\n")
    (seed / "app.py").write_text("def add(a, b):\n    return a - b\n")
    run_git("add", "-A", cwd=seed)
    run_git(
        "-c", "user.name=Test",
        "-c", "user.email=test@example.com",
        "-c", "commit.gpgsign=false",
        "commit", "-m", "initial",
        cwd=seed,
    )

    remote = tmp_path / "remote.git"
    run_git("clone", "--bare", str(seed), str(remote), cwd=tmp_path)
    return remote


@pytest.fixture
def agent_script(tmp_path):
    """
    Write a fake agent script and return its path.

    The script runs as `python <script> <mode args> --model M --message-file F`,
    so it sees the same argv the real agent would.
    """
    scripts_dir = tmp_path / "agents"
    scripts_dir.mkdir()

    def write(source: str, name: str = "agent.py") -> Path:
        path = scripts_dir / name
        path.write_text(textwrap.dedent(source))
        return path

    return write


@pytest.fixture
def make_config(tmp_path):
    """Build a PatchSwarmConfig that runs a fake agent script with fast liveness timers."""

    def build(script: Path = None, timeout_seconds: float = 30, **liveness) -> PatchSwarmConfig:
        agent = AgentConfig(
            binary=sys.executable,
            base_args=[str(script)] if script else [],
            install_command=[],
            timeout_seconds=timeout_seconds,
        )
        settings = dict(
            activity_threshold_seconds=60.0,
            activity_interval_seconds=60.0,
            health_check_threshold_seconds=60.0,
            health_check_interval_seconds=60.0,
            max_stale_checks=3,
            kill_grace_seconds=2.0,
        )
        settings.update(liveness)
        return PatchSwarmConfig(
            repo_root=str(tmp_path),
            agent=agent,
            liveness=LivenessConfig(**settings),
        )

    return build
