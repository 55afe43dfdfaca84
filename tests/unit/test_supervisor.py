"""Tests for the process supervisor.

The agent is a small Python script run by the current interpreter against a
local bare repository, so these tests exercise real pipes, signals and git.
"""

import json
import re
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from patch_swarm.config import PatchSwarmConfig
from patch_swarm.errors import AgentInitError, FailureKind
from patch_swarm.models import AgentCredentials, RunOptions, RunPhase
from patch_swarm.supervisor import (
    CLAUDE_OPENAI_PLACEHOLDER,
    ProcessSupervisor,
    build_agent_message,
    commit_message,
    derive_branch_name,
    extract_issue_number,
    split_extra_args,
)


EDITING_AGENT = '''
import json, sys
args = sys.argv[1:]
message_file = args[args.index("--message-file") + 1]
with open(r"RECORD", "w") as f:
    json.dump({"argv": args, "message": open(message_file).read()}, f)
with open("app.py", "w") as f:
    f.write("def add(a, b):\\n    return a + b\\n")
print("Applied edit to app.py", flush=True)
'''

PROMPTING_AGENT = '''
import sys
sys.stdout.write("Applying the fix.\\nApply edits to app.py? (Y)es/(N)o [Yes]: ")
sys.stdout.flush()
answer = sys.stdin.readline().strip()
with open(r"RECORD", "w") as f:
    f.write(answer)
if answer == "y":
    with open("app.py", "w") as f:
        f.write("def add(a, b):\\n    return a + b\\n")
'''

IDLE_AGENT = '''
print("Thinking...", flush=True)
'''

FAILING_AGENT = '''
import sys
print("Error: model gpt-4o is not available", flush=True)
sys.exit(2)
'''

UPGRADING_AGENT = '''
import os
marker = r"RECORD"
if not os.path.exists(marker):
    open(marker, "w").close()
    print("Successfully installed aider-chat-0.86.1", flush=True)
    print("Re-run aider to use new version.", flush=True)
else:
    with open("app.py", "w") as f:
        f.write("def add(a, b):\\n    return a + b\\n")
'''

SLEEPING_AGENT = '''
import time
time.sleep(60)
'''

PARTIAL_THEN_SLEEPING_AGENT = '''
import time
with open("app.py", "w") as f:
    f.write("def add(a, b):\\n    return a + b\\n")
print("Half way there", flush=True)
time.sleep(60)
'''

SILENT_READER_AGENT = '''
import sys
for line in sys.stdin:
    pass
'''

PROBE_ANSWERING_AGENT = '''
import sys
for count, line in enumerate(sys.stdin, start=1):
    sys.stdout.write("> ")
    sys.stdout.flush()
    if count >= 4:
        break
with open("app.py", "w") as f:
    f.write("def add(a, b):\\n    return a + b\\n")
'''


def remote_branches(remote):
    out = subprocess.run(
        ["git", "for-each-ref", "--format=%(refname:short)", "refs/heads"],
        cwd=str(remote), check=True, capture_output=True, text=True,
    ).stdout
    return out.split()


def remote_log(remote, branch):
    return subprocess.run(
        ["git", "log", "-1", "--format=%B", branch],
        cwd=str(remote), check=True, capture_output=True, text=True,
    ).stdout


class EventLog:
    """Progress callback that remembers every event."""

    def __init__(self):
        self.events = []

    def __call__(self, name, data):
        self.events.append((name, data))

    def names(self):
        return [name for name, _ in self.events]

    def phases(self):
        return [data["phase"] for name, data in self.events if name == "phase"]


@pytest.fixture
def run_agent(git_remote, agent_script, make_config, tmp_path):
    """Run one supervised pass with a fake agent and return (result, events, supervisor)."""

    def run(source, mode="patcher", model="gpt-4o", timeout_seconds=30, hint="issue-7", **liveness):
        record = tmp_path / "record.txt"
        script = agent_script(source.replace("RECORD", str(record)))
        config = make_config(script, timeout_seconds=timeout_seconds, **liveness)
        options = RunOptions(mode=mode, model=model, timeout_seconds=timeout_seconds)
        supervisor = ProcessSupervisor(config, options)
        events = EventLog()

        supervisor.init()
        result = supervisor.run(
            str(git_remote),
            "Fix add",
            "add() subtracts instead of adding.",
            hint,
            on_progress=events,
        )
        return result, events, supervisor, record

    return run


class TestBranchNames:
    """Tests for branch name derivation."""

    def test_mode_and_issue(self):
        assert derive_branch_name("patcher", "issue-7", suffix="abc123") == "patch-swarm/patcher-issue-7-abc123"

    def test_mode_already_in_hint(self):
        name = derive_branch_name("architect", "architect-issue-42", suffix="abc123")

        assert name == "patch-swarm/architect-issue-42-abc123"

    def test_mode_inside_a_hint_word_is_still_added(self):
        name = derive_branch_name("patcher", "dispatcher-crash", suffix="abc123")

        assert name == "patch-swarm/patcher-dispatcher-crash-abc123"

    def test_second_pass_hint(self):
        name = derive_branch_name("patcher", "patcher-on-architect-issue-42", suffix="abc123")

        assert name == "patch-swarm/patcher-on-architect-issue-42-abc123"

    def test_issue_number_from_title(self):
        name = derive_branch_name("patcher", "fix-login", "Login broken (#12)", suffix="abc123")

        assert name == "patch-swarm/patcher-fix-login-issue-12-abc123"

    def test_random_suffix(self):
        first = derive_branch_name("patcher", None)
        second = derive_branch_name("patcher", None)

        assert re.fullmatch(r"patch-swarm/patcher-[0-9a-f]{6}", first)
        assert first != second

    def test_custom_prefix_and_unsafe_characters(self):
        name = derive_branch_name("hybrid:security", "Fix XSS!", prefix="bot/", suffix="abc123")

        assert name == "bot/hybrid-security-fix-xss-abc123"

    @pytest.mark.parametrize("hint,title,expected", [
        ("issue-42", None, "42"),
        ("issue_42", None, "42"),
        ("fix-#9", None, "9"),
        ("release-v2", "See issue 15", "15"),
        ("cleanup", None, None),
    ])
    def test_extract_issue_number(self, hint, title, expected):
        assert extract_issue_number(hint, title) == expected


class TestMessageAndCommand:
    """Tests for the agent message file and command line."""

    def test_build_agent_message(self):
        message = build_agent_message("Be careful.", "Title", "Body text", ["Run tests"])

        assert message == "Be careful.\n\n# Title\n\nBody text\n\n## Development Rules\n\n- Run tests\n"

    def test_message_without_directive_or_body(self):
        assert build_agent_message(None, "Title", "  ") == "# Title\n"

    def test_split_extra_args(self):
        assert split_extra_args(["--map-tokens 1024", "--yes-always", ""]) == [
            "--map-tokens", "1024", "--yes-always",
        ]

    def test_commit_message(self):
        assert commit_message("Fix add ", "7") == "Fix: Fix add\n\nRefs #7"
        assert commit_message("Fix add", None) == "Fix: Fix add"

    def test_build_command(self, tmp_path):
        config = PatchSwarmConfig(repo_root=str(tmp_path))
        options = RunOptions(mode="patcher", model="gpt-4o", timeout_seconds=60, extra_args=("--map-tokens 0",))
        supervisor = ProcessSupervisor(config, options)

        command = supervisor.build_command(Path("/tmp/work/ISSUE.md"))

        assert command == [
            "aider", "--no-auto-commits", "--no-pretty",
            "--edit-format", "diff",
            "--model", "gpt-4o",
            "--map-tokens", "0",
            "--message-file", "/tmp/work/ISSUE.md",
        ]

    def test_architect_mode_args(self, tmp_path):
        config = PatchSwarmConfig(repo_root=str(tmp_path))
        supervisor = ProcessSupervisor(config, RunOptions("architect", "o3", 60))

        assert "--architect" in supervisor.build_command(Path("ISSUE.md"))

    def test_claude_model_gets_placeholder_openai_key(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = PatchSwarmConfig(repo_root=str(tmp_path))
        options = RunOptions(
            mode="patcher",
            model="claude-3-5-sonnet",
            timeout_seconds=60,
            credentials=AgentCredentials(anthropic_api_key="sk-ant-test"),
        )

        env = ProcessSupervisor(config, options).build_env()

        assert env["OPENAI_API_KEY"] == CLAUDE_OPENAI_PLACEHOLDER
        assert env["ANTHROPIC_API_KEY"] == "sk-ant-test"
        assert env["GIT_TERMINAL_PROMPT"] == "0"
        assert env["PYTHONUNBUFFERED"] == "1"

    def test_real_openai_key_is_kept(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = PatchSwarmConfig(repo_root=str(tmp_path))
        options = RunOptions(
            mode="patcher",
            model="gpt-4o",
            timeout_seconds=60,
            credentials=AgentCredentials(openai_api_key="sk-real"),
        )

        assert ProcessSupervisor(config, options).build_env()["OPENAI_API_KEY"] == "sk-real"


class TestLifecycle:
    """Tests for init and cleanup."""

    def test_run_before_init_raises(self, tmp_path):
        config = PatchSwarmConfig(repo_root=str(tmp_path))
        supervisor = ProcessSupervisor(config, RunOptions("patcher", "gpt-4o", 60))

        with pytest.raises(AgentInitError):
            supervisor.run("/nowhere", "title", "body", "issue-1")

    def test_init_propagates_missing_agent(self, tmp_path):
        config = PatchSwarmConfig(repo_root=str(tmp_path))
        preflight = MagicMock()
        preflight.ensure_available.side_effect = AgentInitError("aider not found")
        supervisor = ProcessSupervisor(config, RunOptions("patcher", "gpt-4o", 60), preflight=preflight)

        with pytest.raises(AgentInitError):
            supervisor.init()
        assert supervisor.work_dir is None

    def test_work_dir_removed_after_run(self, git_remote, agent_script, make_config):
        config = make_config(agent_script(IDLE_AGENT))
        supervisor = ProcessSupervisor(config, RunOptions("patcher", "gpt-4o", 30))
        supervisor.init()
        work_dir = supervisor.work_dir
        assert work_dir.exists()

        supervisor.run(str(git_remote), "Fix add", "", "issue-7")

        assert not work_dir.exists()
        assert supervisor.work_dir is None


class TestSuccessfulRun:
    """The agent edits files and the branch is pushed."""

    def test_edits_are_committed_and_pushed(self, run_agent, git_remote):
        result, events, supervisor, record = run_agent(EDITING_AGENT)

        assert result.success is True
        assert result.touched_files == ("app.py",)
        assert result.phase is RunPhase.DONE
        assert result.message == "Successfully applied changes with patcher mode"
        assert re.fullmatch(r"patch-swarm/patcher-issue-7-[0-9a-f]{6}", result.produced_branch)
        assert result.produced_branch in remote_branches(git_remote)
        log = remote_log(git_remote, result.produced_branch)
        assert log.startswith("Fix: Fix add")
        assert "Refs #7" in log

    def test_agent_receives_command_and_message(self, run_agent):
        result, events, supervisor, record = run_agent(EDITING_AGENT)

        seen = json.loads(record.read_text())
        assert seen["argv"][seen["argv"].index("--model") + 1] == "gpt-4o"
        assert "--edit-format" in seen["argv"]
        assert seen["message"].startswith("You are an expert programmer")
        assert "# Fix add" in seen["message"]
        assert "add() subtracts instead of adding." in seen["message"]

    def test_progress_phases(self, run_agent):
        result, events, supervisor, record = run_agent(EDITING_AGENT)

        assert events.phases() == [
            "CLONED",
            "BRANCHED",
            "AGENT_RUNNING",
            "AGENT_EXITED_CLEAN",
            "CHANGE_DETECTED",
            "COMMITTED",
            "PUSHED",
            "DONE",
        ]
        for name in ("starting", "cloning", "branch", "agent_start", "agent_complete", "complete"):
            assert name in events.names()
        assert all(data["mode"] == "patcher" for _, data in events.events)

    def test_prompt_is_answered(self, run_agent):
        result, events, supervisor, record = run_agent(PROMPTING_AGENT)

        assert record.read_text() == "y"
        assert result.success is True
        responses = [data for name, data in events.events if name == "auto_response"]
        assert len(responses) == 1
        assert responses[0]["rule"] == "apply_edits"
        assert responses[0]["response"] == "y"


class TestNoChanges:
    """Runs that leave the tree untouched."""

    def test_clean_exit_without_changes(self, run_agent, git_remote):
        result, events, supervisor, record = run_agent(IDLE_AGENT)

        assert result.success is False
        assert result.touched_files == ()
        assert result.phase is RunPhase.NO_CHANGE
        assert result.failure is FailureKind.NO_CHANGES
        assert result.message == "Agent did not make any changes to the codebase"
        assert len(remote_branches(git_remote)) == 1
        assert "pushing" not in events.names()

    def test_nonzero_exit_is_classified(self, run_agent):
        result, events, supervisor, record = run_agent(FAILING_AGENT)

        assert result.success is False
        assert result.failure is FailureKind.AGENT_EXIT_ERROR
        assert "exited with code 2" in result.message
        assert "model gpt-4o is not available" in result.message


class TestSelfUpgrade:
    """The agent is restarted once after upgrading itself."""

    def test_restart_after_upgrade(self, run_agent):
        result, events, supervisor, record = run_agent(UPGRADING_AGENT)

        assert result.success is True
        assert result.restarted is True
        assert result.touched_files == ("app.py",)
        assert events.names().count("restart") == 1
        assert events.names().count("agent_start") == 1
        assert "AGENT_RESTARTED_AFTER_UPGRADE" in events.phases()


class TestTermination:
    """Timeouts and stuck agents."""

    def test_timeout_without_changes(self, run_agent):
        result, events, supervisor, record = run_agent(SLEEPING_AGENT, timeout_seconds=1)

        assert result.success is False
        assert result.failure is FailureKind.TIMEOUT
        assert result.message == "Agent timed out after 1s without making changes"
        assert "AGENT_TIMED_OUT" in events.phases()
        assert "timeout" in events.names()

    def test_timeout_with_partial_changes_still_publishes(self, run_agent, git_remote):
        result, events, supervisor, record = run_agent(PARTIAL_THEN_SLEEPING_AGENT, timeout_seconds=2)

        assert result.success is True
        assert result.touched_files == ("app.py",)
        assert "agent was stopped: timeout" in result.message
        assert result.produced_branch in remote_branches(git_remote)

    def test_silent_agent_is_killed_as_stuck(self, run_agent):
        result, events, supervisor, record = run_agent(
            SILENT_READER_AGENT,
            health_check_threshold_seconds=0.2,
            health_check_interval_seconds=0.1,
            max_stale_checks=2,
        )

        assert result.success is False
        assert result.failure is FailureKind.STUCK
        assert events.names().count("forced_termination") == 1
        assert events.names().count("health_check") == 2
        assert "AGENT_STUCK_KILLED" in events.phases()

    def test_answered_probes_keep_agent_alive(self, run_agent):
        result, events, supervisor, record = run_agent(
            PROBE_ANSWERING_AGENT,
            health_check_threshold_seconds=0.2,
            health_check_interval_seconds=0.1,
            max_stale_checks=2,
        )

        assert result.success is True
        assert "forced_termination" not in events.names()
        assert "agent was stopped" not in result.message


class TestSetupFailures:
    """Failures before the agent runs."""

    def test_clone_failure(self, agent_script, make_config, tmp_path):
        config = make_config(agent_script(IDLE_AGENT))
        supervisor = ProcessSupervisor(config, RunOptions("patcher", "gpt-4o", 30))
        supervisor.init()

        result = supervisor.run(str(tmp_path / "missing.git"), "Fix add", "", "issue-7")

        assert result.success is False
        assert result.phase is RunPhase.CLONE_FAILED
        assert result.failure is FailureKind.CLONE_FAILED

    def test_spawn_failure(self, git_remote, make_config):
        config = make_config()
        preflight = MagicMock()
        preflight.ensure_available.return_value = "aider 0.86.1"
        popen = MagicMock(side_effect=FileNotFoundError("No such file or directory: 'aider'"))
        supervisor = ProcessSupervisor(
            config, RunOptions("patcher", "gpt-4o", 30), preflight=preflight, popen=popen
        )
        supervisor.init()

        result = supervisor.run(str(git_remote), "Fix add", "", "issue-7")

        assert result.success is False
        assert result.phase is RunPhase.SPAWN_FAILED
        assert result.failure is FailureKind.SPAWN_FAILED

    def test_credentials_never_reach_messages(self, agent_script, make_config, tmp_path):
        config = make_config(agent_script(IDLE_AGENT))
        supervisor = ProcessSupervisor(config, RunOptions("patcher", "gpt-4o", 30))
        supervisor.init()
        events = EventLog()

        result = supervisor.run(
            "https://127.0.0.1:9/acme/widgets.git",
            "Fix add",
            "",
            "issue-7",
            credential="ghp_supersecrettoken0123456789",
            on_progress=events,
        )

        assert result.success is False
        assert "ghp_supersecrettoken0123456789" not in result.message
        assert "ghp_supersecrettoken0123456789" not in json.dumps([data for _, data in events.events], default=str)
