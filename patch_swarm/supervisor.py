"""
Process supervisor for one agent run.

A run moves a fresh clone through:
- branch creation from a derived, collision-resistant name
- the agent subprocess, with prompts answered automatically and three
  liveness watchdogs (activity, health, deadline)
- one restart if the agent reports that it upgraded itself
- change harvesting: commit anything uncommitted and push the branch

run() always returns a RunResult; only initialization errors propagate.
The temporary working directory is removed after every run.
"""

from __future__ import annotations

import os
import re
import secrets
import shutil
import subprocess
import tempfile
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from patch_swarm.agent_process import AgentProcess
from patch_swarm.config import PatchSwarmConfig
from patch_swarm.errors import (
    AgentInitError,
    AgentTimeout,
    CloneFailure,
    ConfigError,
    ErrorClassifier,
    FailureKind,
    PatchSwarmError,
    PromptWriteFailure,
    SpawnFailure,
    StuckProcessTerminated,
    sanitize_error_message,
)
from patch_swarm.git_ops import NON_INTERACTIVE_ENV, GitWorkspace
from patch_swarm.liveness import LivenessMonitor
from patch_swarm.logger import RunLogger
from patch_swarm.models import (
    ProcessState,
    RunOptions,
    RunPhase,
    RunResult,
    TerminationReason,
)
from patch_swarm.modes import ModeCatalog
from patch_swarm.preflight import AgentPreflight
from patch_swarm.progress import ProgressCallback, ProgressDispatcher
from patch_swarm.prompt_rules import (
    PromptMatch,
    PromptResponder,
    detects_self_upgrade,
    extract_urls,
)

WorkspaceFactory = Callable[..., GitWorkspace]

CLAUDE_OPENAI_PLACEHOLDER = "not-needed-for-claude"
ISSUE_FILE_NAME = "ISSUE.md"
OUTPUT_TAIL_CHUNKS = 200
PENDING_PROMPT_CHARS = 2000
READER_JOIN_SECONDS = 5.0
MAX_SLUG_LENGTH = 80

_ISSUE_IN_HINT = (
    re.compile(r"issue[-_ #]*(\d+)", re.IGNORECASE),
    re.compile(r"#(\d+)"),
    re.compile(r"(?:^|[^A-Za-z0-9])(\d+)(?:$|[^A-Za-z0-9])"),
)
_ISSUE_IN_TITLE = (
    re.compile(r"issue[ #]*(\d+)", re.IGNORECASE),
    re.compile(r"#(\d+)"),
)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def extract_issue_number(hint: Optional[str], title: Optional[str] = None) -> Optional[str]:
    """Issue number from a branch hint, falling back to the issue title."""
    for text, patterns in ((hint, _ISSUE_IN_HINT), (title, _ISSUE_IN_TITLE)):
        if not text:
            continue
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                return match.group(1)
    return None


def derive_branch_name(
    mode: str,
    hint: Optional[str],
    title: Optional[str] = None,
    prefix: str = "patch-swarm/",
    suffix: Optional[str] = None,
) -> str:
    """
    Build a branch name: {prefix}{slug}-{rand6}.

    The slug carries the mode (unless the hint already does), the hint, and
    issue-<n> when a number can be found and is not in the hint yet. The
    random suffix keeps repeated runs from colliding.
    """
    mode_slug = _slug(mode)
    hint_slug = _slug(hint or "")

    parts: list[str] = []
    if mode_slug and f"-{mode_slug}-" not in f"-{hint_slug}-":
        parts.append(mode_slug)
    if hint_slug:
        parts.append(hint_slug)

    number = extract_issue_number(hint, title)
    if number and not re.search(rf"(?:^|-){number}(?:-|$)", hint_slug):
        parts.append(f"issue-{number}")

    slug = "-".join(parts)[:MAX_SLUG_LENGTH].strip("-") or "run"
    return f"{prefix}{slug}-{suffix or secrets.token_hex(3)}"


def split_extra_args(args: Iterable[str]) -> list[str]:
    """Split "--flag value" entries into two arguments."""
    result: list[str] = []
    for arg in args:
        if arg.startswith("--") and " " in arg.strip():
            flag, value = arg.strip().split(None, 1)
            result.extend([flag, value])
        elif arg:
            result.append(arg)
    return result


def build_agent_message(
    directive: Optional[str],
    title: str,
    body: str,
    rules: Sequence[str] = (),
) -> str:
    """The message file the agent works from."""
    sections = []
    if directive:
        sections.append(directive.strip())
    sections.append(f"# {title.strip()}")
    if body and body.strip():
        sections.append(body.strip())
    if rules:
        sections.append("## Development Rules\n\n" + "\n".join(f"- {rule}" for rule in rules))
    return "\n\n".join(sections) + "\n"


def commit_message(title: str, issue_number: Optional[str]) -> str:
    message = f"Fix: {title.strip()}"
    if issue_number:
        message += f"\n\nRefs #{issue_number}"
    return message


@dataclass
class AgentOutcome:
    """How the agent process ended."""
    returncode: int
    termination_reason: Optional[TerminationReason] = None
    upgraded: bool = False
    output: str = ""
    inactive_seconds: float = 0.0
    restarted: bool = False


class _OutputHandler:
    """
    Reacts to agent output on the reader thread.

    Records activity, forwards sanitized output, answers prompts and
    watches for self-upgrade notices.
    """

    def __init__(
        self,
        process: AgentProcess,
        state: ProcessState,
        responder: PromptResponder,
        dispatcher: ProgressDispatcher,
        secret_values: Sequence[str],
        max_write_failures: int,
    ) -> None:
        self.process = process
        self.state = state
        self.responder = responder
        self.dispatcher = dispatcher
        self.secrets = list(secret_values)
        self.max_write_failures = max_write_failures
        self.tail: deque[str] = deque(maxlen=OUTPUT_TAIL_CHUNKS)
        self.pending = ""
        self.upgraded = False
        self.write_failures = 0

    @property
    def output(self) -> str:
        return "".join(self.tail)

    def __call__(self, text: str) -> None:
        self.state.record_output(text)
        self.tail.append(text)

        clean = sanitize_error_message(text, self.secrets)
        self.dispatcher.emit("output", {"text": clean})
        urls = extract_urls(clean)
        if urls:
            self.dispatcher.emit("url_detected", {"urls": urls})

        buffer = (self.pending + text)[-PENDING_PROMPT_CHARS:]
        if not self.upgraded and detects_self_upgrade(buffer):
            self.upgraded = True
            self.dispatcher.emit("upgrade_detected", {})

        match = self.responder.match(buffer)
        if match is None:
            # Keep only the unfinished line; it may be the start of a prompt
            self.pending = buffer.rsplit("\n", 1)[-1]
            return

        self.pending = ""
        self._answer(match)

    def _answer(self, match: PromptMatch) -> None:
        try:
            self.process.send(match.response + "\n")
        except PromptWriteFailure as e:
            self.write_failures += 1
            self.dispatcher.emit("error", {
                "message": f"Failed to answer prompt: {e}",
                "consecutive_failures": self.write_failures,
            })
            if self.write_failures >= self.max_write_failures:
                self.dispatcher.emit("forced_termination", {
                    "reason": TerminationReason.PROMPT_WRITE_FAILED.value,
                })
                self.process.terminate(TerminationReason.PROMPT_WRITE_FAILED)
            return

        self.write_failures = 0
        self.dispatcher.emit("auto_response", {
            "rule": match.rule,
            "prompt": sanitize_error_message(match.prompt, self.secrets),
            "response": match.response,
        })


class ProcessSupervisor:
    """
    Owns one agent subprocess lifecycle, from clone to pushed branch.

    A supervisor is built per pass with immutable RunOptions; init() must
    succeed before run().
    """

    def __init__(
        self,
        config: PatchSwarmConfig,
        options: RunOptions,
        catalog: Optional[ModeCatalog] = None,
        logger: Optional[RunLogger] = None,
        responder: Optional[PromptResponder] = None,
        preflight: Optional[AgentPreflight] = None,
        workspace_factory: WorkspaceFactory = GitWorkspace.clone,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.options = options
        self.catalog = catalog or ModeCatalog.load(config.modes_path)
        self._logger = logger
        self.responder = responder or PromptResponder()
        self._preflight = preflight or AgentPreflight.from_config(config.agent, logger)
        self._workspace_factory = workspace_factory
        self._popen = popen
        self._clock = clock

        self.phase = RunPhase.INIT
        self.agent_version: Optional[str] = None
        self._work_dir: Optional[Path] = None
        self._initialized = False
        self._secrets: list[str] = []
        self._restarted = False

    @property
    def work_dir(self) -> Optional[Path]:
        return self._work_dir

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "supervisor", "mode": self.options.mode}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _sanitize(self, text: str) -> str:
        return sanitize_error_message(text, self._secrets)

    def _transition(
        self,
        phase: RunPhase,
        dispatcher: ProgressDispatcher,
        data: Optional[dict] = None,
    ) -> None:
        self.phase = phase
        dispatcher.emit("phase", {"phase": phase.name, **(data or {})})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> None:
        """
        Verify the agent and allocate a working directory.

        Raises:
            AgentInitError: If the agent binary is missing and cannot be installed.
        """
        self.agent_version = self._preflight.ensure_available()
        self._work_dir = Path(tempfile.mkdtemp(prefix="patch-swarm-"))
        self._initialized = True
        self._log("supervisor_init", {
            "agent_version": self.agent_version,
            "model": self.options.model,
        })

    def cleanup(self) -> None:
        """Remove the working directory; the supervisor needs init() again."""
        if self._work_dir is not None:
            shutil.rmtree(self._work_dir, ignore_errors=True)
        self._work_dir = None
        self._initialized = False

    def run(
        self,
        repo_location: str,
        issue_title: str,
        issue_body: str,
        target_branch: str,
        credential: Optional[str] = None,
        base_branch: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunResult:
        """
        Run the agent against a fresh clone and publish its changes.

        Args:
            repo_location: Repository URL or local path.
            issue_title: Issue title; also used for the commit message.
            issue_body: Issue body.
            target_branch: Branch name hint.
            credential: Hosting token for clone and push.
            base_branch: Branch to start from instead of the default.
            on_progress: Best-effort progress callback.

        Returns:
            RunResult describing the outcome.

        Raises:
            AgentInitError: If init() has not been called.
        """
        if not self._initialized or self._work_dir is None:
            raise AgentInitError("Supervisor is not initialized; call init() first")

        self._secrets = [
            s for s in (credential, *self.options.credentials.secrets()) if s
        ]
        self._restarted = False
        self.phase = RunPhase.INIT
        dispatcher = ProgressDispatcher(on_progress, self.options.mode, self._logger)

        try:
            return self._run(
                repo_location,
                issue_title,
                issue_body,
                target_branch,
                credential,
                base_branch,
                dispatcher,
            )
        except (AgentInitError, ConfigError):
            raise
        except PatchSwarmError as e:
            return self._failure_result(e, dispatcher)
        except Exception as e:
            return self._failure_result(
                PatchSwarmError(f"Unexpected error: {e}", kind=FailureKind.UNKNOWN),
                dispatcher,
            )
        finally:
            dispatcher.close()
            self.cleanup()

    def _run(
        self,
        repo_location: str,
        issue_title: str,
        issue_body: str,
        target_branch: str,
        credential: Optional[str],
        base_branch: Optional[str],
        dispatcher: ProgressDispatcher,
    ) -> RunResult:
        if self._work_dir is None:
            raise AgentInitError("Supervisor is not initialized; call init() first")
        mode = self.options.mode
        branch = derive_branch_name(
            mode, target_branch, issue_title, prefix=self.config.git.branch_prefix
        )

        dispatcher.emit("starting", {"title": issue_title, "branch": branch})
        dispatcher.emit("cloning", {
            "repo": self._sanitize(repo_location),
            "base_branch": base_branch,
        })
        workspace = self._workspace_factory(
            repo_location,
            self._work_dir / "repo",
            self.config.git,
            credential,
            base_branch,
            self._logger,
        )
        self._transition(RunPhase.CLONED, dispatcher)

        workspace.configure_identity()
        dispatcher.emit("branch", {"name": branch})
        workspace.create_branch(branch)
        self._transition(RunPhase.BRANCHED, dispatcher, {"branch": branch})
        baseline = workspace.head()

        message_file = self._work_dir / ISSUE_FILE_NAME
        message_file.write_text(build_agent_message(
            self.catalog.directive_for(mode),
            issue_title,
            issue_body,
            self.config.agent.rules,
        ))
        command = self.build_command(message_file)

        self._transition(RunPhase.AGENT_RUNNING, dispatcher)
        dispatcher.emit("agent_start", {"model": self.options.model})
        self._log("agent_start", {"model": self.options.model, "branch": branch})

        outcome = self._run_agent(command, workspace.path, self.build_env(), dispatcher)
        self._restarted = outcome.restarted
        self._transition(self._exit_phase(outcome), dispatcher)
        dispatcher.emit("agent_complete", {
            "exit_code": outcome.returncode,
            "termination": outcome.termination_reason.value if outcome.termination_reason else None,
        })
        self._log("agent_complete", {
            "exit_code": outcome.returncode,
            "termination": outcome.termination_reason.value if outcome.termination_reason else None,
            "restarted": outcome.restarted,
        })

        return self._harvest(workspace, baseline, branch, issue_title, target_branch, outcome, dispatcher)

    # ------------------------------------------------------------------
    # Agent process
    # ------------------------------------------------------------------

    def build_command(self, message_file: Path) -> list[str]:
        """<binary> <base args> <mode args> --model M <extra args> --message-file F"""
        agent = self.config.agent
        command = [agent.binary, *agent.base_args]
        command += list(self.catalog.default_args_for(self.options.mode))
        command += ["--model", self.options.model]
        command += split_extra_args([*agent.extra_args, *self.options.extra_args])
        command += ["--message-file", str(message_file)]
        return command

    def build_env(self) -> dict[str, str]:
        """Environment for the agent, with model credentials applied."""
        env = os.environ.copy()
        env.update(NON_INTERACTIVE_ENV)
        env["PYTHONUNBUFFERED"] = "1"

        credentials = self.options.credentials
        if credentials.openai_api_key:
            env["OPENAI_API_KEY"] = credentials.openai_api_key
        if credentials.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = credentials.anthropic_api_key
        if self.options.is_claude_model and not env.get("OPENAI_API_KEY"):
            env["OPENAI_API_KEY"] = CLAUDE_OPENAI_PLACEHOLDER
        return env

    def _run_agent(
        self,
        command: list[str],
        cwd: Path,
        env: dict[str, str],
        dispatcher: ProgressDispatcher,
    ) -> AgentOutcome:
        """Run the agent, restarting it once after a self-upgrade."""
        run_started = self._clock()
        restarted = False
        while True:
            outcome = self._run_agent_once(command, cwd, env, dispatcher, run_started)
            if outcome.upgraded and outcome.termination_reason is None and not restarted:
                restarted = True
                self._transition(RunPhase.AGENT_RESTARTED_AFTER_UPGRADE, dispatcher)
                dispatcher.emit("restart", {"reason": "self_upgrade"})
                self._log("agent_restart", {"reason": "self_upgrade"})
                self._transition(RunPhase.AGENT_RUNNING, dispatcher)
                continue
            outcome.restarted = restarted
            return outcome

    def _run_agent_once(
        self,
        command: list[str],
        cwd: Path,
        env: dict[str, str],
        dispatcher: ProgressDispatcher,
        run_started: float,
    ) -> AgentOutcome:
        liveness = self.config.liveness
        state = ProcessState(clock=self._clock)
        process = AgentProcess(
            command,
            str(cwd),
            env,
            state,
            kill_grace_seconds=liveness.kill_grace_seconds,
            popen=self._popen,
        )
        process.start()

        handler = _OutputHandler(
            process,
            state,
            self.responder,
            dispatcher,
            self._secrets,
            liveness.max_prompt_write_failures,
        )
        monitor = LivenessMonitor(
            process,
            state,
            liveness,
            self.options.timeout_seconds,
            dispatcher.emit,
            run_started_at=run_started,
            clock=self._clock,
        )

        process.start_reader(handler)
        monitor.start()
        try:
            returncode = process.wait()
            process.join_reader(READER_JOIN_SECONDS)
        except BaseException:
            process.terminate(TerminationReason.SHUTDOWN)
            raise
        finally:
            monitor.stop()
            process.close()

        return AgentOutcome(
            returncode=returncode,
            termination_reason=state.termination_reason,
            upgraded=handler.upgraded,
            output=handler.output,
            inactive_seconds=state.inactive_seconds(),
        )

    @staticmethod
    def _exit_phase(outcome: AgentOutcome) -> RunPhase:
        reason = outcome.termination_reason
        if reason in (TerminationReason.TIMEOUT, TerminationReason.MAX_DURATION):
            return RunPhase.AGENT_TIMED_OUT
        if reason in (TerminationReason.STUCK, TerminationReason.PROMPT_WRITE_FAILED):
            return RunPhase.AGENT_STUCK_KILLED
        return RunPhase.AGENT_EXITED_CLEAN

    # ------------------------------------------------------------------
    # Harvesting
    # ------------------------------------------------------------------

    def _harvest(
        self,
        workspace: GitWorkspace,
        baseline: str,
        branch: str,
        issue_title: str,
        target_branch: str,
        outcome: AgentOutcome,
        dispatcher: ProgressDispatcher,
    ) -> RunResult:
        touched = workspace.changed_files(baseline)
        if not touched:
            self._transition(RunPhase.NO_CHANGE, dispatcher)
            dispatcher.emit("no_changes", {})
            raise self._no_change_error(outcome)

        self._transition(RunPhase.CHANGE_DETECTED, dispatcher, {"files": len(touched)})

        if workspace.has_uncommitted_changes():
            dispatcher.emit("committing", {"files": len(touched)})
            workspace.stage_all()
            workspace.commit(commit_message(
                issue_title, extract_issue_number(target_branch, issue_title)
            ))
        self._transition(RunPhase.COMMITTED, dispatcher)

        dispatcher.emit("pushing", {"branch": branch})
        workspace.push(branch)
        self._transition(RunPhase.PUSHED, dispatcher)

        message = f"Successfully applied changes with {self.options.mode} mode"
        if outcome.termination_reason is not None:
            message += (
                f" (agent was stopped: {outcome.termination_reason.value}; "
                f"partial changes were committed)"
            )

        self._transition(RunPhase.DONE, dispatcher)
        dispatcher.emit("complete", {"branch": branch, "files": touched})
        self._log("run_complete", {"branch": branch, "files": len(touched)})

        return RunResult(
            success=True,
            touched_files=tuple(touched),
            message=message,
            produced_branch=branch,
            phase=RunPhase.DONE,
            restarted=outcome.restarted,
        )

    def _no_change_error(self, outcome: AgentOutcome) -> PatchSwarmError:
        reason = outcome.termination_reason
        if reason in (TerminationReason.TIMEOUT, TerminationReason.MAX_DURATION):
            return AgentTimeout(
                f"Agent timed out after {int(self.options.timeout_seconds)}s "
                f"without making changes",
                timeout_seconds=self.options.timeout_seconds,
            )
        if reason is TerminationReason.STUCK:
            return StuckProcessTerminated(
                "Agent stopped responding to health checks and was terminated "
                "without making changes",
                inactive_seconds=outcome.inactive_seconds,
            )
        if reason is TerminationReason.PROMPT_WRITE_FAILED:
            return PromptWriteFailure(
                "Could not answer the agent's prompts; it was terminated without making changes"
            )
        if outcome.returncode != 0:
            return PatchSwarmError(
                ErrorClassifier.describe_agent_failure(
                    outcome.output,
                    outcome.returncode,
                    binary=Path(self.config.agent.binary).name,
                    claude_model=self.options.is_claude_model,
                ),
                kind=FailureKind.AGENT_EXIT_ERROR,
            )
        return PatchSwarmError(
            "Agent did not make any changes to the codebase",
            kind=FailureKind.NO_CHANGES,
        )

    def _failure_result(self, error: PatchSwarmError, dispatcher: ProgressDispatcher) -> RunResult:
        if isinstance(error, CloneFailure):
            phase = RunPhase.CLONE_FAILED
        elif isinstance(error, SpawnFailure):
            phase = RunPhase.SPAWN_FAILED
        elif self.phase is RunPhase.NO_CHANGE:
            phase = RunPhase.NO_CHANGE
        else:
            phase = RunPhase.FAILED

        message = self._sanitize(str(error))
        self.phase = phase
        dispatcher.emit("error", {"message": message, "kind": error.kind.name})
        self._log("run_failed", {
            "phase": phase.name,
            "kind": error.kind.name,
            "error": message,
        }, level="error")

        return RunResult(
            success=False,
            message=message,
            phase=phase,
            failure=error.kind,
            restarted=self._restarted,
        )
