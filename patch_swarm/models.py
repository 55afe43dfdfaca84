"""
Core data models for Patch Swarm.

This module defines the data structures passed between the selector,
supervisor and sequencer:
- Enums for run phases and termination reasons
- Frozen dataclasses for selections, run options and credentials
- Result dataclasses with JSON serialization support
- ProcessState, the mutable liveness record of one agent subprocess
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Optional

from patch_swarm.errors import FailureKind


class RunPhase(Enum):
    """
    Phases in a single supervised agent run.

    A run moves INIT -> CLONED -> BRANCHED -> AGENT_RUNNING, exits through
    one of the AGENT_* states, then CHANGE_DETECTED or NO_CHANGE, and ends
    COMMITTED -> PUSHED -> DONE when there was something to push.
    """
    INIT = auto()
    CLONED = auto()
    BRANCHED = auto()
    AGENT_RUNNING = auto()

    # Agent exit paths
    AGENT_EXITED_CLEAN = auto()
    AGENT_TIMED_OUT = auto()
    AGENT_STUCK_KILLED = auto()
    AGENT_RESTARTED_AFTER_UPGRADE = auto()

    # Harvesting
    CHANGE_DETECTED = auto()
    NO_CHANGE = auto()
    COMMITTED = auto()
    PUSHED = auto()
    DONE = auto()

    # Terminal failures
    CLONE_FAILED = auto()
    SPAWN_FAILED = auto()
    FAILED = auto()


class TerminationReason(Enum):
    """Why the supervisor terminated the agent subprocess."""
    TIMEOUT = "timeout"                        # Configured hard timeout
    MAX_DURATION = "max_time_reached"          # Absolute ceiling
    STUCK = "stuck"                            # Unanswered health probes
    PROMPT_WRITE_FAILED = "prompt_write_failed"  # Could not answer prompts
    SHUTDOWN = "shutdown"                      # Caller-requested stop


@dataclass(frozen=True)
class AgentCredentials:
    """
    Model-provider API keys handed to the agent's environment.

    Never rendered in repr and never logged.
    """
    openai_api_key: Optional[str] = field(default=None, repr=False)
    anthropic_api_key: Optional[str] = field(default=None, repr=False)

    def secrets(self) -> list[str]:
        """All non-empty secret values, for sanitizing output."""
        return [s for s in (self.openai_api_key, self.anthropic_api_key) if s]


@dataclass(frozen=True)
class ModeSelection:
    """
    The mode(s) chosen for an issue.

    Created per issue by the ModeSelector and consumed once.
    """
    primary_mode: str
    secondary_mode: Optional[str] = None
    needs_sequencing: bool = False
    directive: Optional[str] = None

    @property
    def modes(self) -> list[str]:
        """Modes in execution order."""
        if self.needs_sequencing and self.secondary_mode:
            return [self.primary_mode, self.secondary_mode]
        return [self.primary_mode]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass(frozen=True)
class RunOptions:
    """Options for one pass; immutable for the pass's lifetime."""
    mode: str
    model: str
    timeout_seconds: float
    extra_args: tuple[str, ...] = ()
    credentials: AgentCredentials = field(default_factory=AgentCredentials)

    @property
    def is_claude_model(self) -> bool:
        """Whether the model is served by Anthropic."""
        lowered = self.model.lower()
        return "claude" in lowered or "anthropic" in lowered


@dataclass
class RunResult:
    """
    Result of one Process Supervisor invocation.

    Produced exactly once per run; ownership passes to the caller.
    """
    success: bool
    touched_files: tuple[str, ...] = ()
    message: str = ""
    produced_branch: Optional[str] = None
    phase: RunPhase = RunPhase.DONE
    failure: Optional[FailureKind] = None
    restarted: bool = False                    # Agent was restarted after self-upgrade

    def __post_init__(self) -> None:
        # Preserve first-seen order while dropping duplicates
        self.touched_files = tuple(dict.fromkeys(self.touched_files))

    @property
    def retryable(self) -> bool:
        """Whether the sequencer may retry this pass."""
        return self.failure in (FailureKind.TIMEOUT, FailureKind.STUCK)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "touched_files": list(self.touched_files),
            "message": self.message,
            "produced_branch": self.produced_branch,
            "phase": self.phase.name,
            "failure": self.failure.name if self.failure else None,
            "restarted": self.restarted,
        }


@dataclass
class SequenceResult:
    """Aggregated result of one or two passes."""
    success: bool
    touched_files: list[str] = field(default_factory=list)
    message: str = ""
    modes_used: list[str] = field(default_factory=list)
    final_branch: Optional[str] = None
    pass_results: list[RunResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "touched_files": list(self.touched_files),
            "message": self.message,
            "modes_used": list(self.modes_used),
            "final_branch": self.final_branch,
            "pass_results": [r.to_dict() for r in self.pass_results],
        }


@dataclass
class ProgressEvent:
    """A tagged progress notification delivered to callbacks."""
    name: str
    mode: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class ProcessState:
    """
    Liveness record for one agent subprocess.

    Owned by a single supervisor run. The reader thread and the watchdog
    threads both touch it, so every access goes through one lock.
    """

    def __init__(self, clock: Any = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.started_at: float = clock()
        self.last_activity: float = self.started_at
        self.consecutive_stale_checks: int = 0
        self.exit_requested: bool = False
        self.termination_reason: Optional[TerminationReason] = None
        self.last_output: str = ""

    def record_output(self, text: str) -> None:
        """Note fresh output; resets the stale probe counter."""
        with self._lock:
            self.last_activity = self._clock()
            self.consecutive_stale_checks = 0
            stripped = text.strip()
            if stripped:
                self.last_output = stripped[-200:]

    def record_probe(self) -> int:
        """Count an unanswered health probe; returns the new count."""
        with self._lock:
            self.consecutive_stale_checks += 1
            return self.consecutive_stale_checks

    def stale_checks(self) -> int:
        with self._lock:
            return self.consecutive_stale_checks

    def inactive_seconds(self) -> float:
        """Seconds since the last observed output."""
        with self._lock:
            return self._clock() - self.last_activity

    def elapsed_seconds(self) -> float:
        with self._lock:
            return self._clock() - self.started_at

    def request_exit(self, reason: TerminationReason) -> bool:
        """
        Mark the process as terminating.

        Returns:
            True for the first caller only; later callers get False and must
            not signal the process again.
        """
        with self._lock:
            if self.exit_requested:
                return False
            self.exit_requested = True
            self.termination_reason = reason
            return True
