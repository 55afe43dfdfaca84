"""
Liveness watchdogs for a running agent.

Three timers watch one AgentProcess and share one stop event:
- activity reporter: emits "status" while the agent is quiet
- health check: probes a silent agent and terminates it after
  max_stale_checks unanswered probes
- deadline: terminates at min(timeout, MAX_RUN_SECONDS) from run start

Every termination goes through AgentProcess.terminate, so whichever
watchdog fires first signals the process and the others become no-ops.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from patch_swarm.agent_process import AgentProcess
from patch_swarm.config import LivenessConfig
from patch_swarm.errors import PromptWriteFailure
from patch_swarm.models import ProcessState, TerminationReason

# Absolute ceiling for one supervised run, restarts included
MAX_RUN_SECONDS = 30 * 60

Emit = Callable[[str, dict[str, Any]], None]

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """Watchdog threads for one agent run."""

    def __init__(
        self,
        process: AgentProcess,
        state: ProcessState,
        config: LivenessConfig,
        timeout_seconds: float,
        emit: Emit,
        run_started_at: Optional[float] = None,
        max_run_seconds: float = MAX_RUN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.process = process
        self.state = state
        self.config = config
        self.timeout_seconds = timeout_seconds
        self.max_run_seconds = max_run_seconds
        self._emit = emit
        self._clock = clock
        self.run_started_at = run_started_at if run_started_at is not None else clock()

        self._stop = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._threads: list[threading.Thread] = []

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        """Start all three watchdogs."""
        for name, target in (
            ("agent-activity", self._activity_loop),
            ("agent-health", self._health_loop),
            ("agent-deadline", self._deadline_loop),
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            self._threads.append(thread)
            thread.start()

    def stop(self, join_timeout: float = 5.0) -> bool:
        """
        Cancel every watchdog.

        Returns:
            True the first time; later calls do nothing and return False.
        """
        with self._stop_lock:
            if self._stopped:
                return False
            self._stopped = True
        self._stop.set()

        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(join_timeout)
        return True

    def _safe_emit(self, name: str, data: dict[str, Any]) -> None:
        try:
            self._emit(name, data)
        except Exception:
            logger.exception("Progress emit failed for %s", name)

    def _activity_loop(self) -> None:
        while not self._stop.wait(self.config.activity_interval_seconds):
            inactive = self.state.inactive_seconds()
            if inactive < self.config.activity_threshold_seconds:
                continue
            self._safe_emit("status", {
                "status": "working",
                "inactive_seconds": int(inactive),
                "last_output": self.state.last_output,
            })

    def _health_loop(self) -> None:
        while not self._stop.wait(self.config.health_check_interval_seconds):
            if self.state.exit_requested:
                return

            inactive = self.state.inactive_seconds()
            if inactive < self.config.health_check_threshold_seconds:
                continue

            if self.state.stale_checks() >= self.config.max_stale_checks:
                self._safe_emit("forced_termination", {
                    "reason": TerminationReason.STUCK.value,
                    "inactive_seconds": int(inactive),
                    "stale_checks": self.state.stale_checks(),
                })
                self.process.terminate(TerminationReason.STUCK)
                return

            checks = self.state.record_probe()
            self._safe_emit("health_check", {
                "inactive_seconds": int(inactive),
                "consecutive_checks": checks,
            })
            try:
                self.process.send(self.config.health_probe)
            except PromptWriteFailure as e:
                # The unanswered probe still counts toward termination
                logger.warning("Health probe not delivered: %s", e)

    def _deadline_loop(self) -> None:
        timeout_at = self.run_started_at + self.timeout_seconds
        ceiling_at = self.run_started_at + self.max_run_seconds
        if timeout_at <= ceiling_at:
            deadline, reason = timeout_at, TerminationReason.TIMEOUT
        else:
            deadline, reason = ceiling_at, TerminationReason.MAX_DURATION

        remaining = max(deadline - self._clock(), 0.0)
        if self._stop.wait(remaining):
            return
        if self.state.exit_requested:
            return

        self._safe_emit(reason.value, {
            "timeout_seconds": int(min(self.timeout_seconds, self.max_run_seconds)),
            "elapsed_seconds": int(self._clock() - self.run_started_at),
        })
        self.process.terminate(reason)
