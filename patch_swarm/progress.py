"""
Progress notifications for supervised runs.

The supervisor emits tagged events (cloning, agent_start, auto_response,
health_check, ...) from its reader and watchdog threads. ProgressDispatcher
hands them to the caller's callback on a single dispatcher thread, so a
slow or failing callback never stalls the agent or the watchdogs.
Delivery is best-effort.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import TYPE_CHECKING, Any, Callable, Optional

from rich.console import Console

from patch_swarm.models import ProgressEvent

if TYPE_CHECKING:
    from patch_swarm.logger import RunLogger

ProgressCallback = Callable[[str, dict[str, Any]], None]

# Events too chatty for the run log at info level
_DEBUG_EVENTS = {"output", "status"}

logger = logging.getLogger(__name__)


class ProgressDispatcher:
    """Queues progress events and delivers them off the caller's thread."""

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        mode: str,
        run_logger: Optional[RunLogger] = None,
    ) -> None:
        self.callback = callback
        self.mode = mode
        self._run_logger = run_logger
        self._queue: queue.Queue[Optional[ProgressEvent]] = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        if callback is not None:
            self._thread = threading.Thread(
                target=self._deliver,
                name=f"progress-{mode}",
                daemon=True,
            )
            self._thread.start()

    def emit(self, name: str, data: Optional[dict[str, Any]] = None) -> None:
        """Record an event and queue it for the callback. Never raises."""
        payload = dict(data or {})
        if self._run_logger:
            level = "debug" if name in _DEBUG_EVENTS else "info"
            try:
                self._run_logger.log(f"progress_{name}", {"mode": self.mode, **payload}, level=level)
            except OSError as e:
                logger.warning("Could not write progress log: %s", e)

        with self._lock:
            if self._closed or self.callback is None:
                return
            self._queue.put(ProgressEvent(name=name, mode=self.mode, data=payload))

    def _deliver(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                return
            try:
                self.callback(event.name, {"mode": event.mode, **event.data})
            except Exception:
                logger.exception("Progress callback failed for %s", event.name)

    def close(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the dispatcher thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._thread is not None:
                self._queue.put(None)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)


class ConsoleProgressRenderer:
    """Renders progress events on a rich console, one line per event."""

    STYLES = {
        "starting": "bold cyan",
        "cloning": "cyan",
        "branch": "cyan",
        "agent_start": "bold cyan",
        "auto_response": "yellow",
        "url_detected": "dim",
        "health_check": "yellow",
        "forced_termination": "bold red",
        "timeout": "bold red",
        "max_time_reached": "bold red",
        "restart": "yellow",
        "error": "red",
        "no_changes": "yellow",
        "committing": "green",
        "pushing": "green",
        "complete": "bold green",
    }

    def __init__(self, console: Optional[Console] = None, show_output: bool = False) -> None:
        self.console = console or Console()
        self.show_output = show_output

    def describe(self, name: str, data: dict[str, Any]) -> Optional[str]:
        """One-line description of an event, or None to skip it."""
        mode = data.get("mode", "")
        if name == "starting":
            return f"[{mode}] Starting: {data.get('title', '')}"
        if name == "cloning":
            return f"[{mode}] Cloning repository"
        if name == "branch":
            return f"[{mode}] Working on branch {data.get('name', '')}"
        if name == "agent_start":
            return f"[{mode}] Agent started with model {data.get('model', '')}"
        if name == "output":
            if not self.show_output:
                return None
            return data.get("text", "").rstrip() or None
        if name == "auto_response":
            return f"[{mode}] Answered '{data.get('response')}' to: {data.get('prompt', '')[:80]}"
        if name == "url_detected":
            return f"[{mode}] Agent mentioned {', '.join(data.get('urls', []))}"
        if name == "status":
            return f"[{mode}] Still working ({data.get('inactive_seconds', 0)}s since last output)"
        if name == "health_check":
            return (
                f"[{mode}] No output for {data.get('inactive_seconds', 0)}s, "
                f"probe {data.get('consecutive_checks', 0)}"
            )
        if name == "forced_termination":
            return f"[{mode}] Agent unresponsive, terminating"
        if name in ("timeout", "max_time_reached"):
            return f"[{mode}] Time limit of {data.get('timeout_seconds', 0)}s reached, terminating"
        if name == "restart":
            return f"[{mode}] Agent upgraded itself, restarting"
        if name == "agent_complete":
            return f"[{mode}] Agent exited with code {data.get('exit_code')}"
        if name == "no_changes":
            return f"[{mode}] No changes were made"
        if name == "committing":
            return f"[{mode}] Committing {data.get('files', 0)} changed file(s)"
        if name == "pushing":
            return f"[{mode}] Pushing {data.get('branch', '')}"
        if name == "complete":
            return f"[{mode}] Done"
        if name == "error":
            return f"[{mode}] Error: {data.get('message', '')}"
        return None

    def __call__(self, name: str, data: dict[str, Any]) -> None:
        line = self.describe(name, data)
        if line is None:
            return
        style = self.STYLES.get(name, "dim")
        self.console.print(line, style=style, markup=False, highlight=False)
