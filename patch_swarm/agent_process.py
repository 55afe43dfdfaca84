"""
Agent subprocess handle.

Wraps one Popen of the agent with:
- a reader thread that delivers decoded output chunks as they arrive
- a single write lock around stdin, so prompt answers and health probes
  never interleave
- an idempotent terminate: SIGTERM, a bounded grace period, then SIGKILL
"""

from __future__ import annotations

import codecs
import logging
import os
import signal
import subprocess
import threading
from typing import Callable, Optional, Sequence

from patch_swarm.errors import PromptWriteFailure, SpawnFailure
from patch_swarm.models import ProcessState, TerminationReason

CHUNK_SIZE = 4096

logger = logging.getLogger(__name__)


class AgentProcess:
    """One running agent subprocess and its pipes."""

    def __init__(
        self,
        command: Sequence[str],
        cwd: str,
        env: dict[str, str],
        state: ProcessState,
        kill_grace_seconds: float = 10.0,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.command = list(command)
        self.cwd = cwd
        self.env = env
        self.state = state
        self.kill_grace_seconds = kill_grace_seconds
        self._popen = popen
        self._proc: Optional[subprocess.Popen] = None
        self._write_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None
        self.terminate_signals = 0
        self.kill_signals = 0

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc else None

    def start(self) -> None:
        """
        Spawn the agent.

        Raises:
            SpawnFailure: If the binary cannot be executed.
        """
        try:
            self._proc = self._popen(
                self.command,
                cwd=self.cwd,
                env=self.env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=0,
            )
        except (OSError, ValueError) as e:
            raise SpawnFailure(f"Failed to start {self.command[0]}: {e}")

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start_reader(self, on_chunk: Callable[[str], None]) -> None:
        """Start the thread that pumps stdout into on_chunk."""
        if self._proc is None or self._proc.stdout is None:
            raise SpawnFailure("Agent process has no output pipe; call start() first")
        self._reader = threading.Thread(
            target=self._pump_output,
            args=(on_chunk, self._proc.stdout.fileno()),
            name="agent-output",
            daemon=True,
        )
        self._reader.start()

    def _pump_output(self, on_chunk: Callable[[str], None], fd: int) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                data = os.read(fd, CHUNK_SIZE)
            except OSError:
                break
            if not data:
                break
            text = decoder.decode(data)
            if not text:
                continue
            try:
                on_chunk(text)
            except Exception:
                # A broken handler must not stop draining, or the agent blocks on a full pipe
                logger.exception("Output handler failed")
        tail = decoder.decode(b"", final=True)
        if tail:
            on_chunk(tail)

    def join_reader(self, timeout: Optional[float] = None) -> None:
        if self._reader is not None:
            self._reader.join(timeout)

    def send(self, text: str) -> None:
        """
        Write to the agent's stdin.

        Raises:
            PromptWriteFailure: If the pipe is closed or the write fails.
        """
        if self._proc is None or self._proc.stdin is None:
            raise PromptWriteFailure("Agent process has no stdin")
        with self._write_lock:
            try:
                self._proc.stdin.write(text.encode("utf-8"))
                self._proc.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                raise PromptWriteFailure(f"Could not write to agent: {e}")

    def wait(self, timeout: Optional[float] = None) -> int:
        if self._proc is None:
            raise SpawnFailure("Agent process was never started")
        return self._proc.wait(timeout=timeout)

    def terminate(self, reason: TerminationReason) -> bool:
        """
        Stop the agent: SIGTERM, then SIGKILL after the grace period.

        Only the first call signals the process; every later call, from any
        watchdog, returns False without touching it.

        Returns:
            True if this call performed the termination.
        """
        if not self.state.request_exit(reason):
            return False
        if self._proc is None or self._proc.poll() is not None:
            return True

        logger.info("Terminating agent pid=%s reason=%s", self._proc.pid, reason.value)
        try:
            self._proc.terminate()
            self.terminate_signals += 1
        except ProcessLookupError:
            return True

        try:
            self._proc.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Agent pid=%s ignored SIGTERM for %ss, killing",
                self._proc.pid, self.kill_grace_seconds,
            )
            self._proc.kill()
            self.kill_signals += 1
            self._kill_process_tree(self._proc.pid)
        return True

    def _kill_process_tree(self, pid: int) -> None:
        """Kill children the agent left behind (editors, git, test runners)."""
        try:
            subprocess.run(
                ["pkill", "-KILL", "-P", str(pid)],
                capture_output=True,
                timeout=5,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
            pass

        try:
            os.kill(pid, signal.SIGKILL)
        except (OSError, ProcessLookupError):
            pass

    def close(self) -> None:
        """Close pipes once the process has exited."""
        if self._proc is None:
            return
        for stream in (self._proc.stdin, self._proc.stdout):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError:
                pass
