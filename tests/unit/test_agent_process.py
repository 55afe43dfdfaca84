"""Tests for the agent subprocess handle."""

import subprocess
import sys
import threading
from unittest.mock import MagicMock, patch

import pytest

from patch_swarm.agent_process import AgentProcess
from patch_swarm.errors import PromptWriteFailure, SpawnFailure
from patch_swarm.models import ProcessState, TerminationReason


def make_process(popen_mock=None, grace: float = 0.5):
    proc = MagicMock()
    proc.pid = 4242
    proc.poll.return_value = None
    popen = popen_mock or MagicMock(return_value=proc)
    handle = AgentProcess(["aider", "--yes"], "/tmp", {}, ProcessState(), kill_grace_seconds=grace, popen=popen)
    handle.start()
    return handle, proc


class TestStart:
    """Tests for spawning."""

    def test_spawns_with_pipes_and_merged_stderr(self):
        handle, _ = make_process()

        kwargs = handle._popen.call_args.kwargs
        assert kwargs["stdin"] == subprocess.PIPE
        assert kwargs["stdout"] == subprocess.PIPE
        assert kwargs["stderr"] == subprocess.STDOUT
        assert kwargs["cwd"] == "/tmp"

    def test_missing_binary_is_spawn_failure(self):
        popen = MagicMock(side_effect=FileNotFoundError("No such file: 'aider'"))
        handle = AgentProcess(["aider"], "/tmp", {}, ProcessState(), popen=popen)

        with pytest.raises(SpawnFailure, match="aider"):
            handle.start()

    def test_reader_and_wait_need_a_started_process(self):
        handle = AgentProcess(["aider"], "/tmp", {}, ProcessState(), popen=MagicMock())

        with pytest.raises(SpawnFailure):
            handle.start_reader(lambda chunk: None)
        with pytest.raises(SpawnFailure):
            handle.wait(timeout=1)


class TestTerminate:
    """Termination is signalled once, then escalated."""

    def test_graceful_exit_needs_no_kill(self):
        handle, proc = make_process()

        assert handle.terminate(TerminationReason.STUCK) is True

        proc.terminate.assert_called_once()
        proc.wait.assert_called_once_with(timeout=0.5)
        proc.kill.assert_not_called()

    def test_kill_after_grace_period(self):
        handle, proc = make_process()
        proc.wait.side_effect = subprocess.TimeoutExpired(cmd="aider", timeout=0.5)

        with patch.object(handle, "_kill_process_tree") as kill_tree:
            handle.terminate(TerminationReason.STUCK)

        proc.terminate.assert_called_once()
        proc.kill.assert_called_once()
        kill_tree.assert_called_once_with(4242)

    def test_second_terminate_is_a_no_op(self):
        handle, proc = make_process()

        assert handle.terminate(TerminationReason.STUCK) is True
        assert handle.terminate(TerminationReason.TIMEOUT) is False

        proc.terminate.assert_called_once()
        assert handle.state.termination_reason is TerminationReason.STUCK

    def test_concurrent_terminate_signals_once(self):
        handle, proc = make_process()
        barrier = threading.Barrier(3)

        def fire(reason):
            barrier.wait()
            handle.terminate(reason)

        threads = [
            threading.Thread(target=fire, args=(reason,))
            for reason in (TerminationReason.STUCK, TerminationReason.TIMEOUT, TerminationReason.MAX_DURATION)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert proc.terminate.call_count == 1
        assert handle.terminate_signals == 1

    def test_already_exited_process_is_not_signalled(self):
        handle, proc = make_process()
        proc.poll.return_value = 0

        assert handle.terminate(TerminationReason.TIMEOUT) is True
        proc.terminate.assert_not_called()


class TestSend:
    """Tests for stdin writes."""

    def test_writes_encoded_text(self):
        handle, proc = make_process()

        handle.send("y\n")

        proc.stdin.write.assert_called_once_with(b"y\n")
        proc.stdin.flush.assert_called_once()

    def test_broken_pipe_is_prompt_write_failure(self):
        handle, proc = make_process()
        proc.stdin.write.side_effect = BrokenPipeError()

        with pytest.raises(PromptWriteFailure):
            handle.send("y\n")


class TestRealProcess:
    """Round trips through an actual child process."""

    def test_reader_delivers_output_and_answers_reach_stdin(self):
        script = (
            "import sys\n"
            "print('ready', flush=True)\n"
            "line = sys.stdin.readline()\n"
            "print('got ' + line.strip(), flush=True)\n"
        )
        handle = AgentProcess([sys.executable, "-c", script], ".", None, ProcessState())
        chunks = []
        handle.start()
        handle.start_reader(chunks.append)

        handle.send("y\n")
        handle.wait(timeout=10)
        handle.join_reader(timeout=5)
        handle.close()

        output = "".join(chunks)
        assert "ready" in output
        assert "got y" in output
        assert handle.returncode == 0

    def test_terminate_stops_a_sleeping_child(self):
        handle = AgentProcess(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            ".",
            None,
            ProcessState(),
            kill_grace_seconds=2,
        )
        handle.start()

        handle.terminate(TerminationReason.TIMEOUT)

        assert handle.wait(timeout=5) != 0
        assert not handle.is_running()
        handle.close()
