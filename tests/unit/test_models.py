"""Tests for core data models."""

import threading

from patch_swarm.errors import FailureKind
from patch_swarm.models import (
    ModeSelection,
    ProcessState,
    RunOptions,
    RunPhase,
    RunResult,
    SequenceResult,
    TerminationReason,
)


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRunResult:
    """Tests for RunResult."""

    def test_touched_files_are_deduplicated_in_order(self):
        result = RunResult(success=True, touched_files=("b.py", "a.py", "b.py"))

        assert result.touched_files == ("b.py", "a.py")

    def test_retryable_only_for_timeout_and_stuck(self):
        assert RunResult(success=False, failure=FailureKind.TIMEOUT).retryable
        assert RunResult(success=False, failure=FailureKind.STUCK).retryable
        assert not RunResult(success=False, failure=FailureKind.NO_CHANGES).retryable

    def test_to_dict(self):
        result = RunResult(
            success=False,
            message="no changes",
            phase=RunPhase.NO_CHANGE,
            failure=FailureKind.NO_CHANGES,
        )

        data = result.to_dict()

        assert data["phase"] == "NO_CHANGE"
        assert data["failure"] == "NO_CHANGES"
        assert data["touched_files"] == []

    def test_sequence_result_to_dict_nests_passes(self):
        result = SequenceResult(
            success=True,
            touched_files=["a.py"],
            modes_used=["patcher"],
            pass_results=[RunResult(success=True, touched_files=("a.py",))],
        )

        assert result.to_dict()["pass_results"][0]["touched_files"] == ["a.py"]


class TestModeSelection:
    """Tests for ModeSelection."""

    def test_modes_for_single_pass(self):
        assert ModeSelection(primary_mode="patcher").modes == ["patcher"]

    def test_modes_for_sequence(self):
        selection = ModeSelection("architect", "patcher", needs_sequencing=True)

        assert selection.modes == ["architect", "patcher"]


class TestRunOptions:
    """Tests for RunOptions."""

    def test_claude_model_detection(self):
        assert RunOptions("patcher", "claude-3-7-sonnet-latest", 60).is_claude_model
        assert RunOptions("patcher", "anthropic/claude-opus", 60).is_claude_model
        assert not RunOptions("patcher", "gpt-4o", 60).is_claude_model


class TestProcessState:
    """Tests for the shared liveness record."""

    def test_output_resets_stale_checks(self):
        clock = FakeClock()
        state = ProcessState(clock=clock)
        state.record_probe()
        state.record_probe()

        clock.now += 5
        state.record_output("still alive\n")

        assert state.stale_checks() == 0
        assert state.inactive_seconds() == 0
        assert state.last_output == "still alive"

    def test_inactive_seconds_tracks_clock(self):
        clock = FakeClock()
        state = ProcessState(clock=clock)

        clock.now += 42

        assert state.inactive_seconds() == 42
        assert state.elapsed_seconds() == 42

    def test_request_exit_only_first_caller_wins(self):
        state = ProcessState()

        assert state.request_exit(TerminationReason.STUCK) is True
        assert state.request_exit(TerminationReason.TIMEOUT) is False
        assert state.termination_reason is TerminationReason.STUCK

    def test_request_exit_is_exclusive_across_threads(self):
        state = ProcessState()
        winners = []
        barrier = threading.Barrier(8)

        def contend():
            barrier.wait()
            if state.request_exit(TerminationReason.TIMEOUT):
                winners.append(threading.current_thread().name)

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
