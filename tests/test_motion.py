from unittest.mock import MagicMock

import pytest

from cnc_sender.confirmation import CommandResult
from cnc_sender.machine_status import StatusSnapshot
from cnc_sender.motion import (
    OUTCOME_COMPLETED,
    OUTCOME_DISCONNECTED,
    OUTCOME_FAULT,
    OUTCOME_REJECTED,
    OUTCOME_TIMEOUT,
    MotionCompleteDetector,
    MotionTracker,
    is_probe_command,
)
from cnc_sender.machine_status import MachineStatus
from cnc_sender.utils.exceptions import InvalidParameterError

from tests.conftest import ScriptedPoller


def make_detector(script, clock, **kwargs):
    snapshot = StatusSnapshot()
    poller = ScriptedPoller(snapshot, script)
    detector = MotionCompleteDetector(
        poller, snapshot, clock=clock, sleep=clock.sleep, **kwargs
    )
    return detector, poller


def test_eternal_idle_times_out_at_the_boundary(fake_clock):
    detector, _ = make_detector(["Idle"], fake_clock)

    result = detector.wait_for_motion_complete(timeout=1.0)

    assert result.outcome == OUTCOME_TIMEOUT
    assert not result
    assert result.seen_move is False
    assert 1.0 <= result.elapsed < 1.1


def test_idle_run_run_idle_idle_completes(fake_clock):
    detector, poller = make_detector(["Idle", "Run", "Run", "Idle", "Idle"], fake_clock)

    result = detector.wait_for_motion_complete(timeout=5.0, idle_threshold=2)

    assert result.outcome == OUTCOME_COMPLETED
    assert result.seen_move is True
    assert result.idle_streak == 2
    assert poller.calls == 5


def test_fault_state_aborts_wait(fake_clock):
    detector, _ = make_detector(["Run", "Alarm"], fake_clock)

    result = detector.wait_for_motion_complete(timeout=5.0)

    assert result.outcome == OUTCOME_FAULT
    assert result.last_state == "Alarm"


def test_still_moving_extends_then_times_out(fake_clock):
    detector, _ = make_detector(["Run"], fake_clock, max_extensions=2, extension=1.0)

    result = detector.wait_for_motion_complete(timeout=1.0)

    assert result.outcome == OUTCOME_TIMEOUT
    assert result.extensions_used == 2
    assert 3.0 <= result.elapsed < 3.1


def test_extension_keeps_detection_state(fake_clock):
    # Moves for ~1.4s, then settles; the single extension round covers it.
    script = ["Run"] * 7 + ["Idle", "Idle"]
    detector, _ = make_detector(script, fake_clock, max_extensions=2, extension=2.0)

    result = detector.wait_for_motion_complete(timeout=1.0, idle_threshold=2)

    assert result.outcome == OUTCOME_COMPLETED
    assert result.extensions_used == 1
    assert result.seen_move


def test_idle_without_move_allowed_for_probe(fake_clock):
    detector, _ = make_detector(["Idle"], fake_clock)

    result = detector.wait_for_motion_complete(
        timeout=5.0, idle_threshold=2, allow_idle_without_seen_move=True
    )

    assert result.outcome == OUTCOME_COMPLETED
    assert result.seen_move is False


def test_position_change_counts_as_move(fake_clock):
    start = (0.0, 0.0, 0.0)
    script = [("Idle", start), ("Idle", (1.0, 0.0, 0.0)), ("Idle", (1.0, 0.0, 0.0))]
    detector, poller = make_detector(script, fake_clock)

    result = detector.wait_for_motion_complete(
        timeout=5.0, idle_threshold=2, start_position=start
    )

    assert result.outcome == OUTCOME_COMPLETED
    assert result.seen_move
    # The report that reveals the move restarts the idle streak.
    assert poller.calls == 3


def test_disconnect_aborts_wait(fake_clock):
    snapshot = StatusSnapshot()
    detector = MotionCompleteDetector(
        ScriptedPoller(snapshot, ["Run"]),
        snapshot,
        is_connected=lambda: False,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )

    assert detector.wait_for_motion_complete(timeout=1.0).outcome == OUTCOME_DISCONNECTED


def test_wait_until_idle_needs_no_move(fake_clock):
    detector, _ = make_detector(["Run", "Idle", "Idle", "Idle"], fake_clock)

    result = detector.wait_until_idle(timeout=5.0, required_idle_count=3)

    assert result
    assert result.idle_streak == 3


def test_execute_and_wait_reports_rejection(fake_clock):
    detector, _ = make_detector(["Idle"], fake_clock)
    channel = MagicMock()
    channel.send_and_get_result.return_value = CommandResult(
        line="G0 X1", ok=False, response="error:9", error_code=9
    )

    result = detector.execute_and_wait(channel, "G0 X1", timeout=1.0)

    assert result.outcome == OUTCOME_REJECTED
    assert "error:9" in result.detail


def test_execute_and_wait_probe_accepts_idle(fake_clock):
    detector, _ = make_detector(["Idle"], fake_clock)
    channel = MagicMock()
    channel.send_and_get_result.return_value = CommandResult(line="G38.2 Z-5 F50", ok=True)

    result = detector.execute_and_wait(channel, "G38.2 Z-5 F50", timeout=2.0)

    assert result.outcome == OUTCOME_COMPLETED
    channel.send_and_get_result.assert_called_once()


def test_tracker_rejects_zero_threshold():
    with pytest.raises(InvalidParameterError):
        MotionTracker((0.0, 0.0, 0.0), idle_threshold=0)


def test_tracker_hold_is_fault():
    tracker = MotionTracker((0.0, 0.0, 0.0))
    assert tracker.observe(MachineStatus(state="Hold")) == OUTCOME_FAULT


def test_is_probe_command():
    assert is_probe_command("g38.2 z-10 f100")
    assert not is_probe_command("G1 Z-10 F100")
