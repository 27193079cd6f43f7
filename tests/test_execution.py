import logging

import pytest

from cnc_sender.controller import MachineContext
from cnc_sender.execution import (
    STATE_ABORTED,
    STATE_COMPLETED,
    STATE_HOLDING,
    STATE_READY,
    STATE_RUNNING,
    ExecutionCursor,
)
from cnc_sender.utils.exceptions import ExecutionError, FirmwareRejected, InvalidRangeError

from tests.conftest import wait_until

PROGRAM = ["G90", "G1 X10 F100", "G1 Y10"]


@pytest.fixture
def context(fake_transport):
    ctx = MachineContext(
        transport=fake_transport,
        status_poll_interval=0.05,
        confirm_timeout=1.0,
        ready_timeout=2.0,
        motion_timeout=3.0,
    )
    yield ctx
    ctx.close()


@pytest.fixture
def machine(context):
    return context.execution


def drain(q):
    events = []
    while not q.empty():
        events.append(q.get_nowait())
    return events


def gate_line(transport, gated):
    transport.responder = lambda line: None if line == gated else "ok"


def test_three_line_program_runs_to_completion(context, machine, fake_transport):
    machine.load_program(PROGRAM)
    assert machine.total_distance == pytest.approx(20.0)

    machine.run()

    assert machine.join(10.0)
    assert machine.state == STATE_COMPLETED
    assert machine.cursor == ExecutionCursor(2, 2, 3)
    assert all(flags.executed for flags in machine.line_flags())
    assert fake_transport.sent_program_lines() == PROGRAM

    events = drain(context.event_q)
    completed = [e[1] for e in events if e[0] == "line_completed"]
    assert completed == [0, 1, 2]
    assert ("exec_state", STATE_READY, STATE_RUNNING) in events
    assert ("execution_finished", STATE_COMPLETED) in events
    assert machine.progress_percent() == pytest.approx(100.0)
    assert not context.poller.is_running


def test_blank_and_comment_lines_are_not_sent(machine, fake_transport):
    machine.run(["G90", "", "(setup)", "G1 X1 F100 ; cut"])

    assert machine.join(10.0)
    assert fake_transport.sent_program_lines() == ["G90", "G1 X1 F100"]
    assert all(flags.executed for flags in machine.line_flags())


def test_run_preconditions(machine, fake_transport):
    with pytest.raises(ExecutionError, match="No program"):
        machine.run()
    with pytest.raises(ExecutionError, match="No program"):
        machine.run(["; nothing to do", "(still nothing)"])

    fake_transport.connected = False
    with pytest.raises(ExecutionError, match="Not connected"):
        machine.run(PROGRAM)


def test_second_run_is_rejected_while_running(machine, fake_transport):
    gate_line(fake_transport, "G1 X10 F100")
    machine.run(PROGRAM)
    assert wait_until(lambda: "G1 X10 F100" in fake_transport.lines)

    with pytest.raises(ExecutionError, match="already running"):
        machine.run(PROGRAM)

    fake_transport.feed("ok\n")
    assert machine.join(10.0)


def test_reset_execution_state_is_idempotent(machine):
    machine.load_program(PROGRAM)

    machine.reset_execution_state()
    first = (machine.cursor, machine.line_flags())
    machine.reset_execution_state()

    assert (machine.cursor, machine.line_flags()) == first
    assert machine.cursor == ExecutionCursor(-1, -1, 3)
    assert not any(flags.any_set for flags in machine.line_flags())


def test_rejected_line_aborts_and_keeps_index(context, machine, fake_transport):
    fake_transport.responder = lambda line: "error:20" if line == "G5 X1" else "ok"

    machine.run(["G90", "G5 X1", "G1 Y10"])

    assert machine.join(10.0)
    assert machine.state == STATE_ABORTED
    assert machine.failed_line_index == 1
    assert machine.last_stopped_line_index == 1
    assert machine.last_error.startswith("failed at line 2: error:20")
    assert isinstance(machine.last_exception, FirmwareRejected)
    assert machine.last_exception.error_code == 20
    assert machine.cursor.last_completed_line_index == 0
    flags = machine.line_flags()
    assert flags[0].executed and flags[1].error and flags[2].pending
    assert "G1 Y10" not in fake_transport.lines
    assert any(e[0] == "line_failed" and e[1] == 1 for e in drain(context.event_q))


def test_resume_from_line_validates_index_and_sends_tail(machine, fake_transport):
    fake_transport.responder = lambda line: "error:20" if line == "G5 X1" else "ok"
    machine.run(["G21 G90", "G5 X1", "G1 Y10"])
    assert machine.join(10.0)

    with pytest.raises(ExecutionError, match="stopped at line 2"):
        machine.resume_from_line(0)
    with pytest.raises(InvalidRangeError):
        machine.resume_from_line(3)

    fake_transport.responder = lambda line: "ok"
    sent_before = len(fake_transport.sent_program_lines())
    machine.resume_from_line(1)

    assert machine.join(10.0)
    assert machine.state == STATE_COMPLETED
    assert fake_transport.sent_program_lines()[sent_before:] == ["G21", "G90", "G5 X1", "G1 Y10"]
    assert machine.cursor.last_completed_line_index == 2


def test_pause_then_cancel_continues_without_resending(machine, fake_transport):
    gate_line(fake_transport, "G1 X10 F100")
    machine.run(PROGRAM)
    assert wait_until(lambda: "G1 X10 F100" in fake_transport.lines)

    machine.pause()
    assert machine.state == STATE_HOLDING
    assert b"!" in fake_transport.realtime
    # Held longer than the confirmation timeout without failing the line.
    assert not machine.join(1.3)
    assert machine.state == STATE_HOLDING
    assert machine.cursor.currently_executing_line_index == 1

    assert machine.cancel_stop() is True
    assert b"~" in fake_transport.realtime
    fake_transport.feed("ok\n")

    assert machine.join(10.0)
    assert machine.state == STATE_COMPLETED
    assert fake_transport.sent_program_lines() == PROGRAM


def test_confirm_stop_resets_cursor_and_unlocks(machine, fake_transport):
    fake_transport.reset_state = "Alarm"
    gate_line(fake_transport, "G1 X10 F100")
    machine.run(PROGRAM)
    assert wait_until(lambda: "G1 X10 F100" in fake_transport.lines)
    machine.pause()

    settled = machine.confirm_stop(timeout=5.0)

    assert settled is True
    assert machine.state == STATE_READY
    assert machine.cursor == ExecutionCursor(-1, -1, 3)
    assert not any(flags.any_set for flags in machine.line_flags())
    assert machine.last_stopped_line_index == 1
    assert b"\x18" in fake_transport.realtime
    assert "$X" in fake_transport.lines
    assert "G1 Y10" not in fake_transport.lines
    assert machine.join(0.1)


def test_cancel_stop_outside_hold_is_a_no_op(machine, fake_transport):
    assert machine.cancel_stop() is False
    assert b"~" not in fake_transport.realtime


def test_emergency_stop_resets_immediately(machine, fake_transport):
    gate_line(fake_transport, "G1 X10 F100")
    machine.run(PROGRAM)
    assert wait_until(lambda: "G1 X10 F100" in fake_transport.lines)

    machine.emergency_stop()

    assert machine.state == STATE_READY
    assert machine.cursor == ExecutionCursor(-1, -1, 3)
    assert b"\x18" in fake_transport.realtime
    assert machine.last_stopped_line_index == 1


def test_idle_while_lines_outstanding_is_logged(machine, fake_transport, caplog):
    events = []
    machine.add_listener(events.append)
    gate_line(fake_transport, "G1 X10 F100")

    with caplog.at_level(logging.INFO, logger="cnc_sender.execution"):
        machine.run(PROGRAM)
        assert wait_until(lambda: ("idle_anomaly", 1) in events)
        fake_transport.feed("ok\n")
        assert machine.join(10.0)

    assert machine.state == STATE_COMPLETED
    assert "Unexpected Idle while running at line 2 of 3" in caplog.text
    on_gated_line = [a for a in machine.anomalies if a.line_index == 1]
    assert on_gated_line
    assert all(a.duration is not None for a in machine.anomalies)


def test_alarm_during_run_aborts_at_next_line(context, machine, fake_transport):
    gate_line(fake_transport, "G1 X10 F100")
    machine.run(PROGRAM)
    assert wait_until(lambda: "G1 X10 F100" in fake_transport.lines)

    fake_transport.feed("ALARM:1\n")
    assert wait_until(lambda: any(e[0] == "alarm" for e in list(context.event_q.queue)))
    fake_transport.feed("ok\n")

    assert machine.join(10.0)
    assert machine.state == STATE_ABORTED
    assert machine.failed_line_index == 2
    assert "alarm" in machine.last_error
    assert "G1 Y10" not in fake_transport.lines


def test_estimates_follow_the_program(machine):
    machine.load_program(PROGRAM)

    assert machine.total_seconds() == pytest.approx(12.0)
    assert machine.remaining_seconds() == pytest.approx(12.0)
    assert machine.elapsed_seconds() == 0.0
    assert machine.current_layer() == (None, 1)


def test_resume_with_safe_z_restores_units_before_approach(machine, fake_transport):
    program = ["G20", "G55", "G1 X1 F10", "G1 X2", "G1 X3"]
    fake_transport.responder = lambda line: "error:33" if line == "G1 X2" else "ok"
    machine.run(program)
    assert machine.join(10.0)
    assert machine.last_stopped_line_index == 3

    fake_transport.responder = lambda line: "ok"
    sent_before = len(fake_transport.sent_program_lines())
    machine.resume_from_line(3, safe_z=0.5)

    assert machine.join(10.0)
    assert fake_transport.sent_program_lines()[sent_before:] == [
        "G20", "G55",
        "G90", "G0 Z0.500", "G0 X1.000 Y0.000",
        "G1 Z0.000 F10",
        "F10",
        "G1 X2", "G1 X3",
    ]


def test_late_reply_after_emergency_stop_keeps_cursor_reset(context, machine, fake_transport):
    gate_line(fake_transport, "G1 X10 F100")
    thread = machine.run(PROGRAM)
    assert wait_until(lambda: "G1 X10 F100" in fake_transport.lines)

    machine.emergency_stop()
    drain(context.event_q)
    fake_transport.feed("ok\n")
    thread.join(3.0)

    assert not thread.is_alive()
    assert machine.state == STATE_READY
    assert machine.cursor == ExecutionCursor(-1, -1, 3)
    assert not any(flags.any_set for flags in machine.line_flags())
    assert not any(e[0] == "line_completed" for e in drain(context.event_q))
    assert "G1 Y10" not in fake_transport.lines


def test_run_refuses_program_larger_than_machine_travel(context, machine, fake_transport):
    for line in ("$130=300.000", "$131=200.000", "$132=80.000"):
        context.grbl_settings.handle_line(line)

    with pytest.raises(ExecutionError, match=r"X span 400\.000 mm exceeds machine travel \$130"):
        machine.run(["G90", "G0 X-100 Y0", "G1 X300 F500"])

    assert machine.state == STATE_READY
    assert fake_transport.sent_program_lines() == []


def test_fit_check_converts_inch_programs(context, machine):
    context.grbl_settings.handle_line("$130=200.000")
    machine.load_program(["G20", "G1 X10 F20"])

    assert machine.check_fit() == ["X span 254.000 mm exceeds machine travel $130=200.000 mm"]


def test_program_within_travel_runs(context, machine):
    context.grbl_settings.handle_line("$130=300.000")
    context.grbl_settings.handle_line("$131=300.000")

    machine.run(PROGRAM)

    assert machine.join(10.0)
    assert machine.state == STATE_COMPLETED


def test_firmware_rapid_rates_drive_estimates(context, machine):
    machine.load_program(["G0 X100"])
    configured = machine.total_seconds()

    for line in ("$110=1000.000", "$111=2000.000", "$112=500.000"):
        context.grbl_settings.handle_line(line)
    machine.load_program(["G0 X100"])

    assert machine.effective_rapid_rate() == 1000.0
    assert machine.total_seconds() == pytest.approx(6.0)
    assert machine.total_seconds() != pytest.approx(configured)
