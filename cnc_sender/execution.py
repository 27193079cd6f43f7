#!/usr/bin/env python3
# CNC Sender (GRBL streaming core)
# Copyright (C) 2026 Bob Kolbasowski
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
#
# Optional (not required by the license): If you make improvements, please consider
# contributing them back upstream (e.g., via a pull request) so others can benefit.
#
# SPDX-License-Identifier: GPL-3.0-or-later

"""Execution state machine.

Drives a whole program through the confirmation channel, one line at a time,
and owns pause/stop/resume. The cursor and per-line flags are written only
by the streaming thread (or by the reset paths once that thread is gone);
callers read snapshots.

State flow::

    Ready -> Running -> Holding -> (confirm_stop) -> Ready
                     |          -> (cancel_stop)  -> Running
                     -> Completed
                     -> Aborted (failed line kept for resume)
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .confirmation import CommandConfirmationChannel
from .estimate import (
    ExecutionEstimate,
    build_time_map,
    layer_for_line,
    progress_percent,
    unique_layers,
)
from .gcode_parser import GCodeSegment, SegmentParser, clean_gcode_line, total_distance
from .grbl_settings import GrblSettingsCache, check_program_fits
from .machine_status import (
    STATE_ALARM,
    STATE_HOLD,
    STATE_IDLE,
    STATE_JOG,
    MachineStatus,
    StatusSnapshot,
)
from .motion import OUTCOME_COMPLETED, OUTCOME_FAULT, MotionCompleteDetector
from .overrides import OverrideController
from .resume import build_resume_preamble
from .status_poller import CentralStatusPoller
from .types import ExecState, TransportLike, UiEvent
from .utils.constants import (
    CONFIRM_TIMEOUT_DEFAULT,
    ERROR_ALREADY_RUNNING,
    ERROR_DOES_NOT_FIT,
    ERROR_NO_PROGRAM,
    ERROR_NOT_CONNECTED,
    ESTIMATE_DEFAULT_FEED,
    ESTIMATE_RAPID_RATE,
    MOTION_TIMEOUT_DEFAULT,
    READY_TIMEOUT_DEFAULT,
    RT_HOLD,
    RT_RESET,
    RT_RESUME,
    STOP_IDLE_TIMEOUT,
    THREAD_JOIN_TIMEOUT,
    UNLOCK_COMMAND,
)
from .utils.exceptions import (
    ExecutionError,
    FirmwareRejected,
    MachineFault,
    SerialDisconnectError,
    TransportError,
)
from .utils.validation import validate_feed_rate, validate_line_index

logger = logging.getLogger(__name__)

STATE_READY: ExecState = "Ready"
STATE_RUNNING: ExecState = "Running"
STATE_HOLDING: ExecState = "Holding"
STATE_COMPLETED: ExecState = "Completed"
STATE_ABORTED: ExecState = "Aborted"

ACTIVE_STATES = (STATE_RUNNING, STATE_HOLDING)

# Slice used while the stream waits out a hold.
_HOLD_WAIT_SLICE = 0.05


@dataclass(frozen=True)
class ExecutionCursor:
    currently_executing_line_index: int = -1
    last_completed_line_index: int = -1
    total_lines: int = 0


@dataclass(frozen=True)
class LineFlags:
    pending: bool = False
    current: bool = False
    executed: bool = False
    error: bool = False

    @property
    def any_set(self) -> bool:
        return self.pending or self.current or self.executed or self.error


@dataclass(frozen=True)
class IdleAnomaly:
    line_index: int
    started_at: float
    duration: float | None = None
    closed_by: str | None = None


class ExecutionStateMachine:
    """Streams a program and tracks its execution.

    Example:
        machine.load_program(lines)
        machine.run()
        machine.pause()          # feed hold goes out immediately
        machine.confirm_stop()   # or machine.cancel_stop()
    """

    def __init__(
        self,
        transport: TransportLike,
        channel: CommandConfirmationChannel,
        poller: CentralStatusPoller,
        snapshot: StatusSnapshot,
        detector: MotionCompleteDetector,
        overrides: Optional[OverrideController] = None,
        event_q: Optional[queue.Queue] = None,
        confirm_timeout: float = CONFIRM_TIMEOUT_DEFAULT,
        ready_timeout: float = READY_TIMEOUT_DEFAULT,
        motion_timeout: float = MOTION_TIMEOUT_DEFAULT,
        default_feed: float = ESTIMATE_DEFAULT_FEED,
        rapid_rate: float = ESTIMATE_RAPID_RATE,
        firmware_settings: Optional[GrblSettingsCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.channel = channel
        self.poller = poller
        self.snapshot = snapshot
        self.detector = detector
        self.overrides = overrides
        self.event_q = event_q
        self.confirm_timeout = confirm_timeout
        self.ready_timeout = ready_timeout
        self.motion_timeout = motion_timeout
        self.default_feed = validate_feed_rate(default_feed)
        self.rapid_rate = validate_feed_rate(rapid_rate)
        self.firmware_settings = firmware_settings
        self._clock = clock

        self._state_lock = threading.RLock()
        self._state: ExecState = STATE_READY
        self._cursor = ExecutionCursor()
        self._flags: List[LineFlags] = []
        self._listeners: list[Callable[[UiEvent], None]] = []

        self._lines: List[str] = []
        self._segments: List[GCodeSegment] = []
        self._layers: List[float] = []
        self._parser = SegmentParser()
        self.estimate = ExecutionEstimate(clock=clock)

        self._thread: Optional[threading.Thread] = None
        self._stop_requested = threading.Event()
        self._resume_evt = threading.Event()
        self._resume_evt.set()
        self._finished_evt = threading.Event()
        self._finished_evt.set()
        self._fault: Optional[Exception] = None
        self._started_poller = False

        self.last_stopped_line_index: Optional[int] = None
        self.failed_line_index: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_exception: Optional[Exception] = None

        self._anomaly_lock = threading.Lock()
        self._anomaly: Optional[IdleAnomaly] = None
        self.anomalies: List[IdleAnomaly] = []
        self._resumed_at = float("-inf")

    # ========================================================================
    # SNAPSHOTS AND EVENTS
    # ========================================================================

    @property
    def state(self) -> ExecState:
        with self._state_lock:
            return self._state

    @property
    def cursor(self) -> ExecutionCursor:
        with self._state_lock:
            return self._cursor

    @property
    def is_running(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def lines(self) -> Sequence[str]:
        return tuple(self._lines)

    @property
    def segments(self) -> Sequence[GCodeSegment]:
        return tuple(self._segments)

    @property
    def total_distance(self) -> float:
        return total_distance(self._segments)

    def line_flags(self) -> tuple[LineFlags, ...]:
        with self._state_lock:
            return tuple(self._flags)

    def progress_percent(self) -> float:
        cursor = self.cursor
        return progress_percent(cursor.last_completed_line_index, cursor.total_lines)

    def elapsed_seconds(self) -> float:
        return self.estimate.elapsed_seconds()

    def remaining_seconds(self) -> float:
        feed = self.overrides.feed_percent if self.overrides is not None else 100
        return self.estimate.remaining_seconds(self.cursor.last_completed_line_index, feed)

    def total_seconds(self) -> float:
        feed = self.overrides.feed_percent if self.overrides is not None else 100
        return self.estimate.total_seconds(feed)

    def current_layer(self) -> tuple[int | None, int]:
        """(1-based layer of the executing line, number of layers)."""
        index = self.cursor.currently_executing_line_index
        if index < 0:
            return None, len(self._layers)
        return layer_for_line(self._segments, self._layers, index), len(self._layers)

    def add_listener(self, listener: Callable[[UiEvent], None]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[UiEvent], None]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def _emit(self, *event) -> None:
        if self.event_q is not None:
            self.event_q.put(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.error(f"Execution listener failed: {exc}", exc_info=True)

    def _set_state(self, new: ExecState) -> None:
        with self._state_lock:
            old = self._state
            if old == new:
                return
            self._state = new
        logger.info(f"Execution state {old} -> {new}")
        self._emit("exec_state", old, new)

    # ========================================================================
    # PROGRAM
    # ========================================================================

    def load_program(self, lines: Sequence[str]) -> None:
        """Load program text and build segments and the time map.

        Raises:
            ExecutionError: If a program is running
        """
        if self.is_running:
            raise ExecutionError(ERROR_ALREADY_RUNNING)
        self._lines = [str(line) for line in lines]
        self._parser.reset()
        self._segments = self._parser.parse_lines(self._lines)
        self._layers = unique_layers(self._segments)
        self._rebuild_time_map()
        self.last_stopped_line_index = None
        self.failed_line_index = None
        self.last_error = None
        self.last_exception = None
        self.reset_execution_state()
        self._set_state(STATE_READY)
        logger.info(
            f"Loaded program: {len(self._lines)} lines, {len(self._segments)} segments, "
            f"{self.total_distance:.3f} distance"
        )
        self._emit("program_loaded", len(self._lines), len(self._segments))

    def _has_executable_lines(self) -> bool:
        return any(clean_gcode_line(line) for line in self._lines)

    def effective_rapid_rate(self) -> float:
        """Firmware $110/$111 rapid rate when known, else the configured one."""
        if self.firmware_settings is not None:
            rate = self.firmware_settings.rapid_rate()
            if rate is not None:
                return rate
        return self.rapid_rate

    def _rebuild_time_map(self) -> None:
        self.estimate.set_time_map(
            build_time_map(self._segments, self.default_feed, self.effective_rapid_rate())
        )

    def check_fit(self) -> list[str]:
        """Axes on which the loaded program spans more than the machine travel.

        Returns:
            Problem descriptions; empty when the program fits or when the
            firmware has not reported $130-$132 yet
        """
        travel = self.firmware_settings.max_travel() if self.firmware_settings is not None else {}
        if not travel:
            logger.warning("Machine travel ($130-$132) unknown; skipping fit check")
            return []
        return check_program_fits(self._segments, travel)

    def reset_execution_state(self) -> None:
        """Cursor back to (-1, -1) and every per-line flag cleared. Idempotent."""
        with self._state_lock:
            self._cursor = ExecutionCursor(-1, -1, len(self._lines))
            self._flags = [LineFlags() for _ in self._lines]
        self.estimate.reset()
        self._close_anomaly("execution reset")

    # ========================================================================
    # RUN
    # ========================================================================

    def run(self, lines: Optional[Sequence[str]] = None, start_index: int = 0,
            preamble: Optional[Sequence[str]] = None) -> threading.Thread:
        """Start streaming on a background thread.

        Args:
            lines: Program to load first (optional if already loaded)
            start_index: First line to send
            preamble: Lines sent before ``start_index`` (modal recovery)

        Returns:
            The streaming thread

        Raises:
            ExecutionError: If not connected, already running, nothing is
                loaded or the controller does not become ready
        """
        if self.is_running or (self._thread is not None and self._thread.is_alive()):
            raise ExecutionError(ERROR_ALREADY_RUNNING)
        if not self.transport.is_connected():
            raise ExecutionError(ERROR_NOT_CONNECTED)
        if lines is not None:
            self.load_program(lines)
        if not self._lines or not self._has_executable_lines():
            raise ExecutionError(ERROR_NO_PROGRAM)
        problems = self.check_fit()
        if problems:
            raise ExecutionError(f"{ERROR_DOES_NOT_FIT}: {'; '.join(problems)}")
        start_index = validate_line_index(start_index, len(self._lines) - 1)
        if not self.wait_for_controller_ready(self.ready_timeout):
            raise ExecutionError("Controller not ready")

        with self._state_lock:
            self._cursor = ExecutionCursor(start_index - 1, start_index - 1, len(self._lines))
            self._flags = [LineFlags(pending=idx >= start_index) for idx in range(len(self._lines))]
        self.failed_line_index = None
        self.last_error = None
        self.last_exception = None
        self._fault = None
        self._stop_requested.clear()
        self._resume_evt.set()
        self._finished_evt.clear()
        self._rebuild_time_map()
        self.estimate.start()
        if not self.poller.is_running:
            self.poller.start()
            self._started_poller = True
        self._set_state(STATE_RUNNING)
        self._thread = threading.Thread(
            target=self._stream_loop,
            args=(start_index, list(preamble or ())),
            daemon=True,
            name="GRBL-Exec",
        )
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the run to finish; True if it did within ``timeout``."""
        return self._finished_evt.wait(timeout)

    def wait_for_controller_ready(self, timeout: float = READY_TIMEOUT_DEFAULT) -> bool:
        """Bring the controller to Idle before a run.

        Alarm is answered with an unlock, Hold with a cycle resume.
        """
        deadline = time.monotonic() + timeout
        unlocked = False
        resumed = False
        while time.monotonic() < deadline:
            self.poller.request_once(min(0.5, max(0.0, deadline - time.monotonic())))
            status = self.snapshot.current
            if status.state in (STATE_IDLE, STATE_JOG):
                return True
            if status.state == STATE_ALARM and not unlocked:
                logger.info("Controller in alarm; sending unlock before run")
                unlocked = True
                with self.channel.ownership():
                    self.channel.send_with_confirmation(UNLOCK_COMMAND, self.confirm_timeout)
            elif status.state == STATE_HOLD and not resumed:
                logger.info("Controller in hold; sending cycle resume before run")
                resumed = True
                self.transport.send_realtime(RT_RESUME)
            time.sleep(0.05)
        logger.warning(f"Controller not ready after {timeout:.1f}s (state={self.snapshot.current.state})")
        return False

    def _keep_waiting(self) -> bool:
        """Keep waiting for a reply while held, and for one window after a resume."""
        if self._stop_requested.is_set():
            return False
        if self.state == STATE_HOLDING:
            return True
        return self._clock() - self._resumed_at < self.confirm_timeout

    def _stream_loop(self, start_index: int, preamble: List[str]) -> None:
        logger.debug("Execution thread started")
        try:
            for line in preamble:
                result = self.channel.send_and_get_result(line, self.confirm_timeout)
                if not result.ok:
                    self._fail(start_index, f"resume preamble '{line}' {result.reason}",
                               FirmwareRejected(result.reason, result.error_code, start_index, line))
                    return
            total = len(self._lines)
            for idx in range(start_index, total):
                if not self._wait_while_holding():
                    break
                if self._fault is not None:
                    self._fail(idx, str(self._fault), self._fault)
                    return
                self._begin_line(idx)
                text = clean_gcode_line(self._lines[idx])
                if not text:
                    self._complete_line(idx)
                    continue
                logger.debug(f"Line {idx + 1}/{total}: {text}")
                result = self.channel.send_and_get_result(
                    text, self.confirm_timeout, extend_while=self._keep_waiting
                )
                if result.ok:
                    self._complete_line(idx)
                    continue
                if self._stop_requested.is_set():
                    break
                self._fail(idx, result.reason, FirmwareRejected(
                    result.reason, result.error_code, idx, text))
                return
            if self._stop_requested.is_set():
                return
            self._await_physical_completion()
        except TransportError as exc:
            self._fail(self.cursor.currently_executing_line_index, f"transport error: {exc}", exc)
        except Exception as exc:
            logger.error(f"Execution thread error: {exc}", exc_info=True)
            self._fail(self.cursor.currently_executing_line_index, f"internal error: {exc}", exc)
        finally:
            if self._started_poller and not self.is_running:
                self.poller.stop()
                self._started_poller = False
            if not self._stop_requested.is_set():
                self._finished_evt.set()
            logger.debug("Execution thread stopped")

    def _wait_while_holding(self) -> bool:
        """Block between lines while held. False once a stop is confirmed."""
        while not self._resume_evt.wait(_HOLD_WAIT_SLICE):
            if self._stop_requested.is_set():
                return False
        return not self._stop_requested.is_set()

    def _await_physical_completion(self) -> None:
        """All lines acknowledged; wait until the machine settles."""
        while not self._stop_requested.is_set():
            result = self.detector.wait_until_idle(self.motion_timeout)
            if result.outcome == OUTCOME_COMPLETED:
                break
            if self.state == STATE_HOLDING:
                self._wait_while_holding()
                continue
            if result.outcome == OUTCOME_FAULT:
                fault = MachineFault(f"machine entered {result.last_state}", result.last_state)
                self._fail(self.cursor.last_completed_line_index, str(fault), fault)
                return
            if not self.transport.is_connected():
                self._fail(self.cursor.last_completed_line_index, "transport lost",
                           TransportError("transport lost"))
                return
            logger.debug(f"Still waiting for motion to finish (state={result.last_state})")
        if self._stop_requested.is_set():
            return
        self.estimate.finish()
        self._close_anomaly("execution finished")
        self._set_state(STATE_COMPLETED)
        elapsed = self.estimate.elapsed_seconds()
        logger.info(f"Program completed: {len(self._lines)} lines in {elapsed:.1f}s")
        self._emit("execution_finished", STATE_COMPLETED)

    def _begin_line(self, idx: int) -> None:
        anomaly = self._anomaly
        if anomaly is not None and anomaly.line_index != idx:
            self._close_anomaly("line acknowledged")
        with self._state_lock:
            if self._stop_requested.is_set():
                return
            cur = self._cursor
            self._cursor = ExecutionCursor(idx, cur.last_completed_line_index, cur.total_lines)
            self._flags[idx] = LineFlags(current=True)

    def _complete_line(self, idx: int) -> None:
        # A reply that lands after a stop must not undo the cursor reset.
        with self._state_lock:
            if self._stop_requested.is_set():
                logger.debug(f"Ignoring completion of line {idx + 1} after stop")
                return
            self._cursor = ExecutionCursor(idx, idx, self._cursor.total_lines)
            self._flags[idx] = LineFlags(executed=True)
            total = self._cursor.total_lines
        self._emit("line_completed", idx, total)
        self._emit("progress", progress_percent(idx, total))

    def _fail(self, idx: int, reason: str, exc: Optional[Exception] = None) -> None:
        if self._stop_requested.is_set():
            logger.debug(f"Ignoring failure after stop: {reason}")
            return
        idx = max(0, idx)
        with self._state_lock:
            if 0 <= idx < len(self._flags):
                self._flags[idx] = LineFlags(error=True)
        message = f"failed at line {idx + 1}: {reason}"
        self.failed_line_index = idx
        self.last_stopped_line_index = idx
        self.last_error = message
        self.last_exception = exc
        self.estimate.finish()
        self._close_anomaly("execution stopped")
        logger.error(f"Execution {message}")
        self._set_state(STATE_ABORTED)
        self._emit("line_failed", idx, message)
        self._emit("execution_finished", STATE_ABORTED)

    # ========================================================================
    # PAUSE / STOP / RESUME
    # ========================================================================

    def pause(self) -> None:
        """Feed hold now. Whether to stop or continue is decided later.

        Raises:
            TransportError: If the hold byte cannot be written
        """
        self.transport.send_realtime(RT_HOLD)
        logger.info("Feed hold sent")
        if self.state == STATE_RUNNING:
            self._resume_evt.clear()
            self.estimate.pause()
            self._set_state(STATE_HOLDING)

    request_stop = pause

    def cancel_stop(self) -> bool:
        """Resume from hold without re-sending accepted lines.

        Returns:
            True if the run was resumed
        """
        if self.state != STATE_HOLDING:
            return False
        self.transport.send_realtime(RT_RESUME)
        logger.info("Cycle resume sent")
        self.estimate.resume()
        self._resumed_at = self._clock()
        self._set_state(STATE_RUNNING)
        self._resume_evt.set()
        return True

    resume = cancel_stop

    def confirm_stop(self, timeout: float = STOP_IDLE_TIMEOUT) -> bool:
        """Run the stop sequence after a hold.

        Streaming halts (a confirmation already in flight is allowed to
        settle), firmware buffers are flushed with a soft reset, an alarm
        raised by the reset is unlocked, and the cursor and flags are reset.

        Returns:
            True if the machine settled in Idle
        """
        stopped_at = max(0, self.cursor.currently_executing_line_index)
        was_active = self.is_running
        self._stop_requested.set()
        self._resume_evt.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(self.confirm_timeout + THREAD_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Execution thread did not settle before the stop sequence")
        settled = self._stop_sequence(timeout)
        if was_active and self.state != STATE_ABORTED:
            self.last_stopped_line_index = stopped_at
        self.reset_execution_state()
        if self._started_poller:
            self.poller.stop()
            self._started_poller = False
        self._set_state(STATE_READY)
        logger.info(f"Execution stopped; resume available from line {stopped_at + 1}")
        self._emit("execution_stopped", stopped_at)
        self._finished_evt.set()
        return settled

    def _stop_sequence(self, timeout: float) -> bool:
        if not self.transport.is_connected():
            return False
        try:
            self.transport.send_realtime(RT_RESET)
        except TransportError as exc:
            logger.error(f"Soft reset failed: {exc}")
            return False
        if self.overrides is not None:
            self.overrides.reset()
        # Reports from before the reset still say Hold.
        self.snapshot.mark_unknown()
        deadline = time.monotonic() + timeout
        unlocked = False
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Machine did not settle after stop")
                return False
            result = self.detector.wait_until_idle(remaining)
            if result:
                return True
            if result.last_state == STATE_ALARM and not unlocked:
                logger.info("Alarm after reset; unlocking")
                unlocked = True
                with self.channel.ownership():
                    self.channel.send_with_confirmation(UNLOCK_COMMAND, self.confirm_timeout)
                continue
            if result.outcome == OUTCOME_FAULT and result.last_state == STATE_HOLD:
                time.sleep(_HOLD_WAIT_SLICE)
                continue
            logger.warning(f"Machine did not settle after stop ({result.outcome}, {result.last_state})")
            return False

    def emergency_stop(self) -> None:
        """Soft reset immediately and drop the run without waiting."""
        self._stop_requested.set()
        self._resume_evt.set()
        try:
            self.transport.send_realtime(RT_RESET)
        except TransportError as exc:
            logger.error(f"Emergency reset failed: {exc}")
        if self.overrides is not None:
            self.overrides.reset()
        stopped_at = max(0, self.cursor.currently_executing_line_index)
        if self.is_running:
            self.last_stopped_line_index = stopped_at
        self.reset_execution_state()
        self._set_state(STATE_READY)
        self._emit("execution_stopped", stopped_at)
        self._finished_evt.set()

    def resume_from_line(self, index: int, safe_z: float | None = None) -> threading.Thread:
        """Restart streaming at ``index`` after a stop or failure.

        Only the tail from ``index`` is sent, after a preamble restoring the
        modal state of the skipped head.

        Raises:
            ExecutionError: If ``index`` is before the stop point
            InvalidParameterError / InvalidRangeError: If out of range
        """
        index = validate_line_index(index, len(self._lines) - 1 if self._lines else 0)
        floor = self.last_stopped_line_index
        if floor is not None and index < floor:
            raise ExecutionError(
                f"Cannot resume at line {index + 1}; stopped at line {floor + 1}"
            )
        target = None
        feed = None
        if safe_z is not None:
            target = next((seg.start for seg in self._segments if seg.line_number >= index), None)
            feed = next((seg.feed_rate for seg in self._segments
                         if seg.line_number >= index and seg.feed_rate > 0), None)
        preamble, has_g92 = build_resume_preamble(self._lines, index, target, safe_z, feed)
        if has_g92:
            logger.warning("Program changes G92 offsets before the resume line; check the work offset")
        logger.info(f"Resuming at line {index + 1} with {len(preamble)} preamble lines")
        return self.run(start_index=index, preamble=preamble)

    # ========================================================================
    # INBOUND NOTIFICATIONS (dispatch thread)
    # ========================================================================

    def on_status(self, status: MachineStatus) -> None:
        """Track idle anomalies while lines are still outstanding."""
        if self.state != STATE_RUNNING:
            return
        cursor = self.cursor
        index = cursor.currently_executing_line_index
        outstanding = index >= 0 and cursor.last_completed_line_index < cursor.total_lines - 1
        if status.is_idle and outstanding:
            with self._anomaly_lock:
                if self._anomaly is not None:
                    return
                self._anomaly = IdleAnomaly(line_index=index, started_at=self._clock())
            logger.warning(f"Unexpected Idle while running at line {index + 1} of {cursor.total_lines}")
            self._emit("idle_anomaly", index)
        elif status.is_moving:
            self._close_anomaly("resumed to Run")

    def _close_anomaly(self, reason: str) -> None:
        with self._anomaly_lock:
            anomaly = self._anomaly
            if anomaly is None:
                return
            self._anomaly = None
            duration = self._clock() - anomaly.started_at
            self.anomalies.append(IdleAnomaly(anomaly.line_index, anomaly.started_at, duration, reason))
        logger.info(
            f"Idle anomaly at line {anomaly.line_index + 1} closed ({reason}) after {duration:.2f}s"
        )

    def on_alarm(self, message: str) -> None:
        """Alarm reported by firmware; stops the run at the next line boundary."""
        if self.is_running:
            self._fault = MachineFault(f"alarm: {message}", STATE_ALARM)
            self._resume_evt.set()

    def on_disconnect(self, reason: str) -> None:
        if self.is_running:
            self._fault = SerialDisconnectError(f"disconnected: {reason}")
            self._resume_evt.set()
