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

"""Motion-complete detection.

GRBL never says "move finished". Completion is inferred from polled status:
first the move has to be seen (Run/Jog, or the position drifting away from
where it started), then the machine has to report Idle for a number of
consecutive polls. Alarm or Hold ends the wait at once.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .machine_status import MachineStatus, StatusSnapshot
from .types import Position, StatusSource
from .utils.constants import (
    MOTION_EXTENSION_DEFAULT,
    MOTION_IDLE_THRESHOLD_DEFAULT,
    MOTION_MAX_EXTENSIONS_DEFAULT,
    MOTION_POLL_INTERVAL,
    MOTION_POSITION_EPSILON,
    MOTION_SLEEP_INTERVAL,
    MOTION_TIMEOUT_DEFAULT,
    PROBE_COMMAND_MARKER,
)
from .utils.validation import validate_interval, validate_threshold

logger = logging.getLogger(__name__)

PHASE_WAITING_FOR_MOVE_START = "WaitingForMoveStart"
PHASE_MOVE_OBSERVED = "MoveObserved"
PHASE_STABLE_IDLE = "StableIdle"

OUTCOME_COMPLETED = "completed"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_FAULT = "fault"
OUTCOME_DISCONNECTED = "disconnected"
OUTCOME_REJECTED = "rejected"


@dataclass(frozen=True)
class MotionWaitResult:
    outcome: str
    phase: str
    last_state: str
    seen_move: bool
    idle_streak: int = 0
    extensions_used: int = 0
    elapsed: float = 0.0
    detail: str = ""

    def __bool__(self) -> bool:
        return self.outcome == OUTCOME_COMPLETED


def is_probe_command(line: str) -> bool:
    return PROBE_COMMAND_MARKER in line.upper()


class MotionTracker:
    """Detection state for one motion wait.

    Each observed report is evaluated in a fixed order: fault check, then the
    move-start transition (which resets the idle streak), then the idle
    streak update, then the success checks.
    """

    def __init__(
        self,
        start_position: Position,
        idle_threshold: int = MOTION_IDLE_THRESHOLD_DEFAULT,
        allow_idle_without_seen_move: bool = False,
        epsilon: float = MOTION_POSITION_EPSILON,
    ):
        self.start_position = start_position
        self.idle_threshold = validate_threshold(idle_threshold, "idle_threshold")
        self.allow_idle_without_seen_move = allow_idle_without_seen_move
        self.epsilon = epsilon
        self.phase = PHASE_WAITING_FOR_MOVE_START
        self.seen_move = False
        self.idle_streak = 0

    def _deviates(self, position: Position) -> bool:
        return any(
            abs(now - start) > self.epsilon
            for now, start in zip(position, self.start_position)
        )

    def observe(self, status: MachineStatus) -> Optional[str]:
        """Feed one report; returns an outcome once the wait is decided."""
        if status.is_fault:
            return OUTCOME_FAULT
        if not self.seen_move and (status.is_moving or self._deviates(status.work_position)):
            self.seen_move = True
            self.phase = PHASE_MOVE_OBSERVED
            self.idle_streak = 0
        if status.is_idle:
            self.idle_streak += 1
        else:
            self.idle_streak = 0
        if self.idle_streak >= self.idle_threshold and (
            self.seen_move or self.allow_idle_without_seen_move
        ):
            self.phase = PHASE_STABLE_IDLE
            return OUTCOME_COMPLETED
        return None


class MotionCompleteDetector:
    """Waits until a commanded motion has physically finished.

    Args:
        poller: Status source used to refresh the snapshot
        snapshot: Shared machine status
        is_connected: Returns False once the transport is gone
        clock: Monotonic clock (seconds)
        sleep: Sleep function
    """

    def __init__(
        self,
        poller: StatusSource,
        snapshot: StatusSnapshot,
        timeout: float = MOTION_TIMEOUT_DEFAULT,
        idle_threshold: int = MOTION_IDLE_THRESHOLD_DEFAULT,
        max_extensions: int = MOTION_MAX_EXTENSIONS_DEFAULT,
        extension: float = MOTION_EXTENSION_DEFAULT,
        poll_interval: float = MOTION_POLL_INTERVAL,
        sleep_interval: float = MOTION_SLEEP_INTERVAL,
        epsilon: float = MOTION_POSITION_EPSILON,
        is_connected: Optional[Callable[[], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.poller = poller
        self.snapshot = snapshot
        self.timeout = validate_interval(timeout, 0.0, "motion_timeout")
        self.idle_threshold = validate_threshold(idle_threshold, "idle_threshold")
        self.max_extensions = max(0, int(max_extensions))
        self.extension = validate_interval(extension, 0.0, "motion_extension")
        self.poll_interval = validate_interval(poll_interval, 0.0, "poll_interval")
        self.sleep_interval = validate_interval(sleep_interval, 0.0, "sleep_interval")
        self.epsilon = epsilon
        self._is_connected = is_connected
        self._clock = clock
        self._sleep = sleep

    def wait_for_motion_complete(
        self,
        timeout: float | None = None,
        idle_threshold: int | None = None,
        allow_idle_without_seen_move: bool = False,
        start_position: Position | None = None,
        max_extensions: int | None = None,
        tag: str = "",
    ) -> MotionWaitResult:
        """Block until the current motion is finished, faulted or timed out.

        When the budget runs out while the machine still reports Run/Jog,
        the budget is extended (up to ``max_extensions`` rounds) and the
        same detection state carries on.

        Args:
            timeout: Overall budget in seconds
            idle_threshold: Consecutive Idle reports required after the move
            allow_idle_without_seen_move: Accept stable Idle even if no move
                was ever observed (probe moves can end before the first poll)
            start_position: Work position before the command was sent
            max_extensions: Extension rounds allowed while still moving
            tag: Label for log messages

        Returns:
            MotionWaitResult, truthy on completion
        """
        budget = self.timeout if timeout is None else validate_interval(timeout, 0.0, "timeout")
        rounds = self.max_extensions if max_extensions is None else max(0, int(max_extensions))
        if start_position is None:
            start_position = self.snapshot.current.work_position
        tracker = MotionTracker(
            start_position,
            self.idle_threshold if idle_threshold is None else idle_threshold,
            allow_idle_without_seen_move,
            self.epsilon,
        )
        label = f"[{tag}] " if tag else ""
        started = self._clock()
        deadline = started + budget
        next_poll = started
        extensions = 0
        last_generation = -1
        last_status = self.snapshot.current

        def finish(outcome: str, detail: str = "") -> MotionWaitResult:
            return MotionWaitResult(
                outcome=outcome,
                phase=tracker.phase,
                last_state=last_status.state,
                seen_move=tracker.seen_move,
                idle_streak=tracker.idle_streak,
                extensions_used=extensions,
                elapsed=self._clock() - started,
                detail=detail,
            )

        while True:
            now = self._clock()
            if now >= deadline:
                if last_status.is_moving and extensions < rounds:
                    extensions += 1
                    deadline += self.extension
                    logger.info(
                        f"{label}Still moving at timeout; extending by {self.extension:g}s "
                        f"({extensions}/{rounds})"
                    )
                    continue
                logger.warning(
                    f"{label}Motion wait timed out in {tracker.phase} "
                    f"(state={last_status.state}, idle_streak={tracker.idle_streak})"
                )
                return finish(OUTCOME_TIMEOUT)
            if self._is_connected is not None and not self._is_connected():
                logger.warning(f"{label}Transport lost during motion wait")
                return finish(OUTCOME_DISCONNECTED)
            if now >= next_poll:
                next_poll = now + self.poll_interval
                self.poller.request_once(min(self.poll_interval, max(0.0, deadline - now)))
                generation = self.snapshot.generation
                if generation != last_generation:
                    last_generation = generation
                    last_status = self.snapshot.current
                    outcome = tracker.observe(last_status)
                    if outcome == OUTCOME_FAULT:
                        logger.warning(f"{label}Motion wait aborted: machine in {last_status.state}")
                        return finish(OUTCOME_FAULT, last_status.raw_text)
                    if outcome == OUTCOME_COMPLETED:
                        logger.debug(f"{label}Motion complete (seen_move={tracker.seen_move})")
                        return finish(OUTCOME_COMPLETED)
            self._sleep(self.sleep_interval)

    def wait_until_idle(
        self,
        timeout: float,
        required_idle_count: int = MOTION_IDLE_THRESHOLD_DEFAULT,
    ) -> MotionWaitResult:
        """Wait for stable Idle without requiring any movement."""
        return self.wait_for_motion_complete(
            timeout=timeout,
            idle_threshold=required_idle_count,
            allow_idle_without_seen_move=True,
            max_extensions=0,
            tag="idle",
        )

    def execute_and_wait(
        self,
        channel,
        line: str,
        timeout: float | None = None,
        confirm_timeout: float | None = None,
        idle_threshold: int | None = None,
        allow_idle_without_seen_move: bool | None = None,
    ) -> MotionWaitResult:
        """Send ``line`` through a confirmation channel, then wait for motion.

        Probe commands (``G38.x``) accept stable Idle without a seen move
        unless told otherwise.

        Raises:
            TransportError: If the line cannot be written
        """
        if allow_idle_without_seen_move is None:
            allow_idle_without_seen_move = is_probe_command(line)
        start_position = self.snapshot.current.work_position
        result = channel.send_and_get_result(line, confirm_timeout)
        if not result.ok:
            return MotionWaitResult(
                outcome=OUTCOME_REJECTED,
                phase=PHASE_WAITING_FOR_MOVE_START,
                last_state=self.snapshot.current.state,
                seen_move=False,
                detail=result.reason,
            )
        return self.wait_for_motion_complete(
            timeout=timeout,
            idle_threshold=idle_threshold,
            allow_idle_without_seen_move=allow_idle_without_seen_move,
            start_position=start_position,
            tag=line.strip(),
        )
