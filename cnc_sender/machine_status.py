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

"""Machine status snapshot and GRBL status report parsing."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace

from .types import MachineState, Position

logger = logging.getLogger(__name__)

STATE_IDLE = "Idle"
STATE_RUN = "Run"
STATE_HOLD = "Hold"
STATE_JOG = "Jog"
STATE_ALARM = "Alarm"
STATE_UNKNOWN = "Unknown"

MOVING_STATES = (STATE_RUN, STATE_JOG)
FAULT_STATES = (STATE_ALARM, STATE_HOLD)

_KNOWN_STATES: dict[str, MachineState] = {
    "idle": STATE_IDLE,
    "run": STATE_RUN,
    "hold": STATE_HOLD,
    "jog": STATE_JOG,
    "alarm": STATE_ALARM,
}


@dataclass(frozen=True)
class MachineStatus:
    state: MachineState = STATE_UNKNOWN
    work_position: Position = (0.0, 0.0, 0.0)
    raw_text: str = ""
    machine_position: Position | None = None
    substate: str | None = None
    feed: float | None = None
    spindle: float | None = None
    received_at: float = 0.0

    @property
    def is_idle(self) -> bool:
        return self.state == STATE_IDLE

    @property
    def is_moving(self) -> bool:
        return self.state in MOVING_STATES

    @property
    def is_fault(self) -> bool:
        return self.state in FAULT_STATES


def normalize_state(raw_state: str) -> MachineState:
    """Map a GRBL state word (e.g. ``Hold:0``) to a state tag."""
    base = raw_state.split(":", 1)[0].strip().lower()
    return _KNOWN_STATES.get(base, STATE_UNKNOWN)


def _parse_axes(text: str) -> Position | None:
    parts = text.split(",")
    if len(parts) < 3:
        return None
    try:
        return float(parts[0]), float(parts[1]), float(parts[2])
    except ValueError:
        return None


def is_status_report(line: str) -> bool:
    line = line.strip()
    return line.startswith("<") and line.endswith(">")


def parse_status_report(
    line: str,
    wco: Position | None = None,
    previous: MachineStatus | None = None,
) -> tuple[MachineStatus, Position | None] | None:
    """Parse a ``<State|WPos:...|...>`` report.

    Work position comes from ``WPos`` when present, otherwise from
    ``MPos - WCO``. GRBL only sends ``WCO`` every few reports, so the last
    known offset is passed in and returned (updated if the report has one).

    Args:
        line: Raw status line
        wco: Last known work coordinate offset
        previous: Previous status, used when the report carries no position

    Returns:
        (status, wco) or None if the line is not a status report
    """
    if not is_status_report(line):
        return None
    raw = line.strip()
    parts = raw.strip("<>").split("|")
    state_word = parts[0] if parts else ""
    wpos: Position | None = None
    mpos: Position | None = None
    feed = spindle = None
    for part in parts[1:]:
        if part.startswith("WPos:"):
            wpos = _parse_axes(part[5:])
        elif part.startswith("MPos:"):
            mpos = _parse_axes(part[5:])
        elif part.startswith("WCO:"):
            parsed = _parse_axes(part[4:])
            if parsed is not None:
                wco = parsed
        elif part.startswith("FS:") or part.startswith("F:"):
            values = part.split(":", 1)[1].split(",")
            try:
                feed = float(values[0])
                if len(values) > 1:
                    spindle = float(values[1])
            except ValueError:
                logger.debug(f"Failed parsing feed field: {part}")
    if wpos is None and mpos is not None and wco is not None:
        wpos = (mpos[0] - wco[0], mpos[1] - wco[1], mpos[2] - wco[2])
    if wpos is None:
        # MPos-only reports before the first WCO still track motion.
        if mpos is not None:
            wpos = mpos
        elif previous is not None:
            wpos = previous.work_position
        else:
            wpos = (0.0, 0.0, 0.0)
    substate = state_word.split(":", 1)[1] if ":" in state_word else None
    status = MachineStatus(
        state=normalize_state(state_word),
        work_position=wpos,
        raw_text=raw,
        machine_position=mpos,
        substate=substate,
        feed=feed,
        spindle=spindle,
        received_at=time.monotonic(),
    )
    return status, wco


class StatusSnapshot:
    """Latest decoded machine status.

    Written only by the dispatch thread (``update``/``handle_line``); read by
    everyone. Each accepted report bumps a generation counter so waiters can
    block until a report newer than the one they saw arrives.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._status = MachineStatus()
        self._wco: Position | None = None
        self._generation = 0

    @property
    def current(self) -> MachineStatus:
        with self._cond:
            return self._status

    @property
    def generation(self) -> int:
        with self._cond:
            return self._generation

    def handle_line(self, line: str) -> bool:
        """Apply a status line. Returns True if the line was a status report."""
        with self._cond:
            parsed = parse_status_report(line, self._wco, self._status)
            if parsed is None:
                return False
            self._status, self._wco = parsed
            self._generation += 1
            self._cond.notify_all()
        return True

    def update(self, status: MachineStatus) -> None:
        with self._cond:
            self._status = status
            self._generation += 1
            self._cond.notify_all()

    def mark_unknown(self) -> None:
        """Drop to Unknown (e.g. after disconnect) keeping the last position."""
        with self._cond:
            self._status = replace(self._status, state=STATE_UNKNOWN, received_at=time.monotonic())
            self._generation += 1
            self._cond.notify_all()

    def wait_newer(self, generation: int, timeout: float) -> bool:
        """Block until a report newer than ``generation`` arrives.

        Returns:
            True if one arrived, False on timeout
        """
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while self._generation <= generation:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True
