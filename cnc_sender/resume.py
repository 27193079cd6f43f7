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

"""Modal state recovery for resume-from-line.

Resuming in the middle of a program skips the lines that set units,
distance mode, work offsets, feed and spindle. The preamble rebuilt here
restores that state before the tail is streamed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .gcode_parser import clean_gcode_line
from .types import Position
from .utils.constants import WORD_PAT

_MODAL_GROUPS: dict[str, tuple[float, ...]] = {
    "units": (20.0, 21.0),
    "distance": (90.0, 91.0),
    "plane": (17.0, 18.0, 19.0),
    "arc_mode": (90.1, 91.1),
    "feed_mode": (93.0, 94.0),
    "coord": (54.0, 55.0, 56.0, 57.0, 58.0, 59.0, 59.1, 59.2, 59.3),
}
_G92_CODES = (92.0, 92.1, 92.2, 92.3)


@dataclass
class ResumeModalState:
    units: str | None = None
    distance: str | None = None
    plane: str | None = None
    arc_mode: str | None = None
    feed_mode: str | None = None
    coord: str | None = None
    spindle: int | None = None
    spindle_speed: float | None = None
    coolant: int | None = None
    feed: float | None = None
    has_g92: bool = False

    def modal_lines(self) -> list[str]:
        return [
            item
            for item in (self.units, self.distance, self.plane,
                         self.arc_mode, self.feed_mode, self.coord)
            if item
        ]

    def feed_lines(self) -> list[str]:
        return [f"F{self.feed:g}"] if self.feed is not None else []

    def spindle_lines(self) -> list[str]:
        lines = []
        if self.spindle in (3, 4):
            if self.spindle_speed is not None:
                lines.append(f"M{self.spindle} S{self.spindle_speed:g}")
            else:
                lines.append(f"M{self.spindle}")
        elif self.spindle == 5:
            lines.append("M5")
        if self.coolant is not None:
            lines.append(f"M{self.coolant}")
        return lines

    def preamble(self) -> list[str]:
        return self.modal_lines() + self.feed_lines() + self.spindle_lines()


def _group_for(code: float) -> str | None:
    for group, codes in _MODAL_GROUPS.items():
        if any(abs(code - c) < 1e-3 for c in codes):
            return group
    return None


def collect_modal_state(lines: Sequence[str], stop_index: int) -> ResumeModalState:
    """Modal state in effect just before ``stop_index``."""
    state = ResumeModalState()
    for raw in lines[: max(0, stop_index)]:
        s = clean_gcode_line(raw).upper()
        if not s:
            continue
        for w, val in WORD_PAT.findall(s):
            try:
                number = float(val)
            except ValueError:
                continue
            if w == "G":
                if any(abs(number - c) < 1e-3 for c in _G92_CODES):
                    state.has_g92 = True
                    continue
                group = _group_for(number)
                if group:
                    setattr(state, group, f"G{number:g}")
            elif w == "M":
                code = int(number)
                if code in (3, 4, 5):
                    state.spindle = code
                elif code in (7, 8, 9):
                    state.coolant = code
            elif w == "F":
                state.feed = number
            elif w == "S":
                state.spindle_speed = number
    return state


def build_resume_preamble(
    lines: Sequence[str],
    stop_index: int,
    target: Position | None = None,
    safe_z: float | None = None,
    plunge_feed: float | None = None,
) -> tuple[list[str], bool]:
    """Preamble lines for resuming at ``stop_index``.

    Units, plane and work offset always go out first, so a safe approach to
    ``target`` (when ``safe_z`` is given) runs in the program's own units and
    coordinate system. The spindle is started before the plunge; distance
    mode and feed are restored after it.

    Returns:
        (preamble, has_g92); ``has_g92`` warns that the skipped head
        changed G92 offsets, which cannot be replayed safely.
    """
    state = collect_modal_state(lines, stop_index)
    if target is None or safe_z is None:
        return state.preamble(), state.has_g92
    approach = safe_approach(target, safe_z, plunge_feed)
    preamble = state.modal_lines() + approach[:-1] + state.spindle_lines() + approach[-1:]
    if state.distance and state.distance != "G90":
        preamble.append(state.distance)
    return preamble + state.feed_lines(), state.has_g92


def safe_approach(target: Position, safe_z: float, plunge_feed: float | None = None) -> list[str]:
    """Absolute moves to the resume point: up to safe Z, across, then down."""
    x, y, z = target
    plunge = f"G1 Z{z:.3f} F{plunge_feed:g}" if plunge_feed else f"G0 Z{z:.3f}"
    return [
        "G90",
        f"G0 Z{safe_z:.3f}",
        f"G0 X{x:.3f} Y{y:.3f}",
        plunge,
    ]
