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

"""Segment parser and distance estimator.

Turns program lines into geometric segments (rapid, linear, arc) while
carrying modal state across lines, and computes segment lengths for the
execution time estimates.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set

from .types import MovementKind, Position
from .utils.constants import (
    ARC_EPSILON,
    DISPLAY_DECIMALS,
    MM_PER_INCH,
    PAREN_COMMENT_PAT,
    WORD_PAT,
)
from .utils.exceptions import GeometryDegenerate

logger = logging.getLogger(__name__)

KIND_RAPID: MovementKind = "Rapid"
KIND_LINEAR: MovementKind = "Linear"
KIND_ARC: MovementKind = "Arc"

_DISPLAY_WORDS = frozenset("XYZIJKFS")

# G-codes that take axis words without moving along the modal motion.
_NON_MOTION_AXIS_CODES = (4.0, 10.0, 28.0, 28.1, 30.0, 30.1, 53.0, 92.0, 92.1, 92.2, 92.3)

# In-plane axis indices (u, v), helical axis index and the offset words.
_PLANES = {
    "G17": ((0, 1), 2, ("I", "J")),
    "G18": ((2, 0), 1, ("K", "I")),
    "G19": ((1, 2), 0, ("J", "K")),
}


@dataclass(frozen=True)
class GCodeSegment:
    start: Position
    end: Position
    kind: MovementKind
    feed_rate: float
    line_number: int
    original_code: str = ""
    i: float | None = None
    j: float | None = None
    k: float | None = None
    r: float | None = None
    clockwise: bool = False
    plane: str = "G17"
    inches: bool = False

    @property
    def is_arc(self) -> bool:
        return self.kind == KIND_ARC

    @property
    def mm_per_unit(self) -> float:
        return MM_PER_INCH if self.inches else 1.0

    def start_mm(self) -> Position:
        return _scale(self.start, self.mm_per_unit)

    def end_mm(self) -> Position:
        return _scale(self.end, self.mm_per_unit)


def clean_gcode_line(line: str) -> str:
    """Strip comments and whitespace."""
    line = line.replace("\ufeff", "")
    line = PAREN_COMMENT_PAT.sub("", line)
    if ";" in line:
        line = line.split(";", 1)[0]
    line = line.strip()
    if line.startswith("%"):
        return ""
    return line


def format_gcode_line(line: str, decimals: int = DISPLAY_DECIMALS) -> str:
    """Round coordinate, offset, feed and speed words for display."""

    def _round(match) -> str:
        word, value = match.group(1), match.group(2)
        if word not in _DISPLAY_WORDS:
            return match.group(0)
        text = f"{float(value):.{decimals}f}".rstrip("0").rstrip(".")
        if text in ("-0", ""):
            text = "0"
        return f"{word}{text}"

    return WORD_PAT.sub(_round, clean_gcode_line(line).upper())


def _scale(point: Position, factor: float) -> Position:
    return (point[0] * factor, point[1] * factor, point[2] * factor)


def _planar(segment: GCodeSegment) -> tuple[float, float, float, float, float]:
    """(u0, v0, u1, v1, dw) in the segment's arc plane."""
    (u_idx, v_idx), w_idx, _ = _PLANES.get(segment.plane, _PLANES["G17"])
    s, e = segment.start, segment.end
    return s[u_idx], s[v_idx], e[u_idx], e[v_idx], e[w_idx] - s[w_idx]


def _linear_distance(segment: GCodeSegment) -> float:
    return math.dist(segment.start, segment.end)


def _arc_length_from_radius(segment: GCodeSegment) -> float:
    u0, v0, u1, v1, dw = _planar(segment)
    radius = segment.r or 0.0
    r_abs = abs(radius)
    if r_abs < ARC_EPSILON:
        raise GeometryDegenerate("arc radius is zero", segment.line_number)
    chord = math.hypot(u1 - u0, v1 - v0)
    if chord < ARC_EPSILON:
        return math.hypot(2 * math.pi * r_abs, dw)
    if chord > 2 * r_abs + ARC_EPSILON:
        raise GeometryDegenerate(
            f"chord {chord:.4f} exceeds diameter {2 * r_abs:.4f}", segment.line_number
        )
    angle = 2 * math.asin(min(1.0, chord / (2 * r_abs)))
    if radius < 0:
        angle = 2 * math.pi - angle
    return math.hypot(r_abs * angle, dw)


def _arc_length_from_center(segment: GCodeSegment) -> float:
    u0, v0, u1, v1, dw = _planar(segment)
    _, _, (u_word, v_word) = _PLANES.get(segment.plane, _PLANES["G17"])
    offsets = {"I": segment.i or 0.0, "J": segment.j or 0.0, "K": segment.k or 0.0}
    cu = u0 + offsets[u_word]
    cv = v0 + offsets[v_word]
    radius = math.hypot(u0 - cu, v0 - cv)
    if radius < ARC_EPSILON:
        raise GeometryDegenerate("arc radius is zero", segment.line_number)
    if math.hypot(u1 - u0, v1 - v0) < ARC_EPSILON:
        sweep = 2 * math.pi
    else:
        start_ang = math.atan2(v0 - cv, u0 - cu)
        end_ang = math.atan2(v1 - cv, u1 - cu)
        # CW sweeps run through decreasing angles, CCW through increasing.
        sweep = (start_ang - end_ang) if segment.clockwise else (end_ang - start_ang)
        while sweep <= 0:
            sweep += 2 * math.pi
    return math.hypot(radius * sweep, dw)


def calculate_segment_distance(segment: GCodeSegment) -> float:
    """Path length of a segment.

    Arcs use the R form when R is present, else the I/J/K center form.
    Degenerate arcs fall back to the straight-line distance.
    """
    if not segment.is_arc:
        return _linear_distance(segment)
    try:
        if segment.r is not None:
            return _arc_length_from_radius(segment)
        return _arc_length_from_center(segment)
    except GeometryDegenerate as exc:
        logger.warning(
            f"Degenerate arc on line {segment.line_number + 1} ({exc}); using linear distance"
        )
        return _linear_distance(segment)


def total_distance(segments: Iterable[GCodeSegment]) -> float:
    return sum(calculate_segment_distance(seg) for seg in segments)


def segment_distance_mm(segment: GCodeSegment) -> float:
    """Path length in millimetres, whatever units the program used."""
    return calculate_segment_distance(segment) * segment.mm_per_unit


class SegmentParser:
    """Stateful G-code to segment converter.

    Modal state (position, G90/G91, G20/G21, feed, motion mode, plane) carries across
    calls until ``reset()``.
    """

    def __init__(self):
        self._segments: List[GCodeSegment] = []
        self.reset()

    def reset(self) -> None:
        """Clear modal state and segments for a fresh program."""
        self.position: Position = (0.0, 0.0, 0.0)
        self.absolute = True
        self.inches = False
        self.feed_rate = 0.0
        self.motion: Optional[float] = None
        self.plane = "G17"
        self._segments = []

    @property
    def segments(self) -> Sequence[GCodeSegment]:
        return tuple(self._segments)

    def parse_lines(self, lines: Iterable[str]) -> List[GCodeSegment]:
        """Parse a whole program; line numbers are 0-based indices."""
        produced = []
        for idx, raw in enumerate(lines):
            segment = self.parse_line(raw, idx)
            if segment is not None:
                produced.append(segment)
        return produced

    def parse_line(self, raw: str, line_number: int) -> Optional[GCodeSegment]:
        """Parse one line, updating modal state.

        Returns:
            The segment produced by the line, or None if it does not move
        """
        text = clean_gcode_line(raw).upper()
        if not text:
            return None
        words = WORD_PAT.findall(text)
        if not words:
            return None

        g_codes: Set[float] = set()
        values: dict[str, float] = {}
        for w, val in words:
            try:
                number = float(val)
            except ValueError:
                continue
            if w == "G":
                g_codes.add(round(number, 3))
            else:
                values[w] = number

        def has_g(code: float) -> bool:
            return round(code, 3) in g_codes

        if has_g(90):
            self.absolute = True
        if has_g(91):
            self.absolute = False
        if has_g(20) and not self.inches:
            self.position = _scale(self.position, 1.0 / MM_PER_INCH)
            self.inches = True
        if has_g(21) and self.inches:
            self.position = _scale(self.position, MM_PER_INCH)
            self.inches = False
        for plane in _PLANES:
            if has_g(float(plane[1:])):
                self.plane = plane
        if "F" in values:
            self.feed_rate = values["F"]

        for code in (0, 1, 2, 3, 38.2, 38.3, 38.4, 38.5):
            if has_g(code):
                self.motion = float(code)
        if any(has_g(code) for code in _NON_MOTION_AXIS_CODES):
            return None

        has_axis = any(axis in values for axis in ("X", "Y", "Z"))
        has_arc_words = any(word in values for word in ("I", "J", "K", "R"))
        if self.motion is None:
            return None
        is_arc = self.motion in (2.0, 3.0)
        if not has_axis and not (is_arc and has_arc_words):
            return None

        start = self.position
        coords = list(start)
        for idx, axis in enumerate(("X", "Y", "Z")):
            if axis in values:
                coords[idx] = values[axis] if self.absolute else coords[idx] + values[axis]
        end: Position = (coords[0], coords[1], coords[2])

        if self.motion == 0.0:
            kind = KIND_RAPID
        elif is_arc:
            kind = KIND_ARC
        else:
            kind = KIND_LINEAR

        segment = GCodeSegment(
            start=start,
            end=end,
            kind=kind,
            feed_rate=self.feed_rate,
            line_number=line_number,
            original_code=raw.strip(),
            i=values.get("I") if is_arc else None,
            j=values.get("J") if is_arc else None,
            k=values.get("K") if is_arc else None,
            r=values.get("R") if is_arc else None,
            clockwise=self.motion == 2.0,
            plane=self.plane,
            inches=self.inches,
        )
        self.position = end
        self._segments.append(segment)
        return segment
