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

"""Firmware ``$N=value`` settings and the machine-travel fit check."""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from .gcode_parser import GCodeSegment
from .utils.constants import FIT_TOLERANCE, SETTING_MAX_TRAVEL, SETTING_RAPID_RATES

logger = logging.getLogger(__name__)

_AXES = ("x", "y", "z")


def parse_setting_line(line: str) -> tuple[int, str] | None:
    """``$130=300.000`` -> ``(130, "300.000")``; None for anything else."""
    s = line.strip()
    if not (s.startswith("$") and "=" in s):
        return None
    key, value = s.split("=", 1)
    try:
        number = int(key[1:])
    except ValueError:
        return None
    return number, value.strip()


class GrblSettingsCache:
    """Last value seen for each firmware setting.

    Fed from the receive thread with every ``$N=value`` line, whether it came
    from a ``$$`` dump or from echoing a single setting.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._raw: dict[int, str] = {}

    def handle_line(self, line: str) -> bool:
        parsed = parse_setting_line(line)
        if parsed is None:
            return False
        number, value = parsed
        with self._lock:
            self._raw[number] = value
        logger.debug(f"GRBL setting ${number}={value}")
        return True

    def raw(self, number: int) -> str | None:
        with self._lock:
            return self._raw.get(number)

    def get(self, number: int, default: float | None = None) -> float | None:
        raw = self.raw(number)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError:
            return default

    def clear(self) -> None:
        with self._lock:
            self._raw.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._raw)

    def max_travel(self) -> dict[str, float]:
        """Known positive ``$130``-``$132`` values keyed by axis."""
        travel: dict[str, float] = {}
        for axis, number in zip(_AXES, SETTING_MAX_TRAVEL):
            value = self.get(number)
            if value is not None and value > 0:
                travel[axis] = value
        return travel

    def rapid_rates(self) -> tuple[float, float, float] | None:
        """``($110, $111, $112)`` if all three are known and positive."""
        rx, ry, rz = (self.get(number, 0.0) or 0.0 for number in SETTING_RAPID_RATES)
        if rx <= 0 or ry <= 0 or rz <= 0:
            return None
        return rx, ry, rz

    def rapid_rate(self) -> float | None:
        """Planar rapid rate for estimates: the slower of X and Y."""
        rates = self.rapid_rates()
        if rates is None:
            return None
        return min(rates[0], rates[1])


def program_bounds(segments: Iterable[GCodeSegment]) -> dict[str, tuple[float, float]]:
    """(min, max) per axis in millimetres over every segment endpoint."""
    bounds: dict[str, tuple[float, float]] = {}
    for seg in segments:
        for point in (seg.start_mm(), seg.end_mm()):
            for axis, value in zip(_AXES, point):
                low, high = bounds.get(axis, (value, value))
                bounds[axis] = (min(low, value), max(high, value))
    return bounds


def check_program_fits(
    segments: Iterable[GCodeSegment],
    travel: dict[str, float],
) -> list[str]:
    """Axes whose program span exceeds machine travel.

    Returns:
        One message per offending axis; empty when the program fits or no
        travel is known
    """
    failures: list[str] = []
    bounds = program_bounds(segments)
    for axis, number in zip(_AXES, SETTING_MAX_TRAVEL):
        if axis not in travel or axis not in bounds:
            continue
        low, high = bounds[axis]
        span = high - low
        if span > travel[axis] + FIT_TOLERANCE:
            failures.append(
                f"{axis.upper()} span {span:.3f} mm exceeds machine travel "
                f"${number}={travel[axis]:.3f} mm"
            )
    return failures
