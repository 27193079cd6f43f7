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

"""Execution time and progress estimates."""

from __future__ import annotations

import threading
import time
from typing import Callable, Iterable, Mapping, Sequence

from .gcode_parser import KIND_RAPID, GCodeSegment, segment_distance_mm
from .utils.constants import (
    ESTIMATE_DEFAULT_FEED,
    ESTIMATE_RAPID_RATE,
    OVERRIDE_DEFAULT,
)


def segment_minutes(
    segment: GCodeSegment,
    default_feed: float = ESTIMATE_DEFAULT_FEED,
    rapid_rate: float = ESTIMATE_RAPID_RATE,
) -> float:
    """Minutes for one segment; rates are mm/min, inch feeds are converted."""
    dist = segment_distance_mm(segment)
    if dist <= 0:
        return 0.0
    if segment.kind == KIND_RAPID:
        rate = rapid_rate
    elif segment.feed_rate > 0:
        rate = segment.feed_rate * segment.mm_per_unit
    else:
        rate = default_feed
    return dist / rate


def build_time_map(
    segments: Iterable[GCodeSegment],
    default_feed: float = ESTIMATE_DEFAULT_FEED,
    rapid_rate: float = ESTIMATE_RAPID_RATE,
) -> dict[int, float]:
    """Estimated minutes per program line index."""
    time_map: dict[int, float] = {}
    for seg in segments:
        minutes = segment_minutes(seg, default_feed, rapid_rate)
        time_map[seg.line_number] = time_map.get(seg.line_number, 0.0) + minutes
    return time_map


def apply_feed_override(minutes: float, feed_percent: float) -> float:
    """Scale a duration by the feed override (150% runs in 2/3 the time)."""
    if feed_percent <= 0:
        return minutes
    return minutes * OVERRIDE_DEFAULT / feed_percent


def progress_percent(last_completed: int, total_lines: int) -> float:
    if total_lines <= 0 or last_completed < 0:
        return 0.0
    return min(100.0, (last_completed + 1) * 100.0 / total_lines)


def format_duration(seconds: float) -> str:
    total = int(round(max(0.0, seconds)))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def unique_layers(segments: Iterable[GCodeSegment]) -> list[float]:
    """Sorted Z heights at which cutting moves run in the XY plane."""
    heights: set[float] = set()
    for seg in segments:
        if seg.kind == KIND_RAPID:
            continue
        if abs(seg.start[2] - seg.end[2]) < 1e-6:
            heights.add(round(seg.end[2], 4))
    return sorted(heights, reverse=True)


def layer_for_line(
    segments: Sequence[GCodeSegment],
    layers: Sequence[float],
    line_index: int,
) -> int | None:
    """1-based layer number active at ``line_index``, or None before any cut."""
    z = None
    for seg in segments:
        if seg.line_number > line_index:
            break
        z = round(seg.end[2], 4)
    if z is None or z not in layers:
        return None
    return layers.index(z) + 1


class ExecutionEstimate:
    """Elapsed/remaining time for a run.

    Time spent in hold is excluded from elapsed time.
    """

    def __init__(
        self,
        time_map: Mapping[int, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = threading.Lock()
        self._clock = clock
        self.time_map: dict[int, float] = dict(time_map or {})
        self._start_ts: float | None = None
        self._paused_at: float | None = None
        self._pause_total = 0.0
        self._end_ts: float | None = None

    def set_time_map(self, time_map: Mapping[int, float]) -> None:
        with self._lock:
            self.time_map = dict(time_map)

    @property
    def total_minutes(self) -> float:
        return sum(self.time_map.values())

    def start(self) -> None:
        with self._lock:
            self._start_ts = self._clock()
            self._paused_at = None
            self._pause_total = 0.0
            self._end_ts = None

    def pause(self) -> None:
        with self._lock:
            if self._start_ts is not None and self._paused_at is None:
                self._paused_at = self._clock()

    def resume(self) -> None:
        with self._lock:
            if self._paused_at is not None:
                self._pause_total += max(0.0, self._clock() - self._paused_at)
                self._paused_at = None

    def finish(self) -> None:
        with self._lock:
            if self._start_ts is not None and self._end_ts is None:
                self._end_ts = self._clock()

    def reset(self) -> None:
        with self._lock:
            self._start_ts = None
            self._paused_at = None
            self._pause_total = 0.0
            self._end_ts = None

    def elapsed_seconds(self) -> float:
        with self._lock:
            if self._start_ts is None:
                return 0.0
            now = self._end_ts if self._end_ts is not None else self._clock()
            paused_total = self._pause_total
            if self._paused_at is not None:
                paused_total += max(0.0, now - self._paused_at)
            return max(0.0, now - self._start_ts - paused_total)

    def total_seconds(self, feed_percent: float = OVERRIDE_DEFAULT) -> float:
        return apply_feed_override(self.total_minutes, feed_percent) * 60.0

    def remaining_seconds(self, last_completed: int, feed_percent: float = OVERRIDE_DEFAULT) -> float:
        """Estimated time for the lines after ``last_completed``."""
        minutes = sum(m for idx, m in self.time_map.items() if idx > last_completed)
        return apply_feed_override(minutes, feed_percent) * 60.0
