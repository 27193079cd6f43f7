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

"""Probe contact samples.

GRBL reports the machine position at the moment of probe contact as
``[PRB:x,y,z:flag]``. Samples are cached with their arrival time so a reader
can ask for "the first contact after T" and never pick up a stale report
left over from a previous probe.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from .machine_status import StatusSnapshot
from .utils.constants import PROBE_CACHE_SIZE, PROBE_WAIT_DEFAULT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeContactSample:
    x: float
    y: float
    z: float
    timestamp: float
    ok: bool = True
    raw: str = ""
    from_status: bool = False

    @property
    def position(self) -> tuple[float, float, float]:
        return self.x, self.y, self.z


def parse_probe_report(raw: str, timestamp: float | None = None) -> ProbeContactSample | None:
    line = raw.strip()
    if not (line.startswith("[PRB:") and line.endswith("]")):
        return None
    payload = line[5:-1]
    if ":" not in payload:
        return None
    coords_part, ok_part = payload.rsplit(":", 1)
    coords = coords_part.split(",")
    if len(coords) < 3:
        return None
    try:
        x = float(coords[0])
        y = float(coords[1])
        z = float(coords[2])
    except ValueError:
        return None
    if timestamp is None:
        timestamp = time.monotonic()
    return ProbeContactSample(x=x, y=y, z=z, timestamp=timestamp,
                              ok=ok_part.strip() == "1", raw=line)


class ProbeContactCache:
    """Recent probe contact samples, oldest first."""

    def __init__(self, size: int = PROBE_CACHE_SIZE):
        self._cond = threading.Condition()
        self._samples: deque[ProbeContactSample] = deque(maxlen=size)
        self._callbacks: list[Callable[[ProbeContactSample], None]] = []

    def register_callback(self, callback: Callable[[ProbeContactSample], None]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ProbeContactSample], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return

    def handle_line(self, raw: str) -> bool:
        """Record a PRB report line. Returns True if the line was one."""
        sample = parse_probe_report(raw)
        if sample is None:
            return False
        self.record(sample)
        return True

    def record(self, sample: ProbeContactSample) -> None:
        with self._cond:
            self._samples.append(sample)
            self._cond.notify_all()
        logger.info(f"Probe contact at X{sample.x:.3f} Y{sample.y:.3f} Z{sample.z:.3f} ok={sample.ok}")
        for callback in list(self._callbacks):
            try:
                callback(sample)
            except Exception as exc:
                logger.error(f"Probe callback failed: {exc}", exc_info=True)

    def latest(self) -> ProbeContactSample | None:
        with self._cond:
            return self._samples[-1] if self._samples else None

    def first_after(self, since: float) -> ProbeContactSample | None:
        """First sample recorded strictly after ``since``."""
        with self._cond:
            return self._first_after_locked(since)

    def _first_after_locked(self, since: float) -> ProbeContactSample | None:
        for sample in self._samples:
            if sample.timestamp > since:
                return sample
        return None

    def wait_after(self, since: float, timeout: float) -> ProbeContactSample | None:
        """Wait up to ``timeout`` for a sample newer than ``since``."""
        deadline = time.monotonic() + max(0.0, timeout)
        with self._cond:
            while True:
                sample = self._first_after_locked(since)
                if sample is not None:
                    return sample
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def clear(self) -> None:
        with self._cond:
            self._samples.clear()


def read_contact(
    cache: ProbeContactCache,
    snapshot: StatusSnapshot,
    since: float,
    timeout: float = PROBE_WAIT_DEFAULT,
) -> Optional[ProbeContactSample]:
    """Contact point of the probe move started at ``since``.

    Falls back to the current work position when no PRB report arrives in
    time. The fallback sample has ``from_status`` set.
    """
    sample = cache.wait_after(since, timeout)
    if sample is not None:
        return sample
    status = snapshot.current
    if not status.raw_text:
        return None
    x, y, z = status.work_position
    logger.warning("No PRB report received; using WPos as the contact point")
    return ProbeContactSample(x=x, y=y, z=z, timestamp=time.monotonic(),
                              ok=True, raw=status.raw_text, from_status=True)
