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

"""Feed and spindle overrides.

Override requests arrive in bursts (slider drags, repeated key presses).
They are debounced: each request re-arms a short timer and only the newest
target is applied when it fires. Applying is single in-flight; a request
that lands during an apply re-arms the timer instead of queueing.
"""

from __future__ import annotations

import functools
import logging
import threading
from typing import Callable, Optional

from .types import TransportLike
from .utils.constants import (
    OVERRIDE_DEBOUNCE,
    OVERRIDE_DEFAULT,
    RT_FO_MINUS_1,
    RT_FO_MINUS_10,
    RT_FO_PLUS_1,
    RT_FO_PLUS_10,
    RT_FO_RESET,
    RT_SO_MINUS_1,
    RT_SO_MINUS_10,
    RT_SO_PLUS_1,
    RT_SO_PLUS_10,
    RT_SO_RESET,
)
from .utils.exceptions import TransportError
from .utils.validation import clamp_override, validate_interval

logger = logging.getLogger(__name__)

FEED = "feed"
SPINDLE = "spindle"

_COMMANDS = {
    FEED: (RT_FO_RESET, RT_FO_PLUS_10, RT_FO_MINUS_10, RT_FO_PLUS_1, RT_FO_MINUS_1),
    SPINDLE: (RT_SO_RESET, RT_SO_PLUS_10, RT_SO_MINUS_10, RT_SO_PLUS_1, RT_SO_MINUS_1),
}


def override_commands(kind: str, current: int, target: int) -> list[bytes]:
    """Real-time bytes that move an override from ``current`` to ``target``."""
    reset, plus10, minus10, plus1, minus1 = _COMMANDS[kind]
    if target == current:
        return []
    if target == OVERRIDE_DEFAULT:
        return [reset]
    delta = target - current
    out: list[bytes] = []
    while delta >= 10:
        out.append(plus10)
        delta -= 10
    while delta <= -10:
        out.append(minus10)
        delta += 10
    while delta > 0:
        out.append(plus1)
        delta -= 1
    while delta < 0:
        out.append(minus1)
        delta += 1
    return out


class OverrideController:
    """Debounced, single in-flight override application."""

    def __init__(
        self,
        transport: TransportLike,
        debounce: float = OVERRIDE_DEBOUNCE,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        on_applied: Optional[Callable[[str, int], None]] = None,
    ):
        self.transport = transport
        self.debounce = validate_interval(debounce, 0.0, "override_debounce")
        self._timer_factory = timer_factory
        self._on_applied = on_applied
        self._lock = threading.Lock()
        self._apply_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._timer_seq = 0
        self._targets = {FEED: OVERRIDE_DEFAULT, SPINDLE: OVERRIDE_DEFAULT}
        self._applied = {FEED: OVERRIDE_DEFAULT, SPINDLE: OVERRIDE_DEFAULT}

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    @property
    def feed_percent(self) -> int:
        with self._lock:
            return self._applied[FEED]

    @property
    def spindle_percent(self) -> int:
        with self._lock:
            return self._applied[SPINDLE]

    def pending(self, kind: str) -> int:
        with self._lock:
            return self._targets[kind]

    @property
    def is_pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    # ========================================================================
    # REQUESTS
    # ========================================================================

    def request_feed(self, percent: float) -> int:
        """Queue a feed override target; returns the clamped value."""
        return self._request(FEED, percent)

    def request_spindle(self, percent: float) -> int:
        """Queue a spindle override target; returns the clamped value."""
        return self._request(SPINDLE, percent)

    def _request(self, kind: str, percent: float) -> int:
        target = clamp_override(percent)
        with self._lock:
            self._targets[kind] = target
            self._arm_locked()
        return target

    def _arm_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer_seq += 1
        timer = self._timer_factory(self.debounce, functools.partial(self._fire, self._timer_seq))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def cancel(self) -> None:
        """Drop any pending (not yet applied) request."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._targets = dict(self._applied)

    def reset(self) -> None:
        """Forget overrides after a soft reset (firmware restores 100%)."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._targets = {FEED: OVERRIDE_DEFAULT, SPINDLE: OVERRIDE_DEFAULT}
            self._applied = {FEED: OVERRIDE_DEFAULT, SPINDLE: OVERRIDE_DEFAULT}

    def flush(self) -> None:
        """Apply the newest targets now instead of waiting for the timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._apply()

    # ========================================================================
    # APPLY
    # ========================================================================

    def _fire(self, seq: int) -> None:
        with self._lock:
            if seq != self._timer_seq or self._timer is None:
                # Superseded while waiting to run; the newer timer applies.
                return
            self._timer = None
        if not self._apply_lock.acquire(blocking=False):
            # An apply is running; try again after another debounce window.
            with self._lock:
                if self._timer is None:
                    self._arm_locked()
            return
        try:
            self._apply_targets()
        finally:
            self._apply_lock.release()

    def _apply(self) -> None:
        with self._apply_lock:
            self._apply_targets()

    def _apply_targets(self) -> None:
        for kind in (FEED, SPINDLE):
            with self._lock:
                target = self._targets[kind]
                current = self._applied[kind]
            commands = override_commands(kind, current, target)
            if not commands:
                continue
            if not self.transport.is_connected():
                logger.warning(f"Cannot apply {kind} override - not connected")
                continue
            try:
                for command in commands:
                    self.transport.send_realtime(command)
            except TransportError as e:
                logger.warning(f"Failed to apply {kind} override {target}%: {e}")
                continue
            with self._lock:
                self._applied[kind] = target
            logger.info(f"{kind.capitalize()} override set to {target}%")
            if self._on_applied is not None:
                self._on_applied(kind, target)
