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

"""Central status poller.

Keeps the machine status fresh without flooding the transport. One-off
requests reuse a recent report or join a query that is already in flight;
the optional free-running thread polls at the smallest interval any caller
has subscribed to.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from .machine_status import StatusSnapshot
from .types import TransportLike
from .utils.constants import (
    RT_STATUS,
    STATUS_MODAL_QUERY_EVERY,
    STATUS_POLL_DEFAULT,
    STATUS_POLL_INTERVAL_MIN,
    STATUS_QUERY_BACKOFF_BASE,
    STATUS_QUERY_BACKOFF_MAX,
    STATUS_QUERY_FAILURE_LIMIT_DEFAULT,
    STATUS_QUERY_FAILURE_LIMIT_MAX,
    STATUS_QUERY_FAILURE_LIMIT_MIN,
    STATUS_REQUEST_WAIT_DEFAULT,
    THREAD_JOIN_TIMEOUT,
)
from .utils.exceptions import InvalidRangeError, TransportError
from .utils.validation import validate_interval

logger = logging.getLogger(__name__)

# A query with no report after this long no longer absorbs new requests.
_IN_FLIGHT_STALE = 1.0


class IntervalSubscription:
    """Scope that keeps a faster poll interval alive until closed."""

    def __init__(self, poller: "CentralStatusPoller", interval: float):
        self._poller = poller
        self.interval = interval
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._poller._drop_subscription(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class CentralStatusPoller:
    """Rate-limited, coalesced status queries.

    Example:
        poller = CentralStatusPoller(transport, snapshot)
        poller.start()
        with poller.subscribe_minimum_interval(0.05):
            poller.request_once(0.3)
    """

    def __init__(
        self,
        transport: TransportLike,
        snapshot: StatusSnapshot,
        interval: float = STATUS_POLL_DEFAULT,
        failure_limit: int = STATUS_QUERY_FAILURE_LIMIT_DEFAULT,
    ):
        self.transport = transport
        self.snapshot = snapshot
        self._interval = validate_interval(interval, STATUS_POLL_INTERVAL_MIN, "status_poll_interval")
        self._failure_limit = STATUS_QUERY_FAILURE_LIMIT_DEFAULT
        self.set_failure_limit(failure_limit)
        self._lock = threading.Lock()
        self._subscriptions: list[IntervalSubscription] = []
        self._pause_depth = 0
        self._in_flight_generation: Optional[int] = None
        self._in_flight_sent = 0.0
        self._failures = 0
        self._modal_query: Optional[Callable[[], Any]] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()
        self._wake_evt = threading.Event()

    # ========================================================================
    # CONFIGURATION
    # ========================================================================

    @property
    def interval(self) -> float:
        return self._interval

    def set_interval(self, interval: float) -> None:
        """Set the configured poll interval (seconds)."""
        interval = validate_interval(interval, STATUS_POLL_INTERVAL_MIN, "status_poll_interval")
        with self._lock:
            self._interval = interval
        self._wake_evt.set()
        logger.debug(f"Status poll interval set to {interval}")

    def set_failure_limit(self, limit: int) -> None:
        limit = int(limit)
        if not (STATUS_QUERY_FAILURE_LIMIT_MIN <= limit <= STATUS_QUERY_FAILURE_LIMIT_MAX):
            raise InvalidRangeError(limit, STATUS_QUERY_FAILURE_LIMIT_MIN, STATUS_QUERY_FAILURE_LIMIT_MAX)
        self._failure_limit = limit

    def set_modal_query(self, query: Optional[Callable[[], Any]]) -> None:
        """Install the callable used for the periodic $G refresh."""
        self._modal_query = query

    def effective_interval(self) -> float:
        """Smallest of the configured and subscribed intervals, floored."""
        with self._lock:
            candidates = [self._interval] + [s.interval for s in self._subscriptions]
        return max(STATUS_POLL_INTERVAL_MIN, min(candidates))

    def subscribe_minimum_interval(self, interval: float) -> IntervalSubscription:
        """Request polling at least every ``interval`` seconds until closed."""
        interval = validate_interval(interval, 0.0, "interval")
        sub = IntervalSubscription(self, interval)
        with self._lock:
            self._subscriptions.append(sub)
        self._wake_evt.set()
        return sub

    def _drop_subscription(self, sub: IntervalSubscription) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(sub)
            except ValueError:
                return
        self._wake_evt.set()

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Suspend free-running polling for the duration of the block."""
        with self._lock:
            self._pause_depth += 1
        try:
            yield
        finally:
            with self._lock:
                self._pause_depth -= 1

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._pause_depth > 0

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    # ========================================================================
    # ONE-OFF REQUESTS
    # ========================================================================

    def request_once(self, max_wait: float | None = None) -> bool:
        """Make sure the snapshot is fresh.

        Reuses a report younger than the configured interval. Otherwise sends
        ``?`` (or joins a query already in flight) and waits for the next
        report.

        Args:
            max_wait: Longest time to wait for a report (seconds)

        Returns:
            True if the snapshot is fresh, False on timeout or transport error
        """
        if max_wait is None:
            max_wait = STATUS_REQUEST_WAIT_DEFAULT
        if not self.transport.is_connected():
            return False
        now = time.monotonic()
        status = self.snapshot.current
        if status.received_at and (now - status.received_at) < self._interval:
            return True
        generation = self._issue_query(now)
        if generation is None:
            return False
        fresh = self.snapshot.wait_newer(generation, max_wait)
        if not fresh:
            logger.debug(f"Status request timed out after {max_wait:.3f}s")
        return fresh

    def _issue_query(self, now: float) -> Optional[int]:
        """Send ``?`` unless a query is already outstanding.

        Returns:
            The generation to wait past, or None if sending failed
        """
        with self._lock:
            generation = self.snapshot.generation
            if (
                self._in_flight_generation is not None
                and self._in_flight_generation == generation
                and (now - self._in_flight_sent) < _IN_FLIGHT_STALE
            ):
                return generation
            try:
                self.transport.send_realtime(RT_STATUS)
            except TransportError as e:
                logger.warning(f"Status query failed, keeping previous status: {e}")
                self._in_flight_generation = None
                return None
            self._in_flight_generation = generation
            self._in_flight_sent = now
            return generation

    # ========================================================================
    # FREE-RUNNING MODE
    # ========================================================================

    def start(self) -> None:
        """Start free-running polling. No-op if already running."""
        if self.is_running:
            return
        self._stop_evt = threading.Event()
        self._failures = 0
        self._thread = threading.Thread(
            target=self._status_loop,
            args=(self._stop_evt,),
            daemon=True,
            name="GRBL-Status",
        )
        self._thread.start()
        logger.debug("Status poller started")

    def stop(self) -> None:
        """Stop free-running polling."""
        self._stop_evt.set()
        self._wake_evt.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=THREAD_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not terminate")
        self._thread = None

    def _status_loop(self, stop_evt: threading.Event) -> None:
        logger.debug("Status thread started")
        tick = 0
        try:
            while not stop_evt.is_set():
                if self.transport.is_connected() and not self.is_paused:
                    if self._issue_query(time.monotonic()) is None:
                        self._failures += 1
                        logger.warning(
                            f"[status] Query failed ({self._failures}/{self._failure_limit})"
                        )
                        if self._failures >= self._failure_limit:
                            logger.error("Status polling stopped after repeated query failures")
                            break
                        backoff = min(
                            STATUS_QUERY_BACKOFF_MAX,
                            STATUS_QUERY_BACKOFF_BASE * self._failures,
                        )
                        if stop_evt.wait(backoff):
                            break
                        continue
                    self._failures = 0
                    tick += 1
                    if self._modal_query is not None and tick % STATUS_MODAL_QUERY_EVERY == 0:
                        self._modal_query()

                self._wake_evt.clear()
                self._wake_evt.wait(self.effective_interval())
        except Exception as e:
            logger.error(f"Status thread error: {e}", exc_info=True)
        finally:
            logger.debug("Status thread stopped")
