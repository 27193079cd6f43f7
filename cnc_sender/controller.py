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

"""Machine context.

Wires the streaming core together around one transport and routes every
inbound line to the component that owns it. All routing happens on the
transport's receive thread.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Optional

from .confirmation import CommandConfirmationChannel, CommandResult
from .execution import ExecutionStateMachine
from .grbl_settings import GrblSettingsCache
from .machine_status import StatusSnapshot, is_status_report
from .motion import MotionCompleteDetector, MotionWaitResult
from .overrides import OverrideController
from .probe import ProbeContactCache, ProbeContactSample, read_contact
from .status_poller import CentralStatusPoller
from .transport import SerialTransport
from .types import TransportLike
from .utils.config import Settings
from .utils.constants import (
    BAUD_DEFAULT,
    CONFIRM_TIMEOUT_DEFAULT,
    ESTIMATE_DEFAULT_FEED,
    ESTIMATE_RAPID_RATE,
    MODAL_QUERY,
    MOTION_EXTENSION_DEFAULT,
    MOTION_IDLE_THRESHOLD_DEFAULT,
    MOTION_MAX_EXTENSIONS_DEFAULT,
    MOTION_TIMEOUT_DEFAULT,
    OVERRIDE_DEBOUNCE,
    PROBE_WAIT_DEFAULT,
    READY_TIMEOUT_DEFAULT,
    SETTINGS_QUERY,
    STATUS_POLL_DEFAULT,
    STATUS_QUERY_FAILURE_LIMIT_DEFAULT,
    STATUS_REQUEST_WAIT_DEFAULT,
)
from .utils.exceptions import NotConnectedError
from .utils.grbl_errors import describe_alarm
from .utils.logging_config import SERIAL_LOGGER_NAME

logger = logging.getLogger(__name__)
serial_log = logging.getLogger(SERIAL_LOGGER_NAME)


class MachineContext:
    """Owns one instance of every core component.

    Example:
        ctx = MachineContext.from_settings(settings)
        ctx.connect("/dev/ttyUSB0")
        ctx.execution.run(lines)
        ctx.execution.join()
        ctx.close()
    """

    def __init__(
        self,
        transport: Optional[TransportLike] = None,
        event_q: Optional[queue.Queue] = None,
        status_poll_interval: float = STATUS_POLL_DEFAULT,
        status_query_failure_limit: int = STATUS_QUERY_FAILURE_LIMIT_DEFAULT,
        confirm_timeout: float = CONFIRM_TIMEOUT_DEFAULT,
        ready_timeout: float = READY_TIMEOUT_DEFAULT,
        motion_timeout: float = MOTION_TIMEOUT_DEFAULT,
        idle_threshold: int = MOTION_IDLE_THRESHOLD_DEFAULT,
        max_extensions: int = MOTION_MAX_EXTENSIONS_DEFAULT,
        extension: float = MOTION_EXTENSION_DEFAULT,
        override_debounce: float = OVERRIDE_DEBOUNCE,
        default_feed: float = ESTIMATE_DEFAULT_FEED,
        rapid_rate: float = ESTIMATE_RAPID_RATE,
        probe_wait: float = PROBE_WAIT_DEFAULT,
    ):
        self.transport = transport if transport is not None else SerialTransport()
        self.event_q: queue.Queue = event_q if event_q is not None else queue.Queue()
        self.probe_wait = probe_wait
        self.ready_evt = threading.Event()
        self.banner: str | None = None
        self.modal_state: str | None = None
        self._line_buf = ""

        self.snapshot = StatusSnapshot()
        self.poller = CentralStatusPoller(
            self.transport, self.snapshot, status_poll_interval, status_query_failure_limit
        )
        self.channel = CommandConfirmationChannel(self.transport, self.poller, confirm_timeout)
        self.detector = MotionCompleteDetector(
            self.poller,
            self.snapshot,
            timeout=motion_timeout,
            idle_threshold=idle_threshold,
            max_extensions=max_extensions,
            extension=extension,
            is_connected=self.transport.is_connected,
        )
        self.probe_cache = ProbeContactCache()
        self.grbl_settings = GrblSettingsCache()
        self.overrides = OverrideController(self.transport, debounce=override_debounce)
        self.execution = ExecutionStateMachine(
            self.transport,
            self.channel,
            self.poller,
            self.snapshot,
            self.detector,
            overrides=self.overrides,
            event_q=self.event_q,
            confirm_timeout=confirm_timeout,
            ready_timeout=ready_timeout,
            motion_timeout=motion_timeout,
            default_feed=default_feed,
            rapid_rate=rapid_rate,
            firmware_settings=self.grbl_settings,
        )
        self.poller.set_modal_query(self._query_modal_state)
        self.transport.add_listener(self._on_fragment)
        if isinstance(self.transport, SerialTransport):
            self.transport.set_disconnect_handler(self._on_disconnect)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[TransportLike] = None,
        event_q: Optional[queue.Queue] = None,
    ) -> "MachineContext":
        """Build a context from persisted settings."""
        settings.validate()
        return cls(
            transport=transport,
            event_q=event_q,
            status_poll_interval=settings.get("status_poll_interval"),
            status_query_failure_limit=settings.get("status_query_failure_limit"),
            confirm_timeout=settings.get("confirm_timeout"),
            ready_timeout=settings.get("ready_timeout"),
            motion_timeout=settings.get("motion.timeout"),
            idle_threshold=settings.get("motion.idle_threshold"),
            max_extensions=settings.get("motion.max_extensions"),
            extension=settings.get("motion.extension"),
            override_debounce=settings.get("override_debounce"),
            default_feed=settings.get("estimate.default_feed"),
            rapid_rate=settings.get("estimate.rapid_rate"),
            probe_wait=settings.get("probe_wait"),
        )

    # ========================================================================
    # CONNECTION
    # ========================================================================

    def connect(self, port: str, baud: int = BAUD_DEFAULT, start_polling: bool = True) -> None:
        """Open the port and start status polling.

        Raises:
            SerialConnectionError: If the port cannot be opened
            NotConnectedError: If the transport cannot open ports itself
        """
        if not isinstance(self.transport, SerialTransport):
            raise NotConnectedError("Transport does not support connect()")
        self.ready_evt.clear()
        self.snapshot.mark_unknown()
        self.grbl_settings.clear()
        self.transport.connect(port, baud)
        if start_polling:
            self.poller.start()

    def disconnect(self) -> None:
        if self.execution.is_running:
            self.execution.emergency_stop()
        self.overrides.cancel()
        self.poller.stop()
        if isinstance(self.transport, SerialTransport):
            self.transport.disconnect()
        self.snapshot.mark_unknown()
        self.ready_evt.clear()

    def close(self) -> None:
        """Disconnect and detach from the transport."""
        self.disconnect()
        self.transport.remove_listener(self._on_fragment)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def wait_for_banner(self, timeout: float) -> bool:
        """True once the ``Grbl ...`` banner has been seen."""
        return self.ready_evt.wait(timeout)

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def send_command(self, line: str, timeout: float | None = None) -> CommandResult:
        """Send one manual line while holding the channel ownership token.

        Raises:
            TransportError: If the line cannot be written
        """
        with self.channel.ownership():
            return self.channel.send_and_get_result(line, timeout)

    def request_settings(self, timeout: float | None = None) -> bool:
        """Send ``$$`` and fill the firmware settings cache from the dump.

        Returns:
            True if the dump was acknowledged with ``ok``
        """
        result = self.send_command(SETTINGS_QUERY, timeout)
        if result.ok:
            logger.info(f"Read {len(self.grbl_settings)} firmware settings")
        else:
            logger.warning(f"Settings query failed: {result.reason}")
        return result.ok

    def execute_and_wait(self, line: str, timeout: float | None = None) -> MotionWaitResult:
        """Send a motion line and wait until the machine has physically finished it."""
        return self.detector.execute_and_wait(self.channel, line, timeout)

    def probe(self, line: str, timeout: float | None = None) -> Optional[ProbeContactSample]:
        """Run a ``G38.x`` move and return where it touched.

        Returns:
            The contact sample, or None if the move did not complete
        """
        since = time.monotonic()
        result = self.detector.execute_and_wait(self.channel, line, timeout)
        if not result:
            logger.warning(f"Probe move '{line}' ended with {result.outcome} ({result.detail})")
            return None
        return self.read_probe_contact(since)

    def read_probe_contact(self, since: float) -> Optional[ProbeContactSample]:
        return read_contact(self.probe_cache, self.snapshot, since, self.probe_wait)

    def refresh_status(self, max_wait: float = STATUS_REQUEST_WAIT_DEFAULT) -> bool:
        return self.poller.request_once(max_wait)

    def _query_modal_state(self) -> Any:
        return self.channel.try_send(MODAL_QUERY, STATUS_REQUEST_WAIT_DEFAULT)

    # ========================================================================
    # INBOUND ROUTING (receive thread)
    # ========================================================================

    def _on_fragment(self, fragment: str) -> None:
        self._line_buf += fragment
        while "\n" in self._line_buf:
            raw, self._line_buf = self._line_buf.split("\n", 1)
            line = raw.strip()
            if line:
                self._route_line(line)

    def _route_line(self, line: str) -> None:
        if is_status_report(line):
            if self.snapshot.handle_line(line):
                self.execution.on_status(self.snapshot.current)
            return
        serial_log.debug(f"RX {line}")
        lower = line.lower()
        if line.startswith("[PRB:"):
            self.probe_cache.handle_line(line)
        elif lower.startswith("alarm:"):
            message = describe_alarm(line)
            logger.warning(f"GRBL ALARM: {message}")
            self.event_q.put(("alarm", message))
            self.execution.on_alarm(message)
        elif lower.startswith("grbl"):
            self.banner = line
            self.overrides.reset()
            self.ready_evt.set()
            logger.info(f"Controller ready: {line}")
            self.event_q.put(("ready", line))
        elif line.startswith("[GC:"):
            self.modal_state = line[4:].rstrip("]")
        elif line.startswith("$"):
            self.grbl_settings.handle_line(line)

    def _on_disconnect(self, reason: str) -> None:
        self.snapshot.mark_unknown()
        self.ready_evt.clear()
        self.execution.on_disconnect(reason)
        self.event_q.put(("disconnected", reason))
