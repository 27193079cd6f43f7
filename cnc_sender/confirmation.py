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

"""Command confirmation channel.

GRBL answers every line with ``ok`` or ``error:<code>`` but the transport
only hands out free-form text fragments. This module turns that into a
send-one-line/await-terminal-result call. At most one command is pending per
channel.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from .status_poller import CentralStatusPoller
from .types import TransportLike
from .utils.constants import CONFIRM_TIMEOUT_DEFAULT
from .utils.exceptions import FirmwareRejected, ProtocolTimeout
from .utils.grbl_errors import describe_error, parse_error_code
from .utils.validation import validate_interval

logger = logging.getLogger(__name__)

# Re-check interval while a wait is being extended.
_EXTEND_SLICE = 0.1


@dataclass(frozen=True)
class CommandResult:
    line: str
    ok: bool
    response: str | None = None
    error_code: int | None = None
    timed_out: bool = False
    elapsed: float = 0.0

    def __bool__(self) -> bool:
        return self.ok

    @property
    def reason(self) -> str:
        if self.ok:
            return "ok"
        if self.timed_out:
            return f"no reply within {self.elapsed:.3f}s"
        if self.response:
            return describe_error(self.response)
        return "not sent"


def is_terminal_line(line: str) -> bool:
    """True for the replies that finish a command (``ok`` / ``error:N``)."""
    text = line.strip().lower()
    return text == "ok" or text.startswith("error:")


class PendingCommand:
    """One line awaiting its terminal reply.

    Resolved exactly once: either by the first terminal line or by expiry.
    """

    def __init__(self, line: str):
        self.line = line
        self.sent_at: float | None = None
        self.response: str | None = None
        self._buffer = ""
        self._lock = threading.Lock()
        self._resolved = False
        self._done = threading.Event()

    @property
    def resolved(self) -> bool:
        with self._lock:
            return self._resolved

    def feed(self, fragment: str) -> bool:
        """Consume an inbound fragment; returns True once resolved."""
        with self._lock:
            if self._resolved:
                return True
            self._buffer += fragment
            while "\n" in self._buffer:
                raw, self._buffer = self._buffer.split("\n", 1)
                text = raw.strip()
                if text and is_terminal_line(text):
                    self._resolved = True
                    self.response = text
                    self._done.set()
                    return True
        return False

    def wait(self, timeout: float) -> bool:
        return self._done.wait(timeout)

    def expire(self) -> bool:
        """Mark as timed out. Returns False if a reply won the race."""
        with self._lock:
            if self._resolved:
                return False
            self._resolved = True
            self._done.set()
            return True


class CommandConfirmationChannel:
    """Send one line and wait for ``ok`` / ``error:N``.

    Example:
        channel = CommandConfirmationChannel(transport, poller)
        with channel.ownership():
            channel.send_with_confirmation("G0 X1", timeout=1.5)
    """

    def __init__(
        self,
        transport: TransportLike,
        poller: Optional[CentralStatusPoller] = None,
        timeout: float = CONFIRM_TIMEOUT_DEFAULT,
    ):
        self.transport = transport
        self.poller = poller
        self.timeout = validate_interval(timeout, 0.0, "confirm_timeout")
        self._channel_lock = threading.Lock()
        self._pending: Optional[PendingCommand] = None

    @property
    def busy(self) -> bool:
        return self._pending is not None

    @contextmanager
    def ownership(self) -> Iterator["CommandConfirmationChannel"]:
        """Exclusive use of inbound replies.

        Pauses the free-running poller for the duration; the poller is
        restored on every exit path.
        """
        if self.poller is None:
            yield self
            return
        with self.poller.paused():
            yield self

    def send_with_confirmation(self, line: str, timeout: float | None = None) -> bool:
        """Send ``line`` and wait for its terminal reply.

        Returns:
            True on ``ok``; False on ``error:N`` or timeout

        Raises:
            TransportError: If the line cannot be written
        """
        return self.send_and_get_result(line, timeout).ok

    def send_and_get_result(
        self,
        line: str,
        timeout: float | None = None,
        extend_while: Optional[Callable[[], bool]] = None,
    ) -> CommandResult:
        """Like ``send_with_confirmation`` but returns the full result.

        Args:
            line: Line to send
            timeout: Seconds to wait for the reply
            extend_while: Keeps waiting past the timeout while this returns
                True (e.g. the machine is in feed hold)

        Raises:
            TransportError: If the line cannot be written
        """
        if timeout is None:
            timeout = self.timeout
        started = time.monotonic()
        if not self._channel_lock.acquire(timeout=max(0.0, timeout)):
            logger.warning(f"Confirmation channel busy, dropped: {line.strip()}")
            return CommandResult(line=line, ok=False, timed_out=True,
                                 elapsed=time.monotonic() - started)
        try:
            remaining = max(0.0, timeout - (time.monotonic() - started))
            return self._exchange(line, remaining, started, extend_while)
        finally:
            self._channel_lock.release()

    def try_send(self, line: str, timeout: float | None = None) -> Optional[CommandResult]:
        """Send only if no other command is pending; None when busy."""
        if timeout is None:
            timeout = self.timeout
        if not self._channel_lock.acquire(blocking=False):
            return None
        try:
            return self._exchange(line, timeout, time.monotonic())
        finally:
            self._channel_lock.release()

    def send_or_raise(self, line: str, timeout: float | None = None) -> CommandResult:
        """Send and raise on anything but ``ok``.

        Raises:
            ProtocolTimeout: If no reply arrived in time
            FirmwareRejected: If firmware answered ``error:N``
            TransportError: If the line cannot be written
        """
        result = self.send_and_get_result(line, timeout)
        if result.ok:
            return result
        if result.timed_out:
            raise ProtocolTimeout(f"No reply to '{line.strip()}'", timeout)
        raise FirmwareRejected(
            f"'{line.strip()}' rejected: {result.reason}",
            error_code=result.error_code,
            line=line,
        )

    def _exchange(
        self,
        line: str,
        timeout: float,
        started: float,
        extend_while: Optional[Callable[[], bool]] = None,
    ) -> CommandResult:
        pending = PendingCommand(line)

        def listener(fragment: str) -> None:
            if pending.feed(fragment):
                self.transport.remove_listener(listener)

        # Subscribe before sending so a fast reply cannot be missed.
        self._pending = pending
        self.transport.add_listener(listener)
        try:
            self.transport.send_line(line)
            pending.sent_at = time.monotonic()
            resolved = pending.wait(timeout)
            while not resolved and extend_while is not None and extend_while():
                resolved = pending.wait(_EXTEND_SLICE)
            if not resolved and pending.expire():
                elapsed = time.monotonic() - started
                logger.warning(f"No reply to '{line.strip()}' within {timeout:.3f}s")
                return CommandResult(line=line, ok=False, timed_out=True, elapsed=elapsed)
        finally:
            self.transport.remove_listener(listener)
            self._pending = None

        elapsed = time.monotonic() - started
        response = pending.response or ""
        if response.lower() == "ok":
            return CommandResult(line=line, ok=True, response=response, elapsed=elapsed)
        code = parse_error_code(response)
        logger.error(f"GRBL error for '{line.strip()}': {describe_error(response)}")
        return CommandResult(
            line=line,
            ok=False,
            response=response,
            error_code=code,
            elapsed=elapsed,
        )
