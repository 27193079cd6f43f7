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

"""Serial transport for GRBL controllers.

Owns the pyserial port and the receive thread. The receive thread is the
single dispatch context of the core: every inbound fragment is delivered to
the registered listeners on that thread, strictly in arrival order.
"""

from __future__ import annotations

import codecs
import logging
import threading
import time
from typing import Callable, List, Optional

import serial
from serial.tools import list_ports

from .types import FragmentListener
from .utils.constants import (
    BAUD_DEFAULT,
    SERIAL_CONNECT_DELAY,
    SERIAL_READ_CHUNK,
    SERIAL_TIMEOUT,
    SERIAL_WRITE_TIMEOUT,
    THREAD_JOIN_TIMEOUT,
)
from .utils.exceptions import (
    NotConnectedError,
    SerialConnectionError,
    SerialWriteError,
)
from .utils.logging_config import SERIAL_LOGGER_NAME
from .utils.validation import validate_baud_rate, validate_port_name

logger = logging.getLogger(__name__)
serial_log = logging.getLogger(SERIAL_LOGGER_NAME)


class SerialTransport:
    """Line/real-time transport over a serial port.

    Example:
        with SerialTransport() as transport:
            transport.add_listener(print)
            transport.connect("/dev/ttyUSB0")
            transport.send_line("$G")
    """

    def __init__(self, on_disconnect: Optional[Callable[[str], None]] = None):
        """Initialize the transport.

        Args:
            on_disconnect: Called with a reason when the port drops unexpectedly
        """
        self.ser: Optional[serial.Serial] = None
        self._on_disconnect = on_disconnect
        self._rx_thread: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()
        self._write_lock = threading.Lock()
        self._listeners_lock = threading.Lock()
        self._listeners: List[FragmentListener] = []
        self.port: str | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    # ========================================================================
    # CONNECTION
    # ========================================================================

    @staticmethod
    def list_ports() -> List[str]:
        """Get list of available serial ports.

        Returns:
            List of port device names
        """
        return [p.device for p in list_ports.comports()]

    def connect(self, port: str, baud: int = BAUD_DEFAULT) -> None:
        """Open the serial port and start the receive thread.

        Args:
            port: Serial port name (e.g., 'COM3' or '/dev/ttyUSB0')
            baud: Baud rate (default: 115200)

        Raises:
            SerialConnectionError: If the port cannot be opened
            InvalidParameterError: If parameters are invalid
        """
        port = validate_port_name(port)
        baud = validate_baud_rate(baud)

        if self.is_connected():
            self.disconnect()

        self._stop_evt = threading.Event()
        try:
            self.ser = serial.Serial(
                port,
                baudrate=baud,
                timeout=SERIAL_TIMEOUT,
                write_timeout=SERIAL_WRITE_TIMEOUT,
            )
        except serial.SerialException as e:
            self.ser = None
            raise SerialConnectionError(f"Failed to connect to {port}: {e}") from e
        except (OSError, ValueError) as e:
            self.ser = None
            raise SerialConnectionError(f"Unexpected error connecting to {port}: {e}") from e

        # Give GRBL time to reset (some boards reset on connection)
        time.sleep(SERIAL_CONNECT_DELAY)
        try:
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
        except serial.SerialException as e:
            logger.warning(f"Failed to reset buffers: {e}")

        self.port = port
        self._rx_thread = threading.Thread(
            target=self._rx_loop,
            args=(self._stop_evt,),
            daemon=True,
            name="GRBL-RX",
        )
        self._rx_thread.start()
        logger.info(f"Connected to {port} at {baud} baud")

    def disconnect(self) -> None:
        """Stop the receive thread and close the port. Idempotent."""
        self._stop_evt.set()
        ser = self.ser
        self.ser = None
        if ser is not None:
            try:
                ser.close()
                logger.info("Serial port closed")
            except serial.SerialException as e:
                logger.error(f"Error closing serial port: {e}")
        thread = self._rx_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=THREAD_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not terminate")
        self._rx_thread = None
        self.port = None

    def is_connected(self) -> bool:
        """True if the serial port is open."""
        ser = self.ser
        return ser is not None and ser.is_open

    def set_disconnect_handler(self, handler: Optional[Callable[[str], None]]) -> None:
        self._on_disconnect = handler

    # ========================================================================
    # LISTENERS
    # ========================================================================

    def add_listener(self, listener: FragmentListener) -> None:
        """Register a callback for inbound text fragments."""
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: FragmentListener) -> None:
        with self._listeners_lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

    def _dispatch(self, fragment: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(fragment)
            except Exception as exc:
                logger.error(f"RX listener failed: {exc}", exc_info=True)

    # ========================================================================
    # WRITES
    # ========================================================================

    def send_line(self, line: str) -> None:
        """Send one newline-terminated line.

        Raises:
            NotConnectedError: If the port is closed
            SerialWriteError: If the write fails
        """
        payload = (line.rstrip("\r\n") + "\n").encode("ascii", errors="replace")
        self._write(payload)
        serial_log.debug(f"TX {line.strip()}")

    def send_realtime(self, command: bytes) -> None:
        """Send real-time command byte(s) without a newline.

        Raises:
            NotConnectedError: If the port is closed
            SerialWriteError: If the write fails
        """
        self._write(command)
        serial_log.debug(f"TX RT {command!r}")

    def _write(self, payload: bytes) -> None:
        ser = self.ser
        if ser is None or not ser.is_open:
            raise NotConnectedError("Not connected to GRBL")
        try:
            with self._write_lock:
                total = 0
                length = len(payload)
                while total < length:
                    written = ser.write(payload[total:])
                    if not written:
                        raise serial.SerialTimeoutException("Write returned 0 bytes")
                    total += written
        except serial.SerialTimeoutException as e:
            raise SerialWriteError(f"Write timeout: {e}") from e
        except serial.SerialException as e:
            raise SerialWriteError(f"Serial write error: {e}") from e

    # ========================================================================
    # RECEIVE THREAD
    # ========================================================================

    def _rx_loop(self, stop_evt: threading.Event) -> None:
        logger.debug("RX thread started")
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while not stop_evt.is_set():
                ser = self.ser
                if ser is None:
                    break
                try:
                    chunk = ser.read(SERIAL_READ_CHUNK)
                except serial.SerialException as e:
                    if stop_evt.is_set():
                        break
                    logger.error(f"Serial read error: {e}")
                    self._signal_disconnect(f"Serial read error: {e}")
                    break
                if not chunk:
                    continue
                text = decoder.decode(chunk)
                if text:
                    self._dispatch(text)
        except Exception as e:
            logger.error(f"RX thread error: {e}", exc_info=True)
            self._signal_disconnect(f"RX thread error: {e}")
        finally:
            logger.debug("RX thread stopped")

    def _signal_disconnect(self, reason: str) -> None:
        """Close the port after an unexpected failure and notify the owner."""
        self._stop_evt.set()
        ser = self.ser
        self.ser = None
        if ser is not None:
            try:
                ser.close()
            except serial.SerialException as e:
                logger.debug(f"Close after failure raised: {e}")
        logger.warning(f"[disconnect] {reason}")
        if self._on_disconnect is not None:
            try:
                self._on_disconnect(reason)
            except Exception as exc:
                logger.error(f"Disconnect callback failed: {exc}", exc_info=True)
