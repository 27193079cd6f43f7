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

"""Custom exceptions for CNC Sender.

This module defines specific exception types for the failure classes of the
streaming core: transport loss, protocol timeouts, firmware rejections,
machine faults and degenerate geometry.
"""

from typing import Any, Optional


class CncSenderException(Exception):
    """Base exception for all CNC Sender errors."""
    pass


# ============================================================================
# TRANSPORT EXCEPTIONS
# ============================================================================

class TransportError(CncSenderException):
    """Transport failure (disconnect or write failure).

    Fatal to the current operation; the process survives.
    """
    pass


class SerialConnectionError(TransportError):
    """Failed to open the serial port."""
    pass


class SerialDisconnectError(TransportError):
    """Unexpected disconnection from the serial port."""
    pass


class SerialWriteError(TransportError):
    """Failed to write data to the serial port."""
    pass


class NotConnectedError(TransportError):
    """Attempted a send while the transport is closed."""
    pass


# ============================================================================
# PROTOCOL EXCEPTIONS
# ============================================================================

class ProtocolTimeout(CncSenderException):
    """No terminal or status line arrived in time.

    Recoverable; the caller decides between retry and abort.
    """

    def __init__(self, message: str, timeout: Optional[float] = None):
        super().__init__(message)
        self.timeout = timeout


class FirmwareRejected(CncSenderException):
    """Firmware answered a line with ``error:<code>``."""

    def __init__(
        self,
        message: str,
        error_code: Optional[int] = None,
        line_index: Optional[int] = None,
        line: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.line_index = line_index
        self.line = line


class MachineFault(CncSenderException):
    """Machine entered Alarm or an unexpected Hold.

    Requires operator acknowledgement before any resume.
    """

    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message)
        self.state = state


# ============================================================================
# G-CODE EXCEPTIONS
# ============================================================================

class GcodeException(CncSenderException):
    """Base exception for G-code related errors."""
    pass


class GeometryDegenerate(GcodeException):
    """Arc parameters do not describe a valid arc.

    The parser logs this and falls back to linear distance.
    """

    def __init__(self, message: str, line_number: Optional[int] = None):
        super().__init__(message)
        self.line_number = line_number


# ============================================================================
# EXECUTION EXCEPTIONS
# ============================================================================

class ExecutionError(CncSenderException):
    """Execution request rejected by a precondition."""
    pass


# ============================================================================
# SETTINGS EXCEPTIONS
# ============================================================================

class SettingsException(CncSenderException):
    """Base exception for settings errors."""
    pass


class SettingsLoadError(SettingsException):
    """Failed to load settings file."""
    pass


class SettingsSaveError(SettingsException):
    """Failed to save settings file."""
    pass


class SettingsValidationError(SettingsException):
    """Settings validation failed."""
    pass


# ============================================================================
# VALIDATION EXCEPTIONS
# ============================================================================

class ValidationException(CncSenderException):
    """Base exception for validation errors."""
    pass


class InvalidParameterError(ValidationException):
    """Invalid parameter value."""

    def __init__(self, parameter_name: str, value: Any, reason: Optional[str] = None):
        self.parameter_name = parameter_name
        self.value = value
        self.reason = reason

        message = f"Invalid value for '{parameter_name}': {value}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class InvalidRangeError(ValidationException):
    """Value out of valid range."""

    def __init__(self, value, min_val, max_val):
        self.value = value
        self.min_val = min_val
        self.max_val = max_val

        message = f"Value {value} out of range [{min_val}, {max_val}]"
        super().__init__(message)
