"""Validation utilities for CNC Sender.

This module provides validation functions for the arguments accepted by the
streaming core (ports, timing, overrides, line indices).
"""

from typing import Optional

from .constants import OVERRIDE_MAX, OVERRIDE_MIN, VALID_BAUD_RATES
from .exceptions import InvalidParameterError, InvalidRangeError


def validate_feed_rate(feed: float) -> float:
    """Validate feed rate value.

    Args:
        feed: Feed rate in mm/min or inches/min

    Returns:
        The validated feed rate

    Raises:
        InvalidParameterError: If feed rate is invalid
    """
    try:
        feed = float(feed)
    except (TypeError, ValueError):
        raise InvalidParameterError("feed_rate", feed, "must be numeric")

    if feed <= 0:
        raise InvalidParameterError("feed_rate", feed, "must be positive")

    return feed


def validate_port_name(port: str) -> str:
    """Validate serial port name.

    Args:
        port: Serial port name (e.g., "COM3" or "/dev/ttyUSB0")

    Returns:
        The validated port name

    Raises:
        InvalidParameterError: If port name is invalid
    """
    if not port or not isinstance(port, str):
        raise InvalidParameterError("port", port, "must be non-empty string")

    port = port.strip()
    if not port:
        raise InvalidParameterError("port", port, "must be non-empty")

    return port


def validate_baud_rate(baud: int) -> int:
    """Validate baud rate.

    Args:
        baud: Baud rate value

    Returns:
        The validated baud rate

    Raises:
        InvalidParameterError: If baud rate is invalid
    """
    try:
        baud = int(baud)
    except (TypeError, ValueError):
        raise InvalidParameterError("baud_rate", baud, "must be integer")

    if baud not in VALID_BAUD_RATES:
        raise InvalidParameterError(
            "baud_rate",
            baud,
            f"must be one of {list(VALID_BAUD_RATES)}"
        )

    return baud


def validate_interval(
    interval: float,
    min_val: float = 0.0,
    name: str = "interval",
) -> float:
    """Validate time interval.

    Args:
        interval: Time interval in seconds
        min_val: Minimum allowed value (default 0.0)
        name: Parameter name used in the error

    Returns:
        The validated interval

    Raises:
        InvalidParameterError: If interval is invalid
    """
    try:
        interval = float(interval)
    except (TypeError, ValueError):
        raise InvalidParameterError(name, interval, "must be numeric")

    if interval < min_val:
        raise InvalidParameterError(
            name,
            interval,
            f"must be >= {min_val}"
        )

    return interval


def validate_line_index(
    index: int,
    max_index: Optional[int] = None
) -> int:
    """Validate G-code line index.

    Args:
        index: Line index (0-based)
        max_index: Maximum valid index (optional)

    Returns:
        The validated index

    Raises:
        InvalidParameterError: If index is invalid
        InvalidRangeError: If index is beyond max_index
    """
    try:
        index = int(index)
    except (TypeError, ValueError):
        raise InvalidParameterError("line_index", index, "must be integer")

    if index < 0:
        raise InvalidParameterError("line_index", index, "must be non-negative")

    if max_index is not None and index > max_index:
        raise InvalidRangeError(index, 0, max_index)

    return index


def validate_threshold(value: int, name: str = "threshold") -> int:
    """Validate a positive count such as an idle-streak threshold."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise InvalidParameterError(name, value, "must be integer")
    if value < 1:
        raise InvalidParameterError(name, value, "must be >= 1")
    return value


def clamp_override(percent: float) -> int:
    """Clamp an override percentage into the firmware range.

    Args:
        percent: Requested percentage

    Returns:
        Integer percentage within [OVERRIDE_MIN, OVERRIDE_MAX]

    Raises:
        InvalidParameterError: If percent is not numeric
    """
    try:
        value = float(percent)
    except (TypeError, ValueError):
        raise InvalidParameterError("override_percent", percent, "must be numeric")
    value = max(OVERRIDE_MIN, min(OVERRIDE_MAX, value))
    return int(round(value))
