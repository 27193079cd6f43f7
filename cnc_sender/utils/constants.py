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

"""Constants and tunable defaults for CNC Sender.

This module centralizes protocol bytes, timing defaults and geometry
tolerances used across the streaming core.
"""

import re

# ============================================================================
# SERIAL COMMUNICATION CONSTANTS
# ============================================================================

BAUD_DEFAULT = 115200
"""Default baud rate for GRBL serial communication."""

VALID_BAUD_RATES = (9600, 19200, 38400, 57600, 115200, 230400)
"""Baud rates accepted by the transport."""

SERIAL_CONNECT_DELAY = 0.25
"""Seconds to wait after opening the port (boards reset on connect)."""

SERIAL_TIMEOUT = 0.1
"""Serial read timeout (seconds)."""

SERIAL_WRITE_TIMEOUT = 0.5
"""Serial write timeout (seconds)."""

SERIAL_READ_CHUNK = 256
"""Bytes requested per serial read."""

THREAD_JOIN_TIMEOUT = 0.5
"""Seconds to wait for worker threads on disconnect."""

# ============================================================================
# STATUS POLLING
# ============================================================================

STATUS_POLL_DEFAULT = 0.2
"""Default interval (seconds) between status queries."""

STATUS_POLL_INTERVAL_MIN = 0.025
"""Floor for the effective poll interval, including subscriptions."""

STATUS_REQUEST_WAIT_DEFAULT = 0.5
"""Default max wait (seconds) for a one-off status request."""

STATUS_MODAL_QUERY_EVERY = 3
"""Free-running ticks between $G modal-state queries."""

STATUS_QUERY_FAILURE_LIMIT_DEFAULT = 3
"""Consecutive status query failures before the poller stops."""

STATUS_QUERY_FAILURE_LIMIT_MIN = 1
"""Minimum allowed status query failure limit."""

STATUS_QUERY_FAILURE_LIMIT_MAX = 10
"""Maximum allowed status query failure limit."""

STATUS_QUERY_BACKOFF_BASE = 0.2
"""Backoff step (seconds) per consecutive status query failure."""

STATUS_QUERY_BACKOFF_MAX = 1.0
"""Upper bound on status query backoff (seconds)."""

# ============================================================================
# COMMAND CONFIRMATION
# ============================================================================

CONFIRM_TIMEOUT_DEFAULT = 5.0
"""Default wait (seconds) for an ok/error reply to one line."""

# ============================================================================
# MOTION-COMPLETE DETECTION
# ============================================================================

MOTION_TIMEOUT_DEFAULT = 15.0
"""Overall budget (seconds) for a motion-complete wait."""

MOTION_POLL_INTERVAL = 0.2
"""Seconds between status polls while waiting for motion."""

MOTION_SLEEP_INTERVAL = 0.05
"""Sleep (seconds) between motion checks."""

MOTION_POSITION_EPSILON = 0.005
"""Position deviation (work units) that counts as observed movement."""

MOTION_IDLE_THRESHOLD_DEFAULT = 2
"""Consecutive Idle reports that declare a move finished."""

MOTION_MAX_EXTENSIONS_DEFAULT = 2
"""Auto-extension rounds granted while the machine is still moving."""

MOTION_EXTENSION_DEFAULT = 20.0
"""Seconds added per auto-extension round."""

READY_TIMEOUT_DEFAULT = 4.0
"""Seconds to wait for the controller to settle before a run."""

STOP_IDLE_TIMEOUT = 15.0
"""Seconds to wait for stable Idle during the stop sequence."""

PROBE_COMMAND_MARKER = "G38."
"""Substring that marks a probing command."""

# ============================================================================
# PROBE REPORTS
# ============================================================================

PROBE_WAIT_DEFAULT = 0.8
"""Seconds to wait for a fresh PRB report before falling back to WPos."""

PROBE_CACHE_SIZE = 32
"""Number of probe samples retained."""

# ============================================================================
# OVERRIDES
# ============================================================================

OVERRIDE_MIN = 10
"""Lowest override percentage."""

OVERRIDE_MAX = 200
"""Highest override percentage."""

OVERRIDE_DEFAULT = 100
"""Neutral override percentage."""

OVERRIDE_DEBOUNCE = 0.15
"""Debounce window (seconds) for override requests."""

# ============================================================================
# ESTIMATES
# ============================================================================

ESTIMATE_DEFAULT_FEED = 500.0
"""Feed (units/min) assumed when a segment has no usable feed."""

ESTIMATE_RAPID_RATE = 5000.0
"""Rate (units/min) assumed for G0 moves."""

# ============================================================================
# GRBL REAL-TIME COMMAND BYTES
# ============================================================================

RT_RESET = b"\x18"
"""Ctrl-X soft reset."""

RT_STATUS = b"?"
"""Status report query."""

RT_HOLD = b"!"
"""Feed hold (pause)."""

RT_RESUME = b"~"
"""Cycle start / resume."""

RT_JOG_CANCEL = b"\x85"
"""Cancel jog command."""

# Feed override commands
RT_FO_RESET = b"\x90"
RT_FO_PLUS_10 = b"\x91"
RT_FO_MINUS_10 = b"\x92"
RT_FO_PLUS_1 = b"\x93"
RT_FO_MINUS_1 = b"\x94"

# Spindle override commands
RT_SO_RESET = b"\x99"
RT_SO_PLUS_10 = b"\x9A"
RT_SO_MINUS_10 = b"\x9B"
RT_SO_PLUS_1 = b"\x9C"
RT_SO_MINUS_1 = b"\x9D"

MODAL_QUERY = "$G"
"""Parser state query."""

UNLOCK_COMMAND = "$X"
"""Alarm unlock."""

SETTINGS_QUERY = "$$"
"""Dump of firmware $N=value settings."""

# ============================================================================
# FIRMWARE SETTINGS
# ============================================================================

SETTING_RAPID_RATES = (110, 111, 112)
"""X, Y, Z max rates (mm/min)."""

SETTING_MAX_TRAVEL = (130, 131, 132)
"""X, Y, Z max travel (mm)."""

FIT_TOLERANCE = 1e-6
"""Slack (mm) allowed when comparing a program span with machine travel."""

# ============================================================================
# G-CODE PARSING
# ============================================================================

PAREN_COMMENT_PAT = re.compile(r"\(.*?\)")
"""Parenthetical comment."""

WORD_PAT = re.compile(r"([A-Z])\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+))")
"""Letter-coded word with numeric value."""

ARC_EPSILON = 1e-6
"""Tolerance for zero-length chords and radii."""

MM_PER_INCH = 25.4
"""Millimetres per inch for G20 programs."""

DISPLAY_DECIMALS = 3
"""Decimals kept when formatting a G-code line for display."""

# ============================================================================
# SETTINGS
# ============================================================================

SETTINGS_FILENAME = "settings.json"
"""Settings file name."""

SETTINGS_BACKUP_SUFFIX = ".backup"
"""Suffix of the settings backup file."""

SETTINGS_TEMP_SUFFIX = ".tmp"
"""Suffix used for atomic settings writes."""

# ============================================================================
# ERROR MESSAGES
# ============================================================================

ERROR_NOT_CONNECTED = "Not connected to GRBL"
ERROR_ALREADY_RUNNING = "A program is already running"
ERROR_NO_PROGRAM = "No program loaded"
ERROR_DOES_NOT_FIT = "Program exceeds machine travel"
