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

"""Structured logging setup for CNC Sender."""

from __future__ import annotations

import logging
import logging.handlers
import tempfile
from pathlib import Path

from .config import get_settings_path

APP_LOGGER_NAME = "cnc_sender"
SERIAL_LOGGER_NAME = f"{APP_LOGGER_NAME}.serial"
LOG_DIRNAME = "logs"


def _handler_exists(logger: logging.Logger, name: str) -> bool:
    for handler in logger.handlers:
        if handler.get_name() == name:
            return True
    return False


def get_log_dir() -> Path:
    """Resolve the directory for log files (creates it if needed)."""
    base_dir = Path(get_settings_path()).parent
    log_dir = base_dir / LOG_DIRNAME
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir
    except OSError:
        fallback = Path(tempfile.gettempdir()) / "cnc_sender_logs"
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback


def _rotating_handler(
    path: Path,
    name: str,
    level: int,
    fmt: logging.Formatter,
    max_bytes: int,
    backups: int,
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backups,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.set_name(name)
    return handler


def setup_logging(
    log_dir: Path | None = None,
    console_level: int = logging.INFO,
) -> logging.Logger:
    """Initialize core logging with rotating file handlers.

    Safe to call more than once; handlers are keyed by name.

    Args:
        log_dir: Directory for log files (defaults next to the settings file)
        console_level: Level for the console handler

    Returns:
        The package root logger
    """
    if log_dir is None:
        log_dir = get_log_dir()
    else:
        log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger(APP_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    root.propagate = False

    if not _handler_exists(root, "cnc_sender_console"):
        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
        )
        console.set_name("cnc_sender_console")
        root.addHandler(console)

    if not _handler_exists(root, "cnc_sender_app_file"):
        root.addHandler(_rotating_handler(
            log_dir / "cnc_sender.log",
            "cnc_sender_app_file",
            logging.DEBUG,
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"),
            10_000_000,
            5,
        ))

    if not _handler_exists(root, "cnc_sender_error_file"):
        root.addHandler(_rotating_handler(
            log_dir / "errors.log",
            "cnc_sender_error_file",
            logging.WARNING,
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s:%(lineno)d\n%(message)s\n"),
            2_000_000,
            5,
        ))

    serial_logger = logging.getLogger(SERIAL_LOGGER_NAME)
    serial_logger.setLevel(logging.DEBUG)
    if not _handler_exists(serial_logger, "cnc_sender_serial_file"):
        serial_logger.addHandler(_rotating_handler(
            log_dir / "serial.log",
            "cnc_sender_serial_file",
            logging.DEBUG,
            logging.Formatter(
                "%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ),
            5_000_000,
            3,
        ))

    return root
