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

from __future__ import annotations

from typing import Any, Callable, Literal, Protocol, TypeAlias

MachineState: TypeAlias = Literal["Idle", "Run", "Hold", "Jog", "Alarm", "Unknown"]
ExecState: TypeAlias = Literal["Ready", "Running", "Holding", "Completed", "Aborted"]
MovementKind: TypeAlias = Literal["Rapid", "Linear", "Arc"]
Position: TypeAlias = tuple[float, float, float]
FragmentListener: TypeAlias = Callable[[str], None]
UiEvent: TypeAlias = tuple[Any, ...]


class TransportLike(Protocol):
    def send_line(self, line: str) -> None: ...
    def send_realtime(self, command: bytes) -> None: ...
    def add_listener(self, listener: FragmentListener) -> None: ...
    def remove_listener(self, listener: FragmentListener) -> None: ...
    def is_connected(self) -> bool: ...


class StatusSource(Protocol):
    def request_once(self, max_wait: float | None = None) -> bool: ...
