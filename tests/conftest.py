"""Shared fixtures: a scripted GRBL stand-in and deterministic clocks."""

from __future__ import annotations

import queue
import threading
import time
from typing import Callable, Optional

import pytest

from cnc_sender.machine_status import MachineStatus, StatusSnapshot
from cnc_sender.utils.exceptions import NotConnectedError


class FakeTransport:
    """Replies to lines and status queries from its own RX thread.

    ``responder(line)`` returns the reply text for a line (without the
    trailing newline) or None to stay silent.
    """

    def __init__(self, responder: Optional[Callable[[str], Optional[str]]] = None):
        self.responder = responder or (lambda line: "ok")
        self.connected = True
        self.status_replies = True
        self.state = "Idle"
        self.wpos = (0.0, 0.0, 0.0)
        self.reset_state: Optional[str] = None
        self.lines: list[str] = []
        self.realtime: list[bytes] = []
        self._listeners: list = []
        self._lock = threading.Lock()
        self._rx_q: queue.Queue = queue.Queue()
        self._rx_thread = threading.Thread(target=self._rx_loop, daemon=True, name="Fake-RX")
        self._rx_thread.start()

    # TransportLike

    def send_line(self, line: str) -> None:
        if not self.connected:
            raise NotConnectedError("not connected")
        text = line.strip()
        with self._lock:
            self.lines.append(text)
        if text == "$X" and self.state == "Alarm":
            self.state = "Idle"
        reply = self.responder(text)
        if reply is not None:
            self.feed(reply + "\n")

    def send_realtime(self, command: bytes) -> None:
        if not self.connected:
            raise NotConnectedError("not connected")
        with self._lock:
            self.realtime.append(command)
        if command == b"?":
            if self.status_replies:
                self.feed(self.status_line() + "\n")
        elif command == b"!":
            self.state = "Hold"
        elif command == b"~":
            self.state = "Idle"
        elif command == b"\x18" and self.reset_state is not None:
            self.state = self.reset_state

    def add_listener(self, listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def is_connected(self) -> bool:
        return self.connected

    # Test helpers

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def sent_program_lines(self) -> list[str]:
        with self._lock:
            return [line for line in self.lines if line != "$G"]

    def status_line(self) -> str:
        x, y, z = self.wpos
        return f"<{self.state}|WPos:{x:.3f},{y:.3f},{z:.3f}|FS:0,0>"

    def feed(self, text: str) -> None:
        self._rx_q.put(text)

    def close(self) -> None:
        self._rx_q.put(None)
        self._rx_thread.join(timeout=1.0)

    def _rx_loop(self) -> None:
        while True:
            text = self._rx_q.get()
            if text is None:
                return
            with self._lock:
                listeners = list(self._listeners)
            for listener in listeners:
                listener(text)


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class ScriptedPoller:
    """Status source that plays back a list of states, one per request.

    Items are a state name or a ``(state, position)`` tuple; the last item
    repeats once the script runs out.
    """

    def __init__(self, snapshot: StatusSnapshot, script):
        self.snapshot = snapshot
        self.script = list(script)
        self.calls = 0

    def request_once(self, max_wait=None) -> bool:
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, tuple):
            state, position = item
        else:
            state, position = item, self.snapshot.current.work_position
        self.snapshot.update(MachineStatus(
            state=state, work_position=position, raw_text=f"<{state}>", received_at=time.monotonic()
        ))
        return True


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake_transport():
    transport = FakeTransport()
    yield transport
    transport.close()


@pytest.fixture
def fake_clock():
    return FakeClock()
