import time
from unittest.mock import MagicMock

import pytest
import serial

from cnc_sender import transport as transport_module
from cnc_sender.transport import SerialTransport
from cnc_sender.utils.exceptions import (
    InvalidParameterError,
    NotConnectedError,
    SerialConnectionError,
    SerialWriteError,
)

from tests.conftest import wait_until


class ScriptedSerial:
    """Stands in for serial.Serial; ``read`` plays back queued chunks."""

    def __init__(self, *args, **kwargs):
        self.is_open = True
        self.written = []
        self.chunks = [b"Grbl 1.1h ['$' for help]\r\n", b"o", b"k\r\n"]
        self.fail_reads = False

    def read(self, size):
        if self.fail_reads:
            raise serial.SerialException("device unplugged")
        if self.chunks:
            return self.chunks.pop(0)
        time.sleep(0.01)
        return b""

    def write(self, payload):
        self.written.append(bytes(payload))
        return len(payload)

    def reset_input_buffer(self):
        pass

    def reset_output_buffer(self):
        pass

    def close(self):
        self.is_open = False


@pytest.fixture
def port(monkeypatch):
    created = []

    def factory(*args, **kwargs):
        created.append(ScriptedSerial(*args, **kwargs))
        return created[-1]

    monkeypatch.setattr(transport_module.serial, "Serial", factory)
    return created


def test_fragments_are_dispatched_in_order(port):
    received = []
    with SerialTransport() as transport:
        transport.add_listener(received.append)
        transport.connect("/dev/ttyFAKE", 115200)

        assert wait_until(lambda: "".join(received).endswith("ok\r\n"))
        assert "".join(received) == "Grbl 1.1h ['$' for help]\r\nok\r\n"
    assert not transport.is_connected()


def test_writes(port):
    with SerialTransport() as transport:
        transport.connect("/dev/ttyFAKE")
        transport.send_line("G0 X1\r\n")
        transport.send_realtime(b"?")

        assert port[0].written == [b"G0 X1\n", b"?"]


def test_write_requires_connection():
    transport = SerialTransport()

    with pytest.raises(NotConnectedError):
        transport.send_line("G0 X1")


def test_write_failure_is_translated(port):
    with SerialTransport() as transport:
        transport.connect("/dev/ttyFAKE")
        port[0].write = MagicMock(side_effect=serial.SerialTimeoutException("stuck"))

        with pytest.raises(SerialWriteError):
            transport.send_realtime(b"!")


def test_open_failure_is_translated(monkeypatch):
    monkeypatch.setattr(
        transport_module.serial, "Serial", MagicMock(side_effect=serial.SerialException("busy"))
    )

    with pytest.raises(SerialConnectionError):
        SerialTransport().connect("/dev/ttyFAKE")


def test_invalid_arguments():
    with pytest.raises(InvalidParameterError):
        SerialTransport().connect("", 115200)
    with pytest.raises(InvalidParameterError):
        SerialTransport().connect("/dev/ttyFAKE", 1234)


def test_read_error_signals_disconnect(port):
    reasons = []
    transport = SerialTransport(on_disconnect=reasons.append)
    transport.connect("/dev/ttyFAKE")
    port[0].fail_reads = True

    assert wait_until(lambda: reasons)
    assert "device unplugged" in reasons[0]
    assert not transport.is_connected()
    transport.disconnect()


def test_listener_errors_do_not_stop_dispatch(port):
    received = []

    def broken(fragment):
        raise ValueError("listener bug")

    with SerialTransport() as transport:
        transport.add_listener(broken)
        transport.add_listener(received.append)
        transport.connect("/dev/ttyFAKE")

        assert wait_until(lambda: "".join(received).endswith("ok\r\n"))
