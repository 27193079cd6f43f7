import threading
import time

import pytest

from cnc_sender.confirmation import (
    CommandConfirmationChannel,
    PendingCommand,
    is_terminal_line,
)
from cnc_sender.machine_status import StatusSnapshot
from cnc_sender.status_poller import CentralStatusPoller
from cnc_sender.utils.exceptions import FirmwareRejected, ProtocolTimeout


@pytest.fixture
def channel(fake_transport):
    return CommandConfirmationChannel(fake_transport, timeout=1.0)


def test_ok_reply_returns_true(channel, fake_transport):
    assert channel.send_with_confirmation("G0 X1", timeout=1.0) is True
    assert fake_transport.lines == ["G0 X1"]


def test_error_reply_returns_false_with_code(fake_transport):
    fake_transport.responder = lambda line: "error:1"
    channel = CommandConfirmationChannel(fake_transport)

    result = channel.send_and_get_result("X", timeout=1.0)

    assert not result
    assert result.error_code == 1
    assert not result.timed_out
    assert "Expected command letter" in result.reason
    assert channel.send_with_confirmation("X", timeout=1.0) is False


def test_silence_times_out_at_the_deadline(fake_transport):
    fake_transport.responder = lambda line: None
    channel = CommandConfirmationChannel(fake_transport)

    started = time.monotonic()
    ok = channel.send_with_confirmation("G4 P2", timeout=1.5)
    elapsed = time.monotonic() - started

    assert ok is False
    assert 1.4 <= elapsed < 2.0


def test_timeout_result_is_marked(fake_transport):
    fake_transport.responder = lambda line: None
    channel = CommandConfirmationChannel(fake_transport)

    result = channel.send_and_get_result("G0 X1", timeout=0.2)

    assert result.timed_out
    assert result.reason.startswith("no reply within")


def test_reply_split_across_fragments(fake_transport):
    fake_transport.responder = lambda line: None
    channel = CommandConfirmationChannel(fake_transport)

    def reply():
        fake_transport.feed("o")
        fake_transport.feed("k\n")

    timer = threading.Timer(0.1, reply)
    timer.start()
    assert channel.send_with_confirmation("G0 X1", timeout=1.0)
    timer.join()


def test_status_noise_before_reply_is_ignored(fake_transport):
    fake_transport.responder = lambda line: "<Run|WPos:0,0,0>\n[MSG:hello]\nok"
    channel = CommandConfirmationChannel(fake_transport)

    result = channel.send_and_get_result("G0 X1", timeout=1.0)

    assert result.ok
    assert result.response == "ok"


def test_listener_released_after_reply_and_timeout(fake_transport):
    channel = CommandConfirmationChannel(fake_transport)
    channel.send_with_confirmation("G0 X1", timeout=1.0)
    assert fake_transport.listener_count == 0

    fake_transport.responder = lambda line: None
    channel.send_with_confirmation("G0 X2", timeout=0.1)
    assert fake_transport.listener_count == 0
    assert not channel.busy


def test_send_or_raise(fake_transport):
    channel = CommandConfirmationChannel(fake_transport)
    fake_transport.responder = lambda line: "error:22"
    with pytest.raises(FirmwareRejected) as info:
        channel.send_or_raise("G1 X1", timeout=1.0)
    assert info.value.error_code == 22

    fake_transport.responder = lambda line: None
    with pytest.raises(ProtocolTimeout):
        channel.send_or_raise("G1 X1", timeout=0.1)


def test_try_send_returns_none_while_busy(fake_transport):
    fake_transport.responder = lambda line: None
    channel = CommandConfirmationChannel(fake_transport)
    results = []
    worker = threading.Thread(
        target=lambda: results.append(channel.send_with_confirmation("G0 X1", timeout=2.0))
    )
    worker.start()
    time.sleep(0.1)

    assert channel.try_send("$G", 0.1) is None

    fake_transport.feed("ok\n")
    worker.join(timeout=3.0)
    assert results == [True]


def test_wait_extends_while_condition_holds(fake_transport):
    fake_transport.responder = lambda line: None
    channel = CommandConfirmationChannel(fake_transport)
    holding = threading.Event()
    holding.set()

    def release():
        fake_transport.feed("ok\n")

    timer = threading.Timer(0.5, release)
    timer.start()
    result = channel.send_and_get_result("G1 X1", timeout=0.2, extend_while=holding.is_set)
    timer.join()

    assert result.ok
    assert result.elapsed >= 0.4


def test_ownership_pauses_poller_and_restores_on_error(fake_transport):
    poller = CentralStatusPoller(fake_transport, StatusSnapshot())
    channel = CommandConfirmationChannel(fake_transport, poller)

    with channel.ownership():
        assert poller.is_paused
    assert not poller.is_paused

    with pytest.raises(RuntimeError):
        with channel.ownership():
            raise RuntimeError("boom")
    assert not poller.is_paused


def test_pending_command_resolves_once():
    expired = PendingCommand("G0 X1")
    assert expired.expire() is True
    assert expired.feed("ok\n") is True
    assert expired.response is None

    answered = PendingCommand("G0 X1")
    assert answered.feed("ok\n") is True
    assert answered.expire() is False
    assert answered.response == "ok"


def test_is_terminal_line():
    assert is_terminal_line("ok")
    assert is_terminal_line(" error:20 ")
    assert not is_terminal_line("<Idle|WPos:0,0,0>")
    assert not is_terminal_line("[PRB:0,0,0:1]")
