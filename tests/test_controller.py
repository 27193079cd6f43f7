import pytest

from cnc_sender.controller import MachineContext
from cnc_sender.utils.config import Settings
from cnc_sender.utils.exceptions import NotConnectedError

from tests.conftest import wait_until


@pytest.fixture
def context(fake_transport):
    ctx = MachineContext(transport=fake_transport, status_poll_interval=0.05, confirm_timeout=1.0)
    yield ctx
    ctx.close()


def test_status_reports_reach_the_snapshot(context, fake_transport):
    fake_transport.feed("<Run|WP")
    fake_transport.feed("os:1.000,2.000,3.000|FS:100,0>\n")

    assert wait_until(lambda: context.snapshot.current.state == "Run")
    assert context.snapshot.current.work_position == (1.0, 2.0, 3.0)


def test_probe_reports_reach_the_cache(context, fake_transport):
    fake_transport.feed("[PRB:1.000,2.000,-3.000:1]\n")

    assert wait_until(lambda: context.probe_cache.latest() is not None)
    assert context.probe_cache.latest().position == (1.0, 2.0, -3.0)


def test_alarm_is_published(context, fake_transport):
    fake_transport.feed("ALARM:1\n")

    kind, message = context.event_q.get(timeout=1.0)
    assert kind == "alarm"
    assert message.startswith("ALARM:1 (Hard limit")


def test_banner_marks_ready_and_resets_overrides(context, fake_transport):
    context.overrides.request_feed(150)
    context.overrides.flush()
    assert context.overrides.feed_percent == 150

    fake_transport.feed("Grbl 1.1h ['$' for help]\n")

    assert context.wait_for_banner(1.0)
    assert context.banner.startswith("Grbl 1.1h")
    assert context.overrides.feed_percent == 100


def test_modal_state_refreshed_by_poller(context, fake_transport):
    modal = "[GC:G0 G54 G17 G21 G90 G94 M5 M9 T0 F0 S0]"
    fake_transport.responder = lambda line: f"{modal}\nok" if line == "$G" else "ok"

    context.poller.start()
    try:
        assert wait_until(lambda: context.modal_state is not None)
    finally:
        context.poller.stop()

    assert context.modal_state.startswith("G0 G54")


def test_send_command_releases_ownership(context, fake_transport):
    result = context.send_command("G0 X1", timeout=1.0)

    assert result.ok
    assert not context.poller.is_paused


def test_probe_returns_contact_point(context, fake_transport):
    fake_transport.responder = (
        lambda line: "[PRB:0.000,0.000,-1.500:1]\nok" if line.startswith("G38") else "ok"
    )

    sample = context.probe("G38.2 Z-5 F50", timeout=3.0)

    assert sample is not None
    assert sample.z == -1.5
    assert sample.from_status is False


def test_rejected_probe_returns_none(context, fake_transport):
    fake_transport.responder = lambda line: "error:9"

    assert context.probe("G38.2 Z-5 F50", timeout=1.0) is None


def test_from_settings(tmp_path, fake_transport):
    settings = Settings(str(tmp_path / "settings.json"))
    settings.set("status_poll_interval", 0.1)
    settings.set("confirm_timeout", 2.5)
    settings.set("motion.idle_threshold", 3)
    settings.set("estimate.rapid_rate", 4000)

    ctx = MachineContext.from_settings(settings, transport=fake_transport)
    try:
        assert ctx.poller.interval == pytest.approx(0.1)
        assert ctx.channel.timeout == pytest.approx(2.5)
        assert ctx.detector.idle_threshold == 3
        assert ctx.execution.rapid_rate == 4000
    finally:
        ctx.close()


def test_connect_needs_a_serial_transport(context):
    with pytest.raises(NotConnectedError):
        context.connect("/dev/ttyUSB0")


def test_close_detaches_listener(fake_transport):
    ctx = MachineContext(transport=fake_transport)
    assert fake_transport.listener_count == 1

    ctx.close()

    assert fake_transport.listener_count == 0


def test_settings_dump_fills_cache(context, fake_transport):
    fake_transport.responder = (
        lambda line: "$110=1000.000\n$130=300.000\n$131=200.000\nok" if line == "$$" else "ok"
    )

    assert context.request_settings(timeout=1.0)

    assert context.grbl_settings.max_travel() == {"x": 300.0, "y": 200.0}
    assert context.grbl_settings.get(110) == 1000.0
    assert "$$" in fake_transport.lines


def test_settings_echo_is_routed(context, fake_transport):
    fake_transport.feed("$132=80.000\n")

    assert wait_until(lambda: context.grbl_settings.get(132) == 80.0)
