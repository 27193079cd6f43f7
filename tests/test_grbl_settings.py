import pytest

from cnc_sender.gcode_parser import SegmentParser
from cnc_sender.grbl_settings import (
    GrblSettingsCache,
    check_program_fits,
    parse_setting_line,
    program_bounds,
)


def test_parse_setting_line():
    assert parse_setting_line("$130=300.000") == (130, "300.000")
    assert parse_setting_line(" $10=1 \r") == (10, "1")
    assert parse_setting_line("$N0=G54") is None
    assert parse_setting_line("$G") is None
    assert parse_setting_line("ok") is None


def test_cache_keeps_latest_value():
    cache = GrblSettingsCache()

    assert cache.handle_line("$110=500.000")
    assert cache.handle_line("$110=800.000")
    assert not cache.handle_line("[GC:G0 G54]")

    assert cache.get(110) == 800.0
    assert cache.get(999) is None
    assert cache.get(999, 1.0) == 1.0
    assert len(cache) == 1


def test_travel_and_rapid_rates_need_positive_values():
    cache = GrblSettingsCache()
    for line in ("$130=300", "$131=0", "$110=1500", "$111=1200"):
        cache.handle_line(line)

    assert cache.max_travel() == {"x": 300.0}
    assert cache.rapid_rates() is None

    cache.handle_line("$112=400")
    assert cache.rapid_rates() == (1500.0, 1200.0, 400.0)
    assert cache.rapid_rate() == 1200.0

    cache.clear()
    assert cache.max_travel() == {}


def test_program_bounds_and_fit():
    segments = SegmentParser().parse_lines(["G0 X-10 Y5", "G1 X50 Y20 Z-3 F100"])

    bounds = program_bounds(segments)

    assert bounds["x"] == pytest.approx((-10.0, 50.0))
    assert bounds["y"] == pytest.approx((0.0, 20.0))
    assert bounds["z"] == pytest.approx((-3.0, 0.0))
    assert check_program_fits(segments, {"x": 60.0, "y": 20.0}) == []
    assert check_program_fits(segments, {"x": 59.0, "z": 2.0}) == [
        "X span 60.000 mm exceeds machine travel $130=59.000 mm",
        "Z span 3.000 mm exceeds machine travel $132=2.000 mm",
    ]
