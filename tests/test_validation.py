import pytest

from cnc_sender.utils.exceptions import InvalidParameterError, InvalidRangeError
from cnc_sender.utils.grbl_errors import (
    describe_alarm,
    describe_error,
    parse_alarm_code,
    parse_error_code,
)
from cnc_sender.utils.validation import (
    clamp_override,
    validate_baud_rate,
    validate_interval,
    validate_line_index,
    validate_port_name,
    validate_threshold,
)


def test_validate_interval():
    assert validate_interval("0.5") == 0.5
    with pytest.raises(InvalidParameterError, match="poll"):
        validate_interval(0.01, 0.025, "poll")
    with pytest.raises(InvalidParameterError):
        validate_interval("fast")


def test_validate_line_index():
    assert validate_line_index(3, 10) == 3
    with pytest.raises(InvalidParameterError):
        validate_line_index(-1)
    with pytest.raises(InvalidRangeError):
        validate_line_index(11, 10)


def test_validate_port_and_baud():
    assert validate_port_name(" /dev/ttyUSB0 ") == "/dev/ttyUSB0"
    with pytest.raises(InvalidParameterError):
        validate_port_name("   ")
    assert validate_baud_rate("115200") == 115200
    with pytest.raises(InvalidParameterError):
        validate_baud_rate(1200)


def test_validate_threshold():
    assert validate_threshold(2) == 2
    with pytest.raises(InvalidParameterError):
        validate_threshold(0)


def test_clamp_override():
    assert clamp_override(250) == 200
    assert clamp_override(0) == 10
    assert clamp_override(123.4) == 123
    with pytest.raises(InvalidParameterError):
        clamp_override("lots")


def test_error_and_alarm_descriptions():
    assert parse_error_code("error:22") == 22
    assert parse_error_code("ok") is None
    assert describe_error("error:22") == "error:22 (Undefined feed rate.)"
    assert describe_error("error:99") == "error:99"
    assert parse_alarm_code("ALARM:1") == 1
    assert describe_alarm("ALARM:2").startswith("ALARM:2 (Soft limit")
