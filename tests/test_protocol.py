"""Tests for outbound frame building and inbound line parsing."""

import struct

import pytest

from lib.protocol import (
    Command, ServoParam, GlobalVar, FrameError, MAX_PAYLOAD_LEN,
    build_frame, parse_frame, servo_param_payload, global_var_payload, parse_line,
    DeltaTime, NumServos, ServoParams, ServoData, GlobalVars,
    ErrorNotice, Acknowledgement, LogNotice, Unknown, MalformedLine, InvalidIndex,
)


def test_build_frame_layout():
    """Length byte counts itself and the command byte."""
    frame = build_frame(Command.GET_SERVO_DATA, b"\x03")
    assert frame == bytes([3, 5, 3])


def test_build_frame_without_payload():
    assert build_frame(Command.GET_NUM_SERVOS) == bytes([2, 3])


@pytest.mark.parametrize("payload", [b"", b"\x80", bytes(range(40)), bytes(MAX_PAYLOAD_LEN)])
def test_roundtrip(payload):
    """parse_frame(build_frame(...)) returns the command and payload unchanged."""
    frame = parse_frame(build_frame(Command.SET_GLOBAL_VAR, payload))
    assert frame.command == Command.SET_GLOBAL_VAR
    assert frame.payload == payload


def test_max_frame_is_255_bytes():
    assert len(build_frame(Command.NO_OP, bytes(MAX_PAYLOAD_LEN))) == 255


def test_oversized_payload_rejected():
    with pytest.raises(FrameError):
        build_frame(Command.NO_OP, bytes(MAX_PAYLOAD_LEN + 1))


def test_parse_frame_rejects_bad_length():
    assert parse_frame(b"\x05\x01") is None
    assert parse_frame(b"\x01") is None


def test_servo_param_payload_little_endian_float():
    payload = servo_param_payload(2, ServoParam.SET_POINT, 90.5)
    assert payload[:2] == bytes([2, 5])
    assert struct.unpack("<f", payload[2:])[0] == 90.5


def test_global_var_payload_int_and_float():
    assert global_var_payload(GlobalVar.PID_ENABLED, 1) == bytes([1, 1, 0, 0, 0])
    payload = global_var_payload(GlobalVar.SERVO_MAX_ANGLE, 180.0)
    assert payload[0] == GlobalVar.SERVO_MAX_ANGLE
    assert struct.unpack("<f", payload[1:])[0] == 180.0


def test_parse_delta_time():
    assert parse_line("DT 0.01 0.009 0.012") == DeltaTime(0.01, 0.009, 0.012)


def test_parse_num_servos():
    assert parse_line("NS 3") == NumServos(3)


def test_parse_servo_params():
    msg = parse_line("SP 1 1.0 2.0 3.0 4.0 90.0", num_servos=2)
    assert msg == ServoParams(1, 1.0, 2.0, 3.0, 4.0, 90.0)


def test_parse_servo_data():
    msg = parse_line("SD 0 10.5 20.25 0.0 1.25", num_servos=1)
    assert msg == ServoData(0, 10.5, 20.25, 0.0, 1.25)


def test_parse_global_vars_types():
    msg = parse_line("GV 4 1 100.5 10.0 170.0 0.5")
    assert isinstance(msg, GlobalVars)
    assert msg.values[GlobalVar.NUM_SERVOS] == 4
    assert isinstance(msg.values[GlobalVar.PID_ENABLED], int)
    assert msg.values[GlobalVar.DEADBAND_MAX_DEVIATION] == 0.5
    assert GlobalVar.ANALOG_INPUT_RANGE not in msg.values


def test_parse_text_notices():
    assert parse_line("ERR: bad command") == ErrorNotice("bad command")
    assert parse_line("LOG: booted") == LogNotice("booted")
    assert parse_line("RST ACK") == Acknowledgement("RST ACK")
    assert parse_line("OK") == Acknowledgement("OK")


def test_parse_unknown():
    assert parse_line("HELLO") == Unknown("HELLO")
    assert parse_line("OK then") == Unknown("OK then")
    assert parse_line("NS") == Unknown("NS")


def test_bad_number_is_malformed_not_raised():
    msg = parse_line("SD 0 1.0 abc 3.0 4.0")
    assert isinstance(msg, MalformedLine)
    assert msg.field == "Output"
    assert msg.line == "SD 0 1.0 abc 3.0 4.0"


def test_wrong_token_count_is_malformed():
    assert isinstance(parse_line("SP 0 1.0 2.0"), MalformedLine)
    assert isinstance(parse_line("DT 1 2 3 4"), MalformedLine)


def test_float_servo_index_is_malformed():
    msg = parse_line("SP 0.5 1 2 3 4 5")
    assert isinstance(msg, MalformedLine)
    assert msg.field == "id"


def test_out_of_range_index():
    assert parse_line("SD 3 1 2 3 4", num_servos=3) == InvalidIndex("SD 3 1 2 3 4", 3)
    assert isinstance(parse_line("SP -1 1 2 3 4 5"), InvalidIndex)


def test_decimal_comma_is_malformed():
    assert isinstance(parse_line("DT 0,01 0,009 0,012"), MalformedLine)


def test_underscore_digit_grouping_is_malformed():
    assert isinstance(parse_line("NS 1_6"), MalformedLine)
    msg = parse_line("SD 0 1_0.5 2 3 4")
    assert isinstance(msg, MalformedLine)
    assert msg.field == "Input"
