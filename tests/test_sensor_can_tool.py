import argparse

import pytest

from magclick_io import build_vector_frame
from sensor_can_tool import (
    FRAME_ACC,
    FRAME_INTERVAL,
    FRAME_MAG,
    FRAME_STATUS,
    STATUS_ERR_RANGE,
    STREAM_ACC,
    STREAM_MAG,
    BoardError,
    StreamConfig,
    describe_frame,
    device_id_from_status_id,
    is_status_reply,
    parse_status,
    parse_stream_arg,
    parse_stream_config,
    parse_vector_frame,
)


def test_device_id_from_status_id():
    assert device_id_from_status_id(0x581) == 1
    assert device_id_from_status_id(0x5FF) == 0x7F
    assert device_id_from_status_id(0x601) is None
    assert device_id_from_status_id(0x123) is None


def test_board_status_bits():
    st = parse_status(bytes([0, FRAME_STATUS, 0b11, 0b01, 0, 0, 0, 0]))
    assert st.sensors == ("mag", "acc")
    assert st.streams == ("mag",)
    assert st.has_magnetometer and st.has_accelerometer

    acc_only = parse_status(bytes([0, FRAME_STATUS, 0b10, 0, 0, 0, 0, 0]))
    assert not acc_only.has_magnetometer
    assert acc_only.streams == ()


def test_stream_config_frame():
    cfg = parse_stream_config(bytes([0, FRAME_INTERVAL, STREAM_ACC, 1, 0xE8, 0x03]))
    assert cfg == StreamConfig(stream_id=STREAM_ACC, enabled=True, interval_ms=1000)
    assert cfg.to_text() == "stream=acc enabled=1 interval_ms=1000"


def test_vector_frame_signed_values():
    data = build_vector_frame(FRAME_MAG, -3380, 12, -1)
    assert parse_vector_frame(data, FRAME_MAG) == (-3380, 12, -1)
    assert parse_vector_frame(data, FRAME_ACC) is None
    assert parse_vector_frame(data[:6], FRAME_MAG) is None


def test_status_reply_detection():
    assert is_status_reply(bytes([STATUS_ERR_RANGE, 0x70, 0, 0]))
    assert not is_status_reply(bytes([0x10]))
    assert not is_status_reply(build_vector_frame(FRAME_MAG, 1, 2, 3))


def test_board_error_is_runtime_error():
    err = BoardError(STATUS_ERR_RANGE, 0x70)
    assert isinstance(err, RuntimeError)
    assert "value out of range" in str(err)


def test_describe_frame():
    assert describe_frame(build_vector_frame(FRAME_MAG, -3380, 0, 100)) == "MAG x=-338.0uT y=0.0uT z=10.0uT"
    assert describe_frame(build_vector_frame(FRAME_ACC, 0, 0, 1000)) == "ACC x=0.00 y=0.00 z=9.81 m/s2"
    assert describe_frame(bytes([STATUS_ERR_RANGE, 0x70])).startswith("ACK ")
    assert describe_frame(bytes([0, FRAME_STATUS, 1, 1, 0, 0, 0, 1])) == "BOARD sensors=mag streams=mag"
    assert describe_frame(bytes([0, FRAME_INTERVAL, STREAM_MAG, 0, 10, 0])) == "STREAM stream=mag enabled=0 interval_ms=10"
    assert describe_frame(bytes([0x55, 0x66])) == "RAW 5566"


def test_parse_stream_arg():
    assert parse_stream_arg("MAG") == STREAM_MAG
    assert parse_stream_arg("acc") == STREAM_ACC
    assert parse_stream_arg("0x2") == STREAM_ACC
    with pytest.raises(argparse.ArgumentTypeError):
        parse_stream_arg("3")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_stream_arg("temperature")


def test_zero_vector_frames_are_not_acks():
    for frame_type in (FRAME_MAG, FRAME_ACC):
        data = build_vector_frame(frame_type, 0, 0, 0)
        assert not is_status_reply(data)
        assert parse_vector_frame(data, frame_type) == (0, 0, 0)
    assert describe_frame(build_vector_frame(FRAME_MAG, 0, 0, 0)) == "MAG x=0.0uT y=0.0uT z=0.0uT"
    assert describe_frame(bytes([0, FRAME_INTERVAL, 0, 0, 0, 0])).startswith("STREAM ")
    assert is_status_reply(bytes([0, 0x73, 0, 0, 0, 0, 0, 0]))
