#!/usr/bin/env python3
"""
Client and CLI for the magnetometer/accelerometer sensor board.

The board listens on 0x600 + device_id and answers on 0x580 + device_id.
Every command is acknowledged with a status reply [status, extra, 0...],
followed by a data frame [0, frame_type, ...].
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import sys
import time
from typing import Callable

import can

CMD_SET_INTERVAL = 0x70
CMD_GET_INTERVAL = 0x71
CMD_SET_STREAM_ENABLE = 0x72
CMD_GET_STATUS = 0x73

STATUS_OK = 0x00
STATUS_ERR_GENERIC = 0x01
STATUS_ERR_RANGE = 0x02
STATUS_ERR_STATE = 0x03
STATUS_ERR_SENSOR = 0x04

STATUS_TEXT = {
    STATUS_OK: "OK",
    STATUS_ERR_GENERIC: "generic error",
    STATUS_ERR_RANGE: "value out of range",
    STATUS_ERR_STATE: "invalid state",
    STATUS_ERR_SENSOR: "sensor failure",
}

FRAME_MAG = 0x10
FRAME_ACC = 0x11
FRAME_INTERVAL = 0x30
FRAME_STATUS = 0x31

STREAM_MAG = 1
STREAM_ACC = 2
STREAM_NAMES = {STREAM_MAG: "mag", STREAM_ACC: "acc"}

# Board units: magnetometer in mG, accelerometer in mg.
MAG_MG_TO_UT = 0.1
ACC_MG_TO_MS2 = 9.80665 / 1000.0

CMD_ID_BASE = 0x600
STATUS_ID_BASE = 0x580
MAX_DEVICE_ID = 0x7F
MAX_INTERVAL_MS = 60000


@dataclass(frozen=True)
class BoardStatus:
    sensors: tuple[str, ...]
    streams: tuple[str, ...]

    @property
    def has_magnetometer(self) -> bool:
        return "mag" in self.sensors

    @property
    def has_accelerometer(self) -> bool:
        return "acc" in self.sensors


@dataclass(frozen=True)
class StreamConfig:
    stream_id: int
    enabled: bool
    interval_ms: int

    @property
    def name(self) -> str:
        return STREAM_NAMES.get(self.stream_id, str(self.stream_id))

    def to_text(self) -> str:
        return f"stream={self.name} enabled={int(self.enabled)} interval_ms={self.interval_ms}"


def device_id_from_status_id(arbitration_id: int) -> int | None:
    if (arbitration_id & ~MAX_DEVICE_ID) != STATUS_ID_BASE:
        return None
    return arbitration_id & MAX_DEVICE_ID


def stream_names(bits: int) -> tuple[str, ...]:
    return tuple(name for sid, name in sorted(STREAM_NAMES.items()) if bits & (1 << (sid - 1)))


DATA_FRAMES = (FRAME_MAG, FRAME_ACC, FRAME_INTERVAL, FRAME_STATUS)


def is_status_reply(data: bytes) -> bool:
    if len(data) < 2 or data[0] > STATUS_ERR_SENSOR or any(data[2:]):
        return False
    # An all-zero data frame has the same shape as an OK ack.
    return not (data[0] == STATUS_OK and data[1] in DATA_FRAMES)


def is_frame(data: bytes, frame_type: int, min_len: int) -> bool:
    return len(data) >= min_len and data[0] == 0 and data[1] == frame_type


def parse_status(data: bytes) -> BoardStatus:
    return BoardStatus(sensors=stream_names(data[2]), streams=stream_names(data[3]))


def parse_stream_config(data: bytes) -> StreamConfig:
    return StreamConfig(
        stream_id=data[2],
        enabled=bool(data[3]),
        interval_ms=int.from_bytes(data[4:6], "little"),
    )


def parse_vector_frame(data: bytes, frame_type: int) -> tuple[int, int, int] | None:
    if not is_frame(data, frame_type, 8):
        return None
    return tuple(int.from_bytes(data[i:i + 2], "little", signed=True) for i in (2, 4, 6))


def describe_frame(data: bytes) -> str:
    if is_status_reply(data):
        return f"ACK {STATUS_TEXT.get(data[0], f'0x{data[0]:02X}')} extra=0x{data[1]:02X}"

    mag = parse_vector_frame(data, FRAME_MAG)
    if mag is not None:
        return "MAG " + " ".join(f"{a}={v * MAG_MG_TO_UT:.1f}uT" for a, v in zip("xyz", mag))

    acc = parse_vector_frame(data, FRAME_ACC)
    if acc is not None:
        return "ACC " + " ".join(f"{a}={v * ACC_MG_TO_MS2:.2f}" for a, v in zip("xyz", acc)) + " m/s2"

    if is_frame(data, FRAME_INTERVAL, 6):
        return "STREAM " + parse_stream_config(data).to_text()

    if is_frame(data, FRAME_STATUS, 8):
        st = parse_status(data)
        return f"BOARD sensors={','.join(st.sensors) or 'none'} streams={','.join(st.streams) or 'none'}"

    return f"RAW {data.hex()}"


class BoardError(RuntimeError):
    def __init__(self, status: int, extra: int):
        super().__init__(f"Board replied {STATUS_TEXT.get(status, f'0x{status:02X}')} (extra=0x{extra:02X})")
        self.status = status
        self.extra = extra


class MagBoardClient:
    """Request/reply access to one sensor board on a CAN bus."""

    def __init__(self, channel: str, interface: str, device_id: int, timeout: float = 1.0):
        if not 0 <= device_id <= MAX_DEVICE_ID:
            raise ValueError(f"device id must be 0..{MAX_DEVICE_ID}")
        self.device_id = device_id
        self.timeout = timeout
        self.bus = can.Bus(
            interface=interface,
            channel=channel,
            receive_own_messages=False,
            can_filters=[{"can_id": STATUS_ID_BASE + device_id, "can_mask": 0x7FF, "extended": False}],
        )

    def __enter__(self) -> "MagBoardClient":
        return self

    def __exit__(self, *_exc) -> None:
        self.close()

    def close(self) -> None:
        self.bus.shutdown()

    def _send(self, *payload: int) -> None:
        self.bus.send(can.Message(arbitration_id=CMD_ID_BASE + self.device_id, data=bytes(payload), is_extended_id=False))

    def _await(self, accept: Callable[[bytes], bool], what: str) -> bytes:
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            msg = self.bus.recv(max(0.0, deadline - time.monotonic()))
            if msg is None:
                continue
            data = bytes(msg.data)
            if is_status_reply(data) and data[0] != STATUS_OK:
                raise BoardError(data[0], data[1])
            if accept(data):
                return data
        raise TimeoutError(f"No {what} from device {self.device_id} within {self.timeout:.1f}s")

    def _request(self, payload: tuple[int, ...], ack_extra: int | None, accept: Callable[[bytes], bool], what: str) -> bytes:
        self._send(*payload)
        if ack_extra is not None:
            self._await(lambda d: is_status_reply(d) and d[1] == ack_extra, f"ack for 0x{payload[0]:02X}")
        return self._await(accept, what)

    def read_status(self) -> BoardStatus:
        data = self._request((CMD_GET_STATUS,), CMD_GET_STATUS, lambda d: is_frame(d, FRAME_STATUS, 8), "status frame")
        return parse_status(data)

    def _stream_request(self, payload: tuple[int, ...], stream_id: int, acked: bool = True) -> StreamConfig:
        if stream_id not in STREAM_NAMES:
            raise ValueError(f"unknown stream id {stream_id}")
        data = self._request(
            payload,
            stream_id if acked else None,
            lambda d: is_frame(d, FRAME_INTERVAL, 6) and d[2] == stream_id,
            f"{STREAM_NAMES[stream_id]} stream frame",
        )
        return parse_stream_config(data)

    def read_stream(self, stream_id: int) -> StreamConfig:
        # Reads are answered with the stream frame only, without an ack.
        return self._stream_request((CMD_GET_INTERVAL, stream_id), stream_id, acked=False)

    def set_stream_interval(self, stream_id: int, interval_ms: int) -> StreamConfig:
        if not 0 <= interval_ms <= MAX_INTERVAL_MS:
            raise ValueError(f"interval must be 0..{MAX_INTERVAL_MS} ms")
        lo, hi = interval_ms.to_bytes(2, "little")
        return self._stream_request((CMD_SET_INTERVAL, stream_id, lo, hi), stream_id)

    def enable_stream(self, stream_id: int, enable: bool = True) -> StreamConfig:
        return self._stream_request((CMD_SET_STREAM_ENABLE, stream_id, int(bool(enable))), stream_id)

    def require_magnetometer(self) -> BoardStatus:
        st = self.read_status()
        if not st.has_magnetometer:
            raise RuntimeError("Magnetometer not available on this device")
        return st


def parse_stream_arg(value: str) -> int:
    key = value.strip().lower()
    for sid, name in STREAM_NAMES.items():
        if key == name:
            return sid
    try:
        sid = int(key, 0)
    except ValueError:
        sid = -1
    if sid not in STREAM_NAMES:
        raise argparse.ArgumentTypeError(f"stream must be one of {', '.join(STREAM_NAMES.values())} or its id")
    return sid


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Sensor board CAN tool (magnetometer/accelerometer streams)")
    p.add_argument("--channel", default="can0", help="CAN channel (default: can0)")
    p.add_argument("--interface", default="socketcan", help="python-can interface (default: socketcan)")
    p.add_argument("--device-id", type=int, default=1, help="board device id 0..127 (default: 1)")
    p.add_argument("--timeout", type=float, default=1.0, help="reply timeout in seconds")

    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser("status", help="show fitted sensors and running streams")

    p_show = sub.add_parser("stream", help="show one stream's settings")
    p_show.add_argument("stream", type=parse_stream_arg, help="mag|acc")

    p_int = sub.add_parser("interval", help="set a stream's sample period")
    p_int.add_argument("stream", type=parse_stream_arg, help="mag|acc")
    p_int.add_argument("ms", type=int, help=f"period in ms (0..{MAX_INTERVAL_MS})")

    p_en = sub.add_parser("enable", help="turn a stream on or off")
    p_en.add_argument("stream", type=parse_stream_arg, help="mag|acc")
    p_en.add_argument("state", choices=["on", "off"])

    p_mon = sub.add_parser("monitor", help="print decoded frames from the board")
    p_mon.add_argument("--duration", type=float, default=0.0, help="seconds to run (0 = until Ctrl+C)")
    return p


def run(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    with MagBoardClient(args.channel, args.interface, args.device_id, args.timeout) as client:
        if args.cmd == "status":
            st = client.read_status()
            print(f"sensors={','.join(st.sensors) or 'none'} streams={','.join(st.streams) or 'none'}")
        elif args.cmd == "stream":
            print(client.read_stream(args.stream).to_text())
        elif args.cmd == "interval":
            print("OK " + client.set_stream_interval(args.stream, args.ms).to_text())
        elif args.cmd == "enable":
            print("OK " + client.enable_stream(args.stream, args.state == "on").to_text())
        elif args.cmd == "monitor":
            end = time.monotonic() + args.duration if args.duration > 0 else None
            try:
                while end is None or time.monotonic() < end:
                    msg = client.bus.recv(0.2)
                    if msg is not None:
                        print(f"[{time.strftime('%H:%M:%S')}] 0x{msg.arbitration_id:03X} {describe_frame(bytes(msg.data))}")
            except KeyboardInterrupt:
                pass
    return 0


def main() -> int:
    try:
        return run()
    except (TimeoutError, RuntimeError, OSError, ValueError, can.CanError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
