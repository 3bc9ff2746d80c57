#!/usr/bin/env python3
from __future__ import annotations

import argparse
import select
import sys
import termios
import time
import tty
from collections import deque

import can

from magclick_io import build_vector_frame
from sensor_can_tool import ACC_MG_TO_MS2, FRAME_ACC, FRAME_MAG, MAG_MG_TO_UT, STATUS_ID_BASE

# Resting readings in board units (mG / mg).
REST_FIELD_MG = (-3380, 0, 0)
REST_ACC_MG = (0, 0, 1000)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Keyboard -> simulated magnetometer/accelerometer CAN frames")
    p.add_argument("--channel", default="vcan0", help="CAN channel (default: vcan0)")
    p.add_argument("--interface", default="socketcan", help="python-can interface (default: socketcan)")
    p.add_argument("--device-id", type=int, default=1, help="simulated board device id 0..127")
    p.add_argument("--interval-ms", type=int, default=10, help="sample period for both streams")
    p.add_argument("--pull-ut", type=float, default=110.0, help="field drop of a pull on x, in uT")
    p.add_argument("--jolt", type=float, default=2.0, help="acceleration magnitude jump of a pull, in m/s2")
    p.add_argument("--hold-ut", type=float, default=170.0, help="per-sample swing while holding, in uT")
    p.add_argument("--hold-ms", type=int, default=800, help="duration of a simulated long hold")
    return p.parse_args()


def pull_script(pull_ut: float, jolt: float) -> list[tuple[tuple[int, int, int], tuple[int, int, int]]]:
    """Field/acc frames (board units) for one deliberate pull and release."""
    rx, ry, rz = REST_FIELD_MG
    ax, ay, az = REST_ACC_MG
    drop = int(pull_ut / MAG_MG_TO_UT)
    jolt_mg = int(jolt / ACC_MG_TO_MS2)
    steps = [
        ((rx - drop // 5, ry, rz), (ax, ay, az)),
        ((rx - drop, ry, rz), (ax, ay, az + jolt_mg)),
        ((rx - drop, ry, rz), (ax, ay, az)),
    ]
    steps += [((rx, ry, rz), (ax, ay, az))] * 3
    return steps


def hold_script(hold_ut: float, hold_ms: int, interval_ms: int) -> list[tuple[tuple[int, int, int], tuple[int, int, int]]]:
    rx, ry, rz = REST_FIELD_MG
    swing = int(hold_ut / MAG_MG_TO_UT)
    n = max(1, hold_ms // max(1, interval_ms))
    out = []
    for i in range(n):
        out.append(((rx - swing if i % 2 == 0 else rx, ry, rz), REST_ACC_MG))
    out.append((REST_FIELD_MG, REST_ACC_MG))
    return out


def send_frame(bus: can.BusABC, status_id: int, subtype: int, v: tuple[int, int, int]) -> None:
    bus.send(can.Message(arbitration_id=status_id, data=build_vector_frame(subtype, *v), is_extended_id=False))


def main() -> int:
    args = parse_args()
    if args.device_id < 0 or args.device_id > 0x7F:
        print("--device-id must be 0..127")
        return 2

    period_s = max(1, args.interval_ms) / 1000.0
    status_id = STATUS_ID_BASE + int(args.device_id)
    bus = can.Bus(interface=args.interface, channel=args.channel, receive_own_messages=False)

    print("magclick_sim running")
    print(f"channel={args.channel} interface={args.interface} dev={args.device_id}(0x{status_id:03X})")
    print("keys: p=pull (short click), l=long hold, n=noise spike, x=exit")

    pending: deque[tuple[tuple[int, int, int], tuple[int, int, int]]] = deque()
    fd = sys.stdin.fileno()
    old = termios.tcgetattr(fd)
    next_tx = time.monotonic()
    try:
        tty.setcbreak(fd)
        while True:
            now = time.monotonic()
            if now >= next_tx:
                field, acc = pending.popleft() if pending else (REST_FIELD_MG, REST_ACC_MG)
                send_frame(bus, status_id, FRAME_ACC, acc)
                send_frame(bus, status_id, FRAME_MAG, field)
                next_tx += period_s
                if next_tx < now:
                    next_tx = now + period_s

            rlist, _, _ = select.select([sys.stdin], [], [], max(0.0, min(0.005, next_tx - now)))
            if not rlist:
                continue

            ch = sys.stdin.read(1).lower()
            if ch in ("\x03", "\x04", "x"):
                break
            if ch == "p":
                pending.extend(pull_script(args.pull_ut, args.jolt))
            elif ch == "l":
                pending.extend(hold_script(args.hold_ut, args.hold_ms, args.interval_ms))
            elif ch == "n":
                rx, ry, rz = REST_FIELD_MG
                pending.append(((rx - int(args.pull_ut / MAG_MG_TO_UT), ry, rz), REST_ACC_MG))
            else:
                continue
            print(f"key={ch} queued={len(pending)}")
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old)
        bus.shutdown()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
