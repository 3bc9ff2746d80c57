#!/usr/bin/env python3
"""
Replay a recorded sample CSV through the gesture detector.

The CSV is what `magclick.py --record` writes: t_s, channel, x, y, z.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path

import numpy as np
from matplotlib.backends.backend_agg import FigureCanvasAgg as FigureCanvas
from matplotlib.figure import Figure

from gesture_detection import (
    AXIS_NAMES,
    CHANNEL_ACCELERATION,
    CHANNEL_FIELD,
    GESTURE_SHORT_CLICK,
    GestureDetectionConfig,
    GestureDetector,
    GestureEvent,
)
from magclick_io import load_settings, resolve_local


def load_recording(path: Path) -> np.ndarray:
    arr = np.loadtxt(path, delimiter=",", skiprows=1, ndmin=2, dtype=float)
    if arr.size == 0:
        return np.empty((0, 5), dtype=float)
    if arr.shape[1] != 5:
        raise ValueError(f"{path}: expected 5 columns (t_s,channel,x,y,z), got {arr.shape[1]}")
    return arr


def replay(arr: np.ndarray, detector: GestureDetector) -> list[GestureEvent]:
    out: list[GestureEvent] = []
    for t, channel, x, y, z in arr:
        out.extend(detector.process_sample(int(channel), x, y, z, float(t)))
    return out


def plot_recording(arr: np.ndarray, events: list[GestureEvent], cfg: GestureDetectionConfig, out_path: Path) -> None:
    field = arr[arr[:, 1] == CHANNEL_FIELD]
    acc = arr[arr[:, 1] == CHANNEL_ACCELERATION]
    t0 = float(arr[0, 0]) if len(arr) else 0.0

    fig = Figure(figsize=(10, 6), dpi=90)
    FigureCanvas(fig)
    ax_field = fig.add_subplot(211)
    ax_acc = fig.add_subplot(212, sharex=ax_field)

    if len(field):
        t = field[:, 0] - t0
        for axis, color in zip(range(3), ("red", "green", "blue")):
            ax_field.plot(t, field[:, 2 + axis], color=color, linewidth=1.0, label=AXIS_NAMES[axis])
        step = np.linalg.norm(np.diff(field[:, 2:5], axis=0), axis=1)
        ax_step = ax_field.twinx()
        ax_step.plot(t[1:], step, color="gray", linewidth=0.8, linestyle=":")
        ax_step.axhline(cfg.click_threshold, color="orange", linestyle="--", linewidth=0.8)
        ax_step.axhline(cfg.long_click_threshold, color="purple", linestyle="--", linewidth=0.8)
        ax_step.set_ylabel("instant delta")
    ax_field.set_ylabel("field")
    ax_field.legend(loc="upper left")

    if len(acc):
        ax_acc.plot(acc[:, 0] - t0, np.linalg.norm(acc[:, 2:5], axis=1), color="black", linewidth=1.0)
    ax_acc.set_ylabel("|acc|")
    ax_acc.set_xlabel("t [s]")

    for ev in events:
        color = "orange" if ev.type == GESTURE_SHORT_CLICK else "purple"
        for ax in (ax_field, ax_acc):
            ax.axvline(ev.timestamp_s - t0, color=color, linewidth=1.2)

    fig.tight_layout()
    fig.savefig(out_path)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Replay a recorded magnetometer session through the detector")
    p.add_argument("recording", type=Path, help="CSV written by magclick.py --record")
    p.add_argument("--config", default="magclick_conf.json")
    p.add_argument("--default-config", default="magclick_conf_default.json")
    p.add_argument("--click-threshold", type=float, default=None)
    p.add_argument("--long-click-threshold", type=float, default=None)
    p.add_argument("--plot", type=Path, default=None, help="write a PNG plot of the session")
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_settings(resolve_local(args.default_config), resolve_local(args.config)).detector
        if args.click_threshold is not None:
            cfg = replace(cfg, click_threshold=args.click_threshold,
                          long_click_threshold=max(args.click_threshold, cfg.long_click_threshold))
        if args.long_click_threshold is not None:
            cfg = replace(cfg, long_click_threshold=args.long_click_threshold)
        arr = load_recording(args.recording)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    events = replay(arr, GestureDetector(cfg))
    t0 = float(arr[0, 0]) if len(arr) else 0.0
    for ev in events:
        print(f"+{ev.timestamp_s - t0:8.3f}s {ev.name()}")
    n_field = int(np.count_nonzero(arr[:, 1] == CHANNEL_FIELD)) if len(arr) else 0
    print(f"samples={len(arr)} field={n_field} gestures={len(events)}")

    if args.plot is not None:
        plot_recording(arr, events, cfg, args.plot)
        print(f"Plot written to {args.plot}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
