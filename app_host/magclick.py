#!/usr/bin/env python3
from __future__ import annotations

import argparse
from dataclasses import dataclass, replace
import queue
import select
import signal
import subprocess
import sys
import termios
import threading
import time
import tty
from pathlib import Path

import can

from gesture_detection import (
    AXIS_NAMES,
    CHANNEL_FIELD,
    GESTURE_LONG_CLICK,
    GESTURE_SHORT_CLICK,
    GestureDetector,
    GestureEvent,
    PatternReport,
)
from magclick_io import (
    ActionSettings,
    CanSampleListener,
    MagclickSettings,
    SampleRecorder,
    SensorSample,
    clamp_threshold,
    load_settings,
    resolve_local,
    save_user_detector_settings,
)
from sensor_can_tool import STATUS_ID_BASE, STREAM_ACC, STREAM_MAG, BoardStatus, MagBoardClient

THRESHOLD_STEP = 5.0


@dataclass
class HostStats:
    field_rx: int = 0
    acc_rx: int = 0
    short_clicks: int = 0
    long_clicks: int = 0
    rejected: int = 0
    actions_run: int = 0


class GestureActionRunner:
    """Runs the configured command for each gesture without blocking the sample loop."""

    def __init__(self, settings: ActionSettings):
        self.enabled = settings.enabled
        self.commands: dict[int, list[str] | None] = {
            GESTURE_SHORT_CLICK: settings.click_command,
            GESTURE_LONG_CLICK: settings.long_click_command,
        }
        self._procs: list[subprocess.Popen] = []

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        print(f"Click actions {'enabled' if self.enabled else 'disabled'}")

    def run(self, ev: GestureEvent) -> bool:
        if not self.enabled:
            print(f"Click actions disabled, ignoring {ev.name()}")
            return False
        cmd = self.commands.get(ev.type)
        if not cmd:
            return False
        self._procs = [p for p in self._procs if p.poll() is None]
        try:
            self._procs.append(subprocess.Popen(cmd, stdin=subprocess.DEVNULL))
        except OSError as exc:
            print(f"Failed to run {ev.name()} command '{cmd[0]}': {exc}", file=sys.stderr)
            return False
        return True

    def close(self, timeout: float = 1.0) -> None:
        for p in self._procs:
            try:
                p.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                p.kill()
        self._procs = []


class KeyControls:
    """Single-key controls on a cbreak terminal; inert when stdin is not a tty."""

    HELP = "keys: r=reset baseline, c=calibrate now, +/-=click threshold, e=toggle actions, x=quit"

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self._fd: int | None = None
        self._old = None

    def __enter__(self) -> "KeyControls":
        if self._enabled and sys.stdin.isatty():
            self._fd = sys.stdin.fileno()
            self._old = termios.tcgetattr(self._fd)
            tty.setcbreak(self._fd)
        return self

    def __exit__(self, *_exc) -> None:
        if self._fd is not None and self._old is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._old)
        self._fd = None

    @property
    def active(self) -> bool:
        return self._fd is not None

    def poll(self) -> str | None:
        if self._fd is None:
            return None
        rlist, _, _ = select.select([sys.stdin], [], [], 0.0)
        if not rlist:
            return None
        return sys.stdin.read(1).lower()


def adjust_click_threshold(detector: GestureDetector, step: float) -> float:
    cfg = detector.config
    click = clamp_threshold(cfg.click_threshold + step, cfg.click_threshold)
    detector.set_thresholds(click, max(cfg.long_click_threshold, click))
    return click


def handle_key(
    ch: str,
    detector: GestureDetector,
    actions: GestureActionRunner,
    user_cfg_path: Path | None,
) -> bool:
    """Apply one control key. Returns False when the host should stop."""
    if ch in ("\x03", "\x04", "x"):
        return False
    if ch == "r":
        detector.reset_baseline()
        print("Calibration reset, recalibrating magnetic field baseline")
    elif ch == "c":
        if detector.calibrate_now():
            b = detector.baseline
            print(f"Baseline calibrated to ({b.x:.1f}, {b.y:.1f}, {b.z:.1f})")
        else:
            print("Cannot calibrate: no magnetometer sample received yet")
    elif ch in ("+", "=", "-"):
        step = -THRESHOLD_STEP if ch == "-" else THRESHOLD_STEP
        click = adjust_click_threshold(detector, step)
        print(f"Click threshold: {click:.1f} (long: {detector.config.long_click_threshold:.1f})")
        if user_cfg_path is not None:
            save_user_detector_settings(user_cfg_path, detector.config)
    elif ch == "e":
        actions.set_enabled(not actions.enabled)
    return True


def feed_sample(detector: GestureDetector, sample: SensorSample) -> list[GestureEvent]:
    v = sample.vector
    return detector.process_sample(sample.channel, v.x, v.y, v.z, sample.timestamp_s)


def prepare_device(settings: MagclickSettings, timeout: float, setup_streams: bool) -> BoardStatus:
    """Check the board has a magnetometer and configure its streams."""
    cs = settings.can
    with MagBoardClient(cs.channel, cs.interface, cs.device_id, timeout) as client:
        st = client.require_magnetometer()
        if setup_streams:
            client.enable_stream(STREAM_MAG)
            print("Configured " + client.set_stream_interval(STREAM_MAG, cs.mag_ms).to_text())
            if st.has_accelerometer:
                client.enable_stream(STREAM_ACC)
                print("Configured " + client.set_stream_interval(STREAM_ACC, cs.acc_ms).to_text())
        return st


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Headset magnet pull -> click host")
    p.add_argument("--channel", default=None, help="CAN channel (overrides config)")
    p.add_argument("--interface", default=None, help="python-can interface (overrides config)")
    p.add_argument("--device-id", type=int, default=None, help="sensor board device ID 0..127")
    p.add_argument("--timeout", type=float, default=1.0, help="per-command timeout for device setup")
    p.add_argument("--config", default="magclick_conf.json", help="user JSON config (threshold changes are saved here)")
    p.add_argument("--default-config", default="magclick_conf_default.json")
    p.add_argument("--click-threshold", type=float, default=None)
    p.add_argument("--long-click-threshold", type=float, default=None)
    p.add_argument("--cooldown-ms", type=int, default=None)
    p.add_argument("--axis", choices=[*AXIS_NAMES, "auto"], default=None, help="primary axis of the magnet pull")
    p.add_argument("--device-check", action=argparse.BooleanOptionalAction, default=True,
                   help="query board status (magnetometer present) before starting")
    p.add_argument("--setup-streams", action=argparse.BooleanOptionalAction, default=True,
                   help="enable MAG/ACC streams at the configured intervals")
    p.add_argument("--no-actions", action="store_true", help="start with click actions disabled")
    p.add_argument("--no-keys", action="store_true", help="disable keyboard controls")
    p.add_argument("--record", default=None, help="write every sample to this CSV file")
    p.add_argument("--stats-interval", type=float, default=10.0, help="periodic stats print interval (0 = off)")
    p.add_argument("--debug", action="store_true", help="print rejected gesture candidates")
    return p.parse_args(argv)


def apply_cli_overrides(settings: MagclickSettings, args: argparse.Namespace) -> MagclickSettings:
    cs = settings.can
    can_settings = replace(
        cs,
        channel=args.channel or cs.channel,
        interface=args.interface or cs.interface,
        device_id=cs.device_id if args.device_id is None else args.device_id,
    )
    if can_settings.device_id < 0 or can_settings.device_id > 0x7F:
        raise ValueError("--device-id must be 0..127")

    d = settings.detector
    click = d.click_threshold if args.click_threshold is None else clamp_threshold(args.click_threshold, d.click_threshold)
    long_click = d.long_click_threshold
    if args.long_click_threshold is not None:
        long_click = clamp_threshold(args.long_click_threshold, d.long_click_threshold)
    axis = d.primary_axis
    if args.axis is not None:
        axis = None if args.axis == "auto" else AXIS_NAMES.index(args.axis)
    detector = replace(
        d,
        click_threshold=click,
        long_click_threshold=max(long_click, click),
        cooldown_ms=d.cooldown_ms if args.cooldown_ms is None else max(0, args.cooldown_ms),
        primary_axis=axis,
    )
    actions = replace(settings.actions, enabled=settings.actions.enabled and not args.no_actions)
    return MagclickSettings(can=can_settings, detector=detector, actions=actions)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    def dbg(msg: str):
        if args.debug:
            ts = time.strftime("%H:%M:%S")
            print(f"[dbg {ts}] {msg}")

    user_cfg_path = resolve_local(args.config)
    settings = apply_cli_overrides(load_settings(resolve_local(args.default_config), user_cfg_path), args)
    cs = settings.can
    d = settings.detector

    if user_cfg_path.exists():
        print(f"Config: {user_cfg_path}")
    else:
        print(f"Config not found: {user_cfg_path} (continuing with defaults)")

    if args.device_check:
        board = prepare_device(settings, args.timeout, args.setup_streams)
        print(f"dev={cs.device_id:02d} sensors={','.join(board.sensors)}")
        if not board.has_accelerometer:
            print("Warning: no accelerometer on this device, short clicks need device movement and will not fire")

    detector = GestureDetector(d)
    actions = GestureActionRunner(settings.actions)
    stats = HostStats()

    axis_label = "auto" if d.primary_axis is None else AXIS_NAMES[d.primary_axis]
    print(
        f"click={d.click_threshold:.1f} long_click={d.long_click_threshold:.1f} cooldown={d.cooldown_ms}ms "
        f"hold={d.long_hold_ms}ms axis={axis_label} actions={'on' if actions.enabled else 'off'}"
    )

    bus = can.Bus(
        interface=cs.interface,
        channel=cs.channel,
        receive_own_messages=False,
        can_filters=[{
            "can_id": STATUS_ID_BASE + cs.device_id,
            "can_mask": 0x7FF,
            "extended": False,
        }],
    )
    q: queue.Queue[SensorSample] = queue.Queue(maxsize=4096)
    listener = CanSampleListener(q, cs.device_id)
    notifier = can.Notifier(bus, [listener], timeout=0.02)

    stop_event = threading.Event()

    def _sig_handler(_sig, _frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _sig_handler)
    signal.signal(signal.SIGTERM, _sig_handler)

    last_stats = time.monotonic()
    seen_report: PatternReport | None = None
    recorder: SampleRecorder | None = None
    try:
        if args.record:
            recorder = SampleRecorder(open(args.record, "w", encoding="utf-8", newline=""))
        with KeyControls(enabled=not args.no_keys) as keys:
            if keys.active:
                print(KeyControls.HELP)
            print("Magnet clicker running. Press Ctrl+C to stop.")
            while not stop_event.is_set():
                try:
                    sample = q.get(timeout=0.02)
                except queue.Empty:
                    sample = None

                if sample is not None:
                    if sample.channel == CHANNEL_FIELD:
                        stats.field_rx += 1
                    else:
                        stats.acc_rx += 1
                    if recorder is not None:
                        recorder.write(sample)

                    events = feed_sample(detector, sample)
                    report = detector.last_report
                    if report is not None and report is not seen_report:
                        seen_report = report
                        if not report.accepted:
                            stats.rejected += 1
                            dbg(f"candidate rejected {report.to_text()}")
                    for ev in events:
                        if ev.type == GESTURE_SHORT_CLICK:
                            stats.short_clicks += 1
                        else:
                            stats.long_clicks += 1
                        print(f"[{time.strftime('%H:%M:%S')}] {ev.name()}")
                        if actions.run(ev):
                            stats.actions_run += 1

                ch = keys.poll()
                if ch is not None and not handle_key(ch, detector, actions, user_cfg_path):
                    break

                now = time.monotonic()
                if args.stats_interval > 0 and (now - last_stats) >= args.stats_interval:
                    last_stats = now
                    b = detector.baseline
                    base_txt = f"({b.x:.1f},{b.y:.1f},{b.z:.1f})" if detector.is_baseline_set and b else "unset"
                    print("---- stats ----")
                    print(
                        f"field_rx={stats.field_rx} acc_rx={stats.acc_rx} drop={listener.dropped} "
                        f"short={stats.short_clicks} long={stats.long_clicks} rejected={stats.rejected} "
                        f"actions={stats.actions_run} baseline={base_txt}"
                    )
    finally:
        notifier.stop()
        bus.shutdown()
        actions.close()
        if recorder is not None:
            recorder.close()
            print(f"Recorded {recorder.rows} samples to {args.record}")

    return 0


def main() -> int:
    try:
        return run()
    except (TimeoutError, RuntimeError, OSError, ValueError, can.CanError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
