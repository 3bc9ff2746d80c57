#!/usr/bin/env python3
from __future__ import annotations

import csv
import json
import queue
import shlex
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, TextIO

import can

from gesture_detection import (
    AXIS_NAMES,
    CHANNEL_ACCELERATION,
    CHANNEL_FIELD,
    GestureDetectionConfig,
    Vector3,
)
from sensor_can_tool import (
    ACC_MG_TO_MS2,
    FRAME_ACC,
    FRAME_MAG,
    MAG_MG_TO_UT,
    parse_vector_frame,
    device_id_from_status_id,
)

# Range of the threshold slider in the settings screen.
THRESHOLD_MIN = 10.0
THRESHOLD_MAX = 300.0

RECORD_HEADER = ["t_s", "channel", "x", "y", "z"]


@dataclass
class CanSettings:
    channel: str = "can0"
    interface: str = "socketcan"
    device_id: int = 1
    mag_ms: int = 10
    acc_ms: int = 10


@dataclass
class ActionSettings:
    enabled: bool = True
    click_command: list[str] | None = None
    long_click_command: list[str] | None = None


@dataclass
class MagclickSettings:
    can: CanSettings = field(default_factory=CanSettings)
    detector: GestureDetectionConfig = field(default_factory=GestureDetectionConfig)
    actions: ActionSettings = field(default_factory=ActionSettings)


@dataclass(frozen=True)
class SensorSample:
    channel: int
    vector: Vector3
    timestamp_s: float


def resolve_local(path_str: str) -> Path:
    p = Path(path_str).expanduser()
    if not p.is_absolute():
        p = (Path(__file__).resolve().parent / p).resolve()
    return p


def load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def save_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=True, indent=2, sort_keys=True)
        f.write("\n")


def deep_merge(dst: dict[str, Any], src: dict[str, Any]) -> dict[str, Any]:
    out = dict(dst)
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _clamp_int(value: Any, lo: int, hi: int, default: int) -> int:
    try:
        iv = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, iv))


def _clamp_float(value: Any, lo: float, hi: float, default: float) -> float:
    try:
        fv = float(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, fv))


def _opt_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in {"1", "true", "yes", "on"}:
            return True
        if s in {"0", "false", "no", "off"}:
            return False
    return None


def _parse_command(raw: Any) -> list[str] | None:
    if raw is None:
        return None
    if isinstance(raw, list):
        out = [str(x).strip() for x in raw if str(x).strip()]
        return out or None
    if isinstance(raw, str):
        parts = shlex.split(raw)
        return [p for p in parts if p] or None
    return None


def parse_axis(raw: Any, default: int | None = 0) -> int | None:
    if raw is None:
        return default
    if isinstance(raw, str):
        s = raw.strip().lower()
        if s == "auto":
            return None
        if s in AXIS_NAMES:
            return AXIS_NAMES.index(s)
        if s.isdigit():
            raw = int(s)
        else:
            return default
    if isinstance(raw, bool):
        return default
    if isinstance(raw, int) and 0 <= raw <= 2:
        return raw
    return default


def clamp_threshold(value: Any, default: float) -> float:
    return _clamp_float(value, THRESHOLD_MIN, THRESHOLD_MAX, default)


def parse_detector_settings(raw: Any) -> GestureDetectionConfig:
    d = GestureDetectionConfig()
    if not isinstance(raw, dict):
        return d

    click = clamp_threshold(raw.get("click_threshold", d.click_threshold), d.click_threshold)
    long_click = clamp_threshold(raw.get("long_click_threshold", d.long_click_threshold), d.long_click_threshold)
    long_click = max(long_click, click)

    direction_raw = raw.get("pull_direction", d.pull_direction)
    direction = _clamp_int(direction_raw, -1, 1, d.pull_direction)
    if direction == 0:
        direction = d.pull_direction

    return GestureDetectionConfig(
        click_threshold=click,
        long_click_threshold=long_click,
        cooldown_ms=_clamp_int(raw.get("cooldown_ms", d.cooldown_ms), 0, 60000, d.cooldown_ms),
        long_hold_ms=_clamp_int(raw.get("long_hold_ms", d.long_hold_ms), 0, 60000, d.long_hold_ms),
        primary_axis=parse_axis(raw.get("primary_axis", d.primary_axis), d.primary_axis),
        pull_direction=direction,
        trend_fraction=_clamp_float(raw.get("trend_fraction"), 0.0, 10.0, d.trend_fraction),
        dominance_ratio=_clamp_float(raw.get("dominance_ratio"), 0.0, 10.0, d.dominance_ratio),
        primary_fraction=_clamp_float(raw.get("primary_fraction"), 0.0, 10.0, d.primary_fraction),
        baseline_fraction=_clamp_float(raw.get("baseline_fraction"), 0.0, 10.0, d.baseline_fraction),
        quick_change_fraction=_clamp_float(raw.get("quick_change_fraction"), 0.0, 10.0, d.quick_change_fraction),
        direction_margin=_clamp_float(raw.get("direction_margin"), 0.0, 1000.0, d.direction_margin),
        accel_movement_threshold=_clamp_float(
            raw.get("accel_movement_threshold"), 0.0, 100.0, d.accel_movement_threshold
        ),
    )


def parse_can_settings(raw: Any) -> CanSettings:
    d = CanSettings()
    if not isinstance(raw, dict):
        return d
    channel = str(raw.get("channel", d.channel)).strip() or d.channel
    interface = str(raw.get("interface", d.interface)).strip() or d.interface
    return CanSettings(
        channel=channel,
        interface=interface,
        device_id=_clamp_int(raw.get("device_id", d.device_id), 0, 0x7F, d.device_id),
        mag_ms=_clamp_int(raw.get("mag_ms", d.mag_ms), 0, 60000, d.mag_ms),
        acc_ms=_clamp_int(raw.get("acc_ms", d.acc_ms), 0, 60000, d.acc_ms),
    )


def parse_action_settings(raw: Any) -> ActionSettings:
    if not isinstance(raw, dict):
        return ActionSettings()
    enabled = _opt_bool(raw.get("enabled"))
    return ActionSettings(
        enabled=True if enabled is None else enabled,
        click_command=_parse_command(raw.get("click_command")),
        long_click_command=_parse_command(raw.get("long_click_command")),
    )


def load_settings(default_cfg_path: Path, user_cfg_path: Path) -> MagclickSettings:
    merged = deep_merge(load_json(default_cfg_path), load_json(user_cfg_path))
    return MagclickSettings(
        can=parse_can_settings(merged.get("can")),
        detector=parse_detector_settings(merged.get("detector")),
        actions=parse_action_settings(merged.get("actions")),
    )


def detector_settings_to_json(cfg: GestureDetectionConfig) -> dict[str, Any]:
    out = asdict(cfg)
    out["primary_axis"] = "auto" if cfg.primary_axis is None else AXIS_NAMES[cfg.primary_axis]
    return out


def save_user_detector_settings(user_cfg_path: Path, cfg: GestureDetectionConfig) -> None:
    """Write the detector section into the user config, keeping other sections."""
    payload = load_json(user_cfg_path)
    payload["detector"] = detector_settings_to_json(cfg)
    save_json(user_cfg_path, payload)


def build_vector_frame(subtype: int, x: int, y: int, z: int) -> bytes:
    data = bytearray(8)
    data[0] = 0
    data[1] = subtype & 0xFF
    for i, v in enumerate((x, y, z)):
        iv = max(-32768, min(32767, int(v)))
        data[2 + 2 * i:4 + 2 * i] = iv.to_bytes(2, "little", signed=True)
    return bytes(data)


def frame_to_sample(data: bytes, timestamp_s: float) -> SensorSample | None:
    mag = parse_vector_frame(data, FRAME_MAG)
    if mag is not None:
        x, y, z = mag
        return SensorSample(CHANNEL_FIELD, Vector3(x * MAG_MG_TO_UT, y * MAG_MG_TO_UT, z * MAG_MG_TO_UT), timestamp_s)
    acc = parse_vector_frame(data, FRAME_ACC)
    if acc is not None:
        x, y, z = acc
        return SensorSample(
            CHANNEL_ACCELERATION,
            Vector3(x * ACC_MG_TO_MS2, y * ACC_MG_TO_MS2, z * ACC_MG_TO_MS2),
            timestamp_s,
        )
    return None


class CanSampleListener(can.Listener):
    def __init__(self, q: queue.Queue[SensorSample], device_id: int):
        super().__init__()
        self.q = q
        self.device_id = device_id
        self.dropped = 0

    def on_message_received(self, msg: can.Message) -> None:
        if device_id_from_status_id(msg.arbitration_id) != self.device_id:
            return
        # Bus timestamps are wall-clock; the detector runs on the monotonic clock.
        sample = frame_to_sample(bytes(msg.data), time.monotonic())
        if sample is None:
            return
        try:
            self.q.put_nowait(sample)
        except queue.Full:
            # Keep most recent samples under overload: drop one stale sample and retry.
            self.dropped += 1
            try:
                self.q.get_nowait()
                self.q.put_nowait(sample)
            except (queue.Empty, queue.Full):
                pass


class SampleRecorder:
    def __init__(self, f: TextIO):
        self._f = f
        self._writer = csv.writer(f)
        self._writer.writerow(RECORD_HEADER)
        self.rows = 0

    def write(self, sample: SensorSample) -> None:
        self._writer.writerow([f"{sample.timestamp_s:.6f}", sample.channel, *(f"{c:.4f}" for c in sample.vector.as_tuple())])
        self.rows += 1

    def close(self) -> None:
        self._f.close()
