#!/usr/bin/env python3
"""
Streaming gesture detector for headset-magnet pull gestures.

Consumes magnetometer and accelerometer samples and emits short-click and
long-click events. Pure computation: callers pass timestamps (monotonic
seconds) or let each call read time.monotonic().
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
import math
import time
from typing import Iterable, Iterator

HISTORY_SIZE = 10
BASELINE_MIN_SAMPLES = 5
PATTERN_SAMPLES = 3
SETTLE_MS = 500

CHANNEL_FIELD = 1
CHANNEL_ACCELERATION = 2

GESTURE_SHORT_CLICK = 1
GESTURE_LONG_CLICK = 2

GESTURE_NAMES = {
    GESTURE_SHORT_CLICK: "SHORT_CLICK",
    GESTURE_LONG_CLICK: "LONG_CLICK",
}

AXIS_NAMES = ("x", "y", "z")


@dataclass(frozen=True)
class Vector3:
    x: float
    y: float
    z: float

    def __getitem__(self, axis: int) -> float:
        return (self.x, self.y, self.z)[axis]

    def __sub__(self, other: "Vector3") -> "Vector3":
        return Vector3(self.x - other.x, self.y - other.y, self.z - other.z)

    def norm(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def as_tuple(self) -> tuple[float, float, float]:
        return self.x, self.y, self.z


@dataclass
class GestureEvent:
    type: int
    timestamp_s: float

    def name(self) -> str:
        return GESTURE_NAMES.get(self.type, f"UNKNOWN_{self.type}")

    def to_text(self) -> str:
        return f"{self.name()} t={self.timestamp_s:.3f}s"


@dataclass
class GestureDetectionConfig:
    click_threshold: float = 80.0
    long_click_threshold: float = 150.0
    cooldown_ms: int = 1000
    long_hold_ms: int = 600
    # None picks the axis with the largest variance over the field history.
    primary_axis: int | None = 0
    pull_direction: int = -1
    trend_fraction: float = 0.2
    dominance_ratio: float = 0.8
    primary_fraction: float = 0.6
    baseline_fraction: float = 0.7
    quick_change_fraction: float = 0.3
    direction_margin: float = 5.0
    accel_movement_threshold: float = 1.0

    def __post_init__(self):
        if self.click_threshold < 0.0 or self.long_click_threshold < 0.0:
            raise ValueError("thresholds must be >= 0")
        if self.long_click_threshold < self.click_threshold:
            raise ValueError(
                f"long_click_threshold ({self.long_click_threshold}) must be >= "
                f"click_threshold ({self.click_threshold})"
            )
        if self.cooldown_ms < 0 or self.long_hold_ms < 0:
            raise ValueError("cooldown_ms and long_hold_ms must be >= 0")
        if self.primary_axis is not None and self.primary_axis not in (0, 1, 2):
            raise ValueError("primary_axis must be 0..2 or None")
        if self.pull_direction not in (-1, 1):
            raise ValueError("pull_direction must be -1 or 1")


class SampleHistory:
    """Fixed-capacity FIFO of the most recent samples of one channel."""

    def __init__(self, capacity: int = HISTORY_SIZE):
        self._buf: deque[Vector3] = deque(maxlen=capacity)

    def push(self, sample: Vector3) -> None:
        self._buf.append(sample)

    def recent(self, k: int) -> list[Vector3]:
        if k <= 0:
            return []
        items = list(self._buf)
        return items[-k:]

    def clear(self) -> None:
        self._buf.clear()

    def __len__(self) -> int:
        return len(self._buf)

    def __iter__(self) -> Iterator[Vector3]:
        return iter(self._buf)


class BaselineEstimator:
    """
    Resting field reference.

    The value may be seeded provisionally (first sample) without counting as
    set; only `set()` marks it valid.
    """

    def __init__(self):
        self._value: Vector3 | None = None
        self._is_set = False

    @staticmethod
    def compute(history: Iterable[Vector3]) -> Vector3:
        samples = list(history)
        n = float(len(samples))
        return Vector3(
            sum(s.x for s in samples) / n,
            sum(s.y for s in samples) / n,
            sum(s.z for s in samples) / n,
        )

    @property
    def value(self) -> Vector3 | None:
        return self._value

    @property
    def is_set(self) -> bool:
        return self._is_set

    def seed(self, value: Vector3) -> None:
        self._value = value

    def set(self, value: Vector3) -> None:
        self._value = value
        self._is_set = True

    def invalidate(self) -> None:
        self._value = None
        self._is_set = False


@dataclass(frozen=True)
class Deltas:
    instant: float
    baseline: float


class DeltaClassifier:
    @staticmethod
    def compute(current: Vector3, last: Vector3, baseline: Vector3 | None) -> Deltas:
        instant = (current - last).norm()
        from_baseline = (current - baseline).norm() if baseline is not None else 0.0
        return Deltas(instant=instant, baseline=from_baseline)

    @staticmethod
    def exceeds_click(deltas: Deltas, config: GestureDetectionConfig) -> bool:
        return deltas.instant > config.click_threshold

    @staticmethod
    def exceeds_long_click(deltas: Deltas, config: GestureDetectionConfig) -> bool:
        return deltas.instant > config.long_click_threshold

    @staticmethod
    def baseline_gate(deltas: Deltas, config: GestureDetectionConfig) -> bool:
        return deltas.baseline > config.click_threshold


@dataclass(frozen=True)
class PatternReport:
    axis: int
    trend: bool
    movement: bool
    dominance: bool
    baseline: bool

    @property
    def accepted(self) -> bool:
        return self.trend and self.movement and self.dominance and self.baseline

    def to_text(self) -> str:
        return (
            f"axis={AXIS_NAMES[self.axis]} trend={int(self.trend)} movement={int(self.movement)} "
            f"dominance={int(self.dominance)} baseline={int(self.baseline)}"
        )


class PatternAnalyzer:
    """
    Heuristics that tell a deliberate magnet pull from ambient noise.

    All four checks must pass: a directional trend on the primary axis,
    device movement seen by the accelerometer, primary-axis dominance of the
    instant change, and a primary-axis offset from the baseline.
    """

    def __init__(self, config: GestureDetectionConfig):
        self.config = config

    def select_axis(self, field_history: SampleHistory) -> int:
        if self.config.primary_axis is not None:
            return self.config.primary_axis
        samples = list(field_history)
        if len(samples) < 2:
            return 0
        best_axis = 0
        best_var = -1.0
        for axis in range(3):
            vals = [s[axis] for s in samples]
            mean = sum(vals) / len(vals)
            var = sum((v - mean) ** 2 for v in vals) / len(vals)
            if var > best_var:
                best_axis = axis
                best_var = var
        return best_axis

    def check_trend(self, field_history: SampleHistory, axis: int, click_threshold: float) -> bool:
        recent = field_history.recent(PATTERN_SAMPLES)
        if len(recent) < PATTERN_SAMPLES:
            return False
        diffs = [recent[i + 1][axis] - recent[i][axis] for i in range(len(recent) - 1)]
        toward_pull = any(self.config.pull_direction * d > 0.0 for d in diffs)
        large_enough = any(abs(d) > self.config.trend_fraction * click_threshold for d in diffs)
        return toward_pull and large_enough

    def check_movement(self, accel_history: SampleHistory) -> bool:
        recent = accel_history.recent(PATTERN_SAMPLES)
        if len(recent) < PATTERN_SAMPLES:
            return False
        mags = [s.norm() for s in recent]
        largest = max(abs(mags[i + 1] - mags[i]) for i in range(len(mags) - 1))
        return largest > self.config.accel_movement_threshold

    def check_dominance(
        self,
        field_history: SampleHistory,
        last_sample: Vector3,
        current_sample: Vector3,
        axis: int,
        click_threshold: float,
    ) -> bool:
        cfg = self.config
        step = current_sample - last_sample
        primary = abs(step[axis])
        others = sum(abs(step[a]) for a in range(3) if a != axis)
        if primary <= cfg.dominance_ratio * others:
            return False
        if primary <= cfg.primary_fraction * click_threshold:
            return False
        if cfg.pull_direction * step[axis] <= cfg.direction_margin:
            return False
        recent = field_history.recent(PATTERN_SAMPLES)
        if len(recent) < PATTERN_SAMPLES:
            return False
        quick_change = abs(recent[-1][axis] - recent[0][axis])
        return quick_change > cfg.quick_change_fraction * click_threshold

    def check_baseline(
        self, current_sample: Vector3, baseline: Vector3 | None, axis: int, click_threshold: float
    ) -> bool:
        if baseline is None:
            return False
        offset = abs(current_sample[axis] - baseline[axis])
        return offset > self.config.baseline_fraction * click_threshold

    def evaluate(
        self,
        field_history: SampleHistory,
        accel_history: SampleHistory,
        last_sample: Vector3,
        current_sample: Vector3,
        baseline: Vector3 | None,
        click_threshold: float,
    ) -> PatternReport:
        axis = self.select_axis(field_history)
        return PatternReport(
            axis=axis,
            trend=self.check_trend(field_history, axis, click_threshold),
            movement=self.check_movement(accel_history),
            dominance=self.check_dominance(field_history, last_sample, current_sample, axis, click_threshold),
            baseline=self.check_baseline(current_sample, baseline, axis, click_threshold),
        )

    def analyze(
        self,
        field_history: SampleHistory,
        accel_history: SampleHistory,
        last_sample: Vector3,
        current_sample: Vector3,
        baseline: Vector3 | None,
        click_threshold: float,
    ) -> bool:
        return self.evaluate(
            field_history, accel_history, last_sample, current_sample, baseline, click_threshold
        ).accepted


class GestureDetector:
    def __init__(self, config: GestureDetectionConfig | None = None):
        self.config = config if config is not None else GestureDetectionConfig()
        self.analyzer = PatternAnalyzer(self.config)
        self.field_history = SampleHistory()
        self.accel_history = SampleHistory()
        self._baseline = BaselineEstimator()
        self.last_report: PatternReport | None = None
        self.reset_state()

    def apply_config(self, config: GestureDetectionConfig) -> None:
        self.config = config
        self.analyzer.config = config

    def set_thresholds(self, click: float, long_click: float) -> None:
        self.apply_config(replace(self.config, click_threshold=float(click), long_click_threshold=float(long_click)))

    def set_cooldown(self, ms: int) -> None:
        self.apply_config(replace(self.config, cooldown_ms=int(ms)))

    def set_long_hold(self, ms: int) -> None:
        self.apply_config(replace(self.config, long_hold_ms=int(ms)))

    def reset_state(self) -> None:
        self.field_history.clear()
        self.accel_history.clear()
        self._baseline.invalidate()
        self._last_field: Vector3 | None = None
        self._last_acceleration: Vector3 | None = None
        self._is_initialized = False
        self._last_gesture_s: float | None = None
        self._settle_until_s: float | None = None
        self._long_cross_start_s: float | None = None
        self._long_armed = True
        self.last_report = None

    def reset_baseline(self) -> None:
        self.field_history.clear()
        self.accel_history.clear()
        self._baseline.invalidate()

    def calibrate_now(self) -> bool:
        if self._last_field is None:
            return False
        self._baseline.set(self._last_field)
        return True

    @property
    def last_field(self) -> Vector3 | None:
        return self._last_field

    @property
    def last_acceleration(self) -> Vector3 | None:
        return self._last_acceleration

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    @property
    def is_baseline_set(self) -> bool:
        return self._baseline.is_set

    @property
    def baseline(self) -> Vector3 | None:
        return self._baseline.value

    @property
    def last_gesture_time(self) -> float | None:
        return self._last_gesture_s

    @property
    def long_threshold_cross_start(self) -> float | None:
        return self._long_cross_start_s

    def is_gesture_in_progress(self, now_s: float | None = None) -> bool:
        if self._settle_until_s is None:
            return False
        if now_s is None:
            now_s = time.monotonic()
        if float(now_s) >= self._settle_until_s:
            self._settle_until_s = None
            return False
        return True

    def _begin_settle(self, now_s: float) -> None:
        self._settle_until_s = now_s + SETTLE_MS / 1000.0

    def _cooldown_elapsed(self, now_s: float) -> bool:
        if self._last_gesture_s is None:
            return True
        return (now_s - self._last_gesture_s) * 1000.0 > self.config.cooldown_ms

    def process_sample(self, channel: int, x: float, y: float, z: float, now_s: float | None = None) -> list[GestureEvent]:
        if channel == CHANNEL_FIELD:
            return self.process_field_sample(x, y, z, now_s)
        if channel == CHANNEL_ACCELERATION:
            self.process_acceleration_sample(x, y, z, now_s)
            return []
        raise ValueError(f"unknown channel {channel}")

    def process_acceleration_sample(self, x: float, y: float, z: float, now_s: float | None = None) -> None:
        sample = Vector3(float(x), float(y), float(z))
        self._last_acceleration = sample
        self.accel_history.push(sample)

    def process_field_sample(self, x: float, y: float, z: float, now_s: float | None = None) -> list[GestureEvent]:
        if now_s is None:
            now_s = time.monotonic()
        now_s = float(now_s)

        sample = Vector3(float(x), float(y), float(z))
        if not self._is_initialized or self._last_field is None:
            self._last_field = sample
            self.field_history.push(sample)
            self._baseline.seed(sample)
            self._is_initialized = True
            return []

        self.field_history.push(sample)
        if not self._baseline.is_set and len(self.field_history) >= BASELINE_MIN_SAMPLES:
            self._baseline.set(BaselineEstimator.compute(self.field_history))

        deltas = DeltaClassifier.compute(sample, self._last_field, self._baseline.value)
        out: list[GestureEvent] = []

        ev = self._check_short_click(sample, deltas, now_s)
        if ev is not None:
            out.append(ev)
        ev = self._check_long_click(deltas, now_s)
        if ev is not None:
            out.append(ev)

        self._last_field = sample
        return out

    def _check_short_click(self, sample: Vector3, deltas: Deltas, now_s: float) -> GestureEvent | None:
        cfg = self.config
        if not DeltaClassifier.exceeds_click(deltas, cfg):
            return None
        if not self._baseline.is_set or self.is_gesture_in_progress(now_s):
            return None
        if not self._cooldown_elapsed(now_s):
            return None
        if not DeltaClassifier.baseline_gate(deltas, cfg):
            return None

        self.last_report = self.analyzer.evaluate(
            self.field_history,
            self.accel_history,
            self._last_field,
            sample,
            self._baseline.value,
            cfg.click_threshold,
        )
        if not self.last_report.accepted:
            return None

        self._last_gesture_s = now_s
        self._begin_settle(now_s)
        return GestureEvent(GESTURE_SHORT_CLICK, now_s)

    def _check_long_click(self, deltas: Deltas, now_s: float) -> GestureEvent | None:
        if not DeltaClassifier.exceeds_long_click(deltas, self.config):
            self._long_cross_start_s = None
            self._long_armed = True
            return None
        if not self._long_armed:
            return None

        if self._long_cross_start_s is None:
            self._long_cross_start_s = now_s
        held_ms = (now_s - self._long_cross_start_s) * 1000.0
        if held_ms < self.config.long_hold_ms or self.is_gesture_in_progress(now_s):
            return None

        self._long_cross_start_s = None
        self._long_armed = False
        self._begin_settle(now_s)
        return GestureEvent(GESTURE_LONG_CLICK, now_s)
