import sys

import can
import pytest

from gesture_detection import (
    CHANNEL_ACCELERATION,
    CHANNEL_FIELD,
    GESTURE_LONG_CLICK,
    GESTURE_SHORT_CLICK,
    GestureDetectionConfig,
    GestureDetector,
    GestureEvent,
    Vector3,
)
from magclick import (
    GestureActionRunner,
    adjust_click_threshold,
    apply_cli_overrides,
    feed_sample,
    handle_key,
    parse_args,
    run,
)
from magclick_io import ActionSettings, MagclickSettings, SensorSample, load_json


@pytest.fixture
def detector():
    det = GestureDetector(GestureDetectionConfig())
    for i in range(5):
        det.process_field_sample(-338.0, 0.0, 0.0, i * 0.01)
    return det


@pytest.fixture
def actions():
    return GestureActionRunner(ActionSettings())


def test_quit_keys(detector, actions):
    for ch in ("x", "\x03", "\x04"):
        assert handle_key(ch, detector, actions, None) is False
    assert handle_key("q", detector, actions, None) is True


def test_reset_key_drops_baseline(detector, actions):
    assert detector.is_baseline_set
    assert handle_key("r", detector, actions, None)
    assert not detector.is_baseline_set


def test_calibrate_key(actions, capsys):
    det = GestureDetector()
    handle_key("c", det, actions, None)
    assert "no magnetometer sample" in capsys.readouterr().out
    det.process_field_sample(-300.0, 1.0, 2.0, 0.0)
    handle_key("c", det, actions, None)
    assert det.is_baseline_set
    assert "Baseline calibrated to (-300.0, 1.0, 2.0)" in capsys.readouterr().out


def test_threshold_keys_save_user_config(detector, actions, tmp_path):
    user = tmp_path / "magclick_conf.json"
    handle_key("+", detector, actions, user)
    assert detector.config.click_threshold == 85.0
    assert load_json(user)["detector"]["click_threshold"] == 85.0

    handle_key("-", detector, actions, user)
    handle_key("-", detector, actions, user)
    assert detector.config.click_threshold == 75.0
    assert load_json(user)["detector"]["click_threshold"] == 75.0


def test_threshold_clamped_and_long_follows():
    det = GestureDetector(GestureDetectionConfig(click_threshold=12.0, long_click_threshold=150.0))
    assert adjust_click_threshold(det, -5.0) == 10.0

    det = GestureDetector(GestureDetectionConfig(click_threshold=150.0, long_click_threshold=150.0))
    assert adjust_click_threshold(det, 5.0) == 155.0
    assert det.config.long_click_threshold == 155.0

    det = GestureDetector(GestureDetectionConfig(click_threshold=298.0, long_click_threshold=300.0))
    assert adjust_click_threshold(det, 5.0) == 300.0


def test_toggle_actions(detector, actions):
    assert actions.enabled
    handle_key("e", detector, actions, None)
    assert not actions.enabled
    handle_key("e", detector, actions, None)
    assert actions.enabled


def test_disabled_actions_do_not_run(capsys):
    runner = GestureActionRunner(ActionSettings(enabled=False, click_command=[sys.executable, "-c", "pass"]))
    assert not runner.run(GestureEvent(GESTURE_SHORT_CLICK, 0.0))
    assert "disabled" in capsys.readouterr().out


def test_action_runs_configured_command():
    runner = GestureActionRunner(ActionSettings(click_command=[sys.executable, "-c", "pass"]))
    assert runner.run(GestureEvent(GESTURE_SHORT_CLICK, 0.0))
    assert not runner.run(GestureEvent(GESTURE_LONG_CLICK, 0.0))
    runner.close()


def test_missing_executable_is_reported(tmp_path, capsys):
    runner = GestureActionRunner(ActionSettings(long_click_command=[str(tmp_path / "nope")]))
    assert not runner.run(GestureEvent(GESTURE_LONG_CLICK, 0.0))
    assert "Failed to run LONG_CLICK" in capsys.readouterr().err


def test_feed_sample_routes_channels():
    det = GestureDetector()
    assert feed_sample(det, SensorSample(CHANNEL_ACCELERATION, Vector3(0.0, 0.0, 9.8), 0.0)) == []
    assert feed_sample(det, SensorSample(CHANNEL_FIELD, Vector3(-338.0, 0.0, 0.0), 0.0)) == []
    assert det.last_acceleration == Vector3(0.0, 0.0, 9.8)
    assert det.last_field == Vector3(-338.0, 0.0, 0.0)


def test_cli_overrides():
    args = parse_args([
        "--channel", "vcan0",
        "--device-id", "5",
        "--click-threshold", "120",
        "--axis", "auto",
        "--cooldown-ms", "250",
        "--no-actions",
    ])
    s = apply_cli_overrides(MagclickSettings(), args)
    assert s.can.channel == "vcan0"
    assert s.can.interface == "socketcan"
    assert s.can.device_id == 5
    assert s.detector.click_threshold == 120.0
    assert s.detector.long_click_threshold == 150.0
    assert s.detector.primary_axis is None
    assert s.detector.cooldown_ms == 250
    assert not s.actions.enabled


def test_cli_click_above_long_raises_long():
    s = apply_cli_overrides(MagclickSettings(), parse_args(["--click-threshold", "200"]))
    assert s.detector.long_click_threshold == 200.0


def test_cli_rejects_bad_device_id():
    with pytest.raises(ValueError):
        apply_cli_overrides(MagclickSettings(), parse_args(["--device-id", "200"]))


def test_record_file_not_created_when_bus_fails(monkeypatch, tmp_path):
    def no_bus(**_kwargs):
        raise can.CanError("no such device")

    monkeypatch.setattr(can, "Bus", no_bus)
    record = tmp_path / "session.csv"
    with pytest.raises(can.CanError):
        run([
            "--no-device-check",
            "--no-keys",
            "--config", str(tmp_path / "user.json"),
            "--record", str(record),
        ])
    assert not record.exists()
