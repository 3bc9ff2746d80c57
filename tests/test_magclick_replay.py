import pytest

from gesture_detection import (
    CHANNEL_ACCELERATION,
    CHANNEL_FIELD,
    GESTURE_SHORT_CLICK,
    GestureDetectionConfig,
    GestureDetector,
    Vector3,
)
from magclick_io import SampleRecorder, SensorSample
from magclick_replay import load_recording, main, plot_recording, replay


def _pull_session():
    out = []
    t = 100.0
    field = [-338.0] * 6 + [-360.0, -449.0, -449.0, -338.0, -338.0, -338.0]
    for i, x in enumerate(field):
        z = 11.8 if i == 7 else 9.8
        out.append(SensorSample(CHANNEL_ACCELERATION, Vector3(0.0, 0.0, z), t))
        out.append(SensorSample(CHANNEL_FIELD, Vector3(x, 0.0, 0.0), t + 0.001))
        t += 0.01
    return out


@pytest.fixture
def recording(tmp_path):
    path = tmp_path / "session.csv"
    rec = SampleRecorder(path.open("w", encoding="utf-8", newline=""))
    for s in _pull_session():
        rec.write(s)
    rec.close()
    return path


def test_load_recording_shape(recording):
    arr = load_recording(recording)
    assert arr.shape == (24, 5)
    assert arr[1, 1] == CHANNEL_FIELD


def test_load_recording_rejects_wrong_columns(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("a,b,c\n1,2,3\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_recording(path)


def test_replay_finds_the_pull(recording):
    events = replay(load_recording(recording), GestureDetector(GestureDetectionConfig()))
    assert [e.type for e in events] == [GESTURE_SHORT_CLICK]
    assert events[0].timestamp_s == pytest.approx(100.071)


def test_plot_written(recording, tmp_path):
    arr = load_recording(recording)
    cfg = GestureDetectionConfig()
    out = tmp_path / "session.png"
    plot_recording(arr, replay(arr, GestureDetector(cfg)), cfg, out)
    assert out.exists()
    assert out.stat().st_size > 0


def test_main_prints_summary(recording, tmp_path, capsys):
    missing = tmp_path / "none.json"
    assert main([str(recording), "--config", str(missing)]) == 0
    out = capsys.readouterr().out
    assert "SHORT_CLICK" in out
    assert "samples=24 field=12 gestures=1" in out


def test_main_missing_file(tmp_path, capsys):
    assert main([str(tmp_path / "missing.csv")]) == 1
    assert "Error:" in capsys.readouterr().err
