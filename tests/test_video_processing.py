import pytest

from provn import config
from provn.services import video_processing
from provn.services.video_processing import frame_timestamps, thumbnail_timestamp


def test_frame_timestamps_skip_the_ends():
    assert frame_timestamps(10.0, 4) == [2.0, 4.0, 6.0, 8.0]
    assert frame_timestamps(10.0, 1) == [5.0]


def test_frame_timestamps_rounding():
    points = frame_timestamps(1.0, 2)
    assert points == [0.333, 0.667]
    assert all(0 < point < 1.0 for point in points)


@pytest.mark.parametrize("duration, count, expected", [
    (10.0, 0, []),
    (0.0, 5, [0.0]),
    (-1.0, 3, [0.0]),
])
def test_frame_timestamps_edge_cases(duration, count, expected):
    assert frame_timestamps(duration, count) == expected


def test_thumbnail_timestamp_kept_inside_long_video():
    assert thumbnail_timestamp(60.0, 5.0) == 5.0


def test_thumbnail_timestamp_clamped_for_short_video():
    assert thumbnail_timestamp(3.0, 5.0) == 1.5
    assert thumbnail_timestamp(5.0, 5.0) == 2.5


def test_thumbnail_timestamp_without_duration():
    assert thumbnail_timestamp(None, 5.0) == 5.0
    assert thumbnail_timestamp(0.0, 5.0) == 5.0


def test_health_check_needs_upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(video_processing, "check_ffmpeg_installation", lambda: True)
    monkeypatch.setattr(config, "TEMP_UPLOAD_DIR", str(tmp_path / "missing"))
    assert video_processing.health_check()["status"] == "degraded"

    monkeypatch.setattr(config, "TEMP_UPLOAD_DIR", str(tmp_path))
    assert video_processing.health_check() == {"status": "healthy", "ffmpeg": True, "directories": True}
