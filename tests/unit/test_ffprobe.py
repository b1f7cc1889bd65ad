import pytest
import json
import subprocess
from pathlib import Path
from unittest.mock import patch
from smallmp4.domain.errors import InputNotFoundError, MetadataProbeError
from smallmp4.infrastructure.ffprobe import FFprobeAdapter, parse_fraction


def probe_output(stream_overrides=None, fmt=None):
    stream = {
        "index": 0,
        "codec_name": "h264",
        "codec_type": "video",
        "width": 1920,
        "height": 1080,
        "r_frame_rate": "30/1",
        "avg_frame_rate": "30/1",
    }
    stream.update(stream_overrides or {})
    audio = {"index": 1, "codec_name": "aac", "codec_type": "audio"}
    return {
        "streams": [audio, stream],
        "format": fmt if fmt is not None else {"duration": "60.0", "bit_rate": "5000000"},
    }


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"\0" * 100)
    return path


def mock_ffprobe(mock_run, data, returncode=0, stderr=""):
    mock_run.return_value.stdout = json.dumps(data) if isinstance(data, dict) else data
    mock_run.return_value.returncode = returncode
    mock_run.return_value.stderr = stderr


def test_parse_fraction():
    assert parse_fraction("30/1") == 30.0
    assert parse_fraction("30000/1001") == pytest.approx(29.97, abs=0.01)
    assert parse_fraction("0/0") is None
    assert parse_fraction("abc") is None


def test_probe_reads_video_stream(video_file):
    with patch("subprocess.run") as mock_run:
        mock_ffprobe(mock_run, probe_output())
        metadata = FFprobeAdapter().probe(video_file)

    assert metadata.width == 1920
    assert metadata.height == 1080
    assert metadata.fps == 30.0
    assert metadata.duration_seconds == 60.0
    assert metadata.bitrate_kbps == 5000
    assert metadata.codec == "h264"

    cmd = mock_run.call_args[0][0]
    assert cmd[0] == "ffprobe"
    assert "-show_streams" in cmd
    assert cmd[-1] == str(video_file)


def test_probe_falls_back_to_avg_frame_rate_and_stream_duration(video_file):
    data = probe_output({"r_frame_rate": "0/0", "avg_frame_rate": "25/1", "duration": "12.5"}, fmt={})
    with patch("subprocess.run") as mock_run:
        mock_ffprobe(mock_run, data)
        metadata = FFprobeAdapter().probe(video_file)

    assert metadata.fps == 25.0
    assert metadata.duration_seconds == 12.5
    assert metadata.bitrate_kbps is None


def test_probe_missing_file(tmp_path):
    with patch("subprocess.run") as mock_run:
        with pytest.raises(InputNotFoundError):
            FFprobeAdapter().probe(tmp_path / "missing.mp4")
    mock_run.assert_not_called()


def test_probe_without_video_stream(video_file):
    data = {"streams": [{"codec_type": "audio"}], "format": {"duration": "5"}}
    with patch("subprocess.run") as mock_run:
        mock_ffprobe(mock_run, data)
        with pytest.raises(MetadataProbeError, match="No video stream"):
            FFprobeAdapter().probe(video_file)


def test_probe_without_duration(video_file):
    with patch("subprocess.run") as mock_run:
        mock_ffprobe(mock_run, probe_output(fmt={"bit_rate": "100000"}))
        with pytest.raises(MetadataProbeError, match="duration"):
            FFprobeAdapter().probe(video_file)


def test_probe_zero_dimensions(video_file):
    with patch("subprocess.run") as mock_run:
        mock_ffprobe(mock_run, probe_output({"width": 0}))
        with pytest.raises(MetadataProbeError, match="Invalid stream properties"):
            FFprobeAdapter().probe(video_file)


def test_ffprobe_error(video_file):
    with patch("subprocess.run") as mock_run:
        mock_ffprobe(mock_run, "", returncode=1, stderr="moov atom not found")
        with pytest.raises(MetadataProbeError, match="moov atom not found"):
            FFprobeAdapter().get_stream_info(video_file)


def test_ffprobe_garbage_output(video_file):
    with patch("subprocess.run") as mock_run:
        mock_ffprobe(mock_run, "not json")
        with pytest.raises(MetadataProbeError, match="Failed to parse"):
            FFprobeAdapter().get_stream_info(video_file)


def test_ffprobe_not_installed(video_file):
    with patch("subprocess.run", side_effect=FileNotFoundError("ffprobe")):
        with pytest.raises(MetadataProbeError, match="not found"):
            FFprobeAdapter(ffprobe_path="/opt/ffprobe").get_stream_info(video_file)


def test_ffprobe_timeout(video_file):
    with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="ffprobe", timeout=5)):
        with pytest.raises(MetadataProbeError, match="timed out"):
            FFprobeAdapter(timeout=5).get_stream_info(video_file)
