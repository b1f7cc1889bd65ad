import os
import pytest
from pathlib import Path
from typing import List, Sequence, Tuple
from unittest.mock import MagicMock, patch
from smallmp4.domain.capabilities import AcceleratorDevice, HardwareCapabilities, ProbeResult, ProbeStatus
from smallmp4.domain.encoders import HardwareEncoderKind, Vendor
from smallmp4.domain.models import VideoMetadata


class FakeProcess:
    """Stands in for an ffmpeg Popen: scripted output lines and exit code.

    On success it writes a small file at the last argument, like ffmpeg
    writing its output, unless that is the null device.
    """

    def __init__(self, cmd: List[str], lines: Sequence[str], returncode: int, output_bytes: int):
        self.args = cmd
        self.stdout = iter(lines)
        self.returncode = returncode
        if returncode == 0 and output_bytes and cmd[-1] != os.devnull:
            Path(cmd[-1]).write_bytes(b"\0" * output_bytes)

    def wait(self):
        return self.returncode


class ScriptedFFmpeg:
    def __init__(self):
        self.runs: List[Tuple[Sequence[str], int, int]] = []
        self.calls: List[List[str]] = []

    def succeed(self, lines: Sequence[str] = (), output_bytes: int = 2048):
        self.runs.append((lines, 0, output_bytes))
        return self

    def fail(self, lines: Sequence[str] = ("Conversion failed!",), returncode: int = 1):
        self.runs.append((lines, returncode, 0))
        return self

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        lines, code, output_bytes = self.runs.pop(0) if self.runs else ((), 0, 2048)
        return FakeProcess(list(cmd), lines, code, output_bytes)


@pytest.fixture
def fake_ffmpeg():
    """Patches subprocess.Popen with a scripted sequence of ffmpeg runs."""
    script = ScriptedFFmpeg()
    with patch("subprocess.Popen", side_effect=script):
        yield script


@pytest.fixture
def metadata_1080p():
    return VideoMetadata(width=1920, height=1080, fps=30.0, duration_seconds=60.0, codec="h264")


@pytest.fixture
def input_video(tmp_path):
    path = tmp_path / "holiday.mov"
    path.write_bytes(b"\0" * 50_000)
    return path


@pytest.fixture
def probe_stub(metadata_1080p):
    stub = MagicMock()
    stub.probe.return_value = metadata_1080p
    return stub


def nvidia_device(device_id: int = 0, cc=(7, 5), memory_mb: int = 8192) -> AcceleratorDevice:
    return AcceleratorDevice(
        id=device_id,
        name=f"GPU {device_id}",
        vendor=Vendor.NVIDIA,
        compute_capability=cc,
        memory_mb=memory_mb,
        max_concurrent_sessions=3,
    )


def make_capabilities(*encoders: HardwareEncoderKind, devices: Sequence[AcceleratorDevice] = ()) -> HardwareCapabilities:
    result = ProbeResult(probe="test", status=ProbeStatus.FOUND, encoders=list(encoders), devices=list(devices))
    return HardwareCapabilities.from_probe_results([result])
