import pytest
from conftest import make_capabilities, nvidia_device
from smallmp4.domain.encoders import HardwareEncoderKind
from smallmp4.domain.errors import CompressionFailedError, InputNotFoundError
from smallmp4.domain.events import (
    AttemptFailed, EncoderFallback, JobCompleted, JobFailed, JobStarted,
)
from smallmp4.domain.models import CompressionSettings, JobStatus
from smallmp4.infrastructure.event_bus import EventBus
from smallmp4.infrastructure.ffmpeg import FFmpegAdapter
from smallmp4.pipeline.orchestrator import Orchestrator

K = HardwareEncoderKind


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []
    for event_type in (JobStarted, AttemptFailed, EncoderFallback, JobCompleted, JobFailed):
        bus.subscribe(event_type, received.append)
    return received


def build_orchestrator(bus, probe_stub, tmp_path, capabilities):
    logs = tmp_path / "logs"
    logs.mkdir(exist_ok=True)
    ffmpeg = FFmpegAdapter(event_bus=bus, temp_dir=logs)
    return Orchestrator(bus, probe_stub, ffmpeg, capabilities)


def used_codecs(calls):
    return [cmd[cmd.index("-c:v") + 1] for cmd in calls]


def test_success_first_attempt(bus, events, probe_stub, input_video, tmp_path, fake_ffmpeg):
    caps = make_capabilities(K.NVENC_H264, devices=[nvidia_device()])
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, caps)
    settings = CompressionSettings(target_mb=10.0, encoder=K.NVENC_H264, hardware_acceleration=True, device_id=0)

    result = orchestrator.compress(input_video, settings)

    assert result.output_path == tmp_path / "holiday_compressed.mp4"
    assert result.output_path.exists()
    assert result.attempts == 1
    assert result.encoder_used == K.NVENC_H264
    assert result.hardware_accelerated
    assert result.input_size_bytes == 50_000
    assert result.output_size_bytes == 2048
    assert result.compression_ratio == pytest.approx(50_000 / 2048)
    assert not result.exceeded_target

    cmd = fake_ffmpeg.calls[0]
    assert cmd[cmd.index("-b:v") + 1] == "1199k"
    assert [type(e) for e in events] == [JobStarted, JobCompleted]
    assert events[0].bitrate_kbps == 1199
    assert events[-1].job.status == JobStatus.COMPLETED


def test_generic_failures_exhaust_attempts(bus, events, probe_stub, input_video, tmp_path, fake_ffmpeg):
    caps = make_capabilities(K.NVENC_H264, K.QSV_H264, devices=[nvidia_device()])
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, caps)
    fake_ffmpeg.fail(["Error while filtering: Invalid argument"])
    fake_ffmpeg.fail(["Conversion failed!"])
    fake_ffmpeg.fail(["av_interleaved_write_frame(): Broken pipe"])
    settings = CompressionSettings(encoder=K.NVENC_H264, hardware_acceleration=True)

    with pytest.raises(CompressionFailedError) as excinfo:
        orchestrator.compress(input_video, settings)

    assert excinfo.value.attempts == 3
    assert "Broken pipe" in excinfo.value.last_error
    assert str(excinfo.value).startswith("Compression failed after 3 attempts. Last error:")
    assert used_codecs(fake_ffmpeg.calls) == ["h264_nvenc", "libx264", "h264_nvenc"]

    assert not (tmp_path / "holiday_compressed.mp4").exists()
    assert list(tmp_path.glob(".holiday_compressed-*")) == []
    assert list((tmp_path / "logs").iterdir()) == []

    kinds = [type(e) for e in events]
    assert kinds.count(AttemptFailed) == 3
    assert kinds.count(EncoderFallback) == 2
    assert kinds[-1] is JobFailed
    assert events[-1].job.status == JobStatus.FAILED


def test_cuda_error_falls_back_to_other_vendor(bus, events, probe_stub, input_video, tmp_path, fake_ffmpeg):
    caps = make_capabilities(K.NVENC_H264, K.QSV_H264, devices=[nvidia_device()])
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, caps)
    fake_ffmpeg.fail(["[h264_nvenc] cuda device unavailable"])
    fake_ffmpeg.succeed()
    settings = CompressionSettings(encoder=K.NVENC_H264, hardware_acceleration=True)

    result = orchestrator.compress(input_video, settings)

    assert result.attempts == 2
    assert result.encoder_used == K.QSV_H264
    assert used_codecs(fake_ffmpeg.calls) == ["h264_nvenc", "h264_qsv"]
    fallback = next(e for e in events if isinstance(e, EncoderFallback))
    assert (fallback.from_encoder, fallback.to_encoder) == (K.NVENC_H264, K.QSV_H264)
    assert orchestrator.fallback.failure_stats() == {K.NVENC_H264: 1}


def test_memory_error_retries_with_fewer_threads(bus, probe_stub, input_video, tmp_path, fake_ffmpeg):
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities())
    fake_ffmpeg.fail(["Cannot allocate memory"])
    settings = CompressionSettings(encoder=K.SOFTWARE)

    result = orchestrator.compress(input_video, settings)

    assert result.attempts == 2
    assert result.encoder_used == K.SOFTWARE
    # failed first pass, then both passes of the retry
    assert len(fake_ffmpeg.calls) == 3
    assert "-threads" not in fake_ffmpeg.calls[0]
    retry_pass1 = fake_ffmpeg.calls[1]
    assert retry_pass1[retry_pass1.index("-threads") + 1] == "1"
    assert settings.memory_optimization is False


def test_device_error_moves_to_next_cuda_device(bus, probe_stub, input_video, tmp_path, fake_ffmpeg):
    devices = [nvidia_device(0), nvidia_device(1)]
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities(K.NVENC_H264, devices=devices))
    fake_ffmpeg.fail(["Device busy or unavailable"])
    settings = CompressionSettings(encoder=K.NVENC_H264, hardware_acceleration=True, device_id=0)

    result = orchestrator.compress(input_video, settings)

    assert result.attempts == 2
    first, second = fake_ffmpeg.calls
    assert first[first.index("-hwaccel_device") + 1] == "0"
    assert second[second.index("-hwaccel_device") + 1] == "1"


def test_software_generic_error_is_terminal(bus, events, probe_stub, input_video, tmp_path, fake_ffmpeg):
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities())
    fake_ffmpeg.fail(["Invalid data found when processing input"])

    with pytest.raises(CompressionFailedError) as excinfo:
        orchestrator.compress(input_video, CompressionSettings(encoder=K.SOFTWARE))

    assert excinfo.value.attempts == 1
    assert len(fake_ffmpeg.calls) == 1
    assert [type(e) for e in events] == [JobStarted, AttemptFailed, JobFailed]


def test_missing_input(bus, probe_stub, tmp_path, fake_ffmpeg):
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities())
    with pytest.raises(InputNotFoundError):
        orchestrator.compress(tmp_path / "missing.mov", CompressionSettings())
    probe_stub.probe.assert_not_called()
    assert fake_ffmpeg.calls == []


def test_explicit_output_path_creates_directory(bus, probe_stub, input_video, tmp_path, fake_ffmpeg):
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities(K.QSV_H264))
    output = tmp_path / "out" / "nested" / "small.mp4"
    settings = CompressionSettings(encoder=K.QSV_H264, hardware_acceleration=True)

    result = orchestrator.compress(input_video, settings, output_path=output)

    assert result.output_path == output
    assert output.exists()


def test_generated_name_never_overwrites(bus, probe_stub, input_video, tmp_path, fake_ffmpeg):
    existing = tmp_path / "holiday_compressed.mp4"
    existing.write_bytes(b"keep me")
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities(K.QSV_H264))
    settings = CompressionSettings(encoder=K.QSV_H264, hardware_acceleration=True)

    result = orchestrator.compress(input_video, settings)

    assert result.output_path == tmp_path / "holiday_small.mp4"
    assert existing.read_bytes() == b"keep me"


def test_broken_subscriber_does_not_fail_compression(bus, probe_stub, input_video, tmp_path, fake_ffmpeg):
    def broken(event):
        raise RuntimeError("display crashed")

    bus.subscribe(JobStarted, broken)
    bus.subscribe(JobCompleted, broken)
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities(K.QSV_H264))
    settings = CompressionSettings(encoder=K.QSV_H264, hardware_acceleration=True)

    result = orchestrator.compress(input_video, settings)
    assert result.output_path.exists()


def test_oversized_output_is_still_a_result(bus, probe_stub, input_video, tmp_path, fake_ffmpeg):
    fake_ffmpeg.succeed(output_bytes=2 * 1024 * 1024)
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities(K.QSV_H264))
    settings = CompressionSettings(target_mb=1.0, encoder=K.QSV_H264, hardware_acceleration=True)

    result = orchestrator.compress(input_video, settings)

    assert result.exceeded_target
    assert result.output_size_mb == pytest.approx(2.0)


def test_existing_temp_named_file_survives_failed_attempts(bus, probe_stub, input_video, tmp_path, fake_ffmpeg):
    leftover = tmp_path / "holiday_compressed.tmp"
    leftover.write_bytes(b"not ours")
    orchestrator = build_orchestrator(bus, probe_stub, tmp_path, make_capabilities())
    fake_ffmpeg.fail(["Invalid data found when processing input"])

    with pytest.raises(CompressionFailedError):
        orchestrator.compress(input_video, CompressionSettings(encoder=K.SOFTWARE))

    assert leftover.read_bytes() == b"not ours"
    assert input_video.exists()
