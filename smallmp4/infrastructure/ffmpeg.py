import os
import re
import subprocess
import tempfile
import threading
import logging
import time
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Deque, List, Optional
from pydantic import BaseModel
from smallmp4.domain.encoders import HardwareEncoderKind, Vendor, COMPATIBLE_H264
from smallmp4.domain.models import CompressionJob, CompressionSettings, VideoMetadata
from smallmp4.domain.estimator import audio_bitrate_kbps
from smallmp4.domain.events import JobProgressUpdated
from smallmp4.infrastructure.event_bus import EventBus

# Regex to parse 'time=00:00:00.00' from ffmpeg output
TIME_REGEX = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
ETA_MIN_PROGRESS = 0.01
ERROR_TAIL_LINES = 20
VAAPI_DEVICE = "/dev/dri/renderD128"


class FailureKind(str, Enum):
    PROCESS_FAILED = "PROCESS_FAILED"
    OUTPUT_INVALID = "OUTPUT_INVALID"


class EncodeOutcome(BaseModel):
    """Result of one encode attempt; failures are values, not exceptions."""
    failure: Optional[FailureKind] = None
    error_message: str = ""
    output_size_bytes: int = 0

    @property
    def success(self) -> bool:
        return self.failure is None

    @classmethod
    def ok(cls, output_size_bytes: int) -> "EncodeOutcome":
        return cls(output_size_bytes=output_size_bytes)

    @classmethod
    def failed(cls, kind: FailureKind, message: str) -> "EncodeOutcome":
        return cls(failure=kind, error_message=message)


def parse_progress_seconds(line: str) -> Optional[float]:
    match = TIME_REGEX.search(line)
    if not match:
        return None
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


def progress_fraction(current_seconds: float, duration_seconds: float) -> float:
    if duration_seconds <= 0:
        return 0.0
    return min(max(current_seconds / duration_seconds, 0.0), 1.0)


def estimate_eta(elapsed_seconds: float, progress: float) -> Optional[float]:
    """Remaining seconds, or None while progress is too small to extrapolate."""
    if progress <= ETA_MIN_PROGRESS:
        return None
    return max(elapsed_seconds * (1.0 / progress - 1.0), 0.0)


def uses_two_pass(encoder: HardwareEncoderKind) -> bool:
    # Hardware encoders rely on their own multipass/VBR modes.
    return encoder == HardwareEncoderKind.SOFTWARE


class FFmpegAdapter:
    """Wrapper around ffmpeg for target-size compression."""

    def __init__(self, event_bus: EventBus, ffmpeg_path: str = "ffmpeg", temp_dir: Optional[Path] = None):
        self.event_bus = event_bus
        self.ffmpeg_path = ffmpeg_path
        self.temp_dir = temp_dir
        self.logger = logging.getLogger(__name__)

    def _codec_for(self, settings: CompressionSettings) -> str:
        if settings.compatibility_mode:
            return COMPATIBLE_H264[settings.encoder.vendor].ffmpeg_codec
        return settings.encoder.ffmpeg_codec

    def _input_args(self, input_path: Path, settings: CompressionSettings) -> List[str]:
        cmd = [self.ffmpeg_path]
        if settings.hardware_acceleration:
            vendor = settings.encoder.vendor
            if vendor == Vendor.NVIDIA:
                cmd.extend(["-hwaccel", "cuda"])
                if settings.device_id is not None:
                    cmd.extend(["-hwaccel_device", str(settings.device_id)])
            elif vendor == Vendor.LINUX:
                cmd.extend(["-hwaccel", "vaapi", "-hwaccel_device", VAAPI_DEVICE])
            elif vendor == Vendor.APPLE:
                cmd.extend(["-hwaccel", "videotoolbox"])
        cmd.extend(["-i", str(input_path), "-y"])
        return cmd

    def _video_args(self, settings: CompressionSettings, bitrate_kbps: int) -> List[str]:
        cmd = [
            "-c:v", self._codec_for(settings),
            "-b:v", f"{bitrate_kbps}k",
            "-maxrate", f"{bitrate_kbps}k",
            "-bufsize", f"{bitrate_kbps * 2}k",
        ]

        vendor = settings.encoder.vendor
        if vendor == Vendor.SOFTWARE:
            cmd.extend(["-preset", settings.preset.software_preset])
        elif vendor == Vendor.NVIDIA:
            cmd.extend([
                "-preset", settings.preset.nvenc_preset,
                "-rc", settings.quality_mode.nvenc_rc_mode,
                "-multipass", "fullres",
                "-cq", "0",
            ])
        elif vendor == Vendor.AMD:
            cmd.extend(["-quality", "speed", "-rc", "vbr_latency"])
        elif vendor == Vendor.INTEL:
            cmd.extend(["-preset", "medium", "-look_ahead", "1"])
        elif vendor == Vendor.LINUX:
            cmd.extend(["-profile", "main", "-level", "4.0"])
        elif vendor == Vendor.APPLE:
            cmd.extend(["-profile", "main"])
        return cmd

    def _output_args(self, settings: CompressionSettings) -> List[str]:
        cmd = ["-movflags", "+faststart", "-pix_fmt", "yuv420p"]
        if settings.memory_optimization:
            cmd.extend(["-threads", "1"])
        return cmd

    def build_command(
        self,
        input_path: Path,
        output_path: Path,
        settings: CompressionSettings,
        metadata: VideoMetadata,
        bitrate_kbps: int,
    ) -> List[str]:
        """Constructs the single-pass ffmpeg command line."""
        cmd = self._input_args(input_path, settings)
        cmd.extend(self._video_args(settings, bitrate_kbps))
        cmd.extend(self._audio_args(metadata))
        cmd.extend(self._output_args(settings))
        cmd.extend(["-f", "mp4", str(output_path)])
        return cmd

    def build_pass_command(
        self,
        pass_number: int,
        input_path: Path,
        output_path: Path,
        settings: CompressionSettings,
        metadata: VideoMetadata,
        bitrate_kbps: int,
        passlog: Path,
    ) -> List[str]:
        cmd = self._input_args(input_path, settings)
        cmd.extend(self._video_args(settings, bitrate_kbps))
        cmd.extend(["-pass", str(pass_number), "-passlogfile", str(passlog)])
        if pass_number == 1:
            # Analysis only: no audio, output discarded
            cmd.append("-an")
            if settings.memory_optimization:
                cmd.extend(["-threads", "1"])
            cmd.extend(["-f", "null", os.devnull])
            return cmd
        cmd.extend(self._audio_args(metadata))
        cmd.extend(self._output_args(settings))
        cmd.extend(["-f", "mp4", str(output_path)])
        return cmd

    def _audio_args(self, metadata: VideoMetadata) -> List[str]:
        audio_kbps = audio_bitrate_kbps(metadata.duration_seconds)
        return ["-c:a", "aac", "-b:a", f"{audio_kbps}k", "-ac", "2"]

    def compress(
        self,
        job: CompressionJob,
        settings: CompressionSettings,
        metadata: VideoMetadata,
        bitrate_kbps: int,
        output_path: Path,
    ) -> EncodeOutcome:
        """Runs one encode attempt into a fresh staging file next to ``output_path``.

        The staging file is renamed onto ``output_path`` only when ffmpeg
        exits cleanly and produced a non-empty file; otherwise it is removed.
        Nothing else in the output directory is touched.
        """
        tmp_path = self._staging_path(output_path)
        start_time = time.monotonic()
        self.logger.info(
            f"FFMPEG_START: {job.input_path.name} (encoder={settings.encoder.value}, "
            f"bitrate={bitrate_kbps}k, attempt={job.attempt})"
        )

        try:
            if uses_two_pass(settings.encoder):
                outcome = self._two_pass(job, settings, metadata, bitrate_kbps, tmp_path, start_time)
            else:
                cmd = self.build_command(job.input_path, tmp_path, settings, metadata, bitrate_kbps)
                outcome = self._run(cmd, job, metadata.duration_seconds, start_time, 0.0, 1.0, 1)

            if outcome.success:
                outcome = self._finalize(tmp_path, output_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        elapsed = time.monotonic() - start_time
        status = "completed" if outcome.success else outcome.failure.value.lower()
        self.logger.info(f"FFMPEG_END: {job.input_path.name} status={status} elapsed={elapsed:.2f}s")
        return outcome

    def _staging_path(self, output_path: Path) -> Path:
        # Unique name in the output directory so the final rename stays on one filesystem
        fd, name = tempfile.mkstemp(prefix=f".{output_path.stem}-", suffix=".mp4", dir=output_path.parent)
        os.close(fd)
        return Path(name)

    def _two_pass(
        self,
        job: CompressionJob,
        settings: CompressionSettings,
        metadata: VideoMetadata,
        bitrate_kbps: int,
        tmp_path: Path,
        start_time: float,
    ) -> EncodeOutcome:
        self.logger.info("Using 2-pass encoding for better size accuracy")
        # Pass logs live in a private directory removed whatever the outcome
        with tempfile.TemporaryDirectory(prefix="smallmp4-", dir=self.temp_dir) as log_dir:
            passlog = Path(log_dir) / "ffmpeg2pass"
            duration = metadata.duration_seconds

            cmd = self.build_pass_command(1, job.input_path, tmp_path, settings, metadata, bitrate_kbps, passlog)
            outcome = self._run(cmd, job, duration, start_time, 0.0, 0.5, 1)
            if not outcome.success:
                return outcome

            cmd = self.build_pass_command(2, job.input_path, tmp_path, settings, metadata, bitrate_kbps, passlog)
            return self._run(cmd, job, duration, start_time, 0.5, 0.5, 2)

    def _finalize(self, tmp_path: Path, output_path: Path) -> EncodeOutcome:
        if not tmp_path.exists():
            return EncodeOutcome.failed(FailureKind.OUTPUT_INVALID, f"ffmpeg produced no output file: {tmp_path}")
        size = tmp_path.stat().st_size
        if size == 0:
            return EncodeOutcome.failed(FailureKind.OUTPUT_INVALID, f"ffmpeg produced an empty file: {tmp_path}")
        tmp_path.replace(output_path)
        return EncodeOutcome.ok(size)

    def _run(
        self,
        cmd: List[str],
        job: CompressionJob,
        duration: float,
        start_time: float,
        offset: float,
        scale: float,
        pass_number: int,
    ) -> EncodeOutcome:
        """Runs ffmpeg, streaming progress mapped into [offset, offset + scale]."""
        self.logger.debug(f"FFmpeg command: {' '.join(cmd)}")
        try:
            # ffmpeg echoes container metadata verbatim, which need not be valid UTF-8
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                bufsize=1
            )
        except OSError as e:
            return EncodeOutcome.failed(FailureKind.PROCESS_FAILED, f"Failed to spawn ffmpeg: {e}")

        tail: Deque[str] = deque(maxlen=ERROR_TAIL_LINES)
        reader = threading.Thread(
            target=self._read_output,
            args=(process, tail, job, duration, start_time, offset, scale, pass_number),
            daemon=True,
        )
        reader.start()
        returncode = process.wait()
        reader.join()

        if returncode != 0:
            details = "\n".join(tail)
            message = f"ffmpeg exited with code {returncode}"
            if details:
                message = f"{message}: {details}"
            return EncodeOutcome.failed(FailureKind.PROCESS_FAILED, message)
        return EncodeOutcome.ok(0)

    def _read_output(
        self,
        process: subprocess.Popen,
        tail: Deque[str],
        job: CompressionJob,
        duration: float,
        start_time: float,
        offset: float,
        scale: float,
        pass_number: int,
    ):
        # Drains the pipe so ffmpeg never blocks on a full buffer
        for line in process.stdout:
            line = line.rstrip()
            if not line:
                continue
            tail.append(line)
            try:
                self._report_progress(line, job, duration, start_time, offset, scale, pass_number)
            except Exception:
                # Keep draining the pipe
                self.logger.exception(f"Failed to handle ffmpeg output line: {line!r}")

    def _report_progress(
        self,
        line: str,
        job: CompressionJob,
        duration: float,
        start_time: float,
        offset: float,
        scale: float,
        pass_number: int,
    ):
        seconds = parse_progress_seconds(line)
        if seconds is None:
            return
        progress = offset + scale * progress_fraction(seconds, duration)
        eta = estimate_eta(time.monotonic() - start_time, progress)
        job.progress = progress
        self.event_bus.publish(JobProgressUpdated(
            job=job, progress=progress, eta_seconds=eta, pass_number=pass_number
        ))
