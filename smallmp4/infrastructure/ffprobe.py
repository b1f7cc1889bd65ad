import subprocess
import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from pydantic import ValidationError
from smallmp4.domain.models import VideoMetadata
from smallmp4.domain.errors import InputNotFoundError, MetadataProbeError

logger = logging.getLogger(__name__)


def parse_fraction(value: str) -> Optional[float]:
    """Parses '30/1' or '30000/1001'; None for malformed or zero denominators."""
    parts = value.split("/")
    if len(parts) != 2:
        return None
    try:
        num, den = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if den <= 0:
        return None
    return num / den


def _parse_frame_rate(stream: Dict[str, Any]) -> Optional[float]:
    # r_frame_rate first, avg_frame_rate as fallback
    for key in ("r_frame_rate", "avg_frame_rate"):
        fps = parse_fraction(str(stream.get(key, "")))
        if fps:
            return fps
    if "fps" in stream:
        return float(stream["fps"])
    return None


def _parse_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class FFprobeAdapter:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: Optional[float] = None):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def get_stream_info(self, file_path: Path) -> Dict[str, Any]:
        """Executes ffprobe and parses JSON output."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(file_path)
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise MetadataProbeError(file_path, f"{self.ffprobe_path} not found. Is ffmpeg installed?")
        except subprocess.TimeoutExpired:
            raise MetadataProbeError(file_path, f"ffprobe timed out after {self.timeout}s")

        if result.returncode != 0:
            raise MetadataProbeError(file_path, f"ffprobe failed: {result.stderr.strip()}")

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise MetadataProbeError(file_path, f"Failed to parse ffprobe output: {e}")

    def probe(self, file_path: Path) -> VideoMetadata:
        if not file_path.exists():
            raise InputNotFoundError(file_path)

        data = self.get_stream_info(file_path)
        logger.debug(f"ffprobe output for {file_path.name}: {data}")

        video_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise MetadataProbeError(file_path, "No video stream found")

        fps = _parse_frame_rate(video_stream)
        if fps is None:
            raise MetadataProbeError(file_path, "Failed to parse frame rate")

        fmt = data.get("format", {})
        duration = _parse_float(fmt.get("duration"))
        if duration is None:
            duration = _parse_float(video_stream.get("duration"))
        if duration is None:
            raise MetadataProbeError(file_path, "Failed to get video duration")

        bit_rate = _parse_float(fmt.get("bit_rate"))
        bitrate_kbps = int(bit_rate) // 1000 if bit_rate is not None else None

        try:
            metadata = VideoMetadata(
                width=int(video_stream.get("width", 0)),
                height=int(video_stream.get("height", 0)),
                fps=fps,
                duration_seconds=duration,
                bitrate_kbps=bitrate_kbps,
                codec=video_stream.get("codec_name", "unknown"),
            )
        except ValidationError as e:
            raise MetadataProbeError(file_path, f"Invalid stream properties: {e}")

        logger.info(
            f"Video metadata: {metadata.width}x{metadata.height} @ {metadata.fps:.1f}fps, "
            f"duration: {metadata.duration_seconds:.1f}s, bitrate: {metadata.bitrate_kbps} kbps"
        )
        return metadata
