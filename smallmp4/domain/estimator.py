from typing import Dict
from pydantic import BaseModel, ConfigDict
from smallmp4.domain.encoders import HardwareEncoderKind, EncoderPreset
from smallmp4.domain.models import VideoMetadata, CompressionSettings, ContentComplexity

K = HardwareEncoderKind

BITS_PER_MB = 8 * 1024 * 1024
CONTAINER_OVERHEAD = 0.01
SAFETY_MARGIN = 0.98
# Software x264 runs at roughly 5x real time.
SOFTWARE_TIME_FACTOR = 0.2

QUALITY_BREAKPOINTS = (
    (0.20, 0.95),
    (0.15, 0.85),
    (0.10, 0.75),
    (0.07, 0.60),
    (0.04, 0.45),
)
MIN_QUALITY = 0.25

COMPLEXITY_ADJUSTMENT: Dict[ContentComplexity, float] = {
    ContentComplexity.LOW: 1.1,
    ContentComplexity.MEDIUM: 1.0,
    ContentComplexity.HIGH: 0.9,
}

PRESET_TIME_MODIFIER: Dict[EncoderPreset, float] = {
    EncoderPreset.ULTRAFAST: 0.5,
    EncoderPreset.FASTER: 0.7,
    EncoderPreset.FAST: 0.85,
    EncoderPreset.MEDIUM: 1.0,
    EncoderPreset.SLOW: 1.3,
    EncoderPreset.SLOWER: 1.8,
    EncoderPreset.HIGHEST: 2.5,
}

HARDWARE_SPEEDUP: Dict[HardwareEncoderKind, float] = {
    K.NVENC_H264: 8.0,
    K.NVENC_H265: 8.0,
    K.NVENC_AV1: 6.0,
    K.AMF_H264: 5.0,
    K.AMF_H265: 5.0,
    K.QSV_H264: 6.0,
    K.QSV_H265: 6.0,
    K.QSV_AV1: 6.0,
    K.VAAPI: 3.0,
    K.VIDEOTOOLBOX: 4.0,
    K.SOFTWARE: 1.0,
}

# Relative bitrate needed for the same visual quality.
ENCODER_EFFICIENCY: Dict[HardwareEncoderKind, float] = {
    K.SOFTWARE: 1.0,
    K.NVENC_H264: 0.85,
    K.NVENC_H265: 0.90,
    K.NVENC_AV1: 0.95,
    K.AMF_H264: 0.80,
    K.AMF_H265: 0.85,
    K.QSV_H264: 0.82,
    K.QSV_H265: 0.87,
    K.QSV_AV1: 0.92,
    K.VAAPI: 0.80,
    K.VIDEOTOOLBOX: 0.83,
}


class SizeEstimation(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_size_mb: float
    estimated_bitrate_kbps: int
    quality_score: float
    estimated_time_seconds: float
    confidence: float


def audio_bitrate_kbps(duration_seconds: float) -> int:
    """Audio allowance shrinks for longer videos to leave room for picture."""
    if duration_seconds <= 300:
        return 128
    if duration_seconds <= 600:
        return 112
    return 96


def minimum_bitrate_kbps(width: int) -> int:
    if width >= 1920:
        return 300
    if width >= 1280:
        return 200
    return 150


def _check_duration(metadata: VideoMetadata):
    if metadata.duration_seconds <= 0:
        raise ValueError(f"Duration must be positive, got {metadata.duration_seconds}")


class SizeEstimator:
    """Pure size, quality and time model; nothing here runs an encoder."""

    def unconstrained_bitrate(self, metadata: VideoMetadata, target_mb: float) -> float:
        """Video kbps left after audio and container overhead, before margin and floor."""
        _check_duration(metadata)
        duration = metadata.duration_seconds
        total_bits = target_mb * BITS_PER_MB
        audio_bits = audio_bitrate_kbps(duration) * 1024 * duration
        overhead_bits = total_bits * CONTAINER_OVERHEAD
        video_bits = total_bits - audio_bits - overhead_bits
        return video_bits / duration / 1024

    def bitrate_for_target(self, metadata: VideoMetadata, target_mb: float) -> int:
        video_kbps = int(self.unconstrained_bitrate(metadata, target_mb) * SAFETY_MARGIN)
        return max(video_kbps, minimum_bitrate_kbps(metadata.width))

    def recommend_bitrate(
        self, metadata: VideoMetadata, target_mb: float, encoder: HardwareEncoderKind
    ) -> int:
        base = self.bitrate_for_target(metadata, target_mb)
        adjusted = int(base * ENCODER_EFFICIENCY[encoder])
        return max(adjusted, minimum_bitrate_kbps(metadata.width))

    def quality_score(self, metadata: VideoMetadata, bitrate_kbps: int) -> float:
        pixels_per_second = metadata.width * metadata.height * metadata.fps
        bits_per_pixel = bitrate_kbps * 1024 / pixels_per_second
        score = MIN_QUALITY
        for threshold, value in QUALITY_BREAKPOINTS:
            if bits_per_pixel >= threshold:
                score = value
                break
        return min(score * COMPLEXITY_ADJUSTMENT[metadata.complexity], 1.0)

    def encoding_time_estimate(self, metadata: VideoMetadata, settings: CompressionSettings) -> float:
        _check_duration(metadata)
        base = metadata.duration_seconds * SOFTWARE_TIME_FACTOR
        speedup = HARDWARE_SPEEDUP[settings.encoder] if settings.hardware_acceleration else 1.0
        return base / speedup * PRESET_TIME_MODIFIER[settings.preset]

    def estimate(self, metadata: VideoMetadata, settings: CompressionSettings) -> SizeEstimation:
        bitrate = self.bitrate_for_target(metadata, settings.target_mb)
        return SizeEstimation(
            target_size_mb=settings.target_mb,
            estimated_bitrate_kbps=bitrate,
            quality_score=self.quality_score(metadata, bitrate),
            estimated_time_seconds=self.encoding_time_estimate(metadata, settings),
            confidence=0.9,
        )
