import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, TYPE_CHECKING
from pydantic import BaseModel, ConfigDict, Field
from smallmp4.domain.encoders import (
    HardwareEncoderKind, EncoderPreset, RateControlMode, Vendor,
)

if TYPE_CHECKING:
    from smallmp4.config.models import GeneralConfig
    from smallmp4.domain.capabilities import HardwareCapabilities

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class ContentComplexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class VideoMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    fps: float = Field(gt=0)
    duration_seconds: float = Field(gt=0)
    bitrate_kbps: Optional[int] = None
    codec: str = "unknown"

    @property
    def complexity(self) -> ContentComplexity:
        """Coarse motion/detail class estimated from the source bitrate."""
        if self.bitrate_kbps is None:
            return ContentComplexity.MEDIUM
        bits_per_pixel = (self.bitrate_kbps * 1000) / (self.width * self.height * self.fps)
        if bits_per_pixel > 0.2:
            return ContentComplexity.HIGH
        if bits_per_pixel > 0.1:
            return ContentComplexity.MEDIUM
        return ContentComplexity.LOW

    @property
    def megapixels(self) -> float:
        return self.width * self.height / 1_000_000

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    @property
    def is_high_resolution(self) -> bool:
        return self.width >= 1920 and self.height >= 1080

    @property
    def is_high_framerate(self) -> bool:
        return self.fps >= 60.0


class CompressionSettings(BaseModel):
    target_mb: float = Field(default=10.0, gt=0)
    encoder: HardwareEncoderKind = HardwareEncoderKind.SOFTWARE
    hardware_acceleration: bool = False
    device_id: Optional[int] = Field(default=None, ge=0)
    preset: EncoderPreset = EncoderPreset.MEDIUM
    quality_mode: RateControlMode = RateControlMode.AUTO
    memory_optimization: bool = False
    compatibility_mode: bool = True

    def use_encoder(self, encoder: HardwareEncoderKind):
        """Swaps the encoder in place, keeping the acceleration flag consistent."""
        self.encoder = encoder
        self.hardware_acceleration = encoder.is_hardware_accelerated

    @classmethod
    def from_config(
        cls,
        config: "GeneralConfig",
        capabilities: "HardwareCapabilities",
    ) -> "CompressionSettings":
        preferred = capabilities.preferred_encoder
        requested = config.encoder
        if config.force_software:
            encoder = HardwareEncoderKind.SOFTWARE
        elif requested is None:
            encoder = preferred
        elif requested in capabilities.available_encoders:
            encoder = requested
        else:
            logger.warning(f"Requested encoder {requested.value} not available, using {preferred.value}")
            encoder = preferred

        device_id = config.device_id
        if device_id is None and encoder.vendor == Vendor.NVIDIA:
            best = capabilities.best_nvenc_device()
            device_id = best.id if best else None

        return cls(
            target_mb=config.target_mb,
            encoder=encoder,
            hardware_acceleration=not config.force_software and encoder.is_hardware_accelerated,
            device_id=device_id,
            preset=config.preset,
            quality_mode=config.quality_mode,
            memory_optimization=config.memory_optimization,
            compatibility_mode=config.compatibility_mode,
        )


class CompressionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_path: Path
    output_path: Path
    input_size_bytes: int
    output_size_bytes: int
    compression_ratio: float
    encoding_time_seconds: float
    encoder_used: HardwareEncoderKind
    hardware_accelerated: bool
    attempts: int = 1
    target_mb: Optional[float] = None

    @property
    def input_size_mb(self) -> float:
        return self.input_size_bytes / BYTES_PER_MB

    @property
    def output_size_mb(self) -> float:
        return self.output_size_bytes / BYTES_PER_MB

    @property
    def exceeded_target(self) -> bool:
        return self.target_mb is not None and self.output_size_mb > self.target_mb

    def summary(self) -> str:
        mode = "hardware" if self.hardware_accelerated else "software"
        return (
            f"Compressed {self.input_path.name} ({self.input_size_mb:.1f} MB) -> "
            f"{self.output_path.name} ({self.output_size_mb:.1f} MB) in {self.encoding_time_seconds:.1f}s "
            f"using {self.encoder_used.display_name} ({self.compression_ratio:.1f}x compression, {mode} encoder)"
        )


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROBING = "PROBING"
    ENCODING = "ENCODING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class CompressionJob(BaseModel):
    """Mutable bookkeeping for one compression request, carried on events."""
    input_path: Path
    output_path: Optional[Path] = None
    status: JobStatus = JobStatus.PENDING
    encoder: Optional[HardwareEncoderKind] = None
    attempt: int = 0
    progress: float = 0.0
    error_message: Optional[str] = None


# Sizes offered by the original size slider.
SIZE_PRESETS: Tuple[Tuple[float, str, str], ...] = (
    (1.0, "1 MB - Ultra Small", "Social media, messaging"),
    (5.0, "5 MB - Small", "Email attachments"),
    (10.0, "10 MB - Compact", "Quick sharing"),
    (30.0, "30 MB - Medium", "Presentations, demos"),
    (50.0, "50 MB - Standard", "General purpose"),
    (100.0, "100 MB - Large", "HD streaming"),
    (250.0, "250 MB - Extra Large", "High quality sharing"),
    (500.0, "500 MB - HD Quality", "Professional use"),
    (1000.0, "1 GB - Full Quality", "Archive quality"),
)


def nearest_preset(target_mb: float) -> float:
    return min((size for size, _, _ in SIZE_PRESETS), key=lambda size: abs(size - target_mb))


def parse_target_size(text: str) -> float:
    """Parses '10mb', '1gb', '750MB' or a bare number of megabytes."""
    value = text.strip().lower()
    multiplier = 1.0
    if value.endswith("gb"):
        value, multiplier = value[:-2], 1000.0
    elif value.endswith("mb"):
        value = value[:-2]
    try:
        size = float(value) * multiplier
    except ValueError:
        raise ValueError(f"Invalid target size: {text!r}")
    if size <= 0:
        raise ValueError(f"Target size must be positive: {text!r}")
    return size
