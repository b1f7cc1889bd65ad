import re
from pathlib import Path
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator
from smallmp4.domain.encoders import HardwareEncoderKind, EncoderPreset, RateControlMode


def normalize_encoder_name(value: str) -> str:
    """'NvencH264', 'nvenc_h264' and 'nvenc-h264' all become 'nvenc-h264'."""
    text = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "-", value.strip())
    text = text.replace("_", "-").lower()
    # CamelCase splits 'NvencH264' as 'nvenc-h264' but 'VideoToolbox' as 'video-toolbox'
    if text == "video-toolbox":
        return "videotoolbox"
    return text


class GeneralConfig(BaseModel):
    target_mb: float = Field(default=10.0, gt=0)
    encoder: Optional[HardwareEncoderKind] = None
    preset: EncoderPreset = EncoderPreset.MEDIUM
    quality_mode: RateControlMode = RateControlMode.AUTO
    device_id: Optional[int] = Field(default=None, ge=0)
    force_software: bool = False
    memory_optimization: bool = False
    compatibility_mode: bool = True
    log_file: Optional[Path] = None
    debug: bool = False

    @field_validator('encoder', mode='before')
    @classmethod
    def normalize_encoder(cls, v: Any) -> Any:
        if isinstance(v, str) and not isinstance(v, HardwareEncoderKind):
            return normalize_encoder_name(v)
        return v


class ToolsConfig(BaseModel):
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    probe_timeout_seconds: float = Field(default=10.0, gt=0)


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
