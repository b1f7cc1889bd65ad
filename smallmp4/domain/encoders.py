from enum import Enum
from typing import Dict, Tuple
from pydantic import BaseModel, ConfigDict


class Vendor(str, Enum):
    NVIDIA = "NVIDIA"
    AMD = "AMD"
    INTEL = "Intel"
    LINUX = "Linux"
    APPLE = "Apple"
    SOFTWARE = "Software"


class CodecFamily(str, Enum):
    H264 = "h264"
    H265 = "h265"
    AV1 = "av1"


class HardwareEncoderKind(str, Enum):
    NVENC_H264 = "nvenc-h264"
    NVENC_H265 = "nvenc-h265"
    NVENC_AV1 = "nvenc-av1"
    AMF_H264 = "amf-h264"
    AMF_H265 = "amf-h265"
    QSV_H264 = "qsv-h264"
    QSV_H265 = "qsv-h265"
    QSV_AV1 = "qsv-av1"
    VAAPI = "vaapi"
    VIDEOTOOLBOX = "videotoolbox"
    SOFTWARE = "software"

    @property
    def info(self) -> "EncoderInfo":
        return ENCODER_CATALOG[self]

    @property
    def vendor(self) -> Vendor:
        return self.info.vendor

    @property
    def codec_family(self) -> CodecFamily:
        return self.info.codec_family

    @property
    def is_hardware_accelerated(self) -> bool:
        return self.info.hardware_accelerated

    @property
    def speed_multiplier(self) -> float:
        return self.info.speed_multiplier

    @property
    def ffmpeg_codec(self) -> str:
        return self.info.ffmpeg_codec

    @property
    def display_name(self) -> str:
        return self.info.display_name


class EncoderInfo(BaseModel):
    """Fixed attributes of one encoder backend."""
    model_config = ConfigDict(frozen=True)

    display_name: str
    ffmpeg_codec: str
    vendor: Vendor
    codec_family: CodecFamily
    hardware_accelerated: bool
    speed_multiplier: float


def _entry(name: str, codec: str, vendor: Vendor, family: CodecFamily, speed: float) -> EncoderInfo:
    return EncoderInfo(
        display_name=name,
        ffmpeg_codec=codec,
        vendor=vendor,
        codec_family=family,
        hardware_accelerated=vendor != Vendor.SOFTWARE,
        speed_multiplier=speed,
    )


K = HardwareEncoderKind

ENCODER_CATALOG: Dict[HardwareEncoderKind, EncoderInfo] = {
    K.NVENC_H264: _entry("NVIDIA NVENC H.264", "h264_nvenc", Vendor.NVIDIA, CodecFamily.H264, 8.0),
    K.NVENC_H265: _entry("NVIDIA NVENC H.265/HEVC", "hevc_nvenc", Vendor.NVIDIA, CodecFamily.H265, 8.0),
    K.NVENC_AV1: _entry("NVIDIA NVENC AV1", "av1_nvenc", Vendor.NVIDIA, CodecFamily.AV1, 6.0),
    K.AMF_H264: _entry("AMD VCE H.264", "h264_amf", Vendor.AMD, CodecFamily.H264, 5.5),
    K.AMF_H265: _entry("AMD VCE H.265/HEVC", "hevc_amf", Vendor.AMD, CodecFamily.H265, 5.5),
    K.QSV_H264: _entry("Intel QuickSync H.264", "h264_qsv", Vendor.INTEL, CodecFamily.H264, 7.0),
    K.QSV_H265: _entry("Intel QuickSync H.265/HEVC", "hevc_qsv", Vendor.INTEL, CodecFamily.H265, 7.0),
    K.QSV_AV1: _entry("Intel QuickSync AV1", "av1_qsv", Vendor.INTEL, CodecFamily.AV1, 5.0),
    K.VAAPI: _entry("VAAPI (Linux)", "h264_vaapi", Vendor.LINUX, CodecFamily.H264, 4.0),
    K.VIDEOTOOLBOX: _entry("VideoToolbox (macOS)", "h264_videotoolbox", Vendor.APPLE, CodecFamily.H264, 6.0),
    K.SOFTWARE: _entry("Software (CPU)", "libx264", Vendor.SOFTWARE, CodecFamily.H264, 1.0),
}

# Best quality/speed balance first.
PREFERRED_PRIORITY: Tuple[HardwareEncoderKind, ...] = (
    K.NVENC_H265,
    K.NVENC_H264,
    K.QSV_H265,
    K.QSV_H264,
    K.VIDEOTOOLBOX,
    K.AMF_H265,
    K.AMF_H264,
    K.VAAPI,
    K.NVENC_AV1,
    K.QSV_AV1,
    K.SOFTWARE,
)

# Reliability order used when walking away from a failing encoder.
FALLBACK_PRIORITY: Tuple[HardwareEncoderKind, ...] = (
    K.NVENC_H264,
    K.NVENC_H265,
    K.VIDEOTOOLBOX,
    K.QSV_H264,
    K.QSV_H265,
    K.AMF_H264,
    K.AMF_H265,
    K.VAAPI,
    K.NVENC_AV1,
    K.QSV_AV1,
    K.SOFTWARE,
)

SAME_CODEC_ALTERNATIVES: Dict[CodecFamily, Tuple[HardwareEncoderKind, ...]] = {
    CodecFamily.H264: (K.NVENC_H264, K.AMF_H264, K.QSV_H264, K.VAAPI, K.VIDEOTOOLBOX),
    CodecFamily.H265: (K.NVENC_H265, K.AMF_H265, K.QSV_H265),
    CodecFamily.AV1: (K.NVENC_AV1, K.QSV_AV1),
}

# H.264 backend of each vendor, used by compatibility mode.
COMPATIBLE_H264: Dict[Vendor, HardwareEncoderKind] = {
    Vendor.NVIDIA: K.NVENC_H264,
    Vendor.AMD: K.AMF_H264,
    Vendor.INTEL: K.QSV_H264,
    Vendor.LINUX: K.VAAPI,
    Vendor.APPLE: K.VIDEOTOOLBOX,
    Vendor.SOFTWARE: K.SOFTWARE,
}


def vendor_of(kind: HardwareEncoderKind) -> Vendor:
    return ENCODER_CATALOG[kind].vendor


def codec_family_of(kind: HardwareEncoderKind) -> CodecFamily:
    return ENCODER_CATALOG[kind].codec_family


def is_hardware_accelerated(kind: HardwareEncoderKind) -> bool:
    return ENCODER_CATALOG[kind].hardware_accelerated


def default_speed_multiplier(kind: HardwareEncoderKind) -> float:
    return ENCODER_CATALOG[kind].speed_multiplier


def encoders_for_vendor(vendor: Vendor):
    return [kind for kind, info in ENCODER_CATALOG.items() if info.vendor == vendor]


class EncoderPreset(str, Enum):
    ULTRAFAST = "ultrafast"
    FASTER = "faster"
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"
    SLOWER = "slower"
    HIGHEST = "highest"

    @property
    def nvenc_preset(self) -> str:
        return _NVENC_PRESETS[self]

    @property
    def software_preset(self) -> str:
        # x264 has no "highest"; veryslow is its top preset
        return "veryslow" if self is EncoderPreset.HIGHEST else self.value


_NVENC_PRESETS = {
    EncoderPreset.ULTRAFAST: "p1",
    EncoderPreset.FASTER: "p2",
    EncoderPreset.FAST: "p3",
    EncoderPreset.MEDIUM: "p4",
    EncoderPreset.SLOW: "p5",
    EncoderPreset.SLOWER: "p6",
    EncoderPreset.HIGHEST: "p7",
}


class RateControlMode(str, Enum):
    AUTO = "auto"
    CONSTANT = "constant"
    VARIABLE = "variable"
    CONSTRAINED = "constrained"

    @property
    def nvenc_rc_mode(self) -> str:
        return {
            RateControlMode.AUTO: "vbr",
            RateControlMode.CONSTANT: "constqp",
            RateControlMode.VARIABLE: "vbr",
            RateControlMode.CONSTRAINED: "cbr",
        }[self]
