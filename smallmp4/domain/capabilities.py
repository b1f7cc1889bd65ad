from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
from pydantic import BaseModel, ConfigDict, Field, model_validator
from smallmp4.domain.encoders import (
    HardwareEncoderKind, Vendor, PREFERRED_PRIORITY, default_speed_multiplier,
)

BASE_MEMORY_MB = 100


class AcceleratorDevice(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    vendor: Vendor = Vendor.NVIDIA
    compute_capability: Tuple[int, int] = (0, 0)
    memory_mb: int = 0
    max_concurrent_sessions: int = 1

    @property
    def nvenc_support(self) -> bool:
        # Pascal and newer
        return self.vendor == Vendor.NVIDIA and self.compute_capability[0] >= 6

    def supports(self, encoder: HardwareEncoderKind) -> bool:
        if not self.nvenc_support:
            return False
        if encoder == HardwareEncoderKind.NVENC_H264:
            return True
        if encoder == HardwareEncoderKind.NVENC_H265:
            return self.compute_capability >= (5, 2)
        if encoder == HardwareEncoderKind.NVENC_AV1:
            return self.compute_capability >= (8, 9)
        return False


class ProbeStatus(str, Enum):
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    FAILED = "FAILED"


class ProbeResult(BaseModel):
    """What one vendor probe contributed; FAILED and NOT_FOUND both add nothing."""
    model_config = ConfigDict(frozen=True)

    probe: str
    status: ProbeStatus
    encoders: List[HardwareEncoderKind] = Field(default_factory=list)
    devices: List[AcceleratorDevice] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def not_found(cls, probe: str) -> "ProbeResult":
        return cls(probe=probe, status=ProbeStatus.NOT_FOUND)

    @classmethod
    def failed(cls, probe: str, error: str) -> "ProbeResult":
        return cls(probe=probe, status=ProbeStatus.FAILED, error=error)


class HardwareCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    available_encoders: List[HardwareEncoderKind]
    devices: List[AcceleratorDevice] = Field(default_factory=list)
    preferred_encoder: HardwareEncoderKind = HardwareEncoderKind.SOFTWARE
    memory_usage_mb: int = BASE_MEMORY_MB
    encoding_speed_multiplier: float = 1.0
    encoder_performance: Dict[HardwareEncoderKind, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_software_available(self) -> "HardwareCapabilities":
        if HardwareEncoderKind.SOFTWARE not in self.available_encoders:
            raise ValueError("Software encoder must always be available")
        if self.preferred_encoder not in self.available_encoders:
            raise ValueError(f"Preferred encoder {self.preferred_encoder.value} is not available")
        return self

    @classmethod
    def software_only(cls) -> "HardwareCapabilities":
        return cls.from_probe_results([])

    @classmethod
    def from_probe_results(
        cls,
        results: Sequence[ProbeResult],
        priority: Sequence[HardwareEncoderKind] = PREFERRED_PRIORITY,
    ) -> "HardwareCapabilities":
        """Merges probe contributions into one capability set.

        Software is appended last, duplicates are dropped keeping first-seen
        order, and the preferred encoder is the first entry of ``priority``
        that is available.
        """
        encoders: List[HardwareEncoderKind] = []
        devices: List[AcceleratorDevice] = []
        for result in results:
            if result.status != ProbeStatus.FOUND:
                continue
            encoders.extend(e for e in result.encoders if e != HardwareEncoderKind.SOFTWARE)
            devices.extend(result.devices)
        encoders.append(HardwareEncoderKind.SOFTWARE)
        available = list(dict.fromkeys(encoders))

        preferred = next((kind for kind in priority if kind in available), HardwareEncoderKind.SOFTWARE)
        performance = {kind: _performance_for(kind, devices) for kind in available}
        memory_mb = BASE_MEMORY_MB + _hardware_memory_mb(available, devices)

        return cls(
            available_encoders=available,
            devices=devices,
            preferred_encoder=preferred,
            memory_usage_mb=memory_mb,
            encoding_speed_multiplier=performance.get(preferred, 1.0),
            encoder_performance=performance,
        )

    @property
    def has_cuda(self) -> bool:
        return any(d.vendor == Vendor.NVIDIA for d in self.devices)

    def is_available(self, encoder: HardwareEncoderKind) -> bool:
        return encoder in self.available_encoders

    def speed_improvement(self, encoder: HardwareEncoderKind) -> float:
        return self.encoder_performance.get(encoder, default_speed_multiplier(encoder))

    def best_nvenc_device(self) -> Optional[AcceleratorDevice]:
        capable = [d for d in self.devices if d.nvenc_support]
        if not capable:
            return None
        return max(capable, key=lambda d: (d.compute_capability, d.memory_mb))


def _performance_for(kind: HardwareEncoderKind, devices: List[AcceleratorDevice]) -> float:
    K = HardwareEncoderKind
    if kind in (K.NVENC_H264, K.NVENC_H265):
        nvidia = [d for d in devices if d.vendor == Vendor.NVIDIA]
        if not nvidia:
            return 8.0
        major = max(d.compute_capability for d in nvidia)[0]
        if major >= 8:
            return 12.0
        if major == 7:
            return 10.0
        if major == 6:
            return 8.0
        return 6.0
    return {
        K.NVENC_AV1: 8.0,
        K.AMF_H264: 6.0,
        K.AMF_H265: 6.0,
        K.QSV_H264: 7.5,
        K.QSV_H265: 7.5,
        K.QSV_AV1: 6.0,
        K.VAAPI: 4.5,
        K.VIDEOTOOLBOX: 7.0,
        K.SOFTWARE: 1.0,
    }[kind]


def _hardware_memory_mb(available: List[HardwareEncoderKind], devices: List[AcceleratorDevice]) -> int:
    if any(d.vendor == Vendor.NVIDIA for d in devices):
        capable = [d for d in devices if d.nvenc_support]
        if not capable:
            return 256
        best = max(capable, key=lambda d: (d.compute_capability, d.memory_mb))
        # up to 1/8 of GPU memory
        return min(512, best.memory_mb // 8)
    if any(e.is_hardware_accelerated for e in available):
        return 128
    return 256
