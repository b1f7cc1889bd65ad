import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, TYPE_CHECKING
from smallmp4.domain.encoders import (
    HardwareEncoderKind, Vendor, FALLBACK_PRIORITY, SAME_CODEC_ALTERNATIVES,
)

if TYPE_CHECKING:
    from smallmp4.domain.capabilities import HardwareCapabilities

logger = logging.getLogger(__name__)

K = HardwareEncoderKind

MAX_FAILURES = 3

# Keywords that point at a vendor's own stack in ffmpeg diagnostics.
VENDOR_KEYWORDS: Dict[Vendor, tuple] = {
    Vendor.NVIDIA: ("nvenc", "cuda"),
    Vendor.AMD: ("amf", "amd"),
    Vendor.INTEL: ("qsv", "intel"),
}

_AVOID_ALTERNATIVES: Dict[Vendor, tuple] = {
    Vendor.NVIDIA: (K.AMF_H264, K.QSV_H264, K.VAAPI, K.VIDEOTOOLBOX, K.SOFTWARE),
    Vendor.AMD: (K.NVENC_H264, K.QSV_H264, K.VAAPI, K.VIDEOTOOLBOX, K.SOFTWARE),
    Vendor.INTEL: (K.NVENC_H264, K.AMF_H264, K.VAAPI, K.VIDEOTOOLBOX, K.SOFTWARE),
}

_DOWNGRADES: Dict[HardwareEncoderKind, HardwareEncoderKind] = {
    K.NVENC_H265: K.NVENC_H264,
    K.NVENC_AV1: K.NVENC_H264,
    K.AMF_H265: K.AMF_H264,
    K.QSV_H265: K.QSV_H264,
    K.QSV_AV1: K.QSV_H264,
}


def build_fallback_chain(available: Iterable[HardwareEncoderKind]) -> List[HardwareEncoderKind]:
    """Fallback priority filtered to the available encoders."""
    available = set(available)
    return [kind for kind in FALLBACK_PRIORITY if kind in available]


class FallbackState:
    """Ordered fallback chain plus a per-encoder failure counter.

    Counts are read-then-incremented without a lock; one instance must only
    be mutated from the thread driving the compression request.
    """

    def __init__(self, chain: Sequence[HardwareEncoderKind], max_failures: int = MAX_FAILURES):
        self.chain: List[HardwareEncoderKind] = list(chain)
        if K.SOFTWARE not in self.chain:
            self.chain.append(K.SOFTWARE)
        self.max_failures = max_failures
        self.failure_counts: Dict[HardwareEncoderKind, int] = {}

    @classmethod
    def from_capabilities(cls, capabilities: "HardwareCapabilities") -> "FallbackState":
        return cls(build_fallback_chain(capabilities.available_encoders))

    def is_usable(self, encoder: HardwareEncoderKind) -> bool:
        return self.failure_counts.get(encoder, 0) < self.max_failures

    def get_next_encoder(self, preferred: HardwareEncoderKind) -> HardwareEncoderKind:
        if self.is_usable(preferred):
            return preferred
        for encoder in self.chain:
            if self.is_usable(encoder):
                return encoder
        return K.SOFTWARE

    def record_failure(self, encoder: HardwareEncoderKind, error: str):
        count = self.failure_counts.get(encoder, 0) + 1
        self.failure_counts[encoder] = count
        logger.warning(f"Encoder {encoder.value} failed ({count}/{self.max_failures}): {error}")
        if count == self.max_failures:
            logger.warning(f"Encoder {encoder.value} disabled after {count} failures")

    def record_success(self, encoder: HardwareEncoderKind):
        if self.failure_counts.get(encoder, 0) > 0:
            logger.info(f"Encoder {encoder.value} succeeded, resetting failure count")
        self.failure_counts[encoder] = 0

    def failure_stats(self) -> Dict[HardwareEncoderKind, int]:
        return {encoder: count for encoder, count in self.failure_counts.items() if count > 0}

    def reset_failures(self):
        self.failure_counts.clear()

    def has_usable_hardware_encoders(self) -> bool:
        return any(e.is_hardware_accelerated and self.is_usable(e) for e in self.chain)

    def get_error_specific_fallback(
        self, encoder: HardwareEncoderKind, error_text: str
    ) -> Optional[HardwareEncoderKind]:
        """Recommends an encoder based on what the error message mentions.

        Returns None for errors that match no known category.
        """
        text = error_text.lower()
        keywords = VENDOR_KEYWORDS.get(encoder.vendor, ())
        if any(word in text for word in keywords):
            return self._alternative_for(encoder)
        if "memory" in text:
            return K.SOFTWARE
        if "device" in text or "unavailable" in text:
            return self._alternative_for(encoder)
        return None

    def _alternative_for(self, encoder: HardwareEncoderKind) -> Optional[HardwareEncoderKind]:
        for candidate in SAME_CODEC_ALTERNATIVES.get(encoder.codec_family, ()):
            if candidate == encoder or candidate.vendor == encoder.vendor:
                continue
            if candidate in self.chain and self.is_usable(candidate):
                return candidate
        return None


class RecoveryStrategy(str, Enum):
    REDUCE_MEMORY_USAGE = "ReduceMemoryUsage"
    CHANGE_DEVICE = "ChangeDevice"
    CHANGE_ENCODER = "ChangeEncoder"
    AVOID_NVIDIA = "AvoidNvidia"
    AVOID_AMD = "AvoidAmd"
    AVOID_INTEL = "AvoidIntel"
    FALLBACK_TO_SOFTWARE = "FallbackToSoftware"
    TRY_ALTERNATIVE = "TryAlternative"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    RecoveryStrategy.REDUCE_MEMORY_USAGE: "Reduce memory usage and try again",
    RecoveryStrategy.CHANGE_DEVICE: "Try a different hardware device",
    RecoveryStrategy.CHANGE_ENCODER: "Switch to different encoder",
    RecoveryStrategy.AVOID_NVIDIA: "Avoid NVIDIA encoders temporarily",
    RecoveryStrategy.AVOID_AMD: "Avoid AMD encoders temporarily",
    RecoveryStrategy.AVOID_INTEL: "Avoid Intel encoders temporarily",
    RecoveryStrategy.FALLBACK_TO_SOFTWARE: "Use software encoding",
    RecoveryStrategy.TRY_ALTERNATIVE: "Try alternative approach",
}

_AVOID_STRATEGY = {
    Vendor.NVIDIA: RecoveryStrategy.AVOID_NVIDIA,
    Vendor.AMD: RecoveryStrategy.AVOID_AMD,
    Vendor.INTEL: RecoveryStrategy.AVOID_INTEL,
}

_AVOIDED_VENDOR = {strategy: vendor for vendor, strategy in _AVOID_STRATEGY.items()}


def analyze_error_for_recovery(
    error_text: str, encoder: Optional[HardwareEncoderKind] = None
) -> RecoveryStrategy:
    """Maps error text to exactly one recovery strategy.

    With ``encoder`` given, a message naming that encoder's own vendor stack
    is blamed on the vendor before the generic checks run.
    """
    text = error_text.lower()

    if encoder is not None and encoder.vendor in VENDOR_KEYWORDS:
        if any(word in text for word in VENDOR_KEYWORDS[encoder.vendor]):
            return _AVOID_STRATEGY[encoder.vendor]

    if "memory" in text:
        return RecoveryStrategy.REDUCE_MEMORY_USAGE
    if "device" in text or "unavailable" in text:
        return RecoveryStrategy.CHANGE_DEVICE
    if "driver" in text or "initialization" in text:
        return RecoveryStrategy.FALLBACK_TO_SOFTWARE
    if "codec" in text or "unsupported" in text:
        return RecoveryStrategy.CHANGE_ENCODER
    for vendor, words in VENDOR_KEYWORDS.items():
        if any(word in text for word in words):
            return _AVOID_STRATEGY[vendor]
    return RecoveryStrategy.TRY_ALTERNATIVE


def apply_recovery_strategy(
    strategy: RecoveryStrategy,
    current: HardwareEncoderKind,
    capabilities: "HardwareCapabilities",
) -> Optional[HardwareEncoderKind]:
    """Turns a strategy into a concrete encoder, or None when it has no answer."""
    if strategy == RecoveryStrategy.REDUCE_MEMORY_USAGE:
        return current

    if strategy == RecoveryStrategy.CHANGE_DEVICE:
        cuda_devices = [d for d in capabilities.devices if d.vendor == Vendor.NVIDIA]
        if len(cuda_devices) > 1 and current.vendor == Vendor.NVIDIA:
            return current
        return None

    if strategy == RecoveryStrategy.CHANGE_ENCODER:
        downgrade = _DOWNGRADES.get(current)
        if downgrade is not None and capabilities.is_available(downgrade):
            return downgrade
        return None

    if strategy in _AVOIDED_VENDOR:
        for candidate in _AVOID_ALTERNATIVES[_AVOIDED_VENDOR[strategy]]:
            if capabilities.is_available(candidate):
                return candidate
        return K.SOFTWARE

    if strategy == RecoveryStrategy.FALLBACK_TO_SOFTWARE:
        return K.SOFTWARE

    if capabilities.preferred_encoder != current:
        return capabilities.preferred_encoder
    return K.SOFTWARE
