from abc import ABC, abstractmethod
import logging
import platform
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Set, Tuple
from smallmp4.domain.encoders import HardwareEncoderKind, Vendor
from smallmp4.domain.capabilities import (
    AcceleratorDevice, HardwareCapabilities, ProbeResult, ProbeStatus,
)

logger = logging.getLogger(__name__)

K = HardwareEncoderKind

NVIDIA_SMI_QUERY = "index,name,compute_cap,memory.total,encoder.max_sessions"
LIBVA_PATHS = (
    "/usr/lib/x86_64-linux-gnu/libva.so",
    "/usr/lib/x86_64-linux-gnu/libva.so.2",
    "/usr/lib64/libva.so",
    "/usr/lib64/libva.so.2",
    "/usr/lib/libva.so",
    "/usr/lib/libva.so.2",
    "/usr/local/lib/libva.so",
)
VIDEOTOOLBOX_FRAMEWORK = "/System/Library/Frameworks/VideoToolbox.framework"


def run_tool(cmd: List[str], timeout: float) -> str:
    """Runs a probing tool and returns stdout; raises on any failure."""
    result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=True)
    return result.stdout


class FFmpegListing:
    """What the local ffmpeg build reports: hwaccel methods and encoder names."""

    def __init__(self, hwaccels: Set[str], encoders: Set[str]):
        self.hwaccels = hwaccels
        self.encoders = encoders

    @classmethod
    def query(cls, ffmpeg_path: str, timeout: float) -> "FFmpegListing":
        hwaccels = parse_hwaccels(run_tool([ffmpeg_path, "-hide_banner", "-hwaccels"], timeout))
        encoders = parse_encoders(run_tool([ffmpeg_path, "-hide_banner", "-encoders"], timeout))
        return cls(hwaccels, encoders)

    def has_hwaccel(self, *names: str) -> bool:
        return any(name in accel for accel in self.hwaccels for name in names)


def parse_hwaccels(output: str) -> Set[str]:
    methods = set()
    for line in output.splitlines():
        line = line.strip().lower()
        if not line or line.startswith("hardware acceleration methods"):
            continue
        methods.add(line)
    return methods


def parse_encoders(output: str) -> Set[str]:
    # Encoder lines follow a '------' separator: ' V....D h264_nvenc  NVIDIA NVENC ...'
    names = set()
    in_table = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("------"):
            in_table = True
            continue
        if not in_table or not stripped:
            continue
        parts = stripped.split()
        if len(parts) >= 2:
            names.add(parts[1])
    return names


def parse_compute_capability(value: str) -> Tuple[int, int]:
    major, _, minor = value.strip().partition(".")
    return int(major), int(minor or 0)


def estimate_max_sessions(compute_capability: Tuple[int, int]) -> int:
    major = compute_capability[0]
    if major in (8, 9):
        return 5
    if major == 7:
        return 3
    if major == 6:
        return 2
    return 1


def parse_nvidia_smi(output: str) -> List[AcceleratorDevice]:
    devices = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 4:
            logger.warning(f"Unexpected nvidia-smi output format: {line}")
            continue
        try:
            cc = parse_compute_capability(parts[2])
            memory_mb = int(float(parts[3]))
            device_id = int(parts[0])
        except ValueError:
            logger.warning(f"Unparseable nvidia-smi line: {line}")
            continue
        sessions = estimate_max_sessions(cc)
        if len(parts) >= 5 and parts[4].isdigit():
            sessions = int(parts[4])
        devices.append(AcceleratorDevice(
            id=device_id,
            name=parts[1],
            vendor=Vendor.NVIDIA,
            compute_capability=cc,
            memory_mb=memory_mb,
            max_concurrent_sessions=sessions,
        ))
    return devices


class VendorProbe(ABC):
    name = "generic"

    def __init__(self, timeout: float = 10.0, system: Optional[str] = None):
        self.timeout = timeout
        self.system = system or platform.system()

    @abstractmethod
    def probe(self, listing: FFmpegListing) -> ProbeResult:
        ...

    def _lspci_mentions(self, vendor_word: str) -> bool:
        try:
            output = run_tool(["lspci"], self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"lspci unavailable: {e}")
            return False
        for line in output.lower().splitlines():
            if vendor_word in line and any(kind in line for kind in ("vga", "display", "3d")):
                return True
        return False


class NvidiaProbe(VendorProbe):
    name = "nvidia"

    def probe(self, listing: FFmpegListing) -> ProbeResult:
        if "cuda" not in listing.hwaccels:
            return ProbeResult.not_found(self.name)

        devices = self._query_devices()
        capable = [d for d in devices if d.nvenc_support]
        if not capable:
            logger.debug("No NVENC-capable NVIDIA devices")
            return ProbeResult.not_found(self.name)

        encoders = [
            kind for kind in (K.NVENC_H264, K.NVENC_H265, K.NVENC_AV1)
            if any(d.supports(kind) for d in capable)
        ]
        return ProbeResult(probe=self.name, status=ProbeStatus.FOUND, encoders=encoders, devices=devices)

    def _query_devices(self) -> List[AcceleratorDevice]:
        cmd = ["nvidia-smi", f"--query-gpu={NVIDIA_SMI_QUERY}", "--format=csv,noheader,nounits"]
        try:
            devices = parse_nvidia_smi(run_tool(cmd, self.timeout))
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"nvidia-smi detection failed: {e}, assuming a generic device")
            devices = []
        if devices:
            return devices
        # ffmpeg sees CUDA, so assume a conservative Pascal-class card
        return [AcceleratorDevice(
            id=0,
            name="NVIDIA GPU",
            vendor=Vendor.NVIDIA,
            compute_capability=(6, 0),
            memory_mb=4096,
            max_concurrent_sessions=2,
        )]


class AmdProbe(VendorProbe):
    name = "amd"

    def __init__(self, timeout: float = 10.0, system: Optional[str] = None, sysfs_root: Path = Path("/sys")):
        super().__init__(timeout, system)
        self.sysfs_root = sysfs_root

    def probe(self, listing: FFmpegListing) -> ProbeResult:
        if not listing.has_hwaccel("amf", "amd", "vaapi"):
            return ProbeResult.not_found(self.name)
        if not (self._lspci_mentions("amd") or _sysfs_vendor_present(self.sysfs_root, "0x1002")):
            return ProbeResult.not_found(self.name)

        encoders = [K.AMF_H264]
        if "hevc_amf" in listing.encoders:
            encoders.append(K.AMF_H265)
        device = AcceleratorDevice(id=0, name="AMD GPU", vendor=Vendor.AMD)
        return ProbeResult(probe=self.name, status=ProbeStatus.FOUND, encoders=encoders, devices=[device])


class IntelProbe(VendorProbe):
    name = "intel"

    def __init__(self, timeout: float = 10.0, system: Optional[str] = None, sysfs_root: Path = Path("/sys")):
        super().__init__(timeout, system)
        self.sysfs_root = sysfs_root

    def probe(self, listing: FFmpegListing) -> ProbeResult:
        if not listing.has_hwaccel("qsv", "intel", "vaapi", "dxva2"):
            return ProbeResult.not_found(self.name)
        present = (
            self._lspci_mentions("intel")
            or _sysfs_vendor_present(self.sysfs_root, "0x8086")
            or (self.sysfs_root / "module" / "i915").exists()
        )
        if not present:
            return ProbeResult.not_found(self.name)

        encoders = [K.QSV_H264]
        if "hevc_qsv" in listing.encoders:
            encoders.append(K.QSV_H265)
        if "av1_qsv" in listing.encoders:
            encoders.append(K.QSV_AV1)
        device = AcceleratorDevice(id=0, name="Intel GPU", vendor=Vendor.INTEL)
        return ProbeResult(probe=self.name, status=ProbeStatus.FOUND, encoders=encoders, devices=[device])


class VaapiProbe(VendorProbe):
    name = "vaapi"

    def __init__(
        self,
        timeout: float = 10.0,
        system: Optional[str] = None,
        libva_paths: Sequence[str] = LIBVA_PATHS,
        dri_dir: Path = Path("/dev/dri"),
    ):
        super().__init__(timeout, system)
        self.libva_paths = libva_paths
        self.dri_dir = dri_dir

    def probe(self, listing: FFmpegListing) -> ProbeResult:
        if self.system != "Linux" or "vaapi" not in listing.hwaccels:
            return ProbeResult.not_found(self.name)
        if not any(Path(p).exists() for p in self.libva_paths):
            logger.debug("VAAPI: libva not found")
            return ProbeResult.not_found(self.name)
        nodes = list(self.dri_dir.glob("renderD*")) + list(self.dri_dir.glob("card*")) if self.dri_dir.exists() else []
        if not nodes:
            logger.debug("VAAPI: no DRI device nodes")
            return ProbeResult.not_found(self.name)
        return ProbeResult(probe=self.name, status=ProbeStatus.FOUND, encoders=[K.VAAPI])


class VideoToolboxProbe(VendorProbe):
    name = "videotoolbox"

    def __init__(self, timeout: float = 10.0, system: Optional[str] = None, framework: str = VIDEOTOOLBOX_FRAMEWORK):
        super().__init__(timeout, system)
        self.framework = framework

    def probe(self, listing: FFmpegListing) -> ProbeResult:
        if self.system != "Darwin" or "videotoolbox" not in listing.hwaccels:
            return ProbeResult.not_found(self.name)
        if not Path(self.framework).exists():
            return ProbeResult.not_found(self.name)
        return ProbeResult(probe=self.name, status=ProbeStatus.FOUND, encoders=[K.VIDEOTOOLBOX])


def _sysfs_vendor_present(sysfs_root: Path, vendor_id: str) -> bool:
    drm = sysfs_root / "class" / "drm"
    if not drm.exists():
        return False
    for vendor_file in drm.glob("card*/device/vendor"):
        try:
            if vendor_file.read_text().strip().lower() == vendor_id:
                return True
        except OSError:
            continue
    return False


class HardwareDetector:
    """Runs every vendor probe once and merges what they found."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 10.0, probes: Optional[List[VendorProbe]] = None):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self.probes = probes if probes is not None else default_probes(timeout)
        self.results: List[ProbeResult] = []

    def detect(self) -> HardwareCapabilities:
        try:
            listing = FFmpegListing.query(self.ffmpeg_path, self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not query ffmpeg for hardware support: {e}")
            self.results = []
            return HardwareCapabilities.software_only()

        self.results = [self._run_probe(probe, listing) for probe in self.probes]
        capabilities = HardwareCapabilities.from_probe_results(self.results)
        logger.info(
            f"Hardware detection complete: encoders={[e.value for e in capabilities.available_encoders]}, "
            f"preferred={capabilities.preferred_encoder.value}"
        )
        return capabilities

    def _run_probe(self, probe: VendorProbe, listing: FFmpegListing) -> ProbeResult:
        try:
            result = probe.probe(listing)
        except Exception as e:
            # A broken probe only costs its own encoders
            logger.warning(f"Hardware probe '{probe.name}' failed: {e}")
            return ProbeResult.failed(probe.name, str(e))

        if result.status == ProbeStatus.FOUND:
            logger.info(f"Probe '{probe.name}' found encoders: {[e.value for e in result.encoders]}")
        else:
            logger.debug(f"Probe '{probe.name}': no hardware found")
        return result


def default_probes(timeout: float) -> List[VendorProbe]:
    return [
        NvidiaProbe(timeout),
        AmdProbe(timeout),
        IntelProbe(timeout),
        VaapiProbe(timeout),
        VideoToolboxProbe(timeout),
    ]
