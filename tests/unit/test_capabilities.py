import pytest
from pydantic import ValidationError
from smallmp4.domain.capabilities import (
    AcceleratorDevice, HardwareCapabilities, ProbeResult, ProbeStatus,
)
from smallmp4.domain.encoders import HardwareEncoderKind, Vendor
from conftest import make_capabilities, nvidia_device

K = HardwareEncoderKind


def test_software_only():
    caps = HardwareCapabilities.software_only()
    assert caps.available_encoders == [K.SOFTWARE]
    assert caps.preferred_encoder == K.SOFTWARE
    assert caps.memory_usage_mb == 356
    assert caps.encoding_speed_multiplier == 1.0
    assert not caps.has_cuda


def test_software_appended_last_and_deduplicated():
    results = [
        ProbeResult(probe="a", status=ProbeStatus.FOUND, encoders=[K.QSV_H264, K.VAAPI]),
        ProbeResult(probe="b", status=ProbeStatus.FOUND, encoders=[K.VAAPI, K.SOFTWARE, K.AMF_H264]),
    ]
    caps = HardwareCapabilities.from_probe_results(results)
    assert caps.available_encoders == [K.QSV_H264, K.VAAPI, K.AMF_H264, K.SOFTWARE]
    assert caps.available_encoders.count(K.SOFTWARE) == 1


def test_failed_and_missing_probes_contribute_nothing():
    results = [
        ProbeResult.failed("nvidia", "nvidia-smi timed out"),
        ProbeResult.not_found("amd"),
        ProbeResult(probe="intel", status=ProbeStatus.FOUND, encoders=[K.QSV_H264]),
    ]
    caps = HardwareCapabilities.from_probe_results(results)
    assert caps.available_encoders == [K.QSV_H264, K.SOFTWARE]


def test_preferred_encoder_follows_priority():
    caps = make_capabilities(K.AMF_H264, K.QSV_H265, K.NVENC_AV1)
    assert caps.preferred_encoder == K.QSV_H265
    caps = make_capabilities(K.NVENC_H264, K.NVENC_H265, devices=[nvidia_device()])
    assert caps.preferred_encoder == K.NVENC_H265


def test_cuda_memory_estimate_is_capped():
    caps = make_capabilities(K.NVENC_H264, devices=[nvidia_device(memory_mb=8192)])
    assert caps.memory_usage_mb == 100 + 512
    caps = make_capabilities(K.NVENC_H264, devices=[nvidia_device(memory_mb=2048)])
    assert caps.memory_usage_mb == 100 + 256


def test_other_hardware_memory_estimate():
    caps = make_capabilities(K.QSV_H264)
    assert caps.memory_usage_mb == 228


def test_performance_scales_with_compute_capability():
    caps = make_capabilities(K.NVENC_H264, K.QSV_H264, devices=[nvidia_device(cc=(8, 6))])
    assert caps.speed_improvement(K.NVENC_H264) == 12.0
    assert caps.speed_improvement(K.QSV_H264) == 7.5
    assert caps.encoding_speed_multiplier == 12.0
    # not available, falls back to catalog default
    assert caps.speed_improvement(K.AMF_H265) == 5.5


def test_best_nvenc_device_prefers_newest():
    old = nvidia_device(0, cc=(6, 1), memory_mb=11000)
    new = nvidia_device(1, cc=(8, 9), memory_mb=8000)
    maxwell = nvidia_device(2, cc=(5, 2), memory_mb=12000)
    caps = make_capabilities(K.NVENC_H264, devices=[old, new, maxwell])
    assert caps.best_nvenc_device() == new
    assert caps.has_cuda


def test_device_encoder_support():
    device = nvidia_device(cc=(7, 5))
    assert device.supports(K.NVENC_H265)
    assert not device.supports(K.NVENC_AV1)
    assert not AcceleratorDevice(id=0, name="old", vendor=Vendor.NVIDIA, compute_capability=(5, 0)).nvenc_support


def test_capabilities_require_software():
    with pytest.raises(ValidationError):
        HardwareCapabilities(available_encoders=[K.NVENC_H264], preferred_encoder=K.NVENC_H264)
