import logging
import time
from pathlib import Path
from typing import Optional
from smallmp4.domain.capabilities import HardwareCapabilities
from smallmp4.domain.encoders import HardwareEncoderKind, Vendor
from smallmp4.domain.errors import CompressionFailedError, InputNotFoundError
from smallmp4.domain.estimator import SizeEstimator
from smallmp4.domain.events import (
    AttemptFailed, EncoderFallback, JobCompleted, JobFailed, JobStarted,
)
from smallmp4.domain.fallback import (
    FallbackState, RecoveryStrategy, analyze_error_for_recovery, apply_recovery_strategy,
)
from smallmp4.domain.models import (
    CompressionJob, CompressionResult, CompressionSettings, JobStatus,
)
from smallmp4.infrastructure.event_bus import EventBus
from smallmp4.infrastructure.ffmpeg import FFmpegAdapter, EncodeOutcome
from smallmp4.infrastructure.ffprobe import FFprobeAdapter
from smallmp4.infrastructure.output_paths import default_output_path

MAX_ATTEMPTS = 3


class Orchestrator:
    """Drives one compression request: probe, encode, fall back, retry."""

    def __init__(
        self,
        event_bus: EventBus,
        ffprobe_adapter: FFprobeAdapter,
        ffmpeg_adapter: FFmpegAdapter,
        capabilities: HardwareCapabilities,
        fallback: Optional[FallbackState] = None,
        estimator: Optional[SizeEstimator] = None,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.event_bus = event_bus
        self.ffprobe_adapter = ffprobe_adapter
        self.ffmpeg_adapter = ffmpeg_adapter
        self.capabilities = capabilities
        self.fallback = fallback or FallbackState.from_capabilities(capabilities)
        self.estimator = estimator or SizeEstimator()
        self.max_attempts = max_attempts
        self.logger = logging.getLogger(__name__)

    def compress(
        self,
        input_path: Path,
        settings: CompressionSettings,
        output_path: Optional[Path] = None,
    ) -> CompressionResult:
        if not input_path.exists():
            raise InputNotFoundError(input_path)

        job = CompressionJob(input_path=input_path, status=JobStatus.PROBING)
        metadata = self.ffprobe_adapter.probe(input_path)

        if output_path is None:
            output_path = default_output_path(input_path)
        else:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        job.output_path = output_path

        # Retries mutate the settings; keep the caller's copy intact
        settings = settings.model_copy()
        bitrate = self.estimator.bitrate_for_target(metadata, settings.target_mb)
        self.logger.info(
            f"Compressing {input_path.name} -> {output_path.name}: target {settings.target_mb} MB, "
            f"video bitrate {bitrate} kbps, encoder {settings.encoder.value}"
        )
        self.event_bus.publish(JobStarted(job=job, target_mb=settings.target_mb, bitrate_kbps=bitrate))

        start_time = time.monotonic()
        last_error = ""
        attempts = 0
        while attempts < self.max_attempts:
            attempts += 1
            job.attempt = attempts
            job.encoder = settings.encoder
            job.status = JobStatus.ENCODING
            job.progress = 0.0

            outcome = self.ffmpeg_adapter.compress(job, settings, metadata, bitrate, output_path)
            if outcome.success:
                self.fallback.record_success(settings.encoder)
                return self._complete(job, settings, outcome, attempts, time.monotonic() - start_time)

            last_error = outcome.error_message
            self.fallback.record_failure(settings.encoder, last_error)
            self.event_bus.publish(AttemptFailed(job=job, encoder=settings.encoder, error_message=last_error))

            if attempts >= self.max_attempts:
                break
            if not self._plan_retry(job, settings, last_error):
                self.logger.warning(f"No alternative encoder left after {settings.encoder.value} failed")
                break

        error = CompressionFailedError(attempts, last_error)
        job.status = JobStatus.FAILED
        job.error_message = str(error)
        self.logger.error(f"{input_path.name}: {error}")
        self.event_bus.publish(JobFailed(job=job, error_message=job.error_message))
        raise error

    def _complete(
        self,
        job: CompressionJob,
        settings: CompressionSettings,
        outcome: EncodeOutcome,
        attempts: int,
        elapsed: float,
    ) -> CompressionResult:
        input_size = job.input_path.stat().st_size
        output_size = outcome.output_size_bytes
        result = CompressionResult(
            input_path=job.input_path,
            output_path=job.output_path,
            input_size_bytes=input_size,
            output_size_bytes=output_size,
            compression_ratio=input_size / output_size if output_size else 0.0,
            encoding_time_seconds=elapsed,
            encoder_used=settings.encoder,
            hardware_accelerated=settings.hardware_acceleration,
            attempts=attempts,
            target_mb=settings.target_mb,
        )
        if result.exceeded_target:
            self.logger.warning(
                f"{job.input_path.name}: output {result.output_size_mb:.2f} MB exceeds target {settings.target_mb} MB"
            )
        job.status = JobStatus.COMPLETED
        job.progress = 1.0
        self.logger.info(result.summary())
        self.event_bus.publish(JobCompleted(job=job, result=result))
        return result

    def _plan_retry(self, job: CompressionJob, settings: CompressionSettings, error: str) -> bool:
        """Adjusts settings for the next attempt; False when nothing would change."""
        current = settings.encoder

        candidate = self.fallback.get_error_specific_fallback(current, error)
        if candidate is not None and candidate != current and self.fallback.is_usable(candidate):
            return self._switch(job, settings, candidate, "error-specific fallback")

        candidate = self.fallback.get_next_encoder(current)
        if candidate != current:
            return self._switch(job, settings, candidate, "failure limit reached")

        strategy = analyze_error_for_recovery(error, current)
        candidate = apply_recovery_strategy(strategy, current, self.capabilities)
        self.logger.info(f"Recovery strategy for {current.value}: {strategy.description}")
        if candidate is None:
            return False

        if candidate != current:
            candidate = self.fallback.get_next_encoder(candidate)
            if candidate == current:
                return False
            return self._switch(job, settings, candidate, strategy.description)

        if strategy == RecoveryStrategy.REDUCE_MEMORY_USAGE and not settings.memory_optimization:
            settings.memory_optimization = True
            self.logger.info(f"Retrying {current.value} with memory optimization")
            return True

        if strategy == RecoveryStrategy.CHANGE_DEVICE:
            device_id = self._next_cuda_device(settings.device_id)
            if device_id is not None:
                self.logger.info(f"Retrying {current.value} on CUDA device {device_id}")
                settings.device_id = device_id
                return True
        return False

    def _switch(
        self,
        job: CompressionJob,
        settings: CompressionSettings,
        encoder: HardwareEncoderKind,
        reason: str,
    ) -> bool:
        previous = settings.encoder
        settings.use_encoder(encoder)
        if encoder.vendor == Vendor.NVIDIA and settings.device_id is None:
            best = self.capabilities.best_nvenc_device()
            settings.device_id = best.id if best else None
        self.logger.info(f"Falling back from {previous.value} to {encoder.value} ({reason})")
        self.event_bus.publish(EncoderFallback(job=job, from_encoder=previous, to_encoder=encoder, reason=reason))
        return True

    def _next_cuda_device(self, current_id: Optional[int]) -> Optional[int]:
        ids = sorted(d.id for d in self.capabilities.devices if d.vendor == Vendor.NVIDIA)
        others = [i for i in ids if i != current_id]
        if len(ids) < 2 or not others:
            return None
        later = [i for i in others if current_id is None or i > current_id]
        return later[0] if later else others[0]
