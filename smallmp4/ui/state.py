import threading
from collections import deque
from typing import Deque, Optional
from smallmp4.domain.encoders import HardwareEncoderKind
from smallmp4.domain.models import CompressionJob, CompressionResult


class UIState:
    """Thread-safe state shared between the ffmpeg reader thread and the display."""

    def __init__(self):
        self._lock = threading.RLock()

        self.current_job: Optional[CompressionJob] = None
        self.encoder: Optional[HardwareEncoderKind] = None
        self.target_mb = 0.0
        self.bitrate_kbps = 0

        self.progress = 0.0
        self.eta_seconds: Optional[float] = None
        self.pass_number = 1

        self.attempt = 0
        self.failed_attempts = 0
        self.messages: Deque[str] = deque(maxlen=5)

        self.result: Optional[CompressionResult] = None
        self.error_message: Optional[str] = None

    @property
    def finished(self) -> bool:
        with self._lock:
            return self.result is not None or self.error_message is not None

    def start_job(self, job: CompressionJob, target_mb: float, bitrate_kbps: int):
        with self._lock:
            self.current_job = job
            self.encoder = job.encoder
            self.target_mb = target_mb
            self.bitrate_kbps = bitrate_kbps
            self.progress = 0.0
            self.eta_seconds = None
            self.result = None
            self.error_message = None

    def start_attempt(self, attempt: int):
        with self._lock:
            self.attempt = attempt
            self.progress = 0.0
            self.eta_seconds = None
            self.pass_number = 1

    def update_progress(self, progress: float, eta_seconds: Optional[float], pass_number: int):
        with self._lock:
            # Progress never moves backwards within an attempt
            self.progress = max(self.progress, progress)
            self.eta_seconds = eta_seconds
            self.pass_number = pass_number

    def record_attempt_failure(self, encoder: HardwareEncoderKind, message: str):
        with self._lock:
            self.failed_attempts += 1
            self.messages.appendleft(f"{encoder.display_name} failed")

    def switch_encoder(self, encoder: HardwareEncoderKind, reason: str):
        with self._lock:
            self.encoder = encoder
            self.progress = 0.0
            self.eta_seconds = None
            self.pass_number = 1
            self.messages.appendleft(f"Switching to {encoder.display_name} ({reason})")

    def complete(self, result: CompressionResult):
        with self._lock:
            self.result = result
            self.progress = 1.0
            self.eta_seconds = 0.0

    def fail(self, message: str):
        with self._lock:
            self.error_message = message
