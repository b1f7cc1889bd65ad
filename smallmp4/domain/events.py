from typing import Optional
from pydantic import BaseModel
from .encoders import HardwareEncoderKind
from .models import CompressionJob, CompressionResult


class Event(BaseModel):
    """Base class for all domain events."""
    pass


class JobEvent(Event):
    job: CompressionJob


class JobStarted(JobEvent):
    target_mb: float
    bitrate_kbps: int


class JobProgressUpdated(JobEvent):
    progress: float
    eta_seconds: Optional[float] = None
    pass_number: int = 1


class AttemptFailed(JobEvent):
    encoder: HardwareEncoderKind
    error_message: str


class EncoderFallback(JobEvent):
    from_encoder: HardwareEncoderKind
    to_encoder: HardwareEncoderKind
    reason: str


class JobCompleted(JobEvent):
    result: CompressionResult


class JobFailed(JobEvent):
    error_message: str
