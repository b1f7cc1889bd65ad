from smallmp4.infrastructure.event_bus import EventBus
from smallmp4.ui.state import UIState
from smallmp4.domain.events import (
    JobStarted, JobProgressUpdated, AttemptFailed, EncoderFallback,
    JobCompleted, JobFailed,
)


class UIManager:
    """Subscribes to EventBus and updates UIState."""

    def __init__(self, bus: EventBus, state: UIState):
        self.bus = bus
        self.state = state
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(JobStarted, self.on_job_started)
        self.bus.subscribe(JobProgressUpdated, self.on_job_progress)
        self.bus.subscribe(AttemptFailed, self.on_attempt_failed)
        self.bus.subscribe(EncoderFallback, self.on_encoder_fallback)
        self.bus.subscribe(JobCompleted, self.on_job_completed)
        self.bus.subscribe(JobFailed, self.on_job_failed)

    def on_job_started(self, event: JobStarted):
        self.state.start_job(event.job, event.target_mb, event.bitrate_kbps)

    def on_job_progress(self, event: JobProgressUpdated):
        with self.state._lock:
            if event.job.attempt != self.state.attempt:
                self.state.start_attempt(event.job.attempt)
            if event.job.encoder is not None:
                self.state.encoder = event.job.encoder
        self.state.update_progress(event.progress, event.eta_seconds, event.pass_number)

    def on_attempt_failed(self, event: AttemptFailed):
        self.state.record_attempt_failure(event.encoder, event.error_message)

    def on_encoder_fallback(self, event: EncoderFallback):
        self.state.switch_encoder(event.to_encoder, event.reason)

    def on_job_completed(self, event: JobCompleted):
        self.state.complete(event.result)

    def on_job_failed(self, event: JobFailed):
        self.state.fail(event.error_message)
