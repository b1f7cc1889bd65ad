from pathlib import Path
from smallmp4.domain.encoders import HardwareEncoderKind
from smallmp4.domain.events import AttemptFailed, JobFailed
from smallmp4.domain.models import CompressionJob
from smallmp4.infrastructure.event_bus import EventBus


def make_failure(message="boom"):
    job = CompressionJob(input_path=Path("a.mp4"))
    return AttemptFailed(job=job, encoder=HardwareEncoderKind.SOFTWARE, error_message=message)


def test_delivers_to_subscribers_of_that_type():
    bus = EventBus()
    received = []
    bus.subscribe(AttemptFailed, received.append)
    bus.subscribe(JobFailed, lambda e: received.append("wrong"))

    event = make_failure()
    bus.publish(event)
    assert received == [event]


def test_unsubscribe():
    bus = EventBus()
    received = []
    bus.subscribe(AttemptFailed, received.append)
    bus.unsubscribe(AttemptFailed, received.append)
    bus.publish(make_failure())
    assert received == []


def test_raising_subscriber_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise ValueError("subscriber bug")

    bus.subscribe(AttemptFailed, broken)
    bus.subscribe(AttemptFailed, received.append)
    bus.publish(make_failure())

    assert len(received) == 1
