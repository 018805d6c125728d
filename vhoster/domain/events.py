"""Domain events for the conversion pipeline.

Events represent job state changes that flow through the EventBus, decoupling
the job registry from the status broadcast hub.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pydantic import BaseModel
from .models import TranscodeJob


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    pass


class JobEvent(Event):
    """Base class for events related to a specific conversion job.

    ``job`` is a snapshot taken when the transition happened.
    """

    job: TranscodeJob


class JobQueued(JobEvent):
    """Emitted when a conversion is scheduled for an upload."""

    pass


class JobStarted(JobEvent):
    """Emitted when the encoder process is launched (once per strategy attempt)."""

    pass


class JobProgressUpdated(JobEvent):
    """Emitted periodically as the encoder reports or the estimator infers progress."""

    pass


class JobCompleted(JobEvent):
    """Emitted after the converted file has replaced the original."""

    pass


class JobFailed(JobEvent):
    """Emitted when conversion fails; the original file stays servable."""

    error_message: str
