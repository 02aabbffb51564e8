from .events import Event, EventSink, EventType, make_event
from .models import (
    BackoffPolicy,
    JobContext,
    JobHandle,
    JobRecord,
    JobRequest,
    JobResult,
    JobState,
    Worker,
)
from .scheduler import JobScheduler, LocalJobScheduler

__all__ = [
    "Event",
    "EventSink",
    "EventType",
    "make_event",
    "BackoffPolicy",
    "JobContext",
    "JobHandle",
    "JobRecord",
    "JobRequest",
    "JobResult",
    "JobState",
    "Worker",
    "JobScheduler",
    "LocalJobScheduler",
]
