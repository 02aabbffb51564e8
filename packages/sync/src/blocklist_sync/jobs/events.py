from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from blocklist_sync.core import append_jsonl, iter_jsonl, utc_now_iso


class EventType(str, Enum):
    SCHEDULER_START = "scheduler.start"
    SCHEDULER_STOP = "scheduler.stop"

    JOB_ENQUEUED = "job.enqueued"
    JOB_BLOCKED = "job.blocked"
    JOB_RELEASED = "job.released"
    JOB_RECOVERED = "job.recovered"
    JOB_STARTED = "job.started"
    JOB_SUCCEEDED = "job.succeeded"
    JOB_RETRY = "job.retry"
    JOB_FAILED = "job.failed"
    JOB_CANCELLED = "job.cancelled"
    JOB_RESULT_DISCARDED = "job.result_discarded"

    PIPELINE_ENQUEUED = "pipeline.enqueued"
    PIPELINE_CANCELLED = "pipeline.cancelled"


@dataclass(frozen=True, slots=True)
class Event:
    """
    Structured journal entry.
    """

    type: str
    ts_utc: str
    job_id: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)


class EventSink:
    """Append-only JSONL journal."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        with self._lock:
            append_jsonl(self.path, asdict(event))

    def read(self) -> list[Event]:
        return [Event(**doc) for doc in iter_jsonl(self.path)]


def make_event(
    *,
    event_type: EventType | str,
    job_id: int | None = None,
    **data: Any,
) -> Event:
    type_value = (
        event_type.value if isinstance(event_type, EventType) else str(event_type)
    )
    return Event(type=type_value, ts_utc=utc_now_iso(), job_id=job_id, data=dict(data))
