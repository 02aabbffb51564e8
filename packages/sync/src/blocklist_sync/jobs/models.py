from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from blocklist_sync.core import MIN_BACKOFF_S, ILogger, JobError


class JobState(StrEnum):
    ENQUEUED = "enqueued"
    BLOCKED = "blocked"
    RUNNING = "running"
    # cancelled while a worker still holds it; finishes as CANCELLED
    CANCELLING = "cancelling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_finished(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)

    def is_pending(self) -> bool:
        return self in (JobState.ENQUEUED, JobState.BLOCKED)

    def is_running(self) -> bool:
        return self in (JobState.RUNNING, JobState.CANCELLING)


class BackoffPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["linear", "exponential"] = "linear"
    delay_s: float = MIN_BACKOFF_S

    @field_validator("delay_s")
    @classmethod
    def _floor(cls, v: float) -> float:
        return max(MIN_BACKOFF_S, float(v))

    def delay_for(self, attempt: int) -> float:
        """Delay before the next run after `attempt` runs have been made."""
        n = max(1, int(attempt))
        if self.kind == "linear":
            return self.delay_s * n
        return self.delay_s * (2 ** (n - 1))


class JobRequest(BaseModel):
    """What a caller hands to `enqueue`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: str = Field(min_length=1)
    tags: tuple[str, ...] = ()
    payload: dict[str, Any] = Field(default_factory=dict)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    initial_delay_s: float = Field(default=0.0, ge=0)
    max_attempts: int = Field(default=10, ge=1)


class JobRecord(BaseModel):
    """A job as the scheduler persists it."""

    model_config = ConfigDict(extra="ignore")

    id: int
    kind: str
    tags: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.ENQUEUED
    depends_on: Optional[int] = None
    attempts: int = 0
    max_attempts: int = 10
    owner: Optional[str] = None
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    initial_delay_s: float = 0.0
    not_before_ms: int = 0
    created_at_utc: str
    updated_at_utc: str
    finished_at_ms: Optional[int] = None
    output: dict[str, Any] = Field(default_factory=dict)
    error: Optional[dict[str, str]] = None


class JobTable(BaseModel):
    model_config = ConfigDict(extra="ignore")

    next_id: int = 1
    jobs: list[JobRecord] = Field(default_factory=list)


@dataclass(frozen=True, slots=True)
class JobHandle:
    id: int
    tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class JobResult:
    status: Literal["success", "retry", "failure"]
    output: dict[str, Any] = field(default_factory=dict)
    error: Optional[JobError] = None

    @classmethod
    def success(cls, **output: Any) -> "JobResult":
        return cls(status="success", output=dict(output))

    @classmethod
    def retry(cls, reason: str | None = None) -> "JobResult":
        out = {"reason": reason} if reason else {}
        return cls(status="retry", output=out)

    @classmethod
    def failure(cls, error: JobError | None = None, **output: Any) -> "JobResult":
        return cls(status="failure", output=dict(output), error=error)


@dataclass(slots=True)
class JobContext:
    """
    What a worker sees while it runs.
    """

    job_id: int
    kind: str
    tags: tuple[str, ...]
    payload: dict[str, Any]
    attempt: int
    max_attempts: int
    logger: ILogger
    _cancel_event: threading.Event
    _lookup: Callable[[int], Optional[JobState]]

    @property
    def cancelled(self) -> bool:
        if self._cancel_event.is_set():
            return True
        # a cancel issued by another process only shows up in the table
        return self._lookup(self.job_id) in (JobState.CANCELLING, JobState.CANCELLED)

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def job_state(self, job_id: int) -> Optional[JobState]:
        return self._lookup(job_id)


class Worker(Protocol):
    def run(self, ctx: JobContext) -> JobResult: ...
