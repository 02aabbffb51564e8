from __future__ import annotations

import traceback
from dataclasses import dataclass


class SyncError(RuntimeError):
    """Base error"""


@dataclass(frozen=True, slots=True)
class JobError:
    """
    A normalized error record stored on a failed job.
    """

    exc_type: str
    message: str
    traceback: str


def job_error_from_exc(exc: BaseException) -> JobError:
    return JobError(
        exc_type=type(exc).__name__,
        message=str(exc),
        traceback="".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        ),
    )


class TransientError(SyncError):
    """
    Retryable failures such as network timeouts, temporary upstream 5xx
    """


class InputDataError(SyncError):
    """
    Non-retryable: upstream content is present but invalid w.r.t. expectations
    (malformed update reply, missing file, 4xx)
    """


class InstallError(SyncError):
    """Install-stage error"""


class SchedulerError(SyncError):
    """Job scheduler misuse (unknown worker kind, unknown predecessor)"""


class StateError(SyncError):
    """Persisted state could not be read"""
