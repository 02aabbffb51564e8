from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import Any, Final

# Reply from the time authority that could not be resolved to a version.
UNKNOWN_TIMESTAMP: Final[int] = -1
# Nothing installed yet.
NO_TIMESTAMP: Final[int] = 0


def is_known_timestamp(ts: int) -> bool:
    return ts != UNKNOWN_TIMESTAMP and ts >= NO_TIMESTAMP


class ArtifactClass(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"

    @property
    def id(self) -> int:
        return 0 if self is ArtifactClass.LOCAL else 1

    def is_local(self) -> bool:
        return self is ArtifactClass.LOCAL


class FreshnessOutcome(Enum):
    """
    Result of a staleness check. Declaration order is the sentinel order; the
    numeric id doubles as the status code.
    """

    NOT_STARTED = -4
    FAILURE = -3
    NOT_REQUIRED = -2
    IN_PROGRESS = -1
    SUCCESS = 0

    @property
    def id(self) -> int:
        return int(self.value)

    def is_terminal(self) -> bool:
        return self in (
            FreshnessOutcome.SUCCESS,
            FreshnessOutcome.FAILURE,
            FreshnessOutcome.NOT_REQUIRED,
        )


@dataclass(frozen=True, slots=True)
class BatchFile:
    source_locator: str
    file_name: str


@dataclass(frozen=True, slots=True)
class DownloadBatch:
    """
    Files to fetch for one artifact class, all bound to one target timestamp.
    Every destination lives under the timestamp namespace.
    """

    artifact_class: ArtifactClass
    timestamp: int
    files: tuple[BatchFile, ...]

    def __post_init__(self) -> None:
        if not is_known_timestamp(self.timestamp):
            raise ValueError(f"DownloadBatch needs a known timestamp, got {self.timestamp}")
        names = [f.file_name for f in self.files]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate file names in batch: {names}")

    @property
    def file_names(self) -> list[str]:
        return [f.file_name for f in self.files]


@dataclass(frozen=True, slots=True)
class PipelinePayload:
    """
    Input payload carried by pipeline jobs.
    """

    start_time: int
    target_timestamp: int
    batch_job_ids: tuple[int, ...] = ()
    artifact_class: ArtifactClass = ArtifactClass.LOCAL
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "start_time": self.start_time,
            "target_timestamp": self.target_timestamp,
            "batch_job_ids": list(self.batch_job_ids),
            "artifact_class": self.artifact_class.value,
        }
        d.update(self.extra)
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelinePayload":
        known = {"start_time", "target_timestamp", "batch_job_ids", "artifact_class"}
        return cls(
            start_time=int(data["start_time"]),
            target_timestamp=int(data["target_timestamp"]),
            batch_job_ids=tuple(int(x) for x in data.get("batch_job_ids", ())),
            artifact_class=ArtifactClass(data.get("artifact_class", "local")),
            extra={k: v for k, v in data.items() if k not in known},
        )
