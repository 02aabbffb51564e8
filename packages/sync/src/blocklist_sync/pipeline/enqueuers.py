from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from blocklist_sync.core import DataLayout
from blocklist_sync.core.config import TransportMode
from blocklist_sync.jobs import BackoffPolicy, JobHandle, JobRequest, JobScheduler
from blocklist_sync.models import ArtifactClass, DownloadBatch, PipelinePayload

from .chain import PipelineChain
from .tags import KIND_COORDINATOR, KIND_DOWNLOAD_FILE, Stage, job_tag, pipeline_tags


@dataclass(frozen=True, slots=True)
class EnqueuedPipeline:
    mode: TransportMode
    timestamp: int
    jobs: tuple[JobHandle, ...]
    batch_job_ids: tuple[int, ...] = field(default_factory=tuple)


class BatchEnqueuer(Protocol):
    mode: TransportMode

    def tags(self, artifact_class: ArtifactClass) -> tuple[str, ...]: ...
    def enqueue(self, batch: DownloadBatch, *, start_time: int) -> EnqueuedPipeline: ...


class PlatformBatchEnqueuer:
    """
    One fire-and-forget download job per file, followed by the
    watch -> install chain over the generated job ids.
    """

    mode: TransportMode = "platform"

    def __init__(
        self,
        *,
        scheduler: JobScheduler,
        layout: DataLayout,
        chain: PipelineChain,
        backoff: BackoffPolicy,
        max_attempts: int = 10,
    ) -> None:
        self._scheduler = scheduler
        self._layout = layout
        self._chain = chain
        self._backoff = backoff
        self._max_attempts = max_attempts

    def tags(self, artifact_class: ArtifactClass) -> tuple[str, ...]:
        return pipeline_tags(artifact_class, self.mode)

    def enqueue(self, batch: DownloadBatch, *, start_time: int) -> EnqueuedPipeline:
        namespace = self._layout.download_namespace(batch.artifact_class, batch.timestamp)
        tag = job_tag(batch.artifact_class, self.mode, Stage.DOWNLOAD)

        downloads: list[JobHandle] = []
        for f in batch.files:
            downloads.append(
                self._scheduler.enqueue(
                    JobRequest(
                        kind=KIND_DOWNLOAD_FILE,
                        tags=(tag,),
                        payload={
                            "url": f.source_locator,
                            "dest": str(namespace / f.file_name),
                            "file_name": f.file_name,
                            "target_timestamp": batch.timestamp,
                            "artifact_class": batch.artifact_class.value,
                        },
                        backoff=self._backoff,
                        max_attempts=self._max_attempts,
                    )
                )
            )

        ids = tuple(h.id for h in downloads)
        chain = self._chain.enqueue(
            artifact_class=batch.artifact_class,
            batch_job_ids=ids,
            timestamp=batch.timestamp,
            start_time=start_time,
        )
        return EnqueuedPipeline(
            mode=self.mode,
            timestamp=batch.timestamp,
            jobs=tuple(downloads) + (chain.watch, chain.install),
            batch_job_ids=ids,
        )


class CoordinatorBatchEnqueuer:
    """A single job that owns the entire batch."""

    mode: TransportMode = "coordinator"

    def __init__(
        self,
        *,
        scheduler: JobScheduler,
        backoff: BackoffPolicy,
        max_attempts: int = 10,
    ) -> None:
        self._scheduler = scheduler
        self._backoff = backoff
        self._max_attempts = max_attempts

    def tags(self, artifact_class: ArtifactClass) -> tuple[str, ...]:
        return pipeline_tags(artifact_class, self.mode)

    def enqueue(self, batch: DownloadBatch, *, start_time: int) -> EnqueuedPipeline:
        payload = PipelinePayload(
            start_time=start_time,
            target_timestamp=batch.timestamp,
            artifact_class=batch.artifact_class,
        )
        handle = self._scheduler.enqueue(
            JobRequest(
                kind=KIND_COORDINATOR,
                tags=(job_tag(batch.artifact_class, self.mode, Stage.COORDINATOR),),
                payload=payload.to_dict(),
                backoff=self._backoff,
                max_attempts=self._max_attempts,
            )
        )
        return EnqueuedPipeline(mode=self.mode, timestamp=batch.timestamp, jobs=(handle,))
