from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from blocklist_sync.jobs import BackoffPolicy, JobHandle, JobRequest, JobScheduler
from blocklist_sync.models import ArtifactClass, PipelinePayload

from .tags import KIND_INSTALL, KIND_WATCH, Stage, job_tag


@dataclass(frozen=True, slots=True)
class ChainHandles:
    watch: JobHandle
    install: JobHandle


class PipelineChain:
    """
    Post-download sequence: watch(batch job ids) -> install(timestamp).

    The install job is enqueued with the watch job as predecessor, so the
    scheduler holds it until the watch job has succeeded.
    """

    def __init__(
        self,
        *,
        scheduler: JobScheduler,
        backoff: BackoffPolicy,
        watch_initial_delay_s: float = 10.0,
        max_attempts: int = 10,
    ) -> None:
        self._scheduler = scheduler
        self._backoff = backoff
        self._watch_initial_delay_s = watch_initial_delay_s
        self._max_attempts = max_attempts

    def enqueue(
        self,
        *,
        artifact_class: ArtifactClass,
        batch_job_ids: Sequence[int],
        timestamp: int,
        start_time: int,
    ) -> ChainHandles:
        watch_payload = PipelinePayload(
            start_time=start_time,
            target_timestamp=timestamp,
            batch_job_ids=tuple(batch_job_ids),
            artifact_class=artifact_class,
        )
        watch = self._scheduler.enqueue(
            JobRequest(
                kind=KIND_WATCH,
                tags=(job_tag(artifact_class, "platform", Stage.WATCH),),
                payload=watch_payload.to_dict(),
                backoff=self._backoff,
                initial_delay_s=self._watch_initial_delay_s,
                max_attempts=self._max_attempts,
            )
        )

        install_payload = PipelinePayload(
            start_time=start_time,
            target_timestamp=timestamp,
            artifact_class=artifact_class,
        )
        install = self._scheduler.enqueue(
            JobRequest(
                kind=KIND_INSTALL,
                tags=(job_tag(artifact_class, "platform", Stage.INSTALL),),
                payload=install_payload.to_dict(),
                backoff=self._backoff,
                max_attempts=self._max_attempts,
            ),
            depends_on=watch,
        )
        return ChainHandles(watch=watch, install=install)
