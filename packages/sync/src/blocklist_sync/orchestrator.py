from __future__ import annotations

import threading
from typing import Callable, Mapping

import structlog

from blocklist_sync.core import epoch_ms
from blocklist_sync.jobs import EventSink, EventType, JobScheduler, make_event
from blocklist_sync.models import UNKNOWN_TIMESTAMP, ArtifactClass, FreshnessOutcome
from blocklist_sync.pipeline import BatchEnqueuer, Purger, pipeline_tags
from blocklist_sync.registry import ArtifactRegistry
from blocklist_sync.status import OutcomePublisher
from blocklist_sync.timestamps import ResolveLatestTimestamp

log = structlog.get_logger(__name__)


class DownloadOrchestrator:
    """
    Starts at most one download pipeline per artifact class.

    The dedup gate, the purge and the enqueue run under one lock, and under
    the scheduler's table lock, so two racing callers cannot both observe an
    idle class and both enqueue, whether they share a process or not. The
    gate looks at the tags of every transport mode for the class, so a
    pipeline left over from a run with the other mode also holds it closed.

    IN_PROGRESS is published before the first job exists; the pipeline's
    workers complete that same invocation.

    Every no-op (disabled class, unknown or not-newer timestamp, pipeline in
    flight) is a False return, never an exception.
    """

    def __init__(
        self,
        *,
        scheduler: JobScheduler,
        registry: ArtifactRegistry,
        purger: Purger,
        resolve: ResolveLatestTimestamp,
        enqueuers: Mapping[ArtifactClass, BatchEnqueuer],
        publishers: Mapping[ArtifactClass, OutcomePublisher],
        app_version: int,
        local_enabled: bool = True,
        journal: EventSink | None = None,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        missing = [c.value for c in ArtifactClass if c not in enqueuers]
        if missing:
            raise ValueError(f"No batch enqueuer for artifact class(es): {missing}")
        self._scheduler = scheduler
        self._registry = registry
        self._purger = purger
        self._resolve = resolve
        self._enqueuers = dict(enqueuers)
        self._publishers = dict(publishers)
        self._app_version = app_version
        self._local_enabled = local_enabled
        self._journal = journal
        self._clock = clock
        self._lock = threading.Lock()

    async def download_local(self, current_ts: int, force_redownload: bool = False) -> bool:
        if not self._local_enabled:
            log.info("orchestrator.local_disabled")
            return False
        return await self.download(ArtifactClass.LOCAL, current_ts, force_redownload)

    async def download_remote(self, current_ts: int, force_redownload: bool = False) -> bool:
        return await self.download(ArtifactClass.REMOTE, current_ts, force_redownload)

    async def download(
        self, artifact_class: ArtifactClass, current_ts: int, force_redownload: bool = False
    ) -> bool:
        latest = await self._resolve(current_ts, self._app_version, 0)
        if latest == UNKNOWN_TIMESTAMP:
            log.warning(
                "orchestrator.timestamp_unknown",
                artifact_class=artifact_class.value,
                current_ts=current_ts,
            )
            return False
        if latest <= current_ts and not force_redownload:
            log.info(
                "orchestrator.not_required",
                artifact_class=artifact_class.value,
                current_ts=current_ts,
                latest=latest,
            )
            return False
        return self._gate_and_enqueue(artifact_class, latest)

    def _gate_and_enqueue(self, artifact_class: ArtifactClass, timestamp: int) -> bool:
        enqueuer = self._enqueuers[artifact_class]
        publisher = self._publishers.get(artifact_class)
        with self._lock, self._scheduler.locked():
            if self.is_active(artifact_class):
                log.info(
                    "orchestrator.gate.closed",
                    artifact_class=artifact_class.value,
                    timestamp=timestamp,
                )
                return False

            start_time = self._clock()
            if publisher is not None:
                publisher.begin(start_time)
            try:
                self._purger.purge(artifact_class, timestamp)
                batch = self._registry.batch(artifact_class, timestamp)
                pipeline = enqueuer.enqueue(batch, start_time=start_time)
            except Exception:
                if publisher is not None:
                    publisher.complete(start_time, FreshnessOutcome.FAILURE)
                raise

        if self._journal is not None:
            self._journal.emit(
                make_event(
                    event_type=EventType.PIPELINE_ENQUEUED,
                    artifact_class=artifact_class.value,
                    mode=pipeline.mode,
                    timestamp=timestamp,
                    jobs=[h.id for h in pipeline.jobs],
                )
            )
        log.info(
            "orchestrator.enqueued",
            artifact_class=artifact_class.value,
            mode=pipeline.mode,
            timestamp=timestamp,
            files=len(batch.files),
            jobs=[h.id for h in pipeline.jobs],
        )
        return True

    def is_active(self, artifact_class: ArtifactClass) -> bool:
        """True while any pipeline job of this class is scheduled or running."""
        for mode in ("platform", "coordinator"):
            for tag in pipeline_tags(artifact_class, mode):
                if self._scheduler.is_scheduled(tag) or self._scheduler.is_running(tag):
                    return True
        return False

    def cancel(self, artifact_class: ArtifactClass) -> bool:
        """
        Cancel every tag of the configured transport mode for the class.
        Files already moved by a finished install stay where they are.
        """
        enqueuer = self._enqueuers[artifact_class]
        with self._lock, self._scheduler.locked():
            cancelled = {
                tag: self._scheduler.cancel_by_tag(tag) for tag in enqueuer.tags(artifact_class)
            }
        total = sum(cancelled.values())
        publisher = self._publishers.get(artifact_class)
        if total and publisher is not None and publisher.invocation is not None:
            # a cancelled pipeline ends as FAILURE
            publisher.complete(publisher.invocation, FreshnessOutcome.FAILURE)
        if self._journal is not None and total:
            self._journal.emit(
                make_event(
                    event_type=EventType.PIPELINE_CANCELLED,
                    artifact_class=artifact_class.value,
                    mode=enqueuer.mode,
                    jobs=total,
                )
            )
        log.info(
            "orchestrator.cancelled",
            artifact_class=artifact_class.value,
            mode=enqueuer.mode,
            jobs=cancelled,
        )
        return total > 0
