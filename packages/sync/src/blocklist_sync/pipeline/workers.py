from __future__ import annotations

from pathlib import Path
from typing import Callable, Mapping

import httpx

from blocklist_sync.core import (
    DataLayout,
    InputDataError,
    InstallError,
    TransientError,
    epoch_ms,
    job_error_from_exc,
)
from blocklist_sync.jobs import JobContext, JobResult, JobState
from blocklist_sync.models import ArtifactClass, FreshnessOutcome, PipelinePayload
from blocklist_sync.registry import ArtifactRegistry
from blocklist_sync.status import OutcomePublisher

from .download import download_to
from .install import FileInstaller

ClientFactory = Callable[[], httpx.Client]
Publishers = Mapping[ArtifactClass, OutcomePublisher]


def _complete(publishers: Publishers, payload: PipelinePayload, outcome: FreshnessOutcome) -> None:
    # the orchestrator opened the invocation keyed by the pipeline start time
    pub = publishers.get(payload.artifact_class)
    if pub is not None:
        pub.complete(payload.start_time, outcome)


class DownloadFileWorker:
    """Fetches one file of a batch into its timestamp namespace."""

    def __init__(self, *, client_factory: ClientFactory, http_max_attempts: int = 3) -> None:
        self._client_factory = client_factory
        self._http_max_attempts = http_max_attempts

    def run(self, ctx: JobContext) -> JobResult:
        url = str(ctx.payload["url"])
        dest = Path(str(ctx.payload["dest"]))
        with self._client_factory() as client:
            try:
                digest = download_to(
                    client, url=url, dest=dest, max_attempts=self._http_max_attempts
                )
            except TransientError as e:
                ctx.logger.warning("download.transient", url=url, error=str(e))
                if ctx.is_last_attempt:
                    return JobResult.failure(error=job_error_from_exc(e))
                return JobResult.retry(str(e))
            except InputDataError as e:
                ctx.logger.error("download.failed", url=url, error=str(e))
                return JobResult.failure(error=job_error_from_exc(e))

        ctx.logger.info("download.done", url=url, dest=str(dest), bytes=digest.bytes)
        return JobResult.success(path=str(dest), sha256=digest.sha256, bytes=digest.bytes)


class DownloadWatchWorker:
    """
    Evaluates every download job of a batch. Pending jobs ask for another
    evaluation through the job's backoff; a single failed, cancelled or
    missing job fails the watch so the install stage never runs.
    """

    def __init__(
        self,
        *,
        publishers: Publishers,
        timeout_s: float,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        self._publishers = publishers
        self._timeout_ms = int(timeout_s * 1000)
        self._clock = clock

    def run(self, ctx: JobContext) -> JobResult:
        payload = PipelinePayload.from_dict(ctx.payload)
        states = {jid: ctx.job_state(jid) for jid in payload.batch_job_ids}

        broken = {
            jid: (st.value if st is not None else "missing")
            for jid, st in states.items()
            if st is None or st in (JobState.FAILED, JobState.CANCELLING, JobState.CANCELLED)
        }
        if broken:
            ctx.logger.warning("watch.batch_failed", jobs=broken)
            _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
            return JobResult.failure(failed_jobs=sorted(broken))

        pending = sorted(jid for jid, st in states.items() if st is not JobState.SUCCEEDED)
        if not pending:
            ctx.logger.info("watch.batch_complete", jobs=len(states))
            return JobResult.success(target_timestamp=payload.target_timestamp)

        elapsed_ms = self._clock() - payload.start_time
        if elapsed_ms > self._timeout_ms or ctx.is_last_attempt:
            ctx.logger.warning("watch.gave_up", pending=pending, elapsed_ms=elapsed_ms)
            _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
            return JobResult.failure(pending_jobs=pending)

        ctx.logger.debug("watch.pending", pending=pending, elapsed_ms=elapsed_ms)
        return JobResult.retry(f"{len(pending)} download(s) pending")


class InstallWorker:
    """Moves a watched batch into place and publishes the terminal status."""

    def __init__(
        self,
        *,
        installer: FileInstaller,
        registry: ArtifactRegistry,
        publishers: Publishers,
    ) -> None:
        self._installer = installer
        self._registry = registry
        self._publishers = publishers

    def run(self, ctx: JobContext) -> JobResult:
        payload = PipelinePayload.from_dict(ctx.payload)
        cls = payload.artifact_class
        if ctx.cancelled:
            ctx.logger.info("install.cancelled", target_timestamp=payload.target_timestamp)
            _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
            return JobResult.failure(cancelled=True)
        try:
            report = self._installer.install(
                cls, payload.target_timestamp, self._registry.file_names(cls)
            )
        except (InstallError, OSError) as e:
            ctx.logger.error("install.failed", error=str(e))
            _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
            return JobResult.failure(error=job_error_from_exc(e))

        _complete(self._publishers, payload, FreshnessOutcome.SUCCESS)
        return JobResult.success(
            install_dir=str(report.install_dir),
            store_updated=report.store_updated,
            files=sorted(report.files),
        )


class CoordinatorWorker:
    """
    Owns a whole batch end to end: downloads every file, then installs.
    Files already present from an earlier attempt are kept.
    """

    def __init__(
        self,
        *,
        layout: DataLayout,
        registry: ArtifactRegistry,
        installer: FileInstaller,
        publishers: Publishers,
        client_factory: ClientFactory,
        http_max_attempts: int = 3,
    ) -> None:
        self._layout = layout
        self._registry = registry
        self._installer = installer
        self._publishers = publishers
        self._client_factory = client_factory
        self._http_max_attempts = http_max_attempts

    def run(self, ctx: JobContext) -> JobResult:
        payload = PipelinePayload.from_dict(ctx.payload)
        cls = payload.artifact_class
        batch = self._registry.batch(cls, payload.target_timestamp)
        namespace = self._layout.download_namespace(cls, batch.timestamp)

        with self._client_factory() as client:
            for f in batch.files:
                if ctx.cancelled:
                    ctx.logger.info("coordinator.cancelled", file=f.file_name)
                    _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
                    return JobResult.failure(cancelled=True)
                dest = namespace / f.file_name
                if dest.is_file() and dest.stat().st_size > 0:
                    continue
                try:
                    download_to(
                        client,
                        url=f.source_locator,
                        dest=dest,
                        max_attempts=self._http_max_attempts,
                    )
                except TransientError as e:
                    ctx.logger.warning("coordinator.transient", file=f.file_name, error=str(e))
                    if ctx.is_last_attempt:
                        _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
                        return JobResult.failure(error=job_error_from_exc(e))
                    return JobResult.retry(str(e))
                except InputDataError as e:
                    ctx.logger.error("coordinator.failed", file=f.file_name, error=str(e))
                    _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
                    return JobResult.failure(error=job_error_from_exc(e))

        if ctx.cancelled:
            _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
            return JobResult.failure(cancelled=True)

        try:
            report = self._installer.install(cls, batch.timestamp, batch.file_names)
        except (InstallError, OSError) as e:
            ctx.logger.error("coordinator.install_failed", error=str(e))
            _complete(self._publishers, payload, FreshnessOutcome.FAILURE)
            return JobResult.failure(error=job_error_from_exc(e))

        _complete(self._publishers, payload, FreshnessOutcome.SUCCESS)
        return JobResult.success(
            install_dir=str(report.install_dir),
            store_updated=report.store_updated,
            files=sorted(report.files),
        )
