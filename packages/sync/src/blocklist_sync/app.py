from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from blocklist_sync.core import DataLayout, Settings, epoch_ms
from blocklist_sync.freshness import FreshnessChecker
from blocklist_sync.jobs import BackoffPolicy, EventSink, LocalJobScheduler
from blocklist_sync.models import ArtifactClass, FreshnessOutcome
from blocklist_sync.orchestrator import DownloadOrchestrator
from blocklist_sync.pipeline import (
    KIND_COORDINATOR,
    KIND_DOWNLOAD_FILE,
    KIND_INSTALL,
    KIND_WATCH,
    CoordinatorBatchEnqueuer,
    CoordinatorWorker,
    DownloadFileWorker,
    DownloadWatchWorker,
    FileInstaller,
    InstallWorker,
    PipelineChain,
    PlatformBatchEnqueuer,
    Purger,
)
from blocklist_sync.registry import ArtifactRegistry, load_artifacts
from blocklist_sync.state import JsonTimestampStore
from blocklist_sync.status import OutcomePublisher
from blocklist_sync.timestamps import TimestampAuthority
from blocklist_sync.transport.http import make_async_http_client, make_http_client


@dataclass(slots=True)
class BlocklistSync:
    """Assembled components sharing one data root."""

    settings: Settings
    layout: DataLayout
    store: JsonTimestampStore
    registry: ArtifactRegistry
    journal: EventSink
    scheduler: LocalJobScheduler
    authority: TimestampAuthority
    checker: FreshnessChecker
    orchestrator: DownloadOrchestrator
    installer: FileInstaller
    check_status: OutcomePublisher
    download_status: dict[ArtifactClass, OutcomePublisher] = field(default_factory=dict)
    _async_client: httpx.AsyncClient | None = None

    async def check(self, artifact_class: ArtifactClass, *, retry_count: int = 0) -> FreshnessOutcome:
        return await self.checker.check(artifact_class, retry_count=retry_count)

    async def download(self, artifact_class: ArtifactClass, *, force: bool = False) -> bool:
        current = self.store.get(artifact_class)
        if artifact_class.is_local():
            return await self.orchestrator.download_local(current, force)
        return await self.orchestrator.download_remote(current, force)

    def cancel(self, artifact_class: ArtifactClass) -> bool:
        return self.orchestrator.cancel(artifact_class)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.store.snapshot(),
            "check": self.check_status.value.name,
            "download": {c.value: p.value.name for c, p in self.download_status.items()},
            "active": {c.value: self.orchestrator.is_active(c) for c in ArtifactClass},
            "damaged": {
                c.value: self.installer.verify(c, self.store.get(c)) for c in ArtifactClass
            },
            "jobs": [
                {"id": r.id, "kind": r.kind, "state": r.state.value, "tags": r.tags}
                for r in self.scheduler.all_jobs()
                if not r.state.is_finished()
            ],
        }

    async def aclose(self) -> None:
        self.scheduler.shutdown()
        if self._async_client is not None:
            await self._async_client.aclose()


def build_app(
    settings: Settings,
    *,
    http_transport: httpx.BaseTransport | None = None,
    async_http_transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], int] = epoch_ms,
) -> BlocklistSync:
    layout = DataLayout(root=settings.data_root)
    for c in ArtifactClass:
        layout.ensure_dirs(c)

    store = JsonTimestampStore(layout.state_json())
    registry = ArtifactRegistry(
        load_artifacts(settings.artifacts_file, base_url=settings.download_base_url)
    )
    journal = EventSink(layout.events_jsonl())

    check_status = OutcomePublisher(name="check")
    download_status = {c: OutcomePublisher(name=f"download.{c.value}") for c in ArtifactClass}

    backoff = BackoffPolicy(kind="linear", delay_s=settings.backoff_delay_s)
    installer = FileInstaller(layout=layout, store=store)

    def client_factory() -> httpx.Client:
        return make_http_client(transport=http_transport)

    workers = {
        KIND_DOWNLOAD_FILE: DownloadFileWorker(
            client_factory=client_factory, http_max_attempts=settings.http_max_attempts
        ),
        KIND_WATCH: DownloadWatchWorker(
            publishers=download_status, timeout_s=settings.watch_timeout_s, clock=clock
        ),
        KIND_INSTALL: InstallWorker(
            installer=installer, registry=registry, publishers=download_status
        ),
        KIND_COORDINATOR: CoordinatorWorker(
            layout=layout,
            registry=registry,
            installer=installer,
            publishers=download_status,
            client_factory=client_factory,
            http_max_attempts=settings.http_max_attempts,
        ),
    }
    scheduler = LocalJobScheduler(
        path=layout.jobs_json(),
        workers=workers,
        max_workers=settings.worker_concurrency,
        journal=journal,
        clock=clock,
    )

    async_client = (
        make_async_http_client(transport=async_http_transport)
        if async_http_transport is not None
        else None
    )
    authority = TimestampAuthority(
        url=settings.update_check_url,
        max_attempts=settings.http_max_attempts,
        client=async_client,
    )

    checker = FreshnessChecker(
        store=store,
        resolve=authority.resolve_latest_timestamp,
        publisher=check_status,
        app_version=settings.app_version,
    )

    coordinator = CoordinatorBatchEnqueuer(
        scheduler=scheduler, backoff=backoff, max_attempts=settings.job_max_attempts
    )
    if settings.transport == "platform":
        chain = PipelineChain(
            scheduler=scheduler,
            backoff=backoff,
            watch_initial_delay_s=settings.watch_initial_delay_s,
            max_attempts=settings.job_max_attempts,
        )
        local_enqueuer: PlatformBatchEnqueuer | CoordinatorBatchEnqueuer = PlatformBatchEnqueuer(
            scheduler=scheduler,
            layout=layout,
            chain=chain,
            backoff=backoff,
            max_attempts=settings.job_max_attempts,
        )
    else:
        local_enqueuer = coordinator

    orchestrator = DownloadOrchestrator(
        scheduler=scheduler,
        registry=registry,
        purger=Purger(layout),
        resolve=authority.resolve_latest_timestamp,
        # remote blocklists are a single file and always use the coordinator
        enqueuers={ArtifactClass.LOCAL: local_enqueuer, ArtifactClass.REMOTE: coordinator},
        publishers=download_status,
        app_version=settings.app_version,
        local_enabled=settings.local_enabled,
        journal=journal,
        clock=clock,
    )

    return BlocklistSync(
        settings=settings,
        layout=layout,
        store=store,
        registry=registry,
        journal=journal,
        scheduler=scheduler,
        authority=authority,
        checker=checker,
        orchestrator=orchestrator,
        installer=installer,
        check_status=check_status,
        download_status=download_status,
        _async_client=async_client,
    )
