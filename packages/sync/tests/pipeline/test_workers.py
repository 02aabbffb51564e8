from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable

import httpx
import structlog
from blocklist_sync.core import DataLayout
from blocklist_sync.jobs import JobContext, JobState
from blocklist_sync.models import ArtifactClass, FreshnessOutcome, PipelinePayload
from blocklist_sync.pipeline import (
    CoordinatorWorker,
    DownloadFileWorker,
    DownloadWatchWorker,
    FileInstaller,
    InstallWorker,
)
from blocklist_sync.registry import ArtifactRegistry, default_artifacts
from blocklist_sync.state import JsonTimestampStore
from blocklist_sync.status import OutcomePublisher
from blocklist_sync.transport.http import make_http_client


def _ctx(
    payload: dict[str, Any],
    *,
    attempt: int = 1,
    max_attempts: int = 3,
    states: dict[int, JobState] | None = None,
    cancelled: bool = False,
) -> JobContext:
    ev = threading.Event()
    if cancelled:
        ev.set()
    lookup = dict(states or {})
    return JobContext(
        job_id=99,
        kind="test",
        tags=(),
        payload=payload,
        attempt=attempt,
        max_attempts=max_attempts,
        logger=structlog.get_logger("test"),
        _cancel_event=ev,
        _lookup=lookup.get,
    )


def _publishers() -> dict[ArtifactClass, OutcomePublisher]:
    return {c: OutcomePublisher(name=c.value) for c in ArtifactClass}


def _client_factory(handler: Callable[[httpx.Request], httpx.Response]):
    return lambda: make_http_client(transport=httpx.MockTransport(handler))


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=f"body of {request.url.path}".encode())


# ----------------------------------------------------------------------
# download


def test_download_file_worker_writes_destination(tmp_path: Path) -> None:
    dest = tmp_path / "downloads" / "local" / "150" / "td.txt"
    w = DownloadFileWorker(client_factory=_client_factory(_ok), http_max_attempts=1)

    res = w.run(_ctx({"url": "https://dl.test/trie", "dest": str(dest)}))

    assert res.status == "success"
    assert dest.read_text() == "body of /trie"
    assert res.output["bytes"] == len("body of /trie")
    assert [p.name for p in dest.parent.iterdir()] == ["td.txt"]


def test_download_file_worker_retries_transient_then_fails_on_last_attempt(tmp_path: Path) -> None:
    def _down(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    dest = tmp_path / "x" / "td.txt"
    w = DownloadFileWorker(client_factory=_client_factory(_down), http_max_attempts=1)
    payload = {"url": "https://dl.test/trie", "dest": str(dest)}

    assert w.run(_ctx(payload, attempt=1)).status == "retry"
    last = w.run(_ctx(payload, attempt=3))
    assert last.status == "failure"
    assert last.error is not None
    assert not dest.exists()


def test_download_file_worker_fails_on_not_found_and_empty_body(tmp_path: Path) -> None:
    def _missing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="nope")

    def _empty(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"")

    dest = tmp_path / "x" / "td.txt"
    payload = {"url": "https://dl.test/trie", "dest": str(dest)}
    for handler in (_missing, _empty):
        w = DownloadFileWorker(client_factory=_client_factory(handler), http_max_attempts=1)
        assert w.run(_ctx(payload)).status == "failure"
        assert not dest.exists()


# ----------------------------------------------------------------------
# watch


def _watch_payload(ids: tuple[int, ...], start: int = 0) -> dict[str, Any]:
    return PipelinePayload(
        start_time=start,
        target_timestamp=150,
        batch_job_ids=ids,
        artifact_class=ArtifactClass.LOCAL,
    ).to_dict()


def test_watch_succeeds_when_whole_batch_succeeded() -> None:
    pubs = _publishers()
    w = DownloadWatchWorker(publishers=pubs, timeout_s=60, clock=lambda: 1000)
    states = {1: JobState.SUCCEEDED, 2: JobState.SUCCEEDED}

    res = w.run(_ctx(_watch_payload((1, 2)), states=states))
    assert res.status == "success"
    assert res.output["target_timestamp"] == 150
    assert pubs[ArtifactClass.LOCAL].value is FreshnessOutcome.NOT_STARTED


def test_watch_retries_while_batch_pending() -> None:
    w = DownloadWatchWorker(publishers=_publishers(), timeout_s=60, clock=lambda: 1000)
    states = {1: JobState.SUCCEEDED, 2: JobState.RUNNING}
    assert w.run(_ctx(_watch_payload((1, 2)), states=states)).status == "retry"


def test_watch_fails_on_failed_cancelled_or_missing_job() -> None:
    for states in (
        {1: JobState.SUCCEEDED, 2: JobState.FAILED},
        {1: JobState.CANCELLED, 2: JobState.SUCCEEDED},
        {1: JobState.SUCCEEDED},
    ):
        pubs = _publishers()
        w = DownloadWatchWorker(publishers=pubs, timeout_s=60, clock=lambda: 1000)
        pubs[ArtifactClass.LOCAL].begin(0)
        res = w.run(_ctx(_watch_payload((1, 2)), states=states))
        assert res.status == "failure"
        assert pubs[ArtifactClass.LOCAL].value is FreshnessOutcome.FAILURE


def test_watch_gives_up_after_timeout_or_last_attempt() -> None:
    states = {1: JobState.ENQUEUED}

    timed_out = DownloadWatchWorker(publishers=_publishers(), timeout_s=60, clock=lambda: 61_000)
    assert timed_out.run(_ctx(_watch_payload((1,)), states=states)).status == "failure"

    patient = DownloadWatchWorker(publishers=_publishers(), timeout_s=60, clock=lambda: 1000)
    last = _ctx(_watch_payload((1,)), states=states, attempt=3, max_attempts=3)
    assert patient.run(last).status == "failure"


# ----------------------------------------------------------------------
# install / coordinator


def _install_setup(tmp_path: Path):
    layout = DataLayout(root=tmp_path)
    store = JsonTimestampStore(layout.state_json())
    registry = ArtifactRegistry(default_artifacts("https://dl.test/"))
    installer = FileInstaller(layout=layout, store=store)
    return layout, store, registry, installer


def test_install_worker_publishes_success(tmp_path: Path) -> None:
    layout, store, registry, installer = _install_setup(tmp_path)
    ns = layout.download_namespace(ArtifactClass.LOCAL, 150)
    ns.mkdir(parents=True)
    for name in registry.file_names(ArtifactClass.LOCAL):
        (ns / name).write_text(name)

    pubs = _publishers()
    pubs[ArtifactClass.LOCAL].begin(0)
    w = InstallWorker(installer=installer, registry=registry, publishers=pubs)
    payload = PipelinePayload(start_time=0, target_timestamp=150).to_dict()
    res = w.run(_ctx(payload))

    assert res.status == "success"
    assert store.get(ArtifactClass.LOCAL) == 150
    assert pubs[ArtifactClass.LOCAL].value is FreshnessOutcome.SUCCESS


def test_install_worker_publishes_failure_on_partial_batch(tmp_path: Path) -> None:
    layout, store, registry, installer = _install_setup(tmp_path)
    ns = layout.download_namespace(ArtifactClass.LOCAL, 150)
    ns.mkdir(parents=True)
    (ns / "td.txt").write_text("only one")

    pubs = _publishers()
    pubs[ArtifactClass.LOCAL].begin(0)
    w = InstallWorker(installer=installer, registry=registry, publishers=pubs)
    res = w.run(_ctx(PipelinePayload(start_time=0, target_timestamp=150).to_dict()))

    assert res.status == "failure"
    assert store.get(ArtifactClass.LOCAL) == 0
    assert pubs[ArtifactClass.LOCAL].value is FreshnessOutcome.FAILURE


def test_coordinator_downloads_and_installs_remote(tmp_path: Path) -> None:
    layout, store, registry, installer = _install_setup(tmp_path)
    fetched: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        fetched.append(request.url.path)
        return _ok(request)

    pubs = _publishers()
    pubs[ArtifactClass.REMOTE].begin(0)
    w = CoordinatorWorker(
        layout=layout,
        registry=registry,
        installer=installer,
        publishers=pubs,
        client_factory=_client_factory(handler),
        http_max_attempts=1,
    )
    payload = PipelinePayload(
        start_time=0, target_timestamp=200, artifact_class=ArtifactClass.REMOTE
    ).to_dict()
    res = w.run(_ctx(payload))

    assert res.status == "success"
    assert fetched == ["/blocklists"]
    assert (layout.install_dir(ArtifactClass.REMOTE, 200) / "filetag.json").exists()
    assert store.get(ArtifactClass.REMOTE) == 200
    assert pubs[ArtifactClass.REMOTE].value is FreshnessOutcome.SUCCESS


def test_coordinator_stops_when_cancelled(tmp_path: Path) -> None:
    layout, store, registry, installer = _install_setup(tmp_path)
    fetched: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        fetched.append(request.url.path)
        return _ok(request)

    w = CoordinatorWorker(
        layout=layout,
        registry=registry,
        installer=installer,
        publishers=_publishers(),
        client_factory=_client_factory(handler),
    )
    payload = PipelinePayload(start_time=0, target_timestamp=150).to_dict()
    res = w.run(_ctx(payload, cancelled=True))

    assert res.status == "failure"
    assert fetched == []
    assert store.get(ArtifactClass.LOCAL) == 0


def test_install_worker_skips_install_when_cancelled(tmp_path: Path) -> None:
    layout, store, registry, installer = _install_setup(tmp_path)
    ns = layout.download_namespace(ArtifactClass.LOCAL, 150)
    ns.mkdir(parents=True)
    for name in registry.file_names(ArtifactClass.LOCAL):
        (ns / name).write_text(name)

    pubs = _publishers()
    pubs[ArtifactClass.LOCAL].begin(0)
    w = InstallWorker(installer=installer, registry=registry, publishers=pubs)
    payload = PipelinePayload(start_time=0, target_timestamp=150).to_dict()
    res = w.run(_ctx(payload, cancelled=True))

    assert res.status == "failure"
    assert res.output.get("cancelled") is True
    assert store.get(ArtifactClass.LOCAL) == 0
    assert not layout.install_dir(ArtifactClass.LOCAL, 150).exists()
    assert pubs[ArtifactClass.LOCAL].value is FreshnessOutcome.FAILURE


def test_worker_from_older_pipeline_does_not_complete_newer_one(tmp_path: Path) -> None:
    layout, store, registry, installer = _install_setup(tmp_path)
    ns = layout.download_namespace(ArtifactClass.LOCAL, 150)
    ns.mkdir(parents=True)
    (ns / "td.txt").write_text("only one")

    pubs = _publishers()
    pubs[ArtifactClass.LOCAL].begin(5_000)
    w = InstallWorker(installer=installer, registry=registry, publishers=pubs)
    res = w.run(_ctx(PipelinePayload(start_time=0, target_timestamp=150).to_dict()))

    assert res.status == "failure"
    assert pubs[ArtifactClass.LOCAL].value is FreshnessOutcome.IN_PROGRESS
