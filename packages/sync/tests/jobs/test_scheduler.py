from __future__ import annotations

import threading
from pathlib import Path

import pytest
from blocklist_sync.core import SchedulerError
from blocklist_sync.jobs import (
    BackoffPolicy,
    EventSink,
    EventType,
    JobContext,
    JobRequest,
    JobResult,
    JobState,
    LocalJobScheduler,
)


class FakeClock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class Recorder:
    """Worker returning scripted results and recording every run."""

    def __init__(self, *results: JobResult) -> None:
        self.results = list(results)
        self.runs: list[JobContext] = []

    def run(self, ctx: JobContext) -> JobResult:
        self.runs.append(ctx)
        if self.results:
            return self.results.pop(0)
        return JobResult.success()


def _scheduler(tmp_path: Path, clock: FakeClock, **workers) -> LocalJobScheduler:
    return LocalJobScheduler(
        path=tmp_path / "jobs.json",
        workers=workers,
        journal=EventSink(tmp_path / "events.jsonl"),
        clock=clock,
    )


def test_backoff_policy_is_floored_and_linear() -> None:
    p = BackoffPolicy(kind="linear", delay_s=1)
    assert p.delay_s == 10.0
    assert [p.delay_for(n) for n in (1, 2, 3)] == [10.0, 20.0, 30.0]
    e = BackoffPolicy(kind="exponential", delay_s=15)
    assert [e.delay_for(n) for n in (1, 2, 3)] == [15.0, 30.0, 60.0]


def test_enqueue_unknown_kind_or_predecessor(tmp_path: Path) -> None:
    s = _scheduler(tmp_path, FakeClock(), a=Recorder())
    with pytest.raises(SchedulerError):
        s.enqueue(JobRequest(kind="nope"))
    with pytest.raises(SchedulerError):
        s.enqueue(JobRequest(kind="a"), depends_on=99)


def test_tag_queries(tmp_path: Path) -> None:
    s = _scheduler(tmp_path, FakeClock(), a=Recorder())
    h = s.enqueue(JobRequest(kind="a", tags=("t.one",)))

    assert s.is_scheduled("t.one")
    assert not s.is_running("t.one")
    assert not s.is_scheduled("t.other")
    assert [r.id for r in s.jobs_with_tag("t.one")] == [h.id]

    assert s.run_pending() == 1
    assert s.state_of(h.id) is JobState.SUCCEEDED
    assert not s.is_scheduled("t.one")


def test_initial_delay_holds_job(tmp_path: Path) -> None:
    clock = FakeClock()
    w = Recorder()
    s = _scheduler(tmp_path, clock, a=w)
    s.enqueue(JobRequest(kind="a", initial_delay_s=10))

    assert s.run_pending() == 0
    clock.advance(9.9)
    assert s.run_pending() == 0
    clock.advance(0.1)
    assert s.run_pending() == 1
    assert len(w.runs) == 1


def test_successor_waits_for_predecessor_success(tmp_path: Path) -> None:
    clock = FakeClock()
    order: list[str] = []

    class Named:
        def __init__(self, name: str, result: JobResult) -> None:
            self.name = name
            self.result = result

        def run(self, ctx: JobContext) -> JobResult:
            order.append(self.name)
            return self.result

    s = _scheduler(
        tmp_path,
        clock,
        first=Named("first", JobResult.retry("not yet")),
        second=Named("second", JobResult.success()),
    )
    a = s.enqueue(JobRequest(kind="first", backoff=BackoffPolicy(delay_s=10)))
    b = s.enqueue(JobRequest(kind="second"), depends_on=a)
    assert s.state_of(b.id) is JobState.BLOCKED

    assert s.run_pending() == 1
    assert s.state_of(a.id) is JobState.ENQUEUED
    assert s.state_of(b.id) is JobState.BLOCKED

    s._workers["first"] = Named("first", JobResult.success())
    clock.advance(10)
    assert s.run_pending() == 2
    assert order == ["first", "first", "second"]
    assert s.state_of(b.id) is JobState.SUCCEEDED


def test_retry_budget_exhaustion_fails_job_and_successors(tmp_path: Path) -> None:
    clock = FakeClock()
    w = Recorder(*[JobResult.retry("busy")] * 5)
    s = _scheduler(tmp_path, clock, a=w, b=Recorder())
    a = s.enqueue(JobRequest(kind="a", max_attempts=3))
    b = s.enqueue(JobRequest(kind="b"), depends_on=a)

    for delay in (0, 10, 20):
        clock.advance(delay)
        assert s.run_pending() == 1

    rec = s.get(a.id)
    assert rec is not None
    assert rec.state is JobState.FAILED
    assert rec.attempts == 3
    assert rec.error is not None and rec.error["exc_type"] == "RetriesExhausted"
    assert [ctx.is_last_attempt for ctx in w.runs] == [False, False, True]
    assert s.state_of(b.id) is JobState.FAILED


def test_enqueue_after_failed_predecessor_cascades(tmp_path: Path) -> None:
    s = _scheduler(tmp_path, FakeClock(), a=Recorder(JobResult.failure()), b=Recorder())
    a = s.enqueue(JobRequest(kind="a"))
    s.run_pending()
    b = s.enqueue(JobRequest(kind="b"), depends_on=a)
    assert s.state_of(b.id) is JobState.FAILED


def test_worker_exception_becomes_failure(tmp_path: Path) -> None:
    class Crashing:
        def run(self, ctx: JobContext) -> JobResult:
            raise ValueError("bad payload")

    s = _scheduler(tmp_path, FakeClock(), a=Crashing())
    h = s.enqueue(JobRequest(kind="a"))
    s.run_pending()

    rec = s.get(h.id)
    assert rec is not None
    assert rec.state is JobState.FAILED
    assert rec.error is not None
    assert rec.error["exc_type"] == "ValueError"


def test_cancel_by_tag_cascades_to_successors(tmp_path: Path) -> None:
    s = _scheduler(tmp_path, FakeClock(), a=Recorder(), b=Recorder())
    a = s.enqueue(JobRequest(kind="a", tags=("watch",), initial_delay_s=10))
    b = s.enqueue(JobRequest(kind="b", tags=("install",)), depends_on=a)

    assert s.cancel_by_tag("watch") == 2
    assert s.state_of(a.id) is JobState.CANCELLED
    assert s.state_of(b.id) is JobState.CANCELLED
    assert s.cancel_by_tag("install") == 0
    assert s.cancel_by_tag("watch") == 0


def test_running_job_sees_cancel_and_result_is_discarded(tmp_path: Path) -> None:
    started = threading.Event()
    release = threading.Event()
    observed: list[bool] = []

    class Slow:
        def run(self, ctx: JobContext) -> JobResult:
            started.set()
            release.wait(5)
            observed.append(ctx.cancelled)
            return JobResult.success()

    s = _scheduler(tmp_path, FakeClock(), a=Slow())
    h = s.enqueue(JobRequest(kind="a", tags=("t",)))

    runner = threading.Thread(target=s.run_pending)
    runner.start()
    assert started.wait(5)
    assert s.is_running("t")

    assert s.cancel_by_tag("t") == 1
    # the worker still holds the job until it returns
    assert s.state_of(h.id) is JobState.CANCELLING
    assert s.is_running("t")
    assert not s.is_scheduled("t")
    assert s.cancel_by_tag("t") == 0
    release.set()
    runner.join(5)

    assert observed == [True]
    assert s.state_of(h.id) is JobState.CANCELLED
    assert not s.is_running("t")
    types = [e.type for e in EventSink(tmp_path / "events.jsonl").read()]
    assert EventType.JOB_RESULT_DISCARDED.value in types


def test_table_survives_restart_and_running_jobs_are_recovered(tmp_path: Path) -> None:
    clock = FakeClock()
    s = _scheduler(tmp_path, clock, a=Recorder(), b=Recorder())
    a = s.enqueue(JobRequest(kind="a", tags=("x",), payload={"n": 1}))
    b = s.enqueue(JobRequest(kind="b"), depends_on=a)

    # simulate a crash mid-run: the job stays claimed by an owner that is gone
    with s.locked():
        s._claim(s._find(a.id))
    assert s.state_of(a.id) is JobState.RUNNING
    s.shutdown()

    w = Recorder()
    again = _scheduler(tmp_path, clock, a=w, b=Recorder())
    assert again.state_of(a.id) is JobState.ENQUEUED
    assert again.state_of(b.id) is JobState.BLOCKED
    assert again.is_scheduled("x")

    assert again.run_pending() == 2
    assert w.runs[0].payload == {"n": 1}
    assert w.runs[0].attempt == 2
    assert again.state_of(b.id) is JobState.SUCCEEDED

    types = [e.type for e in EventSink(tmp_path / "events.jsonl").read()]
    assert EventType.JOB_RECOVERED.value in types


def test_prune_drops_old_finished_jobs(tmp_path: Path) -> None:
    clock = FakeClock()
    s = _scheduler(tmp_path, clock, a=Recorder())
    old = s.enqueue(JobRequest(kind="a"))
    s.run_pending()
    clock.advance(3600)
    fresh = s.enqueue(JobRequest(kind="a"))
    s.run_pending()

    assert s.prune(older_than_s=600) == 1
    assert s.get(old.id) is None
    assert s.get(fresh.id) is not None


def test_threaded_dispatch_runs_jobs(tmp_path: Path) -> None:
    s = LocalJobScheduler(path=tmp_path / "jobs.json", workers={"a": Recorder()}, max_workers=2)
    handles = [s.enqueue(JobRequest(kind="a")) for _ in range(4)]
    s.start()
    try:
        assert s.wait_idle(timeout=10)
    finally:
        s.shutdown()
    assert all(s.state_of(h.id) is JobState.SUCCEEDED for h in handles)


def test_live_claim_is_not_recovered_by_second_scheduler(tmp_path: Path) -> None:
    clock = FakeClock()
    s = _scheduler(tmp_path, clock, a=Recorder())
    a = s.enqueue(JobRequest(kind="a"))
    with s.locked():
        s._claim(s._find(a.id))

    other = _scheduler(tmp_path, clock, a=Recorder())
    assert other.state_of(a.id) is JobState.RUNNING
    assert other.run_pending() == 0


def test_cancel_from_second_scheduler_is_not_overwritten(tmp_path: Path) -> None:
    clock = FakeClock()
    w = Recorder()
    first = _scheduler(tmp_path, clock, a=w, b=Recorder())
    second = _scheduler(tmp_path, clock, a=Recorder(), b=Recorder())

    a = first.enqueue(JobRequest(kind="a", tags=("x",)))
    b = first.enqueue(JobRequest(kind="b", tags=("x",)), depends_on=a)
    assert second.cancel_by_tag("x") == 2

    assert first.run_pending() == 0
    assert w.runs == []
    assert first.state_of(a.id) is JobState.CANCELLED
    assert first.state_of(b.id) is JobState.CANCELLED


def test_enqueues_from_two_schedulers_share_one_table(tmp_path: Path) -> None:
    clock = FakeClock()
    first = _scheduler(tmp_path, clock, a=Recorder())
    second = _scheduler(tmp_path, clock, a=Recorder())

    h1 = second.enqueue(JobRequest(kind="a", tags=("remote",)))
    h2 = first.enqueue(JobRequest(kind="a", tags=("local",)))
    assert h1.id != h2.id

    fresh = _scheduler(tmp_path, clock, a=Recorder())
    assert fresh.is_scheduled("remote")
    assert fresh.is_scheduled("local")
    assert {r.id for r in fresh.all_jobs()} == {h1.id, h2.id}


def test_cancel_seen_by_worker_of_another_scheduler(tmp_path: Path) -> None:
    started = threading.Event()
    release = threading.Event()
    observed: list[bool] = []

    class Slow:
        def run(self, ctx: JobContext) -> JobResult:
            started.set()
            release.wait(5)
            observed.append(ctx.cancelled)
            return JobResult.success()

    clock = FakeClock()
    s = _scheduler(tmp_path, clock, a=Slow())
    other = _scheduler(tmp_path, clock, a=Recorder())
    h = s.enqueue(JobRequest(kind="a", tags=("t",)))

    runner = threading.Thread(target=s.run_pending)
    runner.start()
    assert started.wait(5)
    assert other.is_running("t")

    assert other.cancel_by_tag("t") == 1
    release.set()
    runner.join(5)

    assert observed == [True]
    assert other.state_of(h.id) is JobState.CANCELLED
