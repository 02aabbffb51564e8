from __future__ import annotations

import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager, nullcontext
from dataclasses import asdict
from pathlib import Path
from typing import Callable, ContextManager, Iterator, Mapping, Optional, Protocol

import structlog
from pydantic import ValidationError

from blocklist_sync.core import (
    SchedulerError,
    StateError,
    atomic_write_text,
    epoch_ms,
    file_lock,
    job_error_from_exc,
    utc_now_iso,
)

from .events import EventSink, EventType, make_event
from .models import (
    JobContext,
    JobHandle,
    JobRecord,
    JobRequest,
    JobResult,
    JobState,
    JobTable,
    Worker,
)

log = structlog.get_logger(__name__)

# Owners of schedulers alive in this process; a job claimed by an owner that
# is neither here nor in a live process was interrupted.
_LIVE_OWNERS: set[str] = set()


def _owner_alive(owner: Optional[str]) -> bool:
    if not owner:
        return False
    pid_text, _, _ = owner.partition(":")
    try:
        pid = int(pid_text)
    except ValueError:
        return False
    if pid == os.getpid():
        return owner in _LIVE_OWNERS
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class JobScheduler(Protocol):
    def locked(self) -> ContextManager[None]: ...
    def is_scheduled(self, tag: str) -> bool: ...
    def is_running(self, tag: str) -> bool: ...
    def enqueue(
        self, request: JobRequest, depends_on: JobHandle | int | None = None
    ) -> JobHandle: ...
    def cancel_by_tag(self, tag: str) -> int: ...
    def get(self, job_id: int) -> Optional[JobRecord]: ...


class LocalJobScheduler:
    """
    Durable job scheduler backed by a JSON job table and a thread pool.

    Jobs run when ENQUEUED and due. A job enqueued with a predecessor stays
    BLOCKED until the predecessor SUCCEEDED; a failed or cancelled
    predecessor fails or cancels its successors without running them.

    Several processes may share one table. Every read and every mutation
    happens under an exclusive lock on `<table>.lock` and starts from the
    table as it is on disk, so a cancel or an enqueue from another process
    is never overwritten. A job stays RUNNING (or CANCELLING, once cancelled)
    until the worker that claimed it returns. Jobs whose claiming process is
    gone are enqueued again.

    Jobs can be driven two ways: `start()` runs a dispatcher thread feeding
    a thread pool; `run_pending()` runs every due job inline on the calling
    thread.
    """

    def __init__(
        self,
        *,
        path: Path | None = None,
        workers: Mapping[str, Worker] | None = None,
        max_workers: int = 2,
        journal: EventSink | None = None,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self.path = Path(path) if path is not None else None
        self._lock_path = self.path.with_name(f"{self.path.name}.lock") if self.path else None
        self._workers: dict[str, Worker] = dict(workers or {})
        self._max_workers = max_workers
        self._journal = journal
        self._clock = clock
        self.owner = f"{os.getpid()}:{uuid.uuid4().hex[:12]}"
        _LIVE_OWNERS.add(self.owner)

        self._cond = threading.Condition(threading.RLock())
        self._depth = 0
        self._cancel_events: dict[int, threading.Event] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._dispatcher: threading.Thread | None = None
        self._stopping = False

        self._table = JobTable()
        with self.locked():
            pass

    # ------------------------------------------------------------------
    # persistence

    @contextmanager
    def locked(self) -> Iterator[None]:
        """
        Hold the table for a read-modify-write. Re-entrant within a thread;
        the outermost entry takes the file lock and reloads the table.
        """
        with self._cond:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            guard = file_lock(self._lock_path) if self._lock_path else nullcontext()
            with guard:
                self._depth = 1
                try:
                    self._refresh()
                    yield
                finally:
                    self._depth = 0

    def _refresh(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            self._table = JobTable.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise StateError(f"Failed to read job table: {self.path}") from e
        self._recover_orphans()

    def _recover_orphans(self) -> None:
        now = self._clock()
        recovered = 0
        for rec in self._table.jobs:
            if not rec.state.is_running() or _owner_alive(rec.owner):
                continue
            if rec.state is JobState.CANCELLING:
                rec.state = JobState.CANCELLED
                rec.finished_at_ms = now
            else:
                rec.state = JobState.ENQUEUED
                rec.not_before_ms = now
            rec.owner = None
            rec.updated_at_utc = utc_now_iso()
            recovered += 1
            self._emit(EventType.JOB_RECOVERED, rec.id, kind=rec.kind, tags=rec.tags)
        if recovered:
            log.info("scheduler.recovered", jobs=recovered, path=str(self.path))
            self._persist()

    def _persist(self) -> None:
        if self.path is None:
            return
        atomic_write_text(self.path, self._table.model_dump_json(indent=2))

    def _emit(self, event_type: EventType, job_id: int | None, **data: object) -> None:
        if self._journal is not None:
            self._journal.emit(make_event(event_type=event_type, job_id=job_id, **data))

    # ------------------------------------------------------------------
    # queries

    def _find(self, job_id: int) -> Optional[JobRecord]:
        for rec in self._table.jobs:
            if rec.id == job_id:
                return rec
        return None

    def get(self, job_id: int) -> Optional[JobRecord]:
        with self.locked():
            rec = self._find(job_id)
            return rec.model_copy(deep=True) if rec is not None else None

    def state_of(self, job_id: int) -> Optional[JobState]:
        with self.locked():
            rec = self._find(job_id)
            return rec.state if rec is not None else None

    def jobs_with_tag(self, tag: str) -> list[JobRecord]:
        with self.locked():
            return [r.model_copy(deep=True) for r in self._table.jobs if tag in r.tags]

    def all_jobs(self) -> list[JobRecord]:
        with self.locked():
            return [r.model_copy(deep=True) for r in self._table.jobs]

    def is_scheduled(self, tag: str) -> bool:
        with self.locked():
            return any(tag in r.tags and r.state.is_pending() for r in self._table.jobs)

    def is_running(self, tag: str) -> bool:
        with self.locked():
            return any(tag in r.tags and r.state.is_running() for r in self._table.jobs)

    def next_due_ms(self) -> Optional[int]:
        with self.locked():
            due = [r.not_before_ms for r in self._table.jobs if r.state is JobState.ENQUEUED]
            return min(due) if due else None

    # ------------------------------------------------------------------
    # mutations

    def enqueue(
        self, request: JobRequest, depends_on: JobHandle | int | None = None
    ) -> JobHandle:
        pred_id = depends_on.id if isinstance(depends_on, JobHandle) else depends_on
        with self.locked():
            if request.kind not in self._workers:
                raise SchedulerError(f"No worker registered for kind={request.kind!r}")

            pred: Optional[JobRecord] = None
            if pred_id is not None:
                pred = self._find(int(pred_id))
                if pred is None:
                    raise SchedulerError(f"Unknown predecessor job id: {pred_id}")

            now = self._clock()
            stamp = utc_now_iso()
            rec = JobRecord(
                id=self._table.next_id,
                kind=request.kind,
                tags=list(request.tags),
                payload=dict(request.payload),
                depends_on=pred.id if pred is not None else None,
                max_attempts=request.max_attempts,
                backoff=request.backoff,
                initial_delay_s=request.initial_delay_s,
                not_before_ms=now + int(request.initial_delay_s * 1000),
                created_at_utc=stamp,
                updated_at_utc=stamp,
            )
            self._table.next_id += 1
            self._table.jobs.append(rec)

            if pred is None or pred.state is JobState.SUCCEEDED:
                self._emit(EventType.JOB_ENQUEUED, rec.id, kind=rec.kind, tags=rec.tags)
            elif pred.state is JobState.FAILED:
                self._terminate(rec, JobState.FAILED, reason=f"predecessor {pred.id} failed")
            elif pred.state in (JobState.CANCELLED, JobState.CANCELLING):
                self._terminate(rec, JobState.CANCELLED, reason=f"predecessor {pred.id} cancelled")
            else:
                rec.state = JobState.BLOCKED
                self._emit(
                    EventType.JOB_BLOCKED, rec.id, kind=rec.kind, tags=rec.tags, depends_on=pred.id
                )

            self._persist()
            self._cond.notify_all()

        log.debug(
            "job.enqueued",
            job_id=rec.id,
            kind=rec.kind,
            tags=rec.tags,
            state=rec.state.value,
            depends_on=rec.depends_on,
        )
        return JobHandle(id=rec.id, tags=tuple(rec.tags))

    def cancel_by_tag(self, tag: str) -> int:
        """
        Cancel every unfinished job carrying `tag`, plus their successors.
        Running jobs turn CANCELLING: their worker is told to stop, they keep
        counting as running until it returns, and its result is discarded.
        Returns the number of jobs cancelled.
        """
        with self.locked():
            targets = [
                r
                for r in self._table.jobs
                if tag in r.tags and not r.state.is_finished() and r.state is not JobState.CANCELLING
            ]
            count = 0
            for rec in targets:
                if rec.state.is_finished() or rec.state is JobState.CANCELLING:
                    continue
                count += self._terminate(rec, JobState.CANCELLED, reason=f"cancelled by tag {tag}")
            if count:
                self._persist()
                self._cond.notify_all()
        if count:
            log.info("job.cancelled_by_tag", tag=tag, jobs=count)
        return count

    def _terminate(self, rec: JobRecord, state: JobState, *, reason: str) -> int:
        """Finish `rec` and cascade to its unfinished successors. Caller holds the lock."""
        now = self._clock()
        count = 0
        stack = [rec]
        while stack:
            cur = stack.pop()
            if cur.state.is_finished() or cur.state is JobState.CANCELLING:
                continue
            if cur.state is JobState.RUNNING and state is JobState.CANCELLED:
                ev = self._cancel_events.get(cur.id)
                if ev is not None:
                    ev.set()
                cur.state = JobState.CANCELLING
            else:
                cur.state = state
                cur.finished_at_ms = now
            cur.updated_at_utc = utc_now_iso()
            if state is JobState.FAILED and cur.error is None:
                cur.error = {"exc_type": "PredecessorFailed", "message": reason, "traceback": ""}
            self._emit(
                EventType.JOB_CANCELLED if state is JobState.CANCELLED else EventType.JOB_FAILED,
                cur.id,
                kind=cur.kind,
                reason=reason,
            )
            count += 1
            stack.extend(r for r in self._table.jobs if r.depends_on == cur.id)
            reason = f"predecessor {cur.id} {state.value}"
        return count

    def prune(self, older_than_s: float) -> int:
        """Drop finished jobs whose completion is older than `older_than_s`."""
        cutoff = self._clock() - int(older_than_s * 1000)
        with self.locked():
            referenced = {r.depends_on for r in self._table.jobs if not r.state.is_finished()}
            keep: list[JobRecord] = []
            dropped = 0
            for r in self._table.jobs:
                if (
                    r.state.is_finished()
                    and r.finished_at_ms is not None
                    and r.finished_at_ms <= cutoff
                    and r.id not in referenced
                ):
                    dropped += 1
                    continue
                keep.append(r)
            if dropped:
                self._table.jobs = keep
                self._persist()
        return dropped

    # ------------------------------------------------------------------
    # execution

    def _due(self, now: int) -> list[JobRecord]:
        return sorted(
            (
                r
                for r in self._table.jobs
                if r.state is JobState.ENQUEUED and r.not_before_ms <= now
            ),
            key=lambda r: (r.not_before_ms, r.id),
        )

    def _claim(self, rec: JobRecord) -> tuple[JobRecord, threading.Event]:
        """Mark `rec` RUNNING under this scheduler's owner. Caller holds the lock."""
        rec.state = JobState.RUNNING
        rec.owner = self.owner
        rec.attempts += 1
        rec.updated_at_utc = utc_now_iso()
        ev = threading.Event()
        self._cancel_events[rec.id] = ev
        self._emit(EventType.JOB_STARTED, rec.id, kind=rec.kind, attempt=rec.attempts)
        self._persist()
        return rec.model_copy(deep=True), ev

    def _run_claimed(self, snapshot: JobRecord, cancel_event: threading.Event) -> None:
        worker = self._workers.get(snapshot.kind)
        job_log = log.bind(job_id=snapshot.id, kind=snapshot.kind, attempt=snapshot.attempts)
        ctx = JobContext(
            job_id=snapshot.id,
            kind=snapshot.kind,
            tags=tuple(snapshot.tags),
            payload=dict(snapshot.payload),
            attempt=snapshot.attempts,
            max_attempts=snapshot.max_attempts,
            logger=job_log,
            _cancel_event=cancel_event,
            _lookup=self.state_of,
        )
        try:
            if worker is None:
                raise SchedulerError(f"No worker registered for kind={snapshot.kind!r}")
            result = worker.run(ctx)
            if not isinstance(result, JobResult):
                raise TypeError(
                    f"Worker {snapshot.kind} returned {type(result).__name__}, expected JobResult"
                )
        except Exception as e:
            job_log.exception("job.crashed")
            result = JobResult.failure(error=job_error_from_exc(e))
        self._finish(snapshot.id, result)

    def _finish(self, job_id: int, result: JobResult) -> None:
        with self.locked():
            self._cancel_events.pop(job_id, None)
            rec = self._find(job_id)
            if rec is None:
                return
            if rec.state is not JobState.RUNNING or rec.owner != self.owner:
                if rec.state is JobState.CANCELLING and rec.owner == self.owner:
                    rec.state = JobState.CANCELLED
                    rec.finished_at_ms = self._clock()
                    rec.owner = None
                    rec.updated_at_utc = utc_now_iso()
                self._emit(
                    EventType.JOB_RESULT_DISCARDED, rec.id, state=rec.state.value, status=result.status
                )
                log.info("job.result_discarded", job_id=rec.id, state=rec.state.value)
                self._persist()
                self._cond.notify_all()
                return

            now = self._clock()
            rec.owner = None
            rec.updated_at_utc = utc_now_iso()
            rec.output = dict(result.output)

            if result.status == "success":
                rec.state = JobState.SUCCEEDED
                rec.finished_at_ms = now
                self._emit(EventType.JOB_SUCCEEDED, rec.id, kind=rec.kind, attempts=rec.attempts)
                self._release_successors(rec, now)
            elif result.status == "retry" and rec.attempts < rec.max_attempts:
                delay_s = rec.backoff.delay_for(rec.attempts)
                rec.state = JobState.ENQUEUED
                rec.not_before_ms = now + int(delay_s * 1000)
                self._emit(
                    EventType.JOB_RETRY, rec.id, kind=rec.kind, attempts=rec.attempts, delay_s=delay_s
                )
                log.debug("job.retry", job_id=rec.id, kind=rec.kind, attempts=rec.attempts, delay_s=delay_s)
            else:
                if result.error is not None:
                    rec.error = asdict(result.error)
                elif result.status == "retry":
                    rec.error = {
                        "exc_type": "RetriesExhausted",
                        "message": f"gave up after {rec.attempts} attempts",
                        "traceback": "",
                    }
                self._terminate(
                    rec,
                    JobState.FAILED,
                    reason=(rec.error or {}).get("message", "worker reported failure"),
                )
                log.warning(
                    "job.failed",
                    job_id=rec.id,
                    kind=rec.kind,
                    attempts=rec.attempts,
                    error=(rec.error or {}).get("message"),
                )

            self._persist()
            self._cond.notify_all()

    def _release_successors(self, rec: JobRecord, now: int) -> None:
        for succ in self._table.jobs:
            if succ.depends_on == rec.id and succ.state is JobState.BLOCKED:
                succ.state = JobState.ENQUEUED
                succ.not_before_ms = now + int(succ.initial_delay_s * 1000)
                succ.updated_at_utc = utc_now_iso()
                self._emit(EventType.JOB_RELEASED, succ.id, kind=succ.kind, after=rec.id)

    def run_pending(self, *, max_rounds: int = 1000) -> int:
        """
        Run every due job inline until nothing is due at the current clock.
        Returns the number of job runs performed.
        """
        ran = 0
        for _ in range(max_rounds):
            with self.locked():
                due = self._due(self._clock())
                if not due:
                    return ran
                snapshot, ev = self._claim(due[0])
            self._run_claimed(snapshot, ev)
            ran += 1
        return ran

    def start(self) -> None:
        with self._cond:
            if self._dispatcher is not None:
                return
            self._stopping = False
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="blocklist-job"
            )
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, name="blocklist-dispatcher", daemon=True
            )
            self._dispatcher.start()
        self._emit(EventType.SCHEDULER_START, None, max_workers=self._max_workers)
        log.info("scheduler.started", max_workers=self._max_workers)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop dispatching. The owner is released, so jobs it left RUNNING are recoverable."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            dispatcher, executor = self._dispatcher, self._executor
            self._dispatcher = None
            self._executor = None
        if dispatcher is not None:
            dispatcher.join(timeout=5.0)
        if executor is not None:
            executor.shutdown(wait=wait)
        _LIVE_OWNERS.discard(self.owner)
        self._emit(EventType.SCHEDULER_STOP, None)

    def _dispatch_loop(self) -> None:
        while True:
            with self.locked():
                if self._stopping:
                    return
                now = self._clock()
                due = self._due(now)
                slots = self._max_workers - len(self._cancel_events)
                claimed = [self._claim(r) for r in due[: max(0, slots)]]
                pending = [r.not_before_ms for r in self._table.jobs if r.state is JobState.ENQUEUED]
                executor = self._executor
            if executor is None:
                return
            for snapshot, ev in claimed:
                executor.submit(self._run_claimed, snapshot, ev)
            if claimed:
                continue
            nxt = min(pending) if pending else None
            timeout = 1.0 if nxt is None else max(0.01, min(1.0, (nxt - now) / 1000))
            # other processes do not notify; the timeout bounds the delay before their jobs are seen
            with self._cond:
                if not self._stopping:
                    self._cond.wait(timeout)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is ENQUEUED, BLOCKED, RUNNING or CANCELLING."""
        deadline = None if timeout is None else self._clock() + int(timeout * 1000)
        while True:
            with self.locked():
                if all(r.state.is_finished() for r in self._table.jobs):
                    return True
            if deadline is not None and self._clock() >= deadline:
                return False
            with self._cond:
                self._cond.wait(0.25)
