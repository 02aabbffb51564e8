from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

import structlog

from blocklist_sync.models import FreshnessOutcome

log = structlog.get_logger(__name__)

T = TypeVar("T")

Subscriber = Callable[[T], None]


@dataclass(slots=True)
class Subscription:
    """Handle returned by `StatusPublisher.subscribe`."""

    _cancel: Callable[[], None]
    active: bool = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._cancel()


class StatusPublisher(Generic[T]):
    """
    Single-slot broadcast. Holds the most recent value, replays it to every
    new subscriber, then streams later updates.

    Delivery happens on the publishing thread while the publisher lock is
    held, so every subscriber sees updates in publication order. Subscribers
    must not block and must hand work off to their own execution context.
    """

    def __init__(self, initial: T, *, name: str = "status") -> None:
        self.name = name
        self._value = initial
        self._subscribers: dict[int, Subscriber[T]] = {}
        self._next_key = 0
        self._lock = threading.RLock()

    @property
    def value(self) -> T:
        with self._lock:
            return self._value

    def subscribe(self, callback: Subscriber[T]) -> Subscription:
        with self._lock:
            key = self._next_key
            self._next_key += 1
            self._subscribers[key] = callback
            self._deliver(callback, self._value)

        def _remove() -> None:
            with self._lock:
                self._subscribers.pop(key, None)

        return Subscription(_cancel=_remove)

    def publish(self, value: T) -> None:
        with self._lock:
            self._value = value
            for callback in list(self._subscribers.values()):
                self._deliver(callback, value)

    def _deliver(self, callback: Subscriber[T], value: T) -> None:
        try:
            callback(value)
        except Exception:
            log.exception("status.subscriber_failed", publisher=self.name)


class OutcomePublisher(StatusPublisher[FreshnessOutcome]):
    """
    Publisher of FreshnessOutcome values keyed by invocation.

    `begin()` publishes IN_PROGRESS and opens an invocation; `complete()`
    publishes its terminal value only while that invocation is the most
    recent one, so observers never see a terminal value that was not
    preceded by IN_PROGRESS for the same invocation.

    An invocation is numbered by the publisher unless the caller passes a
    key. Download pipelines key theirs by start time, which their jobs carry
    in the payload, so a worker completes exactly the invocation that
    enqueued it.
    """

    def __init__(self, *, name: str = "outcome") -> None:
        super().__init__(FreshnessOutcome.NOT_STARTED, name=name)
        self._counter = 0
        self._invocation: int | None = None

    @property
    def invocation(self) -> int | None:
        with self._lock:
            return self._invocation

    def begin(self, key: int | None = None) -> int:
        with self._lock:
            self._counter += 1
            self._invocation = self._counter if key is None else int(key)
            self.publish(FreshnessOutcome.IN_PROGRESS)
            return self._invocation

    def complete(self, invocation: int, outcome: FreshnessOutcome) -> bool:
        if not outcome.is_terminal():
            raise ValueError(f"complete() needs a terminal outcome, got {outcome.name}")
        with self._lock:
            if invocation != self._invocation:
                log.debug(
                    "status.stale_completion",
                    publisher=self.name,
                    invocation=invocation,
                    latest=self._invocation,
                    outcome=outcome.name,
                )
                return False
            self.publish(outcome)
            return True

    def wait_for_terminal(
        self, timeout: float | None = None, *, include_current: bool = False
    ) -> FreshnessOutcome | None:
        """
        Block until a terminal value is published; None on timeout. The
        replayed current value counts only with `include_current`.
        """
        done = threading.Event()
        seen: list[FreshnessOutcome] = []
        replay = [not include_current]

        def _on_value(v: FreshnessOutcome) -> None:
            if replay[0]:
                replay[0] = False
                return
            if v.is_terminal() and not seen:
                seen.append(v)
                done.set()

        sub = self.subscribe(_on_value)
        try:
            done.wait(timeout)
        finally:
            sub.cancel()
        return seen[0] if seen else None
