from __future__ import annotations

import threading

import pytest
from blocklist_sync.models import FreshnessOutcome
from blocklist_sync.status import OutcomePublisher, StatusPublisher


def test_subscriber_gets_current_value_then_updates() -> None:
    pub: StatusPublisher[int] = StatusPublisher(0, name="t")
    seen: list[int] = []
    pub.publish(1)

    sub = pub.subscribe(seen.append)
    pub.publish(2)
    pub.publish(3)
    sub.cancel()
    pub.publish(4)

    assert seen == [1, 2, 3]
    assert pub.value == 4


def test_failing_subscriber_does_not_break_others() -> None:
    pub: StatusPublisher[str] = StatusPublisher("a")
    seen: list[str] = []

    def _bad(_: str) -> None:
        raise RuntimeError("nope")

    pub.subscribe(_bad)
    pub.subscribe(seen.append)
    pub.publish("b")
    assert seen == ["a", "b"]


def test_outcome_publisher_drops_stale_completion() -> None:
    pub = OutcomePublisher(name="check")
    seen: list[FreshnessOutcome] = []
    pub.subscribe(seen.append)

    first = pub.begin()
    second = pub.begin()
    assert pub.complete(first, FreshnessOutcome.SUCCESS) is False
    assert pub.complete(second, FreshnessOutcome.NOT_REQUIRED) is True

    assert seen == [
        FreshnessOutcome.NOT_STARTED,
        FreshnessOutcome.IN_PROGRESS,
        FreshnessOutcome.IN_PROGRESS,
        FreshnessOutcome.NOT_REQUIRED,
    ]


def test_complete_requires_terminal_outcome() -> None:
    pub = OutcomePublisher()
    inv = pub.begin()
    with pytest.raises(ValueError):
        pub.complete(inv, FreshnessOutcome.IN_PROGRESS)


def test_wait_for_terminal() -> None:
    pub = OutcomePublisher()
    pub.publish(FreshnessOutcome.IN_PROGRESS)

    timer = threading.Timer(0.05, pub.publish, args=(FreshnessOutcome.SUCCESS,))
    timer.start()
    try:
        assert pub.wait_for_terminal(timeout=5) is FreshnessOutcome.SUCCESS
    finally:
        timer.cancel()

    # the replayed value only counts when asked for
    assert pub.wait_for_terminal(timeout=0.05) is None
    assert pub.wait_for_terminal(timeout=0.05, include_current=True) is FreshnessOutcome.SUCCESS


def test_keyed_invocation_is_completed_only_by_its_key() -> None:
    pub = OutcomePublisher(name="download.local")
    assert pub.invocation is None
    # nothing open yet: a completion from an old pipeline is ignored
    assert pub.complete(1_000, FreshnessOutcome.SUCCESS) is False
    assert pub.value is FreshnessOutcome.NOT_STARTED

    assert pub.begin(2_000) == 2_000
    assert pub.invocation == 2_000
    assert pub.complete(1_000, FreshnessOutcome.FAILURE) is False
    assert pub.value is FreshnessOutcome.IN_PROGRESS
    assert pub.complete(2_000, FreshnessOutcome.SUCCESS) is True
    assert pub.value is FreshnessOutcome.SUCCESS
