from __future__ import annotations

import structlog

from blocklist_sync.models import UNKNOWN_TIMESTAMP, ArtifactClass, FreshnessOutcome
from blocklist_sync.state import TimestampStore
from blocklist_sync.status import OutcomePublisher
from blocklist_sync.timestamps import ResolveLatestTimestamp

log = structlog.get_logger(__name__)


class FreshnessChecker:
    """
    Decides whether a newer artifact set is published for a class.

    IN_PROGRESS is published before the remote query is awaited; exactly one
    terminal outcome follows per invocation. Only the SUCCESS path writes to
    the store (the newest-published slot); FAILURE and NOT_REQUIRED leave it
    untouched.
    """

    def __init__(
        self,
        *,
        store: TimestampStore,
        resolve: ResolveLatestTimestamp,
        publisher: OutcomePublisher,
        app_version: int,
    ) -> None:
        self._store = store
        self._resolve = resolve
        self._publisher = publisher
        self._app_version = app_version

    async def check(
        self, artifact_class: ArtifactClass, *, retry_count: int = 0
    ) -> FreshnessOutcome:
        invocation = self._publisher.begin()

        installed = self._store.get(artifact_class)
        try:
            latest = await self._resolve(installed, self._app_version, retry_count)
        except Exception:
            log.exception(
                "freshness.resolve_failed",
                artifact_class=artifact_class.value,
                installed=installed,
            )
            latest = UNKNOWN_TIMESTAMP

        if latest == UNKNOWN_TIMESTAMP:
            outcome = FreshnessOutcome.FAILURE
        elif latest > installed:
            self._store.set_newest(artifact_class, latest)
            outcome = FreshnessOutcome.SUCCESS
        else:
            outcome = FreshnessOutcome.NOT_REQUIRED

        log.info(
            "freshness.checked",
            artifact_class=artifact_class.value,
            installed=installed,
            latest=latest,
            outcome=outcome.name,
            retry_count=retry_count,
        )
        self._publisher.complete(invocation, outcome)
        return outcome
