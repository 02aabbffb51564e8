from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from blocklist_sync.core import DataLayout, remove_tree
from blocklist_sync.models import ArtifactClass

log = structlog.get_logger(__name__)


@dataclass(slots=True)
class PurgeReport:
    deleted: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class Purger:
    """
    Removes every download namespace of one artifact class other than the
    target timestamp before a new batch is fetched. That includes newer
    namespaces when a forced redownload targets an older version. Deletion
    failures are logged and reported, never raised.
    """

    def __init__(self, layout: DataLayout) -> None:
        self._layout = layout

    def purge(self, artifact_class: ArtifactClass, timestamp: int) -> PurgeReport:
        report = PurgeReport()
        base = self._layout.downloads_root(artifact_class)
        for ts in self._layout.namespace_timestamps(base):
            if ts == timestamp:
                continue
            path = self._layout.download_namespace(artifact_class, ts)
            try:
                remove_tree(path)
            except OSError as e:
                report.failed.append(ts)
                log.warning(
                    "purge.delete_failed",
                    artifact_class=artifact_class.value,
                    namespace=ts,
                    path=str(path),
                    error=str(e),
                )
                continue
            report.deleted.append(ts)

        log.info(
            "purge.done",
            artifact_class=artifact_class.value,
            keep=timestamp,
            deleted=report.deleted,
            failed=report.failed,
        )
        return report
