from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import structlog

from blocklist_sync.core import (
    DataLayout,
    InstallError,
    move_file,
    remove_tree,
    sha256_file,
    verify_sha256_sums,
    write_sha256_sums,
)
from blocklist_sync.models import ArtifactClass
from blocklist_sync.state import TimestampStore

log = structlog.get_logger(__name__)


@dataclass(slots=True)
class InstallReport:
    artifact_class: ArtifactClass
    timestamp: int
    install_dir: Path
    files: dict[str, str] = field(default_factory=dict)
    store_updated: bool = False
    pruned: list[int] = field(default_factory=list)


class FileInstaller:
    """
    Moves a completed download namespace into the canonical location and
    records the installed timestamp.
    """

    def __init__(self, *, layout: DataLayout, store: TimestampStore) -> None:
        self._layout = layout
        self._store = store

    def install(
        self, artifact_class: ArtifactClass, timestamp: int, file_names: Sequence[str]
    ) -> InstallReport:
        src_dir = self._layout.download_namespace(artifact_class, timestamp)
        dst_dir = self._layout.install_dir(artifact_class, timestamp)

        missing = [n for n in file_names if not (src_dir / n).is_file()]
        if missing:
            raise InstallError(
                f"{artifact_class.value}/{timestamp}: missing downloaded file(s) {missing} in {src_dir}"
            )

        report = InstallReport(
            artifact_class=artifact_class, timestamp=timestamp, install_dir=dst_dir
        )
        for name in file_names:
            dst = move_file(src_dir / name, dst_dir / name)
            report.files[name] = sha256_file(dst).sha256
        write_sha256_sums(
            self._layout.sha256sums_txt(artifact_class, timestamp), report.files
        )

        report.store_updated = self._store.set(artifact_class, timestamp)
        report.pruned = self._prune_older(artifact_class, keep=timestamp)

        try:
            remove_tree(src_dir)
        except OSError as e:
            log.warning("install.cleanup_failed", path=str(src_dir), error=str(e))

        log.info(
            "install.done",
            artifact_class=artifact_class.value,
            timestamp=timestamp,
            files=len(report.files),
            store_updated=report.store_updated,
            pruned=report.pruned,
        )
        return report

    def verify(self, artifact_class: ArtifactClass, timestamp: int) -> list[str] | None:
        """
        Files of an installed version that are missing or altered. None when
        nothing is installed at `timestamp`.
        """
        sums = self._layout.sha256sums_txt(artifact_class, timestamp)
        if not sums.is_file():
            return None
        return verify_sha256_sums(sums.parent, sums.name)

    def _prune_older(self, artifact_class: ArtifactClass, *, keep: int) -> list[int]:
        pruned: list[int] = []
        base = self._layout.blocklists_root(artifact_class)
        for ts in self._layout.namespace_timestamps(base):
            if ts >= keep:
                continue
            try:
                remove_tree(self._layout.install_dir(artifact_class, ts))
            except OSError as e:
                log.warning(
                    "install.prune_failed",
                    artifact_class=artifact_class.value,
                    namespace=ts,
                    error=str(e),
                )
                continue
            pruned.append(ts)
        return pruned
