from __future__ import annotations

from pathlib import Path
from urllib.parse import urljoin

from blocklist_sync.core import read_json
from blocklist_sync.models import ArtifactClass, BatchFile, DownloadBatch

from .models import ArtifactDescriptor, ArtifactsFile

# (path relative to the download base url, file name on disk)
_DEFAULT_LOCAL: tuple[tuple[str, str], ...] = (
    ("blocklists", "filetag.json"),
    ("basicconfig", "basicconfig.json"),
    ("rank", "rd.txt"),
    ("trie", "td.txt"),
)
_DEFAULT_REMOTE: tuple[tuple[str, str], ...] = (("blocklists", "filetag.json"),)


def default_artifacts(base_url: str) -> ArtifactsFile:
    base = base_url if base_url.endswith("/") else base_url + "/"

    def _mk(rows: tuple[tuple[str, str], ...]) -> list[ArtifactDescriptor]:
        return [
            ArtifactDescriptor(source_locator=urljoin(base, rel), file_name=name)  # type: ignore[arg-type]
            for rel, name in rows
        ]

    return ArtifactsFile(local=_mk(_DEFAULT_LOCAL), remote=_mk(_DEFAULT_REMOTE))


def load_artifacts(path: Path | None, *, base_url: str) -> ArtifactsFile:
    """
    Load descriptors from `path` when given, else the built-in defaults.
    A class left empty in the override file keeps its defaults.
    """
    defaults = default_artifacts(base_url)
    if path is None:
        return defaults

    loaded = ArtifactsFile.model_validate(read_json(Path(path)))
    return ArtifactsFile(
        local=loaded.local or defaults.local,
        remote=loaded.remote or defaults.remote,
    )


class ArtifactRegistry:
    """Fixed descriptor list per artifact class."""

    def __init__(self, artifacts: ArtifactsFile) -> None:
        self._by_class: dict[ArtifactClass, tuple[ArtifactDescriptor, ...]] = {
            ArtifactClass.LOCAL: tuple(artifacts.local),
            ArtifactClass.REMOTE: tuple(artifacts.remote),
        }

    def descriptors(self, artifact_class: ArtifactClass) -> tuple[ArtifactDescriptor, ...]:
        return self._by_class[artifact_class]

    def file_names(self, artifact_class: ArtifactClass) -> list[str]:
        return [d.file_name for d in self._by_class[artifact_class]]

    def batch(self, artifact_class: ArtifactClass, timestamp: int) -> DownloadBatch:
        return DownloadBatch(
            artifact_class=artifact_class,
            timestamp=timestamp,
            files=tuple(
                BatchFile(source_locator=str(d.source_locator), file_name=d.file_name)
                for d in self._by_class[artifact_class]
            ),
        )
