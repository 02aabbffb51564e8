from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class DataLayout:
    """
    Canonical on-disk layout:

      {root}/downloads/{artifact_class}/{timestamp}/   download namespace
      {root}/blocklists/{artifact_class}/{timestamp}/  installed files
      {root}/state.json                                installed/newest timestamps
      {root}/jobs.json                                 scheduler job table
      {root}/events.jsonl                              job journal
    """

    root: Path

    def downloads_root(self, artifact_class: str) -> Path:
        return self.root / "downloads" / str(artifact_class)

    def blocklists_root(self, artifact_class: str) -> Path:
        return self.root / "blocklists" / str(artifact_class)

    def download_namespace(self, artifact_class: str, timestamp: int) -> Path:
        return self.downloads_root(artifact_class) / str(int(timestamp))

    def install_dir(self, artifact_class: str, timestamp: int) -> Path:
        return self.blocklists_root(artifact_class) / str(int(timestamp))

    def sha256sums_txt(self, artifact_class: str, timestamp: int) -> Path:
        return self.install_dir(artifact_class, timestamp) / "sha256sums.txt"

    def state_json(self) -> Path:
        return self.root / "state.json"

    def jobs_json(self) -> Path:
        return self.root / "jobs.json"

    def events_jsonl(self) -> Path:
        return self.root / "events.jsonl"

    def namespace_timestamps(self, base: Path) -> list[int]:
        """
        Timestamps of the namespace directories directly under `base`.
        Entries whose name is not an integer are ignored.
        """
        if not base.is_dir():
            return []
        out: list[int] = []
        for p in base.iterdir():
            if p.is_dir() and p.name.isdigit():
                out.append(int(p.name))
        return sorted(out)

    def ensure_dirs(self, artifact_class: str) -> None:
        for p in (
            self.downloads_root(artifact_class),
            self.blocklists_root(artifact_class),
        ):
            p.mkdir(parents=True, exist_ok=True)
