from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .fs import atomic_write_text


@dataclass(frozen=True, slots=True)
class FileDigest:
    sha256: str
    bytes: int


def sha256_file(path: Path, *, chunk_bytes: int = 1024 * 1024) -> FileDigest:
    h = hashlib.sha256()
    total = 0
    with Path(path).open("rb") as f:
        for block in iter(lambda: f.read(chunk_bytes), b""):
            h.update(block)
            total += len(block)
    return FileDigest(sha256=h.hexdigest(), bytes=total)


def write_sha256_sums(path: Path, entries: Mapping[str, str]) -> None:
    """`sha256sum -c` compatible listing, sorted by file name."""
    atomic_write_text(path, "".join(f"{entries[n]}  {n}\n" for n in sorted(entries)))


def read_sha256_sums(path: Path) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        digest, _, name = line.partition("  ")
        out[name.strip()] = digest.strip()
    return out


def verify_sha256_sums(directory: Path, sums_name: str = "sha256sums.txt") -> list[str]:
    """
    Names listed in `directory/sums_name` whose file is missing or whose
    digest differs. Empty means the directory is intact.
    """
    directory = Path(directory)
    bad: list[str] = []
    for name, expected in read_sha256_sums(directory / sums_name).items():
        p = directory / name
        if not p.is_file() or sha256_file(p).sha256 != expected:
            bad.append(name)
    return sorted(bad)
