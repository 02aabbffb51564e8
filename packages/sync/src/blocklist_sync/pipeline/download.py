from __future__ import annotations

import os
from pathlib import Path

import httpx

from blocklist_sync.core import (
    FileDigest,
    InputDataError,
    move_file,
    safe_unlink,
    sha256_file,
    utc_compact_stamp,
)
from blocklist_sync.transport.http import stream_get_to_file_with_retries


def _part_path(dest: Path) -> Path:
    return dest.with_name(f".{dest.name}.{os.getpid()}.{utc_compact_stamp()}.part")


def download_to(
    client: httpx.Client,
    *,
    url: str,
    dest: Path,
    max_attempts: int = 3,
) -> FileDigest:
    """
    Stream `url` into a temp file next to `dest`, then move it into place.
    Empty bodies are rejected. Nothing is left behind on failure.
    """
    dest = Path(dest)
    tmp = _part_path(dest)
    try:
        stream_get_to_file_with_retries(
            client, url=url, dest_path=tmp, max_attempts=max_attempts
        )
        digest = sha256_file(tmp)
        if digest.bytes <= 0:
            raise InputDataError(f"Empty content from {url}")
        move_file(tmp, dest)
        return digest
    finally:
        safe_unlink(tmp)
