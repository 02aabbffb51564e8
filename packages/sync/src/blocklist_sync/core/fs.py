from __future__ import annotations

import errno
import fcntl
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def ensure_parent(path: Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def safe_unlink(path: os.PathLike[str] | str) -> None:
    """Remove a scratch file if it is still there."""
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        return


def fsync_dir(directory: Path) -> None:
    """Flush a directory entry so a rename into it survives power loss."""
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def fsync_file(path: Path) -> None:
    with Path(path).open("rb") as f:
        os.fsync(f.fileno())


def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    """
    Replace `path` with `text` in one rename. A reader sees either the old
    state table or the new one, never a torn write.
    """
    path = Path(path)
    ensure_parent(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    finally:
        safe_unlink(tmp)
    fsync_dir(path.parent)


def move_file(src: Path, dst: Path) -> Path:
    """
    Move `src` onto `dst`, replacing it. Falls back to copy + unlink when the
    download area and the install area live on different filesystems.
    """
    src = Path(src)
    dst = Path(dst)
    if not src.exists():
        raise FileNotFoundError(src)
    ensure_parent(dst)
    try:
        os.replace(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        tmp = dst.with_name(f".{dst.name}.tmpcopy")
        shutil.copy2(src, tmp)
        fsync_file(tmp)
        os.replace(tmp, dst)
        src.unlink(missing_ok=True)
    fsync_dir(dst.parent)
    return dst


def remove_tree(path: Path) -> None:
    """
    Delete a file or a directory tree bottom-up. Raises on the first entry
    that cannot be removed.
    """
    path = Path(path)
    if not path.exists():
        return
    if path.is_file() or path.is_symlink():
        path.unlink()
        return
    for p in sorted(path.rglob("*"), reverse=True):
        if p.is_dir() and not p.is_symlink():
            p.rmdir()
        else:
            p.unlink()
    path.rmdir()


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """
    Exclusive advisory lock on `path` for the duration of the block. Other
    processes, and other open handles in this one, wait until it is released.
    """
    path = Path(path)
    ensure_parent(path)
    with path.open("a+b") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
