from .config import MIN_BACKOFF_S, Settings, load_settings
from .errors import (
    InputDataError,
    InstallError,
    JobError,
    SchedulerError,
    StateError,
    SyncError,
    TransientError,
    job_error_from_exc,
)
from .fs import (
    atomic_write_text,
    ensure_parent,
    file_lock,
    fsync_dir,
    fsync_file,
    move_file,
    remove_tree,
    safe_unlink,
)
from .hashing import (
    FileDigest,
    read_sha256_sums,
    sha256_file,
    verify_sha256_sums,
    write_sha256_sums,
)
from .json import append_jsonl, iter_jsonl, read_json
from .logging import ILogger, bind, clear_bindings, configure_logging, get_logger
from .paths import DataLayout
from .time import epoch_ms, utc_compact_stamp, utc_now_iso

__all__ = [
    "MIN_BACKOFF_S",
    "Settings",
    "load_settings",
    "SyncError",
    "TransientError",
    "InputDataError",
    "InstallError",
    "SchedulerError",
    "StateError",
    "JobError",
    "job_error_from_exc",
    "atomic_write_text",
    "ensure_parent",
    "file_lock",
    "fsync_dir",
    "fsync_file",
    "move_file",
    "remove_tree",
    "safe_unlink",
    "FileDigest",
    "read_sha256_sums",
    "sha256_file",
    "verify_sha256_sums",
    "write_sha256_sums",
    "append_jsonl",
    "iter_jsonl",
    "read_json",
    "ILogger",
    "bind",
    "clear_bindings",
    "configure_logging",
    "get_logger",
    "DataLayout",
    "epoch_ms",
    "utc_compact_stamp",
    "utc_now_iso",
]
