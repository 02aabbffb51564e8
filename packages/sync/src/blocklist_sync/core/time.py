import time
from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_compact_stamp() -> str:
    """UTC time as `YYYYmmddTHHMMSSffffff`, safe inside file names."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")


def epoch_ms() -> int:
    """Wall clock in milliseconds; job due times must survive process restarts."""
    return int(time.time() * 1000)
