from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from blocklist_sync.core import StateError, atomic_write_text, file_lock, utc_now_iso
from blocklist_sync.models import NO_TIMESTAMP, ArtifactClass, is_known_timestamp

log = structlog.get_logger(__name__)


class TimestampStore(Protocol):
    def get(self, artifact_class: ArtifactClass) -> int: ...
    def set(self, artifact_class: ArtifactClass, timestamp: int) -> bool: ...
    def get_newest(self, artifact_class: ArtifactClass) -> int: ...
    def set_newest(self, artifact_class: ArtifactClass, timestamp: int) -> bool: ...


class ClassState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    installed: int = Field(default=NO_TIMESTAMP, ge=NO_TIMESTAMP)
    newest: int = Field(default=NO_TIMESTAMP, ge=NO_TIMESTAMP)


class PersistedState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    local: ClassState = Field(default_factory=ClassState)
    remote: ClassState = Field(default_factory=ClassState)
    updated_at_utc: str | None = None

    def for_class(self, artifact_class: ArtifactClass) -> ClassState:
        return self.local if artifact_class is ArtifactClass.LOCAL else self.remote


class JsonTimestampStore:
    """
    Installed and newest-published timestamps per artifact class, kept in a
    JSON file that is rewritten atomically on every change.

    Writes only ever move a value forward: the unknown sentinel and anything
    not strictly greater than the stored value are rejected. The file is
    re-read under `<file>.lock` on every access, so processes sharing a data
    root never write back a stale copy.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock_path = self.path.with_name(f"{self.path.name}.lock")
        self._lock = threading.Lock()
        self._state = self._load()

    def _load(self) -> PersistedState:
        if not self.path.exists():
            return PersistedState()
        try:
            return PersistedState.model_validate_json(
                self.path.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as e:
            raise StateError(f"Failed to read timestamp state: {self.path}") from e

    def _flush(self) -> None:
        self._state.updated_at_utc = utc_now_iso()
        atomic_write_text(self.path, self._state.model_dump_json(indent=2))

    def get(self, artifact_class: ArtifactClass) -> int:
        with self._lock, file_lock(self._lock_path):
            self._state = self._load()
            return self._state.for_class(artifact_class).installed

    def get_newest(self, artifact_class: ArtifactClass) -> int:
        with self._lock, file_lock(self._lock_path):
            self._state = self._load()
            return self._state.for_class(artifact_class).newest

    def set(self, artifact_class: ArtifactClass, timestamp: int) -> bool:
        return self._advance(artifact_class, "installed", timestamp)

    def set_newest(self, artifact_class: ArtifactClass, timestamp: int) -> bool:
        return self._advance(artifact_class, "newest", timestamp)

    def _advance(self, artifact_class: ArtifactClass, slot: str, timestamp: int) -> bool:
        timestamp = int(timestamp)
        with self._lock, file_lock(self._lock_path):
            self._state = self._load()
            entry = self._state.for_class(artifact_class)
            current = int(getattr(entry, slot))
            if not is_known_timestamp(timestamp) or timestamp <= current:
                log.debug(
                    "state.write_rejected",
                    artifact_class=artifact_class.value,
                    slot=slot,
                    current=current,
                    requested=timestamp,
                )
                return False
            setattr(entry, slot, timestamp)
            self._flush()

        log.info(
            "state.advanced",
            artifact_class=artifact_class.value,
            slot=slot,
            previous=current,
            timestamp=timestamp,
        )
        return True

    def snapshot(self) -> dict[str, dict[str, int]]:
        with self._lock, file_lock(self._lock_path):
            self._state = self._load()
            return {
                "local": self._state.local.model_dump(),
                "remote": self._state.remote.model_dump(),
            }
