from __future__ import annotations

from enum import StrEnum

from blocklist_sync.core.config import TransportMode
from blocklist_sync.models import ArtifactClass

KIND_DOWNLOAD_FILE = "download_file"
KIND_WATCH = "download_watch"
KIND_INSTALL = "install"
KIND_COORDINATOR = "coordinator"


class Stage(StrEnum):
    DOWNLOAD = "download"
    WATCH = "watch"
    INSTALL = "install"
    COORDINATOR = "coordinator"


def job_tag(artifact_class: ArtifactClass, mode: TransportMode, stage: Stage) -> str:
    """One tag per (artifact class, transport mode, stage)."""
    return f"blocklist.{artifact_class.value}.{mode}.{stage.value}"


def pipeline_tags(artifact_class: ArtifactClass, mode: TransportMode) -> tuple[str, ...]:
    """Every tag a pipeline of this class and mode can carry."""
    if mode == "coordinator":
        return (job_tag(artifact_class, mode, Stage.COORDINATOR),)
    return (
        job_tag(artifact_class, mode, Stage.DOWNLOAD),
        job_tag(artifact_class, mode, Stage.WATCH),
        job_tag(artifact_class, mode, Stage.INSTALL),
    )
