from .chain import ChainHandles, PipelineChain
from .enqueuers import (
    BatchEnqueuer,
    CoordinatorBatchEnqueuer,
    EnqueuedPipeline,
    PlatformBatchEnqueuer,
)
from .install import FileInstaller, InstallReport
from .purge import PurgeReport, Purger
from .tags import (
    KIND_COORDINATOR,
    KIND_DOWNLOAD_FILE,
    KIND_INSTALL,
    KIND_WATCH,
    Stage,
    job_tag,
    pipeline_tags,
)
from .workers import (
    CoordinatorWorker,
    DownloadFileWorker,
    DownloadWatchWorker,
    InstallWorker,
)

__all__ = [
    "ChainHandles",
    "PipelineChain",
    "BatchEnqueuer",
    "CoordinatorBatchEnqueuer",
    "EnqueuedPipeline",
    "PlatformBatchEnqueuer",
    "FileInstaller",
    "InstallReport",
    "PurgeReport",
    "Purger",
    "KIND_COORDINATOR",
    "KIND_DOWNLOAD_FILE",
    "KIND_INSTALL",
    "KIND_WATCH",
    "Stage",
    "job_tag",
    "pipeline_tags",
    "CoordinatorWorker",
    "DownloadFileWorker",
    "DownloadWatchWorker",
    "InstallWorker",
]
