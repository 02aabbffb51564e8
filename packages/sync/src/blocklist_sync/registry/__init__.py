from .loader import ArtifactRegistry, default_artifacts, load_artifacts
from .models import ArtifactDescriptor, ArtifactsFile

__all__ = [
    "ArtifactDescriptor",
    "ArtifactsFile",
    "ArtifactRegistry",
    "default_artifacts",
    "load_artifacts",
]
