from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, StringConstraints, model_validator

FileName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=120, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$"),
]


class ArtifactDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    source_locator: HttpUrl
    file_name: FileName


class ArtifactsFile(BaseModel):
    """
    Shape of the optional override file:

      {"local": [{"source_locator": ..., "file_name": ...}], "remote": [...]}
    """

    model_config = ConfigDict(extra="forbid")

    local: list[ArtifactDescriptor] = Field(default_factory=list)
    remote: list[ArtifactDescriptor] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_file_names(self) -> "ArtifactsFile":
        for label, items in (("local", self.local), ("remote", self.remote)):
            names = [d.file_name for d in items]
            if len(names) != len(set(names)):
                dupes = sorted({n for n in names if names.count(n) > 1})
                raise ValueError(f"Duplicate file_name(s) in {label}: {dupes}")
        return self
