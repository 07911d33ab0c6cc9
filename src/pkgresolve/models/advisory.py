"""Advisory (errata) records."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AdvisoryKind(str, Enum):
    SECURITY = "security"
    BUGFIX = "bugfix"
    ENHANCEMENT = "enhancement"
    NEWPACKAGE = "newpackage"
    UNKNOWN = "unknown"


class AdvisoryReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    id: str
    url: str | None = None
    title: str | None = None


class Advisory(BaseModel):
    """A security/bugfix notice bound to package versions. Read-only once loaded."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: AdvisoryKind = AdvisoryKind.UNKNOWN
    severity: str | None = None
    title: str | None = None
    issued: datetime | None = None
    repo_id: str
    packages: tuple[str, ...] = Field(default_factory=tuple)
    references: tuple[AdvisoryReference, ...] = Field(default_factory=tuple)
