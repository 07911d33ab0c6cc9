"""Module stream definitions."""

from pydantic import BaseModel, ConfigDict, Field


class ModuleStream(BaseModel):
    """A named, versioned grouping of packages: one selectable variant of a module."""

    model_config = ConfigDict(frozen=True)

    name: str
    stream: str
    version: int = 0
    context: str = ""
    arch: str = "noarch"
    repo_id: str
    requires: tuple[str, ...] = Field(default_factory=tuple)
    artifacts: tuple[str, ...] = Field(default_factory=tuple)
    profiles: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    default: bool = False
    summary: str | None = None

    @property
    def nsvca(self) -> str:
        """``name:stream:version:context:arch`` identity."""
        return f"{self.name}:{self.stream}:{self.version}:{self.context}:{self.arch}"

    def required_streams(self) -> list[tuple[str, str]]:
        """``module:stream`` requirements as ``(module, stream)`` pairs."""
        pairs = []
        for entry in self.requires:
            module, _, stream = entry.partition(":")
            pairs.append((module.strip(), stream.strip()))
        return pairs

    def __str__(self) -> str:
        return self.nsvca
