from typing import Annotated, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pkgresolve.version import EVR, Capability, parse_capability

OptionalStr: TypeAlias = str | None
RelationField = Annotated[tuple[str, ...], Field(default_factory=tuple)]

SYSTEM_REPO_ID = "@System"


class PackageRecord(BaseModel):
    """One resolvable package version from one repository.

    Relation fields keep the raw ``name [op evr]`` strings; use the
    ``*_capabilities`` helpers for parsed values.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    epoch: int = 0
    version: str
    release: str
    arch: str
    repo_id: str
    provides: RelationField
    requires: RelationField
    conflicts: RelationField
    obsoletes: RelationField
    files: RelationField
    location: OptionalStr = None
    checksum: OptionalStr = None
    summary: OptionalStr = None

    @field_validator("provides", "requires", "conflicts", "obsoletes")
    @classmethod
    def _check_relations(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for entry in value:
            parse_capability(entry)
        return value

    @property
    def evr(self) -> EVR:
        return EVR(epoch=self.epoch, version=self.version, release=self.release)

    @property
    def nevra(self) -> str:
        """Full package identity, e.g. ``bash-0:5.2.15-3.x86_64``."""
        return f"{self.name}-{self.epoch}:{self.version}-{self.release}.{self.arch}"

    @property
    def identity(self) -> tuple[str, str, str, str]:
        return (self.name, str(self.evr), self.arch, self.repo_id)

    @property
    def is_installed(self) -> bool:
        return self.repo_id == SYSTEM_REPO_ID

    @property
    def self_provide(self) -> Capability:
        return Capability(name=self.name, op="=", evr=self.evr)

    def provide_capabilities(self) -> list[Capability]:
        """Explicit provides plus the implicit ``name = evr`` provide."""
        return [self.self_provide, *(parse_capability(entry) for entry in self.provides)]

    def require_capabilities(self) -> list[Capability]:
        return [parse_capability(entry) for entry in self.requires]

    def conflict_capabilities(self) -> list[Capability]:
        return [parse_capability(entry) for entry in self.conflicts]

    def obsolete_capabilities(self) -> list[Capability]:
        return [parse_capability(entry) for entry in self.obsoletes]

    def provides_capability(self, capability: Capability) -> bool:
        """True if this package satisfies ``capability`` by provide or file path."""
        if capability.name.startswith("/") and capability.name in self.files:
            return True
        return any(provide.matches(capability) for provide in self.provide_capabilities())

    def is_obsoleted_by(self, other: "PackageRecord") -> bool:
        """Obsoletes match package names, never virtual provides."""
        return other.name != self.name and any(
            cap.name == self.name and cap.matches(self.self_provide) for cap in other.obsolete_capabilities()
        )

    def __str__(self) -> str:
        evr = f"{self.epoch}:{self.version}" if self.epoch else self.version
        return f"{self.name}-{evr}-{self.release}.{self.arch}"
