"""Goal jobs and the resolved transaction."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pkgresolve.models.package import PackageRecord


class JobKind(str, Enum):
    INSTALL = "install"
    REMOVE = "remove"
    UPGRADE = "upgrade"
    MODULE_ENABLE = "module-enable"
    MODULE_DISABLE = "module-disable"


class GoalJob(BaseModel):
    """One user request. ``spec`` may only be omitted for an upgrade of everything."""

    model_config = ConfigDict(frozen=True)

    kind: JobKind
    spec: str | None = None
    strict: bool = True

    @model_validator(mode="after")
    def _check_spec(self):
        if self.spec is None and self.kind != JobKind.UPGRADE:
            raise ValueError(f"{self.kind.value} job requires a target spec")
        return self

    @property
    def is_module_job(self) -> bool:
        return self.kind in (JobKind.MODULE_ENABLE, JobKind.MODULE_DISABLE)

    def __str__(self) -> str:
        return f"{self.kind.value} {self.spec or '*'}"


class Action(str, Enum):
    INSTALL = "install"
    ERASE = "erase"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    REINSTALL = "reinstall"
    OBSOLETED = "obsoleted"


class Reason(str, Enum):
    USER_REQUESTED = "user-requested"
    DEPENDENCY = "dependency"
    OBSOLETES = "obsoletes"


class TransactionPackage(BaseModel):
    """One resolved action. ``order`` is the position in the transaction."""

    model_config = ConfigDict(frozen=True)

    package: PackageRecord
    action: Action
    reason: Reason
    order: int
    replaces: tuple[PackageRecord, ...] = Field(default_factory=tuple)

    def __str__(self) -> str:
        return f"{self.action.value} {self.package} ({self.reason.value})"


class ModuleChange(BaseModel):
    """A module state change carried by a transaction; ``stream`` is None for disable/reset."""

    model_config = ConfigDict(frozen=True)

    name: str
    action: str
    stream: str | None = None


class Transaction(BaseModel):
    """The resolved, ordered result. Empty means nothing to do."""

    model_config = ConfigDict(frozen=True)

    packages: tuple[TransactionPackage, ...] = Field(default_factory=tuple)
    module_changes: tuple[ModuleChange, ...] = Field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.packages)

    @property
    def is_empty(self) -> bool:
        return not self.packages and not self.module_changes

    def by_action(self, action: Action) -> list[TransactionPackage]:
        return [item for item in self.packages if item.action == action]

    def find(self, name: str) -> TransactionPackage | None:
        return next((item for item in self.packages if item.package.name == name), None)
