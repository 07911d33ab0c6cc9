"""Installed-package database interface.

The resolver only ever reads installed state; writing it is the installer's job.
"""

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from pkgresolve.models import SYSTEM_REPO_ID, PackageRecord


@runtime_checkable
class InstalledPackages(Protocol):
    def packages(self) -> list[PackageRecord]: ...

    def find_by_name(self, name: str) -> list[PackageRecord]: ...

    def is_installed(self, name: str, evr: str | None = None) -> bool: ...


class InstalledDatabase:
    """In-memory installed-package set.

    Records are re-tagged with the ``@System`` repository id so they never
    compare equal to the available copy of the same package.
    """

    def __init__(self, packages: Iterable[PackageRecord] = ()):
        self._packages: dict[tuple[str, str], PackageRecord] = {}
        for pkg in packages:
            self.add(pkg)

    def add(self, package: PackageRecord) -> PackageRecord:
        if package.repo_id != SYSTEM_REPO_ID:
            package = package.model_copy(update={"repo_id": SYSTEM_REPO_ID})
        self._packages[(package.name, package.arch)] = package
        return package

    def remove(self, name: str, arch: str | None = None) -> None:
        for key in [key for key in self._packages if key[0] == name and (arch is None or key[1] == arch)]:
            del self._packages[key]

    def packages(self) -> list[PackageRecord]:
        return sorted(self._packages.values(), key=lambda pkg: (pkg.name, pkg.arch))

    def find_by_name(self, name: str) -> list[PackageRecord]:
        return [pkg for pkg in self.packages() if pkg.name == name]

    def is_installed(self, name: str, evr: str | None = None) -> bool:
        return any(evr is None or str(pkg.evr) == evr for pkg in self.find_by_name(name))

    def __len__(self) -> int:
        return len(self._packages)

    def __contains__(self, name: str) -> bool:
        return self.is_installed(name)
