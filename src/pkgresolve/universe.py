"""In-memory index merging every loaded repository."""

import logging
import threading
from collections import defaultdict
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from pkgresolve.models import Advisory, ModuleStream, PackageRecord
from pkgresolve.version import Capability, parse_capability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepositoryContents:
    """Everything one repository contributed. Replaced as a whole on reload."""

    repo_id: str
    packages: tuple[PackageRecord, ...] = ()
    modules: tuple[ModuleStream, ...] = ()
    advisories: tuple[Advisory, ...] = ()


@dataclass(frozen=True)
class UniverseView:
    """An immutable, fully indexed snapshot of a set of repositories."""

    contents: dict[str, RepositoryContents] = field(default_factory=dict)
    packages: tuple[PackageRecord, ...] = ()
    _by_name: dict[str, tuple[PackageRecord, ...]] = field(default_factory=dict, repr=False)
    _by_provide: dict[str, tuple[PackageRecord, ...]] = field(default_factory=dict, repr=False)
    _by_file: dict[str, tuple[PackageRecord, ...]] = field(default_factory=dict, repr=False)

    @classmethod
    def build(cls, contents: dict[str, RepositoryContents]) -> "UniverseView":
        # repository order is sorted by id so every query has a stable order
        ordered = {repo_id: contents[repo_id] for repo_id in sorted(contents)}
        packages = tuple(pkg for repo in ordered.values() for pkg in repo.packages)

        by_name: defaultdict[str, list[PackageRecord]] = defaultdict(list)
        by_provide: defaultdict[str, list[PackageRecord]] = defaultdict(list)
        by_file: defaultdict[str, list[PackageRecord]] = defaultdict(list)
        for pkg in packages:
            by_name[pkg.name].append(pkg)
            for name in dict.fromkeys(cap.name for cap in pkg.provide_capabilities()):
                by_provide[name].append(pkg)
            for path in pkg.files:
                by_file[path].append(pkg)

        return cls(
            contents=ordered,
            packages=packages,
            _by_name={key: tuple(value) for key, value in by_name.items()},
            _by_provide={key: tuple(value) for key, value in by_provide.items()},
            _by_file={key: tuple(value) for key, value in by_file.items()},
        )

    @classmethod
    def of(cls, repo_id: str, packages: Iterable[PackageRecord]) -> "UniverseView":
        return cls.build({repo_id: RepositoryContents(repo_id=repo_id, packages=tuple(packages))})

    def __iter__(self) -> Iterator[PackageRecord]:
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)

    def find_by_name(self, name: str) -> list[PackageRecord]:
        return list(self._by_name.get(name, ()))

    def find_by_file(self, path: str) -> list[PackageRecord]:
        return list(self._by_file.get(path, ()))

    def find_by_provide(self, capability: Capability | str) -> list[PackageRecord]:
        """Packages whose provides (or file list, for paths) satisfy ``capability``."""
        if isinstance(capability, str):
            capability = parse_capability(capability)
        candidates = list(self._by_provide.get(capability.name, ()))
        if capability.name.startswith("/"):
            candidates.extend(pkg for pkg in self._by_file.get(capability.name, ()) if pkg not in candidates)
        return [pkg for pkg in candidates if pkg.provides_capability(capability)]

    def latest(self, name: str, arch: str | None = None) -> PackageRecord | None:
        """Highest EVR for ``name`` (optionally restricted to ``arch``); ties keep repository order."""
        best = None
        for pkg in self._by_name.get(name, ()):
            if arch is not None and pkg.arch != arch:
                continue
            if best is None or pkg.evr.compare(best.evr) > 0:
                best = pkg
        return best

    def module_streams(self) -> list[ModuleStream]:
        return [stream for repo in self.contents.values() for stream in repo.modules]

    def advisories(self) -> list[Advisory]:
        """All advisories ordered by id, then repository."""
        return sorted(
            (advisory for repo in self.contents.values() for advisory in repo.advisories),
            key=lambda advisory: (advisory.id, advisory.repo_id),
        )


class PackageUniverse:
    """Queryable merge of all loaded repositories.

    Each repository's records are replaced atomically: a new ``UniverseView``
    is built and published, so queries never see a partially replaced repository.
    """

    def __init__(self):
        self._contents: dict[str, RepositoryContents] = {}
        self._view = UniverseView()
        self._unavailable: dict[str, str] = {}
        self._lock = threading.Lock()

    def view(self) -> UniverseView:
        """The current snapshot; stays valid and unchanged across later reloads."""
        return self._view

    def replace_repository(
        self,
        repo_id: str,
        packages: Iterable[PackageRecord],
        modules: Iterable[ModuleStream] = (),
        advisories: Iterable[Advisory] = (),
    ) -> None:
        contents = RepositoryContents(
            repo_id=repo_id, packages=tuple(packages), modules=tuple(modules), advisories=tuple(advisories)
        )
        with self._lock:
            self._contents = {**self._contents, repo_id: contents}
            self._unavailable.pop(repo_id, None)
            self._view = UniverseView.build(self._contents)
        logger.debug(f"Registered {len(contents.packages)} packages from {repo_id}")

    def remove_repository(self, repo_id: str) -> None:
        with self._lock:
            if repo_id not in self._contents:
                return
            self._contents = {key: value for key, value in self._contents.items() if key != repo_id}
            self._view = UniverseView.build(self._contents)

    def mark_unavailable(self, repo_id: str, reason: str) -> None:
        """Record that a repository is skipped and drop whatever it had registered."""
        with self._lock:
            self._unavailable[repo_id] = reason
            if repo_id in self._contents:
                self._contents = {key: value for key, value in self._contents.items() if key != repo_id}
                self._view = UniverseView.build(self._contents)
        logger.warning(f"Repository {repo_id} is unavailable and will be skipped: {reason}")

    @property
    def unavailable(self) -> dict[str, str]:
        return dict(self._unavailable)

    def repo_ids(self) -> list[str]:
        return list(self._view.contents)

    def __iter__(self) -> Iterator[PackageRecord]:
        return iter(self._view)

    def __len__(self) -> int:
        return len(self._view)

    def find_by_name(self, name: str) -> list[PackageRecord]:
        return self._view.find_by_name(name)

    def find_by_provide(self, capability: Capability | str) -> list[PackageRecord]:
        return self._view.find_by_provide(capability)

    def find_by_file(self, path: str) -> list[PackageRecord]:
        return self._view.find_by_file(path)

    def latest(self, name: str, arch: str | None = None) -> PackageRecord | None:
        return self._view.latest(name, arch)

    def module_streams(self) -> list[ModuleStream]:
        return self._view.module_streams()

    def advisories(self) -> list[Advisory]:
        return self._view.advisories()
