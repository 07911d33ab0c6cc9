"""Read-only listings for presentation layers.

Rows carry stable field names and come back ordered by id. ``--available`` and
``--installed`` only narrow which records are considered; with neither or
both set, everything is listed.
"""

from datetime import datetime
from fnmatch import fnmatchcase

from pydantic import BaseModel

from pkgresolve.installed import InstalledPackages
from pkgresolve.models import Advisory, ModuleStream, PackageRecord
from pkgresolve.module_index import ModuleIndex, ModuleSpec, normalize_nevra
from pkgresolve.options import Option
from pkgresolve.universe import PackageUniverse


class PackageRow(BaseModel):
    nevra: str
    name: str
    evr: str
    arch: str
    repo_id: str
    installed: bool
    summary: str | None = None


class ModuleStreamRow(BaseModel):
    nsvca: str
    name: str
    stream: str
    version: int
    context: str
    arch: str
    repo_id: str
    state: str
    profiles: list[str]
    summary: str | None = None


class AdvisoryRow(BaseModel):
    id: str
    kind: str
    severity: str | None
    title: str | None
    issued: datetime | None
    repo_id: str
    packages: list[str]
    installed: bool


def _scope(options: dict[str, Option] | None) -> tuple[bool, bool, tuple[str, ...]]:
    """(include available, include installed, spec patterns)."""
    if not options:
        return True, True, ()
    available = options["available"].get_bool() if "available" in options else False
    installed = options["installed"].get_bool() if "installed" in options else False
    specs = options["spec"].get_string_list() if "spec" in options else ()
    if not available and not installed:
        available = installed = True
    return available, installed, specs


def _package_matches(pkg: PackageRecord, specs: tuple[str, ...]) -> bool:
    if not specs:
        return True
    forms = (pkg.name, f"{pkg.name}.{pkg.arch}", str(pkg), pkg.nevra)
    return any(fnmatchcase(form, spec) for spec in specs for form in forms)


def list_packages(
    universe: PackageUniverse, installed: InstalledPackages, options: dict[str, Option] | None = None
) -> list[PackageRow]:
    want_available, want_installed, specs = _scope(options)
    installed_nevras = {pkg.nevra for pkg in installed.packages()}

    records: list[PackageRecord] = []
    if want_installed:
        records += installed.packages()
    if want_available:
        records += [pkg for pkg in universe if pkg.nevra not in installed_nevras or not want_installed]

    rows = [
        PackageRow(
            nevra=pkg.nevra,
            name=pkg.name,
            evr=str(pkg.evr),
            arch=pkg.arch,
            repo_id=pkg.repo_id,
            installed=pkg.is_installed or pkg.nevra in installed_nevras,
            summary=pkg.summary,
        )
        for pkg in records
        if _package_matches(pkg, specs)
    ]
    return sorted(rows, key=lambda row: (row.nevra, row.repo_id))


def list_module_streams(
    modules: ModuleIndex, installed: InstalledPackages | None = None, options: dict[str, Option] | None = None
) -> list[ModuleStreamRow]:
    """Module streams; a stream counts as installed when every artifact of it is installed."""
    want_available, want_installed, specs = _scope(options)
    patterns = [ModuleSpec.parse(spec) for spec in specs]
    installed_nevras = {pkg.nevra for pkg in installed.packages()} if installed is not None else set()

    def is_installed(stream: ModuleStream) -> bool:
        return bool(stream.artifacts) and all(
            normalize_nevra(artifact) in installed_nevras for artifact in stream.artifacts
        )

    rows = []
    for stream in modules.streams():
        if patterns and not any(pattern.matches(stream) for pattern in patterns):
            continue
        if not (want_installed and is_installed(stream)) and not (want_available and not is_installed(stream)):
            continue
        rows.append(
            ModuleStreamRow(
                nsvca=stream.nsvca,
                name=stream.name,
                stream=stream.stream,
                version=stream.version,
                context=stream.context,
                arch=stream.arch,
                repo_id=stream.repo_id,
                state=modules.stream_state(stream),
                profiles=sorted(stream.profiles),
                summary=stream.summary,
            )
        )
    return sorted(rows, key=lambda row: (row.nsvca, row.repo_id))


def list_advisories(
    universe: PackageUniverse, installed: InstalledPackages | None = None, options: dict[str, Option] | None = None
) -> list[AdvisoryRow]:
    """Advisories; one counts as installed when any package it names is installed."""
    want_available, want_installed, specs = _scope(options)
    installed_nevras = {pkg.nevra for pkg in installed.packages()} if installed is not None else set()

    def matches(advisory: Advisory) -> bool:
        if not specs:
            return True
        names = [advisory.id, *advisory.packages, *(nevra.rsplit("-", 2)[0] for nevra in advisory.packages)]
        return any(fnmatchcase(name, spec) for spec in specs for name in names)

    rows = []
    for advisory in universe.advisories():
        applied = any(normalize_nevra(nevra) in installed_nevras for nevra in advisory.packages)
        if not (want_installed and applied) and not (want_available and not applied):
            continue
        if not matches(advisory):
            continue
        rows.append(
            AdvisoryRow(
                id=advisory.id,
                kind=advisory.kind.value,
                severity=advisory.severity,
                title=advisory.title,
                issued=advisory.issued,
                repo_id=advisory.repo_id,
                packages=list(advisory.packages),
                installed=applied,
            )
        )
    return rows
