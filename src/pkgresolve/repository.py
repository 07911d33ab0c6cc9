"""Repository metadata cache: fetch, verify, stage and load per-repository indexes."""

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from pkgresolve.constants import (
    CACHE_DIR,
    CACHE_STAMP_FILE,
    MODULES_FILE,
    PRIMARY_FILE,
    REPOMD_FILE,
    SIGNATURE_SUFFIX,
    SOLV_CACHE_FILE,
    UPDATEINFO_FILE,
)
from pkgresolve.errors import ConfigError, ErrorKind, LoadError, PkgResolveError, SyncError, TrustError
from pkgresolve.fetcher import (
    REPODATA_DIR,
    SkipMode,
    download_file,
    fetch_bytes,
    iter_index_entries,
    open_client,
    parse_metalink,
    parse_mirrorlist,
    parse_repomd,
    repodata_url,
)
from pkgresolve.models import (
    STATE_TRANSITIONS,
    Advisory,
    AdvisoryKind,
    AdvisoryReference,
    CacheStamp,
    ModuleStream,
    PackageRecord,
    RepoConfig,
    RepoHandle,
    RepositoryState,
)
from pkgresolve.trust import TrustStore
from pkgresolve.universe import PackageUniverse
from pkgresolve.utils import sha256_file, sha256_hex, try_parse_date
from pkgresolve.version import split_relations

logger = logging.getLogger(__name__)


def _clean_text(value: str | None) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "yes", "true")


def _build_package_record(entry: dict[str, Any], repo_id: str) -> PackageRecord:
    name = entry.get("Package")
    version = entry.get("Version")
    if not name or not version:
        raise ValueError(f"package entry without Package/Version: {sorted(entry)}")

    return PackageRecord(
        name=name,
        epoch=int(entry.get("Epoch") or 0),
        version=version,
        release=entry.get("Release", ""),
        arch=entry.get("Architecture", "noarch"),
        repo_id=repo_id,
        provides=split_relations(entry.get("Provides")),
        requires=split_relations(entry.get("Requires")),
        conflicts=split_relations(entry.get("Conflicts")),
        obsoletes=split_relations(entry.get("Obsoletes")),
        files=tuple(entry.get("Files", "").split()),
        location=entry.get("Location"),
        checksum=entry.get("Checksum"),
        summary=_clean_text(entry.get("Summary")),
    )


def _build_module_stream(entry: dict[str, Any], repo_id: str) -> ModuleStream:
    name = entry.get("Module")
    stream = entry.get("Stream")
    if not name or not stream:
        raise ValueError(f"module entry without Module/Stream: {sorted(entry)}")

    # one "profile: pkg pkg" per line
    profiles = {}
    for line in entry.get("Profiles", "").splitlines():
        profile, sep, members = line.strip().partition(":")
        if sep and profile.strip():
            profiles[profile.strip()] = tuple(members.replace(",", " ").split())

    return ModuleStream(
        name=name,
        stream=stream,
        version=int(entry.get("Version") or 0),
        context=entry.get("Context", ""),
        arch=entry.get("Architecture", "noarch"),
        repo_id=repo_id,
        requires=split_relations(entry.get("Requires")),
        artifacts=tuple(entry.get("Artifacts", "").split()),
        profiles=profiles,
        default=_parse_bool(entry.get("Default")),
        summary=_clean_text(entry.get("Summary")),
    )


def _build_advisory(entry: dict[str, Any], repo_id: str) -> Advisory:
    advisory_id = entry.get("Id")
    if not advisory_id:
        raise ValueError(f"advisory entry without Id: {sorted(entry)}")

    try:
        kind = AdvisoryKind((entry.get("Type") or "").strip().lower())
    except ValueError:
        kind = AdvisoryKind.UNKNOWN

    # one "type id [url]" per line
    references = []
    for line in entry.get("References", "").splitlines():
        parts = line.split(maxsplit=2)
        if len(parts) >= 2:
            references.append(AdvisoryReference(type=parts[0], id=parts[1], url=parts[2] if len(parts) > 2 else None))

    return Advisory(
        id=advisory_id,
        kind=kind,
        severity=_clean_text(entry.get("Severity")),
        title=_clean_text(entry.get("Title")),
        issued=try_parse_date(entry.get("Issued")),
        repo_id=repo_id,
        packages=tuple(entry.get("Packages", "").split()),
        references=tuple(references),
    )


class SolvCache(BaseModel):
    """Parsed records of one repository, keyed by the checksum of the repomd they came from."""

    repomd_sha256: str
    packages: list[PackageRecord]
    modules: list[ModuleStream]
    advisories: list[Advisory]


@dataclass
class _RepoEntry:
    config: RepoConfig
    generation: int
    state: RepositoryState = RepositoryState.UNLOADED
    task: asyncio.Task | None = None
    last_error: PkgResolveError | None = None


class RepositoryCache:
    """Owns every configured repository and its metadata lifecycle.

    Callers hold ``RepoHandle`` values; a handle from before a reconfiguration
    is rejected rather than silently pointing at the new repository.

    Args:
        universe: Where loaded records are registered
        trust: Keyring used to verify ``repomd`` signatures
        cache_dir: Root of the on-disk cache. Defaults to ``PKGRESOLVE_CACHE_DIR``
        client: HTTP client to share across fetches. A short-lived one is used per sync if omitted
    """

    def __init__(
        self,
        universe: PackageUniverse,
        trust: TrustStore,
        cache_dir: Path | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.universe = universe
        self.trust = trust
        self.cache_dir = Path(cache_dir) if cache_dir is not None else CACHE_DIR
        self._client = client
        self._entries: dict[str, _RepoEntry] = {}

    def _get_repo_cache_dir(self, repo_id: str) -> Path:
        return self.cache_dir / repo_id

    def _get_repodata_dir(self, repo_id: str) -> Path:
        return self._get_repo_cache_dir(repo_id) / REPODATA_DIR

    def _entry(self, handle: RepoHandle) -> _RepoEntry:
        entry = self._entries.get(handle.repo_id)
        if entry is None:
            raise ConfigError(ErrorKind.UNKNOWN_REPOSITORY, f"repository {handle.repo_id} is not configured")
        if entry.generation != handle.generation:
            raise ConfigError(
                ErrorKind.STALE_HANDLE,
                f"handle {handle} is stale, repository is at generation {entry.generation}",
                repo_id=handle.repo_id,
            )
        return entry

    def _set_state(self, entry: _RepoEntry, state: RepositoryState) -> None:
        if state not in STATE_TRANSITIONS[entry.state]:
            raise SyncError(
                ErrorKind.INVALID_STATE,
                f"{entry.config.id}: cannot go from {entry.state.value} to {state.value}",
                repo_id=entry.config.id,
            )
        logger.debug(f"{entry.config.id}: {entry.state.value} -> {state.value}")
        entry.state = state

    def _mark_unavailable(self, entry: _RepoEntry, reason: str) -> None:
        # a reconfigured repository's old task must not touch the new entry's records
        if self._entries.get(entry.config.id) is entry:
            self.universe.mark_unavailable(entry.config.id, reason)

    def configure(self, config: RepoConfig) -> RepoHandle:
        """Register (or replace) a repository configuration.

        No network or filesystem access happens here.

        Raises:
            ConfigError: NO_LOCATOR if none of baseurl, mirrorlist or metalink is set
        """
        if not config.has_locator:
            raise ConfigError(
                ErrorKind.NO_LOCATOR,
                f"repository {config.id} has none of baseurl, mirrorlist or metalink",
                repo_id=config.id,
            )

        generation = 1
        if previous := self._entries.get(config.id):
            generation = previous.generation + 1
            if previous.task is not None and not previous.task.done():
                previous.task.cancel()
            self.universe.remove_repository(config.id)

        self._entries[config.id] = _RepoEntry(config=config, generation=generation)
        return RepoHandle(repo_id=config.id, generation=generation)

    def handles(self) -> list[RepoHandle]:
        return [
            RepoHandle(repo_id=repo_id, generation=entry.generation)
            for repo_id, entry in sorted(self._entries.items())
        ]

    def state(self, handle: RepoHandle) -> RepositoryState:
        return self._entry(handle).state

    def config(self, handle: RepoHandle) -> RepoConfig:
        return self._entry(handle).config

    def last_error(self, handle: RepoHandle) -> PkgResolveError | None:
        return self._entry(handle).last_error

    def remove(self, handle: RepoHandle) -> None:
        """Forget a repository. Its on-disk cache is left in place."""
        entry = self._entry(handle)
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
        del self._entries[handle.repo_id]
        self.universe.remove_repository(handle.repo_id)

    def _read_stamp(self, repo_id: str) -> CacheStamp | None:
        stamp_path = self._get_repodata_dir(repo_id) / CACHE_STAMP_FILE
        if not stamp_path.is_file():
            return None
        try:
            return CacheStamp.model_validate_json(stamp_path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable cache stamp {stamp_path}: {e}")
            return None

    def _stamp_trusted(self, config: RepoConfig, stamp: CacheStamp) -> bool:
        """Whether cached metadata may be used under the current gpgcheck setting."""
        if not config.gpgcheck:
            return True
        return stamp.signer is not None and self.trust.has_signer(stamp.signer)

    async def sync(
        self,
        handle: RepoHandle,
        *,
        force: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> RepositoryState:
        """Bring a repository's cached metadata up to date.

        Concurrent calls for the same repository share one in-flight fetch.

        Args:
            handle: The repository to sync
            force: Ignore ``metadata_expire`` and always fetch
            cancel: Set to abandon the sync; the repository is left ``FAILED``

        Returns:
            The resulting state, ``CACHED`` (or ``LOADED`` if already loaded and fresh)

        Raises:
            SyncError: NETWORK, UNTRUSTED_METADATA, CHECKSUM_MISMATCH, MALFORMED_METADATA or SYNC_CANCELLED
        """
        entry = self._entry(handle)
        if entry.task is not None and not entry.task.done():
            logger.debug(f"{handle.repo_id}: joining in-flight sync")
            return await asyncio.shield(entry.task)

        entry.task = asyncio.create_task(self._run_sync(entry, force, cancel), name=f"sync-{handle.repo_id}")
        return await entry.task

    async def sync_all(
        self, *, force: bool = False, cancel: asyncio.Event | None = None
    ) -> dict[str, RepositoryState]:
        """Sync every enabled repository concurrently.

        A failed repository is reported as ``FAILED`` and skipped, unless its
        ``skip_if_unavailable`` is False, in which case its error is raised.
        """
        handles = [handle for handle in self.handles() if self._entries[handle.repo_id].config.enabled]
        results = await asyncio.gather(
            *(self.sync(handle, force=force, cancel=cancel) for handle in handles), return_exceptions=True
        )

        states: dict[str, RepositoryState] = {}
        required_error = None
        for handle, result in zip(handles, results):
            if isinstance(result, PkgResolveError):
                states[handle.repo_id] = RepositoryState.FAILED
                if not self._entries[handle.repo_id].config.skip_if_unavailable and required_error is None:
                    required_error = result
            elif isinstance(result, BaseException):
                raise result
            else:
                states[handle.repo_id] = result

        if required_error is not None:
            raise required_error
        return states

    async def _run_sync(self, entry: _RepoEntry, force: bool, cancel: asyncio.Event | None) -> RepositoryState:
        config = entry.config
        if entry.state == RepositoryState.LOADED and not force:
            stamp = self._read_stamp(config.id)
            if stamp is not None and config.is_fresh(stamp.fetched_at) and self._stamp_trusted(config, stamp):
                logger.debug(f"{config.id}: loaded metadata is still fresh")
                return entry.state

        self._set_state(entry, RepositoryState.FETCHING)
        stamp = self._read_stamp(config.id)
        usable = stamp is not None and config.is_fresh(stamp.fetched_at) and self._stamp_trusted(config, stamp)
        try:
            if not force and usable:
                logger.debug(f"{config.id}: cache from {stamp.fetched_at.isoformat()} is fresh, not fetching")
            else:
                await self._fetch(config, cancel)
        except asyncio.CancelledError:
            self._set_state(entry, RepositoryState.FAILED)
            entry.last_error = SyncError(ErrorKind.SYNC_CANCELLED, f"{config.id}: sync was cancelled")
            self._mark_unavailable(entry, "sync was cancelled")
            raise
        except SyncError as e:
            entry.last_error = e
            stale_ok = stamp is not None and self._stamp_trusted(config, stamp)
            if e.kind != ErrorKind.SYNC_CANCELLED and config.fallback_to_stale and stale_ok:
                logger.warning(f"{config.id}: {e.message}; using cached metadata from {stamp.fetched_at.isoformat()}")
                self._set_state(entry, RepositoryState.CACHED)
                return entry.state
            self._set_state(entry, RepositoryState.FAILED)
            self._mark_unavailable(entry, e.message)
            raise

        entry.last_error = None
        self._set_state(entry, RepositoryState.CACHED)
        return entry.state

    async def _resolve_base_urls(self, config: RepoConfig, client: httpx.AsyncClient) -> list[str]:
        urls = list(config.baseurl)
        for locator, parser in ((config.mirrorlist, parse_mirrorlist), (config.metalink, parse_metalink)):
            if not locator:
                continue
            try:
                text = (await fetch_bytes(locator, client)).decode("utf-8")
                urls.extend(url for url in parser(text) if url not in urls)
            except (httpx.HTTPError, OSError, ValueError) as e:
                logger.warning(f"{config.id}: failed to expand {locator}: {e}")
        return urls

    async def _import_keys(self, config: RepoConfig, client: httpx.AsyncClient) -> None:
        for locator in config.gpgkey:
            try:
                result = self.trust.add_key(await fetch_bytes(locator, client))
                logger.debug(f"{config.id}: key {locator} {result.value}")
            except (httpx.HTTPError, OSError, TrustError) as e:
                logger.warning(f"{config.id}: failed to import key {locator}: {e}")

    async def _fetch(self, config: RepoConfig, cancel: asyncio.Event | None) -> None:
        def check_cancel():
            if cancel is not None and cancel.is_set():
                raise SyncError(ErrorKind.SYNC_CANCELLED, f"{config.id}: sync was cancelled", repo_id=config.id)

        async with open_client(self._client) as client:
            base_urls = await self._resolve_base_urls(config, client)
            if not base_urls:
                raise SyncError(ErrorKind.NETWORK, f"{config.id}: no usable base URL", repo_id=config.id)
            check_cancel()
            await self._import_keys(config, client)

            last_error: SyncError | None = None
            for base_url in base_urls:
                check_cancel()
                try:
                    await self._fetch_from(config, base_url, client, check_cancel)
                    return
                except (httpx.HTTPError, OSError) as e:
                    last_error = SyncError(ErrorKind.NETWORK, f"{config.id}: {base_url}: {e}", repo_id=config.id)
                except SyncError as e:
                    if e.kind == ErrorKind.SYNC_CANCELLED:
                        raise
                    last_error = e
                logger.warning(f"{config.id}: {base_url} failed: {last_error.message}")
            raise last_error

    async def _fetch_from(self, config: RepoConfig, base_url: str, client: httpx.AsyncClient, check_cancel) -> None:
        logger.info(f"Fetching metadata for {config.id} from {base_url}")
        repomd_raw = await fetch_bytes(repodata_url(base_url, REPOMD_FILE), client)
        try:
            signature = await fetch_bytes(repodata_url(base_url, REPOMD_FILE + SIGNATURE_SUFFIX), client)
        except FileNotFoundError:
            signature = None
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 404:
                raise
            signature = None

        signer = None
        if config.gpgcheck:
            diagnostics: list[str] = []
            try:
                signer = self.trust.verify(repomd_raw, signature, diagnostics=diagnostics)
            except TrustError as e:
                raise SyncError(
                    ErrorKind.UNTRUSTED_METADATA,
                    f"{config.id}: repomd from {base_url} is not trusted: {e.message}",
                    repo_id=config.id,
                    diagnostics=diagnostics,
                ) from e

        try:
            _, files = parse_repomd(repomd_raw.decode("utf-8"))
        except ValueError as e:
            raise SyncError(ErrorKind.MALFORMED_METADATA, f"{config.id}: bad repomd: {e}", repo_id=config.id) from e
        for name in files:
            if "/" in name or name.startswith("."):
                raise SyncError(ErrorKind.MALFORMED_METADATA, f"{config.id}: bad file name {name!r} in repomd")
        if PRIMARY_FILE not in files and f"{PRIMARY_FILE}.gz" not in files:
            raise SyncError(ErrorKind.MALFORMED_METADATA, f"{config.id}: repomd lists no primary index")

        repo_dir = self._get_repo_cache_dir(config.id)
        repo_dir.mkdir(parents=True, exist_ok=True)
        current = self._get_repodata_dir(config.id)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=repo_dir))
        try:
            (staging / REPOMD_FILE).write_bytes(repomd_raw)
            if signature is not None:
                (staging / (REPOMD_FILE + SIGNATURE_SUFFIX)).write_bytes(signature)

            for name, (expected_sha256, _size) in sorted(files.items()):
                check_cancel()
                target = staging / name
                ok = await download_file(
                    repodata_url(base_url, name),
                    target,
                    client,
                    SkipMode.CHECK,
                    expected_sha256=expected_sha256,
                    reuse_from=current / name,
                )
                if not ok:
                    raise SyncError(ErrorKind.NETWORK, f"{config.id}: failed to download {name}", repo_id=config.id)
                if (actual := sha256_file(target)) != expected_sha256:
                    raise SyncError(
                        ErrorKind.CHECKSUM_MISMATCH,
                        f"{config.id}: {name} has checksum {actual}, repomd says {expected_sha256}",
                        repo_id=config.id,
                        file=name,
                    )

            stamp = CacheStamp(
                repo_id=config.id,
                fetched_at=datetime.now(tz=UTC),
                repomd_sha256=sha256_hex(repomd_raw),
                source_url=base_url,
                signer=signer,
            )
            previous = self._read_stamp(config.id)
            if previous is not None and previous.repomd_sha256 == stamp.repomd_sha256:
                if (current / SOLV_CACHE_FILE).is_file():
                    shutil.copy2(current / SOLV_CACHE_FILE, staging / SOLV_CACHE_FILE)
            (staging / CACHE_STAMP_FILE).write_text(stamp.model_dump_json(indent=2), encoding="utf-8")

            check_cancel()
            self._swap_in(staging, current)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        logger.info(f"Cached metadata for {config.id} ({len(files)} index files)")

    @staticmethod
    def _swap_in(staging: Path, current: Path) -> None:
        retired = None
        if current.exists():
            retired = current.with_name(f".retired-{current.name}")
            shutil.rmtree(retired, ignore_errors=True)
            current.rename(retired)
        staging.rename(current)
        if retired is not None:
            shutil.rmtree(retired, ignore_errors=True)

    def load(self, handle: RepoHandle) -> RepositoryState:
        """Parse the cached metadata and register it in the universe.

        Calling ``load`` again without a ``sync`` in between changes nothing.

        Raises:
            LoadError: NOT_CACHED if there is nothing to load, MALFORMED_METADATA if it does not parse
        """
        entry = self._entry(handle)
        repo_id = handle.repo_id
        if entry.state == RepositoryState.LOADED:
            logger.debug(f"{repo_id}: already loaded")
            return entry.state
        if entry.state != RepositoryState.CACHED:
            raise LoadError(ErrorKind.NOT_CACHED, f"{repo_id} is {entry.state.value}, not cached", repo_id=repo_id)

        repodata = self._get_repodata_dir(repo_id)
        try:
            repomd_sha256 = sha256_file(repodata / REPOMD_FILE)
        except OSError as e:
            raise LoadError(ErrorKind.NOT_CACHED, f"{repo_id}: no cached repomd: {e}", repo_id=repo_id) from e

        contents = self._read_solv_cache(repodata, repomd_sha256)
        if contents is None:
            try:
                contents = self._parse_repodata(repo_id, repodata, repomd_sha256)
            except (ValueError, OSError) as e:
                entry.last_error = LoadError(ErrorKind.MALFORMED_METADATA, f"{repo_id}: {e}", repo_id=repo_id)
                raise entry.last_error from e
            try:
                (repodata / SOLV_CACHE_FILE).write_text(contents.model_dump_json(), encoding="utf-8")
            except OSError as e:
                logger.warning(f"{repo_id}: failed to write {SOLV_CACHE_FILE}: {e}")

        self.universe.replace_repository(repo_id, contents.packages, contents.modules, contents.advisories)
        self._set_state(entry, RepositoryState.LOADED)
        entry.last_error = None
        logger.info(
            f"Loaded {repo_id}: {len(contents.packages)} packages, {len(contents.modules)} module streams, "
            f"{len(contents.advisories)} advisories"
        )
        return entry.state

    def load_all(self) -> dict[str, RepositoryState]:
        """Load every cached repository; failures mark the repository unavailable."""
        states = {}
        for handle in self.handles():
            entry = self._entries[handle.repo_id]
            if entry.state not in (RepositoryState.CACHED, RepositoryState.LOADED):
                states[handle.repo_id] = entry.state
                continue
            try:
                states[handle.repo_id] = self.load(handle)
            except LoadError as e:
                if not entry.config.skip_if_unavailable:
                    raise
                self.universe.mark_unavailable(handle.repo_id, e.message)
                states[handle.repo_id] = entry.state
        return states

    def _read_solv_cache(self, repodata: Path, repomd_sha256: str) -> SolvCache | None:
        solv_path = repodata / SOLV_CACHE_FILE
        if not solv_path.is_file():
            return None
        try:
            cache = SolvCache.model_validate_json(solv_path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable {solv_path}: {e}")
            return None
        if cache.repomd_sha256 != repomd_sha256:
            logger.debug(f"{solv_path} is for another repomd, reparsing")
            return None
        logger.debug(f"Using derived cache {solv_path}")
        return cache

    def _parse_repodata(self, repo_id: str, repodata: Path, repomd_sha256: str) -> SolvCache:
        _, files = parse_repomd((repodata / REPOMD_FILE).read_text(encoding="utf-8"))
        for name, (expected_sha256, _size) in files.items():
            if sha256_file(repodata / name) != expected_sha256:
                raise ValueError(f"cached {name} does not match its repomd checksum")

        def index_path(name: str) -> Path | None:
            for candidate in (f"{name}.gz", name):
                if candidate in files:
                    return repodata / candidate
            return None

        primary = index_path(PRIMARY_FILE)
        if primary is None:
            raise ValueError("repomd lists no primary index")
        packages = [_build_package_record(entry, repo_id) for entry in iter_index_entries(primary)]

        modules = []
        if (path := index_path(MODULES_FILE)) is not None:
            modules = [_build_module_stream(entry, repo_id) for entry in iter_index_entries(path)]

        advisories = []
        if (path := index_path(UPDATEINFO_FILE)) is not None:
            advisories = [_build_advisory(entry, repo_id) for entry in iter_index_entries(path)]

        return SolvCache(repomd_sha256=repomd_sha256, packages=packages, modules=modules, advisories=advisories)
