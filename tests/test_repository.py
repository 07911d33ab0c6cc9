"""Tests for the repository metadata cache, run against on-disk and mocked HTTP mirrors."""

import asyncio
import shutil
from pathlib import Path

import httpx
import pytest
from helpers import RepoBuilder, public_pem

from pkgresolve.errors import ConfigError, ErrorKind, LoadError, SyncError
from pkgresolve.models import RepoConfig, RepositoryState
from pkgresolve.repository import RepositoryCache
from pkgresolve.trust import TrustStore
from pkgresolve.universe import PackageUniverse


def _serve(root: Path, calls: list[str]):
    """MockTransport handler serving ``https://mirror.test/repo/...`` from ``root``."""

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        await asyncio.sleep(0.01)
        path = root / request.url.path.removeprefix("/repo/")
        if not path.is_file():
            return httpx.Response(404)
        return httpx.Response(200, content=path.read_bytes())

    return handler


class TestConfigure:
    def test_no_locator_fails_before_any_io(self, tmp_path, universe, trust):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError(f"unexpected request to {request.url}")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        cache = RepositoryCache(universe, trust, cache_dir=tmp_path / "cache", client=client)
        with pytest.raises(ConfigError) as exc_info:
            cache.configure(RepoConfig(id="empty", gpgcheck=True))
        assert exc_info.value.kind == ErrorKind.NO_LOCATOR
        assert cache.handles() == []
        assert not (tmp_path / "cache").exists()

    def test_locator_strings_are_split(self):
        config = RepoConfig(id="base", baseurl="https://a.test/repo, https://b.test/repo")
        assert config.baseurl == ("https://a.test/repo", "https://b.test/repo")

    def test_reconfigure_invalidates_handle(self, cache, repo):
        old = cache.configure(RepoConfig(id="base", baseurl=repo.url))
        new = cache.configure(RepoConfig(id="base", baseurl=repo.url))
        assert new.generation == old.generation + 1
        with pytest.raises(ConfigError) as exc_info:
            cache.state(old)
        assert exc_info.value.kind == ErrorKind.STALE_HANDLE
        assert cache.state(new) == RepositoryState.UNLOADED

    def test_unknown_repository(self, cache, repo):
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url))
        cache.remove(handle)
        with pytest.raises(ConfigError) as exc_info:
            cache.state(handle)
        assert exc_info.value.kind == ErrorKind.UNKNOWN_REPOSITORY


class TestSync:
    @pytest.mark.asyncio
    async def test_signed_repository(self, cache, repo, tmp_path):
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        assert await cache.sync(handle) == RepositoryState.CACHED

        repodata = tmp_path / "cache" / "base" / "repodata"
        assert sorted(path.name for path in repodata.iterdir()) == ["cache.json", "primary", "repomd", "repomd.asc"]
        assert not any(path.name.startswith(".") for path in repodata.parent.iterdir())

    @pytest.mark.asyncio
    async def test_untrusted_signature(self, cache, repo, other_key, universe):
        repo.signing_key = other_key
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        with pytest.raises(SyncError) as exc_info:
            await cache.sync(handle)
        assert exc_info.value.kind == ErrorKind.UNTRUSTED_METADATA
        assert exc_info.value.details["diagnostics"]
        assert cache.state(handle) == RepositoryState.FAILED
        assert "base" in universe.unavailable

    @pytest.mark.asyncio
    async def test_unsigned_with_gpgcheck(self, cache, repo):
        repo.publish(sign=False)
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        with pytest.raises(SyncError) as exc_info:
            await cache.sync(handle)
        assert exc_info.value.kind == ErrorKind.UNTRUSTED_METADATA

    @pytest.mark.asyncio
    async def test_unsigned_without_gpgcheck(self, cache, repo):
        repo.publish(sign=False)
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url))
        assert await cache.sync(handle) == RepositoryState.CACHED

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, cache, repo, tmp_path):
        repo.publish()
        (repo.repodata / "primary").write_text("Package: tampered\nVersion: 1\n")
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        with pytest.raises(SyncError) as exc_info:
            await cache.sync(handle)
        assert exc_info.value.kind == ErrorKind.CHECKSUM_MISMATCH
        assert cache.state(handle) == RepositoryState.FAILED
        assert not (tmp_path / "cache" / "base" / "repodata").exists()

    @pytest.mark.asyncio
    async def test_fresh_cache_needs_no_network(self, cache, repo, trust, tmp_path):
        repo.publish()
        config = RepoConfig(id="base", baseurl=repo.url, gpgcheck=True)
        await cache.sync(cache.configure(config))
        shutil.rmtree(repo.root)

        second = RepositoryCache(PackageUniverse(), trust, cache_dir=tmp_path / "cache")
        handle = second.configure(config)
        assert await second.sync(handle) == RepositoryState.CACHED
        assert second.load(handle) == RepositoryState.LOADED

    @pytest.mark.asyncio
    async def test_unsigned_cache_refetched_once_gpgcheck_is_on(self, cache, repo, universe):
        repo.publish(sign=False)
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url))
        assert await cache.sync(handle) == RepositoryState.CACHED

        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        with pytest.raises(SyncError) as exc_info:
            await cache.sync(handle)
        assert exc_info.value.kind == ErrorKind.UNTRUSTED_METADATA
        assert cache.state(handle) == RepositoryState.FAILED
        with pytest.raises(LoadError):
            cache.load(handle)
        assert len(universe) == 0

    @pytest.mark.asyncio
    async def test_fresh_cache_from_unknown_signer_is_refetched(self, cache, repo, other_key, tmp_path):
        repo.publish()
        config = RepoConfig(id="base", baseurl=repo.url, gpgcheck=True)
        await cache.sync(cache.configure(config))

        trust = TrustStore()
        trust.add_key(public_pem(other_key))
        second = RepositoryCache(PackageUniverse(), trust, cache_dir=tmp_path / "cache")
        handle = second.configure(config)
        with pytest.raises(SyncError) as exc_info:
            await second.sync(handle)
        assert exc_info.value.kind == ErrorKind.UNTRUSTED_METADATA

    @pytest.mark.asyncio
    async def test_stale_trusted_cache_preferred(self, cache, repo, other_key):
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        await cache.sync(handle)

        repo.signing_key = other_key
        repo.publish()
        assert await cache.sync(handle, force=True) == RepositoryState.CACHED
        assert cache.last_error(handle).kind == ErrorKind.UNTRUSTED_METADATA

    @pytest.mark.asyncio
    async def test_stale_fallback_disabled(self, cache, repo, other_key):
        repo.publish()
        handle = cache.configure(
            RepoConfig(id="base", baseurl=repo.url, gpgcheck=True, fallback_to_stale=False)
        )
        await cache.sync(handle)

        repo.signing_key = other_key
        repo.publish()
        with pytest.raises(SyncError):
            await cache.sync(handle, force=True)
        assert cache.state(handle) == RepositoryState.FAILED

    @pytest.mark.asyncio
    async def test_cancelled(self, cache, repo, universe):
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(SyncError) as exc_info:
            await cache.sync(handle, cancel=cancel)
        assert exc_info.value.kind == ErrorKind.SYNC_CANCELLED
        assert cache.state(handle) == RepositoryState.FAILED
        assert "base" in universe.unavailable

    @pytest.mark.asyncio
    async def test_mirrorlist_falls_through_to_working_mirror(self, cache, repo, tmp_path):
        repo.publish()
        mirrorlist = tmp_path / "mirrorlist"
        mirrorlist.write_text(f"# mirrors\n{(tmp_path / 'gone').as_uri()}\n{repo.url}\n")
        handle = cache.configure(RepoConfig(id="base", mirrorlist=str(mirrorlist), gpgcheck=True))
        assert await cache.sync(handle) == RepositoryState.CACHED

    @pytest.mark.asyncio
    async def test_gpgkey_is_imported(self, repo, signing_key, tmp_path):
        repo.publish()
        key_file = tmp_path / "RPM-GPG-KEY-test"
        key_file.write_bytes(public_pem(signing_key))
        trust = TrustStore()
        cache = RepositoryCache(PackageUniverse(), trust, cache_dir=tmp_path / "cache")
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True, gpgkey=str(key_file)))
        assert await cache.sync(handle) == RepositoryState.CACHED
        assert len(trust) == 1

    @pytest.mark.asyncio
    async def test_concurrent_syncs_share_one_fetch(self, universe, trust, repo, tmp_path):
        repo.publish()
        calls: list[str] = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(_serve(repo.root, calls))) as client:
            cache = RepositoryCache(universe, trust, cache_dir=tmp_path / "cache", client=client)
            handle = cache.configure(RepoConfig(id="remote", baseurl="https://mirror.test/repo", gpgcheck=True))
            results = await asyncio.gather(cache.sync(handle), cache.sync(handle), cache.sync(handle))

        assert results == [RepositoryState.CACHED] * 3
        assert calls.count("/repo/repodata/repomd") == 1
        assert calls.count("/repo/repodata/primary") == 1

    @pytest.mark.asyncio
    async def test_http_error(self, universe, trust, tmp_path):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            cache = RepositoryCache(universe, trust, cache_dir=tmp_path / "cache", client=client)
            handle = cache.configure(RepoConfig(id="remote", baseurl="https://mirror.test/repo"))
            with pytest.raises(SyncError) as exc_info:
                await cache.sync(handle)
        assert exc_info.value.kind == ErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_sync_all_skips_unavailable(self, cache, repo, tmp_path):
        repo.publish()
        cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        cache.configure(RepoConfig(id="broken", baseurl=(tmp_path / "nowhere").as_uri()))
        states = await cache.sync_all()
        assert states == {"base": RepositoryState.CACHED, "broken": RepositoryState.FAILED}

    @pytest.mark.asyncio
    async def test_sync_all_required_repository(self, cache, repo, tmp_path):
        repo.publish()
        cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        cache.configure(
            RepoConfig(id="broken", baseurl=(tmp_path / "nowhere").as_uri(), skip_if_unavailable=False)
        )
        with pytest.raises(SyncError) as exc_info:
            await cache.sync_all()
        assert exc_info.value.kind == ErrorKind.NETWORK


class TestLoad:
    @pytest.mark.asyncio
    async def test_load_registers_records(self, cache, repo, universe):
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        await cache.sync(handle)
        assert cache.load(handle) == RepositoryState.LOADED

        (bash,) = universe.find_by_name("bash")
        assert bash.nevra == "bash-0:5.2.15-3.x86_64"
        assert bash.requires == ("libc.so.6",)
        assert bash.files == ("/usr/bin/bash",)
        assert [pkg.name for pkg in universe.find_by_provide("/bin/sh")] == ["bash"]
        assert universe.latest("filesystem").summary == "The basic directory layout"

    @pytest.mark.asyncio
    async def test_load_twice_is_noop(self, cache, repo, universe):
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        await cache.sync(handle)
        cache.load(handle)
        view = universe.view()
        records = [pkg.model_dump_json() for pkg in universe]

        assert cache.load(handle) == RepositoryState.LOADED
        assert universe.view() is view
        assert [pkg.model_dump_json() for pkg in universe] == records

    @pytest.mark.asyncio
    async def test_sync_of_fresh_loaded_repository(self, cache, repo):
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        await cache.sync(handle)
        cache.load(handle)
        assert await cache.sync(handle) == RepositoryState.LOADED

    def test_load_without_sync(self, cache, repo):
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url))
        with pytest.raises(LoadError) as exc_info:
            cache.load(handle)
        assert exc_info.value.kind == ErrorKind.NOT_CACHED

    @pytest.mark.asyncio
    async def test_derived_cache_is_reused(self, cache, repo, trust, tmp_path):
        repo.publish()
        config = RepoConfig(id="base", baseurl=repo.url, gpgcheck=True)
        handle = cache.configure(config)
        await cache.sync(handle)
        cache.load(handle)

        repodata = tmp_path / "cache" / "base" / "repodata"
        assert (repodata / "solv.json").is_file()
        (repodata / "primary").write_text("garbage that no longer matches repomd\n")

        second_universe = PackageUniverse()
        second = RepositoryCache(second_universe, trust, cache_dir=tmp_path / "cache")
        second_handle = second.configure(config)
        await second.sync(second_handle)
        assert second.load(second_handle) == RepositoryState.LOADED
        assert len(second_universe) == 3

    @pytest.mark.asyncio
    async def test_malformed_cache(self, cache, repo, tmp_path):
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        await cache.sync(handle)
        (tmp_path / "cache" / "base" / "repodata" / "primary").write_text("garbage\n")

        with pytest.raises(LoadError) as exc_info:
            cache.load(handle)
        assert exc_info.value.kind == ErrorKind.MALFORMED_METADATA
        assert cache.state(handle) == RepositoryState.CACHED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["Provides", "Requires", "Conflicts", "Obsoletes"])
    async def test_malformed_relation(self, cache, repo, universe, tmp_path, field):
        repo.add_package("broken", **{field: "foo (>= 1.0)"})
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        await cache.sync(handle)

        for _ in range(2):
            with pytest.raises(LoadError) as exc_info:
                cache.load(handle)
            assert exc_info.value.kind == ErrorKind.MALFORMED_METADATA
        assert not (tmp_path / "cache" / "base" / "repodata" / "solv.json").exists()
        assert len(universe) == 0

    @pytest.mark.asyncio
    async def test_modules_advisories_and_compressed_primary(self, cache, universe, tmp_path, signing_key):
        builder = RepoBuilder(tmp_path / "appstream", signing_key)
        builder.add_package("nodejs", "18.19", "1.module", Epoch="1")
        builder.add_module(
            "nodejs",
            "18",
            Version="8090020240101",
            Context="c0ffee",
            Architecture="x86_64",
            Artifacts="nodejs-1:18.19-1.module.x86_64",
            Profiles="default: nodejs npm\nminimal: nodejs",
            Default="yes",
        )
        builder.add_advisory(
            "RHSA-2024:0001",
            Type="security",
            Severity="Important",
            Title="nodejs security update",
            Issued="2024-01-15",
            Packages="nodejs-1:18.19-1.module.x86_64",
            References="cve CVE-2024-0001 https://example.test/CVE-2024-0001",
        )
        builder.publish(compress_primary=True)

        handle = cache.configure(RepoConfig(id="appstream", baseurl=builder.url, gpgcheck=True))
        await cache.sync(handle)
        cache.load(handle)

        (nodejs,) = universe.find_by_name("nodejs")
        assert nodejs.epoch == 1
        (stream,) = universe.module_streams()
        assert stream.nsvca == "nodejs:18:8090020240101:c0ffee:x86_64"
        assert stream.profiles == {"default": ("nodejs", "npm"), "minimal": ("nodejs",)}
        assert stream.default
        (advisory,) = universe.advisories()
        assert advisory.kind.value == "security"
        assert advisory.issued.year == 2024
        assert advisory.references[0].id == "CVE-2024-0001"

    @pytest.mark.asyncio
    async def test_load_all_marks_broken_repository_unavailable(self, cache, repo, universe, tmp_path):
        repo.publish()
        handle = cache.configure(RepoConfig(id="base", baseurl=repo.url, gpgcheck=True))
        await cache.sync(handle)
        (tmp_path / "cache" / "base" / "repodata" / "primary").write_text("garbage\n")

        assert cache.load_all() == {"base": RepositoryState.CACHED}
        assert "base" in universe.unavailable
