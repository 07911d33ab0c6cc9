"""Global test fixtures."""

import os

# keep the environment from leaking into defaults before pkgresolve.constants is imported
os.environ.setdefault("PKGRESOLVE_ARCH", "x86_64")
os.environ.setdefault("PKGRESOLVE_KEYS_DIR", "/nonexistent")

import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ed25519  # noqa: E402
from helpers import RepoBuilder, public_pem  # noqa: E402

from pkgresolve.repository import RepositoryCache  # noqa: E402
from pkgresolve.trust import TrustStore  # noqa: E402
from pkgresolve.universe import PackageUniverse  # noqa: E402


@pytest.fixture
def signing_key() -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def other_key() -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture
def trust(signing_key) -> TrustStore:
    store = TrustStore()
    store.add_key(public_pem(signing_key))
    return store


@pytest.fixture
def universe() -> PackageUniverse:
    return PackageUniverse()


@pytest.fixture
def cache(universe, trust, tmp_path) -> RepositoryCache:
    return RepositoryCache(universe, trust, cache_dir=tmp_path / "cache")


@pytest.fixture
def repo(tmp_path, signing_key) -> RepoBuilder:
    """A signed repository with a small dependency chain, not yet published."""
    builder = RepoBuilder(tmp_path / "mirror", signing_key)
    builder.add_package("glibc", "2.38", "1", Provides="libc.so.6", Files="/usr/lib64/libc.so.6")
    builder.add_package("bash", "5.2.15", "3", Requires="libc.so.6", Provides="/bin/sh", Files="/usr/bin/bash")
    builder.add_package("filesystem", "3.18", "2", arch="noarch", Summary="The basic directory layout")
    return builder
