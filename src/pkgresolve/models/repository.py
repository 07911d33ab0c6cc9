from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pkgresolve.constants import METADATA_EXPIRE


class RepositoryState(str, Enum):
    """Lifecycle of one repository's metadata."""

    UNLOADED = "unloaded"
    FETCHING = "fetching"
    CACHED = "cached"
    LOADED = "loaded"
    FAILED = "failed"


# forward-only, apart from retry (failed), refresh (loaded) and forced re-sync after a bad load (cached)
STATE_TRANSITIONS: dict[RepositoryState, frozenset[RepositoryState]] = {
    RepositoryState.UNLOADED: frozenset({RepositoryState.FETCHING}),
    RepositoryState.FETCHING: frozenset({RepositoryState.CACHED, RepositoryState.FAILED}),
    RepositoryState.CACHED: frozenset({RepositoryState.LOADED, RepositoryState.FETCHING}),
    RepositoryState.LOADED: frozenset({RepositoryState.FETCHING}),
    RepositoryState.FAILED: frozenset({RepositoryState.FETCHING}),
}


class RepoConfig(BaseModel):
    """A configured package source.

    At least one of ``baseurl``, ``mirrorlist`` or ``metalink`` is required;
    ``RepositoryCache.configure`` rejects configs without one.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str | None = None
    baseurl: tuple[str, ...] = ()
    mirrorlist: str | None = None
    metalink: str | None = None
    gpgcheck: bool = False
    gpgkey: tuple[str, ...] = ()
    metadata_expire: int = METADATA_EXPIRE
    skip_if_unavailable: bool = True
    fallback_to_stale: bool = True
    enabled: bool = True

    @field_validator("baseurl", "gpgkey", mode="before")
    @classmethod
    def _split_locators(cls, value):
        # repo files write these as whitespace or comma separated strings
        if isinstance(value, str):
            return tuple(part for part in value.replace(",", " ").split() if part)
        return value

    @property
    def has_locator(self) -> bool:
        return bool(self.baseurl or self.mirrorlist or self.metalink)

    def is_fresh(self, fetched_at: datetime | None, now: datetime | None = None) -> bool:
        """Whether metadata fetched at ``fetched_at`` is still within ``metadata_expire``."""
        if fetched_at is None:
            return False
        if self.metadata_expire < 0:
            return True
        now = now or datetime.now(tz=UTC)
        return now - fetched_at < timedelta(seconds=self.metadata_expire)


class RepoHandle(BaseModel):
    """What callers hold instead of a repository reference."""

    model_config = ConfigDict(frozen=True)

    repo_id: str
    generation: int

    def __str__(self) -> str:
        return f"{self.repo_id}#{self.generation}"


class CacheStamp(BaseModel):
    """Freshness and trust record written next to a repository's cached metadata."""

    repo_id: str
    fetched_at: datetime
    repomd_sha256: str
    source_url: str
    signer: str | None = None
