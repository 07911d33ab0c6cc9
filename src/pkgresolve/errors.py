"""Error taxonomy shared by every pkgresolve component."""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Every failure the core can report, one value per distinct condition."""

    # configuration
    NO_LOCATOR = "no-locator"
    UNKNOWN_REPOSITORY = "unknown-repository"
    STALE_HANDLE = "stale-handle"
    OPTION_TYPE = "option-type"
    # trust
    MALFORMED_KEY = "malformed-key"
    SIGNATURE_INVALID = "signature-invalid"
    UNSIGNED = "unsigned"
    FILE_INVALID = "file-invalid"
    # sync
    NETWORK = "network"
    UNTRUSTED_METADATA = "untrusted-metadata"
    CHECKSUM_MISMATCH = "checksum-mismatch"
    INVALID_STATE = "invalid-state"
    SYNC_CANCELLED = "sync-cancelled"
    # load
    NOT_CACHED = "not-cached"
    MALFORMED_METADATA = "malformed-metadata"
    # modules
    STREAM_CONFLICT = "stream-conflict"
    NO_SUCH_STREAM = "no-such-stream"
    # goal
    NO_MATCH = "no-match"
    UNRESOLVABLE = "unresolvable"
    CANCELLED = "cancelled"
    ALREADY_RESOLVED = "already-resolved"


class PkgResolveError(Exception):
    """Base class for all pkgresolve errors.

    Args:
        kind: The error kind
        message: Human readable description
        details: Extra structured context (repository id, file name, ...)
    """

    def __init__(self, kind: ErrorKind, message: str, **details: Any):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class ConfigError(PkgResolveError):
    """Bad repository or option configuration, rejected before any I/O."""


class TrustError(PkgResolveError):
    """Key import or signature verification failure."""


class SyncError(PkgResolveError):
    """Repository metadata could not be fetched or trusted."""


class LoadError(PkgResolveError):
    """Cached repository metadata could not be parsed."""


class ModuleError(PkgResolveError):
    """Module stream state change was rejected."""


class GoalError(PkgResolveError):
    """Resolution failure.

    ``problems`` holds the minimal set of conflicting rules for
    ``UNRESOLVABLE`` and the unmatched specs for ``NO_MATCH``.
    """

    def __init__(self, kind: ErrorKind, message: str, problems: list | None = None, **details: Any):
        super().__init__(kind, message, **details)
        self.problems = list(problems or [])

    def __str__(self) -> str:
        text = super().__str__()
        if self.problems:
            text += "".join(f"\n  - {problem}" for problem in self.problems)
        return text
