import logging

import httpx
from rich.logging import RichHandler

from pkgresolve.errors import (
    ConfigError,
    ErrorKind,
    GoalError,
    LoadError,
    ModuleError,
    PkgResolveError,
    SyncError,
    TrustError,
)
from pkgresolve.goal import Goal, GoalEngine, GoalState, Problem
from pkgresolve.installed import InstalledDatabase, InstalledPackages
from pkgresolve.module_index import ModuleIndex, ModuleSpec
from pkgresolve.repository import RepositoryCache
from pkgresolve.trust import KeyImport, PublicKey, TrustStore
from pkgresolve.universe import PackageUniverse

logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            rich_tracebacks=True,
            tracebacks_suppress=[httpx],
        )
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)

__all__ = [
    "ConfigError",
    "ErrorKind",
    "Goal",
    "GoalEngine",
    "GoalError",
    "GoalState",
    "InstalledDatabase",
    "InstalledPackages",
    "KeyImport",
    "LoadError",
    "ModuleError",
    "ModuleIndex",
    "ModuleSpec",
    "PackageUniverse",
    "PkgResolveError",
    "Problem",
    "PublicKey",
    "RepositoryCache",
    "SyncError",
    "TrustError",
    "TrustStore",
]
