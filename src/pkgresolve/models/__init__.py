"""Expose data models."""

from .advisory import Advisory, AdvisoryKind, AdvisoryReference
from .module import ModuleStream
from .package import SYSTEM_REPO_ID, PackageRecord
from .repository import STATE_TRANSITIONS, CacheStamp, RepoConfig, RepoHandle, RepositoryState
from .transaction import Action, GoalJob, JobKind, ModuleChange, Reason, Transaction, TransactionPackage

__all__ = [
    "Action",
    "Advisory",
    "AdvisoryKind",
    "AdvisoryReference",
    "CacheStamp",
    "GoalJob",
    "JobKind",
    "ModuleChange",
    "ModuleStream",
    "PackageRecord",
    "Reason",
    "RepoConfig",
    "RepoHandle",
    "RepositoryState",
    "STATE_TRANSITIONS",
    "SYSTEM_REPO_ID",
    "Transaction",
    "TransactionPackage",
]
