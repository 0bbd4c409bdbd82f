"""Synchronization components for incremental profile updates.

Only the error taxonomy and result models are re-exported here; import the
components from their modules (``profilesync.sync.sync_coordinator`` and so on).
"""

from profilesync.sync.errors import (
    FatalSyncError,
    RateLimitedError,
    SyncAlreadyRunningError,
    SyncError,
    TransientSyncError,
)
from profilesync.sync.models import ChangeSet, FetchResult, InvocationResult, MergeStats

__all__ = [
    "ChangeSet",
    "FetchResult",
    "InvocationResult",
    "MergeStats",
    "SyncError",
    "TransientSyncError",
    "FatalSyncError",
    "RateLimitedError",
    "SyncAlreadyRunningError",
]
