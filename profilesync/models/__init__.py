"""Data models for the profile sync engine."""

from profilesync.models.config import (
    AppConfig,
    LoggingConfig,
    MixpanelConfig,
    SourceConfig,
    StorageConfig,
    SyncConfig,
)
from profilesync.models.records import (
    BackfillCheckpoint,
    BackfillChunk,
    ChunkStatus,
    MergeStrategy,
    NormalizedEvent,
    NormalizedRecord,
    RunStats,
    RunStatus,
    SyncRun,
    SyncWatermark,
    TargetRecord,
)

__all__ = [
    "AppConfig",
    "MixpanelConfig",
    "StorageConfig",
    "SyncConfig",
    "SourceConfig",
    "LoggingConfig",
    "BackfillCheckpoint",
    "BackfillChunk",
    "ChunkStatus",
    "MergeStrategy",
    "NormalizedEvent",
    "NormalizedRecord",
    "RunStats",
    "RunStatus",
    "SyncRun",
    "SyncWatermark",
    "TargetRecord",
]
