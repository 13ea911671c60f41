from .memory import (
    DEFAULT_CONTEXT,
    MemoryItem,
    MemoryItemDraft,
    MemoryStats,
    MigrationResult,
    SyncState,
)

__all__ = [
    "DEFAULT_CONTEXT",
    "MemoryItem",
    "MemoryItemDraft",
    "MemoryStats",
    "MigrationResult",
    "SyncState",
]
