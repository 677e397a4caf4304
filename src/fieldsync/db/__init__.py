"""
Database models and enums.

Store tables are created on the authoritative engine, queue tables on the
local queue engine; the two never share a database.
"""
from .enums import (
    AllocationState,
    ConflictKind,
    ConflictResolutionState,
    EquipmentStatus,
    HistoryAction,
    OperationKind,
    QueuedOperationState,
    ResolutionChoice,
    UsageSessionType,
)
from .models import (
    EQUIPMENT_TABLE,
    HISTORY_TABLE,
    JOB_TABLE,
    QUEUE_TABLES,
    STORE_TABLES,
    TABLE_MODELS,
    USAGE_TABLE,
    VERSIONED_TABLES,
    EquipmentHistory,
    EquipmentUnit,
    EquipmentUsageSession,
    Job,
    StorageLocation,
    SyncQueueEntry,
    new_id,
    utc_now,
)

__all__ = [
    "AllocationState",
    "ConflictKind",
    "ConflictResolutionState",
    "EquipmentStatus",
    "HistoryAction",
    "OperationKind",
    "QueuedOperationState",
    "ResolutionChoice",
    "UsageSessionType",
    "EQUIPMENT_TABLE",
    "HISTORY_TABLE",
    "JOB_TABLE",
    "QUEUE_TABLES",
    "STORE_TABLES",
    "TABLE_MODELS",
    "USAGE_TABLE",
    "VERSIONED_TABLES",
    "EquipmentHistory",
    "EquipmentUnit",
    "EquipmentUsageSession",
    "Job",
    "StorageLocation",
    "SyncQueueEntry",
    "new_id",
    "utc_now",
]
