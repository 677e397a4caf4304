from .conflict import ConflictRecord
from .equipment import AllocationRecord, EquipmentSnapshot, UsageSession, usage_hours
from .operations import QueuedOperation, RowOperation, TransactionResult
from .results import BatchAllocationResult, BatchItemResult, DrainReport, SyncStatus

__all__ = [
    "AllocationRecord",
    "BatchAllocationResult",
    "BatchItemResult",
    "ConflictRecord",
    "DrainReport",
    "EquipmentSnapshot",
    "QueuedOperation",
    "RowOperation",
    "SyncStatus",
    "TransactionResult",
    "UsageSession",
    "usage_hours",
]
