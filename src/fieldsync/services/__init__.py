"""
Sync core services.
"""
from .allocation_service import AllocationEngine
from .conflict_resolver import ConflictResolver
from .event_bus import Event, EventBus, EventType
from .retry import RetryPolicy
from .state_machine import EquipmentStateMachine, normalize_status
from .sync_queue import SyncQueue
from .transactional_writer import TransactionalWriter

__all__ = [
    "AllocationEngine",
    "ConflictResolver",
    "EquipmentStateMachine",
    "Event",
    "EventBus",
    "EventType",
    "RetryPolicy",
    "SyncQueue",
    "TransactionalWriter",
    "normalize_status",
]
