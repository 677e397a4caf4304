"""
Enums for database models and sync records.

These enums cover fixed value sets that are never modified at runtime.
Values are stored as their string form.
"""
from enum import Enum


class EquipmentStatus(str, Enum):
    """
    Lifecycle status of an individually tracked equipment unit.

    Used by EquipmentUnit.status field.
    """
    AVAILABLE = "available"
    DEPLOYED = "deployed"
    MAINTENANCE = "maintenance"
    RED_TAGGED = "red-tagged"
    RETIRED = "retired"


class OperationKind(str, Enum):
    """Row-level operation kind."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueuedOperationState(str, Enum):
    """
    Delivery state of a queued operation.

    BLOCKED operations wait for a conflict on their equipment unit to be
    resolved; ABANDONED operations exhausted their retries.
    """
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    BLOCKED = "blocked"
    ABANDONED = "abandoned"


class AllocationState(str, Enum):
    """Whether an allocation has been durably written."""
    PENDING = "pending"
    CONFIRMED = "confirmed"


class ConflictResolutionState(str, Enum):
    """Resolution state of a conflict record."""
    UNRESOLVED = "unresolved"
    RESOLVED_LOCAL = "resolved-local"
    RESOLVED_REMOTE = "resolved-remote"


class ConflictKind(str, Enum):
    """What diverged between the local intent and the remote copy."""
    STATUS_MISMATCH = "status_mismatch"
    ALLOCATION_CONFLICT = "allocation_conflict"
    LOCATION_MISMATCH = "location_mismatch"


class ResolutionChoice(str, Enum):
    """Side picked by the operator when resolving a conflict."""
    LOCAL = "local"
    REMOTE = "remote"


class HistoryAction(str, Enum):
    """Action recorded in the equipment history log."""
    ALLOCATE = "allocate"
    RETURN = "return"
    STATUS_CHANGE = "status_change"
    CONFLICT_RESOLVED = "conflict_resolved"


class UsageSessionType(str, Enum):
    """What an equipment usage session records."""
    DEPLOYMENT = "deployment"
    MAINTENANCE = "maintenance"
    TESTING = "testing"
