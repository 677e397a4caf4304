"""
Error taxonomy for allocation, persistence and synchronization.

Logical errors (validation, invalid transitions, allocation mismatches) are
surfaced to the caller and never retried. ``PersistenceUnavailable`` is
transient and routed to the sync queue. ``Conflicted`` blocks one equipment
unit until a human picks a side. ``Abandoned`` marks a queued operation that
exhausted its retries.
"""

from typing import Optional


class SyncCoreError(Exception):
    """Base exception for the equipment sync core."""

    pass


class AllocationError(SyncCoreError):
    """Base exception for allocation and status transition failures."""

    pass


class ValidationFailed(AllocationError):
    """Raised on bad input, e.g. red-tagging without a reason."""

    pass


class EquipmentNotFound(AllocationError):
    """Raised when the equipment unit does not exist."""

    def __init__(self, equipment_id: str):
        self.equipment_id = equipment_id
        super().__init__(f"Equipment {equipment_id} not found")


class InvalidTransition(AllocationError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, from_status: str, to_status: str, reason: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Invalid status transition {from_status} -> {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class AlreadyAllocated(AllocationError):
    """Raised when equipment is already deployed to a different job."""

    def __init__(self, equipment_id: str, current_job_id: Optional[str]):
        self.equipment_id = equipment_id
        self.current_job_id = current_job_id
        super().__init__(f"Equipment {equipment_id} is already allocated to job {current_job_id}")


class NotAllocatedToJob(AllocationError):
    """Raised when deallocating from a job the equipment is not bound to."""

    def __init__(self, equipment_id: str, job_id: str, current_job_id: Optional[str] = None):
        self.equipment_id = equipment_id
        self.job_id = job_id
        self.current_job_id = current_job_id
        super().__init__(f"Equipment {equipment_id} is not allocated to job {job_id}")


class Conflicted(AllocationError):
    """Raised when the equipment unit has an unresolved conflict."""

    def __init__(self, equipment_id: str):
        self.equipment_id = equipment_id
        super().__init__(f"Equipment {equipment_id} has an unresolved conflict")


class PersistenceUnavailable(SyncCoreError):
    """Raised when the store cannot be reached or a write times out."""

    pass


class PersistenceFailed(SyncCoreError):
    """Raised when the store rejects a write for a non-transient reason."""

    pass


class StaleVersion(PersistenceFailed):
    """Raised when a conditional update found the row at another version."""

    def __init__(self, label: str, expected_version: int):
        self.label = label
        self.expected_version = expected_version
        super().__init__(f"{label} expected version {expected_version}; the row changed underneath")


class Abandoned(SyncCoreError):
    """Raised when a queued operation exhausted its retries."""

    def __init__(self, operation_id: str, reason: Optional[str] = None):
        self.operation_id = operation_id
        message = f"Queued operation {operation_id} abandoned"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
