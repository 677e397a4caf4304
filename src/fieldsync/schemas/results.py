"""
Result objects for batch allocation and queue draining.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from fieldsync.core.exceptions import SyncCoreError
from fieldsync.schemas.equipment import AllocationRecord


@dataclass
class BatchItemResult:
    """Outcome of one item in a batch allocation."""

    equipment_id: str
    job_id: str
    record: Optional[AllocationRecord] = None
    error: Optional[SyncCoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchAllocationResult:
    """Per-item outcomes of a best-effort batch."""

    items: List[BatchItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[BatchItemResult]:
        return [item for item in self.items if item.ok]

    @property
    def failed(self) -> List[BatchItemResult]:
        return [item for item in self.items if not item.ok]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


@dataclass
class DrainReport:
    """What one drain pass did."""

    delivered: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)
    skipped_targets: List[str] = field(default_factory=list)


@dataclass
class SyncStatus:
    """Queue summary for a status indicator."""

    online: bool
    pending: int
    blocked: int
    abandoned: int
    draining_targets: List[str] = field(default_factory=list)

    @property
    def is_synced(self) -> bool:
        return self.pending == 0 and self.blocked == 0
