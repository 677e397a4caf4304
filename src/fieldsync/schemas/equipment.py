"""
Equipment snapshots and allocation records.

Snapshots are immutable copies of an equipment row; callers receive
snapshots and never the engine's own state.
"""

from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from fieldsync.db.enums import AllocationState, EquipmentStatus, UsageSessionType
from fieldsync.db.models import utc_now


class EquipmentSnapshot(BaseModel):
    """Point-in-time copy of one equipment unit."""

    model_config = ConfigDict(frozen=True, from_attributes=True, use_enum_values=False)

    id: str
    equipment_code: str
    type_id: str
    status: EquipmentStatus = EquipmentStatus.AVAILABLE
    location_id: Optional[str] = None
    home_location_id: Optional[str] = None
    job_id: Optional[str] = None
    notes: Optional[str] = None
    red_tag_reason: Optional[str] = None
    red_tag_photo: Optional[str] = None
    version: int = 1
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EquipmentSnapshot":
        """Build a snapshot from a store row mapping."""
        return cls.model_validate(dict(row))

    def allocation_fields(self) -> Dict[str, Any]:
        """The status/job/location triple that changes only through transitions."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "location_id": self.location_id,
        }

    def to_row(self) -> Dict[str, Any]:
        """Mutable columns as a JSON-friendly row payload (no id, no version)."""
        return {
            "equipment_code": self.equipment_code,
            "type_id": self.type_id,
            "status": self.status.value,
            "location_id": self.location_id,
            "home_location_id": self.home_location_id,
            "job_id": self.job_id,
            "notes": self.notes,
            "red_tag_reason": self.red_tag_reason,
            "red_tag_photo": self.red_tag_photo,
        }

    def is_deployed(self) -> bool:
        return self.status == EquipmentStatus.DEPLOYED


class AllocationRecord(BaseModel):
    """Binding of one equipment unit to a job (and optionally a diagram node).

    At most one record exists per equipment unit. A ``pending`` record was
    accepted optimistically and is waiting in the sync queue.
    """

    model_config = ConfigDict(frozen=True)

    equipment_id: str
    job_id: str
    node_id: Optional[str] = None
    allocated_at: datetime = Field(default_factory=utc_now)
    state: AllocationState = AllocationState.CONFIRMED
    previous_location_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.state == AllocationState.PENDING


def usage_hours(started_at: datetime, ended_at: Optional[datetime] = None) -> float:
    """Hours between two instants (now when still open), rounded to one decimal, never negative."""
    ended_at = ended_at or utc_now()
    hours = (ended_at - started_at).total_seconds() / 3600
    return max(0.0, round(hours, 1))


class UsageSession(BaseModel):
    """Time one equipment unit spent deployed to one job."""

    model_config = ConfigDict(frozen=True)

    id: str
    equipment_id: str
    job_id: str
    session_type: UsageSessionType = UsageSessionType.DEPLOYMENT
    started_at: datetime
    ended_at: Optional[datetime] = None
    total_hours: float = 0.0
    notes: Optional[str] = None
    end_notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def hours(self) -> float:
        """Recorded hours for a closed session, running hours for an open one."""
        if self.ended_at is not None:
            return self.total_hours
        return usage_hours(self.started_at)
