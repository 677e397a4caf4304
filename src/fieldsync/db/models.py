"""
Database models for the equipment sync core.

Store tables (authoritative, remote):
- storage_locations, jobs, individual_equipment, equipment_history,
  equipment_usage_sessions

Local tables (durable client-side state):
- sync_queue
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlmodel import Field, SQLModel

from fieldsync.db.enums import EquipmentStatus, UsageSessionType


def utc_now() -> datetime:
    """
    Get current time in UTC (timezone-naive) for database storage.

    All times are stored in UTC without timezone info; conversion to a
    user's timezone is a display concern.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class TableModel(SQLModel):
    """Base table model with common functionality."""

    pass


class StorageLocation(TableModel, table=True):
    """Storage yard or shop where available equipment is kept."""

    __tablename__ = "storage_locations"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    name: str = Field(sa_column=Column(String(200), nullable=False, unique=True))
    is_default: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
        description="Designated default storage location for returns",
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime, nullable=False, default=utc_now),
    )


class Job(TableModel, table=True):
    """Job site that equipment is deployed to.

    ``equipment_assignment`` is the job's embedded assignment list, keyed by
    equipment id. Each entry holds the diagram node the unit is attached to
    (if any) and the allocation time.
    """

    __tablename__ = "jobs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    name: str = Field(sa_column=Column(String(200), nullable=False))
    equipment_assignment: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False, default=dict),
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime, nullable=False, default=utc_now),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime, nullable=False, default=utc_now),
    )


class EquipmentUnit(TableModel, table=True):
    """One physically distinct, individually tracked equipment unit.

    ``status``, ``job_id`` and ``location_id`` change only together through a
    status transition. ``version`` is bumped by the store on every update and
    is the marker used for conflict detection.
    """

    __tablename__ = "individual_equipment"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    equipment_code: str = Field(
        sa_column=Column(String(100), nullable=False, unique=True),
        description="Human-facing code, e.g. SS-0042",
    )
    type_id: str = Field(sa_column=Column(String(64), nullable=False))
    status: str = Field(
        default=EquipmentStatus.AVAILABLE.value,
        sa_column=Column(String(20), nullable=False, index=True, default=EquipmentStatus.AVAILABLE.value),
    )
    location_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True),
        description="Current storage location",
    )
    home_location_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True),
        description="Designated storage location the unit returns to",
    )
    job_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True, index=True),
    )
    notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    red_tag_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    red_tag_photo: Optional[str] = Field(default=None, sa_column=Column(String(500), nullable=True))
    version: int = Field(
        default=1,
        sa_column=Column(Integer, nullable=False, default=1),
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime, nullable=False, default=utc_now),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime, nullable=False, default=utc_now),
    )


class EquipmentHistory(TableModel, table=True):
    """Append-only log of equipment status changes."""

    __tablename__ = "equipment_history"
    __table_args__ = (
        Index("ix_equipment_history_equipment_ts", "equipment_id", "timestamp"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    equipment_id: str = Field(sa_column=Column(String(64), nullable=False))
    action: str = Field(sa_column=Column(String(30), nullable=False))
    from_status: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))
    to_status: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))
    job_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    timestamp: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime, nullable=False, default=utc_now),
    )


class EquipmentUsageSession(TableModel, table=True):
    """Time a unit spent on one job.

    A session opens when the unit is deployed and closes when it is returned,
    transferred or taken out of service. At most one session per unit is open
    (``ended_at`` is null).
    """

    __tablename__ = "equipment_usage_sessions"
    __table_args__ = (
        Index("ix_equipment_usage_sessions_equipment_open", "equipment_id", "ended_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    equipment_id: str = Field(sa_column=Column(String(64), nullable=False))
    job_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    session_type: str = Field(
        default=UsageSessionType.DEPLOYMENT.value,
        sa_column=Column(String(20), nullable=False, default=UsageSessionType.DEPLOYMENT.value),
    )
    started_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime, nullable=False, default=utc_now),
    )
    ended_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    total_hours: float = Field(
        default=0.0,
        sa_column=Column(Float, nullable=False, default=0.0),
        description="Hours on the job, rounded to one decimal when the session closes",
    )
    notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    end_notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))


class SyncQueueEntry(TableModel, table=True):
    """Durable row backing one queued operation.

    Lives in the local queue database, not in the authoritative store.
    ``sequence`` preserves enqueue order across restarts.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_target_sequence", "target_id", "sequence"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    sequence: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    table_name: str = Field(sa_column=Column(String(64), nullable=False))
    kind: str = Field(sa_column=Column(String(10), nullable=False))
    target_id: str = Field(sa_column=Column(String(64), nullable=False))
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    companions: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    context: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    base_version: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    state: str = Field(sa_column=Column(String(20), nullable=False))
    retry_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    enqueued_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime, nullable=False, default=utc_now),
    )


STORE_TABLES = [
    StorageLocation.__table__,
    Job.__table__,
    EquipmentUnit.__table__,
    EquipmentHistory.__table__,
    EquipmentUsageSession.__table__,
]

QUEUE_TABLES = [SyncQueueEntry.__table__]

# Table name -> model, for row operations addressed by table name
TABLE_MODELS = {
    StorageLocation.__tablename__: StorageLocation,
    Job.__tablename__: Job,
    EquipmentUnit.__tablename__: EquipmentUnit,
    EquipmentHistory.__tablename__: EquipmentHistory,
    EquipmentUsageSession.__tablename__: EquipmentUsageSession,
}

# Tables whose rows carry an optimistic-concurrency version column
VERSIONED_TABLES = frozenset({EquipmentUnit.__tablename__})

EQUIPMENT_TABLE = EquipmentUnit.__tablename__
JOB_TABLE = Job.__tablename__
HISTORY_TABLE = EquipmentHistory.__tablename__
USAGE_TABLE = EquipmentUsageSession.__tablename__
