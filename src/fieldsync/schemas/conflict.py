"""
Conflict records.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from fieldsync.db.enums import ConflictKind, ConflictResolutionState
from fieldsync.db.models import new_id, utc_now
from fieldsync.schemas.equipment import EquipmentSnapshot


class ConflictRecord(BaseModel):
    """Divergence between a locally intended state and a newer remote state.

    Owned by the conflict resolver; everyone else receives copies.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    equipment_id: str
    kind: ConflictKind
    local_snapshot: EquipmentSnapshot
    remote_snapshot: EquipmentSnapshot
    base_version: Optional[int] = None
    detected_at: datetime = Field(default_factory=utc_now)
    resolution_state: ConflictResolutionState = ConflictResolutionState.UNRESOLVED

    @property
    def is_resolved(self) -> bool:
        return self.resolution_state != ConflictResolutionState.UNRESOLVED
