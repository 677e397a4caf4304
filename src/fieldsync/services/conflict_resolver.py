"""
Conflict resolver.

Compares the outcome a not-yet-confirmed local mutation intends against the
authoritative copy of the same equipment unit. When the remote copy moved on
(newer version marker) to a different status/job/location, a ConflictRecord
is opened, "conflict detected" is published, and every further mutation of
that unit is refused until an operator picks a side. Resolution is always
explicit; there is no last-write-wins.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from fieldsync.core.exceptions import Conflicted, StaleVersion, ValidationFailed
from fieldsync.core.metrics import track_conflict
from fieldsync.db.enums import (
    ConflictKind,
    ConflictResolutionState,
    EquipmentStatus,
    HistoryAction,
    ResolutionChoice,
)
from fieldsync.db.models import EQUIPMENT_TABLE, HISTORY_TABLE, new_id, utc_now
from fieldsync.schemas.conflict import ConflictRecord
from fieldsync.schemas.equipment import EquipmentSnapshot
from fieldsync.schemas.operations import QueuedOperation, RowOperation, TransactionResult
from fieldsync.services.event_bus import EventBus, EventType
from fieldsync.services.transactional_writer import TransactionalWriter

logger = logging.getLogger(__name__)

ResolutionHook = Callable[[ConflictRecord, EquipmentSnapshot], Awaitable[None]]
ResolutionWriter = Callable[
    [ConflictRecord, EquipmentSnapshot, Sequence[RowOperation]], Awaitable[TransactionResult]
]


@dataclass
class LocalMutation:
    """An unconfirmed local change: the version it was based on and its intended outcome."""

    equipment_id: str
    base_version: int
    intended: EquipmentSnapshot
    recorded_at: datetime = field(default_factory=utc_now)


def find_divergence(local: EquipmentSnapshot, remote: EquipmentSnapshot) -> Optional[ConflictKind]:
    """What differs between the intended local state and the remote state, if anything."""
    if local.status == EquipmentStatus.DEPLOYED and remote.status == EquipmentStatus.DEPLOYED:
        if local.job_id != remote.job_id:
            return ConflictKind.ALLOCATION_CONFLICT
        return None
    if local.status != remote.status:
        if EquipmentStatus.DEPLOYED in (local.status, remote.status):
            return ConflictKind.ALLOCATION_CONFLICT
        return ConflictKind.STATUS_MISMATCH
    if local.location_id != remote.location_id:
        return ConflictKind.LOCATION_MISMATCH
    return None


class ConflictResolver:
    """Detects and resolves local/remote divergence per equipment unit."""

    def __init__(self, writer: TransactionalWriter, event_bus: EventBus):
        self.writer = writer
        self.event_bus = event_bus
        self._conflicts: Dict[str, ConflictRecord] = {}
        self._local: Dict[str, LocalMutation] = {}
        self._resolution_hooks: List[ResolutionHook] = []
        self._resolution_writer: Optional[ResolutionWriter] = None

    # ------------------------------------------------------------------
    # Local mutation tracking
    # ------------------------------------------------------------------

    def track_local_mutation(self, equipment_id: str, base_version: int, intended: EquipmentSnapshot) -> None:
        """Record (or replace) the unconfirmed local change for a unit."""
        self._local[equipment_id] = LocalMutation(equipment_id, base_version, intended)

    def clear_local_mutation(self, equipment_id: str) -> None:
        self._local.pop(equipment_id, None)

    def get_local_mutation(self, equipment_id: str) -> Optional[LocalMutation]:
        return self._local.get(equipment_id)

    # ------------------------------------------------------------------
    # Conflict state
    # ------------------------------------------------------------------

    def is_blocked(self, equipment_id: str) -> bool:
        return equipment_id in self._conflicts

    def ensure_not_conflicted(self, equipment_id: str) -> None:
        if equipment_id in self._conflicts:
            raise Conflicted(equipment_id)

    def get_conflict(self, equipment_id: str) -> Optional[ConflictRecord]:
        return self._conflicts.get(equipment_id)

    def list_conflicts(self) -> List[ConflictRecord]:
        return sorted(self._conflicts.values(), key=lambda c: c.detected_at)

    def add_resolution_hook(self, hook: ResolutionHook) -> None:
        """Register a coroutine awaited after a resolution is written, before it is announced."""
        self._resolution_hooks.append(hook)

    def set_resolution_writer(self, writer: Optional[ResolutionWriter]) -> None:
        """
        Route the resolution write through ``writer``, which may add rows to
        the same transaction. Without one the operations are applied as they are.
        """
        self._resolution_writer = writer

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def evaluate(
        self,
        equipment_id: str,
        base_version: int,
        intended: EquipmentSnapshot,
        remote: EquipmentSnapshot,
    ) -> Optional[ConflictRecord]:
        """
        Open a conflict if ``remote`` is newer than ``base_version`` and
        disagrees with ``intended``. Returns the open conflict, if any.
        """
        existing = self._conflicts.get(equipment_id)
        if existing is not None:
            return existing

        if remote.version <= base_version:
            return None

        kind = find_divergence(intended, remote)
        if kind is None:
            logger.debug(
                f"Remote copy of {equipment_id} is newer (v{remote.version} > v{base_version}) "
                f"but already matches the local intent"
            )
            return None

        record = ConflictRecord(
            equipment_id=equipment_id,
            kind=kind,
            local_snapshot=intended,
            remote_snapshot=remote,
            base_version=base_version,
        )
        self._conflicts[equipment_id] = record
        track_conflict("detected", kind.value)
        logger.warning(
            f"Conflict on {equipment_id} ({kind.value}): local intends "
            f"{intended.status.value}/{intended.job_id}, remote v{remote.version} is "
            f"{remote.status.value}/{remote.job_id}"
        )
        self.event_bus.publish(
            EventType.CONFLICT_DETECTED,
            {"equipment_id": equipment_id, "kind": kind.value, "conflict": record},
        )
        return record

    async def _fetch_remote(self, equipment_id: str) -> Optional[EquipmentSnapshot]:
        row = await self.writer.fetch_one(EQUIPMENT_TABLE, equipment_id)
        return EquipmentSnapshot.from_row(row) if row else None

    async def check(
        self, equipment_id: str, remote: Optional[EquipmentSnapshot] = None
    ) -> Optional[ConflictRecord]:
        """
        Compare a remote read against the unit's unconfirmed local change.

        Fetches the remote copy when none is given. Returns the open conflict,
        or None when there is no local change or no divergence.
        """
        existing = self._conflicts.get(equipment_id)
        if existing is not None:
            return existing

        local = self._local.get(equipment_id)
        if local is None:
            return None

        if remote is None:
            remote = await self._fetch_remote(equipment_id)
            if remote is None:
                return None

        return self.evaluate(equipment_id, local.base_version, local.intended, remote)

    async def guard(self, op: QueuedOperation) -> bool:
        """
        Sync queue delivery guard: may this queued operation be written?

        Equipment mutations are checked against the current remote copy;
        other tables always pass.
        """
        if op.table != EQUIPMENT_TABLE:
            return True
        if op.target_id in self._conflicts:
            return False

        intended = op.context.get("intended")
        if op.base_version is None or intended is None:
            return True

        remote = await self._fetch_remote(op.target_id)
        if remote is None:
            return True

        record = self.evaluate(
            op.target_id, op.base_version, EquipmentSnapshot.model_validate(intended), remote
        )
        return record is None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self, equipment_id: str, choice: Union[ResolutionChoice, str]
    ) -> ConflictRecord:
        """
        Resolve an open conflict by writing the chosen side.

        Raises:
            ValidationFailed: no open conflict, or an unknown choice
            PersistenceUnavailable / PersistenceFailed: the write failed; the
                conflict stays open
            StaleVersion: the remote copy changed again; the conflict stays
                open carrying the fresh remote snapshot
        """
        record = self._conflicts.get(equipment_id)
        if record is None:
            raise ValidationFailed(f"No open conflict for equipment {equipment_id}")
        try:
            choice = ResolutionChoice(choice)
        except ValueError:
            raise ValidationFailed(f"Unknown resolution choice: {choice!r}") from None

        remote = record.remote_snapshot
        chosen = record.local_snapshot if choice == ResolutionChoice.LOCAL else remote

        operations = [
            RowOperation.update(
                EQUIPMENT_TABLE,
                equipment_id,
                chosen.to_row(),
                previous={**remote.to_row(), "version": remote.version},
                expected_version=remote.version,
            ),
            RowOperation.create(
                HISTORY_TABLE,
                new_id(),
                {
                    "equipment_id": equipment_id,
                    "action": HistoryAction.CONFLICT_RESOLVED.value,
                    "from_status": remote.status.value,
                    "to_status": chosen.status.value,
                    "job_id": chosen.job_id,
                    "notes": f"Conflict ({record.kind.value}) resolved with {choice.value} copy",
                    "timestamp": utc_now().isoformat(),
                },
            ),
        ]
        if self._resolution_writer is not None:
            result = await self._resolution_writer(record, chosen, operations)
        else:
            result = await self.writer.apply(operations)
        if isinstance(result.error, StaleVersion):
            # The remote copy moved on again; show the operator the new one
            fresh = await self._fetch_remote(equipment_id)
            if fresh is not None:
                self._conflicts[equipment_id] = record.model_copy(update={"remote_snapshot": fresh})
            logger.warning(f"Resolution of {equipment_id} was based on v{remote.version}; conflict stays open")
        result.raise_for_error()

        resolved = chosen.model_copy(update={"version": remote.version + 1, "updated_at": utc_now()})
        state = (
            ConflictResolutionState.RESOLVED_LOCAL
            if choice == ResolutionChoice.LOCAL
            else ConflictResolutionState.RESOLVED_REMOTE
        )
        resolved_record = record.model_copy(update={"resolution_state": state})

        del self._conflicts[equipment_id]
        if choice == ResolutionChoice.REMOTE:
            self._local.pop(equipment_id, None)

        for hook in self._resolution_hooks:
            await hook(resolved_record, resolved)

        track_conflict("resolved", record.kind.value)
        logger.info(f"Conflict on {equipment_id} resolved with {choice.value} copy")
        self.event_bus.publish(
            EventType.CONFLICT_RESOLVED,
            {
                "equipment_id": equipment_id,
                "choice": choice.value,
                "conflict": resolved_record,
                "snapshot": resolved,
            },
        )
        return resolved_record
