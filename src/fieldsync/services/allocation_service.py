"""
Allocation engine.

Owns the local mirror of equipment state and allocation records and is the
only component that changes them. Every mutation follows the same path:

1. take the equipment unit's lock (and the job locks it touches),
2. plan the status transition(s) with the state machine,
3. write the equipment row, the job assignment lists, the usage sessions
   and the history entries as one transaction; a direct write only applies
   while the store row is at the version the plan was made on, otherwise the
   unit is re-read and planned once more,
4. on success adopt the new snapshot and announce it; on a connectivity
   failure queue the same write, adopt the snapshot optimistically and
   mark the allocation pending; on any other failure change nothing.

Queued writes carry per-job deltas instead of whole assignment lists; the
lists are re-read and rewritten under the job lock at delivery time.
"""

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)

from fieldsync.core.config import settings
from fieldsync.core.exceptions import (
    AllocationError,
    AlreadyAllocated,
    EquipmentNotFound,
    NotAllocatedToJob,
    PersistenceUnavailable,
    StaleVersion,
    SyncCoreError,
    ValidationFailed,
)
from fieldsync.core.locks import KeyedLock
from fieldsync.core.metrics import track_allocation, track_status_transition
from fieldsync.db.enums import AllocationState, ConflictResolutionState, EquipmentStatus, UsageSessionType
from fieldsync.db.models import EQUIPMENT_TABLE, HISTORY_TABLE, JOB_TABLE, USAGE_TABLE, new_id, utc_now
from fieldsync.schemas.conflict import ConflictRecord
from fieldsync.schemas.equipment import AllocationRecord, EquipmentSnapshot, UsageSession, usage_hours
from fieldsync.schemas.operations import QueuedOperation, RowOperation, TransactionResult
from fieldsync.schemas.results import BatchAllocationResult, BatchItemResult
from fieldsync.services.conflict_resolver import ConflictResolver
from fieldsync.services.event_bus import Event, EventBus, EventType
from fieldsync.services.state_machine import EquipmentStateMachine, Transition, normalize_status
from fieldsync.services.sync_queue import SyncQueue
from fieldsync.services.transactional_writer import TransactionalWriter

logger = logging.getLogger(__name__)

# Operations that end with the unit bound to a job
ALLOCATING_OPERATIONS = frozenset({"allocate", "transfer"})

JobDeltas = Dict[str, Dict[str, Any]]
UsageChange = Dict[str, Any]
T = TypeVar("T")


def _changed_columns(before: EquipmentSnapshot, after: EquipmentSnapshot) -> Dict[str, Any]:
    """Columns that differ, always including the status/job/location triple."""
    old, new = before.to_row(), after.to_row()
    changed = {key: value for key, value in new.items() if old.get(key) != value}
    changed.update(after.allocation_fields())
    return changed


def _history_operation(transition: Transition) -> RowOperation:
    return RowOperation.create(
        HISTORY_TABLE,
        new_id(),
        {
            "equipment_id": transition.after.id,
            "action": transition.action.value,
            "from_status": transition.from_status.value,
            "to_status": transition.to_status.value,
            "job_id": transition.job_id,
            "notes": transition.notes,
            "timestamp": utc_now().isoformat(),
        },
    )


def _add_delta(job_id: str, equipment_id: str, node_id: Optional[str], allocated_at: str) -> JobDeltas:
    return {job_id: {"add": {equipment_id: {"node_id": node_id, "allocated_at": allocated_at}}, "remove": []}}


def _remove_delta(job_id: str, equipment_id: str) -> JobDeltas:
    return {job_id: {"add": {}, "remove": [equipment_id]}}


def _usage_change(
    start_job_id: Optional[str] = None,
    close: Any = True,
    notes: Optional[str] = None,
) -> UsageChange:
    """
    Usage session bookkeeping for one mutation.

    ``close`` is True for every open session of the unit, or a list of job
    ids to close only those jobs' sessions. Times are taken now so a queued
    change keeps the moment it happened.
    """
    now = utc_now().isoformat()
    start = None
    if start_job_id:
        start = {"id": new_id(), "job_id": start_job_id, "started_at": now, "notes": notes}
    return {"close": close, "ended_at": now, "end_notes": notes, "start": start}


class AllocationEngine:
    """Allocates equipment to jobs and drives status transitions."""

    def __init__(
        self,
        writer: TransactionalWriter,
        event_bus: EventBus,
        sync_queue: SyncQueue,
        resolver: ConflictResolver,
        default_storage_location_id: Optional[str] = None,
    ):
        self.writer = writer
        self.event_bus = event_bus
        self.sync_queue = sync_queue
        self.resolver = resolver
        self.default_storage_location_id = (
            default_storage_location_id or settings.allocation.default_storage_location_id
        )

        self._units: Dict[str, EquipmentSnapshot] = {}
        self._confirmed: Dict[str, EquipmentSnapshot] = {}
        self._allocations: Dict[str, AllocationRecord] = {}
        self._confirmed_allocations: Dict[str, Optional[AllocationRecord]] = {}
        self._locks = KeyedLock()

        self.sync_queue.set_delivery_hook(self.deliver_queued)
        self.resolver.set_resolution_writer(self._write_resolution)
        self.resolver.add_resolution_hook(self._on_conflict_resolved)
        self._unsubscribers: List[Callable[[], None]] = [
            event_bus.subscribe(EventType.OPERATION_DELIVERED, self._on_operation_delivered),
            event_bus.subscribe(EventType.OPERATION_ABANDONED, self._on_operation_abandoned),
        ]

    def close(self) -> None:
        """Detach from the event bus."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_equipment(self, equipment_id: str) -> Optional[EquipmentSnapshot]:
        return self._units.get(equipment_id)

    def get_confirmed(self, equipment_id: str) -> Optional[EquipmentSnapshot]:
        """Last snapshot known to be durably written."""
        return self._confirmed.get(equipment_id)

    def list_equipment(self, status: Optional[EquipmentStatus] = None) -> List[EquipmentSnapshot]:
        units = sorted(self._units.values(), key=lambda u: u.equipment_code)
        if status is None:
            return units
        status = normalize_status(status)
        return [u for u in units if u.status == status]

    def get_allocation(self, equipment_id: str) -> Optional[AllocationRecord]:
        return self._allocations.get(equipment_id)

    def list_allocations(self, job_id: Optional[str] = None) -> List[AllocationRecord]:
        records = sorted(self._allocations.values(), key=lambda r: r.allocated_at)
        if job_id is None:
            return records
        return [r for r in records if r.job_id == job_id]

    async def list_usage_sessions(
        self,
        equipment_id: Optional[str] = None,
        job_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[UsageSession]:
        """Usage sessions from the store, oldest first."""
        filters: Dict[str, Any] = {}
        if equipment_id:
            filters["equipment_id"] = equipment_id
        if job_id:
            filters["job_id"] = job_id
        if active_only:
            filters["ended_at"] = None
        rows = await self.writer.fetch_all(USAGE_TABLE, **filters)
        return sorted((UsageSession.model_validate(row) for row in rows), key=lambda s: s.started_at)

    async def total_usage_hours(self, equipment_id: str) -> float:
        """Hours a unit spent deployed, counting an open session up to now."""
        sessions = await self.list_usage_sessions(equipment_id=equipment_id)
        return round(sum(session.hours() for session in sessions), 1)

    # ------------------------------------------------------------------
    # Mirror maintenance
    # ------------------------------------------------------------------

    def _set_allocation(self, equipment_id: str, record: Optional[AllocationRecord]) -> None:
        if record is None:
            self._allocations.pop(equipment_id, None)
        else:
            self._allocations[equipment_id] = record

    def _adopt_confirmed(self, snapshot: EquipmentSnapshot) -> None:
        """Take ``snapshot`` as both the current and the confirmed state."""
        equipment_id = snapshot.id
        self._units[equipment_id] = snapshot
        self._confirmed[equipment_id] = snapshot

        record = None
        if snapshot.is_deployed():
            existing = self._allocations.get(equipment_id)
            if existing is not None and existing.job_id == snapshot.job_id:
                record = existing.model_copy(update={"state": AllocationState.CONFIRMED})
            else:
                record = AllocationRecord(
                    equipment_id=equipment_id,
                    job_id=snapshot.job_id,
                    previous_location_id=snapshot.location_id,
                )
        self._set_allocation(equipment_id, record)
        self._confirmed_allocations[equipment_id] = record

    def _refresh_local_mutation(self, equipment_id: str) -> None:
        """Tell the resolver what the outstanding queued chain for a unit intends."""
        chain = [
            op
            for op in self.sync_queue.pending_for(equipment_id)
            if op.table == EQUIPMENT_TABLE and op.context.get("intended")
        ]
        if not chain:
            self.resolver.clear_local_mutation(equipment_id)
            return
        self.resolver.track_local_mutation(
            equipment_id,
            chain[0].base_version,
            EquipmentSnapshot.model_validate(chain[-1].context["intended"]),
        )

    async def _load_unit(self, equipment_id: str) -> EquipmentSnapshot:
        unit = self._units.get(equipment_id)
        if unit is not None:
            return unit
        row = await self.writer.fetch_one(EQUIPMENT_TABLE, equipment_id)
        if row is None:
            raise EquipmentNotFound(equipment_id)
        snapshot = EquipmentSnapshot.from_row(row)
        self._adopt_confirmed(snapshot)
        return snapshot

    def _forget_unit(self, equipment_id: str) -> None:
        self._units.pop(equipment_id, None)
        self._confirmed.pop(equipment_id, None)
        self._set_allocation(equipment_id, None)
        self._confirmed_allocations.pop(equipment_id, None)

    async def _reload_unit(self, equipment_id: str) -> None:
        """
        Replace the mirror's copy of a unit with the store's after a stale write.

        Must be called with the unit's lock held. When the store cannot be
        read the unit is dropped from the mirror so the next use re-reads it.
        """
        try:
            row = await self.writer.fetch_one(EQUIPMENT_TABLE, equipment_id)
        except PersistenceUnavailable as e:
            logger.warning(f"Could not re-read {equipment_id} after a stale write: {e}")
            self._forget_unit(equipment_id)
            return
        if row is None:
            self._forget_unit(equipment_id)
            return

        snapshot = EquipmentSnapshot.from_row(row)
        self._adopt_confirmed(snapshot)
        self.event_bus.publish(
            EventType.EQUIPMENT_CHANGED,
            {"equipment_id": equipment_id, "snapshot": snapshot, "pending": False},
        )

    async def load_equipment(self, **filters: Any) -> int:
        """Populate the mirror from the store. Returns the number of units read."""
        rows = await self.writer.fetch_all(EQUIPMENT_TABLE, **filters)
        for row in rows:
            await self.observe_remote(EquipmentSnapshot.from_row(row))
        logger.info(f"Loaded {len(rows)} equipment units into the mirror")
        return len(rows)

    async def restore_from_queue(self) -> int:
        """
        Rebuild optimistic state for units with queued changes after a restart.

        The last confirmed snapshot is read from the store when it is reachable.
        Returns the number of units restored.
        """
        restored = 0
        for op in self.sync_queue.get_queue():
            intended = op.context.get("intended")
            if op.table != EQUIPMENT_TABLE or intended is None:
                continue
            if not self.sync_queue.has_pending(op.target_id):
                continue

            equipment_id = op.target_id
            if equipment_id not in self._confirmed:
                try:
                    row = await self.writer.fetch_one(EQUIPMENT_TABLE, equipment_id)
                except PersistenceUnavailable:
                    row = None
                if row is not None:
                    self._adopt_confirmed(EquipmentSnapshot.from_row(row))
                restored += 1

            self._units[equipment_id] = EquipmentSnapshot.model_validate(intended)
            allocation = op.context.get("allocation")
            self._set_allocation(
                equipment_id, AllocationRecord.model_validate(allocation) if allocation else None
            )
            self._refresh_local_mutation(equipment_id)

        if restored:
            logger.info(f"Restored queued changes for {restored} equipment units")
        return restored

    async def refresh(self, equipment_id: str) -> Optional[ConflictRecord]:
        """Re-read one unit from the store and reconcile it with the mirror."""
        row = await self.writer.fetch_one(EQUIPMENT_TABLE, equipment_id)
        if row is None:
            raise EquipmentNotFound(equipment_id)
        return await self.observe_remote(EquipmentSnapshot.from_row(row))

    async def observe_remote(self, snapshot: EquipmentSnapshot) -> Optional[ConflictRecord]:
        """
        Reconcile a remote read (poll or push) with the mirror.

        With unconfirmed local changes for the unit the read goes to the
        conflict resolver; otherwise the mirror adopts it unless it is older
        than what the mirror already holds.

        Returns:
            The open conflict for the unit, if any
        """
        equipment_id = snapshot.id
        async with self._locks.hold(equipment_id):
            if self.resolver.is_blocked(equipment_id):
                return self.resolver.get_conflict(equipment_id)
            if self.sync_queue.has_pending(equipment_id):
                return await self.resolver.check(equipment_id, snapshot)

            current = self._units.get(equipment_id)
            if current is not None and current.version > snapshot.version:
                logger.debug(
                    f"Ignoring stale read of {equipment_id} (v{snapshot.version} < v{current.version})"
                )
                return None

            self._adopt_confirmed(snapshot)
            if current != snapshot:
                self.event_bus.publish(
                    EventType.EQUIPMENT_CHANGED,
                    {"equipment_id": equipment_id, "snapshot": snapshot, "pending": False},
                )
            return None

    # ------------------------------------------------------------------
    # Job assignment lists
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _hold_jobs(self, job_ids: Iterable[str]) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for job_id in sorted(set(job_ids)):
                await stack.enter_async_context(self._locks.hold(f"job:{job_id}"))
            yield

    async def _build_job_operations(self, deltas: JobDeltas) -> List[RowOperation]:
        """
        Read each touched job and build the update of its assignment list.

        Raises:
            ValidationFailed: a job to add equipment to does not exist
        """
        operations = []
        for job_id in sorted(deltas):
            delta = deltas[job_id]
            row = await self.writer.fetch_one(JOB_TABLE, job_id)
            if row is None:
                if delta.get("add"):
                    raise ValidationFailed(f"Job {job_id} not found")
                # Returning equipment from a deleted job leaves no list to update
                continue

            before = dict(row.get("equipment_assignment") or {})
            after = dict(before)
            for equipment_id in delta.get("remove", []):
                after.pop(equipment_id, None)
            after.update(delta.get("add", {}))
            if after == before:
                continue
            operations.append(
                RowOperation.update(
                    JOB_TABLE,
                    job_id,
                    {"equipment_assignment": after},
                    previous={"equipment_assignment": before},
                )
            )
        return operations

    async def _build_usage_operations(
        self, equipment_id: str, usage: Optional[UsageChange]
    ) -> List[RowOperation]:
        """Close the unit's open usage sessions and/or open a new one."""
        if not usage:
            return []

        operations = []
        close = usage.get("close")
        if close:
            ended_at = datetime.fromisoformat(usage["ended_at"]) if usage.get("ended_at") else utc_now()
            open_sessions = await self.writer.fetch_all(USAGE_TABLE, equipment_id=equipment_id, ended_at=None)
            for row in open_sessions:
                if close is not True and row["job_id"] not in close:
                    continue
                operations.append(
                    RowOperation.update(
                        USAGE_TABLE,
                        row["id"],
                        {
                            "ended_at": ended_at.isoformat(),
                            "total_hours": usage_hours(row["started_at"], ended_at),
                            "end_notes": usage.get("end_notes"),
                        },
                        previous={
                            "ended_at": None,
                            "total_hours": row["total_hours"],
                            "end_notes": row["end_notes"],
                        },
                    )
                )

        start = usage.get("start")
        if start:
            operations.append(
                RowOperation.create(
                    USAGE_TABLE,
                    start["id"],
                    {
                        "equipment_id": equipment_id,
                        "job_id": start["job_id"],
                        "session_type": UsageSessionType.DEPLOYMENT.value,
                        "started_at": start["started_at"],
                        "notes": start.get("notes"),
                    },
                )
            )
        return operations

    async def deliver_queued(self, op: QueuedOperation) -> TransactionResult:
        """Sync queue delivery: rebuild job list and usage updates from current rows and write."""
        deltas: JobDeltas = op.context.get("job_deltas") or {}
        async with self._hold_jobs(deltas):
            job_operations = await self._build_job_operations(deltas)
            usage_operations = await self._build_usage_operations(op.target_id, op.context.get("usage"))
            return await self.writer.apply(
                [op.operation, *job_operations, *usage_operations, *op.companions]
            )

    async def _write_resolution(
        self,
        record: ConflictRecord,
        chosen: EquipmentSnapshot,
        operations: List[RowOperation],
    ) -> TransactionResult:
        """
        Conflict resolution write: the chosen row plus the clean-up it implies.

        The unit is taken off the assignment list of whichever job the other
        side had it on, and that job's open usage session is closed, in the
        same transaction.
        """
        equipment_id = record.equipment_id
        released = sorted(
            {
                snapshot.job_id
                for snapshot in (record.local_snapshot, record.remote_snapshot)
                if snapshot.job_id and snapshot.job_id != chosen.job_id
            }
        )
        deltas: JobDeltas = {}
        for job_id in released:
            deltas.update(_remove_delta(job_id, equipment_id))

        async with self._hold_jobs(deltas):
            job_operations = await self._build_job_operations(deltas)
            usage_operations = []
            if released:
                usage_operations = await self._build_usage_operations(
                    equipment_id, _usage_change(close=released, notes="conflict resolved")
                )
            return await self.writer.apply([*operations, *job_operations, *usage_operations])

    # ------------------------------------------------------------------
    # Commit path
    # ------------------------------------------------------------------

    def _announce(self, transitions: List[Transition], final: EquipmentSnapshot, pending: bool) -> None:
        """One status event per transition, then the resulting snapshot."""
        last = len(transitions) - 1
        for index, transition in enumerate(transitions):
            snapshot = final if index == last else transition.after
            track_status_transition(transition.from_status.value, transition.to_status.value)
            self.event_bus.publish(
                EventType.STATUS_CHANGED,
                {
                    "equipment_id": final.id,
                    "previous_status": transition.from_status.value,
                    "new_status": transition.to_status.value,
                    "job_id": transition.job_id,
                    "snapshot": snapshot,
                    "pending": pending,
                },
            )
        self.event_bus.publish(
            EventType.EQUIPMENT_CHANGED,
            {"equipment_id": final.id, "snapshot": final, "pending": pending},
        )

    async def _commit(
        self,
        operation: str,
        before: EquipmentSnapshot,
        transitions: List[Transition],
        job_deltas: JobDeltas,
        allocation: Optional[AllocationRecord],
        usage: Optional[UsageChange] = None,
    ) -> Tuple[EquipmentSnapshot, bool]:
        """
        Write a planned change, or queue it when the store is unreachable.

        Must be called with the unit's lock held. The direct write only
        applies while the store row is still at ``before.version``.

        Returns:
            (resulting snapshot, whether it was durably written)

        Raises:
            StaleVersion: the store row moved on since it was read; the mirror
                now holds the store copy and nothing was written
            PersistenceFailed: the store rejected the write; nothing changed
            ValidationFailed: a target job does not exist
        """
        equipment_id = before.id
        after = transitions[-1].after
        predicted = after.model_copy(update={"version": before.version + 1, "updated_at": utc_now()})
        equipment_op = RowOperation.update(
            EQUIPMENT_TABLE,
            equipment_id,
            _changed_columns(before, after),
            previous={**before.to_row(), "version": before.version},
        )
        history_ops = [_history_operation(t) for t in transitions]

        if self.sync_queue.has_pending(equipment_id):
            # Keep per-unit order: later changes wait behind queued ones
            error: Exception = PersistenceUnavailable(f"earlier changes to {equipment_id} are still queued")
        else:
            conditional_op = equipment_op.model_copy(update={"expected_version": before.version})
            try:
                async with self._hold_jobs(job_deltas):
                    job_ops = await self._build_job_operations(job_deltas)
                    usage_ops = await self._build_usage_operations(equipment_id, usage)
                    result = await self.writer.apply([conditional_op, *job_ops, *usage_ops, *history_ops])
            except PersistenceUnavailable as e:
                result = TransactionResult(success=False, error=e)

            if result.success:
                self._units[equipment_id] = predicted
                self._confirmed[equipment_id] = predicted
                self._set_allocation(equipment_id, allocation)
                self._confirmed_allocations[equipment_id] = allocation
                track_allocation(operation, "success")
                logger.info(f"{operation} {equipment_id}: {before.status.value} -> {predicted.status.value}")
                self._announce(transitions, predicted, pending=False)
                if allocation is not None and operation in ALLOCATING_OPERATIONS:
                    self.event_bus.publish(
                        EventType.ALLOCATION_CONFIRMED,
                        {"equipment_id": equipment_id, "record": allocation, "operation_id": None},
                    )
                return predicted, True

            if isinstance(result.error, StaleVersion):
                track_allocation(operation, "stale")
                logger.info(f"{operation} {equipment_id} planned on v{before.version}, store copy moved on")
                await self._reload_unit(equipment_id)
                result.raise_for_error()

            if not isinstance(result.error, PersistenceUnavailable):
                track_allocation(operation, "failed")
                logger.error(f"{operation} {equipment_id} rejected by the store: {result.error}")
                result.raise_for_error()
            error = result.error

        pending_allocation = (
            allocation.model_copy(update={"state": AllocationState.PENDING}) if allocation else None
        )
        queued = QueuedOperation(
            operation=equipment_op,
            companions=history_ops,
            base_version=before.version,
            context={
                "operation": operation,
                "intended": predicted.model_dump(mode="json"),
                "allocation": pending_allocation.model_dump(mode="json") if pending_allocation else None,
                "job_deltas": job_deltas,
                "usage": usage,
            },
        )
        await self.sync_queue.enqueue(queued)

        self._units[equipment_id] = predicted
        self._set_allocation(equipment_id, pending_allocation)
        self._refresh_local_mutation(equipment_id)
        track_allocation(operation, "queued")
        logger.warning(f"{operation} {equipment_id} queued for later delivery: {error}")
        self._announce(transitions, predicted, pending=True)
        return predicted, False

    def _return_location(
        self,
        unit: EquipmentSnapshot,
        record: Optional[AllocationRecord],
        explicit: Optional[str],
    ) -> Optional[str]:
        """Where returned equipment goes: explicit, pre-allocation, home, then the default."""
        return (
            explicit
            or (record.previous_location_id if record else None)
            or unit.location_id
            or unit.home_location_id
            or self.default_storage_location_id
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _replan_on_stale(self, mutate: Callable[[], Awaitable[T]]) -> T:
        """
        Run a planned mutation; if the store row moved on since the mirror
        read it, plan once more against the fresh copy.
        """
        try:
            return await mutate()
        except StaleVersion:
            return await mutate()

    async def allocate(
        self,
        equipment_id: str,
        job_id: str,
        node_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AllocationRecord:
        """
        Deploy an available unit to a job and open its usage session.

        Re-allocating to the job the unit is already deployed to returns the
        existing record and changes nothing.

        Returns:
            The allocation record; ``state`` is pending when the write was queued

        Raises:
            ValidationFailed: missing ids or unknown job
            EquipmentNotFound: unknown unit
            AlreadyAllocated: deployed to a different job, here or in the store
            InvalidTransition: the unit is not available
            Conflicted: the unit has an unresolved conflict
            PersistenceFailed: the store rejected the write
        """
        if not equipment_id or not job_id:
            raise ValidationFailed("Allocation requires an equipment id and a job id")

        async def attempt() -> AllocationRecord:
            async with self._locks.hold(equipment_id):
                self.resolver.ensure_not_conflicted(equipment_id)
                unit = await self._load_unit(equipment_id)

                if unit.is_deployed():
                    if unit.job_id == job_id:
                        track_allocation("allocate", "noop")
                        return self._allocations.get(equipment_id) or AllocationRecord(
                            equipment_id=equipment_id, job_id=job_id
                        )
                    raise AlreadyAllocated(equipment_id, unit.job_id)

                transition = EquipmentStateMachine.allocate(unit, job_id, notes=notes)
                record = AllocationRecord(
                    equipment_id=equipment_id,
                    job_id=job_id,
                    node_id=node_id,
                    previous_location_id=unit.location_id,
                )
                deltas = _add_delta(job_id, equipment_id, node_id, record.allocated_at.isoformat())
                usage = _usage_change(start_job_id=job_id, notes=notes)
                await self._commit("allocate", unit, [transition], deltas, record, usage)
                return self._allocations[equipment_id]

        self.event_bus.publish(
            EventType.ALLOCATION_REQUESTED,
            {"equipment_id": equipment_id, "job_id": job_id, "node_id": node_id},
        )
        try:
            return await self._replan_on_stale(attempt)
        except AllocationError as e:
            track_allocation("allocate", "rejected")
            logger.info(f"Allocation of {equipment_id} to {job_id} rejected: {e}")
            raise

    async def deallocate(
        self,
        equipment_id: str,
        job_id: str,
        location_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EquipmentSnapshot:
        """
        Return a deployed unit from ``job_id`` to storage and close its usage session.

        The storage location is ``location_id`` when given, otherwise where
        the unit was before allocation, its home location, or the configured
        default.

        Raises:
            NotAllocatedToJob: the unit is not deployed to ``job_id``
            ValidationFailed: no storage location could be determined
            Conflicted, EquipmentNotFound, PersistenceFailed
        """

        async def attempt() -> EquipmentSnapshot:
            async with self._locks.hold(equipment_id):
                self.resolver.ensure_not_conflicted(equipment_id)
                unit = await self._load_unit(equipment_id)
                if not unit.is_deployed() or unit.job_id != job_id:
                    raise NotAllocatedToJob(equipment_id, job_id, unit.job_id)

                location = self._return_location(unit, self._allocations.get(equipment_id), location_id)
                transition = EquipmentStateMachine.release(unit, location, notes=notes)
                snapshot, _ = await self._commit(
                    "deallocate",
                    unit,
                    [transition],
                    _remove_delta(job_id, equipment_id),
                    None,
                    _usage_change(notes=notes),
                )
                return snapshot

        try:
            return await self._replan_on_stale(attempt)
        except AllocationError as e:
            track_allocation("deallocate", "rejected")
            logger.info(f"Return of {equipment_id} from {job_id} rejected: {e}")
            raise

    async def transfer(
        self,
        equipment_id: str,
        from_job_id: str,
        to_job_id: str,
        node_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AllocationRecord:
        """
        Move a deployed unit from one job to another in a single write.

        Recorded as a return followed by an allocation; the usage session on
        the old job is closed and one on the new job opened.
        """
        if not to_job_id:
            raise ValidationFailed("Transfer requires a target job id")

        async def attempt() -> AllocationRecord:
            async with self._locks.hold(equipment_id):
                self.resolver.ensure_not_conflicted(equipment_id)
                unit = await self._load_unit(equipment_id)
                if not unit.is_deployed() or unit.job_id != from_job_id:
                    raise NotAllocatedToJob(equipment_id, from_job_id, unit.job_id)

                current = self._allocations.get(equipment_id)
                if from_job_id == to_job_id:
                    track_allocation("transfer", "noop")
                    return current or AllocationRecord(equipment_id=equipment_id, job_id=to_job_id)

                location = self._return_location(unit, current, None)
                returned = EquipmentStateMachine.release(unit, location, notes=notes)
                deployed = EquipmentStateMachine.allocate(returned.after, to_job_id, notes=notes)
                record = AllocationRecord(
                    equipment_id=equipment_id,
                    job_id=to_job_id,
                    node_id=node_id,
                    previous_location_id=current.previous_location_id if current else location,
                )
                deltas = {
                    **_remove_delta(from_job_id, equipment_id),
                    **_add_delta(to_job_id, equipment_id, node_id, record.allocated_at.isoformat()),
                }
                usage = _usage_change(start_job_id=to_job_id, notes=notes)
                await self._commit("transfer", unit, [returned, deployed], deltas, record, usage)
                return self._allocations[equipment_id]

        try:
            return await self._replan_on_stale(attempt)
        except AllocationError as e:
            track_allocation("transfer", "rejected")
            logger.info(f"Transfer of {equipment_id} to {to_job_id} rejected: {e}")
            raise

    async def change_status(
        self,
        equipment_id: str,
        status,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        location_id: Optional[str] = None,
        photo: Optional[str] = None,
    ) -> EquipmentSnapshot:
        """
        Apply an administrative status change.

        A deployed unit sent to maintenance, red-tagged or retired is returned
        from its job first, ending its usage session; both steps are written
        together. Use ``allocate`` to deploy.

        Raises:
            ValidationFailed: unknown status, deploy requested, or a red tag
                without a reason
            InvalidTransition: the transition table does not allow it
            Conflicted, EquipmentNotFound, PersistenceFailed
        """

        async def attempt() -> EquipmentSnapshot:
            to_status = normalize_status(status)
            if to_status == EquipmentStatus.DEPLOYED:
                raise ValidationFailed("Use allocate() to deploy equipment to a job")

            async with self._locks.hold(equipment_id):
                self.resolver.ensure_not_conflicted(equipment_id)
                unit = await self._load_unit(equipment_id)
                if unit.status == to_status:
                    track_allocation("change_status", "noop")
                    return unit

                deltas: JobDeltas = {}
                usage = None
                location = location_id
                if unit.is_deployed():
                    location = self._return_location(unit, self._allocations.get(equipment_id), location_id)
                    deltas = _remove_delta(unit.job_id, equipment_id)
                    usage = _usage_change(notes=notes or reason)

                transitions = EquipmentStateMachine.plan(
                    unit,
                    to_status,
                    location_id=location,
                    reason=reason,
                    photo=photo,
                    notes=notes,
                )
                snapshot, _ = await self._commit("change_status", unit, transitions, deltas, None, usage)
                return snapshot

        try:
            return await self._replan_on_stale(attempt)
        except AllocationError as e:
            track_allocation("change_status", "rejected")
            logger.info(f"Status change of {equipment_id} to {status} rejected: {e}")
            raise

    async def batch_allocate(self, items: Iterable[Any]) -> BatchAllocationResult:
        """
        Allocate several units, best effort.

        Items are ``(equipment_id, job_id)`` or ``(equipment_id, job_id, node_id)``
        tuples, or mappings with those keys. Items run one after another; a
        failed item is reported and does not stop the rest.
        """
        result = BatchAllocationResult()
        for item in items:
            if isinstance(item, Mapping):
                equipment_id, job_id, node_id = item["equipment_id"], item["job_id"], item.get("node_id")
            else:
                equipment_id, job_id, *rest = item
                node_id = rest[0] if rest else None

            try:
                record = await self.allocate(equipment_id, job_id, node_id=node_id)
            except SyncCoreError as e:
                result.items.append(BatchItemResult(equipment_id, job_id, error=e))
            else:
                result.items.append(BatchItemResult(equipment_id, job_id, record=record))

        logger.info(
            f"Batch allocation: {len(result.succeeded)} succeeded, {len(result.failed)} failed"
        )
        return result

    async def return_all_for_job(self, job_id: str, location_id: Optional[str] = None) -> BatchAllocationResult:
        """
        Return every unit deployed to a job, e.g. when the job is deleted.

        A job with nothing deployed is a no-op.
        """
        equipment_ids = [eid for eid, record in self._allocations.items() if record.job_id == job_id]
        try:
            rows = await self.writer.fetch_all(EQUIPMENT_TABLE, job_id=job_id)
        except PersistenceUnavailable as e:
            logger.warning(f"Store unreachable, returning equipment for {job_id} from the mirror only: {e}")
        else:
            for row in rows:
                if row["id"] not in equipment_ids:
                    equipment_ids.append(row["id"])

        result = BatchAllocationResult()
        for equipment_id in equipment_ids:
            try:
                await self.deallocate(equipment_id, job_id, location_id=location_id)
            except SyncCoreError as e:
                result.items.append(BatchItemResult(equipment_id, job_id, error=e))
            else:
                result.items.append(BatchItemResult(equipment_id, job_id))

        if equipment_ids:
            logger.info(f"Returned {len(result.succeeded)} of {len(equipment_ids)} units from job {job_id}")
        return result

    # ------------------------------------------------------------------
    # Queue and conflict outcomes
    # ------------------------------------------------------------------

    def _on_operation_delivered(self, event: Event) -> None:
        op: QueuedOperation = event.payload["operation"]
        intended = op.context.get("intended")
        if op.table != EQUIPMENT_TABLE or intended is None:
            return

        equipment_id = op.target_id
        self._confirmed[equipment_id] = EquipmentSnapshot.model_validate(intended)
        allocation_data = op.context.get("allocation")
        confirmed_allocation = (
            AllocationRecord.model_validate(allocation_data).model_copy(
                update={"state": AllocationState.CONFIRMED}
            )
            if allocation_data
            else None
        )
        self._confirmed_allocations[equipment_id] = confirmed_allocation

        current = self._allocations.get(equipment_id)
        if not self.sync_queue.has_pending(equipment_id) and current is not None and current.is_pending:
            self._allocations[equipment_id] = current.model_copy(update={"state": AllocationState.CONFIRMED})
        self._refresh_local_mutation(equipment_id)

        if confirmed_allocation is not None and op.context.get("operation") in ALLOCATING_OPERATIONS:
            self.event_bus.publish(
                EventType.ALLOCATION_CONFIRMED,
                {"equipment_id": equipment_id, "record": confirmed_allocation, "operation_id": op.id},
            )

    def _on_operation_abandoned(self, event: Event) -> None:
        op: QueuedOperation = event.payload["operation"]
        if op.table != EQUIPMENT_TABLE or op.context.get("intended") is None:
            return

        equipment_id = op.target_id
        previous = self._units.get(equipment_id)
        confirmed = self._confirmed.get(equipment_id)
        if confirmed is not None:
            self._units[equipment_id] = confirmed
        self._set_allocation(equipment_id, self._confirmed_allocations.get(equipment_id))
        self._refresh_local_mutation(equipment_id)

        operation = op.context.get("operation", "unknown")
        track_allocation(operation, "rolled_back")
        logger.warning(f"{operation} {equipment_id} rolled back after queued op {op.id} was abandoned")
        self.event_bus.publish(
            EventType.ALLOCATION_ROLLED_BACK,
            {
                "equipment_id": equipment_id,
                "operation": operation,
                "operation_id": op.id,
                "snapshot": confirmed,
                "error": event.payload.get("error"),
            },
        )
        if confirmed is None or previous == confirmed:
            return
        if previous is not None and previous.status != confirmed.status:
            self.event_bus.publish(
                EventType.STATUS_CHANGED,
                {
                    "equipment_id": equipment_id,
                    "previous_status": previous.status.value,
                    "new_status": confirmed.status.value,
                    "job_id": confirmed.job_id,
                    "snapshot": confirmed,
                    "pending": False,
                    "reverted": True,
                },
            )
        self.event_bus.publish(
            EventType.EQUIPMENT_CHANGED,
            {"equipment_id": equipment_id, "snapshot": confirmed, "pending": False},
        )

    async def _on_conflict_resolved(self, record: ConflictRecord, resolved: EquipmentSnapshot) -> None:
        equipment_id = record.equipment_id

        if record.resolution_state == ConflictResolutionState.RESOLVED_REMOTE:
            dropped = await self.sync_queue.discard(equipment_id)
            self._adopt_confirmed(resolved)
            self.resolver.clear_local_mutation(equipment_id)
            logger.info(f"Adopted remote copy of {equipment_id}, dropped {len(dropped)} queued changes")
        else:
            chain = await self.sync_queue.rebase(equipment_id, resolved.version)
            self._confirmed[equipment_id] = resolved
            self._units[equipment_id] = resolved.model_copy(
                update={"version": resolved.version + len(chain)}
            )
            self._refresh_local_mutation(equipment_id)
            logger.info(f"Kept local copy of {equipment_id}, {len(chain)} queued changes re-based")

        self.event_bus.publish(
            EventType.EQUIPMENT_CHANGED,
            {
                "equipment_id": equipment_id,
                "snapshot": self._units[equipment_id],
                "pending": self.sync_queue.has_pending(equipment_id),
            },
        )
