"""
Durable FIFO sync queue.

Mutations that could not reach the store are persisted here and delivered
later through the transactional writer. Ordering is FIFO per target row;
different targets drain concurrently, so a failing row never holds up the
others. Transient failures are retried with exponential backoff; exhausted
or non-transient failures mark the operation abandoned and surface it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from fieldsync.core.exceptions import Abandoned, PersistenceFailed, SyncCoreError, ValidationFailed
from fieldsync.core.metrics import track_delivery_attempt, track_queue_depth
from fieldsync.crud.queue_store import QueueStore
from fieldsync.db.enums import QueuedOperationState
from fieldsync.schemas.operations import QueuedOperation, TransactionResult
from fieldsync.schemas.results import DrainReport, SyncStatus
from fieldsync.services.event_bus import EventBus, EventType
from fieldsync.services.retry import RetryPolicy
from fieldsync.services.transactional_writer import TransactionalWriter

logger = logging.getLogger(__name__)

DeliveryGuard = Callable[[QueuedOperation], Awaitable[bool]]
DeliveryHook = Callable[[QueuedOperation], Awaitable[TransactionResult]]

# States that still hold their place in a target's FIFO
OUTSTANDING = (
    QueuedOperationState.PENDING,
    QueuedOperationState.IN_FLIGHT,
    QueuedOperationState.BLOCKED,
)


class SyncQueue:
    """Persistent queue of mutations awaiting delivery."""

    def __init__(
        self,
        writer: TransactionalWriter,
        store: QueueStore,
        policy: Optional[RetryPolicy] = None,
        event_bus: Optional[EventBus] = None,
        is_online: Optional[Callable[[], bool]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.writer = writer
        self.store = store
        self.policy = policy or RetryPolicy.from_settings()
        self.event_bus = event_bus
        self._is_online = is_online or (lambda: True)
        self._sleep = sleep or asyncio.sleep
        self._guard: Optional[DeliveryGuard] = None
        self._deliver: Optional[DeliveryHook] = None
        self._ops: List[QueuedOperation] = []
        self._sequence = 0
        self._draining: set = set()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def set_guard(self, guard: Optional[DeliveryGuard]) -> None:
        """Install a pre-delivery check; an operation it rejects is marked blocked."""
        self._guard = guard

    def set_delivery_hook(self, hook: Optional[DeliveryHook]) -> None:
        """Replace the default ``writer.apply(op.all_operations())`` delivery."""
        self._deliver = hook

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Restore the backlog from the local queue database. Returns its size."""
        ops = await self.store.load_all()
        for op in ops:
            # No acknowledgement was recorded before shutdown, deliver again
            if op.state == QueuedOperationState.IN_FLIGHT:
                op.state = QueuedOperationState.PENDING
                await self.store.save(op)
        self._ops = ops
        self._sequence = max((op.sequence for op in ops), default=0)
        self._track_depth()
        if ops:
            logger.info(f"Sync queue restored {len(ops)} operations")
        return len(ops)

    async def _save(self, op: QueuedOperation) -> None:
        await self.store.save(op)

    async def _remove(self, op: QueuedOperation) -> None:
        self._ops = [o for o in self._ops if o.id != op.id]
        await self.store.delete(op.id)

    def _publish(self, event_type: EventType, payload: Dict) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event_type, payload)

    def _track_depth(self) -> None:
        counts = {state: 0 for state in QueuedOperationState}
        for op in self._ops:
            counts[op.state] += 1
        track_queue_depth(
            pending=counts[QueuedOperationState.PENDING] + counts[QueuedOperationState.IN_FLIGHT],
            blocked=counts[QueuedOperationState.BLOCKED],
            abandoned=counts[QueuedOperationState.ABANDONED],
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, op: QueuedOperation) -> QueuedOperation:
        """Persist ``op`` at the tail of its target's FIFO."""
        self._sequence += 1
        op.sequence = self._sequence
        op.state = QueuedOperationState.PENDING
        await self._save(op)
        self._ops.append(op)
        self._track_depth()

        logger.info(f"Queued {op.operation.describe()} (op {op.id}, seq {op.sequence})")
        self._publish(EventType.OPERATION_QUEUED, {"operation": op.model_copy(deep=True)})
        return op

    def get_queue(self) -> List[QueuedOperation]:
        """Copies of every queued operation, in enqueue order."""
        return [op.model_copy(deep=True) for op in self._ops]

    def pending_for(self, target_id: str) -> List[QueuedOperation]:
        """Outstanding (not abandoned) operations for one target, oldest first."""
        return [op for op in self._ops if op.target_id == target_id and op.state in OUTSTANDING]

    def has_pending(self, target_id: str) -> bool:
        return any(op.target_id == target_id and op.state in OUTSTANDING for op in self._ops)

    def status(self) -> SyncStatus:
        return SyncStatus(
            online=self._is_online(),
            pending=sum(
                1
                for op in self._ops
                if op.state in (QueuedOperationState.PENDING, QueuedOperationState.IN_FLIGHT)
            ),
            blocked=sum(1 for op in self._ops if op.state == QueuedOperationState.BLOCKED),
            abandoned=sum(1 for op in self._ops if op.state == QueuedOperationState.ABANDONED),
            draining_targets=sorted(self._draining),
        )

    def _find(self, op_id: str) -> QueuedOperation:
        for op in self._ops:
            if op.id == op_id:
                return op
        raise ValidationFailed(f"No queued operation {op_id}")

    async def abandon(self, op_id: str, reason: str = "abandoned by operator") -> QueuedOperation:
        """
        Remove an operation from the queue.

        An outstanding operation is announced as abandoned so its optimistic
        effect is reverted; an already-abandoned one is simply acknowledged.

        Raises:
            ValidationFailed: unknown id, or the operation is being delivered
        """
        op = self._find(op_id)
        if op.state == QueuedOperationState.IN_FLIGHT:
            raise ValidationFailed(f"Queued operation {op_id} is being delivered")

        was_abandoned = op.state == QueuedOperationState.ABANDONED
        dependents = [] if was_abandoned else self._later_outstanding(op)
        await self._remove(op)
        op.state = QueuedOperationState.ABANDONED
        if not was_abandoned:
            op.last_error = reason
            logger.warning(f"Operator abandoned queued op {op.id} ({op.operation.describe()})")
            self._publish(
                EventType.OPERATION_ABANDONED,
                {"operation": op.model_copy(deep=True), "error": Abandoned(op.id, reason)},
            )
        for dependent in dependents:
            await self._remove(dependent)
            dependent.state = QueuedOperationState.ABANDONED
            dependent.last_error = f"depends on abandoned operation {op.id}"
            self._publish(
                EventType.OPERATION_ABANDONED,
                {
                    "operation": dependent.model_copy(deep=True),
                    "error": Abandoned(dependent.id, dependent.last_error),
                },
            )
        self._track_depth()
        return op

    def _later_outstanding(self, op: QueuedOperation) -> List[QueuedOperation]:
        """Operations queued after ``op`` for the same target; they assumed ``op`` applied."""
        return [
            other
            for other in self._ops
            if other.target_id == op.target_id
            and other.sequence > op.sequence
            and other.state in (QueuedOperationState.PENDING, QueuedOperationState.BLOCKED)
        ]

    async def discard(self, target_id: str) -> List[QueuedOperation]:
        """Silently drop every operation for a target that is not being delivered."""
        dropped = [
            op
            for op in self._ops
            if op.target_id == target_id and op.state != QueuedOperationState.IN_FLIGHT
        ]
        for op in dropped:
            await self._remove(op)
        if dropped:
            logger.info(f"Discarded {len(dropped)} queued operations for {target_id}")
        self._track_depth()
        return dropped

    async def rebase(self, target_id: str, base_version: int) -> List[QueuedOperation]:
        """
        Re-base a target's outstanding chain on ``base_version`` and unblock it.

        The i-th operation expects the version left behind by the ones before it.
        """
        chain = self.pending_for(target_id)
        for offset, op in enumerate(chain):
            op.base_version = base_version + offset
            if op.state == QueuedOperationState.BLOCKED:
                op.state = QueuedOperationState.PENDING
            await self._save(op)
        self._track_depth()
        return chain

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def drain(self) -> DrainReport:
        """
        Attempt delivery of everything outstanding.

        Targets already being drained by an earlier call are skipped, so
        overlapping drains never deliver the same operation twice.
        """
        report = DrainReport()
        if not self._is_online():
            logger.debug("Sync queue drain skipped: offline")
            return report

        targets: List[str] = []
        for op in self._ops:
            if op.state in OUTSTANDING and op.target_id not in targets:
                targets.append(op.target_id)

        runnable = []
        for target_id in targets:
            if target_id in self._draining:
                report.skipped_targets.append(target_id)
            else:
                runnable.append(target_id)

        if runnable:
            logger.info(f"Draining sync queue for {len(runnable)} targets")
            await asyncio.gather(*(self._drain_target(t, report) for t in runnable))

        self._track_depth()
        return report

    def _head(self, target_id: str) -> Optional[QueuedOperation]:
        for op in self._ops:
            if op.target_id == target_id and op.state in (
                QueuedOperationState.PENDING,
                QueuedOperationState.BLOCKED,
            ):
                return op
        return None

    async def _drain_target(self, target_id: str, report: DrainReport) -> None:
        self._draining.add(target_id)
        try:
            while self._is_online():
                op = self._head(target_id)
                if op is None:
                    return

                if self._guard is not None:
                    try:
                        allowed = await self._guard(op)
                    except SyncCoreError as e:
                        if not await self._handle_failure(op, e, report):
                            return
                        continue
                    if not allowed:
                        await self._mark_blocked(op, report)
                        return

                op.state = QueuedOperationState.IN_FLIGHT
                await self._save(op)
                result = await self._attempt(op)

                if result.success:
                    await self._remove(op)
                    report.delivered.append(op.id)
                    track_delivery_attempt("delivered")
                    logger.info(f"Delivered queued op {op.id} ({op.operation.describe()})")
                    self._publish(EventType.OPERATION_DELIVERED, {"operation": op.model_copy(deep=True)})
                    continue

                if not await self._handle_failure(op, result.error, report):
                    return
        finally:
            self._draining.discard(target_id)

    async def _attempt(self, op: QueuedOperation) -> TransactionResult:
        try:
            if self._deliver is not None:
                return await self._deliver(op)
            return await self.writer.apply(op.all_operations())
        except SyncCoreError as e:
            return TransactionResult(success=False, error=e)
        except Exception as e:
            # The op must leave IN_FLIGHT whatever the hook raised
            logger.exception(f"Unexpected error delivering queued op {op.id}")
            return TransactionResult(
                success=False, error=PersistenceFailed(f"Delivery of queued op {op.id} failed: {e!r}")
            )

    async def _handle_failure(self, op: QueuedOperation, error: Optional[Exception], report: DrainReport) -> bool:
        """Record a failed attempt. Returns False when the target should stop for this pass."""
        error = error or PersistenceFailed("delivery failed without an error")
        op.retry_count += 1
        op.last_error = str(error)

        if not self.policy.should_retry(op.retry_count, error):
            await self._mark_abandoned(op, error, report)
            return True

        delay = self.policy.delay_for(op.retry_count)
        op.state = QueuedOperationState.PENDING
        await self._save(op)
        report.retried.append(op.id)
        track_delivery_attempt("retry")
        logger.warning(
            f"Delivery of queued op {op.id} failed (attempt {op.retry_count}), "
            f"retrying in {delay:.1f}s: {error}"
        )

        await self._sleep(delay)
        return self._is_online()

    async def _mark_blocked(self, op: QueuedOperation, report: DrainReport) -> None:
        report.blocked.append(op.id)
        if op.state == QueuedOperationState.BLOCKED:
            return
        op.state = QueuedOperationState.BLOCKED
        await self._save(op)
        track_delivery_attempt("blocked")
        logger.warning(f"Queued op {op.id} blocked by an open conflict on {op.target_id}")
        self._publish(EventType.OPERATION_BLOCKED, {"operation": op.model_copy(deep=True)})

    async def _mark_abandoned(self, op: QueuedOperation, error: Exception, report: DrainReport) -> None:
        """Abandon ``op`` and every later operation for the same target."""
        dependents = self._later_outstanding(op)
        op.state = QueuedOperationState.ABANDONED
        await self._save(op)
        report.abandoned.append(op.id)
        track_delivery_attempt("abandoned")
        logger.error(
            f"Abandoned queued op {op.id} ({op.operation.describe()}) after "
            f"{op.retry_count} failed attempts: {error}"
        )
        self._publish(
            EventType.OPERATION_ABANDONED,
            {"operation": op.model_copy(deep=True), "error": Abandoned(op.id, str(error))},
        )

        for dependent in dependents:
            dependent.state = QueuedOperationState.ABANDONED
            dependent.last_error = f"depends on abandoned operation {op.id}"
            await self._save(dependent)
            report.abandoned.append(dependent.id)
            self._publish(
                EventType.OPERATION_ABANDONED,
                {
                    "operation": dependent.model_copy(deep=True),
                    "error": Abandoned(dependent.id, dependent.last_error),
                },
            )
