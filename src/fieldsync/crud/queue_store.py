"""
Durable storage for the sync queue.

Queued operations are persisted in the local queue database after every
state change, so a restart resumes with the same backlog in the same order.
"""
import logging
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from fieldsync.core.database import create_session_factory, init_queue_schema, session_scope
from fieldsync.core.decorators import log_database_operation
from fieldsync.db.models import SyncQueueEntry
from fieldsync.schemas.operations import QueuedOperation, RowOperation

logger = logging.getLogger(__name__)


def _to_entry(op: QueuedOperation) -> SyncQueueEntry:
    data = op.model_dump(mode="json")
    primary = data["operation"]
    return SyncQueueEntry(
        id=op.id,
        sequence=op.sequence,
        table_name=op.table,
        kind=op.kind.value,
        target_id=op.target_id,
        payload={"payload": primary["payload"], "previous": primary["previous"]},
        companions=data["companions"],
        context=data["context"],
        base_version=op.base_version,
        state=op.state.value,
        retry_count=op.retry_count,
        last_error=op.last_error,
        enqueued_at=op.enqueued_at,
    )


def _from_entry(entry: SyncQueueEntry) -> QueuedOperation:
    primary = RowOperation(
        table=entry.table_name,
        kind=entry.kind,
        target_id=entry.target_id,
        payload=entry.payload.get("payload") or {},
        previous=entry.payload.get("previous"),
    )
    return QueuedOperation(
        id=entry.id,
        sequence=entry.sequence,
        operation=primary,
        companions=[RowOperation.model_validate(c) for c in entry.companions or []],
        base_version=entry.base_version,
        context=entry.context or {},
        enqueued_at=entry.enqueued_at,
        retry_count=entry.retry_count,
        state=entry.state,
        last_error=entry.last_error,
    )


class QueueStore:
    """SQLModel-backed persistence for queued operations."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions: async_sessionmaker = create_session_factory(engine)

    async def initialize(self) -> None:
        await init_queue_schema(self.engine)

    @log_database_operation("queue load", level="debug")
    async def load_all(self) -> List[QueuedOperation]:
        """Load every stored operation in enqueue order."""
        async with session_scope(self._sessions) as db:
            result = await db.execute(select(SyncQueueEntry).order_by(SyncQueueEntry.sequence))
            return [_from_entry(entry) for entry in result.scalars().all()]

    async def save(self, op: QueuedOperation) -> None:
        """Insert or update one operation."""
        async with session_scope(self._sessions) as db:
            await db.merge(_to_entry(op))

    async def delete(self, op_id: str) -> None:
        async with session_scope(self._sessions) as db:
            await db.execute(delete(SyncQueueEntry).where(SyncQueueEntry.id == op_id))

    async def dispose(self) -> None:
        await self.engine.dispose()
