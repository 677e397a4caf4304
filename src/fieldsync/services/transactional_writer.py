"""
Transactional writer: the only caller of the row store.

Applies an ordered list of row operations so that either all of them are
durably visible or none are. Stores with atomic batches get one batch call;
for stores without multi-statement atomicity the writer applies operations
one at a time and, on a mid-sequence failure, reverses the applied ones in
reverse order before reporting the first error.

A call that does not finish within the write timeout counts as a
connectivity failure (PersistenceUnavailable).
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from fieldsync.core.config import settings
from fieldsync.core.decorators import DatabaseErrorHandler, log_database_operation
from fieldsync.core.exceptions import PersistenceFailed, PersistenceUnavailable, StaleVersion
from fieldsync.core.metrics import track_compensation, track_transaction
from fieldsync.crud.row_store import (
    BoundStatement,
    MissingRowError,
    RowStore,
    StatementResult,
    VersionMismatchError,
)
from fieldsync.crud.statements import build_statement, inverse_operation, select_by_id, select_where
from fieldsync.db.enums import OperationKind
from fieldsync.schemas.operations import RowOperation, TransactionResult

logger = logging.getLogger(__name__)

STORE_ERRORS = (PersistenceUnavailable, PersistenceFailed)


class TransactionalWriter:
    """All-or-nothing writes over a row store."""

    def __init__(self, store: RowStore, timeout_seconds: Optional[float] = None):
        self.store = store
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.allocation.write_timeout_seconds
        )

    async def _call(self, awaitable, operation: str) -> Any:
        """Run one store call with the write timeout and translate its errors."""
        try:
            return await asyncio.wait_for(awaitable, self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise PersistenceUnavailable(
                f"{operation} did not complete within {self.timeout_seconds}s"
            ) from e
        except VersionMismatchError as e:
            raise StaleVersion(e.label, e.expected_version) from e
        except MissingRowError as e:
            raise PersistenceFailed(str(e)) from e
        except DatabaseErrorHandler.DATABASE_EXCEPTIONS as e:
            raise DatabaseErrorHandler.translate(e, operation) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_one(self, table: str, target_id: str) -> Optional[Dict[str, Any]]:
        """Read one row by id, or None when it does not exist."""
        result: StatementResult = await self._call(
            self.store.execute(select_by_id(table, target_id)), f"fetch {table}/{target_id}"
        )
        return result.rows[0] if result.rows else None

    async def fetch_all(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        """Read every row matching equality filters."""
        result: StatementResult = await self._call(
            self.store.execute(select_where(table, filters)), f"fetch {table}"
        )
        return result.rows

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @log_database_operation("transaction", level="debug")
    async def apply(self, operations: Sequence[RowOperation]) -> TransactionResult:
        """
        Apply ``operations`` as one unit.

        Returns:
            TransactionResult carrying the first error on failure. Errors are
            PersistenceUnavailable (transient) or PersistenceFailed.
        """
        ops = list(operations)
        if not ops:
            return TransactionResult(success=True)

        start = time.monotonic()
        try:
            statements = [build_statement(op) for op in ops]
        except ValueError as e:
            result = TransactionResult(success=False, error=PersistenceFailed(f"Invalid operation: {e}"))
        else:
            if self.store.supports_atomic_batch:
                result = await self._apply_atomic(ops, statements)
            else:
                result = await self._apply_compensating(ops, statements)

        if result.success:
            outcome = "committed"
        elif isinstance(result.error, PersistenceUnavailable):
            outcome = "unavailable"
        elif result.rolled_back is not None:
            outcome = "rolled_back"
        else:
            outcome = "failed"
        track_transaction(outcome, time.monotonic() - start)

        if not result.success:
            logger.warning(
                f"Transaction of {len(ops)} operations failed ({outcome}): {result.error}"
            )
        return result

    async def _apply_atomic(
        self, ops: List[RowOperation], statements: List[BoundStatement]
    ) -> TransactionResult:
        try:
            results = await self._call(self.store.batch(statements), f"transaction of {len(ops)} operations")
        except STORE_ERRORS as e:
            return TransactionResult(success=False, applied=0, error=e)
        return TransactionResult(success=True, applied=len(ops), rows=[r.rows for r in results])

    async def _apply_compensating(
        self, ops: List[RowOperation], statements: List[BoundStatement]
    ) -> TransactionResult:
        applied: List[Tuple[RowOperation, Optional[Dict[str, Any]]]] = []
        rows = []
        try:
            for op, statement in zip(ops, statements):
                before = op.previous
                if before is None and op.kind != OperationKind.CREATE:
                    before = await self.fetch_one(op.table, op.target_id)
                result = await self._call(self.store.execute(statement), op.describe())
                applied.append((op, before))
                rows.append(result.rows)
        except STORE_ERRORS as e:
            rolled_back = await self._compensate(applied)
            return TransactionResult(success=False, applied=len(applied), error=e, rolled_back=rolled_back)
        except asyncio.CancelledError:
            # A cancelled caller must not leave a partial write behind
            await asyncio.shield(self._compensate(applied))
            raise
        return TransactionResult(success=True, applied=len(applied), rows=rows)

    async def _compensate(self, applied: List[Tuple[RowOperation, Optional[Dict[str, Any]]]]) -> Optional[bool]:
        """Reverse applied operations in reverse order. Returns None if nothing was applied."""
        if not applied:
            return None

        ok = True
        for op, before in reversed(applied):
            inverse = inverse_operation(op, before)
            if inverse is None:
                continue
            try:
                await self._call(self.store.execute(build_statement(inverse)), f"compensate {op.describe()}")
            except STORE_ERRORS as e:
                ok = False
                logger.error(f"Compensating rollback of {op.describe()} failed: {e}")

        track_compensation(ok)
        if ok:
            logger.info(f"Compensating rollback reversed {len(applied)} operations")
        else:
            logger.error("Compensating rollback incomplete; store may disagree with itself until resynced")
        return ok

    # ------------------------------------------------------------------
    # Single-table helpers
    # ------------------------------------------------------------------

    async def batch_insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> TransactionResult:
        """Insert rows (each carrying its ``id``) as one unit."""
        ops = []
        for row in rows:
            payload = dict(row)
            target_id = payload.pop("id", None)
            if not target_id:
                return TransactionResult(success=False, error=PersistenceFailed(f"Row for {table} has no id"))
            ops.append(RowOperation.create(table, target_id, payload))
        return await self.apply(ops)

    async def batch_update(
        self, table: str, updates: Sequence[Tuple[str, Mapping[str, Any]]]
    ) -> TransactionResult:
        """Apply ``(id, changes)`` updates as one unit."""
        return await self.apply([RowOperation.update(table, target_id, dict(data)) for target_id, data in updates])

    async def batch_delete(self, table: str, ids: Sequence[str]) -> TransactionResult:
        """Delete rows by id as one unit."""
        return await self.apply([RowOperation.delete(table, target_id) for target_id in ids])
