"""
Row-store boundary over the authoritative database.

A row store offers ``execute`` for a single statement and ``batch`` for a
list of statements. Stores that run a batch inside one database transaction
advertise ``supports_atomic_batch``; for the others the transactional writer
applies statements one by one and compensates on failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy.engine import Result
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Executable

logger = logging.getLogger(__name__)


class MissingRowError(LookupError):
    """Raised when an update or delete matched no row."""

    def __init__(self, label: str, message: Optional[str] = None):
        self.label = label
        super().__init__(message or f"No row matched {label}")


class VersionMismatchError(MissingRowError):
    """Raised when a version-conditional update matched no row."""

    def __init__(self, label: str, expected_version: int):
        self.expected_version = expected_version
        super().__init__(label, f"No row matched {label} at version {expected_version}")


@dataclass
class BoundStatement:
    """A statement plus the checks the store applies to its result."""

    statement: Executable
    params: Optional[Dict[str, Any]] = None
    expect_row: bool = False
    label: str = ""
    expected_version: Optional[int] = None


@dataclass
class StatementResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0


class RowStore(Protocol):
    """Persistence boundary consumed by the transactional writer."""

    supports_atomic_batch: bool

    async def execute(self, statement: BoundStatement) -> StatementResult:
        ...

    async def batch(self, statements: Sequence[BoundStatement]) -> List[StatementResult]:
        ...


async def _run(conn: AsyncConnection, bound: BoundStatement) -> StatementResult:
    result: Result = await conn.execute(bound.statement, bound.params or {})
    if result.returns_rows:
        rows = [dict(row._mapping) for row in result.fetchall()]
        return StatementResult(rows=rows, rowcount=len(rows))
    rowcount = result.rowcount if result.rowcount is not None else 0
    if bound.expect_row and rowcount == 0:
        if bound.expected_version is not None:
            raise VersionMismatchError(bound.label, bound.expected_version)
        raise MissingRowError(bound.label or str(bound.statement))
    return StatementResult(rowcount=rowcount)


class SQLAlchemyRowStore:
    """Row store backed by a SQLAlchemy async engine.

    With ``atomic_batches`` (the default) a batch runs inside one database
    transaction. Turning it off models stores that only commit statement by
    statement, such as HTTP database clients without interactive transactions.
    """

    def __init__(self, engine: AsyncEngine, atomic_batches: bool = True):
        self.engine = engine
        self.supports_atomic_batch = atomic_batches

    async def execute(self, statement: BoundStatement) -> StatementResult:
        async with self.engine.begin() as conn:
            return await _run(conn, statement)

    async def batch(self, statements: Sequence[BoundStatement]) -> List[StatementResult]:
        if not self.supports_atomic_batch:
            results = []
            for statement in statements:
                results.append(await self.execute(statement))
            return results

        async with self.engine.begin() as conn:
            results = []
            for statement in statements:
                results.append(await _run(conn, statement))
            logger.debug(f"Batch of {len(statements)} statements committed")
            return results

    async def dispose(self) -> None:
        await self.engine.dispose()
