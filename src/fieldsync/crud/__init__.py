"""
Persistence boundary: the row store over the authoritative database and the
durable queue store over the local database.
"""
from .queue_store import QueueStore
from .row_store import (
    BoundStatement,
    MissingRowError,
    RowStore,
    SQLAlchemyRowStore,
    StatementResult,
    VersionMismatchError,
)

__all__ = [
    "BoundStatement",
    "MissingRowError",
    "QueueStore",
    "RowStore",
    "SQLAlchemyRowStore",
    "StatementResult",
    "VersionMismatchError",
]
