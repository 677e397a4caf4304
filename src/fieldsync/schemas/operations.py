"""
Row-level operations, queued operations and transaction results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fieldsync.db.enums import OperationKind, QueuedOperationState
from fieldsync.db.models import new_id, utc_now


class RowOperation(BaseModel):
    """One row-level write against a store table.

    ``previous`` is the row's before-image; when present the writer uses it
    to compensate instead of reading the row back. ``expected_version`` makes
    an update of a versioned row conditional on the version it was planned
    against.
    """

    model_config = ConfigDict(frozen=True)

    table: str
    kind: OperationKind
    target_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    previous: Optional[Dict[str, Any]] = None
    expected_version: Optional[int] = None

    @classmethod
    def create(cls, table: str, target_id: str, payload: Dict[str, Any]) -> "RowOperation":
        return cls(table=table, kind=OperationKind.CREATE, target_id=target_id, payload=payload)

    @classmethod
    def update(
        cls,
        table: str,
        target_id: str,
        payload: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> "RowOperation":
        return cls(
            table=table,
            kind=OperationKind.UPDATE,
            target_id=target_id,
            payload=payload,
            previous=previous,
            expected_version=expected_version,
        )

    @classmethod
    def delete(cls, table: str, target_id: str, previous: Optional[Dict[str, Any]] = None) -> "RowOperation":
        return cls(table=table, kind=OperationKind.DELETE, target_id=target_id, previous=previous)

    def describe(self) -> str:
        return f"{self.kind.value} {self.table}/{self.target_id}"


class QueuedOperation(BaseModel):
    """A mutation waiting for durable application.

    ``operation`` is the primary row write; ``companions`` are delivered in
    the same transaction (e.g. the job assignment list and the history entry
    of an allocation). FIFO ordering is per ``target_id`` of the primary row.
    """

    id: str = Field(default_factory=new_id)
    sequence: int = 0
    operation: RowOperation
    companions: List[RowOperation] = Field(default_factory=list)
    base_version: Optional[int] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    state: QueuedOperationState = QueuedOperationState.PENDING
    last_error: Optional[str] = None

    @property
    def table(self) -> str:
        return self.operation.table

    @property
    def kind(self) -> OperationKind:
        return self.operation.kind

    @property
    def target_id(self) -> str:
        return self.operation.target_id

    @property
    def payload(self) -> Dict[str, Any]:
        return self.operation.payload

    def all_operations(self) -> List[RowOperation]:
        return [self.operation, *self.companions]


@dataclass
class TransactionResult:
    """Outcome of one transactional write.

    Attributes:
        success: True when every operation is durably visible
        applied: Number of operations applied before success or failure
        error: First error encountered, if any
        rolled_back: Whether a compensating rollback ran and fully succeeded
            (None when no compensation was needed)
        rows: Rows returned by the store per operation
    """

    success: bool
    applied: int = 0
    error: Optional[Exception] = None
    rolled_back: Optional[bool] = None
    rows: List[Any] = field(default_factory=list)

    def raise_for_error(self) -> None:
        if not self.success and self.error is not None:
            raise self.error
