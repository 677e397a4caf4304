"""
Statement builders for row operations addressed by table name.

Payloads may come back from the JSON-backed sync queue, so datetime columns
accept ISO 8601 strings.
"""
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import DateTime, Table, delete, insert, select, update

from fieldsync.crud.row_store import BoundStatement
from fieldsync.db.enums import OperationKind
from fieldsync.db.models import TABLE_MODELS, VERSIONED_TABLES, utc_now
from fieldsync.schemas.operations import RowOperation


def get_table(table_name: str) -> Table:
    model = TABLE_MODELS.get(table_name)
    if model is None:
        raise ValueError(f"Unknown table: {table_name}")
    return model.__table__


def _coerce_values(table: Table, values: Mapping[str, Any]) -> Dict[str, Any]:
    coerced = {}
    for key, value in values.items():
        if key not in table.c:
            raise ValueError(f"Unknown column {table.name}.{key}")
        if isinstance(value, str) and isinstance(table.c[key].type, DateTime):
            value = datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
        coerced[key] = value
    return coerced


def insert_statement(table_name: str, target_id: str, payload: Mapping[str, Any]) -> BoundStatement:
    table = get_table(table_name)
    values = _coerce_values(table, payload)
    values["id"] = target_id
    return BoundStatement(
        statement=insert(table).values(**values),
        label=f"create {table_name}/{target_id}",
    )


def update_statement(
    table_name: str,
    target_id: str,
    payload: Mapping[str, Any],
    expected_version: Optional[int] = None,
) -> BoundStatement:
    """
    Build an UPDATE for one row.

    Versioned tables get ``version = version + 1`` unless the payload sets the
    version explicitly (restoring a before-image). ``updated_at`` is stamped
    when the table has one and the payload does not. With ``expected_version``
    the update only matches the row while it is still at that version.
    """
    table = get_table(table_name)
    values = _coerce_values(table, {k: v for k, v in payload.items() if k != "id"})
    if table_name in VERSIONED_TABLES and "version" not in values:
        values["version"] = table.c.version + 1
    if "updated_at" in table.c and "updated_at" not in values:
        values["updated_at"] = utc_now()
    stmt = update(table).where(table.c.id == target_id)
    if expected_version is not None:
        if table_name not in VERSIONED_TABLES:
            raise ValueError(f"{table_name} rows carry no version")
        stmt = stmt.where(table.c.version == expected_version)
    return BoundStatement(
        statement=stmt.values(**values),
        expect_row=True,
        label=f"update {table_name}/{target_id}",
        expected_version=expected_version,
    )


def delete_statement(table_name: str, target_id: str) -> BoundStatement:
    table = get_table(table_name)
    return BoundStatement(
        statement=delete(table).where(table.c.id == target_id),
        expect_row=True,
        label=f"delete {table_name}/{target_id}",
    )


def select_by_id(table_name: str, target_id: str) -> BoundStatement:
    table = get_table(table_name)
    return BoundStatement(
        statement=select(table).where(table.c.id == target_id),
        label=f"select {table_name}/{target_id}",
    )


def select_where(table_name: str, filters: Optional[Mapping[str, Any]] = None) -> BoundStatement:
    table = get_table(table_name)
    stmt = select(table)
    for column, value in (filters or {}).items():
        if column not in table.c:
            raise ValueError(f"Unknown column {table_name}.{column}")
        stmt = stmt.where(table.c[column] == value)
    return BoundStatement(statement=stmt.order_by(table.c.id), label=f"select {table_name}")


def build_statement(operation: RowOperation) -> BoundStatement:
    """Build the statement that applies one row operation."""
    if operation.kind == OperationKind.CREATE:
        return insert_statement(operation.table, operation.target_id, operation.payload)
    if operation.kind == OperationKind.UPDATE:
        if not operation.payload:
            raise ValueError(f"Update of {operation.table}/{operation.target_id} requires a payload")
        return update_statement(
            operation.table, operation.target_id, operation.payload, expected_version=operation.expected_version
        )
    if operation.kind == OperationKind.DELETE:
        return delete_statement(operation.table, operation.target_id)
    raise ValueError(f"Unknown operation kind: {operation.kind}")


def inverse_operation(operation: RowOperation, before_image: Optional[Dict[str, Any]]) -> Optional[RowOperation]:
    """
    The operation that undoes ``operation`` given the row's before-image.

    Returns None when there is nothing to undo (an update or delete of a row
    that did not exist).
    """
    if operation.kind == OperationKind.CREATE:
        return RowOperation.delete(operation.table, operation.target_id)
    if before_image is None:
        return None
    restore = {k: v for k, v in before_image.items() if k != "id"}
    if operation.kind == OperationKind.UPDATE:
        return RowOperation.update(operation.table, operation.target_id, restore)
    return RowOperation.create(operation.table, operation.target_id, restore)
