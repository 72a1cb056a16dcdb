"""
Write statements and the single seam through which every statement runs.
"""

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import insert, literal_column, update
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import QueryError
from models.table_metadata import TableMetadata
from persistence.query.table import delete_statement, plain_table
import logging

logger = logging.getLogger(__name__)


def render(statement: Any) -> str:
    """SQL text of a statement as PostgreSQL would receive it"""
    try:
        return str(statement.compile(dialect=postgresql.dialect()))
    except SQLAlchemyError:
        return repr(statement)


async def execute(session: AsyncSession, statement: Any, operation: str):
    """
    Run a statement, wrapping driver failures in QueryError.

    Raises:
        QueryError: If the statement fails
    """
    try:
        return await session.execute(statement)
    except SQLAlchemyError as e:
        raise QueryError(
            f"{operation} statement failed",
            context={"operation": operation, "query": render(statement)},
            original_exception=e
        )


def insert_statement(metadata: TableMetadata, rows: Sequence[Dict[str, Any]]):
    """
    Multi-row INSERT returning the primary key.

    Columns are the union over all rows in declaration order; a row
    without a value for a column gets DEFAULT.
    """
    present = set()
    for row in rows:
        present.update(row)
    columns = [name for name in metadata.column_names() if name in present]
    columns += [name for row in rows for name in row if name not in columns]
    target = plain_table(metadata.table_name, metadata.column_names() + columns)

    stmt = insert(target)
    if columns:
        stmt = stmt.values([
            {name: row[name] if name in row else literal_column("DEFAULT") for name in columns}
            for row in rows
        ])
    if metadata.primary_key_column:
        stmt = stmt.returning(target.c[metadata.primary_key_column])
    return stmt


def update_statement(
    metadata: TableMetadata,
    values: Dict[str, Any],
    primary_key: Any,
    multitenancy_value: Optional[Any] = None,
):
    """UPDATE one row by primary key, scoped to the tenant"""
    target = plain_table(metadata.table_name, metadata.column_names() + list(values))
    stmt = update(target).where(target.c[metadata.primary_key_column] == primary_key)
    if metadata.multitenancy_key_column:
        stmt = stmt.where(target.c[metadata.multitenancy_key_column] == multitenancy_value)
    return stmt.values(values)


def delete_by_keys_statement(metadata: TableMetadata, keys: List[Any], multitenancy_value: Optional[Any] = None):
    """DELETE rows whose primary key is one of ``keys``, scoped to the tenant"""
    predicates: Dict[str, Any] = {metadata.primary_key_column: keys}
    if metadata.multitenancy_key_column:
        predicates[metadata.multitenancy_key_column] = multitenancy_value
    return delete_statement(metadata.table_name, metadata.column_names(), predicates)
