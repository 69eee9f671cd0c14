"""
Query gateway into tenant databases.

Structured operations build statements with $n placeholders for every
value and route every table/column name through tenantbase.sql.

execute_raw runs caller-supplied SQL after a coarse statement-prefix
denylist (DROP, TRUNCATE, ALTER, DELETE FROM). The denylist is there to
catch accidental damage; it does not parse SQL and a determined caller
can get around it (leading comments, CTEs, multi-word forms). The
actual boundary is the tenant role's privileges, which stop at its own
database.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import asyncpg

from tenantbase.exceptions import ForbiddenStatementError, QueryExecutionError
from tenantbase.schemas.project import TenantCredential
from tenantbase.schemas.query import (
    ColumnDefinition,
    FieldInfo,
    QueryResult,
    SelectQuery,
)
from tenantbase.services.tenant_manager import ConnectionPoolRegistry
from tenantbase.sql import quote_identifier, render_default, validate_identifier

logger = logging.getLogger(__name__)

DENYLIST_KEYWORDS = ("DROP", "TRUNCATE", "ALTER")

_FIRST_KEYWORD = re.compile(r"^\s*([A-Za-z_]+)")
_DELETE_FROM = re.compile(r"^\s*DELETE\s+FROM\b", re.IGNORECASE)


def check_statement(sql: str) -> None:
    """Raise ForbiddenStatementError if the statement starts with a denylisted keyword."""
    # A quoted identifier may follow the verb with no space: TRUNCATE"users"
    match = _FIRST_KEYWORD.match(sql)
    if match and match.group(1).upper() in DENYLIST_KEYWORDS:
        raise ForbiddenStatementError(match.group(1).upper())
    if _DELETE_FROM.match(sql):
        raise ForbiddenStatementError("DELETE FROM")


def _placeholders(count: int, start: int = 1) -> List[str]:
    return [f"${i}" for i in range(start, start + count)]


def _equals(column: str, value: Any, placeholder: str) -> str:
    # Strings compare against the column's text form: "00123" matches a
    # VARCHAR as written and "5" still matches an INTEGER
    if isinstance(value, str):
        return f"{quote_identifier(column)}::text = {placeholder}"
    return f"{quote_identifier(column)} = {placeholder}"


def _split_data(data: Mapping[str, Any]) -> Tuple[List[str], List[Any]]:
    if not data:
        raise ValueError("At least one column value is required")
    columns = [quote_identifier(column) for column in data]
    return columns, list(data.values())


# ---------------------------------------------------------
# Statement builders
# ---------------------------------------------------------


def build_create_table(table_name: str, columns: Sequence[ColumnDefinition]) -> str:
    if not columns:
        raise ValueError("At least one column is required")

    column_defs = []
    for col in columns:
        definition = f"{quote_identifier(col.name)} {col.type.value}"
        if not col.nullable:
            definition += " NOT NULL"
        if col.primary_key:
            definition += " PRIMARY KEY"
        if col.unique:
            definition += " UNIQUE"
        if col.default is not None:
            definition += f" DEFAULT {render_default(col.default)}"
        column_defs.append(definition)

    return f"CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} ({', '.join(column_defs)})"


def build_insert(table_name: str, data: Mapping[str, Any]) -> Tuple[str, List[Any]]:
    columns, values = _split_data(data)
    sql = (
        f"INSERT INTO {quote_identifier(table_name)} ({', '.join(columns)}) "
        f"VALUES ({', '.join(_placeholders(len(values)))}) RETURNING *"
    )
    return sql, values


def build_select(table_name: str, query: SelectQuery) -> Tuple[str, List[Any]]:
    sql = f"SELECT * FROM {quote_identifier(table_name)}"
    params: List[Any] = []

    if query.filters:
        conditions = []
        for f in query.filters:
            params.append(f.value)
            conditions.append(_equals(f.column, f.value, f"${len(params)}"))
        sql += " WHERE " + " AND ".join(conditions)

    if query.sort is not None:
        sql += f" ORDER BY {quote_identifier(query.sort.column)} {query.sort.direction.value}"

    params.append(query.limit)
    sql += f" LIMIT ${len(params)}"
    params.append(query.offset)
    sql += f" OFFSET ${len(params)}"

    return sql, params


def build_update(table_name: str, record_id: Any, data: Mapping[str, Any]) -> Tuple[str, List[Any]]:
    columns, values = _split_data(data)
    assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=1))
    where = _equals("id", record_id, f"${len(values) + 1}")
    sql = f"UPDATE {quote_identifier(table_name)} SET {assignments} WHERE {where} RETURNING *"
    return sql, [*values, record_id]


def build_delete(table_name: str, record_id: Any) -> Tuple[str, List[Any]]:
    where = _equals("id", record_id, "$1")
    return f"DELETE FROM {quote_identifier(table_name)} WHERE {where} RETURNING *", [record_id]


# ---------------------------------------------------------
# Gateway
# ---------------------------------------------------------


class QueryGateway:
    """Runs statements against tenant databases through pooled connections. Never retries."""

    def __init__(self, pools: ConnectionPoolRegistry):
        self._pools = pools

    async def _run(self, credential: TenantCredential, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        pool = await self._pools.get_pool(credential)

        try:
            async with pool.acquire() as conn:
                statement = await conn.prepare(sql)
                records = await statement.fetch(*params)
                status = statement.get_statusmsg() or ""
                fields = [
                    FieldInfo(name=attr.name, type=attr.type.name)
                    for attr in statement.get_attributes()
                ]
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            # InterfaceError covers client-side rejections such as a wrong argument count
            sqlstate = getattr(e, "sqlstate", None)
            logger.warning("Query failed on %s: %s (%s)", credential.database, type(e).__name__, sqlstate)
            raise QueryExecutionError(str(e), sqlstate=sqlstate) from e

        command, row_count = _parse_status(status, len(records))
        return QueryResult(
            rows=[dict(r) for r in records],
            row_count=row_count,
            command=command,
            fields=fields,
        )

    async def execute_raw(
        self, credential: TenantCredential, sql: str, params: Optional[Sequence[Any]] = None
    ) -> QueryResult:
        """Run caller SQL after the denylist check."""
        check_statement(sql)
        return await self._run(credential, sql, params or ())

    async def create_table(
        self, credential: TenantCredential, table_name: str, columns: Sequence[ColumnDefinition]
    ) -> str:
        await self._run(credential, build_create_table(table_name, columns))
        logger.info("Table created in %s: %s", credential.database, table_name)
        return table_name

    async def list_tables(self, credential: TenantCredential) -> List[Dict[str, Any]]:
        result = await self._run(
            credential,
            "SELECT table_name, table_type FROM information_schema.tables "
            "WHERE table_schema = 'public' ORDER BY table_name",
        )
        return result.rows

    async def get_schema(self, credential: TenantCredential, table_name: str) -> List[Dict[str, Any]]:
        validate_identifier(table_name)
        result = await self._run(
            credential,
            "SELECT column_name, data_type, is_nullable, column_default, character_maximum_length "
            "FROM information_schema.columns "
            "WHERE table_schema = 'public' AND table_name = $1 "
            "ORDER BY ordinal_position",
            [table_name],
        )
        return result.rows

    async def insert(
        self, credential: TenantCredential, table_name: str, data: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Insert one row and return it; None when RETURNING yields nothing (rules, triggers)."""
        sql, params = build_insert(table_name, data)
        result = await self._run(credential, sql, params)
        return result.rows[0] if result.rows else None

    async def select(
        self, credential: TenantCredential, table_name: str, query: Optional[SelectQuery] = None
    ) -> List[Dict[str, Any]]:
        sql, params = build_select(table_name, query or SelectQuery())
        result = await self._run(credential, sql, params)
        return result.rows

    async def update(
        self, credential: TenantCredential, table_name: str, record_id: Any, data: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        sql, params = build_update(table_name, record_id, data)
        result = await self._run(credential, sql, params)
        return result.rows[0] if result.rows else None

    async def delete(self, credential: TenantCredential, table_name: str, record_id: Any) -> Optional[Dict[str, Any]]:
        sql, params = build_delete(table_name, record_id)
        result = await self._run(credential, sql, params)
        return result.rows[0] if result.rows else None


def _parse_status(status: str, fetched: int) -> Tuple[str, int]:
    """Split a command tag like 'INSERT 0 1' or 'SELECT 3' into (verb, row count)."""
    parts = status.split()
    if not parts:
        return "", fetched

    count = fetched
    if parts[-1].isdigit():
        count = int(parts[-1])
        parts = parts[:-1]
        # INSERT tags carry the (always 0) oid before the count
        if parts and parts[0] == "INSERT" and parts[-1].isdigit():
            parts = parts[:-1]
    return " ".join(parts), count
