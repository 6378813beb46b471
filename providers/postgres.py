from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors as pg_errors
from psycopg.types.string import TextLoader
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from providers.base import DatabaseProvider, build_rows_response
from providers.errors import QueryError, TableNotFoundError
from providers.models import (
    ColumnInfo,
    CountResponse,
    ForeignKey,
    IndexInfo,
    RowQuery,
    RowsResponse,
    TableInfo,
    TableSchema,
)
from providers.sql_renderer import get_sql_dialect
from providers.value_mapper import map_rows

logger = logging.getLogger(__name__)

# Loaded as the server's own text output so no precision is lost.
TEXT_LOADED_TYPES = ("numeric", "date", "time", "timetz", "timestamp", "timestamptz", "interval", "uuid")

LIST_TABLES_SQL = """
SELECT table_name
FROM information_schema.tables
WHERE table_schema = %s
  AND table_type = 'BASE TABLE'
ORDER BY table_name
"""

COLUMNS_SQL = """
SELECT
    column_name,
    data_type,
    is_nullable,
    column_default,
    udt_name
FROM information_schema.columns
WHERE table_schema = %s
  AND table_name = %s
ORDER BY ordinal_position
"""

PRIMARY_KEY_SQL = """
SELECT kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
 AND tc.table_name = kcu.table_name
WHERE tc.table_schema = %s
  AND tc.table_name = %s
  AND tc.constraint_type = 'PRIMARY KEY'
ORDER BY kcu.ordinal_position
"""

# Composite keys pair each referencing column with the referenced column at the same key position.
FOREIGN_KEYS_SQL = """
SELECT
    kcu.column_name,
    ref.table_name AS references_table,
    ref.column_name AS references_column
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
 AND tc.table_name = kcu.table_name
JOIN information_schema.referential_constraints rc
  ON rc.constraint_name = tc.constraint_name
 AND rc.constraint_schema = tc.table_schema
JOIN information_schema.key_column_usage ref
  ON ref.constraint_name = rc.unique_constraint_name
 AND ref.constraint_schema = rc.unique_constraint_schema
 AND ref.ordinal_position = kcu.position_in_unique_constraint
WHERE tc.table_schema = %s
  AND tc.table_name = %s
  AND tc.constraint_type = 'FOREIGN KEY'
ORDER BY tc.constraint_name, kcu.ordinal_position
"""

INDEXES_SQL = """
SELECT
    i.indexname AS index_name,
    i.indexdef AS index_definition
FROM pg_indexes i
WHERE i.schemaname = %s
  AND i.tablename = %s
  AND i.indexname NOT IN (
    SELECT constraint_name
    FROM information_schema.table_constraints
    WHERE table_schema = %s
      AND table_name = %s
      AND constraint_type = 'PRIMARY KEY'
  )
ORDER BY i.indexname
"""

_INDEX_KEYS = re.compile(r"\bUSING\s+\w+\s*\(", re.IGNORECASE)
_SIMPLE_KEY = re.compile(r'^("(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)(\s|$)')


async def configure_connection(conn: psycopg.AsyncConnection) -> None:
    for type_name in TEXT_LOADED_TYPES:
        conn.adapters.register_loader(type_name, TextLoader)


def _split_top_level(text: str) -> List[str]:
    parts: List[str] = []
    depth = 0
    in_quotes = False
    current: List[str] = []
    for char in text:
        if char == '"':
            in_quotes = not in_quotes
        elif not in_quotes and char == "(":
            depth += 1
        elif not in_quotes and char == ")":
            depth -= 1
        if char == "," and depth == 0 and not in_quotes:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if current:
        parts.append("".join(current).strip())
    return parts


def parse_index_columns(index_definition: str) -> List[str]:
    """Best-effort column list from a ``pg_indexes.indexdef`` string.

    Expression keys are skipped; an unparseable definition yields ``[]``.
    """
    match = _INDEX_KEYS.search(index_definition or "")
    if not match:
        return []

    start = match.end()
    depth = 1
    in_quotes = False
    end = start
    while end < len(index_definition) and depth:
        char = index_definition[end]
        if char == '"':
            in_quotes = not in_quotes
        elif not in_quotes and char == "(":
            depth += 1
        elif not in_quotes and char == ")":
            depth -= 1
        end += 1
    if depth:
        return []

    columns: List[str] = []
    for key in _split_top_level(index_definition[start : end - 1]):
        key_match = _SIMPLE_KEY.match(key)
        if not key_match:
            continue
        name = key_match.group(1)
        if name.startswith('"'):
            name = name[1:-1].replace('""', '"')
        columns.append(name)
    return columns


class PostgresProvider(DatabaseProvider):
    engine = "postgres"
    sql_error_types = (psycopg.Error,)

    def __init__(
        self,
        pool: AsyncConnectionPool,
        schema_name: str = "public",
        owns_pool: bool = False,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.pool = pool
        self.schema_name = schema_name
        self.owns_pool = owns_pool
        self.dialect = get_sql_dialect(self.engine)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[psycopg.AsyncConnection]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            raise QueryError(str(exc)) from exc

    @asynccontextmanager
    async def _cursor(self) -> AsyncIterator[psycopg.AsyncCursor]:
        async with self._connection() as conn:
            async with conn.cursor() as cur:
                yield cur

    async def _fetch(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        table: Optional[str] = None,
    ) -> Tuple[List[Any], List[Tuple[Any, ...]]]:
        logger.debug("Executing: %s", sql.strip())
        try:
            async with self._cursor() as cur:
                await cur.execute(sql, params)
                return list(cur.description or []), await cur.fetchall()
        except pg_errors.UndefinedTable as exc:
            if table is not None:
                raise TableNotFoundError(table) from exc
            raise QueryError(str(exc)) from exc
        except psycopg.Error as exc:
            raise QueryError(str(exc)) from exc

    async def list_tables(self) -> List[TableInfo]:
        _, name_rows = await self._fetch(LIST_TABLES_SQL, (self.schema_name,))

        tables: List[TableInfo] = []
        for (name,) in name_rows:
            count_query = self.dialect.build_count_query(name, {}, schema=self.schema_name)
            try:
                _, count_rows = await self._fetch(count_query.sql, count_query.params)
                row_count: Optional[int] = int(count_rows[0][0])
            except QueryError as exc:
                logger.warning("Could not count rows of %s: %s", name, exc)
                row_count = None
            tables.append(TableInfo(name=name, row_count=row_count))
        return tables

    async def get_table_schema(self, table: str) -> TableSchema:
        key = (self.schema_name, table)
        try:
            async with self._cursor() as cur:
                await cur.execute(COLUMNS_SQL, key)
                column_rows = await cur.fetchall()
                if not column_rows:
                    raise TableNotFoundError(table)

                await cur.execute(PRIMARY_KEY_SQL, key)
                primary_key_columns = [row[0] for row in await cur.fetchall()]

                await cur.execute(FOREIGN_KEYS_SQL, key)
                fk_rows = await cur.fetchall()

                await cur.execute(INDEXES_SQL, key + key)
                index_rows = await cur.fetchall()
        except psycopg.Error as exc:
            raise QueryError(str(exc)) from exc

        columns = [
            ColumnInfo(
                name=column_name,
                data_type=data_type,
                nullable=is_nullable == "YES",
                default_value=column_default,
                is_primary_key=column_name in primary_key_columns,
            )
            for column_name, data_type, is_nullable, column_default, _udt_name in column_rows
        ]
        foreign_keys = [
            ForeignKey(column=column, references_table=ref_table, references_column=ref_column)
            for column, ref_table, ref_column in fk_rows
        ]
        indexes = [
            IndexInfo(
                name=index_name,
                columns=parse_index_columns(index_definition),
                unique=index_definition.upper().startswith("CREATE UNIQUE"),
            )
            for index_name, index_definition in index_rows
        ]

        logger.debug("Discovered %d columns for %s.%s", len(columns), self.schema_name, table)
        return TableSchema(
            name=table,
            columns=columns,
            primary_key=primary_key_columns or None,
            foreign_keys=foreign_keys,
            indexes=indexes,
        )

    async def get_rows(self, table: str, query: RowQuery) -> RowsResponse:
        # Schema lookup doubles as the existence check.
        schema = await self.get_table_schema(table)
        column_names = schema.column_names()

        rows_query = self.dialect.build_rows_query(table, query, column_names, schema=self.schema_name)
        description, raw_rows = await self._fetch(rows_query.sql, rows_query.params, table=table)
        rows = map_rows(
            [column.name for column in description],
            [column.type_display for column in description],
            raw_rows,
            self.engine,
        )

        total = (await self.count_rows(table, query)).count
        return build_rows_response(rows, column_names, total, query)

    async def count_rows(self, table: str, query: RowQuery) -> CountResponse:
        count_query = self.dialect.build_count_query(table, query.filters, schema=self.schema_name)
        _, rows = await self._fetch(count_query.sql, count_query.params, table=table)
        return CountResponse(count=int(rows[0][0]))

    async def _execute_read(self, sql: str, max_rows: int) -> Tuple[List[str], List[Dict[str, Any]]]:
        async with self._cursor() as cur:
            await cur.execute(sql)
            if cur.description is None:
                return [], []
            description = list(cur.description)
            raw_rows = await cur.fetchmany(max_rows + 1)
        columns = [column.name for column in description]
        return columns, map_rows(columns, [column.type_display for column in description], raw_rows, self.engine)

    async def _execute_write(self, sql: str) -> int:
        async with self._connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql)
                if cur.description is not None:
                    await cur.fetchall()
                affected = cur.rowcount
            if not conn.autocommit:
                await conn.commit()
        return affected

    async def close(self) -> None:
        if self.owns_pool:
            await self.pool.close()
