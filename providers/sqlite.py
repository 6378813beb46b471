from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import contextmanager, suppress
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

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
from providers.sql_renderer import BuiltQuery, get_sql_dialect, quote_identifier
from providers.value_mapper import map_rows

logger = logging.getLogger(__name__)

LIST_TABLES_SQL = """
SELECT name
FROM sqlite_master
WHERE type = 'table'
  AND substr(name, 1, 7) <> 'sqlite_'
ORDER BY name
"""

TABLE_EXISTS_SQL = """
SELECT 1
FROM sqlite_master
WHERE type = 'table'
  AND name = ?
  AND substr(name, 1, 7) <> 'sqlite_'
"""


class SQLitePool:
    """Hands out short-lived autocommit connections to one SQLite database.

    ``:memory:`` is mapped to a named shared-cache database that stays alive
    until ``close()``, so every connection sees the same data.
    """

    def __init__(self, database: str, busy_timeout_ms: int = 5000, uri: bool = False):
        self.busy_timeout_ms = busy_timeout_ms
        self._anchor: Optional[sqlite3.Connection] = None
        if database == ":memory:":
            self.database = f"file:sql_viewer_{uuid4().hex}?mode=memory&cache=shared"
            self.uri = True
            self._anchor = self.connect()
        else:
            self.database = database
            self.uri = uri

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, uri=self.uri, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def close(self) -> None:
        if self._anchor is not None:
            self._anchor.close()
            self._anchor = None


def _column_names(cur: sqlite3.Cursor) -> List[str]:
    return [desc[0] for desc in cur.description or []]


class SQLiteProvider(DatabaseProvider):
    engine = "sqlite"
    sql_error_types = (sqlite3.Error,)

    def __init__(self, pool: SQLitePool, owns_pool: bool = False, **kwargs: Any):
        super().__init__(**kwargs)
        self.pool = pool
        self.owns_pool = owns_pool
        self.dialect = get_sql_dialect(self.engine)

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise QueryError(str(exc)) from exc

    async def list_tables(self) -> List[TableInfo]:
        return await self._run(self._list_tables_sync)

    def _list_tables_sync(self) -> List[TableInfo]:
        with self.pool.connection() as conn:
            names = [row["name"] for row in conn.execute(LIST_TABLES_SQL).fetchall()]
            tables: List[TableInfo] = []
            for name in names:
                count_sql = f"SELECT COUNT(*) AS count FROM {quote_identifier(name)}"
                try:
                    row_count: Optional[int] = int(conn.execute(count_sql).fetchone()[0])
                except sqlite3.Error as exc:
                    logger.warning("Could not count rows of %s: %s", name, exc)
                    row_count = None
                tables.append(TableInfo(name=name, row_count=row_count))
            return tables

    async def get_table_schema(self, table: str) -> TableSchema:
        return await self._run(self._table_schema_sync, table)

    def _table_schema_sync(self, table: str) -> TableSchema:
        quoted = quote_identifier(table)
        with self.pool.connection() as conn:
            column_rows = conn.execute(f"PRAGMA table_info({quoted})").fetchall()
            # PRAGMA returns nothing, rather than failing, for a missing table.
            if not column_rows:
                raise TableNotFoundError(table)

            columns: List[ColumnInfo] = []
            pk_positions: List[Tuple[int, str]] = []
            for row in column_rows:
                is_primary_key = int(row["pk"] or 0) > 0
                if is_primary_key:
                    pk_positions.append((int(row["pk"]), row["name"]))
                default = row["dflt_value"]
                columns.append(
                    ColumnInfo(
                        name=row["name"],
                        data_type=str(row["type"] or ""),
                        nullable=int(row["notnull"] or 0) == 0,
                        default_value=None if default is None else str(default),
                        is_primary_key=is_primary_key,
                    )
                )
            primary_key = [name for _, name in sorted(pk_positions)] or None

            foreign_keys: List[ForeignKey] = []
            for row in conn.execute(f"PRAGMA foreign_key_list({quoted})").fetchall():
                target_column = row["to"]
                if target_column is None:
                    target_column = self._implicit_reference(conn, row["table"], int(row["seq"]))
                foreign_keys.append(
                    ForeignKey(
                        column=row["from"],
                        references_table=row["table"],
                        references_column=target_column or "",
                    )
                )

            indexes: List[IndexInfo] = []
            for row in conn.execute(f"PRAGMA index_list({quoted})").fetchall():
                if row["origin"] == "pk":
                    continue
                index_name = row["name"]
                info_rows = conn.execute(f"PRAGMA index_info({quote_identifier(index_name)})").fetchall()
                indexes.append(
                    IndexInfo(
                        name=index_name,
                        # Expression columns have no name.
                        columns=[info["name"] for info in info_rows if info["name"] is not None],
                        unique=int(row["unique"] or 0) != 0,
                    )
                )

        logger.debug("Discovered %d columns for %s", len(columns), table)
        return TableSchema(
            name=table,
            columns=columns,
            primary_key=primary_key,
            foreign_keys=foreign_keys,
            indexes=indexes,
        )

    @staticmethod
    def _implicit_reference(conn: sqlite3.Connection, target_table: str, seq: int) -> Optional[str]:
        # REFERENCES without a column list points at the target's primary key.
        rows = conn.execute(f"PRAGMA table_info({quote_identifier(target_table)})").fetchall()
        key = [row["name"] for row in sorted(rows, key=lambda r: r["pk"]) if row["pk"]]
        return key[seq] if seq < len(key) else None

    async def _ensure_table(self, table: str) -> None:
        exists = await self._run(self._table_exists_sync, table)
        if not exists:
            raise TableNotFoundError(table)

    def _table_exists_sync(self, table: str) -> bool:
        with self.pool.connection() as conn:
            return conn.execute(TABLE_EXISTS_SQL, (table,)).fetchone() is not None

    async def get_rows(self, table: str, query: RowQuery) -> RowsResponse:
        await self._ensure_table(table)
        schema = await self.get_table_schema(table)
        column_names = schema.column_names()

        rows_query = self.dialect.build_rows_query(table, query, column_names)
        count_query = self.dialect.build_count_query(table, query.filters)
        result_columns, raw_rows, total = await self._run(self._rows_sync, rows_query, count_query)

        declared = {column.name: column.data_type for column in schema.columns}
        rows = map_rows(result_columns, [declared.get(name) for name in result_columns], raw_rows, self.engine)
        return build_rows_response(rows, column_names, total, query)

    def _rows_sync(
        self, rows_query: BuiltQuery, count_query: BuiltQuery
    ) -> Tuple[List[str], List[Sequence[Any]], int]:
        with self.pool.connection() as conn:
            total = int(conn.execute(count_query.sql, count_query.params).fetchone()[0])
            cur = conn.execute(rows_query.sql, rows_query.params)
            return _column_names(cur), [tuple(row) for row in cur.fetchall()], total

    async def count_rows(self, table: str, query: RowQuery) -> CountResponse:
        await self._ensure_table(table)
        count_query = self.dialect.build_count_query(table, query.filters)
        return CountResponse(count=await self._run(self._count_sync, count_query))

    def _count_sync(self, count_query: BuiltQuery) -> int:
        with self.pool.connection() as conn:
            return int(conn.execute(count_query.sql, count_query.params).fetchone()[0])

    async def _open(self) -> sqlite3.Connection:
        try:
            return await asyncio.to_thread(self.pool.connect)
        except sqlite3.Error as exc:
            raise QueryError(str(exc)) from exc

    async def _in_statement_thread(self, conn: sqlite3.Connection, func, *args):
        try:
            return await asyncio.to_thread(func, conn, *args)
        except asyncio.CancelledError:
            # The worker thread keeps running; stop the statement it is stepping.
            with suppress(sqlite3.ProgrammingError):
                conn.interrupt()
            raise

    async def _execute_read(self, sql: str, max_rows: int) -> Tuple[List[str], List[Dict[str, Any]]]:
        conn = await self._open()
        columns, raw_rows = await self._in_statement_thread(conn, self._read_sync, sql, max_rows)
        return columns, map_rows(columns, [None] * len(columns), raw_rows, self.engine)

    @staticmethod
    def _read_sync(conn: sqlite3.Connection, sql: str, max_rows: int) -> Tuple[List[str], List[Sequence[Any]]]:
        try:
            cur = conn.execute(sql)
            if cur.description is None:
                return [], []
            return _column_names(cur), [tuple(row) for row in cur.fetchmany(max_rows + 1)]
        finally:
            conn.close()

    async def _execute_write(self, sql: str) -> int:
        conn = await self._open()
        return await self._in_statement_thread(conn, self._write_sync, sql)

    @staticmethod
    def _write_sync(conn: sqlite3.Connection, sql: str) -> int:
        try:
            cur = conn.execute(sql)
            if cur.description is not None:
                # Step RETURNING/CTE statements to completion.
                cur.fetchall()
            return cur.rowcount
        finally:
            conn.close()

    async def close(self) -> None:
        if self.owns_pool:
            self.pool.close()
