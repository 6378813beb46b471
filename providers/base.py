from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence, Tuple, Type

from providers.errors import SerializationError
from providers.models import CountResponse, QueryResult, RowQuery, RowsResponse, TableInfo, TableSchema
from providers.raw_query import MAX_RESULT_ROWS, QUERY_TIMEOUT_SECONDS, run_raw_query


def build_rows_response(
    rows: List[Dict[str, Any]],
    columns: List[str],
    total: int,
    query: RowQuery,
) -> RowsResponse:
    return RowsResponse(
        rows=rows,
        columns=columns,
        total=total,
        offset=query.offset,
        limit=query.effective_limit,
        has_more=query.offset + len(rows) < total,
    )


def check_row_shape(columns: Sequence[str], values: Sequence[Any]) -> None:
    if len(columns) != len(values):
        raise SerializationError(f"row has {len(values)} values for {len(columns)} columns")


class DatabaseProvider(ABC):
    """Inspection facade over one shared connection pool.

    Providers keep no state besides the pool and their settings, so one
    instance can serve concurrent callers.
    """

    engine: str = "unknown"
    # Driver exceptions a raw query reports as data instead of raising.
    sql_error_types: Tuple[Type[BaseException], ...] = ()

    def __init__(
        self,
        query_timeout_seconds: float = QUERY_TIMEOUT_SECONDS,
        max_result_rows: int = MAX_RESULT_ROWS,
    ):
        self.query_timeout_seconds = query_timeout_seconds
        self.max_result_rows = max_result_rows

    @abstractmethod
    async def list_tables(self) -> List[TableInfo]:
        raise NotImplementedError

    @abstractmethod
    async def get_table_schema(self, table: str) -> TableSchema:
        raise NotImplementedError

    @abstractmethod
    async def get_rows(self, table: str, query: RowQuery) -> RowsResponse:
        raise NotImplementedError

    @abstractmethod
    async def count_rows(self, table: str, query: RowQuery) -> CountResponse:
        raise NotImplementedError

    async def execute_query(self, sql: str) -> QueryResult:
        """Run one caller-supplied statement of any kind.

        Writes and DDL are accepted too, so this must never be reachable in
        production deployments.
        """
        return await run_raw_query(
            sql,
            read=self._execute_read,
            write=self._execute_write,
            sql_errors=self.sql_error_types,
            timeout_seconds=self.query_timeout_seconds,
            max_rows=self.max_result_rows,
        )

    @abstractmethod
    async def _execute_read(self, sql: str, max_rows: int) -> Tuple[List[str], List[Dict[str, Any]]]:
        """Return the result column names, which may repeat, and at most ``max_rows + 1`` mapped rows."""
        raise NotImplementedError

    @abstractmethod
    async def _execute_write(self, sql: str) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None
