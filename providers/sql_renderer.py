from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from providers.errors import InvalidColumnError
from providers.models import RowQuery, SortOrder

logger = logging.getLogger(__name__)


def quote_identifier(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


@dataclass(frozen=True)
class BuiltQuery:
    sql: str
    params: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class SQLDialect:
    engine: str
    placeholder: str

    @property
    def pyformat(self) -> bool:
        return self.placeholder == "%s"

    def quote(self, identifier: str) -> str:
        quoted = quote_identifier(identifier)
        if self.pyformat:
            # psycopg reads a bare % as the start of a placeholder.
            return quoted.replace("%", "%%")
        return quoted

    def render_where(self, filters: Mapping[str, str], table: Optional[str] = None) -> Tuple[str, List[Any]]:
        if not filters:
            return "", []

        # A qualified name never degrades to SQLite's double-quoted string literal.
        prefix = f"{self.quote(table)}." if table else ""

        conditions: List[str] = []
        values: List[Any] = []
        for column, value in filters.items():
            operator = "LIKE" if "%" in value else "="
            conditions.append(f"{prefix}{self.quote(column)} {operator} {self.placeholder}")
            values.append(value)
        return " WHERE " + " AND ".join(conditions), values

    def render_order(
        self,
        sort_by: Optional[str],
        sort_order: Optional[SortOrder],
        known_columns: Iterable[str],
    ) -> str:
        if sort_by is None:
            return ""
        if sort_by not in set(known_columns):
            raise InvalidColumnError(sort_by)
        direction = "DESC" if sort_order == SortOrder.DESCENDING else "ASC"
        return f" ORDER BY {self.quote(sort_by)} {direction}"

    def table_ref(self, table: str, schema: Optional[str] = None) -> str:
        if schema:
            return f"{self.quote(schema)}.{self.quote(table)}"
        return self.quote(table)

    def build_rows_query(
        self,
        table: str,
        query: RowQuery,
        known_columns: Iterable[str],
        schema: Optional[str] = None,
    ) -> BuiltQuery:
        # Sort column validation happens before any SQL text is produced.
        order_clause = self.render_order(query.sort_by, query.sort_order, known_columns)
        where_clause, params = self.render_where(query.filters, table)
        sql = (
            f"SELECT * FROM {self.table_ref(table, schema)}{where_clause}{order_clause}"
            f" LIMIT {self.placeholder} OFFSET {self.placeholder}"
        )
        built = BuiltQuery(sql=sql, params=params + [query.effective_limit, query.offset])
        logger.debug("Built rows query: %s", built.sql)
        return built

    def build_count_query(self, table: str, filters: Mapping[str, str], schema: Optional[str] = None) -> BuiltQuery:
        where_clause, params = self.render_where(filters, table)
        built = BuiltQuery(sql=f"SELECT COUNT(*) AS count FROM {self.table_ref(table, schema)}{where_clause}", params=params)
        logger.debug("Built count query: %s", built.sql)
        return built


def get_sql_dialect(db_engine: str) -> SQLDialect:
    engine = (db_engine or "sqlite").strip().lower()
    if engine in {"postgres", "postgresql"}:
        return SQLDialect(engine="postgres", placeholder="%s")
    if engine == "sqlite":
        return SQLDialect(engine="sqlite", placeholder="?")
    return SQLDialect(engine=engine, placeholder="%s")
