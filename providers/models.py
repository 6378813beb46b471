from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


MAX_ROW_LIMIT = 500
DEFAULT_ROW_LIMIT = 100


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SortOrder(str, Enum):
    ASCENDING = "ascending"
    DESCENDING = "descending"


class TableInfo(_CamelModel):
    name: str
    row_count: Optional[int] = None


class TablesResponse(_CamelModel):
    tables: List[TableInfo]


class ColumnInfo(_CamelModel):
    name: str
    data_type: str
    nullable: bool
    default_value: Optional[str] = None
    is_primary_key: bool = False


class ForeignKey(_CamelModel):
    column: str
    references_table: str
    references_column: str


class IndexInfo(_CamelModel):
    name: str
    columns: List[str] = Field(default_factory=list)
    unique: bool = False


class TableSchema(_CamelModel):
    name: str
    columns: List[ColumnInfo]
    primary_key: Optional[List[str]] = None
    foreign_keys: List[ForeignKey] = Field(default_factory=list)
    indexes: List[IndexInfo] = Field(default_factory=list)

    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]


class RowQuery(_CamelModel):
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=DEFAULT_ROW_LIMIT, ge=0)
    sort_by: Optional[str] = None
    sort_order: Optional[SortOrder] = None
    # No % means exact match, any % makes it a LIKE pattern.
    filters: Dict[str, str] = Field(default_factory=dict)

    @property
    def effective_limit(self) -> int:
        return min(self.limit, MAX_ROW_LIMIT)


class RowsResponse(_CamelModel):
    rows: List[Dict[str, Any]]
    columns: List[str]
    total: int
    offset: int
    limit: int
    has_more: bool


class CountResponse(_CamelModel):
    count: int


class QueryRequest(_CamelModel):
    sql: str = Field(..., min_length=1)


class QueryResult(_CamelModel):
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    # Rows returned for read-like statements, rows changed for write-like ones.
    affected_rows: int = 0
    execution_time_milliseconds: int = 0
    error: Optional[str] = None
