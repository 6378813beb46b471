from typing import Optional

from pydantic import BaseModel

from providers.models import (
    CountResponse,
    QueryRequest,
    QueryResult,
    RowsResponse,
    SortOrder,
    TableSchema,
    TablesResponse,
)

__all__ = [
    "CountResponse",
    "ErrorResponse",
    "HealthResponse",
    "QueryRequest",
    "QueryResult",
    "RowsResponse",
    "SortOrder",
    "TableSchema",
    "TablesResponse",
]


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str
    engine: Optional[str] = None
