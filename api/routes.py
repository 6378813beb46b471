import logging
import re
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.schemas import (
    CountResponse,
    ErrorResponse,
    HealthResponse,
    QueryRequest,
    QueryResult,
    RowsResponse,
    SortOrder,
    TableSchema,
    TablesResponse,
)
from providers.base import DatabaseProvider
from providers.errors import (
    DatabaseError,
    InvalidColumnError,
    QueryTimeoutError,
    TableNotFoundError,
    TooManyRowsError,
)
from providers.models import MAX_ROW_LIMIT, RowQuery

logger = logging.getLogger(__name__)

router = APIRouter()
api_router = APIRouter(prefix="/api")

_FILTER_PARAM = re.compile(r"^filter\[(.+)\]$")

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def get_provider(request: Request) -> DatabaseProvider:
    return request.app.state.provider


def status_for_error(exc: DatabaseError) -> int:
    if isinstance(exc, TableNotFoundError):
        return 404
    if isinstance(exc, InvalidColumnError):
        return 400
    if isinstance(exc, QueryTimeoutError):
        return 408
    if isinstance(exc, TooManyRowsError):
        return 413
    return 500


def _error_response(exc: DatabaseError, action: str) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.warning("Failed to %s: %s", action, exc)
    return JSONResponse(status_code=status_code, content={"error": str(exc)})


def parse_filters(request: Request) -> Dict[str, str]:
    filters: Dict[str, str] = {}
    for key, value in request.query_params.multi_items():
        match = _FILTER_PARAM.match(key)
        if match:
            filters[match.group(1)] = value
    return filters


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    provider = getattr(request.app.state, "provider", None)
    return HealthResponse(status="ok", engine=getattr(provider, "engine", None))


@api_router.get("/tables", response_model=TablesResponse, responses=ERROR_RESPONSES)
async def list_tables(provider: DatabaseProvider = Depends(get_provider)):
    try:
        return TablesResponse(tables=await provider.list_tables())
    except DatabaseError as exc:
        return _error_response(exc, "list tables")


@api_router.get("/tables/{name}", response_model=TableSchema, responses=ERROR_RESPONSES)
async def get_table_schema(name: str, provider: DatabaseProvider = Depends(get_provider)):
    try:
        return await provider.get_table_schema(name)
    except DatabaseError as exc:
        return _error_response(exc, f"read schema of {name!r}")


@api_router.get("/tables/{name}/rows", response_model=RowsResponse, responses=ERROR_RESPONSES)
async def get_rows(
    name: str,
    request: Request,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=0),
    sort_by: Optional[str] = Query(default=None, alias="sortBy"),
    sort_order: Optional[SortOrder] = Query(default=None, alias="sortOrder"),
    provider: DatabaseProvider = Depends(get_provider),
):
    query = RowQuery(
        offset=offset,
        limit=min(limit, MAX_ROW_LIMIT),
        sort_by=sort_by,
        sort_order=sort_order,
        filters=parse_filters(request),
    )
    try:
        return await provider.get_rows(name, query)
    except DatabaseError as exc:
        return _error_response(exc, f"get rows from {name!r}")


@api_router.get("/tables/{name}/count", response_model=CountResponse, responses=ERROR_RESPONSES)
async def count_rows(name: str, request: Request, provider: DatabaseProvider = Depends(get_provider)):
    try:
        return await provider.count_rows(name, RowQuery(filters=parse_filters(request)))
    except DatabaseError as exc:
        return _error_response(exc, f"count rows of {name!r}")


@api_router.post("/query", response_model=QueryResult)
async def execute_query(payload: QueryRequest, provider: DatabaseProvider = Depends(get_provider)):
    """Execute raw SQL. Accepts writes and DDL: development use only."""
    logger.info("Executing SQL query: %s", payload.sql)
    try:
        result = await provider.execute_query(payload.sql)
    except DatabaseError as exc:
        logger.warning("Failed to execute query: %s", exc)
        failed = QueryResult(error=str(exc))
        return JSONResponse(status_code=status_for_error(exc), content=failed.model_dump(by_alias=True))

    if result.error is not None:
        return JSONResponse(status_code=400, content=result.model_dump(by_alias=True))
    return result
