from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Tuple, Type

from providers.errors import QueryTimeoutError, TooManyRowsError
from providers.models import QueryResult

logger = logging.getLogger(__name__)

QUERY_TIMEOUT_SECONDS = 30.0
MAX_RESULT_ROWS = 10_000
READ_PREFIXES = ("SELECT", "PRAGMA", "EXPLAIN")

ReadFn = Callable[[str, int], Awaitable[Tuple[List[str], List[Dict[str, Any]]]]]
WriteFn = Callable[[str], Awaitable[int]]


class StatementKind(str, Enum):
    READ = "read"
    WRITE = "write"


def classify_statement(sql: str) -> StatementKind:
    # Prefix heuristic only, anything unrecognised runs as a write.
    normalized = (sql or "").strip().upper()
    if normalized.startswith(READ_PREFIXES):
        return StatementKind.READ
    return StatementKind.WRITE


def _elapsed_ms(started: float) -> int:
    return max(0, int(round((time.perf_counter() - started) * 1000)))


async def run_raw_query(
    sql: str,
    read: ReadFn,
    write: WriteFn,
    sql_errors: Tuple[Type[BaseException], ...] = (),
    timeout_seconds: float = QUERY_TIMEOUT_SECONDS,
    max_rows: int = MAX_RESULT_ROWS,
) -> QueryResult:
    """Execute one raw statement and normalise the outcome.

    Errors raised by the database for the statement itself (``sql_errors``)
    are returned in ``QueryResult.error``. Timeouts and oversized results
    raise, as do all other exceptions.

    ``read`` returns the result column names and must fetch at most
    ``max_rows + 1`` rows so an oversized result can be detected without
    loading it completely.
    """
    started = time.perf_counter()
    kind = classify_statement(sql)
    logger.debug("Executing raw %s statement", kind.value)

    try:
        if kind is StatementKind.READ:
            columns, rows = await asyncio.wait_for(read(sql, max_rows), timeout=timeout_seconds)
            affected_rows = 0
        else:
            columns, rows = [], []
            affected_rows = await asyncio.wait_for(write(sql), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        logger.warning("Raw query exceeded %ss timeout", timeout_seconds)
        raise QueryTimeoutError(timeout_seconds) from exc
    except sql_errors as exc:
        logger.debug("Raw query failed: %s", exc)
        return QueryResult(
            columns=[],
            rows=[],
            affected_rows=0,
            execution_time_milliseconds=_elapsed_ms(started),
            error=str(exc),
        )

    if kind is StatementKind.READ:
        if len(rows) > max_rows:
            raise TooManyRowsError(max_rows)
        # Reads report the number of rows returned.
        affected_rows = len(rows)

    return QueryResult(
        # Zero rows report no columns.
        columns=columns if rows else [],
        rows=rows,
        affected_rows=max(0, int(affected_rows or 0)),
        execution_time_milliseconds=_elapsed_ms(started),
        error=None,
    )
