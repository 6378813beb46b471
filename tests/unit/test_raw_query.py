import asyncio

import pytest

from providers.errors import QueryTimeoutError, TooManyRowsError
from providers.raw_query import StatementKind, classify_statement, run_raw_query


class FakeDriverError(Exception):
    pass


@pytest.mark.parametrize(
    "sql",
    ["SELECT 1", "  select * from users", "\n\tPRAGMA table_info(users)", "explain query plan select 1"],
)
def test_classify_read_statements(sql):
    assert classify_statement(sql) is StatementKind.READ


@pytest.mark.parametrize(
    "sql",
    ["INSERT INTO t VALUES (1)", "update t set a = 1", "CREATE TABLE t (a INT)", "WITH x AS (SELECT 1) SELECT * FROM x", ""],
)
def test_classify_everything_else_as_write(sql):
    assert classify_statement(sql) is StatementKind.WRITE


async def _no_write(sql):
    raise AssertionError("write path must not run")


async def _no_read(sql, max_rows):
    raise AssertionError("read path must not run")


@pytest.mark.asyncio
async def test_read_reports_returned_rows_as_affected():
    async def read(sql, max_rows):
        return ["id", "name"], [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]

    result = await run_raw_query("SELECT id, name FROM t", read=read, write=_no_write)
    assert result.columns == ["id", "name"]
    assert result.affected_rows == 2
    assert result.error is None
    assert result.execution_time_milliseconds >= 0


@pytest.mark.asyncio
async def test_read_without_rows_has_no_columns():
    async def read(sql, max_rows):
        return ["id"], []

    result = await run_raw_query("SELECT * FROM empty", read=read, write=_no_write)
    assert result.columns == []
    assert result.rows == []
    assert result.affected_rows == 0


@pytest.mark.asyncio
async def test_write_reports_backend_row_count():
    async def write(sql):
        return 3

    result = await run_raw_query("DELETE FROM t", read=_no_read, write=write)
    assert result.affected_rows == 3
    assert result.columns == []
    assert result.rows == []


@pytest.mark.asyncio
async def test_negative_row_count_is_reported_as_zero():
    async def write(sql):
        return -1

    result = await run_raw_query("CREATE TABLE t (a INT)", read=_no_read, write=write)
    assert result.affected_rows == 0


@pytest.mark.asyncio
async def test_sql_errors_are_returned_not_raised():
    async def read(sql, max_rows):
        raise FakeDriverError('near "SELCT": syntax error')

    async def write(sql):
        raise FakeDriverError('near "SELCT": syntax error')

    result = await run_raw_query("SELCT 1", read=read, write=write, sql_errors=(FakeDriverError,))
    assert result.error == 'near "SELCT": syntax error'
    assert result.columns == []
    assert result.rows == []
    assert result.affected_rows == 0


@pytest.mark.asyncio
async def test_other_errors_propagate():
    async def read(sql, max_rows):
        raise RuntimeError("pool exhausted")

    with pytest.raises(RuntimeError, match="pool exhausted"):
        await run_raw_query("SELECT 1", read=read, write=_no_write, sql_errors=(FakeDriverError,))


@pytest.mark.asyncio
async def test_row_ceiling_raises_instead_of_truncating():
    seen = {}

    async def read(sql, max_rows):
        seen["max_rows"] = max_rows
        return ["n"], [{"n": n} for n in range(max_rows + 1)]

    with pytest.raises(TooManyRowsError, match="max 5 rows"):
        await run_raw_query("SELECT n FROM t", read=read, write=_no_write, max_rows=5)
    assert seen["max_rows"] == 5


@pytest.mark.asyncio
async def test_timeout_raises_distinct_error():
    async def read(sql, max_rows):
        await asyncio.sleep(5)
        return [], []

    with pytest.raises(QueryTimeoutError, match="Query timeout exceeded"):
        await run_raw_query("SELECT pg_sleep(5)", read=read, write=_no_write, timeout_seconds=0.05)


@pytest.mark.asyncio
async def test_columns_come_from_the_reader_not_the_row_keys():
    async def read(sql, max_rows):
        return ["a", "a"], [{"a": 2}]

    result = await run_raw_query("SELECT 1 AS a, 2 AS a", read=read, write=_no_write)
    assert result.columns == ["a", "a"]
    assert result.affected_rows == 1
