import asyncio
import sqlite3
import time

import pytest

from providers.errors import InvalidColumnError, QueryError, QueryTimeoutError, TableNotFoundError, TooManyRowsError
from providers.models import RowQuery, SortOrder
from providers.sqlite import SQLitePool, SQLiteProvider

SCHEMA_SQL = """
CREATE TABLE authors (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL
);
CREATE TABLE books (
    id INTEGER PRIMARY KEY,
    author_id INTEGER REFERENCES authors(id),
    title TEXT NOT NULL,
    price REAL DEFAULT 9.99,
    in_print BOOLEAN DEFAULT 1,
    cover BLOB,
    published DATE
);
CREATE UNIQUE INDEX idx_books_title ON books(title);
CREATE INDEX idx_books_author ON books(author_id, published);
CREATE TABLE memberships (
    user_id INTEGER NOT NULL,
    group_id INTEGER NOT NULL,
    role TEXT,
    PRIMARY KEY (group_id, user_id)
);
CREATE TABLE events (
    id INTEGER PRIMARY KEY,
    label TEXT
);
INSERT INTO authors (name) VALUES ('abc'), ('abcd'), ('xyz');
INSERT INTO books (author_id, title, price, in_print, cover, published)
VALUES (1, 'First', 12.5, 1, NULL, '2024-01-01'),
       (2, 'Second', 20.0, 0, NULL, '2024-02-01'),
       (NULL, 'Orphan', NULL, 1, NULL, NULL);
"""


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "viewer.db"
    conn = sqlite3.connect(str(path))
    try:
        conn.executescript(SCHEMA_SQL)
        conn.executemany("INSERT INTO events (label) VALUES (?)", [(f"event-{n}",) for n in range(10)])
        conn.execute("UPDATE books SET cover = ? WHERE title = 'First'", (bytes(range(100)),))
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def provider(db_path):
    return SQLiteProvider(SQLitePool(str(db_path)))


@pytest.mark.asyncio
async def test_list_tables_sorted_with_counts(provider):
    tables = await provider.list_tables()
    assert [table.name for table in tables] == ["authors", "books", "events", "memberships"]
    assert {table.name: table.row_count for table in tables} == {
        "authors": 3,
        "books": 3,
        "events": 10,
        "memberships": 0,
    }


@pytest.mark.asyncio
async def test_table_schema_columns_keys_and_indexes(provider):
    schema = await provider.get_table_schema("books")
    assert schema.column_names() == ["id", "author_id", "title", "price", "in_print", "cover", "published"]
    assert [column.data_type for column in schema.columns][:4] == ["INTEGER", "INTEGER", "TEXT", "REAL"]
    assert schema.primary_key == ["id"]
    assert [column.name for column in schema.columns if column.is_primary_key] == ["id"]

    price = schema.columns[3]
    assert price.nullable is True
    assert price.default_value == "9.99"
    assert schema.columns[2].nullable is False

    assert len(schema.foreign_keys) == 1
    fk = schema.foreign_keys[0]
    assert (fk.column, fk.references_table, fk.references_column) == ("author_id", "authors", "id")

    indexes = {index.name: index for index in schema.indexes}
    assert indexes["idx_books_title"].unique is True
    assert indexes["idx_books_title"].columns == ["title"]
    assert indexes["idx_books_author"].unique is False
    assert indexes["idx_books_author"].columns == ["author_id", "published"]


@pytest.mark.asyncio
async def test_composite_primary_key_follows_key_order(provider):
    schema = await provider.get_table_schema("memberships")
    assert schema.column_names() == ["user_id", "group_id", "role"]
    assert schema.primary_key == ["group_id", "user_id"]
    assert {column.name for column in schema.columns if column.is_primary_key} == {"group_id", "user_id"}
    # The index backing the primary key is implied by primary_key.
    assert schema.indexes == []


@pytest.mark.asyncio
async def test_table_without_primary_key(provider):
    await provider.execute_query("CREATE TABLE notes (body TEXT)")
    schema = await provider.get_table_schema("notes")
    assert schema.primary_key is None
    assert schema.columns[0].is_primary_key is False


@pytest.mark.asyncio
async def test_foreign_key_to_implicit_primary_key(provider):
    await provider.execute_query("CREATE TABLE reviews (id INTEGER PRIMARY KEY, book_id INTEGER REFERENCES books)")
    schema = await provider.get_table_schema("reviews")
    assert schema.foreign_keys[0].references_table == "books"
    assert schema.foreign_keys[0].references_column == "id"


@pytest.mark.asyncio
async def test_missing_table_is_reported(provider):
    with pytest.raises(TableNotFoundError, match="Table not found: ghosts"):
        await provider.get_table_schema("ghosts")
    with pytest.raises(TableNotFoundError):
        await provider.get_rows("ghosts", RowQuery())
    with pytest.raises(TableNotFoundError):
        await provider.count_rows("ghosts", RowQuery())


@pytest.mark.asyncio
async def test_exact_and_wildcard_filters(provider):
    exact = await provider.get_rows("authors", RowQuery(filters={"name": "abc"}))
    assert [row["name"] for row in exact.rows] == ["abc"]

    pattern = await provider.get_rows("authors", RowQuery(filters={"name": "abc%"}))
    assert sorted(row["name"] for row in pattern.rows) == ["abc", "abcd"]
    assert pattern.total == 2


@pytest.mark.asyncio
async def test_unknown_sort_column_fails(provider):
    with pytest.raises(InvalidColumnError, match="Invalid column: secret"):
        await provider.get_rows("authors", RowQuery(sort_by="secret"))


@pytest.mark.asyncio
async def test_sorting_descending(provider):
    response = await provider.get_rows("authors", RowQuery(sort_by="name", sort_order=SortOrder.DESCENDING))
    assert [row["name"] for row in response.rows] == ["xyz", "abcd", "abc"]


@pytest.mark.asyncio
async def test_pagination_has_more(provider):
    first = await provider.get_rows("events", RowQuery(offset=0, limit=5, sort_by="id"))
    assert first.total == 10
    assert len(first.rows) == 5
    assert first.has_more is True

    second = await provider.get_rows("events", RowQuery(offset=5, limit=5, sort_by="id"))
    assert [row["label"] for row in second.rows] == [f"event-{n}" for n in range(5, 10)]
    assert second.has_more is False


@pytest.mark.asyncio
async def test_limit_is_capped(provider):
    capped = await provider.get_rows("events", RowQuery(limit=5000))
    at_cap = await provider.get_rows("events", RowQuery(limit=500))
    assert capped.limit == 500
    assert capped.model_dump() == at_cap.model_dump()


@pytest.mark.asyncio
async def test_empty_result_still_lists_columns(provider):
    response = await provider.get_rows("authors", RowQuery(filters={"name": "nobody"}))
    assert response.rows == []
    assert response.columns == ["id", "name"]
    assert response.total == 0
    assert response.has_more is False


@pytest.mark.asyncio
async def test_row_values_are_mapped(provider):
    response = await provider.get_rows("books", RowQuery(sort_by="id"))
    first, second, orphan = response.rows
    assert first["in_print"] is True
    assert second["in_print"] is False
    assert first["price"] == 12.5
    assert first["published"] == "2024-01-01"
    assert first["cover"].startswith("[BLOB: 100 bytes, base64: ")
    assert first["cover"].endswith("...]")
    assert orphan["author_id"] is None
    assert orphan["price"] is None


@pytest.mark.asyncio
async def test_count_matches_total(provider):
    query = RowQuery(offset=1, limit=1, filters={"name": "abc%"})
    count = await provider.count_rows("authors", query)
    rows = await provider.get_rows("authors", query)
    assert count.count == rows.total == 2


@pytest.mark.asyncio
async def test_raw_select(provider):
    result = await provider.execute_query("SELECT 1")
    assert result.error is None
    assert result.columns == ["1"]
    assert result.rows == [{"1": 1}]
    assert result.affected_rows == 1
    assert result.execution_time_milliseconds >= 0


@pytest.mark.asyncio
async def test_raw_pragma_is_read_like(provider):
    result = await provider.execute_query("PRAGMA table_info(authors)")
    assert result.error is None
    assert [row["name"] for row in result.rows] == ["id", "name"]
    assert result.affected_rows == 2


@pytest.mark.asyncio
async def test_raw_syntax_error_is_returned(provider):
    result = await provider.execute_query("SELCT 1")
    assert result.error is not None
    assert "SELCT" in result.error
    assert result.columns == []
    assert result.rows == []
    assert result.affected_rows == 0


@pytest.mark.asyncio
async def test_raw_write_then_read_back(provider):
    inserted = await provider.execute_query("INSERT INTO authors (name) VALUES ('O''Brien \"quoted\"')")
    assert inserted.error is None
    assert inserted.affected_rows == 1
    assert inserted.rows == []

    response = await provider.get_rows("authors", RowQuery(filters={"name": "O'Brien \"quoted\""}))
    assert response.rows == [{"id": 4, "name": "O'Brien \"quoted\""}]


@pytest.mark.asyncio
async def test_raw_update_counts_changed_rows(provider):
    result = await provider.execute_query("UPDATE events SET label = 'x' WHERE id <= 4")
    assert result.affected_rows == 4


@pytest.mark.asyncio
async def test_raw_constraint_violation_is_returned(provider):
    result = await provider.execute_query("INSERT INTO books (title) VALUES ('First')")
    assert result.error is not None
    assert "UNIQUE" in result.error


@pytest.mark.asyncio
async def test_raw_row_ceiling(db_path):
    provider = SQLiteProvider(SQLitePool(str(db_path)), max_result_rows=3)
    with pytest.raises(TooManyRowsError):
        await provider.execute_query("SELECT * FROM events")


@pytest.mark.asyncio
async def test_raw_timeout_interrupts_statement(db_path):
    provider = SQLiteProvider(SQLitePool(str(db_path)), query_timeout_seconds=0.2)
    endless = "SELECT count(*) FROM (WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c) SELECT x FROM c)"
    with pytest.raises(QueryTimeoutError):
        await provider.execute_query(endless)


@pytest.mark.asyncio
async def test_identifier_injection_is_quoted(provider):
    with pytest.raises(TableNotFoundError):
        await provider.get_rows('authors"; DROP TABLE authors; --', RowQuery())
    assert (await provider.count_rows("authors", RowQuery())).count == 3


@pytest.mark.asyncio
async def test_memory_database_is_shared_between_connections():
    pool = SQLitePool(":memory:")
    provider = SQLiteProvider(pool, owns_pool=True)
    try:
        await provider.execute_query("CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT)")
        await provider.execute_query("INSERT INTO t (v) VALUES ('a')")
        assert [table.name for table in await provider.list_tables()] == ["t"]
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_internal_tables_hidden_but_sqlite_prefixed_user_tables_kept(provider):
    await provider.execute_query("CREATE TABLE sqliteusers (id INTEGER PRIMARY KEY, name TEXT)")
    await provider.execute_query("CREATE TABLE tickets (id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT)")
    await provider.execute_query("INSERT INTO tickets (title) VALUES ('first')")
    await provider.execute_query("INSERT INTO sqliteusers (name) VALUES ('ann')")

    names = [table.name for table in await provider.list_tables()]
    assert "sqliteusers" in names
    assert "tickets" in names
    assert "sqlite_sequence" not in names

    rows = await provider.get_rows("sqliteusers", RowQuery())
    assert rows.rows == [{"id": 1, "name": "ann"}]
    assert (await provider.count_rows("sqliteusers", RowQuery())).count == 1
    with pytest.raises(TableNotFoundError):
        await provider.count_rows("sqlite_sequence", RowQuery())


@pytest.mark.asyncio
async def test_raw_query_keeps_duplicate_column_names(provider):
    result = await provider.execute_query("SELECT 1 AS a, 2 AS a")
    assert result.columns == ["a", "a"]
    assert result.affected_rows == 1


@pytest.mark.asyncio
async def test_filter_on_unknown_column_fails_instead_of_matching_everything(provider):
    with pytest.raises(QueryError, match="no such column"):
        await provider.get_rows("authors", RowQuery(filters={"nope": "nope"}))
    with pytest.raises(QueryError, match="no such column"):
        await provider.count_rows("authors", RowQuery(filters={"nope": "nope"}))


@pytest.mark.asyncio
async def test_cancel_after_connection_closed_stays_a_cancellation(provider):
    conn = provider.pool.connect()
    conn.close()

    task = asyncio.create_task(provider._in_statement_thread(conn, lambda _conn: time.sleep(0.3)))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
