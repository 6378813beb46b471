from __future__ import annotations

from typing import Optional


class DatabaseError(RuntimeError):
    pass


class QueryError(DatabaseError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Database error: {message}")


class TableNotFoundError(DatabaseError):
    def __init__(self, table: str):
        self.table = table
        super().__init__(f"Table not found: {table}")


class InvalidColumnError(DatabaseError):
    def __init__(self, column: str):
        self.column = column
        super().__init__(f"Invalid column: {column}")


class QueryTimeoutError(DatabaseError):
    def __init__(self, seconds: Optional[float] = None):
        self.seconds = seconds
        super().__init__("Query timeout exceeded")


class TooManyRowsError(DatabaseError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Result set too large (max {limit} rows)")


class SerializationError(DatabaseError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Serialization error: {message}")


class UnsupportedEngineError(DatabaseError):
    def __init__(self, engine: str):
        self.engine = engine
        super().__init__(f"Unsupported db_engine: {engine}")
