from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from providers.base import DatabaseProvider
from providers.errors import UnsupportedEngineError
from providers.sqlite import SQLitePool, SQLiteProvider
from utils.env_loader import env_int, load_environments

logger = logging.getLogger(__name__)


def resolve_engine(db_engine: Optional[str] = None) -> str:
    load_environments()
    engine = (db_engine or os.getenv("DB_ENGINE", "sqlite")).strip().lower()
    if engine in {"postgres", "postgresql"}:
        return "postgres"
    if engine == "sqlite":
        return "sqlite"
    raise UnsupportedEngineError(engine)


def sqlite_path(source_config: Optional[Dict[str, Any]] = None) -> str:
    load_environments()
    config = source_config or {}
    raw = config.get("db_path") or os.getenv("SQLITE_DB_PATH")
    if not raw:
        raise ValueError("SQLITE_DB_PATH is required for sqlite provider")
    if str(raw) == ":memory:":
        return ":memory:"
    db_path = Path(str(raw))
    if not db_path.exists():
        raise ValueError(f"SQLite database file does not exist: {db_path}")
    return str(db_path)


def postgres_conninfo(source_config: Optional[Dict[str, Any]] = None) -> str:
    load_environments()
    config = source_config or {}
    url = config.get("url") or os.getenv("DATABASE_URL")
    if url:
        return str(url)

    host = config.get("host") or os.getenv("DB_HOST")
    dbname = config.get("dbname") or os.getenv("DB_NAME")
    user = config.get("user") or os.getenv("DB_USER")
    password = config.get("password") or os.getenv("DB_PASSWORD")
    port_raw = config.get("port") or os.getenv("DB_PORT", "5432")
    if not host:
        raise ValueError("DB_HOST is required")
    if not dbname:
        raise ValueError("DB_NAME is required")
    if not user:
        raise ValueError("DB_USER is required")
    if not password:
        raise ValueError("DB_PASSWORD is required")

    from psycopg.conninfo import make_conninfo

    return make_conninfo(host=host, port=str(int(port_raw)), dbname=dbname, user=user, password=password)


def get_provider(
    db_engine: Optional[str] = None,
    pool: Any = None,
    source_config: Optional[Dict[str, Any]] = None,
    **options: Any,
) -> DatabaseProvider:
    """Wrap an existing, externally owned pool in the matching provider."""
    engine = resolve_engine(db_engine)
    config = source_config or {}
    if engine == "sqlite":
        if pool is None:
            pool = SQLitePool(sqlite_path(config))
            options.setdefault("owns_pool", True)
        return SQLiteProvider(pool, **options)

    if pool is None:
        raise ValueError("A psycopg AsyncConnectionPool is required; use open_provider() to create one")
    from providers.postgres import PostgresProvider

    schema_name = config.get("schema_name") or os.getenv("DB_SCHEMA", "public")
    return PostgresProvider(pool, schema_name=schema_name, **options)


async def open_provider(
    db_engine: Optional[str] = None,
    source_config: Optional[Dict[str, Any]] = None,
    **options: Any,
) -> DatabaseProvider:
    """Create the connection pool for the configured backend and wrap it."""
    engine = resolve_engine(db_engine)
    if engine == "sqlite":
        return get_provider(engine, source_config=source_config, **options)

    from psycopg_pool import AsyncConnectionPool

    from providers.postgres import configure_connection

    pool = AsyncConnectionPool(
        postgres_conninfo(source_config),
        min_size=env_int("DB_POOL_MIN_SIZE", 1),
        max_size=env_int("DB_POOL_MAX_SIZE", 5),
        kwargs={"autocommit": True},
        configure=configure_connection,
        open=False,
    )
    await pool.open()
    logger.info("Opened PostgreSQL pool (%d-%d connections)", pool.min_size, pool.max_size)
    return get_provider(engine, pool=pool, source_config=source_config, owns_pool=True, **options)


async def close_provider(provider: DatabaseProvider) -> None:
    await provider.close()
