import argparse
import asyncio
import json
import logging
from typing import Dict, List, Optional

from providers.errors import DatabaseError
from providers.factory import close_provider, open_provider
from providers.models import RowQuery, SortOrder


def _parse_filters(raw_filters: Optional[List[str]]) -> Dict[str, str]:
    filters: Dict[str, str] = {}
    for item in raw_filters or []:
        if "=" not in item:
            raise SystemExit(f"Invalid --filter {item!r}, expected column=value")
        column, value = item.split("=", 1)
        filters[column] = value
    return filters


async def _run(args: argparse.Namespace):
    source_config = {"db_path": args.sqlite_path} if args.sqlite_path else None
    provider = await open_provider(args.engine, source_config=source_config)
    try:
        if args.command == "tables":
            return {"tables": [table.model_dump(by_alias=True) for table in await provider.list_tables()]}
        if args.command == "schema":
            return (await provider.get_table_schema(args.table)).model_dump(by_alias=True)
        if args.command == "rows":
            query = RowQuery(
                offset=args.offset,
                limit=args.limit,
                sort_by=args.sort_by,
                sort_order=SortOrder(args.sort_order) if args.sort_order else None,
                filters=args.filters,
            )
            return (await provider.get_rows(args.table, query)).model_dump(by_alias=True)
        if args.command == "count":
            query = RowQuery(filters=args.filters)
            return (await provider.count_rows(args.table, query)).model_dump(by_alias=True)
        return (await provider.execute_query(args.sql)).model_dump(by_alias=True)
    finally:
        await close_provider(provider)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Inspect a SQLite or PostgreSQL database from the command line.")
    parser.add_argument("--engine", choices=["sqlite", "postgres"], default=None, help="Overrides DB_ENGINE.")
    parser.add_argument("--sqlite-path", default=None, help="Overrides SQLITE_DB_PATH.")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print output.")
    parser.add_argument("--verbose", action="store_true", help="Log generated SQL.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("tables", help="List tables with row counts.")

    schema_parser = sub.add_parser("schema", help="Show columns, keys and indexes of a table.")
    schema_parser.add_argument("table")

    rows_parser = sub.add_parser("rows", help="Page through table rows.")
    rows_parser.add_argument("table")
    rows_parser.add_argument("--offset", type=int, default=0)
    rows_parser.add_argument("--limit", type=int, default=100)
    rows_parser.add_argument("--sort-by", default=None)
    rows_parser.add_argument("--sort-order", choices=[order.value for order in SortOrder], default=None)
    rows_parser.add_argument("--filter", action="append", help="column=value, %% for wildcards. Repeatable.")

    count_parser = sub.add_parser("count", help="Count table rows matching filters.")
    count_parser.add_argument("table")
    count_parser.add_argument("--filter", action="append", help="column=value. Repeatable.")

    query_parser = sub.add_parser("query", help="Execute one raw SQL statement (may modify data).")
    query_parser.add_argument("sql")

    args = parser.parse_args(argv)
    args.filters = _parse_filters(getattr(args, "filter", None))
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        result = asyncio.run(_run(args))
    except DatabaseError as exc:
        print(json.dumps({"error": str(exc)}))
        raise SystemExit(1) from exc
    print(json.dumps(result, indent=2 if args.pretty else None, default=str))


if __name__ == "__main__":
    main()
