"""Conversion of backend row values into JSON-ready values.

Every column is routed to a bucket chosen from its declared type name. The
bucket's reader is tried first; when the declared type lied about the stored
value (routine under SQLite's dynamic typing) the value goes through a fixed
probe chain: integer, float, text, boolean, binary. A value no reader accepts
becomes ``None``.
"""

from __future__ import annotations

import base64
import datetime as dt
import json
import math
import re
import uuid
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from providers.base import check_row_shape

BINARY_PREVIEW_BYTES = 64


class TypeBucket(str, Enum):
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    TEMPORAL = "temporal"
    UUID = "uuid"
    DECIMAL = "decimal"
    JSON = "json"
    BINARY = "binary"
    UNKNOWN = "unknown"


# Marks a failed read, distinct from a successful read of NULL.
_MISS = object()

POSTGRES_TYPE_BUCKETS: Dict[str, TypeBucket] = {
    "boolean": TypeBucket.BOOLEAN,
    "bool": TypeBucket.BOOLEAN,
    "smallint": TypeBucket.INTEGER,
    "int2": TypeBucket.INTEGER,
    "smallserial": TypeBucket.INTEGER,
    "integer": TypeBucket.INTEGER,
    "int": TypeBucket.INTEGER,
    "int4": TypeBucket.INTEGER,
    "serial": TypeBucket.INTEGER,
    "bigint": TypeBucket.INTEGER,
    "int8": TypeBucket.INTEGER,
    "bigserial": TypeBucket.INTEGER,
    "oid": TypeBucket.INTEGER,
    "real": TypeBucket.FLOAT,
    "float4": TypeBucket.FLOAT,
    "double precision": TypeBucket.FLOAT,
    "float8": TypeBucket.FLOAT,
    "text": TypeBucket.TEXT,
    "character varying": TypeBucket.TEXT,
    "varchar": TypeBucket.TEXT,
    "character": TypeBucket.TEXT,
    "char": TypeBucket.TEXT,
    "bpchar": TypeBucket.TEXT,
    "name": TypeBucket.TEXT,
    "citext": TypeBucket.TEXT,
    "bytea": TypeBucket.BINARY,
    "date": TypeBucket.TEMPORAL,
    "time": TypeBucket.TEMPORAL,
    "time without time zone": TypeBucket.TEMPORAL,
    "time with time zone": TypeBucket.TEMPORAL,
    "timetz": TypeBucket.TEMPORAL,
    "timestamp": TypeBucket.TEMPORAL,
    "timestamp without time zone": TypeBucket.TEMPORAL,
    "timestamp with time zone": TypeBucket.TEMPORAL,
    "timestamptz": TypeBucket.TEMPORAL,
    "interval": TypeBucket.TEMPORAL,
    "uuid": TypeBucket.UUID,
    "numeric": TypeBucket.DECIMAL,
    "decimal": TypeBucket.DECIMAL,
    "money": TypeBucket.DECIMAL,
    "json": TypeBucket.JSON,
    "jsonb": TypeBucket.JSON,
}


def _sqlite_bucket(declared: str) -> TypeBucket:
    # Follows SQLite's affinity rules, with names for the common aliases.
    lowered = declared.lower()
    if not lowered:
        return TypeBucket.UNKNOWN
    if "bool" in lowered:
        return TypeBucket.BOOLEAN
    if "int" in lowered:
        return TypeBucket.INTEGER
    if any(tok in lowered for tok in ("char", "clob", "text")):
        return TypeBucket.TEXT
    if "blob" in lowered:
        return TypeBucket.BINARY
    if any(tok in lowered for tok in ("real", "floa", "doub")):
        return TypeBucket.FLOAT
    if any(tok in lowered for tok in ("date", "time")):
        return TypeBucket.TEMPORAL
    if "uuid" in lowered:
        return TypeBucket.UUID
    if "json" in lowered:
        return TypeBucket.JSON
    if any(tok in lowered for tok in ("dec", "num")):
        return TypeBucket.DECIMAL
    return TypeBucket.UNKNOWN


def _postgres_bucket(declared: str) -> TypeBucket:
    lowered = declared.strip().lower()
    if lowered.endswith("[]") or lowered.startswith("_"):
        return TypeBucket.JSON
    base_name = re.sub(r"\(.*?\)", "", lowered)
    base_name = re.sub(r"\s+", " ", base_name).strip()
    return POSTGRES_TYPE_BUCKETS.get(base_name, TypeBucket.UNKNOWN)


def classify_type(type_name: Optional[str], engine: str) -> TypeBucket:
    declared = (type_name or "").strip()
    if engine == "sqlite":
        return _sqlite_bucket(declared)
    if not declared:
        return TypeBucket.UNKNOWN
    return _postgres_bucket(declared)


def render_binary(data: bytes) -> str:
    preview = base64.b64encode(bytes(data[:BINARY_PREVIEW_BYTES])).decode("ascii")
    if len(data) > BINARY_PREVIEW_BYTES:
        preview += "..."
    return f"[BLOB: {len(data)} bytes, base64: {preview}]"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _read_integer(value: Any) -> Any:
    return value if _is_int(value) else _MISS


def _read_float(value: Any) -> Any:
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    return _MISS


def _read_text(value: Any) -> Any:
    return value if isinstance(value, str) else _MISS


def _read_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    # SQLite stores booleans as 0/1 integers.
    if _is_int(value):
        return value != 0
    return _MISS


def _read_binary(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return render_binary(bytes(value))
    return _MISS


def _read_real(value: Any) -> Any:
    if _is_int(value):
        return float(value)
    return _read_float(value)


def _read_canonical_text(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, (dt.date, dt.time, dt.timedelta, uuid.UUID, Decimal)):
        return str(value)
    return _MISS


def _read_structured(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return to_plain(value)
    return _MISS


def _read_json_text(value: Any) -> Any:
    # SQLite keeps JSON documents as TEXT.
    if isinstance(value, (dict, list, tuple)):
        return to_plain(value)
    if isinstance(value, str):
        try:
            return to_plain(json.loads(value))
        except ValueError:
            return _MISS
    return _MISS


def _read_unknown(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return to_plain(value)
    if isinstance(value, (int, float, bytes, bytearray, memoryview)):
        return _MISS
    # Driver objects without a dedicated bucket (ranges, inet, ...).
    return str(value)


BUCKET_READERS: Dict[TypeBucket, Callable[[Any], Any]] = {
    TypeBucket.BOOLEAN: _read_boolean,
    TypeBucket.INTEGER: _read_integer,
    TypeBucket.FLOAT: _read_real,
    TypeBucket.TEXT: _read_text,
    TypeBucket.TEMPORAL: _read_canonical_text,
    TypeBucket.UUID: _read_canonical_text,
    TypeBucket.DECIMAL: _read_canonical_text,
    TypeBucket.JSON: _read_structured,
    TypeBucket.BINARY: _read_binary,
    TypeBucket.UNKNOWN: _read_unknown,
}

SQLITE_READER_OVERRIDES: Dict[TypeBucket, Callable[[Any], Any]] = {
    TypeBucket.JSON: _read_json_text,
}

FALLBACK_PROBES: Tuple[Callable[[Any], Any], ...] = (
    _read_integer,
    _read_float,
    _read_text,
    _read_boolean,
    _read_binary,
)


def to_plain(value: Any) -> Any:
    """Recursively turn a structured value into JSON-compatible data."""
    if value is None or isinstance(value, (bool, str)) or _is_int(value):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {str(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return render_binary(bytes(value))
    return str(value)


def map_value(value: Any, type_name: Optional[str], engine: str) -> Any:
    if value is None:
        return None

    bucket = classify_type(type_name, engine)
    reader = BUCKET_READERS[bucket]
    if engine == "sqlite":
        reader = SQLITE_READER_OVERRIDES.get(bucket, reader)

    converted = reader(value)
    if converted is not _MISS:
        return converted

    for probe in FALLBACK_PROBES:
        converted = probe(value)
        if converted is not _MISS:
            return converted
    return None


def map_row(
    columns: Sequence[str],
    type_names: Sequence[Optional[str]],
    values: Sequence[Any],
    engine: str,
) -> Dict[str, Any]:
    check_row_shape(columns, values)
    return {
        column: map_value(value, type_name, engine)
        for column, type_name, value in zip(columns, type_names, values)
    }


def map_rows(
    columns: Sequence[str],
    type_names: Sequence[Optional[str]],
    rows: Sequence[Sequence[Any]],
    engine: str,
) -> List[Dict[str, Any]]:
    return [map_row(columns, type_names, row, engine) for row in rows]
