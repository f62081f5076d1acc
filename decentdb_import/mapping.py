"""Type and identifier mapping from source dialects onto DecentDB.

DecentDB column types: INT64, BOOL, FLOAT64, TEXT, BLOB, UUID, DECIMAL(p,s).
Every mapper is a pure function of the declared type string and falls back to
TEXT for anything it does not recognise.
"""

from __future__ import annotations

import re
from typing import Iterable

from .errors import ConversionError
from .models import Table

DEFAULT_DECIMAL = "DECIMAL(18,6)"

_PARAMS_RE = re.compile(r"\(([^)]*)\)")
_MYSQL_MODIFIERS_RE = re.compile(r"\b(?:UNSIGNED|SIGNED|ZEROFILL)\b")


def _params(t: str) -> str | None:
    m = _PARAMS_RE.search(t)
    if not m:
        return None
    return re.sub(r"\s+", "", m.group(1))


def _decimal(params: str | None) -> str:
    if params:
        return f"DECIMAL({params})"
    return DEFAULT_DECIMAL


def map_sqlite_type(declared_type: str) -> str:
    # SQLite uses affinities; map best-effort. Order matters.
    t = (declared_type or "").strip().upper()
    if not t:
        return "TEXT"

    if "BOOL" in t:
        return "BOOL"
    if "INT" in t:
        return "INT64"
    if any(k in t for k in ("REAL", "FLOA", "DOUB")):
        return "FLOAT64"
    if "BLOB" in t:
        return "BLOB"
    if "UUID" in t:
        return "UUID"
    if "DECIMAL" in t or "NUMERIC" in t:
        return _decimal(_params(t))
    if any(k in t for k in ("CHAR", "CLOB", "TEXT")):
        return "TEXT"

    return "TEXT"


_PG_INT_TYPES = {
    "integer",
    "int",
    "int4",
    "smallint",
    "int2",
    "bigint",
    "int8",
    "serial",
    "serial4",
    "bigserial",
    "serial8",
    "smallserial",
    "serial2",
}
_PG_FLOAT_TYPES = {"real", "float4", "double precision", "float8", "float"}


def map_pg_type(pg_type: str) -> str:
    t = (pg_type or "").strip().lower()
    if not t:
        return "TEXT"

    # Arrays are kept as their PostgreSQL literal text.
    if t.endswith("]"):
        return "TEXT"

    t = re.sub(r"^(?:pg_catalog|public)\.", "", t)
    base_type = re.sub(r"\s+", " ", _PARAMS_RE.sub("", t)).strip()

    if base_type in _PG_INT_TYPES:
        return "INT64"
    if base_type in ("boolean", "bool"):
        return "BOOL"
    if base_type in _PG_FLOAT_TYPES:
        return "FLOAT64"
    if base_type in ("numeric", "decimal"):
        return _decimal(_params(t))
    if base_type == "uuid":
        return "UUID"
    if base_type == "bytea":
        return "BLOB"

    # Character, date/time, json, network, text search, money, ... as TEXT.
    return "TEXT"


_MYSQL_INT_TYPES = {"INT", "INTEGER", "BIGINT", "SMALLINT", "MEDIUMINT", "TINYINT", "BIT", "YEAR"}
_MYSQL_FLOAT_TYPES = {"FLOAT", "DOUBLE", "DOUBLE PRECISION", "REAL"}
_MYSQL_BLOB_TYPES = {"BLOB", "TINYBLOB", "MEDIUMBLOB", "LONGBLOB", "BINARY", "VARBINARY"}


def map_mysql_type(mysql_type: str) -> str:
    t = (mysql_type or "").strip().upper()
    if not t:
        return "TEXT"

    t = _MYSQL_MODIFIERS_RE.sub("", t).strip()
    params = _params(t)
    base_type = re.sub(r"\s+", " ", _PARAMS_RE.sub("", t)).strip()

    if base_type == "TINYINT" and params == "1":
        return "BOOL"
    if base_type in ("BOOL", "BOOLEAN"):
        return "BOOL"
    if base_type in _MYSQL_INT_TYPES:
        return "INT64"
    if base_type in _MYSQL_FLOAT_TYPES:
        return "FLOAT64"
    if base_type in ("DECIMAL", "NUMERIC", "DEC", "FIXED"):
        return _decimal(params)
    if base_type in _MYSQL_BLOB_TYPES:
        return "BLOB"

    # CHAR/VARCHAR/TEXT variants, DATE/TIME types, ENUM, SET, JSON ...
    return "TEXT"


def needs_cast(decent_type: str) -> bool:
    return decent_type.startswith("DECIMAL") or decent_type == "UUID"


def normalize_ident(name: str, *, identifier_case: str) -> str:
    if identifier_case == "preserve":
        return name
    if identifier_case == "lower":
        return name.lower()
    raise ValueError(f"Unknown identifier_case: {identifier_case}")


def quote_ident(name: str) -> str:
    # Double-quote identifiers (Postgres-style). Escape embedded quotes.
    return '"' + name.replace('"', '""') + '"'


def build_name_maps(
    tables: Iterable[Table], *, identifier_case: str
) -> tuple[dict[str, str], dict[str, dict[str, str]]]:
    """Build source -> destination name maps for tables and their columns.

    Raises ConversionError when two distinct source names normalize to the
    same destination name, either among tables or within one table's columns.
    """
    tables = list(tables)
    table_map: dict[str, str] = {}
    used_tables: dict[str, str] = {}
    for t in tables:
        dst = normalize_ident(t.name, identifier_case=identifier_case)
        if dst in used_tables and used_tables[dst] != t.name:
            raise ConversionError(
                f"Table name collision after normalization: '{t.name}' and '{used_tables[dst]}' -> '{dst}'"
            )
        used_tables[dst] = t.name
        table_map[t.name] = dst

    col_map: dict[str, dict[str, str]] = {}
    for t in tables:
        used_cols: dict[str, str] = {}
        per: dict[str, str] = {}
        for c in t.columns:
            dst = normalize_ident(c.name, identifier_case=identifier_case)
            if dst in used_cols and used_cols[dst] != c.name:
                raise ConversionError(
                    f"Column name collision after normalization: "
                    f"'{t.name}.{c.name}' and '{t.name}.{used_cols[dst]}' -> '{dst}'"
                )
            used_cols[dst] = c.name
            per[c.name] = dst
        col_map[t.name] = per
    return table_map, col_map
