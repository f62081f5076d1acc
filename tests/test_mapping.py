import pytest

from decentdb_import.errors import ConversionError
from decentdb_import.mapping import (
    build_name_maps,
    map_mysql_type,
    map_pg_type,
    map_sqlite_type,
    normalize_ident,
    quote_ident,
)
from decentdb_import.models import Column, Table


@pytest.mark.parametrize(
    "declared,expected",
    [
        ("INTEGER", "INT64"),
        ("bigint", "INT64"),
        ("BOOLEAN", "BOOL"),
        ("REAL", "FLOAT64"),
        ("double", "FLOAT64"),
        ("BLOB", "BLOB"),
        ("UUID", "UUID"),
        ("NUMERIC(10, 2)", "DECIMAL(10,2)"),
        ("DECIMAL", "DECIMAL(18,6)"),
        ("VARCHAR(20)", "TEXT"),
        ("", "TEXT"),
        ("whatever", "TEXT"),
    ],
)
def test_map_sqlite_type(declared, expected):
    assert map_sqlite_type(declared) == expected


@pytest.mark.parametrize(
    "declared,expected",
    [
        ("integer", "INT64"),
        ("bigserial", "INT64"),
        ("smallint", "INT64"),
        ("boolean", "BOOL"),
        ("double precision", "FLOAT64"),
        ("real", "FLOAT64"),
        ("numeric(12,4)", "DECIMAL(12,4)"),
        ("numeric", "DECIMAL(18,6)"),
        ("uuid", "UUID"),
        ("bytea", "BLOB"),
        ("integer[]", "TEXT"),
        ("character varying(255)", "TEXT"),
        ("timestamp without time zone", "TEXT"),
        ("jsonb", "TEXT"),
        ("public.mood", "TEXT"),
    ],
)
def test_map_pg_type(declared, expected):
    assert map_pg_type(declared) == expected


@pytest.mark.parametrize(
    "declared,expected",
    [
        ("int", "INT64"),
        ("int(11) unsigned", "INT64"),
        ("bigint(20) unsigned zerofill", "INT64"),
        ("tinyint(1)", "BOOL"),
        ("TINYINT(1) UNSIGNED", "BOOL"),
        ("tinyint(4)", "INT64"),
        ("bit(1)", "INT64"),
        ("double", "FLOAT64"),
        ("float unsigned", "FLOAT64"),
        ("decimal(10,2)", "DECIMAL(10,2)"),
        ("decimal", "DECIMAL(18,6)"),
        ("varchar(255)", "TEXT"),
        ("enum('a','b')", "TEXT"),
        ("datetime", "TEXT"),
        ("json", "TEXT"),
        ("longblob", "BLOB"),
        ("varbinary(16)", "BLOB"),
        ("geometry", "TEXT"),
    ],
)
def test_map_mysql_type(declared, expected):
    assert map_mysql_type(declared) == expected


def test_type_mapping_is_deterministic():
    for t in ("decimal(10,2)", "tinyint(1)", "varchar(5)", "nonsense"):
        assert map_mysql_type(t) == map_mysql_type(t)
        assert map_pg_type(t) == map_pg_type(t)
        assert map_sqlite_type(t) == map_sqlite_type(t)


def test_normalize_ident():
    assert normalize_ident("UserId", identifier_case="lower") == "userid"
    assert normalize_ident("UserId", identifier_case="preserve") == "UserId"
    with pytest.raises(ValueError):
        normalize_ident("x", identifier_case="upper")


def test_quote_ident_escapes_quotes():
    assert quote_ident("a") == '"a"'
    assert quote_ident('we"ird') == '"we""ird"'


def _t(name, *cols):
    return Table(name=name, columns=[Column(name=c, declared_type="INT") for c in cols])


def test_build_name_maps_total():
    tables = [_t("Users", "Id", "Name"), _t("Orders", "Id", "UserId")]
    table_map, col_map = build_name_maps(tables, identifier_case="lower")
    assert table_map == {"Users": "users", "Orders": "orders"}
    assert col_map["Orders"] == {"Id": "id", "UserId": "userid"}


def test_build_name_maps_table_collision():
    with pytest.raises(ConversionError, match="Table name collision"):
        build_name_maps([_t("Orders", "a"), _t("orders", "a")], identifier_case="lower")


def test_build_name_maps_column_collision():
    with pytest.raises(ConversionError, match="Column name collision"):
        build_name_maps([_t("t", "Name", "NAME")], identifier_case="lower")


def test_build_name_maps_preserve_has_no_collision():
    table_map, _ = build_name_maps([_t("Orders", "a"), _t("orders", "a")], identifier_case="preserve")
    assert table_map == {"Orders": "Orders", "orders": "orders"}
