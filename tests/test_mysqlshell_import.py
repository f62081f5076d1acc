import gzip
import json

import pytest
import zstandard

from decentdb_import import GenericImportOptions, ImportFormat, analyze, run_import
from decentdb_import.errors import ConversionError
from decentdb_import.sources.mysqlshell import (
    MysqlShellDumpParser,
    ShellTableMeta,
    chunk_files,
    parse_tsv_line,
    read_table_meta,
    unescape_tsv_field,
)

USERS_SQL = """-- MySQLShell dump 2.0.1  Distrib Ver 8.0.36 for Linux on x86_64 - for MySQL 8.0.36 (MySQL Community Server (GPL)), for Linux (x86_64)
--
-- Host: localhost    Database: shop    Table: users
-- ------------------------------------------------------

CREATE TABLE IF NOT EXISTS `users` (
  `id` int NOT NULL AUTO_INCREMENT,
  `email` varchar(255) NOT NULL,
  `active` tinyint(1) NOT NULL DEFAULT '1',
  PRIMARY KEY (`id`),
  UNIQUE KEY `email` (`email`)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
"""

ORDERS_SQL = """CREATE TABLE IF NOT EXISTS `orders` (
  `id` int NOT NULL,
  `user_id` int NOT NULL,
  `note` text,
  PRIMARY KEY (`id`),
  KEY `user_id` (`user_id`),
  CONSTRAINT `orders_ibfk_1` FOREIGN KEY (`user_id`) REFERENCES `users` (`id`)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
"""


def _write_meta(dump, schema, table, columns, **extra):
    doc = {
        "options": {
            "schema": schema,
            "table": table,
            "columns": columns,
            "fieldsTerminatedBy": "\t",
            "fieldsEscapedBy": "\\",
            "fieldsEnclosedBy": "",
            "linesTerminatedBy": "\n",
        },
        "extension": "tsv.zst",
        "chunking": True,
    }
    doc["options"].update(extra)
    (dump / f"{schema}@{table}.json").write_text(json.dumps(doc))


def _write_zst(path, text):
    path.write_bytes(zstandard.ZstdCompressor().compress(text.encode("utf-8")))


def _make_shell_dump(tmp_path):
    dump = tmp_path / "shop-dump"
    dump.mkdir()
    (dump / "@.json").write_text(json.dumps({"dumper": "mysqlsh Ver 8.0.36", "schemas": ["shop"]}))
    (dump / "shop.json").write_text(json.dumps({"schema": "shop"}))

    _write_meta(dump, "shop", "users", ["id", "email", "active"])
    (dump / "shop@users.sql").write_text(USERS_SQL)
    _write_zst(dump / "shop@users@@0.tsv.zst", "1\tada@example.com\t1\n2\talan@example.com\t0\n")
    _write_zst(dump / "shop@users@@@1.tsv.zst", "3\tgrace@example.com\t1\n")

    _write_meta(dump, "shop", "orders", ["id", "user_id", "note"])
    (dump / "shop@orders.sql").write_text(ORDERS_SQL)
    _write_zst(dump / "shop@orders@@0.tsv.zst", "10\t1\tline\\none\n11\t3\t\\N\n")
    return dump


def test_unescape_tsv_field():
    assert unescape_tsv_field("\\N") is None
    assert unescape_tsv_field("a\\tb\\\\c") == "a\tb\\c"
    assert unescape_tsv_field("nul\\0") == "nul\x00"
    assert unescape_tsv_field("plain") == "plain"


def test_parse_tsv_line_with_enclosure():
    meta = ShellTableMeta(schema="s", table="t", columns=[], fields_terminated_by=",", fields_enclosed_by='"')
    assert parse_tsv_line('"a",\\N,"b"', meta) == ("a", None, "b")


def test_read_table_meta_defaults_compression_from_extension(tmp_path):
    path = tmp_path / "s@t.json"
    path.write_text(json.dumps({"options": {"columns": ["a"]}, "extension": "tsv.gz"}))
    meta = read_table_meta(str(path), "s", "t")
    assert meta.compression == "gzip"
    assert meta.columns == ["a"]


def test_chunk_files_are_in_numeric_order(tmp_path):
    for name in ("s@t@@10.tsv.zst", "s@t@@2.tsv.zst", "s@t@@@11.tsv.zst", "s@tt@@0.tsv.zst", "s@t@@0.tsv.zst.idx"):
        (tmp_path / name).write_bytes(b"")
    meta = ShellTableMeta(schema="s", table="t", columns=[])
    names = [p.rsplit("/", 1)[-1] for p in chunk_files(str(tmp_path), meta)]
    assert names == ["s@t@@2.tsv.zst", "s@t@@10.tsv.zst", "s@t@@@11.tsv.zst"]


def test_chunk_files_decode_special_characters(tmp_path):
    (tmp_path / "s@order%20items@@0.tsv.zst").write_bytes(b"")
    meta = ShellTableMeta(schema="s", table="order items", columns=[])
    assert len(chunk_files(str(tmp_path), meta)) == 1


def test_parser_reads_metadata_and_counts_rows(tmp_path):
    dump = _make_shell_dump(tmp_path)
    schema = MysqlShellDumpParser(str(dump)).parse()

    assert sorted(t.name for t in schema.tables) == ["orders", "users"]
    assert schema.row_counts == {"orders": 2, "users": 3}
    assert schema.warnings == []


def test_shell_dump_import(tmp_path, dest_path, connect, query):
    dump = _make_shell_dump(tmp_path)

    report = run_import(GenericImportOptions(source_path=str(dump), decentdb_path=dest_path), connect=connect)

    assert report.format == ImportFormat.MYSQL_SHELL_DUMP
    assert report.tables == ["users", "orders"]
    assert report.rows_copied == {"users": 3, "orders": 2}
    assert sorted(report.indexes_created) == ["email", "user_id"]
    assert query("SELECT email FROM users ORDER BY id") == [
        ("ada@example.com",),
        ("alan@example.com",),
        ("grace@example.com",),
    ]
    assert query("SELECT id, note FROM orders ORDER BY id") == [(10, "line\none"), (11, None)]


def test_gzip_chunks(tmp_path, dest_path, connect, query):
    dump = tmp_path / "gz-dump"
    dump.mkdir()
    (dump / "@.json").write_text(json.dumps({"schemas": ["app"]}))
    (dump / "app@t.json").write_text(
        json.dumps({"options": {"columns": ["id", "v"], "compression": "gzip"}, "extension": "tsv.gz"})
    )
    (dump / "app@t.sql").write_text("CREATE TABLE `t` (\n  `id` int NOT NULL,\n  `v` text,\n  PRIMARY KEY (`id`)\n);\n")
    with gzip.open(dump / "app@t@@0.tsv.gz", "wt", encoding="utf-8") as f:
        f.write("1\tone\n2\ttwo\n")

    report = run_import(GenericImportOptions(source_path=str(dump), decentdb_path=dest_path), connect=connect)
    assert report.rows_copied == {"t": 2}
    assert query("SELECT v FROM t ORDER BY id") == [("one",), ("two",)]


def test_missing_sql_file_is_a_warning(tmp_path):
    dump = _make_shell_dump(tmp_path)
    (dump / "shop@orders.sql").unlink()
    schema = MysqlShellDumpParser(str(dump)).parse()
    assert [t.name for t in schema.tables] == ["users"]
    assert schema.warnings == ["SQL schema file not found for shop.orders"]


def test_same_table_in_two_schemas_is_rejected(tmp_path):
    dump = _make_shell_dump(tmp_path)
    (dump / "@.json").write_text(json.dumps({"schemas": ["shop", "archive"]}))
    _write_meta(dump, "archive", "users", ["id", "email", "active"])
    (dump / "archive@users.sql").write_text(USERS_SQL)

    with pytest.raises(ConversionError, match="appears in schemas shop and archive"):
        MysqlShellDumpParser(str(dump)).parse()


def test_missing_top_level_metadata(tmp_path):
    with pytest.raises(FileNotFoundError):
        MysqlShellDumpParser(str(tmp_path)).parse()


def test_analyze_detects_directory(tmp_path):
    dump = _make_shell_dump(tmp_path)
    result = analyze(str(dump))
    assert result.format == ImportFormat.MYSQL_SHELL_DUMP
    assert result.total_rows == 5
