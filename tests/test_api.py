import gzip
import os
import tarfile

import pytest

from decentdb_import import (
    ConversionError,
    GenericImportOptions,
    ImportFormat,
    ImportPhase,
    analyze,
    get_import_source,
    report_to_dict,
    run_import,
    write_report_json,
)
from decentdb_import.sources import MysqlDumpImportSource, PgDumpImportSource, SqliteImportSource

PG_DUMP = (
    "--\n-- PostgreSQL database dump\n--\n\n"
    "CREATE TABLE public.notes (\n    id integer NOT NULL,\n    body text\n);\n\n"
    "COPY public.notes (id, body) FROM stdin;\n1\thello\n2\t\\N\n\\.\n\n"
    "ALTER TABLE ONLY public.notes\n    ADD CONSTRAINT notes_pkey PRIMARY KEY (id);\n"
)


def test_get_import_source_dispatch():
    assert isinstance(get_import_source(ImportFormat.SQLITE), SqliteImportSource)
    assert isinstance(get_import_source(ImportFormat.PG_DUMP), PgDumpImportSource)
    assert isinstance(get_import_source(ImportFormat.MYSQL_DUMP), MysqlDumpImportSource)
    with pytest.raises(ConversionError, match="Unsupported import format: unknown"):
        get_import_source(ImportFormat.UNKNOWN)


def test_gzipped_dump_is_detected_and_temp_files_removed(tmp_path, dest_path, connect, query):
    src = tmp_path / "notes.sql.gz"
    with gzip.open(src, "wt", encoding="utf-8") as f:
        f.write(PG_DUMP)
    work = tmp_path / "work"
    events = []

    report = run_import(
        GenericImportOptions(source_path=str(src), decentdb_path=dest_path, working_directory=str(work)),
        progress=events.append,
        connect=connect,
    )

    assert report.format == ImportFormat.PG_DUMP
    assert report.source_path == str(src)
    assert report.rows_copied == {"notes": 2}
    assert query("SELECT id, body FROM notes ORDER BY id") == [(1, "hello"), (2, None)]
    assert os.listdir(work) == []
    assert events[0].phase == ImportPhase.ANALYZING
    assert events[-1].phase == ImportPhase.COMPLETE


def test_tarball_analyze(tmp_path):
    inner = tmp_path / "notes.sql"
    inner.write_text(PG_DUMP)
    archive = tmp_path / "notes.tgz"
    with tarfile.open(archive, "w:gz") as tf:
        tf.add(inner, arcname="notes.sql")
    work = tmp_path / "work"

    result = analyze(str(archive), working_directory=str(work))

    assert result.source_path == str(archive)
    assert result.format == ImportFormat.PG_DUMP
    assert result.row_counts == {"notes": 2}
    assert os.listdir(work) == []


def test_temp_files_removed_when_import_fails(tmp_path, dest_path, connect):
    src = tmp_path / "bad.sql.gz"
    with gzip.open(src, "wt", encoding="utf-8") as f:
        f.write("just some text\n")
    work = tmp_path / "work"

    with pytest.raises(ConversionError, match="Unable to detect import format"):
        run_import(
            GenericImportOptions(source_path=str(src), decentdb_path=dest_path, working_directory=str(work)),
            connect=connect,
        )
    assert os.listdir(work) == []
    assert not os.path.exists(dest_path)


def test_explicit_format_skips_detection(tmp_path, dest_path, connect):
    src = tmp_path / "notes.txt"
    src.write_text(PG_DUMP.replace("-- PostgreSQL database dump", "-- exported notes"))

    report = run_import(
        GenericImportOptions(source_path=str(src), decentdb_path=dest_path, format=ImportFormat.PG_DUMP),
        connect=connect,
    )
    assert report.rows_copied == {"notes": 2}


def test_missing_source(tmp_path, dest_path):
    with pytest.raises(FileNotFoundError):
        run_import(GenericImportOptions(source_path=str(tmp_path / "nope.sql"), decentdb_path=dest_path))
    with pytest.raises(FileNotFoundError):
        analyze(str(tmp_path / "nope.sql"))


def test_report_json(tmp_path, dest_path, connect, capsys):
    src = tmp_path / "notes.sql"
    src.write_text(PG_DUMP)
    report = run_import(GenericImportOptions(source_path=str(src), decentdb_path=dest_path), connect=connect)

    data = report_to_dict(report)
    assert data["format"] == "pg_dump"
    assert data["column_name_map"] == {"notes": {"id": "id", "body": "body"}}
    assert data["skipped_indexes"] == []

    write_report_json(report, "-")
    assert '"total_rows": 2' in capsys.readouterr().out
