import json
import sqlite3

import pytest

from decentdb_import import cli, destination


def _make_sqlite_source(path):
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE Users (Id INTEGER PRIMARY KEY, Email TEXT UNIQUE)")
    conn.executemany("INSERT INTO Users VALUES (?, ?)", [(1, "ada@example.com"), (2, "alan@example.com")])
    conn.commit()
    conn.close()


@pytest.fixture
def sqlite_destination(monkeypatch):
    opened = []

    def fake_connect(path, *, cache_pages=None, cache_mb=None):
        opened.append((path, cache_pages, cache_mb))
        return sqlite3.connect(path, isolation_level=None)

    monkeypatch.setattr(destination, "connect_decentdb", fake_connect)
    return opened


def test_cli_import_writes_report_json(tmp_path, sqlite_destination, capsys):
    src = str(tmp_path / "src.db")
    dest = str(tmp_path / "out.ddb")
    report_path = tmp_path / "report.json"
    _make_sqlite_source(src)

    code = cli.main([src, dest, "--no-progress", "--report-json", str(report_path), "--cache-mb", "64"])

    assert code == 0
    assert sqlite_destination == [(dest, None, 64)]
    out = capsys.readouterr().out
    assert "Imported" in out

    data = json.loads(report_path.read_text())
    assert data["format"] == "sqlite"
    assert data["tables"] == ["users"]
    assert data["rows_copied"] == {"users": 2}
    assert data["total_rows"] == 2
    assert data["unique_columns_added"] == ["users.email"]
    assert data["table_name_map"] == {"Users": "users"}
    assert data["elapsed_seconds"] >= 0


def test_cli_report_json_to_stdout(tmp_path, sqlite_destination, capsys):
    src = str(tmp_path / "src.db")
    _make_sqlite_source(src)

    code = cli.main([src, str(tmp_path / "out.ddb"), "--no-progress", "--preserve-case", "--report-json", "-"])

    assert code == 0
    out = capsys.readouterr().out
    payload = out[out.index("{") :]
    assert json.loads(payload)["identifier_case"] == "preserve"


def test_cli_existing_destination_exits_1(tmp_path, sqlite_destination, capsys):
    src = str(tmp_path / "src.db")
    dest = tmp_path / "out.ddb"
    _make_sqlite_source(src)
    dest.write_bytes(b"existing")

    assert cli.main([src, str(dest), "--no-progress"]) == 1
    assert "Destination already exists" in capsys.readouterr().err
    assert sqlite_destination == []


def test_cli_missing_source_exits_1(tmp_path, capsys):
    assert cli.main([str(tmp_path / "nope.db"), str(tmp_path / "out.ddb"), "--no-progress"]) == 1


def test_cli_analyze_only(tmp_path, capsys):
    src = str(tmp_path / "src.db")
    _make_sqlite_source(src)

    assert cli.main([src, "--analyze-only"]) == 0
    out = capsys.readouterr().out
    assert "Users" in out
    assert not (tmp_path / "out.ddb").exists()


def test_cli_requires_destination_without_analyze_only(tmp_path):
    src = str(tmp_path / "src.db")
    _make_sqlite_source(src)
    with pytest.raises(SystemExit) as exc_info:
        cli.main([src])
    assert exc_info.value.code == 2


def test_cli_forced_format(tmp_path, sqlite_destination, capsys):
    src = tmp_path / "dump.sql"
    src.write_text("-- MySQL dump\nCREATE TABLE `t` (\n  `id` int\n);\nINSERT INTO `t` VALUES (1),(2);\n")

    code = cli.main([str(src), str(tmp_path / "out.ddb"), "--format", "mysql", "--no-progress"])
    assert code == 0

    code = cli.main([str(src), "--analyze-only", "--format", "sqlite"])
    assert code == 1
