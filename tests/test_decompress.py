import gzip
import os
import tarfile
import zipfile

from decentdb_import.decompress import cleanup, decompress, is_compressed
from decentdb_import.models import ImportPhase


def test_is_compressed():
    assert is_compressed("a.sql.gz")
    assert is_compressed("A.TGZ")
    assert is_compressed("dump.tar.gz")
    assert is_compressed("dump.zip")
    assert not is_compressed("dump.sql")


def test_uncompressed_passthrough(tmp_path):
    path = str(tmp_path / "dump.sql")
    open(path, "w").close()
    result = decompress(path, str(tmp_path / "work"))
    assert result.extracted_path == path
    assert result.temp_directory is None


def test_gzip_extracts_inner_name(tmp_path):
    src = tmp_path / "dump.sql.gz"
    with gzip.open(src, "wb") as f:
        f.write(b"-- MySQL dump\n")
    events = []
    result = decompress(str(src), str(tmp_path / "work"), events.append)
    try:
        assert os.path.basename(result.extracted_path) == "dump.sql"
        with open(result.extracted_path, "rb") as f:
            assert f.read() == b"-- MySQL dump\n"
        assert os.path.dirname(result.extracted_path) == result.temp_directory
        assert events and events[0].phase == ImportPhase.ANALYZING
        assert "Decompressing" in events[0].message
    finally:
        cleanup(result.temp_directory)
    assert not os.path.exists(result.temp_directory)


def test_tar_gz_with_single_sql_returns_the_file(tmp_path):
    inner = tmp_path / "backup.sql"
    inner.write_text("-- PostgreSQL database dump\n")
    archive = tmp_path / "backup.tar.gz"
    with tarfile.open(archive, "w:gz") as tf:
        tf.add(inner, arcname="backup.sql")

    result = decompress(str(archive), str(tmp_path / "work"))
    try:
        assert os.path.isfile(result.extracted_path)
        assert os.path.basename(result.extracted_path) == "backup.sql"
        assert result.extracted_path != result.temp_directory
    finally:
        cleanup(result.temp_directory)


def test_zip_with_single_directory_returns_the_directory(tmp_path):
    archive = tmp_path / "dump.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("shop-dump/@.json", "{}")
        zf.writestr("shop-dump/shop@users.json", "{}")
    result = decompress(str(archive), str(tmp_path / "work"))
    try:
        assert os.path.isdir(result.extracted_path)
        assert os.path.basename(result.extracted_path) == "shop-dump"
    finally:
        cleanup(result.temp_directory)


def test_zip_with_many_entries_returns_the_root(tmp_path):
    archive = tmp_path / "dump.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("a.sql", "x")
        zf.writestr("b.sql", "y")
    result = decompress(str(archive), str(tmp_path / "work"))
    try:
        assert result.extracted_path == result.temp_directory
    finally:
        cleanup(result.temp_directory)


def test_each_call_gets_its_own_temp_directory(tmp_path):
    src = tmp_path / "d.sql.gz"
    with gzip.open(src, "wb") as f:
        f.write(b"x")
    a = decompress(str(src), str(tmp_path))
    b = decompress(str(src), str(tmp_path))
    try:
        assert a.temp_directory != b.temp_directory
    finally:
        cleanup(a.temp_directory)
        cleanup(b.temp_directory)


def test_cleanup_tolerates_missing_directory(tmp_path):
    cleanup(str(tmp_path / "never-created"))
    cleanup(None)
