import sqlite3

import pytest


def _sqlite_destination(path):
    # Autocommit mode: the importer issues BEGIN/COMMIT/ROLLBACK itself,
    # exactly as it does against a DecentDB connection.
    return sqlite3.connect(path, isolation_level=None)


@pytest.fixture
def connect():
    return _sqlite_destination


@pytest.fixture
def dest_path(tmp_path):
    return str(tmp_path / "out.ddb")


@pytest.fixture
def query(dest_path):
    def run(sql, params=()):
        conn = sqlite3.connect(dest_path)
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    return run
