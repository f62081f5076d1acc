from __future__ import annotations

import dataclasses
import os
import sqlite3
import urllib.parse
from contextlib import closing
from typing import Any, Callable, Iterator

from ..errors import ConversionError
from ..mapping import map_sqlite_type, quote_ident
from ..models import (
    Column,
    ForeignKey,
    GenericAnalysisResult,
    GenericImportOptions,
    ImportFormat,
    ImportReport,
    Index,
    SkippedIndex,
    Table,
)
from ..pipeline import CancelSignal, LoadedSchema, ProgressSink, RowBlock, check_cancelled, execute_import


def _connect_readonly(path: str) -> sqlite3.Connection:
    uri = "file:" + urllib.parse.quote(os.path.abspath(path)) + "?mode=ro"
    return sqlite3.connect(uri, uri=True)


def _iter_user_tables(conn: sqlite3.Connection) -> Iterator[str]:
    cur = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    )
    for (name,) in cur.fetchall():
        yield str(name)


def load_table_schema(conn: sqlite3.Connection, table: str, warnings: list[str]) -> Table:
    cols: list[Column] = []
    # PRAGMA table_info: cid, name, type, notnull, dflt_value, pk
    pk_count = 0
    for row in conn.execute(f"PRAGMA table_info({quote_ident(table)})").fetchall():
        is_pk = int(row[5]) > 0
        pk_count += is_pk
        cols.append(
            Column(
                name=str(row[1]),
                declared_type=str(row[2] or ""),
                not_null=bool(row[3]),
                is_primary_key=is_pk,
            )
        )

    if not cols:
        raise ConversionError(f"Table has no columns: {table}")

    if pk_count == 1:
        # INTEGER PRIMARY KEY aliases the rowid, which autoincrements.
        for i, c in enumerate(cols):
            if c.is_primary_key and c.declared_type.strip().upper() == "INTEGER":
                cols[i] = dataclasses.replace(c, is_auto_increment=True)

    fks: list[ForeignKey] = []
    # PRAGMA foreign_key_list: id, seq, table, from, to, on_update, on_delete, match
    fk_rows = conn.execute(f"PRAGMA foreign_key_list({quote_ident(table)})").fetchall()
    fk_sizes: dict[int, int] = {}
    for row in fk_rows:
        fk_sizes[int(row[0])] = fk_sizes.get(int(row[0]), 0) + 1
    for row in fk_rows:
        to_table = str(row[2])
        from_col = str(row[3])
        if fk_sizes[int(row[0])] > 1:
            if int(row[1]) == 0:
                warnings.append(f"Composite foreign key not imported: {table} -> {to_table}")
            continue
        if row[4] is None:
            # REFERENCES parent without a column list targets the parent's primary key.
            warnings.append(
                f"Foreign key dropped, implicit target column not supported: {table}.{from_col} -> {to_table}"
            )
            continue
        fks.append(ForeignKey(from_column=from_col, to_table=to_table, to_column=str(row[4])))

    # Only single-column indexes are imported. Unique single-column indexes
    # (including sqlite_autoindex_* from UNIQUE constraints) become column-level UNIQUE.
    indexes: list[Index] = []
    skipped: list[SkippedIndex] = []
    col_pos = {c.name: i for i, c in enumerate(cols)}

    # PRAGMA index_list: seq, name, unique, origin, partial
    for row in conn.execute(f"PRAGMA index_list({quote_ident(table)})").fetchall():
        idx_name = str(row[1])
        unique = bool(row[2])
        origin = str(row[3] or "")
        if origin.lower() == "pk":
            continue
        if len(row) > 4 and row[4]:
            skipped.append(SkippedIndex(name=idx_name, table=table, reason="Partial index not supported"))
            continue

        # index_info: seqno, cid, name
        cols_rows = conn.execute(f"PRAGMA index_info({quote_ident(idx_name)})").fetchall()
        if any(r[2] is None for r in cols_rows):
            skipped.append(SkippedIndex(name=idx_name, table=table, reason="Expression index not supported"))
            continue
        if len(cols_rows) != 1:
            indexes.append(
                Index(name=idx_name, table=table, columns=[str(r[2]) for r in cols_rows], is_unique=unique)
            )
            continue
        col_name = str(cols_rows[0][2])

        if unique and col_name in col_pos:
            i = col_pos[col_name]
            if not cols[i].is_primary_key:
                cols[i] = dataclasses.replace(cols[i], is_unique=True)
            continue

        indexes.append(Index(name=idx_name, table=table, columns=[col_name], is_unique=False))

    return Table(name=table, columns=cols, foreign_keys=fks, indexes=indexes, skipped_indexes=skipped)


def _table_row_count(conn: sqlite3.Connection, table: str) -> int:
    (n,) = conn.execute(f"SELECT COUNT(*) FROM {quote_ident(table)}").fetchone()
    return int(n)


class SqliteImportSource:
    format = ImportFormat.SQLITE

    def _load(self, source_path: str, cancel: CancelSignal | None) -> LoadedSchema:
        warnings: list[str] = []
        tables: list[Table] = []
        counts: dict[str, int] = {}
        try:
            with closing(_connect_readonly(source_path)) as conn:
                for name in _iter_user_tables(conn):
                    check_cancelled(cancel)
                    tables.append(load_table_schema(conn, name, warnings))
                    counts[name] = _table_row_count(conn, name)
        except sqlite3.DatabaseError as exc:
            raise ConversionError(f"Cannot read SQLite database {source_path}: {exc}") from exc
        return LoadedSchema(tables=tables, row_counts=counts, warnings=warnings)

    def analyze(self, source_path: str, *, cancel: CancelSignal | None = None) -> GenericAnalysisResult:
        if not os.path.exists(source_path):
            raise FileNotFoundError(source_path)
        return self._load(source_path, cancel).to_analysis(source_path, self.format)

    def import_(
        self,
        options: GenericImportOptions,
        *,
        progress: ProgressSink | None = None,
        cancel: CancelSignal | None = None,
        connect: Callable[[str], Any] | None = None,
    ) -> ImportReport:
        source_conn: sqlite3.Connection | None = None

        def read_rows(table: Table) -> Iterator[RowBlock]:
            nonlocal source_conn
            if source_conn is None:
                source_conn = _connect_readonly(options.source_path)
            col_list = ", ".join(quote_ident(c.name) for c in table.columns)
            cur = source_conn.execute(f"SELECT {col_list} FROM {quote_ident(table.name)}")
            try:
                yield None, cur
            finally:
                cur.close()

        try:
            return execute_import(
                options,
                fmt=self.format,
                load=lambda: self._load(options.source_path, cancel),
                map_type=map_sqlite_type,
                read_rows=read_rows,
                progress=progress,
                cancel=cancel,
                connect=connect,
            )
        finally:
            if source_conn is not None:
                source_conn.close()
