"""Shared analyze -> schema -> copy -> index pipeline used by every import source.

A source contributes three things: the parsed tables (with row counts and
parse warnings), the type mapper for its dialect, and a ``read_rows``
callable that streams one table's data as blocks of ``(columns, rows)``.
Everything else (validation, ordering, naming, DDL, batching, progress,
cancellation and rollback) happens here.
"""

from __future__ import annotations

import dataclasses
import functools
import logging
import os
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol, Sequence

from . import destination
from .errors import ConversionError, ImportCancelled
from .mapping import build_name_maps, needs_cast, normalize_ident, quote_ident
from .models import (
    ForeignKey,
    GenericAnalysisResult,
    GenericImportOptions,
    ImportFormat,
    ImportPhase,
    ImportProgress,
    ImportReport,
    Index,
    SkippedIndex,
    Table,
)
from .ordering import toposort_tables

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 200
MAX_ROW_WARNINGS = 20

ProgressSink = Callable[[ImportProgress], None]
RowBlock = tuple[Optional[list[str]], Iterable[Sequence[Any]]]  # (column names or None for all, rows)


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


@dataclasses.dataclass
class LoadedSchema:
    """Parser output: tables in source order, row counts and parse warnings."""

    tables: list[Table]
    row_counts: dict[str, int] = dataclasses.field(default_factory=dict)
    warnings: list[str] = dataclasses.field(default_factory=list)

    def to_analysis(self, source_path: str, fmt: ImportFormat) -> GenericAnalysisResult:
        return GenericAnalysisResult(
            source_path=source_path,
            format=fmt,
            table_names=[t.name for t in self.tables],
            row_counts={t.name: self.row_counts.get(t.name, 0) for t in self.tables},
            warnings=list(self.warnings),
        )


@dataclasses.dataclass
class ImportPlan:
    tables: list[Table]  # dependency order, foreign keys resolved
    table_name_map: dict[str, str]
    column_name_map: dict[str, dict[str, str]]
    column_types: dict[str, dict[str, str]]
    indexes: list[tuple[Index, str]]  # (single-column index, destination index name)
    unique_columns: list[str]
    skipped_indexes: list[SkippedIndex]
    warnings: list[str]


def emit(progress: ProgressSink | None, event: ImportProgress) -> None:
    if progress is None:
        return
    try:
        progress(event)
    except Exception:
        logger.warning("Progress callback raised; ignoring", exc_info=True)


def check_cancelled(cancel: CancelSignal | None) -> None:
    if cancel is not None and cancel.is_set():
        raise ImportCancelled()


def _close_stream(stream: Any) -> None:
    # Generators and DB-API cursors both expose close(); plain iterators do not.
    close = getattr(stream, "close", None)
    if close is not None:
        close()


def _validate_supported(table: Table) -> None:
    fk_by_from: dict[str, list[ForeignKey]] = defaultdict(list)
    for fk in table.foreign_keys:
        fk_by_from[fk.from_column].append(fk)

    for from_col, fks in fk_by_from.items():
        if len(fks) > 1:
            raise ConversionError(
                f"Multiple foreign key targets from one column not supported: {table.name}.{from_col}"
            )


def _unique_targets(table: Table) -> set[str]:
    out = {c.name for c in table.columns if c.is_unique}
    pk = table.primary_key
    if len(pk) == 1:
        out.add(pk[0])
    for idx in table.indexes:
        if idx.is_unique and len(idx.columns) == 1:
            out.add(idx.columns[0])
    return out


def _resolve_foreign_keys(tables: list[Table], warnings: list[str]) -> list[Table]:
    by_name = {t.name: t for t in tables}
    out: list[Table] = []
    for t in tables:
        kept: list[ForeignKey] = []
        for fk in t.foreign_keys:
            label = f"{t.name}.{fk.from_column} -> {fk.to_table}({fk.to_column})"
            if t.column(fk.from_column) is None:
                warnings.append(f"Foreign key dropped, source column not found: {label}")
                continue
            if fk.to_table == t.name:
                # Rows are not ordered within a table, so the constraint cannot be loaded inline.
                warnings.append(f"Self-referencing foreign key not imported: {label}")
                continue
            target = by_name[fk.to_table]
            if target.column(fk.to_column) is None:
                warnings.append(f"Foreign key dropped, target column not found: {label}")
                continue
            if fk.to_column not in _unique_targets(target):
                warnings.append(
                    f"Foreign key dropped, target is not a single-column primary key or unique column: {label}"
                )
                continue
            kept.append(fk)
        out.append(dataclasses.replace(t, foreign_keys=kept))
    return out


def plan_import(
    tables: list[Table],
    *,
    identifier_case: str,
    map_type: Callable[[str], str],
) -> ImportPlan:
    """Validate, order and name the parsed tables. Touches nothing on disk."""
    for t in tables:
        _validate_supported(t)

    ordered = toposort_tables(tables)
    table_name_map, column_name_map = build_name_maps(ordered, identifier_case=identifier_case)

    warnings: list[str] = []
    ordered = _resolve_foreign_keys(ordered, warnings)

    column_types = {t.name: {c.name: map_type(c.declared_type) for c in t.columns} for t in ordered}

    unique_columns: list[str] = []
    skipped: list[SkippedIndex] = []
    indexes: list[tuple[Index, str]] = []
    used_index_names: set[str] = set()

    for t in ordered:
        dst_table = table_name_map[t.name]
        for col in t.columns:
            if col.is_unique and not col.is_primary_key:
                unique_columns.append(f"{dst_table}.{column_name_map[t.name][col.name]}")
        skipped.extend(t.skipped_indexes)

        for idx in t.indexes:
            if len(idx.columns) != 1:
                if idx.is_unique:
                    reason = "Composite UNIQUE constraint/index not supported (single-column only)"
                else:
                    reason = "Composite index not imported (single-column only)"
                skipped.append(SkippedIndex(name=idx.name, table=t.name, reason=reason))
                continue
            if idx.columns[0] not in column_name_map[t.name]:
                skipped.append(
                    SkippedIndex(name=idx.name, table=t.name, reason=f"Index column not found: {idx.columns[0]}")
                )
                continue

            dst_idx = normalize_ident(idx.name, identifier_case=identifier_case)
            if dst_idx in used_index_names:
                renamed = f"{dst_table}_{dst_idx}"
                n = 2
                while renamed in used_index_names:
                    renamed = f"{dst_table}_{dst_idx}_{n}"
                    n += 1
                warnings.append(f"Index name '{dst_idx}' already used; created as '{renamed}'")
                dst_idx = renamed
            used_index_names.add(dst_idx)
            indexes.append((dataclasses.replace(idx, table=t.name), dst_idx))

    return ImportPlan(
        tables=ordered,
        table_name_map=table_name_map,
        column_name_map=column_name_map,
        column_types=column_types,
        indexes=indexes,
        unique_columns=unique_columns,
        skipped_indexes=skipped,
        warnings=warnings,
    )


def create_table_sql(table: Table, plan: ImportPlan) -> str:
    fk_map = {fk.from_column: fk for fk in table.foreign_keys}
    pk_cols = table.primary_key
    composite_pk = len(pk_cols) > 1
    names = plan.column_name_map[table.name]

    col_defs: list[str] = []
    for col in table.columns:
        parts = [quote_ident(names[col.name]), plan.column_types[table.name][col.name]]
        if col.is_primary_key and not composite_pk:
            parts.append("PRIMARY KEY")
        elif col.is_primary_key:
            # Composite PK members are implicitly NOT NULL.
            parts.append("NOT NULL")
        else:
            if col.is_unique:
                parts.append("UNIQUE")
            if col.not_null:
                parts.append("NOT NULL")

        fk = fk_map.get(col.name)
        if fk is not None:
            parts.append(
                "REFERENCES "
                + quote_ident(plan.table_name_map[fk.to_table])
                + "(" + quote_ident(plan.column_name_map[fk.to_table][fk.to_column]) + ")"
            )
        col_defs.append(" ".join(parts))

    if composite_pk:
        col_defs.append("PRIMARY KEY (" + ", ".join(quote_ident(names[c]) for c in pk_cols) + ")")

    return "CREATE TABLE " + quote_ident(plan.table_name_map[table.name]) + " (" + ", ".join(col_defs) + ")"


def insert_sql(dst_table: str, dst_cols: list[str], types: list[str]) -> str:
    placeholders = [f"CAST(? AS {t})" if needs_cast(t) else "?" for t in types]
    cols_sql = ", ".join(quote_ident(c) for c in dst_cols)
    return f"INSERT INTO {quote_ident(dst_table)} ({cols_sql}) VALUES ({', '.join(placeholders)})"


def create_index_sql(dst_idx: str, dst_table: str, dst_col: str, *, unique: bool) -> str:
    return (
        "CREATE "
        + ("UNIQUE " if unique else "")
        + "INDEX "
        + quote_ident(dst_idx)
        + " ON "
        + quote_ident(dst_table)
        + "(" + quote_ident(dst_col) + ")"
    )


_TRUE = {"1", "t", "true", "y", "yes", "on"}
_FALSE = {"0", "f", "false", "n", "no", "off"}


def adapt_value(value: Any, decent_type: str) -> Any:
    """Coerce one source value for a parameter bound to a ``decent_type`` column.

    Values that cannot be coerced are passed through unchanged and left to the
    destination's type checking.
    """
    if value is None:
        return None

    if decent_type == "BOOL":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        if isinstance(value, bytes) and value in (b"\x00", b"\x01"):
            return value == b"\x01"
        if isinstance(value, str):
            s = value.strip().lower()
            if s in _TRUE:
                return True
            if s in _FALSE:
                return False
        return value

    if decent_type == "INT64":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, bytes):
            # MySQL BIT literals
            return int.from_bytes(value, "big")
        try:
            return int(str(value).strip())
        except ValueError:
            return value

    if decent_type == "FLOAT64":
        if isinstance(value, bool):
            return float(value)
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return float(str(value).strip())
        except ValueError:
            return value

    if decent_type == "BLOB":
        if isinstance(value, str):
            if value.startswith("\\x"):
                try:
                    return bytes.fromhex(value[2:])
                except ValueError:
                    pass
            return value.encode("utf-8", "surrogateescape")
        return value

    if decent_type == "UUID" and isinstance(value, bytes) and len(value) == 16:
        return str(uuid.UUID(bytes=value))

    # TEXT, DECIMAL(p,s), UUID
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def check_paths(options: GenericImportOptions) -> None:
    if not os.path.exists(options.source_path):
        raise FileNotFoundError(options.source_path)
    destination.check_destination(options.decentdb_path, overwrite=options.overwrite)


def _rollback(conn) -> None:
    try:
        conn.execute("ROLLBACK")
    except Exception as exc:
        logger.debug("ROLLBACK failed: %s", exc)


def execute_import(
    options: GenericImportOptions,
    *,
    fmt: ImportFormat,
    load: Callable[[], LoadedSchema],
    map_type: Callable[[str], str],
    read_rows: Callable[[Table], Iterator[RowBlock]],
    progress: ProgressSink | None = None,
    cancel: CancelSignal | None = None,
    connect: Callable[[str], Any] | None = None,
) -> ImportReport:
    """Run one import from a parsed source into ``options.decentdb_path``.

    Returns the finalized report, or raises with the partial report attached
    (``ConversionError.report`` / ``ImportCancelled.report``).
    """
    started = time.monotonic()
    report = ImportReport(
        source_path=options.source_path,
        decentdb_path=options.decentdb_path,
        format=fmt,
        identifier_case=options.identifier_case,
    )
    phase = ImportPhase.ANALYZING

    try:
        check_paths(options)
        emit(progress, ImportProgress(phase=phase, message=f"Analyzing {os.path.basename(options.source_path)}..."))

        schema = load()
        report.warnings.extend(schema.warnings)
        check_cancelled(cancel)

        plan = plan_import(schema.tables, identifier_case=options.identifier_case, map_type=map_type)
    except ImportCancelled as exc:
        exc.report = report
        emit(progress, ImportProgress(phase=ImportPhase.CANCELLED, message="Import cancelled"))
        raise
    except Exception as exc:
        if isinstance(exc, ConversionError) and exc.report is None:
            exc.report = report
        emit(progress, ImportProgress(phase=ImportPhase.FAILED, message=str(exc)))
        raise

    report.table_name_map = dict(plan.table_name_map)
    report.column_name_map = {k: dict(v) for k, v in plan.column_name_map.items()}
    report.tables = [plan.table_name_map[t.name] for t in plan.tables]
    report.unique_columns_added.extend(plan.unique_columns)
    report.skipped_indexes.extend(plan.skipped_indexes)
    report.warnings.extend(plan.warnings)

    tables_total = len(plan.tables)
    rows_total = sum(schema.row_counts.get(t.name, 0) for t in plan.tables)
    emit(
        progress,
        ImportProgress(
            phase=phase,
            tables_total=tables_total,
            rows_total=rows_total,
            indexes_total=len(plan.indexes),
            message=f"Found {tables_total} tables, {rows_total:,} rows",
        ),
    )

    if connect is None:
        connect = functools.partial(
            destination.connect_decentdb, cache_pages=options.cache_pages, cache_mb=options.cache_mb
        )

    conn = None
    try:
        destination.prepare_destination(options.decentdb_path, overwrite=options.overwrite)
        conn = connect(options.decentdb_path)

        phase = ImportPhase.CREATING_SCHEMA
        _create_schema(conn, plan, progress=progress, cancel=cancel)

        phase = ImportPhase.COPYING_DATA
        for i, t in enumerate(plan.tables):
            _copy_table(
                conn,
                t,
                plan,
                report,
                blocks=read_rows(t),
                expected=schema.row_counts.get(t.name, 0),
                commit_every=options.commit_batch_size,
                tables_completed=i,
                tables_total=tables_total,
                progress=progress,
                cancel=cancel,
            )

        phase = ImportPhase.CREATING_INDEXES
        _create_indexes(conn, plan, report, progress=progress, cancel=cancel)
    except ImportCancelled as exc:
        if conn is not None:
            _rollback(conn)
        exc.report = report
        logger.info("Import cancelled during %s", phase.value)
        emit(progress, ImportProgress(phase=ImportPhase.CANCELLED, message="Import cancelled"))
        raise
    except Exception as exc:
        if conn is not None:
            _rollback(conn)
        if isinstance(exc, ConversionError) and exc.report is None:
            exc.report = report
        logger.debug("Import failed during %s", phase.value, exc_info=True)
        emit(progress, ImportProgress(phase=ImportPhase.FAILED, message=str(exc)))
        raise
    finally:
        if conn is not None:
            conn.close()

    report.elapsed = time.monotonic() - started
    emit(
        progress,
        ImportProgress(
            phase=ImportPhase.COMPLETE,
            rows_completed=report.total_rows,
            rows_total=rows_total,
            tables_completed=tables_total,
            tables_total=tables_total,
            indexes_completed=len(report.indexes_created),
            indexes_total=len(plan.indexes),
            message=(
                f"Import complete: {tables_total} tables, {report.total_rows:,} rows, "
                f"{len(report.indexes_created)} indexes"
            ),
        ),
    )
    return report


def _create_schema(conn, plan: ImportPlan, *, progress, cancel) -> None:
    total = len(plan.tables)
    conn.execute("BEGIN")
    for i, t in enumerate(plan.tables):
        check_cancelled(cancel)
        sql = create_table_sql(t, plan)
        logger.debug("%s", sql)
        conn.execute(sql)
        emit(
            progress,
            ImportProgress(
                phase=ImportPhase.CREATING_SCHEMA,
                current_table=plan.table_name_map[t.name],
                tables_completed=i + 1,
                tables_total=total,
                message=f"Created table {plan.table_name_map[t.name]}",
            ),
        )
    conn.execute("COMMIT")


def _block_columns(table: Table, columns: list[str] | None) -> list[str] | None:
    if columns is None:
        return [c.name for c in table.columns]
    out: list[str] = []
    by_lower = {c.name.lower(): c.name for c in table.columns}
    for c in columns:
        if table.column(c) is not None:
            out.append(c)
        elif c.lower() in by_lower:
            out.append(by_lower[c.lower()])
        else:
            return None
    return out


def _copy_table(
    conn,
    table: Table,
    plan: ImportPlan,
    report: ImportReport,
    *,
    blocks: Iterator[RowBlock],
    expected: int,
    commit_every: int,
    tables_completed: int,
    tables_total: int,
    progress,
    cancel,
) -> None:
    dst_table = plan.table_name_map[table.name]

    def snapshot(n: int, message: str = "") -> ImportProgress:
        return ImportProgress(
            phase=ImportPhase.COPYING_DATA,
            current_table=dst_table,
            rows_completed=n,
            rows_total=expected,
            tables_completed=tables_completed,
            tables_total=tables_total,
            message=message,
        )

    emit(progress, snapshot(0, f"Copying {dst_table}"))

    n = 0
    committed = 0
    mismatches = 0
    rows = None
    conn.execute("BEGIN")
    cur = conn.cursor()
    try:
        for columns, rows in blocks:
            src_cols = _block_columns(table, columns)
            if src_cols is None:
                report.warnings.append(
                    f"Data block for {table.name} names unknown columns {columns}; block skipped"
                )
                _close_stream(rows)
                continue
            types = [plan.column_types[table.name][c] for c in src_cols]
            sql = insert_sql(dst_table, [plan.column_name_map[table.name][c] for c in src_cols], types)
            width = len(src_cols)

            for row in rows:
                check_cancelled(cancel)
                if len(row) != width:
                    mismatches += 1
                    report.rows_skipped += 1
                    if mismatches <= MAX_ROW_WARNINGS:
                        report.warnings.append(
                            f"Row column count mismatch in {table.name}: expected {width}, got {len(row)}"
                        )
                    continue

                cur.execute(sql, [adapt_value(v, t) for v, t in zip(row, types)])
                n += 1
                if commit_every > 0 and n % commit_every == 0:
                    cur.close()
                    conn.execute("COMMIT")
                    committed = n
                    conn.execute("BEGIN")
                    cur = conn.cursor()
                if n % PROGRESS_EVERY == 0 or n == expected:
                    emit(progress, snapshot(n))
            _close_stream(rows)

        cur.close()
        conn.execute("COMMIT")
        committed = n
    finally:
        # Release source cursors and file handles before the source itself closes.
        _close_stream(rows)
        _close_stream(blocks)
        report.rows_copied[dst_table] = committed

    if mismatches > MAX_ROW_WARNINGS:
        report.warnings.append(
            f"{mismatches - MAX_ROW_WARNINGS} more mismatched rows skipped in {table.name}"
        )
    emit(
        progress,
        dataclasses.replace(snapshot(n, f"Copied {n:,} rows into {dst_table}"), tables_completed=tables_completed + 1),
    )


def _create_indexes(conn, plan: ImportPlan, report: ImportReport, *, progress, cancel) -> None:
    total = len(plan.indexes)
    created: list[str] = []
    unique_cols: list[str] = []
    conn.execute("BEGIN")
    for i, (idx, dst_idx) in enumerate(plan.indexes):
        check_cancelled(cancel)
        dst_table = plan.table_name_map[idx.table]
        dst_col = plan.column_name_map[idx.table][idx.columns[0]]
        sql = create_index_sql(dst_idx, dst_table, dst_col, unique=idx.is_unique)
        logger.debug("%s", sql)
        conn.execute(sql)
        created.append(dst_idx)
        if idx.is_unique:
            unique_cols.append(f"{dst_table}.{dst_col}")
        emit(
            progress,
            ImportProgress(
                phase=ImportPhase.CREATING_INDEXES,
                current_table=dst_table,
                indexes_completed=i + 1,
                indexes_total=total,
                message=f"Created index {dst_idx}",
            ),
        )
    conn.execute("COMMIT")
    report.indexes_created.extend(created)
    report.unique_columns_added.extend(unique_cols)
