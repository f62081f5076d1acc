from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any


class ImportFormat(enum.Enum):
    SQLITE = "sqlite"
    PG_DUMP = "pg_dump"
    MYSQL_DUMP = "mysql_dump"
    MYSQL_SHELL_DUMP = "mysql_shell_dump"
    UNKNOWN = "unknown"


_FORMAT_DISPLAY_NAMES = {
    ImportFormat.SQLITE: "SQLite Database",
    ImportFormat.PG_DUMP: "PostgreSQL Dump (pg_dump)",
    ImportFormat.MYSQL_DUMP: "MySQL Dump (mysqldump)",
    ImportFormat.MYSQL_SHELL_DUMP: "MySQL Shell Dump",
    ImportFormat.UNKNOWN: "Unknown Format",
}


def format_display_name(fmt: ImportFormat) -> str:
    return _FORMAT_DISPLAY_NAMES.get(fmt, "Unknown Format")


class ImportPhase(enum.Enum):
    ANALYZING = "analyzing"
    CREATING_SCHEMA = "creating_schema"
    COPYING_DATA = "copying_data"
    CREATING_INDEXES = "creating_indexes"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclasses.dataclass(frozen=True)
class Column:
    name: str
    declared_type: str
    not_null: bool = False
    is_primary_key: bool = False
    is_unique: bool = False
    is_auto_increment: bool = False


@dataclasses.dataclass(frozen=True)
class ForeignKey:
    from_column: str
    to_table: str
    to_column: str
    constraint_name: str | None = None


@dataclasses.dataclass(frozen=True)
class Index:
    name: str
    table: str
    columns: list[str]
    is_unique: bool = False


@dataclasses.dataclass(frozen=True)
class SkippedIndex:
    name: str
    table: str
    reason: str


@dataclasses.dataclass(frozen=True)
class Table:
    name: str
    columns: list[Column]
    foreign_keys: list[ForeignKey] = dataclasses.field(default_factory=list)
    indexes: list[Index] = dataclasses.field(default_factory=list)
    skipped_indexes: list[SkippedIndex] = dataclasses.field(default_factory=list)

    @property
    def primary_key(self) -> list[str]:
        return [c.name for c in self.columns if c.is_primary_key]

    def column(self, name: str) -> Column | None:
        for c in self.columns:
            if c.name == name:
                return c
        return None


@dataclasses.dataclass(frozen=True)
class GenericAnalysisResult:
    source_path: str
    format: ImportFormat
    table_names: list[str]
    row_counts: dict[str, int]
    warnings: list[str] = dataclasses.field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(self.row_counts.values())


@dataclasses.dataclass(frozen=True)
class GenericImportOptions:
    source_path: str
    decentdb_path: str
    format: ImportFormat | None = None  # None: detect from the source
    lowercase_identifiers: bool = True
    commit_batch_size: int = 5_000
    overwrite: bool = False
    working_directory: str | None = None
    cache_pages: int | None = None
    cache_mb: int | None = None

    @property
    def identifier_case(self) -> str:
        return "lower" if self.lowercase_identifiers else "preserve"


@dataclasses.dataclass(frozen=True)
class ImportProgress:
    phase: ImportPhase
    current_table: str | None = None
    rows_completed: int = 0
    rows_total: int = 0
    tables_completed: int = 0
    tables_total: int = 0
    indexes_completed: int = 0
    indexes_total: int = 0
    message: str = ""


@dataclasses.dataclass
class ImportReport:
    source_path: str
    decentdb_path: str
    format: ImportFormat = ImportFormat.UNKNOWN
    identifier_case: str = "lower"  # "lower" or "preserve"
    table_name_map: dict[str, str] = dataclasses.field(default_factory=dict)
    column_name_map: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)
    tables: list[str] = dataclasses.field(default_factory=list)
    rows_copied: dict[str, int] = dataclasses.field(default_factory=dict)
    indexes_created: list[str] = dataclasses.field(default_factory=list)
    unique_columns_added: list[str] = dataclasses.field(default_factory=list)
    skipped_indexes: list[SkippedIndex] = dataclasses.field(default_factory=list)
    warnings: list[str] = dataclasses.field(default_factory=list)
    rows_skipped: int = 0
    elapsed: float | None = None  # seconds; set once the run completes

    @property
    def total_rows(self) -> int:
        return sum(self.rows_copied.values())


def report_to_dict(report: ImportReport) -> dict[str, Any]:
    return {
        "source_path": report.source_path,
        "decentdb_path": report.decentdb_path,
        "format": report.format.value,
        "identifier_case": report.identifier_case,
        "table_name_map": dict(report.table_name_map),
        "column_name_map": {k: dict(v) for k, v in report.column_name_map.items()},
        "tables": list(report.tables),
        "rows_copied": dict(report.rows_copied),
        "total_rows": report.total_rows,
        "indexes_created": list(report.indexes_created),
        "unique_columns_added": list(report.unique_columns_added),
        "skipped_indexes": [dataclasses.asdict(s) for s in report.skipped_indexes],
        "rows_skipped": report.rows_skipped,
        "warnings": list(report.warnings),
        "elapsed_seconds": report.elapsed,
    }


def write_report_json(report: ImportReport, path: str) -> None:
    payload = json.dumps(report_to_dict(report), ensure_ascii=False, indent=2, sort_keys=True)
    if path == "-":
        print(payload)
        return
    with open(path, "w", encoding="utf-8") as f:
        f.write(payload)
        f.write("\n")
