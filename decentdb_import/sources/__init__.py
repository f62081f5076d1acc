from __future__ import annotations

from typing import Any, Callable, Protocol

from ..errors import ConversionError
from ..models import GenericAnalysisResult, GenericImportOptions, ImportFormat, ImportReport
from ..pipeline import CancelSignal, ProgressSink
from .mysqldump import MysqlDumpImportSource
from .mysqlshell import MysqlShellDumpImportSource
from .pgdump import PgDumpImportSource
from .sqlite import SqliteImportSource


class ImportSource(Protocol):
    format: ImportFormat

    def analyze(self, source_path: str, *, cancel: CancelSignal | None = None) -> GenericAnalysisResult: ...

    def import_(
        self,
        options: GenericImportOptions,
        *,
        progress: ProgressSink | None = None,
        cancel: CancelSignal | None = None,
        connect: Callable[[str], Any] | None = None,
    ) -> ImportReport: ...


_SOURCES: dict[ImportFormat, type] = {
    ImportFormat.SQLITE: SqliteImportSource,
    ImportFormat.PG_DUMP: PgDumpImportSource,
    ImportFormat.MYSQL_DUMP: MysqlDumpImportSource,
    ImportFormat.MYSQL_SHELL_DUMP: MysqlShellDumpImportSource,
}


def get_import_source(fmt: ImportFormat) -> ImportSource:
    try:
        return _SOURCES[fmt]()
    except KeyError:
        raise ConversionError(f"Unsupported import format: {fmt.value}") from None


__all__ = [
    "ImportSource",
    "MysqlDumpImportSource",
    "MysqlShellDumpImportSource",
    "PgDumpImportSource",
    "SqliteImportSource",
    "get_import_source",
]
