"""Import SQLite databases and PostgreSQL/MySQL dumps into DecentDB."""

from .api import analyze, run_import
from .detect import detect_format
from .errors import ConversionError, ImportCancelled
from .models import (
    Column,
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
    format_display_name,
    report_to_dict,
    write_report_json,
)
from .sources import get_import_source

__version__ = "0.1.0"

__all__ = [
    "Column",
    "ConversionError",
    "ForeignKey",
    "GenericAnalysisResult",
    "GenericImportOptions",
    "ImportCancelled",
    "ImportFormat",
    "ImportPhase",
    "ImportProgress",
    "ImportReport",
    "Index",
    "SkippedIndex",
    "Table",
    "analyze",
    "detect_format",
    "format_display_name",
    "get_import_source",
    "report_to_dict",
    "run_import",
    "write_report_json",
]
