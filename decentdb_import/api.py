from __future__ import annotations

import dataclasses
import logging
import os
from typing import Any, Callable

from . import decompress as _decompress
from .detect import detect_format
from .errors import ConversionError
from .models import GenericAnalysisResult, GenericImportOptions, ImportFormat, ImportReport, format_display_name
from .pipeline import CancelSignal, ProgressSink
from .sources import get_import_source

logger = logging.getLogger(__name__)


def _resolve_format(path: str, fmt: ImportFormat | None) -> ImportFormat:
    if fmt is None:
        fmt = detect_format(path)
        logger.info("Detected %s: %s", format_display_name(fmt), path)
    if fmt == ImportFormat.UNKNOWN:
        raise ConversionError(f"Unable to detect import format: {path}")
    return fmt


def analyze(
    source_path: str,
    *,
    format: ImportFormat | None = None,
    working_directory: str | None = None,
    progress: ProgressSink | None = None,
    cancel: CancelSignal | None = None,
) -> GenericAnalysisResult:
    """Detect, decompress and parse ``source_path`` without writing anything."""
    if not os.path.exists(source_path):
        raise FileNotFoundError(source_path)

    unpacked = _decompress.decompress(source_path, working_directory, progress)
    try:
        fmt = _resolve_format(unpacked.extracted_path, format)
        result = get_import_source(fmt).analyze(unpacked.extracted_path, cancel=cancel)
        return dataclasses.replace(result, source_path=source_path)
    finally:
        _decompress.cleanup(unpacked.temp_directory)


def run_import(
    options: GenericImportOptions,
    *,
    progress: ProgressSink | None = None,
    cancel: CancelSignal | None = None,
    connect: Callable[[str], Any] | None = None,
) -> ImportReport:
    """Import ``options.source_path`` into ``options.decentdb_path``.

    Compressed inputs are unpacked into ``options.working_directory`` (or the
    system temp directory) and removed again when the run ends, whatever the
    outcome.
    """
    if not os.path.exists(options.source_path):
        raise FileNotFoundError(options.source_path)

    unpacked = _decompress.decompress(options.source_path, options.working_directory, progress)
    try:
        fmt = _resolve_format(unpacked.extracted_path, options.format)
        run_options = dataclasses.replace(options, source_path=unpacked.extracted_path, format=fmt)
        report = get_import_source(fmt).import_(run_options, progress=progress, cancel=cancel, connect=connect)
        report.source_path = options.source_path
        return report
    finally:
        _decompress.cleanup(unpacked.temp_directory)
