"""Classify an import source (file or directory) by its content."""

from __future__ import annotations

import logging
import os

from .models import ImportFormat

logger = logging.getLogger(__name__)

SQLITE_MAGIC = b"SQLite format 3\x00"
HEADER_LINES = 30

_PG_MARKERS = (
    "-- PostgreSQL database dump",
    "\\restrict",
    "SET statement_timeout",
    "SELECT pg_catalog.set_config",
)
_MYSQL_MARKERS = ("-- MySQL dump", "-- MariaDB dump", "-- Server version")


def detect_format(path: str) -> ImportFormat:
    """Return the source format of ``path``; never raises for unreadable input."""
    if os.path.isdir(path):
        return _detect_directory(path)
    if not os.path.isfile(path):
        return ImportFormat.UNKNOWN

    try:
        with open(path, "rb") as f:
            header = f.read(len(SQLITE_MAGIC))
    except OSError as exc:
        logger.debug("Cannot read %s: %s", path, exc)
        return ImportFormat.UNKNOWN
    if header == SQLITE_MAGIC:
        return ImportFormat.SQLITE

    return _detect_text(path)


def _detect_text(path: str) -> ImportFormat:
    try:
        with open(path, "r", encoding="utf-8-sig", errors="replace") as f:
            for n, line in enumerate(f):
                if n >= HEADER_LINES:
                    break
                line = line.strip()
                if line.startswith(_PG_MARKERS):
                    return ImportFormat.PG_DUMP
                if line.startswith(_MYSQL_MARKERS) or "/*!40101 SET" in line:
                    return ImportFormat.MYSQL_DUMP
    except OSError as exc:
        logger.debug("Not a text dump: %s (%s)", path, exc)
    return ImportFormat.UNKNOWN


def _detect_directory(path: str) -> ImportFormat:
    if os.path.isfile(os.path.join(path, "@.json")):
        return ImportFormat.MYSQL_SHELL_DUMP

    sql_files = sorted(
        e.path for e in os.scandir(path) if e.is_file() and e.name.lower().endswith(".sql")
    )
    if len(sql_files) == 1:
        return detect_format(sql_files[0])

    for _root, _dirs, files in os.walk(path):
        if any(f.endswith(".tsv.zst") for f in files):
            return ImportFormat.MYSQL_SHELL_DUMP

    logger.warning("Could not detect import format for directory %s", path)
    return ImportFormat.UNKNOWN
