"""Import MySQL Shell dump directories (util.dumpInstance / dumpSchemas).

Layout::

    @.json                          schemas in the dump
    {schema}@{table}.json           per-table options (columns, delimiters, compression)
    {schema}@{table}.sql            CREATE TABLE for the table
    {schema}@{table}@@{n}.tsv.zst   data chunks (the last may be @@@{n})
"""

from __future__ import annotations

import contextlib
import dataclasses
import gzip
import io
import json
import logging
import os
import re
import urllib.parse
from typing import Any, Callable, Iterator

import zstandard

from ..errors import ConversionError
from ..mapping import map_mysql_type
from ..models import GenericAnalysisResult, GenericImportOptions, ImportFormat, ImportReport, Table
from ..pipeline import CancelSignal, LoadedSchema, ProgressSink, RowBlock, check_cancelled, execute_import
from .mysqldump import MysqlDumpParser

logger = logging.getLogger(__name__)

CANCEL_CHECK_LINES = 10_000


@dataclasses.dataclass(frozen=True)
class ShellTableMeta:
    schema: str
    table: str
    columns: list[str]
    primary_index: str | None = None
    compression: str = "zstd"
    fields_terminated_by: str = "\t"
    fields_escaped_by: str = "\\"
    fields_enclosed_by: str = ""
    lines_terminated_by: str = "\n"
    extension: str = "tsv.zst"
    chunking: bool = False


def read_table_meta(path: str, schema: str, table: str) -> ShellTableMeta:
    with open(path, "r", encoding="utf-8") as f:
        doc = json.load(f)
    options = doc.get("options") or {}
    extension = doc.get("extension") or "tsv.zst"
    if extension.endswith(".zst"):
        default_compression = "zstd"
    elif extension.endswith(".gz"):
        default_compression = "gzip"
    else:
        default_compression = "none"
    return ShellTableMeta(
        schema=schema,
        table=table,
        columns=[str(c) for c in options.get("columns") or []],
        primary_index=options.get("primaryIndex") or None,
        compression=options.get("compression") or default_compression,
        fields_terminated_by=options.get("fieldsTerminatedBy", "\t"),
        fields_escaped_by=options.get("fieldsEscapedBy", "\\"),
        fields_enclosed_by=options.get("fieldsEnclosedBy", ""),
        lines_terminated_by=options.get("linesTerminatedBy", "\n"),
        extension=extension,
        chunking=bool(doc.get("chunking", False)),
    )


def chunk_files(dump_dir: str, meta: ShellTableMeta) -> list[str]:
    """Data files of one table in chunk order."""
    prefix = _encode_name(meta.schema) + "@" + _encode_name(meta.table)
    ext = re.escape("." + meta.extension)
    chunk_re = re.compile(re.escape(prefix) + r"@@@?(\d+)" + ext + "$")
    single = prefix + "." + meta.extension

    found: list[tuple[int, str]] = []
    for name in os.listdir(dump_dir):
        m = chunk_re.match(name)
        if m:
            found.append((int(m.group(1)), name))
        elif name == single:
            found.append((-1, name))
    return [os.path.join(dump_dir, name) for _, name in sorted(found)]


def _encode_name(name: str) -> str:
    return urllib.parse.quote(name, safe="")


def _decode_name(name: str) -> str:
    return urllib.parse.unquote(name)


@contextlib.contextmanager
def open_chunk(path: str, compression: str) -> Iterator[io.TextIOBase]:
    if compression == "zstd":
        with open(path, "rb") as raw:
            reader = zstandard.ZstdDecompressor().stream_reader(raw)
            with io.TextIOWrapper(reader, encoding="utf-8", errors="surrogateescape", newline="\n") as f:
                yield f
    elif compression == "gzip":
        with gzip.open(path, "rt", encoding="utf-8", errors="surrogateescape", newline="\n") as f:
            yield f
    elif compression == "none":
        with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="\n") as f:
            yield f
    else:
        raise ConversionError(f"Unsupported chunk compression '{compression}': {path}")


def iter_chunk_lines(path: str, meta: ShellTableMeta) -> Iterator[str]:
    terminator = meta.lines_terminated_by or "\n"
    with open_chunk(path, meta.compression) as f:
        for line in f:
            if line.endswith(terminator):
                line = line[: -len(terminator)]
            elif line.endswith("\n"):
                line = line[:-1]
            yield line


_TSV_ESCAPES = {"0": "\x00", "b": "\b", "n": "\n", "r": "\r", "t": "\t", "Z": "\x1a"}


def unescape_tsv_field(field: str, escaped_by: str = "\\") -> str | None:
    if escaped_by and field == escaped_by + "N":
        return None
    if not escaped_by or escaped_by not in field:
        return field

    esc = escaped_by[0]
    out: list[str] = []
    i = 0
    n = len(field)
    while i < n:
        ch = field[i]
        if ch == esc and i + 1 < n:
            nxt = field[i + 1]
            out.append(_TSV_ESCAPES.get(nxt, nxt))
            i += 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def parse_tsv_line(line: str, meta: ShellTableMeta) -> tuple[str | None, ...]:
    enclosed = meta.fields_enclosed_by
    values: list[str | None] = []
    for field in line.split(meta.fields_terminated_by or "\t"):
        if enclosed and len(field) >= 2 and field[0] == enclosed and field[-1] == enclosed:
            field = field[1:-1]
        values.append(unescape_tsv_field(field, meta.fields_escaped_by))
    return tuple(values)


class MysqlShellDumpParser:
    """Reads the dump's metadata files and counts chunk rows."""

    def __init__(self, dump_dir: str, *, cancel: CancelSignal | None = None):
        self.dump_dir = dump_dir
        self.cancel = cancel
        self.warnings: list[str] = []
        self.metas: dict[str, ShellTableMeta] = {}  # by table name

    def _schemas(self) -> list[str]:
        path = os.path.join(self.dump_dir, "@.json")
        if not os.path.exists(path):
            raise FileNotFoundError(path)
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
        return [str(s) for s in doc.get("schemas") or []]

    def parse(self) -> LoadedSchema:
        schemas = self._schemas()
        if not schemas:
            self.warnings.append("No schemas found in @.json")

        tables: list[Table] = []
        owner: dict[str, str] = {}
        counts: dict[str, int] = {}
        for schema in schemas:
            prefix = _encode_name(schema) + "@"
            for name in sorted(os.listdir(self.dump_dir)):
                if not name.startswith(prefix) or not name.endswith(".json"):
                    continue
                encoded_table = name[len(prefix) : -len(".json")]
                if not encoded_table or "@" in encoded_table:
                    continue
                table = _decode_name(encoded_table)

                try:
                    meta = read_table_meta(os.path.join(self.dump_dir, name), schema, table)
                except (OSError, ValueError) as exc:
                    self.warnings.append(f"Failed to parse metadata for {schema}.{table}: {exc}")
                    continue

                sql_path = os.path.join(self.dump_dir, prefix + encoded_table + ".sql")
                if not os.path.exists(sql_path):
                    self.warnings.append(f"SQL schema file not found for {schema}.{table}")
                    continue
                try:
                    parsed = MysqlDumpParser(sql_path).parse_ddl()
                except (OSError, ConversionError) as exc:
                    self.warnings.append(f"Failed to parse SQL for {schema}.{table}: {exc}")
                    continue
                if not parsed:
                    self.warnings.append(f"No CREATE TABLE found in {os.path.basename(sql_path)}")
                    continue

                t = parsed[0]
                if t.name in owner:
                    raise ConversionError(
                        f"Table {t.name} appears in schemas {owner[t.name]} and {schema}; cannot import both"
                    )
                owner[t.name] = schema
                self.metas[t.name] = meta
                tables.append(t)
                counts[t.name] = self._count_rows(meta)
                logger.debug("Parsed table %s.%s: %d columns", schema, table, len(t.columns))

        return LoadedSchema(tables=tables, row_counts=counts, warnings=self.warnings)

    def _count_rows(self, meta: ShellTableMeta) -> int:
        n = 0
        for path in chunk_files(self.dump_dir, meta):
            for _ in iter_chunk_lines(path, meta):
                n += 1
                if n % CANCEL_CHECK_LINES == 0:
                    check_cancelled(self.cancel)
        return n

    def iter_rows(self, table: Table) -> Iterator[tuple[str | None, ...]]:
        meta = self.metas[table.name]
        for path in chunk_files(self.dump_dir, meta):
            for line in iter_chunk_lines(path, meta):
                yield parse_tsv_line(line, meta)


class MysqlShellDumpImportSource:
    format = ImportFormat.MYSQL_SHELL_DUMP

    def analyze(self, source_path: str, *, cancel: CancelSignal | None = None) -> GenericAnalysisResult:
        if not os.path.isdir(source_path):
            raise FileNotFoundError(source_path)
        return MysqlShellDumpParser(source_path, cancel=cancel).parse().to_analysis(source_path, self.format)

    def import_(
        self,
        options: GenericImportOptions,
        *,
        progress: ProgressSink | None = None,
        cancel: CancelSignal | None = None,
        connect: Callable[[str], Any] | None = None,
    ) -> ImportReport:
        parser = MysqlShellDumpParser(options.source_path, cancel=cancel)

        def read_rows(table: Table) -> Iterator[RowBlock]:
            columns = parser.metas[table.name].columns or None
            yield columns, parser.iter_rows(table)

        return execute_import(
            options,
            fmt=self.format,
            load=parser.parse,
            map_type=map_mysql_type,
            read_rows=read_rows,
            progress=progress,
            cancel=cancel,
            connect=connect,
        )
