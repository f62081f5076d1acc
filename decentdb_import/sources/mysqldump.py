"""Import mysqldump / mariadb-dump SQL files into DecentDB.

CREATE TABLE blocks give the schema (inline PRIMARY KEY, UNIQUE KEY, KEY and
CONSTRAINT ... FOREIGN KEY lines). INSERT ... VALUES statements are scanned
with a quote/escape aware tuple scanner, counted while parsing and streamed
again from their recorded offsets during the copy phase.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from typing import Any, Callable, Iterator

from ..errors import ConversionError
from ..mapping import map_mysql_type
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
from .pgdump import iter_lines

logger = logging.getLogger(__name__)

CANCEL_CHECK_LINES = 10_000

_IDENT = r"(?:`(?:[^`]|``)+`|[\w$]+)"
_QNAME = rf"{_IDENT}(?:\s*\.\s*{_IDENT})?"

_CREATE_TABLE_RE = re.compile(rf"^CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?({_QNAME})\s*\(", re.IGNORECASE)
_INSERT_RE = re.compile(
    rf"^(?:INSERT|REPLACE)\s+(?:LOW_PRIORITY\s+|DELAYED\s+|HIGH_PRIORITY\s+)?(?:IGNORE\s+)?INTO\s+({_QNAME})\s*"
    r"(?:\(([^)]*)\))?\s*VALUES\s*",
    re.IGNORECASE,
)
_PRIMARY_KEY_RE = re.compile(r"^PRIMARY\s+KEY\s*(?:USING\s+\w+\s*)?\((.*)\)", re.IGNORECASE)
_UNIQUE_KEY_RE = re.compile(rf"^UNIQUE\s+(?:KEY|INDEX)?\s*({_IDENT})?\s*\((.*)\)", re.IGNORECASE)
_KEY_RE = re.compile(rf"^(?:KEY|INDEX)\s+({_IDENT})?\s*\((.*)\)", re.IGNORECASE)
_SPECIAL_KEY_RE = re.compile(rf"^(FULLTEXT|SPATIAL)\s+(?:KEY|INDEX)?\s*({_IDENT})?", re.IGNORECASE)
_FOREIGN_KEY_RE = re.compile(
    rf"^(?:CONSTRAINT\s+({_IDENT})\s+)?FOREIGN\s+KEY\s*(?:{_IDENT}\s*)?\((.*?)\)\s*REFERENCES\s+({_QNAME})\s*\((.*?)\)",
    re.IGNORECASE,
)
_COLUMN_RE = re.compile(rf"^({_IDENT})\s+(.*)$")
_DELIMITER_RE = re.compile(r"^DELIMITER\s+(\S+)", re.IGNORECASE)
_QUOTED_RE = re.compile(r"'(?:[^'\\]|\\.|'')*'|\"(?:[^\"\\]|\\.|\"\")*\"")

_TYPE_CONTINUATIONS = {"UNSIGNED", "SIGNED", "ZEROFILL", "PRECISION"}


def unquote_ident(ident: str) -> str:
    ident = ident.strip()
    if len(ident) >= 2 and ident[0] == "`" and ident[-1] == "`":
        return ident[1:-1].replace("``", "`")
    return ident


def table_name(qname: str) -> str:
    parts = re.findall(_IDENT, qname)
    return unquote_ident(parts[-1]) if parts else qname


def _split_top_level(s: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    cur: list[str] = []
    for ch in s:
        if quote:
            cur.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in "`'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(cur).strip())
            cur = []
            continue
        cur.append(ch)
    if "".join(cur).strip():
        parts.append("".join(cur).strip())
    return parts


def parse_key_parts(s: str) -> list[str] | None:
    """Column names of an index key list; None if any part is an expression.

    Prefix lengths (`name`(10)) and ASC/DESC are dropped.
    """
    cols: list[str] = []
    for part in _split_top_level(s):
        part = re.sub(r"\s+(?:ASC|DESC)$", "", part, flags=re.IGNORECASE).strip()
        m = re.fullmatch(rf"({_IDENT})\s*(?:\(\d+\))?", part)
        if not m:
            return None
        cols.append(unquote_ident(m.group(1)))
    return cols


def extract_mysql_type(rest: str) -> tuple[str, str]:
    """Split a column definition tail into ``(type, remainder)``."""
    depth = 0
    quote: str | None = None
    i = 0
    n = len(rest)
    while i < n:
        ch = rest[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch.isspace() and depth == 0:
            break
        i += 1
    type_parts = [rest[:i]]
    remainder = rest[i:].strip()
    while remainder:
        word = remainder.split(None, 1)
        if word[0].upper().rstrip(",") not in _TYPE_CONTINUATIONS:
            break
        type_parts.append(word[0].rstrip(","))
        remainder = word[1] if len(word) > 1 else ""
    return " ".join(type_parts), remainder


_STRING_ESCAPES = {
    "0": "\x00",
    "b": "\b",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "Z": "\x1a",
    "\\": "\\",
    "'": "'",
    '"': '"',
    # MySQL keeps the backslash in \% and \_ (LIKE escapes).
    "%": "\\%",
    "_": "\\_",
}


class ValuesScanner:
    """Incremental scanner for the ``(...),(...);`` tail of an INSERT statement.

    Feed text chunks in order; completed row tuples are returned from
    :meth:`feed`. With ``collect=False`` rows are only counted.
    """

    def __init__(self, *, collect: bool = True, table: str = ""):
        self.collect = collect
        self.table = table
        self.rows = 0
        self.done = False
        self._in_row = False
        self._depth = 0
        self._quote: str | None = None
        self._escape = False
        self._close_pending = False
        self._quoted = False
        self._prefix = ""
        self._str: list[str] = []
        self._raw: list[str] = []
        self._row: list[Any] = []

    def feed(self, text: str) -> list[tuple[Any, ...]]:
        out: list[tuple[Any, ...]] = []
        collect = self.collect
        for ch in text:
            if self.done:
                break

            if self._quote is not None:
                if self._close_pending:
                    self._close_pending = False
                    if ch == self._quote:
                        if collect:
                            self._str.append(ch)
                        continue
                    self._quote = None
                elif self._escape:
                    self._escape = False
                    if collect:
                        self._str.append(_STRING_ESCAPES.get(ch, ch))
                    continue
                elif ch == "\\":
                    self._escape = True
                    continue
                elif ch == self._quote:
                    self._close_pending = True
                    continue
                else:
                    if collect:
                        self._str.append(ch)
                    continue

            if not self._in_row:
                if ch == "(":
                    self._in_row = True
                    self._depth = 1
                    self._row = []
                    self._reset_field()
                elif ch == ";":
                    self.done = True
                continue

            if ch in "'\"":
                self._quote = ch
                self._quoted = True
                self._prefix = "".join(self._raw).strip()
                self._raw = []
            elif ch == "(":
                self._depth += 1
                self._raw.append(ch)
            elif ch == ")":
                self._depth -= 1
                if self._depth == 0:
                    self._end_field()
                    self._in_row = False
                    self.rows += 1
                    if collect:
                        out.append(tuple(self._row))
                else:
                    self._raw.append(ch)
            elif ch == "," and self._depth == 1:
                self._end_field()
            elif collect:
                self._raw.append(ch)
        return out

    def _reset_field(self) -> None:
        self._quoted = False
        self._prefix = ""
        self._str = []
        self._raw = []

    def _end_field(self) -> None:
        if self.collect:
            self._row.append(self._field_value())
        self._reset_field()

    def _field_value(self) -> Any:
        if self._quoted:
            s = "".join(self._str)
            prefix = self._prefix.lower()
            if prefix == "x":
                return self._literal(f"x'{s}'", bytes.fromhex, s)
            if prefix == "b":
                return self._literal(f"b'{s}'", lambda v: int(v, 2), s) if s else 0
            if prefix == "_binary":
                return s.encode("utf-8", "surrogateescape")
            return s

        raw = "".join(self._raw).strip()
        if raw.startswith("_") and " " in raw:
            # Character set introducer before an unquoted literal.
            raw = raw.split(None, 1)[1].strip()
        if raw.upper() == "NULL":
            return None
        if raw[:2].lower() == "0x":
            return self._literal(raw, bytes.fromhex, raw[2:])
        if raw.upper() == "TRUE":
            return True
        if raw.upper() == "FALSE":
            return False
        return raw

    def _literal(self, text: str, convert: Callable[[str], Any], value: str) -> Any:
        try:
            return convert(value)
        except ValueError as exc:
            where = f" in {self.table}" if self.table else ""
            raise ConversionError(f"Invalid binary literal{where}: {text}") from exc


@dataclasses.dataclass(frozen=True)
class InsertStatement:
    columns: list[str] | None
    offset: int  # start of the INSERT line


class MysqlDumpParser:
    """Single-pass schema parser for mysqldump output."""

    def __init__(self, file_path: str, *, cancel: CancelSignal | None = None):
        self.file_path = file_path
        self.cancel = cancel
        self.warnings: list[str] = []
        self.tables: list[Table] = []
        self.row_counts: dict[str, int] = {}
        self.inserts: dict[str, list[InsertStatement]] = {}
        self._names: set[str] = set()

    def parse(self) -> LoadedSchema:
        lines = iter_lines(self.file_path)
        n = 0
        for offset, line in lines:
            n += 1
            if n % CANCEL_CHECK_LINES == 0:
                check_cancelled(self.cancel)

            stripped = line.strip()
            if not stripped or stripped.startswith("--") or stripped.startswith("/*!") or stripped.startswith("#"):
                continue

            m = _DELIMITER_RE.match(stripped)
            if m and m.group(1) != ";":
                self._skip_delimited_block(lines)
                continue

            m = _CREATE_TABLE_RE.match(stripped)
            if m:
                self._add_table(self._parse_create_table(table_name(m.group(1)), lines))
                continue

            m = _INSERT_RE.match(stripped)
            if m:
                self._count_insert(table_name(m.group(1)), m.group(2), stripped[m.end():], offset, lines)

        counts = {t.name: self.row_counts.get(t.name, 0) for t in self.tables}
        return LoadedSchema(tables=list(self.tables), row_counts=counts, warnings=self.warnings)

    def parse_ddl(self) -> list[Table]:
        """Parse only the CREATE TABLE statements of a DDL file."""
        lines = iter_lines(self.file_path)
        for _, line in lines:
            m = _CREATE_TABLE_RE.match(line.strip())
            if m:
                self._add_table(self._parse_create_table(table_name(m.group(1)), lines))
        return list(self.tables)

    def _add_table(self, table: Table) -> None:
        if table.name in self._names:
            raise ConversionError(f"Duplicate table definition: {table.name}")
        self._names.add(table.name)
        self.tables.append(table)

    def _skip_delimited_block(self, lines: Iterator[tuple[int, str]]) -> None:
        # Trigger and routine bodies; their INSERTs are not table data.
        for _, line in lines:
            m = _DELIMITER_RE.match(line.strip())
            if m and m.group(1) == ";":
                return

    def _parse_create_table(self, name: str, lines: Iterator[tuple[int, str]]) -> Table:
        columns: list[Column] = []
        pk_cols: list[str] = []
        fks: list[ForeignKey] = []
        indexes: list[Index] = []
        skipped: list[SkippedIndex] = []

        for _, line in lines:
            stripped = line.strip()
            if stripped.startswith(")"):
                break
            stripped = stripped.rstrip(",").strip()
            if not stripped or stripped.startswith("--"):
                continue

            m = _PRIMARY_KEY_RE.match(stripped)
            if m:
                pk_cols = [c for c in (parse_key_parts(m.group(1)) or [])]
                continue

            m = _UNIQUE_KEY_RE.match(stripped)
            if m:
                self._add_index(name, m.group(1), m.group(2), True, indexes, skipped)
                continue

            m = _SPECIAL_KEY_RE.match(stripped)
            if m:
                idx_name = unquote_ident(m.group(2)) if m.group(2) else f"{name}_{m.group(1).lower()}"
                skipped.append(SkippedIndex(name=idx_name, table=name, reason=f"{m.group(1).upper()} index not supported"))
                continue

            m = _KEY_RE.match(stripped)
            if m:
                self._add_index(name, m.group(1), m.group(2), False, indexes, skipped)
                continue

            m = _FOREIGN_KEY_RE.match(stripped)
            if m:
                constraint = unquote_ident(m.group(1)) if m.group(1) else None
                from_cols = parse_key_parts(m.group(2)) or []
                to_cols = parse_key_parts(m.group(4)) or []
                if len(from_cols) != 1 or len(to_cols) != 1:
                    self.warnings.append(f"Composite foreign key not imported: {name}.{constraint or m.group(2)}")
                    continue
                fks.append(
                    ForeignKey(
                        from_column=from_cols[0],
                        to_table=table_name(m.group(3)),
                        to_column=to_cols[0],
                        constraint_name=constraint,
                    )
                )
                continue

            if re.match(r"^(?:CONSTRAINT|CHECK)\b", stripped, re.IGNORECASE):
                continue

            col = self._parse_column(name, stripped, indexes)
            if col is not None:
                columns.append(col)

        if not columns:
            raise ConversionError(f"Table has no columns: {name}")

        if pk_cols:
            pk_set = set(pk_cols)
            columns = [
                dataclasses.replace(c, is_primary_key=True, not_null=True) if c.name in pk_set else c
                for c in columns
            ]

        return Table(name=name, columns=columns, foreign_keys=fks, indexes=indexes, skipped_indexes=skipped)

    def _add_index(
        self,
        table: str,
        raw_name: str | None,
        key_list: str,
        unique: bool,
        indexes: list[Index],
        skipped: list[SkippedIndex],
    ) -> None:
        cols = parse_key_parts(key_list)
        idx_name = unquote_ident(raw_name) if raw_name else f"{table}_{'_'.join(cols or ['expr'])}"
        if cols is None:
            skipped.append(SkippedIndex(name=idx_name, table=table, reason="Expression index not supported"))
            return
        indexes.append(Index(name=idx_name, table=table, columns=cols, is_unique=unique))

    def _parse_column(self, table: str, col_def: str, indexes: list[Index]) -> Column | None:
        m = _COLUMN_RE.match(col_def)
        if not m:
            self.warnings.append(f"Cannot parse column definition in {table}: {col_def}")
            return None
        col_name = unquote_ident(m.group(1))
        mysql_type, remainder = extract_mysql_type(m.group(2))

        # Keywords inside DEFAULT/COMMENT strings must not count.
        flags = _QUOTED_RE.sub("''", remainder).upper()
        is_pk = "PRIMARY KEY" in flags
        if re.search(r"\bUNIQUE\b", flags):
            indexes.append(Index(name=col_name, table=table, columns=[col_name], is_unique=True))
        return Column(
            name=col_name,
            declared_type=mysql_type,
            not_null="NOT NULL" in flags or is_pk,
            is_primary_key=is_pk,
            is_auto_increment="AUTO_INCREMENT" in flags,
        )

    def _count_insert(
        self,
        table: str,
        cols: str | None,
        tail: str,
        offset: int,
        lines: Iterator[tuple[int, str]],
    ) -> None:
        scanner = ValuesScanner(collect=False)
        scanner.feed(tail + "\n")
        while not scanner.done:
            try:
                _, nxt = next(lines)
            except StopIteration:
                break
            scanner.feed(nxt + "\n")

        if table not in self._names:
            self.warnings.append(f"INSERT for unknown table ignored: {table}")
            return
        columns = [unquote_ident(c) for c in _split_top_level(cols)] if cols else None
        self.inserts.setdefault(table, []).append(InsertStatement(columns=columns, offset=offset))
        self.row_counts[table] = self.row_counts.get(table, 0) + scanner.rows


def iter_insert_rows(path: str, stmt: InsertStatement, table: str = "") -> Iterator[tuple[Any, ...]]:
    scanner = ValuesScanner(table=table)
    first = True
    for _, line in iter_lines(path, stmt.offset):
        if first:
            first = False
            stripped = line.strip()
            m = _INSERT_RE.match(stripped)
            if not m:
                raise ConversionError(f"Expected INSERT statement at byte {stmt.offset} of {path}")
            line = stripped[m.end():]
        yield from scanner.feed(line + "\n")
        if scanner.done:
            return


class MysqlDumpImportSource:
    format = ImportFormat.MYSQL_DUMP

    def _load(self, source_path: str, cancel: CancelSignal | None) -> tuple[LoadedSchema, MysqlDumpParser]:
        parser = MysqlDumpParser(source_path, cancel=cancel)
        schema = parser.parse()
        logger.debug("Parsed %d tables from %s", len(schema.tables), source_path)
        return schema, parser

    def analyze(self, source_path: str, *, cancel: CancelSignal | None = None) -> GenericAnalysisResult:
        if not os.path.exists(source_path):
            raise FileNotFoundError(source_path)
        schema, _ = self._load(source_path, cancel)
        return schema.to_analysis(source_path, self.format)

    def import_(
        self,
        options: GenericImportOptions,
        *,
        progress: ProgressSink | None = None,
        cancel: CancelSignal | None = None,
        connect: Callable[[str], Any] | None = None,
    ) -> ImportReport:
        parsed: dict[str, MysqlDumpParser] = {}

        def load() -> LoadedSchema:
            schema, parsed["parser"] = self._load(options.source_path, cancel)
            return schema

        def read_rows(table: Table) -> Iterator[RowBlock]:
            for stmt in parsed["parser"].inserts.get(table.name, []):
                yield stmt.columns, iter_insert_rows(options.source_path, stmt, table.name)

        return execute_import(
            options,
            fmt=self.format,
            load=load,
            map_type=map_mysql_type,
            read_rows=read_rows,
            progress=progress,
            cancel=cancel,
            connect=connect,
        )
