"""Import PostgreSQL plain-text dumps (pg_dump -Fp) into DecentDB.

Parses CREATE TABLE, ALTER TABLE (constraints, identity), CREATE INDEX and
COPY ... FROM stdin blocks in a single pass. COPY rows are only counted while
parsing; the copy phase seeks back to each block and streams it.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from typing import Any, Callable, Iterator

from ..errors import ConversionError
from ..mapping import map_pg_type
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

logger = logging.getLogger(__name__)

CANCEL_CHECK_LINES = 10_000

_IDENT = r'(?:"(?:[^"]|"")+"|[\w$]+)'
_QNAME = rf"{_IDENT}(?:\s*\.\s*{_IDENT})*"

_CREATE_TABLE_RE = re.compile(
    rf"^CREATE\s+(?:UNLOGGED\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?({_QNAME})\s*\(\s*$", re.IGNORECASE
)
_ALTER_TABLE_RE = re.compile(rf"^ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?({_QNAME})\s+(.*)$", re.IGNORECASE | re.DOTALL)
_ADD_PK_RE = re.compile(rf"^ADD\s+CONSTRAINT\s+({_IDENT})\s+PRIMARY\s+KEY\s*\((.*?)\)", re.IGNORECASE | re.DOTALL)
_ADD_UNIQUE_RE = re.compile(rf"^ADD\s+CONSTRAINT\s+({_IDENT})\s+UNIQUE\s*\((.*?)\)", re.IGNORECASE | re.DOTALL)
_ADD_FK_RE = re.compile(
    rf"^ADD\s+CONSTRAINT\s+({_IDENT})\s+FOREIGN\s+KEY\s*\((.*?)\)\s*REFERENCES\s+({_QNAME})\s*\((.*?)\)",
    re.IGNORECASE | re.DOTALL,
)
_IDENTITY_RE = re.compile(
    rf"^ALTER\s+(?:COLUMN\s+)?({_IDENT})\s+(?:ADD\s+GENERATED\s+.*\bAS\s+IDENTITY|SET\s+DEFAULT\s+nextval\()",
    re.IGNORECASE | re.DOTALL,
)
_CREATE_INDEX_RE = re.compile(
    rf"^CREATE\s+(UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?({_IDENT})\s+ON\s+(?:ONLY\s+)?({_QNAME})"
    r"(?:\s+USING\s+(\w+))?\s*\(",
    re.IGNORECASE,
)
_ALTER_START_RE = re.compile(r"^ALTER\s+TABLE\b", re.IGNORECASE)
_INDEX_START_RE = re.compile(r"^CREATE\s+(?:UNIQUE\s+)?INDEX\b", re.IGNORECASE)
_COPY_RE = re.compile(rf"^COPY\s+({_QNAME})\s*(?:\((.*?)\))?\s+FROM\s+stdin", re.IGNORECASE)
_ROUTINE_RE = re.compile(r"^(?:CREATE\s+(?:OR\s+REPLACE\s+)?(?:FUNCTION|PROCEDURE)\b|DO\s)", re.IGNORECASE)
_DOLLAR_TAG_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
_TABLE_CONSTRAINT_RE = re.compile(r"^(?:CONSTRAINT|PRIMARY\s+KEY|UNIQUE|CHECK|FOREIGN\s+KEY|EXCLUDE)\b", re.IGNORECASE)
_KEY_CONSTRAINT_RE = re.compile(
    rf"^(?:CONSTRAINT\s+({_IDENT})\s+)?(PRIMARY\s+KEY|UNIQUE|FOREIGN\s+KEY)\s*\((.*?)\)"
    rf"(?:\s*REFERENCES\s+({_QNAME})\s*\((.*?)\))?",
    re.IGNORECASE,
)
_STRING_LITERAL_RE = re.compile(r"'(?:[^'\\]|\\.|'')*'")
_INLINE_REFERENCES_RE = re.compile(rf"\bREFERENCES\s+({_QNAME})\s*\(\s*({_IDENT})\s*\)", re.IGNORECASE)

# Words that end the type part of a column definition.
_COLUMN_KEYWORDS = {
    "NOT", "NULL", "DEFAULT", "CONSTRAINT", "PRIMARY", "UNIQUE", "REFERENCES",
    "CHECK", "COLLATE", "GENERATED",
}


def unquote_ident(ident: str) -> str:
    ident = ident.strip()
    if len(ident) >= 2 and ident[0] == '"' and ident[-1] == '"':
        return ident[1:-1].replace('""', '"')
    return ident


def _split_top_level(s: str, sep: str = ",") -> list[str]:
    parts: list[str] = []
    depth = 0
    in_quote: str | None = None
    cur: list[str] = []
    for ch in s:
        if in_quote:
            cur.append(ch)
            if ch == in_quote:
                in_quote = None
            continue
        if ch in "\"'":
            in_quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append("".join(cur).strip())
            cur = []
            continue
        cur.append(ch)
    if "".join(cur).strip():
        parts.append("".join(cur).strip())
    return parts


def table_name(qname: str) -> str:
    """Last component of a possibly schema-qualified name, unquoted."""
    parts = re.findall(_IDENT, qname)
    return unquote_ident(parts[-1]) if parts else qname


def parse_ident_list(s: str) -> list[str]:
    return [unquote_ident(p) for p in _split_top_level(s) if p]


_COPY_ESCAPES = {"b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t", "v": "\v", "\\": "\\"}


def unescape_copy_field(field: str) -> str | None:
    """Decode one COPY text-format field. ``\\N`` is NULL."""
    if field == "\\N":
        return None
    if "\\" not in field:
        return field

    out: list[str] = []
    i = 0
    n = len(field)
    while i < n:
        ch = field[i]
        if ch != "\\" or i + 1 >= n:
            out.append(ch)
            i += 1
            continue
        nxt = field[i + 1]
        if nxt in _COPY_ESCAPES:
            out.append(_COPY_ESCAPES[nxt])
            i += 2
        elif nxt in "01234567":
            j = i + 1
            while j < n and j < i + 4 and field[j] in "01234567":
                j += 1
            out.append(chr(int(field[i + 1 : j], 8)))
            i = j
        elif nxt == "x" and i + 2 < n and field[i + 2] in "0123456789abcdefABCDEF":
            j = i + 2
            while j < n and j < i + 4 and field[j] in "0123456789abcdefABCDEF":
                j += 1
            out.append(chr(int(field[i + 2 : j], 16)))
            i = j
        else:
            out.append(nxt)
            i += 2
    return "".join(out)


def parse_copy_line(line: str) -> tuple[str | None, ...]:
    return tuple(unescape_copy_field(f) for f in line.split("\t"))


def iter_lines(path: str, start: int = 0) -> Iterator[tuple[int, str]]:
    """Yield ``(byte_offset, line)`` pairs without line terminators.

    Lines are decoded as UTF-8 with surrogateescape so binary payloads survive
    and offsets stay exact for seeking.
    """
    with open(path, "rb") as f:
        f.seek(start)
        offset = start
        for raw in f:
            yield offset, raw.decode("utf-8", "surrogateescape").rstrip("\r\n")
            offset += len(raw)


@dataclasses.dataclass(frozen=True)
class CopyBlock:
    columns: list[str] | None
    offset: int  # first data line


class PgDumpParser:
    """Single-pass schema parser for PostgreSQL plain dumps."""

    def __init__(self, file_path: str, *, cancel: CancelSignal | None = None):
        self.file_path = file_path
        self.cancel = cancel
        self.warnings: list[str] = []
        self.row_counts: dict[str, int] = {}
        self.copy_blocks: dict[str, list[CopyBlock]] = {}
        self._order: list[str] = []
        self._columns: dict[str, list[Column]] = {}
        self._foreign_keys: list[tuple[str, ForeignKey]] = []
        self._indexes: list[Index] = []
        self._skipped: list[SkippedIndex] = []

    def parse(self) -> LoadedSchema:
        lines = iter_lines(self.file_path)
        n = 0
        for _, line in lines:
            n += 1
            if n % CANCEL_CHECK_LINES == 0:
                check_cancelled(self.cancel)

            stripped = line.strip()
            if not stripped or stripped.startswith("--") or stripped.startswith("\\"):
                continue

            m = _CREATE_TABLE_RE.match(stripped)
            if m:
                self._parse_create_table(table_name(m.group(1)), lines)
                continue

            if _ROUTINE_RE.match(stripped):
                self._skip_dollar_quoted(stripped, lines)
                continue

            m = _COPY_RE.match(stripped)
            if m:
                self._parse_copy(table_name(m.group(1)), m.group(2), lines)
                continue

            if _ALTER_START_RE.match(stripped):
                self._parse_alter_table(self._read_statement(stripped, lines))
            elif _INDEX_START_RE.match(stripped):
                self._parse_create_index(self._read_statement(stripped, lines))

        return self._build()

    def _read_statement(self, first: str, lines: Iterator[tuple[int, str]]) -> str:
        parts = [first]
        while not parts[-1].rstrip().endswith(";"):
            try:
                _, nxt = next(lines)
            except StopIteration:
                break
            nxt = nxt.strip()
            if nxt and not nxt.startswith("--"):
                parts.append(nxt)
        return " ".join(parts).rstrip().rstrip(";")

    def _skip_dollar_quoted(self, first: str, lines: Iterator[tuple[int, str]]) -> None:
        tag: str | None = None
        line = first
        while True:
            for m in _DOLLAR_TAG_RE.finditer(line):
                if tag is None:
                    tag = m.group(0)
                elif m.group(0) == tag:
                    tag = None
            if tag is None and line.rstrip().endswith(";"):
                return
            try:
                _, line = next(lines)
            except StopIteration:
                return

    def _parse_create_table(self, name: str, lines: Iterator[tuple[int, str]]) -> None:
        if name in self._columns:
            raise ConversionError(f"Duplicate table name across schemas: {name}")
        columns: list[Column] = []
        pk_cols: set[str] = set()
        for _, line in lines:
            stripped = line.strip()
            if stripped.startswith(")"):
                break
            stripped = stripped.rstrip(",").strip()
            if not stripped or stripped.startswith("--"):
                continue
            if _TABLE_CONSTRAINT_RE.match(stripped):
                pk_cols.update(self._parse_table_constraint(name, stripped))
                continue
            col = self._parse_column_def(name, stripped)
            if col is not None:
                columns.append(col)

        if pk_cols:
            columns = [
                dataclasses.replace(c, is_primary_key=True, not_null=True) if c.name in pk_cols else c for c in columns
            ]
        self._order.append(name)
        self._columns[name] = columns

    def _parse_table_constraint(self, table: str, line: str) -> list[str]:
        """Record a key constraint written inside CREATE TABLE; returns primary key columns."""
        m = _KEY_CONSTRAINT_RE.match(line)
        if not m:
            return []
        constraint = unquote_ident(m.group(1)) if m.group(1) else None
        kind = m.group(2).upper()
        cols = parse_ident_list(m.group(3))
        if kind.startswith("PRIMARY"):
            return cols
        if kind == "UNIQUE":
            self._indexes.append(
                Index(name=constraint or f"{table}_{'_'.join(cols)}_key", table=table, columns=cols, is_unique=True)
            )
            return []
        if m.group(4) is None:
            return []
        to_cols = parse_ident_list(m.group(5))
        if len(cols) != 1 or len(to_cols) != 1:
            self.warnings.append(f"Composite foreign key not imported: {table}.{constraint or ','.join(cols)}")
            return []
        self._foreign_keys.append(
            (
                table,
                ForeignKey(
                    from_column=cols[0],
                    to_table=table_name(m.group(4)),
                    to_column=to_cols[0],
                    constraint_name=constraint,
                ),
            )
        )
        return []

    def _parse_column_def(self, table: str, col_def: str) -> Column | None:
        m = re.match(rf"^({_IDENT})\s+(.+)$", col_def)
        if not m:
            self.warnings.append(f"Cannot parse column definition in {table}: {col_def}")
            return None
        col_name = unquote_ident(m.group(1))
        rest = m.group(2)

        type_tokens: list[str] = []
        tokens = rest.split()
        for tok in tokens:
            if tok.upper() in _COLUMN_KEYWORDS and type_tokens:
                break
            type_tokens.append(tok)
        pg_type = " ".join(type_tokens)

        # Keywords inside DEFAULT/CHECK string literals are not constraints.
        flags = _STRING_LITERAL_RE.sub("''", rest)
        upper = flags.upper()
        base = re.sub(r"\(.*\)", "", pg_type).strip().lower()
        auto_inc = (
            base in ("serial", "bigserial", "smallserial", "serial2", "serial4", "serial8")
            or "AS IDENTITY" in upper
            or "NEXTVAL(" in upper
        )
        is_pk = "PRIMARY KEY" in upper
        not_null = "NOT NULL" in upper or is_pk

        if re.search(r"\bUNIQUE\b", upper):
            self._indexes.append(Index(name=f"{table}_{col_name}_key", table=table, columns=[col_name], is_unique=True))
        ref = _INLINE_REFERENCES_RE.search(flags)
        if ref:
            self._foreign_keys.append(
                (table, ForeignKey(from_column=col_name, to_table=table_name(ref.group(1)), to_column=unquote_ident(ref.group(2))))
            )

        return Column(
            name=col_name,
            declared_type=pg_type,
            not_null=not_null,
            is_primary_key=is_pk,
            is_auto_increment=auto_inc,
        )

    def _parse_alter_table(self, stmt: str) -> None:
        m = _ALTER_TABLE_RE.match(stmt)
        if not m:
            return
        table = table_name(m.group(1))
        action = m.group(2).strip()

        pk = _ADD_PK_RE.match(action)
        if pk:
            if table not in self._columns:
                self.warnings.append(f"Primary key for unknown table ignored: {table}")
                return
            pk_cols = set(parse_ident_list(pk.group(2)))
            self._columns[table] = [
                dataclasses.replace(c, is_primary_key=True, not_null=True) if c.name in pk_cols else c
                for c in self._columns[table]
            ]
            return

        uq = _ADD_UNIQUE_RE.match(action)
        if uq:
            self._indexes.append(
                Index(name=unquote_ident(uq.group(1)), table=table, columns=parse_ident_list(uq.group(2)), is_unique=True)
            )
            return

        fk = _ADD_FK_RE.match(action)
        if fk:
            constraint = unquote_ident(fk.group(1))
            from_cols = parse_ident_list(fk.group(2))
            to_cols = parse_ident_list(fk.group(4))
            if len(from_cols) != 1 or len(to_cols) != 1:
                self.warnings.append(f"Composite foreign key not imported: {table}.{constraint}")
                return
            self._foreign_keys.append(
                (
                    table,
                    ForeignKey(
                        from_column=from_cols[0],
                        to_table=table_name(fk.group(3)),
                        to_column=to_cols[0],
                        constraint_name=constraint,
                    ),
                )
            )
            return

        ident = _IDENTITY_RE.match(action)
        if ident and table in self._columns:
            col = unquote_ident(ident.group(1))
            self._columns[table] = [
                dataclasses.replace(c, is_auto_increment=True) if c.name == col else c for c in self._columns[table]
            ]

    def _parse_create_index(self, stmt: str) -> None:
        m = _CREATE_INDEX_RE.match(stmt)
        if not m:
            return
        unique = bool(m.group(1))
        name = unquote_ident(m.group(2))
        table = table_name(m.group(3))

        # Balanced key list starting at the opening paren matched above.
        depth = 1
        i = m.end()
        start = i
        while i < len(stmt) and depth:
            if stmt[i] == "(":
                depth += 1
            elif stmt[i] == ")":
                depth -= 1
            i += 1
        key_list = stmt[start : i - 1]
        tail = stmt[i:]

        if re.search(r"\bWHERE\b", tail, re.IGNORECASE):
            self._skipped.append(SkippedIndex(name=name, table=table, reason="Partial index not supported"))
            return

        columns: list[str] = []
        for part in _split_top_level(key_list):
            part = re.sub(r"\s+(?:ASC|DESC|NULLS\s+(?:FIRST|LAST)|COLLATE\s+\S+).*$", "", part, flags=re.IGNORECASE)
            # Drop a trailing operator class (e.g. "name text_pattern_ops").
            part = re.sub(r"\s+[\w.]+_ops$", "", part.strip())
            if not re.fullmatch(_IDENT, part):
                self._skipped.append(SkippedIndex(name=name, table=table, reason="Expression index not supported"))
                return
            columns.append(unquote_ident(part))

        self._indexes.append(Index(name=name, table=table, columns=columns, is_unique=unique))

    def _parse_copy(self, table: str, cols: str | None, lines: Iterator[tuple[int, str]]) -> None:
        count = 0
        first_offset: int | None = None
        for offset, line in lines:
            if first_offset is None:
                first_offset = offset
            if line == "\\.":
                break
            count += 1
            if count % CANCEL_CHECK_LINES == 0:
                check_cancelled(self.cancel)

        if table not in self._columns:
            self.warnings.append(f"COPY data for unknown table ignored: {table}")
            return
        block = CopyBlock(
            columns=parse_ident_list(cols) if cols else None,
            offset=first_offset if first_offset is not None else os.path.getsize(self.file_path),
        )
        self.copy_blocks.setdefault(table, []).append(block)
        self.row_counts[table] = self.row_counts.get(table, 0) + count

    def _build(self) -> LoadedSchema:
        fks: dict[str, list[ForeignKey]] = {}
        for table, fk in self._foreign_keys:
            if table not in self._columns:
                self.warnings.append(f"Foreign key for unknown table ignored: {table}.{fk.from_column}")
                continue
            fks.setdefault(table, []).append(fk)

        indexes: dict[str, list[Index]] = {}
        for idx in self._indexes:
            if idx.table not in self._columns:
                self.warnings.append(f"Index for unknown table ignored: {idx.name}")
                continue
            indexes.setdefault(idx.table, []).append(idx)

        skipped: dict[str, list[SkippedIndex]] = {}
        for s in self._skipped:
            skipped.setdefault(s.table, []).append(s)

        tables = [
            Table(
                name=name,
                columns=self._columns[name],
                foreign_keys=fks.get(name, []),
                indexes=indexes.get(name, []),
                skipped_indexes=skipped.get(name, []),
            )
            for name in self._order
        ]
        for t in tables:
            if not t.columns:
                raise ConversionError(f"Table has no columns: {t.name}")
        counts = {name: self.row_counts.get(name, 0) for name in self._order}
        return LoadedSchema(tables=tables, row_counts=counts, warnings=self.warnings)


def iter_copy_rows(path: str, block: CopyBlock) -> Iterator[tuple[str | None, ...]]:
    for _, line in iter_lines(path, block.offset):
        if line == "\\.":
            return
        yield parse_copy_line(line)


class PgDumpImportSource:
    format = ImportFormat.PG_DUMP

    def _load(self, source_path: str, cancel: CancelSignal | None) -> tuple[LoadedSchema, PgDumpParser]:
        parser = PgDumpParser(source_path, cancel=cancel)
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
        parsed: dict[str, PgDumpParser] = {}

        def load() -> LoadedSchema:
            schema, parsed["parser"] = self._load(options.source_path, cancel)
            return schema

        def read_rows(table: Table) -> Iterator[RowBlock]:
            for block in parsed["parser"].copy_blocks.get(table.name, []):
                yield block.columns, iter_copy_rows(options.source_path, block)

        return execute_import(
            options,
            fmt=self.format,
            load=load,
            map_type=map_pg_type,
            read_rows=read_rows,
            progress=progress,
            cancel=cancel,
            connect=connect,
        )
