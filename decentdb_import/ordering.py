from __future__ import annotations

from collections import deque

from .errors import ConversionError
from .models import Table


def toposort_tables(tables: list[Table]) -> list[Table]:
    """Order tables so every referenced table precedes the tables referencing it.

    Self-referencing foreign keys do not add an edge. The queue is seeded in
    source order so the result is deterministic.
    """
    by_name = {t.name: t for t in tables}
    deps: dict[str, set[str]] = {t.name: set() for t in tables}
    rev: dict[str, list[str]] = {t.name: [] for t in tables}

    for t in tables:
        for fk in t.foreign_keys:
            if fk.to_table == t.name:
                continue
            if fk.to_table not in by_name:
                raise ConversionError(
                    f"Foreign key references missing table: {t.name}.{fk.from_column} -> {fk.to_table}({fk.to_column})"
                )
            if fk.to_table not in deps[t.name]:
                deps[t.name].add(fk.to_table)
                rev[fk.to_table].append(t.name)

    indeg = {name: len(d) for name, d in deps.items()}
    q = deque([t.name for t in tables if indeg[t.name] == 0])
    out: list[str] = []

    while q:
        n = q.popleft()
        out.append(n)
        for child in rev[n]:
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if len(out) != len(tables):
        cycle = [name for name, d in indeg.items() if d > 0]
        raise ConversionError(f"Foreign key cycle detected among tables: {', '.join(sorted(cycle))}")

    return [by_name[name] for name in out]
