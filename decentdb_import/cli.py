from __future__ import annotations

import argparse
import logging
import threading
from typing import Any, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from .api import analyze, run_import
from .errors import ConversionError, ImportCancelled
from .models import (
    GenericAnalysisResult,
    GenericImportOptions,
    ImportFormat,
    ImportPhase,
    ImportProgress,
    ImportReport,
    format_display_name,
    write_report_json,
)

_FORMAT_CHOICES = {
    "sqlite": ImportFormat.SQLITE,
    "pg": ImportFormat.PG_DUMP,
    "mysql": ImportFormat.MYSQL_DUMP,
    "mysqlsh": ImportFormat.MYSQL_SHELL_DUMP,
}


class RichProgressSink:
    """Renders ImportProgress events as Rich progress bars."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self._status: TaskID | None = None
        self._schema: TaskID | None = None
        self._indexes: TaskID | None = None
        self._tables: dict[str, TaskID] = {}

    def __call__(self, event: ImportProgress) -> None:
        p = self.progress
        if event.phase == ImportPhase.ANALYZING:
            if self._status is None:
                self._status = p.add_task(event.message or "Analyzing", total=None)
            else:
                p.update(self._status, description=event.message)
        elif event.phase == ImportPhase.CREATING_SCHEMA:
            if self._schema is None:
                self._finish_status()
                self._schema = p.add_task("Create schema", total=event.tables_total)
            p.update(self._schema, completed=event.tables_completed)
        elif event.phase == ImportPhase.COPYING_DATA and event.current_table:
            task = self._tables.get(event.current_table)
            if task is None:
                task = p.add_task(f"Copy {event.current_table}", total=event.rows_total)
                self._tables[event.current_table] = task
            p.update(task, completed=event.rows_completed)
        elif event.phase == ImportPhase.CREATING_INDEXES:
            if self._indexes is None:
                self._indexes = p.add_task("Create indexes", total=event.indexes_total)
            p.update(self._indexes, completed=event.indexes_completed)
        elif event.phase in (ImportPhase.FAILED, ImportPhase.CANCELLED):
            self._finish_status()

    def _finish_status(self) -> None:
        if self._status is not None:
            self.progress.update(self._status, total=1, completed=1)


def _make_progress(console: Console) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}[/bold]"),
        BarColumn(bar_width=None),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=False,
    )


def print_summary(console: Console, report: ImportReport) -> None:
    summary = Table.grid(padding=(0, 1))
    summary.add_column(justify="right", style="bold")
    summary.add_column()
    summary.add_row("From", report.source_path)
    summary.add_row("To", report.decentdb_path)
    summary.add_row("Format", format_display_name(report.format))
    summary.add_row("Tables", str(len(report.tables)))
    summary.add_row("Rows", f"{report.total_rows:,}")
    if report.rows_skipped:
        summary.add_row("Rows skipped", f"{report.rows_skipped:,}")
    summary.add_row("Indexes", str(len(report.indexes_created)))
    summary.add_row("Unique cols", str(len(report.unique_columns_added)))
    if report.elapsed is not None:
        summary.add_row("Elapsed", f"{report.elapsed:.2f}s")

    console.print(Panel(summary, title=f"{format_display_name(report.format)} → DecentDB", border_style="green"))

    if report.skipped_indexes:
        skipped_tbl = Table(title="Skipped Indexes/Constraints", show_lines=False)
        skipped_tbl.add_column("Table", style="cyan")
        skipped_tbl.add_column("Name")
        skipped_tbl.add_column("Reason", style="yellow")
        for s in report.skipped_indexes:
            skipped_tbl.add_row(s.table, s.name, s.reason)
        console.print(skipped_tbl)

    _print_warnings(console, report.warnings)


def print_analysis(console: Console, result: GenericAnalysisResult) -> None:
    tbl = Table(title=f"{format_display_name(result.format)}: {result.source_path}")
    tbl.add_column("Table", style="cyan")
    tbl.add_column("Rows", justify="right")
    for name in result.table_names:
        tbl.add_row(name, f"{result.row_counts.get(name, 0):,}")
    tbl.add_row("[bold]Total[/bold]", f"[bold]{result.total_rows:,}[/bold]")
    console.print(tbl)
    _print_warnings(console, result.warnings)


def _print_warnings(console: Console, warnings: list[str]) -> None:
    if not warnings:
        return
    tbl = Table(title="Warnings", show_header=False)
    tbl.add_column(style="yellow")
    for w in warnings:
        tbl.add_row(w)
    console.print(tbl)


def _setup_logging(console: Console, verbose: bool) -> None:
    logger = logging.getLogger("decentdb_import")
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    for h in [h for h in logger.handlers if isinstance(h, RichHandler)]:
        logger.removeHandler(h)
    logger.addHandler(RichHandler(console=console, show_path=False, markup=False))
    logger.propagate = False


def _run_in_worker(fn, cancel: threading.Event) -> Any:
    """Run ``fn`` on a worker thread so Ctrl-C can request a clean cancellation."""
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["result"] = fn()
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=target, name="decentdb-import", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.2)
        except KeyboardInterrupt:
            cancel.set()
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="decentdb-import",
        description="Import a SQLite database, pg_dump or mysqldump file, or MySQL Shell dump into DecentDB",
    )
    p.add_argument("source_path", help="Source file or directory (.gz, .zip, .tar.gz and .tgz are unpacked)")
    p.add_argument("decentdb_path", nargs="?", default=None, help="Path to the output DecentDB .ddb file")
    p.add_argument(
        "--format",
        choices=sorted(_FORMAT_CHOICES),
        default=None,
        help="Source format (detected from content when omitted)",
    )
    p.add_argument("--overwrite", action="store_true", help="Overwrite destination if it exists")
    p.add_argument("--no-progress", action="store_true", help="Disable rich progress output")
    p.add_argument(
        "--preserve-case",
        action="store_true",
        help="Preserve original identifier casing (requires quoting in SQL)",
    )
    p.add_argument(
        "--report-json",
        default=None,
        help="Write a JSON import report to this path (use '-' for stdout)",
    )
    p.add_argument(
        "--commit-every",
        type=int,
        default=5_000,
        help="Commit every N inserted rows per table (0 uses one transaction per table)",
    )
    p.add_argument("--working-dir", default=None, help="Directory for unpacking compressed sources")
    p.add_argument("--cache-mb", type=int, default=None, help="Override DecentDB cache size in MB (e.g. 256)")
    p.add_argument(
        "--cache-pages",
        type=int,
        default=None,
        help="Override DecentDB cache size in pages (DefaultPageSize pages)",
    )
    p.add_argument("--analyze-only", action="store_true", help="Only analyze the source; write nothing")
    p.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return p


def main(argv: Sequence[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    console = Console()
    err_console = Console(stderr=True)
    _setup_logging(err_console, bool(args.verbose))
    fmt = _FORMAT_CHOICES[args.format] if args.format else None
    cancel = threading.Event()

    if args.analyze_only:
        try:
            result = _run_in_worker(
                lambda: analyze(args.source_path, format=fmt, working_directory=args.working_dir, cancel=cancel),
                cancel,
            )
        except (ConversionError, FileNotFoundError) as exc:
            err_console.print(f"[red]Error:[/red] {exc}")
            return 1
        except ImportCancelled:
            err_console.print("[yellow]Cancelled[/yellow]")
            return 130
        print_analysis(console, result)
        return 0

    if not args.decentdb_path:
        p.error("decentdb_path is required unless --analyze-only is given")

    options = GenericImportOptions(
        source_path=args.source_path,
        decentdb_path=args.decentdb_path,
        format=fmt,
        lowercase_identifiers=not bool(args.preserve_case),
        commit_batch_size=int(args.commit_every),
        overwrite=bool(args.overwrite),
        working_directory=args.working_dir,
        cache_pages=args.cache_pages,
        cache_mb=args.cache_mb,
    )

    progress = None if args.no_progress else _make_progress(console)
    sink = RichProgressSink(progress) if progress is not None else None

    report: ImportReport | None = None
    code = 0
    try:
        if progress is not None:
            progress.start()
        report = _run_in_worker(lambda: run_import(options, progress=sink, cancel=cancel), cancel)
    except ImportCancelled as exc:
        report = exc.report
        code = 130
    except (ConversionError, FileNotFoundError) as exc:
        report = getattr(exc, "report", None)
        code = 1
        if progress is not None:
            progress.stop()
            progress = None
        err_console.print(f"[red]Error:[/red] {exc}")
    finally:
        # Stop progress rendering before printing summary tables.
        if progress is not None:
            progress.stop()

    if code == 130:
        err_console.print("[yellow]Import cancelled; batches committed so far were kept.[/yellow]")
    elif report is not None and code == 0:
        print_summary(console, report)
        console.print(f"[green]Imported[/green] {options.source_path} -> {options.decentdb_path}")
    elif report is not None:
        _print_warnings(err_console, report.warnings)

    if args.report_json and report is not None:
        write_report_json(report, str(args.report_json))
    return code


if __name__ == "__main__":
    raise SystemExit(main())
