"""Shelfscan CLI entry point."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from shelfscan.archive import open_archive
from shelfscan.classifier import LibraryType, format_for
from shelfscan.config import DEFAULT_CONFIG_PATH, ScanSettings, load_config, write_default_config
from shelfscan.errors import ArchiveError, CancellationToken
from shelfscan.events import BufferedNotificationSink, LoggingNotificationSink
from shelfscan.logging_config import setup_logging
from shelfscan.monitor import start_file_monitoring
from shelfscan.orchestrator import LibraryScanResult, ScanOrchestrator, ScanStatus
from shelfscan.parser import FilenameParser
from shelfscan.store import SqlCatalogStore
from shelfscan.walker import compute_fingerprint


__version__ = "0.1.0"

app = typer.Typer(add_completion=False, help="Shelfscan library scanner CLI")
logger = logging.getLogger("shelfscan")
console = Console()


def _ensure_config(config_path: Optional[Path] = None) -> ScanSettings:
    try:
        return load_config(config_path)
    except FileNotFoundError:
        typer.echo("[ERROR] config.ini not found. Run: shelfscan init --library /path/to/library")
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.echo(f"[ERROR] Invalid config: {exc}")
        raise typer.Exit(code=1)


def _print_results(results: list[LibraryScanResult]) -> None:
    table = Table(title="Scan results")
    for column in ("Library", "Status", "Files", "Unchanged", "Created", "Updated", "Removed", "Errors", "Time"):
        table.add_column(column)
    for result in results:
        s = result.stats
        table.add_row(
            result.library_name,
            result.status.value,
            str(s.files_scanned),
            str(s.files_unchanged),
            str(s.series_created),
            str(s.series_updated),
            str(s.series_removed),
            str(s.errors),
            f"{result.elapsed:.1f}s",
        )
    console.print(table)
    for result in results:
        for warning in result.warnings:
            where = warning.path or result.library_name
            console.print(f"[yellow]⚠ {where}: {warning.reason}[/yellow]")


@app.command()
def init(
    library: Path = typer.Option(..., "--library", help="Path to your library folder"),
    name: str = typer.Option("Library", "--name", help="Library name"),
    library_type: str = typer.Option("manga", "--type", help="manga, comic, comicvine, book, lightnovel or image"),
) -> None:
    """Initialize config.ini with default settings."""
    try:
        kind = LibraryType.from_string(library_type)
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=1)
    config_path = write_default_config(DEFAULT_CONFIG_PATH, library, name, kind)
    typer.echo(f"[OK] Config created at {config_path}")


@app.command()
def scan(
    library: Optional[str] = typer.Option(None, "--library", help="Scan one library (name or id)"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.ini"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output on the console"),
) -> None:
    """Scan libraries and reconcile them with the catalog."""
    settings = _ensure_config(config)
    setup_logging("DEBUG" if verbose else "INFO", settings.data_dir)

    libraries = settings.libraries
    if library is not None:
        selected = settings.library(library)
        if selected is None:
            typer.echo(f"[ERROR] Unknown library: {library}")
            raise typer.Exit(code=1)
        libraries = (selected,)

    cancel = CancellationToken()
    with SqlCatalogStore(settings.database_path) as store, \
            BufferedNotificationSink(LoggingNotificationSink()) as sink, \
            ScanOrchestrator(settings, store, sink) as orchestrator:
        try:
            results = orchestrator.scan_all(libraries, cancel)
        except KeyboardInterrupt:
            cancel.cancel()
            typer.echo("[INFO] Cancelling scan...")
            raise typer.Exit(code=130)

    _print_results(results)
    if any(r.status is ScanStatus.FAILED for r in results):
        raise typer.Exit(code=1)


@app.command()
def parse(
    file: Path = typer.Argument(..., help="File to parse"),
    library_type: str = typer.Option("manga", "--type", help="Library type hint"),
    root: Optional[Path] = typer.Option(None, "--root", help="Library root (enables folder fallback)"),
    read: bool = typer.Option(False, "--read", help="Also open the file and read its sidecar"),
) -> None:
    """Show what the filename parser makes of a path."""
    try:
        kind = LibraryType.from_string(library_type)
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=1)

    info = FilenameParser().parse(file, kind, root)
    table = Table(show_header=False)
    for key in ("series", "localized_series", "volume", "chapter", "is_special", "special_index", "edition", "title", "format"):
        value = getattr(info, key)
        table.add_row(key, str(value.value if hasattr(value, "value") else value))
    table.add_row("normalized", info.normalized_series)
    console.print(table)

    if read:
        fmt = format_for(file)
        try:
            with open_archive(file, fmt) as handle:
                console.print(f"pages: {handle.entry_count()}")
                metadata = handle.read_sidecar_metadata()
        except ArchiveError as exc:
            typer.echo(f"[ERROR] {exc}")
            raise typer.Exit(code=1)
        console.print(f"fingerprint: {compute_fingerprint(file)}")
        if metadata is not None:
            console.print(metadata.model_dump(exclude_defaults=True))


@app.command()
def stats(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.ini"),
) -> None:
    """Show catalog statistics per library."""
    settings = _ensure_config(config)

    with SqlCatalogStore(settings.database_path) as store:
        typer.echo("Catalog Statistics:")
        for library in settings.libraries:
            counts = store.stats(library.id)
            typer.echo(
                f"  {library.name} ({library.type.value}): {counts['series']} series, "
                f"{counts['volumes']} volumes, {counts['chapters']} chapters, {counts['files']} files"
            )
        totals = store.stats()
        typer.echo(f"  Total files: {totals['files']}")


@app.command()
def watch(
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.ini"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output on the console"),
    no_initial_scan: bool = typer.Option(False, "--no-initial-scan", help="Skip the startup scan"),
) -> None:
    """Scan once, then rescan libraries whenever their files change."""
    settings = _ensure_config(config)
    setup_logging("DEBUG" if verbose else "INFO", settings.data_dir)

    with SqlCatalogStore(settings.database_path) as store, \
            BufferedNotificationSink(LoggingNotificationSink()) as sink, \
            ScanOrchestrator(settings, store, sink) as orchestrator:
        if not no_initial_scan:
            logger.info("Running initial library scan...")
            _print_results(orchestrator.scan_all())

        handle = start_file_monitoring(settings, orchestrator)
        if handle is None:
            typer.echo("[ERROR] Monitoring is disabled or no library root exists.")
            raise typer.Exit(code=1)
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            handle.stop()


@app.command()
def reset(
    confirm: bool = typer.Option(False, "--confirm", help="Confirm destructive reset"),
    config: Optional[Path] = typer.Option(None, "--config", help="Path to config.ini"),
) -> None:
    """Delete every catalog entry. The next scan rebuilds it."""
    if not confirm:
        typer.echo("[ERROR] This will delete your catalog. Use --confirm.")
        raise typer.Exit(code=1)

    settings = _ensure_config(config)
    with SqlCatalogStore(settings.database_path) as store:
        store.reset()
    typer.echo("[INFO] Catalog reset. Run 'shelfscan scan' to rebuild it.")


if __name__ == "__main__":
    app()
