#!/usr/bin/env python3
"""
Main CLI for screentrail - searchable screen history.

Usage:
    trail run                    - Start capturing (interactive controls on stdin)
    trail search "term"          - Search extracted text in a storage folder
    trail status                 - Show what a storage folder contains
    trail init-config PATH       - Write a default configuration file
"""

import asyncio
from pathlib import Path
from typing import List, Optional, Union

import click
from loguru import logger
from rich.console import Console
from rich.table import Table

from screentrail.daemon.bus import EventBus
from screentrail.daemon.capability import CapabilityGate
from screentrail.daemon.config import Config
from screentrail.daemon.container import LocalDirectoryContainer
from screentrail.daemon.errors import CapabilityUnavailable, ConfigError
from screentrail.daemon.index import ReconcilingIndex
from screentrail.daemon.models import EnrichmentState, ReconcileReport, Sample, SessionState, Summary
from screentrail.daemon.store import DurableStore

console = Console()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose: bool):
    """screentrail - capture, index and search your screen history."""
    if not verbose:
        logger.remove()


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), help="Config file")
@click.option("--no-autostart", is_flag=True, help="Wait for [s] before capturing")
@click.option("--monitor", "-m", default=1, show_default=True, help="Monitor number to capture")
def run(config_path: Optional[str], no_autostart: bool, monitor: int):
    """Run the capture daemon in the foreground."""
    from screentrail.daemon.main import main

    asyncio.run(main(config_path, autostart=not no_autostart, monitor=monitor))


def _resolve_folder(folder: Optional[str], config_path: Optional[str]) -> Path:
    if folder:
        return Path(folder)
    try:
        config = Config.load(Path(config_path)) if config_path else Config.load()
    except FileNotFoundError:
        raise click.UsageError("Pass --folder or create a config file (trail init-config)")
    except (ConfigError, ValueError) as e:
        raise click.UsageError(f"Invalid configuration: {e}")
    return config.storage_path


async def _open_index(folder: Path):
    """Load and reconcile a storage folder without starting the daemon."""
    container = LocalDirectoryContainer(folder)
    bus = EventBus()
    gate = CapabilityGate(container, bus)
    store = DurableStore(container, gate)
    index = ReconcilingIndex(store, bus, SessionState(storage_label=container.label))
    report = await index.load()
    return index, report


@cli.command()
@click.argument("term", required=False, default="")
@click.option("--folder", "-f", type=click.Path(file_okay=False), help="Storage folder")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), help="Config file")
@click.option("--limit", "-l", default=20, show_default=True, help="Max results")
def search(term: str, folder: Optional[str], config_path: Optional[str], limit: int):
    """Search extracted text and summaries (empty term lists everything)."""
    root = _resolve_folder(folder, config_path)
    try:
        index, _ = asyncio.run(_open_index(root))
    except CapabilityUnavailable:
        console.print(f"[red]Cannot access storage folder:[/red] {root}")
        raise SystemExit(1)

    display_search_results(term, index.search(term)[:limit])


def display_search_results(term: str, results: List[Union[Sample, Summary]]):
    """Display search results in a table."""
    if not results:
        console.print("[yellow]No results found[/yellow]")
        return

    table = Table(title=f"Results for '{term}'" if term else "All captures")
    table.add_column("Time", style="cyan", no_wrap=True)
    table.add_column("Kind", style="magenta")
    table.add_column("File / Span")
    table.add_column("Text", no_wrap=False)

    for record in results:
        if isinstance(record, Sample):
            text = record.extracted_text.strip().replace("\n", " ")
            if record.enrichment_state != EnrichmentState.DONE:
                text = "[dim]pending text extraction[/dim]"
            elif not text:
                text = "[dim]no text detected[/dim]"
            table.add_row(
                record.timestamp + (" *" if record.reconstructed else ""),
                "capture",
                record.media_ref or "",
                text[:100],
            )
        else:
            table.add_row(
                record.end_time,
                "summary",
                f"{record.start_time} → {record.end_time}",
                record.text.replace("\n", " ")[:100],
            )

    console.print(table)
    if any(isinstance(r, Sample) and r.reconstructed for r in results):
        console.print("[dim]* time reconstructed from file modification time[/dim]")


@cli.command()
@click.option("--folder", "-f", type=click.Path(file_okay=False), help="Storage folder")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, dir_okay=False), help="Config file")
def status(folder: Optional[str], config_path: Optional[str]):
    """Show what a storage folder contains."""
    root = _resolve_folder(folder, config_path)
    try:
        index, report = asyncio.run(_open_index(root))
    except CapabilityUnavailable:
        console.print(f"[red]Cannot access storage folder:[/red] {root}")
        raise SystemExit(1)

    display_status(root, index, report)


def display_status(root: Path, index: ReconcilingIndex, report: ReconcileReport):
    table = Table(title=f"Storage: {root}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Index source", report.source or "none (file scan only)")
    table.add_row("Media files", str(report.scanned))
    table.add_row("Samples with text", str(report.scanned - report.pending))
    table.add_row("Pending extraction", str(report.pending))
    table.add_row("Reconstructed times", str(report.reconstructed))
    table.add_row("Stale index records", str(report.dropped_records))
    table.add_row("Summaries", str(len(index.summaries())))

    console.print(table)


@cli.command(name="init-config")
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--storage", "-s", required=True, type=click.Path(file_okay=False), help="Folder to store captures in")
@click.option("--language", default="eng", show_default=True, help="Text extraction language")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init_config(path: str, storage: str, language: str, force: bool):
    """Write a default configuration file."""
    target = Path(path)
    if target.exists() and not force:
        console.print(f"[red]{target} exists[/red] (use --force to overwrite)")
        raise SystemExit(1)

    try:
        config = Config(storage_path=Path(storage), enrichment={"language": language})
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise SystemExit(1)

    config.save(target)
    console.print(f"[green]✓[/green] Wrote {target}")


if __name__ == "__main__":
    cli()
