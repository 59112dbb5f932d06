"""CLI entry point for uidiff."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from uidiff.errors import UIDiffError
from uidiff.events.broadcaster import ProgressEvent
from uidiff.models.batch_task import BatchTask, CompareConfig
from uidiff.models.config import UIDiffConfig
from uidiff.models.report import Report
from uidiff.orchestrator import Orchestrator

console = Console()

DEFAULT_CONFIG = "uidiff.json"


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_config(path: str) -> UIDiffConfig:
    try:
        return UIDiffConfig.load(path)
    except FileNotFoundError:
        if path != DEFAULT_CONFIG:
            console.print(f"[red]Config file not found: {path}[/red]")
            console.print("Run 'uidiff init' to create a default config.")
            sys.exit(1)
        return UIDiffConfig()


def _run(orchestrator: Orchestrator, coro):
    async def _main():
        try:
            return await coro
        finally:
            await orchestrator.close()

    try:
        return asyncio.run(_main())
    except UIDiffError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


def _fail_on_error(func):
    """Print uidiff errors instead of a traceback for synchronous commands."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except UIDiffError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
    return wrapper


def _print_progress(event: ProgressEvent) -> None:
    data = event.data
    if event.type == "task:progress" and "lastResult" in data:
        last = data["lastResult"]
        mark = "[green]✓[/green]" if last["status"] == "completed" else "[red]✗[/red]"
        detail = f"{last['similarity']:.2f}%" if last.get("similarity") is not None else last.get("error", "")
        console.print(f"  {mark} [{data['progress']:>3}%] {last['url']}  {detail}")
    elif event.type == "report:progress" and data.get("stepText") not in (None, "pending"):
        logging.getLogger("uidiff.cli").debug("%s: %s (%d%%)", data["url"], data["stepText"], data["progress"])


def _similarity_text(value: Optional[float]) -> str:
    if value is None:
        return "-"
    color = "green" if value >= 95 else "yellow" if value >= 80 else "red"
    return f"[{color}]{value:.2f}%[/{color}]"


def _print_report(report: Report) -> None:
    table = Table(title=f"Report {report.id}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("URL", report.url)
    table.add_row("Design", report.design_source)
    table.add_row("Status", report.status)
    table.add_row("Similarity", _similarity_text(report.similarity))
    table.add_row("Diff pixels", str(report.diff_pixel_count if report.diff_pixel_count is not None else "-"))
    if report.images:
        table.add_row("Diff image", report.images.diff)
    if report.error:
        table.add_row("Error", f"[red]{report.error}[/red]")
    for warning in report.warnings:
        table.add_row("Warning", f"[yellow]{warning}[/yellow]")
    console.print(table)

    if report.diff_regions:
        regions = Table(title="Diff regions")
        for col in ("#", "Type", "Priority", "Box", "Pixels", "Score"):
            regions.add_column(col)
        for r in report.diff_regions:
            regions.add_row(str(r.id), r.type, r.priority, f"{r.x},{r.y} {r.width}x{r.height}",
                            str(r.pixel_count), f"{r.score:.1f}")
        console.print(regions)

    for fix in report.fixes or []:
        console.print(f"[bold]{fix.priority.upper()}[/bold] {fix.type} [blue]{fix.selector}[/blue]")
        if fix.description:
            console.print(f"  {fix.description}")
        if fix.current_css:
            console.print(f"  [red]- {fix.current_css}[/red]")
        console.print(f"  [green]+ {fix.suggested_css}[/green]")


def _print_batch(task: BatchTask) -> None:
    table = Table(title=f"Batch {task.id}: {task.name}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", task.status)
    table.add_row("Items", f"{task.totals.total} total, [green]{task.totals.success} ok[/green], "
                           f"[red]{task.totals.failed} failed[/red]")
    table.add_row("Avg similarity", _similarity_text(task.avg_similarity if task.totals.success else None))
    table.add_row("Diff pixels", str(task.total_diff_count))
    if task.duration_seconds is not None:
        table.add_row("Duration", f"{task.duration_seconds}s")
    console.print(table)

    items = Table(title="Items")
    for col in ("URL", "Status", "Similarity", "Report", "Error"):
        items.add_column(col)
    for item in task.items:
        items.add_row(item.url, item.status, _similarity_text(item.similarity),
                      item.report_id or "-", item.error or "")
    console.print(items)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Visual regression checks of live pages against design images."""
    setup_logging(verbose)


@cli.command()
@click.option("--data-dir", default="./.uidiff", help="Where reports and records are stored")
def init(data_dir: str) -> None:
    """Create a default configuration file."""
    config_path = Path(DEFAULT_CONFIG)
    if config_path.exists():
        if not click.confirm(f"{DEFAULT_CONFIG} already exists. Overwrite?"):
            return
    cfg = UIDiffConfig(data_dir=data_dir)
    cfg.save(config_path)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nCompare a page with its design:")
    console.print("  [blue]uidiff compare https://example.com --design mockup.png[/blue]")


@cli.command()
@click.argument("url")
@click.option("--design", "-d", required=True, help="Design image path or URL")
@click.option("--tolerance", type=float, default=None, help="Color tolerance 0-100")
@click.option("--ignore-antialiasing/--strict-antialiasing", default=None, help="Ignore antialiasing noise")
@click.option("--no-ai", is_flag=True, help="Skip AI fix suggestions")
@click.option("--script", "script_id", default=None, help="Pre-capture script id")
@click.option("--json", "as_json", is_flag=True, help="Print the report snapshot as JSON")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def compare(url: str, design: str, tolerance: Optional[float], ignore_antialiasing: Optional[bool],
            no_ai: bool, script_id: Optional[str], as_json: bool, config: str) -> None:
    """Compare one page with one design."""
    cfg = _load_config(config)
    if no_ai:
        cfg.ai.enabled = False
    orchestrator = Orchestrator(cfg)
    overrides = CompareConfig(tolerance=tolerance, ignore_antialiasing=ignore_antialiasing)
    report = _run(orchestrator, orchestrator.compare_url(
        url, design, compare_config=overrides, script_id=script_id,
    ))
    if as_json:
        click.echo(json.dumps(report.to_snapshot(), indent=2))
    else:
        _print_report(report)
    if report.status == "failed":
        sys.exit(1)


# ----------------------------------------------------------------------
# Batches
# ----------------------------------------------------------------------


@cli.group()
def batch() -> None:
    """Run and manage batches of comparisons."""


@batch.command("run")
@click.option("--name", "-n", required=True, help="Batch name")
@click.option("--url", "urls", multiple=True, help="Page URL (repeatable)")
@click.option("--urls-file", type=click.Path(exists=True, dir_okay=False), help="File with one URL per line")
@click.option("--design", "-d", default=None, help="Design used for every URL")
@click.option("--design-map", type=click.Path(exists=True, dir_okay=False),
              help="JSON object mapping URL to design")
@click.option("--tolerance", type=float, default=None, help="Color tolerance 0-100")
@click.option("--ai-provider", default=None, help="Override the AI provider")
@click.option("--script", "script_id", default=None, help="Pre-capture script id")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def batch_run(name: str, urls: tuple[str, ...], urls_file: Optional[str], design: Optional[str],
              design_map: Optional[str], tolerance: Optional[float], ai_provider: Optional[str],
              script_id: Optional[str], config: str) -> None:
    """Create a batch and run it to completion."""
    url_list = list(urls)
    if urls_file:
        with open(urls_file) as f:
            url_list.extend(line.strip() for line in f if line.strip() and not line.startswith("#"))
    designs = None
    if design_map:
        with open(design_map) as f:
            designs = json.load(f)

    cfg = _load_config(config)
    orchestrator = Orchestrator(cfg)
    try:
        task = orchestrator.create_batch(
            name, url_list, design_source=design, designs=designs,
            compare_config=CompareConfig(tolerance=tolerance, ai_provider=ai_provider),
            script_id=script_id,
        )
    except UIDiffError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    console.print(f"Running batch [bold]{task.id}[/bold] ({len(url_list)} URLs)...")
    orchestrator.hub.add_listener(_print_progress)
    finished = _run(orchestrator, orchestrator.run_batch(task.id))
    _print_batch(finished)
    if finished.status != "completed":
        sys.exit(1)


@batch.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--limit", default=20, help="Maximum rows")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
@_fail_on_error
def batch_list(status: Optional[str], limit: int, config: str) -> None:
    """List batches, newest first."""
    orchestrator = Orchestrator(_load_config(config))
    tasks = orchestrator.list_tasks(limit=limit, status=status)
    if not tasks:
        console.print("[yellow]No batches found[/yellow]")
        return
    table = Table(title="Batches")
    for col in ("ID", "Name", "Status", "OK", "Failed", "Avg similarity"):
        table.add_column(col)
    for t in tasks:
        table.add_row(t.id, t.name, t.status, str(t.totals.success), str(t.totals.failed),
                      _similarity_text(t.avg_similarity if t.totals.success else None))
    console.print(table)


@batch.command("show")
@click.argument("task_id")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def batch_show(task_id: str, config: str) -> None:
    """Show one batch and its items."""
    orchestrator = Orchestrator(_load_config(config))
    task = orchestrator.get_task(task_id)
    if task is None:
        console.print(f"[red]Batch not found: {task_id}[/red]")
        sys.exit(1)
    _print_batch(task)


@batch.command("stats")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def batch_stats(config: str) -> None:
    """Count batches by status."""
    orchestrator = Orchestrator(_load_config(config))
    table = Table(title="Batch statistics")
    table.add_column("Status", style="bold")
    table.add_column("Count")
    for status, count in orchestrator.get_stats().items():
        table.add_row(status, str(count))
    console.print(table)


@batch.command("export")
@click.argument("task_id")
@click.option("--output", "-o", default=None, help="Output JSON path")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
@_fail_on_error
def batch_export(task_id: str, output: Optional[str], config: str) -> None:
    """Export a batch with its reports to JSON."""
    orchestrator = Orchestrator(_load_config(config))
    path = orchestrator.export_batch(task_id, output or f"{task_id}.json")
    console.print(f"[green]Exported to[/green] [blue]{path}[/blue]")


@batch.command("delete")
@click.argument("task_id")
@click.option("--purge-reports", is_flag=True, help="Also delete the batch's reports")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
@_fail_on_error
def batch_delete(task_id: str, purge_reports: bool, config: str) -> None:
    """Delete a batch."""
    orchestrator = Orchestrator(_load_config(config))
    orchestrator.delete_batch(task_id, purge_reports=purge_reports)
    console.print(f"[green]Deleted batch {task_id}[/green]")


# ----------------------------------------------------------------------
# Reports
# ----------------------------------------------------------------------


@cli.group()
def report() -> None:
    """Inspect and delete reports."""


@report.command("list")
@click.option("--batch", "batch_id", default=None, help="Only reports of this batch")
@click.option("--limit", default=20, help="Maximum rows")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def report_list(batch_id: Optional[str], limit: int, config: str) -> None:
    """List reports, newest first."""
    orchestrator = Orchestrator(_load_config(config))
    reports = orchestrator.list_reports(limit=limit, batch_task_id=batch_id)
    if not reports:
        console.print("[yellow]No reports found[/yellow]")
        return
    table = Table(title="Reports")
    for col in ("ID", "URL", "Status", "Similarity", "Regions"):
        table.add_column(col)
    for r in reports:
        table.add_row(r.id, r.url, r.status, _similarity_text(r.similarity), str(len(r.diff_regions)))
    console.print(table)


@report.command("show")
@click.argument("report_id")
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def report_show(report_id: str, as_json: bool, config: str) -> None:
    """Show one report with its regions and fixes."""
    orchestrator = Orchestrator(_load_config(config))
    found = orchestrator.get_report(report_id)
    if found is None:
        console.print(f"[red]Report not found: {report_id}[/red]")
        sys.exit(1)
    if as_json:
        click.echo(json.dumps(found.to_snapshot(), indent=2))
    else:
        _print_report(found)


@report.command("delete")
@click.argument("report_id")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def report_delete(report_id: str, config: str) -> None:
    """Delete a report and its images."""
    orchestrator = Orchestrator(_load_config(config))
    if orchestrator.delete_report(report_id):
        console.print(f"[green]Deleted report {report_id}[/green]")
    else:
        console.print(f"[yellow]No report {report_id}[/yellow]")


# ----------------------------------------------------------------------
# Scripts
# ----------------------------------------------------------------------


@cli.group()
def script() -> None:
    """Manage pre-capture scripts."""


@script.command("add")
@click.argument("name")
@click.option("--file", "actions_file", required=True, type=click.Path(exists=True, dir_okay=False),
              help="JSON list of actions")
@click.option("--description", default="", help="What the script prepares")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
@_fail_on_error
def script_add(name: str, actions_file: str, description: str, config: str) -> None:
    """Add a script from a JSON file of actions."""
    with open(actions_file) as f:
        actions = json.load(f)
    orchestrator = Orchestrator(_load_config(config))
    created = orchestrator.add_script(name, actions, description=description)
    console.print(f"[green]Added script[/green] {created.id} ({len(created.actions)} actions)")


@script.command("list")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def script_list(config: str) -> None:
    """List scripts."""
    orchestrator = Orchestrator(_load_config(config))
    scripts = orchestrator.list_scripts()
    if not scripts:
        console.print("[yellow]No scripts configured[/yellow]")
        return
    for s in scripts:
        console.print(f"  {s.id}  [bold]{s.name}[/bold]  {len(s.actions)} actions  {s.description}")


@script.command("delete")
@click.argument("script_id")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def script_delete(script_id: str, config: str) -> None:
    """Delete a script."""
    orchestrator = Orchestrator(_load_config(config))
    if orchestrator.delete_script(script_id):
        console.print(f"[green]Deleted script {script_id}[/green]")
    else:
        console.print(f"[yellow]No script {script_id}[/yellow]")


if __name__ == "__main__":
    cli()
