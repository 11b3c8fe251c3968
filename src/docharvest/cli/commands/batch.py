"""
Batch commands: queue targets, drain the queue, inspect and edit results.

``run`` and ``resume`` drive a live orchestrator until the queue is idle.
The editing commands load the persisted state with draining disabled,
apply the change and write it back.
"""

from __future__ import annotations

import asyncio
import base64
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from docharvest.core.config import AppConfig, ConfigError, JobStatus, load_app_config
from docharvest.core.export import inline_images, sanitize_filename
from docharvest.core.logging import setup_logging
from docharvest.core.orchestrator import Job, Orchestrator
from docharvest.persistence import SqlStateStore, StoreError

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    help="Queue, run and inspect extraction jobs",
    no_args_is_help=True,
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to app.yaml (default: configs/app.yaml)",
)

EXTENSIONS = {"markdown": "md", "md": "md", "html": "html", "text": "txt"}


# =============================================================================
# Helpers
# =============================================================================


def _load_config(path: Optional[Path]) -> AppConfig:
    try:
        config = load_app_config(path)
    except ConfigError as e:
        err_console.print(f"[red]Error loading configuration:[/red] {e}")
        if e.details:
            err_console.print(f"[dim]{e.details}[/dim]")
        raise typer.Exit(1)

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        json_format=config.logging.json_format,
        rich_console=config.logging.rich_console,
    )
    return config


def build_orchestrator(config: AppConfig, drain: bool = True) -> Orchestrator:
    """Wire the Playwright collaborators and the SQL state store."""
    from docharvest.core.backends import (
        PageContentExtractor,
        PlaywrightBrowser,
        PlaywrightContextProvider,
        PlaywrightRenderBackend,
    )

    store = SqlStateStore(config.store.url, echo=config.store.echo)
    browser = PlaywrightBrowser(config.browser)
    return Orchestrator(
        store=store,
        contexts=PlaywrightContextProvider(browser),
        extractor=PageContentExtractor(store=store),
        renderer=PlaywrightRenderBackend(browser),
        config=config.orchestrator,
        drain=drain,
    )


@asynccontextmanager
async def open_orchestrator(
    config: AppConfig,
    drain: bool,
    read_only: bool = False,
) -> AsyncIterator[Orchestrator]:
    orchestrator = build_orchestrator(config, drain=drain)
    try:
        if drain:
            await orchestrator.start()
        else:
            await orchestrator.restore()
        yield orchestrator
    finally:
        await orchestrator.shutdown(persist=not read_only)
        await orchestrator.store.close()


def _read_targets(targets: list[str], from_file: Optional[Path]) -> list[str]:
    collected = list(targets)
    if from_file is not None:
        if not from_file.exists():
            err_console.print(f"[red]File not found:[/red] {from_file}")
            raise typer.Exit(1)
        for line in from_file.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                collected.append(line)
    return collected


def _format_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    if size >= 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size} B"


def _status_line(status: dict) -> str:
    results = status["results"]
    done = sum(1 for r in results if r["status"] == JobStatus.SUCCESS.value)
    failed = sum(1 for r in results if r["status"] == JobStatus.FAILED.value)
    line = (
        f"running {status['active_count']}/{status['effective_ceiling']} | "
        f"pending {status['pending_count']} | done {done} | failed {failed}"
    )
    current = status.get("current_job")
    if current:
        progress = current.get("progress") or {}
        message = progress.get("message") or ""
        line += f" | {current['label']}: {message}"
    return line


async def _drain(orchestrator: Orchestrator) -> None:
    from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("[cyan]Starting...[/cyan]", total=None)
        while not orchestrator.idle:
            progress.update(task, description=f"[cyan]{_status_line(orchestrator.get_status())}[/cyan]")
            await asyncio.sleep(0.5)


def _show_results(results: list[dict], title: str = "Results") -> None:
    if not results:
        console.print("[dim]No results yet.[/dim]")
        return

    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Label", style="cyan", max_width=40)
    table.add_column("Kind")
    table.add_column("Status", justify="center")
    table.add_column("Size", justify="right")
    table.add_column("Finished", justify="right")
    table.add_column("Target / Error", max_width=60)

    styles = {"success": "green", "failed": "red"}
    for row in results:
        style = styles.get(row["status"], "yellow")
        finished = (
            datetime.fromtimestamp(row["timestamp"]).strftime("%Y-%m-%d %H:%M")
            if row.get("timestamp")
            else "-"
        )
        detail = row["error"] if row.get("error") else row["target"]
        table.add_row(
            row["label"],
            row["kind"],
            f"[{style}]{row['status']}[/{style}]",
            _format_size(row["size"]),
            finished,
            detail,
        )

    console.print(table)


# =============================================================================
# Commands
# =============================================================================


@app.command("run")
def run_batch(
    targets: list[str] = typer.Argument(None, help="Document URLs to extract"),
    from_file: Optional[Path] = typer.Option(
        None,
        "--file",
        "-f",
        help="Read targets from a file (one per line, # comments allowed)",
    ),
    output_format: str = typer.Option(
        "markdown",
        "--format",
        help="Output format: markdown, html or pdf",
    ),
    image_mode: Optional[str] = typer.Option(
        None,
        "--image-mode",
        help="Image handling; 'local' packages a zip archive",
    ),
    concurrency: Optional[int] = typer.Option(
        None,
        "--concurrency",
        "-n",
        help="Concurrency ceiling for this batch",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Queue targets and drain the queue until idle.

    Examples:
        docharvest batch run https://example.com/doc/1 https://example.com/doc/2
        docharvest batch run -f urls.txt --format pdf -n 2
    """
    config = _load_config(config_path)
    items = _read_targets(targets or [], from_file)

    options: dict = {}
    if image_mode:
        options["image_mode"] = image_mode
    if concurrency is not None:
        options["batch_concurrency"] = concurrency

    async def _run() -> dict:
        async with open_orchestrator(config, drain=True) as orchestrator:
            if items:
                added = await orchestrator.enqueue(items, output_format, options)
                console.print(f"[bold]Queued {len(added)} of {len(items)} target(s)[/bold]")
            await _drain(orchestrator)
            return orchestrator.get_status()

    status = asyncio.run(_run())
    console.print()
    _show_results(status["results"])


@app.command("resume")
def resume_batch(config_path: Optional[Path] = ConfigOption) -> None:
    """Clear the pause flag and drain outstanding jobs."""
    config = _load_config(config_path)

    async def _run() -> dict:
        async with open_orchestrator(config, drain=True) as orchestrator:
            await orchestrator.resume()
            await _drain(orchestrator)
            return orchestrator.get_status()

    status = asyncio.run(_run())
    _show_results(status["results"])


@app.command("status")
def show_status(
    failed_only: bool = typer.Option(False, "--failed", help="Only list failed results"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Show queue state and results."""
    config = _load_config(config_path)

    async def _run() -> tuple[dict, list[dict]]:
        async with open_orchestrator(config, drain=False, read_only=True) as orchestrator:
            pending = [job.summary() for job in orchestrator.registry.pending]
            return orchestrator.get_status(), pending

    status, pending = asyncio.run(_run())

    console.print()
    state = "[yellow]paused[/yellow]" if status["paused"] else "[green]active[/green]"
    console.print(f"[bold]Queue:[/bold] {state}, {status['pending_count']} pending")
    for job in pending:
        console.print(f"  [dim]-[/dim] {job['label']} [dim]{job['target']}[/dim]")
    console.print()

    results = status["results"]
    if failed_only:
        results = [r for r in results if r["status"] == JobStatus.FAILED.value]
    _show_results(results)


@app.command("pause")
def pause_batch(config_path: Optional[Path] = ConfigOption) -> None:
    """Mark the queue paused; the next run leaves pending jobs alone."""
    config = _load_config(config_path)

    async def _run() -> None:
        async with open_orchestrator(config, drain=False) as orchestrator:
            await orchestrator.pause()

    asyncio.run(_run())
    console.print("[yellow]Queue paused[/yellow]")


@app.command("retry")
def retry_batch(
    target: Optional[str] = typer.Argument(None, help="Failed target to retry"),
    all_failed: bool = typer.Option(False, "--all", "-a", help="Retry every failed target"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Move failed targets back into the queue (run `batch resume` to drain)."""
    if not target and not all_failed:
        err_console.print("[red]Specify a target or --all[/red]")
        raise typer.Exit(1)

    config = _load_config(config_path)

    async def _run() -> int:
        async with open_orchestrator(config, drain=False) as orchestrator:
            if all_failed:
                return await orchestrator.retry_all_failed()
            return 1 if await orchestrator.retry(target) else 0

    count = asyncio.run(_run())
    if count == 0:
        err_console.print("[red]Item not found or not failed[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Re-queued {count} target(s)[/green]")


@app.command("delete")
def delete_target(
    target: str = typer.Argument(..., help="Target to remove from queue and results"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Remove one target from the queue and results."""
    config = _load_config(config_path)

    async def _run() -> None:
        async with open_orchestrator(config, drain=False) as orchestrator:
            await orchestrator.delete_one(target)

    asyncio.run(_run())
    console.print(f"[green]Removed[/green] {target}")


@app.command("clear")
def clear_batch(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Drop the queue and every stored result."""
    if not yes and not typer.confirm("Clear the queue and all results?"):
        raise typer.Abort()

    config = _load_config(config_path)

    async def _run() -> None:
        async with open_orchestrator(config, drain=False) as orchestrator:
            await orchestrator.clear_all()

    asyncio.run(_run())
    console.print("[green]Queue and results cleared[/green]")


@app.command("export")
def export_results(
    targets: list[str] = typer.Argument(None, help="Targets to export (default: all successful)"),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Directory to write files to (default: export_dir from config)",
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Write successful results to files."""
    config = _load_config(config_path)
    out_dir = output_dir or config.export_dir

    async def _run() -> list[Path]:
        async with open_orchestrator(config, drain=False, read_only=True) as orchestrator:
            wanted = targets or [
                job.target for job in orchestrator.registry.results if job.status == JobStatus.SUCCESS
            ]
            jobs = [
                job for job in orchestrator.registry.results_for(wanted)
                if job.status == JobStatus.SUCCESS
            ]
            written = []
            for job in jobs:
                try:
                    path = await _write_result(orchestrator, job, out_dir)
                except (StoreError, ValueError) as e:
                    err_console.print(f"[red]Could not export {job.target}:[/red] {e}")
                    continue
                written.append(path)
            return written

    written = asyncio.run(_run())
    if not written:
        console.print("[dim]Nothing to export.[/dim]")
        return
    for path in written:
        console.print(f"[green]Wrote[/green] {path}")


async def _write_result(orchestrator: Orchestrator, job: Job, out_dir: Path) -> Path:
    out_dir.mkdir(parents=True, exist_ok=True)
    stem = sanitize_filename(job.label)

    if job.document:
        path = out_dir / f"{stem}.pdf"
        path.write_bytes(base64.b64decode(job.document))
        return path

    if job.archive_inline or job.archive_ref:
        encoded = job.archive_inline
        if encoded is None:
            stored = await orchestrator.store.get([job.archive_ref])
            encoded = stored.get(job.archive_ref)
            if not encoded:
                raise ValueError(f"Stored archive {job.archive_ref} is missing")
        path = out_dir / (job.archive_name or f"{stem}.zip")
        path.write_bytes(base64.b64decode(encoded))
        return path

    content = inline_images(job.content or "", job.images)
    path = out_dir / f"{stem}.{EXTENSIONS.get(job.format, 'txt')}"
    path.write_text(content, encoding="utf-8")
    return path
