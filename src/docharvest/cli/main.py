"""
DocHarvest CLI - Main entry point.

Queue web documents for extraction and drain the queue as crash-recoverable
background jobs.
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.traceback import install as install_rich_traceback

from docharvest import __app_name__, __version__

# Load environment variables from .env (if present)
load_dotenv()

install_rich_traceback(show_locals=False, width=120)

if sys.platform == "win32":
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")
    if hasattr(sys.stdout, "reconfigure"):
        try:
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        except (AttributeError, OSError):
            pass

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name=__app_name__,
    help="Batch extraction of web documents into portable formats",
    rich_markup_mode="rich",
    no_args_is_help=True,
    pretty_exceptions_show_locals=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]{__app_name__}[/bold cyan] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """DocHarvest - batch document extraction."""
    pass


# =============================================================================
# Import and register subcommand modules
# =============================================================================

from .commands import batch  # noqa: E402

app.add_typer(batch.app, name="batch", help="Queue, run and inspect extraction jobs")


# =============================================================================
# Init / Version Commands
# =============================================================================


DEFAULT_APP_CONFIG = """\
# DocHarvest Configuration

config_dir: configs
data_dir: data
export_dir: exports

orchestrator:
  hard_max_concurrency: 3
  default_concurrency: 1
  throttle_cooldown_seconds: 45
  extract_attempts: 3
  extract_retry_delay_seconds: 2

browser:
  browser: chromium
  headless: true

store:
  url: ${DOCHARVEST_STORE_URL:-sqlite:///data/docharvest.db}
  echo: false

logging:
  level: INFO
  file: logs/docharvest.log
  json_format: true
  rich_console: true
"""


@app.command()
def init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing configuration",
    ),
) -> None:
    """Create directories, a default configs/app.yaml and the state database."""
    from rich.progress import Progress, SpinnerColumn, TextColumn

    from docharvest.core.config import ConfigError, load_app_config
    from docharvest.persistence import create_engine_for, init_db

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Creating default configuration...", total=None)

        app_config_path = Path("configs/app.yaml")
        if not app_config_path.exists() or force:
            app_config_path.parent.mkdir(parents=True, exist_ok=True)
            app_config_path.write_text(DEFAULT_APP_CONFIG, encoding="utf-8")

        try:
            config = load_app_config(app_config_path)
        except ConfigError as e:
            err_console.print(f"[red]Invalid configuration:[/red] {e}")
            raise typer.Exit(1)

        progress.update(task, description="Creating directories...")
        config.ensure_directories()

        progress.update(task, description="Initializing state database...")

        async def create_schema() -> None:
            engine = create_engine_for(config.store.url, echo=config.store.echo)
            try:
                await init_db(engine)
            finally:
                await engine.dispose()

        asyncio.run(create_schema())

    console.print()
    console.print(Panel.fit(
        "[bold green]OK - DocHarvest initialized[/bold green]\n\n"
        f"  - [cyan]{app_config_path}[/cyan] - Application configuration\n"
        f"  - [cyan]{config.store.url}[/cyan] - Job state\n"
        f"  - [cyan]{config.export_dir}/[/cyan] - Exported documents\n\n"
        "Next steps:\n"
        "  1. Queue and run: [yellow]docharvest batch run <url> ...[/yellow]\n"
        "  2. Inspect: [yellow]docharvest batch status[/yellow]\n"
        "  3. Export: [yellow]docharvest batch export[/yellow]",
        title="[bold]Initialization Complete[/bold]",
        border_style="green",
    ))


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"[bold cyan]{__app_name__}[/bold cyan] version [green]{__version__}[/green]")


# =============================================================================
# Entry Point
# =============================================================================


def run() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    run()
