"""
The vidfetch command line. `download` runs the job engine in-process for the
length of a session; `update` drives the yt-dlp update manager directly.
"""

import asyncio
import logging
import os
import sys
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from vidfetch import __version__
from vidfetch.core import JobRegistry, JobService, Scheduler
from vidfetch.exceptions import VidfetchError
from vidfetch.media import ProcessExecutor
from vidfetch.media.downloader import close_connection_pool
from vidfetch.models.config import ServiceConfig
from vidfetch.models.job import JobStatus
from vidfetch.storage.config_manager import ConfigManager
from vidfetch.updater import BinaryUpdateManager
from vidfetch.utils.structured_logger import create_structured_logger

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_session_summary,
    print_update_check_result,
    print_update_status,
    print_validation_table,
)
from .progress_manager import JobMonitor

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("vidfetch")

app = typer.Typer(
    name="vidfetch",
    help=(
        "Download videos with yt-dlp through a bounded job queue and keep yt-dlp"
        " itself up to date. Use 'vidfetch <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)
update_app = typer.Typer(
    help="Check for and install new yt-dlp releases.",
    rich_markup_mode="rich",
    add_completion=False,
)
app.add_typer(update_app, name="update")


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "vidfetch"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _load_config(cli_options: dict | None = None) -> ServiceConfig:
    return ConfigManager(CONFIG_FILE).load_config(cli_options)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the effective configuration."
    ),
):
    """vidfetch video downloader"""
    if version:
        console.print(f"[bold]vidfetch[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("vidfetch").setLevel(log_level)

    if show_config:
        try:
            config = _load_config()
        except VidfetchError as e:
            console.print(format_error_with_suggestions(e))
            raise typer.Exit(code=1) from e
        print_config(CONFIG_FILE, config.model_dump())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing file without asking."
    ),
):
    """Write a configuration file holding every setting with its default."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    ConfigManager(CONFIG_FILE).save_new_config()
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready to download! Try: [cyan]vidfetch download <URL>[/cyan]")


@app.command()
def validate():
    """Validate the current configuration."""
    try:
        config = _load_config()
        print_validation_table(config)
    except VidfetchError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e


def _read_urls_from_stdin() -> list[str]:
    """Collects video URLs piped into the process. Blank and '#' lines are skipped."""
    if sys.stdin.isatty():
        console.print(
            "[yellow]⚠️  --stdin needs piped input, e.g."
            " [cyan]vidfetch download --stdin < videos.txt[/cyan][/yellow]"
        )
        raise typer.Exit(code=1)

    try:
        urls = [
            entry
            for entry in (raw.strip() for raw in sys.stdin)
            if entry and not entry.startswith("#")
        ]
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None

    if not urls:
        console.print("[yellow]⚠️  stdin contained no video URLs.[/yellow]")
        raise typer.Exit(code=1)
    log.debug(f"Read {len(urls)} video URL(s) from stdin.")
    return urls


@app.command(name="download")
def download_command(
    urls: list[str] | None = typer.Argument(  # noqa: B008
        None, help="One or more video URLs."
    ),
    start: str | None = typer.Option(
        None, "--start", help="Clip start as HH:MM:SS. Requires --end."
    ),
    end: str | None = typer.Option(
        None, "--end", help="Clip end as HH:MM:SS. Requires --start."
    ),
    workers: int | None = typer.Option(
        None,
        "-w",
        "--workers",
        help="Number of simultaneous downloads (overrides max_downloads).",
    ),
    work_dir: str | None = typer.Option(
        None, "--work-dir", help="Directory for in-flight downloads."
    ),
    log_dir: Path | None = typer.Option(  # noqa: B008
        None, "--log-dir", help="Also write structured JSON-lines logs here."
    ),
    auto_update: bool | None = typer.Option(
        None,
        "--auto-update/--no-auto-update",
        help="Keep yt-dlp updated while the session runs.",
    ),
    stdin: bool = typer.Option(
        False, "--stdin", help="Read URLs from standard input, one URL per line."
    ),
):
    """Download videos and upload them to object storage."""
    if stdin:
        if urls:
            log.warning(
                "[yellow]Ignoring URL arguments because --stdin was given.[/yellow]"
            )
        urls = _read_urls_from_stdin()
    elif not urls:
        console.print(
            "[red]✗ No URLs provided.[/red] "
            "Use: [cyan]vidfetch download <URL>[/cyan] or [cyan]--stdin[/cyan]"
        )
        raise typer.Exit(code=1)

    if (start is None) != (end is None):
        console.print("[red]✗ --start and --end must be given together.[/red]")
        raise typer.Exit(code=1)
    time_range = {"start": start, "end": end} if start else None

    cli_options = {
        "max_downloads": workers,
        "work_dir": work_dir,
        "auto_update_enabled": auto_update,
    }

    async def _download_async() -> bool:
        config = _load_config(cli_options)
        base_logger, job_logger, update_logger = create_structured_logger(log_dir)
        base_logger.set_session_context(max_downloads=config.max_downloads)

        registry = JobRegistry(config.max_finished_jobs, job_logger)
        scheduler = Scheduler(
            registry,
            ProcessExecutor(config),
            max_concurrent=config.max_downloads,
            cancel_timeout=config.cancel_timeout,
        )
        service = JobService(registry)
        updater = BinaryUpdateManager(config, registry, update_logger=update_logger)

        start_time = time.monotonic()
        try:
            for url in urls:
                payload = {"url": url}
                if time_range:
                    payload["timeRange"] = time_range
                try:
                    snapshot = await service.create_video_download_job(payload)
                    log.debug(f"Queued '{url}' as job {snapshot.id}.")
                except VidfetchError as e:
                    log.error(f"[red]✗ Skipping '{url}': {e}[/red]")

            if not registry.jobs():
                console.print("[red]✗ No valid URLs to download.[/red]")
                return False

            console.print("[bold cyan]🎬 Starting download session...[/bold cyan]")
            await updater.start()
            async with JobMonitor(console, registry, config.max_downloads):
                await scheduler.start()
                await registry.wait_until_idle()
        finally:
            await scheduler.stop(cancel_active=True)
            await updater.stop()
            await close_connection_pool()
            base_logger.close()

        jobs = registry.jobs()
        print_session_summary(jobs, time.monotonic() - start_time)
        return all(job.status == JobStatus.COMPLETED for job in jobs)

    try:
        succeeded = asyncio.run(_download_async())
    except VidfetchError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e
    if not succeeded:
        raise typer.Exit(code=1)


def _run_with_updater(coro_factory):
    """Builds an idle engine around a BinaryUpdateManager and runs one action."""

    async def _inner():
        config = _load_config()
        registry = JobRegistry(config.max_finished_jobs)
        updater = BinaryUpdateManager(config, registry)
        try:
            return await coro_factory(updater)
        finally:
            await updater.stop()
            await close_connection_pool()

    try:
        return asyncio.run(_inner())
    except VidfetchError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e


@update_app.command("check")
def update_check(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Report what would happen without installing."
    ),
):
    """Check for a new yt-dlp release and install it."""

    async def _check(updater: BinaryUpdateManager):
        with console.status("[cyan]Checking for yt-dlp updates...[/cyan]"):
            return await updater.check_for_updates(dry_run=dry_run)

    result = _run_with_updater(_check)
    print_update_check_result(result, dry_run=dry_run)
    if result.can_update and result.reason:
        raise typer.Exit(code=1)


@update_app.command("status")
def update_status():
    """Show the installed yt-dlp version and update bookkeeping."""

    async def _status(updater: BinaryUpdateManager):
        return await updater.get_current_version(), updater.get_update_status()

    version, status = _run_with_updater(_status)
    console.print(f"[bold]yt-dlp[/bold] version [cyan]{version}[/cyan]")
    print_update_status(status)


@update_app.command("version")
def update_version():
    """Print the installed yt-dlp version."""

    async def _version(updater: BinaryUpdateManager):
        return await updater.get_current_version()

    console.print(_run_with_updater(_version))
