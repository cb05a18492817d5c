"""
Rich renderings for jobs, update results, configuration and errors.
"""

from collections import Counter
from pathlib import Path
from typing import Any, Iterable

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from vidfetch.models.config import ServiceConfig
from vidfetch.models.job import Job, JobStatus
from vidfetch.models.update import UpdateCheckResult, UpdateStatus
from vidfetch.utils.formatting import (
    format_duration,
    format_timestamp,
    sanitize_url,
    truncate,
)

STATUS_STYLES = {
    JobStatus.PENDING: "dim",
    JobStatus.DOWNLOADING: "cyan",
    JobStatus.CONVERTING: "magenta",
    JobStatus.UPLOADING: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLING: "yellow",
    JobStatus.CANCELLED: "yellow",
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ValidationError": [
            "• URLs must start with http:// or https://.",
            "• Time ranges use HH:MM:SS and --end must be after --start.",
        ],
        "ConfigurationError": [
            "• Run `vidfetch validate` to see which setting is wrong.",
            "• Run `vidfetch init --force` to write a fresh default config.",
            "• Check VIDFETCH_* environment variables for typos.",
        ],
        "VersionProbeError": [
            "• Check that `ytdlp_path` points to an executable yt-dlp binary.",
            "• Run `<ytdlp_path> --version` manually to see its output.",
        ],
        "ReleaseFeedError": [
            "• The GitHub API may be rate-limiting this machine.",
            "• Check your internet connection.",
            "• Please try again in a few minutes.",
        ],
        "VerificationError": [
            "• The downloaded release did not pass its version check.",
            "• The previous binary has been restored.",
        ],
        "RollbackError": [
            "• The backup could not be restored over the live binary.",
            "• Copy `binary_backup_path` back to `ytdlp_path` by hand.",
        ],
        "ClientResponseError": [
            "• A network connection issue occurred.",
            "• The storage endpoint might be temporarily unavailable.",
        ],
        "TimeoutError": [
            "• An operation timed out.",
            "• Check your internet speed.",
            "• Try reducing the number of `--workers`.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def build_jobs_table(jobs: Iterable[Job]) -> Table:
    """Renders one row per job with its stage and download progress."""
    table = Table(box=box.ROUNDED, expand=False)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title / URL", max_width=50)
    table.add_column("Status", no_wrap=True)
    table.add_column("Progress", justify="right")
    table.add_column("Result", max_width=60)

    for job in jobs:
        style = STATUS_STYLES.get(job.status, "")
        label = truncate(job.title) or truncate(sanitize_url(job.url))
        if job.time_range:
            label += f" [dim]({job.time_range.start}-{job.time_range.end})[/dim]"

        if job.status == JobStatus.FAILED:
            result = f"[red]{job.error or ''}[/red]"
        else:
            result = "\n".join(job.download_urls)

        table.add_row(
            job.id,
            label,
            f"[{style}]{job.status.value}[/{style}]" if style else job.status.value,
            f"{job.progress:.1f}%",
            result,
        )
    return table


def print_session_summary(jobs: list[Job], duration_s: float):
    """Displays the final summary of a download session."""
    console = Console()
    counts = Counter(job.status for job in jobs)

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=16)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row(
        "✓ Completed:", f"[bold green]{counts[JobStatus.COMPLETED]}[/bold green]"
    )
    if counts[JobStatus.CANCELLED]:
        stats_table.add_row(
            "○ Cancelled:", f"[yellow]{counts[JobStatus.CANCELLED]}[/yellow]"
        )
    if counts[JobStatus.FAILED]:
        stats_table.add_row(
            "✗ Failed:", f"[bold red]{counts[JobStatus.FAILED]}[/bold red]"
        )
    stats_table.add_row("", "")
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    failed = counts[JobStatus.FAILED] > 0
    console.print()
    console.print(
        Panel(
            stats_table,
            title="🎬 [bold]Session Summary[/bold]",
            border_style="red" if failed else "green",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )


def print_update_check_result(result: UpdateCheckResult, dry_run: bool = False):
    """Displays the outcome of an update check."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Installed:", result.current_version)
    table.add_row("Latest:", result.latest_version)
    table.add_row(
        "Update Available:",
        "[green]✓ Yes[/green]" if result.update_available else "✗ No",
    )
    if result.reason:
        table.add_row("Reason:", f"[yellow]{result.reason}[/yellow]")

    if result.can_update and not result.reason:
        title, border = "[bold green]✓ yt-dlp Updated[/bold green]", "green"
    elif result.can_update:
        title, border = "[bold red]✗ Update Failed[/bold red]", "red"
    else:
        title = "[bold]yt-dlp Update Check[/bold]" + (" (dry run)" if dry_run else "")
        border = "cyan"

    console.print(Panel(table, title=title, border_style=border, expand=False))


def print_update_status(status: UpdateStatus):
    """Displays the update manager's bookkeeping."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Updating:", "✓ Yes" if status.is_updating else "✗ No")
    table.add_row("Last Check:", format_timestamp(status.last_check))
    table.add_row("Last Attempt:", format_timestamp(status.last_attempt))
    table.add_row("Retry Count:", str(status.retry_count))

    console.print(
        Panel(table, title="[bold]yt-dlp Update Status[/bold]", border_style="cyan")
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the effective configuration."""
    console = Console()
    content = "\n".join(f"{key} = {value}" for key, value in config_data.items())

    console.print(
        Panel(
            content,
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(config: ServiceConfig):
    """Displays a summary of the current settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Max Downloads:", str(config.max_downloads))
    table.add_row("Cancel Timeout:", f"{config.cancel_timeout:g}s")
    table.add_row("Work Dir:", f"[dim]{config.work_dir}[/dim]")
    table.add_row("yt-dlp:", f"[dim]{config.ytdlp_path}[/dim]")
    table.add_row("ffmpeg:", f"[dim]{config.ffmpeg_path}[/dim]")
    table.add_row("Storage:", f"{config.storage_url}/{config.bucket}")
    table.add_row(
        "Auto Update:",
        (
            f"✓ Every {config.update_check_interval:g}h"
            if config.auto_update_enabled
            else "✗ Disabled"
        ),
    )

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )
