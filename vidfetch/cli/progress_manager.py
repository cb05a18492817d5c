"""
Manages a Rich Live display of the jobs known to the registry.
"""

import asyncio
import logging
from contextlib import suppress

from rich.console import Console, Group
from rich.live import Live
from rich.text import Text

from vidfetch.core.registry import JobRegistry

from .formatters import build_jobs_table

log = logging.getLogger(__name__)


class JobMonitor:
    """Redraws the jobs table while the engine runs."""

    def __init__(
        self,
        console: Console,
        registry: JobRegistry,
        max_downloads: int,
        refresh_interval: float = 0.5,
    ):
        self.console = console
        self.registry = registry
        self.max_downloads = max_downloads
        self.refresh_interval = refresh_interval
        self._live: Live | None = None
        self._refresh_task: asyncio.Task | None = None

    def render(self) -> Group:
        header = Text.from_markup(
            f"[bold blue]Active {self.registry.active_count}/{self.max_downloads}"
            f"[/bold blue] • Queued {self.registry.queue_size}"
            + (
                " • [yellow]Paused for yt-dlp update[/yellow]"
                if self.registry.dispatch_paused
                else ""
            )
        )
        return Group(header, build_jobs_table(self.registry.jobs()))

    async def _refresh_loop(self):
        while True:
            await asyncio.sleep(self.refresh_interval)
            if self._live:
                self._live.update(self.render())

    async def __aenter__(self) -> "JobMonitor":
        self._live = Live(
            self.render(),
            console=self.console,
            refresh_per_second=4,
            transient=False,
        )
        self._live.__enter__()
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._refresh_task:
            self._refresh_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._refresh_task
        if self._live:
            self._live.update(self.render())
            self._live.__exit__(exc_type, exc_val, exc_tb)
            self._live = None
        return False
