"""
Manages a Rich Live display for concurrent downloads: overall progress, active
transfers and running statistics.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table
from rich.text import Text

from lumisync.models.sync import SyncOutcome, SyncResult
from lumisync.utils.formatting import format_duration

log = logging.getLogger(__name__)

MAX_DESCRIPTION = 55


class ProgressManager:
    """
    Live view of a sync run. Does nothing visible in dry-run mode, where the
    executor only logs what it would do.
    """

    def __init__(self, console: Console, dry_run: bool = False):
        self.console = console
        self.dry_run = dry_run

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=20),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            DownloadColumn(),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=console,
            transient=False,
        )
        self.overall_progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=console,
        )

        self._live: Optional[Live] = None
        self._layout: Optional[Layout] = None
        self._overall_task_id: Optional[TaskID] = None
        self._active_tasks: set[TaskID] = set()
        self._stats = {
            "total_files": 0,
            "downloaded": 0,
            "failed": 0,
            "rejected": 0,
            "active_downloads": 0,
            "peak_concurrent": 0,
            "start_time": None,
            "current_speed": 0.0,
            "peak_speed": 0.0,
        }

    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="stats", size=7),
            Layout(name="progress", ratio=1),
        )
        return layout

    def _generate_header(self) -> Panel:
        elapsed = 0.0
        if self._stats["start_time"]:
            elapsed = (datetime.now() - self._stats["start_time"]).total_seconds()
        header_text = Text()
        header_text.append("LumiNUS Sync ", style="bold cyan")
        header_text.append("│ ", style="dim")
        header_text.append(f"Elapsed: {format_duration(elapsed)}", style="yellow")
        if self._stats["current_speed"] > 0:
            speed_mb = self._stats["current_speed"] / (1024 * 1024)
            header_text.append(" │ ", style="dim")
            header_text.append(f"{speed_mb:.1f} MB/s", style="magenta")
        return Panel(header_text, border_style="cyan")

    def _generate_stats_panel(self) -> Panel:
        stats_table = Table.grid(padding=(0, 2))
        stats_table.add_column(style="bold cyan", justify="right")
        stats_table.add_column(style="white")
        stats_table.add_column(style="bold cyan", justify="right")
        stats_table.add_column(style="white")

        finished = self._finished()
        stats_table.add_row(
            "Downloaded:",
            f"[green]{self._stats['downloaded']}[/green]",
            "Failed:",
            f"[red]{self._stats['failed'] + self._stats['rejected']}[/red]",
        )
        stats_table.add_row(
            "Active:",
            f"[cyan]{self._stats['active_downloads']}[/cyan]",
            "Remaining:",
            f"[cyan]{max(0, self._stats['total_files'] - finished)}[/cyan]",
        )

        combined = Table.grid()
        combined.add_row(stats_table)
        if self._overall_task_id is not None:
            combined.add_row(self.overall_progress)
        return Panel(combined, title="[bold]Statistics[/bold]", border_style="blue")

    def _generate_progress_panel(self) -> Panel:
        if not self._active_tasks:
            return Panel(
                Text("Waiting for downloads...", style="dim italic", justify="center"),
                title="[bold]Active Downloads[/bold]",
                border_style="green",
            )
        return Panel(
            self.progress,
            title=f"[bold]Active Downloads ({len(self._active_tasks)})[/bold]",
            border_style="green",
        )

    def _update_display(self) -> None:
        if self.dry_run or not self._layout:
            return
        self._layout["header"].update(self._generate_header())
        self._layout["stats"].update(self._generate_stats_panel())
        self._layout["progress"].update(self._generate_progress_panel())

    def _finished(self) -> int:
        return self._stats["downloaded"] + self._stats["failed"] + self._stats["rejected"]

    def initialize_session(self, total_files: int) -> None:
        self._stats["total_files"] = total_files
        self._stats["start_time"] = datetime.now()
        if not self.dry_run:
            self._overall_task_id = self.overall_progress.add_task(
                "Overall Progress", total=total_files, start=True
            )
        self._update_display()

    def update_speed_stats(self, current_speed: float, peak_speed: float) -> None:
        self._stats["current_speed"] = current_speed
        self._stats["peak_speed"] = peak_speed

    def add_download_task(self, description: str, total_size: int) -> Optional[TaskID]:
        if self.dry_run:
            return None
        if len(description) > MAX_DESCRIPTION:
            description = "…" + description[-(MAX_DESCRIPTION - 1) :]
        task_id = self.progress.add_task(description, total=total_size or None, start=True)
        self._active_tasks.add(task_id)
        self._stats["active_downloads"] = len(self._active_tasks)
        self._stats["peak_concurrent"] = max(
            self._stats["peak_concurrent"], self._stats["active_downloads"]
        )
        self._update_display()
        return task_id

    def update_task_progress(self, task_id: Optional[TaskID], completed: int) -> None:
        if task_id is not None and not self.dry_run:
            self.progress.update(task_id, completed=completed)
            self._update_display()

    def update_task_total(self, task_id: Optional[TaskID], total: int) -> None:
        if task_id is not None and not self.dry_run:
            self.progress.update(task_id, total=total or None)

    def remove_task(self, task_id: Optional[TaskID]) -> None:
        if task_id is None or self.dry_run or task_id not in self._active_tasks:
            return
        self.progress.remove_task(task_id)
        self._active_tasks.discard(task_id)
        self._stats["active_downloads"] = len(self._active_tasks)
        self._update_display()

    def record_result(self, result: SyncResult) -> None:
        """Counts a finished task towards the overall bar."""
        if result.outcome is SyncOutcome.FAILED:
            self._stats["failed"] += 1
        elif result.outcome is SyncOutcome.REJECTED:
            self._stats["rejected"] += 1
        else:
            self._stats["downloaded"] += 1

        if self._overall_task_id is not None and not self.dry_run:
            self.overall_progress.update(self._overall_task_id, completed=self._finished())
        self._update_display()

    def get_statistics(self) -> dict:
        return self._stats.copy()

    async def __aenter__(self):
        if self.dry_run:
            return self
        self._layout = self._create_layout()
        self._update_display()
        self._live = Live(
            self._layout,
            console=self.console,
            refresh_per_second=12,
            vertical_overflow="visible",
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._live and not self.dry_run:
            await asyncio.sleep(0.2)
            self._live.stop()
