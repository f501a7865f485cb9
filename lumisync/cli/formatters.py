"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from lumisync.models.module import Announcement, Module
from lumisync.models.sync import RunSummary
from lumisync.utils.formatting import (
    format_duration,
    format_size,
    format_timestamp,
    html_to_text,
)

SUGGESTIONS = {
    "BadCredentialsError": [
        "• Check the username (e.g. nusstu\\e0123456) and password.",
        "• Try logging in through the LumiNUS website to confirm the account works.",
    ],
    "SessionExpiredError": [
        "• The session kept expiring right after logging in again.",
        "• Run the command again; if it persists the service may be unstable.",
    ],
    "MalformedLoginFormError": [
        "• The university login page changed or is under maintenance.",
        "• Try again later, or run with -vv to see where the login stopped.",
    ],
    "UnexpectedFlowError": [
        "• The login redirected somewhere unexpected.",
        "• Make sure no captive portal or proxy intercepts the connection.",
        "• Run with -vv for the redirect chain.",
    ],
    "NetworkError": [
        "• Check your internet connection.",
        "• LumiNUS might be temporarily unavailable. Try again in a few minutes.",
        "• Reduce `--workers` if you are being rate-limited.",
    ],
    "ProtocolError": [
        "• LumiNUS answered with something that could not be understood.",
        "• Run with -vv for details.",
    ],
    "ConfigurationError": [
        "• Run `lumisync init --force` to recreate the configuration file.",
        "• Use `lumisync --show-config` to inspect the current values.",
    ],
}


def format_error_with_suggestions(
    error: Exception, context: Optional[dict] = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions = SUGGESTIONS.get(
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


def print_config(config_path: Path, config_data: dict[str, Any]) -> None:
    """Displays the current configuration."""
    console = Console()
    lines = []
    for key, value in sorted(config_data.items()):
        if isinstance(value, list):
            value = ", ".join(value)
        lines.append(f"{key} = {escape(str(value))}")

    console.print(
        Panel(
            "\n".join(lines),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_modules(modules: list[Module], console: Optional[Console] = None) -> None:
    """Lists modules grouped by whether the user takes or teaches them."""
    console = console or Console()
    taking = [m for m in modules if m.is_taking]
    teaching = [m for m in modules if m.is_teaching]

    for title, group in (("You are taking", taking), ("You are teaching", teaching)):
        if not group:
            continue
        table = Table(title=f"[bold]{title}[/bold]", box=box.SIMPLE, title_justify="left")
        table.add_column("Code", style="bold cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Term", style="dim", justify="right")
        for module in group:
            name = escape(module.name)
            if not module.has_access:
                name += " [dim](no access)[/dim]"
            table.add_row(escape(module.code), name, module.term)
        console.print(table)

    if not modules:
        console.print("[yellow]No modules found for the selected term.[/yellow]")


def print_announcements(
    module: Module,
    announcements: list[Announcement],
    console: Optional[Console] = None,
) -> None:
    console = console or Console()
    console.rule(f"[bold cyan]{escape(module.code)}[/bold cyan] {escape(module.name)}")
    if not announcements:
        console.print("[dim]No announcements.[/dim]\n")
        return
    for announcement in announcements:
        console.print(
            Panel(
                Text(html_to_text(announcement.description)),
                title=f"[bold]{escape(announcement.title)}[/bold]",
                subtitle=f"[dim]{format_timestamp(announcement.display_from)}[/dim]",
                title_align="left",
                subtitle_align="right",
                border_style="blue",
            )
        )
    console.print()


def print_problems_table(summary: RunSummary, console: Optional[Console] = None) -> None:
    """Lists every failed or rejected file and every folder that could not be listed."""
    if not summary.problems and not summary.discovery_failures:
        return
    console = console or Console()
    table = Table(title="[bold red]Problems[/bold red]", box=box.SIMPLE_HEAD)
    table.add_column("Outcome", style="red", no_wrap=True)
    table.add_column("Kind", style="yellow", no_wrap=True)
    table.add_column("Path")
    table.add_column("Error", style="dim")

    for failure in summary.discovery_failures:
        outcome = "rejected" if failure.error_kind == "path_safety" else "not listed"
        table.add_row(
            outcome, failure.error_kind, escape(failure.path), escape(failure.message)
        )
    for result in summary.problems:
        table.add_row(
            result.outcome.value,
            result.error_kind or "-",
            escape(str(result.task.destination)),
            escape(result.error or ""),
        )
    console.print(table)


def print_summary_panel(summary: RunSummary, progress_stats: Optional[dict] = None) -> None:
    """Displays the final summary of a sync run."""
    console = Console()
    duration_s = summary.elapsed

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    prefix = "Would be " if summary.dry_run else ""
    stats_table.add_row(
        f"✓ {prefix}Created:", f"[bold green]{summary.created}[/bold green]"
    )
    stats_table.add_row(
        f"✓ {prefix}Updated:", f"[bold green]{summary.overwritten}[/bold green]"
    )
    stats_table.add_row("○ Up to date:", f"[yellow]{summary.skipped}[/yellow]")
    if summary.failed > 0:
        stats_table.add_row("✗ Failed:", f"[bold red]{summary.failed}[/bold red]")
    if summary.rejected > 0:
        stats_table.add_row("✗ Rejected:", f"[bold red]{summary.rejected}[/bold red]")
    if summary.discovery_failures:
        stats_table.add_row(
            "⚠ Folders not listed:",
            f"[yellow]{len(summary.discovery_failures)}[/yellow]",
        )

    stats_table.add_row("", "")
    stats_table.add_row("Total Size:", f"[cyan]{format_size(summary.total_bytes)}[/cyan]")
    if not summary.dry_run and duration_s > 0:
        avg_speed = summary.total_bytes / duration_s
        stats_table.add_row("Avg. Speed:", f"[magenta]{format_size(avg_speed)}/s[/magenta]")
    if summary.peak_speed_bps > 0:
        stats_table.add_row(
            "Peak Speed:", f"[magenta]{format_size(summary.peak_speed_bps)}/s[/magenta]"
        )
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    if progress_stats and progress_stats.get("peak_concurrent"):
        stats_table.add_row(
            "Peak Concurrent:", f"[green]{progress_stats['peak_concurrent']}[/green]"
        )

    if summary.dry_run:
        title = "[bold]Dry Run Summary[/bold]"
        border_color = "yellow"
    elif summary.has_failures:
        title = "[bold]Sync Finished With Problems[/bold]"
        border_color = "red"
    else:
        title = "[bold]Sync Complete![/bold]"
        border_color = "green"

    console.print()
    console.print(
        Panel(
            stats_table,
            title=title,
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    print_problems_table(summary, console)
    console.print()
