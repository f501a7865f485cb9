"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from lumisync import __version__
from lumisync.api.client import LumiNUSClient
from lumisync.api.session import SessionManager
from lumisync.api.transport import AiohttpTransport
from lumisync.core.downloader import Downloader
from lumisync.core.sync_manager import SyncManager
from lumisync.exceptions import ConfigurationError
from lumisync.models.config import Credentials, SyncConfig
from lumisync.models.sync import RunSummary
from lumisync.storage.config_manager import ConfigManager

from .formatters import (
    print_announcements,
    print_config,
    print_modules,
    print_problems_table,
    print_summary_panel,
)
from .progress_manager import ProgressManager

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
log = logging.getLogger("lumisync")

PASSWORD_ENV = "LUMISYNC_PASSWORD"

app = typer.Typer(
    name="lumisync",
    help=(
        "Keeps a local folder in step with your LumiNUS workbins. Use 'lumisync"
        " <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "lumisync"


def _config_file(ctx: typer.Context) -> Path:
    return ctx.obj["config_file"]


def _load_config(ctx: typer.Context, cli_options: Optional[dict] = None) -> SyncConfig:
    options = {k: v for k, v in (cli_options or {}).items() if v is not None}
    return ConfigManager(_config_file(ctx)).load_config(options)


def _resolve_credentials(config: SyncConfig) -> Credentials:
    """Username from the config (or a prompt), password from the environment or a prompt."""
    username = config.username or typer.prompt("Username (e.g. nusstu\\e0123456)")
    password = os.environ.get(PASSWORD_ENV) or typer.prompt("Password", hide_input=True)
    try:
        return Credentials(username=username, password=password)
    except ValidationError:
        # The validation error would echo its input back, so it is not chained
        raise ConfigurationError("A non-empty username is required.") from None


def _make_sessions(credentials: Credentials, transport: AiohttpTransport) -> SessionManager:
    return SessionManager(credentials, transport=transport)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-v for details, -vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        envvar="LUMISYNC_CONFIG",
        help="Path of the configuration file to use.",
    ),
):
    """LumiNUS workbin sync"""
    if version:
        console.print(f"[bold]lumisync[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "WARNING"
    if verbose == 1:
        log_level = "INFO"
    elif verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("lumisync").setLevel(log_level)

    config_path = config_file or get_config_dir() / "config.ini"
    ctx.obj = {"config_file": config_path}

    if show_config:
        if not config_path.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]lumisync init[/cyan] first."
            )
            raise typer.Exit(code=1)
        config_manager = ConfigManager(config_path)
        config = config_manager.load_config()
        print_config(config_path, config_manager.get_config_as_dict())
        log.debug(f"Loaded configuration: {config!r}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    ctx: typer.Context,
    username: str = typer.Option(
        ..., "--username", "-u", help="Your NUS login, e.g. nusstu\\e0123456."
    ),
    destination: Optional[Path] = typer.Option(
        None, "--destination", "-d", help="Folder to sync into."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration without asking."
    ),
):
    """Create the configuration file. The password is never stored."""
    config_path = _config_file(ctx)
    if (
        config_path.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {"username": username.strip()}
    if destination is not None:
        settings["destination"] = str(destination.expanduser())
    ConfigManager(config_path).save_new_config(settings)
    console.print(f"\n[bold green]✓ Configuration saved to '{config_path}'[/bold green]")
    console.print(
        f"Set [cyan]{PASSWORD_ENV}[/cyan] or enter your password when asked. "
        "Try: [cyan]lumisync login[/cyan]"
    )


@app.command()
def login(ctx: typer.Context):
    """Check that logging in works and greet the user."""
    config = _load_config(ctx)
    credentials = _resolve_credentials(config)

    async def _login_async() -> str:
        transport = AiohttpTransport()
        async with _make_sessions(credentials, transport) as sessions:
            await sessions.login()
            return await LumiNUSClient(sessions).user_name()

    name = asyncio.run(_login_async())
    console.print(f"[bold green]Hi {escape(name)}![/bold green]")


@app.command()
def modules(
    ctx: typer.Context,
    term: Optional[str] = typer.Option(
        None, "--term", "-t", help="Four-digit term, e.g. 2310. Defaults to current."
    ),
):
    """List the modules you are taking and teaching."""
    config = _load_config(ctx, {"term": term})
    credentials = _resolve_credentials(config)

    async def _modules_async():
        async with _make_sessions(credentials, AiohttpTransport()) as sessions:
            return await LumiNUSClient(sessions).list_modules(config.term or None)

    print_modules(asyncio.run(_modules_async()), console)


@app.command()
def announcements(
    ctx: typer.Context,
    archived: bool = typer.Option(
        False, "--archived", help="Show archived instead of current announcements."
    ),
    module: Optional[list[str]] = typer.Option(  # noqa: B008
        None, "--module", "-m", help="Only this module code (repeatable)."
    ),
    term: Optional[str] = typer.Option(None, "--term", "-t", help="Four-digit term."),
):
    """Print the announcements of your modules as text."""
    config = _load_config(ctx, {"term": term, "modules": module or None})
    credentials = _resolve_credentials(config)

    async def _announcements_async():
        async with _make_sessions(credentials, AiohttpTransport()) as sessions:
            client = LumiNUSClient(sessions)
            manager = SyncManager(config, client, fetcher=None)
            selected = await manager.select_modules()
            return await client.list_all_announcements(selected, archived=archived)

    for mod, items in asyncio.run(_announcements_async()):
        print_announcements(mod, items, console)


@app.command()
def files(
    ctx: typer.Context,
    module: Optional[list[str]] = typer.Option(  # noqa: B008
        None, "--module", "-m", help="Only this module code (repeatable)."
    ),
    term: Optional[str] = typer.Option(None, "--term", "-t", help="Four-digit term."),
    include_uploadable: Optional[list[str]] = typer.Option(  # noqa: B008
        None,
        "--include-uploadable",
        help="Also walk student upload folders: taking, teaching or all.",
    ),
):
    """List the files a sync would consider, without downloading anything."""
    config = _load_config(
        ctx,
        {
            "term": term,
            "modules": module or None,
            "include_uploadable": include_uploadable or None,
        },
    )
    credentials = _resolve_credentials(config)

    async def _files_async():
        async with _make_sessions(credentials, AiohttpTransport()) as sessions:
            manager = SyncManager(config, LumiNUSClient(sessions), fetcher=None)
            return await manager.list_files()

    result = asyncio.run(_files_async())
    for entry in result.files:
        console.print(escape(str(entry.relative_path)), highlight=False)

    problems = RunSummary(discovery_failures=result.failures + result.rejected)
    print_problems_table(problems, console)
    if problems.has_failures:
        raise typer.Exit(code=1)


async def _sync_async(
    config: SyncConfig, credentials: Credentials
) -> tuple[RunSummary, dict]:
    transport = AiohttpTransport(max_connections=config.max_workers)
    async with ProgressManager(console=console, dry_run=config.dry_run) as progress:
        async with _make_sessions(credentials, transport) as sessions:
            manager = SyncManager(
                config,
                LumiNUSClient(sessions),
                fetcher=Downloader(transport.session),
                progress_manager=progress,
            )
            summary = await manager.run()
        return summary, progress.get_statistics()


@app.command(name="sync")
def sync_command(
    ctx: typer.Context,
    destination: Optional[Path] = typer.Argument(
        None, help="Folder to sync into (default: from the configuration)."
    ),
    workers: Optional[int] = typer.Option(
        None, "--workers", "-w", help="Simultaneous downloads (1-32, default 8)."
    ),
    discovery_workers: Optional[int] = typer.Option(
        None, "--discovery-workers", help="Simultaneous folder listings (1-32)."
    ),
    module: Optional[list[str]] = typer.Option(  # noqa: B008
        None, "--module", "-m", help="Only this module code (repeatable)."
    ),
    term: Optional[str] = typer.Option(None, "--term", "-t", help="Four-digit term."),
    updated: Optional[str] = typer.Option(
        None,
        "--updated",
        help="What to do with files updated remotely: skip, overwrite or rename.",
    ),
    include_uploadable: Optional[list[str]] = typer.Option(  # noqa: B008
        None,
        "--include-uploadable",
        help="Also sync student upload folders: taking, teaching or all.",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would be downloaded without writing files."
    ),
):
    """Download new and updated workbin files."""
    config = _load_config(
        ctx,
        {
            "destination": str(destination) if destination else None,
            "max_workers": workers,
            "discovery_workers": discovery_workers,
            "modules": module or None,
            "term": term,
            "on_updated": updated,
            "include_uploadable": include_uploadable or None,
            "dry_run": dry_run,
        },
    )
    credentials = _resolve_credentials(config)

    summary, progress_stats = asyncio.run(_sync_async(config, credentials))
    print_summary_panel(summary, progress_stats)
    if summary.has_failures:
        raise typer.Exit(code=1)
