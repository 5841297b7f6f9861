"""Command-line interface for TaskBridge."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from taskbridge import __version__
from taskbridge.core.config import AppConfig, load_config
from taskbridge.core.context import SyncContext
from taskbridge.core.engine import create_engine
from taskbridge.core.errors import ConfigurationError, TaskBridgeError
from taskbridge.core.mapping import MappingStore
from taskbridge.core.models import SyncResult
from taskbridge.core.trigger import SyncScheduler, SyncTrigger
from taskbridge.utils.db import StateDB
from taskbridge.utils.logging import setup_logging, setup_sync_file_logging

# Create Typer app
app = typer.Typer(
    name="taskbridge",
    help="Synchronize markdown vault tasks with a CalDAV task calendar",
    add_completion=False,
)

# Create console for rich output
console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        exists=True,
        dir_okay=False,
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
) -> None:
    """TaskBridge - Sync markdown tasks with CalDAV."""
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config_file)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red]\n{e}")
        raise typer.Exit(2) from e

    ctx.obj["config"] = cfg
    ctx.obj["log_level"] = (log_level or cfg.general.log_level).upper()
    setup_logging(cfg, level_name=ctx.obj["log_level"], console=console)


def _print_result(result: SyncResult) -> None:
    table = Table(title="Sync Result")
    table.add_column("Outcome", style="cyan", no_wrap=True)
    table.add_column("Count", style="green", justify="right")

    table.add_row("Created", str(result.created))
    table.add_row("Updated", str(result.updated))
    table.add_row("Pulled", str(result.pulled))
    table.add_row("Linked", str(result.linked))
    table.add_row("Unchanged", str(result.unchanged))
    table.add_row("Skipped (filtered)", str(result.skipped))
    table.add_row("Degraded rebuilds", str(result.degraded))
    table.add_row("Errors", str(result.errors), style="red" if result.errors else None)
    console.print(table)

    for message in result.error_messages[:20]:
        console.print(f"  [red]✗[/red] {message}")
    if len(result.error_messages) > 20:
        console.print(f"  [dim]... and {len(result.error_messages) - 20} more[/dim]")

    if result.fatal_error:
        console.print(f"\n[red]✗ Sync aborted:[/red] {result.fatal_error}")


@app.command()
def version() -> None:
    """Show version information."""
    import platform

    table = Table(title="TaskBridge Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(
        False,
        "--show",
        "-s",
        help="Show current configuration",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        "-i",
        help="Create a default configuration file",
    ),
) -> None:
    """Manage configuration."""
    cfg: AppConfig = ctx.obj["config"]

    if init:
        config_path = cfg.general.config_file or cfg.default_config_path

        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            overwrite = typer.confirm("Overwrite existing config?")
            if not overwrite:
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        cfg.save_to_file(config_path)
        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        console.print("[yellow]Edit this file to set your vault path and CalDAV server.[/yellow]")
        return

    if show:
        table = Table(title="TaskBridge Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Log Level", cfg.general.log_level)

        table.add_row("", "")
        table.add_row("[bold]Vault[/bold]", "")
        table.add_row("Path", str(cfg.vault.path) if cfg.vault.path else "Not set")
        table.add_row("Name", cfg.vault.vault_name or "Not set")

        table.add_row("", "")
        table.add_row("[bold]CalDAV[/bold]", "")
        table.add_row("Server URL", cfg.caldav.server_url or "Not set")
        table.add_row("Username", cfg.caldav.username or "Not set")
        table.add_row("Calendar", cfg.caldav.calendar_path or "(first task calendar)")

        table.add_row("", "")
        table.add_row("[bold]Sync[/bold]", "")
        table.add_row("Interval", f"{cfg.sync.sync_interval}s")
        table.add_row("Auto Sync", "✓" if cfg.sync.enable_auto_sync else "✗")
        table.add_row("Due Date Only", "✓" if cfg.sync.due_date_only else "✗")
        table.add_row("Excluded Folders", ", ".join(cfg.sync.excluded_folders) or "-")
        table.add_row("Excluded Tags", ", ".join(cfg.sync.excluded_tags) or "-")
        table.add_row("Completed Task Age", f"{cfg.sync.completed_task_age_days} days")
        table.add_row("Hyperlinks", cfg.sync.hyperlink_sync_mode)
        table.add_row("Match Strategy", cfg.sync.match_strategy)

        console.print(table)
    else:
        console.print(f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}")
        console.print(f"[yellow]Data directory:[/yellow] {cfg.general.data_dir}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


@app.command()
def sync(
    ctx: typer.Context,
    log_file: bool = typer.Option(
        False,
        "--log-file",
        help="Also write this run's log to data_dir/logs/sync_<timestamp>.log",
    ),
) -> None:
    """Run one sync cycle."""
    cfg: AppConfig = ctx.obj["config"]
    handler = setup_sync_file_logging(cfg.general.data_dir / "logs") if log_file else None

    async def run_sync() -> SyncResult:
        engine = await create_engine(cfg, SyncContext(ctx.obj["log_level"]))
        return await SyncTrigger(engine).trigger()

    try:
        result = asyncio.run(run_sync())
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(2) from e
    finally:
        if handler is not None:
            logging.getLogger().removeHandler(handler)
            handler.close()

    _print_result(result)
    if result.fatal_error:
        raise typer.Exit(1)


@app.command()
def watch(ctx: typer.Context) -> None:
    """Sync now, then keep syncing every sync_interval seconds until interrupted."""
    cfg: AppConfig = ctx.obj["config"]

    if not cfg.sync.enable_auto_sync:
        console.print("[yellow]Auto sync is disabled (sync.enable_auto_sync = false)[/yellow]")
        raise typer.Exit(1)

    async def run_watch() -> None:
        engine = await create_engine(cfg, SyncContext(ctx.obj["log_level"]))
        scheduler = SyncScheduler(
            SyncTrigger(engine),
            cfg.sync.sync_interval,
            on_result=_print_result,
        )
        scheduler.start()
        console.print(f"[green]Watching, syncing every {cfg.sync.sync_interval}s. Press Ctrl+C to stop.[/green]")
        try:
            await scheduler.run_now()
            await asyncio.Event().wait()
        finally:
            scheduler.stop()

    try:
        asyncio.run(run_watch())
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(2) from e
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@app.command()
def status(ctx: typer.Context) -> None:
    """Show configuration and sync state."""
    cfg: AppConfig = ctx.obj["config"]

    console.print("[bold]TaskBridge Status[/bold]\n")

    if cfg.vault.path and cfg.vault.path.exists():
        console.print(f"✓ Vault: {cfg.vault.path}", style="green")
    elif cfg.vault.path:
        console.print(f"✗ Vault folder does not exist: {cfg.vault.path}", style="red")
    else:
        console.print("✗ Vault path not configured", style="red")

    if cfg.caldav.server_url:
        console.print(f"✓ CalDAV URL: {cfg.caldav.server_url}", style="green")
    else:
        console.print("✗ CalDAV URL not configured", style="red")

    if cfg.caldav.username:
        console.print(f"✓ CalDAV username: {cfg.caldav.username}", style="green")
        if cfg.caldav.get_password():
            from taskbridge.utils.credentials import CredentialStore

            if CredentialStore().has_caldav_password(cfg.caldav.username):
                console.print("✓ CalDAV password: stored in system keyring (secure)", style="green")
            else:
                console.print(
                    "✓ CalDAV password: configured in config/env (consider using keyring)",
                    style="yellow",
                )
        else:
            console.print("✗ CalDAV password not configured", style="red")
    else:
        console.print("✗ CalDAV username not configured", style="red")

    async def read_state() -> tuple[int, int, dict]:
        db = StateDB(cfg.state_db_path)
        await db.initialize()
        return await db.count_mappings(), await db.get_schema_version(), await db.load_settings()

    count, schema_version, settings = asyncio.run(read_state())
    console.print(f"\nMapped tasks: [cyan]{count}[/cyan]")
    console.print(f"[dim]State database: {cfg.state_db_path} (schema v{schema_version})[/dim]")
    if settings and settings != cfg.sync.model_dump(mode="json"):
        console.print("[yellow]Sync settings changed since the last sync[/yellow]")


@app.command()
def calendars(ctx: typer.Context) -> None:
    """List the calendars available on the CalDAV server."""
    from taskbridge.sources.caldav.adapter import CalDAVTransport

    cfg: AppConfig = ctx.obj["config"]
    password = cfg.caldav.get_password()
    if not cfg.caldav.server_url or not cfg.caldav.username or not password:
        console.print("[red]CalDAV URL, username and password are required[/red]")
        raise typer.Exit(1)

    transport = CalDAVTransport(
        url=cfg.caldav.server_url,
        username=cfg.caldav.username,
        password=password,
        ssl_verify_cert=cfg.caldav.ssl_verify_cert,
        timeout=cfg.caldav.timeout_seconds,
    )
    try:
        found = asyncio.run(transport.list_calendars())
    except TaskBridgeError as e:
        console.print(f"[red]Failed to list calendars:[/red] {e}")
        raise typer.Exit(1) from e

    table = Table(title="CalDAV Calendars")
    table.add_column("Name", style="cyan")
    table.add_column("URL", style="green")
    for cal in found:
        table.add_row(cal["name"], cal["url"])
    console.print(table)


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt",
    ),
) -> None:
    """Clear all task mappings."""
    cfg: AppConfig = ctx.obj["config"]

    if not yes:
        console.print("[yellow]This will clear all task sync mappings from the database.[/yellow]")
        console.print("[dim]Your tasks and remote entries will NOT be deleted, only the sync tracking.[/dim]\n")
        confirmed = typer.confirm("Are you sure you want to continue?")
        if not confirmed:
            console.print("[dim]Cancelled[/dim]")
            raise typer.Exit(0)

    async def reset_db() -> None:
        store = MappingStore(StateDB(cfg.state_db_path), SyncContext(ctx.obj["log_level"]))
        await store.load()
        store.clear()
        await store.flush()

    asyncio.run(reset_db())
    console.print("[green]✓ Database reset complete[/green]")


@app.command()
def forget(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Task identifier, e.g. task-1b4e28ba-..."),
) -> None:
    """Delete the mapping of one task."""
    cfg: AppConfig = ctx.obj["config"]
    identifier = identifier.lstrip("^")

    async def forget_mapping() -> bool:
        store = MappingStore(StateDB(cfg.state_db_path), SyncContext(ctx.obj["log_level"]))
        await store.load()
        removed = store.remove(identifier)
        await store.flush()
        return removed

    if asyncio.run(forget_mapping()):
        console.print(f"[green]✓ Mapping removed:[/green] {identifier}")
    else:
        console.print(f"[yellow]No mapping found for {identifier}[/yellow]")
        raise typer.Exit(1)


@app.command("set-password")
def set_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(
        None,
        "--username",
        "-u",
        help="CalDAV username (default: from config)",
    ),
) -> None:
    """Store CalDAV password securely in system keyring."""
    from taskbridge.utils.credentials import CredentialStore

    cfg: AppConfig = ctx.obj["config"]

    if not username:
        username = cfg.caldav.username
        if not username:
            console.print("[red]Username not specified and not found in config[/red]")
            console.print("[dim]Use --username or set TASKBRIDGE_CALDAV__USERNAME[/dim]")
            raise typer.Exit(1)

    password = typer.prompt(f"Enter CalDAV password for {username}", hide_input=True)
    password_confirm = typer.prompt("Confirm password", hide_input=True)

    if password != password_confirm:
        console.print("[red]Passwords do not match[/red]")
        raise typer.Exit(1)

    try:
        CredentialStore().set_caldav_password(username, password)
        console.print(f"[green]✓ Password stored securely for user: {username}[/green]")
        console.print("[dim]You can now remove TASKBRIDGE_CALDAV__PASSWORD from your config/environment[/dim]")
    except Exception as e:
        console.print(f"[red]Failed to store password: {e}[/red]")
        raise typer.Exit(1) from e


@app.command("delete-password")
def delete_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(
        None,
        "--username",
        "-u",
        help="CalDAV username (default: from config)",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt",
    ),
) -> None:
    """Delete CalDAV password from system keyring."""
    from taskbridge.utils.credentials import CredentialStore

    cfg: AppConfig = ctx.obj["config"]

    if not username:
        username = cfg.caldav.username
        if not username:
            console.print("[red]Username not specified and not found in config[/red]")
            console.print("[dim]Use --username or set TASKBRIDGE_CALDAV__USERNAME[/dim]")
            raise typer.Exit(1)

    if not yes:
        confirmed = typer.confirm(f"Delete stored password for {username}?")
        if not confirmed:
            console.print("[dim]Cancelled[/dim]")
            raise typer.Exit(0)

    if CredentialStore().delete_caldav_password(username):
        console.print(f"[green]✓ Password deleted for user: {username}[/green]")
    else:
        console.print(f"[yellow]No password found for user: {username}[/yellow]")


def main_entry() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        logging.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main_entry()
