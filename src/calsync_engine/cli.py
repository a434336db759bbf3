"""Command-line interface with Rich formatting."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import create_example_config, load_settings
from .exceptions import CalsyncError
from .models import Provider
from .server import SyncRuntime, create_app

console = Console()
logger = structlog.get_logger()

STATUS_STYLES = {
    'active': 'green',
    'expired': 'yellow',
    'error': 'red',
    'disabled': 'red',
    'inactive': 'dim',
    'success': 'green',
    'partial': 'yellow',
}


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level), format=log_format)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def runtime_command(f):
    """Async command that receives a SyncRuntime and always closes it.

    Engine errors are printed and exit with status 1.
    """
    @async_command
    async def wrapper(ctx, *args, **kwargs):
        settings = ctx.obj['settings']
        runtime = SyncRuntime(settings)
        try:
            return await f(ctx, runtime, *args, **kwargs)
        except CalsyncError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
        finally:
            await runtime.close()
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status or '', 'white')
    return f"[{style}]{status or 'running'}[/{style}]"


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """CalSync Engine - keep external calendars mirrored into the internal store.

    Connections to Google, Outlook and iCal feeds are synced on a schedule;
    failing connections are disabled after repeated errors until reset.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run HTTP server with the background scheduler (container friendly)."""
    try:
        import uvicorn
        uvicorn.run(create_app(ctx.obj['settings']), host=host, port=port)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--once', is_flag=True, help='Run one sync pass and one refresh pass, then exit')
@runtime_command
async def daemon(ctx, runtime, once):
    """Run the scheduler without the HTTP server."""
    settings = runtime.settings

    if once:
        logs = await runtime.scheduler.run_sync_pass()
        refresh = await runtime.scheduler.run_refresh_pass()
        console.print(
            f"Synced {len(logs)} connections; refreshed {refresh['refreshed']} credentials "
            f"({refresh['failed']} failed); purged {refresh['purged']} logs"
        )
        return

    console.print(
        f"[green]Starting CalSync scheduler[/green] - sync every {settings.sync_interval_minutes} minutes, "
        f"token refresh every {settings.token_refresh_interval_minutes} minutes"
    )
    runtime.scheduler.start()
    logger.info("scheduler_started", sync_interval_minutes=settings.sync_interval_minutes)
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]Scheduler stopped by user[/yellow]")


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, help='Owning user ID')
@click.option('--provider', '-p', required=True,
              type=click.Choice([p.value for p in Provider]), help='Calendar provider')
@click.option('--email', '-e', 'account_email', required=True, help='Account email')
@click.option('--name', 'account_name', help='Account display name')
@click.option('--access-token', help='OAuth access token')
@click.option('--refresh-token', help='OAuth refresh token')
@click.option('--expires-in', type=int, help='Seconds until the access token expires')
@click.option('--feed-url', help='Feed URL for iCal subscriptions')
@click.option('--frequency', type=int, default=15, show_default=True, help='Sync frequency in minutes')
@runtime_command
async def connect(ctx, runtime, user_id, provider, account_email, account_name,
                  access_token, refresh_token, expires_in, feed_url, frequency):
    """Create a calendar connection."""
    if provider == Provider.ICAL.value and not feed_url:
        console.print("[red]--feed-url is required for iCal subscriptions[/red]")
        sys.exit(1)

    connection = runtime.service.connect(
        user_id,
        provider,
        account_email,
        account_name=account_name,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in_seconds=expires_in,
        sync_frequency_minutes=frequency,
        metadata={'url': feed_url} if feed_url else None,
    )
    console.print(f"[green]✓ Created {provider} connection[/green] {connection['id']}")


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, help='Owning user ID')
@click.option('--all', 'include_inactive', is_flag=True, help='Include disconnected connections')
@runtime_command
async def connections(ctx, runtime, user_id, include_inactive):
    """List a user's connections and their health."""
    items = runtime.service.list_connections(user_id, active_only=not include_inactive)
    if not items:
        console.print("[yellow]No connections found[/yellow]")
        return

    table = Table(title=f"Connections for {user_id}")
    table.add_column("ID", style="dim")
    table.add_column("Provider")
    table.add_column("Account")
    table.add_column("Status")
    table.add_column("Errors", justify="right")
    table.add_column("Last Sync")
    table.add_column("Next Sync")

    for item in items:
        table.add_row(
            item['id'],
            item['provider'],
            item['account_email'],
            _styled(item['sync_status']),
            str(item['error_count']),
            item['last_sync_at'] or "never",
            item['next_sync_at'] or "-",
        )
    console.print(table)


@cli.command()
@click.argument('connection_id')
@click.option('--user', '-u', 'user_id', required=True, help='Owning user ID')
@runtime_command
async def sync(ctx, runtime, connection_id, user_id):
    """Sync one connection now."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True
    ) as progress:
        progress.add_task("Syncing...", total=None)
        log = await runtime.service.manual_sync(connection_id, user_id)

    console.print(Panel(
        f"Status: {_styled(log.status)}\n"
        f"Processed: {log.events_processed}  Created: {log.events_created}  "
        f"Updated: {log.events_updated}\n"
        + (f"[red]Error: {log.error}[/red]" if log.error else ""),
        title=f"Sync {log.sync_type}",
    ))
    if log.status != 'success':
        sys.exit(1)


@cli.command()
@click.argument('connection_id')
@click.option('--user', '-u', 'user_id', required=True, help='Owning user ID')
@runtime_command
async def test(ctx, runtime, connection_id, user_id):
    """Probe a connection without changing its health state."""
    result = await runtime.service.test_connection(connection_id, user_id)
    if result['status'] == 'connected':
        console.print(
            f"[green]✓ {result['provider']} ({result['account_email']}): "
            f"{result['calendars_found']} calendars found[/green]"
        )
    else:
        console.print(f"[red]✗ {result['provider']} ({result['account_email']}): {result['error']}[/red]")
        sys.exit(1)


@cli.command()
@click.argument('connection_id')
@click.option('--user', '-u', 'user_id', required=True, help='Owning user ID')
@runtime_command
async def reset(ctx, runtime, connection_id, user_id):
    """Clear a connection's errors and re-enable sync."""
    result = runtime.service.reset_errors(connection_id, user_id)
    console.print(f"[green]✓ Errors cleared; sync enabled for {result['id']}[/green]")


@cli.command()
@click.argument('connection_id')
@click.option('--user', '-u', 'user_id', required=True, help='Owning user ID')
@click.confirmation_option(prompt='Disconnect this calendar? Stored credentials will be removed.')
@runtime_command
async def disconnect(ctx, runtime, connection_id, user_id):
    """Disconnect a connection and discard its credentials."""
    runtime.service.disconnect(connection_id, user_id)
    console.print("[green]✓ Connection disconnected[/green]")


@cli.command()
@click.argument('connection_id')
@click.option('--user', '-u', 'user_id', required=True, help='Owning user ID')
@click.option('--limit', '-n', type=int, default=20, show_default=True)
@click.option('--json', 'as_json', is_flag=True, help='Print raw JSON')
@runtime_command
async def logs(ctx, runtime, connection_id, user_id, limit, as_json):
    """Show recent sync runs for a connection."""
    result = runtime.service.sync_logs(connection_id, user_id, limit)
    if as_json:
        console.print_json(json.dumps(result))
        return

    table = Table(title=f"Sync logs for {result['connection_id']}")
    table.add_column("Started")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Processed", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Error")

    for log in result['logs']:
        duration = log['duration_seconds']
        table.add_row(
            log['started_at'],
            log['sync_type'],
            _styled(log['status']),
            str(log['events_processed']),
            str(log['events_created']),
            str(log['events_updated']),
            f"{duration:.1f}s" if duration is not None else "-",
            (log['error'] or "")[:60],
        )
    console.print(table)


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, help='Owning user ID')
@runtime_command
async def stats(ctx, runtime, user_id):
    """Summarize a user's connections."""
    result = runtime.service.connection_stats(user_id)
    by_provider = ", ".join(f"{k}: {v}" for k, v in result['connections_by_provider'].items()) or "none"
    console.print(Panel(
        f"Total: {result['total_connections']}\n"
        f"Active: {result['active_connections']}\n"
        f"Sync enabled: {result['sync_enabled_connections']}\n"
        f"By provider: {by_provider}",
        title=f"Connections for {user_id}",
    ))


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your OAuth client credentials.")
    except Exception as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
