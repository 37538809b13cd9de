"""Account and bookkeeping commands for the yt-backfill CLI."""

import click
from rich.console import Console
from rich.table import Table

from analytics_backfill.app import dependencies

from ..runtime import prepare_runtime

console = Console()


@click.command()
@click.option("--account", "-a", "account_id", required=True, help="Local account id")
@click.option("--scope-id", required=True, help="Channel id the credential grants access to")
@click.option("--access-token", required=True, help="Access token from the OAuth consent flow")
@click.option("--refresh-token", default=None, help="Refresh token for offline access")
@click.option("--expires-in", type=click.IntRange(min=1), default=None, help="Access token lifetime in seconds")
def connect(account_id: str, scope_id: str, access_token: str, refresh_token, expires_in):
    """Store an OAuth credential for an account."""
    prepare_runtime()
    accounts = dependencies.get_account_service()

    try:
        credential = accounts.connect(
            account_id=account_id,
            scope_id=scope_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    console.print(f"[green]Connected account:[/green] {credential.account_id} -> {credential.scope_id}")
    if credential.refresh_token is None:
        console.print("[yellow]No refresh token stored; reconnect when the access token expires.[/yellow]")


@click.command()
@click.option("--account", "-a", "account_id", required=True, help="Local account id")
def disconnect(account_id: str):
    """Remove the stored credential for an account."""
    prepare_runtime()
    accounts = dependencies.get_account_service()

    if accounts.disconnect(account_id):
        console.print(f"[green]Disconnected account:[/green] {account_id}")
    else:
        console.print(f"[yellow]No credential stored for:[/yellow] {account_id}")


@click.command()
@click.option("--account", "-a", "account_id", required=True, help="Local account id")
@click.option("--limit", "-n", type=click.IntRange(min=1, max=200), default=20, help="Number of runs to show")
def runs(account_id: str, limit: int):
    """Show recent backfill runs for an account."""
    prepare_runtime()
    records = dependencies.get_run_repository().list_runs(account_id, limit=limit)

    if not records:
        console.print(f"[yellow]No backfill runs recorded for {account_id}[/yellow]")
        return

    table = Table(title=f"Backfill runs for {account_id}")
    table.add_column("Run")
    table.add_column("Family", style="cyan")
    table.add_column("State")
    table.add_column("Range")
    table.add_column("Inserted", justify="right")
    table.add_column("Started")

    for record in records:
        table.add_row(
            record.run_id,
            record.family,
            record.state,
            f"{record.from_date} .. {record.to_date}",
            str(record.summary.get("total_inserted", "-")),
            record.started_at,
        )

    console.print(table)


@click.command()
@click.option("--account", "-a", "account_id", required=True, help="Local account id")
def quota(account_id: str):
    """Show today's reporting API usage for an account."""
    prepare_runtime()
    snapshot = dependencies.get_backfill_service().quota_snapshot(account_id)

    if snapshot is None:
        console.print("[yellow]Quota tracking is not configured[/yellow]")
        return

    if snapshot.critical:
        style = "red"
    elif snapshot.warning:
        style = "yellow"
    else:
        style = "green"
    console.print(
        f"[{style}]{snapshot.units_today}/{snapshot.daily_limit}[/{style}] units used on "
        f"{snapshot.date_utc} ({snapshot.calls_today} calls)"
    )
