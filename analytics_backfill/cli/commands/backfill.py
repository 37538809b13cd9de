"""Backfill commands for the yt-backfill CLI."""

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from analytics_backfill.app import dependencies
from analytics_backfill.app.errors import AuthError, UnknownFamilyError
from analytics_backfill.app.services.backfill_service import (
    STATE_DONE,
    ChunkFailure,
    ComprehensiveBackfillAborted,
    ComprehensiveBackfillResult,
    FamilyBackfillResult,
)
from analytics_backfill.app.services.metric_families import METRIC_FAMILIES, get_family

from ..runtime import iso_date, prepare_runtime

console = Console()

DATE_TYPE = click.DateTime(formats=["%Y-%m-%d"])


def _state_markup(state: str) -> str:
    if state == STATE_DONE:
        return f"[green]{state}[/green]"
    return f"[yellow]{state}[/yellow]"


def _print_family_result(result: FamilyBackfillResult):
    table = Table(title=f"{result.label} ({result.from_date} .. {result.to_date})")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Note")

    for chunk_result in result.chunk_results:
        chunk = chunk_result.chunk
        if isinstance(chunk_result, ChunkFailure):
            table.add_row(
                chunk.start.isoformat(),
                chunk.end.isoformat(),
                f"[red]failed ({chunk_result.stage})[/red]",
                "-",
                escape(chunk_result.message),
            )
        else:
            table.add_row(
                chunk.start.isoformat(),
                chunk.end.isoformat(),
                "[green]ok[/green]",
                str(chunk_result.rows_written),
                "salvaged with minimal metrics" if chunk_result.salvaged else "",
            )

    console.print(table)
    console.print(
        f"State: {_state_markup(result.state)}  "
        f"inserted={result.total_inserted}  "
        f"chunks={result.chunks_processed}  "
        f"failed={len(result.failed_chunks)}  "
        f"salvaged={len(result.salvaged_chunks)}"
    )


@click.command()
@click.argument("family")
@click.option("--account", "-a", "account_id", required=True, help="Account whose credential is used")
@click.option("--from", "from_date", type=DATE_TYPE, default=None, help="First day (YYYY-MM-DD)")
@click.option("--to", "to_date", type=DATE_TYPE, default=None, help="Last day (YYYY-MM-DD)")
def run(family: str, account_id: str, from_date, to_date):
    """Backfill a single metric family."""
    try:
        resolved = get_family(family)
    except UnknownFamilyError as e:
        raise click.BadParameter(str(e), param_hint="FAMILY") from e

    prepare_runtime()
    service = dependencies.get_backfill_service()

    try:
        result = service.run_family(
            account_id,
            resolved,
            from_date=iso_date(from_date),
            to_date=iso_date(to_date),
        )
    except AuthError as e:
        console.print(f"[red]Authentication failed: {escape(str(e))}[/red]")
        raise SystemExit(1) from e
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    _print_family_result(result)


@click.command()
@click.option("--account", "-a", "account_id", required=True, help="Account whose credential is used")
@click.option("--from", "from_date", type=DATE_TYPE, default=None, help="First day (YYYY-MM-DD)")
@click.option("--to", "to_date", type=DATE_TYPE, default=None, help="Last day (YYYY-MM-DD)")
@click.option(
    "--family",
    "-f",
    "family_names",
    multiple=True,
    help="Limit the run to these families (repeatable). Defaults to all.",
)
def comprehensive(account_id: str, from_date, to_date, family_names):
    """Backfill every metric family, one after another."""
    for name in family_names:
        try:
            get_family(name)
        except UnknownFamilyError as e:
            raise click.BadParameter(str(e), param_hint="--family") from e

    prepare_runtime()
    service = dependencies.get_backfill_service()

    try:
        outcome = service.run_comprehensive(
            account_id,
            from_date=iso_date(from_date),
            to_date=iso_date(to_date),
            families=list(family_names) or None,
        )
    except ComprehensiveBackfillAborted as e:
        _print_comprehensive_result(e.outcome)
        console.print(f"[red]Authentication failed: {escape(str(e))}[/red]")
        raise SystemExit(1) from e
    except AuthError as e:
        console.print(f"[red]Authentication failed: {escape(str(e))}[/red]")
        raise SystemExit(1) from e
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    _print_comprehensive_result(outcome)


def _print_comprehensive_result(outcome: ComprehensiveBackfillResult):
    table = Table(title=f"Comprehensive backfill {outcome.from_date} .. {outcome.to_date}")
    table.add_column("Family")
    table.add_column("State")
    table.add_column("Inserted", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Salvaged", justify="right")

    for result in outcome.completed:
        table.add_row(
            result.family,
            _state_markup(result.state),
            str(result.total_inserted),
            str(result.chunks_processed),
            "0",
            str(len(result.salvaged_chunks)),
        )
    for failure in outcome.failed:
        if failure.result is None:
            table.add_row(failure.family, f"[red]error[/red] {escape(failure.error)}", "-", "-", "-", "-")
            continue
        result = failure.result
        table.add_row(
            result.family,
            _state_markup(result.state),
            str(result.total_inserted),
            str(result.chunks_processed),
            str(len(result.failed_chunks)),
            str(len(result.salvaged_chunks)),
        )

    console.print(table)
    console.print(
        f"Completed {len(outcome.completed)} of {len(outcome.completed) + len(outcome.failed)} "
        f"families, {outcome.total_inserted} rows written"
    )


@click.command()
def families():
    """List the metric families that can be backfilled."""
    table = Table(title="Metric families")
    table.add_column("Name", style="cyan")
    table.add_column("Label")
    table.add_column("Table")
    table.add_column("Chunk span", justify="right")
    table.add_column("Dimensions")

    for family in METRIC_FAMILIES:
        span = "1 month" if family.max_span_months == 1 else f"{family.max_span_months} months"
        table.add_row(
            family.name,
            family.label,
            family.table.name,
            span,
            ", ".join(family.query.dimensions) or "-",
        )

    console.print(table)
