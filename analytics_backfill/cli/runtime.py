"""Settings and logging bootstrap shared by CLI commands."""

import sys

import click

from analytics_backfill.app import dependencies
from analytics_backfill.app.logging_config import configure_application_logging


def prepare_runtime() -> None:
    """Load settings and route console logs to stderr so tables stay on stdout."""
    try:
        settings = dependencies.get_settings()
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    configure_application_logging(settings, console_stream=sys.stderr)


def iso_date(value):
    """Turn an optional click DateTime value into a date."""
    if value is None:
        return None
    return value.date()
