"""Main CLI entry point for the analytics backfill."""

import click

from .commands import accounts, backfill


@click.group()
@click.version_option(version="0.1.0")
def main():
    """yt-backfill - Load historical YouTube Analytics data into SQLite."""
    pass


# Backfill commands
main.add_command(backfill.run)
main.add_command(backfill.comprehensive)
main.add_command(backfill.families)

# Account commands
main.add_command(accounts.connect)
main.add_command(accounts.disconnect)
main.add_command(accounts.runs)
main.add_command(accounts.quota)


if __name__ == "__main__":
    main()
