"""CLI commands for querycache.

Provides command-line interface using Typer:
- querycache flush: Flush all cache keys, one table or one row
- querycache stats: Show hit/miss counters and keyspace size

Usage:
    querycache --help
    querycache flush
    querycache flush --table posts
    querycache flush --table posts --pk 42
    querycache stats
"""

import typer

from querycache.cli.flush_cmd import app as flush_app
from querycache.cli.stats_cmd import app as stats_app

# Main CLI application
app = typer.Typer(
    name="querycache",
    help="querycache: query result cache with row-level invalidation",
    no_args_is_help=True,
)

app.add_typer(flush_app, name="flush")
app.add_typer(stats_app, name="stats")


@app.callback()
def callback() -> None:
    """querycache: query result cache with row-level invalidation."""
    pass


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
