"""CLI command for flushing cached queries.

Usage:
    querycache flush
    querycache flush --table posts
    querycache flush --table posts --pk 42
"""

from __future__ import annotations

import asyncio

import typer

from querycache.config import CacheSettings, load_settings
from querycache.errors import CacheStoreError
from querycache.observability.logging import configure_logging
from querycache.runtime import QueryCache

app = typer.Typer(help="Flush the query cache")


@app.callback(invoke_without_command=True)
def flush(
    table: str | None = typer.Option(
        None,
        "--table",
        "-t",
        help="Only flush queries depending on this table",
    ),
    pk: str | None = typer.Option(
        None,
        "--pk",
        "-k",
        help="Only flush queries including this row (requires --table)",
    ),
    redis_url: str | None = typer.Option(
        None,
        "--redis-url",
        "-u",
        help="Redis URL (defaults to QUERYCACHE_REDIS_URL)",
    ),
    prefix: str | None = typer.Option(
        None,
        "--prefix",
        "-p",
        help="Key prefix (defaults to QUERYCACHE_PREFIX)",
    ),
) -> None:
    """Flush everything, one table, or one row.

    Row and table flushes remove only the affected queries and keep the
    indexes consistent; a full flush deletes every key under the prefix.
    """
    from rich.console import Console

    console = Console()

    if pk is not None and table is None:
        console.print("[red]--pk requires --table[/red]")
        raise typer.Exit(code=1)

    overrides = {"redis_url": redis_url, "prefix": prefix}
    settings = load_settings(**{k: v for k, v in overrides.items() if v is not None})
    configure_logging(json_format=settings.log_json, level=settings.log_level)

    try:
        removed = asyncio.run(_flush(settings, table, pk))
    except CacheStoreError as e:
        console.print(f"[red]Cache store error:[/red] {e}")
        raise typer.Exit(code=1) from e

    if table is None:
        console.print(f"[green]Cache flushed:[/green] {removed} keys deleted")
    elif pk is None:
        console.print(f"[green]Flushed table {table}:[/green] {removed} cached queries removed")
    else:
        console.print(
            f"[green]Flushed row {pk} of {table}:[/green] {removed} cached queries removed"
        )


async def _flush(settings: CacheSettings, table: str | None, pk: str | None) -> int:
    """Async implementation of flush command."""
    # Surface store failures instead of logging and reporting zero
    settings = settings.model_copy(update={"strict_mode": True})

    async with QueryCache.from_settings(settings) as cache:
        if table is None:
            return await cache.invalidator.flush_all()
        if pk is None:
            return await cache.invalidator.invalidate_table(table)
        return await cache.invalidator.invalidate_row(table, pk)
