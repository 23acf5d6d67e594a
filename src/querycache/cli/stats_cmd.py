"""CLI command for cache statistics.

Usage:
    querycache stats
    querycache stats --redis-url redis://cache:6379/2
"""

from __future__ import annotations

import asyncio
from urllib.parse import urlparse

import typer

from querycache.cache.manager import CacheStats
from querycache.config import CacheSettings, load_settings
from querycache.errors import CacheStoreError
from querycache.runtime import QueryCache

app = typer.Typer(help="Show query cache statistics")


def database_index(redis_url: str) -> int:
    """Database number selected by a redis:// URL (0 if unspecified)."""
    path = urlparse(redis_url).path.strip("/")
    return int(path) if path.isdigit() else 0


@app.callback(invoke_without_command=True)
def stats(
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
    """Display hit/miss counters, hit rate and total keys."""
    from rich.console import Console
    from rich.table import Table

    console = Console()

    overrides = {"redis_url": redis_url, "prefix": prefix}
    settings = load_settings(**{k: v for k, v in overrides.items() if v is not None})

    if not settings.store_metrics:
        console.print(
            "[yellow]Metrics are disabled. Set QUERYCACHE_STORE_METRICS=true "
            "to collect hit/miss counters.[/yellow]"
        )
        raise typer.Exit(code=1)

    try:
        result = asyncio.run(_stats(settings))
    except CacheStoreError as e:
        console.print(f"[red]Cache store error:[/red] {e}")
        raise typer.Exit(code=1) from e

    hit_rate = f"{result.hit_ratio * 100:.2f}%" if result.hit_ratio is not None else "N/A"
    total_keys = str(result.total_keys) if result.total_keys is not None else "N/A"

    table = Table(title="Query Cache Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Cache Hits", str(result.hits))
    table.add_row("Cache Misses", str(result.misses))
    table.add_row("Total Lookups", str(result.total))
    table.add_row("Hit Rate", hit_rate)
    table.add_row("Total Keys in DB", total_keys)

    console.print(table)


async def _stats(settings: CacheSettings) -> CacheStats:
    """Async implementation of stats command."""
    async with QueryCache.from_settings(settings) as cache:
        return await cache.manager.get_stats(database=database_index(settings.redis_url))
