#!/usr/bin/env python3
"""
AppView Indexer operator tool

Usage:
    appview-indexer init-db
    appview-indexer import records.jsonl --batch-size 5000
    appview-indexer delete at://did:plc:abc/app.bsky.feed.like/3k...
    appview-indexer recount --post at://... --actor did:plc:abc
    appview-indexer thread at://did:plc:abc/app.bsky.feed.post/3k...
"""

import asyncio
import json
import sys
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeRemainingColumn
from rich.table import Table

from .bulk import chunked
from .config import IndexerConfig, configure_logging
from .errors import AggregateMaintenanceError, IndexingError
from .processor import BulkResult
from .service import IndexingService

console = Console()


def read_jsonl(path: str) -> Iterator[Dict[str, Any]]:
    """Yield one object per non-empty line"""
    with open(path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise click.ClickException(f"{path}:{line_no}: invalid JSON ({e})")


def print_aggregate_failure(e: AggregateMaintenanceError):
    console.print(f"[red]Aggregate maintenance failed for {e.collection}[/red]")
    console.print("Indexed rows are committed. Re-run the recount for:")
    for subject in e.subjects:
        flag = '--actor' if subject.startswith('did:') else '--post'
        console.print(f"  appview-indexer recount {flag} {subject}")


def run_service(config: IndexerConfig, work, verify_schema: bool = True):
    """Start a service, run ``work(service)`` and always close it"""

    async def runner():
        service = IndexingService(config)
        try:
            await service.start(verify_schema=verify_schema)
            return await work(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except AggregateMaintenanceError as e:
        print_aggregate_failure(e)
        sys.exit(2)
    except IndexingError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@click.group()
@click.option('--database-url', envvar='DATABASE_URL', default=None, help='PostgreSQL connection URL')
@click.option('--log-level', envvar='LOG_LEVEL', default=None, help='Logging level (DEBUG, INFO, WARNING, ERROR)')
@click.option('--notification-queue', envvar='NOTIFICATION_QUEUE',
              type=click.Choice(['database', 'redis', 'none']), default=None,
              help='Where derived notifications are sent')
@click.pass_context
def cli(ctx, database_url, log_level, notification_queue):
    """Index AT Protocol records into PostgreSQL."""
    config = IndexerConfig.from_env()
    overrides = {}
    if database_url:
        overrides['database_url'] = database_url
    if log_level:
        overrides['log_level'] = log_level.upper()
    if notification_queue:
        overrides['notification_queue'] = notification_queue
    config = replace(config, **overrides)

    configure_logging(config.log_level)
    ctx.obj = config


@cli.command('init-db')
@click.pass_obj
def init_db(config: IndexerConfig):
    """Create tables and indexes (safe to re-run)."""

    async def work(service: IndexingService):
        await service.init_schema()

    run_service(config, work, verify_schema=False)
    console.print("✓ Schema applied", style="green")


@cli.command('import')
@click.argument('path', type=click.Path(exists=True, dir_okay=False))
@click.option('--batch-size', envvar='BULK_BATCH_SIZE', type=int, default=None, help='Records per bulk call')
@click.option('--no-notifications', is_flag=True, help='Do not derive notifications (backfill mode)')
@click.pass_obj
def import_records(config: IndexerConfig, path: str, batch_size, no_notifications: bool):
    """
    Bulk-index a JSON-lines file.

    Each line is {"uri": ..., "record": {...}, "cid": ..., "indexedAt": ...};
    cid and indexedAt are optional.
    """
    if batch_size:
        config = replace(config, bulk_batch_size=batch_size)

    records = list(read_jsonl(path))
    totals = BulkResult()
    start = datetime.now(timezone.utc)

    async def work(service: IndexingService):
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("•"),
            TextColumn("[green]{task.fields[indexed]} indexed"),
            TextColumn("•"),
            TextColumn("[yellow]{task.fields[duplicates]} duplicates"),
            TimeRemainingColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Importing records...", total=len(records), indexed=0, duplicates=0)
            for chunk in chunked(records, config.bulk_batch_size):
                result = await service.on_create_bulk(chunk, disable_notifications=no_notifications)
                totals.received += result.received
                totals.duplicates += result.duplicates
                totals.notifications += result.notifications
                for collection, count in result.indexed.items():
                    totals.indexed[collection] += count
                progress.update(
                    task,
                    advance=len(chunk),
                    indexed=f"{totals.total_indexed:,}",
                    duplicates=f"{totals.duplicates:,}",
                )

    run_service(config, work)

    elapsed = (datetime.now(timezone.utc) - start).total_seconds()
    console.print("\n" + "=" * 60)
    console.print("[bold green]Import Complete![/bold green]")
    console.print("=" * 60)

    table = Table(show_header=False, box=None)
    table.add_row("Records Read:", f"[cyan]{totals.received:,}[/cyan]")
    table.add_row("Records Indexed:", f"[green]{totals.total_indexed:,}[/green]")
    table.add_row("Duplicates:", f"[yellow]{totals.duplicates:,}[/yellow]")
    table.add_row("Skipped:", f"[yellow]{totals.skipped:,}[/yellow]")
    table.add_row("Notifications:", f"[magenta]{totals.notifications:,}[/magenta]")
    table.add_row("Duration:", f"[blue]{elapsed:.1f}s[/blue]")
    console.print(table)

    if totals.indexed:
        by_collection = Table(title="Indexed by collection")
        by_collection.add_column("Collection")
        by_collection.add_column("Indexed", justify="right")
        for collection, count in sorted(totals.indexed.items()):
            by_collection.add_row(collection, f"{count:,}")
        console.print(by_collection)
    console.print("=" * 60 + "\n")


@cli.command('delete')
@click.argument('uris', nargs=-1, required=True)
@click.option('--cascading', is_flag=True, help='Drop duplicates instead of promoting them (repo removal)')
@click.pass_obj
def delete_records(config: IndexerConfig, uris, cascading: bool):
    """Remove records from the index."""

    async def work(service: IndexingService):
        for uri in uris:
            deleted = await service.on_delete(uri, cascading=cascading)
            if deleted is None:
                console.print(f"[yellow]- {uri} was not indexed[/yellow]")
            else:
                console.print(f"✓ Deleted {uri}", style="green")

    run_service(config, work)


@cli.command('recount')
@click.option('--post', 'posts', multiple=True, help='Post URI whose counters to recompute')
@click.option('--actor', 'actors', multiple=True, help='Actor DID whose counters to recompute')
@click.pass_obj
def recount(config: IndexerConfig, posts: List[str], actors: List[str]):
    """Recompute aggregate counters from the indexed rows."""
    if not posts and not actors:
        raise click.UsageError("Pass at least one --post or --actor")

    async def work(service: IndexingService):
        return await service.recompute_aggregates(post_uris=posts, actor_dids=actors)

    counts = run_service(config, work)
    console.print(f"✓ Recounted {counts['posts']} posts and {counts['actors']} actors", style="green")


@cli.command('thread')
@click.argument('uri')
@click.pass_obj
def thread(config: IndexerConfig, uri: str):
    """Show ancestors and replies of a post."""

    async def work(service: IndexingService):
        return await service.get_thread(uri)

    result = run_service(config, work)

    table = Table(title=f"Thread around {uri}")
    table.add_column("Relation")
    table.add_column("Distance", justify="right")
    table.add_column("URI")
    for ancestor in reversed(result['ancestors']):
        table.add_row("ancestor", str(ancestor['height']), ancestor['uri'])
    table.add_row("[bold]post[/bold]", "0", f"[bold]{uri}[/bold]")
    for descendant in result['descendants']:
        table.add_row("reply", str(descendant['depth']), descendant['uri'])
    console.print(table)


def main():
    cli()


if __name__ == '__main__':
    main()
