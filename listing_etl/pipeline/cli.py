"""CLI for the listing discovery and enrichment pipeline."""
from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional, Tuple

import click

from ..antibot import ProxyRotator
from ..collector_quintoandar import QuintoAndarClient
from ..config import Settings, get_db_connection_string
from ..discovery import BRAZIL_BOUNDS, DEFAULT_CELL_SIZE, Region, Viewport, city_regions, generate_grid, grid_shape
from ..errors import StoreUnavailableError
from ..sink import CompositeSink, CoreServiceSink, JsonlSink, ListingSink
from ..transformer import PropertyTransformer
from ..transport import TransportFactory
from .coordinator import Coordinator, DiscoverySummary, EnrichmentSummary, install_signal_handlers
from .queue import InMemoryQueue, ListingQueue, PostgresQueue

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _build_regions(
    source: str,
    limit: Optional[int],
    cities: Tuple[str, ...],
    cell_size: float,
) -> List[Region]:
    if source == "grid":
        try:
            regions = generate_grid(BRAZIL_BOUNDS, cell_size)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--cell-size") from exc
        return regions[:limit] if limit is not None else regions
    try:
        return city_regions(slugs=list(cities) or None, limit=limit)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--city") from exc


def _build_sink(settings: Settings, output: Optional[str]) -> ListingSink:
    sinks: List[ListingSink] = []
    if settings.ingest_api_key:
        sinks.append(CoreServiceSink(settings.ingest_api_url, settings.ingest_api_key))
    if output:
        sinks.append(JsonlSink(None if output == "-" else output))
    if not sinks:
        raise click.UsageError("Set LANDOMO_API_KEY or pass --output to choose where listings go")
    return sinks[0] if len(sinks) == 1 else CompositeSink(sinks)


def _transport_factory(settings: Settings) -> TransportFactory:
    proxies = ProxyRotator.from_env()

    def factory() -> QuintoAndarClient:
        return QuintoAndarClient(settings, proxies=proxies)

    return factory


def _open_queue(settings: Settings, backend: str, connections: int) -> ListingQueue:
    if backend == "memory":
        return InMemoryQueue()
    try:
        return PostgresQueue(
            get_db_connection_string(),
            max_connections=connections,
            visibility_timeout=settings.visibility_timeout,
        )
    except StoreUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc


def _coordinator(settings: Settings, queue: ListingQueue, sink: Optional[ListingSink] = None) -> Coordinator:
    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    return Coordinator(
        settings,
        queue,
        _transport_factory(settings),
        PropertyTransformer(settings) if sink is not None else None,
        sink,
        stop_event=stop_event,
    )


def _echo_discovery(summary: DiscoverySummary) -> None:
    click.echo("\n🔎 Discovery Summary\n" + "=" * 40)
    click.echo(f"Regions processed:      {summary.regions_processed}")
    click.echo(f"Regions with listings:  {summary.regions_with_listings}")
    click.echo(f"Empty regions:          {summary.empty_regions}")
    click.echo(f"Truncated regions:      {summary.truncated_regions}")
    click.echo(f"New unique ids:         {summary.unique_ids_found}")
    click.echo(f"Total discovered:       {summary.total_discovered}")
    click.echo(f"Elapsed:                {summary.elapsed:.1f}s")


def _echo_enrichment(summary: EnrichmentSummary) -> None:
    click.echo("\n📦 Enrichment Summary\n" + "=" * 40)
    click.echo(f"Total ids:     {summary.total_ids}")
    click.echo(f"Processed:     {summary.processed} ({summary.not_found} not found)")
    click.echo(f"Failed:        {summary.failed}")
    click.echo(f"Pending:       {summary.pending}")
    click.echo(f"Success rate:  {summary.success_rate:.1f}%")
    click.echo(f"Elapsed:       {summary.elapsed:.1f}s")
    for listing_id, error in summary.failed_ids.items():
        click.echo(f"  ❌ {listing_id}: {error}")


region_options = [
    click.option(
        "--regions",
        "source",
        type=click.Choice(["cities", "grid"]),
        default="cities",
        show_default=True,
        help="Named-city list (fast) or full Brazil grid (exhaustive)",
    ),
    click.option("--city", "cities", multiple=True, help="City slug to include (repeatable)"),
    click.option("--limit", type=click.IntRange(min=1), help="Process only the first N regions"),
    click.option(
        "--cell-size",
        default=DEFAULT_CELL_SIZE,
        type=float,
        show_default=True,
        help="Grid cell size in degrees",
    ),
    click.option(
        "--parallelism",
        default=1,
        type=click.IntRange(min=1),
        show_default=True,
        help="Regions discovered concurrently",
    ),
]


def with_region_options(func):
    for option in reversed(region_options):
        func = option(func)
    return func


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--env-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Load settings from this .env file",
)
@click.option(
    "--business-context",
    type=click.Choice(["RENT", "SALE"], case_sensitive=False),
    help="Listings for rent or for sale",
)
@click.option("--page-size", type=click.IntRange(min=1), help="Ids per search page")
@click.option("--delay", type=click.FloatRange(min=0), help="Base delay between requests (seconds)")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    env_file: Optional[Path],
    business_context: Optional[str],
    page_size: Optional[int],
    delay: Optional[float],
) -> None:
    """Listing discovery and enrichment CLI."""
    _configure_logging(verbose)
    try:
        settings = Settings.from_env(env_file).with_overrides(
            business_context=business_context.upper() if business_context else None,
            page_size=page_size,
            request_delay=delay,
        )
    except ValueError as exc:
        raise click.UsageError(f"Invalid configuration: {exc}") from exc
    ctx.obj = settings


@cli.command()
@click.option("--north", default=BRAZIL_BOUNDS.north, type=float, show_default=True)
@click.option("--south", default=BRAZIL_BOUNDS.south, type=float, show_default=True)
@click.option("--east", default=BRAZIL_BOUNDS.east, type=float, show_default=True)
@click.option("--west", default=BRAZIL_BOUNDS.west, type=float, show_default=True)
@click.option("--cell-size", default=DEFAULT_CELL_SIZE, type=float, show_default=True)
def grid(north: float, south: float, east: float, west: float, cell_size: float) -> None:
    """Show the grid that would cover the given bounds."""
    try:
        rows, cols = grid_shape(Viewport(north=north, south=south, east=east, west=west), cell_size)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    click.echo(f"Grid: {rows} rows x {cols} cols = {rows * cols} cells ({cell_size} degrees)")


@cli.command()
@with_region_options
@click.pass_obj
def discover(
    settings: Settings,
    source: str,
    cities: Tuple[str, ...],
    limit: Optional[int],
    cell_size: float,
    parallelism: int,
) -> None:
    """Discover listing ids into the durable queue."""
    regions = _build_regions(source, limit, cities, cell_size)
    queue = _open_queue(settings, "postgres", parallelism + 2)
    try:
        summary = _coordinator(settings, queue).run_discovery(regions, parallelism)
    except StoreUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        queue.close()
    _echo_discovery(summary)


@cli.command()
@click.option("--workers", type=click.IntRange(min=1), help="Worker threads (default WORKER_COUNT)")
@click.option("--output", "-o", help="Also write listings as JSON lines to this file ('-' for stdout)")
@click.pass_obj
def enrich(settings: Settings, workers: Optional[int], output: Optional[str]) -> None:
    """Drain the durable queue: fetch, normalize and ingest details."""
    workers = workers or settings.worker_count
    sink = _build_sink(settings, output)
    try:
        queue = _open_queue(settings, "postgres", workers + 2)
    except click.ClickException:
        sink.close()
        raise
    try:
        summary = _coordinator(settings, queue, sink).run_enrichment(workers)
    except StoreUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        sink.close()
        queue.close()
    _echo_enrichment(summary)


@cli.command()
@with_region_options
@click.option("--workers", type=click.IntRange(min=1), help="Worker threads (default WORKER_COUNT)")
@click.option(
    "--backend",
    type=click.Choice(["memory", "postgres"]),
    default="memory",
    show_default=True,
    help="Queue backend",
)
@click.option("--sequential", is_flag=True, help="Finish discovery before starting workers")
@click.option("--output", "-o", help="Also write listings as JSON lines to this file ('-' for stdout)")
@click.pass_obj
def run(
    settings: Settings,
    source: str,
    cities: Tuple[str, ...],
    limit: Optional[int],
    cell_size: float,
    parallelism: int,
    workers: Optional[int],
    backend: str,
    sequential: bool,
    output: Optional[str],
) -> None:
    """Discover and enrich in one process."""
    workers = workers or settings.worker_count
    regions = _build_regions(source, limit, cities, cell_size)
    sink = _build_sink(settings, output)
    try:
        queue = _open_queue(settings, backend, workers + parallelism + 2)
    except click.ClickException:
        sink.close()
        raise
    coordinator = _coordinator(settings, queue, sink)

    click.echo(f"🚀 Starting run: {len(regions)} regions, {workers} worker(s), backend={backend}")
    try:
        if sequential:
            discovery = coordinator.run_discovery(regions, parallelism)
            enrichment = coordinator.run_enrichment(workers)
        else:
            summary = coordinator.run_pipeline(regions, workers, parallelism)
            discovery, enrichment = summary.discovery, summary.enrichment
    except StoreUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        sink.close()
        queue.close()

    _echo_discovery(discovery)
    _echo_enrichment(enrichment)


@cli.command()
@click.pass_obj
def stats(settings: Settings) -> None:
    """Show durable queue statistics."""
    queue = _open_queue(settings, "postgres", 2)
    try:
        coordinator = Coordinator(settings, queue, _transport_factory(settings))
        queue_stats = coordinator.queue_stats()
    except StoreUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        queue.close()

    click.echo("\n📊 Queue Statistics\n" + "=" * 40)
    click.echo(f"Total discovered: {queue_stats.total_discovered}")
    for label, count in (
        ("pending", queue_stats.pending),
        ("processing", queue_stats.processing),
        ("processed", queue_stats.processed),
        ("failed", queue_stats.failed),
    ):
        click.echo(f"  {label:15s}: {count:6d}")
    click.echo(f"Rate: {queue_stats.processing_rate_per_minute:.1f}/min")
    if queue_stats.estimated_completion is not None:
        click.echo(f"Estimated completion: {queue_stats.estimated_completion:%Y-%m-%d %H:%M:%S %Z}")
    click.echo()


@cli.command("requeue-failed")
@click.pass_obj
def requeue_failed(settings: Settings) -> None:
    """Move permanently failed ids back to pending."""
    queue = _open_queue(settings, "postgres", 2)
    try:
        count = queue.requeue_failed()
    except StoreUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        queue.close()
    click.echo(f"✅ Requeued {count} failed id(s)")


@cli.command()
@click.confirmation_option(prompt="Are you sure you want to wipe all discovery and queue state?")
@click.pass_obj
def reset(settings: Settings) -> None:
    """Delete all durable discovery and queue state."""
    queue = _open_queue(settings, "postgres", 2)
    try:
        queue.reset()
    except StoreUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        queue.close()
    click.echo("✅ Queue state reset")


if __name__ == "__main__":
    cli()
