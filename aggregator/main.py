"""
Marketplace Listing Aggregator - CLI Entry Point.
Production-grade CLI using Click and Rich.
"""

import asyncio
import signal
import sys
from functools import wraps
from pathlib import Path
from typing import Callable, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from aggregator import __version__
from aggregator.config.settings import Settings, get_settings
from aggregator.models.schemas import (
    AggregateQuery,
    ErrorResponse,
    ErrorType,
    Platform,
    Quality,
    SearchFilters,
)
from aggregator.pipeline.backfill import BackfillWorker
from aggregator.pipeline.orchestrator import CoverageOrchestrator
from aggregator.pipeline.taxonomy import flatten_leaves, load_taxonomy
from aggregator.services.aggregation_service import AggregationService
from aggregator.services.fetchers import RenderedFetcher, StaticFetcher
from aggregator.services.image_cache import ImageCache
from aggregator.services.listing_store import ListingStore
from aggregator.services.providers import create_adapters, get_adapter
from aggregator.utils.formatters import (
    format_backfill_table,
    format_coverage_table,
    format_platform_table,
    format_search_table,
    to_json,
)
from aggregator.utils.logger import get_logger, setup_logging
from aggregator.utils.retry import (
    AllProvidersFailedError,
    ConfigurationError,
    PersistenceUnavailableError,
    UnsupportedPlatformError,
)

# Results go to stdout, diagnostics to stderr
console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)

EXIT_TARGET_NOT_MET = 2

# =============================================================================
# Helper Functions
# =============================================================================

def async_command(f):
    """Decorator to run async click commands."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))
    return wrapper


def setup_logger(settings: Settings, verbose: bool) -> None:
    """Configure logging based on settings and verbosity."""
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_format=settings.log_json,
        log_file=settings.log_file,
    )


def install_shutdown_handlers(callback: Callable[[], None]) -> None:
    """Route SIGINT/SIGTERM to a graceful shutdown callback."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):
            # Event loops without signal support (Windows)
            signal.signal(sig, lambda *_: callback())


def parse_platform(ctx, param, value: Optional[str]) -> Optional[Platform]:
    if value is None:
        return None
    try:
        return Platform.parse(value)
    except ValueError:
        choices = ", ".join(p.value for p in Platform)
        raise click.BadParameter(f"unknown platform '{value}' (choose from {choices})")


def parse_stages(ctx, param, value: Optional[str]) -> Optional[list[int]]:
    if not value:
        return None
    try:
        stages = sorted({int(s) for s in value.split(",") if s.strip()})
    except ValueError:
        raise click.BadParameter("stages must be comma separated integers, e.g. 1,4,8")
    if not stages or stages[0] < 1:
        raise click.BadParameter("stages must be positive")
    return stages


def parse_qualities(ctx, param, value: str) -> list[Quality]:
    try:
        return [Quality(q.strip().upper()) for q in value.split(",") if q.strip()]
    except ValueError:
        raise click.BadParameter("qualities must be a comma separated subset of good,partial,bad,missing")


async def open_store(settings: Settings, required: bool = False) -> Optional[ListingStore]:
    """Initialized store, or None (with a warning) when optional and unreachable."""
    store = ListingStore(settings)
    try:
        await store.init()
    except PersistenceUnavailableError as e:
        await store.close()
        if required:
            raise
        logger.warning("store_unavailable", error=str(e))
        err_console.print(f"[yellow]Warning:[/yellow] durable store unavailable ({e}); continuing without persistence")
        return None
    return store


# =============================================================================
# CLI Group
# =============================================================================

@click.group()
@click.version_option(version=__version__)
def cli():
    """Marketplace Listing Aggregator"""
    pass

# =============================================================================
# Commands
# =============================================================================

@cli.command()
@click.argument("query")
@click.option("--platform", default="ALL", help="ALIBABA, C1688, MADE_IN_CHINA, INDIAMART or ALL")
@click.option("--min-price", type=float, default=None, help="Lower bound on the low end of the price range")
@click.option("--max-price", type=float, default=None, help="Upper bound on the low end of the price range")
@click.option("--min-moq", type=int, default=None, help="Minimum order quantity lower bound")
@click.option("--max-moq", type=int, default=None, help="Minimum order quantity upper bound")
@click.option("--offset", type=click.IntRange(min=0), default=0, help="Page offset")
@click.option("--limit", type=int, default=None, help="Page size (clamped to the maximum page size)")
@click.option("--headless/--no-headless", default=True, help="Allow escalation to a headless browser")
@click.option("--force-headless", is_flag=True, help="Render every page in the headless browser")
@click.option("--debug", is_flag=True, help="Include per-adapter diagnostics")
@click.option("--nocache", is_flag=True, help="Bypass both cache tiers")
@click.option("--prefetch", is_flag=True, help="Fast, small, non-persisting warm-up query")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.option("--verbose", is_flag=True, help="Detailed logging")
@async_command
async def search(
    query: str,
    platform: str,
    min_price: Optional[float],
    max_price: Optional[float],
    min_moq: Optional[int],
    max_moq: Optional[int],
    offset: int,
    limit: Optional[int],
    headless: bool,
    force_headless: bool,
    debug: bool,
    nocache: bool,
    prefetch: bool,
    as_json: bool,
    verbose: bool,
):
    """
    Search every marketplace (or one) for QUERY.
    """
    settings = get_settings()
    setup_logger(settings, verbose or debug)

    try:
        request = AggregateQuery(
            q=query,
            platform=platform,
            filters=SearchFilters(
                min_price=min_price,
                max_price=max_price,
                min_moq=min_moq,
                max_moq=max_moq,
            ),
            offset=offset,
            limit=min(limit or settings.default_page_size, settings.max_page_size),
            headless=headless,
            force_headless=force_headless,
            debug=debug,
            nocache=nocache,
            prefetch=prefetch,
        )
    except (ValidationError, ValueError) as e:
        raise click.BadParameter(str(e))

    store = await open_store(settings)
    try:
        async with AggregationService(settings=settings, store=store) as service:
            result = await service.search(request)
    except AllProvidersFailedError as e:
        error = ErrorResponse(
            error=str(e),
            error_type=ErrorType.ALL_PROVIDERS_FAILED,
            status=e.status_code,
            details={"failures": e.failures},
        )
        console.print_json(error.model_dump_json())
        sys.exit(1)
    except UnsupportedPlatformError as e:
        error = ErrorResponse(error=str(e), error_type=ErrorType.UNSUPPORTED_PLATFORM, status=e.status_code)
        console.print_json(error.model_dump_json())
        sys.exit(1)
    finally:
        if store is not None:
            await store.close()

    if as_json:
        console.print_json(result.model_dump_json())
        return

    console.print(format_search_table(result))
    platforms = format_platform_table(result)
    if platforms is not None:
        console.print(platforms)
    if result.meta and result.meta.diagnostics:
        console.print_json(to_json(result.meta.diagnostics))


@cli.command()
@click.option("--stages", callback=parse_stages, default=None, help="Comma separated targets, e.g. 1,4,8")
@click.option("--max-cycles", type=click.IntRange(min=1), default=None, help="Maximum runs across all stages")
@click.option("--platform", callback=parse_platform, default=None, help="Search and count one platform only")
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Terms searched in parallel")
@click.option("--cooldown-runs", type=click.IntRange(min=0), default=None, help="Runs a zero-yield leaf is skipped")
@click.option("--rotate/--no-rotate", default=None, help="Rotate the leaf order between runs")
@click.option("--shuffle/--no-shuffle", default=None, help="Seeded shuffle of the leaf order per run")
@click.option("--taxonomy", type=click.Path(exists=True, dir_okay=False), default=None, help="Taxonomy JSON file")
@click.option("--headless/--no-headless", default=False, help="Allow escalation to a headless browser")
@click.option("--dry-run", is_flag=True, help="Search but never write listings")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.option("--verbose", is_flag=True, help="Detailed logging")
@async_command
async def cover(
    stages: Optional[list[int]],
    max_cycles: Optional[int],
    platform: Optional[Platform],
    concurrency: Optional[int],
    cooldown_runs: Optional[int],
    rotate: Optional[bool],
    shuffle: Optional[bool],
    taxonomy: Optional[str],
    headless: bool,
    dry_run: bool,
    as_json: bool,
    verbose: bool,
):
    """
    Top off every taxonomy leaf until it meets the staged targets.

    Exits with status 2 when the final target is not met.
    """
    settings = get_settings()
    setup_logger(settings, verbose)

    try:
        leaves = flatten_leaves(load_taxonomy(taxonomy or settings.taxonomy_path))
    except ConfigurationError as e:
        err_console.print(f"[bold red]Configuration Error:[/bold red] {e}")
        sys.exit(1)

    store = await open_store(settings)
    static_fetcher = StaticFetcher(settings)
    rendered_fetcher = RenderedFetcher(settings, headless=True)
    adapters = create_adapters(
        [platform] if platform else None,
        settings=settings,
        static_fetcher=static_fetcher,
        rendered_fetcher=rendered_fetcher,
    )
    orchestrator = CoverageOrchestrator(
        leaves,
        adapters,
        store=store,
        settings=settings,
        platform=platform,
        concurrency=concurrency,
        cooldown_runs=cooldown_runs,
        rotate=rotate,
        shuffle=shuffle,
        headless=headless,
        dry_run=dry_run,
    )
    install_shutdown_handlers(orchestrator.request_shutdown)

    err_console.print(Panel.fit(
        f"[bold blue]Coverage[/bold blue] {len(leaves)} leaves, "
        f"stages {stages or settings.coverage_stages}"
        + (" [yellow](dry run)[/yellow]" if dry_run else "")
    ))
    try:
        report = await orchestrator.ensure_coverage(stages, max_cycles)
    finally:
        await static_fetcher.close()
        await rendered_fetcher.close()
        if store is not None:
            await store.close()

    if as_json:
        console.print_json(report.model_dump_json())
    else:
        console.print(format_coverage_table(report))
        if report.interrupted:
            err_console.print("[yellow]Interrupted; progress saved. Run again to resume.[/yellow]")

    if not report.met:
        sys.exit(EXIT_TARGET_NOT_MET)


@cli.command()
@click.argument("platform", callback=parse_platform)
@click.option("--quality", "qualities", default="bad,partial,missing", callback=parse_qualities,
              help="Qualities to retry")
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Listings per batch")
@click.option("--max-attempts", type=click.IntRange(min=1), default=None, help="Attempts per listing")
@click.option("--concurrency", type=click.IntRange(min=1), default=None, help="Maximum parallel fetches")
@click.option("--block-threshold", type=click.IntRange(min=1), default=None, help="Consecutive blocks before cooldown")
@click.option("--cooldown-seconds", type=click.FloatRange(min=0), default=None, help="Cooldown after blocking")
@click.option("--headless/--no-headless", default=True, help="Fall back to the headless browser")
@click.option("--cache-images", is_flag=True, help="Download hero images into the local image cache")
@click.option("--dry-run", is_flag=True, help="Fetch but never write")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.option("--verbose", is_flag=True, help="Detailed logging")
@async_command
async def backfill(
    platform: Platform,
    qualities: list[Quality],
    batch_size: Optional[int],
    max_attempts: Optional[int],
    concurrency: Optional[int],
    block_threshold: Optional[int],
    cooldown_seconds: Optional[float],
    headless: bool,
    cache_images: bool,
    dry_run: bool,
    as_json: bool,
    verbose: bool,
):
    """
    Retry detail capture for PLATFORM listings of weak quality.
    """
    settings = get_settings()
    setup_logger(settings, verbose)

    try:
        store = await open_store(settings, required=True)
    except PersistenceUnavailableError as e:
        err_console.print(f"[bold red]Database Error:[/bold red] {e}")
        sys.exit(1)

    image_cache = ImageCache(settings) if cache_images else None
    adapter = get_adapter(platform, settings=settings, image_cache=image_cache)
    worker = BackfillWorker(
        adapter,
        store,
        settings=settings,
        image_cache=image_cache,
        batch_size=batch_size,
        concurrency=concurrency,
        max_attempts=max_attempts,
        block_threshold=block_threshold,
        cooldown_seconds=cooldown_seconds,
        headless=headless,
        dry_run=dry_run,
    )
    install_shutdown_handlers(worker.request_shutdown)

    try:
        report = await worker.run(qualities)
    finally:
        await adapter.close()
        if image_cache is not None:
            await image_cache.close()
        await store.close()

    if as_json:
        console.print_json(report.model_dump_json())
    else:
        console.print(format_backfill_table(report))


async def _check_browser() -> tuple[bool, str]:
    from playwright.async_api import Error as PlaywrightError, async_playwright

    try:
        async with async_playwright() as p:
            path = Path(p.chromium.executable_path)
    except PlaywrightError as e:
        return False, str(e).splitlines()[0]
    if path.exists():
        return True, str(path)
    return False, "chromium not installed (run: playwright install chromium)"


@cli.command()
@async_command
async def validate_setup():
    """Check configuration, database and browser availability."""
    console.print("[bold]Validating Setup...[/bold]")

    try:
        settings = get_settings()
    except ValidationError as e:
        console.print(f"[bold red]Configuration Error:[/bold red] {e}")
        sys.exit(1)

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details")
    failed = False

    table.add_row("Environment", "[blue]Info[/blue]", settings.app_env)

    try:
        store = await open_store(settings, required=True)
        try:
            count = await store.count_listings()
        finally:
            await store.close()
        table.add_row("Database", "[green]Pass[/green]", f"{settings.database_url.split('://', 1)[0]} ({count} listings)")
    except PersistenceUnavailableError as e:
        failed = True
        table.add_row("Database", "[red]Fail[/red]", str(e)[:80])

    try:
        leaves = flatten_leaves(load_taxonomy(settings.taxonomy_path))
        table.add_row("Taxonomy", "[green]Pass[/green]", f"{len(leaves)} leaves")
    except ConfigurationError as e:
        failed = True
        table.add_row("Taxonomy", "[red]Fail[/red]", str(e)[:80])

    ok, details = await _check_browser()
    table.add_row("Headless Browser", "[green]Pass[/green]" if ok else "[yellow]Warn[/yellow]", details)
    table.add_row("Image Cache", "[blue]Info[/blue]", str(settings.image_cache_dir))

    console.print(table)
    if not ok:
        console.print("\n[yellow]Warning: headless escalation disabled until Chromium is installed.[/yellow]")
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    cli()
