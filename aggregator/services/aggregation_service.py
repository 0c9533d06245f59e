"""
Live query path.

``AggregationService.search`` answers one ``AggregateQuery``:

    1. process-local ephemeral cache (full sorted list, sliced per page)
    2. durable search snapshot in the listing store
    3. adapters in parallel, each bounded by its own timeout
    4. quality filter (exclusion, dedup, numeric bounds) and stable sort
    5. ephemeral cache write, plus fire-and-forget durable persistence

A failing, timing-out or blocked platform only removes that platform's
results. The call fails as a whole only when every requested platform fails.
"""

import asyncio
import math
import time
from typing import Any, Optional

from aggregator.analyzers.quality_filter import QualityFilter
from aggregator.config.settings import Settings, get_settings
from aggregator.models.schemas import (
    AggregateMeta,
    AggregateQuery,
    AggregateResult,
    ExternalListing,
    Platform,
)
from aggregator.services.cache import SearchCache, query_cache_key, snapshot_key
from aggregator.services.fetchers import RenderedFetcher, StaticFetcher
from aggregator.services.image_cache import ImageCache
from aggregator.services.listing_store import ListingStore
from aggregator.services.providers import (
    FetchOptions,
    ProviderAdapter,
    ProviderReport,
    create_adapters,
)
from aggregator.utils.logger import LogContext, get_logger
from aggregator.utils.retry import (
    AllProvidersFailedError,
    CircuitBreaker,
    ErrorHandler,
    PersistenceUnavailableError,
)

logger = get_logger(__name__)

# Platforms whose card images are thin or lazy; detail pages supply better ones
IMAGE_UPGRADE_PLATFORMS = {Platform.INDIAMART}

SINGLE_PLATFORM_CAP = 800
SINGLE_PLATFORM_PREFETCH_CAP = 120


def per_platform_limit(query: AggregateQuery) -> int:
    """
    How many listings to ask each adapter for.

    "ALL" over-fetches per platform so the merged, filtered list can still
    fill deep pages; prefetch keeps numbers small for latency. A single
    platform only needs ``offset + limit``, capped.
    """
    window = query.offset + query.limit
    if not query.is_all:
        cap = SINGLE_PLATFORM_PREFETCH_CAP if query.prefetch else SINGLE_PLATFORM_CAP
        return max(1, min(cap, window))

    if query.prefetch:
        target = max(30, min(90, window))
        return min(60, max(20, math.ceil(target / 4)))
    target = max(120, window)
    if query.headless:
        return min(220, max(80, target))
    return min(240, max(60, math.ceil(target / 3)))


class AggregationService:
    """
    Multi-platform search with two cache tiers.

    Example:
        >>> async with AggregationService(store=store) as service:
        ...     result = await service.search(AggregateQuery(q="led strip"))
        ...     print(result.total, result.meta.platform_counts)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        adapters: Optional[dict[Platform, ProviderAdapter]] = None,
        store: Optional[ListingStore] = None,
        cache: Optional[SearchCache] = None,
        quality_filter: Optional[QualityFilter] = None,
        image_cache: Optional[ImageCache] = None,
    ):
        """
        Initialize the service.

        Args:
            settings: Application settings (uses defaults if not provided)
            adapters: Adapters keyed by platform (created on first use if not provided)
            store: Durable store; without one the snapshot tier is skipped
            cache: Ephemeral cache (sized from settings if not provided)
            quality_filter: Filter applied to merged adapter output
            image_cache: Local image cache handed to created adapters
        """
        self.settings = settings or get_settings()
        self.store = store
        self.cache = cache or SearchCache(
            max_size=self.settings.cache_max_entries,
            default_ttl=self.settings.cache_ttl_seconds,
        )
        self.quality_filter = quality_filter or QualityFilter(self.settings)
        self.image_cache = image_cache

        self._adapters = adapters
        self._owns_adapters = adapters is None
        self._static_fetcher: Optional[StaticFetcher] = None
        self._rendered_fetcher: Optional[RenderedFetcher] = None
        self._breakers: dict[Platform, CircuitBreaker] = {}
        self._background: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def adapters(self) -> dict[Platform, ProviderAdapter]:
        if self._adapters is None:
            self._static_fetcher = StaticFetcher(self.settings)
            self._rendered_fetcher = RenderedFetcher(self.settings)
            self._adapters = create_adapters(
                settings=self.settings,
                static_fetcher=self._static_fetcher,
                rendered_fetcher=self._rendered_fetcher,
                image_cache=self.image_cache,
            )
        return self._adapters

    async def close(self) -> None:
        await self.drain()
        if self._owns_adapters and self._adapters is not None:
            for adapter in self._adapters.values():
                await adapter.close()
            if self._static_fetcher is not None:
                await self._static_fetcher.close()
            if self._rendered_fetcher is not None:
                await self._rendered_fetcher.close()
            self._adapters = None

    async def __aenter__(self) -> "AggregationService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def breaker(self, platform: Platform) -> CircuitBreaker:
        if platform not in self._breakers:
            self._breakers[platform] = CircuitBreaker(
                failure_threshold=self.settings.circuit_failure_threshold,
                recovery_timeout=self.settings.circuit_recovery_seconds,
                name=f"platform:{platform.value}",
            )
        return self._breakers[platform]

    # -------------------------------------------------------------------------
    # Query path
    # -------------------------------------------------------------------------

    async def search(self, query: AggregateQuery) -> AggregateResult:
        """
        Answer one page of a query.

        Raises:
            AllProvidersFailedError: every requested platform failed or was skipped
        """
        platform_token = query.platform if query.is_all else query.platform.value
        with LogContext(q=query.q, platform=platform_token):
            use_cache = self.settings.cache_enabled and not query.nocache
            cache_key = query_cache_key(query)

            if use_cache:
                cached = await self.cache.lookup(cache_key)
                if cached is not None:
                    logger.debug("ephemeral_cache_hit", total=cached.total, hits=cached.hits)
                    meta = cached.meta.model_copy(update={"source": "ephemeral"})
                    return self._page(cached.items, query, meta)

            durable_key = snapshot_key(query)
            if self.store is not None and not query.nocache and not query.prefetch:
                hit = await self._snapshot_page(durable_key, query)
                if hit is not None:
                    return hit

            if use_cache:
                items, meta = await self.cache.get_or_run(cache_key, lambda: self._run_adapters(query))
            else:
                items, meta = await self._run_adapters(query)

            if self.store is not None and not query.prefetch and items:
                self._schedule_persist(durable_key, query, items)

            return self._page(items, query, meta)

    @staticmethod
    def _page(items: list[ExternalListing], query: AggregateQuery, meta: AggregateMeta) -> AggregateResult:
        return AggregateResult(
            items=items[query.offset:query.offset + query.limit],
            total=len(items),
            offset=query.offset,
            limit=query.limit,
            meta=meta,
        )

    async def _snapshot_page(self, key: str, query: AggregateQuery) -> Optional[AggregateResult]:
        try:
            hit = await self.store.get_cached_search(
                key,
                query.offset,
                query.limit,
                self.settings.snapshot_max_age_minutes,
            )
        except PersistenceUnavailableError as e:
            logger.warning("snapshot_lookup_failed", error=str(e))
            return None
        if hit is None:
            return None
        items, total = hit
        if not items:
            return None

        counts: dict[str, int] = {}
        for item in items:
            counts[item.platform.value] = counts.get(item.platform.value, 0) + 1
        logger.debug("snapshot_hit", total=total, page=len(items))
        return AggregateResult(
            items=items,
            total=total,
            offset=query.offset,
            limit=query.limit,
            meta=AggregateMeta(source="snapshot", platform_counts=counts),
        )

    def _options_for(self, platform: Platform, query: AggregateQuery) -> FetchOptions:
        return FetchOptions(
            headless=query.headless and not query.prefetch,
            force_headless=query.force_headless,
            upgrade_images=platform in IMAGE_UPGRADE_PLATFORMS and not query.prefetch,
            cache_images=platform in IMAGE_UPGRADE_PLATFORMS and self.image_cache is not None,
            debug=query.debug,
        )

    async def _call_adapter(
        self,
        platform: Platform,
        query: AggregateQuery,
        limit: int,
        timeout: float,
    ) -> ProviderReport:
        adapter = self.adapters.get(platform)
        if adapter is None:
            return ProviderReport(platform=platform, errors=["no adapter registered"])

        started = time.monotonic()
        try:
            report = await asyncio.wait_for(
                adapter.fetch_with_report(query.q, limit, self._options_for(platform, query)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("adapter_timeout", adapter=platform.value, timeout=timeout)
            report = ProviderReport(platform=platform, errors=[f"timeout after {timeout:.0f}s"])
        except Exception as e:
            # Adapter failures degrade only this platform
            logger.warning(
                "adapter_failed",
                adapter=platform.value,
                category=ErrorHandler.categorize_error(e),
                error=f"{type(e).__name__}: {e}",
            )
            report = ProviderReport(platform=platform, errors=[f"{type(e).__name__}: {e}"])
        report.elapsed_ms = report.elapsed_ms or int((time.monotonic() - started) * 1000)

        breaker = self.breaker(platform)
        if report.blocked:
            breaker.record_failure()
        elif report.listings:
            breaker.record_success()
        return report

    async def _run_adapters(self, query: AggregateQuery) -> tuple[list[ExternalListing], AggregateMeta]:
        limit = per_platform_limit(query)
        timeout = (
            self.settings.prefetch_timeout_seconds if query.prefetch
            else self.settings.adapter_timeout_seconds
        )

        requested = query.platforms()
        failures: dict[str, str] = {}
        active: list[Platform] = []
        for platform in requested:
            if self.breaker(platform).is_open:
                failures[platform.value] = "circuit open"
                logger.info("adapter_skipped_circuit_open", adapter=platform.value)
            else:
                active.append(platform)

        reports: list[ProviderReport] = await asyncio.gather(
            *(self._call_adapter(p, query, limit, timeout) for p in active)
        )

        blocked: list[str] = []
        merged: list[ExternalListing] = []
        for report in reports:
            if report.blocked:
                blocked.append(report.platform.value)
                failures[report.platform.value] = f"blocked ({report.block_reason})"
            elif report.failed:
                failures[report.platform.value] = report.errors[-1] if report.errors else "failed"
            merged.extend(report.listings)

        if len(failures) == len(requested):
            logger.error("all_providers_failed", failures=failures)
            raise AllProvidersFailedError(
                f"All requested platforms failed for query '{query.q}'",
                failures=failures,
            )

        items, filter_report = self.quality_filter.run(merged, query.filters)

        counts = {p.value: 0 for p in requested}
        for item in items:
            counts[item.platform.value] = counts.get(item.platform.value, 0) + 1

        meta = AggregateMeta(
            source="live",
            platform_counts=counts,
            failed_platforms=sorted(failures),
            blocked_platforms=sorted(blocked),
            filter_report=filter_report,
            diagnostics={r.platform.value: r.diagnostics() for r in reports} if query.debug else None,
        )
        logger.info(
            "aggregate_complete",
            total=len(items),
            per_platform=limit,
            failed=meta.failed_platforms,
        )
        return items, meta

    # -------------------------------------------------------------------------
    # Background persistence
    # -------------------------------------------------------------------------

    def _schedule_persist(self, key: str, query: AggregateQuery, items: list[ExternalListing]) -> None:
        task = asyncio.create_task(self._persist(key, query, list(items)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, key: str, query: AggregateQuery, items: list[ExternalListing]) -> None:
        try:
            result = await self.store.upsert_listings(items, terms=[query.q.strip().lower()])
            await self.store.save_search_snapshot(key, query, items)
        except PersistenceUnavailableError as e:
            logger.warning("background_persist_failed", error=str(e), count=len(items))
            return
        logger.debug("background_persist_done", inserted=result.inserted, updated=result.updated)

    @property
    def pending(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for scheduled background persistence to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def get_stats(self) -> dict[str, Any]:
        return {
            "cache": self.cache.get_stats(),
            "adapters": {p.value: a.get_stats() for p, a in (self._adapters or {}).items()},
            "circuits": {p.value: b.state for p, b in self._breakers.items()},
            "pending_writes": self.pending,
        }


__all__ = ["AggregationService", "per_platform_limit", "IMAGE_UPGRADE_PLATFORMS"]
