"""
Coverage orchestrator.

Keeps every taxonomy leaf stocked with at least ``target`` stored listings.
One run walks the leaves, measures each leaf's count in the listing store
and tops off the deficient ones by searching the adapters with
"<leaf> <modifier>" terms until the deficit is met or the term pool runs out.

Per-leaf states within a run:

    SCANNING -> DEFICIENT -> TOPPING_OFF -> SATISFIED | COOLDOWN

A leaf that gains nothing goes on cooldown for a number of runs. Progress
(rotation offset, in-run cursor, shuffle seed, cooldown map) is persisted
after every leaf so an interrupted run resumes where it stopped.

``ensure_coverage`` layers staged targets (1 -> 4 -> 8 by default) on top of
``run_once``, bounded by a maximum number of cycles.
"""

import asyncio
import random
import string
from collections import deque
from typing import Iterable, Optional

from aggregator.analyzers.quality_filter import QualityFilter
from aggregator.config.settings import Settings, get_settings
from aggregator.extractors.normalizer import normalize_url
from aggregator.models.schemas import (
    CoverageProgress,
    CoverageReport,
    CoverageSummary,
    ExternalListing,
    LeafOutcome,
    LeafState,
    Platform,
    RunSummary,
    StageReport,
    TaxonomyLeaf,
    utcnow,
)
from aggregator.pipeline.backfill import AdaptiveConcurrency
from aggregator.pipeline.progress import ProgressStore
from aggregator.services.listing_store import ListingStore
from aggregator.services.providers import FetchOptions, ProviderAdapter, ProviderReport
from aggregator.utils.logger import LogContext, get_logger
from aggregator.utils.retry import ErrorHandler, PersistenceUnavailableError

logger = get_logger(__name__)


# =============================================================================
# Constants and helpers
# =============================================================================

STATIC_MODIFIERS = [
    "wholesale", "bulk", "supplier", "factory", "manufacturer", "oem", "odm", "private label",
    "ready to ship", "in stock", "low moq", "cheap", "best", "hot", "new", "latest", "top",
    "direct", "exporter", "distributor", "high quality", "fast shipping", "original", "premium",
    "stock", "1pc", "2pcs", "10pcs", "100pcs", "lot",
]

RANDOM_TOKEN_ALPHABET = string.ascii_lowercase + string.digits
RANDOM_TOKEN_LENGTH = 4


def random_tokens(count: int, rng: random.Random) -> list[str]:
    return [
        "".join(rng.choice(RANDOM_TOKEN_ALPHABET) for _ in range(RANDOM_TOKEN_LENGTH))
        for _ in range(max(0, count))
    ]


def candidate_terms(leaf: TaxonomyLeaf, rng: random.Random, random_count: int = 6) -> list[str]:
    """Leaf search terms crossed with the shuffled modifier pool."""
    modifiers = STATIC_MODIFIERS + random_tokens(random_count, rng)
    rng.shuffle(modifiers)
    terms: list[str] = []
    seen: set[str] = set()
    for base in leaf.search_terms:
        for modifier in modifiers:
            term = f"{base} {modifier}".strip()
            if term.lower() not in seen:
                seen.add(term.lower())
                terms.append(term)
    return terms


def term_batch_size(remaining: int, max_per_leaf: int = 480) -> int:
    """Listings to request for one term, scaled to the remaining deficit."""
    return min(max_per_leaf, max(120, min(360, remaining * 6)))


def order_leaves(
    leaves: list[TaxonomyLeaf],
    offset: int = 0,
    rotate: bool = True,
    shuffle: bool = False,
    seed: Optional[int] = None,
) -> list[TaxonomyLeaf]:
    """Traversal order for one run; deterministic for a given offset and seed."""
    ordered = list(leaves)
    if not ordered:
        return ordered
    if shuffle:
        random.Random(seed).shuffle(ordered)
        return ordered
    if rotate:
        start = offset % len(ordered)
        return ordered[start:] + ordered[:start]
    return ordered


def summarize_counts(counts: Iterable[int]) -> CoverageSummary:
    """Distribution of per-leaf counts."""
    values = list(counts)
    if not values:
        return CoverageSummary()
    total = len(values)

    def pct(threshold: int) -> float:
        return round(100.0 * sum(1 for v in values if v >= threshold) / total, 1)

    return CoverageSummary(
        total_leaves=total,
        zeros=sum(1 for v in values if v == 0),
        pct_ge1=pct(1),
        pct_ge4=pct(4),
        pct_ge8=pct(8),
        min=min(values),
        max=max(values),
    )


# =============================================================================
# Orchestrator
# =============================================================================

class CoverageOrchestrator:
    """
    Drives adapters until every taxonomy leaf meets a listing count.

    Example:
        >>> orchestrator = CoverageOrchestrator(leaves, adapters, store=store)
        >>> report = await orchestrator.ensure_coverage([1, 4, 8], max_cycles=6)
        >>> report.met
        True
    """

    def __init__(
        self,
        leaves: list[TaxonomyLeaf],
        adapters: dict[Platform, ProviderAdapter],
        store: Optional[ListingStore] = None,
        settings: Optional[Settings] = None,
        quality_filter: Optional[QualityFilter] = None,
        progress: Optional[ProgressStore] = None,
        platform: Optional[Platform] = None,
        concurrency: Optional[int] = None,
        cooldown_runs: Optional[int] = None,
        rotate: Optional[bool] = None,
        shuffle: Optional[bool] = None,
        max_per_leaf: Optional[int] = None,
        headless: bool = False,
        cache_images: bool = False,
        dry_run: bool = False,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            leaves: Taxonomy leaves to keep stocked
            adapters: Adapters searched for every candidate term
            store: Listing store for counts, upserts and progress
            platform: Restrict counts to one platform (adapters should match)
            concurrency: Upper bound for terms searched in parallel
            cooldown_runs: Runs a zero-yield leaf stays on cooldown
            rotate: Rotate the leaf order by one position per completed run
            shuffle: Seeded shuffle of the leaf order per run (overrides rotate)
            dry_run: Never write listings; progress kept in memory
            rng: Random source for modifiers, tokens and shuffle seeds
        """
        self.settings = settings or get_settings()
        self.leaves = list(leaves)
        self.adapters = adapters
        self.store = store
        self.quality_filter = quality_filter or QualityFilter(self.settings)
        self.platform = Platform.parse(platform) if platform else None
        self.progress = progress or ProgressStore(store, durable=not dry_run)
        self.cooldown_runs = self.settings.coverage_cooldown_runs if cooldown_runs is None else cooldown_runs
        self.rotate = self.settings.coverage_rotate if rotate is None else rotate
        self.shuffle = self.settings.coverage_shuffle if shuffle is None else shuffle
        self.max_per_leaf = max_per_leaf or self.settings.coverage_max_per_leaf
        self.concurrency = AdaptiveConcurrency(maximum=concurrency or self.settings.coverage_concurrency)
        self.headless = headless
        self.cache_images = cache_images
        self.dry_run = dry_run
        self.rng = rng or random.Random()

        self.persistence_available = store is not None
        # Additions not reflected in the store (dry run or store unreachable)
        self._pending: dict[str, int] = {}
        self._shutdown = False

    @property
    def progress_key(self) -> str:
        return f"coverage:{self.platform.value}" if self.platform else "coverage"

    @property
    def writes_enabled(self) -> bool:
        return not self.dry_run and self.persistence_available

    def request_shutdown(self) -> None:
        """Stop after the current wave; progress is flushed before returning."""
        if not self._shutdown:
            logger.info("coverage_shutdown_requested")
        self._shutdown = True

    def _persistence_down(self, error: Exception) -> None:
        if self.persistence_available:
            logger.warning("coverage_persistence_unavailable", error=str(error))
        self.persistence_available = False

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    async def load_progress(self) -> CoverageProgress:
        payload = await self.progress.load(self.progress_key)
        if not payload:
            return CoverageProgress()
        return CoverageProgress.model_validate(payload)

    async def save_progress(self, progress: CoverageProgress) -> None:
        progress.updated_at = utcnow()
        await self.progress.save(self.progress_key, progress.model_dump(mode="json"))

    # -------------------------------------------------------------------------
    # Counts
    # -------------------------------------------------------------------------

    async def count_leaf(self, leaf: TaxonomyLeaf) -> int:
        stored = 0
        if self.persistence_available:
            try:
                stored = await self.store.count_for_category(leaf.key, platform=self.platform)
            except PersistenceUnavailableError as e:
                self._persistence_down(e)
        return stored + self._pending.get(leaf.key, 0)

    async def leaf_counts(self) -> dict[str, int]:
        keys = [leaf.key for leaf in self.leaves]
        counts = {k: 0 for k in keys}
        if self.persistence_available:
            try:
                counts.update(await self.store.counts_for_categories(keys, platform=self.platform))
            except PersistenceUnavailableError as e:
                self._persistence_down(e)
        for key, extra in self._pending.items():
            if key in counts:
                counts[key] += extra
        return counts

    # -------------------------------------------------------------------------
    # Topping off
    # -------------------------------------------------------------------------

    async def _search(self, term: str, size: int) -> list[ProviderReport]:
        options = FetchOptions(headless=self.headless, cache_images=self.cache_images)
        reports = []
        for platform, adapter in self.adapters.items():
            try:
                reports.append(await adapter.fetch_with_report(term, size, options))
            except Exception as e:
                # One adapter failing must not end the leaf
                logger.warning(
                    "topoff_search_failed",
                    adapter=platform.value,
                    term=term,
                    category=ErrorHandler.categorize_error(e),
                    error=str(e),
                )
                reports.append(ProviderReport(platform=platform, errors=[str(e)]))
        return reports

    async def _store(self, leaf: TaxonomyLeaf, term: str, listings: list[ExternalListing]) -> int:
        """Upsert tagged listings; returns how many newly count towards the leaf."""
        tags = {leaf.label.lower(), *term.lower().split()}
        if self.writes_enabled:
            try:
                result = await self.store.upsert_listings(listings, categories=[leaf.key], terms=tags)
                return result.newly_tagged
            except PersistenceUnavailableError as e:
                self._persistence_down(e)
        self._pending[leaf.key] = self._pending.get(leaf.key, 0) + len(listings)
        return len(listings)

    async def top_off(self, leaf: TaxonomyLeaf, deficit: int) -> tuple[int, int, bool]:
        """
        Search candidate terms in waves until ``deficit`` listings were added.

        Returns ``(added, terms_tried, exhausted)``; ``exhausted`` is False when
        a shutdown stopped the waves before the deficit or the pool ran out.
        """
        queue = deque(candidate_terms(leaf, self.rng, self.settings.coverage_random_tokens))
        seen: set[str] = set()
        added = 0
        tried = 0

        while queue and added < deficit and not self._shutdown:
            wave = [queue.popleft() for _ in range(min(self.concurrency.current, len(queue)))]
            size = term_batch_size(deficit - added, self.max_per_leaf)
            results = await asyncio.gather(*(self._search(term, size) for term in wave))
            tried += len(wave)

            calls = 0
            blocked = 0
            for term, reports in zip(wave, results):
                for report in reports:
                    calls += 1
                    if report.blocked:
                        blocked += 1
                    keep = []
                    for item in self.quality_filter.dedup(self.quality_filter.exclude(report.listings)):
                        key = normalize_url(item.url)
                        if key in seen:
                            continue
                        seen.add(key)
                        keep.append(item)
                    if not keep:
                        continue
                    gained = await self._store(leaf, term, keep)
                    added += gained
                    logger.debug("topoff_term", term=term, kept=len(keep), gained=gained, total=added, deficit=deficit)
            self.concurrency.record_batch(calls, blocked)

        return added, tried, not queue or added >= deficit

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def process_leaf(self, leaf: TaxonomyLeaf, target: int, progress: CoverageProgress) -> LeafOutcome:
        if progress.is_cooling(leaf.key):
            logger.debug("leaf_on_cooldown", runs_left=progress.cooldown[leaf.key])
            return LeafOutcome(leaf_key=leaf.key, state=LeafState.COOLDOWN)

        before = await self.count_leaf(leaf)
        if before >= target:
            return LeafOutcome(leaf_key=leaf.key, state=LeafState.SATISFIED, before=before, after=before)

        deficit = target - before
        logger.info("leaf_deficient", count=before, deficit=deficit)
        added, tried, exhausted = await self.top_off(leaf, deficit)
        after = await self.count_leaf(leaf) if self.writes_enabled else before + added

        if not exhausted and after < target:
            # Stopped by shutdown; no cooldown, the leaf is redone on resume
            state = LeafState.DEFICIENT
            logger.info("leaf_interrupted", added=added, count=after, terms_tried=tried)
        elif added == 0:
            if self.cooldown_runs > 0:
                # +1 for the tick at the start of the next run
                progress.cooldown[leaf.key] = self.cooldown_runs + 1
            state = LeafState.COOLDOWN
            logger.info("leaf_cooldown", terms_tried=tried, runs=self.cooldown_runs)
        else:
            progress.cooldown.pop(leaf.key, None)
            state = LeafState.SATISFIED if after >= target else LeafState.DEFICIENT
            logger.info("leaf_topped_off", added=added, count=after, terms_tried=tried)

        return LeafOutcome(
            leaf_key=leaf.key,
            state=state,
            before=before,
            after=after,
            added=added,
            terms_tried=tried,
        )

    async def run_once(self, target: int) -> RunSummary:
        """One pass over the taxonomy, resuming an interrupted pass if any."""
        summary = RunSummary(target=target)
        progress = await self.load_progress()

        if progress.cursor == 0:
            progress.decrement_cooldowns()
            progress.seed = self.rng.randrange(2 ** 31) if self.shuffle else None
            await self.save_progress(progress)

        order = order_leaves(self.leaves, progress.offset, self.rotate, self.shuffle, progress.seed)
        if progress.cursor >= len(order):
            progress.cursor = 0

        with LogContext(job="coverage", target=target):
            logger.info("coverage_run_started", leaves=len(order), cursor=progress.cursor, offset=progress.offset)
            for index in range(progress.cursor, len(order)):
                if self._shutdown:
                    summary.interrupted = True
                    break
                leaf = order[index]
                with LogContext(leaf=leaf.key):
                    outcome = await self.process_leaf(leaf, target, progress)
                summary.outcomes.append(outcome)
                if self._shutdown and outcome.state == LeafState.DEFICIENT:
                    # Partially topped off; redo this leaf on resume
                    summary.interrupted = True
                    await self.save_progress(progress)
                    break
                progress.cursor = index + 1
                await self.save_progress(progress)

            if not summary.interrupted:
                progress.cursor = 0
                progress.seed = None
                if self.rotate and order:
                    progress.offset = (progress.offset + 1) % len(order)
                await self.save_progress(progress)

        summary.persistence_available = self.persistence_available
        logger.info(
            "coverage_run_finished",
            target=target,
            satisfied=summary.count(LeafState.SATISFIED),
            deficient=summary.count(LeafState.DEFICIENT),
            cooldown=summary.count(LeafState.COOLDOWN),
            added=summary.added,
            interrupted=summary.interrupted,
        )
        return summary

    async def ensure_coverage(
        self,
        stages: Optional[Iterable[int]] = None,
        max_cycles: Optional[int] = None,
    ) -> CoverageReport:
        """
        Run staged targets in order, escalating only once every leaf meets the
        current one. ``max_cycles`` bounds the total number of runs.
        """
        targets = sorted({int(s) for s in (stages or self.settings.coverage_stages) if int(s) > 0})
        cycles_left = max_cycles or self.settings.coverage_max_cycles
        report = CoverageReport(final_target=targets[-1] if targets else 0)

        for target in targets:
            stage = StageReport(target=target)
            counts = await self.leaf_counts()
            while any(c < target for c in counts.values()):
                if cycles_left <= 0 or self._shutdown:
                    break
                summary = await self.run_once(target)
                cycles_left -= 1
                stage.cycles += 1
                counts = await self.leaf_counts()
                if summary.interrupted:
                    break

            stage.met = all(c >= target for c in counts.values())
            stage.summary = summarize_counts(counts.values())
            report.stages.append(stage)
            logger.info(
                "coverage_stage_finished",
                target=target,
                met=stage.met,
                cycles=stage.cycles,
                zeros=stage.summary.zeros,
                min=stage.summary.min,
            )
            if not stage.met:
                break

        report.met = len(report.stages) == len(targets) and all(s.met for s in report.stages)
        report.interrupted = self._shutdown
        return report


__all__ = [
    "CoverageOrchestrator",
    "STATIC_MODIFIERS",
    "candidate_terms",
    "order_leaves",
    "random_tokens",
    "summarize_counts",
    "term_batch_size",
]
