"""
Detail backfill worker.

Revisits stored listings of one platform whose detail capture is BAD,
PARTIAL or MISSING, fetches their detail pages again and records the new
attribute count and quality. Built to be gentle with the source:

    - small batches at low, adaptive concurrency with a pause between them
    - per-listing attempt counter; listings at the ceiling are skipped
    - consecutive blocks pause the job for a cooldown window instead of
      hammering a platform that has started refusing requests
    - progress persisted after every batch so a restart resumes
"""

import asyncio
from collections import deque
from typing import Awaitable, Callable, Iterable, Optional

from aggregator.analyzers.quality_filter import QualityFilter
from aggregator.config.settings import Settings, get_settings
from aggregator.models.schemas import BackfillProgress, BackfillReport, Quality, utcnow
from aggregator.pipeline.progress import ProgressStore
from aggregator.services.image_cache import ImageCache
from aggregator.services.listing_store import BackfillCandidate, ListingStore
from aggregator.services.providers import FetchOptions, ProviderAdapter
from aggregator.utils.logger import LogContext, get_logger
from aggregator.utils.retry import ErrorHandler, PersistenceUnavailableError

logger = get_logger(__name__)

DEFAULT_QUALITIES = (Quality.BAD, Quality.PARTIAL, Quality.MISSING)

# Per-listing outcomes
GOOD = "good"
PARTIAL = "partial"
BAD = "bad"
BLOCKED = "blocked"
ERROR = "error"
FAILED = "failed"
SKIPPED = "skipped"
INTERRUPTED = "interrupted"


# =============================================================================
# Adaptive concurrency
# =============================================================================

class AdaptiveConcurrency:
    """
    Concurrency level that backs off under blocking.

    After each batch the blocked ratio is reported: above ``block_ratio`` the
    level halves; after ``recover_after`` consecutive clean batches it grows
    by one. The level always stays within ``[minimum, maximum]``.
    """

    def __init__(
        self,
        maximum: int,
        initial: Optional[int] = None,
        minimum: int = 1,
        block_ratio: float = 0.5,
        recover_after: int = 3,
    ):
        self.minimum = max(1, minimum)
        self.maximum = max(self.minimum, maximum)
        self.block_ratio = block_ratio
        self.recover_after = max(1, recover_after)
        start = self.maximum if initial is None else initial
        self.current = min(self.maximum, max(self.minimum, start))
        self._clean_batches = 0

    def record_batch(self, total: int, blocked: int) -> int:
        """Report one batch and return the new concurrency level."""
        if total <= 0:
            return self.current
        if blocked / total > self.block_ratio:
            previous = self.current
            self.current = max(self.minimum, self.current // 2)
            self._clean_batches = 0
            if self.current != previous:
                logger.info("concurrency_reduced", previous=previous, current=self.current)
        elif blocked == 0:
            self._clean_batches += 1
            if self._clean_batches >= self.recover_after:
                self.current = min(self.maximum, self.current + 1)
                self._clean_batches = 0
        else:
            self._clean_batches = 0
        return self.current


# =============================================================================
# Worker
# =============================================================================

class BackfillWorker:
    """
    Retry detail capture for one platform's weak listings.

    Example:
        >>> worker = BackfillWorker(adapter, store, settings=settings)
        >>> report = await worker.run([Quality.BAD, Quality.MISSING])
        >>> print(report.good, report.skipped)
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        store: ListingStore,
        settings: Optional[Settings] = None,
        quality_filter: Optional[QualityFilter] = None,
        image_cache: Optional[ImageCache] = None,
        progress: Optional[ProgressStore] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        block_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        batch_delay_seconds: Optional[float] = None,
        headless: bool = True,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.adapter = adapter
        self.platform = adapter.platform
        self.store = store
        self.quality_filter = quality_filter or QualityFilter(self.settings)
        self.image_cache = image_cache
        self.progress = progress or ProgressStore(store, durable=not dry_run)
        self.batch_size = max(1, batch_size or self.settings.backfill_batch_size)
        self.max_attempts = max(1, max_attempts or self.settings.backfill_max_attempts)
        self.block_threshold = max(1, block_threshold or self.settings.backfill_block_threshold)
        self.cooldown_seconds = (
            self.settings.backfill_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self.batch_delay_seconds = (
            self.settings.backfill_batch_delay_seconds if batch_delay_seconds is None else batch_delay_seconds
        )
        self.concurrency = AdaptiveConcurrency(
            maximum=concurrency or self.settings.backfill_concurrency,
        )
        self.headless = headless
        self.dry_run = dry_run
        self.persistence_available = True
        self._sleep = sleep
        self._shutdown = False

    @property
    def progress_key(self) -> str:
        return f"backfill:{self.platform.value}"

    @property
    def writes_enabled(self) -> bool:
        return not self.dry_run and self.persistence_available

    def _persistence_down(self, error: Exception) -> None:
        if self.persistence_available:
            logger.warning("backfill_persist_failed", error=str(error), action="continue_without_persistence")
        self.persistence_available = False

    def request_shutdown(self) -> None:
        """Stop after the listings already in flight."""
        if not self._shutdown:
            logger.info("backfill_shutdown_requested", platform=self.platform.value)
        self._shutdown = True

    async def _load_progress(self) -> BackfillProgress:
        payload = await self.progress.load(self.progress_key)
        if not payload:
            return BackfillProgress()
        return BackfillProgress.model_validate(payload)

    async def _save_progress(self, progress: BackfillProgress) -> None:
        progress.updated_at = utcnow()
        await self.progress.save(self.progress_key, progress.model_dump(mode="json"))

    # -------------------------------------------------------------------------
    # One listing
    # -------------------------------------------------------------------------

    async def _attempt(self, candidate: BackfillCandidate, progress: BackfillProgress) -> str:
        if self._shutdown:
            return INTERRUPTED

        key = str(candidate.id)
        attempts = progress.attempts_per_id.get(key, 0)
        if attempts >= self.max_attempts:
            return SKIPPED
        progress.attempts_per_id[key] = attempts + 1

        options = FetchOptions(headless=self.headless)
        try:
            detail = await self.adapter.fetch_detail(candidate.url, options)
        except Exception as e:
            category = ErrorHandler.categorize_error(e)
            logger.warning(
                "backfill_fetch_failed",
                listing_id=candidate.id,
                category=category,
                error=f"{type(e).__name__}: {e}",
            )
            if category == "BLOCKED":
                return BLOCKED
            return ERROR if ErrorHandler.get_fallback_strategy(category)()["retryable"] else FAILED

        if detail.blocked:
            logger.info("backfill_blocked", listing_id=candidate.id, reason=detail.block_reason)
            return BLOCKED

        quality = self.quality_filter.classify(detail.attribute_count)
        image = None
        if detail.hero_image:
            image = detail.hero_image
            if self.image_cache is not None:
                local = await self.image_cache.fetch(detail.hero_image)
                if local is not None:
                    image = str(local)
            elif candidate.image:
                # Keep the stored image unless caching is on
                image = None

        if self.writes_enabled:
            try:
                await self.store.record_detail(candidate.id, detail, quality, image=image)
            except PersistenceUnavailableError as e:
                self._persistence_down(e)

        logger.debug(
            "backfill_recorded",
            listing_id=candidate.id,
            attributes=detail.attribute_count,
            quality=quality.value,
            source=detail.source,
        )
        return {Quality.GOOD: GOOD, Quality.PARTIAL: PARTIAL}.get(quality, BAD)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def _apply(self, outcome: str, progress: BackfillProgress) -> None:
        if outcome == GOOD:
            progress.good += 1
            progress.consecutive_blocks = 0
        elif outcome == PARTIAL:
            progress.partial += 1
            progress.consecutive_blocks = 0
        elif outcome == BAD:
            progress.bad += 1
            progress.consecutive_blocks = 0
        elif outcome == BLOCKED:
            progress.consecutive_blocks += 1
        elif outcome in (ERROR, FAILED):
            progress.errors += 1
        elif outcome == SKIPPED:
            progress.skipped += 1

    async def run(self, qualities: Iterable[Quality] = DEFAULT_QUALITIES) -> BackfillReport:
        """
        Process every candidate once, requeueing blocked and failed ones
        until they reach the attempt ceiling.
        """
        report = BackfillReport(platform=self.platform)
        wanted = [Quality(q) for q in qualities]

        with LogContext(job="backfill", platform=self.platform.value):
            progress = await self._load_progress()
            candidates = await self.store.list_backfill_candidates(self.platform, wanted)
            queue: deque[tuple[BackfillCandidate, bool]] = deque(
                (c, True) for c in candidates if c.id > progress.last_id
            )
            logger.info(
                "backfill_started",
                candidates=len(queue),
                resumed_from=progress.last_id or None,
                dry_run=self.dry_run,
            )

            async def guarded(candidate: BackfillCandidate) -> str:
                async with semaphore:
                    return await self._attempt(candidate, progress)

            while queue and not self._shutdown:
                size = min(self.batch_size, len(queue))
                batch = [queue.popleft() for _ in range(size)]
                semaphore = asyncio.Semaphore(self.concurrency.current)
                outcomes = await asyncio.gather(*(guarded(c) for c, _ in batch))

                blocked = 0
                unfinished = []
                for (candidate, first_pass), outcome in zip(batch, outcomes):
                    if outcome == INTERRUPTED:
                        unfinished.append((candidate, first_pass))
                        continue
                    self._apply(outcome, progress)
                    if outcome != SKIPPED:
                        progress.offset += 1
                    if first_pass:
                        progress.last_id = max(progress.last_id, candidate.id)
                    if outcome == BLOCKED:
                        blocked += 1
                    if outcome in (BLOCKED, ERROR):
                        queue.append((candidate, False))
                queue.extendleft(reversed(unfinished))

                self.concurrency.record_batch(len(batch), blocked)
                await self._save_progress(progress)

                if progress.consecutive_blocks >= self.block_threshold:
                    report.cooldowns += 1
                    logger.warning(
                        "backfill_cooldown",
                        consecutive_blocks=progress.consecutive_blocks,
                        seconds=self.cooldown_seconds,
                    )
                    await self._sleep(self.cooldown_seconds)
                    progress.consecutive_blocks = 0
                    await self._save_progress(progress)
                elif queue and not self._shutdown and self.batch_delay_seconds > 0:
                    await self._sleep(self.batch_delay_seconds)

            report.completed = not queue
            report.interrupted = bool(queue) and self._shutdown
            if report.completed:
                await self.progress.clear(self.progress_key)

        report.processed = progress.offset
        report.good = progress.good
        report.partial = progress.partial
        report.bad = progress.bad
        report.errors = progress.errors
        report.skipped = progress.skipped
        report.persistence_available = self.persistence_available
        logger.info("backfill_finished", **report.model_dump(mode="json"))
        return report


__all__ = ["AdaptiveConcurrency", "BackfillWorker", "DEFAULT_QUALITIES"]
