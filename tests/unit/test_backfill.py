from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from aggregator.models.schemas import Platform, Quality
from aggregator.pipeline.backfill import AdaptiveConcurrency, BackfillWorker
from aggregator.pipeline.progress import ProgressStore
from aggregator.utils.retry import PersistenceUnavailableError


class FakeSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest_asyncio.fixture
async def seeded_store(store, listing_factory):
    await store.upsert_listings([listing_factory(n=i) for i in (1, 2, 3)])
    return store


# =============================================================================
# Adaptive concurrency
# =============================================================================

def test_adaptive_concurrency_halves_under_blocking():
    level = AdaptiveConcurrency(maximum=4)
    assert level.current == 4
    assert level.record_batch(4, 3) == 2
    assert level.record_batch(4, 4) == 1
    assert level.record_batch(4, 4) == 1


def test_adaptive_concurrency_recovers_after_clean_batches():
    level = AdaptiveConcurrency(maximum=3, initial=1, recover_after=2)
    level.record_batch(2, 0)
    assert level.current == 1
    level.record_batch(2, 0)
    assert level.current == 2

    # a partially blocked batch resets the clean streak
    level.record_batch(2, 1)
    level.record_batch(2, 0)
    assert level.current == 2
    level.record_batch(2, 0)
    assert level.current == 3
    for _ in range(4):
        level.record_batch(2, 0)
    assert level.current == 3


def test_adaptive_concurrency_ignores_empty_batches():
    level = AdaptiveConcurrency(maximum=2)
    assert level.record_batch(0, 0) == 2


# =============================================================================
# Worker
# =============================================================================

@pytest.mark.asyncio
async def test_backfill_records_quality(settings, seeded_store, fake_adapter_cls):
    adapter = fake_adapter_cls(Platform.ALIBABA, attributes=12)
    worker = BackfillWorker(adapter, seeded_store, settings=settings, sleep=FakeSleep())

    report = await worker.run()

    assert report.completed
    assert (report.processed, report.good) == (3, 3)
    assert len(adapter.detail_calls) == 3
    assert await seeded_store.list_backfill_candidates(Platform.ALIBABA, [Quality.MISSING]) == []
    listing = await seeded_store.get_listing(Platform.ALIBABA, adapter.detail_calls[0])
    assert listing.image == "https://img.example.com/hero.jpg"
    assert listing.store_name == "Acme Trading Co."
    # finished jobs leave no checkpoint behind
    assert await seeded_store.load_progress("backfill:ALIBABA") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("attributes,quality,field", [
    (3, Quality.PARTIAL, "partial"),
    (0, Quality.BAD, "bad"),
])
async def test_backfill_classifies_weak_details(settings, seeded_store, fake_adapter_cls, attributes, quality, field):
    adapter = fake_adapter_cls(Platform.ALIBABA, attributes=attributes)
    worker = BackfillWorker(adapter, seeded_store, settings=settings, sleep=FakeSleep())

    report = await worker.run([Quality.MISSING])

    assert getattr(report, field) == 3
    remaining = await seeded_store.list_backfill_candidates(Platform.ALIBABA, [quality])
    assert len(remaining) == 3


@pytest.mark.asyncio
async def test_backfill_keeps_stored_image_without_cache(settings, store, listing_factory, fake_adapter_cls):
    stored_image = "https://s.alicdn.com/card.jpg"
    await store.upsert_listings([listing_factory(n=1, image=stored_image)])
    worker = BackfillWorker(fake_adapter_cls(Platform.ALIBABA), store, settings=settings, sleep=FakeSleep())

    await worker.run()

    listing = await store.get_listing(Platform.ALIBABA, listing_factory(n=1).url)
    assert listing.image == stored_image


@pytest.mark.asyncio
async def test_backfill_attempt_ceiling_and_cooldown(settings, seeded_store, fake_adapter_cls):
    adapter = fake_adapter_cls(Platform.ALIBABA, blocked=True)
    sleep = FakeSleep()
    worker = BackfillWorker(
        adapter,
        seeded_store,
        settings=settings,
        batch_size=3,
        max_attempts=2,
        block_threshold=5,
        cooldown_seconds=60,
        batch_delay_seconds=0,
        sleep=sleep,
    )

    report = await worker.run()

    assert report.completed
    assert report.cooldowns == 1
    assert report.processed == 6
    assert report.skipped == 3
    assert report.good == 0
    assert len(adapter.detail_calls) == 6
    assert sleep.calls == [60]


@pytest.mark.asyncio
async def test_backfill_errors_are_requeued(settings, seeded_store, fake_adapter_cls):
    adapter = fake_adapter_cls(Platform.ALIBABA, error=RuntimeError("reset by peer"))
    worker = BackfillWorker(adapter, seeded_store, settings=settings, max_attempts=2, sleep=FakeSleep())

    report = await worker.run()

    assert report.errors == 6
    assert report.skipped == 3
    assert report.cooldowns == 0


@pytest.mark.asyncio
async def test_backfill_dry_run_records_nothing(settings, seeded_store, fake_adapter_cls):
    adapter = fake_adapter_cls(Platform.ALIBABA)
    worker = BackfillWorker(adapter, seeded_store, settings=settings, dry_run=True, sleep=FakeSleep())

    report = await worker.run()

    assert report.good == 3
    assert len(await seeded_store.list_backfill_candidates(Platform.ALIBABA, [Quality.MISSING])) == 3


@pytest.mark.asyncio
async def test_backfill_batch_delay(settings, seeded_store, fake_adapter_cls):
    sleep = FakeSleep()
    worker = BackfillWorker(
        fake_adapter_cls(Platform.ALIBABA),
        seeded_store,
        settings=settings,
        batch_size=1,
        batch_delay_seconds=1.5,
        sleep=sleep,
    )

    await worker.run()

    # no pause after the last batch
    assert sleep.calls == [1.5, 1.5]


@pytest.mark.asyncio
async def test_backfill_resumes_after_shutdown(settings, seeded_store, fake_adapter_cls):
    adapter = fake_adapter_cls(Platform.ALIBABA, attributes=0)
    progress = ProgressStore(seeded_store)
    worker = BackfillWorker(adapter, seeded_store, settings=settings, batch_size=1, progress=progress, sleep=FakeSleep())
    original = adapter.fetch_detail

    async def fetch_then_stop(url, options=None):
        worker.request_shutdown()
        return await original(url, options)

    adapter.fetch_detail = fetch_then_stop
    first = await worker.run([Quality.BAD, Quality.MISSING])

    assert first.interrupted
    assert not first.completed
    assert first.processed == 1
    checkpoint = await seeded_store.load_progress("backfill:ALIBABA")
    assert checkpoint["last_id"] > 0

    resumed_adapter = fake_adapter_cls(Platform.ALIBABA, attributes=0)
    resumed = BackfillWorker(resumed_adapter, seeded_store, settings=settings, batch_size=1, sleep=FakeSleep())
    second = await resumed.run([Quality.BAD, Quality.MISSING])

    assert second.completed
    assert second.processed == 3
    assert second.bad == 3
    # the listing already handled before the shutdown is not revisited
    assert len(resumed_adapter.detail_calls) == 2
    assert adapter.detail_calls[0] not in resumed_adapter.detail_calls


@pytest.mark.asyncio
async def test_backfill_parse_errors_are_not_requeued(settings, seeded_store, fake_adapter_cls):
    adapter = fake_adapter_cls(Platform.ALIBABA, error=ValueError("no attribute table"))
    worker = BackfillWorker(adapter, seeded_store, settings=settings, max_attempts=3, sleep=FakeSleep())

    report = await worker.run()

    assert report.completed
    assert report.errors == 3
    assert report.skipped == 0
    assert len(adapter.detail_calls) == 3


@pytest.mark.asyncio
async def test_backfill_continues_when_store_writes_fail(settings, seeded_store, fake_adapter_cls):
    adapter = fake_adapter_cls(Platform.ALIBABA)
    worker = BackfillWorker(adapter, seeded_store, settings=settings, sleep=FakeSleep())
    failing = AsyncMock(side_effect=PersistenceUnavailableError("db down"))

    with patch.object(seeded_store, "record_detail", new=failing):
        report = await worker.run()

    assert report.completed
    assert report.good == 3
    assert not report.persistence_available
    assert len(adapter.detail_calls) == 3
    # writes stop after the first failure in flight
    assert failing.await_count <= settings.backfill_concurrency
    assert len(await seeded_store.list_backfill_candidates(Platform.ALIBABA, [Quality.MISSING])) == 3
