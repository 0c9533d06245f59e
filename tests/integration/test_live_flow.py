"""
End-to-end live query path: real adapter and extraction over a mocked HTTP
transport, background persistence into SQLite, then a detail backfill.
"""

import httpx
import pytest

from aggregator.models.schemas import AggregateQuery, Platform, Quality
from aggregator.pipeline.backfill import BackfillWorker
from aggregator.services.aggregation_service import AggregationService
from aggregator.services.fetchers import RenderedFetcher, StaticFetcher, UserAgentPool
from aggregator.services.providers import AlibabaAdapter
from aggregator.utils.retry import AllProvidersFailedError


class Marketplace:
    """Serves fixture pages by path and records every requested URL."""

    def __init__(self, pages: dict[str, str], status: int = 200):
        self.pages = pages
        self.status = status
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        for fragment, html in self.pages.items():
            if fragment in request.url.path:
                return httpx.Response(self.status, text=html, headers={"content-type": "text/html"})
        return httpx.Response(404, text="not found")


@pytest.fixture
def make_adapter(settings):
    def _make(marketplace: Marketplace) -> AlibabaAdapter:
        client = httpx.AsyncClient(transport=httpx.MockTransport(marketplace), follow_redirects=True)
        static = StaticFetcher(settings=settings, client=client, user_agents=UserAgentPool(rotate=False))
        return AlibabaAdapter(settings=settings, static_fetcher=static, rendered_fetcher=RenderedFetcher(settings))
    return _make


@pytest.fixture
def marketplace(load_fixture):
    return Marketplace({
        "/trade/search": load_fixture("alibaba_search.html"),
        "/product-detail/": load_fixture("alibaba_detail.html"),
    })


@pytest.mark.asyncio
async def test_search_persist_and_backfill(settings, store, marketplace, make_adapter):
    adapter = make_adapter(marketplace)

    async with AggregationService(settings=settings, adapters={Platform.ALIBABA: adapter}, store=store) as service:
        result = await service.search(AggregateQuery(q="LED strip", platform="ALIBABA", headless=False))

    # the card without a minimum order is dropped
    assert result.total == 2
    assert [item.title for item in result.items] == [
        "COB LED Strip 24V High Density",
        "LED Strip Light 5050 RGB Waterproof",
    ]
    assert result.meta.platform_counts == {"ALIBABA": 2}
    # page two repeats page one, so pagination stops there
    assert len(marketplace.requests) == 2

    assert await store.count_listings(Platform.ALIBABA) == 2
    stored = await store.get_listing(
        Platform.ALIBABA,
        "https://www.alibaba.com/product-detail/LED-Strip-5050-RGB_1600001.html?spm=other",
    )
    assert stored.moq_value == 100
    assert stored.price_min == 1.2
    assert stored.store_name == "Shenzhen Lights Co., Ltd."
    assert stored.terms == {"led strip"}

    worker = BackfillWorker(adapter, store, settings=settings, headless=False)
    report = await worker.run()

    assert report.completed
    assert report.partial == 2
    assert len(await store.list_backfill_candidates(Platform.ALIBABA, [Quality.PARTIAL])) == 2
    assert await store.list_backfill_candidates(Platform.ALIBABA, [Quality.MISSING]) == []
    backfilled = await store.get_listing(Platform.ALIBABA, stored.url)
    # the card image is kept when images are not cached locally
    assert backfilled.image == stored.image

    await adapter.close()


@pytest.mark.asyncio
async def test_snapshot_answers_after_restart(settings, store, marketplace, make_adapter):
    async with AggregationService(
        settings=settings, adapters={Platform.ALIBABA: make_adapter(marketplace)}, store=store,
    ) as service:
        await service.search(AggregateQuery(q="led strip", platform="ALIBABA", headless=False))
    fetched = len(marketplace.requests)

    offline = Marketplace({}, status=503)
    async with AggregationService(
        settings=settings, adapters={Platform.ALIBABA: make_adapter(offline)}, store=store,
    ) as service:
        result = await service.search(AggregateQuery(q="  LED Strip ", platform="ALIBABA", headless=False, limit=1))

    assert result.meta.source == "snapshot"
    assert result.total == 2
    assert len(result.items) == 1
    assert offline.requests == []
    assert len(marketplace.requests) == fetched


@pytest.mark.asyncio
async def test_blocked_marketplace_fails_the_query(settings, store, load_fixture, make_adapter):
    blocked = Marketplace({"/trade/search": load_fixture("block_page.html")}, status=429)

    async with AggregationService(
        settings=settings, adapters={Platform.ALIBABA: make_adapter(blocked)}, store=store,
    ) as service:
        with pytest.raises(AllProvidersFailedError) as exc_info:
            await service.search(AggregateQuery(q="led strip", platform="ALIBABA", headless=False))

    assert exc_info.value.failures == {"ALIBABA": "blocked (http_429)"}
    assert len(blocked.requests) == 1
    assert await store.count_listings() == 0
