import asyncio
import logging
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio
import structlog

from aggregator.config.settings import Settings
from aggregator.models.schemas import (
    ExternalListing,
    ListingDetail,
    Platform,
    TaxonomyLeaf,
)
from aggregator.services.listing_store import ListingStore
from aggregator.services.providers import FetchOptions, ProviderAdapter, ProviderReport

FIXTURES_DIR = Path(__file__).parent / "fixtures"

HOSTS = {
    Platform.ALIBABA: "www.alibaba.com/product-detail",
    Platform.C1688: "detail.1688.com/offer",
    Platform.MADE_IN_CHINA: "www.made-in-china.com/product",
    Platform.INDIAMART: "www.indiamart.com/proddetail",
}


@pytest.fixture(autouse=True)
def quiet_logging():
    """Drop structured log output below CRITICAL for the duration of a test."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        IMAGE_CACHE_DIR=str(tmp_path / "images"),
        ADAPTER_TIMEOUT_SECONDS=2.0,
        PREFETCH_TIMEOUT_SECONDS=2.0,
        CIRCUIT_FAILURE_THRESHOLD=3,
        COVERAGE_CONCURRENCY=2,
        COVERAGE_RANDOM_TOKENS=2,
        BACKFILL_BATCH_DELAY_SECONDS=0,
        BACKFILL_COOLDOWN_SECONDS=0,
        IMAGE_DOWNLOAD_ATTEMPTS=1,
    )


@pytest_asyncio.fixture
async def store(settings):
    store = ListingStore(settings)
    await store.init()
    yield store
    await store.close()


def make_listing(
    platform: Platform = Platform.ALIBABA,
    n: int = 1,
    title: Optional[str] = None,
    **kwargs,
) -> ExternalListing:
    return ExternalListing(
        platform=platform,
        url=kwargs.pop("url", f"https://{HOSTS[platform]}/{n}.html"),
        title=title or f"Widget {n}",
        **kwargs,
    )


@pytest.fixture
def listing_factory():
    return make_listing


class FakeAdapter(ProviderAdapter):
    """
    In-memory adapter producing fresh listings on every call.

    ``blocked`` makes every call report a block; ``error`` is raised from
    every call; ``delay`` sleeps before answering.
    """

    def __init__(
        self,
        platform: Platform = Platform.ALIBABA,
        per_call: int = 3,
        blocked: bool = False,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        attributes: int = 12,
        hero_image: Optional[str] = "https://img.example.com/hero.jpg",
        price: str = "US$1.50 - 2.00",
        settings: Optional[Settings] = None,
    ):
        super().__init__(settings)
        self.platform = platform
        self.per_call = per_call
        self.blocked = blocked
        self.error = error
        self.delay = delay
        self.attributes = attributes
        self.hero_image = hero_image
        self.price = price
        self.calls: list[tuple[str, int, Optional[FetchOptions]]] = []
        self.detail_calls: list[str] = []
        self._serial = 0

    async def fetch_with_report(self, query, limit, options=None) -> ProviderReport:
        self.calls.append((query, limit, options))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        report = ProviderReport(platform=self.platform)
        if self.blocked:
            report.blocked = True
            report.block_reason = "http_429"
        else:
            for _ in range(min(self.per_call, limit)):
                self._serial += 1
                report.listings.append(make_listing(
                    self.platform,
                    n=self._serial,
                    title=f"{query} item {self._serial}",
                    price=self.price,
                    moq="MOQ: 10 pieces",
                ))
        self._update_status(report)
        return report

    async def fetch_detail(self, url, options=None) -> ListingDetail:
        self.detail_calls.append(url)
        if self.error is not None:
            raise self.error
        if self.blocked:
            return ListingDetail(url=url, status=429, blocked=True, block_reason="http_429")
        return ListingDetail(
            url=url,
            attributes=[(f"Attribute {i}", f"value {i}") for i in range(self.attributes)],
            hero_image=self.hero_image,
            supplier_name="Acme Trading Co.",
            status=200,
            source="static",
        )


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def leaves():
    return [
        TaxonomyLeaf(key="desk-lamps", label="Desk Lamps", category_key="home", parents=("home", "lighting")),
        TaxonomyLeaf(key="mugs", label="Mugs", category_key="home", parents=("home", "drinkware")),
        TaxonomyLeaf(key="jeans", label="Jeans", category_key="fashion", parents=("fashion", "womens-wear")),
    ]


@pytest.fixture
def load_fixture():
    def _load(name: str) -> str:
        return (FIXTURES_DIR / name).read_text(encoding="utf-8")
    return _load
