"""
Marketplace provider adapters.

One ``MarketplaceAdapter`` implements the search and detail contract for
every supported marketplace; the per-site differences live in declarative
``PlatformConfig`` entries (URL templates, selectors, page caps, MOQ policy).

Extraction runs in tiers, each tried only when the previous one found
nothing on the page:

    1. Card selectors - structured result cards
    2. Detail anchors - any link that looks like a product detail page
    3. Embedded JSON - offer lists and JSON-LD inside <script> tags

Pages are fetched by a strategy: ``StaticStrategy`` (plain HTTP) or
``RenderedStrategy`` (headless Chromium). ``choose_strategy`` decides when
to escalate from one to the other.
"""

import asyncio
import json
import math
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional
from urllib.parse import quote_plus, urljoin

from bs4 import BeautifulSoup
from bs4.element import Tag

from aggregator.config.settings import Settings, get_settings
from aggregator.extractors.normalizer import (
    enrich_listing,
    extract_moq,
    find_price_text,
    normalize_image_url,
    normalize_url,
    upgrade_thumbnail,
)
from aggregator.models.schemas import ExternalListing, ListingDetail, Platform
from aggregator.services.fetchers import FetchOutcome, RenderedFetcher, StaticFetcher
from aggregator.services.image_cache import ImageCache
from aggregator.utils.logger import get_logger
from aggregator.utils.retry import UnsupportedPlatformError

logger = get_logger(__name__)

HTML_PARSER = "html.parser"


# =============================================================================
# Enums & Options
# =============================================================================

class ProviderStatus(str, Enum):
    """Provider availability status."""
    AVAILABLE = "available"
    BLOCKED = "blocked"
    ERROR = "error"


class ExtractionPath(str, Enum):
    CARDS = "cards"
    ANCHORS = "anchors"
    SCRIPT = "script"
    NONE = "none"


@dataclass
class FetchOptions:
    """Per-call adapter behaviour."""
    headless: bool = True
    force_headless: bool = False
    upgrade_images: bool = False
    cache_images: bool = False
    debug: bool = False


@dataclass
class ProviderReport:
    """Listings from one adapter call plus what happened along the way."""
    platform: Platform
    listings: list[ExternalListing] = field(default_factory=list)
    blocked: bool = False
    block_reason: Optional[str] = None
    path: ExtractionPath = ExtractionPath.NONE
    strategy: str = "static"
    pages: int = 0
    errors: list[str] = field(default_factory=list)
    dropped_no_moq: int = 0
    elapsed_ms: int = 0

    @property
    def failed(self) -> bool:
        """Blocked, or nothing came back and something went wrong."""
        return self.blocked or (not self.listings and bool(self.errors))

    def diagnostics(self) -> dict[str, Any]:
        return {
            "count": len(self.listings),
            "blocked": self.blocked,
            "block_reason": self.block_reason,
            "path": self.path.value,
            "strategy": self.strategy,
            "pages": self.pages,
            "errors": self.errors[:5],
            "dropped_no_moq": self.dropped_no_moq,
            "elapsed_ms": self.elapsed_ms,
        }


# =============================================================================
# Platform configuration
# =============================================================================

@dataclass(frozen=True)
class PlatformConfig:
    """Declarative description of one marketplace."""
    platform: Platform
    base_url: str
    search_url: str
    max_pages: int
    detail_pattern: str
    card_selectors: tuple[str, ...]
    title_selectors: tuple[str, ...] = ("h2", "h3", ".title", "[class*=title]")
    price_selectors: tuple[str, ...] = (".price", "[class*=price]")
    moq_selectors: tuple[str, ...] = (".moq", "[class*=moq]", "[class*=min-order]")
    store_selectors: tuple[str, ...] = (".company-name", "[class*=company]", "[class*=supplier]")
    description_selectors: tuple[str, ...] = (".desc", "[class*=desc]")
    detail_image_selectors: tuple[str, ...] = ()
    detail_supplier_selectors: tuple[str, ...] = ()
    detail_attribute_rows: tuple[tuple[str, str, str], ...] = ()
    fallback_search_url: Optional[str] = None
    requires_moq: bool = False
    per_page: int = 40

    def search_page_url(self, query: str, page: int, fallback: bool = False) -> str:
        template = self.fallback_search_url if fallback else self.search_url
        return template.format(q=quote_plus(query), page=page)

    def is_detail_url(self, href: str) -> bool:
        return bool(re.search(self.detail_pattern, href or "", re.IGNORECASE))

    def absolute(self, href: str) -> Optional[str]:
        href = (href or "").strip()
        if not href or href.startswith(("javascript:", "#", "mailto:")):
            return None
        if href.startswith("//"):
            return "https:" + href
        try:
            return urljoin(self.base_url, href)
        except ValueError:
            return None


ALIBABA_CONFIG = PlatformConfig(
    platform=Platform.ALIBABA,
    base_url="https://www.alibaba.com",
    search_url="https://www.alibaba.com/trade/search?SearchText={q}&page={page}",
    max_pages=5,
    detail_pattern=r"/product-detail/",
    card_selectors=(
        ".organic-list .list-no-v2-outter",
        ".fy23-search-card",
        ".search-card-item",
        ".organic-gallery-offer-outter",
        "[data-content='productItem']",
    ),
    title_selectors=(".search-card-e-title", ".elements-title-normal__content", "h2", ".title"),
    price_selectors=(".search-card-e-price-main", ".elements-offer-price-normal", "[class*=price]"),
    moq_selectors=(".search-card-m-sale-features__item", ".element-offer-minorder-normal", "[class*=moq]", "[class*=min-order]"),
    store_selectors=(".search-card-e-company", ".organic-gallery-offer__seller-company", "[class*=company]"),
    detail_image_selectors=(".main-image img", ".image-list img", "[class*=gallery] img", ".detail-gallery-img"),
    detail_supplier_selectors=(".company-name a", ".company-name", "[class*=supplier-name]"),
    detail_attribute_rows=(
        (".attribute-item", ".left", ".right"),
        (".do-entry-item", ".do-entry-item-key", ".do-entry-item-val"),
        ("[class*=attribute-list] [class*=item]", "[class*=name]", "[class*=value]"),
    ),
    requires_moq=True,
    per_page=48,
)

C1688_CONFIG = PlatformConfig(
    platform=Platform.C1688,
    base_url="https://s.1688.com",
    search_url="https://s.1688.com/selloffer/offer_search.htm?keywords={q}&n=y&beginPage={page}",
    fallback_search_url="https://m.1688.com/offer_search/-{q}.html?beginPage={page}",
    max_pages=5,
    detail_pattern=r"(?:detail|offer)\.1688\.com|/offer/",
    card_selectors=(".sm-offer-item", ".offer-list-row .offer-item", ".space-offer-card-box", "[data-offerid]"),
    title_selectors=(".title", ".offer-title", "[class*=title]"),
    price_selectors=(".price", ".sm-offer-priceNum", "[class*=price]"),
    moq_selectors=("[class*=sale-quantity]", "[class*=moq]", "[class*=quantity]"),
    store_selectors=(".company-name", "[class*=company]", "[class*=shop]"),
    detail_image_selectors=(".detail-gallery-img", ".od-gallery img", "[class*=gallery] img"),
    detail_supplier_selectors=(".company-name", "[class*=companyName]", "[class*=shop-name]"),
    detail_attribute_rows=(
        (".offer-attr-item", ".offer-attr-item-name", ".offer-attr-item-value"),
        ("[class*=attribute] [class*=item]", "[class*=name]", "[class*=value]"),
    ),
    requires_moq=False,
    per_page=60,
)

MADE_IN_CHINA_CONFIG = PlatformConfig(
    platform=Platform.MADE_IN_CHINA,
    base_url="https://www.made-in-china.com",
    search_url="https://www.made-in-china.com/products-search/hot-china-products/{q}.html?page={page}",
    fallback_search_url="https://www.made-in-china.com/productdirectory.do?word={q}&page={page}",
    max_pages=10,
    detail_pattern=r"/product/|/prod[-_]",
    card_selectors=(".products-item", ".prd-list", ".product-item", ".prd-item", ".list-item", ".result-item", ".pro-item", "li[data-title]"),
    title_selectors=(".product-name", "h2", "h3", ".title"),
    price_selectors=(".price", ".prd-price", "[class*=price]"),
    moq_selectors=(".info", "[class*=moq]", "[class*=min-order]"),
    store_selectors=(".company-name", ".supplier", ".s-company"),
    detail_image_selectors=("ul.sr-proMainInfo-slide-pageUl li.J-pic-dot img", ".sr-proMainInfo-slide-pageInside img", ".J-proSlide-content img"),
    detail_supplier_selectors=(".sr-comInfo-title .title-txt a", ".sr-comInfo-title a", ".company-name"),
    detail_attribute_rows=(
        (".sr-proMainInfo-baseInfo-propertyAttr tr", "th", "td"),
        (".basic-info-list .bsc-item", ".bac-item-label", ".bac-item-value"),
    ),
    requires_moq=False,
    per_page=30,
)

INDIAMART_CONFIG = PlatformConfig(
    platform=Platform.INDIAMART,
    base_url="https://dir.indiamart.com",
    search_url="https://dir.indiamart.com/search.mp?ss={q}&pg={page}",
    max_pages=20,
    detail_pattern=r"/proddetail/|indiamart\.com/.+\.html",
    card_selectors=(".prod_box", ".prod-card", ".lst-product", ".product-card", ".prd", ".p_card", ".card"),
    title_selectors=(".prd-name", ".producttitle", "h2", "h3", ".title"),
    price_selectors=(".pdp-price", ".price", ".prd-prc", ".r_price"),
    moq_selectors=(".moq", ".min-order", ".order-qty"),
    store_selectors=(".cmp-name", ".cmp-title", ".company-name", ".companyname"),
    description_selectors=(".prod-dtls", ".desc", ".prd-desc", ".specs"),
    detail_image_selectors=(".prd_img img", "#prdimgdiv", "[class*=gallery] img"),
    detail_supplier_selectors=(".cmpny-nm", ".company-name", "[class*=companyName]"),
    detail_attribute_rows=(
        (".dtlsec1 tr", "td:nth-of-type(1)", "td:nth-of-type(2)"),
        (".isq-row", ".isq-label", ".isq-value"),
    ),
    requires_moq=False,
    per_page=20,
)

PLATFORM_CONFIGS: dict[Platform, PlatformConfig] = {
    Platform.ALIBABA: ALIBABA_CONFIG,
    Platform.C1688: C1688_CONFIG,
    Platform.MADE_IN_CHINA: MADE_IN_CHINA_CONFIG,
    Platform.INDIAMART: INDIAMART_CONFIG,
}


# =============================================================================
# Extraction helpers
# =============================================================================

def clean_text(value: Optional[str]) -> str:
    if not value:
        return ""
    value = re.sub(r"Previous\s*slide|Next\s*slide", "", value, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", value).strip()


def _select_text(node: Tag, selectors: Iterable[str]) -> Optional[str]:
    for selector in selectors:
        found = node.select_one(selector)
        if found is not None:
            text = clean_text(found.get_text(" ", strip=True))
            if text:
                return text
    return None


def _img_src(img: Tag, base: str) -> Optional[str]:
    for attr in ("data-src", "data-original", "data-zoom", "data-lazy-src", "src"):
        candidate = normalize_image_url(img.get(attr), base)
        if candidate:
            return upgrade_thumbnail(candidate)
    srcset = img.get("srcset") or ""
    first = srcset.split(",")[0].strip().split(" ")[0] if srcset else ""
    candidate = normalize_image_url(first, base)
    return upgrade_thumbnail(candidate) if candidate else None


def _image_from(node: Tag, base: str) -> Optional[str]:
    """First usable image on ``node`` itself or among its descendants."""
    images = [node] if node.name == "img" else node.find_all("img")
    for img in images:
        src = _img_src(img, base)
        if src:
            return src
    return None


def _build_listing(
    config: PlatformConfig,
    url: str,
    title: str,
    image: Optional[str] = None,
    price: Optional[str] = None,
    moq: Optional[str] = None,
    store_name: Optional[str] = None,
    description: Optional[str] = None,
) -> Optional[ExternalListing]:
    absolute = config.absolute(url)
    title = clean_text(title)
    if not absolute or not title:
        return None
    return ExternalListing(
        platform=config.platform,
        url=normalize_url(absolute),
        title=title[:300],
        image=image,
        price=price or None,
        moq=moq or None,
        store_name=store_name or None,
        description=description[:1000] if description else None,
    )


def parse_cards(soup: BeautifulSoup, config: PlatformConfig) -> list[ExternalListing]:
    """Tier 1: structured result cards."""
    out: list[ExternalListing] = []
    for card in soup.select(", ".join(config.card_selectors)):
        link = next(
            (a for a in card.find_all("a", href=True) if config.is_detail_url(a["href"])),
            None,
        )
        if link is None:
            continue
        title = _select_text(card, config.title_selectors) or link.get("title") or link.get_text(" ", strip=True)
        card_text = clean_text(card.get_text(" ", strip=True))
        listing = _build_listing(
            config,
            url=link["href"],
            title=title,
            image=_image_from(card, config.base_url),
            price=_select_text(card, config.price_selectors) or find_price_text(card_text),
            moq=_select_text(card, config.moq_selectors),
            store_name=_select_text(card, config.store_selectors),
            description=_select_text(card, config.description_selectors),
        )
        if listing:
            out.append(listing)
    return out


def parse_anchors(soup: BeautifulSoup, config: PlatformConfig) -> list[ExternalListing]:
    """Tier 2: any detail-page link with a usable title."""
    out: list[ExternalListing] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if not config.is_detail_url(href):
            continue
        title = clean_text(anchor.get("title") or anchor.get_text(" ", strip=True))
        if len(title) < 6:
            continue
        absolute = config.absolute(href)
        key = normalize_url(absolute) if absolute else None
        if not key or key in seen:
            continue
        seen.add(key)

        container = anchor.find_parent(["li", "div"]) or anchor
        container_text = clean_text(container.get_text(" ", strip=True))
        listing = _build_listing(
            config,
            url=href,
            title=title,
            image=_image_from(container, config.base_url),
            price=find_price_text(container_text),
            moq=_select_text(container, config.moq_selectors),
            store_name=_select_text(container, config.store_selectors),
        )
        if listing:
            out.append(listing)
    return out


SCRIPT_LIST_KEYS = ("offerList", "resultList", "productList", "itemList", "offers", "list")
TITLE_KEYS = ("title", "productTitle", "subject", "name")
URL_KEYS = ("productUrl", "detailUrl", "offerUrl", "url", "link")
IMAGE_KEYS = ("imageUrl", "imgUrl", "image", "mainImage", "picUrl")
PRICE_KEYS = ("priceString", "displayPrice", "price", "minPrice", "priceRange")
MOQ_KEYS = ("minOrder", "moq", "minOrderQuantity", "quantityBegin", "orderMin")
STORE_KEYS = ("companyName", "supplierName", "storeName", "shopName")

_decoder = json.JSONDecoder()


def _first_scalar(item: dict, keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = item.get(key)
        if isinstance(value, list) and value:
            value = value[0]
        if isinstance(value, (str, int, float)) and str(value).strip():
            return str(value).strip()
    return None


def _json_arrays(text: str) -> Iterable[list]:
    for key in SCRIPT_LIST_KEYS:
        for match in re.finditer(rf'"{key}"\s*:\s*\[', text):
            try:
                value, _ = _decoder.raw_decode(text, match.end() - 1)
            except ValueError:
                continue
            if isinstance(value, list):
                yield value


def _ld_products(data: Any) -> Iterable[dict]:
    items = data if isinstance(data, list) else [data]
    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("@type") == "Product":
            yield item
        elif item.get("@type") == "ItemList":
            for element in item.get("itemListElement") or []:
                if isinstance(element, dict):
                    yield element.get("item", element)


def parse_script_json(soup: BeautifulSoup, config: PlatformConfig) -> list[ExternalListing]:
    """Tier 3: offer arrays and JSON-LD embedded in script tags."""
    out: list[ExternalListing] = []
    for script in soup.find_all("script"):
        text = script.string or script.get_text() or ""
        if not text.strip():
            continue

        if "ld+json" in (script.get("type") or ""):
            try:
                products = list(_ld_products(json.loads(text)))
            except ValueError:
                products = []
            for product in products:
                offers = product.get("offers") if isinstance(product.get("offers"), dict) else {}
                price = _first_scalar(offers, ("price", "lowPrice"))
                if price and offers.get("priceCurrency"):
                    price = f"{offers['priceCurrency']} {price}"
                listing = _build_listing(
                    config,
                    url=_first_scalar(product, ("url",)) or "",
                    title=_first_scalar(product, ("name",)) or "",
                    image=normalize_image_url(_first_scalar(product, ("image",)), config.base_url),
                    price=price,
                )
                if listing:
                    out.append(listing)
            continue

        for array in _json_arrays(text):
            for item in array:
                if not isinstance(item, dict):
                    continue
                image = normalize_image_url(_first_scalar(item, IMAGE_KEYS), config.base_url)
                listing = _build_listing(
                    config,
                    url=_first_scalar(item, URL_KEYS) or "",
                    title=_first_scalar(item, TITLE_KEYS) or "",
                    image=upgrade_thumbnail(image) if image else None,
                    price=_first_scalar(item, PRICE_KEYS),
                    moq=_first_scalar(item, MOQ_KEYS),
                    store_name=_first_scalar(item, STORE_KEYS),
                )
                if listing:
                    out.append(listing)
        if out:
            break
    return out


def extract_listings(html: str, config: PlatformConfig) -> tuple[list[ExternalListing], ExtractionPath]:
    """Run the extraction tiers in order; the first non-empty tier wins."""
    if not html:
        return [], ExtractionPath.NONE
    soup = BeautifulSoup(html, HTML_PARSER)
    tiers = (
        (ExtractionPath.CARDS, parse_cards),
        (ExtractionPath.ANCHORS, parse_anchors),
        (ExtractionPath.SCRIPT, parse_script_json),
    )
    for path, tier in tiers:
        found = tier(soup, config)
        if found:
            return found, path
    return [], ExtractionPath.NONE


def parse_detail(html: str, config: PlatformConfig, url: str) -> ListingDetail:
    """Attributes, hero image, price, MOQ and supplier from a detail page."""
    soup = BeautifulSoup(html or "", HTML_PARSER)
    attributes: list[tuple[str, str]] = []
    seen: set[str] = set()

    def add(label: Optional[str], value: Optional[str]) -> None:
        label = clean_text(label).rstrip(":：").strip()
        value = clean_text(value)
        if not label or not value or len(label) > 80 or label.lower() in seen:
            return
        seen.add(label.lower())
        attributes.append((label, value[:500]))

    for row_selector, label_selector, value_selector in config.detail_attribute_rows:
        for row in soup.select(row_selector):
            label = row.select_one(label_selector)
            value = row.select_one(value_selector)
            if label is not None and value is not None:
                add(label.get_text(" ", strip=True), value.get_text(" ", strip=True))

    for row in soup.select("table tr"):
        cells = row.find_all(["th", "td"], recursive=False)
        if len(cells) == 2:
            add(cells[0].get_text(" ", strip=True), cells[1].get_text(" ", strip=True))

    for dl in soup.find_all("dl"):
        for dt, dd in zip(dl.find_all("dt"), dl.find_all("dd")):
            add(dt.get_text(" ", strip=True), dd.get_text(" ", strip=True))

    hero = None
    for selector in config.detail_image_selectors:
        node = soup.select_one(selector)
        if node is not None:
            hero = _image_from(node, config.base_url)
            if hero:
                break
    if not hero:
        meta = soup.find("meta", attrs={"property": "og:image"}) or soup.find("meta", attrs={"name": "twitter:image"})
        if meta is not None:
            hero = normalize_image_url(meta.get("content"), config.base_url)

    page_text = clean_text(soup.get_text(" ", strip=True))
    moq_value = extract_moq(page_text)
    supplier = None
    for selector in config.detail_supplier_selectors:
        node = soup.select_one(selector)
        if node is not None and clean_text(node.get_text(" ", strip=True)):
            supplier = clean_text(node.get_text(" ", strip=True))
            break

    return ListingDetail(
        url=url,
        attributes=attributes,
        hero_image=hero,
        price_text=_select_text(soup, config.price_selectors) or find_price_text(page_text),
        moq=str(moq_value) if moq_value is not None else None,
        supplier_name=supplier,
    )


# =============================================================================
# Fetch strategies
# =============================================================================

STATIC = "static"
RENDERED = "rendered"


def choose_strategy(
    options: FetchOptions,
    static_count: Optional[int] = None,
    threshold: int = 10,
) -> Optional[str]:
    """
    Decide the next transport for an adapter call.

    Returns ``"rendered"`` when headless is forced, ``"static"`` for the first
    attempt otherwise, ``"rendered"`` again when the static attempt yielded
    fewer than ``threshold`` listings and headless escalation is allowed, and
    ``None`` when no further attempt is warranted.
    """
    if options.force_headless:
        return RENDERED if static_count is None else None
    if static_count is None:
        return STATIC
    if options.headless and static_count < threshold:
        return RENDERED
    return None


class FetchStrategy(ABC):
    """Paginates search pages through one transport."""

    name = "base"

    def __init__(self, fetcher, max_pages: Optional[int] = None):
        self.fetcher = fetcher
        self.max_pages = max_pages

    def page_cap(self, config: PlatformConfig, limit: int) -> int:
        """Pages worth fetching for ``limit`` results, plus one for short pages."""
        wanted = math.ceil(max(1, limit) / max(1, config.per_page)) + 1
        return max(1, min(config.max_pages, self.max_pages or config.max_pages, wanted))

    @abstractmethod
    async def fetch_page(self, url: str) -> FetchOutcome:
        pass

    async def collect(self, config: PlatformConfig, query: str, limit: int) -> ProviderReport:
        report = ProviderReport(platform=config.platform, strategy=self.name)
        seen: set[str] = set()
        cap = self.page_cap(config, limit)

        # Set once the fallback template answered page 1; later pages follow it
        use_fallback = False

        for page in range(1, cap + 1):
            outcome = await self.fetch_page(config.search_page_url(query, page, fallback=use_fallback))
            report.pages += 1
            if outcome.blocked:
                report.blocked = True
                report.block_reason = outcome.block_reason
                break

            items, path = self._extract(outcome, config, report)
            if not items and page == 1 and config.fallback_search_url:
                fallback = await self.fetch_page(config.search_page_url(query, page, fallback=True))
                report.pages += 1
                if fallback.blocked:
                    report.blocked = True
                    report.block_reason = fallback.block_reason
                    break
                items, path = self._extract(fallback, config, report)
                use_fallback = bool(items)
                if use_fallback:
                    logger.debug("fallback_search_url_used", platform=config.platform.value, query=query)

            fresh = []
            for item in items:
                if item.url in seen:
                    continue
                seen.add(item.url)
                fresh.append(item)
            if not fresh:
                if outcome.error is None:
                    break
                continue
            if report.path == ExtractionPath.NONE:
                report.path = path
            report.listings.extend(fresh)
            if len(report.listings) >= limit:
                break

        return report

    @staticmethod
    def _extract(
        outcome: FetchOutcome,
        config: PlatformConfig,
        report: ProviderReport,
    ) -> tuple[list[ExternalListing], ExtractionPath]:
        if outcome.error:
            report.errors.append(f"{outcome.url}: {outcome.error}")
            return [], ExtractionPath.NONE
        try:
            return extract_listings(outcome.html, config)
        except Exception as e:
            report.errors.append(f"{outcome.url}: parse {type(e).__name__}: {e}")
            logger.debug("extraction_failed", platform=config.platform.value, url=outcome.url, error=str(e))
            return [], ExtractionPath.NONE


class StaticStrategy(FetchStrategy):
    name = STATIC

    async def fetch_page(self, url: str) -> FetchOutcome:
        return await self.fetcher.fetch(url)


class RenderedStrategy(FetchStrategy):
    """Rendering is slow; pagination stops after a few pages."""

    name = RENDERED

    def __init__(self, fetcher, max_pages: Optional[int] = 3):
        super().__init__(fetcher, max_pages=max_pages)

    async def fetch_page(self, url: str) -> FetchOutcome:
        return await self.fetcher.fetch(url)


# =============================================================================
# Adapters
# =============================================================================

class ProviderAdapter(ABC):
    """
    Abstract base class for marketplace adapters.

    Adapters never raise for remote problems; failures surface through the
    ``ProviderReport`` (``blocked`` / ``errors``) and an empty listing list.
    """

    platform: Platform

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._status = ProviderStatus.AVAILABLE
        self._last_error: Optional[str] = None
        self._request_count = 0
        self._error_count = 0

    @property
    def name(self) -> str:
        return self.platform.value

    @property
    def status(self) -> ProviderStatus:
        return self._status

    @abstractmethod
    async def fetch_with_report(
        self,
        query: str,
        limit: int,
        options: Optional[FetchOptions] = None,
    ) -> ProviderReport:
        """Search the marketplace and report how it went."""
        pass

    async def fetch(
        self,
        query: str,
        limit: int,
        options: Optional[FetchOptions] = None,
    ) -> list[ExternalListing]:
        report = await self.fetch_with_report(query, limit, options)
        return report.listings

    @abstractmethod
    async def fetch_detail(self, url: str, options: Optional[FetchOptions] = None) -> ListingDetail:
        """Visit one listing's detail page."""
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> "ProviderAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _update_status(self, report: ProviderReport) -> None:
        """Update provider status based on a call result."""
        self._request_count += 1
        if report.blocked:
            self._error_count += 1
            self._last_error = report.block_reason
            self._status = ProviderStatus.BLOCKED
        elif report.failed:
            self._error_count += 1
            self._last_error = report.errors[-1] if report.errors else None
            if self._error_count >= 3:
                self._status = ProviderStatus.ERROR
        else:
            self._error_count = 0
            self._status = ProviderStatus.AVAILABLE

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self._status.value,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "last_error": self._last_error,
        }


class MarketplaceAdapter(ProviderAdapter):
    """Config-driven adapter shared by every supported marketplace."""

    config: PlatformConfig
    max_image_upgrades = 12

    def __init__(
        self,
        settings: Optional[Settings] = None,
        static_fetcher: Optional[StaticFetcher] = None,
        rendered_fetcher: Optional[RenderedFetcher] = None,
        image_cache: Optional[ImageCache] = None,
        config: Optional[PlatformConfig] = None,
    ):
        super().__init__(settings)
        if config is not None:
            self.config = config
        self.platform = self.config.platform
        self._owns_static = static_fetcher is None
        self._owns_rendered = rendered_fetcher is None
        self.static_fetcher = static_fetcher or StaticFetcher(self.settings)
        self.rendered_fetcher = rendered_fetcher or RenderedFetcher(self.settings)
        self.image_cache = image_cache

    async def close(self) -> None:
        if self._owns_static:
            await self.static_fetcher.close()
        if self._owns_rendered:
            await self.rendered_fetcher.close()

    def _static(self) -> StaticStrategy:
        return StaticStrategy(self.static_fetcher)

    def _rendered(self) -> RenderedStrategy:
        return RenderedStrategy(self.rendered_fetcher)

    async def fetch_with_report(
        self,
        query: str,
        limit: int,
        options: Optional[FetchOptions] = None,
    ) -> ProviderReport:
        options = options or FetchOptions()
        started = time.monotonic()
        threshold = self.settings.headless_escalation_threshold

        if choose_strategy(options, None, threshold) == RENDERED:
            report = await self._rendered().collect(self.config, query, limit)
        else:
            report = await self._static().collect(self.config, query, limit)
            if choose_strategy(options, len(report.listings), threshold) == RENDERED:
                rendered = await self._rendered().collect(self.config, query, limit)
                if options.debug:
                    logger.debug(
                        "headless_escalation",
                        platform=self.name,
                        static_count=len(report.listings),
                        rendered_count=len(rendered.listings),
                    )
                if len(rendered.listings) > len(report.listings):
                    rendered.errors = report.errors + rendered.errors
                    rendered.pages += report.pages
                    report = rendered

        report.listings = self._finalize(report, limit)

        if options.upgrade_images:
            await self._upgrade_images(report.listings, options)
        if options.cache_images and self.image_cache is not None:
            await self._cache_images(report.listings)

        report.elapsed_ms = int((time.monotonic() - started) * 1000)
        self._update_status(report)
        if options.debug:
            logger.debug("adapter_report", platform=self.name, **report.diagnostics())
        return report

    def _finalize(self, report: ProviderReport, limit: int) -> list[ExternalListing]:
        enriched = [enrich_listing(item) for item in report.listings]
        if self.config.requires_moq:
            kept = [item for item in enriched if item.moq_value is not None]
            report.dropped_no_moq = len(enriched) - len(kept)
            enriched = kept
        return enriched[:limit]

    async def _upgrade_images(self, listings: list[ExternalListing], options: FetchOptions) -> None:
        missing = [i for i, item in enumerate(listings) if not item.image][: self.max_image_upgrades]
        if not missing:
            return
        detail_options = FetchOptions(headless=False, debug=options.debug)
        details = await asyncio.gather(
            *(self.fetch_detail(listings[i].url, detail_options) for i in missing),
            return_exceptions=True,
        )
        for i, detail in zip(missing, details):
            if isinstance(detail, ListingDetail) and detail.hero_image:
                listings[i] = listings[i].model_copy(update={"image": detail.hero_image})
            elif isinstance(detail, Exception):
                logger.debug("image_upgrade_failed", platform=self.name, url=listings[i].url, error=str(detail))

    async def _cache_images(self, listings: list[ExternalListing]) -> None:
        for i, item in enumerate(listings):
            if not item.image:
                continue
            local = await self.image_cache.fetch(item.image)
            if local is not None:
                listings[i] = item.model_copy(update={"image": str(local)})

    async def fetch_detail(self, url: str, options: Optional[FetchOptions] = None) -> ListingDetail:
        options = options or FetchOptions(headless=False)
        attempts: list[tuple[str, Any]] = []
        if not options.force_headless:
            attempts.append((STATIC, self.static_fetcher))
        if options.headless or options.force_headless:
            attempts.append((RENDERED, self.rendered_fetcher))

        detail = ListingDetail(url=url)
        for source, fetcher in attempts:
            outcome = await fetcher.fetch(url)
            if outcome.blocked:
                return ListingDetail(
                    url=url,
                    status=outcome.status,
                    blocked=True,
                    block_reason=outcome.block_reason,
                    source=source,
                )
            if outcome.error or not outcome.html:
                detail = ListingDetail(url=url, status=outcome.status, source=source)
                continue
            try:
                parsed = parse_detail(outcome.html, self.config, url)
            except Exception as e:
                logger.debug("detail_parse_failed", platform=self.name, url=url, error=str(e))
                detail = ListingDetail(url=url, status=outcome.status, source=source)
                continue
            detail = parsed.model_copy(update={"status": outcome.status, "source": source})
            if detail.attribute_count > 0:
                break
        return detail


class AlibabaAdapter(MarketplaceAdapter):
    config = ALIBABA_CONFIG


class C1688Adapter(MarketplaceAdapter):
    config = C1688_CONFIG


class MadeInChinaAdapter(MarketplaceAdapter):
    config = MADE_IN_CHINA_CONFIG


class IndiaMartAdapter(MarketplaceAdapter):
    config = INDIAMART_CONFIG


# =============================================================================
# Registry
# =============================================================================

PROVIDER_REGISTRY: dict[Platform, type[ProviderAdapter]] = {
    Platform.ALIBABA: AlibabaAdapter,
    Platform.C1688: C1688Adapter,
    Platform.MADE_IN_CHINA: MadeInChinaAdapter,
    Platform.INDIAMART: IndiaMartAdapter,
}


def get_adapter(platform, settings: Optional[Settings] = None, **kwargs) -> ProviderAdapter:
    """Instantiate the registered adapter for ``platform``."""
    try:
        key = Platform.parse(platform)
        adapter_cls = PROVIDER_REGISTRY[key]
    except (KeyError, ValueError) as e:
        raise UnsupportedPlatformError(f"Unsupported platform: {platform}") from e
    return adapter_cls(settings=settings, **kwargs)


def create_adapters(
    platforms: Optional[Iterable[Platform]] = None,
    settings: Optional[Settings] = None,
    static_fetcher: Optional[StaticFetcher] = None,
    rendered_fetcher: Optional[RenderedFetcher] = None,
    image_cache: Optional[ImageCache] = None,
) -> dict[Platform, ProviderAdapter]:
    """Adapters for every requested platform sharing one pair of transports."""
    settings = settings or get_settings()
    static_fetcher = static_fetcher or StaticFetcher(settings)
    rendered_fetcher = rendered_fetcher or RenderedFetcher(settings)
    return {
        Platform.parse(p): get_adapter(
            p,
            settings=settings,
            static_fetcher=static_fetcher,
            rendered_fetcher=rendered_fetcher,
            image_cache=image_cache,
        )
        for p in (platforms or PROVIDER_REGISTRY.keys())
    }


__all__ = [
    "ProviderStatus",
    "ExtractionPath",
    "FetchOptions",
    "ProviderReport",
    "PlatformConfig",
    "PLATFORM_CONFIGS",
    "ALIBABA_CONFIG",
    "C1688_CONFIG",
    "MADE_IN_CHINA_CONFIG",
    "INDIAMART_CONFIG",
    "clean_text",
    "parse_cards",
    "parse_anchors",
    "parse_script_json",
    "extract_listings",
    "parse_detail",
    "choose_strategy",
    "FetchStrategy",
    "StaticStrategy",
    "RenderedStrategy",
    "ProviderAdapter",
    "MarketplaceAdapter",
    "AlibabaAdapter",
    "C1688Adapter",
    "MadeInChinaAdapter",
    "IndiaMartAdapter",
    "PROVIDER_REGISTRY",
    "get_adapter",
    "create_adapters",
]
