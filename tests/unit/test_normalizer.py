import pytest

from aggregator.extractors.normalizer import (
    enrich_listing,
    extract_moq,
    extract_price,
    find_price_text,
    normalize_image_url,
    normalize_url,
    parse_orders,
    upgrade_thumbnail,
)
from aggregator.models.schemas import ExternalListing, Platform


# =============================================================================
# Price
# =============================================================================

def test_extract_price_range_with_prefix_marker():
    price = extract_price("US$1.20 - 3.50 / piece")
    assert price.price_min == 1.2
    assert price.price_max == 3.5
    assert price.currency == "USD"


@pytest.mark.parametrize("text,currency,value", [
    ("¥35", "CNY", 35.0),
    ("￥ 12.5", "CNY", 12.5),
    ("35 元", "CNY", 35.0),
    ("Rs. 450 / Piece", "INR", 450.0),
    ("₹ 1,250", "INR", 1250.0),
    ("1,200.50 USD", "USD", 1200.5),
    ("€9.99", "EUR", 9.99),
])
def test_extract_price_currencies(text, currency, value):
    price = extract_price(text)
    assert price is not None
    assert price.currency == currency
    assert price.price_min == value


def test_extract_price_requires_currency_marker():
    assert extract_price("1.20") is None
    assert extract_price("Model 5050 LED") is None


def test_extract_price_handles_empty_input():
    assert extract_price(None) is None
    assert extract_price("") is None


def test_extract_price_swapped_range_is_ordered():
    price = extract_price("US$9.00 - 3.00")
    assert price.price_min == 3.0
    assert price.price_max == 9.0


def test_find_price_text_returns_matched_substring():
    assert find_price_text("Hot sale US$2.50-4.00 per set, 100 sets") == "US$2.50-4.00"
    assert find_price_text("no price here") is None


# =============================================================================
# MOQ / orders
# =============================================================================

@pytest.mark.parametrize("text,expected", [
    ("MOQ: 100 pieces", 100),
    ("Min. Order: 2 Pieces", 2),
    ("Minimum Order Quantity: 1,000 Units", 1000),
    ("100件起批", 100),
    ("起订量: 50", 50),
    ("50 pcs", 50),
    ("≥ 3 sets", 3),
])
def test_extract_moq(text, expected):
    assert extract_moq(text) == expected


def test_extract_moq_ignores_unit_counts_next_to_prices():
    assert extract_moq("US$5 / 2 pieces") is None


def test_extract_moq_unparseable():
    assert extract_moq("contact supplier") is None
    assert extract_moq(None) is None


def test_parse_orders():
    assert parse_orders("1,234 sold") == 1234
    assert parse_orders("56 orders") == 56
    assert parse_orders("new arrival") is None


# =============================================================================
# URLs
# =============================================================================

def test_normalize_url_drops_query_and_fragment():
    url = "HTTPS://WWW.Alibaba.com/product-detail/Widget_1.html?spm=abc#reviews"
    assert normalize_url(url) == "https://www.alibaba.com/product-detail/Widget_1.html"


def test_normalize_url_is_idempotent():
    once = normalize_url("https://www.alibaba.com/product-detail/Widget_1.html?x=1")
    assert normalize_url(once) == once


def test_normalize_url_leaves_relative_input():
    assert normalize_url("/product-detail/Widget_1.html") == "/product-detail/Widget_1.html"
    assert normalize_url("") == ""


def test_normalize_image_url():
    assert normalize_image_url("//img.example.com/a.jpg") == "https://img.example.com/a.jpg"
    assert normalize_image_url("/img/a.jpg", "https://www.example.com/s") == "https://www.example.com/img/a.jpg"
    assert normalize_image_url("/img/a.jpg") is None
    assert normalize_image_url("data:image/gif;base64,R0lGOD") is None
    assert normalize_image_url("https://img.example.com/tps/blank.gif") is None
    assert normalize_image_url("https://img.example.com/i/1x1.png") is None


def test_upgrade_thumbnail():
    assert upgrade_thumbnail("https://s.alicdn.com/kf/a.jpg_220x220q80.jpg") == "https://s.alicdn.com/kf/a.jpg"
    assert upgrade_thumbnail("https://s.alicdn.com/kf/a.jpg") == "https://s.alicdn.com/kf/a.jpg"
    assert upgrade_thumbnail(None) is None


# =============================================================================
# Enrichment
# =============================================================================

def test_enrich_listing_fills_numeric_fields():
    listing = ExternalListing(
        platform=Platform.ALIBABA,
        url="https://www.alibaba.com/product-detail/Widget_1.html",
        title="Widget",
        price="US$2.00-3.00",
        moq="Min. order: 10 pieces",
        orders="120 sold",
    )
    enriched = enrich_listing(listing)
    assert enriched.price_min == 2.0
    assert enriched.price_max == 3.0
    assert enriched.currency == "USD"
    assert enriched.moq_value == 10
    assert enriched.orders_count == 120


def test_enrich_listing_scans_title_for_moq():
    listing = ExternalListing(
        platform=Platform.C1688,
        url="https://detail.1688.com/offer/1.html",
        title="纯棉T恤 100件起批",
    )
    assert enrich_listing(listing).moq_value == 100


def test_enrich_listing_keeps_existing_values():
    listing = ExternalListing(
        platform=Platform.ALIBABA,
        url="https://www.alibaba.com/product-detail/Widget_1.html",
        title="Widget",
        price="US$2.00",
        price_min=1.0,
        moq_value=5,
    )
    assert enrich_listing(listing) is listing
