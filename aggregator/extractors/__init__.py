"""Extractors module: pure normalization of scraped listing fields."""

from aggregator.extractors.normalizer import (
    enrich_listing,
    extract_moq,
    extract_price,
    find_price_text,
    has_currency_marker,
    normalize_image_url,
    normalize_url,
    parse_orders,
    upgrade_thumbnail,
)

__all__ = [
    "enrich_listing",
    "extract_moq",
    "extract_price",
    "find_price_text",
    "has_currency_marker",
    "normalize_image_url",
    "normalize_url",
    "parse_orders",
    "upgrade_thumbnail",
]
