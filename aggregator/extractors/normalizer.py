"""
Listing normalization helpers.

Pure functions that turn the raw display strings scraped from marketplace
cards into comparable values: price ranges with a currency, minimum order
quantities, order counts, canonical listing URLs and absolute image URLs.

None of these functions raise on malformed input; anything that cannot be
parsed yields ``None`` (or the input unchanged, for URLs).
"""

import re
from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from aggregator.models.schemas import ExternalListing, PriceInfo


# =============================================================================
# Patterns
# =============================================================================

NUMBER = r"\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?"

CURRENCY_CODES = {
    "US$": "USD",
    "$": "USD",
    "USD": "USD",
    "RMB": "CNY",
    "CNY": "CNY",
    "¥": "CNY",
    "￥": "CNY",
    "元": "CNY",
    "₹": "INR",
    "INR": "INR",
    "RS": "INR",
    "RS.": "INR",
    "€": "EUR",
    "EUR": "EUR",
}

_PREFIX_MARKER = r"(?<![A-Za-z])(US\$|USD|RMB|CNY|INR|EUR|Rs\.?|[$¥￥₹€])"

PREFIX_PRICE_PATTERN = re.compile(
    _PREFIX_MARKER
    + rf"\s*({NUMBER})"
    + rf"(?:\s*[-~–—]\s*(?:{_PREFIX_MARKER}\s*)?({NUMBER}))?",
    re.IGNORECASE,
)

SUFFIX_PRICE_PATTERN = re.compile(
    rf"({NUMBER})(?:\s*[-~–—]\s*({NUMBER}))?\s*(USD|RMB|CNY|INR|EUR|元)(?![A-Za-z])",
    re.IGNORECASE,
)

CURRENCY_MARKER_PATTERN = re.compile(
    r"(?<![A-Za-z])(?:US\$|USD|RMB|CNY|INR|EUR|Rs\.)(?![A-Za-z])|[$¥￥₹€元]",
    re.IGNORECASE,
)

MOQ_MARKER_PATTERN = re.compile(
    r"(?:\bMOQ\b|\bMin\.?\s*Order(?:\s*Quantity)?|\bMinimum\s+Order(?:\s+Quantity)?|≥|>=)"
    rf"\s*[:：]?\s*({NUMBER})",
    re.IGNORECASE,
)

MOQ_CHINESE_PATTERNS = [
    re.compile(rf"(?:最小起订量|最低起订量|起订量|起订|起批量|起批)\s*[:：]?\s*[≥>]?\s*({NUMBER})"),
    re.compile(rf"({NUMBER})\s*(?:件|个|套|双|箱|台|只|条|米|公斤|千克|把|张|包)?\s*起(?:批|订)"),
]

MOQ_UNIT_PATTERN = re.compile(
    rf"({NUMBER})\s*(?:pcs|pc|pieces?|pairs?|sets?|units?|bags?|lots?|boxes|box|cartons?|"
    r"rolls?|meters?|metres?|kgs?|kilograms?|tons?|tonnes?|dozens?|sheets?|square\s+meters?)\b",
    re.IGNORECASE,
)

ORDERS_PATTERN = re.compile(r"(\d[\d,\.]*?)\s*\+?\s*(?:sold|orders?)\b", re.IGNORECASE)

PLACEHOLDER_IMAGE_PATTERN = re.compile(
    r"(?:^|/)(?:blank|spacer|placeholder|loading|lazyload|lazy|transparent|default)[-_]?\w*\.(?:gif|png|svg)"
    r"|(?:^|/|_)1x1[^/]*\.(?:gif|png)",
    re.IGNORECASE,
)

THUMBNAIL_SUFFIX_PATTERN = re.compile(
    r"(\.(?:jpe?g|png|webp))_\d+x\d+(?:q\d+)?\.(?:jpe?g|png|webp)(?:_\.webp)?$",
    re.IGNORECASE,
)


def _to_number(raw: str) -> Optional[float]:
    try:
        return float(raw.replace(",", ""))
    except (AttributeError, ValueError):
        return None


def _currency_for(marker: str) -> str:
    return CURRENCY_CODES.get(marker.upper(), CURRENCY_CODES.get(marker, "USD"))


# =============================================================================
# Price / MOQ / Orders
# =============================================================================

def has_currency_marker(text: Optional[str]) -> bool:
    return bool(text) and bool(CURRENCY_MARKER_PATTERN.search(text))


def extract_price(text: Optional[str]) -> Optional[PriceInfo]:
    """
    Parse a price or price range from a display string.

    A currency marker adjacent to the number is required. Prefix markers
    ("US$1.20", "¥ 35") are tried before suffix codes ("35 元", "12 USD");
    the first match wins. A range yields distinct min and max.

    Examples:
        >>> extract_price("US$1.20 - 3.50 / piece").price_max
        3.5
        >>> extract_price("1.20") is None
        True
    """
    if not text or not isinstance(text, str):
        return None

    match = PREFIX_PRICE_PATTERN.search(text)
    if match:
        marker, low, _, high = match.group(1), match.group(2), match.group(3), match.group(4)
    else:
        match = SUFFIX_PRICE_PATTERN.search(text)
        if not match:
            return None
        low, high, marker = match.group(1), match.group(2), match.group(3)

    price_min = _to_number(low)
    if price_min is None:
        return None
    price_max = _to_number(high) if high else price_min
    if price_max is None:
        price_max = price_min

    return PriceInfo(price_min=price_min, price_max=price_max, currency=_currency_for(marker))


def find_price_text(text: Optional[str]) -> Optional[str]:
    """The raw substring that ``extract_price`` would parse, if any."""
    if not text or not isinstance(text, str):
        return None
    match = PREFIX_PRICE_PATTERN.search(text) or SUFFIX_PRICE_PATTERN.search(text)
    return match.group(0).strip() if match else None


def extract_moq(text: Optional[str]) -> Optional[int]:
    """
    Parse a minimum order quantity.

    Tried in order: explicit MOQ markers, Chinese order-start markers, then a
    bare number followed by a unit token. The last form is ignored when the
    text carries a currency marker, so "US$5 / 2 pieces" is not read as MOQ 2.
    """
    if not text or not isinstance(text, str):
        return None

    candidates = [MOQ_MARKER_PATTERN.search(text)]
    candidates.extend(p.search(text) for p in MOQ_CHINESE_PATTERNS)
    if not has_currency_marker(text):
        candidates.append(MOQ_UNIT_PATTERN.search(text))

    for match in candidates:
        if not match:
            continue
        value = _to_number(match.group(1))
        if value is not None and value >= 1:
            return int(value)
    return None


def parse_orders(text: Optional[str]) -> Optional[int]:
    """Read "1,234 sold" / "56 orders" style counters."""
    if not text or not isinstance(text, str):
        return None
    match = ORDERS_PATTERN.search(text)
    if not match:
        return None
    digits = re.sub(r"[,\.]", "", match.group(1))
    return int(digits) if digits.isdigit() else None


# =============================================================================
# URLs
# =============================================================================

def normalize_url(url: Optional[str]) -> Optional[str]:
    """
    Canonical form of a listing URL: query string and fragment removed,
    scheme and host lower-cased.

    Relative or unparseable input is returned unchanged. Idempotent.
    """
    if not url or not isinstance(url, str):
        return url
    candidate = url.strip()
    try:
        parts = urlsplit(candidate)
        if not parts.scheme or not parts.netloc:
            return url
        return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))
    except ValueError:
        return url


def normalize_image_url(src: Optional[str], base: Optional[str] = None) -> Optional[str]:
    """Absolute image URL, or None for data URIs and placeholder images."""
    if not src or not isinstance(src, str):
        return None
    src = src.strip()
    if not src or src.lower().startswith(("data:", "javascript:", "about:")):
        return None
    if PLACEHOLDER_IMAGE_PATTERN.search(src):
        return None

    if src.startswith("//"):
        src = "https:" + src
    elif not src.lower().startswith(("http://", "https://")):
        if not base:
            return None
        try:
            src = urljoin(base, src)
        except ValueError:
            return None

    if not src.lower().startswith(("http://", "https://")):
        return None
    return src


def upgrade_thumbnail(url: Optional[str]) -> Optional[str]:
    """Strip CDN resize suffixes ("a.jpg_220x220q80.jpg" -> "a.jpg")."""
    if not url:
        return url
    return THUMBNAIL_SUFFIX_PATTERN.sub(r"\1", url)


# =============================================================================
# Enrichment
# =============================================================================

def enrich_listing(listing: ExternalListing) -> ExternalListing:
    """
    Fill the derived numeric fields of a listing from its raw strings.

    Existing numeric values are kept. When the raw MOQ string is missing or
    unparseable the price, title and description are scanned instead.
    """
    update: dict = {}

    if listing.price_min is None and listing.price:
        price = extract_price(listing.price)
        if price:
            update.update(
                price_min=price.price_min,
                price_max=price.price_max,
                currency=listing.currency or price.currency,
            )

    if listing.moq_value is None:
        moq = extract_moq(listing.moq)
        if moq is None:
            for text in (listing.price, listing.title, listing.description):
                moq = extract_moq(text)
                if moq is not None:
                    break
        if moq is not None:
            update["moq_value"] = moq

    if listing.orders_count is None and listing.orders:
        orders = parse_orders(listing.orders)
        if orders is not None:
            update["orders_count"] = orders

    if not update:
        return listing
    return listing.model_copy(update=update)


__all__ = [
    "extract_price",
    "find_price_text",
    "extract_moq",
    "parse_orders",
    "has_currency_marker",
    "normalize_url",
    "normalize_image_url",
    "upgrade_thumbnail",
    "enrich_listing",
]
