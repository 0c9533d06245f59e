"""
Quality filter for aggregated listings.

Applies, in order: banned-term exclusion, URL dedup, numeric price/MOQ
bounds and a stable sort. Also owns the detail-quality classification used
by the backfill worker.

Components:
    1. Keyword exclusion - drops service and agent listings
    2. Dedup - first occurrence of each normalized URL wins
    3. Numeric filters - price and MOQ bounds supplied by the caller
    4. Stable sort - (lower-cased title, URL) so pages never jitter
"""

import re
from typing import Iterable, Optional

from aggregator.config.settings import Settings, get_settings
from aggregator.extractors.normalizer import enrich_listing, normalize_url
from aggregator.models.schemas import (
    ExternalListing,
    FilterReport,
    Quality,
    SearchFilters,
)
from aggregator.utils.logger import get_logger

logger = get_logger(__name__)


def compile_banned_pattern(terms: Iterable[str]) -> Optional[re.Pattern]:
    """Single case-insensitive, word-bounded alternation over the terms."""
    cleaned = sorted({t.strip().lower() for t in terms if t and t.strip()}, key=len, reverse=True)
    if not cleaned:
        return None
    alternation = "|".join(re.escape(t).replace(r"\ ", r"\s+") for t in cleaned)
    return re.compile(rf"\b(?:{alternation})\b", re.IGNORECASE)


def classify_quality(
    attribute_count: Optional[int],
    good_threshold: int = 10,
    partial_threshold: int = 1,
) -> Quality:
    """Map a detail attribute count to a quality bucket."""
    if attribute_count is None:
        return Quality.MISSING
    if attribute_count >= good_threshold:
        return Quality.GOOD
    if attribute_count >= partial_threshold:
        return Quality.PARTIAL
    return Quality.BAD


def sort_key(listing: ExternalListing) -> tuple[str, str]:
    return ((listing.title or "").lower(), listing.url or "")


def sort_listings(listings: Iterable[ExternalListing]) -> list[ExternalListing]:
    return sorted(listings, key=sort_key)


class QualityFilter:
    """
    Exclusion, dedup and bounds filtering for one batch of listings.

    Stateless between calls; running ``run`` twice over its own output yields
    the same list.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        banned_terms: Optional[Iterable[str]] = None,
    ):
        self.settings = settings or get_settings()
        terms = banned_terms if banned_terms is not None else self.settings.banned_terms
        self.banned_terms = [t.lower() for t in terms]
        self._banned = compile_banned_pattern(self.banned_terms)

    # -------------------------------------------------------------------------
    # Individual steps
    # -------------------------------------------------------------------------

    def is_excluded(self, listing: ExternalListing) -> bool:
        if self._banned is None:
            return False
        text = f"{listing.title or ''} {listing.description or ''}"
        return bool(self._banned.search(text))

    def exclude(self, listings: Iterable[ExternalListing]) -> list[ExternalListing]:
        return [item for item in listings if not self.is_excluded(item)]

    @staticmethod
    def dedup(listings: Iterable[ExternalListing]) -> list[ExternalListing]:
        """Keep the first listing per normalized URL; drop URL-less entries."""
        seen: set[str] = set()
        unique: list[ExternalListing] = []
        for item in listings:
            key = normalize_url(item.url or "")
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(item)
        return unique

    @staticmethod
    def within_bounds(listing: ExternalListing, filters: Optional[SearchFilters]) -> bool:
        """
        Price uses the low end of the listing's range. A missing price fails
        only a minimum-price bound; a missing MOQ never fails a MOQ bound.
        """
        if filters is None or filters.is_empty:
            return True

        price = listing.price_min
        if filters.min_price is not None and (price is None or price < filters.min_price):
            return False
        if filters.max_price is not None and price is not None and price > filters.max_price:
            return False

        moq = listing.moq_value
        if moq is not None:
            if filters.min_moq is not None and moq < filters.min_moq:
                return False
            if filters.max_moq is not None and moq > filters.max_moq:
                return False
        return True

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def run(
        self,
        listings: Iterable[ExternalListing],
        filters: Optional[SearchFilters] = None,
        sort: bool = True,
    ) -> tuple[list[ExternalListing], FilterReport]:
        """Enrich, exclude, dedup, bound and sort a batch."""
        items = [enrich_listing(item) for item in listings]
        report = FilterReport(input_count=len(items))

        kept = self.exclude(items)
        report.excluded = len(items) - len(kept)

        unique = self.dedup(kept)
        report.duplicates = len(kept) - len(unique)

        bounded = [item for item in unique if self.within_bounds(item, filters)]
        report.out_of_bounds = len(unique) - len(bounded)

        result = sort_listings(bounded) if sort else bounded
        report.kept = len(result)

        logger.debug(
            "quality_filter_run",
            input=report.input_count,
            excluded=report.excluded,
            duplicates=report.duplicates,
            out_of_bounds=report.out_of_bounds,
            kept=report.kept,
        )
        return result, report

    def classify(self, attribute_count: Optional[int]) -> Quality:
        return classify_quality(
            attribute_count,
            good_threshold=self.settings.quality_good_threshold,
            partial_threshold=self.settings.quality_partial_threshold,
        )


__all__ = [
    "QualityFilter",
    "classify_quality",
    "compile_banned_pattern",
    "sort_key",
    "sort_listings",
]
