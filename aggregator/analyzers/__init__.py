"""Analyzers module: listing quality filtering and classification."""

from aggregator.analyzers.quality_filter import (
    QualityFilter,
    classify_quality,
    compile_banned_pattern,
    sort_key,
    sort_listings,
)

__all__ = [
    "QualityFilter",
    "classify_quality",
    "compile_banned_pattern",
    "sort_key",
    "sort_listings",
]
