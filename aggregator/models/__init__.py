"""Data models module for the listing aggregation pipeline."""

from aggregator.models.schemas import (
    # Base Models
    BaseModel,
    utcnow,

    # Enums
    Platform,
    Quality,
    LeafState,
    ErrorType,
    ALL_PLATFORMS,

    # Listing Models
    PriceInfo,
    ExternalListing,
    ListingDetail,
    UpsertResult,
    FilterReport,

    # Query Models
    MAX_PAGE_SIZE,
    SearchFilters,
    AggregateQuery,
    AggregateMeta,
    AggregateResult,

    # Taxonomy & Progress
    TaxonomyLeaf,
    CoverageProgress,
    BackfillProgress,

    # Reports
    LeafOutcome,
    RunSummary,
    CoverageSummary,
    StageReport,
    CoverageReport,
    BackfillReport,

    # Errors
    ErrorResponse,
)

__all__ = [
    "BaseModel",
    "utcnow",
    "Platform",
    "Quality",
    "LeafState",
    "ErrorType",
    "ALL_PLATFORMS",
    "PriceInfo",
    "ExternalListing",
    "ListingDetail",
    "UpsertResult",
    "FilterReport",
    "MAX_PAGE_SIZE",
    "SearchFilters",
    "AggregateQuery",
    "AggregateMeta",
    "AggregateResult",
    "TaxonomyLeaf",
    "CoverageProgress",
    "BackfillProgress",
    "LeafOutcome",
    "RunSummary",
    "CoverageSummary",
    "StageReport",
    "CoverageReport",
    "BackfillReport",
    "ErrorResponse",
]
