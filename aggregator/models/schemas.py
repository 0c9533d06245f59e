"""
Pydantic models and schemas for the listing aggregation pipeline.

This module defines all data structures used throughout the pipeline,
ensuring type safety, validation, and serialization consistency.

Models:
    - ExternalListing: One normalized marketplace listing
    - ListingDetail: Detail-page capture used by the backfill worker
    - AggregateQuery / AggregateResult: Live query path input and output
    - TaxonomyLeaf: Static category leaf targeted by the orchestrator
    - CoverageProgress / BackfillProgress: Persisted job checkpoints
    - CoverageReport / BackfillReport: Batch job summaries
    - ErrorResponse: Standardized error handling
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Self, Union

from pydantic import (
    BaseModel as PydanticBaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Base Configuration
# =============================================================================

class BaseModel(PydanticBaseModel):
    """Base model with common configuration for all schemas."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=False,
        populate_by_name=True,
        ser_json_timedelta="iso8601",
    )

    def to_json(self, **kwargs) -> str:
        """Serialize model to JSON string."""
        return self.model_dump_json(indent=2, **kwargs)

    def to_dict(self, **kwargs) -> dict[str, Any]:
        """Serialize model to dictionary."""
        return self.model_dump(**kwargs)

    @classmethod
    def from_json(cls, json_str: str) -> Self:
        """Deserialize model from JSON string."""
        return cls.model_validate_json(json_str)


# =============================================================================
# Enums
# =============================================================================

class Platform(str, Enum):
    """Supported source marketplaces."""
    ALIBABA = "ALIBABA"
    C1688 = "C1688"
    MADE_IN_CHINA = "MADE_IN_CHINA"
    INDIAMART = "INDIAMART"

    @classmethod
    def parse(cls, value: Union[str, "Platform"]) -> "Platform":
        """Case-insensitive lookup accepting both names and common aliases."""
        if isinstance(value, Platform):
            return value
        token = str(value).strip().upper().replace("-", "_")
        aliases = {"1688": "C1688", "MIC": "MADE_IN_CHINA", "MADEINCHINA": "MADE_IN_CHINA"}
        token = aliases.get(token, token)
        return cls(token)


class Quality(str, Enum):
    """Detail capture quality of a stored listing."""
    GOOD = "GOOD"
    PARTIAL = "PARTIAL"
    BAD = "BAD"
    MISSING = "MISSING"


class LeafState(str, Enum):
    """Coverage state of a taxonomy leaf within one orchestrator run."""
    SCANNING = "scanning"
    DEFICIENT = "deficient"
    TOPPING_OFF = "topping_off"
    SATISFIED = "satisfied"
    COOLDOWN = "cooldown"


class ErrorType(str, Enum):
    """Error type classification."""
    VALIDATION_ERROR = "validation_error"
    ALL_PROVIDERS_FAILED = "all_providers_failed"
    UNSUPPORTED_PLATFORM = "unsupported_platform"
    PERSISTENCE_ERROR = "persistence_error"
    TIMEOUT_ERROR = "timeout_error"
    INTERNAL_ERROR = "internal_error"


ALL_PLATFORMS = "ALL"


# =============================================================================
# Listing Models
# =============================================================================

class PriceInfo(BaseModel):
    """Numeric price range parsed from a display string."""

    price_min: float = Field(..., ge=0)
    price_max: float = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @model_validator(mode="after")
    def order_bounds(self) -> Self:
        if self.price_max < self.price_min:
            self.price_min, self.price_max = self.price_max, self.price_min
        return self


class ExternalListing(BaseModel):
    """
    One marketplace listing in the unified schema.

    Raw display strings (``price``, ``moq``, ``orders``) are kept as scraped;
    the numeric fields are derived from them by the normalizer. Identity is
    ``(platform, normalize_url(url))``.
    """

    platform: Platform
    url: str = Field(..., min_length=1)
    title: str = Field(default="")
    image: Optional[str] = None
    description: Optional[str] = None

    price: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    currency: Optional[str] = None

    moq: Optional[str] = None
    moq_value: Optional[int] = Field(default=None, ge=0)

    store_name: Optional[str] = None
    rating: Optional[float] = None
    orders: Optional[str] = None
    orders_count: Optional[int] = Field(default=None, ge=0)

    categories: set[str] = Field(default_factory=set)
    terms: set[str] = Field(default_factory=set)

    @field_validator("platform", mode="before")
    @classmethod
    def coerce_platform(cls, v):
        return Platform.parse(v)

    @field_serializer("categories", "terms")
    def serialize_tags(self, value: set[str]) -> list[str]:
        return sorted(value)

    @property
    def normalized_url(self) -> str:
        from aggregator.extractors.normalizer import normalize_url

        return normalize_url(self.url)

    @property
    def key(self) -> tuple[Platform, str]:
        return (self.platform, self.normalized_url)


class ListingDetail(BaseModel):
    """Result of visiting one listing's detail page."""

    url: str
    attributes: list[tuple[str, str]] = Field(default_factory=list)
    hero_image: Optional[str] = None
    price_text: Optional[str] = None
    moq: Optional[str] = None
    supplier_name: Optional[str] = None
    status: int = 0
    blocked: bool = False
    block_reason: Optional[str] = None
    source: Literal["static", "rendered", "none"] = "none"

    @property
    def attribute_count(self) -> int:
        return len(self.attributes)


class UpsertResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    newly_tagged: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


class FilterReport(BaseModel):
    """Counts produced by one quality filter pass."""

    input_count: int = 0
    excluded: int = 0
    duplicates: int = 0
    out_of_bounds: int = 0
    kept: int = 0


# =============================================================================
# Query Models
# =============================================================================

MAX_PAGE_SIZE = 200


class SearchFilters(BaseModel):
    """Optional numeric bounds; non-positive values mean "no bound"."""

    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_moq: Optional[int] = None
    max_moq: Optional[int] = None

    @field_validator("min_price", "max_price", "min_moq", "max_moq", mode="before")
    @classmethod
    def drop_non_positive(cls, v):
        if v is None or v == "":
            return None
        try:
            if float(v) <= 0:
                return None
        except (TypeError, ValueError):
            return None
        return v

    @property
    def is_empty(self) -> bool:
        return all(
            v is None for v in (self.min_price, self.max_price, self.min_moq, self.max_moq)
        )


class AggregateQuery(BaseModel):
    """A live search request."""

    q: str = Field(..., min_length=1, max_length=200)
    platform: Union[Platform, Literal["ALL"]] = ALL_PLATFORMS
    filters: SearchFilters = Field(default_factory=SearchFilters)
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50)
    headless: bool = True
    force_headless: bool = False
    debug: bool = False
    nocache: bool = False
    prefetch: bool = False

    @field_validator("platform", mode="before")
    @classmethod
    def coerce_platform(cls, v):
        if v is None or str(v).strip().upper() in ("", ALL_PLATFORMS):
            return ALL_PLATFORMS
        return Platform.parse(v)

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v):
        try:
            v = int(v)
        except (TypeError, ValueError):
            return 50
        return max(1, min(v, MAX_PAGE_SIZE))

    @property
    def is_all(self) -> bool:
        return self.platform == ALL_PLATFORMS

    def platforms(self) -> list[Platform]:
        if self.is_all:
            return list(Platform)
        return [self.platform]


class AggregateMeta(BaseModel):
    source: Literal["ephemeral", "snapshot", "live"] = "live"
    platform_counts: dict[str, int] = Field(default_factory=dict)
    failed_platforms: list[str] = Field(default_factory=list)
    blocked_platforms: list[str] = Field(default_factory=list)
    filter_report: Optional[FilterReport] = None
    diagnostics: Optional[dict[str, Any]] = None


class AggregateResult(BaseModel):
    items: list[ExternalListing] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 0
    meta: Optional[AggregateMeta] = None


# =============================================================================
# Taxonomy & Progress Models
# =============================================================================

class TaxonomyLeaf(BaseModel):
    """A terminal taxonomy node; static configuration."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    category_key: str = Field(..., min_length=1)
    parents: tuple[str, ...] = ()
    terms: tuple[str, ...] = ()

    @property
    def search_terms(self) -> tuple[str, ...]:
        """Explicit search terms, defaulting to the label."""
        return self.terms or (self.label,)


class CoverageProgress(BaseModel):
    """Orchestrator checkpoint, persisted after every leaf.

    ``cooldown`` holds runs left per leaf, counting the decrement applied at
    the start of every fresh run.
    """

    offset: int = Field(default=0, ge=0)
    cursor: int = Field(default=0, ge=0)
    seed: Optional[int] = None
    cooldown: dict[str, int] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)

    def decrement_cooldowns(self) -> None:
        """Tick every cooldown down by one run, dropping expired entries."""
        self.cooldown = {k: v - 1 for k, v in self.cooldown.items() if v - 1 > 0}

    def is_cooling(self, leaf_key: str) -> bool:
        return self.cooldown.get(leaf_key, 0) > 0


class BackfillProgress(BaseModel):
    """Backfill checkpoint, persisted after every batch.

    ``offset`` counts processed candidates; ``last_id`` is the highest
    candidate id whose first attempt is done, so a resumed run does not
    shift when fixed listings drop out of the candidate query.
    """

    offset: int = Field(default=0, ge=0)
    last_id: int = Field(default=0, ge=0)
    good: int = 0
    partial: int = 0
    bad: int = 0
    errors: int = 0
    skipped: int = 0
    attempts_per_id: dict[str, int] = Field(default_factory=dict)
    consecutive_blocks: int = 0
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Report Models
# =============================================================================

class LeafOutcome(BaseModel):
    leaf_key: str
    state: LeafState
    before: int = 0
    after: int = 0
    added: int = 0
    terms_tried: int = 0


class RunSummary(BaseModel):
    """Result of one orchestrator pass over the taxonomy."""

    target: int
    outcomes: list[LeafOutcome] = Field(default_factory=list)
    interrupted: bool = False
    persistence_available: bool = True

    def count(self, state: LeafState) -> int:
        return sum(1 for o in self.outcomes if o.state == state)

    @property
    def added(self) -> int:
        return sum(o.added for o in self.outcomes)


class CoverageSummary(BaseModel):
    """Distribution of per-leaf counts."""

    total_leaves: int = 0
    zeros: int = 0
    pct_ge1: float = 0.0
    pct_ge4: float = 0.0
    pct_ge8: float = 0.0
    min: int = 0
    max: int = 0


class StageReport(BaseModel):
    target: int
    cycles: int = 0
    met: bool = False
    summary: CoverageSummary = Field(default_factory=CoverageSummary)


class CoverageReport(BaseModel):
    stages: list[StageReport] = Field(default_factory=list)
    final_target: int = 0
    met: bool = False
    interrupted: bool = False


class BackfillReport(BaseModel):
    platform: Platform
    processed: int = 0
    good: int = 0
    partial: int = 0
    bad: int = 0
    errors: int = 0
    skipped: int = 0
    cooldowns: int = 0
    persistence_available: bool = True
    interrupted: bool = False
    completed: bool = False


# =============================================================================
# Errors
# =============================================================================

class ErrorResponse(BaseModel):
    """
    Standardized error response structure.

    Example:
        >>> error = ErrorResponse(
        ...     error="All providers failed",
        ...     error_type=ErrorType.ALL_PROVIDERS_FAILED,
        ...     status=502,
        ... )
    """

    error: str = Field(..., description="Human-readable error message")
    error_type: ErrorType = Field(..., description="Error classification")
    status: int = Field(default=500, ge=400, le=599)
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_serializer("timestamp")
    def serialize_timestamp(self, value: datetime) -> str:
        """Serialize timestamp to ISO format."""
        return value.isoformat()

    def to_dict_safe(self) -> dict[str, Any]:
        """Return error as dict, safe for logging."""
        return self.model_dump(mode="json", exclude={"details"})


# =============================================================================
# Export All Models
# =============================================================================

__all__ = [
    # Base
    "BaseModel",
    "utcnow",

    # Enums
    "Platform",
    "Quality",
    "LeafState",
    "ErrorType",
    "ALL_PLATFORMS",

    # Listings
    "PriceInfo",
    "ExternalListing",
    "ListingDetail",
    "UpsertResult",
    "FilterReport",

    # Queries
    "MAX_PAGE_SIZE",
    "SearchFilters",
    "AggregateQuery",
    "AggregateMeta",
    "AggregateResult",

    # Taxonomy & progress
    "TaxonomyLeaf",
    "CoverageProgress",
    "BackfillProgress",

    # Reports
    "LeafOutcome",
    "RunSummary",
    "CoverageSummary",
    "StageReport",
    "CoverageReport",
    "BackfillReport",

    # Errors
    "ErrorResponse",
]
