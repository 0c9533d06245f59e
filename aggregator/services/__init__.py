"""
Services package for the listing aggregation pipeline.

Services:
    - AggregationService: Live multi-platform query path with two cache tiers
    - ListingStore: Durable SQLAlchemy store for listings, snapshots and job progress
    - SearchCache: Process-local TTL cache
    - ImageCache: Local image download cache

Providers:
    - AlibabaAdapter, C1688Adapter, MadeInChinaAdapter, IndiaMartAdapter
    - StaticFetcher / RenderedFetcher: HTTP and headless browser transports
"""

from aggregator.services.aggregation_service import (
    AggregationService,
    per_platform_limit,
)
from aggregator.services.cache import (
    SearchCache,
    query_cache_key,
    snapshot_key,
)
from aggregator.services.fetchers import (
    FetchOutcome,
    RenderedFetcher,
    StaticFetcher,
    UserAgentPool,
    detect_block,
)
from aggregator.services.image_cache import ImageCache
from aggregator.services.listing_store import BackfillCandidate, ListingStore
from aggregator.services.providers import (
    # Adapters
    ProviderAdapter,
    MarketplaceAdapter,
    AlibabaAdapter,
    C1688Adapter,
    MadeInChinaAdapter,
    IndiaMartAdapter,
    # Registry
    PROVIDER_REGISTRY,
    get_adapter,
    create_adapters,
    # Models
    FetchOptions,
    ProviderReport,
    ProviderStatus,
    PlatformConfig,
)

__all__ = [
    # Aggregation
    "AggregationService",
    "per_platform_limit",
    # Caches
    "SearchCache",
    "query_cache_key",
    "snapshot_key",
    "ImageCache",
    # Store
    "ListingStore",
    "BackfillCandidate",
    # Transports
    "FetchOutcome",
    "StaticFetcher",
    "RenderedFetcher",
    "UserAgentPool",
    "detect_block",
    # Providers
    "ProviderAdapter",
    "MarketplaceAdapter",
    "AlibabaAdapter",
    "C1688Adapter",
    "MadeInChinaAdapter",
    "IndiaMartAdapter",
    "PROVIDER_REGISTRY",
    "get_adapter",
    "create_adapters",
    "FetchOptions",
    "ProviderReport",
    "ProviderStatus",
    "PlatformConfig",
]
