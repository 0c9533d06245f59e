"""
Marketplace Listing Aggregator.

Collects product listings from several B2B marketplaces, normalizes them into
one schema, filters and caches them, and keeps every taxonomy leaf stocked
with a minimum number of listings.
"""

__version__ = "1.0.0"
__author__ = "Listing Aggregator Team"

# Lazy imports to avoid circular dependencies
def get_aggregation_service():
    """Get the AggregationService class (lazy import)."""
    from aggregator.services.aggregation_service import AggregationService
    return AggregationService

__all__ = ["get_aggregation_service", "__version__"]
