"""Configuration module for the listing aggregation pipeline."""

from aggregator.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
