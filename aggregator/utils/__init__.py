"""Utils module for the listing aggregation pipeline."""

from aggregator.utils.logger import LogContext, get_logger, setup_logging
from aggregator.utils.retry import (
    async_retry,
    CircuitBreaker,
    ErrorHandler,
    AppError,
    NetworkError,
    ConfigurationError,
    PersistenceUnavailableError,
    AggregationError,
    AllProvidersFailedError,
    UnsupportedPlatformError,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "LogContext",
    "async_retry",
    "CircuitBreaker",
    "ErrorHandler",
    "AppError",
    "NetworkError",
    "ConfigurationError",
    "PersistenceUnavailableError",
    "AggregationError",
    "AllProvidersFailedError",
    "UnsupportedPlatformError",
]
