"""
Resilient error handling utilities.

Provides the exception taxonomy shared by adapters, the live query path and
the batch jobs, plus retry, circuit breaker and error categorization helpers.
"""

import asyncio
import logging
from datetime import datetime
from functools import wraps
from typing import Callable, Optional, Type

logger = logging.getLogger(__name__)

# =============================================================================
# Custom Exceptions
# =============================================================================

class AppError(Exception):
    """Base application exception."""
    pass

class NetworkError(AppError):
    """Transient source error: timeout, 5xx or connection failure."""
    pass

class ConfigurationError(AppError):
    pass

class PersistenceUnavailableError(AppError):
    """The durable store could not be reached or rejected the operation."""
    pass

class AggregationError(AppError):
    """Pipeline-level failure on the live query path."""

    status_code = 502

class AllProvidersFailedError(AggregationError):
    """Every requested platform failed, was blocked or timed out."""

    def __init__(self, message: str, failures: Optional[dict[str, str]] = None):
        super().__init__(message)
        self.failures = failures or {}

class UnsupportedPlatformError(AggregationError):
    status_code = 400

# =============================================================================
# Retry Decorator
# =============================================================================

def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    initial_wait: float = 1.0,
):
    """
    Retry decorator with exponential backoff.

    Meant for short, cheap operations (image downloads). Source fetches are
    never retried in a tight loop; they are retried by the next page, term or
    scheduled run instead.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e

                    if attempt == max_attempts:
                        logger.warning(f"Final attempt {attempt} failed for {func.__name__}: {e}")
                        break

                    sleep_time = initial_wait * (backoff_factor ** (attempt - 1))

                    if on_retry:
                        try:
                            on_retry(attempt, e)
                        except Exception as cb_err:
                            logger.debug(f"on_retry callback failed: {cb_err}")

                    logger.warning(
                        f"Attempt {attempt} failed for {func.__name__}: {e}. "
                        f"Retrying in {sleep_time:.2f}s..."
                    )

                    await asyncio.sleep(sleep_time)

            if last_exception:
                raise last_exception
        return wrapper
    return decorator

# =============================================================================
# Circuit Breaker
# =============================================================================

class CircuitBreaker:
    """
    Circuit breaker for a remote platform.

    The live query path keeps one per platform; repeated blocks open it so the
    platform is skipped until ``recovery_timeout`` has elapsed.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60, name: str = "CircuitBreaker"):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name

        self.failures = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = "closed"  # closed, open, half-open

    def _should_attempt_reset(self) -> bool:
        if self.state != "open" or not self.last_failure_time:
            return False
        elapsed = (datetime.now() - self.last_failure_time).total_seconds()
        return elapsed > self.recovery_timeout

    @property
    def is_open(self) -> bool:
        """True while calls would be rejected."""
        if self.state == "open" and self._should_attempt_reset():
            self.state = "half-open"
            logger.info(f"Circuit {self.name} attempting reset. State: Half-Open.")
        return self.state == "open"

    def record_success(self):
        if self.state != "closed":
            logger.info(f"Circuit {self.name} recovering. State: Closed.")
        self.failures = 0
        self.state = "closed"
        self.last_failure_time = None

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = datetime.now()

        if self.state == "half-open":
            self.state = "open"
            logger.warning(f"Circuit {self.name} trial failed. State: Re-Opened.")
        elif self.failures >= self.failure_threshold and self.state == "closed":
            self.state = "open"
            logger.error(f"Circuit {self.name} threshold reached. State: Open.")

# =============================================================================
# Error Handler
# =============================================================================

class ErrorHandler:
    """Centralized error categorization for the pipeline's error taxonomy."""

    @staticmethod
    def categorize_error(error: Exception) -> str:
        """Categorize errors for appropriate handling."""
        if isinstance(error, PersistenceUnavailableError):
            return "PERSISTENCE_ERROR"
        if isinstance(error, asyncio.TimeoutError):
            return "TIMEOUT_ERROR"
        if isinstance(error, (NetworkError, ConnectionError, OSError)):
            return "TRANSIENT_SOURCE_ERROR"
        if isinstance(error, (ValueError, TypeError, KeyError)):
            return "PARSE_ERROR"

        err_str = str(error).lower()
        if "captcha" in err_str or "access denied" in err_str or "429" in err_str:
            return "BLOCKED"
        if "timeout" in err_str or "timed out" in err_str:
            return "TIMEOUT_ERROR"
        if "connection" in err_str:
            return "TRANSIENT_SOURCE_ERROR"

        return "UNKNOWN_ERROR"

    @staticmethod
    def get_fallback_strategy(error_type: str) -> Callable:
        """Get fallback strategy for error type."""
        strategies = {
            "TRANSIENT_SOURCE_ERROR": lambda: {"status": "degraded", "retryable": True, "action": "retry_later"},
            "TIMEOUT_ERROR": lambda: {"status": "degraded", "retryable": True, "action": "retry_later"},
            "BLOCKED": lambda: {"status": "degraded", "retryable": True, "action": "cooldown"},
            "PARSE_ERROR": lambda: {"status": "degraded", "retryable": False, "action": "degrade_to_empty"},
            "PERSISTENCE_ERROR": lambda: {"status": "degraded", "retryable": True, "action": "continue_without_persistence"},
        }
        return strategies.get(error_type, lambda: {"status": "failed", "retryable": True, "action": "log_and_continue"})
