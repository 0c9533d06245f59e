import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from aggregator.utils.retry import (
    AllProvidersFailedError,
    CircuitBreaker,
    ConfigurationError,
    ErrorHandler,
    NetworkError,
    PersistenceUnavailableError,
    UnsupportedPlatformError,
    async_retry,
)


@pytest.mark.asyncio
async def test_async_retry_success():
    mock_func = AsyncMock(return_value="success")

    result = await async_retry(max_attempts=3)(mock_func)()

    assert result == "success"
    assert mock_func.call_count == 1


@pytest.mark.asyncio
async def test_async_retry_fail_then_success():
    mock_func = AsyncMock(side_effect=[NetworkError("reset"), "success"])
    on_retry = MagicMock()

    result = await async_retry(max_attempts=3, initial_wait=0.01, on_retry=on_retry)(mock_func)()

    assert result == "success"
    assert mock_func.call_count == 2
    on_retry.assert_called_once()
    assert on_retry.call_args.args[0] == 1


@pytest.mark.asyncio
async def test_async_retry_exhausted():
    mock_func = AsyncMock(side_effect=NetworkError("Permanent Fail"))

    with pytest.raises(NetworkError, match="Permanent Fail"):
        await async_retry(max_attempts=2, initial_wait=0.01)(mock_func)()

    assert mock_func.call_count == 2


@pytest.mark.asyncio
async def test_async_retry_only_catches_listed_exceptions():
    mock_func = AsyncMock(side_effect=ValueError("not an image"))

    with pytest.raises(ValueError):
        await async_retry(max_attempts=3, initial_wait=0.01, exceptions=(NetworkError,))(mock_func)()

    assert mock_func.call_count == 1


@pytest.mark.asyncio
async def test_async_retry_survives_failing_callback():
    mock_func = AsyncMock(side_effect=[NetworkError("reset"), "ok"])
    on_retry = MagicMock(side_effect=RuntimeError("callback broke"))

    assert await async_retry(max_attempts=2, initial_wait=0.01, on_retry=on_retry)(mock_func)() == "ok"


def test_circuit_breaker_opens_at_threshold():
    cb = CircuitBreaker(failure_threshold=2, recovery_timeout=60, name="ALIBABA")

    cb.record_failure()
    assert cb.state == "closed"
    assert not cb.is_open

    cb.record_failure()
    assert cb.state == "open"
    assert cb.is_open


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_then_closed():
    cb = CircuitBreaker(failure_threshold=1, recovery_timeout=0.1)
    cb.record_failure()
    assert cb.is_open

    await asyncio.sleep(0.2)
    assert not cb.is_open
    assert cb.state == "half-open"

    cb.record_success()
    assert cb.state == "closed"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_circuit_breaker_reopens_on_failed_trial():
    cb = CircuitBreaker(failure_threshold=1, recovery_timeout=0.1)
    cb.record_failure()
    assert cb.is_open

    await asyncio.sleep(0.2)
    assert not cb.is_open
    assert cb.state == "half-open"

    cb.record_failure()
    assert cb.state == "open"


def test_circuit_breaker_success_resets_failures():
    cb = CircuitBreaker(failure_threshold=3)
    cb.record_failure()
    cb.record_failure()
    cb.record_success()
    cb.record_failure()

    assert cb.failures == 1
    assert cb.state == "closed"


@pytest.mark.parametrize("error,category", [
    (PersistenceUnavailableError("db down"), "PERSISTENCE_ERROR"),
    (asyncio.TimeoutError(), "TIMEOUT_ERROR"),
    (NetworkError("reset"), "TRANSIENT_SOURCE_ERROR"),
    (ConnectionResetError(), "TRANSIENT_SOURCE_ERROR"),
    (ValueError("bad data"), "PARSE_ERROR"),
    (KeyError("offerList"), "PARSE_ERROR"),
    (Exception("HTTP 429 from upstream"), "BLOCKED"),
    (Exception("captcha interstitial"), "BLOCKED"),
    (Exception("timeout happened"), "TIMEOUT_ERROR"),
    (Exception("connection refused"), "TRANSIENT_SOURCE_ERROR"),
    (Exception("something else"), "UNKNOWN_ERROR"),
])
def test_error_handler_categorization(error, category):
    assert ErrorHandler.categorize_error(error) == category


def test_error_handler_fallback_strategy():
    strategy = ErrorHandler.get_fallback_strategy("BLOCKED")
    assert strategy() == {"status": "degraded", "retryable": True, "action": "cooldown"}

    strategy = ErrorHandler.get_fallback_strategy("PARSE_ERROR")
    assert strategy()["retryable"] is False

    strategy = ErrorHandler.get_fallback_strategy("PERSISTENCE_ERROR")
    assert strategy()["action"] == "continue_without_persistence"

    strategy = ErrorHandler.get_fallback_strategy("UNKNOWN")
    assert strategy()["action"] == "log_and_continue"
    assert strategy()["retryable"] is True


def test_aggregation_errors_carry_status_codes():
    failed = AllProvidersFailedError("all failed", failures={"ALIBABA": "blocked"})
    assert failed.status_code == 502
    assert failed.failures == {"ALIBABA": "blocked"}
    assert AllProvidersFailedError("all failed").failures == {}
    assert UnsupportedPlatformError("ebay").status_code == 400
    assert isinstance(ConfigurationError("bad taxonomy"), Exception)
