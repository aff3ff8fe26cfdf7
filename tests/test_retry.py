"""
Tests for retry handling of client and indexer reads (retry.py)
"""

import asyncio
from unittest.mock import AsyncMock

import aiohttp
import pytest

from cross_seeder.exceptions import (
    ClientAuthenticationError,
    ClientConnectionError,
    IndexerSearchError,
)
from cross_seeder.retry import RetryConfig, RetryHandler


@pytest.fixture
def handler():
    """Retry handler with tiny delays and no jitter."""
    return RetryHandler(RetryConfig(max_attempts=3, initial_delay=0.001, jitter=False))


class TestRetryConfig:
    """Tests for RetryConfig defaults."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.initial_delay == 1.0
        assert config.max_delay == 30.0
        assert 503 in config.retryable_statuses
        assert 401 not in config.retryable_statuses


class TestWithRetry:
    """Tests for RetryHandler.with_retry."""

    async def test_success_first_try(self, handler):
        operation = AsyncMock(return_value=["torrent"])
        assert await handler.with_retry(operation, operation_id="list_torrents") == ["torrent"]
        operation.assert_awaited_once()

    async def test_transient_search_failure_recovers(self, handler):
        operation = AsyncMock(side_effect=[
            IndexerSearchError("Prowlarr search failed: HTTP 503"),
            [{"guid": "x"}],
        ])
        assert await handler.with_retry(operation, operation_id="search") == [{"guid": "x"}]
        assert operation.await_count == 2
        assert handler.stats.retries == 1

    async def test_gives_up_after_max_attempts(self, handler):
        operation = AsyncMock(side_effect=ClientConnectionError("Connection refused by qBittorrent"))
        with pytest.raises(ClientConnectionError):
            await handler.with_retry(operation, operation_id="list_files")
        assert operation.await_count == 3
        assert handler.failure_count("list_files") == 3

    async def test_not_found_is_not_retried(self, handler):
        operation = AsyncMock(side_effect=IndexerSearchError("Prowlarr search failed: HTTP 404"))
        with pytest.raises(IndexerSearchError):
            await handler.with_retry(operation, operation_id="search")
        operation.assert_awaited_once()

    async def test_max_attempts_override(self, handler):
        operation = AsyncMock(side_effect=asyncio.TimeoutError())
        with pytest.raises(asyncio.TimeoutError):
            await handler.with_retry(operation, max_attempts=2)
        assert operation.await_count == 2

    async def test_custom_should_retry(self, handler):
        operation = AsyncMock(side_effect=[KeyError("odd"), "ok"])
        result = await handler.with_retry(operation, should_retry=lambda e: isinstance(e, KeyError))
        assert result == "ok"

    async def test_success_resets_failure_count(self, handler):
        operation = AsyncMock(side_effect=[ConnectionError("reset by peer"), "ok"])
        await handler.with_retry(operation, operation_id="login")
        assert handler.failure_count("login") == 0


class TestIsRetryable:
    """Tests for error classification."""

    def test_aiohttp_connection_error(self, handler):
        assert handler.is_retryable(aiohttp.ClientConnectionError()) is True

    def test_gateway_errors(self, handler):
        assert handler.is_retryable(Exception("HTTP 502")) is True
        assert handler.is_retryable(Exception("HTTP 504")) is True

    def test_auth_errors(self, handler):
        assert handler.is_retryable(Exception("HTTP 401 Unauthorized")) is False
        assert handler.is_retryable(Exception("403 Forbidden")) is False

    def test_client_auth_error_never_retried(self, handler):
        assert handler.is_retryable(ClientAuthenticationError("HTTP 503 during login")) is False

    def test_unknown_error(self, handler):
        assert handler.is_retryable(ValueError("bad bencode")) is False


class TestDelayCalculation:
    """Tests for backoff delays."""

    def test_exponential_capped(self):
        handler = RetryHandler(RetryConfig(initial_delay=4.0, max_delay=30.0, jitter=False))
        assert [handler.backoff(n) for n in (1, 2, 3, 4)] == [4.0, 8.0, 16.0, 30.0]

    def test_jitter_within_bounds(self):
        handler = RetryHandler(RetryConfig(initial_delay=2.0, jitter=True, jitter_factor=0.5))
        delays = [handler.backoff(1) for _ in range(20)]
        assert all(1.0 <= d <= 3.0 for d in delays)
