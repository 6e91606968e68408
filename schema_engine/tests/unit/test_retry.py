"""Unit tests for schema_engine.propagation.retry."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from schema_engine.errors import ConflictError, TransientStoreError
from schema_engine.propagation.retry import RetryConfig, _compute_delay, async_retry_with_backoff

# ---------------------------------------------------------------------------
# RetryConfig
# ---------------------------------------------------------------------------


class TestRetryConfig:
    def test_default_values(self):
        config = RetryConfig()
        assert config.max_retries == 2
        assert config.base_delay == 0.5
        assert config.max_delay == 5.0
        assert config.jitter is True

    def test_zero_retries_allowed(self):
        assert RetryConfig(max_retries=0).max_retries == 0


# ---------------------------------------------------------------------------
# _compute_delay
# ---------------------------------------------------------------------------


class TestComputeDelay:
    def test_exponential_growth_no_jitter(self):
        config = RetryConfig(base_delay=1.0, max_delay=100.0, jitter=False)
        assert [_compute_delay(i, config) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay_cap(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert _compute_delay(10, config) == 5.0

    def test_jitter_stays_within_bounds(self):
        config = RetryConfig(base_delay=10.0, max_delay=100.0, jitter=True)
        for _ in range(100):
            assert 5.0 <= _compute_delay(0, config) <= 15.0


# ---------------------------------------------------------------------------
# async_retry_with_backoff
# ---------------------------------------------------------------------------


class TestAsyncRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_succeeds_first_try(self):
        fn = AsyncMock(return_value=42)
        assert await async_retry_with_backoff(fn, RetryConfig(jitter=False)) == 42
        assert fn.await_count == 1

    @pytest.mark.asyncio
    @patch("schema_engine.propagation.retry.asyncio.sleep", new_callable=AsyncMock)
    async def test_transient_errors_retried(self, mock_sleep: AsyncMock):
        fn = AsyncMock(side_effect=[TransientStoreError("reset"), TransientStoreError("reset"), "ok"])
        result = await async_retry_with_backoff(fn, RetryConfig(max_retries=2, jitter=False))
        assert result == "ok"
        assert fn.await_count == 3
        assert mock_sleep.await_count == 2

    @pytest.mark.asyncio
    @patch("schema_engine.propagation.retry.asyncio.sleep", new_callable=AsyncMock)
    async def test_exhausted_retries_raise_last_error(self, mock_sleep: AsyncMock):
        fn = AsyncMock(side_effect=[TransientStoreError("first"), TransientStoreError("second")])
        with pytest.raises(TransientStoreError, match="second"):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=1, jitter=False))
        assert fn.await_count == 2

    @pytest.mark.asyncio
    @patch("schema_engine.propagation.retry.asyncio.sleep", new_callable=AsyncMock)
    async def test_conflict_is_not_retried(self, mock_sleep: AsyncMock):
        fn = AsyncMock(side_effect=ConflictError("version moved"))
        with pytest.raises(ConflictError):
            await async_retry_with_backoff(fn, RetryConfig(max_retries=3))
        assert fn.await_count == 1
        assert mock_sleep.await_count == 0

    @pytest.mark.asyncio
    @patch("schema_engine.propagation.retry.asyncio.sleep", new_callable=AsyncMock)
    async def test_custom_retryable_exceptions(self, mock_sleep: AsyncMock):
        fn = AsyncMock(side_effect=[ConnectionError("down"), "ok"])
        result = await async_retry_with_backoff(fn, RetryConfig(), retryable_exceptions=(ConnectionError,))
        assert result == "ok"
