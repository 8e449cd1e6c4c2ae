"""Tests for wallet locks and retry policy."""

import asyncio

import pytest

from offramp.utils.locks import (
    LockTimeoutError,
    WalletBusyError,
    WalletLock,
    get_wallet_lock,
    is_wallet_locked,
    wallet_lock,
)
from offramp.utils.retry import RetryPolicy

WALLET = "0xAbCdEf0000000000000000000000000000000001"


class TestWalletLocks:
    """Tests for the per-wallet locks."""

    @pytest.mark.asyncio
    async def test_same_lock_case_insensitive(self):
        """Test addresses differing only in case share a lock."""
        assert await get_wallet_lock(WALLET) is await get_wallet_lock(WALLET.lower())

    @pytest.mark.asyncio
    async def test_context_manager_releases(self):
        """Test the lock is released after the block."""
        async with WalletLock(WALLET, operation="test"):
            assert is_wallet_locked(WALLET)

        assert not is_wallet_locked(WALLET)

    @pytest.mark.asyncio
    async def test_non_blocking_busy(self):
        """Test non-blocking acquisition fails fast when held."""
        async with wallet_lock(WALLET, operation="hold"):
            with pytest.raises(WalletBusyError):
                async with WalletLock(WALLET, blocking=False):
                    pass

        async with WalletLock(WALLET, blocking=False):
            assert is_wallet_locked(WALLET)

    @pytest.mark.asyncio
    async def test_blocking_serializes(self):
        """Test blocking holders run one after the other."""
        results = []

        async def task(name):
            async with WalletLock(WALLET, timeout=5.0, operation=name):
                results.append(f"{name}_start")
                await asyncio.sleep(0.01)
                results.append(f"{name}_end")

        await asyncio.gather(task("A"), task("B"))

        assert results in (
            ["A_start", "A_end", "B_start", "B_end"],
            ["B_start", "B_end", "A_start", "A_end"],
        )

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a blocking wait gives up after the timeout."""
        async with WalletLock(WALLET):
            with pytest.raises(LockTimeoutError):
                async with WalletLock(WALLET, timeout=0.05):
                    pass

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        """Test an exception inside the block still releases the lock."""
        with pytest.raises(RuntimeError):
            async with WalletLock(WALLET):
                raise RuntimeError("boom")

        assert not is_wallet_locked(WALLET)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_schedule(self):
        """Test backoff delays double per attempt."""
        policy = RetryPolicy(max_attempts=4, base_delay=1.0, multiplier=2.0)
        assert policy.schedule == [1.0, 2.0, 4.0]

    def test_max_delay(self):
        """Test delays are capped."""
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=3.0)
        assert policy.schedule == [1.0, 2.0, 3.0, 3.0]

    def test_invalid_attempts(self):
        """Test at least one attempt is required."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        """Test the operation is retried until it succeeds."""
        slept = []
        attempts = []

        async def sleep(delay):
            slept.append(delay)

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("flaky")
            return "ok"

        policy = RetryPolicy(max_attempts=3, base_delay=0.5, sleep=sleep)

        assert await policy.run(operation, retry_on=(ConnectionError,)) == "ok"
        assert slept == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up(self):
        """Test the last error is re-raised after the final attempt."""

        async def sleep(delay):
            pass

        async def operation():
            raise ConnectionError("down")

        policy = RetryPolicy(max_attempts=2, sleep=sleep)

        with pytest.raises(ConnectionError, match="down"):
            await policy.run(operation, retry_on=(ConnectionError,))

    @pytest.mark.asyncio
    async def test_unlisted_error_not_retried(self):
        """Test errors outside retry_on propagate immediately."""
        attempts = []

        async def operation():
            attempts.append(1)
            raise KeyError("bad")

        policy = RetryPolicy(max_attempts=3)

        with pytest.raises(KeyError):
            await policy.run(operation, retry_on=(ConnectionError,))
        assert len(attempts) == 1
