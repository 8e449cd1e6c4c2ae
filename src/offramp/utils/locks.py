"""Concurrency control for custodial wallet operations.

Provides per-wallet locking so that only one pipeline execution touches a
custodial wallet at a time.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: lowercase address -> asyncio.Lock
_wallet_locks: dict[str, asyncio.Lock] = {}
_registry_lock = asyncio.Lock()


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class WalletBusyError(LockTimeoutError):
    """Raised by non-blocking acquisition when the wallet is already locked."""

    pass


async def get_wallet_lock(address: str) -> asyncio.Lock:
    """Get or create a lock for a wallet address.

    Args:
        address: Wallet address (case-insensitive)

    Returns:
        asyncio.Lock for the wallet
    """
    key = address.lower()
    async with _registry_lock:
        if key not in _wallet_locks:
            _wallet_locks[key] = asyncio.Lock()
        return _wallet_locks[key]


class WalletLock:
    """Context manager for exclusive access to a custodial wallet.

    Example:
        async with WalletLock(address, blocking=False, operation="advance"):
            await machine.run_phases(...)
    """

    def __init__(
        self,
        address: str,
        timeout: Optional[float] = 30.0,
        operation: str = "wallet_operation",
        blocking: bool = True,
    ):
        """Initialize the lock.

        Args:
            address: Custodial wallet address
            timeout: Maximum time to wait for lock (None = wait forever)
            operation: Description of the operation for logging
            blocking: If False, fail immediately when the lock is held
        """
        self.address = address
        self.timeout = timeout
        self.operation = operation
        self.blocking = blocking
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "WalletLock":
        """Acquire the lock."""
        self._lock = await get_wallet_lock(self.address)

        if not self.blocking:
            if self._lock.locked():
                logger.info(f"Wallet {self.address} busy, skipping {self.operation}")
                raise WalletBusyError(f"Wallet {self.address} is already being processed")
            # An unlocked asyncio.Lock is taken without suspending
            await self._lock.acquire()
            self._acquired = True
            return self

        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
            self._acquired = True
            logger.debug(f"Lock acquired for wallet {self.address}: {self.operation}")
            return self

        except asyncio.TimeoutError:
            logger.warning(
                f"Lock timeout for wallet {self.address} after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire lock for wallet {self.address} within {self.timeout}s"
            )

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Release the lock."""
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Lock released for wallet {self.address}: {self.operation}")
        return False


@asynccontextmanager
async def wallet_lock(
    address: str,
    timeout: Optional[float] = 30.0,
    operation: str = "wallet_operation",
):
    """Functional context manager for wallet locking.

    Example:
        async with wallet_lock(address, operation="refund"):
            await send_refund(...)
    """
    async with WalletLock(address, timeout=timeout, operation=operation):
        yield


def is_wallet_locked(address: str) -> bool:
    """Check whether a wallet is currently locked."""
    lock = _wallet_locks.get(address.lower())
    return bool(lock and lock.locked())


def clear_wallet_locks() -> None:
    """Clear all wallet locks (useful for testing)."""
    _wallet_locks.clear()
