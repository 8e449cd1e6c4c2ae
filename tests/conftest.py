"""Pytest configuration and fixtures."""

import asyncio
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"
os.environ["DRY_RUN"] = "true"
os.environ["ADMIN_TOKEN"] = ""
os.environ["DEPOSIT_WEBHOOK_SECRET"] = ""
os.environ["PAYSTACK_SECRET_KEY"] = ""
os.environ["OFFRAMP_MASTER_MNEMONIC"] = TEST_MNEMONIC

from offramp.hdwallet.provisioner import WalletProvisioner
from offramp.ledger.models import Base
from offramp.ledger.repository import OfframpRepository
from offramp.signing import erc20
from offramp.utils.locks import clear_wallet_locks
from offramp.utils.retry import RetryPolicy


@pytest.fixture(scope="session")
def event_loop():
    """Create event loop for async tests."""
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture(autouse=True)
def reset_wallet_locks():
    """Every test starts with no wallet locks held."""
    clear_wallet_locks()
    yield
    clear_wallet_locks()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing.

    StaticPool keeps one connection so every session sees the same
    in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def offramp_repo(db_session: AsyncSession) -> OfframpRepository:
    """Create off-ramp repository for testing."""
    return OfframpRepository(db_session)


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def instant_retry() -> RetryPolicy:
    """Three attempts without real backoff delays."""
    return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=_no_sleep)


@pytest.fixture
def provisioner() -> WalletProvisioner:
    """Provisioner seeded with the standard BIP39 test mnemonic."""
    return WalletProvisioner(TEST_MNEMONIC)


@pytest.fixture
def make_receipt():
    """Build a raw JSON-RPC receipt holding one ERC20 Transfer log."""

    def _make(token: str, to: str, amount: int, sender: str = "0x" + "22" * 20, status: str = "0x1"):
        return {
            "status": status,
            "logs": [
                {
                    "address": token.lower(),
                    "topics": [
                        erc20.TRANSFER_EVENT_TOPIC,
                        "0x" + "0" * 24 + sender[2:].lower(),
                        "0x" + "0" * 24 + to[2:].lower(),
                    ],
                    "data": "0x" + amount.to_bytes(32, "big").hex(),
                }
            ],
        }

    return _make
