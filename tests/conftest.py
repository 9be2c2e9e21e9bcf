"""Test configuration and fixtures.

Each test gets a fresh schema on its own database. By default that is a SQLite
file under the test's tmp_path (through aiosqlite); set TEST_DATABASE_URL to an
asyncpg URL to run the same suite against PostgreSQL. Tests commit for real,
so concurrent sessions see each other's writes the way request handlers do.
"""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from eth_abi import encode as abi_encode
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from agent_settlement.auth.rate_limit import check_rate_limit
from agent_settlement.config import settings
from agent_settlement.database import Base, get_db
from agent_settlement.errors import LedgerUnavailable
from agent_settlement.main import app
from agent_settlement.models.agent import Agent
from agent_settlement.models.task import Task, TaskStatus
from agent_settlement.services.ledger import TRANSFER_SELECTOR, LedgerReceipt, LedgerTransaction, get_ledger_client

# Lower-case addresses: eth_abi accepts them without a checksum
PAYER = "0x" + "a" * 40
OTHER_PAYER = "0x" + "b" * 40
AGENT_WALLET = "0x" + "c" * 40
VALIDATORS = ["0x" + "d" * 39 + str(i) for i in range(1, 6)]
STABLECOIN = "0x" + "7" * 40


def stablecoin() -> str:
    return settings.stablecoin_contract_address.lower()


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


def encode_transfer(to: str, amount: int) -> bytes:
    return TRANSFER_SELECTOR + abi_encode(["address", "uint256"], [to, amount])


class FakeLedger:
    """In-memory stand-in for LedgerClient."""

    def __init__(self) -> None:
        self.transactions: dict[str, LedgerTransaction] = {}
        self.receipts: dict[str, LedgerReceipt] = {}
        self.head = 100
        self.unavailable = False
        self.calls = 0

    def add_transfer(
        self,
        hash_: str,
        sender: str,
        to: str,
        amount: int,
        *,
        status: int = 1,
        block: int = 100,
        mined: bool = True,
    ) -> None:
        """A stablecoin transfer(to, amount) call sent by ``sender``."""
        self.add_raw(hash_, sender, stablecoin(), encode_transfer(to, amount), status=status, block=block, mined=mined)

    def add_native(self, hash_: str, sender: str, to: str, value: int, *, status: int = 1, block: int = 100) -> None:
        self.add_raw(hash_, sender, to, b"", value=value, status=status, block=block)

    def add_raw(
        self,
        hash_: str,
        sender: str,
        to: str | None,
        data: bytes,
        *,
        value: int = 0,
        status: int = 1,
        block: int = 100,
        mined: bool = True,
    ) -> None:
        self.transactions[hash_.lower()] = LedgerTransaction(
            tx_hash=hash_.lower(),
            sender=sender.lower(),
            to=to.lower() if to else None,
            value=value,
            input=data,
            block_number=block if mined else None,
        )
        if mined:
            self.receipts[hash_.lower()] = LedgerReceipt(status=status, block_number=block)

    async def _tick(self) -> None:
        self.calls += 1
        # Yield so concurrent verifications interleave
        await asyncio.sleep(0)
        if self.unavailable:
            raise LedgerUnavailable()

    async def fetch_transaction(self, hash_: str) -> LedgerTransaction | None:
        await self._tick()
        return self.transactions.get(hash_.lower())

    async def fetch_receipt(self, hash_: str) -> LedgerReceipt | None:
        await self._tick()
        return self.receipts.get(hash_.lower())

    async def block_number(self) -> int:
        await self._tick()
        return self.head


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "stablecoin_contract_address", STABLECOIN)
    object.__setattr__(settings, "staking_contract_address", "")
    object.__setattr__(settings, "slasher_private_key", "")
    object.__setattr__(settings, "dispute_validators", [])
    object.__setattr__(settings, "payment_amount_policy", "lenient")
    object.__setattr__(settings, "payment_confirmations_required", 1)
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    url = settings.test_database_url or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, ledger and rate-limit dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def no_rate_limit() -> None:
        return None

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger_client] = lambda: ledger
    app.dependency_overrides[check_rate_limit] = no_rate_limit

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_agent_data(agent_id: str = "agent-1", **overrides: object) -> dict:
    """Factory for agent registration payload."""
    data = {
        "agent_id": agent_id,
        "name": "Weather Oracle",
        "service_type": "weather",
        "description": "Forecasts on demand",
        "endpoint_url": "https://agents.example.com/weather",
        "wallet_address": AGENT_WALLET,
        "price_per_request": 20000,
        "minimum_stake": 0,
    }
    data.update(overrides)
    return data


async def add_agent(db: AsyncSession, agent_id: str = "agent-1", **kwargs: object) -> Agent:
    fields: dict = {
        "name": "Weather Oracle",
        "wallet_address": AGENT_WALLET,
        "price_per_request": 20000,
        "active": True,
        "staked_amount": 10**18,
        "minimum_stake": 5 * 10**17,
    }
    fields.update(kwargs)
    agent = Agent(agent_id=agent_id, **fields)
    db.add(agent)
    await db.commit()
    return agent


async def add_task(
    db: AsyncSession,
    agent_id: str = "agent-1",
    *,
    requester: str = PAYER,
    price: int = 20000,
    status: TaskStatus = TaskStatus.COMPLETED,
    payment_tx_hash: str | None = None,
) -> Task:
    task = Task(
        requester=requester,
        agent_id=agent_id,
        description="Forecast for Lisbon",
        price=price,
        status=status,
        payment_tx_hash=payment_tx_hash,
    )
    db.add(task)
    await db.commit()
    return task
