"""Pytest configuration and fixtures."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tradingbots.models import Base
from tradingbots.services.config import ConfigService
from tradingbots.services.exchange import RecentTrade, SimulatedExchangeGateway


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingActivityLog:
    """Stands in for ActivityLogService, keeping published events in memory."""

    def __init__(self):
        self.events = []

    def publish(self, event) -> bool:
        self.events.append(event)
        return True

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]


def make_trades(prices, now_ms, amount=100.0, spacing_ms=20_000):
    """Recent trades, oldest first, the last one at ``now_ms``."""
    count = len(prices)
    return [
        RecentTrade(amount=amount, price=price, timestamp=now_ms - (count - 1 - i) * spacing_ms)
        for i, price in enumerate(prices)
    ]


@pytest.fixture(scope="function")
async def test_engine():
    """Create a fresh test database for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway(clock):
    return SimulatedExchangeGateway(clock=clock)


@pytest.fixture
def activity_log():
    return RecordingActivityLog()


@pytest.fixture
def config(tmp_path):
    """Config service holding the built-in defaults."""
    service = ConfigService(str(tmp_path / "missing.yaml"))
    service.load_and_validate()
    return service
