"""Shared test fixtures."""
import asyncio
from typing import Generator, List

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from datasync.models.enforcement import Case, Notice  # noqa: F401
from datasync.models.sync import SyncBatch, SyncSession  # noqa: F401

from datasync.adapters.memory import MemorySourceAdapter
from datasync.db.resource import SQLModelResource
from datasync.retry.circuit_breaker import CircuitBreakerRegistry
from datasync.retry.engine import RetryEngine
from datasync.retry.rate_limiter import RateLimiterRegistry
from datasync.sync.events import EventBroadcaster
from datasync.sync.registry import SyncRegistry
from datasync.sync.session_tracker import SessionTracker


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers requested delays in seconds."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


def case_record(n: int, **overrides) -> dict:
    """Airtable-shaped case record."""
    fields = {
        "regulator_id": f"HSE-{n:04d}",
        "offender_name": f"Offender {n} Ltd",
        "agency_code": "hse",
        "offence_action_date": "2024-01-15",
        "offence_fine": 1000 * n,
    }
    fields.update(overrides)
    return {"id": f"rec{n:04d}", "fields": fields}


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_engine(clock, sleeper) -> RetryEngine:
    return RetryEngine(
        CircuitBreakerRegistry(clock=clock),
        RateLimiterRegistry(clock=clock),
        sleep=sleeper,
        clock=clock,
    )


@pytest.fixture
def registry(engine) -> SyncRegistry:
    registry = SyncRegistry()
    registry.register_resource(SQLModelResource(Case, engine, name="cases"))
    registry.register_resource(SQLModelResource(Notice, engine, name="notices"))
    registry.register_adapter("memory", MemorySourceAdapter)
    return registry


@pytest.fixture
def tracker(engine) -> SessionTracker:
    return SessionTracker(engine)


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()
