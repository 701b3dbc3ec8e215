"""
Pytest configuration and shared fixtures.

Testing Standards:
- All async tests run under pytest-asyncio (auto mode enabled in pyproject.toml)
- Collaborators are faked in memory (tests.helpers) or mocked with AsyncMock
- Time is driven by ManualClock; deadline handlers are invoked directly
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import random

import pytest

from core.session_manager import SessionManager
from services.random_service import RandomSource
from services.settlement_service import SettlementEngine
from tests.helpers import FakeLedger, ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def rng() -> RandomSource:
    return RandomSource(random.Random(1234))


@pytest.fixture
def settlement(ledger: FakeLedger) -> SettlementEngine:
    return SettlementEngine(ledger, max_attempts=3, backoff_seconds=0)


@pytest.fixture
async def manager(ledger, rng, settlement, clock):
    manager = SessionManager(ledger, random=rng, settlement=settlement, clock=clock, max_age=600)
    yield manager
    await manager.shutdown()
