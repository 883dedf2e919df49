"""
conftest.py - Shared pytest fixtures for loan_ledger tests

Provides common fixtures used across unit, conformance and functional tests:
- Record stores (in-memory, SQLite file in tmp_path, or both via `store`)
- A deterministic clock
- Engines with a registered funding loan and funded wallets
(builders and invariant checks live in helpers.py)
"""

import pytest
from decimal import Decimal

from loan_ledger import (
    InMemoryRecordStore,
    SqliteRecordStore,
    SettlementEngine,
)

from tests.fake_clock import FakeClock
from tests.helpers import make_loan


# =============================================================================
# STORES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return InMemoryRecordStore()


@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteRecordStore(str(tmp_path / "ledger.db"))
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Run the test once per record store backend."""
    if request.param == "memory":
        yield InMemoryRecordStore()
    else:
        sqlite = SqliteRecordStore(str(tmp_path / "ledger.db"))
        yield sqlite
        sqlite.close()


# =============================================================================
# ENGINES
# =============================================================================

@pytest.fixture
def engine(memory_store, clock):
    """Engine over an empty in-memory store."""
    return SettlementEngine(memory_store, clock=clock)


@pytest.fixture
def funded_engine(engine):
    """
    Engine with:
    - loan_1: target 50000, 12%/yr, 12 months, min 100, funding
    - alice: wallet balance 5000
    - bob: wallet balance 5000
    """
    engine.loans.register(make_loan())
    engine.wallets.deposit("alice", Decimal("5000"))
    engine.wallets.deposit("bob", Decimal("5000"))
    return engine
