"""
conftest.py - Shared pytest fixtures for lendingpool tests

Provides:
- In-memory collaborators (clock, permissions, pools, price feed, rates, guard)
- A Loans engine wired to them, with POOL_A and POOL_B registered
- Role grants for the standard test accounts
"""

import pytest
from datetime import timedelta

from lendingpool import Loans, LoansConfig, RateRegistry, Role, StaticPriceFeed

from tests.builders import (
    BORROWER, LOAN_ADMIN, NOW, OTHER_BORROWER, POOL_A, POOL_ADMIN, POOL_B, POOL_RESERVE,
    PRICE_ID, PRICE_VALUE,
)
from tests.fakes import FakeChangeGuard, FakeClock, FakePermissions, FakePools


# =============================================================================
# COLLABORATORS
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def permissions():
    perms = FakePermissions()
    for pool in (POOL_A, POOL_B):
        perms.add(pool, BORROWER, Role.BORROWER)
        perms.add(pool, OTHER_BORROWER, Role.BORROWER)
        perms.add(pool, LOAN_ADMIN, Role.LOAN_ADMIN)
        perms.add(pool, POOL_ADMIN, Role.POOL_ADMIN)
    return perms


@pytest.fixture
def pools():
    return FakePools({POOL_A: POOL_RESERVE, POOL_B: POOL_RESERVE})


@pytest.fixture
def prices():
    return StaticPriceFeed({PRICE_ID: (PRICE_VALUE, NOW)})


@pytest.fixture
def rates():
    return RateRegistry()


@pytest.fixture
def guard(clock):
    return FakeChangeGuard(clock, min_delay=timedelta(days=1))


@pytest.fixture
def config():
    return LoansConfig()


# =============================================================================
# ENGINE
# =============================================================================

@pytest.fixture
def engine(permissions, pools, prices, rates, guard, clock, config):
    """Engine with POOL_A and POOL_B registered."""
    loans = Loans(permissions, pools, prices, rates, guard, clock, config)
    loans.register_pool(POOL_A)
    loans.register_pool(POOL_B)
    return loans
