"""Shared fixtures: a controllable clock and a funded SOL/USDC pool."""

import pytest

from cpdex.exchange.amm import PoolManager
from cpdex.exchange.ledger import AccountRegistry, Ledger

ALICE = "alice_0000000000000000000000000001"
BOB = "bob___0000000000000000000000000002"
CAROL = "carol_0000000000000000000000000003"
LP = "lp____0000000000000000000000000004"
KEEPER = "keeper000000000000000000000000005"
ADMIN = "admin_0000000000000000000000000006"

START_TIME = 1_700_000_000

# Seed liquidity: 10 SOL-units : 1000 USDC-units -> spot 100 USDC/SOL
SEED_A = 10_000_000
SEED_B = 1_000_000_000


class ManualClock:
    """Logical clock the tests move by hand."""

    def __init__(self, start: int = START_TIME):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ledger() -> Ledger:
    ledger = Ledger()
    for who in (ALICE, BOB, CAROL, LP):
        ledger.deposit(who, "SOL", 1_000_000_000)
        ledger.deposit(who, "USDC", 100_000_000_000)
    return ledger


@pytest.fixture
def registry() -> AccountRegistry:
    return AccountRegistry()


@pytest.fixture
def pools(ledger, registry, clock) -> PoolManager:
    return PoolManager(ledger, registry, clock=clock)


@pytest.fixture
def empty_pool(pools):
    return pools.initialize_pool("SOL", "USDC", 30)


@pytest.fixture
def pool(empty_pool):
    empty_pool.add_liquidity(LP, SEED_A, SEED_B)
    return empty_pool
