"""
cpdex Constant-Product AMM

One pool per trading pair, priced by x * y = k:

  - Add / remove liquidity with LP claim tokens (sqrt first mint,
    proportional later mints, binding-side discipline)
  - Exact-in swaps with fee retained in reserves (k never decreases)
  - Market orders with a price-impact ceiling
  - Pre-trade quotes (output, fee, impact, minimum received)
  - Spot / ask / bid prices for orders and perpetuals
  - Emergency pause

Security features:
  - Slippage protection (minimum_out on every swap)
  - Per-pool re-entrant lock around read-check-commit
  - Ledger batch validated before any reserve moves
  - Deterministic vault handles (blake2b via AccountRegistry)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..constants import DEFAULT_FEE_RATE_BPS, MAX_FEE_RATE_BPS, MAX_SLIPPAGE_TOLERANCE_BPS
from ..exceptions import (
    InsufficientBalance,
    InvalidFeeRate,
    InvalidSlippageTolerance,
    PoolAlreadyExists,
    PoolEmpty,
    PoolPaused,
    SlippageExceeded,
    UnknownPair,
    ZeroAmount,
)
from . import pricing
from .ledger import AccountRegistry, Ledger, Transfer
from .pricing import OrderSide

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


def pair_key(token_a: str, token_b: str) -> str:
    return f"{token_a}/{token_b}"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class PoolState:
    """
    Persisted state of one constant-product pool.

    Invariants: lp_supply == 0 iff reserve_a == reserve_b == 0;
    0 <= fee_rate_bps <= MAX_FEE_RATE_BPS.
    """
    trading_pair: str
    token_a: str
    token_b: str
    fee_rate_bps: int = DEFAULT_FEE_RATE_BPS
    reserve_a: int = 0
    reserve_b: int = 0
    lp_supply: int = 0
    paused: bool = False
    pause_reason: str = ""

    # Fees retained in reserves
    fee_a: int = 0
    fee_b: int = 0

    # Stats
    total_volume_a: int = 0
    total_volume_b: int = 0
    swap_count: int = 0
    created_at: int = 0
    last_swap_time: int = 0

    @property
    def k(self) -> int:
        return self.reserve_a * self.reserve_b


@dataclass
class SwapResult:
    """Outcome of an executed swap."""
    side: OrderSide
    amount_in: int
    amount_out: int
    fee: int
    price_impact_bps: int


@dataclass
class SwapQuote:
    amount_in: int
    amount_out: int
    fee_amount: int
    price_impact_bps: int
    minimum_received: int


@dataclass
class SwapFeeInfo:
    fee_rate_bps: int
    total_fees_a: int
    total_fees_b: int


@dataclass
class PoolInfo:
    trading_pair: str
    reserve_a: int
    reserve_b: int
    lp_supply: int
    fee_rate_bps: int
    spot_price: int
    paused: bool


# ---------------------------------------------------------------------------
# Liquidity Pool
# ---------------------------------------------------------------------------

class LiquidityPool:
    """
    Single constant-product pool engine.

    Every mutation runs under ``self.lock``.  Higher layers (order book,
    DCA, perps) take the same lock to read a price and commit against it
    atomically; the lock is re-entrant so they can call swap() inside.
    """

    def __init__(
        self,
        state: PoolState,
        ledger: Ledger,
        registry: AccountRegistry,
        clock: Clock = system_clock,
        max_fee_rate_bps: int = MAX_FEE_RATE_BPS,
        max_slippage_bps: int = MAX_SLIPPAGE_TOLERANCE_BPS,
    ):
        self.state = state
        self.ledger = ledger
        self.clock = clock
        self.max_fee_rate_bps = max_fee_rate_bps
        self.max_slippage_bps = max_slippage_bps
        self.lock = threading.RLock()
        self.vault = registry.handle(state.trading_pair, "pool_vault")

    @property
    def trading_pair(self) -> str:
        return self.state.trading_pair

    @property
    def lp_asset(self) -> str:
        return f"LP:{self.state.trading_pair}"

    @property
    def is_paused(self) -> bool:
        return self.state.paused

    def assets_for(self, side: OrderSide) -> Tuple[str, str]:
        """(asset_in, asset_out) for a side."""
        if side == OrderSide.BUY:
            return self.state.token_b, self.state.token_a
        return self.state.token_a, self.state.token_b

    def _reserves(self, side: OrderSide) -> Tuple[int, int]:
        """(reserve_in, reserve_out) for a side."""
        if side == OrderSide.BUY:
            return self.state.reserve_b, self.state.reserve_a
        return self.state.reserve_a, self.state.reserve_b

    # -- Prices -------------------------------------------------------------

    def spot_price(self) -> int:
        return pricing.spot_price(self.state.reserve_a, self.state.reserve_b)

    def ask_price(self) -> int:
        return pricing.ask_price(self.state.reserve_a, self.state.reserve_b, self.state.fee_rate_bps)

    def bid_price(self) -> int:
        return pricing.bid_price(self.state.reserve_a, self.state.reserve_b, self.state.fee_rate_bps)

    def price_for(self, side: OrderSide) -> int:
        """Executable price for a side: ask for buys, bid for sells."""
        return self.ask_price() if side == OrderSide.BUY else self.bid_price()

    # -- Quotes -------------------------------------------------------------

    def quote(self, amount_in: int, side: OrderSide, slippage_bps: int = 0) -> SwapQuote:
        """Calculate a swap WITHOUT executing it."""
        if not 0 <= slippage_bps <= self.max_slippage_bps:
            raise InvalidSlippageTolerance(f"Slippage {slippage_bps} bps outside [0, {self.max_slippage_bps}]")
        reserve_in, reserve_out = self._reserves(side)
        amount_out = pricing.swap_output(amount_in, reserve_in, reserve_out, self.state.fee_rate_bps)
        impact = pricing.price_impact_bps(amount_in, reserve_in, reserve_out, amount_out) if amount_in else 0
        q = SwapQuote(
            amount_in=amount_in,
            amount_out=amount_out,
            fee_amount=pricing.fee_amount(amount_in, self.state.fee_rate_bps),
            price_impact_bps=impact,
            minimum_received=pricing.min_out_with_slippage(amount_out, slippage_bps),
        )
        logger.debug("Quote %s %s %d -> %d (impact %d bps)", self.trading_pair, side.value, amount_in, amount_out, impact)
        return q

    def info(self) -> PoolInfo:
        s = self.state
        return PoolInfo(
            trading_pair=s.trading_pair,
            reserve_a=s.reserve_a,
            reserve_b=s.reserve_b,
            lp_supply=s.lp_supply,
            fee_rate_bps=s.fee_rate_bps,
            spot_price=self.spot_price() if s.lp_supply else 0,
            paused=s.paused,
        )

    def fee_info(self) -> SwapFeeInfo:
        return SwapFeeInfo(
            fee_rate_bps=self.state.fee_rate_bps,
            total_fees_a=self.state.fee_a,
            total_fees_b=self.state.fee_b,
        )

    # -- Liquidity ----------------------------------------------------------

    def add_liquidity(self, provider: str, amount_a: int, amount_b: int, min_lp: int = 0) -> int:
        """
        Deposit both tokens and mint LP claim tokens to the provider.

        Returns:
            LP tokens minted

        Raises:
            ZeroAmount, SlippageExceeded, InsufficientBalance
        """
        if amount_a <= 0 or amount_b <= 0:
            raise ZeroAmount("Both deposit amounts must be positive")

        with self.lock:
            s = self.state
            if s.lp_supply == 0:
                minted = pricing.initial_lp_tokens(amount_a, amount_b)
            else:
                minted = pricing.proportional_lp_tokens(
                    amount_a, amount_b, s.reserve_a, s.reserve_b, s.lp_supply
                )
            if minted == 0 or minted < min_lp:
                raise SlippageExceeded(f"LP minted {minted} below minimum {min_lp}")

            new_a = pricing.checked_add(s.reserve_a, amount_a)
            new_b = pricing.checked_add(s.reserve_b, amount_b)
            new_supply = pricing.checked_add(s.lp_supply, minted)

            self.ledger.settle([
                Transfer(provider, self.vault, s.token_a, amount_a),
                Transfer(provider, self.vault, s.token_b, amount_b),
                Transfer(None, provider, self.lp_asset, minted),
            ])
            s.reserve_a, s.reserve_b, s.lp_supply = new_a, new_b, new_supply

        logger.info("Liquidity added to %s: %d/%d -> %d LP", self.trading_pair, amount_a, amount_b, minted)
        return minted

    def remove_liquidity(self, provider: str, lp_burn: int, min_a: int = 0, min_b: int = 0) -> Tuple[int, int]:
        """
        Burn LP tokens for a proportional share of both reserves.

        Returns:
            (amount_a, amount_b) paid out

        Raises:
            ZeroAmount, InsufficientBalance, SlippageExceeded
        """
        if lp_burn <= 0:
            raise ZeroAmount("LP burn amount must be positive")

        with self.lock:
            s = self.state
            held = self.ledger.balance_of(provider, self.lp_asset)
            if held < lp_burn:
                raise InsufficientBalance(f"LP balance {held} below burn amount {lp_burn}")

            amount_a, amount_b = pricing.withdraw_amounts(lp_burn, s.lp_supply, s.reserve_a, s.reserve_b)
            if amount_a < min_a or amount_b < min_b:
                raise SlippageExceeded(
                    f"Withdrawal {amount_a}/{amount_b} below minimum {min_a}/{min_b}"
                )

            new_a = pricing.checked_sub(s.reserve_a, amount_a)
            new_b = pricing.checked_sub(s.reserve_b, amount_b)
            new_supply = pricing.checked_sub(s.lp_supply, lp_burn)
            if new_supply == 0:
                # Last holder out takes the rounding dust too
                amount_a, amount_b = s.reserve_a, s.reserve_b
                new_a = new_b = 0

            self.ledger.settle([
                Transfer(provider, None, self.lp_asset, lp_burn),
                Transfer(self.vault, provider, s.token_a, amount_a),
                Transfer(self.vault, provider, s.token_b, amount_b),
            ])
            s.reserve_a, s.reserve_b, s.lp_supply = new_a, new_b, new_supply

        logger.info("Liquidity removed from %s: %d LP -> %d/%d", self.trading_pair, lp_burn, amount_a, amount_b)
        return amount_a, amount_b

    # -- Swap ---------------------------------------------------------------

    def swap(
        self,
        trader: str,
        amount_in: int,
        minimum_out: int,
        side: OrderSide,
        source: Optional[str] = None,
        destination: Optional[str] = None,
    ) -> SwapResult:
        """
        Execute an exact-in swap.

        Args:
            trader: account initiating the swap
            amount_in: exact input amount (fee included)
            minimum_out: slippage floor on the output
            side: BUY spends token B, SELL spends token A
            source: account the input is drawn from (defaults to trader)
            destination: account the output is paid to (defaults to trader)

        Raises:
            PoolPaused, ZeroAmount, PoolEmpty, SlippageExceeded, InsufficientBalance
        """
        source = source or trader
        destination = destination or trader

        with self.lock:
            if self.state.paused:
                raise PoolPaused(f"Pool {self.trading_pair} is paused")
            if amount_in <= 0:
                raise ZeroAmount("Swap amount must be positive")

            s = self.state
            reserve_in, reserve_out = self._reserves(side)
            amount_out = pricing.swap_output(amount_in, reserve_in, reserve_out, s.fee_rate_bps)
            if amount_out == 0 or amount_out < minimum_out:
                raise SlippageExceeded(f"Slippage exceeded: got {amount_out}, minimum {minimum_out}")

            fee = pricing.fee_amount(amount_in, s.fee_rate_bps)
            impact = pricing.price_impact_bps(amount_in, reserve_in, reserve_out, amount_out)
            new_in = pricing.checked_add(reserve_in, amount_in)
            new_out = pricing.checked_sub(reserve_out, amount_out)

            asset_in, asset_out = self.assets_for(side)
            self.ledger.settle([
                Transfer(source, self.vault, asset_in, amount_in),
                Transfer(self.vault, destination, asset_out, amount_out),
            ])

            if side == OrderSide.BUY:
                s.reserve_b, s.reserve_a = new_in, new_out
                s.fee_b += fee
                s.total_volume_b += amount_in
            else:
                s.reserve_a, s.reserve_b = new_in, new_out
                s.fee_a += fee
                s.total_volume_a += amount_in
            s.swap_count += 1
            s.last_swap_time = self.clock()

        return SwapResult(side=side, amount_in=amount_in, amount_out=amount_out, fee=fee, price_impact_bps=impact)

    def execute_market_order(
        self,
        trader: str,
        amount_in: int,
        minimum_out: int,
        slippage_bps: int,
        side: OrderSide,
    ) -> SwapResult:
        """Swap that also refuses to move the price more than slippage_bps."""
        if not 0 <= slippage_bps <= self.max_slippage_bps:
            raise InvalidSlippageTolerance(f"Slippage {slippage_bps} bps outside [0, {self.max_slippage_bps}]")
        with self.lock:
            if self.state.paused:
                raise PoolPaused(f"Pool {self.trading_pair} is paused")
            if amount_in <= 0:
                raise ZeroAmount("Swap amount must be positive")
            q = self.quote(amount_in, side)
            if q.price_impact_bps > slippage_bps:
                raise SlippageExceeded(
                    f"Price impact {q.price_impact_bps} bps exceeds tolerance {slippage_bps} bps"
                )
            return self.swap(trader, amount_in, minimum_out, side)

    # -- Admin hooks --------------------------------------------------------

    def pause(self, reason: str = "") -> None:
        with self.lock:
            self.state.paused = True
            self.state.pause_reason = reason
        logger.warning("Pool %s PAUSED: %s", self.trading_pair, reason)

    def resume(self) -> None:
        with self.lock:
            self.state.paused = False
            self.state.pause_reason = ""
        logger.info("Pool %s resumed", self.trading_pair)

    def set_fee_rate(self, fee_rate_bps: int) -> int:
        """Returns the previous rate."""
        if not 0 <= fee_rate_bps <= self.max_fee_rate_bps:
            raise InvalidFeeRate(f"Fee rate {fee_rate_bps} bps outside [0, {self.max_fee_rate_bps}]")
        with self.lock:
            old = self.state.fee_rate_bps
            self.state.fee_rate_bps = fee_rate_bps
        return old

    def surplus(self) -> Tuple[int, int]:
        """Vault balances not backing recorded reserves."""
        s = self.state
        return (
            self.ledger.balance_of(self.vault, s.token_a) - s.reserve_a,
            self.ledger.balance_of(self.vault, s.token_b) - s.reserve_b,
        )

    def sweep_surplus(self, destination: str) -> Tuple[int, int]:
        with self.lock:
            extra_a, extra_b = self.surplus()
            self.ledger.settle([
                Transfer(self.vault, destination, self.state.token_a, max(0, extra_a)),
                Transfer(self.vault, destination, self.state.token_b, max(0, extra_b)),
            ])
        return max(0, extra_a), max(0, extra_b)


# ---------------------------------------------------------------------------
# Pool Manager
# ---------------------------------------------------------------------------

class PoolManager:
    """
    Registry of all pools, one per trading pair.

    Handles pool initialization, fee validation and pair lookup.
    """

    def __init__(
        self,
        ledger: Ledger,
        registry: AccountRegistry,
        clock: Clock = system_clock,
        max_fee_rate_bps: int = MAX_FEE_RATE_BPS,
        max_slippage_bps: int = MAX_SLIPPAGE_TOLERANCE_BPS,
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.clock = clock
        self.max_fee_rate_bps = max_fee_rate_bps
        self.max_slippage_bps = max_slippage_bps
        self._pools: Dict[str, LiquidityPool] = {}
        self._lock = threading.Lock()

    @property
    def pool_count(self) -> int:
        return len(self._pools)

    def initialize_pool(self, token_a: str, token_b: str, fee_rate_bps: int = DEFAULT_FEE_RATE_BPS) -> LiquidityPool:
        """
        Create the pool for a pair with empty reserves.

        Raises:
            InvalidFeeRate: fee above the configured cap
            PoolAlreadyExists: pair already has a pool
        """
        if not 0 <= fee_rate_bps <= self.max_fee_rate_bps:
            raise InvalidFeeRate(f"Fee rate {fee_rate_bps} bps outside [0, {self.max_fee_rate_bps}]")
        if not token_a or not token_b or token_a == token_b:
            raise UnknownPair("A pool needs two distinct tokens")

        key = pair_key(token_a, token_b)
        with self._lock:
            if key in self._pools:
                raise PoolAlreadyExists(f"Pool already exists for {key}")
            state = PoolState(
                trading_pair=key,
                token_a=token_a,
                token_b=token_b,
                fee_rate_bps=fee_rate_bps,
                created_at=self.clock(),
            )
            pool = LiquidityPool(
                state, self.ledger, self.registry, self.clock,
                max_fee_rate_bps=self.max_fee_rate_bps,
                max_slippage_bps=self.max_slippage_bps,
            )
            self._pools[key] = pool

        logger.info("Pool %s initialized: fee=%d bps", key, fee_rate_bps)
        return pool

    def get_pool(self, trading_pair: str) -> LiquidityPool:
        pool = self._pools.get(trading_pair)
        if pool is None:
            raise UnknownPair(f"No pool for {trading_pair}")
        return pool

    def has_pool(self, trading_pair: str) -> bool:
        return trading_pair in self._pools

    def get_all_pools(self) -> List[LiquidityPool]:
        return list(self._pools.values())
