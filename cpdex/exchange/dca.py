"""
cpdex DCA Scheduler

Recurring fixed-size buys or sells against one pool.  The owner escrows
amount_per_cycle * total_cycles up front; keepers execute one cycle at a
time once next_execution_time has passed and the spot price is inside the
owner's optional [min_price, max_price] band.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List

from ..constants import MAX_DCA_CYCLES, MIN_DCA_CYCLE_FREQUENCY, PRICE_SCALE, U64_MAX
from ..exceptions import (
    InvalidCycleFrequency,
    InvalidSlippageTolerance,
    InvalidState,
    MaxCyclesExceeded,
    PriceOutOfRange,
    RecordNotFound,
    TooEarly,
    Unauthorized,
    ZeroAmount,
)
from . import pricing
from .amm import LiquidityPool, SwapResult
from .ledger import AccountRegistry, Transfer
from .pricing import OrderSide

logger = logging.getLogger(__name__)


class DCAStatus(str, Enum):
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DCAStatus.FILLED, DCAStatus.CANCELLED)


@dataclass
class DCAOrder:
    id: str
    owner: str
    trading_pair: str
    side: OrderSide
    amount_per_cycle: int
    total_cycles: int
    cycle_frequency_seconds: int
    next_execution_time: int
    min_price: int              # 0 = no lower bound
    max_price: int              # 0 = no upper bound
    slippage_tolerance_bps: int
    escrow_remaining: int
    escrow: str
    cycles_executed: int = 0
    status: DCAStatus = DCAStatus.OPEN
    total_amount_in: int = 0
    total_amount_out: int = 0
    created_at: int = 0
    last_execution_time: int = 0

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def remaining_cycles(self) -> int:
        return self.total_cycles - self.cycles_executed

    @property
    def average_price(self) -> int:
        """Average execution price (token B per token A, PRICE_SCALE)."""
        if self.total_amount_in == 0 or self.total_amount_out == 0:
            return 0
        if self.side == OrderSide.BUY:
            return self.total_amount_in * PRICE_SCALE // self.total_amount_out
        return self.total_amount_out * PRICE_SCALE // self.total_amount_in

    def in_price_range(self, price: int) -> bool:
        if self.min_price and price < self.min_price:
            return False
        if self.max_price and price > self.max_price:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["status"] = self.status.value
        return d


class DCAScheduler:
    """DCA orders for one trading pair."""

    def __init__(
        self,
        pool: LiquidityPool,
        registry: AccountRegistry,
        max_cycles: int = MAX_DCA_CYCLES,
        min_cycle_frequency: int = MIN_DCA_CYCLE_FREQUENCY,
    ):
        self.pool = pool
        self.registry = registry
        self.max_cycles = max_cycles
        self.min_cycle_frequency = min_cycle_frequency
        self._orders: Dict[str, DCAOrder] = {}
        self._owner_seq: Dict[str, int] = {}

    @property
    def trading_pair(self) -> str:
        return self.pool.trading_pair

    @property
    def order_count(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    def all_orders(self) -> List[DCAOrder]:
        return sorted(self._orders.values(), key=lambda o: o.id)

    def get_order(self, order_id: str) -> DCAOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise RecordNotFound(f"DCA order {order_id} not found")
        return order

    def get_orders_by_owner(self, owner: str) -> List[DCAOrder]:
        return [o for o in self._orders.values() if o.owner == owner]

    def due_orders(self, now: int) -> List[DCAOrder]:
        """Active orders whose next cycle is due at ``now``."""
        return sorted(
            (o for o in self._orders.values() if o.is_active and o.next_execution_time <= now),
            key=lambda o: o.next_execution_time,
        )

    def create_dca_order(
        self,
        owner: str,
        side: OrderSide,
        amount_per_cycle: int,
        total_cycles: int,
        cycle_frequency_seconds: int,
        slippage_tolerance_bps: int = 100,
        min_price: int = 0,
        max_price: int = 0,
    ) -> DCAOrder:
        """
        Escrow amount_per_cycle * total_cycles and schedule the first cycle
        for now.

        Raises:
            ZeroAmount, MaxCyclesExceeded, InvalidCycleFrequency,
            InvalidSlippageTolerance, PriceOutOfRange, InsufficientBalance
        """
        if amount_per_cycle <= 0 or total_cycles <= 0:
            raise ZeroAmount("DCA amount and cycle count must be positive")
        if total_cycles > self.max_cycles:
            raise MaxCyclesExceeded(f"{total_cycles} cycles above maximum {self.max_cycles}")
        if cycle_frequency_seconds < self.min_cycle_frequency:
            raise InvalidCycleFrequency(
                f"Cycle frequency {cycle_frequency_seconds}s below minimum {self.min_cycle_frequency}s"
            )
        if not 0 <= slippage_tolerance_bps <= self.pool.max_slippage_bps:
            raise InvalidSlippageTolerance(f"Slippage tolerance {slippage_tolerance_bps} bps out of range")
        if min_price < 0 or max_price < 0 or (max_price > 0 and max_price <= min_price):
            raise PriceOutOfRange(f"Invalid price band [{min_price}, {max_price}]")

        total = pricing.checked_mul(amount_per_cycle, total_cycles, U64_MAX)

        with self.pool.lock:
            now = self.pool.clock()
            seq = self._owner_seq.get(owner, 0)
            escrow = self.registry.handle(owner, "dca_order", f"{self.trading_pair}:{seq}")
            asset_in, _ = self.pool.assets_for(side)
            self.pool.ledger.settle([Transfer(owner, escrow, asset_in, total)])

            order = DCAOrder(
                id=escrow,
                owner=owner,
                trading_pair=self.trading_pair,
                side=side,
                amount_per_cycle=amount_per_cycle,
                total_cycles=total_cycles,
                cycle_frequency_seconds=cycle_frequency_seconds,
                next_execution_time=now,
                min_price=min_price,
                max_price=max_price,
                slippage_tolerance_bps=slippage_tolerance_bps,
                escrow_remaining=total,
                escrow=escrow,
                created_at=now,
            )
            self._orders[order.id] = order
            self._owner_seq[owner] = seq + 1

        logger.info(
            "DCA order %s created on %s: %s %d x %d every %ds",
            order.id, self.trading_pair, side.value, amount_per_cycle, total_cycles, cycle_frequency_seconds,
        )
        return order

    def execute_dca_order(self, caller: str, order_id: str) -> SwapResult:
        """
        Run one cycle.  Anyone may call this once the cycle is due.

        Raises:
            InvalidState, TooEarly, PriceOutOfRange, SlippageExceeded, PoolPaused
        """
        with self.pool.lock:
            order = self.get_order(order_id)
            if order.status.is_terminal:
                raise InvalidState(f"DCA order {order_id} is {order.status.value}")

            now = self.pool.clock()
            if now < order.next_execution_time:
                raise TooEarly(f"Next cycle of {order_id} due at {order.next_execution_time}")

            spot = self.pool.spot_price()
            if not order.in_price_range(spot):
                raise PriceOutOfRange(
                    f"Spot {spot} outside [{order.min_price}, {order.max_price}]"
                )

            expected = pricing.expected_output_at_price(
                order.amount_per_cycle, self.pool.price_for(order.side), order.side
            )
            minimum_out = pricing.min_out_with_slippage(expected, order.slippage_tolerance_bps)
            result = self.pool.swap(
                order.owner,
                order.amount_per_cycle,
                minimum_out,
                order.side,
                source=order.escrow,
                destination=order.owner,
            )

            order.cycles_executed += 1
            order.escrow_remaining -= order.amount_per_cycle
            order.next_execution_time += order.cycle_frequency_seconds
            order.total_amount_in += result.amount_in
            order.total_amount_out += result.amount_out
            order.last_execution_time = now
            if order.cycles_executed == order.total_cycles:
                order.status = DCAStatus.FILLED
            else:
                order.status = DCAStatus.PARTIALLY_FILLED

        logger.info(
            "DCA order %s cycle %d/%d by %s: %d -> %d",
            order_id, order.cycles_executed, order.total_cycles, caller,
            result.amount_in, result.amount_out,
        )
        return result

    def cancel_dca_order(self, caller: str, order_id: str) -> int:
        """Owner-only; returns the refunded amount."""
        with self.pool.lock:
            order = self.get_order(order_id)
            if order.owner != caller:
                raise Unauthorized("Only the order owner can cancel")
            if order.status.is_terminal:
                raise InvalidState(f"DCA order {order_id} is {order.status.value}")

            refund = order.amount_per_cycle * order.remaining_cycles
            asset_in, _ = self.pool.assets_for(order.side)
            self.pool.ledger.settle([Transfer(order.escrow, order.owner, asset_in, refund)])
            order.escrow_remaining = 0
            order.status = DCAStatus.CANCELLED

        logger.info("DCA order %s cancelled, refunded %d", order_id, refund)
        return refund

    def export(self) -> List[Dict[str, Any]]:
        return [o.to_dict() for o in self.all_orders()]
