"""
cpdex Limit Order Book

Escrowed limit orders executed against the pool's quoted price:

  - Place: escrow amount_in into a per-order handle, assign book index
  - Cancel: owner-only, refunds the full escrow
  - Execute: any caller (keeper) once the price condition holds;
    the whole escrow swaps through LiquidityPool.swap (all-or-nothing)
  - Expiry: an expired order is moved to Expired and refunded the first
    time someone tries to execute it

Security features:
  - Owner-only cancel
  - Status re-checked under the pool lock (at-most-once execution)
  - Slippage floor derived from the limit price
  - Deterministic order handles via AccountRegistry
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List

from ..exceptions import (
    InvalidExpiration,
    InvalidLimitPrice,
    InvalidSlippageTolerance,
    InvalidState,
    OrderExpired,
    OrderNotExecutable,
    RecordNotFound,
    Unauthorized,
    ZeroAmount,
)
from . import pricing
from .amm import LiquidityPool, SwapResult
from .ledger import AccountRegistry, Transfer
from .pricing import OrderSide

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OrderStatus(str, Enum):
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.EXPIRED)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class LimitOrder:
    """A resting limit order and its escrow."""
    id: str
    owner: str
    trading_pair: str
    side: OrderSide
    amount_in: int
    limit_price: int
    slippage_tolerance_bps: int
    expires_at: int             # 0 = good till cancelled
    escrowed_amount: int
    index: int
    escrow: str                 # registry handle holding the escrow
    status: OrderStatus = OrderStatus.OPEN
    amount_out: int = 0
    created_at: int = 0
    closed_at: int = 0

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def is_expired(self, now: int) -> bool:
        return self.expires_at != 0 and now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["status"] = self.status.value
        return d


# ---------------------------------------------------------------------------
# Order Book
# ---------------------------------------------------------------------------

class OrderBook:
    """Limit orders for one trading pair."""

    def __init__(self, pool: LiquidityPool, registry: AccountRegistry):
        self.pool = pool
        self.registry = registry
        self._orders: Dict[str, LimitOrder] = {}
        self._by_owner: Dict[str, List[str]] = {}
        self._next_index = 0

    @property
    def trading_pair(self) -> str:
        return self.pool.trading_pair

    @property
    def order_count(self) -> int:
        return self._next_index

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    # -- Queries ------------------------------------------------------------

    def get_order(self, order_id: str) -> LimitOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise RecordNotFound(f"Limit order {order_id} not found")
        return order

    def all_orders(self) -> List[LimitOrder]:
        return sorted(self._orders.values(), key=lambda o: o.index)

    def get_orders_by_owner(self, owner: str) -> List[LimitOrder]:
        return [self._orders[oid] for oid in self._by_owner.get(owner, [])]

    def get_open_orders(self) -> List[LimitOrder]:
        return sorted(
            (o for o in self._orders.values() if o.is_active),
            key=lambda o: o.index,
        )

    def is_executable(self, order: LimitOrder) -> bool:
        """Price condition only; ignores status and expiry."""
        if order.side == OrderSide.BUY:
            return self.pool.ask_price() <= order.limit_price
        return self.pool.bid_price() >= order.limit_price

    def executable_orders(self) -> List[LimitOrder]:
        """Open, unexpired orders whose price condition holds right now."""
        now = self.pool.clock()
        with self.pool.lock:
            if self.pool.state.lp_supply == 0:
                return []
            return [o for o in self.get_open_orders() if not o.is_expired(now) and self.is_executable(o)]

    # -- Place --------------------------------------------------------------

    def place_limit_order(
        self,
        owner: str,
        side: OrderSide,
        amount_in: int,
        limit_price: int,
        slippage_tolerance_bps: int,
        expires_at: int = 0,
    ) -> LimitOrder:
        """
        Escrow amount_in and rest an order on the book.

        Buy orders escrow token B, sell orders escrow token A.

        Raises:
            ZeroAmount, InvalidLimitPrice, InvalidSlippageTolerance,
            InvalidExpiration, InsufficientBalance
        """
        if amount_in <= 0:
            raise ZeroAmount("Order amount must be positive")
        if limit_price <= 0:
            raise InvalidLimitPrice("Limit price must be positive")
        cap = self.pool.max_slippage_bps
        if not 0 <= slippage_tolerance_bps <= cap:
            raise InvalidSlippageTolerance(
                f"Slippage tolerance {slippage_tolerance_bps} bps outside [0, {cap}]"
            )

        with self.pool.lock:
            now = self.pool.clock()
            if expires_at != 0 and expires_at <= now:
                raise InvalidExpiration(f"Expiry {expires_at} is not after now ({now})")

            index = self._next_index
            escrow = self.registry.handle(owner, "limit_order", f"{self.trading_pair}:{index}")
            asset_in, _ = self.pool.assets_for(side)
            self.pool.ledger.settle([Transfer(owner, escrow, asset_in, amount_in)])

            order = LimitOrder(
                id=escrow,
                owner=owner,
                trading_pair=self.trading_pair,
                side=side,
                amount_in=amount_in,
                limit_price=limit_price,
                slippage_tolerance_bps=slippage_tolerance_bps,
                expires_at=expires_at,
                escrowed_amount=amount_in,
                index=index,
                escrow=escrow,
                created_at=now,
            )
            self._orders[order.id] = order
            self._by_owner.setdefault(owner, []).append(order.id)
            self._next_index += 1

        logger.info(
            "Limit order %s placed on %s: %s %d @ %d",
            order.id, self.trading_pair, side.value, amount_in, limit_price,
        )
        return order

    # -- Cancel -------------------------------------------------------------

    def cancel_limit_order(self, caller: str, order_id: str) -> LimitOrder:
        """Owner-only; refunds the full escrow."""
        with self.pool.lock:
            order = self.get_order(order_id)
            if order.owner != caller:
                raise Unauthorized("Only the order owner can cancel")
            if order.status.is_terminal:
                raise InvalidState(f"Order {order_id} is {order.status.value}")

            self._release(order, OrderStatus.CANCELLED)

        logger.info("Limit order %s cancelled", order_id)
        return order

    # -- Execute ------------------------------------------------------------

    def execute_limit_order(self, caller: str, order_id: str) -> SwapResult:
        """
        Fill an order against the pool.  Anyone may call this.

        Raises:
            InvalidState: order already terminal
            OrderExpired: order past expiry (it is expired and refunded first)
            OrderNotExecutable: price condition not met
            SlippageExceeded, PoolPaused, PoolEmpty
        """
        with self.pool.lock:
            order = self.get_order(order_id)
            if order.status.is_terminal:
                raise InvalidState(f"Order {order_id} is {order.status.value}")

            now = self.pool.clock()
            if order.is_expired(now):
                self._release(order, OrderStatus.EXPIRED)
                logger.info("Limit order %s expired at %d", order_id, order.expires_at)
                raise OrderExpired(f"Order {order_id} expired at {order.expires_at}")

            if not self.is_executable(order):
                raise OrderNotExecutable(
                    f"Order {order_id} limit {order.limit_price} not reachable"
                )

            expected = pricing.expected_output_at_price(order.escrowed_amount, order.limit_price, order.side)
            minimum_out = pricing.min_out_with_slippage(expected, order.slippage_tolerance_bps)
            result = self.pool.swap(
                order.owner,
                order.escrowed_amount,
                minimum_out,
                order.side,
                source=order.escrow,
                destination=order.owner,
            )

            order.amount_out = result.amount_out
            order.escrowed_amount = 0
            order.status = OrderStatus.FILLED
            order.closed_at = now

        logger.info(
            "Limit order %s filled by %s: %d -> %d",
            order_id, caller, result.amount_in, result.amount_out,
        )
        return result

    def _release(self, order: LimitOrder, status: OrderStatus) -> None:
        asset_in, _ = self.pool.assets_for(order.side)
        self.pool.ledger.settle([Transfer(order.escrow, order.owner, asset_in, order.escrowed_amount)])
        order.escrowed_amount = 0
        order.status = status
        order.closed_at = self.pool.clock()

    def export(self) -> List[Dict[str, Any]]:
        return [o.to_dict() for o in self.all_orders()]
