"""
cpdex Perpetual Engine

Leveraged long/short positions marked against a pool's spot price:

  - Open: escrow margin >= ceil(size / leverage), entry at spot
  - Add margin: pushes the liquidation price away from entry
  - Close: owner receives max(0, margin + pnl); the market vault pays
    profits and keeps losses
  - Liquidate: any caller once spot crosses the liquidation price;
    the liquidator earns liquidation_fee_bps of the margin, the vault
    keeps the rest
  - Funding: admin-set rate per pair with a cumulative index

Collateral and position size are denominated in token B.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List

from ..constants import BPS_DENOMINATOR, LIQUIDATION_FEE_BPS, MAX_LEVERAGE, MIN_LEVERAGE
from ..exceptions import (
    InsufficientMargin,
    InvalidLeverage,
    InvalidState,
    MaxLeverageExceeded,
    NotLiquidatable,
    RecordNotFound,
    Unauthorized,
    ZeroAmount,
)
from . import pricing
from .admin import Authorizer, require_admin
from .amm import LiquidityPool
from .ledger import AccountRegistry, Transfer
from .pricing import PerpSide

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PositionStatus(str, Enum):
    OPEN = "open"
    LIQUIDATED = "liquidated"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class FundingSnapshot:
    """Recorded funding rate at a given time."""
    timestamp: int
    rate_bps: int           # signed: +ve means longs pay shorts
    cumulative_index: int


@dataclass
class PerpPosition:
    id: str
    owner: str
    trading_pair: str
    side: PerpSide
    size: int
    entry_price: int
    leverage: int
    margin: int
    liquidation_price: int
    escrow: str
    status: PositionStatus = PositionStatus.OPEN
    funding_index: int = 0
    realized_pnl: int = 0
    unpaid_pnl: int = 0
    opened_at: int = 0
    closed_at: int = 0

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["status"] = self.status.value
        return d


@dataclass
class PnLInfo:
    position_id: str
    current_price: int
    unrealized_pnl: int
    liquidation_price: int
    funding_payment: int
    is_liquidatable: bool


# ---------------------------------------------------------------------------
# Perpetual Engine
# ---------------------------------------------------------------------------

class PerpEngine:
    """Positions for one trading pair."""

    def __init__(
        self,
        pool: LiquidityPool,
        registry: AccountRegistry,
        authorizer: Authorizer,
        min_leverage: int = MIN_LEVERAGE,
        max_leverage: int = MAX_LEVERAGE,
        liquidation_fee_bps: int = LIQUIDATION_FEE_BPS,
    ):
        self.pool = pool
        self.registry = registry
        self.authorizer = authorizer
        self.min_leverage = min_leverage
        self.max_leverage = max_leverage
        self.liquidation_fee_bps = liquidation_fee_bps
        self.vault = registry.handle(pool.trading_pair, "perp_vault")
        self.funding_rate_bps = 0
        self.cumulative_funding = 0
        self.funding_history: List[FundingSnapshot] = []
        self._positions: Dict[str, PerpPosition] = {}
        self._owner_seq: Dict[str, int] = {}

    @property
    def trading_pair(self) -> str:
        return self.pool.trading_pair

    @property
    def collateral_asset(self) -> str:
        return self.pool.state.token_b

    def vault_balance(self) -> int:
        return self.pool.ledger.balance_of(self.vault, self.collateral_asset)

    # -- Queries ------------------------------------------------------------

    @property
    def position_count(self) -> int:
        return len(self._positions)

    def __contains__(self, position_id: object) -> bool:
        return position_id in self._positions

    def all_positions(self) -> List[PerpPosition]:
        return sorted(self._positions.values(), key=lambda p: p.id)

    def get_position(self, position_id: str) -> PerpPosition:
        pos = self._positions.get(position_id)
        if pos is None:
            raise RecordNotFound(f"Position {position_id} not found")
        return pos

    def get_positions_by_owner(self, owner: str) -> List[PerpPosition]:
        return [p for p in self._positions.values() if p.owner == owner]

    def pnl_info(self, position_id: str) -> PnLInfo:
        pos = self.get_position(position_id)
        current = self.pool.spot_price()
        funding = (self.cumulative_funding - pos.funding_index) * pos.size // BPS_DENOMINATOR
        if pos.side == PerpSide.SHORT:
            funding = -funding
        return PnLInfo(
            position_id=pos.id,
            current_price=current,
            unrealized_pnl=pricing.pnl(pos.entry_price, current, pos.size, pos.side),
            liquidation_price=pos.liquidation_price,
            funding_payment=funding,
            is_liquidatable=pricing.is_liquidatable(current, pos.liquidation_price, pos.side),
        )

    def liquidatable_positions(self) -> List[PerpPosition]:
        with self.pool.lock:
            if self.pool.state.lp_supply == 0:
                return []
            current = self.pool.spot_price()
            return [
                p for p in self._positions.values()
                if p.is_open and pricing.is_liquidatable(current, p.liquidation_price, p.side)
            ]

    # -- Vault --------------------------------------------------------------

    def fund_vault(self, funder: str, amount: int) -> None:
        """Top up the market vault that pays out trader profits."""
        if amount <= 0:
            raise ZeroAmount("Funding amount must be positive")
        self.pool.ledger.settle([Transfer(funder, self.vault, self.collateral_asset, amount)])
        logger.info("Perp vault %s funded with %d by %s", self.trading_pair, amount, funder)

    # -- Open ---------------------------------------------------------------

    def open_position(self, owner: str, side: PerpSide, size: int, leverage: int, margin: int) -> PerpPosition:
        """
        Raises:
            ZeroAmount, InvalidLeverage, MaxLeverageExceeded,
            InsufficientMargin, PoolEmpty, InsufficientBalance
        """
        if size <= 0:
            raise ZeroAmount("Position size must be positive")
        if leverage > self.max_leverage:
            raise MaxLeverageExceeded(f"Leverage {leverage}x above maximum {self.max_leverage}x")
        if leverage < self.min_leverage:
            raise InvalidLeverage(f"Leverage {leverage}x below minimum {self.min_leverage}x")
        needed = pricing.required_margin(size, leverage)
        if margin < needed:
            raise InsufficientMargin(f"Margin {margin} below required {needed}")

        with self.pool.lock:
            now = self.pool.clock()
            entry = self.pool.spot_price()
            liq = pricing.liquidation_price(entry, leverage, side)

            seq = self._owner_seq.get(owner, 0)
            escrow = self.registry.handle(owner, "perp_position", f"{self.trading_pair}:{seq}")
            self.pool.ledger.settle([Transfer(owner, escrow, self.collateral_asset, margin)])

            pos = PerpPosition(
                id=escrow,
                owner=owner,
                trading_pair=self.trading_pair,
                side=side,
                size=size,
                entry_price=entry,
                leverage=leverage,
                margin=margin,
                liquidation_price=liq,
                escrow=escrow,
                funding_index=self.cumulative_funding,
                opened_at=now,
            )
            self._positions[pos.id] = pos
            self._owner_seq[owner] = seq + 1

        logger.info(
            "Position %s opened: %s %d @ %d, %dx, liq %d",
            pos.id, side.value, size, entry, leverage, liq,
        )
        return pos

    # -- Add margin ---------------------------------------------------------

    def add_margin(self, caller: str, position_id: str, amount: int) -> PerpPosition:
        if amount <= 0:
            raise ZeroAmount("Margin amount must be positive")
        with self.pool.lock:
            pos = self.get_position(position_id)
            if pos.owner != caller:
                raise Unauthorized("Only the position owner can add margin")
            if not pos.is_open:
                raise InvalidState(f"Position {position_id} is {pos.status.value}")

            shift = pricing.checked_mul(pos.entry_price, amount) // pos.size
            if pos.side == PerpSide.LONG:
                new_liq = max(0, pos.liquidation_price - shift)
            else:
                new_liq = pricing.checked_add(pos.liquidation_price, shift)
            new_margin = pricing.checked_add(pos.margin, amount)

            self.pool.ledger.settle([Transfer(caller, pos.escrow, self.collateral_asset, amount)])
            pos.margin = new_margin
            pos.liquidation_price = new_liq

        logger.info("Margin added to %s: +%d, liq now %d", position_id, amount, new_liq)
        return pos

    # -- Close --------------------------------------------------------------

    def close_position(self, caller: str, position_id: str) -> int:
        """
        Close at spot and settle with the owner.

        Profit is paid from the market vault only up to its balance; any
        shortfall is recorded as unpaid_pnl and the margin is always
        returned.

        Returns:
            amount paid to the owner
        """
        with self.pool.lock:
            pos = self.get_position(position_id)
            if pos.owner != caller:
                raise Unauthorized("Only the position owner can close")
            if not pos.is_open:
                raise InvalidState(f"Position {position_id} is {pos.status.value}")

            current = self.pool.spot_price()
            pnl = pricing.pnl(pos.entry_price, current, pos.size, pos.side)
            asset = self.collateral_asset
            unpaid = 0
            if pnl >= 0:
                profit = min(pnl, self.vault_balance())
                unpaid = pnl - profit
                payout = pricing.checked_add(pos.margin, profit)
                legs = [
                    Transfer(pos.escrow, pos.owner, asset, pos.margin),
                    Transfer(self.vault, pos.owner, asset, profit),
                ]
            else:
                loss = min(pos.margin, -pnl)
                payout = pos.margin - loss
                legs = [
                    Transfer(pos.escrow, self.vault, asset, loss),
                    Transfer(pos.escrow, pos.owner, asset, payout),
                ]
            self.pool.ledger.settle(legs)

            pos.status = PositionStatus.CLOSED
            pos.realized_pnl = pnl - unpaid
            pos.unpaid_pnl = unpaid
            pos.margin = 0
            pos.closed_at = self.pool.clock()

        if unpaid:
            logger.warning("Position %s closed with %d unpaid profit: vault short", position_id, unpaid)
        logger.info("Position %s closed @ %d: pnl %d, paid %d", position_id, current, pnl, payout)
        return payout

    # -- Liquidate ----------------------------------------------------------

    def liquidate(self, caller: str, position_id: str) -> int:
        """
        Anyone may liquidate once spot crosses the liquidation price.

        Returns:
            liquidator reward
        """
        with self.pool.lock:
            pos = self.get_position(position_id)
            if not pos.is_open:
                raise InvalidState(f"Position {position_id} is {pos.status.value}")

            current = self.pool.spot_price()
            if not pricing.is_liquidatable(current, pos.liquidation_price, pos.side):
                raise NotLiquidatable(
                    f"Price {current} has not crossed liquidation price {pos.liquidation_price}"
                )

            reward = pos.margin * self.liquidation_fee_bps // BPS_DENOMINATOR
            asset = self.collateral_asset
            self.pool.ledger.settle([
                Transfer(pos.escrow, caller, asset, reward),
                Transfer(pos.escrow, self.vault, asset, pos.margin - reward),
            ])

            pos.status = PositionStatus.LIQUIDATED
            pos.realized_pnl = -pos.margin
            pos.margin = 0
            pos.closed_at = self.pool.clock()

        logger.warning(
            "Position %s LIQUIDATED by %s @ %d (liq %d), reward %d",
            position_id, caller, current, pos.liquidation_price, reward,
        )
        return reward

    # -- Funding ------------------------------------------------------------

    def update_funding_rate(self, caller: str, rate_bps: int) -> FundingSnapshot:
        require_admin(self.authorizer, caller)
        with self.pool.lock:
            self.funding_rate_bps = rate_bps
            self.cumulative_funding += rate_bps
            snap = FundingSnapshot(
                timestamp=self.pool.clock(),
                rate_bps=rate_bps,
                cumulative_index=self.cumulative_funding,
            )
            self.funding_history.append(snap)

        logger.info("Funding rate on %s set to %d bps (index %d)", self.trading_pair, rate_bps, self.cumulative_funding)
        return snap

    def export(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.all_positions()]
