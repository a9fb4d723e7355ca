"""
cpdex Pricing Core

Pure integer functions behind every pool, order and position:

  - Constant-product swap output with fee (x * y = k)
  - LP share mint / burn math
  - Price impact
  - Spot / ask / bid quotes in PRICE_SCALE fixed point
  - Margin, liquidation price and PnL for perpetuals
  - LP reward accrual

Rounding is explicit: every division floors unless the name says ceil.
Token amounts live in [0, U64_MAX]; intermediate products in [0, U128_MAX].
Anything outside those ranges raises ArithmeticOverflow instead of wrapping.
"""

from __future__ import annotations

import math
from enum import Enum
from fractions import Fraction
from typing import Tuple

from ..constants import BPS_DENOMINATOR, PRICE_SCALE, REWARD_PRECISION, U64_MAX, U128_MAX
from ..exceptions import ArithmeticOverflow, InvalidLeverage, PoolEmpty


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OrderSide(str, Enum):
    """BUY spends token B for token A; SELL spends token A for token B."""
    BUY = "buy"
    SELL = "sell"


class PerpSide(str, Enum):
    LONG = "long"
    SHORT = "short"


# ---------------------------------------------------------------------------
# Checked arithmetic
# ---------------------------------------------------------------------------

def _check(value: int, bound: int = U64_MAX) -> int:
    if value < 0 or value > bound:
        raise ArithmeticOverflow(f"Value {value} outside [0, {bound}]")
    return value


def checked_add(a: int, b: int, bound: int = U64_MAX) -> int:
    return _check(a + b, bound)


def checked_sub(a: int, b: int) -> int:
    if b > a:
        raise ArithmeticOverflow(f"Underflow: {a} - {b}")
    return a - b


def checked_mul(a: int, b: int, bound: int = U128_MAX) -> int:
    return _check(a * b, bound)


def checked_div(a: int, b: int) -> int:
    if b == 0:
        raise ArithmeticOverflow("Division by zero")
    return a // b


def ceil_div(a: int, b: int) -> int:
    if b == 0:
        raise ArithmeticOverflow("Division by zero")
    return -(-a // b)


# ---------------------------------------------------------------------------
# Swap math
# ---------------------------------------------------------------------------

def net_input(amount_in: int, fee_bps: int) -> int:
    """Input left after the pool fee: floor(amount_in * (10000 - fee) / 10000)."""
    _check(amount_in)
    scaled = checked_mul(amount_in, checked_sub(BPS_DENOMINATOR, fee_bps))
    return scaled // BPS_DENOMINATOR


def fee_amount(amount_in: int, fee_bps: int) -> int:
    """Portion of amount_in retained by the pool as fee."""
    return amount_in - net_input(amount_in, fee_bps)


def swap_output(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> int:
    """
    Constant-product output for an exact input.

    amount_out = floor(reserve_out * net / (reserve_in + net))

    Raises:
        PoolEmpty: if either reserve is zero
    """
    _check(reserve_in)
    _check(reserve_out)
    if reserve_in == 0 or reserve_out == 0:
        raise PoolEmpty("Pool has no liquidity")
    if amount_in == 0:
        return 0
    net = net_input(amount_in, fee_bps)
    numerator = checked_mul(reserve_out, net)
    denominator = checked_add(reserve_in, net, U128_MAX)
    return _check(numerator // denominator)


# ---------------------------------------------------------------------------
# LP share math
# ---------------------------------------------------------------------------

def initial_lp_tokens(amount_a: int, amount_b: int) -> int:
    """First deposit mints floor(sqrt(a * b))."""
    return _check(math.isqrt(checked_mul(_check(amount_a), _check(amount_b))))


def proportional_lp_tokens(
    amount_a: int,
    amount_b: int,
    reserve_a: int,
    reserve_b: int,
    total_supply: int,
) -> int:
    """Later deposits mint against the binding (smaller-ratio) side."""
    if reserve_a == 0 or reserve_b == 0:
        raise PoolEmpty("Pool has no liquidity")
    by_a = checked_mul(amount_a, total_supply) // reserve_a
    by_b = checked_mul(amount_b, total_supply) // reserve_b
    return _check(min(by_a, by_b))


def withdraw_amounts(lp_burn: int, total_supply: int, reserve_a: int, reserve_b: int) -> Tuple[int, int]:
    if total_supply == 0:
        raise PoolEmpty("No LP supply outstanding")
    return (
        checked_mul(lp_burn, reserve_a) // total_supply,
        checked_mul(lp_burn, reserve_b) // total_supply,
    )


# ---------------------------------------------------------------------------
# Price impact / quotes
# ---------------------------------------------------------------------------

def price_impact_pct(amount_in: int, reserve_in: int, reserve_out: int, amount_out: int) -> Fraction:
    """
    (spot - execution) / spot * 100, as an exact fraction.

    spot = reserve_out / reserve_in, execution = amount_out / amount_in.
    """
    if reserve_in == 0 or reserve_out == 0:
        raise PoolEmpty("Pool has no liquidity")
    if amount_in == 0:
        return Fraction(0)
    spot = Fraction(reserve_out, reserve_in)
    execution = Fraction(amount_out, amount_in)
    return (spot - execution) / spot * 100


def price_impact_bps(amount_in: int, reserve_in: int, reserve_out: int, amount_out: int) -> int:
    """Price impact floored to whole basis points, never negative."""
    pct = price_impact_pct(amount_in, reserve_in, reserve_out, amount_out)
    return max(0, math.floor(pct * 100))


def spot_price(reserve_a: int, reserve_b: int) -> int:
    """Token B per token A, scaled by PRICE_SCALE."""
    if reserve_a == 0 or reserve_b == 0:
        raise PoolEmpty("Pool has no liquidity")
    return _check(checked_mul(reserve_b, PRICE_SCALE) // reserve_a)


def ask_price(reserve_a: int, reserve_b: int, fee_bps: int) -> int:
    """Marginal cost of buying token A, fee included (rounded up)."""
    if reserve_a == 0 or reserve_b == 0:
        raise PoolEmpty("Pool has no liquidity")
    numerator = checked_mul(checked_mul(reserve_b, PRICE_SCALE), BPS_DENOMINATOR)
    denominator = checked_mul(reserve_a, checked_sub(BPS_DENOMINATOR, fee_bps))
    return _check(ceil_div(numerator, denominator))


def bid_price(reserve_a: int, reserve_b: int, fee_bps: int) -> int:
    """Marginal proceeds of selling token A, fee deducted (rounded down)."""
    if reserve_a == 0 or reserve_b == 0:
        raise PoolEmpty("Pool has no liquidity")
    numerator = checked_mul(checked_mul(reserve_b, PRICE_SCALE), checked_sub(BPS_DENOMINATOR, fee_bps))
    denominator = checked_mul(reserve_a, BPS_DENOMINATOR)
    return _check(numerator // denominator)


def expected_output_at_price(amount_in: int, price: int, side: OrderSide) -> int:
    """Output amount_in would buy at a flat price (no impact, no fee)."""
    if price == 0:
        raise ArithmeticOverflow("Price must be positive")
    if side == OrderSide.BUY:
        return _check(checked_mul(amount_in, PRICE_SCALE) // price)
    return _check(checked_mul(amount_in, price) // PRICE_SCALE)


def min_out_with_slippage(expected_out: int, slippage_bps: int) -> int:
    return checked_mul(expected_out, checked_sub(BPS_DENOMINATOR, slippage_bps)) // BPS_DENOMINATOR


# ---------------------------------------------------------------------------
# Perpetual math
# ---------------------------------------------------------------------------

def required_margin(size: int, leverage: int) -> int:
    if leverage <= 0:
        raise InvalidLeverage("Leverage must be positive")
    return ceil_div(_check(size), leverage)


def liquidation_price(entry: int, leverage: int, side: PerpSide) -> int:
    """
    Long:  entry * (1 - 1/leverage)
    Short: entry * (1 + 1/leverage)
    """
    if leverage <= 0:
        raise InvalidLeverage("Leverage must be positive")
    if side == PerpSide.LONG:
        return checked_mul(entry, leverage - 1) // leverage
    return _check(checked_mul(entry, leverage + 1) // leverage)


def pnl(entry: int, current: int, size: int, side: PerpSide) -> int:
    """
    Signed PnL in collateral units, floored toward negative infinity.

    Long:  (current - entry) / entry * size
    Short: (entry - current) / entry * size
    """
    if entry == 0:
        raise ArithmeticOverflow("Entry price must be positive")
    diff = current - entry if side == PerpSide.LONG else entry - current
    result = (diff * size) // entry
    if abs(diff * size) > U128_MAX or abs(result) > U64_MAX:
        raise ArithmeticOverflow(f"PnL out of range: {result}")
    return result


def is_liquidatable(current: int, liq_price: int, side: PerpSide) -> bool:
    if side == PerpSide.LONG:
        return current <= liq_price
    return current >= liq_price


# ---------------------------------------------------------------------------
# LP rewards
# ---------------------------------------------------------------------------

def lp_rewards(lp_balance: int, total_supply: int, elapsed: int, rate_per_second: int) -> int:
    """rewards = (lp_balance / total_supply) * elapsed * rate, at REWARD_PRECISION."""
    if total_supply == 0 or lp_balance == 0 or elapsed <= 0:
        return 0
    share = checked_mul(lp_balance, REWARD_PRECISION) // total_supply
    accrued = checked_mul(checked_mul(share, elapsed), rate_per_second)
    return _check(accrued // REWARD_PRECISION)
