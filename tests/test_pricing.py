"""
Test suite for cpdex Pricing Core

Covers:
  - Constant-product swap output and fee split
  - LP mint / burn math
  - Price impact
  - Spot / ask / bid quotes
  - Margin, liquidation price and PnL
  - LP reward accrual
  - Checked arithmetic bounds
"""

from fractions import Fraction

import pytest

from cpdex.constants import PRICE_SCALE, U64_MAX
from cpdex.exceptions import ArithmeticOverflow, InvalidLeverage, PoolEmpty
from cpdex.exchange.pricing import (
    OrderSide,
    PerpSide,
    ask_price,
    bid_price,
    ceil_div,
    checked_add,
    checked_div,
    checked_mul,
    checked_sub,
    expected_output_at_price,
    fee_amount,
    initial_lp_tokens,
    is_liquidatable,
    liquidation_price,
    lp_rewards,
    min_out_with_slippage,
    net_input,
    pnl,
    price_impact_bps,
    price_impact_pct,
    proportional_lp_tokens,
    required_margin,
    spot_price,
    swap_output,
    withdraw_amounts,
)


# ============================================================================
#  Swap math
# ============================================================================

class TestSwapOutput:

    def test_reference_value(self):
        out = swap_output(100, 1000, 2000, 30)
        assert 180 <= out <= 182

    def test_zero_fee(self):
        assert swap_output(100, 1000, 2000, 0) == 181

    def test_zero_amount_returns_zero(self):
        assert swap_output(0, 1000, 2000, 30) == 0

    def test_empty_reserve_in(self):
        with pytest.raises(PoolEmpty):
            swap_output(100, 0, 2000, 30)

    def test_empty_reserve_out(self):
        with pytest.raises(PoolEmpty):
            swap_output(100, 1000, 0, 30)

    def test_strictly_decreasing_in_fee(self):
        outs = [swap_output(1_000_000, 10**9, 10**9, fee) for fee in (0, 10, 30, 100)]
        assert outs == sorted(outs, reverse=True)
        assert len(set(outs)) == len(outs)

    def test_output_below_reserve(self):
        assert swap_output(U64_MAX // 2, 1000, 2000, 30) < 2000

    def test_k_never_decreases(self):
        ra, rb = 1_000_000, 3_000_000
        for amt in (1, 17, 1000, 250_000):
            out = swap_output(amt, ra, rb, 30)
            assert (ra + amt) * (rb - out) >= ra * rb

    def test_k_grows_with_fee(self):
        ra, rb = 1_000_000, 3_000_000
        out = swap_output(10_000, ra, rb, 30)
        assert (ra + 10_000) * (rb - out) > ra * rb

    def test_net_and_fee_add_up(self):
        assert net_input(10_000, 30) == 9970
        assert fee_amount(10_000, 30) == 30
        assert net_input(10_000, 30) + fee_amount(10_000, 30) == 10_000

    def test_net_input_floors(self):
        assert net_input(100, 30) == 99
        assert fee_amount(100, 30) == 1

    def test_amount_above_u64_overflows(self):
        with pytest.raises(ArithmeticOverflow):
            swap_output(U64_MAX + 1, 1000, 2000, 30)


# ============================================================================
#  LP math
# ============================================================================

class TestLpMath:

    def test_initial_lp_tokens(self):
        assert initial_lp_tokens(1_000_000, 2_000_000) == 1_414_213

    def test_initial_lp_tokens_square(self):
        assert initial_lp_tokens(4, 9) == 6

    def test_proportional_binding_side(self):
        assert proportional_lp_tokens(1000, 2000, 10000, 20000, 14142) == 1414

    def test_proportional_uses_smaller_ratio(self):
        # Excess token B is not credited
        assert proportional_lp_tokens(1000, 5000, 10000, 20000, 14142) == 1414

    def test_proportional_empty_pool(self):
        with pytest.raises(PoolEmpty):
            proportional_lp_tokens(1, 1, 0, 0, 0)

    def test_withdraw_amounts(self):
        assert withdraw_amounts(1414, 14142, 10000, 20000) == (999, 1999)

    def test_withdraw_full_supply(self):
        assert withdraw_amounts(14142, 14142, 10000, 20000) == (10000, 20000)

    def test_withdraw_no_supply(self):
        with pytest.raises(PoolEmpty):
            withdraw_amounts(1, 0, 0, 0)


# ============================================================================
#  Price impact / quotes
# ============================================================================

class TestQuotes:

    def test_price_impact_is_exact_fraction(self):
        impact = price_impact_pct(100, 1000, 2000, 181)
        assert isinstance(impact, Fraction)
        # spot 2, execution 1.81 -> 9.5 %
        assert impact == Fraction(19, 2)

    def test_price_impact_bps(self):
        assert price_impact_bps(100, 1000, 2000, 181) == 950

    def test_price_impact_zero_amount(self):
        assert price_impact_pct(0, 1000, 2000, 0) == 0

    def test_price_impact_empty_pool(self):
        with pytest.raises(PoolEmpty):
            price_impact_pct(1, 0, 2000, 0)

    def test_spot_price(self):
        assert spot_price(1000, 2000) == 2 * PRICE_SCALE

    def test_spot_price_empty(self):
        with pytest.raises(PoolEmpty):
            spot_price(0, 0)

    def test_ask_above_spot_above_bid(self):
        ask = ask_price(1000, 2000, 30)
        bid = bid_price(1000, 2000, 30)
        spot = spot_price(1000, 2000)
        assert bid < spot < ask

    def test_ask_bid_equal_spot_without_fee(self):
        assert ask_price(1000, 2000, 0) == bid_price(1000, 2000, 0) == spot_price(1000, 2000)

    def test_ask_rounds_up(self):
        # 2e9 * 10000 / 9970 = 2006018054.16...
        assert ask_price(1000, 2000, 30) == 2_006_018_055

    def test_bid_rounds_down(self):
        assert bid_price(1000, 2000, 30) == 1_994_000_000

    def test_expected_output_buy(self):
        # Spend 200 B at 2 B/A -> 100 A
        assert expected_output_at_price(200, 2 * PRICE_SCALE, OrderSide.BUY) == 100

    def test_expected_output_sell(self):
        # Sell 100 A at 2 B/A -> 200 B
        assert expected_output_at_price(100, 2 * PRICE_SCALE, OrderSide.SELL) == 200

    def test_expected_output_zero_price(self):
        with pytest.raises(ArithmeticOverflow):
            expected_output_at_price(100, 0, OrderSide.BUY)

    def test_min_out_with_slippage(self):
        assert min_out_with_slippage(10_000, 100) == 9_900
        assert min_out_with_slippage(10_000, 0) == 10_000
        assert min_out_with_slippage(10_000, 10_000) == 0


# ============================================================================
#  Perpetual math
# ============================================================================

class TestPerpMath:

    def test_required_margin_ceil(self):
        assert required_margin(1000, 10) == 100
        assert required_margin(1001, 10) == 101

    def test_required_margin_bad_leverage(self):
        with pytest.raises(InvalidLeverage):
            required_margin(1000, 0)

    def test_liquidation_price_long(self):
        assert liquidation_price(10000, 10, PerpSide.LONG) == 9000

    def test_liquidation_price_short(self):
        assert liquidation_price(10000, 2, PerpSide.SHORT) == 15000

    def test_liquidation_price_1x_long_is_zero(self):
        assert liquidation_price(10000, 1, PerpSide.LONG) == 0

    def test_pnl_long(self):
        assert pnl(10000, 11000, 10000, PerpSide.LONG) == 1000

    def test_pnl_short(self):
        assert pnl(10000, 9000, 10000, PerpSide.SHORT) == 1000

    def test_pnl_negative(self):
        assert pnl(10000, 9000, 10000, PerpSide.LONG) == -1000

    def test_pnl_floors_toward_negative(self):
        # -1 * 3 / 10000 floors to -1
        assert pnl(10000, 9999, 3, PerpSide.LONG) == -1

    def test_is_liquidatable(self):
        assert is_liquidatable(9000, 9000, PerpSide.LONG)
        assert not is_liquidatable(9001, 9000, PerpSide.LONG)
        assert is_liquidatable(15000, 15000, PerpSide.SHORT)
        assert not is_liquidatable(14999, 15000, PerpSide.SHORT)


# ============================================================================
#  Rewards
# ============================================================================

class TestLpRewards:

    def test_full_share(self):
        assert lp_rewards(100, 100, 10, 5) == 50

    def test_half_share(self):
        assert lp_rewards(50, 100, 10, 5) == 25

    def test_no_supply_or_time(self):
        assert lp_rewards(50, 0, 10, 5) == 0
        assert lp_rewards(50, 100, 0, 5) == 0
        assert lp_rewards(0, 100, 10, 5) == 0


# ============================================================================
#  Checked arithmetic
# ============================================================================

class TestCheckedArithmetic:

    def test_add_overflow(self):
        with pytest.raises(ArithmeticOverflow):
            checked_add(U64_MAX, 1)

    def test_sub_underflow(self):
        with pytest.raises(ArithmeticOverflow):
            checked_sub(1, 2)

    def test_mul_u128_bound(self):
        assert checked_mul(U64_MAX, U64_MAX) == U64_MAX * U64_MAX
        with pytest.raises(ArithmeticOverflow):
            checked_mul(U64_MAX + 2, U64_MAX + 2)

    def test_div_by_zero(self):
        with pytest.raises(ArithmeticOverflow):
            checked_div(1, 0)
        with pytest.raises(ArithmeticOverflow):
            ceil_div(1, 0)

    def test_ceil_div(self):
        assert ceil_div(10, 3) == 4
        assert ceil_div(9, 3) == 3
