"""
Test suite for cpdex Admin Controls and LP Rewards
"""

import pytest

from cpdex.exceptions import (
    AlreadyPaused,
    InvalidFeeRate,
    InvalidRewardRate,
    NotPaused,
    PoolPaused,
    SupplyCapExceeded,
    TradingActive,
    Unauthorized,
    UnknownPair,
    ZeroAmount,
)
from cpdex.exchange.admin import AdminController, SingleAdminAuthorizer
from cpdex.exchange.amm import PoolManager
from cpdex.exchange.ledger import Transfer
from cpdex.exchange.pricing import OrderSide
from cpdex.exchange.rewards import RewardsDistributor
from cpdex.exchange.token import RewardToken

from conftest import ADMIN, ALICE, BOB, CAROL, LP, SEED_A, SEED_B

PAIR = "SOL/USDC"


@pytest.fixture
def authorizer():
    return SingleAdminAuthorizer(ADMIN)


@pytest.fixture
def admin(pools, pool, authorizer, clock):
    return AdminController(pools, authorizer, clock)


@pytest.fixture
def rewards(pools, pool, registry, authorizer):
    return RewardsDistributor(pools, registry, authorizer, reward_asset="RWD", reward_rate_per_second=1000)


# ============================================================================
#  Admin
# ============================================================================

class TestAdminAuthorization:

    def test_admin_identity(self, authorizer):
        assert authorizer.is_admin(ADMIN)
        assert not authorizer.is_admin(ALICE)

    def test_empty_admin_matches_nobody(self):
        assert not SingleAdminAuthorizer("").is_admin("")

    def test_non_admin_rejected(self, admin):
        with pytest.raises(Unauthorized):
            admin.pause_trading(ALICE, PAIR)
        with pytest.raises(Unauthorized):
            admin.update_fee_rate(ALICE, PAIR, 10)
        with pytest.raises(Unauthorized):
            admin.emergency_withdraw(ALICE, PAIR, ALICE)

    def test_transfer_admin(self, admin, authorizer):
        admin.transfer_admin(ADMIN, BOB)
        assert authorizer.admin == BOB
        with pytest.raises(Unauthorized):
            admin.pause_trading(ADMIN, PAIR)
        admin.pause_trading(BOB, PAIR)

    def test_transfer_to_empty(self, admin):
        with pytest.raises(Unauthorized):
            admin.transfer_admin(ADMIN, "")


class TestPauseResume:

    def test_pause_blocks_swaps(self, admin, pool):
        admin.pause_trading(ADMIN, PAIR, "incident")
        assert pool.state.pause_reason == "incident"
        with pytest.raises(PoolPaused):
            pool.swap(ALICE, 100_000, 0, OrderSide.SELL)

    def test_pause_twice(self, admin):
        admin.pause_trading(ADMIN, PAIR)
        with pytest.raises(AlreadyPaused):
            admin.pause_trading(ADMIN, PAIR)

    def test_resume(self, admin, pool):
        admin.pause_trading(ADMIN, PAIR)
        admin.resume_trading(ADMIN, PAIR)
        assert not pool.is_paused
        assert pool.swap(ALICE, 100_000, 0, OrderSide.SELL).amount_out > 0

    def test_resume_unpaused(self, admin):
        with pytest.raises(NotPaused):
            admin.resume_trading(ADMIN, PAIR)

    def test_unknown_pair(self, admin):
        with pytest.raises(UnknownPair):
            admin.pause_trading(ADMIN, "BTC/USDC")

    def test_actions_recorded(self, admin, clock):
        admin.pause_trading(ADMIN, PAIR, "x")
        clock.advance(5)
        admin.resume_trading(ADMIN, PAIR)
        assert [a.action for a in admin.state.actions] == ["pause", "resume"]
        assert admin.state.last_action_time == clock.now


class TestFeeUpdate:

    def test_update_fee(self, admin, pool):
        assert admin.update_fee_rate(ADMIN, PAIR, 50) == 30
        assert pool.state.fee_rate_bps == 50
        assert admin.state.fee_update_count == 1

    def test_fee_above_cap(self, admin, pool):
        with pytest.raises(InvalidFeeRate):
            admin.update_fee_rate(ADMIN, PAIR, 101)
        assert pool.state.fee_rate_bps == 30
        assert admin.state.fee_update_count == 0

    def test_fee_above_configured_cap(self, ledger, registry, authorizer, clock):
        pools = PoolManager(ledger, registry, clock=clock, max_fee_rate_bps=50)
        pool = pools.initialize_pool("SOL", "USDC", 30)
        admin = AdminController(pools, authorizer, clock)
        with pytest.raises(InvalidFeeRate):
            admin.update_fee_rate(ADMIN, PAIR, 80)
        assert pool.state.fee_rate_bps == 30
        assert admin.update_fee_rate(ADMIN, PAIR, 50) == 30


class TestEmergencyWithdraw:

    def test_requires_pause(self, admin):
        with pytest.raises(TradingActive):
            admin.emergency_withdraw(ADMIN, PAIR, CAROL)

    def test_sweeps_only_surplus(self, admin, pool, ledger):
        ledger.transfer(ALICE, pool.vault, "USDC", 500)
        ledger.transfer(ALICE, pool.vault, "SOL", 7)
        usdc0 = ledger.balance_of(CAROL, "USDC")
        admin.pause_trading(ADMIN, PAIR)

        assert admin.emergency_withdraw(ADMIN, PAIR, CAROL) == (7, 500)

        assert ledger.balance_of(CAROL, "USDC") == usdc0 + 500
        assert pool.state.reserve_a == SEED_A
        assert pool.state.reserve_b == SEED_B
        assert ledger.balance_of(pool.vault, "USDC") == SEED_B

    def test_nothing_to_sweep(self, admin):
        admin.pause_trading(ADMIN, PAIR)
        assert admin.emergency_withdraw(ADMIN, PAIR, CAROL) == (0, 0)


# ============================================================================
#  Rewards
# ============================================================================

class TestRewardRate:

    def test_rate_bounds(self, pools, registry, authorizer):
        with pytest.raises(InvalidRewardRate):
            RewardsDistributor(pools, registry, authorizer, reward_rate_per_second=0)
        with pytest.raises(InvalidRewardRate):
            RewardsDistributor(pools, registry, authorizer, reward_rate_per_second=10**12 + 1)

    def test_set_rate(self, rewards):
        assert rewards.set_reward_rate(ADMIN, 5) == 1000
        assert rewards.reward_rate_per_second == 5

    def test_set_rate_non_admin(self, rewards):
        with pytest.raises(Unauthorized):
            rewards.set_reward_rate(ALICE, 5)

    def test_set_rate_invalid(self, rewards):
        with pytest.raises(InvalidRewardRate):
            rewards.set_reward_rate(ADMIN, 0)


class TestRewardAccrual:

    def test_first_update_accrues_nothing(self, rewards):
        account = rewards.update_user_rewards(LP, PAIR)
        assert account.earned_rewards == 0
        assert account.lp_token_balance == 100_000_000

    def test_full_share(self, rewards, clock):
        rewards.update_user_rewards(LP, PAIR)
        clock.advance(100)
        assert rewards.pending_rewards(LP, PAIR).pending_rewards == 100_000
        assert rewards.update_user_rewards(LP, PAIR).earned_rewards == 100_000

    def test_split_share(self, rewards, pool, ledger, clock):
        ledger.transfer(LP, ALICE, pool.lp_asset, 50_000_000)
        rewards.update_user_rewards(LP, PAIR)
        rewards.update_user_rewards(ALICE, PAIR)
        clock.advance(100)
        assert rewards.update_user_rewards(LP, PAIR).earned_rewards == 50_000
        assert rewards.update_user_rewards(ALICE, PAIR).earned_rewards == 50_000

    def test_accrues_on_old_snapshot(self, rewards, pool, ledger, clock):
        rewards.update_user_rewards(LP, PAIR)
        ledger.transfer(LP, BOB, pool.lp_asset, 100_000_000)
        clock.advance(100)
        account = rewards.update_user_rewards(LP, PAIR)
        assert account.earned_rewards == 100_000
        assert account.lp_token_balance == 0
        clock.advance(100)
        assert rewards.update_user_rewards(LP, PAIR).earned_rewards == 100_000

    def test_unknown_user_pending(self, rewards):
        assert rewards.pending_rewards(CAROL, PAIR).pending_rewards == 0


class TestRewardClaims:

    def test_claim_mints(self, rewards, ledger, clock):
        rewards.update_user_rewards(LP, PAIR)
        clock.advance(100)
        assert rewards.claim_rewards(LP, PAIR) == 100_000
        assert ledger.balance_of(LP, "RWD") == 100_000
        assert ledger.supply_of("RWD") == 100_000
        assert rewards.token.total_minted == 100_000
        assert rewards.total_rewards_distributed == 100_000
        account = rewards.get_account(LP, PAIR)
        assert account.claimable == 0
        assert account.last_claim_time == clock.now

    def test_claim_nothing(self, rewards):
        with pytest.raises(ZeroAmount):
            rewards.claim_rewards(LP, PAIR)

    def test_claim_twice(self, rewards, clock):
        rewards.update_user_rewards(LP, PAIR)
        clock.advance(100)
        rewards.claim_rewards(LP, PAIR)
        with pytest.raises(ZeroAmount):
            rewards.claim_rewards(LP, PAIR)

    def test_claim_stops_at_supply_cap(self, pools, pool, registry, authorizer, ledger, clock):
        dist = RewardsDistributor(pools, registry, authorizer, reward_rate_per_second=1000, supply_cap=60_000)
        dist.update_user_rewards(LP, PAIR)
        clock.advance(100)

        assert dist.claim_rewards(LP, PAIR) == 60_000
        assert dist.get_account(LP, PAIR).claimable == 40_000
        assert ledger.supply_of("RWD") == 60_000

        with pytest.raises(SupplyCapExceeded):
            dist.claim_rewards(LP, PAIR)
        assert dist.get_account(LP, PAIR).claimed_rewards == 60_000
        assert ledger.balance_of(LP, "RWD") == 60_000

    def test_claim_after_authority_handed_over(self, rewards, ledger, clock):
        rewards.update_user_rewards(LP, PAIR)
        rewards.transfer_mint_authority(ADMIN, CAROL)
        clock.advance(100)
        with pytest.raises(Unauthorized):
            rewards.claim_rewards(LP, PAIR)
        assert rewards.get_account(LP, PAIR).claimed_rewards == 0
        assert ledger.balance_of(LP, "RWD") == 0


# ============================================================================
#  Reward token
# ============================================================================

class TestRewardToken:

    @pytest.fixture
    def token(self, ledger):
        return RewardToken(ledger, "GEM", ADMIN, supply_cap=1_000)

    def test_mint(self, token, ledger):
        assert token.mint(ADMIN, ALICE, 400) == 400
        assert ledger.balance_of(ALICE, "GEM") == 400
        assert token.remaining_mintable == 600

    def test_mint_up_to_cap(self, token):
        token.mint(ADMIN, ALICE, 1_000)
        assert token.remaining_mintable == 0

    def test_mint_past_cap(self, token, ledger):
        token.mint(ADMIN, ALICE, 900)
        with pytest.raises(SupplyCapExceeded):
            token.mint(ADMIN, ALICE, 101)
        assert token.total_minted == 900
        assert ledger.balance_of(ALICE, "GEM") == 900

    def test_mint_zero(self, token):
        with pytest.raises(ZeroAmount):
            token.mint(ADMIN, ALICE, 0)

    def test_mint_by_stranger(self, token, ledger):
        with pytest.raises(Unauthorized):
            token.mint(BOB, BOB, 10)
        assert ledger.supply_of("GEM") == 0

    def test_transfer_authority(self, token):
        token.transfer_mint_authority(ADMIN, BOB)
        assert token.mint_authority == BOB
        token.mint(BOB, ALICE, 5)
        with pytest.raises(Unauthorized):
            token.mint(ADMIN, ALICE, 5)

    def test_transfer_authority_by_stranger(self, token):
        with pytest.raises(Unauthorized):
            token.transfer_mint_authority(BOB, BOB)
        assert token.mint_authority == ADMIN

    def test_transfer_authority_to_empty(self, token):
        with pytest.raises(Unauthorized):
            token.transfer_mint_authority(ADMIN, "")

    def test_supply_info(self, token, ledger):
        token.mint(ADMIN, ALICE, 300)
        ledger.settle([Transfer(ALICE, None, "GEM", 100)])
        info = token.total_supply()
        assert info.total_minted == 300
        assert info.circulating_supply == 200
        assert info.remaining_mintable == 700
        assert info.supply_cap == 1_000

    def test_bad_cap(self, ledger):
        with pytest.raises(ValueError):
            RewardToken(ledger, "GEM", ADMIN, supply_cap=0)


class TestDistributorMintAuthority:

    def test_distributor_holds_authority(self, rewards):
        assert rewards.token.mint_authority == rewards.minter

    def test_admin_only_while_held(self, rewards):
        with pytest.raises(Unauthorized):
            rewards.transfer_mint_authority(ALICE, ALICE)
        assert rewards.token.mint_authority == rewards.minter

    def test_external_authority_hands_back(self, rewards, ledger, clock):
        rewards.transfer_mint_authority(ADMIN, CAROL)
        with pytest.raises(Unauthorized):
            rewards.transfer_mint_authority(ADMIN, ADMIN)
        rewards.transfer_mint_authority(CAROL, rewards.minter)

        rewards.update_user_rewards(LP, PAIR)
        clock.advance(10)
        assert rewards.claim_rewards(LP, PAIR) == 10_000
