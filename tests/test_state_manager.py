"""
Test suite for cpdex Exchange State Manager

Covers:
  - Transaction envelope (hash, dict round-trip, basic validation)
  - Operation dispatch and error codes
  - Block clock driving expiry and DCA scheduling
  - Keeper entry point (limit / DCA / liquidation)
  - Deterministic state root and state export
"""

import pytest

from cpdex.config import EngineConfig, OrderSectionConfig, PoolSectionConfig, RewardsSectionConfig
from cpdex.exchange.state_manager import ExchangeStateManager
from cpdex.exchange.transactions import ExchangeOpType, ExchangeTransaction

from conftest import ADMIN, ALICE, BOB, CAROL, KEEPER, LP, SEED_A, SEED_B, START_TIME

PAIR = "SOL/USDC"
USDC_START = 100_000_000_000


@pytest.fixture(autouse=True)
def reset_singleton():
    ExchangeStateManager.reset_instance()
    yield
    ExchangeStateManager.reset_instance()


def run(mgr, op, sender, **params):
    return mgr.process_transaction(ExchangeTransaction(op, sender, params))


def build_manager(config=None):
    mgr = ExchangeStateManager(config or EngineConfig(admin=ADMIN))
    mgr.begin_block(1, START_TIME)
    for who in (ALICE, BOB, LP):
        mgr.ledger.deposit(who, "SOL", 1_000_000_000)
        mgr.ledger.deposit(who, "USDC", USDC_START)
    run(mgr, ExchangeOpType.INITIALIZE_POOL, ADMIN, token_a="SOL", token_b="USDC", fee_rate_bps=30)
    run(mgr, ExchangeOpType.ADD_LIQUIDITY, LP, pair=PAIR, amount_a=SEED_A, amount_b=SEED_B)
    return mgr


@pytest.fixture
def mgr():
    return build_manager()


# ============================================================================
#  Transaction envelope
# ============================================================================

class TestExchangeTransaction:

    def test_hash_deterministic(self):
        a = ExchangeTransaction(ExchangeOpType.SWAP, ALICE, {"pair": PAIR, "amount_in": 5})
        b = ExchangeTransaction(ExchangeOpType.SWAP, ALICE, {"amount_in": 5, "pair": PAIR})
        assert a.tx_hash() == b.tx_hash()
        assert len(a.tx_hash()) == 64

    def test_hash_covers_sender(self):
        a = ExchangeTransaction(ExchangeOpType.SWAP, ALICE, {"pair": PAIR})
        b = ExchangeTransaction(ExchangeOpType.SWAP, BOB, {"pair": PAIR})
        assert a.tx_hash() != b.tx_hash()

    def test_dict_round_trip(self):
        tx = ExchangeTransaction(ExchangeOpType.CLAIM_REWARDS, LP, {"pair": PAIR})
        restored = ExchangeTransaction.from_dict(tx.to_dict())
        assert restored.op_type == ExchangeOpType.CLAIM_REWARDS
        assert restored.tx_hash() == tx.tx_hash()

    def test_missing_param(self):
        tx = ExchangeTransaction(ExchangeOpType.SWAP, ALICE, {"pair": PAIR, "side": "sell"})
        with pytest.raises(ValueError, match="amount_in"):
            tx.validate_basic()

    def test_missing_sender(self):
        with pytest.raises(ValueError, match="sender"):
            ExchangeTransaction(ExchangeOpType.CLAIM_REWARDS, "", {"pair": PAIR}).validate_basic()


# ============================================================================
#  Dispatch
# ============================================================================

class TestProcessTransaction:

    def test_pool_created(self, mgr):
        assert PAIR in mgr.markets
        pool = mgr.market(PAIR).pool
        assert (pool.state.reserve_a, pool.state.reserve_b) == (SEED_A, SEED_B)
        assert pool.state.created_at == START_TIME

    def test_duplicate_pool(self, mgr):
        result = run(mgr, ExchangeOpType.INITIALIZE_POOL, ADMIN, token_a="SOL", token_b="USDC")
        assert not result.success
        assert result.error_code == "PoolAlreadyExists"

    def test_default_fee_from_config(self):
        config = EngineConfig(admin=ADMIN, pool=PoolSectionConfig(default_fee_rate_bps=10))
        mgr = ExchangeStateManager(config)
        run(mgr, ExchangeOpType.INITIALIZE_POOL, ADMIN, token_a="ETH", token_b="USDC")
        assert mgr.market("ETH/USDC").pool.state.fee_rate_bps == 10

    def test_fee_update_respects_configured_cap(self):
        mgr = build_manager(EngineConfig(admin=ADMIN, pool=PoolSectionConfig(max_fee_rate_bps=50)))
        result = run(mgr, ExchangeOpType.UPDATE_FEE_RATE, ADMIN, pair=PAIR, fee_rate_bps=80)
        assert result.error_code == "InvalidFeeRate"
        assert mgr.market(PAIR).pool.state.fee_rate_bps == 30
        assert run(mgr, ExchangeOpType.UPDATE_FEE_RATE, ADMIN, pair=PAIR, fee_rate_bps=50).success

    def test_slippage_cap_from_config(self):
        mgr = build_manager(EngineConfig(admin=ADMIN, orders=OrderSectionConfig(max_slippage_bps=200)))
        limit = run(
            mgr, ExchangeOpType.PLACE_LIMIT_ORDER, ALICE,
            pair=PAIR, side="buy", amount_in=1_000_000, limit_price=101 * 10**9, slippage_bps=500,
        )
        market = run(
            mgr, ExchangeOpType.MARKET_ORDER, ALICE,
            pair=PAIR, side="sell", amount_in=100_000, minimum_out=0, slippage_bps=300,
        )
        dca = run(
            mgr, ExchangeOpType.CREATE_DCA_ORDER, ALICE,
            pair=PAIR, side="buy", amount_per_cycle=1_000_000, total_cycles=2,
            cycle_frequency=3600, slippage_bps=300,
        )
        assert limit.error_code == market.error_code == dca.error_code == "InvalidSlippageTolerance"
        assert mgr.ledger.balance_of(ALICE, "USDC") == USDC_START

    def test_swap(self, mgr):
        tx = ExchangeTransaction(
            ExchangeOpType.SWAP, ALICE,
            {"pair": PAIR, "side": "sell", "amount_in": 100_000, "minimum_out": 0},
        )
        result = mgr.process_transaction(tx)
        assert result.success
        assert result.data == {"amount_out": 9_871_580, "fee": 300, "price_impact_bps": 128}
        assert tx.success
        assert tx.result == result.data

    def test_engine_error_code(self, mgr):
        root = mgr.compute_state_root()
        result = run(mgr, ExchangeOpType.SWAP, ALICE, pair=PAIR, side="sell", amount_in=100_000, minimum_out=10**12)
        assert not result.success
        assert result.error_code == "SlippageExceeded"
        assert mgr.compute_state_root() == root

    def test_missing_param_code(self, mgr):
        result = run(mgr, ExchangeOpType.SWAP, ALICE, pair=PAIR)
        assert result.error_code == "InvalidTransaction"

    def test_bad_side_code(self, mgr):
        result = run(mgr, ExchangeOpType.SWAP, ALICE, pair=PAIR, side="sideways", amount_in=1, minimum_out=0)
        assert result.error_code == "InvalidTransaction"

    def test_unknown_pair(self, mgr):
        result = run(mgr, ExchangeOpType.SWAP, ALICE, pair="BTC/USDC", side="sell", amount_in=1, minimum_out=0)
        assert result.error_code == "UnknownPair"

    def test_remove_liquidity(self, mgr):
        result = run(mgr, ExchangeOpType.REMOVE_LIQUIDITY, LP, pair=PAIR, lp_amount=50_000_000)
        assert result.data == {"amount_a": SEED_A // 2, "amount_b": SEED_B // 2}

    def test_market_order(self, mgr):
        result = run(
            mgr, ExchangeOpType.MARKET_ORDER, ALICE,
            pair=PAIR, side="sell", amount_in=100_000, minimum_out=0, slippage_bps=50,
        )
        assert result.error_code == "SlippageExceeded"

    def test_admin_gate(self, mgr):
        assert run(mgr, ExchangeOpType.PAUSE_TRADING, ALICE, pair=PAIR).error_code == "Unauthorized"
        assert run(mgr, ExchangeOpType.PAUSE_TRADING, ADMIN, pair=PAIR, reason="audit").success
        result = run(mgr, ExchangeOpType.SWAP, ALICE, pair=PAIR, side="sell", amount_in=100_000, minimum_out=0)
        assert result.error_code == "PoolPaused"
        assert run(mgr, ExchangeOpType.RESUME_TRADING, ADMIN, pair=PAIR).success

    def test_fee_update(self, mgr):
        result = run(mgr, ExchangeOpType.UPDATE_FEE_RATE, ADMIN, pair=PAIR, fee_rate_bps=20)
        assert result.data["old_fee_rate_bps"] == 30
        assert mgr.market(PAIR).pool.state.fee_rate_bps == 20

    def test_transfer_admin(self, mgr):
        assert run(mgr, ExchangeOpType.TRANSFER_ADMIN, ADMIN, new_admin=CAROL).success
        assert mgr.export_state()["admin"] == CAROL
        assert run(mgr, ExchangeOpType.PAUSE_TRADING, ADMIN, pair=PAIR).error_code == "Unauthorized"

    def test_emergency_withdraw(self, mgr):
        pool = mgr.market(PAIR).pool
        mgr.ledger.transfer(ALICE, pool.vault, "USDC", 1000)
        assert run(mgr, ExchangeOpType.EMERGENCY_WITHDRAW, ADMIN, pair=PAIR, destination=CAROL).error_code == "TradingActive"
        run(mgr, ExchangeOpType.PAUSE_TRADING, ADMIN, pair=PAIR)
        result = run(mgr, ExchangeOpType.EMERGENCY_WITHDRAW, ADMIN, pair=PAIR, destination=CAROL)
        assert result.data == {"amount_a": 0, "amount_b": 1000}


# ============================================================================
#  Block clock
# ============================================================================

class TestBlockClock:

    def test_timestamp_cannot_go_backwards(self, mgr):
        with pytest.raises(ValueError):
            mgr.begin_block(2, START_TIME - 1)

    def test_expiry_follows_block_time(self, mgr):
        placed = run(
            mgr, ExchangeOpType.PLACE_LIMIT_ORDER, ALICE,
            pair=PAIR, side="buy", amount_in=1_000_000, limit_price=101 * 10**9,
            slippage_bps=500, expires_at=START_TIME + 60,
        )
        mgr.begin_block(2, START_TIME + 61)
        result = run(mgr, ExchangeOpType.EXECUTE_LIMIT_ORDER, KEEPER, pair=PAIR, order_id=placed.data["order_id"])
        assert result.error_code == "OrderExpired"
        assert mgr.ledger.balance_of(ALICE, "USDC") == USDC_START

    def test_dca_waits_for_next_block(self, mgr):
        created = run(
            mgr, ExchangeOpType.CREATE_DCA_ORDER, ALICE,
            pair=PAIR, side="buy", amount_per_cycle=1_000_000, total_cycles=2,
            cycle_frequency=3600, slippage_bps=500,
        )
        order_id = created.data["order_id"]
        assert created.data["next_execution_time"] == START_TIME
        assert run(mgr, ExchangeOpType.EXECUTE_DCA_ORDER, KEEPER, pair=PAIR, order_id=order_id).success
        assert run(mgr, ExchangeOpType.EXECUTE_DCA_ORDER, KEEPER, pair=PAIR, order_id=order_id).error_code == "TooEarly"
        mgr.begin_block(2, START_TIME + 3600)
        result = run(mgr, ExchangeOpType.EXECUTE_DCA_ORDER, KEEPER, pair=PAIR, order_id=order_id)
        assert result.data["cycles_executed"] == 2


# ============================================================================
#  Keeper entry point
# ============================================================================

class TestTryExecute:

    def test_limit_order(self, mgr):
        placed = run(
            mgr, ExchangeOpType.PLACE_LIMIT_ORDER, ALICE,
            pair=PAIR, side="buy", amount_in=1_000_000, limit_price=101 * 10**9, slippage_bps=500,
        )
        order_id = placed.data["order_id"]
        result = mgr.try_execute(KEEPER, order_id)
        assert result.success
        assert result.data == {"kind": "limit_order", "amount_out": 9960}
        again = mgr.try_execute(KEEPER, order_id)
        assert again.error_code == "InvalidState"

    def test_dca_order(self, mgr):
        created = run(
            mgr, ExchangeOpType.CREATE_DCA_ORDER, ALICE,
            pair=PAIR, side="buy", amount_per_cycle=1_000_000, total_cycles=2,
            cycle_frequency=3600, slippage_bps=500,
        )
        result = mgr.try_execute(KEEPER, created.data["order_id"])
        assert result.data == {"kind": "dca_order", "amount_out": 9960}

    def test_liquidation(self, mgr):
        opened = run(
            mgr, ExchangeOpType.OPEN_POSITION, ALICE,
            pair=PAIR, side="long", size=1_000_000, leverage=5, margin=200_000,
        )
        assert opened.data["entry_price"] == 100 * 10**9
        assert opened.data["liquidation_price"] == 80 * 10**9
        position_id = opened.data["position_id"]

        assert mgr.try_execute(KEEPER, position_id).error_code == "NotLiquidatable"
        run(mgr, ExchangeOpType.SWAP, BOB, pair=PAIR, side="sell", amount_in=2_000_000, minimum_out=0)
        result = mgr.try_execute(KEEPER, position_id)
        assert result.data == {"kind": "position", "liquidator_reward": 4000}
        assert mgr.ledger.balance_of(KEEPER, "USDC") == 4000

    def test_unknown_record(self, mgr):
        assert mgr.try_execute(KEEPER, "0123456789abcdef").error_code == "RecordNotFound"


# ============================================================================
#  Rewards through the manager
# ============================================================================

class TestRewardOps:

    def test_update_claim_mints(self, mgr):
        assert run(mgr, ExchangeOpType.SET_REWARD_RATE, ADMIN, rate=10).data == {"old_rate": 1, "rate": 10}
        run(mgr, ExchangeOpType.UPDATE_USER_REWARDS, LP, pair=PAIR)
        mgr.begin_block(2, START_TIME + 100)
        result = run(mgr, ExchangeOpType.CLAIM_REWARDS, LP, pair=PAIR)
        assert result.data == {"claimed": 1000}
        assert mgr.ledger.balance_of(LP, "RWD") == 1000
        assert mgr.get_stats()["reward_tokens_minted"] == 1000
        assert mgr.export_state()["reward_token"]["total_minted"] == 1000

    def test_claim_capped_by_config(self):
        rewards = RewardsSectionConfig(reward_rate_per_second=10, supply_cap=600)
        mgr = build_manager(EngineConfig(admin=ADMIN, rewards=rewards))
        run(mgr, ExchangeOpType.UPDATE_USER_REWARDS, LP, pair=PAIR)
        mgr.begin_block(2, START_TIME + 100)
        assert run(mgr, ExchangeOpType.CLAIM_REWARDS, LP, pair=PAIR).data == {"claimed": 600}
        assert run(mgr, ExchangeOpType.CLAIM_REWARDS, LP, pair=PAIR).error_code == "SupplyCapExceeded"

    def test_mint_authority_handover(self, mgr):
        assert run(mgr, ExchangeOpType.TRANSFER_MINT_AUTHORITY, ALICE, new_authority=CAROL).error_code == "Unauthorized"
        result = run(mgr, ExchangeOpType.TRANSFER_MINT_AUTHORITY, ADMIN, new_authority=CAROL)
        assert result.data == {"mint_authority": CAROL}

        result = run(mgr, ExchangeOpType.MINT_REWARD_TOKENS, CAROL, recipient=BOB, amount=500)
        assert result.success
        assert result.data["total_minted"] == 500
        assert mgr.ledger.balance_of(BOB, "RWD") == 500
        assert run(mgr, ExchangeOpType.MINT_REWARD_TOKENS, ADMIN, recipient=BOB, amount=1).error_code == "Unauthorized"

    def test_root_tracks_mint_authority(self, mgr):
        before = mgr.compute_state_root()
        run(mgr, ExchangeOpType.TRANSFER_MINT_AUTHORITY, ADMIN, new_authority=CAROL)
        assert mgr.compute_state_root() != before


# ============================================================================
#  State root / export
# ============================================================================

class TestStateRoot:

    def test_same_history_same_root(self):
        a, b = build_manager(), build_manager()
        for m in (a, b):
            run(m, ExchangeOpType.SWAP, ALICE, pair=PAIR, side="sell", amount_in=100_000, minimum_out=0)
        assert a.finalize_block() == b.finalize_block()
        assert len(a.compute_state_root()) == 64

    def test_root_changes_with_state(self, mgr):
        before = mgr.compute_state_root()
        run(mgr, ExchangeOpType.SWAP, ALICE, pair=PAIR, side="sell", amount_in=100_000, minimum_out=0)
        assert mgr.compute_state_root() != before

    def test_export_state(self, mgr):
        run(
            mgr, ExchangeOpType.PLACE_LIMIT_ORDER, ALICE,
            pair=PAIR, side="buy", amount_in=1_000_000, limit_price=99 * 10**9, slippage_bps=100,
        )
        state = mgr.export_state()
        assert state["block_height"] == 1
        assert state["admin"] == ADMIN
        assert state["pools"][0]["reserve_a"] == SEED_A
        assert state["limit_orders"][0]["status"] == "open"
        assert state["limit_orders"][0]["side"] == "buy"
        accounts = [(b["account"], b["asset"]) for b in state["balances"]]
        assert accounts == sorted(accounts)

    def test_stats(self, mgr):
        stats = mgr.get_stats()
        assert stats["pools"] == 1
        assert stats["limit_orders"] == 0
        assert stats["journal_length"] > 0

    def test_singleton(self):
        assert ExchangeStateManager.get_instance() is ExchangeStateManager.get_instance()
