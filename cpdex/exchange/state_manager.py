"""
cpdex Exchange State Manager

Central object that owns every engine instance and is the single entry
point for replaying ExchangeTransactions:

  - Owns the ledger, handle registry, pools, order books, DCA schedulers,
    perpetual engines, admin controller and rewards distributor
  - Drives the logical clock from begin_block(height, timestamp)
  - Dispatches each ExchangeOpType to its engine call
  - Turns engine errors into failed ExchangeExecResults carrying the code
  - Keeper entry point try_execute() for limit, DCA and liquidation records
  - Deterministic blake2b state root and plain-dict state export
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from ..config import EngineConfig, load_config
from ..constants import CPDEX_CONFIG_FILE
from ..exceptions import CPDexException, RecordNotFound, UnknownPair
from ..logger import LogManager
from .admin import AdminController, SingleAdminAuthorizer
from .amm import LiquidityPool, PoolManager
from .dca import DCAScheduler
from .ledger import AccountRegistry, Ledger
from .orderbook import OrderBook
from .perpetual import PerpEngine
from .pricing import OrderSide, PerpSide
from .rewards import RewardsDistributor
from .transactions import ExchangeOpType, ExchangeTransaction

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transaction execution result
# ---------------------------------------------------------------------------

class ExchangeExecResult:
    """Result of executing a single exchange transaction."""

    __slots__ = ("success", "data", "error", "error_code")

    def __init__(
        self,
        success: bool = True,
        data: Optional[Dict[str, Any]] = None,
        error: str = "",
        error_code: str = "",
    ):
        self.success = success
        self.data = data or {}
        self.error = error
        self.error_code = error_code

    def __repr__(self) -> str:
        if self.success:
            return f"ExchangeExecResult(success=True, data={self.data})"
        return f"ExchangeExecResult(success=False, error_code={self.error_code!r})"


@dataclass
class PairMarket:
    """Every engine bound to one trading pair."""
    pool: LiquidityPool
    book: OrderBook
    dca: DCAScheduler
    perp: PerpEngine


# ---------------------------------------------------------------------------
# Exchange State Manager
# ---------------------------------------------------------------------------

class ExchangeStateManager:
    """
    Usage:

        mgr = ExchangeStateManager.get_instance()
        mgr.begin_block(height, timestamp)
        for tx in txs:
            result = mgr.process_transaction(tx)
        state_root = mgr.finalize_block()
    """

    instance: Optional[ExchangeStateManager] = None

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or EngineConfig()
        self.ledger = Ledger()
        self.registry = AccountRegistry()
        self.authorizer = SingleAdminAuthorizer(self.config.admin)

        self.pool_manager = PoolManager(
            self.ledger,
            self.registry,
            clock=self.now,
            max_fee_rate_bps=self.config.pool.max_fee_rate_bps,
            max_slippage_bps=self.config.orders.max_slippage_bps,
        )
        self.admin = AdminController(self.pool_manager, self.authorizer, clock=self.now)
        self.rewards = RewardsDistributor(
            self.pool_manager,
            self.registry,
            self.authorizer,
            reward_asset=self.config.rewards.reward_asset,
            reward_rate_per_second=self.config.rewards.reward_rate_per_second,
            supply_cap=self.config.rewards.supply_cap,
        )
        self._markets: Dict[str, PairMarket] = {}

        self._current_block_height: int = 0
        self._current_block_timestamp: int = 0
        self._block_results: List[ExchangeExecResult] = []

    @classmethod
    def get_instance(cls) -> ExchangeStateManager:
        """Get or create the singleton instance."""
        if cls.instance is None:
            cls.instance = cls()
            logger.info("Exchange state manager initialized")
        return cls.instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton (for testing)."""
        cls.instance = None

    @classmethod
    def from_config(cls, path: Optional[str] = None) -> ExchangeStateManager:
        """Build a manager from engine.toml and configure logging from its [logging] section."""
        config = load_config(path or str(CPDEX_CONFIG_FILE))
        LogManager().configure(
            log_level=config.logging.level,
            console_output=config.logging.console,
            file_output=config.logging.file,
        )
        return cls(config)

    # =====================================================================
    #  Block lifecycle / clock
    # =====================================================================

    def now(self) -> int:
        return self._current_block_timestamp

    @property
    def block_height(self) -> int:
        return self._current_block_height

    def begin_block(self, block_height: int, block_timestamp: int) -> None:
        if block_timestamp < self._current_block_timestamp:
            raise ValueError(
                f"Block timestamp {block_timestamp} before current {self._current_block_timestamp}"
            )
        self._current_block_height = block_height
        self._current_block_timestamp = int(block_timestamp)
        self._block_results = []

    def finalize_block(self) -> str:
        state_root = self.compute_state_root()
        logger.debug(
            "Block %d finalized: %d exchange txs, state_root=%s",
            self._current_block_height, len(self._block_results), state_root[:16],
        )
        return state_root

    # =====================================================================
    #  Markets
    # =====================================================================

    def initialize_pool(self, token_a: str, token_b: str, fee_rate_bps: Optional[int] = None) -> PairMarket:
        if fee_rate_bps is None:
            fee_rate_bps = self.config.pool.default_fee_rate_bps
        pool = self.pool_manager.initialize_pool(token_a, token_b, fee_rate_bps)
        market = PairMarket(
            pool=pool,
            book=OrderBook(pool, self.registry),
            dca=DCAScheduler(
                pool,
                self.registry,
                max_cycles=self.config.orders.max_dca_cycles,
                min_cycle_frequency=self.config.orders.min_cycle_frequency,
            ),
            perp=PerpEngine(
                pool,
                self.registry,
                self.authorizer,
                min_leverage=self.config.perp.min_leverage,
                max_leverage=self.config.perp.max_leverage,
                liquidation_fee_bps=self.config.perp.liquidation_fee_bps,
            ),
        )
        self._markets[pool.trading_pair] = market
        return market

    def market(self, trading_pair: str) -> PairMarket:
        m = self._markets.get(trading_pair)
        if m is None:
            raise UnknownPair(f"No market for {trading_pair}")
        return m

    @property
    def markets(self) -> Dict[str, PairMarket]:
        return dict(self._markets)

    # =====================================================================
    #  Transaction processing
    # =====================================================================

    def process_transaction(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        """
        Execute a single exchange transaction.

        Engine errors become failed results; anything else propagates.
        """
        try:
            tx.validate_basic()
        except ValueError as e:
            return self._record(tx, ExchangeExecResult(success=False, error=str(e), error_code="InvalidTransaction"))

        try:
            result = self._execute_op(tx)
        except CPDexException as e:
            logger.info("Exchange op %s from %s rejected: %s", tx.op_type.name, tx.sender, e)
            result = ExchangeExecResult(success=False, error=str(e), error_code=e.code)
        except (KeyError, TypeError, ValueError) as e:
            result = ExchangeExecResult(success=False, error=f"Malformed params: {e}", error_code="InvalidTransaction")

        return self._record(tx, result)

    def _record(self, tx: ExchangeTransaction, result: ExchangeExecResult) -> ExchangeExecResult:
        tx.success = result.success
        tx.result = result.data
        tx.error = result.error
        self._block_results.append(result)
        return result

    def _execute_op(self, tx: ExchangeTransaction) -> ExchangeExecResult:
        handlers: Dict[ExchangeOpType, Callable[[ExchangeTransaction], Dict[str, Any]]] = {
            ExchangeOpType.INITIALIZE_POOL: self._op_initialize_pool,
            ExchangeOpType.ADD_LIQUIDITY: self._op_add_liquidity,
            ExchangeOpType.REMOVE_LIQUIDITY: self._op_remove_liquidity,
            ExchangeOpType.SWAP: self._op_swap,
            ExchangeOpType.MARKET_ORDER: self._op_market_order,
            ExchangeOpType.PLACE_LIMIT_ORDER: self._op_place_limit_order,
            ExchangeOpType.CANCEL_LIMIT_ORDER: self._op_cancel_limit_order,
            ExchangeOpType.EXECUTE_LIMIT_ORDER: self._op_execute_limit_order,
            ExchangeOpType.CREATE_DCA_ORDER: self._op_create_dca_order,
            ExchangeOpType.EXECUTE_DCA_ORDER: self._op_execute_dca_order,
            ExchangeOpType.CANCEL_DCA_ORDER: self._op_cancel_dca_order,
            ExchangeOpType.OPEN_POSITION: self._op_open_position,
            ExchangeOpType.ADD_MARGIN: self._op_add_margin,
            ExchangeOpType.CLOSE_POSITION: self._op_close_position,
            ExchangeOpType.LIQUIDATE: self._op_liquidate,
            ExchangeOpType.FUND_PERP_VAULT: self._op_fund_perp_vault,
            ExchangeOpType.UPDATE_FUNDING_RATE: self._op_update_funding_rate,
            ExchangeOpType.PAUSE_TRADING: self._op_pause_trading,
            ExchangeOpType.RESUME_TRADING: self._op_resume_trading,
            ExchangeOpType.UPDATE_FEE_RATE: self._op_update_fee_rate,
            ExchangeOpType.TRANSFER_ADMIN: self._op_transfer_admin,
            ExchangeOpType.EMERGENCY_WITHDRAW: self._op_emergency_withdraw,
            ExchangeOpType.TRANSFER_MINT_AUTHORITY: self._op_transfer_mint_authority,
            ExchangeOpType.UPDATE_USER_REWARDS: self._op_update_user_rewards,
            ExchangeOpType.CLAIM_REWARDS: self._op_claim_rewards,
            ExchangeOpType.SET_REWARD_RATE: self._op_set_reward_rate,
            ExchangeOpType.MINT_REWARD_TOKENS: self._op_mint_reward_tokens,
        }
        return ExchangeExecResult(success=True, data=handlers[tx.op_type](tx))

    # =====================================================================
    #  Operation handlers
    # =====================================================================

    # -- Pool ---------------------------------------------------------------

    def _op_initialize_pool(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        fee = p.get("fee_rate_bps")
        market = self.initialize_pool(p["token_a"], p["token_b"], None if fee is None else int(fee))
        return {"pair": market.pool.trading_pair, "vault": market.pool.vault}

    def _op_add_liquidity(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        pool = self.market(p["pair"]).pool
        minted = pool.add_liquidity(tx.sender, int(p["amount_a"]), int(p["amount_b"]), int(p.get("min_lp", 0)))
        return {"lp_minted": minted}

    def _op_remove_liquidity(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        pool = self.market(p["pair"]).pool
        a, b = pool.remove_liquidity(tx.sender, int(p["lp_amount"]), int(p.get("min_a", 0)), int(p.get("min_b", 0)))
        return {"amount_a": a, "amount_b": b}

    def _op_swap(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        pool = self.market(p["pair"]).pool
        r = pool.swap(tx.sender, int(p["amount_in"]), int(p["minimum_out"]), OrderSide(p["side"]))
        return {"amount_out": r.amount_out, "fee": r.fee, "price_impact_bps": r.price_impact_bps}

    def _op_market_order(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        pool = self.market(p["pair"]).pool
        r = pool.execute_market_order(
            tx.sender, int(p["amount_in"]), int(p["minimum_out"]), int(p["slippage_bps"]), OrderSide(p["side"]),
        )
        return {"amount_out": r.amount_out, "fee": r.fee, "price_impact_bps": r.price_impact_bps}

    # -- Limit orders -------------------------------------------------------

    def _op_place_limit_order(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        order = self.market(p["pair"]).book.place_limit_order(
            tx.sender,
            OrderSide(p["side"]),
            int(p["amount_in"]),
            int(p["limit_price"]),
            int(p["slippage_bps"]),
            int(p.get("expires_at", 0)),
        )
        return {"order_id": order.id, "index": order.index}

    def _op_cancel_limit_order(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        order = self.market(p["pair"]).book.cancel_limit_order(tx.sender, p["order_id"])
        return {"order_id": order.id, "status": order.status.value}

    def _op_execute_limit_order(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        r = self.market(p["pair"]).book.execute_limit_order(tx.sender, p["order_id"])
        return {"order_id": p["order_id"], "amount_out": r.amount_out}

    # -- DCA ----------------------------------------------------------------

    def _op_create_dca_order(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        order = self.market(p["pair"]).dca.create_dca_order(
            tx.sender,
            OrderSide(p["side"]),
            int(p["amount_per_cycle"]),
            int(p["total_cycles"]),
            int(p["cycle_frequency"]),
            int(p.get("slippage_bps", 100)),
            int(p.get("min_price", 0)),
            int(p.get("max_price", 0)),
        )
        return {"order_id": order.id, "next_execution_time": order.next_execution_time}

    def _op_execute_dca_order(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        dca = self.market(p["pair"]).dca
        r = dca.execute_dca_order(tx.sender, p["order_id"])
        order = dca.get_order(p["order_id"])
        return {"order_id": order.id, "amount_out": r.amount_out, "cycles_executed": order.cycles_executed}

    def _op_cancel_dca_order(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        refund = self.market(p["pair"]).dca.cancel_dca_order(tx.sender, p["order_id"])
        return {"order_id": p["order_id"], "refund": refund}

    # -- Perpetuals ---------------------------------------------------------

    def _op_open_position(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        pos = self.market(p["pair"]).perp.open_position(
            tx.sender, PerpSide(p["side"]), int(p["size"]), int(p["leverage"]), int(p["margin"]),
        )
        return {
            "position_id": pos.id,
            "entry_price": pos.entry_price,
            "liquidation_price": pos.liquidation_price,
        }

    def _op_add_margin(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        pos = self.market(p["pair"]).perp.add_margin(tx.sender, p["position_id"], int(p["amount"]))
        return {"position_id": pos.id, "margin": pos.margin, "liquidation_price": pos.liquidation_price}

    def _op_close_position(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        payout = self.market(p["pair"]).perp.close_position(tx.sender, p["position_id"])
        return {"position_id": p["position_id"], "payout": payout}

    def _op_liquidate(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        reward = self.market(p["pair"]).perp.liquidate(tx.sender, p["position_id"])
        return {"position_id": p["position_id"], "liquidator_reward": reward}

    def _op_fund_perp_vault(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        perp = self.market(p["pair"]).perp
        perp.fund_vault(tx.sender, int(p["amount"]))
        return {"vault_balance": perp.vault_balance()}

    def _op_update_funding_rate(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        snap = self.market(p["pair"]).perp.update_funding_rate(tx.sender, int(p["rate_bps"]))
        return {"rate_bps": snap.rate_bps, "cumulative_index": snap.cumulative_index}

    # -- Admin --------------------------------------------------------------

    def _op_pause_trading(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        self.admin.pause_trading(tx.sender, p["pair"], p.get("reason", ""))
        return {"pair": p["pair"], "paused": True}

    def _op_resume_trading(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        self.admin.resume_trading(tx.sender, p["pair"])
        return {"pair": p["pair"], "paused": False}

    def _op_update_fee_rate(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        old = self.admin.update_fee_rate(tx.sender, p["pair"], int(p["fee_rate_bps"]))
        return {"pair": p["pair"], "old_fee_rate_bps": old, "fee_rate_bps": int(p["fee_rate_bps"])}

    def _op_transfer_admin(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        self.admin.transfer_admin(tx.sender, tx.params["new_admin"])
        return {"admin": tx.params["new_admin"]}

    def _op_emergency_withdraw(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        a, b = self.admin.emergency_withdraw(tx.sender, p["pair"], p["destination"])
        return {"amount_a": a, "amount_b": b}

    # -- Rewards ------------------------------------------------------------

    def _op_transfer_mint_authority(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        self.rewards.transfer_mint_authority(tx.sender, tx.params["new_authority"])
        return {"mint_authority": self.rewards.token.mint_authority}

    def _op_mint_reward_tokens(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        p = tx.params
        total = self.rewards.token.mint(tx.sender, p["recipient"], int(p["amount"]))
        return {"total_minted": total, "remaining_mintable": self.rewards.token.remaining_mintable}

    def _op_update_user_rewards(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        account = self.rewards.update_user_rewards(tx.sender, tx.params["pair"])
        return {"earned_rewards": account.earned_rewards, "lp_token_balance": account.lp_token_balance}

    def _op_claim_rewards(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        claimed = self.rewards.claim_rewards(tx.sender, tx.params["pair"])
        return {"claimed": claimed}

    def _op_set_reward_rate(self, tx: ExchangeTransaction) -> Dict[str, Any]:
        old = self.rewards.set_reward_rate(tx.sender, int(tx.params["rate"]))
        return {"old_rate": old, "rate": int(tx.params["rate"])}

    # =====================================================================
    #  Keeper entry point
    # =====================================================================

    def try_execute(self, caller: str, record_id: str) -> ExchangeExecResult:
        """
        Execute whatever keeper action applies to a record: fill a limit
        order, run a DCA cycle, or liquidate a position.
        """
        try:
            for market in self._markets.values():
                if record_id in market.book:
                    r = market.book.execute_limit_order(caller, record_id)
                    return ExchangeExecResult(data={"kind": "limit_order", "amount_out": r.amount_out})
                if record_id in market.dca:
                    r = market.dca.execute_dca_order(caller, record_id)
                    return ExchangeExecResult(data={"kind": "dca_order", "amount_out": r.amount_out})
                if record_id in market.perp:
                    reward = market.perp.liquidate(caller, record_id)
                    return ExchangeExecResult(data={"kind": "position", "liquidator_reward": reward})
            raise RecordNotFound(f"No record {record_id}")
        except CPDexException as e:
            return ExchangeExecResult(success=False, error=str(e), error_code=e.code)

    # =====================================================================
    #  State root / export
    # =====================================================================

    def compute_state_root(self) -> str:
        """
        Deterministic blake2b-256 over pools, records and balances.

        Returns:
            64-char hex string
        """
        hasher = hashlib.blake2b(digest_size=32)

        for pair in sorted(self._markets):
            m = self._markets[pair]
            s = m.pool.state
            hasher.update(hashlib.blake2b(
                f"{pair}:{s.reserve_a}:{s.reserve_b}:{s.lp_supply}:{s.fee_rate_bps}:{int(s.paused)}".encode(),
                digest_size=16,
            ).digest())
            for o in m.book.all_orders():
                hasher.update(f"L:{o.id}:{o.status.value}:{o.escrowed_amount}:{o.amount_out}".encode())
            for d in m.dca.all_orders():
                hasher.update(f"D:{d.id}:{d.status.value}:{d.cycles_executed}:{d.escrow_remaining}".encode())
            for pos in m.perp.all_positions():
                hasher.update(
                    f"P:{pos.id}:{pos.status.value}:{pos.margin}:{pos.liquidation_price}".encode()
                )
            hasher.update(f"F:{m.perp.cumulative_funding}".encode())

        for (account, asset), amount in sorted(self.ledger.balances().items()):
            hasher.update(f"B:{account}:{asset}:{amount}".encode())

        token = self.rewards.token
        hasher.update(f"T:{token.symbol}:{token.mint_authority}:{token.total_minted}".encode())
        hasher.update(f"A:{self.authorizer.admin}".encode())
        hasher.update(self._current_block_height.to_bytes(8, "big"))
        return hasher.hexdigest()

    def export_state(self) -> Dict[str, Any]:
        """Persisted record layout as plain dictionaries."""
        state: Dict[str, Any] = {
            "block_height": self._current_block_height,
            "block_timestamp": self._current_block_timestamp,
            "admin": self.authorizer.admin,
            "pools": [],
            "limit_orders": [],
            "dca_orders": [],
            "positions": [],
            "reward_accounts": self.rewards.export(),
            "reward_token": self.rewards.token.to_dict(),
            "balances": [
                {"account": account, "asset": asset, "amount": amount}
                for (account, asset), amount in sorted(self.ledger.balances().items())
            ],
        }
        for pair in sorted(self._markets):
            m = self._markets[pair]
            state["pools"].append(asdict(m.pool.state))
            state["limit_orders"].extend(m.book.export())
            state["dca_orders"].extend(m.dca.export())
            state["positions"].extend(m.perp.export())
        return state

    def get_stats(self) -> Dict[str, Any]:
        return {
            "block_height": self._current_block_height,
            "pools": self.pool_manager.pool_count,
            "limit_orders": sum(m.book.order_count for m in self._markets.values()),
            "dca_orders": sum(m.dca.order_count for m in self._markets.values()),
            "positions": sum(m.perp.position_count for m in self._markets.values()),
            "journal_length": self.ledger.journal_length,
            "reward_tokens_minted": self.rewards.token.total_minted,
        }
