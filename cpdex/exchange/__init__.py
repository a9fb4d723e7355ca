"""
cpdex Exchange Engine

Components:
  - Pricing Core (integer constant-product, LP, margin and reward math)
  - Settlement Ledger (atomic transfer batches, handle registry)
  - AMM Engine (constant-product pools, one per pair)
  - Limit Order Book (escrowed, keeper-executed, all-or-nothing)
  - DCA Scheduler (recurring fixed-size orders)
  - Perpetual Engine (leveraged positions, margin, liquidation, funding)
  - Admin Controls, LP Rewards and the capped Reward Token
  - State Manager (operation dispatch, keeper entry, state root)
"""

from .pricing import (
    OrderSide,
    PerpSide,
)
from .ledger import (
    AccountRegistry,
    Ledger,
    Transfer,
)
from .amm import (
    PoolState,
    SwapResult,
    SwapQuote,
    SwapFeeInfo,
    PoolInfo,
    LiquidityPool,
    PoolManager,
)
from .orderbook import (
    LimitOrder,
    OrderStatus,
    OrderBook,
)
from .dca import (
    DCAOrder,
    DCAStatus,
    DCAScheduler,
)
from .perpetual import (
    FundingSnapshot,
    PerpPosition,
    PnLInfo,
    PositionStatus,
    PerpEngine,
)
from .admin import (
    AdminController,
    Authorizer,
    SingleAdminAuthorizer,
)
from .token import (
    RewardToken,
    TokenSupplyInfo,
)
from .rewards import (
    RewardInfo,
    RewardsDistributor,
    UserRewardAccount,
)
from .transactions import (
    ExchangeOpType,
    ExchangeTransaction,
)
from .state_manager import (
    ExchangeExecResult,
    ExchangeStateManager,
    PairMarket,
)

__all__ = [
    # Pricing
    "OrderSide", "PerpSide",
    # Ledger
    "AccountRegistry", "Ledger", "Transfer",
    # AMM
    "PoolState", "SwapResult", "SwapQuote", "SwapFeeInfo", "PoolInfo",
    "LiquidityPool", "PoolManager",
    # Order book
    "LimitOrder", "OrderStatus", "OrderBook",
    # DCA
    "DCAOrder", "DCAStatus", "DCAScheduler",
    # Perpetuals
    "FundingSnapshot", "PerpPosition", "PnLInfo", "PositionStatus", "PerpEngine",
    # Admin / rewards
    "AdminController", "Authorizer", "SingleAdminAuthorizer",
    "RewardToken", "TokenSupplyInfo",
    "RewardInfo", "RewardsDistributor", "UserRewardAccount",
    # State
    "ExchangeOpType", "ExchangeTransaction",
    "ExchangeExecResult", "ExchangeStateManager", "PairMarket",
]
