"""
cpdex LP Rewards

Time-based reward emission to liquidity providers.  Each (user, pair)
account snapshots the user's LP balance; on every update the user earns

    lp_balance / lp_supply * elapsed_seconds * reward_rate_per_second

minted in the capped reward token on claim.  The distributor holds the
token's mint authority until the admin hands it over.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..constants import MAX_REWARD_RATE, MIN_REWARD_RATE, REWARD_SUPPLY_CAP
from ..exceptions import InvalidRewardRate, SupplyCapExceeded, ZeroAmount
from . import pricing
from .admin import Authorizer, require_admin
from .amm import PoolManager
from .ledger import AccountRegistry
from .token import RewardToken

logger = logging.getLogger(__name__)


@dataclass
class UserRewardAccount:
    user: str
    trading_pair: str
    lp_token_balance: int = 0
    earned_rewards: int = 0
    claimed_rewards: int = 0
    last_update_time: int = 0
    last_claim_time: int = 0

    @property
    def claimable(self) -> int:
        return self.earned_rewards - self.claimed_rewards

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RewardInfo:
    pending_rewards: int
    earned_rewards: int
    claimed_rewards: int
    lp_token_balance: int


class RewardsDistributor:
    """Reward accounting across all pools."""

    def __init__(
        self,
        pools: PoolManager,
        registry: AccountRegistry,
        authorizer: Authorizer,
        reward_asset: str = "RWD",
        reward_rate_per_second: int = MIN_REWARD_RATE,
        supply_cap: int = REWARD_SUPPLY_CAP,
        token: Optional[RewardToken] = None,
    ):
        self._check_rate(reward_rate_per_second)
        self.pools = pools
        self.ledger = pools.ledger
        self.authorizer = authorizer
        self.reward_rate_per_second = reward_rate_per_second
        self.minter = registry.handle("rewards", "reward_minter")
        self.token = token or RewardToken(self.ledger, reward_asset, self.minter, supply_cap)
        self.total_rewards_distributed = 0
        self._accounts: Dict[Tuple[str, str], UserRewardAccount] = {}
        self._lock = threading.Lock()

    @property
    def reward_asset(self) -> str:
        return self.token.symbol

    @staticmethod
    def _check_rate(rate: int) -> None:
        if not MIN_REWARD_RATE <= rate <= MAX_REWARD_RATE:
            raise InvalidRewardRate(f"Reward rate {rate} outside [{MIN_REWARD_RATE}, {MAX_REWARD_RATE}]")

    def transfer_mint_authority(self, caller: str, new_authority: str) -> None:
        """
        Hand the reward token's mint authority to new_authority.

        While the distributor holds it, only the admin may give it away;
        afterwards the current external authority transfers it directly.
        Claims stop minting once the distributor no longer holds it.
        """
        if self.token.mint_authority == self.minter:
            require_admin(self.authorizer, caller)
            caller = self.minter
        self.token.transfer_mint_authority(caller, new_authority)

    def set_reward_rate(self, caller: str, rate: int) -> int:
        """Returns the previous rate."""
        require_admin(self.authorizer, caller)
        self._check_rate(rate)
        with self._lock:
            old = self.reward_rate_per_second
            self.reward_rate_per_second = rate
        logger.info("Reward rate changed %d -> %d per second", old, rate)
        return old

    def _accrued(self, account: UserRewardAccount, now: int) -> int:
        pool = self.pools.get_pool(account.trading_pair)
        elapsed = now - account.last_update_time
        return pricing.lp_rewards(account.lp_token_balance, pool.state.lp_supply, elapsed, self.reward_rate_per_second)

    def get_account(self, user: str, trading_pair: str) -> UserRewardAccount:
        return self._accounts.get((user, trading_pair)) or UserRewardAccount(user, trading_pair)

    def update_user_rewards(self, user: str, trading_pair: str) -> UserRewardAccount:
        """
        Accrue rewards since the last update on the old LP snapshot, then
        re-snapshot the user's current LP balance.
        """
        pool = self.pools.get_pool(trading_pair)
        with pool.lock, self._lock:
            now = pool.clock()
            key = (user, trading_pair)
            account = self._accounts.get(key)
            if account is None:
                account = UserRewardAccount(user, trading_pair, last_update_time=now)
                self._accounts[key] = account
            else:
                account.earned_rewards = pricing.checked_add(account.earned_rewards, self._accrued(account, now))
            account.lp_token_balance = self.ledger.balance_of(user, pool.lp_asset)
            account.last_update_time = now
        return account

    def pending_rewards(self, user: str, trading_pair: str) -> RewardInfo:
        pool = self.pools.get_pool(trading_pair)
        account = self.get_account(user, trading_pair)
        accrued = self._accrued(account, pool.clock()) if (user, trading_pair) in self._accounts else 0
        return RewardInfo(
            pending_rewards=account.claimable + accrued,
            earned_rewards=account.earned_rewards,
            claimed_rewards=account.claimed_rewards,
            lp_token_balance=account.lp_token_balance,
        )

    def claim_rewards(self, user: str, trading_pair: str) -> int:
        """
        Bring the account up to date and mint everything earned.

        Near the supply cap only what is still mintable is paid; the rest
        stays claimable.

        Raises:
            ZeroAmount: nothing earned since the last claim
            SupplyCapExceeded: the reward token is fully minted
            Unauthorized: the distributor no longer holds the mint authority
        """
        pool = self.pools.get_pool(trading_pair)
        with pool.lock:
            account = self.update_user_rewards(user, trading_pair)
            with self._lock:
                claimable = account.claimable
                if claimable <= 0:
                    raise ZeroAmount("No rewards to claim")
                amount = min(claimable, self.token.remaining_mintable)
                if amount == 0:
                    raise SupplyCapExceeded(f"{self.reward_asset} supply cap reached")
                self.token.mint(self.minter, user, amount)
                account.claimed_rewards += amount
                account.last_claim_time = account.last_update_time
                self.total_rewards_distributed += amount

        logger.info("%s claimed %d %s rewards on %s", user, amount, self.reward_asset, trading_pair)
        return amount

    def export(self) -> List[Dict[str, Any]]:
        return [a.to_dict() for a in self._accounts.values()]
