"""
cpdex Reward Token

Capped reward token minted on demand through the settlement ledger:

  - Mint: only the current mint authority, never past supply_cap
  - Transfer mint authority: current authority hands over to a new identity
  - Supply queries: total minted against the cap, and circulating supply
    (minted minus burned) as the ledger sees it
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict

from ..constants import REWARD_SUPPLY_CAP, U64_MAX
from ..exceptions import SupplyCapExceeded, Unauthorized, ZeroAmount
from .ledger import Ledger, Transfer

logger = logging.getLogger(__name__)


@dataclass
class TokenSupplyInfo:
    total_minted: int
    supply_cap: int
    circulating_supply: int
    remaining_mintable: int


class RewardToken:
    """One capped asset on the ledger with a single mint authority."""

    def __init__(
        self,
        ledger: Ledger,
        symbol: str,
        mint_authority: str,
        supply_cap: int = REWARD_SUPPLY_CAP,
    ):
        if not 1 <= supply_cap <= U64_MAX:
            raise ValueError(f"Supply cap {supply_cap} outside [1, U64_MAX]")
        if not mint_authority:
            raise ValueError("Mint authority must be a non-empty identity")
        self.ledger = ledger
        self.symbol = symbol
        self.mint_authority = mint_authority
        self.supply_cap = supply_cap
        self.total_minted = 0
        self._lock = threading.Lock()

    @property
    def remaining_mintable(self) -> int:
        return self.supply_cap - self.total_minted

    def mint(self, caller: str, recipient: str, amount: int) -> int:
        """
        Mint new units to recipient.

        Raises:
            Unauthorized: caller is not the mint authority
            ZeroAmount: amount <= 0
            SupplyCapExceeded: total minted would pass the cap
        """
        if amount <= 0:
            raise ZeroAmount("Mint amount must be positive")
        with self._lock:
            if caller != self.mint_authority:
                raise Unauthorized(f"{caller} is not the {self.symbol} mint authority")
            new_total = self.total_minted + amount
            if new_total > self.supply_cap:
                raise SupplyCapExceeded(
                    f"Minting {amount} {self.symbol} would exceed cap {self.supply_cap} "
                    f"({self.remaining_mintable} left)"
                )
            self.ledger.settle([Transfer(None, recipient, self.symbol, amount)])
            self.total_minted = new_total

        logger.info("Minted %d %s to %s (%d left)", amount, self.symbol, recipient, self.remaining_mintable)
        return new_total

    def transfer_mint_authority(self, caller: str, new_authority: str) -> None:
        if not new_authority:
            raise Unauthorized("New mint authority must be a non-empty identity")
        with self._lock:
            if caller != self.mint_authority:
                raise Unauthorized(f"{caller} is not the {self.symbol} mint authority")
            self.mint_authority = new_authority
        logger.warning("%s mint authority transferred from %s to %s", self.symbol, caller, new_authority)

    def total_supply(self) -> TokenSupplyInfo:
        return TokenSupplyInfo(
            total_minted=self.total_minted,
            supply_cap=self.supply_cap,
            circulating_supply=self.circulating_supply(),
            remaining_mintable=self.remaining_mintable,
        )

    def circulating_supply(self) -> int:
        return self.ledger.supply_of(self.symbol)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "mint_authority": self.mint_authority,
            "supply_cap": self.supply_cap,
            "total_minted": self.total_minted,
        }
