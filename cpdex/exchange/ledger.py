"""
cpdex Settlement Ledger

The value-transfer boundary every stateful component settles through:

  - Per-(account, asset) balances for users, pool vaults and escrows
  - Atomic transfer batches: the whole batch is validated before any
    balance changes, so a failing leg leaves every balance untouched
  - Mint / burn legs for LP claim tokens
  - Append-only journal of applied legs
  - Deterministic sub-account handles via AccountRegistry

Accounts are opaque strings.  The engine never derives addresses itself;
it asks the registry for a handle keyed by (owner, purpose, sequence).
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..constants import U64_MAX
from ..exceptions import ArithmeticOverflow, InsufficientBalance, ZeroAmount

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Transfer:
    """
    One leg of a settlement batch.

    source=None mints into destination; destination=None burns from source.
    """
    source: Optional[str]
    destination: Optional[str]
    asset: str
    amount: int


# ---------------------------------------------------------------------------
# Account registry
# ---------------------------------------------------------------------------

class AccountRegistry:
    """Explicit (owner, purpose, sequence) → opaque handle mapping."""

    def __init__(self) -> None:
        self._handles: Dict[Tuple[str, str, str], str] = {}
        self._reverse: Dict[str, Tuple[str, str, str]] = {}
        self._lock = threading.Lock()

    def handle(self, owner: str, purpose: str, sequence: object = 0) -> str:
        key = (owner, purpose, str(sequence))
        with self._lock:
            existing = self._handles.get(key)
            if existing is not None:
                return existing
            h = self._deterministic_handle(*key)
            self._handles[key] = h
            self._reverse[h] = key
            return h

    def resolve(self, handle: str) -> Optional[Tuple[str, str, str]]:
        return self._reverse.get(handle)

    def __len__(self) -> int:
        return len(self._handles)

    @staticmethod
    def _deterministic_handle(owner: str, purpose: str, sequence: str) -> str:
        raw = f"{owner}:{purpose}:{sequence}".encode()
        return hashlib.blake2b(raw, digest_size=8).hexdigest()


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class Ledger:
    """
    In-memory settlement ledger.

    All balance changes go through settle(); every other mutator is a
    one-leg batch.
    """

    def __init__(self) -> None:
        self._balances: Dict[Tuple[str, str], int] = {}
        self._supply: Dict[str, int] = {}
        self._journal: List[Transfer] = []
        self._lock = threading.Lock()

    # -- Queries ------------------------------------------------------------

    def balance_of(self, account: str, asset: str) -> int:
        return self._balances.get((account, asset), 0)

    def supply_of(self, asset: str) -> int:
        """Total units minted minus burned for an asset."""
        return self._supply.get(asset, 0)

    def holders(self, asset: str) -> Dict[str, int]:
        return {acct: bal for (acct, a), bal in self._balances.items() if a == asset and bal > 0}

    def balances(self) -> Dict[Tuple[str, str], int]:
        """Copy of every non-zero (account, asset) balance."""
        return dict(self._balances)

    @property
    def journal(self) -> List[Transfer]:
        return list(self._journal)

    @property
    def journal_length(self) -> int:
        return len(self._journal)

    # -- Mutations ----------------------------------------------------------

    def deposit(self, account: str, asset: str, amount: int) -> None:
        """Credit externally sourced funds to an account."""
        self.settle([Transfer(None, account, asset, amount)])

    def transfer(self, source: str, destination: str, asset: str, amount: int) -> None:
        self.settle([Transfer(source, destination, asset, amount)])

    def settle(self, transfers: Iterable[Transfer]) -> None:
        """
        Apply a batch of legs atomically.

        Zero-amount legs are dropped.  Legs are checked in order against a
        scratch copy of the touched balances; the real balances change only
        once every leg has passed.

        Raises:
            InsufficientBalance: a source would go negative
            ArithmeticOverflow: a balance or supply would exceed U64_MAX
        """
        legs = [t for t in transfers if t.amount != 0]
        for t in legs:
            if t.amount < 0:
                raise ZeroAmount(f"Negative transfer amount {t.amount}")
            if t.source is None and t.destination is None:
                raise ValueError("Transfer needs a source or a destination")

        with self._lock:
            balances, supply = self._simulate(legs)
            for key, value in balances.items():
                if value == 0:
                    self._balances.pop(key, None)
                else:
                    self._balances[key] = value
            self._supply.update(supply)
            self._journal.extend(legs)

    def _simulate(self, legs: Sequence[Transfer]) -> Tuple[Dict[Tuple[str, str], int], Dict[str, int]]:
        balances: Dict[Tuple[str, str], int] = {}
        supply: Dict[str, int] = {}

        def current(key: Tuple[str, str]) -> int:
            if key not in balances:
                balances[key] = self._balances.get(key, 0)
            return balances[key]

        def current_supply(asset: str) -> int:
            if asset not in supply:
                supply[asset] = self._supply.get(asset, 0)
            return supply[asset]

        for t in legs:
            if t.source is not None:
                src = (t.source, t.asset)
                have = current(src)
                if have < t.amount:
                    raise InsufficientBalance(
                        f"{t.source} holds {have} {t.asset}, needs {t.amount}"
                    )
                balances[src] = have - t.amount
            else:
                new_supply = current_supply(t.asset) + t.amount
                if new_supply > U64_MAX:
                    raise ArithmeticOverflow(f"{t.asset} supply would exceed U64_MAX")
                supply[t.asset] = new_supply

            if t.destination is not None:
                dst = (t.destination, t.asset)
                new_balance = current(dst) + t.amount
                if new_balance > U64_MAX:
                    raise ArithmeticOverflow(f"{t.destination} {t.asset} balance would exceed U64_MAX")
                balances[dst] = new_balance
            else:
                supply[t.asset] = current_supply(t.asset) - t.amount
        return balances, supply
