"""
cpdex Admin Controls

Privileged operations over the pools:

  - Pause / resume trading on a pair
  - Fee rate updates (capped at MAX_FEE_RATE_BPS)
  - Admin hand-over
  - Emergency withdraw of unbacked vault balances (paused pools only)

Authorization is delegated to an ``Authorizer`` so the engine never
decides who the admin is on its own.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Protocol, Tuple

from ..exceptions import AlreadyPaused, NotPaused, TradingActive, Unauthorized
from .amm import PoolManager, system_clock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

class Authorizer(Protocol):
    def is_admin(self, caller: str) -> bool: ...

    def set_admin(self, new_admin: str) -> None: ...


class SingleAdminAuthorizer:
    """One admin identity, replaceable by the current admin."""

    def __init__(self, admin: str):
        self._admin = admin
        self._lock = threading.Lock()

    @property
    def admin(self) -> str:
        return self._admin

    def is_admin(self, caller: str) -> bool:
        return bool(self._admin) and caller == self._admin

    def set_admin(self, new_admin: str) -> None:
        with self._lock:
            self._admin = new_admin


def require_admin(authorizer: Authorizer, caller: str) -> None:
    if not authorizer.is_admin(caller):
        raise Unauthorized(f"{caller} is not the admin")


# ---------------------------------------------------------------------------
# Admin controller
# ---------------------------------------------------------------------------

@dataclass
class AdminAction:
    action: str
    caller: str
    trading_pair: str
    detail: str
    timestamp: int


@dataclass
class AdminState:
    last_action_time: int = 0
    fee_update_count: int = 0
    actions: List[AdminAction] = field(default_factory=list)


class AdminController:
    """Admin entry points; every call checks the authorizer first."""

    def __init__(self, pools: PoolManager, authorizer: Authorizer, clock=system_clock):
        self.pools = pools
        self.authorizer = authorizer
        self.clock = clock
        self.state = AdminState()

    def _record(self, action: str, caller: str, trading_pair: str, detail: str = "") -> None:
        now = self.clock()
        self.state.last_action_time = now
        self.state.actions.append(AdminAction(action, caller, trading_pair, detail, now))

    def pause_trading(self, caller: str, trading_pair: str, reason: str = "") -> None:
        require_admin(self.authorizer, caller)
        pool = self.pools.get_pool(trading_pair)
        with pool.lock:
            if pool.is_paused:
                raise AlreadyPaused(f"Pool {trading_pair} is already paused")
            pool.pause(reason)
            self._record("pause", caller, trading_pair, reason)

    def resume_trading(self, caller: str, trading_pair: str) -> None:
        require_admin(self.authorizer, caller)
        pool = self.pools.get_pool(trading_pair)
        with pool.lock:
            if not pool.is_paused:
                raise NotPaused(f"Pool {trading_pair} is not paused")
            pool.resume()
            self._record("resume", caller, trading_pair)

    def update_fee_rate(self, caller: str, trading_pair: str, new_fee_rate_bps: int) -> int:
        """Returns the previous fee rate."""
        require_admin(self.authorizer, caller)
        pool = self.pools.get_pool(trading_pair)
        old = pool.set_fee_rate(new_fee_rate_bps)
        self.state.fee_update_count += 1
        self._record("update_fee", caller, trading_pair, f"{old}->{new_fee_rate_bps}")
        logger.info("Fee rate on %s changed %d -> %d bps", trading_pair, old, new_fee_rate_bps)
        return old

    def transfer_admin(self, caller: str, new_admin: str) -> None:
        require_admin(self.authorizer, caller)
        if not new_admin:
            raise Unauthorized("New admin must be a non-empty identity")
        self.authorizer.set_admin(new_admin)
        self._record("transfer_admin", caller, "", new_admin)
        logger.warning("Admin transferred from %s to %s", caller, new_admin)

    def emergency_withdraw(self, caller: str, trading_pair: str, destination: str) -> Tuple[int, int]:
        """
        Sweep vault balances that do not back the recorded reserves.

        Only allowed while the pool is paused.

        Returns:
            (amount_a, amount_b) moved to destination
        """
        require_admin(self.authorizer, caller)
        pool = self.pools.get_pool(trading_pair)
        with pool.lock:
            if not pool.is_paused:
                raise TradingActive(f"Pool {trading_pair} must be paused first")
            swept = pool.sweep_surplus(destination)
            self._record("emergency_withdraw", caller, trading_pair, f"{swept[0]}/{swept[1]}")

        logger.warning(
            "Emergency withdraw on %s to %s: %d/%d", trading_pair, destination, swept[0], swept[1],
        )
        return swept
