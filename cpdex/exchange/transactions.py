"""
cpdex Exchange Operation Envelope

Every state-changing engine call can be expressed as an
ExchangeTransaction and replayed through ExchangeStateManager:

  - INITIALIZE_POOL / ADD_LIQUIDITY / REMOVE_LIQUIDITY / SWAP / MARKET_ORDER
  - PLACE_LIMIT_ORDER / CANCEL_LIMIT_ORDER / EXECUTE_LIMIT_ORDER
  - CREATE_DCA_ORDER / EXECUTE_DCA_ORDER / CANCEL_DCA_ORDER
  - OPEN_POSITION / ADD_MARGIN / CLOSE_POSITION / LIQUIDATE
  - FUND_PERP_VAULT / UPDATE_FUNDING_RATE
  - PAUSE_TRADING / RESUME_TRADING / UPDATE_FEE_RATE / TRANSFER_ADMIN /
    EMERGENCY_WITHDRAW
  - UPDATE_USER_REWARDS / CLAIM_REWARDS / SET_REWARD_RATE
  - TRANSFER_MINT_AUTHORITY / MINT_REWARD_TOKENS
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Tuple


# ---------------------------------------------------------------------------
# Exchange Operation Types
# ---------------------------------------------------------------------------

class ExchangeOpType(IntEnum):
    """All exchange operation types.  Values are part of the tx hash."""
    INITIALIZE_POOL = 1
    ADD_LIQUIDITY = 2
    REMOVE_LIQUIDITY = 3
    SWAP = 4
    MARKET_ORDER = 5
    PLACE_LIMIT_ORDER = 6
    CANCEL_LIMIT_ORDER = 7
    EXECUTE_LIMIT_ORDER = 8
    CREATE_DCA_ORDER = 9
    EXECUTE_DCA_ORDER = 10
    CANCEL_DCA_ORDER = 11
    OPEN_POSITION = 12
    ADD_MARGIN = 13
    CLOSE_POSITION = 14
    LIQUIDATE = 15
    FUND_PERP_VAULT = 16
    UPDATE_FUNDING_RATE = 17
    PAUSE_TRADING = 18
    RESUME_TRADING = 19
    UPDATE_FEE_RATE = 20
    TRANSFER_ADMIN = 21
    EMERGENCY_WITHDRAW = 22
    TRANSFER_MINT_AUTHORITY = 23
    UPDATE_USER_REWARDS = 24
    CLAIM_REWARDS = 25
    SET_REWARD_RATE = 26
    MINT_REWARD_TOKENS = 27


REQUIRED_PARAMS: Dict[ExchangeOpType, Tuple[str, ...]] = {
    ExchangeOpType.INITIALIZE_POOL: ("token_a", "token_b"),
    ExchangeOpType.ADD_LIQUIDITY: ("pair", "amount_a", "amount_b"),
    ExchangeOpType.REMOVE_LIQUIDITY: ("pair", "lp_amount"),
    ExchangeOpType.SWAP: ("pair", "side", "amount_in", "minimum_out"),
    ExchangeOpType.MARKET_ORDER: ("pair", "side", "amount_in", "minimum_out", "slippage_bps"),
    ExchangeOpType.PLACE_LIMIT_ORDER: ("pair", "side", "amount_in", "limit_price", "slippage_bps"),
    ExchangeOpType.CANCEL_LIMIT_ORDER: ("pair", "order_id"),
    ExchangeOpType.EXECUTE_LIMIT_ORDER: ("pair", "order_id"),
    ExchangeOpType.CREATE_DCA_ORDER: ("pair", "side", "amount_per_cycle", "total_cycles", "cycle_frequency"),
    ExchangeOpType.EXECUTE_DCA_ORDER: ("pair", "order_id"),
    ExchangeOpType.CANCEL_DCA_ORDER: ("pair", "order_id"),
    ExchangeOpType.OPEN_POSITION: ("pair", "side", "size", "leverage", "margin"),
    ExchangeOpType.ADD_MARGIN: ("pair", "position_id", "amount"),
    ExchangeOpType.CLOSE_POSITION: ("pair", "position_id"),
    ExchangeOpType.LIQUIDATE: ("pair", "position_id"),
    ExchangeOpType.FUND_PERP_VAULT: ("pair", "amount"),
    ExchangeOpType.UPDATE_FUNDING_RATE: ("pair", "rate_bps"),
    ExchangeOpType.PAUSE_TRADING: ("pair",),
    ExchangeOpType.RESUME_TRADING: ("pair",),
    ExchangeOpType.UPDATE_FEE_RATE: ("pair", "fee_rate_bps"),
    ExchangeOpType.TRANSFER_ADMIN: ("new_admin",),
    ExchangeOpType.EMERGENCY_WITHDRAW: ("pair", "destination"),
    ExchangeOpType.TRANSFER_MINT_AUTHORITY: ("new_authority",),
    ExchangeOpType.UPDATE_USER_REWARDS: ("pair",),
    ExchangeOpType.CLAIM_REWARDS: ("pair",),
    ExchangeOpType.SET_REWARD_RATE: ("rate",),
    ExchangeOpType.MINT_REWARD_TOKENS: ("recipient", "amount"),
}


# ---------------------------------------------------------------------------
# Exchange Transaction
# ---------------------------------------------------------------------------

@dataclass
class ExchangeTransaction:
    """
    Envelope for a single engine operation.

    ``sender`` is the already-authenticated caller; signature checks
    happen before a transaction reaches the engine.
    """
    op_type: ExchangeOpType
    sender: str
    params: Dict[str, Any] = field(default_factory=dict)

    # --- Filled in after execution ---
    success: bool = False
    result: Dict[str, Any] = field(default_factory=dict)
    error: str = ""

    def tx_hash(self) -> str:
        raw = self._canonical_bytes()
        return hashlib.blake2b(raw, digest_size=32).hexdigest()

    def _canonical_bytes(self) -> bytes:
        params_json = json.dumps(self.params, sort_keys=True, default=str).encode("utf-8")
        return b"".join([
            self.op_type.to_bytes(1, "big"),
            self.sender.encode("utf-8"),
            params_json,
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op_type": int(self.op_type),
            "sender": self.sender,
            "params": self.params,
            "tx_hash": self.tx_hash(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExchangeTransaction:
        return cls(
            op_type=ExchangeOpType(data["op_type"]),
            sender=data["sender"],
            params=dict(data.get("params", {})),
        )

    def validate_basic(self) -> bool:
        """
        Structural validation (no state access needed).

        Raises:
            ValueError: with specific reason
        """
        if not self.sender:
            raise ValueError("Missing sender")
        if self.op_type not in ExchangeOpType:
            raise ValueError(f"Unknown operation type: {self.op_type}")
        for key in REQUIRED_PARAMS.get(self.op_type, ()):
            if key not in self.params:
                raise ValueError(f"{self.op_type.name} missing param: {key}")
        return True

    def __repr__(self) -> str:
        return f"ExchangeTransaction(op={self.op_type.name}, sender={self.sender}, hash={self.tx_hash()[:12]}...)"
