"""
cpdex TOML Configuration Loader

Loads every section of engine.toml at startup with environment variable
overrides (dataclass + from_dict + apply_env per section).

Environment variable mapping:
    [pool]  default_fee_rate_bps → CPDEX_DEFAULT_FEE_RATE_BPS
    [perp]  max_leverage         → CPDEX_MAX_LEVERAGE
    [logging] level              → CPDEX_LOG_LEVEL
    ...
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..constants import (
    DEFAULT_FEE_RATE_BPS,
    LIQUIDATION_FEE_BPS,
    MAX_DCA_CYCLES,
    MAX_FEE_RATE_BPS,
    MAX_LEVERAGE,
    MAX_REWARD_RATE,
    MAX_SLIPPAGE_TOLERANCE_BPS,
    MIN_DCA_CYCLE_FREQUENCY,
    MIN_LEVERAGE,
    MIN_REWARD_RATE,
    REWARD_SUPPLY_CAP,
    U64_MAX,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _env_int(name: str) -> Optional[int]:
    v = os.environ.get(name)
    if v is None or v == "":
        return None
    try:
        return int(v)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {v!r}")


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class PoolSectionConfig:
    """[pool] section."""
    default_fee_rate_bps: int = DEFAULT_FEE_RATE_BPS
    max_fee_rate_bps: int = MAX_FEE_RATE_BPS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolSectionConfig":
        return cls(
            default_fee_rate_bps=data.get("default_fee_rate_bps", DEFAULT_FEE_RATE_BPS),
            max_fee_rate_bps=data.get("max_fee_rate_bps", MAX_FEE_RATE_BPS),
        )

    def apply_env(self) -> None:
        if (v := _env_int("CPDEX_DEFAULT_FEE_RATE_BPS")) is not None:
            self.default_fee_rate_bps = v

    def validate(self) -> None:
        if not 0 <= self.max_fee_rate_bps <= MAX_FEE_RATE_BPS:
            raise ConfigurationError(
                f"pool.max_fee_rate_bps must be within [0, {MAX_FEE_RATE_BPS}]"
            )
        if not 0 <= self.default_fee_rate_bps <= self.max_fee_rate_bps:
            raise ConfigurationError("pool.default_fee_rate_bps exceeds max_fee_rate_bps")


@dataclass
class OrderSectionConfig:
    """[orders] section."""
    max_slippage_bps: int = MAX_SLIPPAGE_TOLERANCE_BPS
    max_dca_cycles: int = MAX_DCA_CYCLES
    min_cycle_frequency: int = MIN_DCA_CYCLE_FREQUENCY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderSectionConfig":
        return cls(
            max_slippage_bps=data.get("max_slippage_bps", MAX_SLIPPAGE_TOLERANCE_BPS),
            max_dca_cycles=data.get("max_dca_cycles", MAX_DCA_CYCLES),
            min_cycle_frequency=data.get("min_cycle_frequency", MIN_DCA_CYCLE_FREQUENCY),
        )

    def apply_env(self) -> None:
        if (v := _env_int("CPDEX_MAX_SLIPPAGE_BPS")) is not None:
            self.max_slippage_bps = v
        if (v := _env_int("CPDEX_MAX_DCA_CYCLES")) is not None:
            self.max_dca_cycles = v
        if (v := _env_int("CPDEX_MIN_CYCLE_FREQUENCY")) is not None:
            self.min_cycle_frequency = v

    def validate(self) -> None:
        if not 0 <= self.max_slippage_bps <= MAX_SLIPPAGE_TOLERANCE_BPS:
            raise ConfigurationError("orders.max_slippage_bps out of range")
        if self.max_dca_cycles < 1:
            raise ConfigurationError("orders.max_dca_cycles must be at least 1")
        if self.min_cycle_frequency < 0:
            raise ConfigurationError("orders.min_cycle_frequency must be non-negative")


@dataclass
class PerpSectionConfig:
    """[perp] section."""
    min_leverage: int = MIN_LEVERAGE
    max_leverage: int = MAX_LEVERAGE
    liquidation_fee_bps: int = LIQUIDATION_FEE_BPS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerpSectionConfig":
        return cls(
            min_leverage=data.get("min_leverage", MIN_LEVERAGE),
            max_leverage=data.get("max_leverage", MAX_LEVERAGE),
            liquidation_fee_bps=data.get("liquidation_fee_bps", LIQUIDATION_FEE_BPS),
        )

    def apply_env(self) -> None:
        if (v := _env_int("CPDEX_MAX_LEVERAGE")) is not None:
            self.max_leverage = v
        if (v := _env_int("CPDEX_LIQUIDATION_FEE_BPS")) is not None:
            self.liquidation_fee_bps = v

    def validate(self) -> None:
        if self.min_leverage < 1 or self.max_leverage < self.min_leverage:
            raise ConfigurationError("perp leverage bounds must satisfy 1 <= min <= max")
        if not 0 <= self.liquidation_fee_bps <= 10_000:
            raise ConfigurationError("perp.liquidation_fee_bps must be within [0, 10000]")


@dataclass
class RewardsSectionConfig:
    """[rewards] section."""
    reward_asset: str = "RWD"
    reward_rate_per_second: int = MIN_REWARD_RATE
    supply_cap: int = REWARD_SUPPLY_CAP

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RewardsSectionConfig":
        return cls(
            reward_asset=data.get("reward_asset", "RWD"),
            reward_rate_per_second=data.get("reward_rate_per_second", MIN_REWARD_RATE),
            supply_cap=data.get("supply_cap", REWARD_SUPPLY_CAP),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("CPDEX_REWARD_ASSET"):
            self.reward_asset = v
        if (v := _env_int("CPDEX_REWARD_RATE")) is not None:
            self.reward_rate_per_second = v
        if (v := _env_int("CPDEX_REWARD_SUPPLY_CAP")) is not None:
            self.supply_cap = v

    def validate(self) -> None:
        if not MIN_REWARD_RATE <= self.reward_rate_per_second <= MAX_REWARD_RATE:
            raise ConfigurationError("rewards.reward_rate_per_second out of range")
        if not 1 <= self.supply_cap <= U64_MAX:
            raise ConfigurationError("rewards.supply_cap must be within [1, U64_MAX]")


@dataclass
class LoggingSectionConfig:
    """[logging] section."""
    level: str = "INFO"
    console: bool = True
    file: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingSectionConfig":
        return cls(
            level=data.get("level", "INFO"),
            console=data.get("console", True),
            file=data.get("file", False),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("CPDEX_LOG_LEVEL"):
            self.level = v

    def validate(self) -> None:
        if str(self.level).upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ConfigurationError(f"Unknown log level {self.level!r}")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

@dataclass
class EngineConfig:
    """Complete engine configuration (all sections)."""
    admin: str = ""
    pool: PoolSectionConfig = field(default_factory=PoolSectionConfig)
    orders: OrderSectionConfig = field(default_factory=OrderSectionConfig)
    perp: PerpSectionConfig = field(default_factory=PerpSectionConfig)
    rewards: RewardsSectionConfig = field(default_factory=RewardsSectionConfig)
    logging: LoggingSectionConfig = field(default_factory=LoggingSectionConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        return cls(
            admin=data.get("engine", {}).get("admin", ""),
            pool=PoolSectionConfig.from_dict(data.get("pool", {})),
            orders=OrderSectionConfig.from_dict(data.get("orders", {})),
            perp=PerpSectionConfig.from_dict(data.get("perp", {})),
            rewards=RewardsSectionConfig.from_dict(data.get("rewards", {})),
            logging=LoggingSectionConfig.from_dict(data.get("logging", {})),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("CPDEX_ADMIN"):
            self.admin = v
        for section in (self.pool, self.orders, self.perp, self.rewards, self.logging):
            section.apply_env()

    def validate(self) -> None:
        for section in (self.pool, self.orders, self.perp, self.rewards, self.logging):
            section.validate()


def load_config(path: Optional[Union[str, Path]] = None, apply_env: bool = True) -> EngineConfig:
    """
    Load engine configuration.

    A missing file yields defaults; a malformed file or invalid value raises
    ConfigurationError.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                with open(p, "rb") as f:
                    data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {p}: {e}") from e
            logger.info("Loaded engine config from %s", p)
        else:
            logger.warning("Config file %s not found, using defaults", p)

    try:
        config = EngineConfig.from_dict(data)
    except AttributeError as e:
        raise ConfigurationError(f"Malformed config section: {e}") from e
    if apply_env:
        config.apply_env()
    config.validate()
    return config
