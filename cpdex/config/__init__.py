"""
cpdex Engine Configuration

Loads all sections of engine.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    EngineConfig,
    PoolSectionConfig,
    OrderSectionConfig,
    PerpSectionConfig,
    RewardsSectionConfig,
    LoggingSectionConfig,
    load_config,
)

__all__ = [
    "EngineConfig",
    "PoolSectionConfig",
    "OrderSectionConfig",
    "PerpSectionConfig",
    "RewardsSectionConfig",
    "LoggingSectionConfig",
    "load_config",
]
