"""
cpdex Constants

This module consolidates the global constants and environment configuration
used throughout the engine. Constants are organized by category for easy
reference and maintenance.
"""
import ast
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'False',
}

ENGINE_DEFAULTS = {
    'CPDEX_CONFIG_FILE':               'engine.toml',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# WARNING: THE VALUES BELOW DEFINE THE FIXED-POINT ENCODING OF EVERY PERSISTED RECORD.
# CHANGING THEM INVALIDATES EXISTING POOL, ORDER AND POSITION STATE.

# ==================================================================================
# FIXED-POINT ARITHMETIC
# ==================================================================================
BPS_DENOMINATOR = 10_000          # 1 bp = 1/10000
PRICE_SCALE = 1_000_000_000       # prices are quote-per-base scaled by 1e9
REWARD_PRECISION = 1_000_000_000  # LP share precision for reward accrual
U64_MAX = 2**64 - 1               # token amounts
U128_MAX = 2**128 - 1             # intermediate products


# ==================================================================================
# POOL PARAMETERS
# ==================================================================================
MAX_FEE_RATE_BPS = 100            # 1% cap
DEFAULT_FEE_RATE_BPS = 30         # 0.3%


# ==================================================================================
# ORDER PARAMETERS
# ==================================================================================
MAX_SLIPPAGE_TOLERANCE_BPS = 10_000
MAX_DCA_CYCLES = 1000
MIN_DCA_CYCLE_FREQUENCY = 60      # seconds


# ==================================================================================
# PERPETUAL PARAMETERS
# ==================================================================================
MIN_LEVERAGE = 1
MAX_LEVERAGE = 10
LIQUIDATION_FEE_BPS = 200         # 2% of remaining margin to the liquidator


# ==================================================================================
# REWARD PARAMETERS
# ==================================================================================
MIN_REWARD_RATE = 1
MAX_REWARD_RATE = 1_000_000_000_000
REWARD_SUPPLY_CAP = 1_000_000_000_000_000   # 1,000,000 reward tokens at 9 decimals


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    __hash__ = int.__hash__


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = LOGGER_DEFAULTS | ENGINE_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
