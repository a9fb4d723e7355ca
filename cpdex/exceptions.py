"""
cpdex Exceptions

Custom exception classes for the cpdex settlement engine.

Every engine failure raises a subclass of ``CPDexException``.  The five
category classes tell a caller how to react:

  - ValidationError     fix the parameters and resubmit
  - EconomicError       market conditions blocked the trade, retry later
  - StaleStateError     the record moved on, re-read state before retrying
  - AuthorizationError  caller is not allowed to do this
  - ResourceError       not enough funds, or arithmetic out of range

Concrete errors carry a stable ``code`` used by the state manager.
"""


class CPDexException(Exception):
    """Base exception for cpdex."""
    code = "CPDexException"


class ConfigurationError(CPDexException):
    """Configuration error."""
    code = "ConfigurationError"


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

class ValidationError(CPDexException):
    """Caller-correctable before submission."""
    pass


class EconomicError(CPDexException):
    """Blocked by current market conditions."""
    pass


class StaleStateError(CPDexException):
    """Record or pool state does not allow the operation right now."""
    pass


class AuthorizationError(CPDexException):
    """Caller lacks the rights for this operation."""
    pass


class ResourceError(CPDexException):
    """Insufficient funds or arithmetic out of range."""
    pass


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class InvalidFeeRate(ValidationError):
    code = "InvalidFeeRate"


class ZeroAmount(ValidationError):
    code = "ZeroAmount"


class MaxLeverageExceeded(ValidationError):
    code = "MaxLeverageExceeded"


class InvalidLeverage(ValidationError):
    code = "InvalidLeverage"


class InvalidLimitPrice(ValidationError):
    code = "InvalidLimitPrice"


class InvalidSlippageTolerance(ValidationError):
    code = "InvalidSlippageTolerance"


class InvalidExpiration(ValidationError):
    code = "InvalidExpiration"


class InvalidCycleFrequency(ValidationError):
    code = "InvalidCycleFrequency"


class MaxCyclesExceeded(ValidationError):
    code = "MaxCyclesExceeded"


class InvalidRewardRate(ValidationError):
    code = "InvalidRewardRate"


class UnknownPair(ValidationError):
    code = "UnknownPair"


class PoolAlreadyExists(ValidationError):
    code = "PoolAlreadyExists"


class RecordNotFound(ValidationError):
    code = "RecordNotFound"


# ---------------------------------------------------------------------------
# Economic
# ---------------------------------------------------------------------------

class SlippageExceeded(EconomicError):
    code = "SlippageExceeded"


class PoolEmpty(EconomicError):
    code = "PoolEmpty"


class InsufficientMargin(EconomicError):
    code = "InsufficientMargin"


class PriceOutOfRange(EconomicError):
    code = "PriceOutOfRange"


class OrderNotExecutable(EconomicError):
    code = "OrderNotExecutable"


class NotLiquidatable(EconomicError):
    code = "NotLiquidatable"


# ---------------------------------------------------------------------------
# Concurrency / staleness
# ---------------------------------------------------------------------------

class InvalidState(StaleStateError):
    code = "InvalidState"


class TooEarly(StaleStateError):
    code = "TooEarly"


class OrderExpired(StaleStateError):
    code = "OrderExpired"


class PoolPaused(StaleStateError):
    code = "PoolPaused"


class AlreadyPaused(StaleStateError):
    code = "AlreadyPaused"


class NotPaused(StaleStateError):
    code = "NotPaused"


class TradingActive(StaleStateError):
    code = "TradingActive"


# ---------------------------------------------------------------------------
# Authorization / resource
# ---------------------------------------------------------------------------

class Unauthorized(AuthorizationError):
    code = "Unauthorized"


class InsufficientBalance(ResourceError):
    code = "InsufficientBalance"


class ArithmeticOverflow(ResourceError):
    code = "ArithmeticOverflow"


class SupplyCapExceeded(ResourceError):
    """Minting would push a capped token past its supply cap."""
    code = "SupplyCapExceeded"
