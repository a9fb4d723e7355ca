"""
cpdex Settlement Engine Package

Core imports are lazily loaded so that importing a submodule does not pull
in the whole engine.  For direct module access, import from submodules:

    from cpdex.exchange import ExchangeStateManager, LiquidityPool
    from cpdex.exceptions import SlippageExceeded
    from cpdex.config import load_config
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'ExchangeStateManager':
        from .exchange.state_manager import ExchangeStateManager
        return ExchangeStateManager
    elif name == 'load_config':
        from .config import load_config
        return load_config
    elif name == 'CPDexException':
        from .exceptions import CPDexException
        return CPDexException
    raise AttributeError(f"module 'cpdex' has no attribute {name!r}")


__all__ = ['ExchangeStateManager', 'load_config', 'CPDexException']
